"""
Storage Adapter Base Class

Abstract contract every policy machine storage backend implements.
"""

from abc import ABC, abstractmethod
from enum import Enum
from typing import TYPE_CHECKING, Any, ClassVar, ContextManager, Mapping, Optional, Union

from ..exceptions import InvalidArgumentTypeError, UnsupportedOperationError
from ..models.elements import PolicyElementType, StoredAssociation, StoredPolicyElement
from ..models.filters import IgnoreCase
from .buffer import current_buffer

if TYPE_CHECKING:
    from .buffer import MutationBuffer


class AdapterCapability(str, Enum):
    """Optional behaviour a storage adapter may advertise."""
    IS_PRIVILEGE = "is_privilege"
    SCOPED_PRIVILEGES = "scoped_privileges"
    ACCESSIBLE_OBJECTS = "accessible_objects"
    TRANSACTIONS = "transactions"


OperationArg = Union[StoredPolicyElement, str]


class PolicyMachineStorageAdapter(ABC):
    """
    Abstract base class for policy machine storage adapters.

    An adapter owns every policy element, assignment, logical link and
    association it stores, and answers reachability questions over them.
    Several policy machines may share one adapter; their elements are kept
    apart by policy machine uuid.

    Optimized privilege queries are optional. An adapter lists the ones it
    implements in ``capabilities`` and the engine only calls those.
    """

    capabilities: ClassVar[frozenset[AdapterCapability]] = frozenset()

    def supports(self, capability: AdapterCapability) -> bool:
        """Check whether this adapter advertises a capability."""
        return capability in self.capabilities

    def writer(self) -> Union["PolicyMachineStorageAdapter", "MutationBuffer"]:
        """
        Target for write operations.

        Returns the mutation buffer bound to this adapter when one is active
        in the current context, otherwise the adapter itself.
        """
        buffer = current_buffer(self)
        return buffer if buffer is not None else self

    @staticmethod
    def assert_policy_element(arg: Any) -> StoredPolicyElement:
        """Raise unless the argument is a stored policy element."""
        if not isinstance(arg, StoredPolicyElement):
            raise InvalidArgumentTypeError(
                f"expected a stored policy element; got {type(arg).__name__} instead"
            )
        return arg

    # ==========================================================================
    # Elements
    # ==========================================================================

    @abstractmethod
    def add_element(
        self,
        pe_type: PolicyElementType,
        unique_identifier: str,
        policy_machine_uuid: str,
        extra_attributes: Optional[Mapping[str, Any]] = None
    ) -> StoredPolicyElement:
        """
        Persist a policy element, or merge attributes into an existing one.

        Args:
            pe_type: Policy element type
            unique_identifier: Identifier, unique within the policy machine
            policy_machine_uuid: UUID of the owning policy machine
            extra_attributes: Caller-defined metadata

        Returns:
            The stored element
        """
        pass

    @abstractmethod
    def find_all_of_type(
        self,
        pe_type: PolicyElementType,
        filters: Optional[Mapping[str, Any]] = None,
        *,
        ignore_case: IgnoreCase = False,
        per_page: Optional[int] = None,
        page: Optional[int] = None
    ) -> list[StoredPolicyElement]:
        """
        Find stored elements of a type matching every filter.

        Args:
            pe_type: Policy element type
            filters: Attribute name to value; None matches a missing attribute
                and ``{"include": value}`` checks containment
            ignore_case: True, a key, or a list of keys compared case-insensitively
            per_page: Page size; all matches are returned when omitted
            page: 1-based page number

        Returns:
            Matching elements in insertion order
        """
        pass

    @abstractmethod
    def delete(self, element: StoredPolicyElement) -> bool:
        """
        Remove an element with its own assignments, links and associations.

        Never removes any other element.
        """
        pass

    @abstractmethod
    def update(self, element: StoredPolicyElement, changes: Mapping[str, Any]) -> bool:
        """Merge changes into the element's extra attributes."""
        pass

    @abstractmethod
    def element_in_machine(self, element: StoredPolicyElement) -> bool:
        """Check whether the element is persisted in this adapter."""
        pass

    # ==========================================================================
    # Assignments and logical links
    # ==========================================================================

    @abstractmethod
    def assign(self, src: StoredPolicyElement, dst: StoredPolicyElement) -> bool:
        """Add the assignment src -> dst. Repeated assignment is a no-op."""
        pass

    @abstractmethod
    def unassign(self, src: StoredPolicyElement, dst: StoredPolicyElement) -> bool:
        """Remove the assignment src -> dst, returning whether it existed."""
        pass

    @abstractmethod
    def is_connected(self, src: StoredPolicyElement, dst: StoredPolicyElement) -> bool:
        """
        Check whether dst is reachable from src along assignments.

        Every element is connected to itself.
        """
        pass

    @abstractmethod
    def link(self, src: StoredPolicyElement, dst: StoredPolicyElement) -> bool:
        """Add a logical link src -> dst between elements of different machines."""
        pass

    @abstractmethod
    def unlink(self, src: StoredPolicyElement, dst: StoredPolicyElement) -> bool:
        """Remove the logical link src -> dst, returning whether it existed."""
        pass

    @abstractmethod
    def is_linked(self, src: StoredPolicyElement, dst: StoredPolicyElement) -> bool:
        """
        Check whether two distinct elements are joined by a chain of links.

        An element is never linked to itself.
        """
        pass

    # ==========================================================================
    # Associations
    # ==========================================================================

    @abstractmethod
    def add_association(
        self,
        user_attribute: StoredPolicyElement,
        operation_set: StoredPolicyElement,
        object_attribute: StoredPolicyElement,
        policy_machine_uuid: str
    ) -> StoredAssociation:
        """Store the association (user_attribute, operation_set, object_attribute)."""
        pass

    @abstractmethod
    def associations_with(self, operation: StoredPolicyElement) -> list[StoredAssociation]:
        """Associations whose operation set reaches the operation."""
        pass

    @abstractmethod
    def policy_classes_for_object_attribute(
        self,
        object_attribute: StoredPolicyElement
    ) -> list[StoredPolicyElement]:
        """Policy classes reachable from an object or object attribute."""
        pass

    @abstractmethod
    def user_attributes_for_user(self, user: StoredPolicyElement) -> list[StoredPolicyElement]:
        """User attributes reachable from a user."""
        pass

    # ==========================================================================
    # Optional capabilities
    # ==========================================================================

    def transaction(self) -> ContextManager[Any]:
        """
        Context manager undoing every mutation made inside it when an
        exception escapes, then re-raising the exception.
        """
        raise UnsupportedOperationError(
            f"transactions are not supported by storage adapter {type(self).__name__}"
        )

    def is_privilege(
        self,
        user_or_attribute: StoredPolicyElement,
        operation: OperationArg,
        object_or_attribute: StoredPolicyElement
    ) -> bool:
        """Optimized privilege check ignoring prohibitions."""
        raise UnsupportedOperationError(
            f"is_privilege is not implemented by storage adapter {type(self).__name__}"
        )

    def scoped_privileges(
        self,
        user_or_attribute: StoredPolicyElement,
        object_or_attribute: StoredPolicyElement
    ) -> list[StoredPolicyElement]:
        """Operations, prohibitions included, granted on an object."""
        raise UnsupportedOperationError(
            f"scoped_privileges is not implemented by storage adapter {type(self).__name__}"
        )

    def accessible_objects(
        self,
        user_or_attribute: StoredPolicyElement,
        operation: OperationArg,
        *,
        includes: Optional[str] = None,
        key: str = "unique_identifier",
        ignore_prohibitions: bool = False
    ) -> list[StoredPolicyElement]:
        """Objects on which the operation is granted."""
        raise UnsupportedOperationError(
            f"accessible_objects is not implemented by storage adapter {type(self).__name__}"
        )
