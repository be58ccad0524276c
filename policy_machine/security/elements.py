"""
Policy Elements

Live handles on policy elements stored by a storage adapter. Writes made
through a handle go to the adapter, or to the active mutation buffer inside
a bulk persist block.
"""

from typing import TYPE_CHECKING, Any, ClassVar, Mapping, Optional, Union

from ..exceptions import (
    CrossMachineViolationError,
    InvalidArgumentError,
    InvalidArgumentTypeError,
    InvalidAssignmentError,
    InvalidAttributeError,
    InvalidOperationNameError,
)
from ..models.elements import (
    BUILTIN_FIELDS,
    PROHIBITION_PREFIX,
    PolicyElementType,
    StoredPolicyElement,
    allowed_assignee_types,
    is_assignment_allowed,
)
from ..storage.base import PolicyMachineStorageAdapter

if TYPE_CHECKING:
    from .associations import Association


_MISSING = object()


class PolicyElement:
    """
    A policy element in a policy machine.

    Abstract base of the concrete element types. Equality is by type,
    unique identifier and policy machine uuid.
    """

    pe_type: ClassVar[PolicyElementType]

    def __init__(
        self,
        unique_identifier: str,
        policy_machine_uuid: str,
        storage_adapter: PolicyMachineStorageAdapter,
        stored_pe: Optional[StoredPolicyElement] = None,
        extra_attributes: Optional[Mapping[str, Any]] = None
    ):
        self.unique_identifier = str(unique_identifier)
        self.policy_machine_uuid = str(policy_machine_uuid)
        self.storage_adapter = storage_adapter
        self.stored_pe = stored_pe
        if extra_attributes is None and stored_pe is not None:
            extra_attributes = stored_pe.extra_attributes
        self._extra_attributes: dict[str, Any] = dict(extra_attributes or {})

    @classmethod
    def create(
        cls,
        unique_identifier: str,
        policy_machine_uuid: str,
        storage_adapter: PolicyMachineStorageAdapter,
        extra_attributes: Optional[Mapping[str, Any]] = None
    ) -> "PolicyElement":
        """
        Persist a new element of this type and return its handle.

        Args:
            unique_identifier: Identifier, unique within the policy machine
            policy_machine_uuid: UUID of the owning policy machine
            storage_adapter: Adapter persisting the element
            extra_attributes: Caller-defined metadata

        Returns:
            Handle on the stored element
        """
        cls.validate_identifier(unique_identifier)
        stored = storage_adapter.writer().add_element(
            cls.pe_type,
            str(unique_identifier),
            str(policy_machine_uuid),
            dict(extra_attributes or {}),
        )
        return cls.from_stored(stored, storage_adapter)

    @classmethod
    def validate_identifier(cls, unique_identifier: str) -> None:
        if unique_identifier is None or not str(unique_identifier).strip():
            raise InvalidAttributeError("unique_identifier cannot be blank")

    @classmethod
    def all(
        cls,
        storage_adapter: PolicyMachineStorageAdapter,
        filters: Optional[Mapping[str, Any]] = None,
        **find_options: Any
    ) -> list["PolicyElement"]:
        """Handles on every stored element of this type matching the filters."""
        return [
            cls.from_stored(stored, storage_adapter)
            for stored in storage_adapter.find_all_of_type(cls.pe_type, filters, **find_options)
        ]

    @staticmethod
    def from_stored(
        stored: StoredPolicyElement,
        storage_adapter: PolicyMachineStorageAdapter
    ) -> "PolicyElement":
        """Wrap a stored element in a handle of the class matching its type."""
        element_class = ELEMENT_CLASSES[stored.pe_type]
        return element_class(
            stored.unique_identifier,
            stored.policy_machine_uuid,
            storage_adapter,
            stored,
        )

    # ==========================================================================
    # Attributes
    # ==========================================================================

    @property
    def extra_attributes(self) -> dict[str, Any]:
        """Copy of the caller-defined metadata."""
        return dict(self._extra_attributes)

    def get(self, key: str, default: Any = None) -> Any:
        """Read an extra attribute, falling back to built-in fields."""
        if key in self._extra_attributes:
            return self._extra_attributes[key]
        if key in BUILTIN_FIELDS:
            return self.pe_type.value if key == "pe_type" else getattr(self, key)
        return default

    def __getitem__(self, key: str) -> Any:
        value = self.get(key, _MISSING)
        if value is _MISSING:
            raise KeyError(key)
        return value

    def __contains__(self, key: str) -> bool:
        return key in self._extra_attributes

    def update(self, changes: Mapping[str, Any]) -> bool:
        """
        Merge changes into the extra attributes.

        Keys absent from changes are kept. Returns False when the element
        was never persisted or has been deleted.
        """
        self._extra_attributes.update(changes)
        writer = self.storage_adapter.writer()
        if not self._is_writable(writer):
            return False
        return writer.update(self.stored_pe, dict(changes))

    def delete(self) -> bool:
        """
        Remove this element and its own assignments, links and associations.

        Other elements are never removed.

        Returns:
            bool: Whether a removal happened
        """
        writer = self.storage_adapter.writer()
        if not self._is_writable(writer):
            return False
        removed = writer.delete(self.stored_pe)
        self.stored_pe = None
        return removed

    def _is_writable(self, writer: Any) -> bool:
        if self.stored_pe is None:
            return False
        # Another handle or a rolled back transaction may have removed it.
        return writer.element_in_machine(self.stored_pe)

    # ==========================================================================
    # Graph
    # ==========================================================================

    def is_connected(self, other: "PolicyElement") -> bool:
        """Whether other is reachable from this element along assignments."""
        return self.storage_adapter.is_connected(self._stored(), _require_element(other)._stored())

    def assign_to(self, dst: "PolicyElement") -> bool:
        """
        Assign this element to dst.

        Raises:
            InvalidAssignmentError: The type pair cannot be assigned
        """
        dst = _require_element(dst)
        if not is_assignment_allowed(self.pe_type, dst.pe_type):
            allowed = [t.value for t in allowed_assignee_types(self.pe_type)]
            raise InvalidAssignmentError(
                f"expected dst_policy_element to be one of {allowed}; "
                f"got {type(dst).__name__} instead."
            )
        return self.storage_adapter.writer().assign(self._stored(), dst._stored())

    def unassign(self, dst: "PolicyElement") -> bool:
        """Remove the assignment to dst, returning whether it existed."""
        dst = _require_element(dst)
        return self.storage_adapter.writer().unassign(self._stored(), dst._stored())

    def link_to(self, dst: "PolicyElement") -> bool:
        """Link this element to dst in another policy machine."""
        dst = _require_element(dst)
        self._assert_other_machine(dst)
        return self.storage_adapter.writer().link(self._stored(), dst._stored())

    def unlink(self, dst: "PolicyElement") -> bool:
        dst = _require_element(dst)
        self._assert_other_machine(dst)
        return self.storage_adapter.writer().unlink(self._stored(), dst._stored())

    def is_linked(self, other: "PolicyElement") -> bool:
        """Whether a chain of logical links joins this element and other."""
        return self.storage_adapter.is_linked(self._stored(), _require_element(other)._stored())

    def _assert_other_machine(self, other: "PolicyElement") -> None:
        if other.policy_machine_uuid == self.policy_machine_uuid:
            raise CrossMachineViolationError(
                f"{self.unique_identifier} and {other.unique_identifier} "
                "are in the same policy machine"
            )

    def _stored(self) -> StoredPolicyElement:
        if self.stored_pe is None:
            raise InvalidArgumentError(f"{self.unique_identifier} has been deleted")
        return self.stored_pe

    # ==========================================================================
    # Identity
    # ==========================================================================

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, PolicyElement):
            return NotImplemented
        return (
            self.pe_type == other.pe_type
            and self.unique_identifier == other.unique_identifier
            and self.policy_machine_uuid == other.policy_machine_uuid
        )

    def __hash__(self) -> int:
        return hash((self.pe_type, self.unique_identifier, self.policy_machine_uuid))

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.unique_identifier!r})"


def _require_element(arg: Any) -> PolicyElement:
    if not isinstance(arg, PolicyElement):
        raise InvalidArgumentTypeError(
            f"expected a PolicyElement; got {type(arg).__name__} instead"
        )
    return arg


class User(PolicyElement):
    """A user in a policy machine."""

    pe_type = PolicyElementType.USER

    def user_attributes(self) -> list["UserAttribute"]:
        """Every user attribute this user reaches."""
        return [
            PolicyElement.from_stored(stored, self.storage_adapter)
            for stored in self.storage_adapter.user_attributes_for_user(self._stored())
        ]


class UserAttribute(PolicyElement):
    """A user attribute in a policy machine."""

    pe_type = PolicyElementType.USER_ATTRIBUTE


class ObjectAttribute(PolicyElement):
    """An object attribute in a policy machine."""

    pe_type = PolicyElementType.OBJECT_ATTRIBUTE

    def policy_classes(self) -> list["PolicyClass"]:
        """Every policy class this element reaches."""
        return [
            PolicyElement.from_stored(stored, self.storage_adapter)
            for stored in self.storage_adapter.policy_classes_for_object_attribute(self._stored())
        ]


class Object(ObjectAttribute):
    """An object in a policy machine. Objects are also object attributes."""

    pe_type = PolicyElementType.OBJECT


class Operation(PolicyElement):
    """
    An operation in a policy machine.

    Identifiers starting with ``~`` are reserved for prohibitions, which
    are created through ``prohibition()``.
    """

    pe_type = PolicyElementType.OPERATION

    @classmethod
    def validate_identifier(cls, unique_identifier: str) -> None:
        super().validate_identifier(unique_identifier)
        if str(unique_identifier).startswith(PROHIBITION_PREFIX):
            raise InvalidOperationNameError(
                f"unique_identifier cannot start with '{PROHIBITION_PREFIX}'"
            )

    @property
    def is_prohibition(self) -> bool:
        return self.unique_identifier.startswith(PROHIBITION_PREFIX)

    @property
    def prohibited_operation(self) -> Optional[str]:
        """Identifier of the operation a prohibition negates."""
        if not self.is_prohibition:
            return None
        return self.unique_identifier[len(PROHIBITION_PREFIX):]

    def prohibition(self) -> "Operation":
        """The prohibition of this operation, created if it does not exist yet."""
        identifier = Prohibition.on(self.unique_identifier)
        existing = Operation.all(
            self.storage_adapter,
            {"unique_identifier": identifier, "policy_machine_uuid": self.policy_machine_uuid},
        )
        if existing:
            return existing[0]
        stored = self.storage_adapter.writer().add_element(
            PolicyElementType.OPERATION,
            identifier,
            self.policy_machine_uuid,
            {},
        )
        return PolicyElement.from_stored(stored, self.storage_adapter)

    def associations(self) -> list["Association"]:
        """Associations whose operation set contains this operation."""
        from .associations import Association

        return [
            Association.from_stored(stored, self.storage_adapter)
            for stored in self.storage_adapter.associations_with(self._stored())
        ]


class OperationSet(PolicyElement):
    """A set of operations, containing them through assignments."""

    pe_type = PolicyElementType.OPERATION_SET

    def operations(self) -> list[Operation]:
        """Operations reachable from this set."""
        return [
            operation
            for operation in Operation.all(
                self.storage_adapter,
                {"policy_machine_uuid": self.policy_machine_uuid},
            )
            if self.is_connected(operation)
        ]


class PolicyClass(PolicyElement):
    """A policy class in a policy machine."""

    pe_type = PolicyElementType.POLICY_CLASS


class Prohibition:
    """Derivation of prohibitions from operations."""

    @staticmethod
    def on(operation: Union[Operation, str]) -> Union[Operation, str]:
        """
        Negative counterpart of an operation.

        Args:
            operation: Operation handle or operation identifier

        Returns:
            The prohibition Operation for a handle (created on demand), or
            the negated identifier for a string
        """
        if isinstance(operation, Operation):
            return operation.prohibition()
        if isinstance(operation, str):
            return PROHIBITION_PREFIX + operation
        raise InvalidArgumentTypeError("operation must be an Operation or a string.")


ELEMENT_CLASSES: dict[PolicyElementType, type[PolicyElement]] = {
    PolicyElementType.USER: User,
    PolicyElementType.USER_ATTRIBUTE: UserAttribute,
    PolicyElementType.OBJECT: Object,
    PolicyElementType.OBJECT_ATTRIBUTE: ObjectAttribute,
    PolicyElementType.OPERATION: Operation,
    PolicyElementType.OPERATION_SET: OperationSet,
    PolicyElementType.POLICY_CLASS: PolicyClass,
}
