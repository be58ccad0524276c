"""
Policy Machine

The NGAC engine: creates policy elements, relates them, and derives
privileges from the resulting graph through a storage adapter.
"""

from contextlib import contextmanager
from typing import Any, Callable, Iterator, Mapping, Optional, Sequence, Union
from uuid import uuid4

import structlog

from config.settings import Settings, get_settings

from ..exceptions import (
    CrossMachineViolationError,
    EmptyAssociationSetError,
    InvalidArgumentError,
    InvalidArgumentTypeError,
)
from ..models.elements import BUILTIN_FIELDS, PolicyElementType
from ..models.filters import IgnoreCase, attribute_contains
from ..storage.base import AdapterCapability, PolicyMachineStorageAdapter
from ..storage.buffer import MutationBuffer, current_buffer
from ..storage.factory import create_storage_adapter
from .associations import Association
from .audit import AuditAction, AuditLog, AuditLogger
from .elements import (
    ELEMENT_CLASSES,
    Object,
    ObjectAttribute,
    Operation,
    OperationSet,
    PolicyClass,
    PolicyElement,
    Prohibition,
    User,
    UserAttribute,
)
from .privileges import Privilege, is_justified


logger = structlog.get_logger(__name__)

Subject = Union[User, UserAttribute]
OperationLike = Union[Operation, str]


class PolicyMachine:
    """
    A policy machine backed by a storage adapter.

    Holds no graph state of its own. Several machines may share one adapter;
    each only sees elements carrying its uuid.
    """

    def __init__(
        self,
        name: Optional[str] = None,
        uuid: Optional[str] = None,
        storage_adapter: Optional[PolicyMachineStorageAdapter] = None,
        settings: Optional[Settings] = None,
        audit_logger: Optional[AuditLogger] = None
    ):
        """
        Initialize the policy machine.

        Args:
            name: Human readable name (defaults to the configured name)
            uuid: Namespace of this machine's elements (defaults to a random UUID)
            storage_adapter: Backend (defaults to the configured adapter)
            settings: Settings to use (defaults to cached settings)
            audit_logger: Audit logger (created when auditing is enabled)

        Raises:
            InvalidArgumentError: The uuid is blank
        """
        self.settings = settings or get_settings()
        self.name = str(name or self.settings.default_policy_machine_name).strip()
        self.uuid = str(uuid if uuid is not None else uuid4()).strip()
        if not self.uuid:
            raise InvalidArgumentError("uuid cannot be blank")

        self.storage_adapter = storage_adapter or create_storage_adapter(self.settings)

        if audit_logger is None and self.settings.audit_enabled:
            audit_logger = AuditLogger(
                AuditLog(
                    max_entries=self.settings.audit_max_entries,
                    storage_path=self.settings.audit_log_path,
                )
            )
        self.audit_logger = audit_logger

    def __repr__(self) -> str:
        return f"PolicyMachine(name={self.name!r}, uuid={self.uuid!r})"

    # ==========================================================================
    # Policy elements
    # ==========================================================================

    def create(
        self,
        pe_type: Union[PolicyElementType, str],
        unique_identifier: str,
        extra_attributes: Optional[Mapping[str, Any]] = None
    ) -> PolicyElement:
        """
        Create a policy element of the given type in this machine.

        Args:
            pe_type: Policy element type
            unique_identifier: Identifier, unique within this machine
            extra_attributes: Caller-defined metadata

        Returns:
            Handle on the new element
        """
        element_class = ELEMENT_CLASSES[PolicyElementType(pe_type)]
        element = element_class.create(
            unique_identifier, self.uuid, self.storage_adapter, extra_attributes
        )
        self._audit(lambda audit: audit.log_element_created(
            self.uuid, element.pe_type.value, element.unique_identifier
        ))
        return element

    def find_all(
        self,
        pe_type: Union[PolicyElementType, str],
        filters: Optional[Mapping[str, Any]] = None,
        *,
        ignore_case: IgnoreCase = False,
        per_page: Optional[int] = None,
        page: Optional[int] = None
    ) -> list[PolicyElement]:
        """
        Find this machine's elements of a type matching every filter.

        Args:
            pe_type: Policy element type
            filters: Attribute name to value; see the storage adapter finder
            ignore_case: True, a key, or a list of keys compared case-insensitively
            per_page: Page size
            page: 1-based page number

        Returns:
            Handles on matching elements
        """
        element_class = ELEMENT_CLASSES[PolicyElementType(pe_type)]
        query = {**(filters or {}), "policy_machine_uuid": self.uuid}
        return element_class.all(
            self.storage_adapter,
            query,
            ignore_case=ignore_case,
            per_page=per_page,
            page=page,
        )

    def create_user(self, unique_identifier: str, extra_attributes: Optional[Mapping[str, Any]] = None) -> User:
        return self.create(PolicyElementType.USER, unique_identifier, extra_attributes)

    def create_user_attribute(
        self, unique_identifier: str, extra_attributes: Optional[Mapping[str, Any]] = None
    ) -> UserAttribute:
        return self.create(PolicyElementType.USER_ATTRIBUTE, unique_identifier, extra_attributes)

    def create_object(self, unique_identifier: str, extra_attributes: Optional[Mapping[str, Any]] = None) -> Object:
        return self.create(PolicyElementType.OBJECT, unique_identifier, extra_attributes)

    def create_object_attribute(
        self, unique_identifier: str, extra_attributes: Optional[Mapping[str, Any]] = None
    ) -> ObjectAttribute:
        return self.create(PolicyElementType.OBJECT_ATTRIBUTE, unique_identifier, extra_attributes)

    def create_operation(
        self, unique_identifier: str, extra_attributes: Optional[Mapping[str, Any]] = None
    ) -> Operation:
        return self.create(PolicyElementType.OPERATION, unique_identifier, extra_attributes)

    def create_operation_set(
        self, unique_identifier: str, extra_attributes: Optional[Mapping[str, Any]] = None
    ) -> OperationSet:
        return self.create(PolicyElementType.OPERATION_SET, unique_identifier, extra_attributes)

    def create_policy_class(
        self, unique_identifier: str, extra_attributes: Optional[Mapping[str, Any]] = None
    ) -> PolicyClass:
        return self.create(PolicyElementType.POLICY_CLASS, unique_identifier, extra_attributes)

    def users(self, filters: Optional[Mapping[str, Any]] = None, **find_options: Any) -> list[User]:
        return self.find_all(PolicyElementType.USER, filters, **find_options)

    def user_attributes(
        self, filters: Optional[Mapping[str, Any]] = None, **find_options: Any
    ) -> list[UserAttribute]:
        return self.find_all(PolicyElementType.USER_ATTRIBUTE, filters, **find_options)

    def objects(self, filters: Optional[Mapping[str, Any]] = None, **find_options: Any) -> list[Object]:
        return self.find_all(PolicyElementType.OBJECT, filters, **find_options)

    def object_attributes(
        self, filters: Optional[Mapping[str, Any]] = None, **find_options: Any
    ) -> list[ObjectAttribute]:
        return self.find_all(PolicyElementType.OBJECT_ATTRIBUTE, filters, **find_options)

    def operations(self, filters: Optional[Mapping[str, Any]] = None, **find_options: Any) -> list[Operation]:
        return self.find_all(PolicyElementType.OPERATION, filters, **find_options)

    def operation_sets(
        self, filters: Optional[Mapping[str, Any]] = None, **find_options: Any
    ) -> list[OperationSet]:
        return self.find_all(PolicyElementType.OPERATION_SET, filters, **find_options)

    def policy_classes(
        self, filters: Optional[Mapping[str, Any]] = None, **find_options: Any
    ) -> list[PolicyClass]:
        return self.find_all(PolicyElementType.POLICY_CLASS, filters, **find_options)

    def batch_find(
        self,
        pe_type: Union[PolicyElementType, str],
        filters: Optional[Mapping[str, Any]] = None,
        batch_size: int = 1
    ) -> Iterator[list[PolicyElement]]:
        """
        Iterate over matching elements in batches.

        Args:
            pe_type: Policy element type
            filters: Attribute filters
            batch_size: Elements per batch

        Yields:
            Lists of at most batch_size handles
        """
        if batch_size < 1:
            raise InvalidArgumentError("batch_size must be positive")
        elements = self.find_all(pe_type, filters)
        for start in range(0, len(elements), batch_size):
            yield elements[start:start + batch_size]

    def batch_pluck(
        self,
        pe_type: Union[PolicyElementType, str],
        fields: Sequence[str],
        filters: Optional[Mapping[str, Any]] = None,
        batch_size: int = 1
    ) -> Iterator[list[dict[str, Any]]]:
        """
        Iterate over selected fields of matching elements in batches.

        Extra attributes take precedence over built-in fields of the same name.

        Yields:
            Lists of dicts mapping each requested field to its value
        """
        for batch in self.batch_find(pe_type, filters, batch_size):
            yield [self._pluck(element, fields) for element in batch]

    @staticmethod
    def _pluck(element: PolicyElement, fields: Sequence[str]) -> dict[str, Any]:
        plucked = {}
        for field in fields:
            if field not in element and field not in BUILTIN_FIELDS:
                raise InvalidArgumentError(
                    f"{field} is not an attribute of {element.unique_identifier}"
                )
            plucked[field] = element.get(field)
        return plucked

    # ==========================================================================
    # Relations
    # ==========================================================================

    def add_assignment(self, src: PolicyElement, dst: PolicyElement) -> bool:
        """Assign src to dst; both must belong to this machine."""
        self._assert_in_machine(src)
        self._assert_in_machine(dst)
        result = src.assign_to(dst)
        self._audit_relation(AuditAction.ASSIGNMENT_ADDED, src, dst, result)
        return result

    def remove_assignment(self, src: PolicyElement, dst: PolicyElement) -> bool:
        """Remove the assignment of src to dst, returning whether it existed."""
        self._assert_in_machine(src)
        self._assert_in_machine(dst)
        result = src.unassign(dst)
        self._audit_relation(AuditAction.ASSIGNMENT_REMOVED, src, dst, result)
        return result

    def add_link(self, src: PolicyElement, dst: PolicyElement) -> bool:
        """
        Link elements of two different policy machines.

        Links record relationships outside the NGAC formalism, such as a class
        of operable and a specific instance of it.
        """
        self._assert_different_machines(src, dst)
        result = src.link_to(dst)
        self._audit_relation(AuditAction.LINK_ADDED, src, dst, result)
        return result

    def remove_link(self, src: PolicyElement, dst: PolicyElement) -> bool:
        self._assert_different_machines(src, dst)
        result = src.unlink(dst)
        self._audit_relation(AuditAction.LINK_REMOVED, src, dst, result)
        return result

    def add_association(
        self,
        user_attribute: UserAttribute,
        operation_set: OperationSet,
        object_attribute: ObjectAttribute
    ) -> Association:
        """Grant the operations of operation_set to user_attribute on object_attribute."""
        for element in (user_attribute, object_attribute, operation_set):
            self._assert_in_machine(element)
        association = Association.create(
            user_attribute, operation_set, object_attribute, self.uuid, self.storage_adapter
        )
        self._audit_relation(
            AuditAction.ASSOCIATION_ADDED,
            user_attribute,
            object_attribute,
            True,
            operation_set=operation_set.unique_identifier,
        )
        return association

    # ==========================================================================
    # Privileges
    # ==========================================================================

    def is_privilege(
        self,
        user_or_attribute: Subject,
        operation: OperationLike,
        object_or_attribute: ObjectAttribute,
        *,
        associations: Optional[Sequence[Association]] = None,
        in_user_attribute: Optional[UserAttribute] = None,
        in_object_attribute: Optional[ObjectAttribute] = None,
        ignore_prohibitions: bool = False
    ) -> bool:
        """
        Can the privilege (u, op, o) be derived from this policy machine?

        Holds when the operation is granted and, unless ignore_prohibitions,
        its prohibition is not.

        Args:
            user_or_attribute: User or user attribute
            operation: Operation or operation identifier; an unknown
                identifier yields False
            object_or_attribute: Object or object attribute
            associations: Only consider these associations
            in_user_attribute: Only consider grants through this user attribute
            in_object_attribute: Only consider grants through this object attribute
            ignore_prohibitions: Skip the prohibition check

        Returns:
            bool: Whether the privilege holds
        """
        granted = self._is_privilege(
            user_or_attribute,
            operation,
            object_or_attribute,
            associations=associations,
            in_user_attribute=in_user_attribute,
            in_object_attribute=in_object_attribute,
            ignore_prohibitions=ignore_prohibitions,
        )
        self._audit(lambda audit: audit.log_privilege_check(
            self.uuid,
            user_or_attribute.unique_identifier,
            _operation_id(operation),
            object_or_attribute.pe_type.value,
            object_or_attribute.unique_identifier,
            granted,
        ))
        return granted

    def _is_privilege(
        self,
        user_or_attribute: Subject,
        operation: OperationLike,
        object_or_attribute: ObjectAttribute,
        ignore_prohibitions: bool = False,
        **scope: Any
    ) -> bool:
        if not self.is_privilege_ignoring_prohibitions(
            user_or_attribute, operation, object_or_attribute, **scope
        ):
            return False
        if ignore_prohibitions:
            return True
        # The identifier form avoids creating the prohibition as a side effect.
        prohibition = Prohibition.on(_operation_id(operation))
        return not self.is_privilege_ignoring_prohibitions(
            user_or_attribute, prohibition, object_or_attribute, **scope
        )

    def is_privilege_ignoring_prohibitions(
        self,
        user_or_attribute: Subject,
        operation: OperationLike,
        object_or_attribute: ObjectAttribute,
        *,
        associations: Optional[Sequence[Association]] = None,
        in_user_attribute: Optional[UserAttribute] = None,
        in_object_attribute: Optional[ObjectAttribute] = None
    ) -> bool:
        """
        Check a privilege without considering prohibitions.

        Raises:
            InvalidArgumentTypeError: An argument has the wrong type
            EmptyAssociationSetError: associations is given but empty
        """
        self._assert_subject(user_or_attribute)
        self._assert_operation(operation)
        self._assert_object(object_or_attribute)

        scoped = associations is not None or in_user_attribute is not None or in_object_attribute is not None
        if not scoped and self.storage_adapter.supports(AdapterCapability.IS_PRIVILEGE):
            logger.debug("privilege_fast_path", adapter=type(self.storage_adapter).__name__)
            return self.storage_adapter.is_privilege(
                user_or_attribute._stored(),
                operation._stored() if isinstance(operation, Operation) else operation,
                object_or_attribute._stored(),
            )

        if not isinstance(operation, Operation):
            found = self.operations({"unique_identifier": operation})
            if not found:
                return False
            operation = found[0]

        if associations is not None:
            if not isinstance(associations, (list, tuple)):
                raise InvalidArgumentTypeError(
                    f"expected associations to be a list; got {type(associations).__name__}"
                )
            if not associations:
                raise EmptyAssociationSetError("associations cannot be empty")
            if not all(isinstance(a, Association) for a in associations):
                raise InvalidArgumentTypeError(
                    "expected each element of associations to be an Association"
                )
            candidates = [a for a in associations if a.includes_operation(operation)]
            if not candidates:
                return False
        else:
            candidates = operation.associations()

        if in_user_attribute is not None:
            if not isinstance(in_user_attribute, UserAttribute):
                raise InvalidArgumentTypeError(
                    "expected in_user_attribute to be a UserAttribute; "
                    f"got {type(in_user_attribute).__name__}"
                )
            if not user_or_attribute.is_connected(in_user_attribute):
                return False
            user_or_attribute = in_user_attribute

        if in_object_attribute is not None:
            if not isinstance(in_object_attribute, ObjectAttribute):
                raise InvalidArgumentTypeError(
                    "expected in_object_attribute to be an ObjectAttribute; "
                    f"got {type(in_object_attribute).__name__}"
                )
            if not object_or_attribute.is_connected(in_object_attribute):
                return False
            object_or_attribute = in_object_attribute

        policy_classes = object_or_attribute.policy_classes()
        return is_justified(user_or_attribute, object_or_attribute, candidates, policy_classes)

    def privileges(self) -> list[Privilege]:
        """Every (user, operation, object) privilege in this policy machine."""
        objects = self.objects()
        operations = [op for op in self.operations() if not op.is_prohibition]
        return [
            Privilege(user, operation, obj)
            for user in self.users()
            for operation in operations
            for obj in objects
            if self._is_privilege(user, operation, obj)
        ]

    def scoped_privileges(
        self,
        user_or_attribute: Subject,
        object_or_attribute: ObjectAttribute,
        *,
        ignore_prohibitions: bool = False
    ) -> list[Privilege]:
        """
        Every privilege of a user or attribute on an object or attribute.

        Unless ignore_prohibitions, operations whose prohibition is also
        granted are dropped and prohibitions themselves are not returned.

        Raises:
            InvalidArgumentTypeError: An argument has the wrong type
        """
        self._assert_subject(user_or_attribute)
        self._assert_object(object_or_attribute)

        if self.storage_adapter.supports(AdapterCapability.SCOPED_PRIVILEGES):
            granted = [
                PolicyElement.from_stored(stored, self.storage_adapter)
                for stored in self.storage_adapter.scoped_privileges(
                    user_or_attribute._stored(), object_or_attribute._stored()
                )
            ]
        else:
            granted = [
                operation for operation in self.operations()
                if self.is_privilege_ignoring_prohibitions(
                    user_or_attribute, operation, object_or_attribute
                )
            ]

        prohibitions = [op for op in granted if op.is_prohibition]
        privileges = [op for op in granted if not op.is_prohibition]
        if not ignore_prohibitions:
            prohibited = {op.prohibited_operation for op in prohibitions}
            privileges = [op for op in privileges if op.unique_identifier not in prohibited]

        return [Privilege(user_or_attribute, op, object_or_attribute) for op in privileges]

    def accessible_objects(
        self,
        user_or_attribute: Subject,
        operation: OperationLike,
        *,
        includes: Optional[str] = None,
        key: str = "unique_identifier",
        ignore_prohibitions: bool = False
    ) -> list[Object]:
        """
        Objects on which a user or attribute holds the operation.

        Args:
            user_or_attribute: User or user attribute
            operation: Operation or operation identifier
            includes: Keep only objects whose key attribute contains this value
            key: Attribute searched by includes
            ignore_prohibitions: Skip the prohibition check

        Returns:
            Handles on the accessible objects

        Raises:
            InvalidArgumentTypeError: An argument has the wrong type
        """
        self._assert_subject(user_or_attribute)
        self._assert_operation(operation)

        if self.storage_adapter.supports(AdapterCapability.ACCESSIBLE_OBJECTS):
            return [
                PolicyElement.from_stored(stored, self.storage_adapter)
                for stored in self.storage_adapter.accessible_objects(
                    user_or_attribute._stored(),
                    operation._stored() if isinstance(operation, Operation) else operation,
                    includes=includes,
                    key=key,
                    ignore_prohibitions=ignore_prohibitions,
                )
            ]

        candidates = self.objects()
        if includes is not None:
            candidates = [obj for obj in candidates if attribute_contains(obj.get(key), includes)]
        return [
            obj for obj in candidates
            if self._is_privilege(
                user_or_attribute, operation, obj, ignore_prohibitions=ignore_prohibitions
            )
        ]

    def list_user_attributes(self, user: User) -> list[UserAttribute]:
        """Every user attribute a user is assigned to, directly or indirectly."""
        if not isinstance(user, User):
            raise InvalidArgumentTypeError(f"Expected a User, got a {type(user).__name__}")
        self._assert_in_machine(user)
        return user.user_attributes()

    # ==========================================================================
    # Transactions and bulk persistence
    # ==========================================================================

    @contextmanager
    def transaction(self) -> Iterator["PolicyMachine"]:
        """
        Run the block transactionally.

        Any exception escaping the block rolls back every change made inside
        it and is re-raised.

        Raises:
            UnsupportedOperationError: The adapter cannot roll back
        """
        scope = self.storage_adapter.transaction()
        try:
            with scope:
                yield self
        except Exception as exc:
            self._audit(lambda audit: audit.log_transaction_rollback(self.uuid, exc))
            raise

    @contextmanager
    def bulk_persist(self, transactional: Optional[bool] = None) -> Iterator[MutationBuffer]:
        """
        Buffer writes made inside the block and flush them once on exit.

        An exception inside the block discards the buffer. Queries inside
        the block see committed state only. Nested blocks on the same adapter
        share the outer buffer.

        Args:
            transactional: Flush inside an adapter transaction (defaults to settings)
        """
        active = current_buffer(self.storage_adapter)
        if active is not None:
            yield active
            return

        if transactional is None:
            transactional = self.settings.bulk_persist_transactional

        buffer = MutationBuffer(self.storage_adapter)
        with buffer.activate():
            yield buffer

        if transactional:
            with self.transaction():
                summary = buffer.flush()
        else:
            summary = buffer.flush()
        self._audit(lambda audit: audit.log_bulk_flush(self.uuid, summary))

    # ==========================================================================
    # Helpers
    # ==========================================================================

    def _assert_in_machine(self, element: Any) -> None:
        if not isinstance(element, PolicyElement):
            raise InvalidArgumentTypeError(
                f"arg must each be a kind of PolicyElement; got {type(element).__name__} instead"
            )
        if element.policy_machine_uuid != self.uuid:
            raise CrossMachineViolationError(
                f"{element.unique_identifier} is not in policy machine with uuid {self.uuid}"
            )

    @staticmethod
    def _assert_subject(user_or_attribute: Any) -> None:
        if not isinstance(user_or_attribute, (User, UserAttribute)):
            raise InvalidArgumentTypeError("user_attribute_pe must be a User or UserAttribute.")

    @staticmethod
    def _assert_operation(operation: Any) -> None:
        if not isinstance(operation, (Operation, str)):
            raise InvalidArgumentTypeError("operation must be an Operation or a string.")

    @staticmethod
    def _assert_object(object_or_attribute: Any) -> None:
        if not isinstance(object_or_attribute, ObjectAttribute):
            raise InvalidArgumentTypeError(
                "object_or_attribute must either be an Object or ObjectAttribute."
            )

    @staticmethod
    def _assert_different_machines(element: Any, other: Any) -> None:
        if not isinstance(element, PolicyElement) or not isinstance(other, PolicyElement):
            raise InvalidArgumentTypeError(
                "args must each be a kind of PolicyElement; "
                f"got a {type(element).__name__} and {type(other).__name__} instead"
            )
        if element.policy_machine_uuid == other.policy_machine_uuid:
            raise CrossMachineViolationError(
                f"{element.unique_identifier} and {other.unique_identifier} "
                "are in the same policy machine"
            )

    def _audit(self, record: Callable[[AuditLogger], Any]) -> None:
        if self.audit_logger is not None:
            record(self.audit_logger)

    def _audit_relation(
        self,
        action: AuditAction,
        src: PolicyElement,
        dst: PolicyElement,
        applied: bool,
        **details: Any
    ) -> None:
        self._audit(lambda audit: audit.log_relation_change(
            action, self.uuid, src.unique_identifier, dst.unique_identifier, applied, **details
        ))


def _operation_id(operation: OperationLike) -> str:
    if isinstance(operation, Operation):
        return operation.unique_identifier
    return str(operation)
