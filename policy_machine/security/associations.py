"""
Associations

An association (user attribute, operation set, object attribute) grants the
operations of the set to users under the user attribute on objects under
the object attribute.
"""

from typing import Any

from ..exceptions import CrossMachineViolationError, InvalidArgumentTypeError
from ..models.elements import StoredAssociation
from ..storage.base import PolicyMachineStorageAdapter
from .elements import (
    ObjectAttribute,
    Operation,
    OperationSet,
    PolicyElement,
    UserAttribute,
)


class Association:
    """A live handle on a stored association."""

    def __init__(
        self,
        user_attribute: UserAttribute,
        operation_set: OperationSet,
        object_attribute: ObjectAttribute
    ):
        self.user_attribute = user_attribute
        self.operation_set = operation_set
        self.object_attribute = object_attribute

    @classmethod
    def from_stored(
        cls,
        stored: StoredAssociation,
        storage_adapter: PolicyMachineStorageAdapter
    ) -> "Association":
        return cls(
            PolicyElement.from_stored(stored.user_attribute, storage_adapter),
            PolicyElement.from_stored(stored.operation_set, storage_adapter),
            PolicyElement.from_stored(stored.object_attribute, storage_adapter),
        )

    @classmethod
    def create(
        cls,
        user_attribute: UserAttribute,
        operation_set: OperationSet,
        object_attribute: ObjectAttribute,
        policy_machine_uuid: str,
        storage_adapter: PolicyMachineStorageAdapter
    ) -> "Association":
        """
        Store an association between persisted elements of one policy machine.

        Args:
            user_attribute: Users granted the operations
            operation_set: Set containing the granted operations
            object_attribute: Objects the operations apply to
            policy_machine_uuid: UUID of the owning policy machine
            storage_adapter: Adapter persisting the association

        Returns:
            Handle on the association

        Raises:
            InvalidArgumentTypeError: An element has the wrong type
            CrossMachineViolationError: An element belongs to another machine
        """
        _check_member("user_attribute_pe", user_attribute, UserAttribute, policy_machine_uuid)
        _check_member("operation_set", operation_set, OperationSet, policy_machine_uuid)
        _check_member("object_attribute_pe", object_attribute, ObjectAttribute, policy_machine_uuid)

        stored = storage_adapter.writer().add_association(
            user_attribute._stored(),
            operation_set._stored(),
            object_attribute._stored(),
            policy_machine_uuid,
        )
        return cls.from_stored(stored, storage_adapter)

    def includes_operation(self, operation: Operation) -> bool:
        """Whether the operation set contains the operation."""
        return self.operation_set.is_connected(operation)

    def operations(self) -> list[Operation]:
        return self.operation_set.operations()

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Association):
            return NotImplemented
        return self._members() == other._members()

    def __hash__(self) -> int:
        return hash(self._members())

    def __repr__(self) -> str:
        return (
            f"Association({self.user_attribute.unique_identifier!r}, "
            f"{self.operation_set.unique_identifier!r}, "
            f"{self.object_attribute.unique_identifier!r})"
        )

    def _members(self) -> tuple[PolicyElement, PolicyElement, PolicyElement]:
        return (self.user_attribute, self.operation_set, self.object_attribute)


def _check_member(name: str, element: Any, expected: type, policy_machine_uuid: str) -> None:
    if not isinstance(element, expected):
        raise InvalidArgumentTypeError(f"{name} must be a {expected.__name__}.")
    if element.policy_machine_uuid != policy_machine_uuid:
        raise CrossMachineViolationError(
            f"{name} must be in policy machine with uuid {policy_machine_uuid}"
        )
