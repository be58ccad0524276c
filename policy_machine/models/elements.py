"""
Policy Element Models

Stored representations of policy elements and associations as kept by a
storage adapter, plus the assignment rules of the NGAC graph.
"""

from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


PROHIBITION_PREFIX = "~"

# Fields every stored element carries outside of its extra attributes.
BUILTIN_FIELDS = ("unique_identifier", "policy_machine_uuid", "pe_type")


class PolicyElementType(str, Enum):
    """Types of policy elements in a policy machine."""
    USER = "user"
    USER_ATTRIBUTE = "user_attribute"
    OBJECT = "object"
    OBJECT_ATTRIBUTE = "object_attribute"
    OPERATION = "operation"
    OPERATION_SET = "operation_set"
    POLICY_CLASS = "policy_class"

    @property
    def plural(self) -> str:
        """Collection name used for finders, e.g. ``policy_classes``."""
        if self.value.endswith("s"):
            return f"{self.value}es"
        return f"{self.value}s"


# (src_type, dst_type) pairs an assignment may join.
ALLOWED_ASSIGNMENTS: frozenset[tuple[PolicyElementType, PolicyElementType]] = frozenset({
    (PolicyElementType.OBJECT, PolicyElementType.OBJECT),
    (PolicyElementType.OBJECT, PolicyElementType.OBJECT_ATTRIBUTE),
    (PolicyElementType.OBJECT_ATTRIBUTE, PolicyElementType.OBJECT_ATTRIBUTE),
    (PolicyElementType.OBJECT_ATTRIBUTE, PolicyElementType.OBJECT),
    (PolicyElementType.USER, PolicyElementType.USER_ATTRIBUTE),
    (PolicyElementType.USER_ATTRIBUTE, PolicyElementType.USER_ATTRIBUTE),
    (PolicyElementType.USER_ATTRIBUTE, PolicyElementType.POLICY_CLASS),
    (PolicyElementType.OBJECT_ATTRIBUTE, PolicyElementType.POLICY_CLASS),
    (PolicyElementType.OPERATION_SET, PolicyElementType.OPERATION_SET),
    (PolicyElementType.OPERATION_SET, PolicyElementType.OPERATION),
})


def is_assignment_allowed(src_type: PolicyElementType, dst_type: PolicyElementType) -> bool:
    """Check whether an element of src_type may be assigned to one of dst_type."""
    return (src_type, dst_type) in ALLOWED_ASSIGNMENTS


def allowed_assignee_types(src_type: PolicyElementType) -> tuple[PolicyElementType, ...]:
    """Element types an element of src_type may be assigned to."""
    return tuple(
        dst for dst in PolicyElementType
        if (src_type, dst) in ALLOWED_ASSIGNMENTS
    )


ElementKey = tuple[str, str, str]


class StoredPolicyElement(BaseModel):
    """
    A policy element as persisted by a storage adapter.

    Two records are equal when they share type, unique identifier and
    policy machine, regardless of attributes or persistence state.
    """

    unique_identifier: str = Field(..., description="Identifier, unique within its policy machine")
    policy_machine_uuid: str = Field(..., description="UUID of the owning policy machine")
    pe_type: PolicyElementType = Field(..., description="Policy element type")
    extra_attributes: dict[str, Any] = Field(
        default_factory=dict,
        description="Caller-defined metadata"
    )
    persisted: bool = Field(
        default=False,
        description="Whether the record has reached the backing store"
    )

    @property
    def key(self) -> ElementKey:
        """Identity of the element within an adapter."""
        return (self.pe_type.value, self.policy_machine_uuid, self.unique_identifier)

    @property
    def is_prohibition(self) -> bool:
        return (
            self.pe_type == PolicyElementType.OPERATION
            and self.unique_identifier.startswith(PROHIBITION_PREFIX)
        )

    def attribute(self, name: str) -> Any:
        """
        Read a built-in field or an extra attribute by name.

        Extra attributes shadow built-in fields of the same name. Missing
        attributes read as None.
        """
        if name in self.extra_attributes:
            return self.extra_attributes[name]
        if name in BUILTIN_FIELDS:
            return getattr(self, name)
        return None

    def has_attribute(self, name: str) -> bool:
        return name in self.extra_attributes or name in BUILTIN_FIELDS

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, StoredPolicyElement):
            return NotImplemented
        return self.key == other.key

    def __hash__(self) -> int:
        return hash(self.key)


class StoredAssociation(BaseModel):
    """
    An association (user attribute, operation set, object attribute).

    Grants every operation contained in the operation set to users under
    the user attribute on objects under the object attribute.
    """

    user_attribute: StoredPolicyElement
    operation_set: StoredPolicyElement
    object_attribute: StoredPolicyElement
    policy_machine_uuid: str = Field(..., description="UUID of the owning policy machine")

    @property
    def key(self) -> tuple[ElementKey, ElementKey, ElementKey]:
        return (self.user_attribute.key, self.operation_set.key, self.object_attribute.key)

    def involves(self, element: StoredPolicyElement) -> bool:
        """Check whether the element is one of the three members."""
        return element.key in self.key
