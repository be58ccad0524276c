"""
Policy Machine Models Package

Pydantic models for stored policy elements, associations and finder queries.
"""

from .elements import (
    ALLOWED_ASSIGNMENTS,
    PROHIBITION_PREFIX,
    PolicyElementType,
    StoredAssociation,
    StoredPolicyElement,
    allowed_assignee_types,
    is_assignment_allowed,
)
from .filters import (
    AttributeFilter,
    ElementQuery,
    FilterOperator,
)

__all__ = [
    # Elements
    "ALLOWED_ASSIGNMENTS",
    "PROHIBITION_PREFIX",
    "PolicyElementType",
    "StoredAssociation",
    "StoredPolicyElement",
    "allowed_assignee_types",
    "is_assignment_allowed",
    # Filters
    "AttributeFilter",
    "ElementQuery",
    "FilterOperator",
]
