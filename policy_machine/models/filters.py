"""
Element Filter Models

Attribute filters used by storage adapters to select policy elements.
"""

from enum import Enum
from typing import Any, Iterable, Mapping, Optional, Union

from pydantic import BaseModel, Field

from .elements import StoredPolicyElement


IgnoreCase = Union[bool, str, Iterable[str]]


class FilterOperator(str, Enum):
    """Operators for element filters."""
    EQUALS = "equals"
    INCLUDE = "include"
    IS_NULL = "is_null"


class AttributeFilter(BaseModel):
    """
    A single attribute condition on a stored policy element.

    Built from a finder query: ``{"color": "red"}`` compares for equality,
    ``{"tags": {"include": "a"}}`` checks containment and ``{"color": None}``
    matches elements where the attribute is missing or None.
    """

    attribute: str = Field(..., description="Built-in field or extra attribute name")
    operator: FilterOperator = Field(..., description="Comparison operator")
    value: Any = Field(default=None, description="Value to compare against")

    @classmethod
    def from_query_item(cls, attribute: str, value: Any) -> "AttributeFilter":
        """Parse one key/value pair of a finder query."""
        if value is None:
            return cls(attribute=attribute, operator=FilterOperator.IS_NULL)
        if isinstance(value, Mapping) and set(value.keys()) == {"include"}:
            included = value["include"]
            if isinstance(included, (list, tuple, set, frozenset)):
                included = list(included)
            else:
                included = [included]
            return cls(attribute=attribute, operator=FilterOperator.INCLUDE, value=included)
        if isinstance(value, Enum):
            value = value.value
        return cls(attribute=attribute, operator=FilterOperator.EQUALS, value=value)

    def evaluate(self, element: StoredPolicyElement, ignore_case: bool = False) -> bool:
        """
        Evaluate this filter against an element.

        Args:
            element: Stored element to test
            ignore_case: Compare string values case-insensitively

        Returns:
            bool: Whether the element satisfies the filter
        """
        attr_value = element.attribute(self.attribute)
        if isinstance(attr_value, Enum):
            attr_value = attr_value.value

        match self.operator:
            case FilterOperator.IS_NULL:
                return attr_value is None
            case FilterOperator.INCLUDE:
                if not element.has_attribute(self.attribute):
                    return False
                return all(attribute_contains(attr_value, val) for val in self.value)
            case FilterOperator.EQUALS:
                if not element.has_attribute(self.attribute):
                    return False
                if ignore_case and isinstance(attr_value, str) and isinstance(self.value, str):
                    return attr_value.lower() == self.value.lower()
                return attr_value == self.value
            case _:
                return False


def attribute_contains(value: Any, needle: Any) -> bool:
    """Substring test for strings, membership test for collections."""
    if value is None:
        return False
    try:
        return needle in value
    except TypeError:
        return False


def ignore_case_applies(ignore_case: Optional[IgnoreCase], key: str) -> bool:
    """ignore_case may be a bool, a single key, or a collection of keys."""
    if ignore_case is None or ignore_case is False:
        return False
    if ignore_case is True:
        return True
    if isinstance(ignore_case, str):
        return ignore_case == key
    return key in {str(k) for k in ignore_case}


class ElementQuery(BaseModel):
    """
    A parsed finder query with pagination.

    Pages are 1-based; without per_page every match is returned.
    """

    filters: list[AttributeFilter] = Field(default_factory=list)
    ignore_case: Any = Field(default=False, description="bool, key, or list of keys")
    per_page: Optional[int] = Field(default=None, ge=1)
    page: int = Field(default=1, ge=1)

    @classmethod
    def build(
        cls,
        filters: Optional[Mapping[str, Any]] = None,
        ignore_case: Optional[IgnoreCase] = False,
        per_page: Optional[int] = None,
        page: Optional[int] = None,
    ) -> "ElementQuery":
        if ignore_case is not None and not isinstance(ignore_case, (bool, str)):
            ignore_case = [str(k) for k in ignore_case]
        return cls(
            filters=[
                AttributeFilter.from_query_item(name, value)
                for name, value in (filters or {}).items()
            ],
            ignore_case=ignore_case or False,
            per_page=per_page,
            page=page or 1,
        )

    def matches(self, element: StoredPolicyElement) -> bool:
        return all(
            f.evaluate(element, ignore_case_applies(self.ignore_case, f.attribute))
            for f in self.filters
        )

    def select(self, elements: Iterable[StoredPolicyElement]) -> list[StoredPolicyElement]:
        """Filter and paginate elements, preserving their order."""
        matched = [element for element in elements if self.matches(element)]
        if self.per_page is None:
            return matched
        start = (self.page - 1) * self.per_page
        return matched[start:start + self.per_page]
