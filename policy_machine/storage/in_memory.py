"""
In-Memory Storage Adapter

Reference implementation of the storage adapter contract backed by plain
dictionaries. Used as the default backend and as the correctness baseline
for other adapters.
"""

import copy
from collections import deque
from contextlib import contextmanager
from typing import Any, Iterator, Mapping, Optional

import structlog

from config.settings import get_settings

from ..exceptions import CycleError, InvalidArgumentError
from ..models.elements import (
    ElementKey,
    PolicyElementType,
    StoredAssociation,
    StoredPolicyElement,
)
from ..models.filters import ElementQuery, IgnoreCase
from .base import AdapterCapability, PolicyMachineStorageAdapter


logger = structlog.get_logger(__name__)

Graph = dict[ElementKey, set[ElementKey]]


class InMemoryStorageAdapter(PolicyMachineStorageAdapter):
    """
    Storage adapter keeping the policy graph in memory.

    Reachability is a breadth-first search that tolerates cycles.
    Transactions snapshot every collection and restore the snapshot when
    an exception escapes.
    """

    capabilities = frozenset({AdapterCapability.TRANSACTIONS})

    def __init__(self, tolerate_cycles: Optional[bool] = None):
        """
        Initialize the adapter.

        Args:
            tolerate_cycles: Accept cycle-closing assignments (defaults to settings)
        """
        if tolerate_cycles is None:
            tolerate_cycles = get_settings().tolerate_cycles
        self.tolerate_cycles = tolerate_cycles

        self._elements: dict[ElementKey, StoredPolicyElement] = {}
        self._assignments: Graph = {}
        self._links: Graph = {}
        self._associations: dict[tuple[ElementKey, ...], StoredAssociation] = {}

    # ==========================================================================
    # Elements
    # ==========================================================================

    def add_element(
        self,
        pe_type: PolicyElementType,
        unique_identifier: str,
        policy_machine_uuid: str,
        extra_attributes: Optional[Mapping[str, Any]] = None
    ) -> StoredPolicyElement:
        record = StoredPolicyElement(
            unique_identifier=unique_identifier,
            policy_machine_uuid=policy_machine_uuid,
            pe_type=PolicyElementType(pe_type),
            extra_attributes=dict(extra_attributes or {}),
            persisted=True,
        )
        existing = self._elements.get(record.key)
        if existing is not None:
            existing.extra_attributes.update(record.extra_attributes)
            return existing

        self._elements[record.key] = record
        logger.debug(
            "policy_element_added",
            pe_type=record.pe_type.value,
            unique_identifier=unique_identifier,
            policy_machine_uuid=policy_machine_uuid,
        )
        return record

    def find_all_of_type(
        self,
        pe_type: PolicyElementType,
        filters: Optional[Mapping[str, Any]] = None,
        *,
        ignore_case: IgnoreCase = False,
        per_page: Optional[int] = None,
        page: Optional[int] = None
    ) -> list[StoredPolicyElement]:
        pe_type = PolicyElementType(pe_type)
        query = ElementQuery.build(filters, ignore_case=ignore_case, per_page=per_page, page=page)
        return query.select(
            element for element in self._elements.values()
            if element.pe_type == pe_type
        )

    def delete(self, element: StoredPolicyElement) -> bool:
        stored = self._resolve(element)
        key = stored.key

        for graph in (self._assignments, self._links):
            graph.pop(key, None)
            for children in graph.values():
                children.discard(key)
        for association_key in [k for k in self._associations if key in k]:
            del self._associations[association_key]
        del self._elements[key]

        logger.debug(
            "policy_element_deleted",
            pe_type=stored.pe_type.value,
            unique_identifier=stored.unique_identifier,
        )
        return True

    def update(self, element: StoredPolicyElement, changes: Mapping[str, Any]) -> bool:
        stored = self._resolve(element)
        stored.extra_attributes.update(changes)
        return True

    def element_in_machine(self, element: StoredPolicyElement) -> bool:
        return isinstance(element, StoredPolicyElement) and element.key in self._elements

    # ==========================================================================
    # Assignments and logical links
    # ==========================================================================

    def assign(self, src: StoredPolicyElement, dst: StoredPolicyElement) -> bool:
        src, dst = self._resolve(src), self._resolve(dst)
        if not self.tolerate_cycles and (src == dst or self.is_connected(dst, src)):
            raise CycleError(
                f"assigning {src.unique_identifier} to {dst.unique_identifier} would create a cycle"
            )
        self._assignments.setdefault(src.key, set()).add(dst.key)
        return True

    def unassign(self, src: StoredPolicyElement, dst: StoredPolicyElement) -> bool:
        src, dst = self._resolve(src), self._resolve(dst)
        children = self._assignments.get(src.key)
        if children is None or dst.key not in children:
            return False
        children.discard(dst.key)
        return True

    def is_connected(self, src: StoredPolicyElement, dst: StoredPolicyElement) -> bool:
        src, dst = self._resolve(src), self._resolve(dst)
        if src == dst:
            return True
        return any(key == dst.key for key in self._traverse(self._assignments, src.key))

    def link(self, src: StoredPolicyElement, dst: StoredPolicyElement) -> bool:
        src, dst = self._assert_persisted(src), self._assert_persisted(dst)
        self._links.setdefault(src.key, set()).add(dst.key)
        return True

    def unlink(self, src: StoredPolicyElement, dst: StoredPolicyElement) -> bool:
        src, dst = self._assert_persisted(src), self._assert_persisted(dst)
        children = self._links.get(src.key)
        if children is None or dst.key not in children:
            return False
        children.discard(dst.key)
        return True

    def is_linked(self, src: StoredPolicyElement, dst: StoredPolicyElement) -> bool:
        src, dst = self._assert_persisted(src), self._assert_persisted(dst)
        if src == dst:
            return False
        return (
            dst.key in set(self._traverse(self._links, src.key))
            or src.key in set(self._traverse(self._links, dst.key))
        )

    # ==========================================================================
    # Associations
    # ==========================================================================

    def add_association(
        self,
        user_attribute: StoredPolicyElement,
        operation_set: StoredPolicyElement,
        object_attribute: StoredPolicyElement,
        policy_machine_uuid: str
    ) -> StoredAssociation:
        association = StoredAssociation(
            user_attribute=self._resolve(user_attribute),
            operation_set=self._resolve(operation_set),
            object_attribute=self._resolve(object_attribute),
            policy_machine_uuid=policy_machine_uuid,
        )
        self._associations[association.key] = association
        return association

    def associations_with(self, operation: StoredPolicyElement) -> list[StoredAssociation]:
        operation = self._resolve(operation)
        containing = self._ancestor_keys(operation.key)
        return [
            association for association in self._associations.values()
            if association.operation_set.key in containing
        ]

    def policy_classes_for_object_attribute(
        self,
        object_attribute: StoredPolicyElement
    ) -> list[StoredPolicyElement]:
        return self._descendants_of_type(object_attribute, PolicyElementType.POLICY_CLASS)

    def user_attributes_for_user(self, user: StoredPolicyElement) -> list[StoredPolicyElement]:
        return self._descendants_of_type(user, PolicyElementType.USER_ATTRIBUTE)

    # ==========================================================================
    # Transactions
    # ==========================================================================

    @contextmanager
    def transaction(self) -> Iterator["InMemoryStorageAdapter"]:
        snapshot = self._snapshot()
        try:
            yield self
        except BaseException as exc:
            self._restore(snapshot)
            logger.info(
                "transaction_rolled_back",
                adapter=type(self).__name__,
                error=type(exc).__name__,
            )
            raise

    def _snapshot(self) -> tuple[Any, ...]:
        return copy.deepcopy((self._elements, self._assignments, self._links, self._associations))

    def _restore(self, snapshot: tuple[Any, ...]) -> None:
        self._elements, self._assignments, self._links, self._associations = snapshot

    # ==========================================================================
    # Graph helpers
    # ==========================================================================

    def _resolve(self, element: StoredPolicyElement) -> StoredPolicyElement:
        """This adapter's record for the element; raises if it is not stored here."""
        self.assert_policy_element(element)
        stored = self._elements.get(element.key)
        if stored is None:
            raise InvalidArgumentError(
                f"{element.unique_identifier} is not persisted in this storage adapter"
            )
        return stored

    def _assert_persisted(self, element: StoredPolicyElement) -> StoredPolicyElement:
        self.assert_policy_element(element)
        if not element.persisted:
            raise InvalidArgumentError(f"{element.unique_identifier} is not persisted")
        return element

    @staticmethod
    def _traverse(graph: Graph, start: ElementKey) -> Iterator[ElementKey]:
        """Yield every key reachable from start, each once."""
        seen = {start}
        queue = deque([start])
        while queue:
            for child in graph.get(queue.popleft(), ()):
                if child not in seen:
                    seen.add(child)
                    queue.append(child)
                    yield child

    def _descendant_keys(self, key: ElementKey) -> set[ElementKey]:
        return set(self._traverse(self._assignments, key))

    def _ancestor_keys(self, key: ElementKey) -> set[ElementKey]:
        parents: Graph = {}
        for parent, children in self._assignments.items():
            for child in children:
                parents.setdefault(child, set()).add(parent)
        return set(self._traverse(parents, key))

    def _descendants_of_type(
        self,
        element: StoredPolicyElement,
        pe_type: PolicyElementType
    ) -> list[StoredPolicyElement]:
        element = self._resolve(element)
        reachable = self._descendant_keys(element.key)
        return [
            stored for key, stored in self._elements.items()
            if key in reachable and stored.pe_type == pe_type
        ]
