"""
Mutation Buffer

Stages writes issued inside a bulk persist block and flushes them to a
storage adapter in one pass.

Flush order:
    1. delete elements
    2. remove assignments
    3. remove links
    4. upsert elements
    5. add assignments
    6. add links
    7. add associations

Entries are keyed by element identity or edge endpoints, so a later write
on the same key replaces an earlier one.
"""

from contextlib import contextmanager
from contextvars import ContextVar
from typing import TYPE_CHECKING, Any, Iterator, Mapping, Optional

import structlog

from ..exceptions import InvalidArgumentError
from ..models.elements import (
    ElementKey,
    PolicyElementType,
    StoredAssociation,
    StoredPolicyElement,
)

if TYPE_CHECKING:
    from .base import PolicyMachineStorageAdapter


logger = structlog.get_logger(__name__)

EdgeKey = tuple[ElementKey, ElementKey]
Edge = tuple[StoredPolicyElement, StoredPolicyElement]

_active_buffers: ContextVar[dict["PolicyMachineStorageAdapter", "MutationBuffer"]] = ContextVar(
    "policy_machine_mutation_buffers", default={}
)


def current_buffer(
    adapter: Optional["PolicyMachineStorageAdapter"] = None,
) -> Optional["MutationBuffer"]:
    """
    The mutation buffer active in the current context.

    With an adapter, the buffer bound to that adapter. Without one, the
    most recently activated buffer.
    """
    active = _active_buffers.get()
    if adapter is not None:
        return active.get(adapter)
    return next(reversed(active.values()), None)


class MutationBuffer:
    """
    Staged writes for one storage adapter.

    Exposes the write half of the adapter contract. Reads are not
    buffered: queries made while a buffer is active see committed state.
    """

    def __init__(self, adapter: "PolicyMachineStorageAdapter"):
        self.adapter = adapter
        self._deletes: dict[ElementKey, StoredPolicyElement] = {}
        self._upserts: dict[ElementKey, StoredPolicyElement] = {}
        self._updates: dict[ElementKey, tuple[StoredPolicyElement, dict[str, Any]]] = {}
        self._unassignments: dict[EdgeKey, Edge] = {}
        self._unlinks: dict[EdgeKey, Edge] = {}
        self._assignments: dict[EdgeKey, Edge] = {}
        self._links: dict[EdgeKey, Edge] = {}
        self._associations: dict[tuple[ElementKey, ...], StoredAssociation] = {}

    @contextmanager
    def activate(self) -> Iterator["MutationBuffer"]:
        """
        Route writes for the adapter into this buffer within the block.

        Buffers bound to other adapters stay active alongside this one.
        """
        active = {
            adapter: buffer
            for adapter, buffer in _active_buffers.get().items()
            if adapter is not self.adapter
        }
        active[self.adapter] = self
        token = _active_buffers.set(active)
        try:
            yield self
        finally:
            _active_buffers.reset(token)

    @property
    def is_empty(self) -> bool:
        return not any((
            self._deletes, self._upserts, self._updates, self._unassignments,
            self._unlinks, self._assignments, self._links, self._associations,
        ))

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
            pe_type=pe_type,
            extra_attributes=dict(extra_attributes or {}),
        )
        staged = self._upserts.get(record.key)
        if staged is not None:
            staged.extra_attributes.update(record.extra_attributes)
            return staged
        self._upserts[record.key] = record
        return record

    def delete(self, element: StoredPolicyElement) -> bool:
        """
        Stage an element deletion.

        An element created inside the buffer is simply dropped, together
        with every staged edge and association that touches it.
        """
        self.adapter.assert_policy_element(element)
        key = element.key
        created = self._upserts.pop(key, None)
        self._updates.pop(key, None)
        self._discard_touching(key)

        if self.adapter.element_in_machine(element):
            self._deletes[key] = element
            return True
        return created is not None

    def element_in_machine(self, element: StoredPolicyElement) -> bool:
        """Whether the element is staged here or committed and not staged for deletion."""
        return isinstance(element, StoredPolicyElement) and (
            element.key in self._upserts or self._is_committed(element)
        )

    def update(self, element: StoredPolicyElement, changes: Mapping[str, Any]) -> bool:
        key = element.key
        if key in self._upserts:
            self._upserts[key].extra_attributes.update(changes)
            return True
        self._assert_known(element)
        _, staged = self._updates.setdefault(key, (element, {}))
        staged.update(changes)
        return True

    # ==========================================================================
    # Edges
    # ==========================================================================

    def assign(self, src: StoredPolicyElement, dst: StoredPolicyElement) -> bool:
        self._assert_known(src)
        self._assert_known(dst)
        edge = (src.key, dst.key)
        self._unassignments.pop(edge, None)
        self._assignments[edge] = (src, dst)
        return True

    def unassign(self, src: StoredPolicyElement, dst: StoredPolicyElement) -> bool:
        self._assert_known(src)
        self._assert_known(dst)
        edge = (src.key, dst.key)
        cancelled = self._assignments.pop(edge, None) is not None
        if self._is_committed(src) and self._is_committed(dst):
            self._unassignments[edge] = (src, dst)
            return True
        return cancelled

    def link(self, src: StoredPolicyElement, dst: StoredPolicyElement) -> bool:
        self._assert_linkable(src)
        self._assert_linkable(dst)
        edge = (src.key, dst.key)
        self._unlinks.pop(edge, None)
        self._links[edge] = (src, dst)
        return True

    def unlink(self, src: StoredPolicyElement, dst: StoredPolicyElement) -> bool:
        self._assert_linkable(src)
        self._assert_linkable(dst)
        edge = (src.key, dst.key)
        cancelled = self._links.pop(edge, None) is not None
        if src.key not in self._deletes and src.persisted and dst.persisted:
            self._unlinks[edge] = (src, dst)
            return True
        return cancelled

    def add_association(
        self,
        user_attribute: StoredPolicyElement,
        operation_set: StoredPolicyElement,
        object_attribute: StoredPolicyElement,
        policy_machine_uuid: str
    ) -> StoredAssociation:
        for element in (user_attribute, operation_set, object_attribute):
            self._assert_known(element)
        association = StoredAssociation(
            user_attribute=user_attribute,
            operation_set=operation_set,
            object_attribute=object_attribute,
            policy_machine_uuid=policy_machine_uuid,
        )
        self._associations[association.key] = association
        return association

    # ==========================================================================
    # Flush
    # ==========================================================================

    def flush(self) -> dict[str, int]:
        """
        Apply every staged write to the adapter in flush order.

        Returns:
            Count of applied writes per kind
        """
        adapter = self.adapter
        summary = {
            "deleted": len(self._deletes),
            "unassigned": len(self._unassignments),
            "unlinked": len(self._unlinks),
            "upserted": len(self._upserts) + len(self._updates),
            "assigned": len(self._assignments),
            "linked": len(self._links),
            "associated": len(self._associations),
        }

        for element in self._deletes.values():
            adapter.delete(element)
        for src, dst in self._unassignments.values():
            adapter.unassign(src, dst)
        for src, dst in self._unlinks.values():
            adapter.unlink(src, dst)
        for record in self._upserts.values():
            adapter.add_element(
                record.pe_type,
                record.unique_identifier,
                record.policy_machine_uuid,
                record.extra_attributes,
            )
            record.persisted = True
        for element, changes in self._updates.values():
            adapter.update(element, changes)
        for src, dst in self._assignments.values():
            adapter.assign(src, dst)
        for src, dst in self._links.values():
            adapter.link(src, dst)
        for association in self._associations.values():
            adapter.add_association(
                association.user_attribute,
                association.operation_set,
                association.object_attribute,
                association.policy_machine_uuid,
            )

        logger.info("mutation_buffer_flushed", adapter=type(adapter).__name__, **summary)
        self.clear()
        return summary

    def clear(self) -> None:
        """Discard every staged write."""
        for staged in (
            self._deletes, self._upserts, self._updates, self._unassignments,
            self._unlinks, self._assignments, self._links, self._associations,
        ):
            staged.clear()

    # ==========================================================================
    # Helpers
    # ==========================================================================

    def _is_committed(self, element: StoredPolicyElement) -> bool:
        """Persisted in the adapter and not staged for deletion."""
        return element.key not in self._deletes and self.adapter.element_in_machine(element)

    def _assert_known(self, element: StoredPolicyElement) -> None:
        self.adapter.assert_policy_element(element)
        if element.key in self._upserts or self._is_committed(element):
            return
        raise InvalidArgumentError(
            f"{element.unique_identifier} is not persisted in this storage adapter"
        )

    def _assert_linkable(self, element: StoredPolicyElement) -> None:
        # Link endpoints may live in another adapter.
        self.adapter.assert_policy_element(element)
        if element.key in self._upserts:
            return
        if element.key in self._deletes or not element.persisted:
            raise InvalidArgumentError(f"{element.unique_identifier} is not persisted")

    def _discard_touching(self, key: ElementKey) -> None:
        for edges in (self._assignments, self._unassignments, self._links, self._unlinks):
            for edge in [edge for edge in edges if key in edge]:
                del edges[edge]
        for association_key in [k for k in self._associations if key in k]:
            del self._associations[association_key]
