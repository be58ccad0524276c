"""
Transitive Closure Storage Adapter

In-memory adapter maintaining the transitive closure of the
assignment graph, in the manner of a materialized closure table. Answers
connectivity from the closure and implements the optimized privilege
queries directly over it.
"""

from typing import Any, Optional

import structlog

from ..models.elements import (
    PROHIBITION_PREFIX,
    ElementKey,
    PolicyElementType,
    StoredAssociation,
    StoredPolicyElement,
)
from ..models.filters import attribute_contains
from .base import AdapterCapability, OperationArg
from .in_memory import InMemoryStorageAdapter


logger = structlog.get_logger(__name__)


class TransitiveClosureStorageAdapter(InMemoryStorageAdapter):
    """
    In-memory adapter with a materialized descendant closure.

    Additions extend the closure incrementally; removals and rollbacks
    rebuild it from the assignment graph.
    """

    capabilities = frozenset({
        AdapterCapability.IS_PRIVILEGE,
        AdapterCapability.SCOPED_PRIVILEGES,
        AdapterCapability.ACCESSIBLE_OBJECTS,
        AdapterCapability.TRANSACTIONS,
    })

    def __init__(self, tolerate_cycles: Optional[bool] = None):
        super().__init__(tolerate_cycles=tolerate_cycles)
        self._closure: dict[ElementKey, set[ElementKey]] = {}

    # ==========================================================================
    # Closure maintenance
    # ==========================================================================

    def assign(self, src: StoredPolicyElement, dst: StoredPolicyElement) -> bool:
        result = super().assign(src, dst)
        reached = {dst.key} | self._closure.get(dst.key, set())
        ancestors = [src.key] + [
            key for key, descendants in self._closure.items() if src.key in descendants
        ]
        for ancestor in ancestors:
            self._closure.setdefault(ancestor, set()).update(reached)
        return result

    def unassign(self, src: StoredPolicyElement, dst: StoredPolicyElement) -> bool:
        removed = super().unassign(src, dst)
        if removed:
            self._rebuild_closure()
        return removed

    def delete(self, element: StoredPolicyElement) -> bool:
        result = super().delete(element)
        self._rebuild_closure()
        return result

    def _restore(self, snapshot: tuple[Any, ...]) -> None:
        super()._restore(snapshot)
        self._rebuild_closure()

    def _rebuild_closure(self) -> None:
        self._closure = {
            key: set(self._traverse(self._assignments, key))
            for key in self._assignments
        }
        logger.debug("closure_rebuilt", size=sum(len(v) for v in self._closure.values()))

    def _descendant_keys(self, key: ElementKey) -> set[ElementKey]:
        return set(self._closure.get(key, ()))

    def _ancestor_keys(self, key: ElementKey) -> set[ElementKey]:
        return {ancestor for ancestor, descendants in self._closure.items() if key in descendants}

    def is_connected(self, src: StoredPolicyElement, dst: StoredPolicyElement) -> bool:
        src, dst = self._resolve(src), self._resolve(dst)
        return src == dst or dst.key in self._closure.get(src.key, ())

    # ==========================================================================
    # Optimized privilege queries
    # ==========================================================================

    def is_privilege(
        self,
        user_or_attribute: StoredPolicyElement,
        operation: OperationArg,
        object_or_attribute: StoredPolicyElement
    ) -> bool:
        user = self._resolve(user_or_attribute)
        obj = self._resolve(object_or_attribute)
        op = self._find_operation(operation, obj.policy_machine_uuid)
        if op is None:
            return False

        granting = [
            association for association in self._associations_between(user, obj)
            if op.key in self._closure.get(association.operation_set.key, ())
        ]
        policy_classes = self._policy_class_keys(obj)
        if len(policy_classes) < 2:
            return bool(granting)
        return all(
            any(pc in self._closure.get(a.object_attribute.key, ()) for a in granting)
            for pc in policy_classes
        )

    def scoped_privileges(
        self,
        user_or_attribute: StoredPolicyElement,
        object_or_attribute: StoredPolicyElement
    ) -> list[StoredPolicyElement]:
        user = self._resolve(user_or_attribute)
        obj = self._resolve(object_or_attribute)
        associations = self._associations_between(user, obj)
        policy_classes = self._policy_class_keys(obj)

        if len(policy_classes) < 2:
            granted = self._operation_keys(associations)
        else:
            per_class = [
                self._operation_keys([
                    a for a in associations
                    if pc in self._closure.get(a.object_attribute.key, ())
                ])
                for pc in policy_classes
            ]
            granted = set.intersection(*per_class)

        return [stored for key, stored in self._elements.items() if key in granted]

    def accessible_objects(
        self,
        user_or_attribute: StoredPolicyElement,
        operation: OperationArg,
        *,
        includes: Optional[str] = None,
        key: str = "unique_identifier",
        ignore_prohibitions: bool = False
    ) -> list[StoredPolicyElement]:
        user = self._resolve(user_or_attribute)
        op = self._find_operation(operation, user.policy_machine_uuid)
        if op is None:
            return []

        user_scope = {user.key} | self._closure.get(user.key, set())
        granting_oas = {
            association.object_attribute.key
            for association in self._associations.values()
            if association.user_attribute.key in user_scope
            and op.key in self._closure.get(association.operation_set.key, ())
        }
        prohibition = PROHIBITION_PREFIX + op.unique_identifier

        result = []
        for stored in self._elements.values():
            if stored.pe_type != PolicyElementType.OBJECT:
                continue
            if stored.policy_machine_uuid != user.policy_machine_uuid:
                continue
            if includes is not None and not attribute_contains(stored.attribute(key), includes):
                continue
            reachable = {stored.key} | self._closure.get(stored.key, set())
            if not reachable & granting_oas:
                continue
            if not self.is_privilege(user, op, stored):
                continue
            if not ignore_prohibitions and self.is_privilege(user, prohibition, stored):
                continue
            result.append(stored)
        return result

    # ==========================================================================
    # Helpers
    # ==========================================================================

    def _find_operation(
        self,
        operation: OperationArg,
        policy_machine_uuid: str
    ) -> Optional[StoredPolicyElement]:
        if isinstance(operation, StoredPolicyElement):
            return self._resolve(operation)
        key = (PolicyElementType.OPERATION.value, policy_machine_uuid, str(operation))
        return self._elements.get(key)

    def _associations_between(
        self,
        user: StoredPolicyElement,
        obj: StoredPolicyElement
    ) -> list[StoredAssociation]:
        user_scope = {user.key} | self._closure.get(user.key, set())
        object_scope = {obj.key} | self._closure.get(obj.key, set())
        return [
            association for association in self._associations.values()
            if association.user_attribute.key in user_scope
            and association.object_attribute.key in object_scope
        ]

    def _policy_class_keys(self, obj: StoredPolicyElement) -> list[ElementKey]:
        return [
            key for key in self._closure.get(obj.key, ())
            if key[0] == PolicyElementType.POLICY_CLASS.value
        ]

    def _operation_keys(self, associations: list[StoredAssociation]) -> set[ElementKey]:
        keys: set[ElementKey] = set()
        for association in associations:
            keys.update(
                key for key in self._closure.get(association.operation_set.key, ())
                if key[0] == PolicyElementType.OPERATION.value
            )
        return keys
