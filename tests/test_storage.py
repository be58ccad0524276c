"""
Tests for Storage Adapters

Contract tests run against every shipped adapter, plus adapter specific checks.
"""

import pytest

from config.settings import Settings
from policy_machine.exceptions import (
    CycleError,
    InvalidArgumentError,
    InvalidArgumentTypeError,
    UnsupportedOperationError,
)
from policy_machine.models.elements import PolicyElementType
from policy_machine.storage import (
    AdapterCapability,
    InMemoryStorageAdapter,
    TransitiveClosureStorageAdapter,
    create_storage_adapter,
)


USER = PolicyElementType.USER
UA = PolicyElementType.USER_ATTRIBUTE
OBJECT = PolicyElementType.OBJECT
OA = PolicyElementType.OBJECT_ATTRIBUTE
OP = PolicyElementType.OPERATION
OPSET = PolicyElementType.OPERATION_SET
PC = PolicyElementType.POLICY_CLASS


def add(adapter, pe_type, uid, uuid="pm1", **extra):
    return adapter.add_element(pe_type, uid, uuid, extra)


def uids(elements):
    return [e.unique_identifier for e in elements]


class TestElements:
    """Tests for element storage and lookup."""

    def test_add_element(self, storage_adapter):
        """Test added elements are persisted records."""
        user = add(storage_adapter, USER, "alice", color="red")

        assert user.persisted is True
        assert user.extra_attributes == {"color": "red"}
        assert storage_adapter.element_in_machine(user) is True

    def test_add_existing_merges_attributes(self, storage_adapter):
        """Test re-adding an element merges its attributes."""
        add(storage_adapter, USER, "alice", color="red")
        again = add(storage_adapter, USER, "alice", size="xl")

        assert again.extra_attributes == {"color": "red", "size": "xl"}
        assert len(storage_adapter.find_all_of_type(USER)) == 1

    def test_find_by_type_and_machine(self, storage_adapter):
        """Test finders separate types and machines."""
        add(storage_adapter, USER, "alice")
        add(storage_adapter, USER, "bob", uuid="pm2")
        add(storage_adapter, UA, "staff")

        assert uids(storage_adapter.find_all_of_type(USER)) == ["alice", "bob"]
        assert uids(storage_adapter.find_all_of_type(USER, {"policy_machine_uuid": "pm2"})) == ["bob"]
        assert uids(storage_adapter.find_all_of_type("user_attribute")) == ["staff"]

    def test_find_by_extra_attribute(self, storage_adapter):
        """Test filtering on extra attributes."""
        add(storage_adapter, USER, "alice", color="Red")
        add(storage_adapter, USER, "bob", color="blue")
        add(storage_adapter, USER, "carol")

        assert uids(storage_adapter.find_all_of_type(USER, {"color": "blue"})) == ["bob"]
        assert uids(storage_adapter.find_all_of_type(USER, {"color": "red"})) == []
        assert uids(storage_adapter.find_all_of_type(USER, {"color": "red"}, ignore_case=True)) == ["alice"]
        assert uids(storage_adapter.find_all_of_type(USER, {"color": None})) == ["carol"]

    def test_find_include(self, storage_adapter):
        """Test containment filters."""
        add(storage_adapter, OBJECT, "doc1", tags=["a", "b"])
        add(storage_adapter, OBJECT, "doc2", tags=["b"])

        assert uids(storage_adapter.find_all_of_type(OBJECT, {"tags": {"include": "a"}})) == ["doc1"]

    def test_find_paginated(self, storage_adapter):
        """Test page selection."""
        for uid in ("u1", "u2", "u3"):
            add(storage_adapter, USER, uid)

        assert uids(storage_adapter.find_all_of_type(USER, per_page=2, page=2)) == ["u3"]

    def test_update_merges(self, storage_adapter):
        """Test updates keep existing keys."""
        user = add(storage_adapter, USER, "alice", color="red")

        assert storage_adapter.update(user, {"size": "xl"}) is True
        found = storage_adapter.find_all_of_type(USER)[0]
        assert found.extra_attributes == {"color": "red", "size": "xl"}

    def test_delete_keeps_other_elements(self, storage_adapter):
        """Test deletion removes only the element and its own relations."""
        user = add(storage_adapter, USER, "alice")
        ua = add(storage_adapter, UA, "staff")
        pc = add(storage_adapter, PC, "corp")
        storage_adapter.assign(user, ua)
        storage_adapter.assign(ua, pc)

        assert storage_adapter.delete(ua) is True
        assert storage_adapter.element_in_machine(ua) is False
        assert storage_adapter.is_connected(user, pc) is False
        assert uids(storage_adapter.find_all_of_type(USER)) == ["alice"]
        assert uids(storage_adapter.find_all_of_type(PC)) == ["corp"]

    def test_delete_removes_associations(self, storage_adapter):
        """Test deletion drops associations involving the element."""
        ua = add(storage_adapter, UA, "staff")
        opset = add(storage_adapter, OPSET, "ops")
        op = add(storage_adapter, OP, "read")
        oa = add(storage_adapter, OA, "docs")
        storage_adapter.assign(opset, op)
        storage_adapter.add_association(ua, opset, oa, "pm1")

        storage_adapter.delete(oa)

        assert storage_adapter.associations_with(op) == []

    def test_rejects_unknown_elements(self, storage_adapter):
        """Test operations on elements never stored here."""
        ghost = InMemoryStorageAdapter().add_element(USER, "ghost", "pm1")
        ua = add(storage_adapter, UA, "staff")

        with pytest.raises(InvalidArgumentError):
            storage_adapter.assign(ghost, ua)
        with pytest.raises(InvalidArgumentError):
            storage_adapter.delete(ghost)
        with pytest.raises(InvalidArgumentTypeError):
            storage_adapter.assign("ghost", ua)


class TestAssignments:
    """Tests for assignments and connectivity."""

    @pytest.fixture
    def chain(self, storage_adapter):
        """u -> ua1 -> ua2 -> pc."""
        elements = [
            add(storage_adapter, USER, "u"),
            add(storage_adapter, UA, "ua1"),
            add(storage_adapter, UA, "ua2"),
            add(storage_adapter, PC, "pc"),
        ]
        for src, dst in zip(elements, elements[1:]):
            storage_adapter.assign(src, dst)
        return elements

    def test_connected_transitively(self, storage_adapter, chain):
        """Test reachability along assignments."""
        u, ua1, ua2, pc = chain

        assert storage_adapter.is_connected(u, pc) is True
        assert storage_adapter.is_connected(ua1, ua2) is True

    def test_connected_reflexive(self, storage_adapter, chain):
        """Test every element reaches itself."""
        assert all(storage_adapter.is_connected(e, e) for e in chain)

    def test_connected_directed(self, storage_adapter, chain):
        """Test reachability does not run backwards."""
        u, _, _, pc = chain

        assert storage_adapter.is_connected(pc, u) is False

    def test_unassign(self, storage_adapter, chain):
        """Test removing an assignment breaks reachability."""
        u, ua1, ua2, pc = chain

        assert storage_adapter.unassign(ua1, ua2) is True
        assert storage_adapter.is_connected(u, pc) is False
        assert storage_adapter.is_connected(ua2, pc) is True
        assert storage_adapter.unassign(ua1, ua2) is False

    def test_assign_idempotent(self, storage_adapter, chain):
        """Test repeated assignment stores a single edge."""
        u, ua1, _, _ = chain

        assert storage_adapter.assign(u, ua1) is True
        storage_adapter.unassign(u, ua1)
        assert storage_adapter.is_connected(u, ua1) is False

    def test_user_attributes_for_user(self, storage_adapter, chain):
        """Test user attributes are found several hops deep."""
        u = chain[0]

        assert uids(storage_adapter.user_attributes_for_user(u)) == ["ua1", "ua2"]

    def test_policy_classes_for_object_attribute(self, storage_adapter):
        """Test policy classes reachable from an object."""
        obj = add(storage_adapter, OBJECT, "o")
        oa1 = add(storage_adapter, OA, "oa1")
        oa2 = add(storage_adapter, OA, "oa2")
        pc1 = add(storage_adapter, PC, "pc1")
        pc2 = add(storage_adapter, PC, "pc2")
        add(storage_adapter, PC, "unrelated")
        storage_adapter.assign(obj, oa1)
        storage_adapter.assign(obj, oa2)
        storage_adapter.assign(oa1, pc1)
        storage_adapter.assign(oa2, pc2)

        assert uids(storage_adapter.policy_classes_for_object_attribute(obj)) == ["pc1", "pc2"]
        assert uids(storage_adapter.policy_classes_for_object_attribute(oa2)) == ["pc2"]


class TestCycles:
    """Tests for cycles in the assignment graph."""

    def test_cycles_tolerated(self, storage_adapter):
        """Test traversal terminates on cyclic graphs."""
        a = add(storage_adapter, UA, "a")
        b = add(storage_adapter, UA, "b")
        user = add(storage_adapter, USER, "u")
        storage_adapter.assign(user, a)
        storage_adapter.assign(a, b)
        storage_adapter.assign(b, a)

        assert storage_adapter.is_connected(b, a) is True
        assert storage_adapter.is_connected(a, b) is True
        assert sorted(uids(storage_adapter.user_attributes_for_user(user))) == ["a", "b"]

    def test_cycles_rejected(self, strict_storage_adapter):
        """Test cycle-closing assignments raise when cycles are not tolerated."""
        adapter = strict_storage_adapter
        a = add(adapter, UA, "a")
        b = add(adapter, UA, "b")
        c = add(adapter, UA, "c")
        adapter.assign(a, b)
        adapter.assign(b, c)

        with pytest.raises(CycleError):
            adapter.assign(c, a)
        with pytest.raises(CycleError):
            adapter.assign(a, a)
        assert adapter.is_connected(c, a) is False


class TestLinks:
    """Tests for logical links between policy machines."""

    @pytest.fixture
    def linked(self, storage_adapter):
        """a (pm1) -> b (pm2) -> c (pm3)."""
        a = add(storage_adapter, OA, "a", uuid="pm1")
        b = add(storage_adapter, OA, "b", uuid="pm2")
        c = add(storage_adapter, OA, "c", uuid="pm3")
        storage_adapter.link(a, b)
        storage_adapter.link(b, c)
        return a, b, c

    def test_linked_either_direction(self, storage_adapter, linked):
        """Test links are followed both ways and transitively."""
        a, b, c = linked

        assert storage_adapter.is_linked(a, b) is True
        assert storage_adapter.is_linked(b, a) is True
        assert storage_adapter.is_linked(a, c) is True

    def test_not_linked_to_self(self, storage_adapter, linked):
        """Test an element is never linked to itself."""
        a, _, _ = linked

        assert storage_adapter.is_linked(a, a) is False

    def test_unlink(self, storage_adapter, linked):
        """Test removing a link."""
        a, b, c = linked

        assert storage_adapter.unlink(b, c) is True
        assert storage_adapter.is_linked(a, c) is False
        assert storage_adapter.unlink(b, c) is False

    def test_links_do_not_connect(self, storage_adapter, linked):
        """Test links are invisible to assignment reachability."""
        a, b, _ = linked

        assert storage_adapter.is_connected(a, b) is False

    def test_link_across_adapters(self, storage_adapter):
        """Test link endpoints may be persisted by another adapter."""
        local = add(storage_adapter, OA, "local")
        remote = InMemoryStorageAdapter().add_element(OA, "remote", "pm2")

        assert storage_adapter.link(local, remote) is True
        assert storage_adapter.is_linked(local, remote) is True


class TestAssociations:
    """Tests for association storage."""

    def test_associations_with_nested_operation_sets(self, storage_adapter):
        """Test operations are found through nested operation sets."""
        ua = add(storage_adapter, UA, "staff")
        oa = add(storage_adapter, OA, "docs")
        outer = add(storage_adapter, OPSET, "outer")
        inner = add(storage_adapter, OPSET, "inner")
        read = add(storage_adapter, OP, "read")
        write = add(storage_adapter, OP, "write")
        storage_adapter.assign(outer, inner)
        storage_adapter.assign(inner, read)
        storage_adapter.assign(outer, write)
        storage_adapter.add_association(ua, outer, oa, "pm1")

        found = storage_adapter.associations_with(read)
        assert len(found) == 1
        assert found[0].operation_set == outer
        assert storage_adapter.associations_with(write)[0].object_attribute == oa

    def test_association_replaced(self, storage_adapter):
        """Test adding the same association twice stores it once."""
        ua = add(storage_adapter, UA, "staff")
        oa = add(storage_adapter, OA, "docs")
        opset = add(storage_adapter, OPSET, "ops")
        read = add(storage_adapter, OP, "read")
        storage_adapter.assign(opset, read)

        storage_adapter.add_association(ua, opset, oa, "pm1")
        storage_adapter.add_association(ua, opset, oa, "pm1")

        assert len(storage_adapter.associations_with(read)) == 1


class TestTransactions:
    """Tests for adapter transactions."""

    def test_commit(self, storage_adapter):
        """Test changes persist when the block succeeds."""
        with storage_adapter.transaction():
            add(storage_adapter, USER, "alice")

        assert uids(storage_adapter.find_all_of_type(USER)) == ["alice"]

    def test_rollback(self, storage_adapter):
        """Test every change is undone when the block raises."""
        user = add(storage_adapter, USER, "alice")
        ua = add(storage_adapter, UA, "staff")
        storage_adapter.assign(user, ua)

        with pytest.raises(RuntimeError):
            with storage_adapter.transaction():
                add(storage_adapter, USER, "bob")
                storage_adapter.unassign(user, ua)
                storage_adapter.update(user, {"color": "red"})
                raise RuntimeError("boom")

        assert uids(storage_adapter.find_all_of_type(USER)) == ["alice"]
        assert storage_adapter.is_connected(user, ua) is True
        assert storage_adapter.find_all_of_type(USER)[0].extra_attributes == {}


class TestCapabilities:
    """Tests for optional adapter capabilities."""

    def test_in_memory_capabilities(self):
        """Test the reference adapter only advertises transactions."""
        adapter = InMemoryStorageAdapter()

        assert adapter.supports(AdapterCapability.TRANSACTIONS) is True
        assert adapter.supports(AdapterCapability.IS_PRIVILEGE) is False

    def test_unadvertised_capabilities_raise(self):
        """Test default implementations of optional queries."""
        adapter = InMemoryStorageAdapter()
        user = add(adapter, USER, "u")
        obj = add(adapter, OBJECT, "o")

        with pytest.raises(UnsupportedOperationError):
            adapter.is_privilege(user, "read", obj)
        with pytest.raises(UnsupportedOperationError):
            adapter.scoped_privileges(user, obj)
        with pytest.raises(UnsupportedOperationError):
            adapter.accessible_objects(user, "read")

    def test_closure_capabilities(self):
        """Test the closure adapter advertises every optimized query."""
        adapter = TransitiveClosureStorageAdapter()

        assert all(adapter.supports(capability) for capability in AdapterCapability)

    def test_writer_defaults_to_adapter(self, storage_adapter):
        """Test writes go straight to the adapter outside bulk blocks."""
        assert storage_adapter.writer() is storage_adapter


class TestTransitiveClosure:
    """Tests specific to the closure adapter."""

    @pytest.fixture
    def adapter(self):
        return TransitiveClosureStorageAdapter(tolerate_cycles=True)

    def test_closure_tracks_assignments(self, adapter):
        """Test the closure follows additions made above and below."""
        a = add(adapter, UA, "a")
        b = add(adapter, UA, "b")
        c = add(adapter, UA, "c")
        adapter.assign(b, c)
        adapter.assign(a, b)

        assert adapter.is_connected(a, c) is True

    def test_closure_rebuilt_after_delete(self, adapter):
        """Test deleting a middle element disconnects its ends."""
        a = add(adapter, UA, "a")
        b = add(adapter, UA, "b")
        c = add(adapter, UA, "c")
        adapter.assign(a, b)
        adapter.assign(b, c)

        adapter.delete(b)

        assert adapter.is_connected(a, c) is False

    def test_closure_restored_on_rollback(self, adapter):
        """Test the closure matches the graph after a rollback."""
        a = add(adapter, UA, "a")
        b = add(adapter, UA, "b")

        with pytest.raises(RuntimeError):
            with adapter.transaction():
                adapter.assign(a, b)
                raise RuntimeError("boom")

        assert adapter.is_connected(a, b) is False

    def test_privilege_queries(self, adapter):
        """Test optimized privilege queries on a small graph."""
        user = add(adapter, USER, "u")
        ua = add(adapter, UA, "ua")
        obj = add(adapter, OBJECT, "o")
        oa = add(adapter, OA, "oa")
        opset = add(adapter, OPSET, "ops")
        read = add(adapter, OP, "read")
        adapter.assign(user, ua)
        adapter.assign(obj, oa)
        adapter.assign(opset, read)
        adapter.add_association(ua, opset, oa, "pm1")

        assert adapter.is_privilege(user, read, obj) is True
        assert adapter.is_privilege(user, "read", obj) is True
        assert adapter.is_privilege(user, "write", obj) is False
        assert uids(adapter.scoped_privileges(user, obj)) == ["read"]
        assert uids(adapter.accessible_objects(user, "read")) == ["o"]


class TestFactory:
    """Tests for create_storage_adapter."""

    def test_default_adapter(self):
        """Test the in-memory adapter is the default."""
        adapter = create_storage_adapter(Settings())

        assert type(adapter) is InMemoryStorageAdapter

    def test_closure_adapter(self):
        """Test selecting the closure adapter."""
        adapter = create_storage_adapter(Settings(storage_adapter="closure", tolerate_cycles=False))

        assert isinstance(adapter, TransitiveClosureStorageAdapter)
        assert adapter.tolerate_cycles is False
