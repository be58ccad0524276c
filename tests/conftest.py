"""
Test Configuration and Fixtures

Shared fixtures for policy machine tests.
"""

import itertools
import os

import pytest

# Set test environment
os.environ["ENVIRONMENT"] = "test"
os.environ["AUDIT_ENABLED"] = "false"


@pytest.fixture(params=["in_memory", "closure"])
def storage_adapter(request):
    """Every storage adapter shipped with the package."""
    from policy_machine.storage import InMemoryStorageAdapter, TransitiveClosureStorageAdapter

    adapters = {
        "in_memory": InMemoryStorageAdapter,
        "closure": TransitiveClosureStorageAdapter,
    }
    return adapters[request.param](tolerate_cycles=True)


@pytest.fixture
def strict_storage_adapter(storage_adapter):
    """Adapter of the same kind that rejects cycle-closing assignments."""
    return type(storage_adapter)(tolerate_cycles=False)


@pytest.fixture
def policy_machine(storage_adapter):
    """Policy machine backed by the parametrized adapter."""
    from policy_machine import PolicyMachine

    return PolicyMachine(name="test_pm", uuid="pm-test", storage_adapter=storage_adapter)


@pytest.fixture
def other_policy_machine(storage_adapter):
    """Second policy machine sharing the adapter of ``policy_machine``."""
    from policy_machine import PolicyMachine

    return PolicyMachine(name="other_pm", uuid="pm-other", storage_adapter=storage_adapter)


@pytest.fixture
def audited_policy_machine(storage_adapter):
    """Policy machine recording an audit trail."""
    from config.settings import Settings
    from policy_machine import PolicyMachine

    settings = Settings(audit_enabled=True)
    return PolicyMachine(
        name="audited_pm",
        uuid="pm-audited",
        storage_adapter=storage_adapter,
        settings=settings,
    )


@pytest.fixture
def make_operation_set(policy_machine):
    """
    Factory for operation sets.

    Creates a fresh operation set in the machine and assigns every given
    operation to it.
    """
    counter = itertools.count(1)

    def make(*operations, machine=None):
        machine = machine or policy_machine
        operation_set = machine.create_operation_set(f"opset_{next(counter)}")
        for operation in operations:
            machine.add_assignment(operation_set, operation)
        return operation_set

    return make


def privilege_triples(privileges):
    """Reduce privileges to (user, operation, object) identifier triples."""
    return {
        (
            privilege.user_or_attribute.unique_identifier,
            privilege.operation.unique_identifier,
            privilege.object_or_attribute.unique_identifier,
        )
        for privilege in privileges
    }


@pytest.fixture
def triples():
    """Expose ``privilege_triples`` to test modules."""
    return privilege_triples
