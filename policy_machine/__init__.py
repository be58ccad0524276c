"""
Policy Machine

Attribute-based access control following the NIST Next Generation Access
Control (NGAC) model.
"""

from .exceptions import PolicyMachineError
from .models.elements import PolicyElementType
from .security import (
    Association,
    Object,
    ObjectAttribute,
    Operation,
    OperationSet,
    PolicyClass,
    PolicyElement,
    PolicyMachine,
    Privilege,
    Prohibition,
    User,
    UserAttribute,
)
from .storage import (
    AdapterCapability,
    InMemoryStorageAdapter,
    PolicyMachineStorageAdapter,
    TransitiveClosureStorageAdapter,
)

__version__ = "0.1.0"

__all__ = [
    "PolicyMachine",
    "PolicyMachineError",
    "PolicyElementType",
    "PolicyElement",
    "User",
    "UserAttribute",
    "Object",
    "ObjectAttribute",
    "Operation",
    "OperationSet",
    "PolicyClass",
    "Prohibition",
    "Association",
    "Privilege",
    "AdapterCapability",
    "PolicyMachineStorageAdapter",
    "InMemoryStorageAdapter",
    "TransitiveClosureStorageAdapter",
]
