"""
Policy Machine Storage Package

Storage adapter contract, reference adapters and bulk mutation buffering.
"""

from .base import AdapterCapability, PolicyMachineStorageAdapter
from .buffer import MutationBuffer, current_buffer
from .closure import TransitiveClosureStorageAdapter
from .factory import create_storage_adapter
from .in_memory import InMemoryStorageAdapter

__all__ = [
    "AdapterCapability",
    "PolicyMachineStorageAdapter",
    "InMemoryStorageAdapter",
    "TransitiveClosureStorageAdapter",
    "MutationBuffer",
    "current_buffer",
    "create_storage_adapter",
]
