"""
Storage Adapter Factory

Selects the storage adapter backend from settings.
"""

from typing import Optional

from config.settings import Settings, StorageAdapterType, get_settings

from .base import PolicyMachineStorageAdapter
from .closure import TransitiveClosureStorageAdapter
from .in_memory import InMemoryStorageAdapter


def create_storage_adapter(settings: Optional[Settings] = None) -> PolicyMachineStorageAdapter:
    """
    Build the storage adapter configured in settings.

    Args:
        settings: Settings to read (defaults to cached settings)

    Returns:
        A new storage adapter instance
    """
    settings = settings or get_settings()

    match settings.storage_adapter:
        case StorageAdapterType.CLOSURE:
            return TransitiveClosureStorageAdapter(tolerate_cycles=settings.tolerate_cycles)
        case _:
            return InMemoryStorageAdapter(tolerate_cycles=settings.tolerate_cycles)
