"""
Policy Machine Configuration Module

Provides centralized configuration management using Pydantic Settings.
"""

from .settings import Environment, Settings, StorageAdapterType, get_settings

__all__ = ["Environment", "Settings", "StorageAdapterType", "get_settings"]
