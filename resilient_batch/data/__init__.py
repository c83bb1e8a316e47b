"""
Storage backends for checkpoint persistence.
"""

from .storage import KeyValueStore, InMemoryStore, SQLiteStore, prefix_upper_bound
from .storage_factory import StorageFactory, create_store

__all__ = [
    'KeyValueStore',
    'InMemoryStore',
    'SQLiteStore',
    'prefix_upper_bound',
    'StorageFactory',
    'create_store'
]
