"""
Storage factory for creating the configured checkpoint backend.
"""

from config import CheckpointConfig
from resilient_batch.data.storage import KeyValueStore, InMemoryStore, SQLiteStore
from resilient_batch.utils.errors import StorageError


SUPPORTED_BACKENDS = ["memory", "sqlite"]


class StorageFactory:
    """Factory class for creating key/value stores."""

    @staticmethod
    def create_store(config: CheckpointConfig) -> KeyValueStore:
        """
        Create the store selected by configuration.

        Args:
            config: Checkpoint configuration

        Returns:
            Key/value store instance

        Raises:
            StorageError: If an unsupported backend is specified
        """
        backend = config.backend.lower()
        if backend == "sqlite":
            return SQLiteStore(config.sqlite_path, timeout=config.timeout)
        elif backend == "memory":
            return InMemoryStore()
        else:
            raise StorageError(
                f"Unsupported storage backend: {config.backend}",
                {"supported_backends": SUPPORTED_BACKENDS}
            )


def create_store(config: CheckpointConfig) -> KeyValueStore:
    """Shortcut for `StorageFactory.create_store`."""
    return StorageFactory.create_store(config)
