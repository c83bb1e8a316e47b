"""
Checkpoint persistence for resumable batches.

Layout in the key/value store:

    batches/<batch_id>                     batch header
    batch/<batch_id>/items/<index>         one row per work item
    batch/<batch_id>/results/<item_id>     one row per finished item

Result rows are written independently of the header, one per item, so a
crash loses at most the results of items that were still in flight.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from resilient_batch.concurrent.models import (
    BatchJob,
    Checkpoint,
    ProcessingResult,
    WorkItem
)
from resilient_batch.concurrent.scheduler import validate_items
from resilient_batch.data.storage import KeyValueStore
from resilient_batch.utils.logging import get_logger
from resilient_batch.utils.errors import CheckpointError, StorageError, ValidationError


HEADER_PREFIX = "batches/"
BATCH_PREFIX = "batch/"


@dataclass
class LoadedBatch:
    """Everything persisted for one batch."""
    job: BatchJob
    items: List[WorkItem]
    results: List[ProcessingResult]
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def results_by_id(self) -> Dict[str, ProcessingResult]:
        return {result.id: result for result in self.results}


class CheckpointManager:
    """Creates, updates, inspects and removes batch checkpoints."""

    def __init__(self, store: KeyValueStore):
        """
        Args:
            store: Backend holding the checkpoint records
        """
        self.store = store
        self.logger = get_logger(__name__)

    # Key helpers

    @staticmethod
    def _check_batch_id(batch_id: str) -> None:
        if not batch_id or "/" in batch_id:
            raise ValidationError(
                "batch_id must be a non-empty string without '/'",
                {"batch_id": batch_id}
            )

    @staticmethod
    def _header_key(batch_id: str) -> str:
        return f"{HEADER_PREFIX}{batch_id}"

    @staticmethod
    def _batch_prefix(batch_id: str) -> str:
        return f"{BATCH_PREFIX}{batch_id}/"

    @classmethod
    def _items_prefix(cls, batch_id: str) -> str:
        return f"{cls._batch_prefix(batch_id)}items/"

    @classmethod
    def _results_prefix(cls, batch_id: str) -> str:
        return f"{cls._batch_prefix(batch_id)}results/"

    # Operations

    def create_batch(
        self,
        batch_id: str,
        items: List[WorkItem],
        metadata: Optional[Dict[str, Any]] = None
    ) -> BatchJob:
        """
        Persist a new batch before any of its items is processed.

        Header and items are written in a single atomic operation.

        Raises:
            ValidationError: On a malformed batch id or duplicate item ids
            CheckpointError: If the batch already exists or cannot be written
        """
        self._check_batch_id(batch_id)
        validate_items(items)

        if self.store.get(self._header_key(batch_id)) is not None:
            raise CheckpointError(f"Batch {batch_id} already exists", {"batch_id": batch_id})

        # Rows left behind by an interrupted delete or a result saved after it
        stale = self.store.count_prefix(self._batch_prefix(batch_id))
        if stale:
            self.logger.warning(f"Purging {stale} stale records of batch {batch_id}")
            self._purge_rows(batch_id)

        job = BatchJob(
            batch_id=batch_id,
            items=list(items),
            created_at=datetime.now(),
            metadata=dict(metadata or {})
        )

        entries: Dict[str, Any] = {self._header_key(batch_id): job.header_dict()}
        items_prefix = self._items_prefix(batch_id)
        for index, item in enumerate(job.items):
            entries[f"{items_prefix}{index:08d}"] = item.to_dict()

        try:
            self.store.put_many(entries)
        except StorageError as e:
            raise CheckpointError(
                f"Failed to create batch {batch_id}",
                {"batch_id": batch_id, "error": str(e)}
            )

        self.logger.info(f"Created checkpoint for batch {batch_id} with {job.total_items} items")
        return job

    def save_result(self, batch_id: str, item_id: str, result: ProcessingResult) -> None:
        """
        Persist one item's result. Overwrites any earlier result for the id.

        Raises:
            ValidationError: For cancelled results, which are never persisted
            CheckpointError: If the write fails
        """
        if result.is_cancelled:
            raise ValidationError(
                "Cancelled results are not persisted",
                {"batch_id": batch_id, "item_id": item_id}
            )

        key = f"{self._results_prefix(batch_id)}{item_id}"
        try:
            self.store.put(key, result.to_dict())
        except StorageError as e:
            raise CheckpointError(
                f"Failed to save result for item {item_id}",
                {"batch_id": batch_id, "item_id": item_id, "error": str(e)}
            )

        self.logger.debug(f"Saved result for {batch_id}/{item_id}")

    def get_checkpoint(self, batch_id: str) -> Optional[Checkpoint]:
        """Progress view of one batch, or None if it does not exist."""
        header = self.store.get(self._header_key(batch_id))
        if header is None:
            return None
        return self._checkpoint_from_header(header)

    def _checkpoint_from_header(self, header: Dict[str, Any]) -> Checkpoint:
        batch_id = header["batch_id"]
        return Checkpoint(
            batch_id=batch_id,
            total_items=header["total_items"],
            completed_items=self.store.count_prefix(self._results_prefix(batch_id)),
            timestamp=datetime.fromisoformat(header["created_at"]),
            metadata=header.get("metadata", {})
        )

    def get_pending_batches(self) -> List[Checkpoint]:
        """Batches with fewer results than items, oldest first."""
        checkpoints = [
            self._checkpoint_from_header(header)
            for _, header in self.store.scan_prefix(HEADER_PREFIX)
        ]
        pending = [cp for cp in checkpoints if cp.completed_items < cp.total_items]
        pending.sort(key=lambda cp: cp.timestamp)
        return pending

    def is_complete(self, batch_id: str) -> bool:
        checkpoint = self.get_checkpoint(batch_id)
        if checkpoint is None:
            raise CheckpointError(f"Batch {batch_id} not found", {"batch_id": batch_id})
        return checkpoint.is_complete

    def load_batch(self, batch_id: str) -> LoadedBatch:
        """
        Load header, items and persisted results of a batch.

        Raises:
            CheckpointError: If the batch does not exist
        """
        header = self.store.get(self._header_key(batch_id))
        if header is None:
            raise CheckpointError(f"Batch {batch_id} not found", {"batch_id": batch_id})

        items = [
            WorkItem.from_dict(value)
            for _, value in self.store.scan_prefix(self._items_prefix(batch_id))
        ]
        stored = {
            value["id"]: ProcessingResult.from_dict(value)
            for _, value in self.store.scan_prefix(self._results_prefix(batch_id))
        }

        known_ids = {item.id for item in items}
        orphans = set(stored) - known_ids
        if orphans:
            self.logger.warning(f"Batch {batch_id} has results for unknown items: {sorted(orphans)}")

        results = [stored[item.id] for item in items if item.id in stored]

        metadata = header.get("metadata", {})
        job = BatchJob(
            batch_id=batch_id,
            items=items,
            created_at=datetime.fromisoformat(header["created_at"]),
            metadata=metadata
        )
        return LoadedBatch(job=job, items=items, results=results, metadata=metadata)

    def get_unprocessed_items(self, batch_id: str) -> List[WorkItem]:
        """Items of the batch without a persisted result, in original order."""
        loaded = self.load_batch(batch_id)
        processed_ids = {result.id for result in loaded.results}
        return [item for item in loaded.items if item.id not in processed_ids]

    def delete_batch(self, batch_id: str) -> bool:
        """
        Remove a batch header, its items and its results.

        Returns:
            True if the batch existed
        """
        self._check_batch_id(batch_id)
        # Rows first, header last
        removed = self._purge_rows(batch_id)
        existed = self.store.delete(self._header_key(batch_id))
        self.logger.info(f"Deleted batch {batch_id} ({removed} records)")
        return existed

    def _purge_rows(self, batch_id: str) -> int:
        try:
            return self.store.delete_prefix(self._batch_prefix(batch_id))
        except StorageError as e:
            raise CheckpointError(
                f"Failed to delete records of batch {batch_id}",
                {"batch_id": batch_id, "error": str(e)}
            )

    def clear_all(self) -> None:
        """Remove every checkpoint in the store."""
        self.store.delete_prefix(BATCH_PREFIX)
        headers = self.store.delete_prefix(HEADER_PREFIX)
        self.logger.info(f"Cleared {headers} checkpoints")
