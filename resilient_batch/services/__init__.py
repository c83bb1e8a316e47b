"""
Service layer: checkpoint persistence and batch processing entry points.
"""

from .checkpoint_manager import CheckpointManager, LoadedBatch
from .batch_processor import (
    process_batch,
    create_work_items,
    generate_batch_id,
    ResumableBatchRunner,
    BatchRun
)

__all__ = [
    'CheckpointManager',
    'LoadedBatch',
    'process_batch',
    'create_work_items',
    'generate_batch_id',
    'ResumableBatchRunner',
    'BatchRun'
]
