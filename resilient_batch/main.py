"""
Command-line interface for inspecting and discarding batch checkpoints.
"""

import sys
import json
import argparse
from typing import Any, Dict, List, Optional

from resilient_batch.concurrent.models import ItemStatus
from resilient_batch.data.storage import KeyValueStore
from resilient_batch.data.storage_factory import create_store
from resilient_batch.services.checkpoint_manager import CheckpointManager
from resilient_batch.utils.logging import get_logger, setup_logging
from resilient_batch.utils.errors import BatchEngineError
from config import ConfigManager, SystemConfig


logger = get_logger(__name__)


class CheckpointAdminApp:
    """Wires configuration, storage and the checkpoint manager for the CLI."""

    def __init__(self, config_path: Optional[str] = None):
        self.config_path = config_path
        self.config_manager: Optional[ConfigManager] = None
        self.config: Optional[SystemConfig] = None
        self.store: Optional[KeyValueStore] = None
        self.checkpoint_manager: Optional[CheckpointManager] = None

    def initialize(self, log_level: Optional[str] = None) -> None:
        self.config_manager = ConfigManager(self.config_path) if self.config_path else ConfigManager()
        self.config = self.config_manager.load_config()

        logging_config = self.config.logging
        setup_logging(
            log_level=log_level or logging_config.log_level,
            log_file=logging_config.log_file,
            retention_days=logging_config.retention_days
        )

        self.store = create_store(self.config.checkpoint)
        self.checkpoint_manager = CheckpointManager(self.store)
        logger.info(f"Using {self.config.checkpoint.backend} checkpoint store")

    def list_pending(self) -> List[Dict[str, Any]]:
        return [
            {
                "batch_id": cp.batch_id,
                "created_at": cp.timestamp.isoformat(),
                "completed_items": cp.completed_items,
                "total_items": cp.total_items,
                "remaining_items": cp.remaining_items,
                "metadata": cp.metadata,
            }
            for cp in self.checkpoint_manager.get_pending_batches()
        ]

    def show(self, batch_id: str) -> Dict[str, Any]:
        loaded = self.checkpoint_manager.load_batch(batch_id)
        done_ids = {r.id for r in loaded.results}
        return {
            "batch_id": batch_id,
            "created_at": loaded.job.created_at.isoformat(),
            "total_items": loaded.job.total_items,
            "completed_items": len(loaded.results),
            "succeeded": sum(1 for r in loaded.results if r.status == ItemStatus.SUCCEEDED),
            "failed": sum(1 for r in loaded.results if r.status == ItemStatus.FAILED),
            "unprocessed_ids": [item.id for item in loaded.items if item.id not in done_ids],
            "metadata": loaded.metadata,
        }

    def discard(self, batch_id: str) -> Dict[str, Any]:
        existed = self.checkpoint_manager.delete_batch(batch_id)
        return {"batch_id": batch_id, "deleted": existed}

    def clear_all(self) -> Dict[str, Any]:
        self.checkpoint_manager.clear_all()
        return {"cleared": True}

    def close(self) -> None:
        if self.store is not None:
            self.store.close()


def create_cli_parser() -> argparse.ArgumentParser:
    """Create command-line interface parser."""
    parser = argparse.ArgumentParser(
        prog='resilient_batch',
        description='Resilient Batch - checkpoint administration',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s --list-pending                 # List batches with unprocessed items
  %(prog)s --show batch-1700000000000     # Show one batch
  %(prog)s --discard batch-1700000000000  # Delete a batch checkpoint
  %(prog)s --clear-all                    # Delete every checkpoint
  %(prog)s --config custom.json --list-pending
        """
    )

    parser.add_argument(
        '--config', '-c',
        type=str,
        help='Path to configuration file (default: config.json)'
    )

    operation_group = parser.add_mutually_exclusive_group(required=True)

    operation_group.add_argument(
        '--list-pending',
        action='store_true',
        help='List incomplete batches, oldest first'
    )

    operation_group.add_argument(
        '--show',
        metavar='BATCH_ID',
        help='Show progress of one batch'
    )

    operation_group.add_argument(
        '--discard',
        metavar='BATCH_ID',
        help='Delete a batch and all of its results'
    )

    operation_group.add_argument(
        '--clear-all',
        action='store_true',
        help='Delete every checkpoint in the store'
    )

    parser.add_argument(
        '--output', '-o',
        type=str,
        choices=['json', 'text'],
        default='text',
        help='Output format (default: text)'
    )

    parser.add_argument(
        '--log-level',
        type=str,
        choices=['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL'],
        help='Override log level from configuration'
    )

    return parser


def format_output(data: Any, format_type: str) -> str:
    """Format output data according to specified format."""
    if format_type == 'json':
        return json.dumps(data, indent=2, default=str, ensure_ascii=False)

    if isinstance(data, dict):
        lines = []
        for key, value in data.items():
            if isinstance(value, dict):
                lines.append(f"{key}:")
                for sub_key, sub_value in value.items():
                    lines.append(f"  {sub_key}: {sub_value}")
            elif isinstance(value, list):
                lines.append(f"{key}: {', '.join(map(str, value))}")
            else:
                lines.append(f"{key}: {value}")
        return '\n'.join(lines)
    elif isinstance(data, list):
        if not data:
            return "No pending batches"
        return '\n\n'.join(format_output(entry, format_type) for entry in data)
    return str(data)


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point. Returns the process exit code."""
    parser = create_cli_parser()
    args = parser.parse_args(argv)

    app = CheckpointAdminApp(config_path=args.config)
    try:
        app.initialize(log_level=args.log_level)

        if args.list_pending:
            result: Any = app.list_pending()
        elif args.show:
            result = app.show(args.show)
        elif args.discard:
            result = app.discard(args.discard)
        else:
            result = app.clear_all()

        print(format_output(result, args.output))
        return 0

    except BatchEngineError as e:
        # stdout carries only the formatted error
        logger.debug(f"Operation failed: {e}", exc_info=True)
        print(format_output({"error": str(e)}, args.output))
        return 1
    finally:
        app.close()


if __name__ == "__main__":
    sys.exit(main())
