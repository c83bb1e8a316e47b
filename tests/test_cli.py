"""
Tests for the checkpoint administration command line.
"""

import json
import logging

import pytest

from resilient_batch.concurrent.models import ItemStatus, ProcessingResult
from resilient_batch.data.storage import SQLiteStore
from resilient_batch.main import create_cli_parser, format_output, main
from resilient_batch.services.batch_processor import create_work_items
from resilient_batch.services.checkpoint_manager import CheckpointManager


@pytest.fixture(autouse=True)
def restore_root_logging():
    root_logger = logging.getLogger()
    handlers = list(root_logger.handlers)
    level = root_logger.level
    yield
    root_logger.handlers[:] = handlers
    root_logger.setLevel(level)


@pytest.fixture
def cli_config(tmp_path):
    db_path = str(tmp_path / "checkpoints.db")
    config_path = tmp_path / "config.json"
    config_path.write_text(json.dumps({
        "checkpoint": {"backend": "sqlite", "sqlite_path": db_path},
        "logging": {"log_level": "CRITICAL", "log_file": None},
    }), encoding="utf-8")
    return str(config_path), db_path


@pytest.fixture
def seeded(cli_config):
    config_path, db_path = cli_config
    store = SQLiteStore(db_path)
    manager = CheckpointManager(store)
    manager.create_batch("batch-a", create_work_items(range(3)), {"file_name": "a.csv"})
    manager.create_batch("batch-b", create_work_items(range(1)))
    manager.save_result(
        "batch-a", "item-0",
        ProcessingResult(id="item-0", success=True, status=ItemStatus.SUCCEEDED, attempts=1)
    )
    manager.save_result(
        "batch-a", "item-2",
        ProcessingResult(id="item-2", success=False, status=ItemStatus.FAILED, attempts=1, error="bad")
    )
    manager.save_result(
        "batch-b", "item-0",
        ProcessingResult(id="item-0", success=True, status=ItemStatus.SUCCEEDED, attempts=1)
    )
    store.close()
    return config_path, db_path


def run_json(capsys, *args):
    code = main(list(args) + ["--output", "json"])
    return code, json.loads(capsys.readouterr().out)


class TestCheckpointCli:
    """End-to-end runs of `main` against a SQLite store."""

    def test_list_pending(self, seeded, capsys):
        config_path, _ = seeded

        code, output = run_json(capsys, "--config", config_path, "--list-pending")

        assert code == 0
        assert [entry["batch_id"] for entry in output] == ["batch-a"]
        assert output[0]["completed_items"] == 2
        assert output[0]["remaining_items"] == 1
        assert output[0]["metadata"] == {"file_name": "a.csv"}

    def test_show(self, seeded, capsys):
        config_path, _ = seeded

        code, output = run_json(capsys, "-c", config_path, "--show", "batch-a")

        assert code == 0
        assert output["total_items"] == 3
        assert output["succeeded"] == 1
        assert output["failed"] == 1
        assert output["unprocessed_ids"] == ["item-1"]

    def test_show_unknown_batch_fails(self, seeded, capsys):
        config_path, _ = seeded

        code, output = run_json(capsys, "-c", config_path, "--show", "batch-missing")

        assert code == 1
        assert "batch-missing" in output["error"]

    def test_discard(self, seeded, capsys):
        config_path, db_path = seeded

        code, output = run_json(capsys, "-c", config_path, "--discard", "batch-a")
        assert code == 0
        assert output == {"batch_id": "batch-a", "deleted": True}

        store = SQLiteStore(db_path)
        try:
            assert CheckpointManager(store).get_checkpoint("batch-a") is None
            assert store.scan_prefix("batch/batch-a/") == []
        finally:
            store.close()

    def test_clear_all_then_text_listing(self, seeded, capsys):
        config_path, _ = seeded

        assert main(["-c", config_path, "--clear-all"]) == 0
        capsys.readouterr()

        assert main(["-c", config_path, "--list-pending"]) == 0
        assert "No pending batches" in capsys.readouterr().out

    def test_invalid_config_returns_error_code(self, tmp_path, capsys):
        config_path = tmp_path / "config.json"
        config_path.write_text(json.dumps({"checkpoint": {"backend": "redis"}}), encoding="utf-8")

        code, output = run_json(capsys, "-c", str(config_path), "--list-pending")

        assert code == 1
        assert list(output) == ["error"]

    def test_operation_is_required(self):
        parser = create_cli_parser()
        with pytest.raises(SystemExit):
            parser.parse_args([])
        with pytest.raises(SystemExit):
            parser.parse_args(["--list-pending", "--clear-all"])

    def test_format_output_text(self):
        text = format_output({"batch_id": "b", "unprocessed_ids": ["x", "y"], "metadata": {"k": 1}}, "text")
        assert "batch_id: b" in text
        assert "unprocessed_ids: x, y" in text
        assert "  k: 1" in text
