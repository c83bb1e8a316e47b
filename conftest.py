"""
Pytest configuration and fixtures for resilient batch tests.
"""

import pytest
from hypothesis import settings, Verbosity
import tempfile
import shutil
from pathlib import Path
import os

# Configure Hypothesis for faster test runs
settings.register_profile("fast", max_examples=5, deadline=5000, verbosity=Verbosity.quiet)
settings.register_profile("thorough", max_examples=100, deadline=30000, verbosity=Verbosity.normal)

# Use fast profile by default
settings.load_profile(os.environ.get("HYPOTHESIS_PROFILE", "fast"))


@pytest.fixture(scope="session")
def temp_db_dir():
    """Create a temporary directory for test databases."""
    temp_dir = tempfile.mkdtemp(prefix="resilient_batch_test_")
    yield temp_dir
    shutil.rmtree(temp_dir, ignore_errors=True)


@pytest.fixture(scope="function")
def temp_db_path(temp_db_dir, request):
    """Create a temporary database path for each test."""
    db_path = Path(temp_db_dir) / f"test_{os.getpid()}_{request.node.name}.db"
    yield str(db_path)
    # Cleanup is handled by temp_db_dir fixture


@pytest.fixture(scope="session")
def test_config():
    """Provide test configuration."""
    return {
        "processing": {
            "concurrency": 3,
            "stop_on_error": False,
            "delay_between_requests": 0.0,
            "retry": {
                "max_attempts": 2,
                "base_delay": 0.01,
                "max_delay": 0.05
            }
        },
        "checkpoint": {
            "backend": "memory"
        },
        "logging": {
            "log_level": "WARNING",
            "log_file": None
        }
    }


def pytest_configure(config):
    """Configure pytest with custom settings."""
    import logging
    logging.getLogger("resilient_batch").setLevel(logging.WARNING)
    logging.getLogger("hypothesis").setLevel(logging.WARNING)


def pytest_collection_modifyitems(config, items):
    """Modify test collection to add markers."""
    for item in items:
        # Mark property-based tests
        if "property" in item.name.lower() or any(
            marker.name == "given" for marker in item.iter_markers()
        ):
            item.add_marker(pytest.mark.property)

        if "integration" in item.fspath.basename:
            item.add_marker(pytest.mark.integration)
        else:
            item.add_marker(pytest.mark.unit)
