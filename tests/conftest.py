"""
pytest configuration for artifact cache tests.

Adds src directory to Python path for imports and resets logging state
between tests.
"""

import logging
import sys
from pathlib import Path

import pytest

# Add src directory to Python path
src_dir = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(src_dir))


@pytest.fixture(autouse=True)
def reset_log_context():
    """Clear contextvar log fields so tests don't see each other's context."""
    from core.logging.context import clear_log_context

    clear_log_context()
    yield
    clear_log_context()


@pytest.fixture
def caplog_debug(caplog):
    """caplog capturing DEBUG and above."""
    caplog.set_level(logging.DEBUG)
    return caplog
