"""
Root conftest.py for pytest configuration
"""

import sys
from pathlib import Path

import pytest

PROJECT_ROOT = Path(__file__).parent.absolute()
SRC_PATH = PROJECT_ROOT / "src"

# Add src directory to path
sys.path.insert(0, str(SRC_PATH))


@pytest.fixture(autouse=True)
def _reset_global_state():
    """Clear the process-wide cache and profiler between tests."""
    from emberjit.jit import core
    from emberjit.jit.cache import get_cache

    yield
    get_cache().clear()
    core._profiler.clear()
