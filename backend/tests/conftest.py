"""
Pytest configuration for the worker test suite.
"""

import sys
from pathlib import Path

import pytest

# Add backend to Python path for test imports
backend_path = Path(__file__).parent.parent
if str(backend_path) not in sys.path:
    sys.path.insert(0, str(backend_path))

from mkve_worker.config import DEFAULT_WORKER_CONFIG
from mkve_worker.execution.simulated import SimulatedEngine, SimulatedMedia

# 2.19 GiB, the size of the reference MKV input
MOVIE_SIZE = int(2.19 * 1024 ** 3)


def pytest_configure(config):
    """Configure pytest markers."""
    config.addinivalue_line(
        "markers", "websocket: marks tests that drive the WebSocket surface"
    )


@pytest.fixture
def worker_config():
    return DEFAULT_WORKER_CONFIG


@pytest.fixture
def engine():
    """Simulated engine that knows movie.mkv and never touches disk."""
    return SimulatedEngine(
        media={"movie.mkv": SimulatedMedia(size_bytes=MOVIE_SIZE)},
        use_filesystem=False,
    )
