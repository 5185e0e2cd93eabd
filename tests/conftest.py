import sys
from pathlib import Path

import pytest

# Add the src directory to the path so we can import the package
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from pg_mirror.backend import reset_backend  # noqa: E402


@pytest.fixture(autouse=True)
def fresh_backend():
    """Every test starts without a cached execution mode"""
    reset_backend()
    yield
    reset_backend()
