from __future__ import annotations

import sys
from pathlib import Path

import pytest

PROJECT_ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(PROJECT_ROOT / "src"))


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture(autouse=True)
def _restore_log_sink():
    """Commands reconfigure loguru against the captured stream; point it back afterwards."""
    yield
    from loguru import logger

    logger.remove()
    logger.add(sys.__stderr__, level="INFO")
