import logging
import os
import shutil

# Use litellm's bundled model cost map; its remote fetch races with import when offline.
os.environ.setdefault("LITELLM_LOCAL_MODEL_COST_MAP", "True")

import pytest

from shellmate import supervisor


@pytest.fixture(autouse=True)
def _no_signal_handlers(monkeypatch):
    """Keep Session objects created in tests from replacing pytest's SIGINT handler."""
    monkeypatch.setattr(supervisor, "_shutdown_hook_installed", True)


@pytest.fixture(autouse=True)
def _reset_package_logger():
    logger = logging.getLogger("shellmate")
    handlers, level, propagate = logger.handlers[:], logger.level, logger.propagate
    yield
    logger.handlers[:] = handlers
    logger.setLevel(level)
    logger.propagate = propagate


@pytest.fixture
def bash():
    path = shutil.which("bash")
    if path is None:
        pytest.skip("bash not found on PATH")
    return path
