"""Root conftest.py for test configuration.

Ensures local src/ directory takes priority over any installed packages.
"""

import logging
import os
import sys
from collections.abc import Iterator
from pathlib import Path

import pytest
import structlog

# Insert local src directory at the beginning of sys.path
# This ensures that the local treesync package is used, not any installed one
_src_dir = Path(__file__).parent.parent / "src"
if str(_src_dir) not in sys.path:
    sys.path.insert(0, str(_src_dir))

# Force reimport of treesync modules if already imported
for module_name in list(sys.modules.keys()):
    if module_name.startswith("treesync"):
        del sys.modules[module_name]


@pytest.fixture(autouse=True)
def _isolate_global_config(
    tmp_path_factory: pytest.TempPathFactory, monkeypatch: pytest.MonkeyPatch
) -> None:
    """Never read the developer's ~/.config/treesync/config.yaml."""
    missing = tmp_path_factory.mktemp("global-config") / "config.yaml"
    monkeypatch.setattr("treesync.config.loader.GLOBAL_CONFIG_PATH", missing)
    for key in list(os.environ):
        if key.startswith("TREESYNC__"):
            monkeypatch.delenv(key)


@pytest.fixture(autouse=True)
def _reset_logging() -> Iterator[None]:
    """Undo configure_logging() calls made by CLI tests.

    A filtering wrapper left at WARNING would hide info events from
    structlog.testing.capture_logs in later tests.
    """
    yield
    structlog.reset_defaults()
    logging.getLogger().handlers.clear()
