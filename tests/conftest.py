"""Pytest configuration and fixtures for timeshelf tests."""

import logging
from pathlib import Path

import pytest
from hypothesis import settings, Phase

from timeshelf.destination import MARKER_FILENAME
from timeshelf.logger import LOGGER_NAME

# Configure hypothesis to use fewer examples for faster test runs
# Disable shrinking phase to speed up tests further
settings.register_profile(
    "fast",
    max_examples=2,
    deadline=10000,
    phases=[Phase.explicit, Phase.reuse, Phase.generate]
)
settings.register_profile("ci", max_examples=50, deadline=10000)
settings.register_profile("dev", max_examples=2, deadline=10000)

# Use the fast profile by default
settings.load_profile("fast")


@pytest.fixture
def backup_root(tmp_path: Path) -> Path:
    """A destination folder that already carries its backup marker."""
    root = tmp_path / "backups"
    root.mkdir()
    (root / MARKER_FILENAME).touch()
    return root


@pytest.fixture
def source_dir(tmp_path: Path) -> Path:
    """A small folder to back up."""
    src = tmp_path / "source"
    src.mkdir()
    (src / "a.txt").write_text("alpha")
    (src / "sub").mkdir()
    (src / "sub" / "b.txt").write_text("beta")
    return src


@pytest.fixture(autouse=True)
def reset_timeshelf_logger():
    """Drop handlers installed by setup_logging so tests stay independent."""
    yield
    logger = logging.getLogger(LOGGER_NAME)
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()
