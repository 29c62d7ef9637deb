"""Backup destination handling for timeshelf.

This module provides the Destination class, which owns the on-disk layout
of a backup destination: the backup.marker safety sentinel, the
backup.inprogress lock file, the snapshot directories and the ``latest``
symlink. Snapshot deletion lives here because it must re-check the marker
every time.
"""

from typing import Optional
import logging
import os
import posixpath
import shlex

from timeshelf.catalog import Snapshot, SnapshotCatalog
from timeshelf.config import TimeshelfError


logger = logging.getLogger(__name__)


MARKER_FILENAME = "backup.marker"
INPROGRESS_FILENAME = "backup.inprogress"
LATEST_LINK_NAME = "latest"


class DestinationError(TimeshelfError):
    """Raised when backup destination is invalid."""
    pass


class SafetyCheckError(DestinationError):
    """Raised when a folder does not carry the backup marker."""
    pass


class SourceUnavailableError(TimeshelfError):
    """Raised when the folder to back up does not exist."""
    pass


def backup_marker_path(folder: str) -> str:
    """Path of the marker file for a destination folder."""
    return posixpath.join(folder, MARKER_FILENAME)


def check_source(transport, path: str) -> None:
    """
    Make sure the source folder exists before anything is written.

    Raises:
        SourceUnavailableError: If the source is missing
    """
    if not transport.path_exists(path):
        raise SourceUnavailableError(
            f'Source folder "{transport.describe(path)}" does not exist - aborting.'
        )


class Destination:
    """
    A backup destination root reached through a transport.

    A folder is only treated as a destination when ``backup.marker`` exists
    at its root. The marker is never created implicitly.
    """

    def __init__(self, transport, root: str):
        """
        Args:
            transport: Transport reaching the destination
            root: Destination root directory
        """
        self.transport = transport
        self.root = root
        self.catalog = SnapshotCatalog(transport, root)

    @property
    def marker_path(self) -> str:
        return backup_marker_path(self.root)

    @property
    def inprogress_path(self) -> str:
        return posixpath.join(self.root, INPROGRESS_FILENAME)

    @property
    def latest_path(self) -> str:
        return posixpath.join(self.root, LATEST_LINK_NAME)

    def describe(self, path: Optional[str] = None) -> str:
        return self.transport.describe(self.root if path is None else path)

    def snapshot_path(self, snapshot_id: str) -> str:
        return self.catalog.snapshot_path(snapshot_id)

    def has_marker(self, folder: Optional[str] = None) -> bool:
        """Whether the marker exists in folder (default: the root)."""
        if folder is None:
            folder = self.root
        return self.transport.path_exists(backup_marker_path(folder))

    def ensure_marker(self, create: bool = False) -> None:
        """
        Verify the root is a backup destination, or make it one.

        Args:
            create: Create the root and its marker when missing

        Raises:
            SafetyCheckError: If the marker is missing and create is False
        """
        if self.has_marker():
            return

        if not create:
            command = (
                f"mkdir -p -- {shlex.quote(self.root)} ; "
                f"touch {shlex.quote(self.marker_path)}"
            )
            raise SafetyCheckError(
                "Safety check failed - the destination does not appear to be a "
                "backup folder or drive (marker file not found).\n"
                "If it is indeed a backup folder, run again with --yes, "
                "or add the marker file manually with:\n\n"
                f"    {command}\n"
            )

        logger.info(f"Creating backup destination {self.describe()}")
        self.transport.mkdir_all(self.root)
        self.transport.write_text(self.marker_path, "")

    def expire(self, snapshot: Snapshot) -> None:
        """
        Delete a snapshot directory for good.

        The folder holding the snapshot must still carry the marker; if it
        does not (unmounted drive, wrong folder) nothing is deleted.

        Raises:
            SafetyCheckError: If the marker is gone
        """
        parent = posixpath.dirname(snapshot.path)
        if not self.has_marker(parent):
            raise SafetyCheckError(
                f"{self.describe(snapshot.path)} is not on a backup destination - aborting."
            )

        logger.info(f"Expiring {self.describe(snapshot.path)}")
        self.transport.remove_tree(snapshot.path)

    def update_latest(self, snapshot_id: str) -> None:
        """
        Point the ``latest`` symlink at a snapshot, relative to the root.

        The new link is built under a temporary name and renamed over
        ``latest``, so the old link stays in place until the switch.
        """
        temp_path = f"{self.latest_path}.tmp-{os.getpid()}"
        self.transport.remove_file(temp_path)
        self.transport.create_symlink(snapshot_id, temp_path)
        try:
            self.transport.replace(temp_path, self.latest_path)
        except TimeshelfError:
            self.transport.remove_file(temp_path)
            raise

    def latest_target(self) -> Optional[str]:
        """Name the ``latest`` symlink points at, if any."""
        return self.transport.read_link(self.latest_path)
