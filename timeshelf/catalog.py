"""Snapshot catalog for timeshelf.

This module lists the snapshot directories of a destination and parses
their names into timestamps. Listing is read-only.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional
import logging
import posixpath
import time


logger = logging.getLogger(__name__)


# Snapshot directory names, local time
TIMESTAMP_FORMAT = "%Y-%m-%d-%H%M%S"

# Shell glob selecting snapshot candidates
SNAPSHOT_GLOB = "????-??-??-??????"


def parse_snapshot_timestamp(snapshot_id: str) -> Optional[int]:
    """
    Parse a YYYY-MM-DD-HHMMSS name into epoch seconds (local time).

    Returns:
        Epoch seconds, or None if the name is not a valid date
    """
    try:
        parsed = datetime.strptime(snapshot_id, TIMESTAMP_FORMAT)
    except ValueError:
        return None
    return int(time.mktime(parsed.timetuple()))


def generate_snapshot_id(now: Optional[datetime] = None) -> str:
    """Return the snapshot id for the given moment (default: now)."""
    if now is None:
        now = datetime.now()
    return now.strftime(TIMESTAMP_FORMAT)


@dataclass(frozen=True)
class Snapshot:
    """One timestamped snapshot directory."""
    id: str
    path: str
    timestamp: Optional[int]


@dataclass
class CatalogListing:
    """Result of scanning a destination."""
    snapshots: List[Snapshot] = field(default_factory=list)  # oldest first
    skipped: List[Snapshot] = field(default_factory=list)  # matched glob, bad date

    def __len__(self) -> int:
        return len(self.snapshots)

    def __iter__(self):
        return iter(self.snapshots)

    @property
    def oldest(self) -> Optional[Snapshot]:
        return self.snapshots[0] if self.snapshots else None

    @property
    def newest(self) -> Optional[Snapshot]:
        return self.snapshots[-1] if self.snapshots else None

    def oldest_first(self) -> List[Snapshot]:
        return list(self.snapshots)

    def newest_first(self) -> List[Snapshot]:
        return list(reversed(self.snapshots))

    def ids(self) -> List[str]:
        return [s.id for s in self.snapshots]

    def get(self, snapshot_id: str) -> Optional[Snapshot]:
        for snapshot in self.snapshots:
            if snapshot.id == snapshot_id:
                return snapshot
        return None


class SnapshotCatalog:
    """
    Lists snapshot directories directly under a destination root.

    Directories whose names do not match the snapshot glob are ignored.
    Names that match the glob but are not real dates are reported as
    skipped: they never take part in retention and are never deleted.
    """

    def __init__(self, transport, root: str):
        """
        Args:
            transport: Transport used to reach the destination
            root: Destination root directory
        """
        self.transport = transport
        self.root = root

    def snapshot_path(self, snapshot_id: str) -> str:
        return posixpath.join(self.root, snapshot_id)

    def list(self) -> CatalogListing:
        """Scan the destination and return parsed snapshots, oldest first."""
        listing = CatalogListing()
        names = sorted(self.transport.list_dirs(self.root, SNAPSHOT_GLOB))

        for name in names:
            timestamp = parse_snapshot_timestamp(name)
            snapshot = Snapshot(id=name, path=self.snapshot_path(name), timestamp=timestamp)
            if timestamp is None:
                logger.warning(f"Could not parse date: {snapshot.path}")
                listing.skipped.append(snapshot)
                continue
            listing.snapshots.append(snapshot)

        return listing
