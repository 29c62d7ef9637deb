"""Lock management and resume for timeshelf.

Runs against one destination exclude each other through the
``backup.inprogress`` file at the destination root, which holds the PID of
the owning run. The lock is advisory: a marker left behind by a process
that no longer exists is stale, and the next run takes it over and resumes
the interrupted snapshot instead of starting a new one.
"""

from dataclasses import dataclass
from typing import Optional, Protocol
import logging
import os

import psutil

from timeshelf.catalog import CatalogListing, Snapshot
from timeshelf.config import APP_NAME, TimeshelfError
from timeshelf.transport import TransportError


logger = logging.getLogger(__name__)


class LockError(TimeshelfError):
    """Raised when another live run holds the destination."""
    pass


class ProcessProbe(Protocol):
    """Answers whether the process that wrote a lock is still running."""

    def is_process_alive(self, pid: int) -> bool:
        ...


class PsutilProcessProbe:
    """
    Liveness probe backed by psutil.

    A PID only counts as alive when the process exists, is not a zombie,
    and its command line mentions the application name. A recycled PID
    belonging to some unrelated program is therefore treated as dead.
    """

    def __init__(self, app_name: str = APP_NAME):
        self.app_name = app_name

    def is_process_alive(self, pid: int) -> bool:
        try:
            proc = psutil.Process(pid)
            if proc.status() == psutil.STATUS_ZOMBIE:
                return False
            cmdline = " ".join(proc.cmdline())
            name = proc.name()
        except (psutil.NoSuchProcess, psutil.ZombieProcess):
            return False
        except psutil.AccessDenied:
            # Exists but we may not inspect it; assume it is the owner
            return True
        except ValueError:
            return False

        return self.app_name in cmdline or self.app_name in name


class LockManager:
    """
    Reads and writes the in-progress marker of a destination.

    Unlike a flock-based lock there is nothing held open: the marker is a
    plain file written through the destination's transport so that it
    works on remote destinations too.
    """

    def __init__(self, destination, pid: Optional[int] = None):
        """
        Args:
            destination: timeshelf.destination.Destination
            pid: PID written into the marker. Defaults to os.getpid()
        """
        self.destination = destination
        self.pid = pid if pid is not None else os.getpid()

    @property
    def path(self) -> str:
        return self.destination.inprogress_path

    def is_present(self) -> bool:
        return self.destination.transport.path_exists(self.path)

    def read_owner(self) -> Optional[int]:
        """Return the PID recorded in the marker, or None if unreadable."""
        try:
            content = self.destination.transport.read_text(self.path).strip()
        except TransportError:
            return None
        try:
            pid = int(content)
        except ValueError:
            return None
        return pid if pid > 0 else None

    def acquire(self) -> None:
        """Write our PID into the marker, replacing whatever was there."""
        self.destination.transport.write_text(self.path, f"{self.pid}\n")

    def release(self) -> None:
        """Remove the marker."""
        self.destination.transport.remove_file(self.path)


@dataclass
class ResumeState:
    """What the lock check decided about the previous run."""
    previous: Optional[Snapshot]
    resumed: bool = False
    resumed_from: Optional[str] = None  # id of the interrupted snapshot
    stale_owner: Optional[int] = None


class ResumeController:
    """
    Decides between a fresh run, a conflict, and resuming a dead run.

    - No marker: fresh run, the newest snapshot is the link base.
    - Marker owned by a live run: LockError, nothing is touched.
    - Marker owned by a dead run: the newest snapshot is the one that run
      was writing. It is renamed to the new snapshot id so the transfer
      continues into it, and the snapshot before it becomes the link base.
    """

    def __init__(self, destination, lock: LockManager, probe: ProcessProbe):
        self.destination = destination
        self.lock = lock
        self.probe = probe

    def resolve(self, new_snapshot_id: str, listing: CatalogListing) -> ResumeState:
        """
        Raises:
            LockError: If a live run owns the destination
        """
        if not self.lock.is_present():
            return ResumeState(previous=listing.newest)

        owner = self.lock.read_owner()
        if owner is not None and owner != self.lock.pid and self.probe.is_process_alive(owner):
            raise LockError(f"Previous backup task is still active - aborting (pid {owner}).")

        logger.info(
            f"{self.destination.describe(self.lock.path)} already exists - the previous "
            "backup failed or was interrupted. Backup will resume from there."
        )

        # Take the lock over before touching any snapshot
        self.lock.acquire()

        snapshots = listing.newest_first()
        if not snapshots:
            return ResumeState(previous=None, stale_owner=owner)

        interrupted = snapshots[0]
        if interrupted.id != new_snapshot_id:
            self.destination.transport.move(
                interrupted.path, self.destination.snapshot_path(new_snapshot_id)
            )
        previous = snapshots[1] if len(snapshots) > 1 else None

        return ResumeState(
            previous=previous,
            resumed=True,
            resumed_from=interrupted.id,
            stale_owner=owner,
        )
