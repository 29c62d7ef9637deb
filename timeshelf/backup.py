"""Main backup orchestration for timeshelf.

This module runs one backup into a destination:

- check the source exists and the destination carries its marker
- detect FAT filesystems (rsync needs a relaxed mtime window there)
- take the in-progress lock, resuming an interrupted run if its owner died
- prune old snapshots, keeping the link base and everything newer
- run rsync into the new snapshot, linking against the previous one
- on a full disk, expire the oldest snapshot and try again
- on success, repoint ``latest`` and release the lock

Every failure ends as a BackupResult with exit code 1. A failed or
interrupted sync keeps its in-progress marker so the next run resumes.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import List, Optional
import logging
import os
import time

from timeshelf.catalog import CatalogListing, generate_snapshot_id
from timeshelf.config import Location, RunConfig, SSHConfig, TimeshelfError
from timeshelf.destination import Destination, check_source
from timeshelf.lock import (
    LockError,
    LockManager,
    ProcessProbe,
    PsutilProcessProbe,
    ResumeController,
)
from timeshelf.logger import (
    get_logger,
    log_backup_completion,
    log_backup_error,
    log_backup_start,
    sync_log_path,
)
from timeshelf.retention import RetentionManager, RetentionResult, parse_strategy
from timeshelf.signal_handler import SignalHandler
from timeshelf.sync import (
    MODIFY_WINDOW_FLAG,
    RsyncEngine,
    SyncEngine,
    SyncResult,
    SyncStatus,
    check_rsync_available,
)
from timeshelf.transport import Transport, is_fat, transport_for


EXIT_SUCCESS = 0
EXIT_FAILURE = 1


class BackupError(TimeshelfError):
    """Base exception for failures of the run itself."""

    def __init__(self, message: str, exit_code: int = EXIT_FAILURE):
        super().__init__(message)
        self.exit_code = exit_code


class DiskExhaustedError(BackupError):
    """Raised when the destination is full and nothing can be reclaimed."""
    pass


class SyncFailedError(BackupError):
    """Raised when rsync reported an error or a warning."""
    pass


class RunPhase(Enum):
    """Where a backup run currently is."""
    STARTING = "starting"
    RESUMING = "resuming"
    SYNCING = "syncing"
    RETRYING = "retrying"
    FINALIZING = "finalizing"
    DONE = "done"
    FAILED = "failed"


@dataclass
class BackupRun:
    """State of one invocation."""
    destination: Destination
    new_snapshot_id: str
    lock_owner_id: int
    previous_snapshot_id: Optional[str] = None
    phase: RunPhase = RunPhase.STARTING

    def transition(self, phase: RunPhase) -> None:
        logging.getLogger(__name__).debug(f"Phase: {self.phase.value} -> {phase.value}")
        self.phase = phase


@dataclass
class BackupResult:
    """Result of a backup operation."""
    success: bool
    exit_code: int
    phase: RunPhase
    snapshot_id: Optional[str] = None
    previous_snapshot_id: Optional[str] = None
    resumed: bool = False
    expired_snapshots: List[str] = field(default_factory=list)
    reclaimed_snapshots: List[str] = field(default_factory=list)
    sync_result: Optional[SyncResult] = None
    error_message: Optional[str] = None


def modify_window_flags(
    source_transport: Transport,
    source_path: str,
    dest_transport: Transport,
    dest_path: str,
) -> List[str]:
    """Extra rsync flags needed when either side lives on FAT."""
    logger = get_logger()
    if is_fat(source_transport.disk_kind(source_path)):
        logger.info("Source file-system is a version of FAT.")
    elif is_fat(dest_transport.disk_kind(dest_path)):
        logger.info("Destination file-system is a version of FAT.")
    else:
        return []
    logger.info("Using the --modify-window rsync parameter with value 2.")
    return [MODIFY_WINDOW_FLAG]


def _resolve_previous(
    listing: CatalogListing,
    previous_id: Optional[str],
    target_id: str,
) -> Optional[str]:
    """
    The snapshot to link against on this pass.

    Keeps the chosen previous snapshot while it exists; once it has been
    reclaimed, falls back to the newest snapshot that is not the target.
    """
    if previous_id is not None and previous_id != target_id and listing.get(previous_id):
        return previous_id
    for snapshot in listing.newest_first():
        if snapshot.id != target_id:
            return snapshot.id
    return None


def _report_sync_failure(result: SyncResult) -> SyncFailedError:
    hint = f"grep -E 'rsync:|rsync error:' '{result.log_file}'"
    if result.status == SyncStatus.WARNING:
        message = f"Rsync reported a warning. Run this command for more details: {hint}"
    elif result.timed_out:
        message = f"Rsync timed out. Run this command for more details: {hint}"
    else:
        message = f"Rsync reported an error. Run this command for more details: {hint}"
    return SyncFailedError(message)


def run_backup(
    config: RunConfig,
    source_transport: Optional[Transport] = None,
    dest_transport: Optional[Transport] = None,
    sync_engine: Optional[SyncEngine] = None,
    probe: Optional[ProcessProbe] = None,
    now: Optional[datetime] = None,
    pid: Optional[int] = None,
) -> BackupResult:
    """
    Run a complete backup.

    Args:
        config: The run configuration
        source_transport: Transport for the source (default: from config)
        dest_transport: Transport for the destination (default: from config)
        sync_engine: Sync engine (default: RsyncEngine, after checking rsync)
        probe: Process liveness probe (default: PsutilProcessProbe)
        now: Time of the run, names the new snapshot (default: now)
        pid: Identity written into the lock (default: os.getpid())

    Returns:
        BackupResult; exit_code is 0 on clean success and 1 otherwise
    """
    logger = get_logger()
    start_time = time.time()
    if now is None:
        now = datetime.now()
    epoch_now = int(time.mktime(now.timetuple()))

    run: Optional[BackupRun] = None
    signal_handler: Optional[SignalHandler] = None
    resumed = False
    expired: List[str] = []
    reclaimed: List[str] = []
    sync_result: Optional[SyncResult] = None

    def failure(message: str) -> BackupResult:
        if run is not None:
            run.transition(RunPhase.FAILED)
        return BackupResult(
            success=False,
            exit_code=EXIT_FAILURE,
            phase=RunPhase.FAILED,
            snapshot_id=run.new_snapshot_id if run else None,
            previous_snapshot_id=run.previous_snapshot_id if run else None,
            resumed=resumed,
            expired_snapshots=expired,
            reclaimed_snapshots=reclaimed,
            sync_result=sync_result,
            error_message=message,
        )

    try:
        strategy = parse_strategy(config.strategy)

        if source_transport is None:
            source_transport = transport_for(config.source, config.ssh)
        if dest_transport is None:
            dest_transport = transport_for(config.destination, config.ssh)
        if probe is None:
            probe = PsutilProcessProbe()

        destination = Destination(dest_transport, config.destination.path)
        run = BackupRun(
            destination=destination,
            new_snapshot_id=generate_snapshot_id(now),
            lock_owner_id=pid if pid is not None else os.getpid(),
        )

        if sync_engine is None:
            check_rsync_available()
            signal_handler = SignalHandler()
            signal_handler.register()
            sync_engine = RsyncEngine(config, signal_handler)

        check_source(source_transport, config.source.path)
        destination.ensure_marker(create=config.create_destination)
        extra_flags = modify_window_flags(
            source_transport, config.source.path, dest_transport, config.destination.path
        )

        lock = LockManager(destination, pid=run.lock_owner_id)
        listing = destination.catalog.list()
        if lock.is_present():
            run.transition(RunPhase.RESUMING)
        state = ResumeController(destination, lock, probe).resolve(run.new_snapshot_id, listing)
        resumed = state.resumed
        previous_id = state.previous.id if state.previous else None

        retention = RetentionManager(destination, strategy)
        target = destination.snapshot_path(run.new_snapshot_id)

        # Each full-disk pass reclaims one snapshot, so this bounds the loop
        max_passes = len(listing) + 1
        for _ in range(max_passes):
            listing = destination.catalog.list()
            previous_id = _resolve_previous(listing, previous_id, run.new_snapshot_id)
            run.previous_snapshot_id = previous_id

            link_dest = None
            if previous_id is None:
                logger.info("No previous backup - creating new one.")
            else:
                link_dest = dest_transport.resolve_absolute(destination.snapshot_path(previous_id))
                logger.info(
                    f"Previous backup found - doing incremental backup from "
                    f"{destination.describe(link_dest)}"
                )

            if not dest_transport.is_dir(target):
                logger.info(f"Creating destination {destination.describe(target)}")
                dest_transport.mkdir_all(target)

            pruned = retention.apply_retention(previous_id or run.new_snapshot_id, now=epoch_now)
            expired.extend(pruned.deleted_snapshots)

            run.transition(RunPhase.SYNCING)
            log_file = sync_log_path(config.logging.log_dir)
            log_backup_start(logger, str(config.source), destination.describe(target))
            lock.acquire()
            sync_result = sync_engine.sync(target, link_dest, log_file, extra_flags)

            if sync_result.status == SyncStatus.NO_SPACE:
                if not config.auto_expire:
                    raise DiskExhaustedError(
                        "No space left on device, and automatic purging of old backups is disabled."
                    )
                logger.warning("No space left on device - removing oldest backup and resuming.")
                run.transition(RunPhase.RETRYING)

                listing = destination.catalog.list()
                if len(listing) < 2:
                    raise DiskExhaustedError("No space left on device, and no old backup to delete.")
                oldest = next(s for s in listing.oldest_first() if s.id != run.new_snapshot_id)
                destination.expire(oldest)
                reclaimed.append(oldest.id)
                continue

            if sync_result.status != SyncStatus.OK:
                raise _report_sync_failure(sync_result)

            run.transition(RunPhase.FINALIZING)
            if not config.logging.keep_sync_logs:
                try:
                    log_file.unlink()
                except FileNotFoundError:
                    pass
            destination.update_latest(run.new_snapshot_id)
            lock.release()
            run.transition(RunPhase.DONE)

            log_backup_completion(
                logger,
                duration_seconds=time.time() - start_time,
                snapshot=destination.describe(target),
                expired=len(expired) + len(reclaimed),
            )
            return BackupResult(
                success=True,
                exit_code=EXIT_SUCCESS,
                phase=RunPhase.DONE,
                snapshot_id=run.new_snapshot_id,
                previous_snapshot_id=previous_id,
                resumed=resumed,
                expired_snapshots=expired,
                reclaimed_snapshots=reclaimed,
                sync_result=sync_result,
            )

        raise DiskExhaustedError("No space left on device, and no old backup to delete.")

    except LockError as e:
        logger.error(str(e))
        return failure(str(e))
    except TimeshelfError as e:
        log_backup_error(logger, e)
        return failure(str(e))
    except Exception as e:
        log_backup_error(logger, e, "unexpected error")
        return failure(f"Unexpected error: {e}")
    finally:
        if signal_handler is not None:
            signal_handler.unregister()


def prune_destination(
    location: Location,
    strategy_text: str,
    ssh: Optional[SSHConfig] = None,
    transport: Optional[Transport] = None,
    probe: Optional[ProcessProbe] = None,
    now: Optional[int] = None,
    dry_run: bool = False,
) -> RetentionResult:
    """
    Apply the retention strategy without running a backup.

    The newest snapshot is treated as the link base, exactly as the next
    run would. A destination held by a live run is left alone.

    Raises:
        ConfigurationError: On a bad strategy
        SafetyCheckError: If the destination has no marker
        LockError: If a live run owns the destination
    """
    strategy = parse_strategy(strategy_text)
    if transport is None:
        transport = transport_for(location, ssh)
    if probe is None:
        probe = PsutilProcessProbe()

    destination = Destination(transport, location.path)
    destination.ensure_marker(create=False)

    lock = LockManager(destination)
    if lock.is_present():
        owner = lock.read_owner()
        if owner is not None and owner != lock.pid and probe.is_process_alive(owner):
            raise LockError(f"Backup task {owner} is active on this destination - not pruning.")

    listing = destination.catalog.list()
    link_base = listing.newest.id if listing.newest else None
    return RetentionManager(destination, strategy).apply_retention(
        link_base, now=now, dry_run=dry_run
    )
