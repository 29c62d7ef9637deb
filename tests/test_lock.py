"""Tests for the in-progress lock and resume."""

import os
from pathlib import Path
from unittest import mock

import psutil
import pytest

from timeshelf.destination import Destination
from timeshelf.lock import (
    LockError,
    LockManager,
    PsutilProcessProbe,
    ResumeController,
)
from timeshelf.transport import LocalTransport


OUR_PID = 1000
OTHER_PID = 4242


class FakeProbe:
    """Reports the given PIDs as alive."""

    def __init__(self, alive=()):
        self.alive = set(alive)
        self.asked = []

    def is_process_alive(self, pid: int) -> bool:
        self.asked.append(pid)
        return pid in self.alive


def _destination(root: Path) -> Destination:
    return Destination(LocalTransport(), str(root))


def _make_snapshots(root: Path, *ids: str) -> None:
    for snapshot_id in ids:
        (root / snapshot_id).mkdir()
        (root / snapshot_id / "id.txt").write_text(snapshot_id)


class TestLockManager:
    """Tests for reading and writing backup.inprogress."""

    def test_acquire_writes_pid(self, backup_root: Path):
        lock = LockManager(_destination(backup_root), pid=OUR_PID)
        assert not lock.is_present()

        lock.acquire()

        assert (backup_root / "backup.inprogress").read_text() == f"{OUR_PID}\n"
        assert lock.is_present()
        assert lock.read_owner() == OUR_PID

    def test_release(self, backup_root: Path):
        lock = LockManager(_destination(backup_root), pid=OUR_PID)
        lock.acquire()
        lock.release()
        assert not (backup_root / "backup.inprogress").exists()
        lock.release()

    def test_default_pid(self, backup_root: Path):
        assert LockManager(_destination(backup_root)).pid == os.getpid()

    @pytest.mark.parametrize("content", ["", "garbage", "-5", "0", "12 34"])
    def test_unreadable_owner(self, backup_root: Path, content: str):
        (backup_root / "backup.inprogress").write_text(content)
        assert LockManager(_destination(backup_root), pid=OUR_PID).read_owner() is None

    def test_owner_with_whitespace(self, backup_root: Path):
        (backup_root / "backup.inprogress").write_text("  4242 \n")
        assert LockManager(_destination(backup_root), pid=OUR_PID).read_owner() == 4242


class TestResumeController:
    """Tests for choosing between a fresh run, a conflict and a resume."""

    NEW_ID = "2024-05-01-120000"

    def _resolve(self, root: Path, probe: FakeProbe):
        destination = _destination(root)
        lock = LockManager(destination, pid=OUR_PID)
        controller = ResumeController(destination, lock, probe)
        return controller.resolve(self.NEW_ID, destination.catalog.list())

    def test_fresh_run(self, backup_root: Path):
        _make_snapshots(backup_root, "2024-04-29-120000", "2024-04-30-120000")

        state = self._resolve(backup_root, FakeProbe())

        assert not state.resumed
        assert state.previous.id == "2024-04-30-120000"
        assert not (backup_root / "backup.inprogress").exists()

    def test_fresh_run_empty_destination(self, backup_root: Path):
        state = self._resolve(backup_root, FakeProbe())
        assert state.previous is None
        assert not state.resumed

    def test_live_owner_conflicts(self, backup_root: Path):
        _make_snapshots(backup_root, "2024-04-29-120000", "2024-04-30-120000")
        (backup_root / "backup.inprogress").write_text(f"{OTHER_PID}\n")

        with pytest.raises(LockError, match=f"still active.*{OTHER_PID}"):
            self._resolve(backup_root, FakeProbe(alive={OTHER_PID}))

        assert (backup_root / "2024-04-30-120000").is_dir()
        assert not (backup_root / self.NEW_ID).exists()
        assert (backup_root / "backup.inprogress").read_text() == f"{OTHER_PID}\n"

    def test_dead_owner_resumes(self, backup_root: Path):
        _make_snapshots(backup_root, "2024-04-29-120000", "2024-04-30-120000")
        (backup_root / "backup.inprogress").write_text(f"{OTHER_PID}\n")
        probe = FakeProbe()

        state = self._resolve(backup_root, probe)

        assert state.resumed
        assert state.resumed_from == "2024-04-30-120000"
        assert state.stale_owner == OTHER_PID
        assert state.previous.id == "2024-04-29-120000"
        assert probe.asked == [OTHER_PID]
        # the interrupted snapshot continues under the new name
        assert not (backup_root / "2024-04-30-120000").exists()
        assert (backup_root / self.NEW_ID / "id.txt").read_text() == "2024-04-30-120000"
        assert (backup_root / "backup.inprogress").read_text() == f"{OUR_PID}\n"

    def test_resume_single_snapshot(self, backup_root: Path):
        _make_snapshots(backup_root, "2024-04-30-120000")
        (backup_root / "backup.inprogress").write_text(f"{OTHER_PID}\n")

        state = self._resolve(backup_root, FakeProbe())

        assert state.resumed
        assert state.previous is None
        assert (backup_root / self.NEW_ID).is_dir()

    def test_resume_empty_destination(self, backup_root: Path):
        (backup_root / "backup.inprogress").write_text(f"{OTHER_PID}\n")

        state = self._resolve(backup_root, FakeProbe())

        assert not state.resumed
        assert state.previous is None
        assert (backup_root / "backup.inprogress").read_text() == f"{OUR_PID}\n"

    def test_own_pid_is_not_a_conflict(self, backup_root: Path):
        _make_snapshots(backup_root, "2024-04-30-120000")
        (backup_root / "backup.inprogress").write_text(f"{OUR_PID}\n")

        state = self._resolve(backup_root, FakeProbe(alive={OUR_PID}))

        assert state.resumed

    def test_unreadable_marker_is_stale(self, backup_root: Path):
        _make_snapshots(backup_root, "2024-04-30-120000")
        (backup_root / "backup.inprogress").write_text("not a pid")
        probe = FakeProbe()

        state = self._resolve(backup_root, probe)

        assert state.resumed
        assert probe.asked == []

    def test_resume_into_same_id(self, backup_root: Path):
        """A snapshot already named with the new id is not moved."""
        _make_snapshots(backup_root, "2024-04-30-120000", self.NEW_ID)
        (backup_root / "backup.inprogress").write_text(f"{OTHER_PID}\n")

        state = self._resolve(backup_root, FakeProbe())

        assert state.resumed_from == self.NEW_ID
        assert state.previous.id == "2024-04-30-120000"
        assert (backup_root / self.NEW_ID).is_dir()


class TestPsutilProcessProbe:
    """Tests for the psutil-backed liveness probe."""

    def _process(self, status=psutil.STATUS_RUNNING, cmdline=("python", "-m", "timeshelf"), name="python"):
        proc = mock.MagicMock()
        proc.status.return_value = status
        proc.cmdline.return_value = list(cmdline)
        proc.name.return_value = name
        return proc

    def test_running_timeshelf(self):
        with mock.patch("timeshelf.lock.psutil.Process", return_value=self._process()):
            assert PsutilProcessProbe().is_process_alive(OTHER_PID)

    def test_recycled_pid(self):
        proc = self._process(cmdline=("vim", "notes.txt"), name="vim")
        with mock.patch("timeshelf.lock.psutil.Process", return_value=proc):
            assert not PsutilProcessProbe().is_process_alive(OTHER_PID)

    def test_zombie(self):
        proc = self._process(status=psutil.STATUS_ZOMBIE)
        with mock.patch("timeshelf.lock.psutil.Process", return_value=proc):
            assert not PsutilProcessProbe().is_process_alive(OTHER_PID)

    def test_no_such_process(self):
        with mock.patch("timeshelf.lock.psutil.Process", side_effect=psutil.NoSuchProcess(OTHER_PID)):
            assert not PsutilProcessProbe().is_process_alive(OTHER_PID)

    def test_access_denied_counts_as_alive(self):
        with mock.patch("timeshelf.lock.psutil.Process", side_effect=psutil.AccessDenied(OTHER_PID)):
            assert PsutilProcessProbe().is_process_alive(OTHER_PID)

    def test_current_process(self):
        probe = PsutilProcessProbe(app_name=psutil.Process().name())
        assert probe.is_process_alive(os.getpid())
