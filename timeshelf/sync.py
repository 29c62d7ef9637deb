"""rsync sync engine for timeshelf.

This module builds rsync command lines (always as argument lists, never as
shell strings), runs rsync into a snapshot directory with --link-dest
pointing at the previous snapshot, and classifies the outcome from
rsync's log file.
"""

from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import List, Optional, Protocol, Sequence, Tuple
import logging
import re
import shlex
import shutil
import subprocess
import time

from timeshelf.config import RunConfig, TimeshelfError
from timeshelf.logger import log_rsync_output


logger = logging.getLogger(__name__)


MIN_RSYNC_VERSION = (3, 0, 0)

# Lines rsync logs when the destination filled up
NO_SPACE_MARKERS = ("No space left on device (28)", "Result too large (34)")

MODIFY_WINDOW_FLAG = "--modify-window=2"

_VERSION_RE = re.compile(r"version\s+v?(\d+(?:\.\d+)*)")


class SyncEngineUnavailableError(TimeshelfError):
    """Raised when rsync is missing or too old."""
    pass


class SyncStatus(Enum):
    """How a transfer ended."""
    OK = "ok"
    WARNING = "warning"
    ERROR = "error"
    NO_SPACE = "no_space"


@dataclass
class SyncResult:
    """Result of one rsync invocation."""
    status: SyncStatus
    returncode: Optional[int]
    log_file: Optional[Path] = None
    duration_seconds: float = 0.0
    timed_out: bool = False

    @property
    def success(self) -> bool:
        return self.status == SyncStatus.OK


class SyncEngine(Protocol):
    """Copies the source into a snapshot directory."""

    def sync(
        self,
        target: str,
        link_dest: Optional[str],
        log_file: Path,
        extra_flags: Sequence[str] = (),
    ) -> SyncResult:
        ...


def classify_sync_log(log_text: str, returncode: Optional[int] = 0) -> SyncStatus:
    """
    Classify a transfer from rsync's log and exit code.

    Disk exhaustion wins over everything else, then errors, then warnings.
    A non-zero exit with a clean log is still an error.
    """
    if any(marker in log_text for marker in NO_SPACE_MARKERS):
        return SyncStatus.NO_SPACE
    if "rsync error:" in log_text:
        return SyncStatus.ERROR
    if "rsync:" in log_text:
        return SyncStatus.WARNING
    if returncode:
        return SyncStatus.ERROR
    return SyncStatus.OK


def parse_rsync_version(output: str) -> Optional[Tuple[int, ...]]:
    """Extract the version from ``rsync --version`` output."""
    match = _VERSION_RE.search(output)
    if match is None:
        return None
    return tuple(int(part) for part in match.group(1).split("."))


def check_rsync_available(rsync_path: str = "rsync") -> Tuple[int, ...]:
    """
    Make sure a usable rsync is installed.

    Returns:
        The rsync version tuple

    Raises:
        SyncEngineUnavailableError: If rsync is missing or older than 3.0.0
    """
    executable = shutil.which(rsync_path)
    if executable is None:
        raise SyncEngineUnavailableError(
            "This machine doesn't appear to have rsync installed. Aborting."
        )

    try:
        result = subprocess.run(
            [executable, "--version"], capture_output=True, text=True
        )
    except OSError as e:
        raise SyncEngineUnavailableError(f"Cannot run rsync: {e}")

    version = parse_rsync_version(result.stdout)
    wanted = ".".join(str(p) for p in MIN_RSYNC_VERSION)
    if version is None or version < MIN_RSYNC_VERSION:
        found = ".".join(str(p) for p in version) if version else "unknown"
        raise SyncEngineUnavailableError(
            f"This tool requires rsync version >= {wanted}. Found: {found}. Aborting."
        )
    return version


def _with_slash(path: str) -> str:
    return path if path.endswith("/") else path + "/"


@dataclass
class RsyncCommand:
    """
    An rsync invocation, assembled field by field.

    ``source`` and ``destination`` already carry any ``user@host:`` prefix.
    Both get a trailing slash so rsync copies directory contents.
    """
    source: str
    destination: str
    flags: Sequence[str] = ()
    ssh_command: Optional[Sequence[str]] = None
    log_file: Optional[str] = None
    exclude_from: Optional[str] = None
    link_dest: Optional[str] = None
    rsync_path: str = "rsync"

    def to_args(self) -> List[str]:
        cmd = [self.rsync_path]
        if self.ssh_command:
            cmd.extend(["-e", shlex.join(self.ssh_command)])
        cmd.extend(self.flags)
        if self.log_file:
            cmd.extend(["--log-file", self.log_file])
        if self.exclude_from:
            cmd.extend(["--exclude-from", self.exclude_from])
        if self.link_dest:
            cmd.append(f"--link-dest={self.link_dest}")
        cmd.extend(["--", _with_slash(self.source), _with_slash(self.destination)])
        return cmd

    def __str__(self) -> str:
        return shlex.join(self.to_args())


class RsyncEngine:
    """
    Runs rsync for a backup run.

    The running process is registered with the signal handler so that an
    interrupt terminates rsync as well.
    """

    def __init__(self, config: RunConfig, signal_handler=None, rsync_path: str = "rsync"):
        """
        Args:
            config: The run configuration
            signal_handler: Optional SignalHandler to register rsync with
            rsync_path: rsync executable
        """
        self.config = config
        self.signal_handler = signal_handler
        self.rsync_path = rsync_path

    def ssh_command(self) -> Optional[List[str]]:
        """The ``-e`` remote shell, or None for local transfers."""
        if not self.config.is_remote:
            return None
        ssh = self.config.ssh
        cmd = ["ssh", "-p", str(ssh.port)]
        if ssh.identity_file:
            cmd.extend(["-i", ssh.identity_file])
        cmd.extend(ssh.effective_flags)
        return cmd

    def build_command(
        self,
        target: str,
        link_dest: Optional[str],
        log_file: Path,
        extra_flags: Sequence[str] = (),
    ) -> RsyncCommand:
        flags = list(self.config.rsync.effective_flags)
        if self.config.is_remote:
            flags.append("--compress")
        flags.extend(extra_flags)

        source = self.config.source
        destination = self.config.destination
        return RsyncCommand(
            source=f"{source.prefix}{source.path}",
            destination=f"{destination.prefix}{target}",
            flags=flags,
            ssh_command=self.ssh_command(),
            log_file=str(log_file),
            exclude_from=self.config.exclude_from,
            link_dest=link_dest,
            rsync_path=self.rsync_path,
        )

    def sync(
        self,
        target: str,
        link_dest: Optional[str],
        log_file: Path,
        extra_flags: Sequence[str] = (),
    ) -> SyncResult:
        """
        Copy the source into target, hard-linking unchanged files against
        link_dest. Blocks until rsync exits or the configured timeout hits.
        """
        command = self.build_command(target, link_dest, log_file, extra_flags)
        logger.info("Running command:")
        logger.info(str(command))

        timeout = self.config.rsync.sync_timeout_seconds
        timed_out = False
        start_time = time.time()

        try:
            process = subprocess.Popen(
                command.to_args(),
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
            )
        except OSError as e:
            raise SyncEngineUnavailableError(f"Cannot run rsync: {e}")

        if self.signal_handler is not None:
            self.signal_handler.set_rsync_process(process)

        try:
            try:
                output_bytes, _ = process.communicate(timeout=timeout)
            except subprocess.TimeoutExpired:
                timed_out = True
                logger.error(f"rsync timed out after {timeout} seconds")
                process.terminate()
                try:
                    output_bytes, _ = process.communicate(timeout=5)
                except subprocess.TimeoutExpired:
                    process.kill()
                    output_bytes, _ = process.communicate()
        finally:
            if self.signal_handler is not None:
                self.signal_handler.set_rsync_process(None)

        output = output_bytes.decode("utf-8", errors="replace") if output_bytes else ""
        log_rsync_output(logger, output)

        try:
            log_text = log_file.read_text(encoding="utf-8", errors="replace")
        except OSError:
            log_text = ""

        status = classify_sync_log(log_text, process.returncode)
        if timed_out and status == SyncStatus.OK:
            status = SyncStatus.ERROR

        return SyncResult(
            status=status,
            returncode=process.returncode,
            log_file=log_file,
            duration_seconds=time.time() - start_time,
            timed_out=timed_out,
        )
