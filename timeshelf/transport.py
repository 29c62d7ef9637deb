"""Filesystem transports for timeshelf.

Every filesystem operation a backup run performs on its source or
destination goes through a Transport. LocalTransport works on the local
machine; SSHTransport runs each operation as its own ssh round trip on a
remote host. Operations are never batched, so the order in which a run
issues them is the order in which they happen.
"""

from typing import List, Optional, Sequence
import fnmatch
import logging
import os
import shlex
import shutil
import subprocess

import psutil

from timeshelf.config import Location, SSHConfig, TimeshelfError


logger = logging.getLogger(__name__)


class TransportError(TimeshelfError):
    """Raised when a filesystem operation fails."""
    pass


def is_fat(disk_kind: str) -> bool:
    """Whether a filesystem type needs rsync's relaxed mtime comparison."""
    kind = disk_kind.lower()
    return "fat" in kind or kind == "msdos"


class Transport:
    """Interface shared by the local and remote transports."""

    def describe(self, path: str) -> str:
        """Human readable form of a path, including any host prefix."""
        return path

    def list_dirs(self, root: str, pattern: str) -> List[str]:
        """Names of directories directly under root matching a glob."""
        raise NotImplementedError

    def mkdir_all(self, path: str) -> None:
        raise NotImplementedError

    def remove_file(self, path: str) -> None:
        """Remove a file or symlink; a missing file is not an error."""
        raise NotImplementedError

    def remove_tree(self, path: str) -> None:
        raise NotImplementedError

    def create_symlink(self, target: str, link_path: str) -> None:
        raise NotImplementedError

    def path_exists(self, path: str) -> bool:
        """True for files, directories and dangling symlinks."""
        raise NotImplementedError

    def is_dir(self, path: str) -> bool:
        raise NotImplementedError

    def resolve_absolute(self, path: str) -> str:
        raise NotImplementedError

    def disk_kind(self, path: str) -> str:
        """Filesystem type of the mount holding path, lowercased, or ''."""
        raise NotImplementedError

    def read_text(self, path: str) -> str:
        raise NotImplementedError

    def write_text(self, path: str, content: str) -> None:
        raise NotImplementedError

    def move(self, source: str, destination: str) -> None:
        raise NotImplementedError

    def replace(self, source: str, destination: str) -> None:
        """Rename source over destination in one step, never into it."""
        raise NotImplementedError

    def read_link(self, path: str) -> Optional[str]:
        """Target of a symlink, or None if path is not a symlink."""
        raise NotImplementedError


class LocalTransport(Transport):
    """Transport for paths on this machine."""

    def list_dirs(self, root: str, pattern: str) -> List[str]:
        try:
            entries = list(os.scandir(root))
        except FileNotFoundError:
            return []
        except OSError as e:
            raise TransportError(f"Cannot list {root}: {e}")

        names = []
        for entry in entries:
            if not fnmatch.fnmatchcase(entry.name, pattern):
                continue
            if entry.is_dir(follow_symlinks=False):
                names.append(entry.name)
        return names

    def mkdir_all(self, path: str) -> None:
        try:
            os.makedirs(path, exist_ok=True)
        except OSError as e:
            raise TransportError(f"Cannot create {path}: {e}")

    def remove_file(self, path: str) -> None:
        try:
            os.unlink(path)
        except FileNotFoundError:
            pass
        except OSError as e:
            raise TransportError(f"Cannot remove {path}: {e}")

    def remove_tree(self, path: str) -> None:
        try:
            shutil.rmtree(path)
        except FileNotFoundError:
            pass
        except OSError as e:
            raise TransportError(f"Cannot remove {path}: {e}")

    def create_symlink(self, target: str, link_path: str) -> None:
        try:
            os.symlink(target, link_path)
        except OSError as e:
            raise TransportError(f"Cannot link {link_path} -> {target}: {e}")

    def path_exists(self, path: str) -> bool:
        return os.path.lexists(path)

    def is_dir(self, path: str) -> bool:
        return os.path.isdir(path)

    def resolve_absolute(self, path: str) -> str:
        return os.path.abspath(path)

    def disk_kind(self, path: str) -> str:
        target = os.path.realpath(path)
        best_mount = ""
        best_kind = ""
        try:
            partitions = psutil.disk_partitions(all=True)
        except OSError as e:
            logger.debug(f"Cannot read partition table: {e}")
            return ""

        for partition in partitions:
            mount = partition.mountpoint
            if target == mount or target.startswith(mount.rstrip(os.sep) + os.sep):
                if len(mount) > len(best_mount):
                    best_mount = mount
                    best_kind = partition.fstype
        return best_kind.lower()

    def read_text(self, path: str) -> str:
        try:
            with open(path, "r", encoding="utf-8") as f:
                return f.read()
        except OSError as e:
            raise TransportError(f"Cannot read {path}: {e}")

    def write_text(self, path: str, content: str) -> None:
        try:
            with open(path, "w", encoding="utf-8") as f:
                f.write(content)
        except OSError as e:
            raise TransportError(f"Cannot write {path}: {e}")

    def move(self, source: str, destination: str) -> None:
        try:
            os.rename(source, destination)
        except OSError as e:
            raise TransportError(f"Cannot move {source} to {destination}: {e}")

    def replace(self, source: str, destination: str) -> None:
        try:
            os.replace(source, destination)
        except OSError as e:
            raise TransportError(f"Cannot replace {destination} with {source}: {e}")

    def read_link(self, path: str) -> Optional[str]:
        try:
            return os.readlink(path)
        except OSError:
            return None


class SSHTransport(Transport):
    """
    Transport that runs every operation on a remote host over ssh.

    Arguments are quoted with shlex before being handed to the remote
    shell, so paths may contain spaces and quotes.
    """

    def __init__(self, user: str, host: str, ssh: Optional[SSHConfig] = None):
        if ssh is None:
            ssh = SSHConfig()
        self.user = user
        self.host = host
        self.ssh = ssh

    @property
    def ssh_command(self) -> List[str]:
        """The ssh invocation, without the remote command."""
        cmd = ["ssh", "-p", str(self.ssh.port)]
        if self.ssh.identity_file:
            cmd.extend(["-i", self.ssh.identity_file])
        cmd.extend(self.ssh.effective_flags)
        cmd.append(f"{self.user}@{self.host}")
        return cmd

    def describe(self, path: str) -> str:
        return f"{self.user}@{self.host}:{path}"

    def _run_shell(self, command: str, check: bool = True) -> subprocess.CompletedProcess:
        logger.debug(f"Running remote command: {command}")
        try:
            result = subprocess.run(
                self.ssh_command + [command],
                capture_output=True,
                text=True,
            )
        except OSError as e:
            raise TransportError(f"Cannot run ssh: {e}")
        if check and result.returncode != 0:
            raise TransportError(
                f"Remote command failed on {self.host} ({result.returncode}): "
                f"{command}: {result.stderr.strip()}"
            )
        return result

    def _run(self, args: Sequence[str], check: bool = True) -> subprocess.CompletedProcess:
        return self._run_shell(shlex.join(args), check=check)

    def list_dirs(self, root: str, pattern: str) -> List[str]:
        result = self._run(
            ["find", root.rstrip("/") + "/", "-maxdepth", "1", "-mindepth", "1",
             "-type", "d", "-name", pattern, "-prune"],
            check=False,
        )
        if result.returncode != 0:
            if not self.is_dir(root):
                return []
            raise TransportError(f"Cannot list {self.describe(root)}: {result.stderr.strip()}")
        return [line.rstrip("/").rsplit("/", 1)[-1] for line in result.stdout.splitlines() if line]

    def mkdir_all(self, path: str) -> None:
        self._run(["mkdir", "-p", "--", path])

    def remove_file(self, path: str) -> None:
        self._run(["rm", "-f", "--", path])

    def remove_tree(self, path: str) -> None:
        self._run(["rm", "-rf", "--", path])

    def create_symlink(self, target: str, link_path: str) -> None:
        self._run(["ln", "-s", "--", target, link_path])

    def path_exists(self, path: str) -> bool:
        # find does not follow symlinks, so dangling links count as present
        return self._run(["find", path, "-maxdepth", "0"], check=False).returncode == 0

    def is_dir(self, path: str) -> bool:
        return self._run(["test", "-d", path], check=False).returncode == 0

    def resolve_absolute(self, path: str) -> str:
        result = self._run_shell(f"cd {shlex.quote(path)} && pwd")
        return result.stdout.strip()

    def disk_kind(self, path: str) -> str:
        result = self._run(["df", "-T", path], check=False)
        if result.returncode != 0:
            return ""
        return parse_df_type(result.stdout)

    def read_text(self, path: str) -> str:
        return self._run(["cat", "--", path]).stdout

    def write_text(self, path: str, content: str) -> None:
        self._run_shell(f"printf %s {shlex.quote(content)} > {shlex.quote(path)}")

    def move(self, source: str, destination: str) -> None:
        self._run(["mv", "--", source, destination])

    def replace(self, source: str, destination: str) -> None:
        # -T keeps mv from descending into a symlinked directory
        self._run(["mv", "-f", "-T", "--", source, destination])

    def read_link(self, path: str) -> Optional[str]:
        result = self._run(["readlink", "--", path], check=False)
        if result.returncode != 0:
            return None
        return result.stdout.strip() or None


def parse_df_type(output: str) -> str:
    """Extract the Type column from ``df -T`` output."""
    lines = output.strip().splitlines()
    if len(lines) < 2:
        return ""
    # df wraps long device names onto their own line
    fields = " ".join(lines[1:]).split()
    if len(fields) < 2:
        return ""
    return fields[1].lower()


def transport_for(location: Location, ssh: Optional[SSHConfig] = None) -> Transport:
    """Pick the transport able to reach a location."""
    if location.is_remote:
        return SSHTransport(location.user, location.host, ssh)
    return LocalTransport()
