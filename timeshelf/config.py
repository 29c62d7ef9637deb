"""Configuration management for timeshelf.

This module provides the immutable RunConfig handed to every component of a
backup run, the TOML config file parser, and the helpers that merge file
values with command-line overrides.
"""

import os
import re
import shlex
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional, Tuple
import tomllib


APP_NAME = "timeshelf"


class TimeshelfError(Exception):
    """Base class for all timeshelf errors."""
    pass


class ConfigurationError(TimeshelfError):
    """Raised when configuration is missing, malformed or contradictory."""
    pass


class ValidationError(ConfigurationError):
    """Raised when configuration values have invalid types."""
    pass


DEFAULT_STRATEGY = "1:1 30:7 365:30"

DEFAULT_RSYNC_FLAGS: Tuple[str, ...] = (
    "-D",
    "--numeric-ids",
    "--links",
    "--hard-links",
    "--one-file-system",
    "--itemize-changes",
    "--times",
    "--recursive",
    "--perms",
    "--owner",
    "--group",
    "--stats",
    "--human-readable",
)

DEFAULT_SSH_PORT = 22

# Default config file path
DEFAULT_CONFIG_PATH = Path.home() / ".config" / APP_NAME / "config.toml"

REMOTE_LOCATION_RE = re.compile(r"^([A-Za-z0-9\._%\+\-]+)@([A-Za-z0-9.\-]+)\:(.+)$")

VALID_LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR")


def default_log_dir() -> Path:
    """Directory for per-sync rsync logs, honouring XDG_STATE_HOME."""
    state_home = os.environ.get("XDG_STATE_HOME")
    base = Path(state_home) if state_home else Path.home() / ".local" / "share"
    return base / APP_NAME / "log"


@dataclass(frozen=True)
class Location:
    """A source or destination path, optionally on a remote host."""
    path: str
    user: Optional[str] = None
    host: Optional[str] = None

    @property
    def is_remote(self) -> bool:
        return self.host is not None

    @property
    def prefix(self) -> str:
        """The ``user@host:`` prefix rsync expects for remote paths."""
        if not self.is_remote:
            return ""
        return f"{self.user}@{self.host}:"

    def __str__(self) -> str:
        return f"{self.prefix}{self.path}"


def parse_location(value: str) -> Location:
    """
    Parse ``[USER@HOST:]PATH`` into a Location.

    A trailing slash is stripped so that snapshot paths can be built by
    joining. The filesystem root keeps its slash.
    """
    if not value:
        raise ConfigurationError("Empty path")

    match = REMOTE_LOCATION_RE.match(value)
    if match:
        user, host, path = match.groups()
    else:
        user, host, path = None, None, value

    if len(path) > 1:
        path = path.rstrip("/") or "/"
    return Location(path=path, user=user, host=host)


@dataclass(frozen=True)
class RsyncConfig:
    """Flags and limits for the rsync invocation."""
    flags: Tuple[str, ...] = DEFAULT_RSYNC_FLAGS
    append_flags: Tuple[str, ...] = ()
    sync_timeout_seconds: Optional[int] = None  # None = wait forever

    @property
    def effective_flags(self) -> Tuple[str, ...]:
        return self.flags + self.append_flags


@dataclass(frozen=True)
class SSHConfig:
    """Settings for reaching a remote source or destination."""
    port: int = DEFAULT_SSH_PORT
    identity_file: Optional[str] = None
    flags: Tuple[str, ...] = ()
    append_flags: Tuple[str, ...] = ()

    @property
    def effective_flags(self) -> Tuple[str, ...]:
        return self.flags + self.append_flags


@dataclass(frozen=True)
class LoggingConfig:
    """Configuration for logging."""
    level: str = "INFO"
    log_file: Optional[Path] = None  # no application log file unless configured
    log_dir: Path = field(default_factory=default_log_dir)
    keep_sync_logs: bool = False
    log_max_size_mb: int = 10
    log_backup_count: int = 5

    @property
    def log_max_bytes(self) -> int:
        """Return max size in bytes for use with RotatingFileHandler."""
        return self.log_max_size_mb * 1024 * 1024


@dataclass(frozen=True)
class RunConfig:
    """Everything a single backup run needs, fixed for its whole duration."""
    source: Location
    destination: Location
    exclude_from: Optional[str] = None
    strategy: str = DEFAULT_STRATEGY
    auto_expire: bool = True
    create_destination: bool = False
    rsync: RsyncConfig = field(default_factory=RsyncConfig)
    ssh: SSHConfig = field(default_factory=SSHConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    @property
    def is_remote(self) -> bool:
        return self.source.is_remote or self.destination.is_remote


@dataclass
class FileConfig:
    """Values read from a config file. None means 'not set in the file'."""
    source: Optional[str] = None
    destination: Optional[str] = None
    exclude_from: Optional[str] = None
    strategy: Optional[str] = None
    auto_expire: Optional[bool] = None
    create_destination: Optional[bool] = None
    rsync: RsyncConfig = field(default_factory=RsyncConfig)
    ssh: SSHConfig = field(default_factory=SSHConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)


def _validate_type(value: Any, expected_type: type, key: str) -> None:
    """Validate that a value has the expected type."""
    # bool is a subclass of int; a port of `true` is still a mistake
    if isinstance(value, bool) and expected_type is int:
        raise ValidationError(
            f"Key '{key}' has invalid type: expected int, got bool"
        )
    if not isinstance(value, expected_type):
        raise ValidationError(
            f"Key '{key}' has invalid type: expected {expected_type.__name__}, "
            f"got {type(value).__name__}"
        )


def split_flags(value: str) -> Tuple[str, ...]:
    """Split a shell-style flag string into separate arguments."""
    try:
        return tuple(shlex.split(value))
    except ValueError as e:
        raise ConfigurationError(f"Cannot parse flags '{value}': {e}")


def _optional(section: Dict[str, Any], key: str, expected_type: type, prefix: str) -> Any:
    value = section.get(key)
    if value is not None:
        _validate_type(value, expected_type, f"{prefix}{key}")
    return value


def _parse_rsync_config(data: Dict[str, Any]) -> RsyncConfig:
    """Parse rsync configuration from dict."""
    rsync_data = data.get("rsync", {})
    _validate_type(rsync_data, dict, "rsync")

    flags = _optional(rsync_data, "flags", str, "rsync.")
    append_flags = _optional(rsync_data, "append_flags", str, "rsync.")
    timeout = _optional(rsync_data, "sync_timeout_seconds", int, "rsync.")
    if timeout is not None and timeout <= 0:
        raise ValidationError("Key 'rsync.sync_timeout_seconds' must be positive")

    return RsyncConfig(
        flags=split_flags(flags) if flags is not None else DEFAULT_RSYNC_FLAGS,
        append_flags=split_flags(append_flags) if append_flags else (),
        sync_timeout_seconds=timeout,
    )


def _parse_ssh_config(data: Dict[str, Any]) -> SSHConfig:
    """Parse ssh configuration from dict."""
    ssh_data = data.get("ssh", {})
    _validate_type(ssh_data, dict, "ssh")

    port = ssh_data.get("port", DEFAULT_SSH_PORT)
    _validate_type(port, int, "ssh.port")
    identity_file = _optional(ssh_data, "identity_file", str, "ssh.")
    flags = _optional(ssh_data, "flags", str, "ssh.")
    append_flags = _optional(ssh_data, "append_flags", str, "ssh.")

    return SSHConfig(
        port=port,
        identity_file=identity_file,
        flags=split_flags(flags) if flags else (),
        append_flags=split_flags(append_flags) if append_flags else (),
    )


def _parse_logging_config(data: Dict[str, Any]) -> LoggingConfig:
    """Parse logging configuration from dict."""
    logging_data = data.get("logging", {})
    _validate_type(logging_data, dict, "logging")

    level = logging_data.get("level", "INFO")
    _validate_type(level, str, "logging.level")
    if level.upper() not in VALID_LOG_LEVELS:
        raise ValidationError(
            f"Key 'logging.level' must be one of {', '.join(VALID_LOG_LEVELS)}, got '{level}'"
        )

    log_file = _optional(logging_data, "log_file", str, "logging.")
    log_dir = _optional(logging_data, "log_dir", str, "logging.")

    keep_sync_logs = logging_data.get("keep_sync_logs", False)
    _validate_type(keep_sync_logs, bool, "logging.keep_sync_logs")

    log_max_size_mb = logging_data.get("log_max_size_mb", 10)
    _validate_type(log_max_size_mb, int, "logging.log_max_size_mb")

    log_backup_count = logging_data.get("log_backup_count", 5)
    _validate_type(log_backup_count, int, "logging.log_backup_count")

    return LoggingConfig(
        level=level.upper(),
        log_file=Path(log_file).expanduser() if log_file else None,
        log_dir=Path(log_dir).expanduser() if log_dir else default_log_dir(),
        keep_sync_logs=keep_sync_logs,
        log_max_size_mb=log_max_size_mb,
        log_backup_count=log_backup_count,
    )


def parse_config_string(toml_content: str) -> FileConfig:
    """
    Parse TOML string into a FileConfig.

    Args:
        toml_content: TOML formatted string

    Returns:
        FileConfig with every key the file sets

    Raises:
        ConfigurationError: If the TOML is malformed
        ValidationError: If value has wrong type
    """
    try:
        data = tomllib.loads(toml_content)
    except tomllib.TOMLDecodeError as e:
        raise ConfigurationError(f"Invalid TOML format: {e}")

    main_data = data.get("main", {})
    _validate_type(main_data, dict, "main")

    return FileConfig(
        source=_optional(main_data, "source", str, ""),
        destination=_optional(main_data, "destination", str, ""),
        exclude_from=_optional(main_data, "exclude_from", str, ""),
        strategy=_optional(main_data, "strategy", str, ""),
        auto_expire=_optional(main_data, "auto_expire", bool, ""),
        create_destination=_optional(main_data, "create_destination", bool, ""),
        rsync=_parse_rsync_config(data),
        ssh=_parse_ssh_config(data),
        logging=_parse_logging_config(data),
    )


def parse_config(config_path: Optional[Path] = None) -> FileConfig:
    """
    Parse a TOML configuration file.

    Args:
        config_path: Path to config file. Defaults to ~/.config/timeshelf/config.toml

    Raises:
        ConfigurationError: If file doesn't exist or can't be read
        ValidationError: If value has wrong type
    """
    if config_path is None:
        config_path = DEFAULT_CONFIG_PATH

    if not config_path.exists():
        raise ConfigurationError(f"Configuration file not found: {config_path}")

    try:
        content = config_path.read_text()
    except PermissionError:
        raise ConfigurationError(
            f"Permission denied reading configuration file: {config_path}"
        )
    except OSError as e:
        raise ConfigurationError(f"Error reading configuration file {config_path}: {e}")

    return parse_config_string(content)


def _pick(override: Any, file_value: Any, default: Any) -> Any:
    if override is not None:
        return override
    if file_value is not None:
        return file_value
    return default


def _expand_user(path: Optional[str]) -> Optional[str]:
    # rsync and ssh get these as argv elements, no shell expands ~ for them
    return os.path.expanduser(path) if path else path


def build_run_config(
    file_config: Optional[FileConfig] = None,
    source: Optional[str] = None,
    destination: Optional[str] = None,
    exclude_from: Optional[str] = None,
    strategy: Optional[str] = None,
    auto_expire: Optional[bool] = None,
    create_destination: Optional[bool] = None,
    rsync_set_flags: Optional[str] = None,
    rsync_append_flags: Optional[str] = None,
    sync_timeout_seconds: Optional[int] = None,
    ssh_port: Optional[int] = None,
    ssh_identity_file: Optional[str] = None,
    ssh_set_flags: Optional[str] = None,
    ssh_append_flags: Optional[str] = None,
    log_dir: Optional[Path] = None,
    log_level: Optional[str] = None,
) -> RunConfig:
    """
    Merge config file values with command-line overrides into a RunConfig.

    Overrides win over the file, the file wins over built-in defaults.
    Everything is validated here so that a bad value is reported before
    any filesystem is touched.

    Raises:
        ConfigurationError: On a missing path, bad strategy, bad flags or
            when both source and destination are remote
    """
    from timeshelf.retention import parse_strategy

    if file_config is None:
        file_config = FileConfig()

    raw_source = _pick(source, file_config.source, None)
    raw_destination = _pick(destination, file_config.destination, None)
    if not raw_source:
        raise ConfigurationError("Source folder not specified")
    if not raw_destination:
        raise ConfigurationError("Destination folder not specified")

    src = parse_location(raw_source)
    dest = parse_location(raw_destination)
    if src.is_remote and dest.is_remote:
        raise ConfigurationError(
            "Source and destination cannot both be remote"
        )

    chosen_strategy = _pick(strategy, file_config.strategy, DEFAULT_STRATEGY)
    parse_strategy(chosen_strategy)

    rsync = file_config.rsync
    if rsync_set_flags is not None:
        rsync = RsyncConfig(
            flags=split_flags(rsync_set_flags),
            append_flags=rsync.append_flags,
            sync_timeout_seconds=rsync.sync_timeout_seconds,
        )
    if rsync_append_flags:
        rsync = RsyncConfig(
            flags=rsync.flags,
            append_flags=rsync.append_flags + split_flags(rsync_append_flags),
            sync_timeout_seconds=rsync.sync_timeout_seconds,
        )
    if sync_timeout_seconds is not None:
        if sync_timeout_seconds <= 0:
            raise ConfigurationError("Sync timeout must be a positive number of seconds")
        rsync = RsyncConfig(
            flags=rsync.flags,
            append_flags=rsync.append_flags,
            sync_timeout_seconds=sync_timeout_seconds,
        )

    ssh = file_config.ssh
    port = _pick(ssh_port, ssh.port, DEFAULT_SSH_PORT)
    if not 0 < port < 65536:
        raise ConfigurationError(f"Invalid ssh port: {port}")
    ssh = SSHConfig(
        port=port,
        identity_file=_expand_user(_pick(ssh_identity_file, ssh.identity_file, None)),
        flags=split_flags(ssh_set_flags) if ssh_set_flags is not None else ssh.flags,
        append_flags=ssh.append_flags + (split_flags(ssh_append_flags) if ssh_append_flags else ()),
    )

    logging_config = file_config.logging
    level = (log_level or logging_config.level).upper()
    if level not in VALID_LOG_LEVELS:
        raise ConfigurationError(f"Invalid log level: {level}")
    logging_config = LoggingConfig(
        level=level,
        log_file=logging_config.log_file,
        # An explicit log directory means the operator wants to keep the logs
        log_dir=Path(log_dir).expanduser() if log_dir is not None else logging_config.log_dir,
        keep_sync_logs=True if log_dir is not None else logging_config.keep_sync_logs,
        log_max_size_mb=logging_config.log_max_size_mb,
        log_backup_count=logging_config.log_backup_count,
    )

    return RunConfig(
        source=src,
        destination=dest,
        exclude_from=_expand_user(_pick(exclude_from, file_config.exclude_from, None)),
        strategy=chosen_strategy,
        auto_expire=_pick(auto_expire, file_config.auto_expire, True),
        create_destination=_pick(create_destination, file_config.create_destination, False),
        rsync=rsync,
        ssh=ssh,
        logging=logging_config,
    )


def create_default_config() -> str:
    """
    Generate default configuration TOML for `timeshelf init`.

    Returns:
        TOML formatted string with default configuration
    """
    rsync_flags = " ".join(DEFAULT_RSYNC_FLAGS)
    template = f'''# timeshelf configuration file
# Every value can be overridden on the command line.

[main]
# Folder to back up. Either side may be remote: "user@host:/path"
# source = "/home/me"
# destination = "/mnt/backup"

# File with rsync exclude patterns
# exclude_from = "~/.config/timeshelf/excludes"

# Retention strategy, space separated "X:Y" tokens:
# after X days keep one backup every Y days (Y = 0 deletes everything older than X)
strategy = "{DEFAULT_STRATEGY}"

# Delete the oldest backup and retry when the destination runs out of space
auto_expire = true

# Create the destination and its backup.marker if missing
create_destination = false

[rsync]
flags = "{rsync_flags}"
append_flags = ""
# Give up on a sync that runs longer than this (unset = no limit)
# sync_timeout_seconds = 86400

[ssh]
port = {DEFAULT_SSH_PORT}
# identity_file = "~/.ssh/id_ed25519"
flags = ""
append_flags = ""

[logging]
# Log level: DEBUG, INFO, WARNING, ERROR
level = "INFO"
# Optional application log file (rotated and gzipped)
# log_file = "~/.local/state/timeshelf/timeshelf.log"
# Folder for per-run rsync logs
# log_dir = "~/.local/share/timeshelf/log"
# Keep rsync logs of successful runs
keep_sync_logs = false
log_max_size_mb = 10
log_backup_count = 5
'''

    return template
