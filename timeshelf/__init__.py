"""timeshelf - Time Machine style snapshot backups with rsync."""

__version__ = "0.1.0"

from timeshelf.config import (
    TimeshelfError,
    ConfigurationError,
    ValidationError,
    Location,
    RunConfig,
    parse_location,
    parse_config,
    build_run_config,
    create_default_config,
)
from timeshelf.catalog import (
    Snapshot,
    SnapshotCatalog,
    CatalogListing,
    generate_snapshot_id,
    parse_snapshot_timestamp,
)
from timeshelf.retention import (
    RetentionStrategy,
    RetentionPlan,
    RetentionManager,
    RetentionResult,
    parse_strategy,
    evaluate_retention,
)
from timeshelf.transport import (
    Transport,
    TransportError,
    LocalTransport,
    SSHTransport,
)
from timeshelf.destination import (
    Destination,
    DestinationError,
    SafetyCheckError,
)
from timeshelf.lock import LockManager, LockError, ResumeController
from timeshelf.logger import (
    LoggingError,
    setup_logging,
    get_logger,
)
from timeshelf.sync import (
    RsyncEngine,
    SyncResult,
    SyncStatus,
)
from timeshelf.backup import (
    BackupError,
    BackupResult,
    run_backup,
    prune_destination,
    EXIT_SUCCESS,
    EXIT_FAILURE,
)

__all__ = [
    "TimeshelfError",
    "ConfigurationError",
    "ValidationError",
    "Location",
    "RunConfig",
    "parse_location",
    "parse_config",
    "build_run_config",
    "create_default_config",
    "Snapshot",
    "SnapshotCatalog",
    "CatalogListing",
    "generate_snapshot_id",
    "parse_snapshot_timestamp",
    "RetentionStrategy",
    "RetentionPlan",
    "RetentionManager",
    "RetentionResult",
    "parse_strategy",
    "evaluate_retention",
    "Transport",
    "TransportError",
    "LocalTransport",
    "SSHTransport",
    "Destination",
    "DestinationError",
    "SafetyCheckError",
    "LockManager",
    "LockError",
    "ResumeController",
    "LoggingError",
    "setup_logging",
    "get_logger",
    "RsyncEngine",
    "SyncResult",
    "SyncStatus",
    "BackupError",
    "BackupResult",
    "run_backup",
    "prune_destination",
    "EXIT_SUCCESS",
    "EXIT_FAILURE",
]
