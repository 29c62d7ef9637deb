"""Command-line interface for timeshelf.

Commands:
- run: Back up SOURCE into a new snapshot under DEST
- list: List the snapshots of a destination
- prune: Apply the retention strategy without backing up
- flags: Print the default rsync or ssh flags
- init: Create a default config file
"""

import argparse
import json
import sys
import time
from pathlib import Path
from typing import Optional

from timeshelf import __version__
from timeshelf.backup import EXIT_FAILURE, EXIT_SUCCESS, prune_destination, run_backup
from timeshelf.config import (
    DEFAULT_CONFIG_PATH,
    DEFAULT_RSYNC_FLAGS,
    DEFAULT_STRATEGY,
    ConfigurationError,
    FileConfig,
    TimeshelfError,
    build_run_config,
    create_default_config,
    parse_config,
    parse_location,
)
from timeshelf.destination import Destination
from timeshelf.logger import setup_logging
from timeshelf.transport import transport_for


def create_parser() -> argparse.ArgumentParser:
    """Create and configure the argument parser with all subcommands."""
    parser = argparse.ArgumentParser(
        prog='timeshelf',
        description='Time Machine style backups with rsync'
    )
    parser.add_argument(
        '--version',
        action='version',
        version=f'%(prog)s {__version__}'
    )
    parser.add_argument(
        '--config', '-c',
        type=Path,
        help=f'Path to config file (default: {DEFAULT_CONFIG_PATH})',
        metavar='PATH'
    )
    parser.add_argument(
        '--verbose', '-v',
        action='store_true',
        help='Verbose output'
    )

    subparsers = parser.add_subparsers(dest='command', help='Available commands')

    run_parser = subparsers.add_parser(
        'run',
        help='Run backup now',
        description='Back up [USER@HOST:]SOURCE into [USER@HOST:]DESTINATION'
    )
    run_parser.add_argument('source', nargs='?', help='[USER@HOST:]SOURCE')
    run_parser.add_argument('destination', nargs='?', help='[USER@HOST:]DESTINATION')
    run_parser.add_argument(
        '-y', '--yes',
        action='store_true',
        default=None,
        help='Create the destination and its backup marker if missing'
    )
    run_parser.add_argument(
        '-x', '--exclude-from',
        metavar='FILE',
        help='File with rsync exclude patterns'
    )
    run_parser.add_argument(
        '-s', '--strategy',
        help=f'Retention strategy (default: "{DEFAULT_STRATEGY}")'
    )
    run_parser.add_argument(
        '--no-auto-expire',
        dest='auto_expire',
        action='store_false',
        default=None,
        help='Fail instead of deleting old backups when out of space'
    )
    run_parser.add_argument(
        '-p', '--ssh-port',
        type=int,
        help='SSH port (default: 22)'
    )
    run_parser.add_argument(
        '-i', '--ssh-identity-file',
        metavar='FILE',
        help='SSH identity file'
    )
    run_parser.add_argument(
        '--log-dir',
        type=Path,
        help='Folder for rsync logs; logs of successful runs are then kept'
    )
    run_parser.add_argument(
        '--rsync-set-flags',
        metavar='FLAGS',
        help='Replace the default rsync flags'
    )
    run_parser.add_argument(
        '--rsync-append-flags',
        metavar='FLAGS',
        help='Append to the rsync flags'
    )
    run_parser.add_argument(
        '--ssh-set-flags',
        metavar='FLAGS',
        help='Replace the ssh flags'
    )
    run_parser.add_argument(
        '--ssh-append-flags',
        metavar='FLAGS',
        help='Append to the ssh flags'
    )
    run_parser.add_argument(
        '--sync-timeout',
        type=int,
        metavar='SECONDS',
        help='Abort rsync after this many seconds'
    )

    list_parser = subparsers.add_parser(
        'list',
        help='List snapshots'
    )
    list_parser.add_argument('destination', nargs='?', help='[USER@HOST:]DESTINATION')
    list_parser.add_argument(
        '--json',
        action='store_true',
        help='Output as JSON'
    )

    prune_parser = subparsers.add_parser(
        'prune',
        help='Expire snapshots according to the retention strategy'
    )
    prune_parser.add_argument('destination', nargs='?', help='[USER@HOST:]DESTINATION')
    prune_parser.add_argument('-s', '--strategy', help='Retention strategy')
    prune_parser.add_argument(
        '--dry-run',
        action='store_true',
        help='Only show what would be expired'
    )

    flags_parser = subparsers.add_parser(
        'flags',
        help='Print default flags'
    )
    flags_parser.add_argument('kind', choices=['rsync', 'ssh'])

    init_parser = subparsers.add_parser(
        'init',
        help='Create default config file'
    )
    init_parser.add_argument(
        '--force',
        action='store_true',
        help='Overwrite existing config'
    )

    return parser


def load_file_config(config_path: Optional[Path]) -> FileConfig:
    """
    Load the config file.

    An explicitly given file must exist; the default file is optional.
    """
    if config_path is not None:
        return parse_config(config_path)
    if DEFAULT_CONFIG_PATH.exists():
        return parse_config(DEFAULT_CONFIG_PATH)
    return FileConfig()


def _resolve_destination(args: argparse.Namespace, file_config: FileConfig) -> str:
    destination = args.destination or file_config.destination
    if not destination:
        raise ConfigurationError("Destination folder not specified")
    return destination


def cmd_run(args: argparse.Namespace) -> int:
    """Execute the 'run' command - back up now."""
    file_config = load_file_config(args.config)
    config = build_run_config(
        file_config,
        source=args.source,
        destination=args.destination,
        exclude_from=args.exclude_from,
        strategy=args.strategy,
        auto_expire=args.auto_expire,
        create_destination=args.yes,
        rsync_set_flags=args.rsync_set_flags,
        rsync_append_flags=args.rsync_append_flags,
        sync_timeout_seconds=args.sync_timeout,
        ssh_port=args.ssh_port,
        ssh_identity_file=args.ssh_identity_file,
        ssh_set_flags=args.ssh_set_flags,
        ssh_append_flags=args.ssh_append_flags,
        log_dir=args.log_dir,
        log_level='DEBUG' if args.verbose else None,
    )
    setup_logging(config.logging)

    result = run_backup(config)
    return result.exit_code


def cmd_list(args: argparse.Namespace) -> int:
    """Execute the 'list' command - list snapshots."""
    file_config = load_file_config(args.config)
    location = parse_location(_resolve_destination(args, file_config))
    destination = Destination(transport_for(location, file_config.ssh), location.path)

    listing = destination.catalog.list()
    latest = destination.latest_target()

    if args.json:
        output = {
            "destination": str(location),
            "latest": latest,
            "snapshots": [
                {
                    "id": snap.id,
                    "path": snap.path,
                    "timestamp": snap.timestamp,
                    "latest": snap.id == latest,
                }
                for snap in listing.newest_first()
            ],
            "skipped": [snap.id for snap in listing.skipped],
        }
        print(json.dumps(output, indent=2))
        return EXIT_SUCCESS

    if not len(listing):
        print("No snapshots found.")
    else:
        now = int(time.time())
        print(f"{'Snapshot':<20} {'Age':>10}")
        print("-" * 32)
        for snap in listing.newest_first():
            mark = " *" if snap.id == latest else ""
            print(f"{snap.id:<20} {_format_age(now - snap.timestamp):>10}{mark}")
        print("-" * 32)
        print(f"Total: {len(listing)} snapshot(s)")

    for snap in listing.skipped:
        print(f"Skipped (unparseable date): {snap.id}", file=sys.stderr)
    return EXIT_SUCCESS


def cmd_prune(args: argparse.Namespace) -> int:
    """Execute the 'prune' command - apply retention only."""
    file_config = load_file_config(args.config)
    location = parse_location(_resolve_destination(args, file_config))
    strategy = args.strategy or file_config.strategy or DEFAULT_STRATEGY

    result = prune_destination(
        location,
        strategy,
        ssh=file_config.ssh,
        dry_run=args.dry_run,
    )

    verb = "Would expire" if result.dry_run else "Expired"
    print(f"{verb} {len(result.deleted_snapshots)} snapshot(s), kept {len(result.kept_snapshots)}.")
    return EXIT_SUCCESS


def cmd_flags(args: argparse.Namespace) -> int:
    """Execute the 'flags' command - print default flags."""
    file_config = load_file_config(args.config)
    if args.kind == 'rsync':
        flags = file_config.rsync.effective_flags or DEFAULT_RSYNC_FLAGS
    else:
        flags = file_config.ssh.effective_flags
    print(" ".join(flags))
    return EXIT_SUCCESS


def cmd_init(args: argparse.Namespace) -> int:
    """Execute the 'init' command - create default config."""
    config_path = args.config or DEFAULT_CONFIG_PATH

    if config_path.exists() and not args.force:
        print(f"Config file already exists: {config_path}", file=sys.stderr)
        print("Use --force to overwrite.", file=sys.stderr)
        return EXIT_FAILURE

    config_path.parent.mkdir(parents=True, exist_ok=True)
    config_path.write_text(create_default_config())

    print(f"Created default config: {config_path}")
    print("Edit this file to configure your backup settings.")

    return EXIT_SUCCESS


def _format_age(seconds: int) -> str:
    """Format an age in seconds as a short human-readable string."""
    if seconds < 0:
        return "future"
    if seconds < 3600:
        return f"{seconds // 60}m"
    if seconds < 86400:
        return f"{seconds // 3600}h"
    return f"{seconds // 86400}d"


def main(argv: list = None) -> int:
    """
    Main CLI entry point.

    Args:
        argv: Command line arguments (defaults to sys.argv[1:])

    Returns:
        Exit code (0 for success, 1 for failure)
    """
    parser = create_parser()
    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        return EXIT_SUCCESS

    setup_logging(level='DEBUG' if args.verbose else 'INFO')

    handlers = {
        'run': cmd_run,
        'list': cmd_list,
        'prune': cmd_prune,
        'flags': cmd_flags,
        'init': cmd_init,
    }

    try:
        return handlers[args.command](args)
    except KeyboardInterrupt:
        print("\nSIGINT caught.", file=sys.stderr)
        return EXIT_FAILURE
    except TimeshelfError as e:
        print(f"timeshelf: [ERROR] {e}", file=sys.stderr)
        return EXIT_FAILURE


if __name__ == "__main__":
    sys.exit(main())
