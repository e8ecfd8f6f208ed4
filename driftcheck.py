#!/usr/bin/env python3
"""
Driftcheck – early warning for silent divergence between a live tree and its backup.

Walks the live tree, then checks every file against its counterpart in the
latest backup snapshot:

  metadata  (default) existence, mtime skew and size; fast.
  hash      content hash of both copies; slow, only flags content that
            changed while the mtime did not.

Alerts are informational: the exit status is 0 whatever was found, 1 when a
required path is missing, 130 when interrupted.
Use --help for full options and examples.
"""

import argparse
import logging
import os
import sys
from pathlib import Path
from typing import List, Optional

from common import (
    DEFAULT_HASH_ALGO,
    DEFAULT_MTIME_TOLERANCE,
    DEFAULT_PROGRESS_INTERVAL,
    DEFAULT_WORKERS,
    HASH_ALGOS,
    MODE_METADATA,
    MODES,
    setup_logging,
)
from pipeline import run_pipeline
from run_config import (
    TIME_MACHINE_MOUNT,
    BackupLayout,
    RunConfig,
    explicit_layout,
    get_defaults_path,
    load_defaults,
    time_machine_layout,
)


EXIT_OK = 0
EXIT_USAGE = 1
EXIT_INTERRUPTED = 130


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description='Compare a live directory tree with its backup and report '
                    'files that diverged unexpectedly.',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=f"""
Examples:
  python driftcheck.py /Users/jon --backup-root /mnt/backup/Users/jon
  python driftcheck.py /Users/jon --tm-volume "Time Machine" --tm-computer "Jon's iMac" --tm-drive "Macintosh HD"
  python driftcheck.py /Users/jon --backup-root /mnt/backup/Users/jon --mode hash --workers 4
  python driftcheck.py /Users/jon --backup-root /mnt/backup/Users/jon --exclude-file excludes.txt

Saved defaults for any long option (e.g. "backup_root", "exclude_file") are read
from {get_defaults_path()} unless --defaults points elsewhere.
        """,
    )
    parser.add_argument(
        'live_root',
        type=Path,
        help='Root of the live tree to check',
    )
    parser.add_argument(
        '--backup-root',
        type=Path,
        help='Directory holding the backup copy of live_root',
    )
    parser.add_argument(
        '--tm-volume',
        help='Time Machine volume name (used when --backup-root is not given)',
    )
    parser.add_argument(
        '--tm-computer',
        help='Computer name inside Backups.backupdb',
    )
    parser.add_argument(
        '--tm-drive',
        help='Name of the backed-up drive inside the Latest snapshot',
    )
    parser.add_argument(
        '--tm-mount',
        type=Path,
        default=TIME_MACHINE_MOUNT,
        help=f'Mount point of backup volumes (default: {TIME_MACHINE_MOUNT})',
    )
    parser.add_argument(
        '--mode',
        choices=MODES,
        default=MODE_METADATA,
        help=f'Comparison policy (default: {MODE_METADATA})',
    )
    parser.add_argument(
        '--exclude',
        action='append',
        default=[],
        help='Glob matched against full directory paths; matching directories '
             'are skipped. Repeatable.',
    )
    parser.add_argument(
        '--exclude-file',
        type=Path,
        help='File with one exclusion glob per line',
    )
    parser.add_argument(
        '--mtime-tolerance',
        type=int,
        default=DEFAULT_MTIME_TOLERANCE,
        help=f'Seconds the live mtime may lead the backup before warning '
             f'(default: {DEFAULT_MTIME_TOLERANCE})',
    )
    parser.add_argument(
        '--hash-algo',
        choices=HASH_ALGOS,
        default=DEFAULT_HASH_ALGO,
        help=f'Hash algorithm for --mode hash (default: {DEFAULT_HASH_ALGO})',
    )
    parser.add_argument(
        '--workers',
        type=int,
        default=DEFAULT_WORKERS,
        help=f'Number of parallel verification threads (default: {DEFAULT_WORKERS})',
    )
    parser.add_argument(
        '--report',
        type=Path,
        help='Write a JSON report to this path',
    )
    parser.add_argument(
        '--log',
        type=Path,
        help='Write log output to this file',
    )
    parser.add_argument(
        '--verbose',
        action='store_true',
        help='Enable verbose (debug) logging',
    )
    parser.add_argument(
        '--interval',
        type=float,
        default=DEFAULT_PROGRESS_INTERVAL,
        help=f'Seconds between status updates (default: {DEFAULT_PROGRESS_INTERVAL})',
    )
    parser.add_argument(
        '--defaults',
        type=Path,
        help='JSON file with saved option defaults',
    )
    return parser


# Saved-default keys that differ from the argparse dest they feed.
DEFAULT_KEY_TO_DEST = {
    "exclude_patterns": "exclude",
    "mtime_tolerance_seconds": "mtime_tolerance",
    "report_path": "report",
    "log_path": "log",
    "progress_interval": "interval",
}


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    """Parse argv, with saved defaults applied underneath the command line."""
    pre_parser = argparse.ArgumentParser(add_help=False)
    pre_parser.add_argument('--defaults', type=Path)
    pre_args, _ = pre_parser.parse_known_args(argv)

    parser = build_parser()
    saved = load_defaults(pre_args.defaults)
    saved.pop("live_root", None)
    parser.set_defaults(**{DEFAULT_KEY_TO_DEST.get(k, k): v for k, v in saved.items()})
    return parser.parse_args(argv)


def resolve_layout(args: argparse.Namespace) -> Optional[BackupLayout]:
    if args.backup_root is not None:
        return explicit_layout(Path(args.backup_root).expanduser())
    if args.tm_volume and args.tm_computer and args.tm_drive:
        return time_machine_layout(
            args.tm_volume, args.tm_computer, args.tm_drive, Path(args.tm_mount)
        )
    return None


def config_from_args(args: argparse.Namespace, layout: BackupLayout) -> RunConfig:
    # Symlinks are kept so exclusion patterns match the path as typed.
    live_root = Path(os.path.abspath(Path(args.live_root).expanduser()))
    return RunConfig(
        live_root=live_root,
        backup_root=layout(live_root),
        exclude_file=Path(args.exclude_file).expanduser() if args.exclude_file else None,
        exclude_patterns=list(args.exclude),
        mode=args.mode,
        mtime_tolerance_seconds=int(args.mtime_tolerance),
        hash_algo=args.hash_algo,
        workers=int(args.workers),
        report_path=Path(args.report) if args.report else None,
        log_path=Path(args.log) if args.log else None,
        verbose=bool(args.verbose),
        progress_interval=float(args.interval),
    )


def main(argv: Optional[List[str]] = None) -> None:
    """Main entry point for the script."""
    args = parse_args(argv)

    setup_logging(Path(args.log) if args.log else None, bool(args.verbose))

    layout = resolve_layout(args)
    if layout is None:
        logging.error(
            "No backup location: pass --backup-root, or all of "
            "--tm-volume, --tm-computer and --tm-drive"
        )
        sys.exit(EXIT_USAGE)

    config = config_from_args(args, layout)
    try:
        report = run_pipeline(config)
    except (FileNotFoundError, NotADirectoryError, ValueError) as exc:
        logging.error(str(exc))
        sys.exit(EXIT_USAGE)

    if report.get("cancelled"):
        sys.exit(EXIT_INTERRUPTED)
    sys.exit(EXIT_OK)


if __name__ == "__main__":
    main()
