"""
Run configuration: options, saved defaults and backup-root layouts.
"""

import hashlib
import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, List, Optional

from common import (
    DEFAULT_HASH_ALGO,
    DEFAULT_MTIME_TOLERANCE,
    DEFAULT_PROGRESS_INTERVAL,
    DEFAULT_WORKERS,
    MODE_METADATA,
    MODES,
)


# Maps a live root to the directory holding its most recent backup copy.
BackupLayout = Callable[[Path], Path]

TIME_MACHINE_MOUNT = Path("/Volumes")
TIME_MACHINE_DB = "Backups.backupdb"
TIME_MACHINE_LATEST = "Latest"


@dataclass
class RunConfig:
    """Options for one driftcheck run."""

    live_root: Path
    backup_root: Path
    exclude_file: Optional[Path] = None
    exclude_patterns: List[str] = field(default_factory=list)
    mode: str = MODE_METADATA
    mtime_tolerance_seconds: int = DEFAULT_MTIME_TOLERANCE
    hash_algo: str = DEFAULT_HASH_ALGO
    workers: int = DEFAULT_WORKERS
    report_path: Optional[Path] = None
    log_path: Optional[Path] = None
    verbose: bool = False
    progress_interval: float = DEFAULT_PROGRESS_INTERVAL

    def validate(self) -> None:
        """Raise on options that make the run impossible; paths are checked first."""
        if not self.live_root.exists():
            raise FileNotFoundError(f"Live root does not exist: {self.live_root}")
        if not self.live_root.is_dir():
            raise NotADirectoryError(f"Live root is not a directory: {self.live_root}")
        if not self.backup_root.exists():
            raise FileNotFoundError(f"Backup root does not exist: {self.backup_root}")
        if not self.backup_root.is_dir():
            raise NotADirectoryError(f"Backup root is not a directory: {self.backup_root}")
        if self.exclude_file is not None and not self.exclude_file.is_file():
            raise FileNotFoundError(f"Exclude file does not exist: {self.exclude_file}")
        if self.mode not in MODES:
            raise ValueError(f"Mode must be one of {', '.join(MODES)}: {self.mode}")
        if (
            self.hash_algo.startswith("shake_")
            or self.hash_algo not in hashlib.algorithms_available
        ):
            raise ValueError(f"Unsupported hash algorithm: {self.hash_algo}")
        if self.workers < 1:
            raise ValueError(f"Workers must be an integer >= 1: {self.workers}")
        if self.mtime_tolerance_seconds < 0:
            raise ValueError(
                f"Mtime tolerance must be >= 0 seconds: {self.mtime_tolerance_seconds}"
            )


def explicit_layout(backup_root: Path) -> BackupLayout:
    """Layout for a backup root given directly, whatever the live root."""
    def layout(live_root: Path) -> Path:
        return backup_root
    return layout


def time_machine_layout(
    volume: str,
    computer: str,
    drive: str,
    mount_point: Path = TIME_MACHINE_MOUNT,
) -> BackupLayout:
    """Layout of the latest snapshot on an HFS+ Time Machine volume.

    The live root is re-rooted under
    <mount>/<volume>/Backups.backupdb/<computer>/Latest/<drive>.
    """
    snapshot = mount_point / volume / TIME_MACHINE_DB / computer / TIME_MACHINE_LATEST / drive

    def layout(live_root: Path) -> Path:
        if live_root.is_absolute():
            return snapshot.joinpath(*live_root.parts[1:])
        return snapshot / live_root
    return layout


def get_defaults_path() -> Path:
    """Path to the config file where default option values are stored."""
    return Path.home() / ".config" / "driftcheck" / "defaults.json"


def load_defaults(path: Optional[Path] = None) -> Dict[str, object]:
    """Load saved option defaults; a missing or unreadable file yields {}."""
    path = path if path is not None else get_defaults_path()
    if not path.is_file():
        return {}
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as exc:
        logging.debug(f"Ignoring defaults file {path}: {exc}")
        return {}
    if not isinstance(data, dict):
        logging.debug(f"Ignoring defaults file {path}: not a JSON object")
        return {}

    known = set(RunConfig.__dataclass_fields__) | {
        "tm_volume", "tm_computer", "tm_drive", "tm_mount",
    }
    defaults: Dict[str, object] = {}
    for key, value in data.items():
        if key not in known:
            logging.debug(f"Ignoring unknown default {key!r} in {path}")
            continue
        defaults[key] = value
    return defaults
