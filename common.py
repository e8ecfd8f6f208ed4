"""
Shared code for driftcheck inventory and verify: constants, types, hashing,
path mapping, exclusion patterns, reporting.
"""

import fnmatch
import hashlib
import json
import logging
import os
import sys
import threading
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Union


DEFAULT_HASH_ALGO = "sha256"
DEFAULT_CHUNK_SIZE = 8 * 1024 * 1024
DEFAULT_WORKERS = 1
DEFAULT_MTIME_TOLERANCE = 24 * 60 * 60
DEFAULT_PROGRESS_INTERVAL = 1.0
VERIFY_BATCH_SIZE = 100  # Number of paths per batch for parallel verification

MODE_METADATA = "metadata"
MODE_HASH = "hash"
MODES = (MODE_METADATA, MODE_HASH)

# shake_* digests have no fixed length, so hexdigest() needs an argument.
HASH_ALGOS = sorted(a for a in hashlib.algorithms_guaranteed if not a.startswith("shake_"))

PathLike = Union[str, "os.PathLike[str]"]


class Severity(Enum):
    """Alert severity, ordered from least to most serious."""
    NOTICE = "notice"
    WARNING = "warning"
    CRITICAL = "critical"


@dataclass(frozen=True)
class Alert:
    """One finding about a live path (relative to the live root)."""
    severity: Severity
    path: str
    message: str


@dataclass
class Inventory:
    """Relative file paths collected from a live tree, plus walk totals.

    Paths are stored in reverse discovery order so that ``pop()`` hands them
    out in the order they were found.
    """
    paths: List[str] = field(default_factory=list)
    file_count: int = 0
    byte_count: int = 0

    def __len__(self) -> int:
        return len(self.paths)

    def pop(self) -> str:
        return self.paths.pop()


class RunCounters:
    """Counters written by the active worker and sampled by the reporter."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.files_processed = 0
        self.bytes_processed = 0
        self.total_files = 0
        self.total_bytes = 0
        self.total_alerts = 0
        self.alerts_by_severity: Dict[Severity, int] = {s: 0 for s in Severity}
        self.current_file = ""

    def add_inventory_entry(self, size: int) -> None:
        with self._lock:
            self.total_files += 1
            self.total_bytes += size

    def start_file(self, path: str) -> None:
        self.current_file = path

    def finish_file(self, size: int = 0) -> None:
        with self._lock:
            self.files_processed += 1
            self.bytes_processed += size

    def add_alerts(self, alerts: Iterable[Alert]) -> None:
        with self._lock:
            for alert in alerts:
                self.total_alerts += 1
                self.alerts_by_severity[alert.severity] += 1

    def as_stats(self) -> Dict[str, int]:
        with self._lock:
            stats = {
                "files_processed": self.files_processed,
                "bytes_processed": self.bytes_processed,
                "total_files": self.total_files,
                "total_bytes": self.total_bytes,
                "total_alerts": self.total_alerts,
            }
            for severity, count in self.alerts_by_severity.items():
                stats[severity.value] = count
        return stats


def setup_logging(log_file: Optional[Path] = None, verbose: bool = False) -> None:
    """Configure logging to file and console.

    The console handler writes to stderr; stdout carries the status display.
    """
    level = logging.DEBUG if verbose else logging.INFO
    handlers: List[logging.Handler] = [logging.StreamHandler(sys.stderr)]

    if log_file:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_file, mode='w', encoding='utf-8'))

    logging.basicConfig(
        level=level,
        format='%(asctime)s - %(levelname)s - %(message)s',
        handlers=handlers,
        force=True,
    )


def relativize(path: PathLike, root: PathLike) -> str:
    """Strip ``root`` from ``path``, returning the tree-relative path string.

    Pure string operation; raises ValueError if path is not strictly under root.
    """
    path_str = os.fspath(path)
    root_str = os.fspath(root).rstrip(os.sep) or os.sep
    prefix = root_str if root_str.endswith(os.sep) else root_str + os.sep
    if not path_str.startswith(prefix) or len(path_str) == len(prefix):
        raise ValueError(f"{path_str} is not under {root_str}")
    return path_str[len(prefix):]


def map_to_backup(path: PathLike, live_root: PathLike, backup_root: PathLike) -> Path:
    """Map a live path (relative, or absolute under live_root) to its backup counterpart."""
    path_str = os.fspath(path)
    if os.path.isabs(path_str):
        path_str = relativize(path_str, live_root)
    return Path(os.path.join(os.fspath(backup_root), path_str))


def map_to_live(path: PathLike, live_root: PathLike, backup_root: PathLike) -> Path:
    """Inverse of map_to_backup."""
    path_str = os.fspath(path)
    if os.path.isabs(path_str):
        path_str = relativize(path_str, backup_root)
    return Path(os.path.join(os.fspath(live_root), path_str))


def parse_exclude_patterns(lines: Iterable[str]) -> List[str]:
    """Normalize exclusion glob patterns: strip whitespace, drop blanks and # comments."""
    patterns: List[str] = []
    for line in lines:
        pattern = line.strip()
        if not pattern or pattern.startswith('#'):
            continue
        if pattern not in patterns:
            patterns.append(pattern)
    return patterns


def load_exclude_file(exclude_file: Path) -> List[str]:
    """Read one glob pattern per line from exclude_file."""
    text = exclude_file.read_text(encoding='utf-8')
    patterns = parse_exclude_patterns(text.splitlines())
    logging.info(f"Loaded {len(patterns)} exclusion patterns from {exclude_file}")
    return patterns


def match_exclusion(dir_path: str, patterns: Iterable[str]) -> Optional[str]:
    """Return the first pattern matching the full directory path, if any."""
    for pattern in patterns:
        if fnmatch.fnmatchcase(dir_path, pattern):
            return pattern
    return None


def compute_hash(
    file_path: Path,
    hash_algo: str = DEFAULT_HASH_ALGO,
    chunk_size: int = DEFAULT_CHUNK_SIZE,
) -> str:
    """Compute a content hash for a file, streaming in fixed-size chunks."""
    hasher = hashlib.new(hash_algo)
    with file_path.open('rb') as handle:
        for chunk in iter(lambda: handle.read(chunk_size), b''):
            hasher.update(chunk)
    return hasher.hexdigest()


def build_report(
    live_root: Path,
    backup_root: Path,
    mode: str,
    hash_algo: str,
    mtime_tolerance: int,
    exclude_patterns: List[str],
    stats: Dict[str, int],
    run_started: int,
    run_finished: int,
    details: Optional[Dict[str, object]] = None,
) -> Dict[str, object]:
    """Build JSON-compatible report."""
    report: Dict[str, object] = {
        "run_started": datetime.fromtimestamp(run_started).isoformat(),
        "run_finished": datetime.fromtimestamp(run_finished).isoformat(),
        "duration_seconds": run_finished - run_started,
        "live_root": str(live_root),
        "backup_root": str(backup_root),
        "mode": mode,
        "hash_algo": hash_algo if mode == MODE_HASH else None,
        "mtime_tolerance_seconds": mtime_tolerance,
        "exclude_patterns": list(exclude_patterns),
        "stats": stats,
    }
    if details:
        report.update(details)
    return report


def write_report(report: Dict[str, object], report_path: Path) -> None:
    """Write report to file."""
    report_json = json.dumps(report, indent=2, sort_keys=True)
    report_path.parent.mkdir(parents=True, exist_ok=True)
    report_path.write_text(report_json, encoding='utf-8')
    logging.info(f"Report written to {report_path}")
