"""
Verify command: compare each inventoried live file against its backup counterpart.
"""

import logging
import os
import stat
import threading
from concurrent.futures import ThreadPoolExecutor, as_completed, wait
from pathlib import Path
from typing import List, Optional

from common import (
    DEFAULT_HASH_ALGO,
    DEFAULT_MTIME_TOLERANCE,
    DEFAULT_WORKERS,
    MODE_HASH,
    MODE_METADATA,
    MODES,
    VERIFY_BATCH_SIZE,
    Alert,
    Inventory,
    RunCounters,
    Severity,
    compute_hash,
    map_to_backup,
)
from reporting import AlertSink


MSG_MISSING = "is missing from the backup"
MSG_SIZE_MISMATCH = "size differs from the backup despite equal mtimes"
MSG_CONTENT_MISMATCH = "content differs from the backup despite equal mtimes"
MSG_OUT_OF_SYNC = "mtimes are more than {hours:g} hours out of sync"


class ComparisonEngine:
    """Decides, per live file, whether its backup copy looks wrong.

    Two policies are available:

    metadata
        lstat both sides. A missing backup is critical; equal mtimes with a
        different size is critical; a live mtime newer than the backup by more
        than the tolerance is a warning. Stat failures become warnings.

    hash
        Hash both sides concurrently. Only a content difference with equal
        mtimes is reported. Missing backups, symlinks and I/O failures are
        skipped silently.
    """

    def __init__(
        self,
        live_root: Path,
        backup_root: Path,
        mode: str = MODE_METADATA,
        mtime_tolerance: int = DEFAULT_MTIME_TOLERANCE,
        hash_algo: str = DEFAULT_HASH_ALGO,
        hash_workers: int = 2,
    ) -> None:
        if mode not in MODES:
            raise ValueError(f"Unknown comparison mode: {mode}")
        self.live_root = live_root
        self.backup_root = backup_root
        self.mode = mode
        self.mtime_tolerance = mtime_tolerance
        self.hash_algo = hash_algo
        self._tolerance_ns = mtime_tolerance * 1_000_000_000
        self._hash_pool: Optional[ThreadPoolExecutor] = None
        if mode == MODE_HASH:
            self._hash_pool = ThreadPoolExecutor(
                max_workers=max(hash_workers, 2), thread_name_prefix="hash"
            )

    def close(self) -> None:
        if self._hash_pool is not None:
            self._hash_pool.shutdown(wait=True)
            self._hash_pool = None

    def __enter__(self) -> "ComparisonEngine":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def check(self, rel_path: str) -> List[Alert]:
        """Compare one live file (relative to the live root) with its backup."""
        live_path = Path(os.path.join(self.live_root, rel_path))
        backup_path = map_to_backup(rel_path, self.live_root, self.backup_root)
        if self.mode == MODE_HASH:
            return self.check_hash(rel_path, live_path, backup_path)
        return self.check_metadata(rel_path, live_path, backup_path)

    def check_metadata(self, rel_path: str, live_path: Path, backup_path: Path) -> List[Alert]:
        try:
            live_stat = os.lstat(live_path)
        except OSError as exc:
            return [Alert(Severity.WARNING, rel_path, f"could not stat live file: {exc}")]

        try:
            backup_stat = os.lstat(backup_path)
        except (FileNotFoundError, NotADirectoryError):
            return [Alert(Severity.CRITICAL, rel_path, MSG_MISSING)]
        except OSError as exc:
            return [Alert(Severity.WARNING, rel_path, f"could not stat backup file: {exc}")]

        if live_stat.st_mtime_ns == backup_stat.st_mtime_ns:
            is_link = stat.S_ISLNK(live_stat.st_mode) or stat.S_ISLNK(backup_stat.st_mode)
            if not is_link and live_stat.st_size != backup_stat.st_size:
                return [Alert(
                    Severity.CRITICAL,
                    rel_path,
                    f"{MSG_SIZE_MISMATCH} ({live_stat.st_size} != {backup_stat.st_size} bytes)",
                )]
        elif live_stat.st_mtime_ns - backup_stat.st_mtime_ns > self._tolerance_ns:
            return [Alert(
                Severity.WARNING,
                rel_path,
                MSG_OUT_OF_SYNC.format(hours=self.mtime_tolerance / 3600),
            )]
        return []

    def check_hash(self, rel_path: str, live_path: Path, backup_path: Path) -> List[Alert]:
        try:
            live_stat = os.lstat(live_path)
            backup_stat = os.lstat(backup_path)
        except OSError as exc:
            logging.debug(f"Skipping {rel_path}: {exc}")
            return []
        if stat.S_ISLNK(live_stat.st_mode) or stat.S_ISLNK(backup_stat.st_mode):
            return []

        if self._hash_pool is None:
            raise RuntimeError("ComparisonEngine is closed")
        # Live and backup normally sit on different devices, so read both at once.
        live_future = self._hash_pool.submit(compute_hash, live_path, self.hash_algo)
        backup_future = self._hash_pool.submit(compute_hash, backup_path, self.hash_algo)
        wait([live_future, backup_future])
        try:
            live_digest = live_future.result()
            backup_digest = backup_future.result()
        except OSError as exc:
            logging.debug(f"Skipping {rel_path}, failed to hash: {exc}")
            return []

        if live_digest == backup_digest:
            return []
        if live_stat.st_mtime_ns != backup_stat.st_mtime_ns:
            return []
        return [Alert(Severity.CRITICAL, rel_path, MSG_CONTENT_MISMATCH)]


def _check_and_record(
    rel_path: str,
    engine: ComparisonEngine,
    counters: RunCounters,
    sink: AlertSink,
) -> None:
    counters.start_file(rel_path)
    alerts = engine.check(rel_path)
    if alerts:
        sink.extend(alerts)
    try:
        size = os.lstat(os.path.join(engine.live_root, rel_path)).st_size
    except OSError:
        size = 0
    counters.finish_file(size)


def _verify_single_threaded(
    inventory: Inventory,
    engine: ComparisonEngine,
    counters: RunCounters,
    sink: AlertSink,
    cancel_event: Optional[threading.Event],
) -> None:
    """Pop paths off the inventory and check them one at a time."""
    while inventory.paths:
        if cancel_event is not None and cancel_event.is_set():
            return
        _check_and_record(inventory.pop(), engine, counters, sink)


def _verify_multi_threaded(
    inventory: Inventory,
    engine: ComparisonEngine,
    counters: RunCounters,
    sink: AlertSink,
    workers: int,
    cancel_event: Optional[threading.Event],
) -> None:
    """Check paths in bounded batches using a thread pool."""
    logging.debug(f"Using {workers} worker threads for verification")
    with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="verify") as executor:
        while inventory.paths:
            if cancel_event is not None and cancel_event.is_set():
                return
            batch = [inventory.pop() for _ in range(min(VERIFY_BATCH_SIZE, len(inventory)))]
            futures = [
                executor.submit(_check_and_record, rel_path, engine, counters, sink)
                for rel_path in batch
            ]
            for future in as_completed(futures):
                future.result()


def verify_inventory(
    inventory: Inventory,
    engine: ComparisonEngine,
    counters: RunCounters,
    sink: AlertSink,
    workers: int = DEFAULT_WORKERS,
    cancel_event: Optional[threading.Event] = None,
) -> None:
    """Consume the inventory, pushing any alerts into the sink.

    Every path is checked exactly once; order between paths is not preserved
    when workers > 1.
    """
    if workers <= 1:
        _verify_single_threaded(inventory, engine, counters, sink, cancel_event)
    else:
        _verify_multi_threaded(inventory, engine, counters, sink, workers, cancel_event)
