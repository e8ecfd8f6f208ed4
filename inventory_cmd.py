"""
Inventory command: walk the live tree and collect the files to verify.
"""

import logging
import os
import threading
from pathlib import Path
from typing import Iterator, List, Optional, Tuple

from common import (
    Alert,
    Inventory,
    RunCounters,
    Severity,
    match_exclusion,
    relativize,
)
from reporting import AlertSink


def iter_inventory(
    root: Path,
    exclude_patterns: List[str],
    sink: Optional[AlertSink] = None,
    cancel_event: Optional[threading.Event] = None,
) -> Iterator[Tuple[str, int]]:
    """Yield (relative path, lstat size) for files and symlinks under root.

    Symlinks are never followed. Directories matching an exclusion pattern are
    pruned and reported to the sink as a notice. Errors on a single entry or
    directory are logged and skipped.
    """
    root_str = os.fspath(root)
    stack = [root_str]
    while stack:
        if cancel_event is not None and cancel_event.is_set():
            return
        current = stack.pop()
        try:
            with os.scandir(current) as entries:
                subdirs = []
                for entry in entries:
                    try:
                        if entry.is_dir(follow_symlinks=False):
                            pattern = match_exclusion(entry.path, exclude_patterns)
                            if pattern is not None:
                                if sink is not None:
                                    sink.add(Alert(
                                        Severity.NOTICE,
                                        relativize(entry.path, root_str),
                                        f"excluded by pattern {pattern}",
                                    ))
                                continue
                            subdirs.append(entry.path)
                        elif entry.is_symlink() or entry.is_file(follow_symlinks=False):
                            size = entry.stat(follow_symlinks=False).st_size
                            yield relativize(entry.path, root_str), size
                        else:
                            logging.debug(f"Skipping special file {entry.path}")
                    except OSError as exc:
                        logging.debug(f"Skipping entry {entry.path}: {exc}")
                # Reversed so the stack visits subdirectories in listing order.
                stack.extend(reversed(subdirs))
        except OSError as exc:
            logging.debug(f"Skipping directory {current}: {exc}")


def collect_inventory(
    root: Path,
    exclude_patterns: List[str],
    counters: Optional[RunCounters] = None,
    sink: Optional[AlertSink] = None,
    cancel_event: Optional[threading.Event] = None,
) -> Inventory:
    """Walk root and return the inventory of files to verify."""
    inventory = Inventory()
    for rel_path, size in iter_inventory(root, exclude_patterns, sink, cancel_event):
        inventory.paths.append(rel_path)
        inventory.file_count += 1
        inventory.byte_count += size
        if counters is not None:
            counters.add_inventory_entry(size)

    inventory.paths.reverse()
    logging.debug(
        f"Inventory of {root}: files={inventory.file_count}, bytes={inventory.byte_count}"
    )
    return inventory
