"""
Two-phase run: collect the live inventory, then verify it against the backup,
each on a worker thread observed by the progress reporter.
"""

import logging
import threading
import time
from typing import Callable, Dict, List, Optional, TextIO, TypeVar

from common import (
    Inventory,
    RunCounters,
    build_report,
    load_exclude_file,
    parse_exclude_patterns,
    write_report,
)
from inventory_cmd import collect_inventory
from reporting import AlertSink, ProgressReporter
from run_config import RunConfig
from verify_cmd import ComparisonEngine, verify_inventory


T = TypeVar('T')


def run_worker(
    task: Callable[[], T],
    on_tick: Optional[Callable[[], None]] = None,
    interval: float = 1.0,
    trailing_tick: bool = True,
    cancel_event: Optional[threading.Event] = None,
    name: str = "worker",
) -> T:
    """Run task on its own thread, calling on_tick every interval until it ends.

    An exception raised by the task is re-raised here. On KeyboardInterrupt the
    cancel event is set and the worker is joined before the interrupt propagates,
    so the task must poll cancel_event to stop early.
    """
    outcome: Dict[str, object] = {}

    def target() -> None:
        try:
            outcome["result"] = task()
        except BaseException as exc:
            outcome["error"] = exc

    worker = threading.Thread(target=target, name=name, daemon=True)
    worker.start()
    try:
        while worker.is_alive():
            if on_tick is not None:
                on_tick()
            worker.join(interval)
    except KeyboardInterrupt:
        if cancel_event is not None:
            cancel_event.set()
        worker.join()
        raise

    # One more tick so the last update between the final increment and exit is shown.
    if on_tick is not None and trailing_tick:
        on_tick()

    if "error" in outcome:
        raise outcome["error"]  # type: ignore[misc]
    return outcome["result"]  # type: ignore[return-value]


def resolve_exclude_patterns(config: RunConfig) -> List[str]:
    patterns = parse_exclude_patterns(config.exclude_patterns)
    if config.exclude_file is not None:
        for pattern in load_exclude_file(config.exclude_file):
            if pattern not in patterns:
                patterns.append(pattern)
    return patterns


def run_pipeline(
    config: RunConfig,
    stream: Optional[TextIO] = None,
    live: Optional[bool] = None,
    cancel_event: Optional[threading.Event] = None,
) -> Dict[str, object]:
    """Run inventory then verification and return the JSON-compatible report.

    Raises FileNotFoundError / NotADirectoryError / ValueError before any work
    when the configuration is unusable.
    """
    config.validate()
    exclude_patterns = resolve_exclude_patterns(config)
    cancel_event = cancel_event if cancel_event is not None else threading.Event()

    counters = RunCounters()
    sink = AlertSink()
    reporter = ProgressReporter(
        counters, sink, stream=stream, live=live, live_root=str(config.live_root)
    )
    run_started = int(time.time())
    cancelled = False

    logging.info(f"Collecting live inventory of {config.live_root}")
    reporter.write_line("Collecting live inventory . . .")
    inventory = Inventory()
    try:
        inventory = run_worker(
            lambda: collect_inventory(
                config.live_root, exclude_patterns, counters, sink, cancel_event
            ),
            on_tick=reporter.show_collection_progress,
            interval=config.progress_interval,
            trailing_tick=False,
            cancel_event=cancel_event,
            name="inventory",
        )
    except KeyboardInterrupt:
        cancelled = True
    reporter.show_collection_progress(final=True)
    cancelled = cancelled or cancel_event.is_set()

    if not cancelled:
        logging.info(
            f"Verifying {inventory.file_count} files against {config.backup_root} "
            f"({config.mode} mode)"
        )
        reporter.write_line("-" * 50)
        engine = ComparisonEngine(
            config.live_root,
            config.backup_root,
            mode=config.mode,
            mtime_tolerance=config.mtime_tolerance_seconds,
            hash_algo=config.hash_algo,
            hash_workers=2 * config.workers,
        )
        try:
            with engine:
                run_worker(
                    lambda: verify_inventory(
                        inventory, engine, counters, sink, config.workers, cancel_event
                    ),
                    on_tick=reporter.show_progress,
                    interval=config.progress_interval,
                    trailing_tick=False,
                    cancel_event=cancel_event,
                    name="verify",
                )
        except KeyboardInterrupt:
            cancelled = True
        reporter.show_progress(final=True)
        cancelled = cancelled or cancel_event.is_set()

    reporter.show_summary(cancelled)
    run_finished = int(time.time())
    stats = counters.as_stats()
    logging.info(
        f"Completed: files={stats['files_processed']}/{stats['total_files']}, "
        f"critical={stats['critical']}, warning={stats['warning']}, "
        f"notice={stats['notice']}, cancelled={cancelled}"
    )

    details: Dict[str, object] = {"cancelled": cancelled}
    if config.workers > 1:
        details["workers"] = config.workers
    report = build_report(
        live_root=config.live_root,
        backup_root=config.backup_root,
        mode=config.mode,
        hash_algo=config.hash_algo,
        mtime_tolerance=config.mtime_tolerance_seconds,
        exclude_patterns=exclude_patterns,
        stats=stats,
        run_started=run_started,
        run_finished=run_finished,
        details=details,
    )
    if config.report_path is not None:
        write_report(report, config.report_path)
    return report
