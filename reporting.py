"""
Alert buffering and the terminal status display.
"""

import os
import queue
import sys
from typing import List, Optional, TextIO

from common import Alert, RunCounters, Severity


CURSOR_UP_CLEAR = "\x1b[A\x1b[K"
CLEAR_LINE = "\r\x1b[K"
STATUS_LINES = 2


def format_bytes(num: int) -> str:
    """Human-readable byte count (1024-based)."""
    if num < 0:
        return str(num)
    units = ["B", "KB", "MB", "GB", "TB", "PB"]
    x = float(num)
    for u in units:
        if x < 1024.0 or u == units[-1]:
            return f"{x:.2f} {u}" if u != "B" else f"{int(x)} {u}"
        x /= 1024.0
    return f"{x:.2f} PB"


def format_percent(done: int, total: int) -> str:
    if total <= 0:
        return "100.00%" if done else "0.00%"
    return f"{min(done / total, 1.0) * 100:.2f}%"


class AlertSink:
    """Buffer between the producing worker(s) and the reporter.

    Safe for any number of producers; drained by a single consumer.
    """

    def __init__(self) -> None:
        self._queue: "queue.Queue[Alert]" = queue.Queue()

    def add(self, alert: Alert) -> None:
        self._queue.put(alert)

    def extend(self, alerts: List[Alert]) -> None:
        for alert in alerts:
            self._queue.put(alert)

    def drain(self) -> List[Alert]:
        """Remove and return everything buffered so far."""
        alerts: List[Alert] = []
        try:
            while True:
                alerts.append(self._queue.get_nowait())
        except queue.Empty:
            pass
        return alerts

    def __len__(self) -> int:
        return self._queue.qsize()


def display_path(path: str) -> str:
    """Printable form of a path; undecodable filename bytes become \\xNN escapes."""
    return os.fsencode(path).decode("utf-8", "backslashreplace")


def format_alert(alert: Alert, live_root: Optional[str] = None) -> str:
    subject = alert.path
    if live_root:
        subject = os.path.join(live_root, alert.path)
    return f"[{alert.severity.name}] {display_path(subject)}: {alert.message}"


class ProgressReporter:
    """Renders collection progress, alerts and the verification status block.

    On a TTY the status block is redrawn in place each tick; otherwise only
    alerts are written as they arrive and the status block once per phase.
    """

    def __init__(
        self,
        counters: RunCounters,
        sink: AlertSink,
        stream: Optional[TextIO] = None,
        live: Optional[bool] = None,
        live_root: Optional[str] = None,
    ) -> None:
        self.counters = counters
        self.sink = sink
        self.stream = stream if stream is not None else sys.stdout
        if live is None:
            isatty = getattr(self.stream, "isatty", None)
            live = bool(isatty and isatty())
        self.live = live
        self.live_root = live_root
        self._status_drawn = False

    def _write(self, text: str) -> None:
        self.stream.write(text)
        self.stream.flush()

    def write_line(self, text: str) -> None:
        self._write(text + "\n")

    def flush_alerts(self) -> List[Alert]:
        """Move buffered alerts into the running totals and print them."""
        alerts = self.sink.drain()
        if alerts:
            self.counters.add_alerts(alerts)
            self._write("".join(format_alert(a, self.live_root) + "\n" for a in alerts))
        return alerts

    def collection_line(self) -> str:
        return (
            f"Approximately {self.counters.total_files:,} files "
            f"({format_bytes(self.counters.total_bytes)}) to analyze."
        )

    def show_collection_progress(self, final: bool = False) -> None:
        if self.live:
            self._write(CLEAR_LINE + self.collection_line() + ("\n" if final else ""))
        elif final:
            self._write(self.collection_line() + "\n")
        if final:
            self.flush_alerts()

    def status_lines(self) -> List[str]:
        c = self.counters
        done, total = c.files_processed, c.total_files
        return [
            f"Current File   : {display_path(c.current_file)}",
            f"Total Progress : {format_percent(done, total)} ({done:,} / {total:,})",
        ]

    def show_progress(self, final: bool = False) -> None:
        """One reporting tick of the verification phase."""
        if self.live and self._status_drawn:
            self._write(CURSOR_UP_CLEAR * STATUS_LINES)
            self._status_drawn = False
        self.flush_alerts()
        if self.live or final:
            self._write("".join(line + "\n" for line in self.status_lines()))
            self._status_drawn = self.live

    def summary_line(self, cancelled: bool = False) -> str:
        c = self.counters
        by = c.alerts_by_severity
        alerts = by[Severity.CRITICAL] + by[Severity.WARNING]
        line = (
            f"Done! Checked the integrity of {c.files_processed:,} files. "
            f"There are {alerts:,} alerts ({by[Severity.CRITICAL]:,} critical, "
            f"{by[Severity.WARNING]:,} warning) and {by[Severity.NOTICE]:,} notices."
        )
        if cancelled:
            line = "Interrupted. " + line
        return line

    def show_summary(self, cancelled: bool = False) -> None:
        self.flush_alerts()
        self._write("=" * 50 + "\n" + self.summary_line(cancelled) + "\n")
