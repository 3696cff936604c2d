"""
Structured logging setup for execbot.

Production-optimized:
- Async-safe queue handler so file writes never block the event loop
- Log level hierarchy for noise reduction
- Throttling for repetitive warnings (backoff skips, retries, clock sync)
"""

from __future__ import annotations

import atexit
import json
import logging
import queue
import sys
import threading
import time
from datetime import datetime
from typing import Dict, Optional, Set

from rich.logging import RichHandler


DEFAULT_THROTTLED_EVENTS = frozenset({
    "tick_skipped_backoff",
    "gateway_retry",
    "time_sync_failed",
    "entry_skipped",
    "reconcile_skipped_backoff",
    "exit_chase_exhausted",
})


class JsonFormatter(logging.Formatter):
    """Compact JSON formatter for structured log ingestion."""

    def format(self, record: logging.LogRecord) -> str:
        ts = record.created
        payload = {
            "ts": ts,
            "ts_iso": datetime.fromtimestamp(ts).isoformat(timespec="milliseconds"),
            "level": record.levelname,
            "name": record.name,
            "msg": record.getMessage(),
        }
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, separators=(",", ":"))


class AsyncQueueHandler(logging.Handler):
    """
    Non-blocking handler that queues log records for a background writer thread.
    """

    def __init__(self, target_handler: logging.Handler, max_queue_size: int = 10000):
        super().__init__()
        self._queue: queue.Queue = queue.Queue(maxsize=max_queue_size)
        self._target = target_handler
        self._shutdown = False
        self._dropped = 0
        self._thread = threading.Thread(target=self._worker, daemon=True, name="log-writer")
        self._thread.start()
        atexit.register(self.close)

    def emit(self, record: logging.LogRecord) -> None:
        if self._shutdown:
            return
        try:
            self._queue.put_nowait(record)
        except queue.Full:
            self._dropped += 1

    def _worker(self) -> None:
        while not self._shutdown or not self._queue.empty():
            try:
                record = self._queue.get(timeout=0.1)
            except queue.Empty:
                continue
            try:
                self._target.emit(record)
            except Exception:
                self.handleError(record)
            finally:
                self._queue.task_done()

    def close(self) -> None:
        if self._shutdown:
            return
        self._shutdown = True
        if self._thread.is_alive():
            self._thread.join(timeout=2.0)
        if self._dropped > 0:
            sys.stderr.write(f"[logging] Dropped {self._dropped} log records due to queue overflow\n")
        self._target.close()
        super().close()


class ThrottledFilter(logging.Filter):
    """
    Filter that throttles repetitive JSON event lines.

    The first occurrence of an (event, symbol) pair passes, duplicates are
    suppressed for cooldown_sec.
    """

    def __init__(self, cooldown_sec: float = 30.0, throttled_events: Optional[Set[str]] = None):
        super().__init__()
        self._cooldown = cooldown_sec
        self._last_seen: Dict[str, float] = {}
        self._throttled_events = set(throttled_events or DEFAULT_THROTTLED_EVENTS)

    def filter(self, record: logging.LogRecord) -> bool:
        try:
            data = json.loads(record.getMessage())
        except (json.JSONDecodeError, TypeError):
            return True
        if not isinstance(data, dict):
            return True
        event = data.get("event", "")
        if event not in self._throttled_events:
            return True

        now = time.time()
        key = f"{event}:{data.get('symbol', '')}"
        if now - self._last_seen.get(key, 0.0) < self._cooldown:
            return False
        self._last_seen[key] = now
        return True


def build_logger(
    name: str = "execbot",
    level: int = logging.INFO,
    file_path: Optional[str] = "execbot.log",
    async_file: bool = True,
    throttle_warnings: bool = True,
    rich_console: bool = True,
) -> logging.Logger:
    """
    Build the process logger.

    Args:
        name: Logger name
        level: Minimum log level
        file_path: Path to log file (None to disable file logging)
        async_file: Use async queue handler for file to avoid blocking
        throttle_warnings: Apply throttling filter to reduce repetitive warnings
        rich_console: Human-friendly console output; JSON lines otherwise

    Returns:
        Configured logger instance
    """
    logger = logging.getLogger(name)
    logger.setLevel(level)

    # Idempotent handler setup
    if logger.handlers:
        for h in logger.handlers:
            h.setLevel(level)
        return logger

    if rich_console:
        stream_handler: logging.Handler = RichHandler(
            rich_tracebacks=False,
            show_time=True,
            show_level=True,
            show_path=False,
            markup=False,
        )
        stream_handler.setFormatter(logging.Formatter("%(message)s"))
    else:
        stream_handler = logging.StreamHandler(sys.stdout)
        stream_handler.setFormatter(JsonFormatter())
    stream_handler.setLevel(level)

    if throttle_warnings:
        stream_handler.addFilter(ThrottledFilter(cooldown_sec=30.0))

    logger.addHandler(stream_handler)

    # File: structured JSON for downstream ingestion
    if file_path:
        file_handler = logging.FileHandler(file_path)
        file_handler.setFormatter(JsonFormatter())
        file_handler.setLevel(level)
        if async_file:
            async_handler = AsyncQueueHandler(file_handler, max_queue_size=10000)
            async_handler.setLevel(level)
            logger.addHandler(async_handler)
        else:
            logger.addHandler(file_handler)

    logger.propagate = False
    return logger


def log_event(
    logger: logging.Logger,
    event: str,
    level: int = logging.INFO,
    **data,
) -> None:
    """
    Log a structured event with proper level.

    Usage:
        log_event(log, "entry_submitted", level=INFO, symbol="BTCUSDT", px=100.0)
    """
    payload = {"event": event, **data}
    logger.log(level, json.dumps(payload, default=str))
