"""
Unified Logging for Hamorah

Two sinks share one set of helpers:
- The `Hamorah` logger (standard logging): logs/processing.log, plus the
  console when DEBUG_MODE is on
- The debug trail, logs/debug_flow.txt: every debug_log() line with
  millisecond timestamps, opened on first use

Engine modules import the helpers, never the logging module itself:
    from hamorah.logging_config import debug_log, info, warning, error, Timer

Prefix messages with a component tag, e.g. "[MODEL STORE] ...".
"""

import logging
import sys
import threading
import time
from datetime import datetime

from hamorah.config import DEBUG_FLOW_FILE, DEBUG_MODE, LOG_DATE_FORMAT, LOG_FILE, LOG_FORMAT

LOGGER_NAME = 'Hamorah'


class _DebugTrail:
    """
    Append-only debug file.

    Downloads, model loads and server polling log from worker threads, so
    every write holds the lock.
    """

    def __init__(self, path):
        self.path = path
        self._handle = None
        self._lock = threading.Lock()

    def _ensure_open(self) -> bool:
        if self._handle is None:
            try:
                self._handle = open(self.path, 'w', encoding='utf-8')
            except OSError:
                return False
            self._handle.write(f"=== Hamorah debug trail, started {datetime.now().isoformat()} ===\n")
            self._handle.write(f"DEBUG_MODE={DEBUG_MODE}\n\n")
        return True

    def write(self, line: str):
        with self._lock:
            if self._ensure_open():
                stamp = datetime.now().strftime("%H:%M:%S.%f")[:-3]
                self._handle.write(f"[{stamp}] {line}\n")
                self._handle.flush()

    def close(self):
        with self._lock:
            if self._handle is not None:
                self._handle.write(f"\n=== ended {datetime.now().isoformat()} ===\n")
                self._handle.close()
                self._handle = None


def _build_logger() -> logging.Logger:
    """The `Hamorah` logger; handlers are attached once per process."""
    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(logging.DEBUG if DEBUG_MODE else logging.INFO)
    if logger.handlers:
        return logger

    formatter = logging.Formatter(LOG_FORMAT, datefmt=LOG_DATE_FORMAT)
    try:
        file_handler = logging.FileHandler(LOG_FILE, encoding='utf-8')
    except OSError:
        file_handler = None  # Read-only support dir: the trail and console still work
    if file_handler is not None:
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)

    if DEBUG_MODE:
        console = logging.StreamHandler(sys.stdout)
        console.setFormatter(formatter)
        logger.addHandler(console)

    return logger


_trail = _DebugTrail(DEBUG_FLOW_FILE)
_logger = _build_logger()


def _echo(line: str):
    """Print to the console in debug mode, surviving non-UTF-8 Windows consoles."""
    try:
        print(line, flush=True)
    except UnicodeEncodeError:
        sys.stdout.buffer.write((line + "\n").encode('utf-8', errors='replace'))
        sys.stdout.buffer.flush()


def debug_log(message: str):
    """
    Record a debug message in the trail (and on the console in DEBUG_MODE).

    Example:
        debug_log("[MODEL STORE] Resuming tinyllama-gguf from byte 1048576")
    """
    _trail.write(message)
    if DEBUG_MODE:
        _echo(f"[{datetime.now().strftime('%H:%M:%S.%f')[:-3]}] {message}")


debug = debug_log


def info(message: str):
    _trail.write(f"[INFO] {message}")
    _logger.info(message)


def warning(message: str):
    """Warnings reach processing.log whatever DEBUG_MODE says."""
    _trail.write(f"[WARNING] {message}")
    _logger.warning(message)


def error(message: str, exc_info: bool = False):
    """
    Log an error.

    Args:
        message: What failed
        exc_info: Attach the active traceback (honoured only in DEBUG_MODE)
    """
    _trail.write(f"[ERROR] {message}")
    _logger.error(message, exc_info=exc_info and DEBUG_MODE)


def close_debug_log():
    """Flush and close the debug trail. Call once at application shutdown."""
    _trail.close()


class Timer:
    """
    Time a block and log how long it took.

    Usage:
        with Timer("Load llama_cpp backend") as t:
            ...
        t.elapsed_ms

    The block's exceptions propagate; the duration is logged either way.
    """

    def __init__(self, operation_name: str, auto_log: bool = True):
        self.operation_name = operation_name
        self.auto_log = auto_log
        self.elapsed_ms: float | None = None
        self._started: float | None = None

    def __enter__(self):
        if self.auto_log:
            debug_log(f"Starting {self.operation_name}...")
        self._started = time.perf_counter()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.elapsed_ms = (time.perf_counter() - self._started) * 1000
        if self.auto_log:
            if self.elapsed_ms < 1000:
                took = f"{self.elapsed_ms:.0f} ms"
            else:
                took = f"{self.elapsed_ms / 1000:.1f} seconds"
            outcome = "failed after" if exc_type else "took"
            debug_log(f"{self.operation_name} {outcome} {took}")
        return False


__all__ = [
    'debug_log',
    'debug',
    'info',
    'warning',
    'error',
    'close_debug_log',
    'Timer',
    'DEBUG_MODE',
]
