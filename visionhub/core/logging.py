"""Logging setup, per-run log context, and the FlightLogger circular buffer for forensics.

Every record carries ``run_id`` and ``pipeline`` attributes ("-" outside an analysis run), so a
flight-log dump can be narrowed to the one run that failed.
"""

import logging
import sys
from collections import deque
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterator

from visionhub.core.config import get_config

DEFAULT_FORENSICS_DIR = Path.cwd() / "logs" / "forensics"
LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s (run=%(run_id)s pipeline=%(pipeline)s): %(message)s"
LOG_DATEFMT = "%Y-%m-%d %H:%M:%S"

_run_id: ContextVar[str] = ContextVar("visionhub_run_id", default="-")
_pipeline: ContextVar[str] = ContextVar("visionhub_pipeline", default="-")

_flight_logger: "FlightLogger | None" = None


class RunContextFilter(logging.Filter):
    """Stamp records with the analysis run and pipeline active in the emitting thread."""

    def filter(self, record: logging.LogRecord) -> bool:
        if not hasattr(record, "run_id"):
            record.run_id = _run_id.get()
        if not hasattr(record, "pipeline"):
            record.pipeline = _pipeline.get()
        return True


@contextmanager
def log_context(run_id: str | None = None, pipeline: str | None = None) -> Iterator[None]:
    """Tag every record logged in this thread inside the block with run_id / pipeline."""
    run_token = _run_id.set(run_id) if run_id is not None else None
    pipeline_token = _pipeline.set(pipeline) if pipeline is not None else None
    try:
        yield
    finally:
        if pipeline_token is not None:
            _pipeline.reset(pipeline_token)
        if run_token is not None:
            _run_id.reset(run_token)


class FlightLogger(logging.Handler):
    """
    Circular buffer handler: keeps the last records (all levels) in memory.
    dump(label, record_id=None, run_id=None) writes the buffer to
    {forensics_dir}/{label}_{record_id}_{timestamp}.log, optionally only one run's records.
    """

    def __init__(self, capacity: int = 50_000, forensics_dir: str | Path | None = None) -> None:
        super().__init__(level=logging.DEBUG)
        self._buffer: deque[logging.LogRecord] = deque(maxlen=capacity)
        self._forensics_dir = Path(forensics_dir if forensics_dir is not None else DEFAULT_FORENSICS_DIR)
        self.addFilter(RunContextFilter())

    def emit(self, record: logging.LogRecord) -> None:
        self._buffer.append(record)

    def dump(self, label: str, record_id: int | str | None = None, run_id: str | None = None) -> str:
        """Write buffer to forensics dir; return path to the written file."""
        self._forensics_dir.mkdir(parents=True, exist_ok=True)
        timestamp = datetime.now(timezone.utc).strftime("%Y%m%d_%H%M%S")
        if record_id is not None:
            name = f"{label}_{record_id}_{timestamp}.log"
        else:
            name = f"{label}_{timestamp}.log"
        filepath = self._forensics_dir / name
        formatter = self.formatter or logging.Formatter(LOG_FORMAT, datefmt=LOG_DATEFMT)
        records = list(self._buffer)
        if run_id is not None:
            records = [r for r in records if getattr(r, "run_id", None) == run_id]
        with open(filepath, "w") as f:
            for record in records:
                f.write(formatter.format(record) + "\n")
        return str(filepath)

    def __len__(self) -> int:
        return len(self._buffer)


def get_flight_logger() -> FlightLogger | None:
    """Return the global FlightLogger handler created by setup_logging(), if any."""
    return _flight_logger


def dump_flight_log(label: str, record_id: int | str | None = None, run_id: str | None = None) -> str | None:
    """Dump the global flight log if logging was set up; returns the file path or None."""
    flight = _flight_logger
    if flight is None:
        return None
    try:
        return flight.dump(label, record_id=record_id, run_id=run_id)
    except OSError:
        logging.getLogger(__name__).warning("Could not write flight log %s", label, exc_info=True)
        return None


def setup_logging(console_level: str | None = None) -> None:
    """
    Configure application logging.

    The root logger is set to DEBUG so every record reaches the FlightLogger buffer
    (capacity from settings.flight_log_capacity). The stdout console handler logs at
    console_level (default WARNING) or higher.
    """
    global _flight_logger
    cfg = get_config()

    formatter = logging.Formatter(LOG_FORMAT, datefmt=LOG_DATEFMT)

    root = logging.getLogger()
    root.setLevel(logging.DEBUG)
    for h in root.handlers[:]:
        root.removeHandler(h)

    console = logging.StreamHandler(sys.stdout)
    console.setLevel(getattr(logging, (console_level or "WARNING").upper(), logging.WARNING))
    console.setFormatter(formatter)
    console.addFilter(RunContextFilter())
    root.addHandler(console)

    flight = FlightLogger(capacity=cfg.flight_log_capacity, forensics_dir=cfg.forensics_dir)
    flight.setFormatter(formatter)
    root.addHandler(flight)
    _flight_logger = flight

    # Model libraries are chatty at DEBUG.
    for noisy in ("urllib3", "PIL", "httpx", "filelock"):
        logging.getLogger(noisy).setLevel(logging.INFO)
