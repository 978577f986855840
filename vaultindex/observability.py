"""
Logging, metrics and health checks for the indexer.

Every log line written while a request or an ingestion batch is in
flight is tagged with that request's or batch's id, so one batch can be
followed from fetch to commit. Output is JSON in production and a
compact text line otherwise.

Environment:
    VAULTINDEX_LOG_LEVEL    DEBUG | INFO | WARNING | ERROR (default INFO)
    VAULTINDEX_LOG_FORMAT   json | text (default: json when VAULTINDEX_PRODUCTION is set)
    VAULTINDEX_PRODUCTION   1 / true / yes
"""

import json
import logging
import os
import sys
import time
import uuid
from collections import deque
from contextlib import contextmanager
from contextvars import ContextVar
from dataclasses import dataclass, field
from datetime import datetime, timezone
from threading import Lock
from typing import Any, Callable, Deque, Dict, Optional

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

request_id_var: ContextVar[str] = ContextVar("request_id", default="")
batch_id_var: ContextVar[str] = ContextVar("batch_id", default="")

_TRUTHY = ("1", "true", "yes")

# Attributes every LogRecord carries; anything else arrived through `extra`.
_RECORD_ATTRS = frozenset(vars(logging.makeLogRecord({}))) | {"message", "asctime", "taskName"}

_NOISY_LOGGERS = ("uvicorn.access", "httpx", "urllib3", "web3")


@dataclass
class LogSettings:
    level: int = logging.INFO
    json_output: bool = False

    @classmethod
    def from_env(cls) -> "LogSettings":
        level = logging.getLevelName(os.environ.get("VAULTINDEX_LOG_LEVEL", "INFO").upper())
        if not isinstance(level, int):
            level = logging.INFO

        fmt = os.environ.get("VAULTINDEX_LOG_FORMAT", "").lower()
        if fmt in ("json", "text"):
            json_output = fmt == "json"
        else:
            json_output = os.environ.get("VAULTINDEX_PRODUCTION", "").lower() in _TRUTHY

        return cls(level=level, json_output=json_output)


def _correlation() -> Dict[str, str]:
    tags = {}
    if request_id_var.get():
        tags["request_id"] = request_id_var.get()
    if batch_id_var.get():
        tags["batch_id"] = batch_id_var.get()
    return tags


def _extras(record: logging.LogRecord) -> Dict[str, Any]:
    fields = {}
    for key, value in vars(record).items():
        if key in _RECORD_ATTRS or key.startswith("_"):
            continue
        try:
            json.dumps(value)
        except (TypeError, ValueError):
            value = repr(value)
        fields[key] = value
    return fields


class IndexLogFormatter(logging.Formatter):
    """
    Formats records either as one JSON object per line:

        {"ts": "...", "level": "INFO", "logger": "vaultindex.core.controller",
         "msg": "Batch committed", "batch_id": "9f2c01aa", "sequence": 12}

    or as a text line with the correlation ids up front.
    """

    def __init__(self, json_output: bool = False):
        super().__init__()
        self.json_output = json_output

    def format(self, record: logging.LogRecord) -> str:
        when = datetime.fromtimestamp(record.created, tz=timezone.utc)
        tags = _correlation()

        if self.json_output:
            entry = {
                "ts": when.isoformat(),
                "level": record.levelname,
                "logger": record.name,
                "msg": record.getMessage(),
                **tags,
                **_extras(record),
            }
            if record.exc_info:
                entry["exc"] = self.formatException(record.exc_info)
            return json.dumps(entry)

        ids = "".join(f"[{value[:8]}]" for value in tags.values())
        line = f"{when:%H:%M:%S} {record.levelname:<7} {ids + ' ' if ids else ''}{record.name} | {record.getMessage()}"
        fields = _extras(record)
        if fields:
            line += " " + " ".join(f"{k}={v}" for k, v in fields.items())
        if record.exc_info:
            line += "\n" + self.formatException(record.exc_info)
        return line


class ContextLogger(logging.LoggerAdapter):
    """Accepts structured fields as keyword arguments: ``log.info("msg", block=7)``."""

    _PASSTHROUGH = ("exc_info", "stack_info", "stacklevel", "extra")

    def process(self, msg, kwargs):
        fields = dict(kwargs.pop("extra", None) or {})
        for name in [k for k in kwargs if k not in self._PASSTHROUGH]:
            fields[name] = kwargs.pop(name)
        kwargs["extra"] = fields
        return msg, kwargs


def get_logger(name: str) -> ContextLogger:
    return ContextLogger(logging.getLogger(name), {})


def setup_logging(settings: Optional[LogSettings] = None) -> None:
    """Install a single stdout handler on the root logger. Safe to call twice."""
    settings = settings or LogSettings.from_env()

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(IndexLogFormatter(json_output=settings.json_output))

    root = logging.getLogger()
    root.handlers[:] = [handler]
    root.setLevel(settings.level)

    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


@contextmanager
def batch_context(batch_id: Optional[str] = None):
    """Tag log lines emitted inside the block with a batch id."""
    token = batch_id_var.set(batch_id or uuid.uuid4().hex[:8])
    try:
        yield batch_id_var.get()
    finally:
        batch_id_var.reset(token)


class RequestContextMiddleware(BaseHTTPMiddleware):
    """Assigns a request id, logs one line per request and feeds the metrics."""

    log = get_logger("vaultindex.request")

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex[:8]
        token = request_id_var.set(request_id)
        route = f"{request.method} {request.url.path}"
        started = time.perf_counter()

        try:
            response = await call_next(request)
        except Exception as exc:
            elapsed = self._elapsed_ms(started)
            get_metrics().record_request(elapsed, False)
            self.log.exception(f"{route} failed", status_code=500, duration_ms=elapsed, error=str(exc))
            raise
        finally:
            request_id_var.reset(token)

        elapsed = self._elapsed_ms(started)
        get_metrics().record_request(elapsed, response.status_code < 500)
        self.log.log(
            logging.WARNING if response.status_code >= 400 else logging.INFO,
            f"{route} {response.status_code}",
            status_code=response.status_code,
            duration_ms=elapsed,
            request_id=request_id,
        )
        response.headers["X-Request-ID"] = request_id
        return response

    @staticmethod
    def _elapsed_ms(started: float) -> float:
        return round((time.perf_counter() - started) * 1000, 2)


# ============================================================
# METRICS
# ============================================================

SAMPLE_WINDOW = 1000


def _window() -> Deque[float]:
    return deque(maxlen=SAMPLE_WINDOW)


def _quantile(samples: Deque[float], q: float) -> Optional[float]:
    if not samples:
        return None
    ordered = sorted(samples)
    return ordered[min(int(len(ordered) * q), len(ordered) - 1)]


@dataclass
class MetricsCollector:
    """
    Process-local counters for ingestion and the HTTP API.

    Latencies keep the last SAMPLE_WINDOW observations.
    """

    batches_committed: int = 0
    events_applied: int = 0
    events_skipped: int = 0
    events_unrecognized: int = 0
    reducer_warnings: int = 0
    reorgs_handled: int = 0
    batches_rolled_back: int = 0
    commit_retries: int = 0
    cycles_failed: int = 0
    requests_total: int = 0
    requests_failed: int = 0

    cursor_block: int = -1
    scanned_block: int = -1
    head_block: int = -1

    commit_latencies_ms: Deque[float] = field(default_factory=_window)
    request_latencies_ms: Deque[float] = field(default_factory=_window)

    _lock: Lock = field(default_factory=Lock, repr=False, compare=False)

    def _bump(self, **deltas: int) -> None:
        with self._lock:
            for name, delta in deltas.items():
                setattr(self, name, getattr(self, name) + delta)

    def record_commit(self, latency_ms: float, applied: int, cursor_block: int, scanned_block: int) -> None:
        with self._lock:
            self.batches_committed += 1
            self.events_applied += applied
            self.cursor_block = cursor_block
            self.scanned_block = scanned_block
            self.commit_latencies_ms.append(latency_ms)

    def record_skipped(self, count: int, unrecognized: int = 0) -> None:
        self._bump(events_skipped=count, events_unrecognized=unrecognized)

    def record_warnings(self, count: int) -> None:
        self._bump(reducer_warnings=count)

    def record_reorg(self, batches_undone: int) -> None:
        self._bump(reorgs_handled=1, batches_rolled_back=batches_undone)

    def record_commit_retry(self) -> None:
        self._bump(commit_retries=1)

    def record_cycle_failure(self) -> None:
        self._bump(cycles_failed=1)

    def record_head(self, head_block: int) -> None:
        with self._lock:
            self.head_block = head_block

    def record_request(self, latency_ms: float, success: bool) -> None:
        with self._lock:
            self.requests_total += 1
            self.requests_failed += 0 if success else 1
            self.request_latencies_ms.append(latency_ms)

    def lag_blocks(self) -> Optional[int]:
        if self.head_block < 0 or self.scanned_block < 0:
            return None
        return self.head_block - self.scanned_block

    def get_summary(self) -> Dict[str, Any]:
        counters = (
            "batches_committed", "events_applied", "events_skipped", "events_unrecognized",
            "reducer_warnings", "reorgs_handled", "batches_rolled_back", "commit_retries",
            "cycles_failed", "cursor_block", "scanned_block", "head_block",
            "requests_total", "requests_failed",
        )
        with self._lock:
            summary: Dict[str, Any] = {name: getattr(self, name) for name in counters}
            summary["lag_blocks"] = self.lag_blocks()
            for q in (50, 95, 99):
                summary[f"commit_latency_p{q}_ms"] = _quantile(self.commit_latencies_ms, q / 100)
            for q in (50, 95):
                summary[f"request_latency_p{q}_ms"] = _quantile(self.request_latencies_ms, q / 100)
        return summary


_metrics = MetricsCollector()


def get_metrics() -> MetricsCollector:
    """Process-wide collector used when a controller is not given its own."""
    return _metrics


# ============================================================
# HEALTH
# ============================================================

@dataclass
class HealthStatus:
    healthy: bool
    checks: Dict[str, Dict[str, Any]]
    duration_ms: float


def _run_check(checks: Dict[str, Dict[str, Any]], name: str, fn: Callable[[], Dict[str, Any]]) -> bool:
    try:
        checks[name] = {"status": "healthy", **fn()}
        return True
    except Exception as exc:
        checks[name] = {"status": "unhealthy", "error": str(exc)}
        return False


def check_health(store=None, source=None, verify_integrity: bool = False) -> HealthStatus:
    """
    Probe the entity store, the event source and (optionally) the
    journal/snapshot agreement. ``verify_integrity`` replays every
    checkpoint, so it is only run on request.
    """
    started = time.perf_counter()
    checks: Dict[str, Dict[str, Any]] = {"liveness": {"status": "healthy"}}
    head: Dict[str, Any] = {}
    ok = True

    def entity_store():
        checkpoint = head["checkpoint"] = store.get_checkpoint()
        return {
            "sequence": checkpoint.sequence,
            "cursor": list(checkpoint.cursor),
            "scanned_block": checkpoint.scanned_block,
            "last_hash": f"{checkpoint.batch_hash[:16]}..." if checkpoint.batch_hash else None,
        }

    def event_source():
        block = source.get_block_number()
        checkpoint = head.get("checkpoint")
        return {
            "head_block": block,
            "lag_blocks": block - checkpoint.scanned_block if checkpoint else None,
        }

    if store is not None:
        ok &= _run_check(checks, "entity_store", entity_store)
    if source is not None:
        ok &= _run_check(checks, "event_source", event_source)
    if store is not None and verify_integrity:
        ok &= _run_check(checks, "store_integrity", lambda: {"checkpoints_verified": store.verify_integrity()})

    return HealthStatus(
        healthy=bool(ok),
        checks=checks,
        duration_ms=round((time.perf_counter() - started) * 1000, 2),
    )
