"""
Observability Module - Logging, Metrics, and Health

Provides:
- Structured JSON logging with request IDs and actor addresses
- Request/response logging middleware
- Metrics collection (vote outcomes, sync publishes, dispatch latency)
- Health check utilities

Configuration:
- CARBONCLAIMS_LOG_LEVEL: DEBUG, INFO, WARNING, ERROR (default: INFO)
- CARBONCLAIMS_LOG_FORMAT: json, text (default: json in production)
- CARBONCLAIMS_PRODUCTION: Enable production mode

Usage:
    from carbonclaims.observability import get_logger

    logger = get_logger(__name__)
    logger.info("Vote settled", claim_id=claim_id, outcome="success")
"""

import json
import logging
import os
import sys
import time
import uuid
from contextvars import ContextVar
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Dict, Optional

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

if TYPE_CHECKING:
    from .core.sync import ClaimSyncCoordinator

# Context variables for request tracking
request_id_var: ContextVar[str] = ContextVar("request_id", default="")
actor_address_var: ContextVar[str] = ContextVar("actor_address", default="")

ACTOR_HEADER = "X-Actor-Address"


# ============================================================
# CONFIGURATION
# ============================================================

def is_production() -> bool:
    return os.environ.get("CARBONCLAIMS_PRODUCTION", "").lower() in ("1", "true", "yes")


def _get_log_level() -> int:
    level_str = os.environ.get("CARBONCLAIMS_LOG_LEVEL", "INFO").upper()
    levels = {
        "DEBUG": logging.DEBUG,
        "INFO": logging.INFO,
        "WARNING": logging.WARNING,
        "ERROR": logging.ERROR,
        "CRITICAL": logging.CRITICAL,
    }
    return levels.get(level_str, logging.INFO)


def _use_json_logging() -> bool:
    format_str = os.environ.get("CARBONCLAIMS_LOG_FORMAT", "").lower()
    if format_str == "json":
        return True
    if format_str == "text":
        return False
    return is_production()


# ============================================================
# STRUCTURED LOGGING
# ============================================================

_STANDARD_RECORD_FIELDS = frozenset({
    "name", "msg", "args", "created", "levelname", "levelno",
    "pathname", "filename", "module", "lineno", "funcName",
    "exc_info", "exc_text", "stack_info", "message", "msecs",
    "relativeCreated", "thread", "threadName", "processName",
    "process", "taskName",
})


class StructuredFormatter(logging.Formatter):
    """
    JSON formatter for structured logging.

    Output format:
    {
        "timestamp": "2026-01-15T10:30:00.000000+00:00",
        "level": "INFO",
        "logger": "carbonclaims.core.tally",
        "message": "Vote settled",
        "request_id": "abc-123",
        "actor_address": "0x5f...",
        "claim_id": "0xabc",
        ...extra fields...
    }
    """

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        request_id = request_id_var.get()
        if request_id:
            log_data["request_id"] = request_id

        actor_address = actor_address_var.get()
        if actor_address:
            log_data["actor_address"] = actor_address

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        for key, value in record.__dict__.items():
            if key in _STANDARD_RECORD_FIELDS or key.startswith("_"):
                continue
            try:
                json.dumps(value)
                log_data[key] = value
            except (TypeError, ValueError):
                log_data[key] = str(value)

        return json.dumps(log_data)


class TextFormatter(logging.Formatter):
    """Human-readable formatter for development."""

    def format(self, record: logging.LogRecord) -> str:
        prefix = ""
        request_id = request_id_var.get()
        if request_id:
            prefix = f"[{request_id[:8]}] "

        timestamp = datetime.now(timezone.utc).strftime("%Y-%m-%d %H:%M:%S")
        msg = f"{timestamp} {record.levelname:8} {prefix}{record.name}: {record.getMessage()}"

        if record.exc_info:
            msg += "\n" + self.formatException(record.exc_info)

        return msg


class ContextLogger(logging.LoggerAdapter):
    """
    Logger adapter that moves keyword fields into ``extra``.

    Usage:
        logger = get_logger(__name__)
        logger.info("Claims published", source="active", count=3)
    """

    def process(self, msg: str, kwargs: Dict[str, Any]) -> tuple:
        extra = dict(kwargs.get("extra") or {})
        for key in list(kwargs.keys()):
            if key not in ("exc_info", "stack_info", "stacklevel", "extra"):
                extra[key] = kwargs.pop(key)
        kwargs["extra"] = extra
        return msg, kwargs


def get_logger(name: str) -> ContextLogger:
    """
    Get a structured logger for the given name.

    Args:
        name: Logger name (typically __name__)
    """
    return ContextLogger(logging.getLogger(name), {})


def setup_logging() -> None:
    """
    Configure logging for the application.

    Call this once at application startup.
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(_get_log_level())

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(_get_log_level())
    handler.setFormatter(StructuredFormatter() if _use_json_logging() else TextFormatter())
    root_logger.addHandler(handler)

    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)


# ============================================================
# REQUEST CONTEXT MIDDLEWARE
# ============================================================

class RequestContextMiddleware(BaseHTTPMiddleware):
    """
    Sets up request context for logging.

    - Generates a request ID (or honours X-Request-ID)
    - Picks up the acting wallet address from X-Actor-Address
    - Logs each response with its timing
    """

    async def dispatch(
        self,
        request: Request,
        call_next: RequestResponseEndpoint
    ) -> Response:
        request_id = request.headers.get("X-Request-ID", str(uuid.uuid4())[:8])
        request_id_var.set(request_id)
        actor_address_var.set(request.headers.get(ACTOR_HEADER, ""))

        logger = get_logger("carbonclaims.request")
        start_time = time.perf_counter()

        logger.debug(
            f"{request.method} {request.url.path}",
            method=request.method,
            path=request.url.path,
            client_ip=request.client.host if request.client else None,
        )

        try:
            response = await call_next(request)

            duration_ms = (time.perf_counter() - start_time) * 1000
            log_level = logging.INFO if response.status_code < 400 else logging.WARNING
            logger.log(
                log_level,
                f"{request.method} {request.url.path} -> {response.status_code}",
                method=request.method,
                path=request.url.path,
                status_code=response.status_code,
                duration_ms=round(duration_ms, 2),
            )
            get_metrics().record_request(duration_ms, response.status_code < 500)

            response.headers["X-Request-ID"] = request_id
            return response

        except Exception as e:
            duration_ms = (time.perf_counter() - start_time) * 1000
            logger.exception(
                f"{request.method} {request.url.path} -> 500",
                method=request.method,
                path=request.url.path,
                status_code=500,
                duration_ms=round(duration_ms, 2),
                error=str(e),
            )
            get_metrics().record_request(duration_ms, False)
            raise

        finally:
            request_id_var.set("")
            actor_address_var.set("")


# ============================================================
# METRICS
# ============================================================

MAX_SAMPLES = 1000


def _percentile(data: list, p: float) -> Optional[float]:
    if not data:
        return None
    sorted_data = sorted(data)
    idx = int(len(sorted_data) * p)
    return sorted_data[min(idx, len(sorted_data) - 1)]


@dataclass
class MetricsCollector:
    """
    Simple in-memory metrics collector.

    For production, replace with Prometheus, StatsD, or similar.
    """

    # Counters
    votes_submitted: int = 0
    votes_succeeded: int = 0
    votes_failed: int = 0
    votes_rejected_locally: int = 0
    sync_publishes: Dict[str, int] = field(default_factory=dict)
    sync_errors: Dict[str, int] = field(default_factory=dict)
    ambiguous_empty_reads: int = 0
    requests_total: int = 0
    requests_failed: int = 0

    # Histograms (simplified as lists)
    dispatch_latencies_ms: list = field(default_factory=list)
    request_latencies_ms: list = field(default_factory=list)

    def record_vote(self, outcome: str) -> None:
        """outcome is "success", "failure" or "rejected" (never dispatched)."""
        if outcome == "rejected":
            self.votes_rejected_locally += 1
            return
        self.votes_submitted += 1
        if outcome == "success":
            self.votes_succeeded += 1
        else:
            self.votes_failed += 1

    def record_publish(self, source: str, error_kind: Optional[str] = None) -> None:
        self.sync_publishes[source] = self.sync_publishes.get(source, 0) + 1
        if error_kind:
            self.sync_errors[error_kind] = self.sync_errors.get(error_kind, 0) + 1
        if error_kind == "sync_ambiguous_empty":
            self.ambiguous_empty_reads += 1

    def record_dispatch(self, latency_ms: float) -> None:
        self.dispatch_latencies_ms.append(latency_ms)
        if len(self.dispatch_latencies_ms) > MAX_SAMPLES:
            self.dispatch_latencies_ms = self.dispatch_latencies_ms[-MAX_SAMPLES:]

    def record_request(self, latency_ms: float, success: bool) -> None:
        self.requests_total += 1
        if not success:
            self.requests_failed += 1
        self.request_latencies_ms.append(latency_ms)
        if len(self.request_latencies_ms) > MAX_SAMPLES:
            self.request_latencies_ms = self.request_latencies_ms[-MAX_SAMPLES:]

    def reset(self) -> None:
        fresh = MetricsCollector()
        self.__dict__.update(fresh.__dict__)

    def get_summary(self) -> Dict[str, Any]:
        return {
            "votes_submitted": self.votes_submitted,
            "votes_succeeded": self.votes_succeeded,
            "votes_failed": self.votes_failed,
            "votes_rejected_locally": self.votes_rejected_locally,
            "sync_publishes": dict(self.sync_publishes),
            "sync_errors": dict(self.sync_errors),
            "ambiguous_empty_reads": self.ambiguous_empty_reads,
            "requests_total": self.requests_total,
            "requests_failed": self.requests_failed,
            "dispatch_latency_p50_ms": _percentile(self.dispatch_latencies_ms, 0.5),
            "dispatch_latency_p95_ms": _percentile(self.dispatch_latencies_ms, 0.95),
            "dispatch_latency_p99_ms": _percentile(self.dispatch_latencies_ms, 0.99),
            "request_latency_p50_ms": _percentile(self.request_latencies_ms, 0.5),
            "request_latency_p95_ms": _percentile(self.request_latencies_ms, 0.95),
        }


# Global metrics instance
_metrics = MetricsCollector()


def get_metrics() -> MetricsCollector:
    """Get the global metrics collector."""
    return _metrics


# ============================================================
# HEALTH CHECKS
# ============================================================

@dataclass
class HealthStatus:
    """Health check result."""
    healthy: bool
    checks: Dict[str, Dict[str, Any]]
    duration_ms: float


def check_health(coordinator: Optional["ClaimSyncCoordinator"] = None) -> HealthStatus:
    """
    Run all health checks.

    An ambiguous-empty read or a ledger error on the last publish marks
    the sync check degraded, not unhealthy: the last good records are
    still being served.
    """
    start = time.perf_counter()
    checks: Dict[str, Dict[str, Any]] = {"liveness": {"status": "healthy"}}
    all_healthy = True

    if coordinator is not None:
        state = coordinator.state
        sync_check: Dict[str, Any] = {
            "status": "healthy",
            "version": state.version,
            "record_count": len(state.entries),
            "last_source": state.last_source.value if state.last_source else None,
            "polling": coordinator.is_polling,
        }
        if coordinator.closed:
            sync_check["status"] = "unhealthy"
            all_healthy = False
        elif state.error is not None:
            sync_check["status"] = "degraded"
            sync_check["error"] = {
                "kind": state.error.kind.value,
                "message": state.error.message,
            }
        checks["claim_sync"] = sync_check

    duration_ms = (time.perf_counter() - start) * 1000
    return HealthStatus(
        healthy=all_healthy,
        checks=checks,
        duration_ms=round(duration_ms, 2),
    )
