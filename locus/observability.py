"""
Locus Observability

Structured logging and a hash-chained audit trail for the resolver core.

Architecture:
    ┌─────────────────────────────────────────────────────────┐
    │          Verifiers / Ledger / Service / CLI             │
    │  logger.info("msg", cell_id=x)   audit.log(...)         │
    └───────────────────────┬─────────────────────────────────┘
                            │
    ┌───────────────────────▼─────────────────────────────────┐
    │                LocusLogger / AuditLogger                 │
    │  correlation ids, layer tags, structured context        │
    └───────────────────────┬─────────────────────────────────┘
                            │
    ┌───────────────────────▼─────────────────────────────────┐
    │            logging.Handler (JSON or text)               │
    └─────────────────────────────────────────────────────────┘
"""

from __future__ import annotations

import contextvars
import json
import logging
import sys
import threading
import time
import traceback
import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from functools import wraps
from typing import Any, Callable, Dict, Optional, TypeVar

from locus.canonical import canonical_json_text, sha256_hex

correlation_id_var: contextvars.ContextVar[str] = contextvars.ContextVar(
    "correlation_id", default=""
)

ROOT_LOGGER_NAME = "locus"


class LogLevel(Enum):
    """Log severity levels."""
    DEBUG = "debug"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


class LocusLayer(Enum):
    """Subsystems, used to tag log events."""
    CANONICAL = "canonical"
    SIGNING = "signing"
    PROOFS = "proofs"
    CELLS = "cells"
    LEDGER = "ledger"
    RATELIMIT = "ratelimit"
    SERVICE = "service"
    CONFIG = "config"
    AUDIT = "audit"
    CLI = "cli"


@dataclass
class LogEvent:
    """Structured log event."""
    timestamp: str
    level: str
    logger: str
    message: str
    correlation_id: str = ""
    layer: str = ""
    operation: str = ""
    duration_ms: Optional[float] = None
    error_code: str = ""
    context: Dict[str, Any] = field(default_factory=dict)
    exception: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary, excluding empty values."""
        d = asdict(self)
        return {k: v for k, v in d.items() if v is not None and v != "" and v != {}}

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), default=str)


class StructuredHandler(logging.Handler):
    """Logging handler that writes one JSON object per line."""

    def __init__(self, stream: Any = None):
        super().__init__()
        self.stream = stream or sys.stderr

    def emit(self, record: logging.LogRecord) -> None:
        try:
            event = LogEvent(
                timestamp=datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
                level=record.levelname.lower(),
                logger=record.name,
                message=record.getMessage(),
                correlation_id=getattr(record, "correlation_id", "") or correlation_id_var.get(),
                layer=getattr(record, "layer", ""),
                operation=getattr(record, "operation", ""),
                duration_ms=getattr(record, "duration_ms", None),
                error_code=getattr(record, "error_code", ""),
                context=getattr(record, "context", {}),
            )

            if record.exc_info:
                event.exception = "".join(traceback.format_exception(*record.exc_info))

            self.stream.write(event.to_json() + "\n")
            self.stream.flush()
        except Exception:
            self.handleError(record)


class TextFormatter(logging.Formatter):
    """Human-readable single-line format with the structured context appended."""

    def format(self, record: logging.LogRecord) -> str:
        base = super().format(record)
        context = getattr(record, "context", None)
        if context:
            base += " " + " ".join(f"{k}={v}" for k, v in sorted(context.items()))
        return base


class LocusLogger:
    """
    Structured logger for Locus components.

    Log calls take the message plus keyword context; the context is carried
    on the record and rendered by whichever handler is installed.
    """

    def __init__(self, name: str, layer: LocusLayer):
        self.name = name
        self.layer = layer
        self._logger = logging.getLogger(f"{ROOT_LOGGER_NAME}.{layer.value}.{name}")

    def _log(
        self,
        level: int,
        message: str,
        operation: str = "",
        error_code: str = "",
        duration_ms: Optional[float] = None,
        exc_info: bool = False,
        **context: Any,
    ) -> None:
        if not self._logger.isEnabledFor(level):
            return
        extra = {
            "layer": self.layer.value,
            "operation": operation,
            "error_code": error_code,
            "duration_ms": duration_ms,
            "context": context,
            "correlation_id": correlation_id_var.get(),
        }
        self._logger.log(level, message, extra=extra, exc_info=exc_info)

    def debug(self, message: str, **context: Any) -> None:
        self._log(logging.DEBUG, message, **context)

    def info(self, message: str, **context: Any) -> None:
        self._log(logging.INFO, message, **context)

    def warning(self, message: str, **context: Any) -> None:
        self._log(logging.WARNING, message, **context)

    def error(
        self,
        message: str,
        error_code: str = "",
        exc_info: bool = False,
        **context: Any,
    ) -> None:
        self._log(logging.ERROR, message, error_code=error_code, exc_info=exc_info, **context)

    def operation(
        self,
        name: str,
        duration_ms: float,
        success: bool = True,
        **context: Any,
    ) -> None:
        """Log an operation completion."""
        level = logging.INFO if success else logging.WARNING
        status = "completed" if success else "failed"
        self._log(
            level,
            f"Operation {name} {status}",
            operation=name,
            duration_ms=duration_ms,
            **context,
        )


def configure_logging(
    level: str = "info",
    fmt: str = "json",
    stream: Any = None,
) -> logging.Handler:
    """Install a single handler on the ``locus`` logger tree.

    Calling it again replaces the previous handler, so tests and the CLI can
    reconfigure freely.
    """
    root = logging.getLogger(ROOT_LOGGER_NAME)
    for existing in list(root.handlers):
        if getattr(existing, "_locus_handler", False):
            root.removeHandler(existing)

    if fmt == "json":
        handler: logging.Handler = StructuredHandler(stream)
    else:
        handler = logging.StreamHandler(stream or sys.stderr)
        handler.setFormatter(TextFormatter("%(asctime)s %(levelname)s %(name)s: %(message)s"))
    handler._locus_handler = True  # type: ignore[attr-defined]

    root.addHandler(handler)
    root.setLevel(getattr(logging, LogLevel(level).value.upper()))
    return handler


def generate_correlation_id() -> str:
    return f"corr-{uuid.uuid4().hex[:12]}"


def set_correlation_id(correlation_id: str) -> contextvars.Token:
    """Set the correlation ID for the current context."""
    return correlation_id_var.set(correlation_id)


def reset_correlation_id(token: contextvars.Token) -> None:
    correlation_id_var.reset(token)


def get_correlation_id() -> str:
    """Get the current correlation ID, creating one if none is set."""
    cid = correlation_id_var.get()
    if not cid:
        cid = generate_correlation_id()
        correlation_id_var.set(cid)
    return cid


def get_logger(name: str, layer: LocusLayer) -> LocusLogger:
    return LocusLogger(name, layer)


T = TypeVar("T")


def timed_operation(
    logger: LocusLogger,
    operation_name: str,
) -> Callable[[Callable[..., T]], Callable[..., T]]:
    """Decorator for timing and logging operations."""
    def decorator(func: Callable[..., T]) -> Callable[..., T]:
        @wraps(func)
        def wrapper(*args: Any, **kwargs: Any) -> T:
            start = time.monotonic()
            success = True
            try:
                return func(*args, **kwargs)
            except Exception:
                success = False
                raise
            finally:
                duration_ms = (time.monotonic() - start) * 1000
                logger.operation(operation_name, duration_ms, success)
        return wrapper
    return decorator


# Audit trail
@dataclass
class AuditEvent:
    """One entry of the audit trail."""
    event_id: str
    timestamp: str
    project_id: str
    action: str
    resource_type: str
    resource_id: str
    outcome: str  # success, rejected, not_found, denied
    correlation_id: str = ""
    previous_hash: str = ""
    details: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class AuditLogger:
    """
    Tamper-evident audit trail.

    Each event's hash covers the canonical encoding of the event, including
    the hash of the event before it.
    """

    GENESIS = "genesis"

    def __init__(self, logger: Optional[LocusLogger] = None):
        self._logger = logger or get_logger("audit", LocusLayer.AUDIT)
        self._last_hash: str = self.GENESIS
        self._lock = threading.Lock()

    @property
    def last_hash(self) -> str:
        with self._lock:
            return self._last_hash

    @staticmethod
    def compute_hash(event: AuditEvent) -> str:
        # Rejected inputs can carry lone surrogates; escape them rather than fail.
        text = canonical_json_text(event.to_dict())
        return sha256_hex(text.encode("utf-8", "backslashreplace"))

    def log(
        self,
        project_id: str,
        action: str,
        resource_type: str,
        resource_id: str,
        outcome: str,
        **details: Any,
    ) -> AuditEvent:
        """Record an audit event and chain it to the previous one."""
        with self._lock:
            event = AuditEvent(
                event_id=uuid.uuid4().hex,
                timestamp=datetime.now(timezone.utc).isoformat(),
                project_id=project_id,
                action=action,
                resource_type=resource_type,
                resource_id=resource_id,
                outcome=outcome,
                correlation_id=correlation_id_var.get(),
                previous_hash=self._last_hash,
                details=details,
            )
            event_hash = self.compute_hash(event)
            self._last_hash = event_hash

        self._logger.info(
            f"AUDIT: {action} on {resource_type}/{resource_id} -> {outcome}",
            operation="audit",
            event_hash=event_hash,
            **event.to_dict(),
        )
        return event
