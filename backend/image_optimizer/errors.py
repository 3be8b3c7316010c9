"""Error taxonomy, conversion error values and the structured error sink."""
import logging
import threading
import time
from collections import Counter, deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional

logger = logging.getLogger("image_optimizer.errors")


class ErrorKind(str, Enum):
    VALIDATION = "validation"
    NOT_FOUND = "not_found"
    UNSUPPORTED = "unsupported"
    RESOURCE_EXHAUSTION = "resource_exhaustion"
    TRANSIENT = "transient"
    SECURITY = "security"


# Codes that must never be retried, whatever kind they were raised under
NON_RETRYABLE_CODES = frozenset({"file_not_found", "invalid_file_type", "file_too_large", "permission_denied"})


@dataclass(frozen=True)
class ConversionError:
    """Failure value returned instead of raised. Retryability is a data property."""

    kind: ErrorKind
    code: str
    message: str

    @property
    def retryable(self) -> bool:
        return self.kind is ErrorKind.TRANSIENT and self.code not in NON_RETRYABLE_CODES

    def to_dict(self) -> dict[str, str]:
        return {"kind": self.kind.value, "code": self.code, "message": self.message}

    @classmethod
    def from_dict(cls, data: dict) -> "ConversionError":
        return cls(kind=ErrorKind(data["kind"]), code=data["code"], message=data["message"])

    def __str__(self) -> str:
        return self.message


def file_not_found(path) -> ConversionError:
    return ConversionError(ErrorKind.NOT_FOUND, "file_not_found", f"File not found: {path}")


def permission_denied(message: str) -> ConversionError:
    return ConversionError(ErrorKind.SECURITY, "permission_denied", message)


def transient(code: str, message: str) -> ConversionError:
    return ConversionError(ErrorKind.TRANSIENT, code, message)


class BatchError(Exception):
    """Raised synchronously to the caller of BatchScheduler.start."""

    code = "batch_error"


class AlreadyRunning(BatchError):
    code = "batch_already_running"

    def __init__(self, message: str = "Batch conversion is already running."):
        super().__init__(message)


class EmptyQueue(BatchError):
    code = "empty_queue"

    def __init__(self, message: str = "No images found to convert."):
        super().__init__(message)


_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "notice": logging.INFO,
    "warning": logging.WARNING,
    "error": logging.ERROR,
    "critical": logging.CRITICAL,
}


@dataclass
class ErrorEvent:
    message: str
    level: str
    category: str
    context: dict[str, Any] = field(default_factory=dict)
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> dict[str, Any]:
        return {
            "message": self.message,
            "level": self.level,
            "category": self.category,
            "context": self.context,
            "timestamp": self.timestamp,
        }


class ErrorSink:
    """Receives structured events and counters. Writes through logging; keeps a bounded in-memory ring."""

    def __init__(self, max_events: int = 100):
        self._events: deque[ErrorEvent] = deque(maxlen=max_events)
        self._by_level: Counter = Counter()
        self._by_category: Counter = Counter()
        self._lock = threading.Lock()

    def log(self, message, level: str = "error", category: str = "system", context: Optional[dict] = None) -> ErrorEvent:
        if isinstance(message, ConversionError):
            context = {**(context or {}), "code": message.code, "kind": message.kind.value}
            message = message.message
        event = ErrorEvent(message=str(message), level=level, category=category, context=dict(context or {}))
        with self._lock:
            self._events.append(event)
            self._by_level[level] += 1
            self._by_category[category] += 1
        logging.getLogger(f"image_optimizer.{category}").log(
            _LEVELS.get(level, logging.ERROR), "%s %s", event.message, event.context or ""
        )
        return event

    def log_conversion_error(self, error: ConversionError, original_path, fmt: str, context: Optional[dict] = None) -> ErrorEvent:
        ctx = {"original_file": str(original_path), "format": fmt, **(context or {})}
        return self.log(error, "error", "conversion", ctx)

    def recent(self, limit: int = 20, category: Optional[str] = None) -> list[dict[str, Any]]:
        with self._lock:
            events = [e for e in self._events if category is None or e.category == category]
        return [e.to_dict() for e in events[-limit:]][::-1]

    def stats(self) -> dict[str, Any]:
        with self._lock:
            return {
                "total": sum(self._by_level.values()),
                "by_level": dict(self._by_level),
                "by_category": dict(self._by_category),
            }

    def clear(self) -> None:
        with self._lock:
            self._events.clear()
            self._by_level.clear()
            self._by_category.clear()
