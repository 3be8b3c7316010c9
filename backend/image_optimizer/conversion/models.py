"""Conversion and queue models."""
import time
from dataclasses import asdict, dataclass, field
from enum import Enum, IntEnum
from pathlib import Path
from typing import Any, Optional

from image_optimizer.errors import ConversionError


class OutputFormat(str, Enum):
    WEBP = "webp"
    AVIF = "avif"

    @property
    def mime_type(self) -> str:
        return f"image/{self.value}"

    @property
    def extension(self) -> str:
        return f".{self.value}"


ALL_FORMATS = "all"


class Priority(IntEnum):
    """Lower value is processed first."""

    HIGH = 1
    NORMAL = 2
    LOW = 3


class TaskStatus(str, Enum):
    SUCCESS = "success"
    SKIPPED = "skipped"
    FAILED = "failed"
    RETRY = "retry"


class SupportedFormats:
    SOURCE = ["jpg", "jpeg", "png", "gif"]
    OUTPUT = [f.value for f in OutputFormat]


@dataclass
class ConversionResult:
    """One successful format conversion."""

    format: str
    original_path: str
    converted_path: str
    original_size: int
    converted_size: int
    quality: int
    converter: str
    timestamp: float = field(default_factory=time.time)

    @property
    def space_saved(self) -> int:
        return max(0, self.original_size - self.converted_size)

    @property
    def compression_ratio(self) -> float:
        if self.original_size <= 0:
            return 0.0
        return round(self.space_saved / self.original_size * 100.0, 2)

    def to_dict(self) -> dict[str, Any]:
        out = asdict(self)
        out["space_saved"] = self.space_saved
        out["compression_ratio"] = self.compression_ratio
        return out


@dataclass
class ConversionReport:
    """Aggregate of convert_all: per-format results and per-format errors side by side."""

    original_path: str
    conversions: dict[str, ConversionResult] = field(default_factory=dict)
    errors: dict[str, ConversionError] = field(default_factory=dict)
    error: Optional[ConversionError] = None  # validation / no_converter, nothing was attempted
    timestamp: float = field(default_factory=time.time)

    @property
    def space_saved(self) -> int:
        return sum(r.space_saved for r in self.conversions.values())

    @property
    def ok(self) -> bool:
        return self.error is None and bool(self.conversions)

    @property
    def complete_failure(self) -> bool:
        return self.error is not None or (not self.conversions and bool(self.errors))

    def first_error(self) -> Optional[ConversionError]:
        if self.error is not None:
            return self.error
        return next(iter(self.errors.values()), None)

    def to_dict(self) -> dict[str, Any]:
        return {
            "original_path": self.original_path,
            "conversions": {k: v.to_dict() for k, v in self.conversions.items()},
            "errors": {k: v.to_dict() for k, v in self.errors.items()},
            "error": self.error.to_dict() if self.error else None,
            "space_saved": self.space_saved,
            "timestamp": self.timestamp,
        }


@dataclass
class ConversionTask:
    """Pending queue item. Owned by the scheduler until it succeeds, fails or is skipped."""

    subject_id: str
    format: str = ALL_FORMATS
    force: bool = False
    priority: Priority = Priority.NORMAL
    retry_count: int = 0
    not_before: Optional[float] = None
    created_time: float = field(default_factory=time.time)
    last_error: Optional[str] = None

    @property
    def target_formats(self) -> Optional[list[str]]:
        return None if self.format == ALL_FORMATS else [self.format]

    def sort_key(self) -> tuple[int, float]:
        return (int(self.priority), self.created_time)

    def to_dict(self) -> dict[str, Any]:
        return {
            "subject_id": self.subject_id,
            "format": self.format,
            "force": self.force,
            "priority": int(self.priority),
            "retry_count": self.retry_count,
            "not_before": self.not_before,
            "created_time": self.created_time,
            "last_error": self.last_error,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ConversionTask":
        return cls(
            subject_id=str(data["subject_id"]),
            format=data.get("format") or ALL_FORMATS,
            force=bool(data.get("force", False)),
            priority=Priority(int(data.get("priority", Priority.NORMAL))),
            retry_count=int(data.get("retry_count", 0)),
            not_before=data.get("not_before"),
            created_time=float(data.get("created_time", 0.0)),
            last_error=data.get("last_error"),
        )


@dataclass
class TaskOutcome:
    status: TaskStatus
    subject_id: str
    reason: Optional[str] = None
    error: Optional[ConversionError] = None
    space_saved: int = 0
    path: Optional[Path] = None


@dataclass
class OnDemandResult:
    """Outcome of a single-format conversion. converted is False when an existing artifact was returned."""

    path: Optional[Path] = None
    error: Optional[ConversionError] = None
    converted: bool = False
    result: Optional[ConversionResult] = None

    @property
    def ok(self) -> bool:
        return self.error is None and self.path is not None
