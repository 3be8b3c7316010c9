"""Conversion orchestrator: validates originals, drives the converter per enabled format, records results."""
import logging
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Iterable, Optional

from image_optimizer.config import MEDIA_ROOT, OUTPUT_FORMATS, ConfigProvider, Settings
from image_optimizer.conversion.artifacts import ArtifactStore
from image_optimizer.conversion.converters import Converter, ConverterFactory, get_converter_factory
from image_optimizer.conversion.models import ConversionReport, ConversionResult, OnDemandResult
from image_optimizer.errors import ConversionError, ErrorKind, ErrorSink, file_not_found, transient

logger = logging.getLogger("image_optimizer.service")

HISTORY_PREFIX = "conversion_history:"
HISTORY_LIMIT = 5


def _empty_stats() -> dict:
    return {
        "conversions_attempted": 0,
        "conversions_successful": 0,
        "conversions_failed": 0,
        "space_saved": 0,
    }


class ConversionOrchestrator:
    """Used by both the batch scheduler and the on-demand serving path."""

    def __init__(
        self,
        config: ConfigProvider,
        factory: Optional[ConverterFactory] = None,
        store=None,
        sink: Optional[ErrorSink] = None,
        media_root: Path = MEDIA_ROOT,
    ):
        self.config = config
        self.factory = factory or get_converter_factory()
        self.store = store
        self.sink = sink or ErrorSink()
        self.media_root = Path(media_root).resolve()
        self._stats = _empty_stats()
        self._stats_lock = threading.Lock()
        self._inflight: dict[tuple[str, str], list] = {}
        self._inflight_lock = threading.Lock()

    @property
    def converter(self) -> Optional[Converter]:
        return self.factory.get_converter()

    def artifacts(self, settings: Optional[Settings] = None) -> ArtifactStore:
        settings = settings or self.config.snapshot()
        return ArtifactStore(self.media_root, settings.max_file_size, settings.allowed_mime_types)

    def _count(self, key: str, amount: int = 1) -> None:
        with self._stats_lock:
            self._stats[key] += amount

    def _no_converter(self) -> ConversionError:
        error = ConversionError(
            ErrorKind.UNSUPPORTED,
            "no_converter",
            "No image converter available. Install Pillow with WebP/AVIF support or the cwebp tool.",
        )
        self.sink.log(error, "critical", "system")
        return error

    def _convert_single(self, src: Path, fmt: str, settings: Settings, converter: Converter, store: ArtifactStore):
        """One format. Returns ConversionResult or ConversionError, never raises."""
        quality = settings.quality_for(fmt)
        dst = store.converted_path(src, fmt)
        write_error = store.validate_write_permissions(dst)
        if write_error:
            self.sink.log(write_error, "error", "file_system", {"converted_path": str(dst)})
            return write_error
        if fmt not in converter.supported_formats():
            error = ConversionError(
                ErrorKind.UNSUPPORTED,
                "format_not_supported",
                f"Format {fmt} is not supported by {converter.name} converter.",
            )
            self.sink.log(error, "error", "configuration", {"converter": converter.name})
            return error
        try:
            success = converter.convert(src, dst, fmt, quality)
        except Exception as e:
            logger.exception("Converter %s raised for %s -> %s", converter.name, src, fmt)
            error = transient("conversion_exception", f"Conversion failed with exception: {e}")
            self.sink.log_conversion_error(error, src, fmt, {"quality": quality, "converter": converter.name})
            return error
        if not success:
            error = transient("conversion_failed", f"Failed to convert {src.name} to {fmt} format.")
            self.sink.log_conversion_error(error, src, fmt, {"quality": quality, "converter": converter.name})
            return error
        if not dst.is_file():
            error = transient("converted_file_missing", f"Converted file was not created: {dst}")
            self.sink.log(error, "error", "file_system", {"format": fmt})
            return error
        return ConversionResult(
            format=fmt,
            original_path=str(src),
            converted_path=str(dst),
            original_size=src.stat().st_size,
            converted_size=dst.stat().st_size,
            quality=quality,
            converter=converter.name,
        )

    def convert_all(self, source_path: Path, formats: Optional[Iterable[str]] = None) -> ConversionReport:
        """Convert to every enabled format (or the enabled subset of formats). Partial success is allowed."""
        src = Path(source_path)
        report = ConversionReport(original_path=str(src))
        settings = self.config.snapshot()
        store = self.artifacts(settings)

        validation = store.validate_original(src)
        if validation:
            self.sink.log(validation, "error", "validation", {"original_path": str(src)})
            report.error = validation
            return report
        converter = self.converter
        if converter is None:
            report.error = self._no_converter()
            return report

        targets = settings.enabled_formats()
        if formats is not None:
            wanted = {f.lower() for f in formats}
            targets = [f for f in targets if f in wanted]

        for fmt in targets:
            self._count("conversions_attempted")
            outcome = self._convert_single(src, fmt, settings, converter, store)
            if isinstance(outcome, ConversionError):
                self._count("conversions_failed")
                report.errors[fmt] = outcome
            else:
                self._count("conversions_successful")
                self._count("space_saved", outcome.space_saved)
                report.conversions[fmt] = outcome

        if report.conversions:
            logger.info(
                "Converted %s to %d format(s), saved %d bytes",
                src.name, len(report.conversions), report.space_saved,
            )
        elif report.errors:
            self.sink.log(
                f"All format conversions failed for image: {src.name}",
                "error",
                "conversion",
                {"failed_formats": sorted(report.errors)},
            )
        self._record_history(src, report)
        return report

    @contextmanager
    def _single_flight(self, src: Path, fmt: str):
        """Serialize conversions of the same (source, format) within this process."""
        key = (str(src.resolve()), fmt)
        with self._inflight_lock:
            entry = self._inflight.setdefault(key, [threading.Lock(), 0])
            entry[1] += 1
        try:
            with entry[0]:
                yield
        finally:
            with self._inflight_lock:
                entry[1] -= 1
                if entry[1] == 0:
                    self._inflight.pop(key, None)

    def convert_on_demand(self, source_path: Path, fmt: str) -> OnDemandResult:
        """Single format. An existing artifact is returned as is, with no codec invocation."""
        src = Path(source_path)
        fmt = (fmt or "").lower()
        if fmt not in OUTPUT_FORMATS:
            error = ConversionError(ErrorKind.VALIDATION, "invalid_format", f"Invalid format requested: {fmt}")
            self.sink.log(error, "error", "validation")
            return OnDemandResult(error=error)
        settings = self.config.snapshot()
        if not settings.formats.get(fmt) or not settings.formats[fmt].enabled:
            error = ConversionError(ErrorKind.UNSUPPORTED, "format_disabled", f"Format {fmt} is disabled in settings.")
            self.sink.log(error, "warning", "configuration")
            return OnDemandResult(error=error)
        if not src.is_file():
            return OnDemandResult(error=file_not_found(src))

        store = self.artifacts(settings)
        dst = store.converted_path(src, fmt)
        if dst.is_file():
            return OnDemandResult(path=dst)

        with self._single_flight(src, fmt):
            if dst.is_file():
                # Another request finished it while we waited
                return OnDemandResult(path=dst)
            validation = store.validate_original(src)
            if validation:
                self.sink.log(validation, "error", "validation", {"original_path": str(src)})
                return OnDemandResult(error=validation)
            converter = self.converter
            if converter is None:
                return OnDemandResult(error=self._no_converter())
            self._count("conversions_attempted")
            outcome = self._convert_single(src, fmt, settings, converter, store)

        if isinstance(outcome, ConversionError):
            self._count("conversions_failed")
            return OnDemandResult(error=outcome)
        self._count("conversions_successful")
        self._count("space_saved", outcome.space_saved)
        report = ConversionReport(original_path=str(src), conversions={fmt: outcome})
        self._record_history(src, report)
        return OnDemandResult(path=dst, converted=True, result=outcome)

    def convert_uploaded(self, source_path: Path) -> Optional[ConversionReport]:
        """Auto-mode hook for new uploads. None when conversion is disabled or not in auto mode."""
        settings = self.config.snapshot()
        if not settings.enabled or settings.conversion_mode != "auto":
            return None
        return self.convert_all(source_path)

    def check_converted_versions(self, source_path: Path) -> dict[str, dict]:
        settings = self.config.snapshot()
        store = self.artifacts(settings)
        versions = {}
        for fmt in OUTPUT_FORMATS:
            dst = store.converted_path(Path(source_path), fmt)
            fmt_settings = settings.formats.get(fmt)
            info = {
                "enabled": bool(fmt_settings and fmt_settings.enabled),
                "exists": dst.is_file(),
                "path": str(dst),
            }
            if info["exists"]:
                file_info = store.file_info(dst)
                if file_info:
                    info["size"] = file_info["size"]
                    info["modified"] = file_info["modified_time"]
            versions[fmt] = info
        return versions

    def missing_formats(self, source_path: Path, formats: Optional[Iterable[str]] = None) -> list[str]:
        """Enabled formats (optionally narrowed) whose artifact does not exist yet."""
        versions = self.check_converted_versions(source_path)
        wanted = None if formats is None else {f.lower() for f in formats}
        return [
            fmt for fmt, info in versions.items()
            if (wanted is None and info["enabled"] or wanted is not None and fmt in wanted) and not info["exists"]
        ]

    def cleanup_converted_files(self, source_path: Path, dry_run: bool = False) -> list[Path]:
        return self.artifacts().cleanup_converted(Path(source_path), dry_run=dry_run)

    def _subject_key(self, src: Path) -> str:
        try:
            return src.resolve().relative_to(self.media_root).as_posix()
        except ValueError:
            return str(src.resolve())

    def _record_history(self, src: Path, report: ConversionReport) -> None:
        if self.store is None or (not report.conversions and not report.errors):
            return
        record = report.to_dict()
        record["converter"] = self.converter.name if self.converter else "unknown"

        def append(history):
            history = list(history or [])
            history.append(record)
            return history[-HISTORY_LIMIT:]

        try:
            self.store.update(HISTORY_PREFIX + self._subject_key(src), append, default=[])
        except Exception as e:
            logger.warning("Could not store conversion history for %s: %s", src.name, e)

    def get_history(self, source_path: Path) -> list[dict]:
        if self.store is None:
            return []
        return self.store.get(HISTORY_PREFIX + self._subject_key(Path(source_path)), []) or []

    def produced_artifacts(self) -> list[Path]:
        """Artifacts this service wrote, going by the conversion history records."""
        if self.store is None:
            return []
        produced = set()
        for key in self.store.keys(HISTORY_PREFIX):
            subject = self.media_root / key[len(HISTORY_PREFIX):]
            for record in self.store.get(key, []) or []:
                for conversion in (record.get("conversions") or {}).values():
                    if conversion.get("converted_path"):
                        produced.add(Path(conversion["converted_path"]))
                    elif conversion.get("format") in OUTPUT_FORMATS:
                        produced.add(subject.with_suffix(f".{conversion['format']}"))
        return sorted(produced)

    def get_stats(self) -> dict:
        with self._stats_lock:
            return dict(self._stats)

    def reset_stats(self) -> None:
        with self._stats_lock:
            self._stats = _empty_stats()

    def converter_info(self) -> Optional[dict]:
        converter = self.converter
        return converter.info() if converter else None

    def can_convert(self) -> Optional[ConversionError]:
        """None when conversion can proceed, otherwise the reason it cannot."""
        converter = self.converter
        if converter is None:
            return ConversionError(ErrorKind.UNSUPPORTED, "no_converter", "No image converter available.")
        if not converter.is_available():
            return ConversionError(ErrorKind.UNSUPPORTED, "converter_unavailable", f"{converter.name} converter is not available.")
        settings = self.config.snapshot()
        if not settings.enabled:
            return ConversionError(ErrorKind.VALIDATION, "conversion_disabled", "Image conversion is disabled in settings.")
        if not settings.enabled_formats():
            return ConversionError(ErrorKind.VALIDATION, "no_formats_enabled", "No image formats are enabled for conversion.")
        return None
