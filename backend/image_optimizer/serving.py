"""Format negotiation and the image serving path. Framework-free: serve() returns a ServeResponse the API layer renders."""
import hashlib
import logging
import time
from dataclasses import dataclass, field
from email.utils import formatdate, parsedate_to_datetime
from pathlib import Path
from typing import Callable, Iterable, Optional

from image_optimizer.config import CACHE_MAX_AGE, SOURCE_EXTENSIONS
from image_optimizer.conversion.service import ConversionOrchestrator
from image_optimizer.security import sanitize_file_path

logger = logging.getLogger("image_optimizer.serving")

# Fixed tie-break: AVIF compresses better, so it wins when both are acceptable
FORMAT_PREFERENCE = ("avif", "webp")

CONTENT_TYPES = {
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".png": "image/png",
    ".gif": "image/gif",
    ".webp": "image/webp",
    ".avif": "image/avif",
}
FALLBACK_CONTENT_TYPE = "application/octet-stream"


def _media_ranges(accept: str) -> dict[str, float]:
    """Parse an Accept header into {media-range: q}. Malformed q values count as 1."""
    ranges: dict[str, float] = {}
    for token in (accept or "").lower().split(","):
        parts = [p.strip() for p in token.split(";")]
        media = parts[0]
        if not media:
            continue
        q = 1.0
        for param in parts[1:]:
            if param.startswith("q="):
                try:
                    q = float(param[2:])
                except ValueError:
                    q = 1.0
        ranges[media] = max(q, ranges.get(media, 0.0))
    return ranges


def supports_format(fmt: str, accept: str) -> bool:
    """The MIME type must appear as a whole media range (or be covered by image/* or */*)."""
    mime = f"image/{fmt.lower().strip()}"
    ranges = _media_ranges(accept)
    if mime in ranges:
        return ranges[mime] > 0
    return ranges.get("image/*", 0) > 0 or ranges.get("*/*", 0) > 0


class FormatNegotiator:
    def __init__(self, preference: Iterable[str] = FORMAT_PREFERENCE):
        self.preference = tuple(preference)

    def select_format(self, accept: str, enabled_formats: Iterable[str]) -> Optional[str]:
        enabled = set(enabled_formats)
        for fmt in self.preference:
            if fmt in enabled and supports_format(fmt, accept):
                return fmt
        return None


def content_type_for(path: Path) -> str:
    return CONTENT_TYPES.get(Path(path).suffix.lower(), FALLBACK_CONTENT_TYPE)


def compute_etag(path: Path, mtime: float, size: int) -> str:
    digest = hashlib.md5(f"{path}{int(mtime)}{size}".encode("utf-8")).hexdigest()
    return f'"{digest}"'


def _safe_filename(name: str) -> str:
    return "".join(c for c in name if c.isprintable() and c not in '"\\;') or "image"


@dataclass
class ServeResponse:
    status: int
    headers: dict[str, str] = field(default_factory=dict)
    path: Optional[Path] = None
    body: bytes = b""
    served_format: Optional[str] = None  # None means the original was served

    @property
    def media_type(self) -> str:
        return self.headers.get("Content-Type", FALLBACK_CONTENT_TYPE)


class ImageServer:
    """Negotiate, convert on demand if needed, and build cache/validation headers."""

    def __init__(
        self,
        orchestrator: ConversionOrchestrator,
        negotiator: Optional[FormatNegotiator] = None,
        cache_max_age: int = CACHE_MAX_AGE,
        clock: Callable[[], float] = time.time,
    ):
        self.orchestrator = orchestrator
        self.negotiator = negotiator or FormatNegotiator()
        self.media_root = orchestrator.media_root
        self.cache_max_age = cache_max_age
        self.clock = clock

    def error(self, status: int, message: str) -> ServeResponse:
        headers = {
            "Content-Type": "text/plain; charset=utf-8",
            "Cache-Control": "no-cache, no-store, must-revalidate",
            "Pragma": "no-cache",
            "Expires": "0",
            "X-Content-Type-Options": "nosniff",
            "X-Frame-Options": "DENY",
        }
        return ServeResponse(status=status, headers=headers, body=message.encode("utf-8"))

    def resolve_request(self, requested: Optional[str]):
        return sanitize_file_path(requested, self.media_root, SOURCE_EXTENSIONS)

    def best_format(self, accept: str) -> Optional[str]:
        settings = self.orchestrator.config.snapshot()
        if not settings.enabled:
            return None
        return self.negotiator.select_format(accept, settings.enabled_formats())

    def serve(
        self,
        requested: Optional[str],
        accept: str = "",
        if_modified_since: Optional[str] = None,
        if_none_match: Optional[str] = None,
        client: Optional[str] = None,
    ) -> ServeResponse:
        path, error = self.resolve_request(requested)
        if error is not None:
            if error.code == "empty_path":
                return self.error(400, "No file specified")
            self.orchestrator.sink.log(error, "warning", "security", {"requested_file": requested, "client_ip": client})
            return self.error(403, "Access denied")
        if not path.is_file():
            return self.error(404, "Original image not found")

        fmt = self.best_format(accept)
        if fmt:
            result = self.orchestrator.convert_on_demand(path, fmt)
            if result.ok:
                return self.serve_file(result.path, if_modified_since, if_none_match, served_format=fmt)
            # Never surface a conversion failure for a normal image view
            self.orchestrator.sink.log(
                result.error,
                "warning",
                "conversion",
                {"original_file": str(path), "format": fmt, "fallback": "original"},
            )
        return self.serve_file(path, if_modified_since, if_none_match)

    def file_headers(self, path: Path, size: int, mtime: float) -> dict[str, str]:
        now = self.clock()
        return {
            "Content-Type": content_type_for(path),
            "Content-Length": str(size),
            "Last-Modified": formatdate(int(mtime), usegmt=True),
            "ETag": compute_etag(path, mtime, size),
            "Cache-Control": f"public, max-age={self.cache_max_age}, immutable",
            "Expires": formatdate(now + self.cache_max_age, usegmt=True),
            "Vary": "Accept",
            "X-Content-Type-Options": "nosniff",
            "X-Frame-Options": "SAMEORIGIN",
            "Referrer-Policy": "strict-origin-when-cross-origin",
            "Content-Disposition": f'inline; filename="{_safe_filename(path.name)}"',
        }

    @staticmethod
    def is_client_cached(headers: dict[str, str], mtime: float, if_modified_since: Optional[str], if_none_match: Optional[str]) -> bool:
        if if_none_match:
            etag = headers["ETag"]
            candidates = [c.strip() for c in if_none_match.split(",")]
            if "*" in candidates or any(c == etag or c == f"W/{etag}" for c in candidates):
                return True
        if if_modified_since:
            try:
                since = parsedate_to_datetime(if_modified_since).timestamp()
            except (TypeError, ValueError, IndexError):
                return False
            if since >= int(mtime):
                return True
        return False

    def serve_file(
        self,
        path: Path,
        if_modified_since: Optional[str] = None,
        if_none_match: Optional[str] = None,
        served_format: Optional[str] = None,
    ) -> ServeResponse:
        try:
            resolved = path.resolve()
            resolved.relative_to(self.media_root)
        except ValueError:
            return self.error(403, "Access denied")
        try:
            st = resolved.stat()
        except OSError:
            return self.error(404, "Image not found")
        headers = self.file_headers(resolved, st.st_size, st.st_mtime)
        if self.is_client_cached(headers, st.st_mtime, if_modified_since, if_none_match):
            for name in ("Content-Type", "Content-Length", "Content-Disposition"):
                headers.pop(name, None)
            return ServeResponse(status=304, headers=headers, served_format=served_format)
        return ServeResponse(status=200, headers=headers, path=resolved, served_format=served_format)

    # Diagnostics

    def browser_capabilities(self, accept: str, user_agent: str = "") -> dict:
        return {
            "accept_header": accept,
            "supports_webp": supports_format("webp", accept),
            "supports_avif": supports_format("avif", accept),
            "user_agent": user_agent,
        }

    def negotiation_report(self, requested: Optional[str], accept: str, user_agent: str = "") -> dict:
        report = {
            "original_exists": False,
            "browser_capabilities": self.browser_capabilities(accept, user_agent),
            "best_format": None,
            "available_formats": {},
        }
        path, error = self.resolve_request(requested)
        if error is not None:
            report["error"] = error.message
            return report
        report["original_exists"] = path.is_file()
        if report["original_exists"]:
            settings = self.orchestrator.config.snapshot()
            store = self.orchestrator.artifacts(settings)
            for fmt in FORMAT_PREFERENCE:
                if fmt in settings.enabled_formats():
                    report["available_formats"][fmt] = store.exists(path, fmt)
            report["best_format"] = self.best_format(accept)
        return report
