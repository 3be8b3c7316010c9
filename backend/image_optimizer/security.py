"""Request-path sanitizing, client address detection and the fixed-window rate limiter for the serving path."""
import ipaddress
import logging
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Iterable, Mapping, Optional
from urllib.parse import unquote

from image_optimizer.errors import ConversionError, ErrorKind

logger = logging.getLogger("image_optimizer.security")

# Checked in order; the first valid address wins
IP_HEADERS = ("client-ip", "x-forwarded-for", "x-forwarded", "x-cluster-client-ip", "forwarded-for", "forwarded")


def _reject(code: str, message: str, kind: ErrorKind = ErrorKind.SECURITY) -> tuple[None, ConversionError]:
    return None, ConversionError(kind, code, message)


def sanitize_file_path(
    raw: Optional[str],
    base_dir: Path,
    allowed_extensions: Iterable[str] = (),
) -> tuple[Optional[Path], Optional[ConversionError]]:
    """
    Turn a requested path into an absolute path under base_dir.
    Returns (path, None) or (None, error). The file is not required to exist.
    """
    if not raw or not raw.strip():
        return _reject("empty_path", "File path cannot be empty.", ErrorKind.VALIDATION)
    value = unquote(raw.split("?", 1)[0]).replace("\\", "/")
    if "\x00" in value:
        return _reject("invalid_path", "File path contains a null byte.")
    if ".." in value:
        return _reject("invalid_path", "File path contains invalid directory traversal.")

    base = Path(base_dir).resolve()
    candidate = Path(value)
    if not candidate.is_absolute():
        candidate = base / value.lstrip("/")
    candidate = candidate.resolve()
    try:
        candidate.relative_to(base)
    except ValueError:
        return _reject("security_violation", "File path is outside the allowed directory.")

    allowed = {e.lower().lstrip(".") for e in allowed_extensions}
    if allowed:
        ext = candidate.suffix.lower().lstrip(".")
        if ext not in allowed:
            return _reject("invalid_extension", f'File extension "{ext}" is not allowed.')
    return candidate, None


def _valid_ip(value: str) -> Optional[str]:
    value = value.strip()
    if value.lower().startswith("for="):
        value = value[4:].strip('"')
    try:
        return str(ipaddress.ip_address(value))
    except ValueError:
        return None


def client_ip(headers: Mapping[str, str], remote_addr: Optional[str] = None) -> str:
    for name in IP_HEADERS:
        value = headers.get(name)
        if not value:
            continue
        ip = _valid_ip(value.split(",")[0])
        if ip:
            return ip
    if remote_addr:
        ip = _valid_ip(remote_addr)
        if ip:
            return ip
    return "127.0.0.1"


@dataclass
class RateLimitResult:
    allowed: bool
    limit: int
    remaining: int
    retry_after: int = 0


class RateLimiter:
    """Fixed window counter per (client, route). In-process only."""

    def __init__(self, limit: int = 30, period: int = 60, clock: Callable[[], float] = time.time):
        self.limit = limit
        self.period = period
        self.clock = clock
        self._windows: dict[tuple[str, str], list] = {}
        self._lock = threading.Lock()
        self._last_sweep = clock()

    def _sweep(self, now: float) -> None:
        if now - self._last_sweep < self.period:
            return
        self._last_sweep = now
        expired = [k for k, (start, _) in self._windows.items() if now - start > self.period]
        for key in expired:
            del self._windows[key]

    def check(self, client: str, route: str) -> RateLimitResult:
        now = self.clock()
        key = (client, route)
        with self._lock:
            self._sweep(now)
            window = self._windows.get(key)
            if window is None or now - window[0] > self.period:
                window = [now, 0]
                self._windows[key] = window
            window[1] += 1
            count = window[1]
            started = window[0]
        if count > self.limit:
            retry_after = max(1, int(self.period - (now - started)))
            logger.warning("Rate limit exceeded for %s on %s (%d requests)", client, route, count)
            return RateLimitResult(False, self.limit, 0, retry_after)
        return RateLimitResult(True, self.limit, self.limit - count)

    def reset(self) -> None:
        with self._lock:
            self._windows.clear()
