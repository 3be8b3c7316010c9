"""Converter capability: the pixel codecs behind one interface, picked once by priority and availability."""
import logging
import os
import shutil
import subprocess
import threading
import uuid
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Optional

from PIL import Image, features

logger = logging.getLogger("image_optimizer.converters")

DEFAULT_TIMEOUT = 120.0


def temp_output_path(dst: Path) -> Path:
    """Sibling temp file; the final rename makes concurrent writers of the same target harmless."""
    return dst.with_name(f"image-optimizer-temp-{uuid.uuid4().hex[:12]}-{dst.name}.tmp")


class Converter(ABC):
    """Given a source path, target format and quality, produce the destination file or fail."""

    name: str = "base"
    priority: int = 100  # lower = preferred

    @abstractmethod
    def is_available(self) -> bool:
        ...

    @abstractmethod
    def supported_formats(self) -> set[str]:
        ...

    @abstractmethod
    def convert(self, src: Path, dst: Path, fmt: str, quality: int) -> bool:
        ...

    def info(self) -> dict:
        return {
            "name": self.name,
            "priority": self.priority,
            "supported_formats": sorted(self.supported_formats()),
            "is_available": self.is_available(),
        }


class PillowConverter(Converter):
    name = "pillow"
    priority = 10

    def is_available(self) -> bool:
        return bool(self.supported_formats())

    def supported_formats(self) -> set[str]:
        formats = set()
        if features.check("webp"):
            formats.add("webp")
        # Native AVIF (Pillow >= 11.2) or the pillow-avif-plugin both register the extension
        if ".avif" in Image.registered_extensions():
            formats.add("avif")
        return formats

    def convert(self, src: Path, dst: Path, fmt: str, quality: int) -> bool:
        fmt = fmt.lower()
        if fmt not in self.supported_formats():
            return False
        tmp = temp_output_path(dst)
        try:
            with Image.open(src) as img:
                if img.mode == "P" and "transparency" in img.info:
                    work = img.convert("RGBA")
                elif img.mode not in ("RGB", "RGBA"):
                    work = img.convert("RGB")
                else:
                    work = img
                if fmt == "webp":
                    save_kw = {"format": "WEBP", "quality": quality, "method": 6}
                else:
                    save_kw = {"format": "AVIF", "quality": quality}
                work.save(str(tmp), **save_kw)
            os.replace(tmp, dst)
            logger.info("Converted %s -> %s", src.name, dst.name)
            return True
        finally:
            tmp.unlink(missing_ok=True)


class CwebpConverter(Converter):
    """Wrapper for the cwebp command-line tool (WebP only, JPEG/PNG sources)."""

    name = "cwebp"
    priority = 20
    SOURCE_SUFFIXES = {".jpg", ".jpeg", ".png"}

    def __init__(self, binary: str = "cwebp", timeout: float = DEFAULT_TIMEOUT):
        self.binary = binary
        self.timeout = timeout

    def is_available(self) -> bool:
        return shutil.which(self.binary) is not None

    def supported_formats(self) -> set[str]:
        return {"webp"} if self.is_available() else set()

    def run(self, args: list[str]) -> tuple[int, str]:
        try:
            result = subprocess.run(
                args,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                check=False,
                timeout=self.timeout,
            )
            return result.returncode, result.stderr
        except subprocess.TimeoutExpired:
            return 124, f"TimeoutExpired after {self.timeout}s"
        except FileNotFoundError:
            return 127, "cwebp not found. Install webp package."

    def convert(self, src: Path, dst: Path, fmt: str, quality: int) -> bool:
        if fmt.lower() != "webp":
            return False
        if src.suffix.lower() not in self.SOURCE_SUFFIXES:
            logger.warning("cwebp cannot read %s sources: %s", src.suffix, src.name)
            return False
        tmp = temp_output_path(dst)
        try:
            cmd = [self.binary, "-quiet", "-mt", "-q", str(quality), str(src), "-o", str(tmp)]
            returncode, stderr = self.run(cmd)
            if returncode != 0:
                logger.warning("cwebp failed (rc=%s) for %s: %s", returncode, src.name, stderr.strip())
                return False
            os.replace(tmp, dst)
            return True
        finally:
            tmp.unlink(missing_ok=True)


class ConverterFactory:
    """Closed registry of converter variants. The selection is cached until clear_cache()."""

    def __init__(self, converters: Optional[list[Converter]] = None):
        self._converters = converters if converters is not None else [PillowConverter(), CwebpConverter()]
        self._lock = threading.Lock()
        self._selected: Optional[Converter] = None
        self._probed = False
        self._capabilities: Optional[dict] = None

    def available_converters(self) -> list[Converter]:
        available = []
        for converter in self._converters:
            try:
                if converter.is_available():
                    available.append(converter)
            except Exception as e:
                logger.warning("Availability probe failed for %s: %s", converter.name, e)
        return sorted(available, key=lambda c: c.priority)

    def get_converter(self) -> Optional[Converter]:
        with self._lock:
            if not self._probed:
                available = self.available_converters()
                self._selected = available[0] if available else None
                self._probed = True
                if self._selected is None:
                    logger.warning("No image converter available")
                else:
                    logger.info("Selected converter %s", self._selected.name)
            return self._selected

    def get_converter_by_name(self, name: str) -> Optional[Converter]:
        for converter in self.available_converters():
            if converter.name == name:
                return converter
        return None

    def has_available_converter(self) -> bool:
        return self.get_converter() is not None

    def server_capabilities(self) -> dict:
        with self._lock:
            if self._capabilities is None:
                available = self.available_converters()
                formats = set()
                for c in available:
                    formats |= c.supported_formats()
                self._capabilities = {
                    "converters": [c.name for c in available],
                    "webp_support": "webp" in formats,
                    "avif_support": "avif" in formats,
                }
            return dict(self._capabilities)

    def clear_cache(self) -> None:
        with self._lock:
            self._selected = None
            self._probed = False
            self._capabilities = None


_factory: Optional[ConverterFactory] = None


def get_converter_factory() -> ConverterFactory:
    global _factory
    if _factory is None:
        _factory = ConverterFactory()
    return _factory
