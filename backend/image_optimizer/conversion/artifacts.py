"""Artifact store: converted-file paths, existence and validation checks, orphan cleanup. Filesystem only."""
import logging
import mimetypes
import os
from pathlib import Path
from typing import Iterable, Optional

from PIL import Image, UnidentifiedImageError

from image_optimizer.config import OUTPUT_FORMATS, SOURCE_EXTENSIONS
from image_optimizer.errors import ConversionError, ErrorKind, file_not_found, permission_denied

logger = logging.getLogger("image_optimizer.artifacts")

_PIL_MIME = {"JPEG": "image/jpeg", "PNG": "image/png", "GIF": "image/gif", "WEBP": "image/webp", "AVIF": "image/avif"}


def converted_path(original: Path, fmt: str) -> Path:
    """Same directory, same base name, the format's extension."""
    fmt = fmt.lower()
    if fmt not in OUTPUT_FORMATS:
        raise ValueError(f"Invalid format: {fmt}. Allowed formats: {', '.join(OUTPUT_FORMATS)}")
    return Path(original).with_suffix(f".{fmt}")


def mime_from_extension(path: Path) -> Optional[str]:
    ext = path.suffix.lower()
    if ext == ".avif":
        return "image/avif"
    if ext == ".webp":
        return "image/webp"
    return mimetypes.types_map.get(ext)


class ArtifactStore:
    def __init__(
        self,
        media_root: Path,
        max_file_size: int = 10 * 1024 * 1024,
        allowed_mime_types: Iterable[str] = ("image/jpeg", "image/png", "image/gif"),
    ):
        self.media_root = Path(media_root).resolve()
        self.max_file_size = max_file_size
        self.allowed_mime_types = frozenset(allowed_mime_types)

    def converted_path(self, original: Path, fmt: str) -> Path:
        return converted_path(original, fmt)

    def exists(self, original: Path, fmt: str) -> bool:
        return self.converted_path(original, fmt).is_file()

    def is_within_root(self, path: Path) -> bool:
        try:
            Path(path).resolve().relative_to(self.media_root)
            return True
        except ValueError:
            return False

    @staticmethod
    def file_info(path: Path) -> Optional[dict]:
        try:
            st = Path(path).stat()
        except OSError:
            return None
        return {
            "path": str(path),
            "size": st.st_size,
            "modified_time": int(st.st_mtime),
            "mime_type": mime_from_extension(Path(path)),
        }

    def check_readable(self, path: Path) -> Optional[ConversionError]:
        path = Path(path)
        if not path.is_file():
            return file_not_found(path)
        if not os.access(path, os.R_OK):
            return permission_denied(f"File is not readable: {path}")
        return None

    def validate_size(self, path: Path) -> Optional[ConversionError]:
        try:
            size = Path(path).stat().st_size
        except OSError:
            return file_not_found(path)
        if size > self.max_file_size:
            return ConversionError(
                ErrorKind.VALIDATION,
                "file_too_large",
                f"File size ({size} bytes) exceeds maximum allowed size ({self.max_file_size} bytes).",
            )
        return None

    def validate_mime(self, path: Path) -> Optional[ConversionError]:
        """Extension-derived type must be allowed and the content must agree with it."""
        path = Path(path)
        ext_mime = mime_from_extension(path)
        if ext_mime is None:
            return ConversionError(ErrorKind.VALIDATION, "invalid_file_type", f"Could not determine MIME type for file: {path.name}")
        if ext_mime not in self.allowed_mime_types:
            return ConversionError(
                ErrorKind.SECURITY,
                "unsupported_mime_type",
                f"Unsupported MIME type: {ext_mime}. Allowed types: {', '.join(sorted(self.allowed_mime_types))}",
            )
        try:
            with Image.open(path) as img:
                content_mime = _PIL_MIME.get(img.format or "")
        except (UnidentifiedImageError, OSError):
            content_mime = None
        if content_mime != ext_mime:
            return ConversionError(
                ErrorKind.VALIDATION,
                "invalid_file_type",
                f"File content does not match its extension: {path.name}",
            )
        return None

    def validate_original(self, path: Path) -> Optional[ConversionError]:
        return self.check_readable(path) or self.validate_size(path) or self.validate_mime(path)

    @staticmethod
    def validate_write_permissions(dst: Path) -> Optional[ConversionError]:
        dst = Path(dst)
        directory = dst.parent
        if not directory.is_dir():
            return ConversionError(ErrorKind.NOT_FOUND, "directory_not_found", f"Directory does not exist: {directory}")
        if not os.access(directory, os.W_OK):
            return permission_denied(f"Directory is not writable: {directory}")
        if dst.exists() and not os.access(dst, os.W_OK):
            return permission_denied(f"File is not writable: {dst}")
        return None

    def delete_file(self, path: Path) -> bool:
        path = Path(path)
        if not path.exists():
            return True
        if not self.is_within_root(path):
            logger.warning("Refusing to delete file outside media root: %s", path)
            return False
        try:
            path.unlink()
            return True
        except OSError as e:
            logger.warning("Could not remove %s: %s", path, e)
            return False

    def cleanup_converted(self, original: Path, dry_run: bool = False) -> list[Path]:
        """Remove every artifact derived from original."""
        deleted = []
        for fmt in OUTPUT_FORMATS:
            target = self.converted_path(original, fmt)
            if target.is_file() and (dry_run or self.delete_file(target)):
                deleted.append(target)
        return deleted

    @staticmethod
    def original_for_artifact(artifact: Path) -> Optional[Path]:
        """Any existing source file with the artifact's base name, or None."""
        artifact = Path(artifact)
        for ext in sorted(SOURCE_EXTENSIONS):
            for candidate in (artifact.with_suffix(ext), artifact.with_suffix(ext.upper())):
                if candidate.is_file():
                    return candidate
        return None

    def find_orphans(self, artifacts: Iterable[Path]) -> list[Path]:
        """
        The given artifacts that still exist but whose original is gone. Only paths this system
        produced should be passed in; a standalone .webp/.avif upload is never an orphan.
        """
        orphans = set()
        for artifact in artifacts:
            artifact = Path(artifact)
            if artifact.suffix.lower().lstrip(".") not in OUTPUT_FORMATS:
                continue
            if artifact.is_file() and self.is_within_root(artifact) and self.original_for_artifact(artifact) is None:
                orphans.add(artifact)
        return sorted(orphans)

    def cleanup_orphans(self, artifacts: Iterable[Path]) -> tuple[list[Path], list[str]]:
        deleted, errors = [], []
        for orphan in self.find_orphans(artifacts):
            if self.delete_file(orphan):
                deleted.append(orphan)
            else:
                errors.append(f"Failed to delete orphaned file: {orphan}")
        if deleted:
            logger.info("Deleted %d orphaned artifacts", len(deleted))
        return deleted, errors
