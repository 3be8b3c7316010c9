"""Media library: enumerates convertible originals under the media root. Subject id = POSIX path relative to the root."""
import logging
from pathlib import Path
from typing import Iterator, Optional

from image_optimizer.config import SOURCE_EXTENSIONS

logger = logging.getLogger("image_optimizer.media")


class MediaLibrary:
    def __init__(self, root: Path):
        self.root = Path(root).resolve()

    @staticmethod
    def is_convertible(path: Path) -> bool:
        return Path(path).suffix.lower() in SOURCE_EXTENSIONS

    def subject_id(self, path: Path) -> str:
        return Path(path).resolve().relative_to(self.root).as_posix()

    def resolve(self, subject_id: str) -> Optional[Path]:
        """Absolute path for a subject, or None if it escapes the root or does not exist."""
        if not subject_id or "\x00" in subject_id:
            return None
        candidate = (self.root / subject_id.lstrip("/")).resolve()
        try:
            candidate.relative_to(self.root)
        except ValueError:
            logger.warning("Subject outside media root: %s", subject_id)
            return None
        return candidate if candidate.is_file() else None

    def iter_originals(self) -> Iterator[Path]:
        if not self.root.is_dir():
            return
        for path in sorted(self.root.rglob("*")):
            if path.is_file() and self.is_convertible(path) and not path.name.startswith("image-optimizer-temp-"):
                yield path

    def list_subjects(self, limit: int = 0, offset: int = 0) -> list[str]:
        """Eligible subject ids in stable order; limit 0 means no limit."""
        subjects = [self.subject_id(p) for p in self.iter_originals()]
        subjects = subjects[max(0, offset):]
        if limit > 0:
            subjects = subjects[:limit]
        return subjects

    def file_size(self, subject_id: str) -> Optional[int]:
        path = self.resolve(subject_id)
        if path is None:
            return None
        try:
            return path.stat().st_size
        except OSError:
            return None
