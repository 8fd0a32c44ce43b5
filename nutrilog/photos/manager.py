# -*- coding: utf-8 -*-
"""Photos — temporary meal photo files (the job artifacts)."""

from __future__ import annotations

import logging
import re
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterable, Optional
from uuid import uuid4

logger = logging.getLogger(__name__)

_ALLOWED_SUFFIXES = {".jpg", ".jpeg", ".png", ".heic"}


@dataclass
class CleanupReport:
    deleted_count: int = 0
    deleted_bytes: int = 0
    retained_count: int = 0
    skipped_count: int = 0
    error_count: int = 0
    remaining_bytes: int = 0


def _safe_suffix(suffix: str) -> str:
    s = (suffix or "").lower()
    if not s.startswith("."):
        s = f".{s}"
    if s not in _ALLOWED_SUFFIXES or not re.fullmatch(r"\.[a-z0-9]+", s):
        return ".jpg"
    return s


class PhotoManager:
    """Owns the photo directory; artifact refs are file names inside it."""

    def __init__(self, root: Path) -> None:
        self.root = root

    def _ensure_dir(self) -> None:
        self.root.mkdir(parents=True, exist_ok=True)

    def resolve(self, artifact_ref: str) -> Path:
        """Map an artifact ref to a path inside the photo directory.

        Raises ValueError for refs that would escape the directory.
        """
        ref = (artifact_ref or "").strip()
        if not ref:
            raise ValueError("Empty artifact reference")
        candidate = Path(ref)
        if not candidate.is_absolute():
            candidate = self.root / candidate
        resolved = candidate.resolve()
        if self.root.resolve() not in resolved.parents:
            raise ValueError(f"Artifact reference outside photo directory: {artifact_ref}")
        return resolved

    def exists(self, artifact_ref: str) -> bool:
        try:
            return self.resolve(artifact_ref).is_file()
        except ValueError:
            return False

    def save_photo(self, image_bytes: bytes, *, suffix: str = ".jpg") -> str:
        """Write captured bytes to a new `meal_<timestamp>_<id>` file and return its ref."""
        self._ensure_dir()
        stamp = datetime.now(timezone.utc).strftime("%Y%m%d_%H%M%S")
        name = f"meal_{stamp}_{uuid4().hex[:8]}{_safe_suffix(suffix)}"
        (self.root / name).write_bytes(image_bytes)
        logger.debug("Created photo file: %s (%d bytes)", name, len(image_bytes))
        return name

    def delete(self, artifact_ref: str) -> bool:
        """Delete the artifact. Returns False (and does nothing) if it is already gone."""
        try:
            path = self.resolve(artifact_ref)
        except ValueError as exc:
            logger.warning("Refusing to delete %r: %s", artifact_ref, exc)
            return False
        try:
            path.unlink()
        except FileNotFoundError:
            logger.warning("Photo already deleted: %s", artifact_ref)
            return False
        logger.debug("Photo deleted: %s", artifact_ref)
        return True

    def cleanup_stale(
        self,
        *,
        max_age_seconds: float,
        keep: Iterable[str] = (),
        now: Optional[float] = None,
    ) -> CleanupReport:
        """Delete photos older than `max_age_seconds`, except those named in `keep`.

        Individual failures are counted and logged; the sweep always completes.
        """
        report = CleanupReport()
        if not self.root.exists():
            logger.debug("Photo directory does not exist, nothing to clean up")
            return report

        now = time.time() if now is None else now
        protected = set()
        for ref in keep:
            try:
                protected.add(self.resolve(ref))
            except ValueError:
                continue

        for fp in sorted(self.root.iterdir()):
            if not fp.is_file():
                continue
            try:
                if fp.resolve() in protected:
                    report.skipped_count += 1
                    continue
                stat = fp.stat()
                age = now - stat.st_mtime
                if age > max_age_seconds:
                    fp.unlink()
                    report.deleted_count += 1
                    report.deleted_bytes += stat.st_size
                    logger.debug("Deleted stale photo %s (age %.1fh)", fp.name, age / 3600)
                else:
                    report.retained_count += 1
            except OSError as exc:
                report.error_count += 1
                logger.warning("Error cleaning up photo %s: %s", fp.name, exc)

        report.remaining_bytes = sum(p.stat().st_size for p in self.root.iterdir() if p.is_file())
        logger.info(
            "Photo cleanup complete: deleted %d files (%.2fMB), retained %d, skipped %d, errors %d",
            report.deleted_count,
            report.deleted_bytes / (1024 * 1024),
            report.retained_count,
            report.skipped_count,
            report.error_count,
        )
        return report
