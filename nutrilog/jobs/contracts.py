# -*- coding: utf-8 -*-
"""Jobs — collaborator interfaces consumed by the worker executor."""

from __future__ import annotations

from datetime import datetime
from typing import Protocol

from ..diet.models import NutritionRecord


class AnalysisService(Protocol):
    """Turns a stored photo into a nutrition record."""

    async def analyze(self, artifact_ref: str) -> NutritionRecord:
        """Raise an `AnalysisError` subclass (or a transport error) on failure."""
        ...


class StorageService(Protocol):
    """Writes a nutrition record to the health-data store."""

    async def save(self, record: NutritionRecord, timestamp: datetime) -> str:
        """Return the stored record id; raise `StoragePermissionDenied` or `StorageError`."""
        ...


class FileManager(Protocol):
    """Resolves and deletes job artifacts."""

    def exists(self, artifact_ref: str) -> bool:
        ...

    def delete(self, artifact_ref: str) -> bool:
        """Idempotent: returns False when the artifact is already absent."""
        ...
