from __future__ import annotations

import os
from pathlib import Path
from typing import List


class Settings:
    """Centralized configuration for the meal analysis job engine."""

    def __init__(self) -> None:
        base_dir = Path(__file__).resolve().parent
        repo_root = base_dir.parent
        data_root_default = repo_root / "data"

        self.data_root: Path = Path(
            os.environ.get("NUTRILOG_DATA_ROOT") or data_root_default
        ).expanduser()
        self.db_path: Path = Path(
            os.environ.get("NUTRILOG_DB_PATH") or (self.data_root / "jobs.db")
        ).expanduser()
        self.photos_dir: Path = Path(
            os.environ.get("NUTRILOG_PHOTOS_DIR") or (self.data_root / "photos")
        ).expanduser()
        self.entries_dir: Path = Path(
            os.environ.get("NUTRILOG_ENTRIES_DIR") or (self.data_root / "entries")
        ).expanduser()

        # ---- Job engine ----
        self.max_attempts: int = int(os.environ.get("NUTRILOG_MAX_ATTEMPTS") or "4")
        self.initial_delay: float = float(os.environ.get("NUTRILOG_INITIAL_DELAY") or "1.0")
        self.backoff_multiplier: float = float(
            os.environ.get("NUTRILOG_BACKOFF_MULTIPLIER") or "2.0"
        )
        self.attempt_timeout: float = float(os.environ.get("NUTRILOG_ATTEMPT_TIMEOUT") or "60")
        self.worker_concurrency: int = int(os.environ.get("NUTRILOG_WORKER_CONCURRENCY") or "2")
        self.poll_interval: float = float(os.environ.get("NUTRILOG_POLL_INTERVAL") or "30")
        self.photo_max_age_hours: float = float(
            os.environ.get("NUTRILOG_PHOTO_MAX_AGE_HOURS") or "24"
        )
        # 0 disables the periodic sweep.
        self.photo_cleanup_interval_hours: float = float(
            os.environ.get("NUTRILOG_PHOTO_CLEANUP_INTERVAL_HOURS") or "24"
        )
        self.max_image_bytes: int = int(os.environ.get("NUTRILOG_MAX_IMAGE_BYTES") or "1500000")

        # ---- Vision model (OpenCode session API) ----
        self.opencode_base_url: str = os.environ.get(
            "OPENCODE_BASE_URL", "http://127.0.0.1:4096"
        )
        self.opencode_directory: Path = Path(
            os.environ.get("OPENCODE_DIRECTORY", repo_root)
        ).expanduser()
        self.vision_timeout: float = float(os.environ.get("DIET_VISION_TIMEOUT") or "30")
        # Empty means "probe the vision endpoint".
        self.network_probe_url: str = (os.environ.get("NUTRILOG_NETWORK_PROBE_URL") or "").strip()

        cors = os.environ.get("NUTRILOG_CORS_ORIGINS", "*")
        if cors.strip() == "*":
            self.cors_origins: List[str] = ["*"]
        else:
            self.cors_origins = [
                origin.strip() for origin in cors.split(",") if origin.strip()
            ]


settings = Settings()
