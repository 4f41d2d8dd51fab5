"""Configuration helpers for the download catalog."""
from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

PROJECT_ROOT = Path(__file__).resolve().parents[1]
ENV_PATH = PROJECT_ROOT / ".env"

# Load environment variables early so downstream modules can rely on them.
load_dotenv(ENV_PATH, override=False)

CATALOG_DB_ENV = "CATALOG_DB_PATH"
CATALOG_RETRIES_ENV = "CATALOG_DB_RETRIES"

DEFAULT_CATALOG_DB = PROJECT_ROOT / "data" / "catalog.db"
DEFAULT_MAX_ATTEMPTS = 3

# Sentinel dropped inside a download root by the downloader once it owns it.
MARKER_FILE_NAME = ".user"


@dataclass(frozen=True)
class CatalogSettings:
    """Runtime configuration for the SQLite catalog."""

    path: Path
    max_attempts: int

    @property
    def url(self) -> str:
        return f"sqlite:///{self.path}"


def _get_env(name: str, default: Optional[str] = None) -> Optional[str]:
    value = os.getenv(name)
    if value is None or value == "":
        return default
    return value


def get_catalog_settings() -> CatalogSettings:
    """Resolve catalog configuration from environment with sensible defaults."""

    raw_path = _get_env(CATALOG_DB_ENV, str(DEFAULT_CATALOG_DB))
    db_path = Path(raw_path).expanduser().resolve()
    raw_attempts = _get_env(CATALOG_RETRIES_ENV)
    try:
        max_attempts = int(raw_attempts) if raw_attempts is not None else DEFAULT_MAX_ATTEMPTS
    except ValueError as exc:
        raise RuntimeError(
            f"CATALOG_DB_RETRIES must be an integer; received '{raw_attempts}'."
        ) from exc
    if max_attempts < 1:
        raise RuntimeError(
            f"CATALOG_DB_RETRIES must be at least 1; received '{raw_attempts}'."
        )
    return CatalogSettings(path=db_path, max_attempts=max_attempts)
