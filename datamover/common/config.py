from __future__ import annotations

import os
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path

ENV_FILE = Path(".env")

# Upper bound for any single store request.
DEFAULT_READ_TIMEOUT_SECONDS = 50 * 60
DEFAULT_RANGE_CHUNK_SIZE = 4 * 1024 * 1024
ADDRESSING_STYLES = ("auto", "path", "virtual")
LOG_FORMATS = ("json", "plain")


def _load_env_file() -> None:
    if not ENV_FILE.exists():
        return
    for raw_line in ENV_FILE.read_text(encoding="utf-8").splitlines():
        line = raw_line.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, value = line.split("=", 1)
        key = key.strip()
        value = value.strip().strip('"').strip("'")
        if key and key not in os.environ:
            os.environ[key] = value


def _as_bool(value: str | None, default: bool) -> bool:
    if value is None:
        return default
    return value.lower() in {"1", "true", "t", "yes", "y", "on"}


def _as_int(value: str | None, default: int) -> int:
    if value is None or not value.strip():
        return default
    return int(value)


@dataclass
class Settings:
    S3_REGION: str = "us-east-1"
    S3_ADDRESSING_STYLE: str = "path"
    S3_USE_SSL: bool = True
    STORE_CONNECT_TIMEOUT: int = 10
    STORE_READ_TIMEOUT: int = DEFAULT_READ_TIMEOUT_SECONDS
    STORE_MAX_ATTEMPTS: int = 3
    RANGE_CHUNK_SIZE: int = DEFAULT_RANGE_CHUNK_SIZE
    STAGING_PREFIX: str = ".datamover-blocks/"
    SORT_BLOCKS_ON_COMMIT: bool = False
    LOG_LEVEL: str = "INFO"
    LOG_FORMAT: str = "json"

    def __post_init__(self) -> None:
        self.S3_ADDRESSING_STYLE = (self.S3_ADDRESSING_STYLE or "path").strip().lower()
        if self.S3_ADDRESSING_STYLE not in ADDRESSING_STYLES:
            raise ValueError(
                f"S3_ADDRESSING_STYLE must be one of {', '.join(ADDRESSING_STYLES)}."
            )
        if self.STORE_CONNECT_TIMEOUT <= 0 or self.STORE_READ_TIMEOUT <= 0:
            raise ValueError("Store timeouts must be positive (seconds).")
        if self.STORE_MAX_ATTEMPTS < 1:
            raise ValueError("STORE_MAX_ATTEMPTS must be at least 1.")
        if self.RANGE_CHUNK_SIZE <= 0:
            raise ValueError("RANGE_CHUNK_SIZE must be positive.")
        if not self.STAGING_PREFIX or not self.STAGING_PREFIX.endswith("/"):
            raise ValueError("STAGING_PREFIX must be a non-empty prefix ending in '/'.")
        self.LOG_FORMAT = self.LOG_FORMAT.strip().lower()
        if self.LOG_FORMAT not in LOG_FORMATS:
            raise ValueError(f"LOG_FORMAT must be one of {', '.join(LOG_FORMATS)}.")

    @classmethod
    def from_environment(cls) -> "Settings":
        _load_env_file()
        return cls(
            S3_REGION=os.environ.get("S3_REGION", cls.S3_REGION),
            S3_ADDRESSING_STYLE=os.environ.get(
                "S3_ADDRESSING_STYLE", cls.S3_ADDRESSING_STYLE
            ),
            S3_USE_SSL=_as_bool(os.environ.get("S3_USE_SSL"), cls.S3_USE_SSL),
            STORE_CONNECT_TIMEOUT=_as_int(
                os.environ.get("STORE_CONNECT_TIMEOUT"), cls.STORE_CONNECT_TIMEOUT
            ),
            STORE_READ_TIMEOUT=_as_int(
                os.environ.get("STORE_READ_TIMEOUT"), cls.STORE_READ_TIMEOUT
            ),
            STORE_MAX_ATTEMPTS=_as_int(
                os.environ.get("STORE_MAX_ATTEMPTS"), cls.STORE_MAX_ATTEMPTS
            ),
            RANGE_CHUNK_SIZE=_as_int(
                os.environ.get("RANGE_CHUNK_SIZE"), cls.RANGE_CHUNK_SIZE
            ),
            STAGING_PREFIX=os.environ.get("STAGING_PREFIX", cls.STAGING_PREFIX),
            SORT_BLOCKS_ON_COMMIT=_as_bool(
                os.environ.get("SORT_BLOCKS_ON_COMMIT"), cls.SORT_BLOCKS_ON_COMMIT
            ),
            LOG_LEVEL=os.environ.get("LOG_LEVEL", cls.LOG_LEVEL).upper(),
            LOG_FORMAT=os.environ.get("LOG_FORMAT", cls.LOG_FORMAT),
        )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings.from_environment()
