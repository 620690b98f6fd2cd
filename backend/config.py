import logging
from pathlib import Path
from typing import Optional

from pydantic import field_validator
from pydantic_settings import BaseSettings

# Get the directory where this config file is located.
_BACKEND_DIR = Path(__file__).parent.resolve()


def _detect_project_root(backend_dir: Path) -> Path:
    """Resolve project root from the backend directory in the repo layout."""
    return backend_dir.parent.resolve()


_PROJECT_ROOT = _detect_project_root(_BACKEND_DIR)
_DEFAULT_DB_PATH = (_PROJECT_ROOT / "data" / "position_tracker.db").resolve()
_SQLITE_ASYNC_PREFIX = "sqlite+aiosqlite:///"
_SQLITE_SYNC_PREFIX = "sqlite:///"
_LOGGER = logging.getLogger(__name__)


class Settings(BaseSettings):
    # Upstream (zkLighter mainnet REST)
    POSITIONS_API_URL: str = "https://mainnet.zklighter.elliot.ai/api/v1"
    MARK_PRICE_RESOLUTION: str = "1m"

    # Poller
    CHECK_INTERVAL_SECONDS: float = 15.0
    MAINTENANCE_INTERVAL_SECONDS: float = 3600.0

    # Resilient fetch client
    MAX_CONCURRENT_REQUESTS: int = 10
    REQUEST_TIMEOUT_SECONDS: float = 10.0
    RETRY_ATTEMPTS: int = 3  # retries after the first attempt
    RETRY_DELAY_SECONDS: float = 2.0  # fixed, not exponential
    CACHE_TTL_SECONDS: float = 30.0

    # Caller limits
    RATE_LIMIT_PER_MINUTE: int = 30
    RATE_LIMIT_WINDOW_SECONDS: float = 60.0
    MAX_ADDRESSES_PER_OWNER: int = 5
    PRIVILEGED_OWNERS: list[str] = []  # JSON list in env; unlimited rate and address count

    # Analytics retention
    HISTORY_LIMIT: int = 1000  # per history, oldest evicted first
    HISTORY_RETENTION_DAYS: int = 30
    LEDGER_RETENTION_HOURS: int = 24
    LEDGER_MAX_MARKERS_PER_SYMBOL: int = 500

    # Database - canonical path under project-root data directory
    DATABASE_URL: str = f"sqlite+aiosqlite:///{_DEFAULT_DB_PATH}"

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_JSON: bool = True
    LOG_FILE: Optional[str] = None

    @field_validator("POSITIONS_API_URL", mode="before")
    @classmethod
    def _normalize_url_field(cls, value: object) -> object:
        """Trim accidental quotes/whitespace from URL env vars."""
        if value is None:
            return value
        text = str(value).strip().strip('"').strip("'")
        if not text:
            return text
        return text.rstrip("/")

    @field_validator("DATABASE_URL", mode="before")
    @classmethod
    def _normalize_database_url(cls, value: object) -> object:
        """Normalize DB URL so worker cwd changes never split databases."""
        if value is None:
            return value

        text = str(value).strip().strip('"').strip("'")
        if not text:
            return text

        # Convert relative SQLite paths to absolute project-root paths.
        for prefix in (_SQLITE_ASYNC_PREFIX, _SQLITE_SYNC_PREFIX):
            if not text.startswith(prefix):
                continue
            path_part = text[len(prefix) :]
            if not path_part:
                return text
            if path_part in {":memory:", "/:memory:"}:
                return f"{prefix}:memory:"
            absolute = Path(path_part).resolve() if path_part.startswith("/") else (_PROJECT_ROOT / path_part).resolve()
            return f"{prefix}{absolute}"

        return text

    class Config:
        # Load project-root .env first (common workflow), then backend/.env
        # as an override if present.
        env_file = (
            str(_PROJECT_ROOT / ".env"),
            str(_BACKEND_DIR / ".env"),
        )
        env_file_encoding = "utf-8"


settings = Settings()


def ensure_data_dir() -> None:
    """Create the parent directory of a file-backed SQLite database."""
    for prefix in (_SQLITE_ASYNC_PREFIX, _SQLITE_SYNC_PREFIX):
        if not settings.DATABASE_URL.startswith(prefix):
            continue
        path_part = settings.DATABASE_URL[len(prefix) :]
        if not path_part or path_part == ":memory:":
            return
        try:
            Path(path_part).parent.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            _LOGGER.warning(
                "Failed to create database directory",
                extra={"path": path_part, "error": str(exc)},
            )
        return
