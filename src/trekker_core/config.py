"""Settings for the Trekker engine, loaded from environment variables."""
import logging
import sys
from functools import lru_cache
from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


class Settings(BaseSettings):
    """Engine settings.

    Only the store location is expected to vary between installs; the rest
    exist so tests and the CLI can override them explicitly.
    """

    # Store location (single SQLite file)
    database_url: str = "sqlite:///.trekker/trekker.db"

    # Human-readable ID prefixes
    epic_prefix: str = "EPIC"
    task_prefix: str = "TREK"  # shared by tasks and subtasks
    comment_prefix: str = "CMT"

    # Actor recorded in history when the caller does not name one
    default_actor: str = "agent"

    # How long a second writer waits on the file lock before failing
    busy_timeout_ms: int = 5000

    log_level: str = "WARNING"

    model_config = SettingsConfigDict(
        env_prefix="TREKKER_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )


@lru_cache
def get_settings() -> Settings:
    """Return the process-wide settings instance."""
    return Settings()


def configure_logging(level: Optional[str] = None) -> None:
    """Configure root logging for a host process (the CLI).

    Logs go to stderr so they never mix with command output on stdout.
    """
    level_name = (level or get_settings().log_level).upper()
    logging.basicConfig(
        level=getattr(logging, level_name, logging.WARNING),
        format=LOG_FORMAT,
        stream=sys.stderr,
        force=True,
    )
    logging.getLogger("trekker-core").debug(f"Logging configured at {level_name}")
