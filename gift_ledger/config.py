"""Ledger configuration and logging setup."""

from __future__ import annotations

import getpass
import logging
import platform
import sys
from functools import lru_cache
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


def _default_machine() -> str:
    return platform.node() or "unknown-machine"


def _default_user() -> str:
    try:
        return getpass.getuser()
    except (KeyError, OSError):
        return "unknown-user"


class LedgerSettings(BaseSettings):
    """Settings for the local workflow ledger."""

    # Storage
    db_path: Path = Path(".data/gift_ledger.db")
    lock_timeout_seconds: float = Field(default=30.0, gt=0)

    # Client identity recorded on workflows, deletions and queue rows
    client_machine: str = Field(default_factory=_default_machine)
    client_user: str = Field(default_factory=_default_user)

    # Outbound queue bookkeeping
    queue_batch_size: int = Field(default=10, ge=1, le=200)
    queue_stale_minutes: int = Field(default=30, ge=1)
    queue_max_attempts: int = Field(default=5, ge=1)

    log_level: str = "INFO"

    model_config = SettingsConfigDict(
        env_prefix="GIFT_LEDGER_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )


@lru_cache
def get_settings() -> LedgerSettings:
    return LedgerSettings()


def configure_logging(level: str | None = None) -> None:
    """Install a single readable stream handler on the package logger."""
    package_logger = logging.getLogger("gift_ledger")
    package_logger.setLevel((level or get_settings().log_level).upper())
    if any(getattr(handler, "_gift_ledger", False) for handler in package_logger.handlers):
        return

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(
        logging.Formatter("%(asctime)s %(levelname)-8s %(name)s: %(message)s")
    )
    handler._gift_ledger = True  # type: ignore[attr-defined]
    package_logger.addHandler(handler)
