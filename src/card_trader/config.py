"""Configuration helpers for the bot and the trade services."""
from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Optional

from dotenv import load_dotenv


@dataclass
class Settings:
    """Runtime settings loaded from the environment."""

    discord_token: str = ""
    database_path: str = "data/trader.db"
    proposal_ttl_hours: int = 72
    agreement_ttl_hours: int = 168
    trust_queue_limit: int = 1000
    trust_batch_size: int = 5
    trust_worker_minutes: int = 5
    x_bearer_token: Optional[str] = None
    log_level: str = "INFO"


def _int_env(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        value = int(raw)
    except ValueError as exc:
        raise RuntimeError(f"{name} must be an integer, got {raw!r}") from exc
    if value <= 0:
        raise RuntimeError(f"{name} must be positive, got {value}")
    return value


def load_settings(require_token: bool = True) -> Settings:
    """Load settings from environment variables.

    The function will read a local `.env` file when present. The Discord token
    is only mandatory when the bot itself is being started.
    """

    load_dotenv()
    token = os.getenv("DISCORD_TOKEN", "")
    if require_token and not token:
        raise RuntimeError("DISCORD_TOKEN is required to run the bot")

    return Settings(
        discord_token=token,
        database_path=os.getenv("TRADER_DB_PATH", "data/trader.db"),
        proposal_ttl_hours=_int_env("PROPOSAL_TTL_HOURS", 72),
        agreement_ttl_hours=_int_env("AGREEMENT_TTL_HOURS", 168),
        trust_queue_limit=_int_env("TRUST_QUEUE_LIMIT", 1000),
        trust_batch_size=_int_env("TRUST_BATCH_SIZE", 5),
        trust_worker_minutes=_int_env("TRUST_WORKER_MINUTES", 5),
        x_bearer_token=os.getenv("X_BEARER_TOKEN") or None,
        log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
    )
