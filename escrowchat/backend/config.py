"""Configuration helpers for backend runtime and the pricing rate table."""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Any, Mapping


@dataclass(frozen=True)
class BackendSettings:
    database_url: str | None
    host: str
    port: int
    log_level: str
    log_json: bool
    abuse_window_seconds: float
    abuse_max_repeats: int
    paid_inactivity_hours: float
    total_inactivity_hours: float
    sweep_interval_seconds: float
    lock_timeout_seconds: float
    lock_retries: int
    seed_file: str | None = None


@dataclass(frozen=True)
class RateTable:
    """Externally supplied pricing policy enforced by the engine."""

    words_per_token_standard: int = 11
    words_per_token_royal: int = 7
    free_messages_standard: int = 10
    free_messages_royal: int = 6
    base_price: int = 100
    min_price: int = 100
    max_price: int = 500
    creator_percent: int = 65
    platform_percent: int = 35

    def __post_init__(self) -> None:
        if self.creator_percent + self.platform_percent != 100:
            raise ValueError("creator_percent and platform_percent must sum to 100")
        if self.words_per_token_standard < 1 or self.words_per_token_royal < 1:
            raise ValueError("words per token must be at least 1")
        if self.min_price > self.max_price:
            raise ValueError("min_price must not exceed max_price")

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> RateTable:
        known = {name: int(data[name]) for name in cls.__dataclass_fields__ if name in data}
        return cls(**known)

    def clamp_price(self, price: int) -> int:
        return min(max(price, self.min_price), self.max_price)


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in {"1", "true", "yes", "on"}


def load_settings() -> BackendSettings:
    port_raw = os.getenv("ESCROWCHAT_PORT", "8000")
    return BackendSettings(
        database_url=os.getenv("ESCROWCHAT_DATABASE_URL"),
        host=os.getenv("ESCROWCHAT_HOST", "127.0.0.1"),
        port=int(port_raw),
        log_level=os.getenv("ESCROWCHAT_LOG_LEVEL", "INFO").upper(),
        log_json=_env_bool("ESCROWCHAT_LOG_JSON", "false"),
        abuse_window_seconds=float(os.getenv("ESCROWCHAT_ABUSE_WINDOW_SECONDS", "60")),
        abuse_max_repeats=int(os.getenv("ESCROWCHAT_ABUSE_MAX_REPEATS", "2")),
        paid_inactivity_hours=float(os.getenv("ESCROWCHAT_PAID_INACTIVITY_HOURS", "48")),
        total_inactivity_hours=float(os.getenv("ESCROWCHAT_TOTAL_INACTIVITY_HOURS", "72")),
        sweep_interval_seconds=float(os.getenv("ESCROWCHAT_SWEEP_INTERVAL_SECONDS", "3600")),
        lock_timeout_seconds=float(os.getenv("ESCROWCHAT_LOCK_TIMEOUT_SECONDS", "0.5")),
        lock_retries=int(os.getenv("ESCROWCHAT_LOCK_RETRIES", "3")),
        seed_file=os.getenv("ESCROWCHAT_SEED_FILE") or None,
    )
