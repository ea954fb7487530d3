"""Narrow contracts for out-of-scope services plus in-memory stand-ins."""

from __future__ import annotations

import json
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping, Protocol

import structlog

from escrowchat.backend.errors import InvalidProfileError
from escrowchat.backend.models import Profile
from escrowchat.backend.roles import profile_from_mapping

logger = structlog.get_logger(__name__)


class ProfileService(Protocol):
    def get_profile(self, user_id: str) -> Profile:
        """Return a read-only profile snapshot."""


class WalletService(Protocol):
    def hold_tokens(self, user_id: str, amount: int) -> bool:
        """Take ``amount`` tokens into custody; False means insufficient funds."""

    def credit_tokens(self, user_id: str, amount: int) -> None:
        """Credit ``amount`` tokens to the user's wallet."""


class ModerationService(Protocol):
    def flag_for_review(self, user_id: str, session_id: str, reason: str) -> None:
        """Fire-and-forget hand-off to moderation."""


class AlertSink(Protocol):
    def alert(self, session_id: str, message: str) -> None:
        """Out-of-band operator alert."""


@dataclass
class InMemoryProfileService:
    profiles: dict[str, Profile] = field(default_factory=dict)

    def add(self, user_id: str, data: Mapping[str, Any]) -> Profile:
        profile = profile_from_mapping(user_id, data)
        self.profiles[user_id] = profile
        return profile

    def get_profile(self, user_id: str) -> Profile:
        profile = self.profiles.get(user_id)
        if profile is None:
            raise InvalidProfileError(f"Unknown user {user_id}")
        return profile


@dataclass
class InMemoryWalletService:
    balances: dict[str, int] = field(default_factory=dict)

    def __post_init__(self) -> None:
        self._lock = threading.Lock()

    def hold_tokens(self, user_id: str, amount: int) -> bool:
        with self._lock:
            balance = self.balances.get(user_id, 0)
            if amount < 0 or balance < amount:
                return False
            self.balances[user_id] = balance - amount
            return True

    def credit_tokens(self, user_id: str, amount: int) -> None:
        with self._lock:
            self.balances[user_id] = self.balances.get(user_id, 0) + amount

    def balance_of(self, user_id: str) -> int:
        with self._lock:
            return self.balances.get(user_id, 0)


@dataclass
class RecordingModerationService:
    flags: list[tuple[str, str, str]] = field(default_factory=list)

    def flag_for_review(self, user_id: str, session_id: str, reason: str) -> None:
        self.flags.append((user_id, session_id, reason))
        logger.warning("flagged_for_review", user_id=user_id, session_id=session_id, reason=reason)


@dataclass
class LoggingAlertSink:
    alerts: list[tuple[str, str]] = field(default_factory=list)

    def alert(self, session_id: str, message: str) -> None:
        self.alerts.append((session_id, message))
        logger.critical("operator_alert", session_id=session_id, alert=message)


def load_seed(path: str | Path) -> tuple[InMemoryProfileService, InMemoryWalletService]:
    """Fill the in-memory profile and wallet services from a JSON seed file.

    The file holds ``{"users": {"<user id>": {"gender": ..., "earnOptIn": ...,
    "balance": <tokens>}}}``; every profile key accepted by
    ``profile_from_mapping`` may appear next to ``balance``.
    """
    seed_path = Path(path)
    payload = json.loads(seed_path.read_text(encoding="utf-8"))
    users = payload.get("users") if isinstance(payload, dict) else None
    if not isinstance(users, dict):
        raise ValueError(f"Seed file {seed_path} must contain a 'users' object")

    profiles = InMemoryProfileService()
    wallet = InMemoryWalletService()
    for user_id, data in users.items():
        profiles.add(user_id, data)
        balance = int(data.get("balance", 0))
        if balance < 0:
            raise ValueError(f"Seed balance for {user_id} must not be negative")
        wallet.balances[user_id] = balance
    logger.info("seed_loaded", path=str(seed_path), users=len(users))
    return profiles, wallet
