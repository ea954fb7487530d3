"""Domain models for chat sessions, escrow and billing results."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum


class Gender(str, Enum):
    MALE = "male"
    FEMALE = "female"
    NONBINARY = "nonbinary"


class Popularity(str, Enum):
    LOW = "low"
    NORMAL = "normal"
    ROYAL = "royal"


class ContentType(str, Enum):
    TEXT = "text"
    PHOTO = "photo"
    VOICE = "voice"
    VIDEO = "video"

    @property
    def is_media(self) -> bool:
        return self is not ContentType.TEXT


class SessionMode(str, Enum):
    FREE = "FREE"
    PAID = "PAID"


class SessionState(str, Enum):
    FREE_ACTIVE = "FREE_ACTIVE"
    AWAITING_PREPAID = "AWAITING_PREPAID"
    PAID_ACTIVE = "PAID_ACTIVE"
    EXPIRED = "EXPIRED"
    CLOSED = "CLOSED"

    @property
    def is_terminal(self) -> bool:
        return self in (SessionState.EXPIRED, SessionState.CLOSED)


class RefundReason(str, Enum):
    MANUAL_CLOSE = "MANUAL_CLOSE"
    EXPIRED = "EXPIRED"
    MISMATCH = "MISMATCH"
    NO_RESPONSE = "NO_RESPONSE"


INFLUENCER_BADGE = "influencer"


@dataclass(frozen=True)
class Profile:
    user_id: str
    gender: Gender
    earn_opt_in: bool
    popularity: Popularity = Popularity.NORMAL
    badges: frozenset[str] = frozenset()
    royal_member: bool = False

    @property
    def is_influencer(self) -> bool:
        return INFLUENCER_BADGE in self.badges


@dataclass(frozen=True)
class RoleAssignment:
    payer_id: str
    earner_id: str | None
    mode: SessionMode
    words_per_token: int
    free_message_limit: int
    price: int
    split_creator_percent: int
    split_platform_percent: int
    rule: str
    # Share of the deposit the platform takes up front, independent of who
    # receives the metered debits.
    deposit_fee_percent: int = 0

    @property
    def is_free(self) -> bool:
        return self.mode is SessionMode.FREE


@dataclass
class Escrow:
    deposit_amount: int
    platform_fee: int
    total_deposited_tokens: int
    remaining_tokens: int
    words_per_token: int
    remaining_words: int
    used_words: int = 0
    debits: list[int] = field(default_factory=list)
    refunded_tokens: int = 0
    platform_fee_refunded: bool = False
    deposited_at: datetime | None = None


@dataclass
class Session:
    session_id: str
    participants: tuple[str, str]
    initiator_id: str
    roles: RoleAssignment
    state: SessionState
    created_at: datetime
    last_activity_at: datetime
    free_messages_used: dict[str, int] = field(default_factory=dict)
    escrow: Escrow | None = None
    message_count: int = 0
    first_paid_message_at: datetime | None = None
    expires_at: datetime | None = None
    closed_at: datetime | None = None
    closed_by: str | None = None
    close_reason: RefundReason | None = None
    halted: bool = False

    @property
    def mode(self) -> SessionMode:
        return self.roles.mode

    def counterpart_of(self, user_id: str) -> str:
        first, second = self.participants
        if user_id == first:
            return second
        if user_id == second:
            return first
        raise KeyError(user_id)


@dataclass(frozen=True)
class MessageContent:
    content_type: ContentType = ContentType.TEXT
    text: str = ""
    media_url: str | None = None


@dataclass(frozen=True)
class Message:
    message_id: str
    session_id: str
    sender_id: str
    receiver_id: str
    content_type: ContentType
    word_count: int
    token_cost: int
    content_hash: str
    created_at: datetime


@dataclass(frozen=True)
class RefundRecord:
    refund_id: str
    session_id: str
    payer_id: str
    refunded_tokens: int
    reason: RefundReason
    includes_platform_share: bool
    platform_share_refunded: int
    created_at: datetime


@dataclass(frozen=True)
class DepositReceipt:
    session_id: str
    deposit_amount: int
    platform_fee: int
    escrow_amount: int


@dataclass(frozen=True)
class MessageOutcome:
    allowed: bool
    token_cost: int = 0
    reason: str | None = None
    message_id: str | None = None
    remaining_tokens: int | None = None


@dataclass(frozen=True)
class CloseResult:
    session_id: str
    state: SessionState
    refund_amount: int


@dataclass(frozen=True)
class MismatchResult:
    session_id: str
    terminated: bool
    refund_amount: int
