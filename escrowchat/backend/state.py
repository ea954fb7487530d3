"""Session builders and snapshot (de)serialization."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from escrowchat.backend.models import (
    Escrow,
    RefundReason,
    RefundRecord,
    RoleAssignment,
    Session,
    SessionMode,
    SessionState,
)


def build_session(
    session_id: str,
    participants: tuple[str, str],
    initiator_id: str,
    roles: RoleAssignment,
    now: datetime,
) -> Session:
    """Return a fresh session; every session starts in FREE_ACTIVE."""
    return Session(
        session_id=session_id,
        participants=participants,
        initiator_id=initiator_id,
        roles=roles,
        state=SessionState.FREE_ACTIVE,
        created_at=now,
        last_activity_at=now,
        free_messages_used={participant: 0 for participant in participants},
    )


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def _parse(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


def session_to_state(session: Session) -> dict[str, Any]:
    roles = session.roles
    escrow = session.escrow
    return {
        "id": session.session_id,
        "participants": list(session.participants),
        "initiatorId": session.initiator_id,
        "mode": roles.mode.value,
        "state": session.state.value,
        "roles": {
            "payerId": roles.payer_id,
            "earnerId": roles.earner_id,
            "wordsPerToken": roles.words_per_token,
            "freeMessageLimit": roles.free_message_limit,
            "price": roles.price,
            "splitCreatorPercent": roles.split_creator_percent,
            "splitPlatformPercent": roles.split_platform_percent,
            "rule": roles.rule,
            "depositFeePercent": roles.deposit_fee_percent,
        },
        "freeMessagesUsed": dict(session.free_messages_used),
        "escrow": None
        if escrow is None
        else {
            "depositAmount": escrow.deposit_amount,
            "platformFee": escrow.platform_fee,
            "totalDepositedTokens": escrow.total_deposited_tokens,
            "remainingTokens": escrow.remaining_tokens,
            "wordsPerToken": escrow.words_per_token,
            "remainingWords": escrow.remaining_words,
            "usedWords": escrow.used_words,
            "debits": list(escrow.debits),
            "refundedTokens": escrow.refunded_tokens,
            "platformFeeRefunded": escrow.platform_fee_refunded,
            "depositedAt": _iso(escrow.deposited_at),
        },
        "messageCount": session.message_count,
        "halted": session.halted,
        "meta": {
            "createdAt": _iso(session.created_at),
            "lastActivityAt": _iso(session.last_activity_at),
            "firstPaidMessageAt": _iso(session.first_paid_message_at),
            "expiresAt": _iso(session.expires_at),
            "closedAt": _iso(session.closed_at),
            "closedBy": session.closed_by,
            "closeReason": session.close_reason.value if session.close_reason else None,
        },
    }


def session_from_state(state: dict[str, Any]) -> Session:
    roles_raw = state["roles"]
    roles = RoleAssignment(
        payer_id=roles_raw["payerId"],
        earner_id=roles_raw.get("earnerId"),
        mode=SessionMode(state["mode"]),
        words_per_token=int(roles_raw["wordsPerToken"]),
        free_message_limit=int(roles_raw["freeMessageLimit"]),
        price=int(roles_raw["price"]),
        split_creator_percent=int(roles_raw["splitCreatorPercent"]),
        split_platform_percent=int(roles_raw["splitPlatformPercent"]),
        rule=roles_raw.get("rule", ""),
        deposit_fee_percent=int(roles_raw.get("depositFeePercent", 0)),
    )
    escrow_raw = state.get("escrow")
    escrow = None
    if escrow_raw is not None:
        escrow = Escrow(
            deposit_amount=int(escrow_raw["depositAmount"]),
            platform_fee=int(escrow_raw["platformFee"]),
            total_deposited_tokens=int(escrow_raw["totalDepositedTokens"]),
            remaining_tokens=int(escrow_raw["remainingTokens"]),
            words_per_token=int(escrow_raw["wordsPerToken"]),
            remaining_words=int(escrow_raw["remainingWords"]),
            used_words=int(escrow_raw.get("usedWords", 0)),
            debits=[int(debit) for debit in escrow_raw.get("debits", [])],
            refunded_tokens=int(escrow_raw.get("refundedTokens", 0)),
            platform_fee_refunded=bool(escrow_raw.get("platformFeeRefunded", False)),
            deposited_at=_parse(escrow_raw.get("depositedAt")),
        )
    meta = state["meta"]
    first, second = state["participants"]
    return Session(
        session_id=state["id"],
        participants=(first, second),
        initiator_id=state["initiatorId"],
        roles=roles,
        state=SessionState(state["state"]),
        created_at=_parse(meta["createdAt"]),
        last_activity_at=_parse(meta["lastActivityAt"]),
        free_messages_used={key: int(value) for key, value in state.get("freeMessagesUsed", {}).items()},
        escrow=escrow,
        message_count=int(state.get("messageCount", 0)),
        first_paid_message_at=_parse(meta.get("firstPaidMessageAt")),
        expires_at=_parse(meta.get("expiresAt")),
        closed_at=_parse(meta.get("closedAt")),
        closed_by=meta.get("closedBy"),
        close_reason=RefundReason(meta["closeReason"]) if meta.get("closeReason") else None,
        halted=bool(state.get("halted", False)),
    )


def refund_to_state(record: RefundRecord) -> dict[str, Any]:
    return {
        "id": record.refund_id,
        "sessionId": record.session_id,
        "payerId": record.payer_id,
        "refundedTokens": record.refunded_tokens,
        "reason": record.reason.value,
        "includesPlatformShare": record.includes_platform_share,
        "platformShareRefunded": record.platform_share_refunded,
        "createdAt": _iso(record.created_at),
    }
