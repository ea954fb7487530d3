"""Pure metering helpers converting message content into token cost."""

from __future__ import annotations

import math
import re

from escrowchat.backend.models import ContentType, RoleAssignment

_URL_PATTERN = re.compile(r"https?://\S+", re.IGNORECASE)
_EMOJI_PATTERN = re.compile(
    "["
    "\U0001F300-\U0001F5FF"
    "\U0001F600-\U0001F64F"
    "\U0001F680-\U0001F6FF"
    "\U0001F900-\U0001F9FF"
    "\U00002600-\U000026FF"
    "\U00002700-\U000027BF"
    "]+"
)


def count_billable_words(text: str) -> int:
    """Count whitespace-separated words, ignoring URLs and emoji."""
    if not text or not text.strip():
        return 0
    cleaned = _URL_PATTERN.sub(" ", text)
    cleaned = _EMOJI_PATTERN.sub(" ", cleaned)
    return len(cleaned.split())


def metered_sender(roles: RoleAssignment, participants: tuple[str, str]) -> str | None:
    """Return the participant whose outgoing content consumes the payer's escrow."""
    if roles.is_free:
        return None
    if roles.earner_id is not None:
        return roles.earner_id
    first, second = participants
    return second if first == roles.payer_id else first


def ceil_tokens(word_count: int, words_per_token: int) -> int:
    if words_per_token < 1:
        raise ValueError("words_per_token must be at least 1")
    return math.ceil(max(0, word_count) / words_per_token)


def message_cost(
    sender_id: str,
    content_type: ContentType,
    word_count: int,
    roles: RoleAssignment,
    participants: tuple[str, str],
) -> int:
    """Compute the token cost of one message.

    The payer is never billed. Text from the metered side costs
    ``ceil(words / words_per_token)``; media from the metered side costs at
    least one token even without a caption.
    """
    if sender_id == roles.payer_id:
        return 0
    if sender_id != metered_sender(roles, participants):
        return 0
    tokens = ceil_tokens(word_count, roles.words_per_token)
    if content_type.is_media:
        return max(1, tokens)
    return tokens
