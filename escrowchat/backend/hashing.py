"""Content fingerprint helpers used by duplicate-content detection."""

from __future__ import annotations

import hashlib

from escrowchat.backend.models import MessageContent


def normalize_text(text: str) -> str:
    """Collapse whitespace and case so trivial edits do not evade detection."""
    return " ".join(text.split()).casefold()


def content_hash(content: MessageContent) -> str:
    """Create deterministic sha256 fingerprint of content type plus payload."""
    body = normalize_text(content.text)
    if content.content_type.is_media and content.media_url:
        body = f"{body}|{content.media_url}"
    payload = f"{content.content_type.value}:{body}".encode("utf-8")
    return hashlib.sha256(payload).hexdigest()

