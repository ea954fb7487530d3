from escrowchat.backend.hashing import content_hash, normalize_text
from escrowchat.backend.models import ContentType, MessageContent


def test_normalize_text_collapses_whitespace_and_case() -> None:
    assert normalize_text("  Hello   THERE\n") == "hello there"


def test_content_hash_is_stable_across_trivial_edits() -> None:
    first = content_hash(MessageContent(text="Hi there"))
    second = content_hash(MessageContent(text="  hi   there "))

    assert first == second
    assert len(first) == 64


def test_content_hash_distinguishes_type_and_media() -> None:
    text = content_hash(MessageContent(text="look"))
    photo_a = content_hash(MessageContent(content_type=ContentType.PHOTO, text="look", media_url="a.jpg"))
    photo_b = content_hash(MessageContent(content_type=ContentType.PHOTO, text="look", media_url="b.jpg"))

    assert text != photo_a
    assert photo_a != photo_b
