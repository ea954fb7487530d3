import pytest

from escrowchat.backend.config import RateTable
from escrowchat.backend.metering import ceil_tokens, count_billable_words, message_cost, metered_sender
from escrowchat.backend.models import ContentType, Gender, Profile
from escrowchat.backend.roles import resolve_roles

PARTICIPANTS = ("m", "w")


def _earner_roles():
    return resolve_roles(
        Profile(user_id="m", gender=Gender.MALE, earn_opt_in=False),
        Profile(user_id="w", gender=Gender.FEMALE, earn_opt_in=True),
        "m",
        RateTable(),
    )


def _platform_roles():
    return resolve_roles(
        Profile(user_id="m", gender=Gender.MALE, earn_opt_in=False),
        Profile(user_id="w", gender=Gender.FEMALE, earn_opt_in=False),
        "m",
        RateTable(),
    )


def test_count_billable_words_ignores_urls_and_emoji() -> None:
    assert count_billable_words("hello there https://example.com/x friend \U0001F600") == 3
    assert count_billable_words("   ") == 0
    assert count_billable_words("") == 0


def test_ceil_tokens_rounds_up() -> None:
    assert ceil_tokens(11, 11) == 1
    assert ceil_tokens(12, 11) == 2
    assert ceil_tokens(77, 11) == 7
    assert ceil_tokens(0, 11) == 0


def test_ceil_tokens_rejects_zero_rate() -> None:
    with pytest.raises(ValueError):
        ceil_tokens(10, 0)


def test_payer_is_never_billed() -> None:
    roles = _earner_roles()

    assert message_cost("m", ContentType.TEXT, 500, roles, PARTICIPANTS) == 0
    assert message_cost("m", ContentType.PHOTO, 0, roles, PARTICIPANTS) == 0


def test_earner_text_costs_ceiling_of_words() -> None:
    roles = _earner_roles()

    assert message_cost("w", ContentType.TEXT, 12, roles, PARTICIPANTS) == 2
    assert message_cost("w", ContentType.TEXT, 0, roles, PARTICIPANTS) == 0


def test_media_without_caption_costs_one_token() -> None:
    roles = _earner_roles()

    assert message_cost("w", ContentType.VOICE, 0, roles, PARTICIPANTS) == 1
    assert message_cost("w", ContentType.PHOTO, 23, roles, PARTICIPANTS) == 3


def test_platform_session_meters_the_non_payer() -> None:
    roles = _platform_roles()

    assert metered_sender(roles, PARTICIPANTS) == "w"
    assert message_cost("w", ContentType.TEXT, 22, roles, PARTICIPANTS) == 2
