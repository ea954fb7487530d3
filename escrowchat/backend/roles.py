"""Role resolution: who pays, who earns, and at which rate.

Rules are evaluated top-down and the first matching predicate wins. Each
rule is a pure function of the two profiles and the initiator, so the
priority order can be audited and tested rule by rule.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Mapping

from escrowchat.backend.config import RateTable
from escrowchat.backend.errors import InvalidProfileError
from escrowchat.backend.models import Gender, Popularity, Profile, RoleAssignment, SessionMode


@dataclass(frozen=True)
class Pairing:
    initiator: Profile
    receiver: Profile

    @property
    def opposite_gender(self) -> bool:
        genders = {self.initiator.gender, self.receiver.gender}
        return genders == {Gender.MALE, Gender.FEMALE}

    def by_gender(self, gender: Gender) -> Profile:
        return self.initiator if self.initiator.gender is gender else self.receiver


Outcome = Callable[[Pairing, RateTable], RoleAssignment]


@dataclass(frozen=True)
class RoleRule:
    name: str
    predicate: Callable[[Pairing], bool]
    outcome: Outcome


def _paid(rule: str, payer: Profile, earner: Profile | None, rates: RateTable) -> RoleAssignment:
    if earner is None:
        return RoleAssignment(
            payer_id=payer.user_id,
            earner_id=None,
            mode=SessionMode.PAID,
            words_per_token=rates.words_per_token_standard,
            free_message_limit=rates.free_messages_standard,
            price=rates.clamp_price(rates.base_price),
            split_creator_percent=0,
            split_platform_percent=100,
            rule=rule,
            deposit_fee_percent=rates.platform_percent,
        )
    royal = earner.royal_member or earner.popularity is Popularity.ROYAL
    return RoleAssignment(
        payer_id=payer.user_id,
        earner_id=earner.user_id,
        mode=SessionMode.PAID,
        words_per_token=rates.words_per_token_royal if royal else rates.words_per_token_standard,
        free_message_limit=rates.free_messages_royal if royal else rates.free_messages_standard,
        price=rates.clamp_price(rates.base_price),
        split_creator_percent=rates.creator_percent,
        split_platform_percent=rates.platform_percent,
        rule=rule,
        deposit_fee_percent=rates.platform_percent,
    )


def _free(pairing: Pairing, rates: RateTable) -> RoleAssignment:
    return RoleAssignment(
        payer_id=pairing.initiator.user_id,
        earner_id=None,
        mode=SessionMode.FREE,
        words_per_token=rates.words_per_token_standard,
        free_message_limit=0,
        price=0,
        split_creator_percent=0,
        split_platform_percent=100,
        rule="low_popularity",
    )


def _is_influencer_exception(pairing: Pairing) -> bool:
    if not pairing.opposite_gender:
        return False
    female = pairing.by_gender(Gender.FEMALE)
    male = pairing.by_gender(Gender.MALE)
    return pairing.initiator is female and male.is_influencer and not female.earn_opt_in


def _single_earner(pairing: Pairing, rates: RateTable) -> RoleAssignment:
    earner, payer = (
        (pairing.initiator, pairing.receiver) if pairing.initiator.earn_opt_in else (pairing.receiver, pairing.initiator)
    )
    return _paid("single_earner", payer, earner, rates)


ROLE_RULES: tuple[RoleRule, ...] = (
    RoleRule(
        name="low_popularity",
        predicate=lambda p: Popularity.LOW in (p.initiator.popularity, p.receiver.popularity),
        outcome=_free,
    ),
    RoleRule(
        name="influencer_exception",
        predicate=_is_influencer_exception,
        outcome=lambda p, r: _paid("influencer_exception", p.by_gender(Gender.FEMALE), p.by_gender(Gender.MALE), r),
    ),
    RoleRule(
        name="opposite_gender_earner",
        predicate=lambda p: p.opposite_gender and p.by_gender(Gender.FEMALE).earn_opt_in,
        outcome=lambda p, r: _paid("opposite_gender_earner", p.by_gender(Gender.MALE), p.by_gender(Gender.FEMALE), r),
    ),
    RoleRule(
        name="opposite_gender_platform",
        predicate=lambda p: p.opposite_gender,
        outcome=lambda p, r: _paid("opposite_gender_platform", p.by_gender(Gender.MALE), None, r),
    ),
    RoleRule(
        name="both_earn",
        predicate=lambda p: p.initiator.earn_opt_in and p.receiver.earn_opt_in,
        outcome=lambda p, r: _paid("both_earn", p.initiator, p.receiver, r),
    ),
    RoleRule(
        name="single_earner",
        predicate=lambda p: p.initiator.earn_opt_in != p.receiver.earn_opt_in,
        outcome=_single_earner,
    ),
    RoleRule(
        name="platform_earns",
        predicate=lambda p: True,
        outcome=lambda p, r: _paid("platform_earns", p.initiator, None, r),
    ),
)


def resolve_roles(
    profile_a: Profile,
    profile_b: Profile,
    initiator_id: str,
    rates: RateTable,
    rules: tuple[RoleRule, ...] = ROLE_RULES,
) -> RoleAssignment:
    """Return the role assignment for a new session."""
    for profile in (profile_a, profile_b):
        if not isinstance(profile.gender, Gender) or not isinstance(profile.earn_opt_in, bool):
            raise InvalidProfileError(f"Profile {profile.user_id} is missing gender or earn opt-in")
    if profile_a.user_id == profile_b.user_id:
        raise InvalidProfileError("A session needs two distinct participants")
    if initiator_id == profile_a.user_id:
        pairing = Pairing(initiator=profile_a, receiver=profile_b)
    elif initiator_id == profile_b.user_id:
        pairing = Pairing(initiator=profile_b, receiver=profile_a)
    else:
        raise InvalidProfileError(f"Initiator {initiator_id} is not a participant")

    for rule in rules:
        if rule.predicate(pairing):
            return rule.outcome(pairing, rates)
    raise InvalidProfileError("No role rule matched")


def profile_from_mapping(user_id: str, data: Mapping[str, Any]) -> Profile:
    """Build a profile snapshot, rejecting records without gender or earn opt-in."""
    gender_raw = data.get("gender")
    earn_raw = data.get("earnOptIn", data.get("earn_opt_in"))
    if gender_raw is None or earn_raw is None:
        raise InvalidProfileError(f"Profile {user_id} is missing gender or earn opt-in")
    try:
        gender = Gender(str(gender_raw).lower())
    except ValueError:
        gender = Gender.NONBINARY
    if not isinstance(earn_raw, bool):
        raise InvalidProfileError(f"Profile {user_id} has a non-boolean earn opt-in")
    try:
        popularity = Popularity(str(data.get("popularityTier", data.get("popularity", "normal"))).lower())
    except ValueError as exc:
        raise InvalidProfileError(f"Profile {user_id} has an unknown popularity tier") from exc
    badges = frozenset(str(badge) for badge in data.get("badges", ()) or ())
    return Profile(
        user_id=user_id,
        gender=gender,
        earn_opt_in=earn_raw,
        popularity=popularity,
        badges=badges,
        royal_member=bool(data.get("royalMember", data.get("royal_member", False))),
    )
