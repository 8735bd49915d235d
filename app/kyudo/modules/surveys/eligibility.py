"""
Eligibility and response reconciliation for one survey.

Explicit ``SurveyTarget`` rows win: when a survey has any, the eligible population
is exactly that set and its rule groups are ignored. Otherwise the rule groups
decide, and a survey with neither is open to every member with a profile.
"""
from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING, Any

from sqlalchemy import select

from app.kyudo.modules.profiles.models import Profile
from app.kyudo.modules.surveys.models import (
    Survey,
    SurveyQuestion,
    SurveyResponse,
    SurveyResponseAnswer,
    SurveyStatus,
)
from app.kyudo.modules.surveys.targets import TargetGroup, matches_any_group, resolve_account_ids_for_target_groups
from app.kyudo.utils import utcnow

if TYPE_CHECKING:
    from sqlalchemy.orm import Session


class Availability(str, Enum):
    UPCOMING = "upcoming"
    OPEN = "open"
    CLOSED = "closed"


def compute_availability(survey: Survey, now: datetime | None = None) -> Availability:
    now = now or utcnow()
    if survey.opens_at is not None and now < survey.opens_at:
        return Availability.UPCOMING
    if survey.closes_at is not None and now > survey.closes_at:
        return Availability.CLOSED
    return Availability.OPEN


def accepts_responses(survey: Survey, now: datetime | None = None) -> bool:
    return survey.status == SurveyStatus.OPEN and compute_availability(survey, now) == Availability.OPEN


@dataclass(frozen=True)
class SurveyTargeting:
    explicit_account_ids: frozenset[int] = field(default_factory=frozenset)
    groups: tuple[TargetGroup, ...] = field(default_factory=tuple)

    @property
    def uses_explicit_targets(self) -> bool:
        return bool(self.explicit_account_ids)


def targeting_for(survey: Survey) -> SurveyTargeting:
    return SurveyTargeting(
        explicit_account_ids=frozenset(t.account_id for t in survey.targets),
        groups=tuple(survey.rule_groups()),
    )


def eligible_population(s: "Session", targeting: SurveyTargeting) -> set[int]:
    if targeting.uses_explicit_targets:
        return set(targeting.explicit_account_ids)
    return resolve_account_ids_for_target_groups(s, targeting.groups)


def viewer_is_eligible(targeting: SurveyTargeting, account_id: int, profile: Profile | None) -> bool:
    """
    Same answer as ``account_id in eligible_population(...)``.
    Without a profile an account can only be eligible through an explicit target.
    """
    if targeting.uses_explicit_targets:
        return account_id in targeting.explicit_account_ids
    if profile is None:
        return False
    return matches_any_group(profile, targeting.groups)


def response_rate(responded: int, eligible: int) -> float:
    """Percentage with one decimal, rounded half up; 0 when nobody is eligible."""
    if eligible <= 0:
        return 0.0
    return ((responded * 2000 + eligible) // (2 * eligible)) / 10


def _identity(profile: Profile | None, account_id: int) -> dict[str, Any]:
    return {
        "id": account_id,
        "display_name": profile.display_name if profile else None,
        "student_number": profile.student_number if profile else None,
    }


def _identities(s: "Session", account_ids: set[int]) -> list[dict[str, Any]]:
    if not account_ids:
        return []
    profiles = {p.id: p for p in s.execute(select(Profile).where(Profile.id.in_(account_ids))).scalars().all()}
    rows = [_identity(profiles.get(aid), aid) for aid in account_ids]
    rows.sort(key=lambda r: (r["student_number"] or "", r["display_name"] or "", r["id"]))
    return rows


def reconcile_results(s: "Session", survey: Survey, eligible_ids: set[int]) -> dict[str, Any]:
    """
    Aggregate participation over the eligible population only.
    ``respondentsByOption`` stays empty for anonymous surveys, whoever asks.
    """
    responses = s.execute(
        select(SurveyResponse.id, SurveyResponse.account_id).where(SurveyResponse.survey_id == survey.id)
    ).all()
    account_by_response = {rid: aid for rid, aid in responses if aid in eligible_ids}
    responded_ids = set(account_by_response.values())

    counts: dict[str, int] = {}
    for q in survey.questions:
        for o in q.options:
            counts[str(o.id)] = 0

    voters: dict[str, set[int]] = defaultdict(set)
    if account_by_response:
        answer_rows = s.execute(
            select(SurveyResponseAnswer.response_id, SurveyResponseAnswer.option_id)
            .join(SurveyQuestion, SurveyQuestion.id == SurveyResponseAnswer.question_id)
            .where(
                SurveyQuestion.survey_id == survey.id,
                SurveyResponseAnswer.response_id.in_(list(account_by_response)),
            )
        ).all()
        for response_id, option_id in answer_rows:
            key = str(option_id)
            counts[key] = counts.get(key, 0) + 1
            voters[key].add(account_by_response[response_id])

    respondents_by_option: dict[str, list[dict[str, Any]]] = {}
    if not survey.is_anonymous and voters:
        everyone = set().union(*voters.values())
        by_id = {row["id"]: row for row in _identities(s, everyone)}
        for key, ids in voters.items():
            respondents_by_option[key] = [by_id[aid] for aid in sorted(ids, key=lambda a: (by_id[a]["student_number"] or "", a))]

    eligible_count = len(eligible_ids)
    responded_count = len(responded_ids)
    return {
        "eligibleCount": eligible_count,
        "respondedCount": responded_count,
        "responseRate": response_rate(responded_count, eligible_count),
        "countsByOption": counts,
        "respondentsByOption": respondents_by_option,
        "unresponded": _identities(s, eligible_ids - responded_ids),
    }


def participation_rollup(s: "Session", surveys: list[Survey]) -> list[dict[str, Any]]:
    """
    Per-account eligible/responded tallies across several surveys, using the same
    eligibility resolution as a single survey. Accounts never eligible are left out.
    """
    eligible_by_account: dict[int, int] = defaultdict(int)
    responded_by_account: dict[int, int] = defaultdict(int)
    for survey in surveys:
        eligible_ids = eligible_population(s, targeting_for(survey))
        if not eligible_ids:
            continue
        responders = set(
            s.execute(select(SurveyResponse.account_id).where(SurveyResponse.survey_id == survey.id)).scalars().all()
        )
        for aid in eligible_ids:
            eligible_by_account[aid] += 1
            if aid in responders:
                responded_by_account[aid] += 1

    rows = []
    for ident in _identities(s, set(eligible_by_account)):
        eligible = eligible_by_account[ident["id"]]
        responded = responded_by_account.get(ident["id"], 0)
        rows.append(
            {
                "account_id": ident["id"],
                "display_name": ident["display_name"],
                "student_number": ident["student_number"],
                "eligible": eligible,
                "responded": responded,
                "responseRate": response_rate(responded, eligible),
            }
        )
    return rows
