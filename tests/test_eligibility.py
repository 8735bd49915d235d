from datetime import datetime, timedelta
from types import SimpleNamespace

import pytest

from app.kyudo.errors import ValidationError
from app.kyudo.modules.surveys.eligibility import (
    Availability,
    SurveyTargeting,
    accepts_responses,
    compute_availability,
    response_rate,
    viewer_is_eligible,
)
from app.kyudo.modules.surveys.models import QuestionType, SurveyStatus
from app.kyudo.modules.surveys.targets import TargetCondition, TargetField, TargetGroup, TargetOp
from app.kyudo.modules.surveys.validation import parse_answer_payload, validate_answers


@pytest.mark.parametrize(
    "responded,eligible,expected",
    [
        (0, 0, 0.0),
        (3, 0, 0.0),
        (0, 4, 0.0),
        (1, 3, 33.3),
        (2, 3, 66.7),
        (1, 8, 12.5),
        (5, 5, 100.0),
    ],
)
def test_response_rate(responded, eligible, expected):
    assert response_rate(responded, eligible) == expected


def test_availability_window():
    now = datetime(2026, 4, 1, 12, 0)
    survey = SimpleNamespace(status=SurveyStatus.OPEN, opens_at=now + timedelta(hours=1), closes_at=None)
    assert compute_availability(survey, now) == Availability.UPCOMING
    assert not accepts_responses(survey, now)

    survey.opens_at = now - timedelta(days=1)
    survey.closes_at = now - timedelta(minutes=1)
    assert compute_availability(survey, now) == Availability.CLOSED

    survey.closes_at = now
    assert compute_availability(survey, now) == Availability.OPEN
    assert accepts_responses(survey, now)

    survey.status = SurveyStatus.CLOSED
    assert not accepts_responses(survey, now)


def test_explicit_targets_win_over_groups():
    groups = (TargetGroup(conditions=(TargetCondition(TargetField.GENDER, TargetOp.EQ, "female"),)),)
    targeting = SurveyTargeting(explicit_account_ids=frozenset({2}), groups=groups)
    female = SimpleNamespace(gender="female")
    assert not viewer_is_eligible(targeting, 1, female)
    assert viewer_is_eligible(targeting, 2, None)


def test_no_profile_is_not_eligible_through_groups():
    assert not viewer_is_eligible(SurveyTargeting(), 1, None)
    assert viewer_is_eligible(SurveyTargeting(), 1, SimpleNamespace())


def _question(qid, qtype, option_ids):
    return SimpleNamespace(id=qid, type=qtype, options=[SimpleNamespace(id=o) for o in option_ids])


def test_validate_answers_rules():
    questions = [_question(1, QuestionType.SINGLE, [10, 11]), _question(2, QuestionType.MULTIPLE, [20, 21])]

    rows = validate_answers(questions, {1: [10], 2: [20, 21, 20], 99: [1]})
    assert rows == [(1, [10]), (2, [20, 21])]

    with pytest.raises(ValidationError, match="survey has no questions"):
        validate_answers([], {})
    with pytest.raises(ValidationError, match="all questions must be answered"):
        validate_answers(questions, {1: [10]})
    with pytest.raises(ValidationError, match="single choice requires one option"):
        validate_answers(questions, {1: [10, 11], 2: [20]})
    with pytest.raises(ValidationError, match="invalid option"):
        validate_answers(questions, {1: [10], 2: [10]})


def test_parse_answer_payload_keeps_bad_option_ids():
    parsed = parse_answer_payload(
        [
            {"questionId": "1", "optionIds": ["10", "x", None]},
            {"optionIds": [5]},
            "junk",
        ]
    )
    assert parsed == {1: [10, "x"]}
    assert parse_answer_payload(None) == {}
