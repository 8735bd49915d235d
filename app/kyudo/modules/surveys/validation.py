from __future__ import annotations

from collections.abc import Mapping, Sequence
from typing import Any

from app.kyudo.errors import ValidationError
from app.kyudo.modules.surveys.models import QuestionType, SurveyQuestion
from app.kyudo.utils import parse_int


def parse_answer_payload(raw: Any) -> dict[int, list[Any]]:
    """
    ``[{questionId, optionIds: []}]`` -> ``{question_id: [option ids]}``.
    Entries without a question id are skipped; a later entry for the same question wins.
    Option ids that are not integers are kept as-is so they fail the option check.
    """
    if not isinstance(raw, list):
        return {}
    out: dict[int, list[Any]] = {}
    for entry in raw:
        if not isinstance(entry, Mapping):
            continue
        qid = parse_int(entry.get("questionId"))
        if qid is None:
            continue
        option_ids = entry.get("optionIds")
        if not isinstance(option_ids, list):
            option_ids = []
        parsed = []
        for value in option_ids:
            if value is None or value == "" or value is False:
                continue
            as_int = parse_int(value)
            parsed.append(as_int if as_int is not None else value)
        out[qid] = parsed
    return out


def _dedupe(values: Sequence[Any]) -> list[Any]:
    seen: list[Any] = []
    for v in values:
        if v not in seen:
            seen.append(v)
    return seen


def validate_answers(
    questions: Sequence[SurveyQuestion],
    answers: Mapping[int, Sequence[Any]],
) -> list[tuple[int, list[int]]]:
    """
    Check a full answer set against the live questions and options.
    All-or-nothing: the first violation rejects the whole submission.
    Answers for question ids outside the survey are ignored.
    """
    if not questions:
        raise ValidationError("survey has no questions")
    rows: list[tuple[int, list[int]]] = []
    for q in questions:
        selected = _dedupe(answers.get(q.id, []))
        if not selected:
            raise ValidationError("all questions must be answered")
        if q.type == QuestionType.SINGLE and len(selected) != 1:
            raise ValidationError("single choice requires one option")
        allowed = {o.id for o in q.options}
        for option_id in selected:
            if option_id not in allowed:
                raise ValidationError("invalid option")
        rows.append((q.id, selected))
    return rows
