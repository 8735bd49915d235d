from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING, Any

from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError

from app.kyudo.audit import record_event
from app.kyudo.constants import SubPermission
from app.kyudo.errors import Forbidden, NotFound, ValidationError
from app.kyudo.models import User
from app.kyudo.modules.profiles.models import Profile
from app.kyudo.modules.surveys.eligibility import (
    accepts_responses,
    compute_availability,
    eligible_population,
    participation_rollup,
    reconcile_results,
    targeting_for,
    viewer_is_eligible,
)
from app.kyudo.modules.surveys.models import (
    QuestionType,
    Survey,
    SurveyOption,
    SurveyQuestion,
    SurveyResponse,
    SurveyResponseAnswer,
    SurveyStatus,
    SurveyTarget,
    SurveyTargetCondition,
    SurveyTargetGroup,
)
from app.kyudo.modules.surveys.targets import TargetGroup, parse_target_groups
from app.kyudo.modules.surveys.validation import parse_answer_payload, validate_answers
from app.kyudo.rbac import has_capability
from app.kyudo.utils import clean_str, iso, parse_datetime, parse_int, utcnow

if TYPE_CHECKING:
    from sqlalchemy.orm import Session
    from app.kyudo.rbac import AuthContext


# Lifecycle moves allowed through the status endpoint.
STATUS_TRANSITIONS: dict[SurveyStatus, frozenset[SurveyStatus]] = {
    SurveyStatus.DRAFT: frozenset({SurveyStatus.OPEN}),
    SurveyStatus.OPEN: frozenset({SurveyStatus.CLOSED}),
    SurveyStatus.CLOSED: frozenset({SurveyStatus.OPEN}),
}


# ---------- Serialization ----------
def survey_dict(survey: Survey) -> dict[str, Any]:
    return {
        "id": survey.id,
        "title": survey.title,
        "description": survey.description,
        "status": survey.status.value,
        "opens_at": iso(survey.opens_at),
        "closes_at": iso(survey.closes_at),
        "is_anonymous": survey.is_anonymous,
        "created_at": iso(survey.created_at),
        "created_by": survey.created_by,
    }


def option_dict(o: SurveyOption) -> dict[str, Any]:
    return {
        "id": o.id,
        "question_id": o.question_id,
        "label": o.label,
        "created_by": o.created_by,
        "created_at": iso(o.created_at),
    }


def question_dict(q: SurveyQuestion) -> dict[str, Any]:
    return {
        "id": q.id,
        "prompt": q.prompt,
        "type": q.type.value,
        "allow_option_add": q.allow_option_add,
        "position": q.position,
        "options": [option_dict(o) for o in q.options],
    }


def target_groups_payload(survey: Survey) -> list[dict[str, Any]]:
    return [
        {
            "id": g.id,
            "conditions": [{"field": c.field.value, "op": c.op.value, "value": c.value} for c in g.conditions],
        }
        for g in survey.target_groups
    ]


# ---------- Lookups ----------
def _get_survey(s: "Session", survey_id: Any) -> Survey:
    sid = parse_int(survey_id)
    survey = s.get(Survey, sid) if sid is not None else None
    if survey is None:
        raise NotFound("not found")
    return survey


def _visible_survey(s: "Session", survey_id: Any, auth: "AuthContext") -> Survey:
    survey = _get_survey(s, survey_id)
    if survey.status == SurveyStatus.DRAFT and not has_capability(auth, SubPermission.SURVEY_ADMIN):
        raise Forbidden("forbidden")
    return survey


def _viewer_profile(s: "Session", auth: "AuthContext") -> Profile | None:
    return s.get(Profile, auth.user_id)


# ---------- Member-facing ----------
def list_surveys(s: "Session", auth: "AuthContext") -> list[dict[str, Any]]:
    """Newest first, annotated for the viewer. Drafts only for survey admins."""
    stmt = select(Survey).order_by(Survey.created_at.desc(), Survey.id.desc())
    if not has_capability(auth, SubPermission.SURVEY_ADMIN):
        stmt = stmt.where(Survey.status != SurveyStatus.DRAFT)
    surveys = s.execute(stmt).scalars().all()

    responded_ids = set(
        s.execute(select(SurveyResponse.survey_id).where(SurveyResponse.account_id == auth.user_id)).scalars().all()
    )
    profile = _viewer_profile(s, auth)
    now = utcnow()

    out = []
    for survey in surveys:
        eligible = viewer_is_eligible(targeting_for(survey), auth.user_id, profile)
        responded = survey.id in responded_ids
        availability = compute_availability(survey, now)
        row = survey_dict(survey)
        row.update(
            {
                "eligible": eligible,
                "responded": responded,
                "availability": availability.value,
                "canAnswer": eligible and accepts_responses(survey, now),
                "requiresResponse": eligible and not responded,
            }
        )
        out.append(row)
    return out


def _own_response(s: "Session", survey: Survey, account_id: int) -> dict[str, Any] | None:
    response = s.execute(
        select(SurveyResponse).where(SurveyResponse.survey_id == survey.id, SurveyResponse.account_id == account_id)
    ).scalar_one_or_none()
    if response is None:
        return None
    answers: dict[str, list[int]] = {}
    rows = s.execute(
        select(SurveyResponseAnswer.question_id, SurveyResponseAnswer.option_id)
        .where(SurveyResponseAnswer.response_id == response.id)
        .order_by(SurveyResponseAnswer.id.asc())
    ).all()
    for question_id, option_id in rows:
        answers.setdefault(str(question_id), []).append(option_id)
    return {
        "id": response.id,
        "created_at": iso(response.created_at),
        "updated_at": iso(response.updated_at),
        "answers": answers,
    }


def get_survey_detail(s: "Session", survey_id: Any, auth: "AuthContext") -> dict[str, Any]:
    survey = _visible_survey(s, survey_id, auth)
    targeting = targeting_for(survey)
    eligible = viewer_is_eligible(targeting, auth.user_id, _viewer_profile(s, auth))
    now = utcnow()
    response = _own_response(s, survey, auth.user_id)
    eligible_ids = eligible_population(s, targeting)
    return {
        "survey": survey_dict(survey),
        "availability": compute_availability(survey, now).value,
        "eligible": eligible,
        "responded": response is not None,
        "canAnswer": eligible and accepts_responses(survey, now),
        "requiresResponse": eligible and response is None,
        "targets": target_groups_payload(survey),
        "response": response,
        "questions": [question_dict(q) for q in survey.questions],
        "results": reconcile_results(s, survey, eligible_ids),
    }


def _upsert_response(s: "Session", survey_id: int, account_id: int) -> SurveyResponse:
    """One response row per (survey, account); a concurrent insert falls back to the winner's row."""
    now = utcnow()
    stmt = select(SurveyResponse).where(SurveyResponse.survey_id == survey_id, SurveyResponse.account_id == account_id)
    existing = s.execute(stmt).scalar_one_or_none()
    if existing is None:
        try:
            with s.begin_nested():
                created = SurveyResponse(survey_id=survey_id, account_id=account_id, created_at=now, updated_at=now)
                s.add(created)
            return created
        except IntegrityError:
            existing = s.execute(stmt).scalar_one()
    existing.updated_at = now
    return existing


def submit_response(s: "Session", survey_id: Any, raw_answers: Any, auth: "AuthContext") -> SurveyResponse:
    if parse_int(survey_id) is None:
        raise ValidationError("surveyId required")
    survey = _visible_survey(s, survey_id, auth)
    if not accepts_responses(survey):
        raise ValidationError("survey is not accepting responses")
    if not viewer_is_eligible(targeting_for(survey), auth.user_id, _viewer_profile(s, auth)):
        raise Forbidden("not eligible")

    rows = validate_answers(survey.questions, parse_answer_payload(raw_answers))

    response = _upsert_response(s, survey.id, auth.user_id)
    s.flush()
    s.execute(
        delete(SurveyResponseAnswer)
        .where(SurveyResponseAnswer.response_id == response.id)
        .execution_options(synchronize_session="fetch")
    )
    for question_id, option_ids in rows:
        for option_id in option_ids:
            s.add(SurveyResponseAnswer(response_id=response.id, question_id=question_id, option_id=option_id))
    s.flush()
    return response


def add_option(s: "Session", survey_id: Any, payload: dict[str, Any], auth: "AuthContext") -> SurveyOption:
    question_id = parse_int(payload.get("questionId"))
    label = clean_str(payload.get("label"))
    if question_id is None or not label:
        raise ValidationError("questionId and label required")
    question = s.get(SurveyQuestion, question_id)
    if question is None or (survey_id is not None and question.survey_id != parse_int(survey_id)):
        raise NotFound("not found")
    if not question.allow_option_add:
        raise Forbidden("forbidden")
    survey = _visible_survey(s, question.survey_id, auth)
    if not accepts_responses(survey):
        raise ValidationError("survey is not accepting responses")
    if not viewer_is_eligible(targeting_for(survey), auth.user_id, _viewer_profile(s, auth)):
        raise Forbidden("not eligible")

    option = SurveyOption(question_id=question.id, label=label, created_by=auth.user_id, created_at=utcnow())
    question.options.append(option)
    s.flush()
    record_event(
        s,
        actor=auth,
        action="survey.option_add",
        entity_type="Survey",
        entity_id=str(survey.id),
        target_label=survey.title,
        metadata={"question_id": question.id, "option_id": option.id, "label": label},
    )
    return option


# ---------- Admin ----------
@dataclass
class QuestionDraft:
    prompt: str
    type: QuestionType
    allow_option_add: bool
    options: list[str]


@dataclass
class SurveyDraft:
    title: str
    description: str | None
    status: SurveyStatus
    opens_at: datetime | None
    closes_at: datetime | None
    is_anonymous: bool
    questions: list[QuestionDraft]
    account_ids: list[int] = field(default_factory=list)
    groups: list[TargetGroup] = field(default_factory=list)


def _optional_datetime(payload: dict[str, Any], key: str) -> datetime | None:
    raw = payload.get(key)
    if raw is None or (isinstance(raw, str) and not raw.strip()):
        return None
    parsed = parse_datetime(raw)
    if parsed is None:
        raise ValidationError("invalid date")
    return parsed


def parse_survey_payload(s: "Session", payload: dict[str, Any]) -> SurveyDraft:
    """Front-loaded validation for create and full replace; nothing is written on failure."""
    title = clean_str(payload.get("title"))
    if not title:
        raise ValidationError("title required")

    raw_questions = payload.get("questions")
    if not isinstance(raw_questions, list) or not raw_questions:
        raise ValidationError("questions required")
    questions: list[QuestionDraft] = []
    for rq in raw_questions:
        rq = rq if isinstance(rq, dict) else {}
        raw_options = rq.get("options") if isinstance(rq.get("options"), list) else []
        questions.append(
            QuestionDraft(
                prompt=clean_str(rq.get("prompt")) or "",
                type=QuestionType.MULTIPLE if rq.get("type") == QuestionType.MULTIPLE.value else QuestionType.SINGLE,
                allow_option_add=bool(rq.get("allowOptionAdd")),
                options=[o for o in (clean_str(v) for v in raw_options) if o],
            )
        )
    if any(not q.prompt for q in questions):
        raise ValidationError("question prompt required")
    if any(not q.options for q in questions):
        raise ValidationError("each question needs at least one option")

    raw_accounts = payload.get("accountIds")
    account_ids: list[int] = []
    for value in raw_accounts if isinstance(raw_accounts, list) else []:
        aid = parse_int(value)
        if aid is None:
            if clean_str(value):
                raise ValidationError("invalid account id")
            continue
        if aid not in account_ids:
            account_ids.append(aid)
    groups = parse_target_groups(payload.get("targetGroups"))
    if not account_ids and not groups:
        raise ValidationError("accountIds required")
    if account_ids:
        known = set(s.execute(select(User.id).where(User.id.in_(account_ids))).scalars().all())
        if len(known) != len(account_ids):
            raise ValidationError("unknown account")

    opens_at = _optional_datetime(payload, "opens_at")
    closes_at = _optional_datetime(payload, "closes_at")
    if opens_at and closes_at and closes_at < opens_at:
        raise ValidationError("closes_at must not be before opens_at")

    try:
        status = SurveyStatus(payload.get("status") or SurveyStatus.DRAFT.value)
    except ValueError:
        status = SurveyStatus.DRAFT

    return SurveyDraft(
        title=title,
        description=clean_str(payload.get("description")),
        status=status,
        opens_at=opens_at,
        closes_at=closes_at,
        is_anonymous=bool(payload.get("is_anonymous")),
        questions=questions,
        account_ids=account_ids,
        groups=groups,
    )


def _attach_structure(survey: Survey, draft: SurveyDraft, auth: "AuthContext") -> None:
    now = utcnow()
    for position, qd in enumerate(draft.questions):
        question = SurveyQuestion(
            prompt=qd.prompt,
            type=qd.type,
            allow_option_add=qd.allow_option_add,
            position=position,
            created_at=now,
        )
        question.options = [SurveyOption(label=label, created_by=auth.user_id, created_at=now) for label in qd.options]
        survey.questions.append(question)
    for position, group in enumerate(draft.groups):
        row = SurveyTargetGroup(position=position)
        row.conditions = [SurveyTargetCondition(field=c.field, op=c.op, value=c.value) for c in group.conditions]
        survey.target_groups.append(row)
    for account_id in draft.account_ids:
        survey.targets.append(SurveyTarget(account_id=account_id))


def _apply_scalars(survey: Survey, draft: SurveyDraft) -> None:
    survey.title = draft.title
    survey.description = draft.description
    survey.status = draft.status
    survey.opens_at = draft.opens_at
    survey.closes_at = draft.closes_at
    survey.is_anonymous = draft.is_anonymous


def create_survey(s: "Session", payload: dict[str, Any], auth: "AuthContext") -> Survey:
    draft = parse_survey_payload(s, payload)
    survey = Survey(created_by=auth.user_id)
    _apply_scalars(survey, draft)
    _attach_structure(survey, draft, auth)
    s.add(survey)
    s.flush()
    record_event(
        s,
        actor=auth,
        action="survey.create",
        entity_type="Survey",
        entity_id=str(survey.id),
        target_label=survey.title,
        metadata={"status": survey.status.value, "questions": len(draft.questions)},
    )
    return survey


def replace_survey(s: "Session", survey_id: Any, payload: dict[str, Any], auth: "AuthContext") -> Survey:
    """
    Full replace of a draft: responses, questions, options and targeting are
    deleted and rebuilt inside the caller's transaction.
    """
    survey = _get_survey(s, survey_id)
    if survey.status != SurveyStatus.DRAFT:
        raise ValidationError("only draft can be edited")
    draft = parse_survey_payload(s, payload)

    response_ids = select(SurveyResponse.id).where(SurveyResponse.survey_id == survey.id)
    question_ids = select(SurveyQuestion.id).where(SurveyQuestion.survey_id == survey.id)
    group_ids = select(SurveyTargetGroup.id).where(SurveyTargetGroup.survey_id == survey.id)
    for stmt in (
        delete(SurveyResponseAnswer).where(SurveyResponseAnswer.response_id.in_(response_ids)),
        delete(SurveyResponse).where(SurveyResponse.survey_id == survey.id),
        delete(SurveyOption).where(SurveyOption.question_id.in_(question_ids)),
        delete(SurveyQuestion).where(SurveyQuestion.survey_id == survey.id),
        delete(SurveyTargetCondition).where(SurveyTargetCondition.group_id.in_(group_ids)),
        delete(SurveyTargetGroup).where(SurveyTargetGroup.survey_id == survey.id),
        delete(SurveyTarget).where(SurveyTarget.survey_id == survey.id),
    ):
        s.execute(stmt.execution_options(synchronize_session="fetch"))
    s.expire(survey, ["questions", "target_groups", "targets", "responses"])

    _apply_scalars(survey, draft)
    _attach_structure(survey, draft, auth)
    s.flush()
    record_event(
        s,
        actor=auth,
        action="survey.update",
        entity_type="Survey",
        entity_id=str(survey.id),
        target_label=survey.title,
        metadata={"status": survey.status.value, "questions": len(draft.questions)},
    )
    return survey


def delete_survey(s: "Session", raw_id: Any, auth: "AuthContext") -> None:
    if parse_int(raw_id) is None:
        raise ValidationError("id required")
    survey = _get_survey(s, raw_id)
    title = survey.title
    s.delete(survey)
    record_event(
        s,
        actor=auth,
        action="survey.delete",
        entity_type="Survey",
        entity_id=str(raw_id),
        target_label=title,
    )


def change_status(s: "Session", survey_id: Any, raw_status: Any, auth: "AuthContext") -> Survey:
    survey = _get_survey(s, survey_id)
    try:
        target = SurveyStatus(str(raw_status or ""))
    except ValueError:
        raise ValidationError("invalid status") from None
    if target not in STATUS_TRANSITIONS[survey.status]:
        raise ValidationError(f"cannot change status from {survey.status.value} to {target.value}")
    previous = survey.status
    survey.status = target
    record_event(
        s,
        actor=auth,
        action="survey.status",
        entity_type="Survey",
        entity_id=str(survey.id),
        target_label=survey.title,
        metadata={"from": previous.value, "to": target.value},
    )
    return survey


def admin_survey_detail(s: "Session", survey_id: Any) -> dict[str, Any]:
    survey = _get_survey(s, survey_id)
    account_ids = [t.account_id for t in survey.targets]
    profiles = {}
    if account_ids:
        profiles = {p.id: p for p in s.execute(select(Profile).where(Profile.id.in_(account_ids))).scalars().all()}
    targets = []
    for aid in sorted(account_ids):
        p = profiles.get(aid)
        targets.append(
            {
                "id": aid,
                "display_name": p.display_name if p else None,
                "student_number": p.student_number if p else None,
                "generation": p.generation if p else None,
                "gender": p.gender if p else None,
            }
        )
    return {
        "survey": survey_dict(survey),
        "questions": [question_dict(q) for q in survey.questions],
        "targets": targets,
        "targetGroups": target_groups_payload(survey),
    }


def survey_analytics(s: "Session", raw_start: Any, raw_end: Any) -> list[dict[str, Any]]:
    """Per-account participation over non-draft surveys created inside [start, end]."""
    if not raw_start or not raw_end:
        raise ValidationError("start and end are required")
    start = parse_datetime(raw_start)
    end = parse_datetime(raw_end)
    if start is None or end is None:
        raise ValidationError("invalid date")
    surveys = (
        s.execute(
            select(Survey)
            .where(Survey.status != SurveyStatus.DRAFT, Survey.created_at >= start, Survey.created_at <= end)
            .order_by(Survey.created_at.asc())
        )
        .scalars()
        .all()
    )
    if not surveys:
        return []
    return participation_rollup(s, list(surveys))
