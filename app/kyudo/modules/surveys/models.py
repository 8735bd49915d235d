from __future__ import annotations

from datetime import datetime
from enum import Enum as PyEnum

from sqlalchemy import Boolean, DateTime, Enum, ForeignKey, Index, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.kyudo.models import Base
from app.kyudo.modules.surveys.targets import TargetCondition, TargetField, TargetGroup, TargetOp
from app.kyudo.utils import utcnow


class SurveyStatus(str, PyEnum):
    DRAFT = "draft"
    OPEN = "open"
    CLOSED = "closed"


class QuestionType(str, PyEnum):
    SINGLE = "single"
    MULTIPLE = "multiple"


def _str_enum(enum_cls: type[PyEnum], length: int = 32) -> Enum:
    # Stored as plain VARCHAR of the enum values.
    return Enum(enum_cls, native_enum=False, length=length, values_callable=lambda e: [m.value for m in e])


class Survey(Base):
    __tablename__ = "surveys"
    __table_args__ = (
        Index("idx_surveys_status", "status"),
        Index("idx_surveys_created_at", "created_at"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    status: Mapped[SurveyStatus] = mapped_column(_str_enum(SurveyStatus, 16), nullable=False, default=SurveyStatus.DRAFT)
    opens_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    closes_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    # Once true, per-respondent breakdowns are never exposed.
    is_anonymous: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    created_by: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=utcnow, onupdate=utcnow)

    questions: Mapped[list["SurveyQuestion"]] = relationship(
        back_populates="survey",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="SurveyQuestion.position",
        lazy="selectin",
    )
    target_groups: Mapped[list["SurveyTargetGroup"]] = relationship(
        back_populates="survey",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="SurveyTargetGroup.position",
        lazy="selectin",
    )
    targets: Mapped[list["SurveyTarget"]] = relationship(
        back_populates="survey",
        cascade="all, delete-orphan",
        passive_deletes=True,
        lazy="selectin",
    )
    responses: Mapped[list["SurveyResponse"]] = relationship(
        back_populates="survey",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )

    def rule_groups(self) -> list[TargetGroup]:
        return [g.to_rule() for g in self.target_groups]


class SurveyQuestion(Base):
    __tablename__ = "survey_questions"
    __table_args__ = (Index("idx_survey_questions_survey", "survey_id", "position"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    survey_id: Mapped[int] = mapped_column(ForeignKey("surveys.id", ondelete="CASCADE"), nullable=False)
    prompt: Mapped[str] = mapped_column(Text, nullable=False)
    type: Mapped[QuestionType] = mapped_column(_str_enum(QuestionType, 16), nullable=False, default=QuestionType.SINGLE)
    allow_option_add: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    position: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=utcnow)

    survey: Mapped[Survey] = relationship(back_populates="questions")
    options: Mapped[list["SurveyOption"]] = relationship(
        back_populates="question",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="SurveyOption.id",
        lazy="selectin",
    )


class SurveyOption(Base):
    __tablename__ = "survey_options"
    __table_args__ = (Index("idx_survey_options_question", "question_id"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    question_id: Mapped[int] = mapped_column(ForeignKey("survey_questions.id", ondelete="CASCADE"), nullable=False)
    label: Mapped[str] = mapped_column(String(255), nullable=False)
    created_by: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=utcnow)

    question: Mapped[SurveyQuestion] = relationship(back_populates="options")


class SurveyTargetGroup(Base):
    """One OR branch of a survey's eligibility rule."""

    __tablename__ = "survey_target_groups"
    __table_args__ = (Index("idx_survey_target_groups_survey", "survey_id", "position"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    survey_id: Mapped[int] = mapped_column(ForeignKey("surveys.id", ondelete="CASCADE"), nullable=False)
    position: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    survey: Mapped[Survey] = relationship(back_populates="target_groups")
    conditions: Mapped[list["SurveyTargetCondition"]] = relationship(
        back_populates="group",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="SurveyTargetCondition.id",
        lazy="selectin",
    )

    def to_rule(self) -> TargetGroup:
        return TargetGroup(conditions=tuple(c.to_rule() for c in self.conditions))


class SurveyTargetCondition(Base):
    __tablename__ = "survey_target_conditions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    group_id: Mapped[int] = mapped_column(ForeignKey("survey_target_groups.id", ondelete="CASCADE"), nullable=False)
    field: Mapped[TargetField] = mapped_column(_str_enum(TargetField), nullable=False)
    op: Mapped[TargetOp] = mapped_column(_str_enum(TargetOp, 16), nullable=False)
    value: Mapped[str] = mapped_column(String(255), nullable=False)

    group: Mapped[SurveyTargetGroup] = relationship(back_populates="conditions")

    def to_rule(self) -> TargetCondition:
        return TargetCondition(field=self.field, op=self.op, value=self.value)


class SurveyTarget(Base):
    """Explicit (survey, account) assignment; when any exist, rule groups are ignored."""

    __tablename__ = "survey_targets"
    __table_args__ = (UniqueConstraint("survey_id", "account_id", name="uq_survey_targets_survey_account"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    survey_id: Mapped[int] = mapped_column(ForeignKey("surveys.id", ondelete="CASCADE"), nullable=False)
    account_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), nullable=False)

    survey: Mapped[Survey] = relationship(back_populates="targets")


class SurveyResponse(Base):
    __tablename__ = "survey_responses"
    __table_args__ = (UniqueConstraint("survey_id", "account_id", name="uq_survey_responses_survey_account"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    survey_id: Mapped[int] = mapped_column(ForeignKey("surveys.id", ondelete="CASCADE"), nullable=False)
    account_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=utcnow)

    survey: Mapped[Survey] = relationship(back_populates="responses")
    # Not eagerly loaded: answers are replaced with bulk statements.
    answers: Mapped[list["SurveyResponseAnswer"]] = relationship(
        back_populates="response",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )


class SurveyResponseAnswer(Base):
    __tablename__ = "survey_response_answers"
    __table_args__ = (
        UniqueConstraint("response_id", "question_id", "option_id", name="uq_survey_answers_response_question_option"),
        Index("idx_survey_answers_option", "option_id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    response_id: Mapped[int] = mapped_column(ForeignKey("survey_responses.id", ondelete="CASCADE"), nullable=False)
    question_id: Mapped[int] = mapped_column(ForeignKey("survey_questions.id", ondelete="CASCADE"), nullable=False)
    option_id: Mapped[int] = mapped_column(ForeignKey("survey_options.id", ondelete="CASCADE"), nullable=False)

    response: Mapped[SurveyResponse] = relationship(back_populates="answers")
