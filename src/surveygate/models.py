from __future__ import annotations

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase


class Base(DeclarativeBase):
    pass


class TemplateModel(Base):
    __tablename__ = "form_templates"

    id = Column(String, primary_key=True)
    owner_id = Column(String, index=True, nullable=False)
    title = Column(String, nullable=False)
    description = Column(Text, nullable=True)
    version = Column(Integer, default=1, nullable=False)
    status = Column(String, default="draft", nullable=False)
    draft_schema_json = Column(Text)
    published_schema_json = Column(Text, nullable=True)
    created_at = Column(DateTime)
    updated_at = Column(DateTime)
    published_at = Column(DateTime, nullable=True)


class SurveyModel(Base):
    __tablename__ = "surveys"

    id = Column(String, primary_key=True)
    owner_id = Column(String, index=True, nullable=False)
    template_id = Column(String, nullable=True)
    snapshot_version = Column(Integer, default=1)
    form_snapshot_json = Column(Text)
    title = Column(String)
    mode = Column(String)
    status = Column(String, index=True)
    max_participants = Column(Integer, nullable=True)
    public_slug = Column(String, unique=True, nullable=True)
    starts_at = Column(DateTime, nullable=True)
    ends_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime)
    updated_at = Column(DateTime)


class EnrollmentModel(Base):
    __tablename__ = "enrollments"
    __table_args__ = (UniqueConstraint("survey_id", "email_key"),)

    id = Column(String, primary_key=True)
    survey_id = Column(String, ForeignKey("surveys.id"), index=True, nullable=False)
    source = Column(String, default="admin")
    full_name = Column(String, nullable=False)
    email = Column(String, nullable=True)
    # Lower-cased email while the enrollment is not removed; NULL otherwise.
    email_key = Column(String, nullable=True)
    phone = Column(String, nullable=True)
    telegram_chat_id = Column(Integer, nullable=True)
    state = Column(String, default="invited", nullable=False)
    token_hash = Column(String, unique=True, index=True, nullable=True)
    token_expires_at = Column(DateTime, nullable=True)
    use_limit = Column(Integer, default=1, nullable=False)
    used_count = Column(Integer, default=0, nullable=False)
    invited_by = Column(String, nullable=True)
    created_at = Column(DateTime)


class ResponseModel(Base):
    __tablename__ = "responses"
    __table_args__ = (UniqueConstraint("survey_id", "enrollment_id"),)

    id = Column(String, primary_key=True)
    survey_id = Column(String, ForeignKey("surveys.id"), index=True, nullable=False)
    enrollment_id = Column(
        String, ForeignKey("enrollments.id"), index=True, nullable=False
    )
    state = Column(String, nullable=False)
    channel = Column(String, nullable=True)
    started_at = Column(DateTime)
    submitted_at = Column(DateTime, nullable=True)


class AnswerModel(Base):
    __tablename__ = "answers"

    id = Column(Integer, primary_key=True, autoincrement=True)
    response_id = Column(String, ForeignKey("responses.id"), index=True, nullable=False)
    question_code = Column(String, nullable=False)
    section_code = Column(String, nullable=True)
    repeat_path = Column(String, default="")
    value_text = Column(Text, nullable=True)
    value_number = Column(Float, nullable=True)
    value_bool = Column(Boolean, nullable=True)
    value_date = Column(DateTime, nullable=True)
    value_datetime = Column(DateTime, nullable=True)
    value_json = Column(Text, nullable=True)
