import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from sqlalchemy import JSON, Column, DateTime
from sqlmodel import Field, SQLModel


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite hands timestamps back without tzinfo; they were written as UTC."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def utc_column(nullable: bool = True) -> Column:
    return Column(DateTime(timezone=True), nullable=nullable)

def new_id() -> str:
    return uuid.uuid4().hex


class SubmissionStatus(str, Enum):
    PENDING = "pending"
    TAKEN = "taken"
    ACCEPTED = "accepted"
    REFUSED = "refused"


class CheatMethod(str, Enum):
    SWITCHED_TAB = "switched_tab"
    LOST_FOCUS = "lost_focus"


# --- value objects (embedded as JSON) ---

class Question(SQLModel):
    id: str
    text_key: str
    time_limit: int = Field(gt=0)  # seconds


class Answer(SQLModel):
    question_id: str
    question_text: str
    answer: str
    time_taken: int


class CheatAttempt(SQLModel):
    method: CheatMethod
    timestamp: datetime


# --- tables ---

class Quiz(SQLModel, table=True):
    id: str = Field(default_factory=new_id, primary_key=True)
    title_key: str
    description_key: Optional[str] = Field(default=None)
    instructions_key: Optional[str] = Field(default=None)
    is_open: bool = Field(default=False)
    questions: list[dict] = Field(default_factory=list, sa_column=Column(JSON))
    allowed_take_roles: list[str] = Field(default_factory=list, sa_column=Column(JSON))
    logo_url: Optional[str] = Field(default=None)
    banner_url: Optional[str] = Field(default=None)
    last_opened_at: Optional[datetime] = Field(default=None, sa_column=utc_column())
    parent_quiz_id: Optional[str] = Field(default=None)
    created_at: datetime = Field(default_factory=utcnow, sa_column=utc_column(nullable=False))

    def question_list(self) -> list[Question]:
        return [Question.model_validate(q) for q in self.questions or []]


class Submission(SQLModel, table=True):
    id: str = Field(default_factory=new_id, primary_key=True)
    quiz_id: str = Field(index=True)
    quiz_title: str
    user_id: str = Field(index=True)
    username: str
    user_highest_role: Optional[str] = Field(default=None)
    answers: list[dict] = Field(default_factory=list, sa_column=Column(JSON))
    cheat_attempts: list[dict] = Field(default_factory=list, sa_column=Column(JSON))
    submitted_at: datetime = Field(default_factory=utcnow, sa_column=utc_column(nullable=False))
    status: str = Field(default=SubmissionStatus.PENDING.value, index=True)
    admin_id: Optional[str] = Field(default=None)
    admin_username: Optional[str] = Field(default=None)
    reason: Optional[str] = Field(default=None)
    updated_at: Optional[datetime] = Field(default=None, sa_column=utc_column())

    def answer_list(self) -> list[Answer]:
        return [Answer.model_validate(a) for a in self.answers or []]

    def cheat_list(self) -> list[CheatAttempt]:
        return [CheatAttempt.model_validate(c) for c in self.cheat_attempts or []]


class UserProfile(SQLModel, table=True):
    id: str = Field(primary_key=True)  # Discord user id
    username: str
    roles: list[str] = Field(default_factory=list, sa_column=Column(JSON))
    highest_role: Optional[str] = Field(default=None)
    roles_synced_at: Optional[datetime] = Field(default=None, sa_column=utc_column())
    created_at: datetime = Field(default_factory=utcnow, sa_column=utc_column(nullable=False))


class RolePermission(SQLModel, table=True):
    role_id: str = Field(primary_key=True)
    permissions: list[str] = Field(default_factory=list, sa_column=Column(JSON))


class AuditLog(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    admin_id: Optional[str] = Field(default=None, index=True)
    admin_username: Optional[str] = Field(default=None)
    action: str
    timestamp: datetime = Field(default_factory=utcnow, sa_column=utc_column(nullable=False))
