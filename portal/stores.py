"""
Quiz and submission stores.

The core only depends on the ``QuizStore`` / ``SubmissionStore`` protocols; the
SQL classes below are the SQLModel-backed implementations used by the API.
"""

import logging
from typing import Iterable, Optional, Protocol

from sqlalchemy import update
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, select

from portal.errors import ConflictError, NotFound, UpstreamError, ValidationError
from portal.models import (
    AuditLog,
    Question,
    Quiz,
    RolePermission,
    Submission,
    SubmissionStatus,
    UserProfile,
    utcnow,
)
from portal.permissions import Principal, parse_permission_keys

logger = logging.getLogger(__name__)


class QuizStore(Protocol):
    def get_quiz(self, quiz_id: str) -> Quiz: ...

    def list_open_quizzes(self) -> list[Quiz]: ...


class SubmissionStore(Protocol):
    def create_submission(self, submission: Submission) -> Submission: ...

    def get_submission(self, submission_id: str) -> Submission: ...

    def get_submissions_by_user(self, user_id: str) -> list[Submission]: ...

    def list_submissions(self, status: Optional[SubmissionStatus] = None) -> list[Submission]: ...

    def update_submission_status(
        self,
        submission_id: str,
        expected: SubmissionStatus,
        new: SubmissionStatus,
        reviewer: Principal,
        reason: Optional[str] = None,
        expected_admin_id: Optional[str] = None,
    ) -> Submission: ...

    def delete_submission(self, submission_id: str) -> None: ...


def validate_questions(questions: Iterable[dict]) -> list[dict]:
    """Normalize raw question dicts; every time limit must be positive."""
    cleaned = []
    for raw in questions:
        if int(raw.get("time_limit") or 0) <= 0:
            raise ValidationError(
                f"Question {raw.get('id')!r} needs a positive time limit.", code="invalid_time_limit"
            )
        cleaned.append(Question.model_validate(raw).model_dump())
    return cleaned


class SqlQuizStore:
    def __init__(self, session: Session):
        self.session = session

    def get_quiz(self, quiz_id: str) -> Quiz:
        quiz = self.session.get(Quiz, quiz_id)
        if not quiz:
            raise NotFound(f"Quiz {quiz_id} does not exist.")
        return quiz

    def list_quizzes(self) -> list[Quiz]:
        return list(self.session.exec(select(Quiz).order_by(Quiz.created_at)).all())

    def list_open_quizzes(self) -> list[Quiz]:
        return list(self.session.exec(select(Quiz).where(Quiz.is_open == True)).all())  # noqa: E712

    def save_quiz(self, quiz: Quiz) -> Quiz:
        quiz.questions = validate_questions(quiz.questions or [])
        self.session.add(quiz)
        self.session.commit()
        self.session.refresh(quiz)
        return quiz

    def set_open(self, quiz_id: str, is_open: bool) -> Quiz:
        quiz = self.get_quiz(quiz_id)
        if is_open and not quiz.is_open:
            # New season: older submissions stop counting as "already applied".
            quiz.last_opened_at = utcnow()
        quiz.is_open = is_open
        self.session.add(quiz)
        self.session.commit()
        self.session.refresh(quiz)
        return quiz


class SqlSubmissionStore:
    def __init__(self, session: Session):
        self.session = session

    def create_submission(self, submission: Submission) -> Submission:
        try:
            self.session.add(submission)
            self.session.commit()
        except SQLAlchemyError as exc:
            self.session.rollback()
            logger.error("Could not store submission for %s: %s", submission.user_id, exc)
            raise UpstreamError("The submission store is unavailable, please try again.") from exc
        self.session.refresh(submission)
        return submission

    def get_submission(self, submission_id: str) -> Submission:
        submission = self.session.get(Submission, submission_id)
        if not submission:
            raise NotFound(f"Submission {submission_id} does not exist.")
        return submission

    def get_submissions_by_user(self, user_id: str) -> list[Submission]:
        statement = select(Submission).where(Submission.user_id == user_id).order_by(Submission.submitted_at)
        return list(self.session.exec(statement).all())

    def list_submissions(self, status: Optional[SubmissionStatus] = None) -> list[Submission]:
        statement = select(Submission)
        if status is not None:
            statement = statement.where(Submission.status == status.value)
        return list(self.session.exec(statement.order_by(Submission.submitted_at.desc())).all())

    def update_submission_status(
        self,
        submission_id: str,
        expected: SubmissionStatus,
        new: SubmissionStatus,
        reviewer: Principal,
        reason: Optional[str] = None,
        expected_admin_id: Optional[str] = None,
    ) -> Submission:
        """Compare-and-swap on ``status``, plus the claimant when ``expected_admin_id`` is given.

        Exactly one concurrent caller wins.
        """
        values = {"status": new.value, "updated_at": utcnow()}
        if new == SubmissionStatus.PENDING:
            values.update(admin_id=None, admin_username=None)
        else:
            values.update(admin_id=reviewer.id, admin_username=reviewer.username)
        if new in (SubmissionStatus.ACCEPTED, SubmissionStatus.REFUSED):
            values["reason"] = reason

        conditions = [Submission.id == submission_id, Submission.status == expected.value]
        if expected_admin_id is not None:
            conditions.append(Submission.admin_id == expected_admin_id)

        result = self.session.execute(update(Submission).where(*conditions).values(**values))
        if result.rowcount == 0:
            self.session.rollback()
            current = self.get_submission(submission_id)
            if current.status == expected.value and expected_admin_id is not None:
                raise ConflictError(
                    f"Submission {submission_id} is now held by {current.admin_username}.",
                    code="claim_lost",
                )
            raise ConflictError(
                f"Submission {submission_id} is {current.status}, expected {expected.value}.",
                code="status_conflict",
            )

        row = self.session.get(Submission, submission_id, populate_existing=True)
        self.session.add(AuditLog(
            admin_id=reviewer.id,
            admin_username=reviewer.username,
            action=f'Updated submission for "{row.username}" ({row.quiz_title}) to status: {new.value}',
        ))
        self.session.commit()
        self.session.refresh(row)
        return row

    def delete_submission(self, submission_id: str) -> None:
        submission = self.get_submission(submission_id)
        self.session.delete(submission)
        self.session.commit()


class SqlProfileStore:
    def __init__(self, session: Session):
        self.session = session

    def get_profile(self, user_id: str) -> Optional[UserProfile]:
        return self.session.get(UserProfile, user_id)

    def upsert_profile(
        self, user_id: str, username: str, roles: Iterable[str], highest_role: Optional[str] = None
    ) -> UserProfile:
        """Replace the role snapshot; ``highest_role`` always follows the given roles."""
        profile = self.session.get(UserProfile, user_id) or UserProfile(id=user_id, username=username)
        profile.username = username
        profile.roles = sorted(set(roles))
        profile.highest_role = highest_role
        profile.roles_synced_at = utcnow()
        self.session.add(profile)
        self.session.commit()
        self.session.refresh(profile)
        return profile


class SqlRolePermissionStore:
    def __init__(self, session: Session):
        self.session = session

    def as_mapping(self) -> dict[str, list[str]]:
        rows = self.session.exec(select(RolePermission)).all()
        return {row.role_id: list(row.permissions or []) for row in rows}

    def save(self, role_id: str, permissions: Iterable[str]) -> RolePermission:
        keys = sorted(key.value for key in parse_permission_keys(permissions))
        row = self.session.get(RolePermission, role_id) or RolePermission(role_id=role_id)
        row.permissions = keys
        self.session.add(row)
        self.session.commit()
        self.session.refresh(row)
        return row
