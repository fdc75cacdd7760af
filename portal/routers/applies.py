from typing import Optional

from fastapi import APIRouter, Depends, Request
from sqlmodel import Session, SQLModel

from portal.database import get_session
from portal.dependencies import get_current_user, require_user
from portal.models import CheatMethod
from portal.permissions import Principal
from portal.quiz_session import QuizSession, check_eligibility
from portal.stores import SqlQuizStore, SqlSubmissionStore

router = APIRouter(tags=["Applies"])


class CaptchaInput(SQLModel):
    captcha_token: Optional[str] = None


class AnswerInput(SQLModel):
    text: str = ""


class AdvanceInput(SQLModel):
    text: Optional[str] = None


class SignalInput(SQLModel):
    method: CheatMethod


def _attempt(request: Request, attempt_id: str, user: Principal) -> QuizSession:
    attempt = request.app.state.attempts.get(attempt_id, user.id)
    attempt.sync()
    return attempt


@router.get("/health")
def health_check():
    """Lightweight health check, no DB queries. Used by keep-alive pinger."""
    return {"status": "ok"}


@router.get("/api/quizzes")
def list_quizzes(
    user: Optional[Principal] = Depends(get_current_user),
    session: Session = Depends(get_session),
):
    quizzes = SqlQuizStore(session).list_quizzes()
    mine = SqlSubmissionStore(session).get_submissions_by_user(user.id) if user else []
    return [
        {
            "id": quiz.id,
            "title_key": quiz.title_key,
            "description_key": quiz.description_key,
            "is_open": quiz.is_open,
            "logo_url": quiz.logo_url,
            "banner_url": quiz.banner_url,
            "question_count": len(quiz.questions or []),
            "eligibility": check_eligibility(quiz, mine).value if user else None,
        }
        for quiz in quizzes
    ]


@router.post("/api/quizzes/{quiz_id}/attempts")
def start_attempt(
    request: Request,
    quiz_id: str,
    user: Principal = Depends(require_user),
    session: Session = Depends(get_session),
):
    state = request.app.state
    quiz = SqlQuizStore(session).get_quiz(quiz_id)
    attempt = QuizSession.open(
        quiz,
        user,
        SqlSubmissionStore(session).get_submissions_by_user(user.id),
        verifier=state.verifier,
        notifier=state.notifier,
        cheat_debounce_seconds=state.settings.cheat_debounce_seconds,
        clock=state.clock,
    )
    state.attempts.add(attempt)
    return {
        **attempt.snapshot(),
        "title_key": quiz.title_key,
        "description_key": quiz.description_key,
        "instructions_key": quiz.instructions_key,
    }


@router.get("/api/attempts/{attempt_id}")
def get_attempt(request: Request, attempt_id: str, user: Principal = Depends(require_user)):
    return _attempt(request, attempt_id, user).snapshot()


@router.post("/api/attempts/{attempt_id}/begin")
def begin_attempt(
    request: Request, attempt_id: str, data: CaptchaInput, user: Principal = Depends(require_user)
):
    attempt = _attempt(request, attempt_id, user)
    attempt.begin(data.captcha_token)
    return attempt.snapshot()


@router.put("/api/attempts/{attempt_id}/answer")
def buffer_answer(
    request: Request, attempt_id: str, data: AnswerInput, user: Principal = Depends(require_user)
):
    attempt = _attempt(request, attempt_id, user)
    attempt.buffer_answer(data.text)
    return attempt.snapshot()


@router.post("/api/attempts/{attempt_id}/next")
def next_question(
    request: Request, attempt_id: str, data: AdvanceInput, user: Principal = Depends(require_user)
):
    attempt = _attempt(request, attempt_id, user)
    attempt.advance(data.text)
    return attempt.snapshot()


@router.post("/api/attempts/{attempt_id}/signals")
def report_signal(
    request: Request, attempt_id: str, data: SignalInput, user: Principal = Depends(require_user)
):
    attempt = _attempt(request, attempt_id, user)
    recorded = attempt.report_cheat(data.method)
    return {
        "recorded": recorded is not None,
        "warning": attempt.warnings[-1] if recorded else None,
        "cheat_attempts": len(attempt.cheat_attempts),
    }


@router.post("/api/attempts/{attempt_id}/submit")
def submit_attempt(
    request: Request,
    attempt_id: str,
    data: CaptchaInput,
    user: Principal = Depends(require_user),
    session: Session = Depends(get_session),
):
    attempt = _attempt(request, attempt_id, user)
    submission = attempt.submit(data.captcha_token, store=SqlSubmissionStore(session))
    return {
        "submission_id": submission.id,
        "status": submission.status,
        "cheat_attempts": [c.model_dump(mode="json") for c in attempt.summary()],
    }


@router.delete("/api/attempts/{attempt_id}")
def abandon_attempt(request: Request, attempt_id: str, user: Principal = Depends(require_user)):
    attempt = request.app.state.attempts.get(attempt_id, user.id)
    request.app.state.attempts.remove(attempt.id)
    return {"abandoned": attempt.id, "state": attempt.state.value}


@router.get("/api/my-submissions")
def my_submissions(user: Principal = Depends(require_user), session: Session = Depends(get_session)):
    return SqlSubmissionStore(session).get_submissions_by_user(user.id)
