"""
One applicant's attempt at a quiz, from the instructions screen to the stored
submission.

    rules --begin(captcha)--> taking --last answer--> submitting --submit(captcha)--> submitted
                                                          |   ^
                                                  failure v   | submit(captcha)
                                                       submit_failed

While ``taking`` exactly one question is active. Its countdown starts at the
question's time limit and only goes down; the question ends either through an
explicit ``advance`` with a non-blank answer or when the countdown expires, in
which case whatever text is buffered (possibly nothing) is recorded.
"""

from __future__ import annotations

import logging
import threading
import time
from enum import Enum
from typing import Callable, Iterable, Optional

from portal.cheat import CHEAT_WARNING, CheatDetector
from portal.errors import ConflictError, UpstreamError, ValidationError
from portal.integrations import CaptchaVerifier, NotificationSender, notify_quietly
from portal.models import (
    Answer,
    CheatAttempt,
    CheatMethod,
    Question,
    Quiz,
    Submission,
    SubmissionStatus,
    as_utc,
    new_id,
    utcnow,
)
from portal.permissions import Principal
from portal.stores import SubmissionStore
from portal.timer import Countdown

logger = logging.getLogger(__name__)


class SessionState(str, Enum):
    RULES = "rules"
    TAKING = "taking"
    SUBMITTING = "submitting"
    SUBMIT_FAILED = "submit_failed"
    SUBMITTED = "submitted"


class Eligibility(str, Enum):
    ELIGIBLE = "eligible"
    CLOSED = "closed"
    ACTIVE_SUBMISSION = "active_submission"
    ALREADY_APPLIED = "already_applied"


def _for_quiz(quiz: Quiz, submissions: Iterable[Submission]) -> list[Submission]:
    return [s for s in submissions if s.quiz_id == quiz.id]


def has_applied_this_season(quiz: Quiz, submissions: Iterable[Submission]) -> bool:
    """True when a submission was made since the quiz was last (re)opened."""
    if quiz.last_opened_at is None:
        return False
    opened = as_utc(quiz.last_opened_at)
    return any(as_utc(s.submitted_at) >= opened for s in _for_quiz(quiz, submissions))


def active_submission(quiz: Quiz, submissions: Iterable[Submission]) -> Optional[Submission]:
    """A pending or taken submission blocks reapplying whatever the season."""
    undecided = {SubmissionStatus.PENDING.value, SubmissionStatus.TAKEN.value}
    return next((s for s in _for_quiz(quiz, submissions) if s.status in undecided), None)


def check_eligibility(quiz: Quiz, submissions: Iterable[Submission]) -> Eligibility:
    submissions = list(submissions)
    if active_submission(quiz, submissions):
        return Eligibility.ACTIVE_SUBMISSION
    if has_applied_this_season(quiz, submissions):
        return Eligibility.ALREADY_APPLIED
    if not quiz.is_open:
        return Eligibility.CLOSED
    return Eligibility.ELIGIBLE


def compute_time_taken(time_limit: int, time_left: int) -> int:
    return min(max(time_limit - time_left, 0), time_limit)


class QuizSession:
    def __init__(
        self,
        quiz: Quiz,
        principal: Principal,
        verifier: CaptchaVerifier,
        store: Optional[SubmissionStore] = None,
        notifier: Optional[NotificationSender] = None,
        cheat_debounce_seconds: float = 0.5,
        clock: Callable[[], float] = time.monotonic,
        on_cheat_warning: Optional[Callable[[CheatAttempt], None]] = None,
    ):
        questions = quiz.question_list()
        if not quiz.is_open or not questions:
            raise ValidationError("This application is not accepting answers.", code="quiz_unavailable")

        self.id = new_id()
        self.quiz_id = quiz.id
        self.quiz_title = quiz.title_key
        self.principal = principal
        self.verifier = verifier
        self.store = store
        self.notifier = notifier
        self._questions: tuple[Question, ...] = tuple(questions)
        self._clock = clock

        self.state = SessionState.RULES
        self.index = 0
        self.answers: list[Answer] = []
        self.buffer = ""
        self.countdown: Optional[Countdown] = None
        self.submission: Optional[Submission] = None
        self.last_error: Optional[Exception] = None
        self.captcha_reset_required = False
        self.warnings: list[str] = []
        self._last_tick_at: Optional[float] = None
        self._final_cheat_log: tuple[CheatAttempt, ...] = ()
        self._in_flight = False
        self._submit_lock = threading.Lock()

        def warn(attempt: CheatAttempt) -> None:
            self.warnings.append(CHEAT_WARNING)
            if on_cheat_warning:
                on_cheat_warning(attempt)

        self.cheat = CheatDetector(
            is_active=lambda: self.state == SessionState.TAKING,
            on_warning=warn,
            debounce_seconds=cheat_debounce_seconds,
            clock=clock,
        )

    @classmethod
    def open(
        cls,
        quiz: Quiz,
        principal: Principal,
        prior_submissions: Iterable[Submission],
        **kwargs,
    ) -> "QuizSession":
        """Start an attempt after checking the applicant may apply right now."""
        eligibility = check_eligibility(quiz, prior_submissions)
        if eligibility != Eligibility.ELIGIBLE:
            raise ValidationError(f"Cannot apply: {eligibility.value}.", code=eligibility.value)
        return cls(quiz, principal, **kwargs)

    # -- read side --

    @property
    def questions(self) -> tuple[Question, ...]:
        return self._questions

    @property
    def current_question(self) -> Optional[Question]:
        if self.state != SessionState.TAKING:
            return None
        return self._questions[self.index]

    @property
    def time_left(self) -> Optional[int]:
        return self.countdown.remaining if self.countdown else None

    @property
    def cheat_attempts(self) -> tuple[CheatAttempt, ...]:
        return self.cheat.attempts

    def summary(self) -> tuple[CheatAttempt, ...]:
        """The cheat log as it stood when the submission was stored."""
        self._require(SessionState.SUBMITTED)
        return self._final_cheat_log

    def snapshot(self) -> dict:
        question = self.current_question
        return {
            "id": self.id,
            "quiz_id": self.quiz_id,
            "state": self.state.value,
            "question_index": self.index,
            "question_count": len(self._questions),
            "question": question.model_dump() if question else None,
            "time_left": self.time_left if question else None,
            "answers_recorded": len(self.answers),
            "cheat_attempts": [c.model_dump(mode="json") for c in self.cheat_attempts],
            "warnings": list(self.warnings),
            "last_error": getattr(self.last_error, "code", None),
            "captcha_reset_required": self.captcha_reset_required,
            "submission_id": self.submission.id if self.submission else None,
        }

    # -- transitions --

    def begin(self, captcha_token: Optional[str]) -> None:
        self._require(SessionState.RULES)
        self._verify_captcha(captcha_token)
        self.state = SessionState.TAKING
        self._last_tick_at = self._clock()
        self._start_question(0)
        logger.info("Attempt %s on quiz %s started by %s", self.id, self.quiz_id, self.principal.id)

    def buffer_answer(self, text: str) -> None:
        self._require(SessionState.TAKING)
        self.buffer = text

    def advance(self, text: Optional[str] = None) -> None:
        self._require(SessionState.TAKING)
        if text is not None:
            self.buffer = text
        if not self.buffer.strip():
            raise ValidationError("Write an answer before moving on.", code="empty_answer")
        self._record_and_advance()
        # An explicit move restarts the wall clock for the next question.
        self._last_tick_at = self._clock()

    def tick(self, seconds: int = 1) -> None:
        for _ in range(seconds):
            if self.state != SessionState.TAKING:
                break
            self.countdown.tick()

    def sync(self, now: Optional[float] = None) -> None:
        """Apply the whole seconds elapsed since the last tick."""
        if self.state != SessionState.TAKING or self._last_tick_at is None:
            return
        now = self._clock() if now is None else now
        elapsed = int(now - self._last_tick_at)
        for _ in range(elapsed):
            if self.state != SessionState.TAKING:
                break
            self._last_tick_at += 1
            self.countdown.tick()

    def report_cheat(self, method: CheatMethod) -> Optional[CheatAttempt]:
        return self.cheat.report(method)

    def submit(self, captcha_token: Optional[str], store: Optional[SubmissionStore] = None) -> Submission:
        store = store or self.store
        with self._submit_lock:
            if self.state not in (SessionState.SUBMITTING, SessionState.SUBMIT_FAILED):
                raise ConflictError(f"Cannot submit while {self.state.value}.", code="not_ready")
            if self._in_flight:
                raise ConflictError("Submission already in progress.", code="submit_in_flight")
            self._in_flight = True
            self.state = SessionState.SUBMITTING

        try:
            self._verify_captcha(captcha_token)
            if store is None:
                raise UpstreamError("No submission store is available.")
            created = store.create_submission(self._build_submission())
        except (ValidationError, UpstreamError) as exc:
            # Captcha tokens are single-use: the client must fetch a new one.
            self.state = SessionState.SUBMIT_FAILED
            self.last_error = exc
            self.captcha_reset_required = True
            logger.warning("Attempt %s failed to submit: %s", self.id, exc.message)
            raise
        finally:
            self._in_flight = False

        self.submission = created
        self.state = SessionState.SUBMITTED
        self.last_error = None
        self.captcha_reset_required = False
        self._final_cheat_log = self.cheat.attempts
        logger.info("Attempt %s stored as submission %s", self.id, created.id)

        notify_quietly(self.notifier, "SUBMISSION_RECEIVED", {
            "userId": created.user_id,
            "username": created.username,
            "quizTitle": created.quiz_title,
            "cheatAttempts": len(created.cheat_attempts),
        })
        return created

    def cancel(self) -> None:
        """Tear down: stop the countdown so nothing fires after the attempt is dropped."""
        if self.countdown:
            self.countdown.cancel()

    # -- internals --

    def _require(self, state: SessionState) -> None:
        if self.state != state:
            raise ConflictError(f"Attempt is {self.state.value}, not {state.value}.", code="invalid_state")

    def _verify_captcha(self, token: Optional[str]) -> None:
        if not token:
            raise ValidationError("Complete the captcha first.", code="missing_captcha")
        if not self.verifier.verify(token):
            raise ValidationError("Captcha verification failed.", code="invalid_captcha")

    def _start_question(self, index: int) -> None:
        self.index = index
        self.buffer = ""
        self.countdown = Countdown(self._questions[index].time_limit, on_expire=self._on_expire)
        self.countdown.start()

    def _on_expire(self) -> None:
        logger.debug("Attempt %s: question %d timed out", self.id, self.index)
        self._record_and_advance()

    def _record_and_advance(self) -> None:
        question = self._questions[self.index]
        self.countdown.cancel()
        self.answers.append(Answer(
            question_id=question.id,
            question_text=question.text_key,
            answer=self.buffer,
            time_taken=compute_time_taken(question.time_limit, self.countdown.remaining),
        ))

        if self.index + 1 < len(self._questions):
            self._start_question(self.index + 1)
        else:
            self.countdown = None
            self.buffer = ""
            self.state = SessionState.SUBMITTING

    def _build_submission(self) -> Submission:
        return Submission(
            quiz_id=self.quiz_id,
            quiz_title=self.quiz_title,
            user_id=self.principal.id,
            username=self.principal.username,
            user_highest_role=self.principal.highest_role,
            answers=[a.model_dump(mode="json") for a in self.answers],
            cheat_attempts=[c.model_dump(mode="json") for c in self.cheat.attempts],
            submitted_at=utcnow(),
            status=SubmissionStatus.PENDING.value,
        )
