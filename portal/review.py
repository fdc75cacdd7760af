"""
Reviewer side of a submission.

    pending --take--> taken --decide--> accepted | refused
       ^                |
       +----release-----+

Every transition is a compare-and-swap on the stored status, so two reviewers
racing for the same submission cannot both win. Decide and release also match
the claimant read at the start of the call.
"""

import logging
from enum import Enum
from typing import Optional

from portal.errors import ConflictError, NotificationUnavailable, PermissionDenied
from portal.integrations import NotificationProbe, NotificationSender, notify_quietly
from portal.models import Submission, SubmissionStatus
from portal.permissions import PermissionKey, Principal, has_permission
from portal.stores import QuizStore, SubmissionStore

logger = logging.getLogger(__name__)


class Decision(str, Enum):
    ACCEPTED = "accepted"
    REFUSED = "refused"


DECISION_EVENTS = {
    Decision.ACCEPTED: "SUBMISSION_ACCEPTED",
    Decision.REFUSED: "SUBMISSION_REFUSED",
}


def can_take(reviewer: Principal, allowed_take_roles: list[str]) -> bool:
    if reviewer.is_super_admin:
        return True
    if not has_permission(reviewer, PermissionKey.ADMIN_SUBMISSIONS):
        return False
    if not allowed_take_roles:
        return True
    return bool(reviewer.roles & set(allowed_take_roles))


class ReviewWorkflow:
    def __init__(
        self,
        submissions: SubmissionStore,
        quizzes: QuizStore,
        probe: Optional[NotificationProbe] = None,
        notifier: Optional[NotificationSender] = None,
    ):
        self.submissions = submissions
        self.quizzes = quizzes
        self.probe = probe
        self.notifier = notifier

    def take(self, submission_id: str, reviewer: Principal) -> Submission:
        submission = self.submissions.get_submission(submission_id)
        quiz = self.quizzes.get_quiz(submission.quiz_id)
        if not can_take(reviewer, quiz.allowed_take_roles or []):
            raise PermissionDenied("You are not allowed to take submissions for this application.")

        try:
            taken = self.submissions.update_submission_status(
                submission_id, SubmissionStatus.PENDING, SubmissionStatus.TAKEN, reviewer
            )
        except ConflictError as exc:
            raise ConflictError("Someone else already took this submission.", code="already_taken") from exc

        logger.info("Submission %s taken by %s", submission_id, reviewer.username)
        self._notify("SUBMISSION_TAKEN", taken)
        return taken

    def decide(
        self,
        submission_id: str,
        reviewer: Principal,
        outcome: Decision,
        reason: Optional[str] = None,
        proceed_without_notification: bool = False,
    ) -> Submission:
        outcome = Decision(outcome)
        submission = self.submissions.get_submission(submission_id)
        self._require_claim(submission, reviewer)
        if submission.status != SubmissionStatus.TAKEN.value:
            raise ConflictError(
                f"Submission is {submission.status}; take it before deciding.", code="not_taken"
            )

        claim = self._claimant(submission, reviewer)

        if not proceed_without_notification and not self._notifier_healthy():
            # Nothing has changed yet: the caller asks the user and retries.
            raise NotificationUnavailable(
                "The notification bot is unreachable. Proceed without notifying the applicant?"
            )

        decided = self.submissions.update_submission_status(
            submission_id,
            SubmissionStatus.TAKEN,
            SubmissionStatus(outcome.value),
            reviewer,
            reason,
            expected_admin_id=claim,
        )
        logger.info("Submission %s %s by %s", submission_id, outcome.value, reviewer.username)
        if proceed_without_notification:
            logger.warning("Submission %s decided without notifying %s", submission_id, decided.username)
        else:
            self._notify(DECISION_EVENTS[outcome], decided)
        return decided

    def release(self, submission_id: str, reviewer: Principal) -> Submission:
        submission = self.submissions.get_submission(submission_id)
        self._require_claim(submission, reviewer)
        released = self.submissions.update_submission_status(
            submission_id,
            SubmissionStatus.TAKEN,
            SubmissionStatus.PENDING,
            reviewer,
            expected_admin_id=self._claimant(submission, reviewer),
        )
        logger.info("Submission %s released by %s", submission_id, reviewer.username)
        return released

    def delete(self, submission_id: str, reviewer: Principal) -> None:
        if not reviewer.is_super_admin:
            raise PermissionDenied("Only super admins can delete submissions.")
        self.submissions.delete_submission(submission_id)
        logger.info("Submission %s deleted by %s", submission_id, reviewer.username)

    def _require_claim(self, submission: Submission, reviewer: Principal) -> None:
        if reviewer.is_super_admin:
            return
        if not has_permission(reviewer, PermissionKey.ADMIN_SUBMISSIONS):
            raise PermissionDenied("You no longer have access to submissions.")
        if submission.admin_id != reviewer.id:
            raise PermissionDenied("Only the reviewer who took this submission can act on it.")

    @staticmethod
    def _claimant(submission: Submission, reviewer: Principal) -> Optional[str]:
        """Claim the write must still match; super admins may override any claim."""
        return None if reviewer.is_super_admin else submission.admin_id

    def _notifier_healthy(self) -> bool:
        if self.probe is None:
            return False
        try:
            return self.probe.probe()
        except Exception as exc:  # any probe failure counts as unhealthy
            logger.info("Notification probe raised: %s", exc)
            return False

    def _notify(self, event: str, submission: Submission) -> None:
        notify_quietly(self.notifier, event, {
            "userId": submission.user_id,
            "username": submission.username,
            "quizTitle": submission.quiz_title,
            "status": submission.status,
            "adminUsername": submission.admin_username,
            "reason": submission.reason,
        })

