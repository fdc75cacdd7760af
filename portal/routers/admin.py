import io
from typing import Optional

import pandas as pd
from fastapi import APIRouter, Depends
from fastapi.responses import StreamingResponse
from sqlmodel import Session, SQLModel, select

from portal.database import get_session
from portal.dependencies import get_review_workflow, require_admin_gate, require_permission
from portal.models import AuditLog, Quiz, SubmissionStatus, as_utc
from portal.permissions import PERMISSIONS, PermissionKey, Principal
from portal.review import Decision, ReviewWorkflow
from portal.stores import SqlQuizStore, SqlRolePermissionStore, SqlSubmissionStore

router = APIRouter(prefix="/admin", tags=["Admin"], dependencies=[Depends(require_admin_gate)])

can_review = require_permission(PermissionKey.ADMIN_SUBMISSIONS)
can_edit_quizzes = require_permission(PermissionKey.ADMIN_QUIZZES)
can_edit_permissions = require_permission(PermissionKey.ADMIN_PERMISSIONS)
can_read_audit_log = require_permission(PermissionKey.ADMIN_AUDIT_LOG)


class DecisionInput(SQLModel):
    outcome: Decision
    reason: Optional[str] = None
    proceed_without_notification: bool = False


class QuizInput(SQLModel):
    title_key: str
    description_key: Optional[str] = None
    instructions_key: Optional[str] = None
    questions: list[dict] = []
    allowed_take_roles: list[str] = []
    logo_url: Optional[str] = None
    banner_url: Optional[str] = None
    parent_quiz_id: Optional[str] = None


class RolePermissionInput(SQLModel):
    permissions: list[str]


# --- submissions ---

@router.get("/submissions")
def list_submissions(
    status: Optional[SubmissionStatus] = None,
    user: Principal = Depends(can_review),
    session: Session = Depends(get_session),
):
    return SqlSubmissionStore(session).list_submissions(status)


@router.get("/submissions/export")
def export_submissions(user: Principal = Depends(can_review), session: Session = Depends(get_session)):
    submissions = SqlSubmissionStore(session).list_submissions()

    data = []
    for sub in submissions:
        data.append({
            "Applicant": sub.username,
            "Discord ID": sub.user_id,
            "Highest Role": sub.user_highest_role,
            "Application": sub.quiz_title,
            # openpyxl cannot write tz-aware datetimes.
            "Submitted At": as_utc(sub.submitted_at).replace(tzinfo=None),
            "Status": sub.status,
            "Reviewer": sub.admin_username,
            "Reason": sub.reason,
            "Cheat Attempts": len(sub.cheat_attempts or []),
            "Total Time (s)": sum(a.get("time_taken", 0) for a in sub.answers or []),
        })

    df = pd.DataFrame(data)

    output = io.BytesIO()
    with pd.ExcelWriter(output, engine='openpyxl') as writer:
        df.to_excel(writer, index=False, sheet_name='Submissions')

    output.seek(0)

    headers = {
        'Content-Disposition': 'attachment; filename="submissions_export.xlsx"'
    }
    return StreamingResponse(output, headers=headers, media_type='application/vnd.openxmlformats-officedocument.spreadsheetml.sheet')


@router.get("/submissions/{submission_id}")
def get_submission(submission_id: str, user: Principal = Depends(can_review), session: Session = Depends(get_session)):
    return SqlSubmissionStore(session).get_submission(submission_id)


@router.post("/submissions/{submission_id}/take")
def take_submission(
    submission_id: str,
    user: Principal = Depends(can_review),
    workflow: ReviewWorkflow = Depends(get_review_workflow),
):
    return workflow.take(submission_id, user)


@router.post("/submissions/{submission_id}/decide")
def decide_submission(
    submission_id: str,
    data: DecisionInput,
    user: Principal = Depends(can_review),
    workflow: ReviewWorkflow = Depends(get_review_workflow),
):
    return workflow.decide(
        submission_id,
        user,
        data.outcome,
        reason=data.reason,
        proceed_without_notification=data.proceed_without_notification,
    )


@router.post("/submissions/{submission_id}/release")
def release_submission(
    submission_id: str,
    user: Principal = Depends(can_review),
    workflow: ReviewWorkflow = Depends(get_review_workflow),
):
    return workflow.release(submission_id, user)


@router.delete("/submissions/{submission_id}")
def delete_submission(
    submission_id: str,
    user: Principal = Depends(can_review),
    workflow: ReviewWorkflow = Depends(get_review_workflow),
):
    workflow.delete(submission_id, user)
    return {"deleted": submission_id}


# --- quizzes ---

@router.get("/quizzes")
def list_quizzes(user: Principal = Depends(can_edit_quizzes), session: Session = Depends(get_session)):
    return SqlQuizStore(session).list_quizzes()


@router.post("/quizzes")
def create_quiz(data: QuizInput, user: Principal = Depends(can_edit_quizzes), session: Session = Depends(get_session)):
    return SqlQuizStore(session).save_quiz(Quiz(**data.model_dump()))


@router.post("/quizzes/{quiz_id}/open")
def open_quiz(quiz_id: str, user: Principal = Depends(can_edit_quizzes), session: Session = Depends(get_session)):
    return SqlQuizStore(session).set_open(quiz_id, True)


@router.post("/quizzes/{quiz_id}/close")
def close_quiz(quiz_id: str, user: Principal = Depends(can_edit_quizzes), session: Session = Depends(get_session)):
    return SqlQuizStore(session).set_open(quiz_id, False)


# --- permissions & audit ---

@router.get("/permissions")
def list_permissions(user: Principal = Depends(can_edit_permissions), session: Session = Depends(get_session)):
    return {
        "catalogue": {key.value: description for key, description in PERMISSIONS.items()},
        "roles": SqlRolePermissionStore(session).as_mapping(),
    }


@router.put("/permissions/{role_id}")
def save_role_permissions(
    role_id: str,
    data: RolePermissionInput,
    user: Principal = Depends(can_edit_permissions),
    session: Session = Depends(get_session),
):
    return SqlRolePermissionStore(session).save(role_id, data.permissions)


@router.get("/audit-log")
def audit_log(user: Principal = Depends(can_read_audit_log), session: Session = Depends(get_session)):
    statement = select(AuditLog).order_by(AuditLog.timestamp.desc()).limit(100)
    return session.exec(statement).all()
