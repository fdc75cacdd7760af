from typing import Optional

from fastapi import Depends, HTTPException, Request, status
from sqlmodel import Session

from portal.config import Settings
from portal.database import get_session
from portal.errors import PermissionDenied
from portal.permissions import PermissionKey, Principal, build_principal, has_permission
from portal.review import ReviewWorkflow
from portal.stores import SqlProfileStore, SqlQuizStore, SqlRolePermissionStore, SqlSubmissionStore


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_current_user(request: Request, session: Session = Depends(get_session)) -> Optional[Principal]:
    user_id = request.session.get("user")
    if not user_id:
        return None
    profile = SqlProfileStore(session).get_profile(user_id)
    if not profile:
        return None
    request.app.state.revalidator.touch(user_id)
    settings = request.app.state.settings
    return build_principal(profile, SqlRolePermissionStore(session).as_mapping(), settings.super_admin_role_ids)


def require_user(user: Optional[Principal] = Depends(get_current_user)) -> Principal:
    if not user:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Not authenticated")
    return user


def require_admin_gate(request: Request, settings: Settings = Depends(get_settings)):
    if settings.admin_panel_password_hash and not request.session.get("admin_gate"):
        raise PermissionDenied("Unlock the admin panel first.", code="admin_gate_required")


def require_permission(key: PermissionKey):
    def checker(user: Principal = Depends(require_user)) -> Principal:
        if not has_permission(user, key):
            raise PermissionDenied(f"Missing permission {key.value}.")
        return user

    return checker


def get_review_workflow(request: Request, session: Session = Depends(get_session)) -> ReviewWorkflow:
    notifier = request.app.state.notifier
    return ReviewWorkflow(
        submissions=SqlSubmissionStore(session),
        quizzes=SqlQuizStore(session),
        probe=notifier,
        notifier=notifier,
    )
