import logging
import secrets

from fastapi import APIRouter, Depends, Form, Request, status
from fastapi.responses import RedirectResponse
from passlib.context import CryptContext
from sqlmodel import Session

from portal.config import Settings
from portal.database import get_session
from portal.dependencies import get_settings, require_user
from portal.errors import PermissionDenied, UpstreamError, ValidationError
from portal.integrations import DiscordOAuthClient
from portal.permissions import Principal
from portal.stores import SqlProfileStore

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/auth", tags=["Auth"])
pwd_context = CryptContext(schemes=["pbkdf2_sha256"], deprecated="auto")


def hash_admin_password(password: str) -> str:
    """Produce a value for ADMIN_PANEL_PASSWORD_HASH."""
    return pwd_context.hash(password)


def get_oauth_client(settings: Settings = Depends(get_settings)) -> DiscordOAuthClient:
    if not settings.discord_oauth_enabled:
        raise UpstreamError("Discord login is not configured.")
    return DiscordOAuthClient(
        settings.discord_client_id,
        settings.discord_client_secret,
        settings.discord_redirect_uri,
        timeout=settings.http_timeout,
    )


@router.get("/login")
def login(request: Request, client: DiscordOAuthClient = Depends(get_oauth_client)):
    state = secrets.token_urlsafe(16)
    request.session["oauth_state"] = state
    return RedirectResponse(client.authorize_url(state), status_code=status.HTTP_303_SEE_OTHER)


@router.get("/callback")
def callback(
    request: Request,
    code: str,
    state: str,
    client: DiscordOAuthClient = Depends(get_oauth_client),
    session: Session = Depends(get_session),
):
    if state != request.session.pop("oauth_state", None):
        raise ValidationError("OAuth state mismatch.", code="oauth_state")

    discord_user = client.fetch_user(client.exchange_code(code))
    user_id = discord_user["id"]
    username = discord_user.get("global_name") or discord_user.get("username") or "Unknown"
    identity = request.app.state.identity
    roles = identity.get_user_roles(user_id)

    SqlProfileStore(session).upsert_profile(
        user_id, username, roles, highest_role=identity.get_highest_role(roles)
    )
    request.session.clear()
    request.session["user"] = user_id
    logger.info("User %s (%s) logged in", username, user_id)
    return RedirectResponse("/", status_code=status.HTTP_303_SEE_OTHER)


@router.get("/logout")
def logout(request: Request):
    request.session.clear()
    return RedirectResponse("/", status_code=status.HTTP_303_SEE_OTHER)


@router.get("/me")
def me(user: Principal = Depends(require_user)):
    return {
        "id": user.id,
        "username": user.username,
        "roles": sorted(user.roles),
        "highest_role": user.highest_role,
        "permissions": sorted(key.value for key in user.permissions),
    }


@router.post("/revalidate")
def revalidate(request: Request, user: Principal = Depends(require_user)):
    """Called by the client when the window regains focus."""
    try:
        profile = request.app.state.revalidator.on_focus(user.id)
    except PermissionDenied:
        request.session.clear()
        raise
    return {"revalidated": profile is not None}


@router.post("/admin-gate")
def admin_gate(
    request: Request,
    password: str = Form(...),
    captcha_token: str = Form(None),
    user: Principal = Depends(require_user),
    settings: Settings = Depends(get_settings),
):
    if not settings.admin_panel_password_hash:
        request.session["admin_gate"] = True
        return {"ok": True}

    if not captcha_token:
        raise ValidationError("Complete the captcha first.", code="missing_captcha")
    if not request.app.state.verifier.verify(captcha_token):
        raise ValidationError("Captcha verification failed.", code="invalid_captcha")
    if not pwd_context.verify(password, settings.admin_panel_password_hash):
        logger.warning("Wrong admin panel password from %s", user.username)
        raise PermissionDenied("Incorrect password.", code="admin_gate_incorrect")

    request.session["admin_gate"] = True
    logger.info("Admin %s unlocked the control panel", user.username)
    return {"ok": True}
