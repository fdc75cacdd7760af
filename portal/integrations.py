"""
Adapters for the services the portal talks to: Discord (identity and roles),
hCaptcha (anti-bot) and the community bot's HTTP API (notifications).
"""

import logging
from typing import Any, Iterable, Optional, Protocol
from urllib.parse import urlencode

import requests

from portal.errors import PermissionDenied, UpstreamError

logger = logging.getLogger(__name__)

DISCORD_API = "https://discord.com/api/v10"
HCAPTCHA_VERIFY_URL = "https://api.hcaptcha.com/siteverify"


class IdentityProvider(Protocol):
    def get_user_roles(self, user_id: str) -> frozenset[str]: ...

    def get_highest_role(self, role_ids: Iterable[str]) -> Optional[str]: ...


class CaptchaVerifier(Protocol):
    def verify(self, token: str) -> bool: ...


class NotificationProbe(Protocol):
    def probe(self) -> bool: ...


class NotificationSender(Protocol):
    def notify(self, event: str, payload: dict[str, Any]) -> None: ...


def notify_quietly(notifier: Optional[NotificationSender], event: str, payload: dict[str, Any]) -> bool:
    """Fire-and-forget delivery; a failure is logged and never propagated."""
    if notifier is None:
        return False
    try:
        notifier.notify(event, payload)
    except UpstreamError as exc:
        logger.warning("Notification %s was not delivered: %s", event, exc.message)
        return False
    return True


def pick_highest_role(guild_roles: Iterable[dict[str, Any]], role_ids: Iterable[str]) -> Optional[str]:
    """Name of the held role with the greatest Discord ``position``, or None."""
    held = set(role_ids)
    candidates = [role for role in guild_roles if role.get("id") in held]
    if not candidates:
        return None
    return max(candidates, key=lambda role: role.get("position", 0)).get("name")


class DiscordIdentityProvider:
    """Reads guild membership with the bot token."""

    def __init__(self, bot_token: Optional[str], guild_id: Optional[str], timeout: float = 5.0):
        self.bot_token = bot_token
        self.guild_id = guild_id
        self.timeout = timeout

    def _get(self, path: str):
        if not self.bot_token or not self.guild_id:
            raise UpstreamError("Discord bot token or guild id is not configured.")
        url = f"{DISCORD_API}/guilds/{self.guild_id}{path}"
        try:
            return requests.get(url, headers={"Authorization": f"Bot {self.bot_token}"}, timeout=self.timeout)
        except requests.RequestException as exc:
            raise UpstreamError(f"Discord is unreachable: {exc}") from exc

    def get_member(self, user_id: str) -> dict[str, Any]:
        response = self._get(f"/members/{user_id}")
        if response.status_code == 404:
            raise PermissionDenied("User is no longer a member of the guild.", code="not_in_guild")
        if not response.ok:
            raise UpstreamError(f"Discord member lookup failed ({response.status_code}).")
        return response.json()

    def get_user_roles(self, user_id: str) -> frozenset[str]:
        return frozenset(self.get_member(user_id).get("roles", []))

    def get_guild_roles(self) -> list[dict[str, Any]]:
        response = self._get("/roles")
        if not response.ok:
            raise UpstreamError(f"Discord role lookup failed ({response.status_code}).")
        return response.json()

    def get_highest_role(self, role_ids: Iterable[str]) -> Optional[str]:
        role_ids = list(role_ids)
        if not role_ids:
            return None
        return pick_highest_role(self.get_guild_roles(), role_ids)


class DiscordOAuthClient:
    def __init__(self, client_id: str, client_secret: str, redirect_uri: str, timeout: float = 5.0):
        self.client_id = client_id
        self.client_secret = client_secret
        self.redirect_uri = redirect_uri
        self.timeout = timeout

    def authorize_url(self, state: str) -> str:
        query = urlencode({
            "client_id": self.client_id,
            "redirect_uri": self.redirect_uri,
            "response_type": "code",
            "scope": "identify guilds.members.read",
            "state": state,
        })
        return f"https://discord.com/oauth2/authorize?{query}"

    def exchange_code(self, code: str) -> str:
        data = {
            "client_id": self.client_id,
            "client_secret": self.client_secret,
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": self.redirect_uri,
        }
        try:
            response = requests.post(f"{DISCORD_API}/oauth2/token", data=data, timeout=self.timeout)
        except requests.RequestException as exc:
            raise UpstreamError(f"Discord is unreachable: {exc}") from exc
        if not response.ok:
            raise PermissionDenied("Discord rejected the authorization code.", code="oauth_failed")
        return response.json()["access_token"]

    def fetch_user(self, access_token: str) -> dict[str, Any]:
        try:
            response = requests.get(
                f"{DISCORD_API}/users/@me",
                headers={"Authorization": f"Bearer {access_token}"},
                timeout=self.timeout,
            )
        except requests.RequestException as exc:
            raise UpstreamError(f"Discord is unreachable: {exc}") from exc
        if not response.ok:
            raise UpstreamError(f"Discord user lookup failed ({response.status_code}).")
        return response.json()


class HCaptchaVerifier:
    def __init__(self, secret_key: Optional[str], timeout: float = 5.0):
        self.secret_key = secret_key
        self.timeout = timeout

    def verify(self, token: str) -> bool:
        if not self.secret_key:
            raise UpstreamError("HCAPTCHA_SECRET_KEY is not configured.")
        try:
            response = requests.post(
                HCAPTCHA_VERIFY_URL,
                data={"response": token, "secret": self.secret_key},
                timeout=self.timeout,
            )
            data = response.json()
        except (requests.RequestException, ValueError) as exc:
            raise UpstreamError(f"Captcha service is unreachable: {exc}") from exc

        if not data.get("success"):
            logger.warning("[HCAPTCHA] Verification failed: %s", data.get("error-codes"))
            return False
        return True


class BotNotifier:
    """Talks to the bot's ``/health`` and ``/notify`` endpoints."""

    def __init__(self, base_url: Optional[str], timeout: float = 5.0):
        self.base_url = base_url.rstrip("/") if base_url else None
        self.timeout = timeout

    def probe(self) -> bool:
        if not self.base_url:
            return False
        try:
            response = requests.get(f"{self.base_url}/health", timeout=self.timeout)
        except requests.RequestException as exc:
            logger.info("Bot health probe failed: %s", exc)
            return False
        return response.ok

    def notify(self, event: str, payload: dict[str, Any]) -> None:
        if not self.base_url:
            raise UpstreamError("BOT_API_URL is not configured.")
        try:
            response = requests.post(
                f"{self.base_url}/notify",
                json={"type": event, "payload": payload},
                timeout=self.timeout,
            )
        except requests.RequestException as exc:
            raise UpstreamError(f"Bot is unreachable: {exc}") from exc
        if not response.ok:
            raise UpstreamError(f"Bot rejected {event} ({response.status_code}).")
