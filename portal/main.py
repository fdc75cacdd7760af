import asyncio
import contextlib
import logging
import time
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from sqlalchemy.engine import Engine
from sqlmodel import Session
from starlette.middleware.sessions import SessionMiddleware

from portal.attempts import AttemptRegistry
from portal.config import Settings, get_settings
from portal.database import build_engine, create_db_and_tables
from portal.errors import PortalError
from portal.integrations import (
    BotNotifier,
    CaptchaVerifier,
    DiscordIdentityProvider,
    HCaptchaVerifier,
    IdentityProvider,
    NotificationSender,
)
from portal.logging_config import configure_logging
from portal.revalidation import Revalidator
from portal.routers import admin, applies, auth

logger = logging.getLogger(__name__)


async def portal_error_handler(request: Request, exc: PortalError):
    return JSONResponse({"error": exc.code, "detail": exc.message}, status_code=exc.status_code)


async def sweep_attempts(registry: AttemptRegistry, period: float = 60.0):
    while True:
        await asyncio.sleep(period)
        removed = registry.cleanup_expired()
        if removed:
            logger.info("Dropped %d expired quiz attempts", removed)


def create_app(
    settings: Optional[Settings] = None,
    engine: Optional[Engine] = None,
    identity: Optional[IdentityProvider] = None,
    verifier: Optional[CaptchaVerifier] = None,
    notifier: Optional[NotificationSender] = None,
    clock=time.monotonic,
    background_tasks: bool = True,
) -> FastAPI:
    settings = settings or get_settings()
    configure_logging(settings.log_level)
    engine = engine or build_engine(settings.database_url)
    identity = identity or DiscordIdentityProvider(
        settings.discord_bot_token, settings.discord_guild_id, timeout=settings.http_timeout
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        create_db_and_tables(engine)
        tasks = []
        if background_tasks:
            tasks.append(asyncio.create_task(app.state.revalidator.run_periodic()))
            tasks.append(asyncio.create_task(sweep_attempts(app.state.attempts)))
        yield
        for task in tasks:
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task

    app = FastAPI(title="Horizon Applications Portal", lifespan=lifespan)
    app.add_middleware(SessionMiddleware, secret_key=settings.session_secret)
    app.add_exception_handler(PortalError, portal_error_handler)

    app.state.settings = settings
    app.state.engine = engine
    app.state.clock = clock
    app.state.identity = identity
    app.state.verifier = verifier or HCaptchaVerifier(settings.hcaptcha_secret_key, timeout=settings.http_timeout)
    app.state.notifier = notifier or BotNotifier(settings.bot_api_url, timeout=settings.http_timeout)
    app.state.attempts = AttemptRegistry(ttl=settings.attempt_ttl, clock=clock)
    app.state.revalidator = Revalidator(
        identity,
        lambda: Session(engine),
        min_interval=settings.revalidate_min_interval,
        period=settings.revalidate_period,
        clock=clock,
    )

    app.include_router(auth.router)
    app.include_router(admin.router)
    app.include_router(applies.router)
    return app
