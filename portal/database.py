from fastapi import Request
from sqlalchemy.engine import Engine
from sqlmodel import SQLModel, create_engine, Session

from portal.config import SQLITE_FALLBACK_URL


def build_engine(database_url: str = SQLITE_FALLBACK_URL) -> Engine:
    if database_url.startswith("sqlite"):
        # Local SQLite: FastAPI may hand the session to another worker thread
        return create_engine(database_url, connect_args={"check_same_thread": False})
    # PostgreSQL (Neon / Supabase / Render etc.)
    return create_engine(database_url, pool_pre_ping=True)


def create_db_and_tables(engine: Engine):
    SQLModel.metadata.create_all(engine)


def get_session(request: Request):
    with Session(request.app.state.engine) as session:
        yield session
