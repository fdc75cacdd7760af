import pytest
from fastapi.testclient import TestClient
from sqlalchemy.pool import StaticPool
from sqlmodel import Session, SQLModel, create_engine

from portal.config import Settings
from portal.dependencies import get_current_user
from portal.errors import PermissionDenied, UpstreamError
from portal.integrations import pick_highest_role
from portal.main import create_app
from portal.models import Quiz, Submission, SubmissionStatus, utcnow
from portal.permissions import PermissionKey, Principal


class FakeClock:
    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeVerifier:
    def __init__(self):
        self.ok = True
        self.error = None
        self.tokens = []

    def verify(self, token):
        self.tokens.append(token)
        if self.error:
            raise self.error
        return self.ok


class FakeNotifier:
    def __init__(self):
        self.healthy = True
        self.fail = False
        self.events = []

    def probe(self):
        return self.healthy

    def notify(self, event, payload):
        if self.fail:
            raise UpstreamError("bot down")
        self.events.append((event, payload))

    @property
    def event_names(self):
        return [event for event, _ in self.events]


class FakeIdentity:
    def __init__(self, roles=None, guild_roles=None):
        self.roles = dict(roles or {})
        self.guild_roles = list(guild_roles or [])
        self.calls = []

    def get_user_roles(self, user_id):
        self.calls.append(user_id)
        if user_id not in self.roles:
            raise PermissionDenied("not in guild", code="not_in_guild")
        return frozenset(self.roles[user_id])

    def get_highest_role(self, role_ids):
        return pick_highest_role(self.guild_roles, role_ids)


def make_principal(user_id="100", username="alice", roles=(), permissions=(), highest_role=None):
    return Principal(
        id=user_id,
        username=username,
        roles=frozenset(roles),
        permissions=frozenset(permissions),
        highest_role=highest_role,
    )


def make_quiz(time_limits=(60, 30), is_open=True, allowed_take_roles=None, **kwargs):
    return Quiz(
        title_key="Police Department",
        is_open=is_open,
        questions=[
            {"id": f"q{i + 1}", "text_key": f"Question {i + 1}", "time_limit": limit}
            for i, limit in enumerate(time_limits)
        ],
        allowed_take_roles=allowed_take_roles or [],
        **kwargs,
    )


def make_submission(quiz, user_id="100", username="alice", status=SubmissionStatus.PENDING, submitted_at=None, **kwargs):
    return Submission(
        quiz_id=quiz.id,
        quiz_title=quiz.title_key,
        user_id=user_id,
        username=username,
        answers=[{"question_id": "q1", "question_text": "Question 1", "answer": "Alpha", "time_taken": 10}],
        cheat_attempts=[],
        submitted_at=submitted_at or utcnow(),
        status=status.value,
        **kwargs,
    )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def verifier():
    return FakeVerifier()


@pytest.fixture
def notifier():
    return FakeNotifier()


@pytest.fixture
def identity():
    return FakeIdentity()


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool
    )
    SQLModel.metadata.create_all(engine)
    return engine


@pytest.fixture
def session(engine):
    with Session(engine) as session:
        yield session


@pytest.fixture
def applicant():
    return make_principal("100", "alice", roles={"1"})


@pytest.fixture
def reviewer():
    return make_principal(
        "200", "rita", roles={"50"},
        permissions={PermissionKey.ADMIN_SUBMISSIONS, PermissionKey.ADMIN_QUIZZES},
    )


@pytest.fixture
def other_reviewer():
    return make_principal("201", "ross", roles={"50"}, permissions={PermissionKey.ADMIN_SUBMISSIONS})


@pytest.fixture
def settings():
    return Settings(session_secret="s" * 32, super_admin_role_ids=frozenset({"999"}))


@pytest.fixture
def app(settings, engine, identity, verifier, notifier, clock):
    return create_app(
        settings=settings,
        engine=engine,
        identity=identity,
        verifier=verifier,
        notifier=notifier,
        clock=clock,
        background_tasks=False,
    )


@pytest.fixture
def client(app):
    with TestClient(app) as client:
        yield client


@pytest.fixture
def login(app):
    """Switch the acting user for subsequent requests (``None`` logs out)."""

    def _login(principal):
        app.dependency_overrides[get_current_user] = lambda: principal

    yield _login
    app.dependency_overrides.clear()
