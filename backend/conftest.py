import asyncio
import os

# Settings are read at import time; point the app at an in-memory database first
os.environ["DATABASE_URL"] = "sqlite://"
os.environ.setdefault("SECRET_KEY", "test-secret-key-with-enough-bytes-for-hs256")
os.environ.setdefault("RATE_LIMIT_STORAGE_URL", "memory://")
os.environ.setdefault("PUSH_RECEIPT_CHECK_ENABLED", "false")

from unittest.mock import patch

import pytest
from fastapi.testclient import TestClient
from sqlmodel import SQLModel

from app.auth.security import create_access_token
from app.core.database import SessionLocal, engine, init_db
from app.notifications.exceptions import ProviderBatchFailure
from app.notifications.gateway import DeliveryReceipt, is_expo_push_token
from app.notifications.hub import ConnectionHub
from app.notifications.models import Student, Teacher, UserRole


def expo_token(name) -> str:
    return f"ExponentPushToken[{name}]"


class FakePushGateway:
    """Records every submitted batch; tokens can be told to fail, stall or error."""

    max_batch_size = 100

    def __init__(self):
        self.batches: list[list[dict]] = []
        self.failing_tokens: set[str] = set()
        self.slow_tokens: set[str] = set()
        self.error_tokens: dict[str, str] = {}
        self.delay = 1.0
        self.closed = False

    def is_valid_token(self, token) -> bool:
        return is_expo_push_token(token)

    def build_message(self, token, content) -> dict:
        return {"to": token, "title": content.title, "body": content.body, "data": content.data}

    @property
    def sent_tokens(self) -> list[str]:
        return [m["to"] for batch in self.batches for m in batch]

    async def send(self, messages):
        index = len(self.batches)
        self.batches.append(messages)
        tokens = [m["to"] for m in messages]
        if self.failing_tokens.intersection(tokens):
            raise ProviderBatchFailure("provider rejected the batch")
        if self.slow_tokens.intersection(tokens):
            await asyncio.sleep(self.delay)
        receipts = []
        for i, token in enumerate(tokens):
            if token in self.error_tokens:
                receipts.append(DeliveryReceipt(token=token, status="error", error=self.error_tokens[token],
                                                message="delivery failed"))
            else:
                receipts.append(DeliveryReceipt(token=token, status="ok", ticket_id=f"ticket-{index}-{i}"))
        return receipts

    async def aclose(self):
        self.closed = True


class FakeConnection:
    """Stands in for a WebSocket; records frames sent to the client."""

    def __init__(self, fail: bool = False):
        self.sent: list[dict] = []
        self.fail = fail
        self.closed_with = None

    async def send_json(self, data):
        if self.fail:
            raise RuntimeError("connection lost")
        self.sent.append(data)

    async def close(self, code: int = 1000):
        self.closed_with = code

    def frames(self, event: str) -> list:
        return [frame["data"] for frame in self.sent if frame["event"] == event]


class InMemoryUserStore:
    """UserStore keeping Teacher/Student objects in a dict."""

    def __init__(self, users=()):
        self.users = {}
        for user in users:
            self.users[(user.role, str(user.id))] = user

    async def get(self, user_id, role):
        return self.users.get((UserRole(role), str(user_id)))

    async def replace_endpoint_token(self, user_id, role, token, device_id):
        user = await self.get(user_id, role)
        if user is None:
            return False
        user.replace_endpoint_token(token, device_id)
        return True

    async def remove_endpoint_token(self, user_id, role, device_id):
        user = await self.get(user_id, role)
        if user is None:
            return None
        return user.remove_endpoint_token(device_id)

    async def find_eligible(self, role, class_name=None, section=None):
        return [
            user for (user_role, _), user in self.users.items()
            if user_role == UserRole(role)
            and user.is_eligible
            and (class_name is None or user.class_name == class_name)
            and (not section or user.section == section)
        ]

    async def remove_tokens(self, tokens):
        tokens = set(tokens)
        return sum(1 for user in self.users.values() if user.remove_tokens(tokens))


@pytest.fixture(autouse=True)
def fresh_database():
    """Every test starts with empty teachers/students/notifications tables."""
    init_db()
    yield
    SQLModel.metadata.drop_all(bind=engine)


@pytest.fixture
def session_factory():
    return SessionLocal


@pytest.fixture
def add_user(session_factory):
    """Insert a Teacher or Student row and return it."""
    def _add(model=Teacher, **fields):
        fields.setdefault("is_verified", True)
        fields.setdefault("is_active", True)
        user = model(**fields)
        with session_factory() as db:
            db.add(user)
            db.commit()
        return user
    return _add


@pytest.fixture
def fake_gateway():
    return FakePushGateway()


@pytest.fixture
def hub():
    return ConnectionHub()


@pytest.fixture
def make_teacher():
    def _make(**fields):
        fields.setdefault("is_verified", True)
        fields.setdefault("is_active", True)
        return Teacher(**fields)
    return _make


@pytest.fixture
def make_student():
    def _make(**fields):
        fields.setdefault("is_verified", True)
        fields.setdefault("is_active", True)
        return Student(**fields)
    return _make


@pytest.fixture
def client(fake_gateway):
    """Test client with the push provider replaced by the fake gateway."""
    from app.main import app

    with patch("app.main.build_push_gateway", return_value=fake_gateway):
        with TestClient(app) as test_client:
            yield test_client


@pytest.fixture
def auth_headers():
    def _headers(user_id, role: str) -> dict:
        token = create_access_token(str(user_id), role)
        return {"Authorization": f"Bearer {token}"}
    return _headers


@pytest.fixture(autouse=True)
def reset_rate_limits():
    """Clear SlowAPI state between tests."""
    from app.core.limiter import limiter
    yield
    limiter.reset()
