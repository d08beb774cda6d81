# Copyright (C) 2024 Novella Contributors
# SPDX-License-Identifier: GPL-3.0-or-later

"""Pytest fixtures. Collaborators are in-memory; no database or SMTP server needed."""

import os

os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///./novella-test.db")
os.environ.setdefault("BCRYPT_ROUNDS", "4")
os.environ.setdefault("JWT_SECRET", "test-secret")
os.environ.setdefault("ENVIRONMENT", "test")

from datetime import datetime, timezone

import pytest
from httpx import ASGITransport, AsyncClient

from novella_server.auth import Credentials
from novella_server.config import settings
from novella_server.exceptions import DeliveryFailed
from novella_server.main import app
from novella_server.models import User
from novella_server.rate_limit import AttemptLedger, RateLimiter, default_policies
from novella_server.services.accounts import AccountService
from novella_server.services.avatars import FileAvatarStore
from novella_server.services.verification import VerificationCodeStore


class FakeClock:
    """Manually advanced clock, in seconds."""

    def __init__(self, start: float = 1_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class MemoryUserStore:
    """UserStore kept in dicts. Records every call so tests can assert on side effects."""

    def __init__(self) -> None:
        self.users: dict[str, User] = {}
        self.calls: list[str] = []

    async def get_by_id(self, user_id: str) -> User | None:
        self.calls.append("get_by_id")
        return self.users.get(user_id)

    async def get_by_username(self, username: str) -> User | None:
        self.calls.append("get_by_username")
        return next((u for u in self.users.values() if u.username == username), None)

    async def get_by_email(self, email: str) -> User | None:
        self.calls.append("get_by_email")
        return next((u for u in self.users.values() if u.email == email), None)

    async def create_user(self, user_id: str, username: str, email: str, password_hash: str) -> User:
        self.calls.append("create_user")
        now = datetime.now(timezone.utc)
        user = User(
            id=user_id,
            username=username,
            email=email,
            password_hash=password_hash,
            created_at=now,
            updated_at=now,
        )
        self.users[user_id] = user
        return user

    async def update_user(self, user_id: str, **updates) -> User | None:
        self.calls.append("update_user")
        user = self.users.get(user_id)
        if user is None:
            return None
        for key, value in updates.items():
            setattr(user, key, value)
        user.updated_at = datetime.now(timezone.utc)
        return user


class RecordingMailer:
    """Stands in for SMTP delivery; remembers the last code sent to each address."""

    def __init__(self) -> None:
        self.sent: dict[str, str] = {}
        self.fail = False

    async def __call__(self, email: str, code: str) -> None:
        if self.fail:
            raise DeliveryFailed("SMTP unavailable")
        self.sent[email] = code


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def ledger(clock):
    return AttemptLedger(clock=clock)


@pytest.fixture
def limiter(ledger):
    return RateLimiter(ledger, default_policies(settings))


@pytest.fixture
def codes(clock):
    return VerificationCodeStore(code_length=6, ttl=600, max_attempts=5, clock=clock)


@pytest.fixture
def users():
    return MemoryUserStore()


@pytest.fixture
def mailer():
    return RecordingMailer()


@pytest.fixture
def credentials():
    return Credentials(secret="test-secret", bcrypt_rounds=4)


@pytest.fixture
def accounts(users, codes, limiter, credentials, mailer, tmp_path):
    return AccountService(
        users=users,
        codes=codes,
        limiter=limiter,
        credentials=credentials,
        deliver=mailer,
        avatars=FileAvatarStore(tmp_path),
        avatar_max_bytes=1024,
    )


@pytest.fixture
async def client(accounts):
    app.state.accounts = accounts
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


@pytest.fixture
async def alice(accounts, codes, users):
    """A registered user: alice / a@b.com / secret1."""
    code = await codes.issue("a@b.com")
    await accounts.register("alice", "a@b.com", "secret1", code)
    users.calls.clear()
    return next(iter(users.users.values()))
