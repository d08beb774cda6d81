# Copyright (C) 2024 Novella Contributors
# SPDX-License-Identifier: GPL-3.0-or-later

"""SQLAlchemy user store tests on a temporary SQLite database."""

import pytest

from novella_server.database import init_db, make_engine, make_session_maker
from novella_server.exceptions import Conflict
from novella_server.services.users import SqlUserStore


@pytest.fixture
async def store(tmp_path):
    engine = make_engine(f"sqlite+aiosqlite:///{tmp_path / 'users.db'}")
    await init_db(engine)
    yield SqlUserStore(make_session_maker(engine))
    await engine.dispose()


async def test_create_and_lookup(store):
    created = await store.create_user("user_1", "alice", "a@b.com", "hash")
    assert created.created_at is not None
    assert (await store.get_by_id("user_1")).username == "alice"
    assert (await store.get_by_username("alice")).id == "user_1"
    assert (await store.get_by_email("a@b.com")).id == "user_1"
    assert await store.get_by_email("missing@b.com") is None


async def test_duplicate_username_conflicts(store):
    await store.create_user("user_1", "alice", "a@b.com", "hash")
    with pytest.raises(Conflict):
        await store.create_user("user_2", "alice", "other@b.com", "hash")


async def test_duplicate_email_conflicts(store):
    await store.create_user("user_1", "alice", "a@b.com", "hash")
    with pytest.raises(Conflict):
        await store.create_user("user_2", "bob", "a@b.com", "hash")


async def test_update_user(store):
    await store.create_user("user_1", "alice", "a@b.com", "hash")
    updated = await store.update_user("user_1", avatar_url="/api/auth/avatar/alice")
    assert updated.avatar_url == "/api/auth/avatar/alice"
    assert (await store.get_by_id("user_1")).avatar_url == "/api/auth/avatar/alice"


async def test_update_unknown_user(store):
    assert await store.update_user("user_missing", avatar_url="x") is None
