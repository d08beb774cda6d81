# Copyright (C) 2024 Novella Contributors
# SPDX-License-Identifier: GPL-3.0-or-later

"""User storage backed by SQLAlchemy."""

import logging
from typing import Protocol

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from novella_server.exceptions import Conflict, StorageFailed
from novella_server.models import User

logger = logging.getLogger(__name__)


class UserStore(Protocol):
    async def get_by_id(self, user_id: str) -> User | None:
        ...

    async def get_by_username(self, username: str) -> User | None:
        ...

    async def get_by_email(self, email: str) -> User | None:
        ...

    async def create_user(self, user_id: str, username: str, email: str, password_hash: str) -> User:
        ...

    async def update_user(self, user_id: str, **updates) -> User | None:
        ...


class SqlUserStore:
    """UserStore over an async session factory. Each call runs in its own session."""

    def __init__(self, session_maker: async_sessionmaker[AsyncSession]) -> None:
        self._session_maker = session_maker

    async def _get_one(self, *criteria) -> User | None:
        try:
            async with self._session_maker() as db:
                result = await db.execute(select(User).where(*criteria))
                return result.scalar_one_or_none()
        except SQLAlchemyError as e:
            logger.exception("User lookup failed")
            raise StorageFailed("User storage is unavailable") from e

    async def get_by_id(self, user_id: str) -> User | None:
        return await self._get_one(User.id == user_id)

    async def get_by_username(self, username: str) -> User | None:
        return await self._get_one(User.username == username)

    async def get_by_email(self, email: str) -> User | None:
        return await self._get_one(User.email == email)

    async def create_user(self, user_id: str, username: str, email: str, password_hash: str) -> User:
        user = User(id=user_id, username=username, email=email, password_hash=password_hash)
        try:
            async with self._session_maker() as db:
                db.add(user)
                await db.commit()
                await db.refresh(user)
        except IntegrityError as e:
            raise Conflict("Username or email is already registered") from e
        except SQLAlchemyError as e:
            logger.exception("Failed to create user %s", username)
            raise StorageFailed("Failed to create user") from e
        logger.info("Created user %s (%s)", username, user_id)
        return user

    async def update_user(self, user_id: str, **updates) -> User | None:
        try:
            async with self._session_maker() as db:
                result = await db.execute(select(User).where(User.id == user_id))
                user = result.scalar_one_or_none()
                if user is None:
                    return None
                for key, value in updates.items():
                    setattr(user, key, value)
                await db.commit()
                await db.refresh(user)
                return user
        except SQLAlchemyError as e:
            logger.exception("Failed to update user %s", user_id)
            raise StorageFailed("Failed to update user") from e
