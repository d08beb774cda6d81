# Copyright (C) 2024 Novella Contributors
# SPDX-License-Identifier: GPL-3.0-or-later

"""Authentication: JWT and password hashing."""

import uuid
from datetime import datetime, timedelta, timezone

from fastapi import Depends, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import ExpiredSignatureError, JWTError, jwt
from passlib.context import CryptContext

from novella_server.config import Settings
from novella_server.exceptions import Unauthorized
from novella_server.models import User

bearer_scheme = HTTPBearer(auto_error=False)


class TokenInvalid(Unauthorized):
    def __init__(self, message: str = "Invalid access token"):
        super().__init__(message)


class TokenExpired(Unauthorized):
    def __init__(self, message: str = "Access token has expired"):
        super().__init__(message)


class Credentials:
    """Password hashing, user ids and stateless bearer tokens."""

    def __init__(
        self,
        secret: str,
        algorithm: str = "HS256",
        expires: timedelta = timedelta(days=7),
        bcrypt_rounds: int = 12,
    ) -> None:
        self.secret = secret
        self.algorithm = algorithm
        self.expires = expires
        self.pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto", bcrypt__rounds=bcrypt_rounds)

    @classmethod
    def from_settings(cls, settings: Settings) -> "Credentials":
        return cls(
            secret=settings.jwt_secret,
            algorithm=settings.jwt_algorithm,
            expires=timedelta(minutes=settings.jwt_expire_minutes),
            bcrypt_rounds=settings.bcrypt_rounds,
        )

    async def hash_password(self, password: str) -> str:
        """Hash a password for storage. bcrypt runs in the thread pool."""
        return await run_in_threadpool(self.pwd_context.hash, password)

    async def verify_password(self, plain: str, hashed: str) -> bool:
        """Verify a password against its hash. Malformed hashes never match."""
        try:
            return await run_in_threadpool(self.pwd_context.verify, plain, hashed)
        except ValueError:
            return False

    async def dummy_verify(self) -> bool:
        """Spend the same bcrypt time as verify_password for a user that does not exist. Always False."""
        return await run_in_threadpool(self.pwd_context.dummy_verify)

    @staticmethod
    def generate_user_id() -> str:
        return f"user_{uuid.uuid4().hex}"

    def mint_token(self, subject_id: str) -> str:
        """Create a JWT access token for subject_id."""
        now = datetime.now(timezone.utc)
        claims = {"sub": subject_id, "iat": now, "exp": now + self.expires}
        return jwt.encode(claims, self.secret, algorithm=self.algorithm)

    def validate_token(self, token: str) -> str:
        """Return the token's subject id. Raises TokenExpired or TokenInvalid."""
        try:
            payload = jwt.decode(token, self.secret, algorithms=[self.algorithm])
        except ExpiredSignatureError as e:
            raise TokenExpired() from e
        except JWTError as e:
            raise TokenInvalid() from e
        subject = payload.get("sub")
        if not subject or not isinstance(subject, str):
            raise TokenInvalid()
        return subject


async def get_current_user(
    request: Request,
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
) -> User:
    """Resolve the user from the Bearer token. Raises 401 if missing or invalid."""
    if not credentials:
        raise Unauthorized("Access token missing")
    service = request.app.state.accounts
    user_id = service.credentials.validate_token(credentials.credentials)
    user = await service.users.get_by_id(user_id)
    if user is None:
        raise Unauthorized("User not found")
    return user
