# Copyright (C) 2024 Novella Contributors
# SPDX-License-Identifier: GPL-3.0-or-later

"""
Account workflows: code requests, registration, login, avatars.

Every public method is an ordered sequence of stages: input validation,
authorization (code or password), storage read or write, then token
issuance. Rate limits are enforced by the routes before a method runs.
A stage ends the sequence by raising an AppError, which the HTTP layer
renders with its status code.
"""

import logging
import re
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

from novella_server.api.schemas import UserResponse
from novella_server.auth import Credentials
from novella_server.exceptions import Conflict, NotFound, Unauthorized, ValidationError
from novella_server.models import User
from novella_server.rate_limit import RateLimiter
from novella_server.services.avatars import AvatarStore
from novella_server.services.users import UserStore
from novella_server.services.verification import VerificationCodeStore

logger = logging.getLogger(__name__)

EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
USERNAME_MIN = 3
USERNAME_MAX = 20
PASSWORD_MIN = 6
INVALID_CREDENTIALS = "Invalid email or password"


@dataclass
class AuthResult:
    user: UserResponse
    token: str


def public_user(user: User) -> UserResponse:
    """The only way a user leaves this module: without its password hash."""
    return UserResponse.model_validate(user)


def _require(**fields: str | None) -> None:
    missing = [name for name, value in fields.items() if not value]
    if missing:
        raise ValidationError(f"Missing required fields: {', '.join(missing)}")


def _check_email(email: str) -> None:
    if not EMAIL_RE.match(email):
        raise ValidationError("Invalid email format")


class AccountService:
    def __init__(
        self,
        users: UserStore,
        codes: VerificationCodeStore,
        limiter: RateLimiter,
        credentials: Credentials,
        deliver: Callable[[str, str], Awaitable[None]],
        avatars: AvatarStore,
        avatar_max_bytes: int = 5 * 1024 * 1024,
    ) -> None:
        self.users = users
        self.codes = codes
        # Applied by the routes; held here with the other process-scoped state
        self.limiter = limiter
        self.credentials = credentials
        self.deliver = deliver
        self.avatars = avatars
        self.avatar_max_bytes = avatar_max_bytes

    def _issue_session(self, user: User) -> AuthResult:
        return AuthResult(user=public_user(user), token=self.credentials.mint_token(user.id))

    async def send_code(self, email: str | None) -> str:
        _require(email=email)
        _check_email(email)
        if await self.users.get_by_email(email):
            raise Conflict("Email is already registered")
        await self.codes.issue(email, deliver=self.deliver)
        return "Verification code sent, please check your inbox"

    async def verify_code(self, email: str | None, code: str | None) -> str:
        _require(email=email, code=code)
        await self.codes.verify(email, code)
        return "Verification code accepted"

    async def register(
        self,
        username: str | None,
        email: str | None,
        password: str | None,
        code: str | None,
    ) -> AuthResult:
        _require(username=username, email=email, password=password, verificationCode=code)
        if not USERNAME_MIN <= len(username) <= USERNAME_MAX:
            raise ValidationError(f"Username must be {USERNAME_MIN}-{USERNAME_MAX} characters long")
        if len(password) < PASSWORD_MIN:
            raise ValidationError(f"Password must be at least {PASSWORD_MIN} characters long")
        _check_email(email)

        await self.codes.verify(email, code)

        if await self.users.get_by_username(username):
            raise Conflict("Username already exists")
        if await self.users.get_by_email(email):
            raise Conflict("Email is already registered")

        password_hash = await self.credentials.hash_password(password)
        user_id = self.credentials.generate_user_id()
        user = await self.users.create_user(user_id, username, email, password_hash)
        logger.info("Registered %s", username)
        return self._issue_session(user)

    async def login(self, email: str | None, password: str | None) -> AuthResult:
        _require(email=email, password=password)
        user = await self.users.get_by_email(email)
        # Same error and the same bcrypt cost for unknown email and wrong password
        if user is None:
            await self.credentials.dummy_verify()
            raise Unauthorized(INVALID_CREDENTIALS)
        if not await self.credentials.verify_password(password, user.password_hash):
            raise Unauthorized(INVALID_CREDENTIALS)
        return self._issue_session(user)

    async def login_with_code(self, email: str | None, code: str | None) -> AuthResult:
        _require(email=email, verificationCode=code)
        await self.codes.verify(email, code)
        user = await self.users.get_by_email(email)
        if user is None:
            raise NotFound("User not found, please register first")
        return self._issue_session(user)

    async def logout(self) -> str:
        # Tokens are stateless; the client discards its copy.
        return "Logged out"

    async def update_avatar(
        self,
        user: User,
        data: bytes | None,
        content_type: str | None,
    ) -> AuthResult:
        if not data:
            raise ValidationError("Please choose an image file to upload")
        if not (content_type or "").startswith("image/"):
            raise ValidationError("Only image files can be uploaded")
        if len(data) > self.avatar_max_bytes:
            raise ValidationError("Image file is too large")
        ref = await self.avatars.save(user.username, data)
        updated = await self.users.update_user(user.id, avatar_url=ref)
        if updated is None:
            raise NotFound("User not found")
        # Re-mints a token; earlier tokens stay valid until they expire.
        return self._issue_session(updated)

    async def avatar_image(self, username: str) -> bytes:
        data = await self.avatars.load(username)
        if data is None:
            raise NotFound("Avatar not found")
        return data
