# Copyright (C) 2024 Novella Contributors
# SPDX-License-Identifier: GPL-3.0-or-later

"""Single-use email verification codes held in process memory."""

import logging
import secrets
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

from novella_server.exceptions import DeliveryFailed, ValidationError
from novella_server.locks import KeyedLock

logger = logging.getLogger(__name__)

Deliver = Callable[[str, str], Awaitable[None]]


class VerificationError(ValidationError):
    """Base class for code verification failures."""


class CodeNotFound(VerificationError):
    def __init__(self) -> None:
        super().__init__("Verification code does not exist or has expired")


class CodeExpired(VerificationError):
    def __init__(self) -> None:
        super().__init__("Verification code has expired")


class CodeInvalid(VerificationError):
    def __init__(self, attempts_remaining: int) -> None:
        super().__init__("Verification code is incorrect")
        self.attempts_remaining = attempts_remaining


class CodeExhausted(VerificationError):
    def __init__(self) -> None:
        super().__init__("Too many incorrect attempts, please request a new code")


@dataclass
class VerificationEntry:
    email: str
    code: str
    issued_at: float
    expires_at: float
    attempts_remaining: int


class VerificationCodeStore:
    """
    Issues and consumes numeric one-time codes keyed by email.

    At most one live entry exists per email; issuing again replaces it.
    An entry is removed when it is consumed, when it is found expired, or
    when its attempts run out. In the last case a marker is kept so the next
    verify call reports exhaustion instead of "not found"; the marker is
    cleared by that call, by a new issue, or once the locked-out code would
    have expired. Calls for the same email are serialized.
    """

    def __init__(
        self,
        code_length: int = 6,
        ttl: float = 600,
        max_attempts: int = 5,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if code_length < 1 or ttl <= 0 or max_attempts < 1:
            raise ValueError("code_length, ttl and max_attempts must be positive")
        self.code_length = code_length
        self.ttl = ttl
        self.max_attempts = max_attempts
        self._clock = clock
        self._entries: dict[str, VerificationEntry] = {}
        self._exhausted: dict[str, float] = {}
        self._locks = KeyedLock()

    def _generate(self) -> str:
        return "".join(secrets.choice("0123456789") for _ in range(self.code_length))

    async def issue(self, email: str, deliver: Deliver | None = None) -> str:
        """Create a fresh code for email, hand it to deliver, and return it."""
        async with self._locks.hold(email):
            now = self._clock()
            entry = VerificationEntry(
                email=email,
                code=self._generate(),
                issued_at=now,
                expires_at=now + self.ttl,
                attempts_remaining=self.max_attempts,
            )
            self._entries[email] = entry
            self._exhausted.pop(email, None)
            if deliver is not None:
                try:
                    await deliver(email, entry.code)
                except Exception as e:
                    if self._entries.get(email) is entry:
                        del self._entries[email]
                    logger.warning("Verification code delivery to %s failed: %s", email, e)
                    if isinstance(e, DeliveryFailed):
                        raise
                    raise DeliveryFailed("Failed to send verification code, please try again later") from e
            logger.info("Issued verification code for %s", email)
            return entry.code

    async def verify(self, email: str, submitted: str) -> None:
        """Consume the code for email. Raises a VerificationError on any failure."""
        submitted = submitted.strip()
        async with self._locks.hold(email):
            now = self._clock()
            entry = self._entries.get(email)
            if entry is None:
                marker_expires_at = self._exhausted.pop(email, None)
                if marker_expires_at is not None and now <= marker_expires_at:
                    raise CodeExhausted()
                raise CodeNotFound()
            if now > entry.expires_at:
                del self._entries[email]
                raise CodeExpired()
            if not secrets.compare_digest(submitted.encode(), entry.code.encode()):
                entry.attempts_remaining -= 1
                if entry.attempts_remaining <= 0:
                    del self._entries[email]
                    self._exhausted[email] = entry.expires_at
                    logger.warning("Verification attempts exhausted for %s", email)
                    raise CodeExhausted()
                raise CodeInvalid(entry.attempts_remaining)
            del self._entries[email]
            logger.info("Verification code consumed for %s", email)

    def purge_expired(self) -> int:
        """Remove expired entries and exhaustion markers. Returns how many were removed."""
        now = self._clock()
        expired = [email for email, entry in self._entries.items() if now > entry.expires_at]
        for email in expired:
            del self._entries[email]
        markers = [email for email, expires_at in self._exhausted.items() if now > expires_at]
        for email in markers:
            del self._exhausted[email]
        return len(expired) + len(markers)

    def __contains__(self, email: str) -> bool:
        return email in self._entries

    def __len__(self) -> int:
        return len(self._entries)
