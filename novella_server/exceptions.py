# Copyright (C) 2024 Novella Contributors
# SPDX-License-Identifier: GPL-3.0-or-later

"""Application errors. Each kind maps to exactly one HTTP status."""

import math


class AppError(Exception):
    """Base application error with HTTP status."""

    status_code = 500

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code


class ValidationError(AppError):
    status_code = 400


class Unauthorized(AppError):
    status_code = 401


class NotFound(AppError):
    status_code = 404


class Conflict(AppError):
    status_code = 409


class RateLimited(AppError):
    """Raised when a client exceeds a rate-limit policy."""

    status_code = 429

    def __init__(self, message: str, retry_after: float, limit: int):
        super().__init__(message)
        self.retry_after = retry_after
        self.limit = limit

    @property
    def headers(self) -> dict[str, str]:
        seconds = str(max(1, math.ceil(self.retry_after)))
        return {
            "Retry-After": seconds,
            "RateLimit-Limit": str(self.limit),
            "RateLimit-Remaining": "0",
            "RateLimit-Reset": seconds,
        }


class DeliveryFailed(AppError):
    status_code = 500


class StorageFailed(AppError):
    status_code = 500


class Internal(AppError):
    status_code = 500
