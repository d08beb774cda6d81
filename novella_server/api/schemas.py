# Copyright (C) 2024 Novella Contributors
# SPDX-License-Identifier: GPL-3.0-or-later

"""Pydantic schemas for API request/response."""

from datetime import datetime
from typing import Generic, TypeVar

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

T = TypeVar("T")


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# Requests. Presence and format are checked by the account service so that
# every input problem is reported the same way.
class SendCodeRequest(CamelModel):
    email: str | None = None


class VerifyCodeRequest(CamelModel):
    email: str | None = None
    code: str | None = None


class RegisterRequest(CamelModel):
    username: str | None = None
    email: str | None = None
    password: str | None = None
    verification_code: str | None = None


class LoginRequest(CamelModel):
    email: str | None = None
    password: str | None = None


class CodeLoginRequest(CamelModel):
    email: str | None = None
    verification_code: str | None = None


# Responses
class UserResponse(CamelModel):
    """Public view of a user. Deliberately has no password field."""

    id: str
    username: str
    email: str
    avatar_url: str | None = None
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True, alias_generator=to_camel, populate_by_name=True)


class AuthData(BaseModel):
    user: UserResponse
    token: str


class ApiResponse(BaseModel, Generic[T]):
    success: bool = True
    message: str
    data: T | None = None
    error: str | None = None
