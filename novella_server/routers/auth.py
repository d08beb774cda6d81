# Copyright (C) 2024 Novella Contributors
# SPDX-License-Identifier: GPL-3.0-or-later

"""Authentication API routes."""

from fastapi import APIRouter, Depends, File, Request, UploadFile, status
from fastapi.responses import Response

from novella_server.api.schemas import (
    ApiResponse,
    AuthData,
    CodeLoginRequest,
    LoginRequest,
    RegisterRequest,
    SendCodeRequest,
    UserResponse,
    VerifyCodeRequest,
)
from novella_server.auth import get_current_user
from novella_server.models import User
from novella_server.rate_limit import GENERAL, LOGIN, rate_limit_dep
from novella_server.services.accounts import AccountService, AuthResult, public_user
from novella_server.services.avatars import sniff_image_type

router = APIRouter(prefix="/auth", tags=["auth"])


def get_accounts(request: Request) -> AccountService:
    return request.app.state.accounts


def _auth_data(result: AuthResult) -> AuthData:
    return AuthData(user=result.user, token=result.token)


@router.post(
    "/send-verification-code",
    response_model=ApiResponse[None],
    response_model_exclude_none=True,
    dependencies=[Depends(rate_limit_dep(GENERAL))],
)
async def send_verification_code(
    data: SendCodeRequest,
    accounts: AccountService = Depends(get_accounts),
) -> ApiResponse[None]:
    """Email a one-time code to an address that is not registered yet."""
    message = await accounts.send_code(data.email)
    return ApiResponse[None](message=message)


@router.post(
    "/verify-code",
    response_model=ApiResponse[None],
    response_model_exclude_none=True,
    dependencies=[Depends(rate_limit_dep(GENERAL))],
)
async def verify_code(
    data: VerifyCodeRequest,
    accounts: AccountService = Depends(get_accounts),
) -> ApiResponse[None]:
    message = await accounts.verify_code(data.email, data.code)
    return ApiResponse[None](message=message)


@router.post(
    "/register",
    response_model=ApiResponse[AuthData],
    response_model_exclude_none=True,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(rate_limit_dep(LOGIN))],
)
async def register(
    data: RegisterRequest,
    accounts: AccountService = Depends(get_accounts),
) -> ApiResponse[AuthData]:
    """Create an account with a verified email and return a session token."""
    result = await accounts.register(data.username, data.email, data.password, data.verification_code)
    return ApiResponse[AuthData](message="Registration successful", data=_auth_data(result))


@router.post(
    "/login",
    response_model=ApiResponse[AuthData],
    response_model_exclude_none=True,
    dependencies=[Depends(rate_limit_dep(LOGIN))],
)
async def login(
    data: LoginRequest,
    accounts: AccountService = Depends(get_accounts),
) -> ApiResponse[AuthData]:
    """Authenticate with email and password."""
    result = await accounts.login(data.email, data.password)
    return ApiResponse[AuthData](message="Login successful", data=_auth_data(result))


@router.post(
    "/login-with-code",
    response_model=ApiResponse[AuthData],
    response_model_exclude_none=True,
    dependencies=[Depends(rate_limit_dep(LOGIN))],
)
async def login_with_code(
    data: CodeLoginRequest,
    accounts: AccountService = Depends(get_accounts),
) -> ApiResponse[AuthData]:
    """Authenticate with email and a one-time code."""
    result = await accounts.login_with_code(data.email, data.verification_code)
    return ApiResponse[AuthData](message="Login successful", data=_auth_data(result))


@router.post("/logout", response_model=ApiResponse[None], response_model_exclude_none=True)
async def logout(accounts: AccountService = Depends(get_accounts)) -> ApiResponse[None]:
    return ApiResponse[None](message=await accounts.logout())


@router.get("/me", response_model=ApiResponse[UserResponse], response_model_exclude_none=True)
async def get_me(user: User = Depends(get_current_user)) -> ApiResponse[UserResponse]:
    """Get current user profile."""
    return ApiResponse[UserResponse](message="User profile loaded", data=public_user(user))


@router.post("/verify", response_model=ApiResponse[UserResponse], response_model_exclude_none=True)
async def verify_token(user: User = Depends(get_current_user)) -> ApiResponse[UserResponse]:
    """Check that the bearer token is still valid."""
    return ApiResponse[UserResponse](message="Token is valid", data=public_user(user))


@router.post("/avatar", response_model=ApiResponse[AuthData], response_model_exclude_none=True)
async def upload_avatar(
    avatar: UploadFile | None = File(None),
    user: User = Depends(get_current_user),
    accounts: AccountService = Depends(get_accounts),
) -> ApiResponse[AuthData]:
    """Replace the current user's avatar. Returns a freshly minted token."""
    # Stop reading one byte past the limit; anything that long is rejected as too large
    content = await avatar.read(accounts.avatar_max_bytes + 1) if avatar is not None else None
    content_type = avatar.content_type if avatar is not None else None
    result = await accounts.update_avatar(user, content, content_type)
    return ApiResponse[AuthData](message="Avatar uploaded", data=_auth_data(result))


@router.get("/avatar/{username}")
async def get_avatar(
    username: str,
    accounts: AccountService = Depends(get_accounts),
) -> Response:
    """Serve a user's avatar image."""
    data = await accounts.avatar_image(username)
    return Response(
        content=data,
        media_type=sniff_image_type(data),
        headers={"Cache-Control": "public, max-age=86400"},
    )
