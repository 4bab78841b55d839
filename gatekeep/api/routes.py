from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Header, Path, Response

from gatekeep.api.schemas import (
    AuthResponse,
    ChangePasswordRequest,
    Envelope,
    ForgotPasswordRequest,
    LoginRequest,
    ResetPasswordRequest,
    SignupRequest,
    UserResponse,
)
from gatekeep.config import Settings
from gatekeep.logging import get_logger
from gatekeep.service.errors import NotFoundError
from gatekeep.service.runtime import get_runtime
from gatekeep.service.session import AuthContext, RoleGate
from gatekeep.storage.models import Role, User

logger = get_logger(__name__)

router = APIRouter()

TOKEN_COOKIE = "jwt"


async def current_identity(
    authorization: Optional[str] = Header(None),
) -> AuthContext:
    return get_runtime().sessions.authenticate(authorization)


def require_role(*roles: Role | str):
    """Build a dependency that only lets the given roles through."""
    gate = RoleGate(roles)

    async def _dependency(
        ctx: AuthContext = Depends(current_identity),
    ) -> AuthContext:
        return gate.check(ctx)

    return _dependency


get_admin_user = require_role(Role.ADMIN)


def _user_response(user: User) -> UserResponse:
    return UserResponse(**user.public())


def _auth_envelope(user: User, token: str) -> Envelope:
    return Envelope(
        status="ok",
        data=AuthResponse(token=token, user=_user_response(user)),
    )


def _apply_token_cookie(response: Response, token: str, settings: Settings) -> None:
    response.set_cookie(
        TOKEN_COOKIE,
        token,
        httponly=True,
        secure=settings.secure_cookies,
        samesite="lax",
        max_age=settings.cookie_expires_days * 24 * 60 * 60,
        path="/",
    )


def _reset_url_base(settings: Settings) -> str:
    # Built from configuration so a spoofed Host header cannot redirect the link
    return f"{settings.app_base_url.rstrip('/')}{settings.api_prefix}/auth/reset-password"


@router.post("/auth/signup", response_model=Envelope, status_code=201, tags=["auth"])
async def signup(body: SignupRequest, response: Response):
    """Create a new user account.

    Returns a session token and mirrors it into the ``jwt`` cookie.

    Raises:
        400: If the passwords differ or fail the length policy
        409: If the email is already registered
    """
    runtime = get_runtime()
    user, token = await runtime.auth.signup(
        name=body.name,
        email=body.email,
        password=body.password,
        confirm_password=body.confirm_password,
    )
    _apply_token_cookie(response, token, runtime.settings)
    return _auth_envelope(user, token)


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest, response: Response):
    """Authenticate with email and password.

    Raises:
        401: If the email is unknown or the password is wrong (same message)
    """
    runtime = get_runtime()
    user, token = await runtime.auth.login(email=body.email, password=body.password)
    _apply_token_cookie(response, token, runtime.settings)
    return _auth_envelope(user, token)


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(response: Response):
    runtime = get_runtime()
    response.delete_cookie(
        TOKEN_COOKIE,
        path="/",
        secure=runtime.settings.secure_cookies,
        httponly=True,
        samesite="lax",
    )
    return Envelope(status="ok", data={"message": "logged out"})


@router.post("/auth/forgot-password", response_model=Envelope, tags=["auth"])
async def forgot_password(body: ForgotPasswordRequest):
    """Email a single-use password reset link.

    The token itself only ever travels in the email.
    """
    runtime = get_runtime()
    await runtime.auth.forgot_password(
        body.email, reset_url_base=_reset_url_base(runtime.settings)
    )
    return Envelope(status="ok", data={"message": "Token sent to email!"})


@router.patch("/auth/reset-password/{token}", response_model=Envelope, tags=["auth"])
async def reset_password(
    body: ResetPasswordRequest,
    response: Response,
    token: str = Path(..., min_length=1, max_length=256),
):
    runtime = get_runtime()
    user, session_token = await runtime.auth.reset_password(
        token, body.password, body.confirm_password
    )
    _apply_token_cookie(response, session_token, runtime.settings)
    return _auth_envelope(user, session_token)


@router.patch("/auth/change-password", response_model=Envelope, tags=["auth"])
async def change_password(
    body: ChangePasswordRequest,
    response: Response,
    principal: AuthContext = Depends(current_identity),
):
    """Change the caller's password.

    Every token issued before the change stops working; the response
    carries a fresh one.
    """
    runtime = get_runtime()
    user, token = await runtime.auth.change_password(
        principal.user_id,
        body.current_password,
        body.password,
        body.confirm_password,
    )
    _apply_token_cookie(response, token, runtime.settings)
    return _auth_envelope(user, token)


@router.get("/users/me", response_model=Envelope, tags=["users"])
async def get_me(principal: AuthContext = Depends(current_identity)):
    runtime = get_runtime()
    user = runtime.store.find_by_id(principal.user_id)
    if not user:
        raise NotFoundError("user not found")
    return Envelope(status="ok", data=_user_response(user))


@router.get("/admin/users/{user_id}", response_model=Envelope, tags=["admin"])
async def admin_get_user(
    user_id: str,
    principal: AuthContext = Depends(get_admin_user),
):
    runtime = get_runtime()
    user = runtime.store.find_by_id(user_id)
    if not user:
        raise NotFoundError("user not found", detail={"user_id": user_id})
    logger.info("admin_user_lookup", admin_id=principal.user_id, user_id=user_id)
    return Envelope(status="ok", data=_user_response(user))
