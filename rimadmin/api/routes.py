from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Header, Path, Query, Request, Response
from pydantic import BaseModel

from rimadmin.api.schemas import (
    BackupCodeConsumeRequest,
    BackupCodesResponse,
    Envelope,
    ForgotPasswordRequest,
    LegacyMfaVerifyRequest,
    LoginRequest,
    LoginResponse,
    MfaVerifyRequest,
    OkResponse,
    ProfileResponse,
    ProfileUpdateRequest,
    ResetPasswordRequest,
    ResetTokenVerifyResponse,
    SetupStartRequest,
    SetupStartResponse,
    SetupVerifyRequest,
    TokenPairResponse,
    TokenRefreshRequest,
    UserSummary,
)
from rimadmin.logging import get_logger
from rimadmin.service.auth import AuthContext, AuthService
from rimadmin.service.errors import RateLimitedError
from rimadmin.service.runtime import check_rate_limit, get_runtime

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")


def _ok(model: BaseModel, *, exclude_none: bool = False) -> Envelope:
    return Envelope(
        status="ok",
        data=model.model_dump(by_alias=True, mode="json", exclude_none=exclude_none),
    )


class RateLimitInfo:
    """Rate limit state for adding response headers."""

    __slots__ = ("limit", "remaining", "reset_seconds")

    def __init__(self, limit: int, remaining: int, reset_seconds: int):
        self.limit = limit
        self.remaining = remaining
        self.reset_seconds = reset_seconds

    def apply_headers(self, response: Response) -> None:
        response.headers["X-RateLimit-Limit"] = str(self.limit)
        response.headers["X-RateLimit-Remaining"] = str(max(0, self.remaining))
        response.headers["X-RateLimit-Reset"] = str(self.reset_seconds)


async def _enforce_rate_limit(
    runtime, key: str, limit: int, window_seconds: int, *, response: Optional[Response] = None
) -> RateLimitInfo:
    """Enforce a token-bucket limit and optionally report it in response headers.

    Raises:
        RateLimitedError (429) if the bucket is empty
    """
    allowed, remaining, reset_seconds = await check_rate_limit(
        runtime, key, limit, window_seconds, return_remaining=True
    )
    info = RateLimitInfo(limit, remaining, reset_seconds or window_seconds)

    if response is not None:
        info.apply_headers(response)

    if not allowed:
        logger.warning("rate_limit_exceeded", bucket=key.split(":", 1)[0], limit=limit)
        raise RateLimitedError(detail={"retry_after": info.reset_seconds})

    return info


def _client_ip(request: Request) -> str:
    return request.client.host if request.client else "unknown"


async def get_admin(authorization: Optional[str] = Header(None)) -> AuthContext:
    runtime = get_runtime()
    return await runtime.auth.authenticate(authorization)


async def get_two_factor_admin(ctx: AuthContext = Depends(get_admin)) -> AuthContext:
    return AuthService.require_two_factor(ctx)


# login ceremony
@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(
    body: LoginRequest,
    request: Request,
    response: Response,
    user_agent: Optional[str] = Header(None),
):
    """Check email and password and open a pending session.

    Admins without two-factor get a setup session; everyone else gets an MFA
    challenge session. Tokens are never issued here.

    Raises:
        401: invalid credentials or inactive account
        429: rate limit exceeded for this email
    """
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"login:{body.email}",
        runtime.settings.login_rate_limit_per_minute,
        60,
        response=response,
    )
    result = await runtime.auth.login(
        body.email,
        body.password,
        ip=_client_ip(request),
        user_agent=user_agent,
    )
    return _ok(LoginResponse.model_validate(result), exclude_none=True)


@router.post("/auth/2fa/setup", response_model=Envelope, tags=["2fa"])
async def start_two_factor_setup(body: SetupStartRequest, response: Response):
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"mfa:setup:{body.session_token}",
        runtime.settings.mfa_rate_limit_per_minute,
        60,
        response=response,
    )
    result = await runtime.auth.start_two_factor_setup(body.session_token)
    return _ok(SetupStartResponse.model_validate(result))


@router.post("/auth/2fa/verify-setup", response_model=Envelope, tags=["2fa"])
async def verify_two_factor_setup(body: SetupVerifyRequest, response: Response):
    """Confirm the first authenticator code and enable two-factor."""
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"mfa:setup-verify:{body.session_token}",
        runtime.settings.mfa_rate_limit_per_minute,
        60,
        response=response,
    )
    tokens = await runtime.auth.verify_two_factor_setup(body.session_token, body.code)
    return _ok(TokenPairResponse.model_validate(tokens))


async def _verify_mfa(temporary_hash: str, code: str, response: Response) -> Envelope:
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"mfa:verify:{temporary_hash}",
        runtime.settings.mfa_rate_limit_per_minute,
        60,
        response=response,
    )
    tokens = await runtime.auth.verify_mfa(temporary_hash, code)
    return _ok(TokenPairResponse.model_validate(tokens))


@router.post("/auth/2fa/verify", response_model=Envelope, tags=["2fa"])
async def verify_mfa(body: MfaVerifyRequest, response: Response):
    return await _verify_mfa(body.temporary_hash, body.code, response)


@router.post("/admin/{temporary_hash}", response_model=Envelope, tags=["2fa"])
async def verify_mfa_legacy(
    body: LegacyMfaVerifyRequest,
    response: Response,
    temporary_hash: str = Path(..., min_length=1, max_length=256),
):
    """Older clients post the code to the session hash itself."""
    return await _verify_mfa(temporary_hash, body.code, response)


@router.post("/auth/2fa/backup-codes/consume", response_model=Envelope, tags=["2fa"])
async def consume_backup_code(body: BackupCodeConsumeRequest, response: Response):
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"mfa:backup:{body.temporary_hash}",
        runtime.settings.mfa_rate_limit_per_minute,
        60,
        response=response,
    )
    tokens = await runtime.auth.consume_backup_code(body.temporary_hash, body.code)
    return _ok(TokenPairResponse.model_validate(tokens))


@router.post("/auth/2fa/backup-codes/regenerate", response_model=Envelope, tags=["2fa"])
async def regenerate_backup_codes(principal: AuthContext = Depends(get_two_factor_admin)):
    runtime = get_runtime()
    result = await runtime.auth.regenerate_backup_codes(principal.user_id)
    return _ok(BackupCodesResponse.model_validate(result))


# tokens
@router.post("/auth/refresh", response_model=Envelope, tags=["auth"])
async def refresh_tokens(body: TokenRefreshRequest):
    runtime = get_runtime()
    tokens = await runtime.auth.refresh(body.refresh_token)
    return _ok(TokenPairResponse.model_validate(tokens))


# password reset
@router.post("/auth/password/forgot", response_model=Envelope, tags=["auth"])
async def forgot_password(body: ForgotPasswordRequest, request: Request, response: Response):
    """Start a reset. The answer is the same whether or not the account exists."""
    runtime = get_runtime()
    ip = _client_ip(request)
    await _enforce_rate_limit(
        runtime,
        f"reset:request:{ip}",
        runtime.settings.reset_rate_limit_per_minute,
        60,
        response=response,
    )
    result = await runtime.auth.request_password_reset(body.email, body.code, ip=ip)
    return _ok(OkResponse.model_validate(result))


@router.get("/auth/password/reset/verify", response_model=Envelope, tags=["auth"])
async def verify_reset_token(
    request: Request,
    response: Response,
    token: str = Query(..., min_length=1, max_length=256),
):
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"reset:verify:{_client_ip(request)}",
        runtime.settings.reset_rate_limit_per_minute,
        60,
        response=response,
    )
    result = await runtime.auth.verify_reset_token(token)
    return _ok(ResetTokenVerifyResponse.model_validate(result))


@router.post("/auth/password/reset", response_model=Envelope, tags=["auth"])
async def reset_password(body: ResetPasswordRequest, request: Request, response: Response):
    runtime = get_runtime()
    ip = _client_ip(request)
    await _enforce_rate_limit(
        runtime,
        f"reset:confirm:{ip}",
        runtime.settings.reset_rate_limit_per_minute,
        60,
        response=response,
    )
    result = await runtime.auth.reset_password(body.token, body.new_password, ip=ip)
    return _ok(OkResponse.model_validate(result))


# signed-in admin
@router.get("/auth/me", response_model=Envelope, tags=["auth"])
async def current_admin(principal: AuthContext = Depends(get_two_factor_admin)):
    runtime = get_runtime()
    return _ok(UserSummary.model_validate(runtime.auth.current_user(principal.user_id)))


@router.get("/auth/profile", response_model=Envelope, tags=["profile"])
async def get_profile(principal: AuthContext = Depends(get_two_factor_admin)):
    runtime = get_runtime()
    profile = await runtime.auth.get_profile(principal.user_id)
    return _ok(ProfileResponse.model_validate(profile))


@router.patch("/auth/profile", response_model=Envelope, tags=["profile"])
async def update_profile(
    body: ProfileUpdateRequest, principal: AuthContext = Depends(get_two_factor_admin)
):
    runtime = get_runtime()
    profile = await runtime.auth.update_profile(
        principal.user_id,
        username=body.username,
        email=body.email,
        current_password=body.current_password,
        new_password=body.new_password,
    )
    return _ok(ProfileResponse.model_validate(profile))
