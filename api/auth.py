# api/auth.py
from __future__ import annotations

from typing import Annotated, Dict, Optional

from fastapi import APIRouter, Depends, Request, Response
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field, StringConstraints
from sqlalchemy.ext.asyncio import AsyncSession

from core import credential_store as store
from core.auth_utils import (
    authenticate,
    get_notifier,
    get_otp_engine,
    get_settings,
    get_token_engine,
    require_admin,
)
from core.database import get_async_session
from core.errors import ApiError, error_body
from core.notifier import OtpNotifier
from core.otp import OtpEngine
from core.rate_limit import otp_identifier
from core.tokens import AccessClaims, TokenEngine
from models.user import User
from settings import Settings
from telemetry.logger import get_logger

logger = get_logger(__name__)

router = APIRouter(prefix="/auth", tags=["auth"])

GENERIC_OTP_MESSAGE = "If an account exists, an OTP has been sent to your email"


# -------------------------------
# Schemas
# -------------------------------
class RequestOtpRequest(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    employeeId: str = Field(min_length=1, max_length=50)


class VerifyOtpRequest(BaseModel):
    employeeId: Annotated[str, StringConstraints(strip_whitespace=True, min_length=1, max_length=50)]
    # Matched as sent: no trimming, ASCII digits only
    otpCode: str = Field(pattern=r"^[0-9]{6}$")


class UserProfile(BaseModel):
    id: int
    employeeId: str
    name: str
    email: str
    role: str
    officeCollege: Optional[str] = None


class MeProfile(UserProfile):
    createdAt: Optional[str] = None
    lastLoginAt: Optional[str] = None


class SessionResponse(BaseModel):
    success: bool = True
    accessToken: str
    user: UserProfile


class MessageResponse(BaseModel):
    success: bool = True
    message: str


class MeResponse(BaseModel):
    success: bool = True
    user: MeProfile


class CleanupResponse(BaseModel):
    success: bool = True
    deleted: Dict[str, int]


# -------------------------------
# Helpers
# -------------------------------
def _client_ip(request: Request) -> str:
    return request.client.host if request.client else "unknown"


def _profile(user: User) -> UserProfile:
    emp = user.employee
    return UserProfile(
        id=user.id,
        employeeId=emp.employee_id,
        name=emp.employee_name,
        email=emp.email,
        role=user.role,
        officeCollege=emp.office_college,
    )


def _set_refresh_cookie(response: Response, settings: Settings, token: str) -> None:
    response.set_cookie(
        key=settings.refresh_cookie_name,
        value=token,
        max_age=settings.refresh_token_days * 24 * 60 * 60,
        path=settings.refresh_cookie_path,
        httponly=True,
        secure=settings.secure_cookies,
        samesite="strict",
    )


def _clear_refresh_cookie(response: Response, settings: Settings) -> None:
    response.delete_cookie(
        key=settings.refresh_cookie_name,
        path=settings.refresh_cookie_path,
        httponly=True,
        secure=settings.secure_cookies,
        samesite="strict",
    )


def _refresh_failure(settings: Settings, message: str, code: str) -> JSONResponse:
    # Force a clean re-login: the stale cookie goes away with the 401
    response = JSONResponse(status_code=401, content=error_body(message, code))
    _clear_refresh_cookie(response, settings)
    return response


async def run_cleanup(session: AsyncSession, otp: OtpEngine, tokens: TokenEngine) -> Dict[str, int]:
    return {
        "otpCodes": await otp.cleanup_expired(session),
        "rateLimits": await otp.cleanup_rate_limits(session),
        "expiredRefreshTokens": await tokens.cleanup_expired(session),
        "revokedRefreshTokens": await tokens.cleanup_revoked(session),
    }


# -------------------------------
# Request OTP
# -------------------------------
@router.post("/request-otp", response_model=MessageResponse)
async def request_otp(
    req: RequestOtpRequest,
    request: Request,
    session: AsyncSession = Depends(get_async_session),
    otp: OtpEngine = Depends(get_otp_engine),
    notifier: OtpNotifier = Depends(get_notifier),
):
    ip = _client_ip(request)
    user_agent = request.headers.get("user-agent")
    identifier = otp_identifier(req.employeeId, ip)

    if not await otp.check_rate_limit(session, identifier):
        raise ApiError(429, "Too many OTP requests. Please try again later.", "RATE_LIMIT_EXCEEDED")

    # Same answer whether or not the account exists (no enumeration)
    employee = await store.get_employee_by_business_id(session, req.employeeId)
    if employee is None:
        logger.warning("otp_request_unknown_employee", employee_id=req.employeeId)
        return {"success": True, "message": GENERIC_OTP_MESSAGE}

    user = await store.get_active_user_by_employee_id(session, req.employeeId)
    if user is None:
        logger.warning("otp_request_without_account", employee_id=req.employeeId)
        return {"success": True, "message": GENERIC_OTP_MESSAGE}

    await otp.increment_rate_limit(session, identifier)
    issued = await otp.create_otp(session, user.id, ip, user_agent)

    try:
        await notifier.send_otp(
            email=employee.email,
            employee_name=employee.employee_name,
            otp_code=issued.code,
            expires_at=issued.expires_at,
        )
        logger.info("otp_sent", user_id=user.id, employee_id=req.employeeId)
    except Exception as exc:  # delivery failure must not change the response
        logger.error("otp_send_failed", user_id=user.id, error=str(exc))

    return {"success": True, "message": GENERIC_OTP_MESSAGE}


# -------------------------------
# Verify OTP -> session
# -------------------------------
@router.post("/verify-otp", response_model=SessionResponse)
async def verify_otp(
    req: VerifyOtpRequest,
    request: Request,
    response: Response,
    session: AsyncSession = Depends(get_async_session),
    otp: OtpEngine = Depends(get_otp_engine),
    tokens: TokenEngine = Depends(get_token_engine),
    settings: Settings = Depends(get_settings),
):
    user = await store.get_active_user_by_employee_id(session, req.employeeId)
    if user is None:
        logger.warning("otp_verify_unknown_account", employee_id=req.employeeId)
        raise ApiError(401, "Invalid credentials", "INVALID_CREDENTIALS")

    result = await otp.verify_otp(session, user.id, req.otpCode)
    if not result.valid:
        logger.warning(
            "otp_verify_failed",
            user_id=user.id,
            reason=result.status.value,
            attempts_remaining=result.attempts_remaining,
        )
        raise ApiError(401, "Invalid or expired OTP", "INVALID_OTP")

    access = tokens.issue_access_token(user)
    refresh = await tokens.issue_refresh_token(
        session, user.id, _client_ip(request), request.headers.get("user-agent")
    )
    await store.touch_last_login(session, user.id, tokens.clock())

    _set_refresh_cookie(response, settings, refresh.token)
    logger.info("user_logged_in", user_id=user.id, employee_id=req.employeeId)
    return {"success": True, "accessToken": access, "user": _profile(user)}


# -------------------------------
# Refresh (access token only; the refresh token is not rotated)
# -------------------------------
@router.post("/refresh", response_model=SessionResponse)
async def refresh(
    request: Request,
    session: AsyncSession = Depends(get_async_session),
    tokens: TokenEngine = Depends(get_token_engine),
    settings: Settings = Depends(get_settings),
):
    raw = request.cookies.get(settings.refresh_cookie_name)
    if not raw:
        return _refresh_failure(settings, "Refresh token required", "REFRESH_REQUIRED")

    record = await tokens.verify_refresh_token(session, raw)
    if record is None:
        return _refresh_failure(settings, "Invalid refresh token", "INVALID_REFRESH")

    # Role or active flag may have changed since login
    user = await store.get_user(session, record.user_id)
    if user is None or not user.is_active:
        return _refresh_failure(settings, "User not found or inactive", "USER_INVALID")

    return {"success": True, "accessToken": tokens.issue_access_token(user), "user": _profile(user)}


# -------------------------------
# Logout
# -------------------------------
@router.post("/logout", response_model=MessageResponse)
async def logout(
    request: Request,
    response: Response,
    claims: AccessClaims = Depends(authenticate),
    session: AsyncSession = Depends(get_async_session),
    tokens: TokenEngine = Depends(get_token_engine),
    settings: Settings = Depends(get_settings),
):
    raw = request.cookies.get(settings.refresh_cookie_name)
    if raw:
        await tokens.revoke_refresh_token(session, raw)

    _clear_refresh_cookie(response, settings)
    logger.info("user_logged_out", user_id=claims.account_id)
    return {"success": True, "message": "Logged out successfully"}


@router.post("/logout-all", response_model=MessageResponse)
async def logout_all(
    response: Response,
    claims: AccessClaims = Depends(authenticate),
    session: AsyncSession = Depends(get_async_session),
    tokens: TokenEngine = Depends(get_token_engine),
    settings: Settings = Depends(get_settings),
):
    await tokens.revoke_all_for_account(session, claims.account_id)
    _clear_refresh_cookie(response, settings)
    logger.info("user_logged_out_all", user_id=claims.account_id)
    return {"success": True, "message": "Logged out from all devices"}


# -------------------------------
# Current user
# -------------------------------
@router.get("/me", response_model=MeResponse)
async def me(
    claims: AccessClaims = Depends(authenticate),
    session: AsyncSession = Depends(get_async_session),
):
    user = await store.get_user(session, claims.account_id)
    if user is None:
        raise ApiError(404, "User not found", "USER_NOT_FOUND")

    profile = _profile(user).model_dump()
    profile["createdAt"] = user.created_at.isoformat() if user.created_at else None
    profile["lastLoginAt"] = user.last_login_at.isoformat() if user.last_login_at else None
    return {"success": True, "user": profile}


# -------------------------------
# Maintenance
# -------------------------------
@router.post("/cleanup", response_model=CleanupResponse)
async def cleanup(
    _admin: AccessClaims = Depends(require_admin),
    session: AsyncSession = Depends(get_async_session),
    otp: OtpEngine = Depends(get_otp_engine),
    tokens: TokenEngine = Depends(get_token_engine),
):
    deleted = await run_cleanup(session, otp, tokens)
    logger.info("auth_cleanup", **deleted)
    return {"success": True, "deleted": deleted}
