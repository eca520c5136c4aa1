# core/auth_utils.py
"""
Request-level auth gates, used as FastAPI dependencies:

- authenticate: a valid access token is mandatory (401 otherwise)
- require_role(*roles): authenticate, then plain set membership on the role (403)
- optional_auth: attach the identity when present and valid, never reject

Roles are never ranked. Every route lists exactly which roles it admits.
"""
from __future__ import annotations

from typing import Callable, Optional

from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from core.errors import ApiError
from core.notifier import OtpNotifier
from core.otp import OtpEngine
from core.tokens import AccessClaims, TokenEngine
from models.user import Role
from settings import Settings
from telemetry.logger import get_logger

logger = get_logger(__name__)

bearer_scheme = HTTPBearer(auto_error=False)


# -------------------------------------------------------------------
# Collaborators built once in main.create_app
# -------------------------------------------------------------------
def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_token_engine(request: Request) -> TokenEngine:
    return request.app.state.token_engine


def get_otp_engine(request: Request) -> OtpEngine:
    return request.app.state.otp_engine


def get_notifier(request: Request) -> OtpNotifier:
    return request.app.state.notifier


# -------------------------------------------------------------------
# Gates
# -------------------------------------------------------------------
def authenticate(
    request: Request,
    creds: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
    tokens: TokenEngine = Depends(get_token_engine),
) -> AccessClaims:
    if creds is None or not creds.credentials:
        raise ApiError(401, "Authentication required", "AUTH_REQUIRED")

    claims = tokens.verify_access_token(creds.credentials)
    if claims is None:
        raise ApiError(401, "Invalid or expired token", "INVALID_TOKEN")

    request.state.user = claims
    return claims


def require_role(*allowed: Role) -> Callable[..., AccessClaims]:
    allowed_values = frozenset(Role(r).value for r in allowed)

    def _gate(request: Request, claims: AccessClaims = Depends(authenticate)) -> AccessClaims:
        if claims.role not in allowed_values:
            logger.warning(
                "access_denied",
                user_id=claims.account_id,
                role=claims.role,
                required_roles=sorted(allowed_values),
                path=request.url.path,
            )
            raise ApiError(403, "Insufficient permissions", "ACCESS_DENIED")
        return claims

    return _gate


def optional_auth(
    request: Request,
    creds: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
    tokens: TokenEngine = Depends(get_token_engine),
) -> Optional[AccessClaims]:
    claims = tokens.verify_access_token(creds.credentials) if creds else None
    request.state.user = claims
    return claims


# Convenience gates
require_admin = require_role(Role.ADMIN)
require_staff = require_role(Role.ADMIN, Role.STAFF)
require_auth = authenticate
