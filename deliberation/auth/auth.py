from __future__ import annotations

import logging
import os
import secrets
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Optional

from fastapi import Depends, Request
from jose import JWTError, jwt

from deliberation.config.loader import (
    get_access_token_expire_minutes,
    get_realtime_settings,
)
from deliberation.errors import Forbidden, Unauthenticated
from deliberation.schemas.records import AppRole

logger = logging.getLogger("deliberation.auth")

ALGORITHM = "HS256"
JWT_ISSUER = os.getenv("DELIBERATION_JWT_ISSUER", "deliberation")
ACCESS_TOKEN_TYPE = "access"
REALTIME_TOKEN_TYPE = "realtime"
ACCESS_TOKEN_COOKIE = "access_token"


def _is_production_mode() -> bool:
    env = os.getenv("DELIBERATION_ENV", "development").strip().lower()
    return env in {"production", "prod"}


def _resolve_secret_key() -> str:
    key = os.getenv("DELIBERATION_JWT_SECRET_KEY")
    if key:
        if len(key) < 32:
            raise RuntimeError(
                "Invalid JWT secret key configuration. "
                + "DELIBERATION_JWT_SECRET_KEY must be at least 32 characters long."
            )
        return key
    if _is_production_mode():
        raise RuntimeError(
            "Missing DELIBERATION_JWT_SECRET_KEY while DELIBERATION_ENV is set to "
            + "production. Configure a strong static secret before startup."
        )
    logger.warning(
        "DEVELOPMENT MODE: using a generated JWT secret key. "
        "Set DELIBERATION_JWT_SECRET_KEY for production."
    )
    return secrets.token_urlsafe(48)


SECRET_KEY = _resolve_secret_key()


@dataclass(frozen=True)
class Identity:
    """The participant behind a request; ``user_id`` is None for anonymous callers."""

    user_id: Optional[str] = None
    role: AppRole = AppRole.VOTER
    credential: Optional[str] = None

    @property
    def is_authenticated(self) -> bool:
        return bool(self.user_id)

    @property
    def is_facilitator(self) -> bool:
        return self.role in {AppRole.ADMIN, AppRole.FACILITATOR}


ANONYMOUS = Identity()


def _encode(
    user_id: str,
    role: AppRole,
    token_type: str,
    expires_delta: timedelta,
) -> str:
    now = datetime.now(UTC)
    claims = {
        "sub": user_id,
        "role": AppRole(role).value,
        "type": token_type,
        "iss": JWT_ISSUER,
        "iat": now,
        "exp": now + expires_delta,
    }
    return jwt.encode(claims, SECRET_KEY, algorithm=ALGORITHM)


def create_access_token(
    user_id: str,
    role: AppRole = AppRole.VOTER,
    expires_delta: Optional[timedelta] = None,
) -> str:
    """Issue a bearer token for ``user_id``; used by the identity provider and tests."""
    if expires_delta is None:
        expires_delta = timedelta(minutes=get_access_token_expire_minutes())
    return _encode(user_id, role, ACCESS_TOKEN_TYPE, expires_delta)


def create_realtime_credential(
    identity: Identity, expires_delta: Optional[timedelta] = None
) -> str:
    """Mint a short-lived credential that authorises one realtime (re)subscribe."""
    if not identity.is_authenticated:
        raise Unauthenticated()
    if expires_delta is None:
        minutes = get_realtime_settings()["credential_expire_minutes"]
        expires_delta = timedelta(minutes=minutes)
    return _encode(identity.user_id, identity.role, REALTIME_TOKEN_TYPE, expires_delta)


def decode_token(token: Optional[str], *, expected_type: str) -> Identity:
    if not token:
        raise Unauthenticated("Missing credential.")
    try:
        claims = jwt.decode(
            token,
            SECRET_KEY,
            algorithms=[ALGORITHM],
            issuer=JWT_ISSUER,
        )
    except JWTError as exc:
        logger.info("Rejected %s credential: %s", expected_type, exc)
        raise Unauthenticated("Invalid or expired credential.") from exc

    if claims.get("type") != expected_type:
        raise Unauthenticated("Credential has the wrong type.")
    user_id = str(claims.get("sub") or "").strip()
    if not user_id:
        raise Unauthenticated("Credential carries no subject.")
    try:
        role = AppRole(claims.get("role") or AppRole.VOTER.value)
    except ValueError as exc:
        raise Unauthenticated("Credential carries an unknown role.") from exc
    return Identity(user_id=user_id, role=role, credential=token)


def verify_realtime_credential(token: Optional[str]) -> Identity:
    return decode_token(token, expected_type=REALTIME_TOKEN_TYPE)


def token_from_request(request: Request) -> Optional[str]:
    header = request.headers.get("Authorization") or ""
    scheme, _, value = header.partition(" ")
    if scheme.lower() == "bearer" and value.strip():
        return value.strip()
    return request.cookies.get(ACCESS_TOKEN_COOKIE)


async def get_identity(request: Request) -> Identity:
    """
    Resolve the caller's identity.

    Anonymous callers get :data:`ANONYMOUS` rather than an error so the engines
    decide, per operation, that a write without a user id is ``Unauthenticated``.
    An invalid token is still rejected outright.
    """
    token = token_from_request(request)
    if not token:
        return ANONYMOUS
    return decode_token(token, expected_type=ACCESS_TOKEN_TYPE)


async def require_identity(identity: Identity = Depends(get_identity)) -> Identity:
    if not identity.is_authenticated:
        raise Unauthenticated()
    return identity


async def require_facilitator(
    identity: Identity = Depends(require_identity),
) -> Identity:
    if not identity.is_facilitator:
        raise Forbidden()
    return identity
