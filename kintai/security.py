from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any
from uuid import uuid4

from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt

from kintai.errors import ApiError
from kintai.models import AuditActorType
from kintai.settings import get_settings

bearer_scheme = HTTPBearer(auto_error=False)

ROLE_MEMBER = "member"
ROLE_ADMIN = "admin"
ADMIN_ROLES = frozenset({ROLE_ADMIN, "system-admin"})


@dataclass(frozen=True)
class Actor:
    user_id: str
    role: str = ROLE_MEMBER

    @property
    def is_admin(self) -> bool:
        return self.role in ADMIN_ROLES

    @property
    def audit_actor_type(self) -> AuditActorType:
        return AuditActorType.ADMIN if self.is_admin else AuditActorType.USER


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def create_access_token(*, sub: str, role: str = ROLE_MEMBER, expires_minutes: int = 60) -> str:
    """Issue a token the way the external auth service does. Used by tooling and tests."""
    settings = get_settings()
    now = _utcnow()
    claims: dict[str, Any] = {
        "sub": sub,
        "role": role,
        "iss": settings.jwt_issuer,
        "aud": settings.jwt_audience,
        "iat": int(now.timestamp()),
        "exp": int((now + timedelta(minutes=expires_minutes)).timestamp()),
        "jti": str(uuid4()),
    }
    return jwt.encode(claims, settings.jwt_secret, algorithm="HS256")


def decode_token(token: str) -> dict[str, Any]:
    settings = get_settings()
    if not settings.jwt_secret:
        raise ApiError(status_code=401, code="INVALID_TOKEN", message="Token verification is not configured.")
    try:
        payload = jwt.decode(
            token,
            settings.jwt_secret,
            algorithms=["HS256"],
            audience=settings.jwt_audience,
            issuer=settings.jwt_issuer,
            options={"require_sub": True, "require_iat": True, "require_exp": True},
        )
    except JWTError as exc:
        raise ApiError(status_code=401, code="INVALID_TOKEN", message="Token is invalid.") from exc

    subject = payload.get("sub")
    if not isinstance(subject, str) or not subject:
        raise ApiError(status_code=401, code="INVALID_TOKEN", message="Token subject is invalid.")
    return payload


def require_actor(
    request: Request,
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
) -> Actor:
    if credentials is None or credentials.scheme.lower() != "bearer":
        raise ApiError(status_code=401, code="INVALID_TOKEN", message="Missing bearer token.")

    payload = decode_token(credentials.credentials)
    actor = Actor(user_id=str(payload["sub"]), role=str(payload.get("role") or ROLE_MEMBER))

    request.state.actor = actor.role
    request.state.actor_id = actor.user_id
    return actor


def require_admin(actor: Actor = Depends(require_actor)) -> Actor:
    if not actor.is_admin:
        raise ApiError(status_code=403, code="FORBIDDEN", message="Insufficient permissions.")
    return actor
