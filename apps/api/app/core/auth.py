from dataclasses import dataclass
from typing import Any

from jose import JWTError, jwt
from starlette.requests import Request

from app.core.config import get_settings

ANONYMOUS = "anonymous"


@dataclass
class AuthUser:
    sub: str
    roles: list[str]
    username: str | None = None


def bearer_token(request: Request) -> str:
    auth_header = request.headers.get("authorization", "")
    return auth_header.removeprefix("Bearer ").strip() if auth_header.startswith("Bearer ") else ""


def decode_claims(token: str) -> dict[str, Any] | None:
    """Verified JWT claims, or ``None`` for a missing or invalid token."""
    if not token:
        return None
    settings = get_settings()
    try:
        return jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except JWTError:
        return None


def subject_of(request: Request) -> str:
    claims = decode_claims(bearer_token(request))
    if claims is None or claims.get("sub") is None:
        return ANONYMOUS
    return str(claims["sub"])


async def get_current_user(request: Request) -> AuthUser:
    claims = decode_claims(bearer_token(request))
    if claims is None:
        # TODO: Reject invalid tokens outright once the CRM identity provider issues them.
        return AuthUser(sub=ANONYMOUS, roles=["guest"])

    subject = str(claims.get("sub", ANONYMOUS))
    roles = claims.get("roles", ["user"])
    if not isinstance(roles, list):
        roles = ["user"]
    username = claims.get("preferred_username") or claims.get("name")
    context = getattr(request.state, "context", None)
    if context is not None:
        context.user_id = subject
    return AuthUser(
        sub=subject,
        roles=[str(role) for role in roles],
        username=str(username) if username else None,
    )
