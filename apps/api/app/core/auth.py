from dataclasses import dataclass
from typing import Any

from jose import JWTError, jwt
from starlette.requests import Request

from app.core.config import get_settings

ANONYMOUS_SUBJECT = "anonymous"


@dataclass
class AuthUser:
    sub: str
    roles: list[str]


def _anonymous() -> AuthUser:
    return AuthUser(sub=ANONYMOUS_SUBJECT, roles=["guest"])


def decode_bearer(authorization: str) -> dict[str, Any] | None:
    """Claims of a valid ``Bearer`` token, or None when the header is missing or the token does not verify."""
    if not authorization.startswith("Bearer "):
        return None
    token = authorization[len("Bearer ") :].strip()
    if not token:
        return None

    settings = get_settings()
    try:
        return jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except JWTError:
        return None


def subject_from_request(request: Request) -> str:
    claims = decode_bearer(request.headers.get("authorization", ""))
    if not claims or claims.get("sub") is None:
        return ANONYMOUS_SUBJECT
    return str(claims["sub"])


async def get_current_user(request: Request) -> AuthUser:
    claims = decode_bearer(request.headers.get("authorization", ""))
    if claims is None:
        return _anonymous()

    subject = str(claims.get("sub", ANONYMOUS_SUBJECT))
    roles = claims.get("roles", [])
    if not isinstance(roles, list):
        roles = []
    context = getattr(request.state, "context", None)
    if context is not None:
        context.user_id = subject
    return AuthUser(sub=subject, roles=[str(role) for role in roles])
