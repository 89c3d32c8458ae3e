from dataclasses import dataclass

from jose import JWTError, jwt
from starlette.requests import Request

from app.core.config import get_settings


@dataclass
class AuthUser:
    sub: str
    roles: list[str]


def decode_subject(token: str) -> tuple[str, list[str]] | None:
    settings = get_settings()
    try:
        payload = jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except JWTError:
        return None

    roles = payload.get("roles", ["user"])
    if not isinstance(roles, list):
        roles = ["user"]
    return str(payload.get("sub", "anonymous")), [str(role) for role in roles]


def bearer_token(request: Request) -> str:
    auth_header = request.headers.get("authorization", "")
    return auth_header.replace("Bearer ", "") if auth_header.startswith("Bearer ") else ""


async def get_current_user(request: Request) -> AuthUser:
    token = bearer_token(request)
    if not token:
        return AuthUser(sub="anonymous", roles=["guest"])

    decoded = decode_subject(token)
    if decoded is None:
        return AuthUser(sub="anonymous", roles=["guest"])

    subject, roles = decoded
    request.state.user_id = subject
    return AuthUser(sub=subject, roles=roles)
