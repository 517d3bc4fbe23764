from dataclasses import dataclass, field

from jose import JWTError, jwt
from starlette.requests import Request

from dealflow.core.config import get_settings


@dataclass
class AuthUser:
    sub: str
    roles: list[str]
    teams: list[str] = field(default_factory=list)


def _string_list(value: object) -> list[str] | None:
    if not isinstance(value, list):
        return None
    return [str(item) for item in value]


async def get_current_user(request: Request) -> AuthUser:
    auth_header = request.headers.get("authorization", "")
    token = auth_header.replace("Bearer ", "") if auth_header.startswith("Bearer ") else ""

    if not token:
        return AuthUser(sub="anonymous", roles=["guest"])

    settings = get_settings()
    try:
        payload = jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except JWTError:
        return AuthUser(sub="anonymous", roles=["guest"])

    subject = str(payload.get("sub", "anonymous"))
    roles = _string_list(payload.get("roles")) or ["user"]
    teams = _string_list(payload.get("teams")) or []
    return AuthUser(sub=subject, roles=roles, teams=teams)
