from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from jose import JWTError, jwt
from starlette.requests import Request

from app.core.config import get_settings
from app.context import set_principal_id
from app.core.errors import AuthenticationError


@dataclass
class AuthUser:
    user_id: int
    role: str

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"


def issue_token(user_id: int, role: str) -> str:
    settings = get_settings()
    expires_at = datetime.now(timezone.utc) + timedelta(minutes=settings.jwt_expires_minutes)
    claims = {"sub": str(user_id), "role": role, "exp": expires_at}
    return jwt.encode(claims, settings.jwt_secret, algorithm=settings.jwt_algorithm)


def decode_token(token: str) -> AuthUser:
    settings = get_settings()
    try:
        payload = jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
        user_id = int(payload["sub"])
    except (JWTError, KeyError, TypeError, ValueError):
        raise AuthenticationError("Invalid token.", kind="InvalidToken")
    role = payload.get("role")
    return AuthUser(user_id=user_id, role=str(role) if role else "user")


async def get_current_user(request: Request) -> AuthUser:
    auth_header = request.headers.get("authorization", "")
    token = auth_header.replace("Bearer ", "") if auth_header.startswith("Bearer ") else ""

    if not token:
        raise AuthenticationError("Access denied. No token provided.", kind="MissingToken")

    user = decode_token(token)
    set_principal_id(user.user_id)
    context = getattr(request.state, "context", None)
    if context is not None:
        context.user_id = user.user_id
        context.role = user.role
    return user
