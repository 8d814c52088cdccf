from collections.abc import Callable

from fastapi import Depends

from app.core.auth import AuthUser, get_current_user
from app.core.errors import PermissionDeniedError


def require_role(*roles: str) -> Callable[[AuthUser], AuthUser]:
    async def checker(user: AuthUser = Depends(get_current_user)) -> AuthUser:
        if user.role not in roles:
            raise PermissionDeniedError(
                "Access denied. You do not have the necessary permissions.",
                kind="MissingRole",
            )
        return user

    return checker


require_admin = require_role("admin")
