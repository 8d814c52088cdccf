from __future__ import annotations

import logging

import bcrypt
from sqlalchemy import or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.core.auth import issue_token
from app.core.config import get_settings
from app.core.errors import AuthenticationError, ConflictError, NotFoundError, ValidationError
from app.crm.transaction import transaction
from app.identity.models import LoginHistory, User, utcnow
from app.identity.schemas import RegisterRequest, UserRead


logger = logging.getLogger("app.identity")

ADMIN_ROLE = "admin"
# bcrypt only looks at the first 72 bytes and newer releases reject longer input.
MAX_PASSWORD_BYTES = 72


def hash_password(password: str) -> str:
    encoded = password.encode("utf-8")
    if len(encoded) > MAX_PASSWORD_BYTES:
        raise ValidationError("Password is too long.", kind="PasswordTooLong")
    salt = bcrypt.gensalt(rounds=get_settings().bcrypt_rounds)
    return bcrypt.hashpw(encoded, salt).decode("utf-8")


def verify_password(password: str, hashed: str) -> bool:
    encoded = password.encode("utf-8")
    if len(encoded) > MAX_PASSWORD_BYTES:
        return False
    return bcrypt.checkpw(encoded, hashed.encode("utf-8"))


class IdentityService:
    def register(self, session: Session, dto: RegisterRequest) -> UserRead:
        password_hash = hash_password(dto.password)
        try:
            with transaction(session):
                existing = session.scalar(
                    select(User.id).where(or_(User.email == dto.email, User.username == dto.username))
                )
                if existing is not None:
                    raise ConflictError("User with this email or username already exists.", kind="DuplicateUser")
                user = User(username=dto.username, email=dto.email, password=password_hash)
                session.add(user)
                session.flush()
                result = UserRead.model_validate(user)
        except IntegrityError as exc:
            raise ConflictError("User with this email or username already exists.", kind="DuplicateUser") from exc

        logger.info("user.registered", extra={"user_id": result.id})
        return result

    def login(self, session: Session, email: str, password: str) -> str:
        user = session.scalar(select(User).where(User.email == email))
        if user is None:
            raise NotFoundError("User not found.", kind="UnknownUser")
        if not verify_password(password, user.password):
            logger.info("user.login_failed", extra={"user_id": user.id, "reason": "InvalidCredentials"})
            raise AuthenticationError("Invalid credentials.", kind="InvalidCredentials")

        with transaction(session):
            session.add(LoginHistory(user_id=user.id, login_time=utcnow()))

        logger.info("user.logged_in", extra={"user_id": user.id})
        return issue_token(user.id, user.role)

    def logout(self, session: Session, user_id: int) -> int:
        """Close every open login session of the user and return how many were closed."""
        with transaction(session):
            result = session.execute(
                update(LoginHistory)
                .where(LoginHistory.user_id == user_id, LoginHistory.logout_time.is_(None))
                .values(logout_time=utcnow())
            )
        closed = result.rowcount or 0
        logger.info("user.logged_out", extra={"user_id": user_id, "count": closed})
        return closed

    def get_user(self, session: Session, user_id: int) -> UserRead:
        user = session.get(User, user_id)
        if user is None:
            raise NotFoundError("User not found.", kind="UnknownUser")
        return UserRead.model_validate(user)

    def promote_to_admin(self, session: Session, username: str) -> UserRead:
        with transaction(session):
            user = session.scalar(select(User).where(User.username == username))
            if user is None:
                raise NotFoundError(f"User '{username}' not found.", kind="UnknownUser")
            user.role = ADMIN_ROLE
            session.flush()
            result = UserRead.model_validate(user)

        logger.info("user.promoted", extra={"user_id": result.id})
        return result


identity_service = IdentityService()
