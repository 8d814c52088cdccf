from __future__ import annotations

from fastapi import APIRouter, Depends, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from app.api.errors import crm_error_response
from app.core.auth import AuthUser, get_current_user
from app.core.database import get_db
from app.core.errors import CRMError
from app.core.rbac import require_admin
from app.identity.schemas import (
    LoginRequest,
    MessageResponse,
    PromoteAdminRequest,
    RegisterRequest,
    TokenResponse,
    UserRead,
)
from app.identity.service import identity_service


router = APIRouter(prefix="/api/auth", tags=["auth"])


@router.post("/register", response_model=UserRead, status_code=status.HTTP_201_CREATED)
def register(request: Request, dto: RegisterRequest, db: Session = Depends(get_db)) -> UserRead | JSONResponse:
    try:
        return identity_service.register(db, dto)
    except CRMError as exc:
        return crm_error_response(request, exc, code="auth_register_failed")


@router.post("/login", response_model=TokenResponse)
def login(request: Request, dto: LoginRequest, db: Session = Depends(get_db)) -> TokenResponse | JSONResponse:
    try:
        token = identity_service.login(db, dto.email, dto.password)
        return TokenResponse(message="Login successful.", token=token)
    except CRMError as exc:
        return crm_error_response(request, exc, code="auth_login_failed")


@router.post("/logout", response_model=MessageResponse)
def logout(
    request: Request,
    db: Session = Depends(get_db),
    user: AuthUser = Depends(get_current_user),
) -> MessageResponse | JSONResponse:
    try:
        identity_service.logout(db, user.user_id)
        return MessageResponse(message="Logout successful.")
    except CRMError as exc:
        return crm_error_response(request, exc, code="auth_logout_failed")


@router.get("/current-user", response_model=UserRead)
def current_user(
    request: Request,
    db: Session = Depends(get_db),
    user: AuthUser = Depends(get_current_user),
) -> UserRead | JSONResponse:
    try:
        return identity_service.get_user(db, user.user_id)
    except CRMError as exc:
        return crm_error_response(request, exc, code="auth_current_user_failed")


@router.post("/promote-admin", response_model=UserRead)
def promote_admin(
    request: Request,
    dto: PromoteAdminRequest,
    db: Session = Depends(get_db),
    user: AuthUser = Depends(require_admin),
) -> UserRead | JSONResponse:
    try:
        return identity_service.promote_to_admin(db, dto.username)
    except CRMError as exc:
        return crm_error_response(request, exc, code="auth_promote_admin_failed")
