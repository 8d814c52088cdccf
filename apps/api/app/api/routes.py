from fastapi import APIRouter, Depends, Request
from fastapi.responses import Response

from app.api.errors import error_response
from app.core.auth import AuthUser
from app.core.config import get_settings
from app.core.rbac import require_admin
from app.crm.api import custom_fields_router, customers_router
from app.identity.api import router as identity_router
from app.metrics import generate_metrics_payload, metrics_content_type

router = APIRouter()
router.include_router(identity_router)
router.include_router(custom_fields_router)
router.include_router(customers_router)


@router.get("/health", tags=["system"])
def health() -> dict[str, str]:
    settings = get_settings()
    return {
        "status": "ok",
        "service": settings.app_name,
        "environment": settings.app_env,
    }


@router.get("/metrics", tags=["system"])
def metrics(request: Request, user: AuthUser = Depends(require_admin)) -> Response:
    settings = get_settings()
    if not settings.metrics_enabled:
        return error_response(request, status_code=404, code="not_found", message="not found")
    return Response(content=generate_metrics_payload(), media_type=metrics_content_type())
