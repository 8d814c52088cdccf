from __future__ import annotations

from fastapi import APIRouter, Depends, Query, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from app.api.errors import crm_error_response
from app.core.auth import AuthUser, get_current_user
from app.core.database import get_db
from app.core.errors import CRMError, ValidationError
from app.core.rbac import require_admin
from app.crm.eav import ValueWritePolicy
from app.crm.schema_registry import schema_registry
from app.crm.schemas import (
    ChangeHistoryResponse,
    ChangeLogWrite,
    CustomerCreate,
    CustomerRead,
    CustomerUpdate,
    CustomerWithCustomFields,
    CustomFieldBatchCreate,
    CustomFieldRead,
    CustomValuesWrite,
    CustomValuesWriteResult,
)
from app.crm.service import customer_service


custom_fields_router = APIRouter(prefix="/api/crm", tags=["crm.custom_fields"])
customers_router = APIRouter(prefix="/api/crm/customers", tags=["crm.customers"])


@custom_fields_router.post(
    "/custom-fields",
    response_model=list[CustomFieldRead],
    status_code=status.HTTP_201_CREATED,
)
def register_custom_fields(
    request: Request,
    dto: CustomFieldBatchCreate,
    db: Session = Depends(get_db),
    user: AuthUser = Depends(require_admin),
) -> list[CustomFieldRead] | JSONResponse:
    try:
        return schema_registry.register_fields(db, dto.fields)
    except CRMError as exc:
        return crm_error_response(request, exc, code="crm_custom_fields_create_failed")


@custom_fields_router.get("/custom-fields", response_model=list[CustomFieldRead])
def list_custom_fields(
    request: Request,
    db: Session = Depends(get_db),
    user: AuthUser = Depends(get_current_user),
) -> list[CustomFieldRead] | JSONResponse:
    try:
        return schema_registry.list_fields(db)
    except CRMError as exc:
        return crm_error_response(request, exc, code="crm_custom_fields_list_failed")


@custom_fields_router.post("/custom-values/{company_unique_id}", response_model=CustomValuesWriteResult)
def add_custom_values(
    request: Request,
    company_unique_id: str,
    dto: CustomValuesWrite,
    db: Session = Depends(get_db),
    user: AuthUser = Depends(get_current_user),
) -> CustomValuesWriteResult | JSONResponse:
    try:
        return customer_service.set_custom_values(
            db,
            company_unique_id,
            dto.custom_fields,
            ValueWritePolicy.INSERT_IF_ABSENT,
        )
    except CRMError as exc:
        return crm_error_response(request, exc, code="crm_custom_values_create_failed")


@custom_fields_router.put("/custom-values/{company_unique_id}", response_model=CustomValuesWriteResult)
def set_custom_values(
    request: Request,
    company_unique_id: str,
    dto: CustomValuesWrite,
    db: Session = Depends(get_db),
    user: AuthUser = Depends(get_current_user),
) -> CustomValuesWriteResult | JSONResponse:
    try:
        return customer_service.set_custom_values(db, company_unique_id, dto.custom_fields, ValueWritePolicy.UPSERT)
    except CRMError as exc:
        return crm_error_response(request, exc, code="crm_custom_values_update_failed")


@customers_router.get("/custom-fields", response_model=list[CustomerWithCustomFields])
def list_customers_with_custom_fields(
    request: Request,
    db: Session = Depends(get_db),
    user: AuthUser = Depends(get_current_user),
) -> list[CustomerWithCustomFields] | JSONResponse:
    try:
        return customer_service.list_with_custom_fields(db)
    except CRMError as exc:
        return crm_error_response(request, exc, code="crm_customers_projection_failed")


@customers_router.get("/search", response_model=list[CustomerWithCustomFields])
def search_customers(
    request: Request,
    query: str | None = Query(default=None),
    db: Session = Depends(get_db),
    user: AuthUser = Depends(get_current_user),
) -> list[CustomerWithCustomFields] | JSONResponse:
    try:
        if not query or not query.strip():
            raise ValidationError("Search query is required.", kind="MissingField")
        return customer_service.search_customers(db, query)
    except CRMError as exc:
        return crm_error_response(request, exc, code="crm_customers_search_failed")


@customers_router.post("/log-change", response_model=ChangeHistoryResponse)
def log_customer_changes(
    request: Request,
    dto: ChangeLogWrite,
    db: Session = Depends(get_db),
    user: AuthUser = Depends(get_current_user),
) -> ChangeHistoryResponse | JSONResponse:
    try:
        if not dto.company_unique_id or not dto.changes:
            raise ValidationError("company_unique_id and a non-empty changes array are required.", kind="MissingField")
        history = customer_service.log_changes(db, dto.company_unique_id, dto.changes)
        return ChangeHistoryResponse(message="Changes logged successfully.", change_history=history)
    except CRMError as exc:
        return crm_error_response(request, exc, code="crm_change_log_create_failed")


@customers_router.get("/log-change/{company_unique_id}", response_model=ChangeHistoryResponse)
def get_customer_change_history(
    request: Request,
    company_unique_id: str,
    db: Session = Depends(get_db),
    user: AuthUser = Depends(get_current_user),
) -> ChangeHistoryResponse | JSONResponse:
    try:
        history = customer_service.fetch_history(db, company_unique_id)
        message = "Change history retrieved successfully." if history else "No change history found."
        return ChangeHistoryResponse(message=message, change_history=history)
    except CRMError as exc:
        return crm_error_response(request, exc, code="crm_change_log_read_failed")


@customers_router.post("", response_model=CustomerRead, status_code=status.HTTP_201_CREATED)
def create_customer(
    request: Request,
    dto: CustomerCreate,
    db: Session = Depends(get_db),
    user: AuthUser = Depends(get_current_user),
) -> CustomerRead | JSONResponse:
    try:
        return customer_service.create_customer(db, dto)
    except CRMError as exc:
        return crm_error_response(request, exc, code="crm_customer_create_failed")


@customers_router.get("", response_model=list[CustomerRead])
def list_customers(
    request: Request,
    db: Session = Depends(get_db),
    user: AuthUser = Depends(get_current_user),
) -> list[CustomerRead] | JSONResponse:
    try:
        return customer_service.list_customers(db)
    except CRMError as exc:
        return crm_error_response(request, exc, code="crm_customers_list_failed")


@customers_router.get("/{company_unique_id}", response_model=CustomerWithCustomFields)
def get_customer(
    request: Request,
    company_unique_id: str,
    db: Session = Depends(get_db),
    user: AuthUser = Depends(get_current_user),
) -> CustomerWithCustomFields | JSONResponse:
    try:
        return customer_service.get_customer(db, company_unique_id)
    except CRMError as exc:
        return crm_error_response(request, exc, code="crm_customer_read_failed")


@customers_router.put("/{company_unique_id}", response_model=CustomerWithCustomFields)
def update_customer(
    request: Request,
    company_unique_id: str,
    dto: CustomerUpdate,
    db: Session = Depends(get_db),
    user: AuthUser = Depends(get_current_user),
) -> CustomerWithCustomFields | JSONResponse:
    try:
        return customer_service.update_customer(db, company_unique_id, dto)
    except CRMError as exc:
        return crm_error_response(request, exc, code="crm_customer_update_failed")


@customers_router.delete("/{customer_id}", response_model=None)
def delete_customer(
    request: Request,
    customer_id: int,
    db: Session = Depends(get_db),
    user: AuthUser = Depends(require_admin),
) -> dict[str, str] | JSONResponse:
    try:
        customer_service.delete_customer(db, customer_id)
        return {"message": "Record deleted successfully."}
    except CRMError as exc:
        return crm_error_response(request, exc, code="crm_customer_delete_failed")
