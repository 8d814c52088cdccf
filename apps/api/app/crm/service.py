from __future__ import annotations

import logging
from collections.abc import Sequence
from datetime import date
from typing import Any

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.core.errors import ConflictError, NotFoundError
from app.crm.eav import CustomFieldValueStore, ValueWritePolicy, value_store
from app.crm.history import ChangeHistoryLog, change_log
from app.crm.models import ChangeLogEntry, Customer
from app.crm.projection import CustomerProjector, projector
from app.crm.schemas import (
    ChangeLogRead,
    CustomerCreate,
    CustomerRead,
    CustomerUpdate,
    CustomerWithCustomFields,
    CustomValueInput,
    CustomValuesWriteResult,
    FieldChange,
)
from app.crm.transaction import transaction


logger = logging.getLogger("app.crm.customers")

UPDATABLE_COLUMNS = (
    "first_name",
    "last_name",
    "phone_no",
    "email_id",
    "date_of_birth",
    "address",
    "company_name",
    "contact_type",
    "source",
    "disposition",
    "agent_name",
)
DEFAULT_CONTACT_TYPE = "customer"


def _stringify(value: Any) -> str | None:
    if value is None:
        return None
    if isinstance(value, date):
        return value.isoformat()
    return str(value)


class CustomerService:
    def __init__(
        self,
        values: CustomFieldValueStore = value_store,
        history: ChangeHistoryLog = change_log,
        views: CustomerProjector = projector,
    ) -> None:
        self.values = values
        self.history = history
        self.views = views

    def create_customer(self, session: Session, dto: CustomerCreate) -> CustomerRead:
        payload = dto.model_dump()
        payload["contact_type"] = payload.get("contact_type") or DEFAULT_CONTACT_TYPE
        try:
            with transaction(session):
                if self._find(session, dto.company_unique_id) is not None:
                    raise ConflictError(
                        f"Customer '{dto.company_unique_id}' already exists.",
                        kind="DuplicateCustomer",
                    )
                customer = Customer(**payload)
                session.add(customer)
                session.flush()
                result = CustomerRead.model_validate(customer)
        except IntegrityError as exc:
            raise ConflictError(
                f"Customer '{dto.company_unique_id}' already exists.",
                kind="DuplicateCustomer",
            ) from exc

        logger.info("customer.created", extra={"company_unique_id": result.company_unique_id})
        return result

    def list_customers(self, session: Session) -> list[CustomerRead]:
        rows = session.scalars(select(Customer).order_by(Customer.updated_at.desc(), Customer.id.desc())).all()
        return [CustomerRead.model_validate(row) for row in rows]

    def get_customer(self, session: Session, company_unique_id: str) -> CustomerWithCustomFields:
        views = self.views.project_with_custom_fields(session, company_unique_id=company_unique_id)
        if not views:
            raise NotFoundError(f"Customer '{company_unique_id}' not found.", kind="UnknownCustomer")
        return CustomerWithCustomFields.model_validate(views[0])

    def list_with_custom_fields(self, session: Session) -> list[CustomerWithCustomFields]:
        return [CustomerWithCustomFields.model_validate(view) for view in self.views.project_with_custom_fields(session)]

    def search_customers(self, session: Session, query: str) -> list[CustomerWithCustomFields]:
        views = self.views.project_with_custom_fields(session, search=query.strip())
        return [CustomerWithCustomFields.model_validate(view) for view in views]

    def update_customer(self, session: Session, company_unique_id: str, dto: CustomerUpdate) -> CustomerWithCustomFields:
        """Apply the provided columns and custom values, logging every actual change in the same transaction."""
        with transaction(session):
            customer = self._find(session, company_unique_id)
            if customer is None:
                raise NotFoundError(f"Customer '{company_unique_id}' not found.", kind="UnknownCustomer")

            changes = self._apply_columns(customer, dto)
            if dto.custom_fields:
                changes.extend(self._apply_custom_values(session, company_unique_id, dto.custom_fields))
            session.flush()
            if changes:
                self.history.append_changes(session, company_unique_id, changes)

        logger.info(
            "customer.updated",
            extra={"company_unique_id": company_unique_id, "count": len(changes)},
        )
        return self.get_customer(session, company_unique_id)

    def delete_customer(self, session: Session, customer_id: int) -> None:
        with transaction(session):
            customer = session.get(Customer, customer_id)
            if customer is None:
                raise NotFoundError("Record not found.", kind="UnknownCustomer")
            company_unique_id = customer.company_unique_id
            session.delete(customer)
        logger.info("customer.deleted", extra={"company_unique_id": company_unique_id})

    def set_custom_values(
        self,
        session: Session,
        company_unique_id: str,
        items: Sequence[CustomValueInput],
        policy: ValueWritePolicy,
    ) -> CustomValuesWriteResult:
        with transaction(session):
            outcome = self.values.apply_values(session, company_unique_id, items, policy)
        return CustomValuesWriteResult(
            company_unique_id=company_unique_id,
            written=outcome.written,
            skipped=outcome.skipped,
        )

    def log_changes(self, session: Session, company_unique_id: str, changes: Sequence[FieldChange]) -> list[ChangeLogRead]:
        with transaction(session):
            self._require_customer(session, company_unique_id)
            self.history.append_changes(session, company_unique_id, changes)
        return self._history_reads(self.history.fetch_history(session, company_unique_id))

    def fetch_history(self, session: Session, company_unique_id: str) -> list[ChangeLogRead]:
        self._require_customer(session, company_unique_id)
        return self._history_reads(self.history.fetch_history(session, company_unique_id))

    def _apply_columns(self, customer: Customer, dto: CustomerUpdate) -> list[FieldChange]:
        changes: list[FieldChange] = []
        for column in UPDATABLE_COLUMNS:
            if column not in dto.model_fields_set:
                continue
            new_value = getattr(dto, column)
            if column == "contact_type" and not new_value:
                new_value = DEFAULT_CONTACT_TYPE
            old_value = getattr(customer, column)
            if old_value == new_value:
                continue
            setattr(customer, column, new_value)
            changes.append(FieldChange(field=column, old_value=_stringify(old_value), new_value=_stringify(new_value)))
        return changes

    def _apply_custom_values(
        self,
        session: Session,
        company_unique_id: str,
        items: Sequence[CustomValueInput],
    ) -> list[FieldChange]:
        before = {row.field_id: row.field_value for row in self.values.get_values(session, company_unique_id)}
        self.values.apply_values(session, company_unique_id, items, ValueWritePolicy.UPSERT)

        changes: list[FieldChange] = []
        for item in items:
            old_value = before.get(item.field_id)
            if old_value == item.field_value:
                continue
            before[item.field_id] = item.field_value
            changes.append(
                FieldChange(
                    field_id=item.field_id,
                    old_value=old_value,
                    new_value=item.field_value,
                    is_custom_field=True,
                )
            )
        return changes

    def _find(self, session: Session, company_unique_id: str) -> Customer | None:
        return session.scalar(select(Customer).where(Customer.company_unique_id == company_unique_id))

    def _require_customer(self, session: Session, company_unique_id: str) -> Customer:
        customer = self._find(session, company_unique_id)
        if customer is None:
            raise NotFoundError(f"Customer '{company_unique_id}' not found.", kind="UnknownCustomer")
        return customer

    @staticmethod
    def _history_reads(entries: Sequence[ChangeLogEntry]) -> list[ChangeLogRead]:
        return [ChangeLogRead.model_validate(entry) for entry in entries]


customer_service = CustomerService()
