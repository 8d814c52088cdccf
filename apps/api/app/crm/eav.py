from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass
from enum import Enum
from typing import Any

from opentelemetry import trace
from sqlalchemy import select
from sqlalchemy.dialects.postgresql import insert as postgresql_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.orm import Session

from app.core.errors import CRMError, NotFoundError, StoreIntegrityError, ValidationError
from app.crm.models import Customer, CustomField, CustomFieldValue, utcnow
from app.crm.schemas import CustomValueInput
from app.metrics import observe_custom_field_value_write
from app.otel import mark_span_failed


logger = logging.getLogger("app.crm.values")
tracer = trace.get_tracer("app.crm.values")

# Dialects with a native INSERT ... ON CONFLICT.
_UPSERT_INSERTS = {"postgresql": postgresql_insert, "sqlite": sqlite_insert}


class ValueWritePolicy(str, Enum):
    UPSERT = "upsert"
    INSERT_IF_ABSENT = "insert_if_absent"


@dataclass
class ValueWriteOutcome:
    written: int = 0
    skipped: int = 0


class CustomFieldValueStore:
    """Per-customer custom field values, at most one row per (customer, field).

    Writes go straight to the table as INSERT ... ON CONFLICT so concurrent writers
    never trip the unique index. They never commit; callers wrap them in ``transaction()``.
    """

    table = CustomFieldValue.__table__

    def get_values(self, session: Session, company_unique_id: str) -> list[CustomFieldValue]:
        stmt = (
            select(CustomFieldValue)
            .where(CustomFieldValue.company_unique_id == company_unique_id)
            .order_by(CustomFieldValue.field_id.asc())
        )
        return list(session.scalars(stmt).all())

    def get_value(self, session: Session, company_unique_id: str, field_id: int) -> CustomFieldValue | None:
        return session.scalar(
            select(CustomFieldValue).where(
                CustomFieldValue.company_unique_id == company_unique_id,
                CustomFieldValue.field_id == field_id,
            )
        )

    def upsert_value(
        self,
        session: Session,
        company_unique_id: str,
        field_id: int | None,
        field_value: str | None,
    ) -> CustomFieldValue:
        field_id, field_value = self._require(field_id, field_value)
        stmt = self._insert_statement(session, company_unique_id, field_id, field_value)
        stmt = stmt.on_conflict_do_update(
            index_elements=self._conflict_columns(),
            set_={
                self.table.c.field_value: stmt.excluded.field_value,
                self.table.c.updated_at: stmt.excluded.updated_at,
            },
        )
        session.execute(stmt)
        return self._reload(session, company_unique_id, field_id)

    def insert_value_if_absent(
        self,
        session: Session,
        company_unique_id: str,
        field_id: int | None,
        field_value: str | None,
    ) -> bool:
        """Store the value only when the customer has none for this field. Returns whether it was stored."""
        field_id, field_value = self._require(field_id, field_value)
        stmt = self._insert_statement(session, company_unique_id, field_id, field_value)
        result = session.execute(stmt.on_conflict_do_nothing(index_elements=self._conflict_columns()))
        return result.rowcount == 1

    def apply_values(
        self,
        session: Session,
        company_unique_id: str,
        items: Sequence[CustomValueInput],
        policy: ValueWritePolicy,
    ) -> ValueWriteOutcome:
        with tracer.start_as_current_span("crm.custom_values.apply") as span:
            span.set_attribute("crm.custom_values.count", len(items))
            span.set_attribute("crm.custom_values.policy", policy.value)
            try:
                outcome = self._apply(session, company_unique_id, items, policy)
            except CRMError as exc:
                observe_custom_field_value_write(policy.value, "failed")
                mark_span_failed(span, exc)
                raise

        logger.info(
            "custom_values.applied",
            extra={
                "company_unique_id": company_unique_id,
                "policy": policy.value,
                "count": outcome.written,
            },
        )
        return outcome

    def ensure_references(self, session: Session, company_unique_id: str, field_ids: set[int]) -> None:
        """Refuse values for a customer or a field definition that does not exist."""
        customer = session.scalar(select(Customer.id).where(Customer.company_unique_id == company_unique_id))
        if customer is None:
            raise NotFoundError(f"Customer '{company_unique_id}' not found.", kind="UnknownCustomer")

        if not field_ids:
            return
        known = set(session.scalars(select(CustomField.id).where(CustomField.id.in_(sorted(field_ids)))).all())
        missing = sorted(field_ids - known)
        if missing:
            raise NotFoundError(
                f"Custom field(s) not found: {', '.join(str(item) for item in missing)}.",
                kind="UnknownField",
            )

    def _apply(
        self,
        session: Session,
        company_unique_id: str,
        items: Sequence[CustomValueInput],
        policy: ValueWritePolicy,
    ) -> ValueWriteOutcome:
        if not items:
            raise ValidationError("custom_fields should be a non-empty array.", kind="MissingField")
        pairs = [self._require(item.field_id, item.field_value) for item in items]
        self.ensure_references(session, company_unique_id, {field_id for field_id, _ in pairs})

        outcome = ValueWriteOutcome()
        for field_id, field_value in pairs:
            if policy is ValueWritePolicy.UPSERT:
                self.upsert_value(session, company_unique_id, field_id, field_value)
                stored = True
            else:
                stored = self.insert_value_if_absent(session, company_unique_id, field_id, field_value)

            if stored:
                outcome.written += 1
                observe_custom_field_value_write(policy.value, "written")
            else:
                outcome.skipped += 1
                observe_custom_field_value_write(policy.value, "skipped")
        return outcome

    def _insert_statement(self, session: Session, company_unique_id: str, field_id: int, field_value: str) -> Any:
        dialect_name = session.get_bind().dialect.name
        insert = _UPSERT_INSERTS.get(dialect_name)
        if insert is None:
            raise StoreIntegrityError(
                f"Custom field values cannot be written on '{dialect_name}'.",
                kind="UnsupportedDialect",
            )
        # Pending ORM rows must hit the table before the conflict clause can see them.
        session.flush()
        return insert(self.table).values(
            {
                self.table.c.comp_unique_id: company_unique_id,
                self.table.c.field_id: field_id,
                self.table.c.field_value: field_value,
                self.table.c.updated_at: utcnow(),
            }
        )

    def _conflict_columns(self) -> list[Any]:
        return [self.table.c.comp_unique_id, self.table.c.field_id]

    def _reload(self, session: Session, company_unique_id: str, field_id: int) -> CustomFieldValue:
        stmt = (
            select(CustomFieldValue)
            .where(
                CustomFieldValue.company_unique_id == company_unique_id,
                CustomFieldValue.field_id == field_id,
            )
            .execution_options(populate_existing=True)
        )
        return session.scalars(stmt).one()

    @staticmethod
    def _require(field_id: int | None, field_value: str | None) -> tuple[int, str]:
        if field_id is None or field_value is None:
            raise ValidationError(
                f"Field ID or Field Value is missing or invalid for field {field_id}.",
                kind="MissingField",
            )
        return field_id, field_value


value_store = CustomFieldValueStore()
