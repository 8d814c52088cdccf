from __future__ import annotations

import json
import logging
import re
import threading
from collections.abc import Sequence
from typing import Any

from opentelemetry import trace
from sqlalchemy import DateTime, String, Text, func, inspect, select, text
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session
from sqlalchemy.types import TypeEngine

from app.core.errors import ConflictError, CRMError, NotFoundError, StoreIntegrityError, ValidationError
from app.crm.models import Customer, CustomField
from app.crm.schemas import CustomFieldRead, CustomFieldSpec
from app.crm.transaction import transaction
from app.metrics import observe_custom_field_registration_failure, observe_custom_fields_registered
from app.otel import mark_span_failed


logger = logging.getLogger("app.crm.schema")
tracer = trace.get_tracer("app.crm.schema")

FIELD_NAME_RE = re.compile(r"^[A-Za-z0-9_ ]+$")
# PostgreSQL truncates identifiers past NAMEDATALEN - 1 bytes; names are ASCII so bytes == characters.
MAX_FIELD_NAME_LENGTH = 63
FIELD_TYPES = ("text", "dropdown", "dropdown_checkbox", "datetime")
DROPDOWN_FIELD_TYPES = frozenset({"dropdown", "dropdown_checkbox"})

# Dialects whose ALTER TABLE participates in the surrounding transaction.
TRANSACTIONAL_DDL_DIALECTS = frozenset({"postgresql", "sqlite"})

# pg_advisory_xact_lock key held by every registration transaction.
REGISTRATION_LOCK_KEY = 0x43524D01

_registration_lock = threading.Lock()


def column_type_for(field_type: str) -> TypeEngine[Any]:
    if field_type == "text":
        return String(255)
    if field_type in DROPDOWN_FIELD_TYPES:
        return Text()
    if field_type == "datetime":
        return DateTime()
    raise ValidationError(f"Invalid field type '{field_type}' provided.", kind="InvalidType")


def validate_field_spec(spec: CustomFieldSpec) -> tuple[str, str, list[str] | None]:
    """Check one definition and return ``(name, type, options)`` with empty options folded to ``None``."""
    name = spec.field_name
    if name is None or not name.strip():
        raise ValidationError("Field name is required for all fields.", kind="InvalidName")
    if len(name) > MAX_FIELD_NAME_LENGTH or not FIELD_NAME_RE.match(name):
        raise ValidationError(f"Invalid column name: {name}", kind="InvalidName")

    field_type = spec.field_type
    if field_type not in FIELD_TYPES:
        raise ValidationError(f"Invalid field type '{field_type}' provided.", kind="InvalidType")

    options = spec.dropdown_options or None
    if options is not None:
        if field_type not in DROPDOWN_FIELD_TYPES:
            raise ValidationError(
                f"Dropdown options are only allowed for dropdown fields, not '{field_type}'.",
                kind="InvalidOptions",
            )
        if any(not isinstance(option, str) or not option.strip() for option in options):
            raise ValidationError("Dropdown options must be non-empty strings.", kind="InvalidOptions")
    return name, field_type, options


class SchemaRegistry:
    """Keeps the ``custom_field`` definitions and the extra ``customers`` columns in step.

    A definition row and its column are written in the same transaction, so a
    failed batch leaves neither behind.
    """

    table = Customer.__table__

    def list_fields(self, session: Session) -> list[CustomFieldRead]:
        rows = session.scalars(select(CustomField).order_by(CustomField.id.asc())).all()
        return [CustomFieldRead.model_validate(row) for row in rows]

    def get_field_by_name(self, session: Session, field_name: str) -> CustomFieldRead:
        row = session.scalar(select(CustomField).where(func.lower(CustomField.field_name) == field_name.lower()))
        if row is None:
            raise NotFoundError(f"Custom field '{field_name}' not found.", kind="UnknownField")
        return CustomFieldRead.model_validate(row)

    def column_exists(self, session: Session, column_name: str) -> bool:
        # Column names are matched case-insensitively; SQLite and Postgres both fold unquoted lookups.
        wanted = column_name.lower()
        columns = inspect(session.connection()).get_columns(self.table.name)
        return any(str(column["name"]).lower() == wanted for column in columns)

    def register_field(
        self,
        session: Session,
        field_name: str | None,
        field_type: str | None,
        dropdown_options: list[str] | None = None,
    ) -> CustomFieldRead:
        spec = CustomFieldSpec(field_name=field_name, field_type=field_type, dropdown_options=dropdown_options)
        return self.register_fields(session, [spec])[0]

    def register_fields(self, session: Session, specs: Sequence[CustomFieldSpec]) -> list[CustomFieldRead]:
        with tracer.start_as_current_span("crm.custom_fields.register") as span:
            span.set_attribute("crm.custom_fields.count", len(specs))
            try:
                if not specs:
                    raise ValidationError("Form fields are required.", kind="MissingField")
                self._ensure_transactional_ddl(session)

                with _registration_lock:
                    with transaction(session):
                        self._acquire_advisory_lock(session)
                        created = [self._register_one(session, spec) for spec in specs]
            except CRMError as exc:
                self._record_failure(span, exc, exc.kind)
                raise
            except IntegrityError as exc:
                self._record_failure(span, exc, "DuplicateField")
                raise ConflictError("A custom field with this name already exists.", kind="DuplicateField") from exc
            except SQLAlchemyError as exc:
                self._record_failure(span, exc, "StoreError")
                raise CRMError("Failed to add custom fields.") from exc

        observe_custom_fields_registered(len(created))
        logger.info("custom_fields.registered", extra={"count": len(created)})
        return created

    def _register_one(self, session: Session, spec: CustomFieldSpec) -> CustomFieldRead:
        name, field_type, options = validate_field_spec(spec)
        if self.column_exists(session, name) or self._definition_exists(session, name):
            raise ConflictError(f"Column '{name}' already exists in customers table.", kind="DuplicateColumn")

        definition = CustomField(
            field_name=name,
            field_type=field_type,
            dropdown_options=json.dumps(options) if options else None,
        )
        session.add(definition)
        session.flush()
        self._add_column(session, name, field_type)

        logger.info(
            "custom_field.column_added",
            extra={"field_name": name, "field_type": field_type, "field_id": definition.id},
        )
        return CustomFieldRead.model_validate(definition)

    def _definition_exists(self, session: Session, field_name: str) -> bool:
        stmt = select(CustomField.id).where(func.lower(CustomField.field_name) == field_name.lower())
        return session.scalar(stmt) is not None

    def _add_column(self, session: Session, field_name: str, field_type: str) -> None:
        dialect = session.get_bind().dialect
        preparer = dialect.identifier_preparer
        column_type = column_type_for(field_type).compile(dialect=dialect)
        # field_name has already passed FIELD_NAME_RE, so quoting is the only escaping it needs.
        statement = (
            f"ALTER TABLE {preparer.format_table(self.table)} "
            f"ADD COLUMN {preparer.quote_identifier(field_name)} {column_type}"
        )
        session.execute(text(statement))

    def _ensure_transactional_ddl(self, session: Session) -> None:
        dialect_name = session.get_bind().dialect.name
        if dialect_name not in TRANSACTIONAL_DDL_DIALECTS:
            raise StoreIntegrityError(
                f"Custom field registration is not supported on '{dialect_name}'.",
                kind="NonTransactionalDDL",
            )

    def _acquire_advisory_lock(self, session: Session) -> None:
        if session.get_bind().dialect.name == "postgresql":
            session.execute(text("SELECT pg_advisory_xact_lock(:key)"), {"key": REGISTRATION_LOCK_KEY})

    def _record_failure(self, span: trace.Span, exc: Exception, reason: str) -> None:
        observe_custom_field_registration_failure(reason)
        mark_span_failed(span, exc)
        logger.info("custom_fields.registration_failed", extra={"reason": reason, "error": str(exc)})


schema_registry = SchemaRegistry()
