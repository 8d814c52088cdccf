from __future__ import annotations

import logging
from collections.abc import Sequence

from sqlalchemy import select
from sqlalchemy.orm import Session

from app.core.errors import ValidationError
from app.crm.models import ChangeLogEntry, utcnow
from app.crm.schemas import FieldChange


logger = logging.getLogger("app.crm.history")

CUSTOM_FIELD_LABEL = "Custom Field {field_id}"


def label_for(change: FieldChange) -> str:
    if change.is_custom_field:
        if change.field_id is None:
            raise ValidationError("field_id is required for custom field changes.", kind="MissingField")
        return CUSTOM_FIELD_LABEL.format(field_id=change.field_id)
    if not change.field:
        raise ValidationError("field is required for every change.", kind="MissingField")
    return change.field


class ChangeHistoryLog:
    """Append-only per-customer change log. Rows are never updated or deleted."""

    def append_changes(
        self,
        session: Session,
        company_unique_id: str,
        changes: Sequence[FieldChange],
    ) -> list[ChangeLogEntry]:
        if not company_unique_id:
            raise ValidationError("company_unique_id is required.", kind="MissingField")
        if not changes:
            raise ValidationError("changes must be a non-empty array.", kind="MissingField")

        changed_at = utcnow()
        entries = [
            ChangeLogEntry(
                company_unique_id=company_unique_id,
                field=label_for(change),
                old_value=change.old_value or None,
                new_value=change.new_value or None,
                changed_at=changed_at,
            )
            for change in changes
        ]
        session.add_all(entries)
        session.flush()

        logger.info(
            "change_history.appended",
            extra={"company_unique_id": company_unique_id, "count": len(entries)},
        )
        return entries

    def fetch_history(self, session: Session, company_unique_id: str) -> list[ChangeLogEntry]:
        stmt = (
            select(ChangeLogEntry)
            .where(ChangeLogEntry.company_unique_id == company_unique_id)
            .order_by(ChangeLogEntry.changed_at.desc(), ChangeLogEntry.id.desc())
        )
        return list(session.scalars(stmt).all())


change_log = ChangeHistoryLog()
