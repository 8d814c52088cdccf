from __future__ import annotations

from datetime import date, datetime, timezone

from sqlalchemy import (
    Date,
    DateTime,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column

from app.core.database import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Customer(Base):
    """Primary entity table. Custom field registration appends columns here at runtime."""

    __tablename__ = "customers"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    first_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    last_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    phone_no: Mapped[str | None] = mapped_column(String(32), nullable=True)
    email_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    date_of_birth: Mapped[date | None] = mapped_column(Date, nullable=True)
    address: Mapped[str | None] = mapped_column(Text, nullable=True)
    company_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    company_unique_id: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    contact_type: Mapped[str] = mapped_column(String(32), nullable=False, default="customer")
    source: Mapped[str | None] = mapped_column(String(128), nullable=True)
    disposition: Mapped[str | None] = mapped_column(String(128), nullable=True)
    agent_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    date_created: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        onupdate=utcnow,
    )


class CustomField(Base):
    __tablename__ = "custom_field"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    field_name: Mapped[str] = mapped_column(String(64), nullable=False)
    field_type: Mapped[str] = mapped_column(String(32), nullable=False)
    dropdown_options: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

    __table_args__ = (UniqueConstraint("field_name", name="uq_custom_field_field_name"),)


class CustomFieldValue(Base):
    __tablename__ = "custom_field_values"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    company_unique_id: Mapped[str] = mapped_column("comp_unique_id", String(64), nullable=False)
    field_id: Mapped[int] = mapped_column(Integer, nullable=False)
    field_value: Mapped[str | None] = mapped_column(Text, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        onupdate=utcnow,
    )


class ChangeLogEntry(Base):
    __tablename__ = "updates_history"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    company_unique_id: Mapped[str] = mapped_column("com_unique_id", String(64), nullable=False)
    field: Mapped[str] = mapped_column(String(255), nullable=False)
    old_value: Mapped[str | None] = mapped_column(Text, nullable=True)
    new_value: Mapped[str | None] = mapped_column(Text, nullable=True)
    changed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)


Index("ix_customers_updated_at", Customer.updated_at)
Index(
    "uq_custom_field_values_entity_field",
    CustomFieldValue.company_unique_id,
    CustomFieldValue.field_id,
    unique=True,
)
Index("ix_custom_field_values_field_id", CustomFieldValue.field_id)
Index("ix_updates_history_entity_changed", ChangeLogEntry.company_unique_id, ChangeLogEntry.changed_at)
