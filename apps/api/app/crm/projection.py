from __future__ import annotations

from collections.abc import Iterable, Mapping
from typing import Any

from sqlalchemy import Select, or_, select
from sqlalchemy.orm import Session

from app.crm.models import Customer, CustomField, CustomFieldValue


_PAIR_KEYS = ("field_name", "field_value")

SEARCH_COLUMNS = (
    Customer.first_name,
    Customer.last_name,
    Customer.phone_no,
    Customer.email_id,
    Customer.company_unique_id,
    Customer.agent_name,
    Customer.address,
    Customer.contact_type,
    Customer.company_name,
    Customer.disposition,
)


def group_custom_fields(rows: Iterable[Mapping[str, Any]]) -> list[dict[str, Any]]:
    """Fold joined (customer, field_name, field_value) rows into one view per customer.

    Customers come back ordered by ``customer_id`` and their pairs by field
    name. Pairs with a missing name or an empty value are dropped; a customer
    with no remaining pairs still appears with an empty ``custom_fields`` list.
    """
    views: dict[Any, dict[str, Any]] = {}
    for row in rows:
        customer_id = row["customer_id"]
        view = views.get(customer_id)
        if view is None:
            view = {key: value for key, value in row.items() if key not in _PAIR_KEYS}
            view["custom_fields"] = []
            views[customer_id] = view

        field_name = row.get("field_name")
        field_value = row.get("field_value")
        if field_name and field_value:
            view["custom_fields"].append({"field_name": field_name, "field_value": field_value})

    ordered = [views[key] for key in sorted(views)]
    for view in ordered:
        view["custom_fields"].sort(key=lambda pair: pair["field_name"])
    return ordered


class CustomerProjector:
    def base_query(self) -> Select[Any]:
        return (
            select(
                Customer.id.label("customer_id"),
                Customer.first_name,
                Customer.last_name,
                Customer.phone_no,
                Customer.email_id,
                Customer.date_of_birth,
                Customer.address,
                Customer.company_name,
                Customer.company_unique_id,
                Customer.contact_type,
                Customer.source,
                Customer.disposition,
                Customer.agent_name,
                Customer.date_created,
                CustomField.field_name,
                CustomFieldValue.field_value,
            )
            .select_from(Customer)
            .outerjoin(CustomFieldValue, CustomFieldValue.company_unique_id == Customer.company_unique_id)
            .outerjoin(CustomField, CustomField.id == CustomFieldValue.field_id)
            .order_by(Customer.id.asc(), CustomField.field_name.asc())
        )

    def project_with_custom_fields(
        self,
        session: Session,
        *,
        company_unique_id: str | None = None,
        search: str | None = None,
    ) -> list[dict[str, Any]]:
        stmt = self.base_query()
        if company_unique_id is not None:
            stmt = stmt.where(Customer.company_unique_id == company_unique_id)
        if search:
            stmt = stmt.where(or_(*(column.icontains(search, autoescape=True) for column in SEARCH_COLUMNS)))
        rows = session.execute(stmt).mappings().all()
        return group_custom_fields(rows)


projector = CustomerProjector()
