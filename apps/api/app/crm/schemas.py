from __future__ import annotations

import json
from datetime import date, datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator


CustomFieldType = Literal["text", "dropdown", "dropdown_checkbox", "datetime"]


class CustomFieldSpec(BaseModel):
    # Name and type stay plain strings so the registry reports InvalidName / InvalidType itself.
    field_name: str | None = None
    field_type: str | None = None
    dropdown_options: list[str] | None = None


class CustomFieldBatchCreate(BaseModel):
    fields: list[CustomFieldSpec] = Field(default_factory=list)


class CustomFieldRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    field_name: str
    field_type: CustomFieldType
    dropdown_options: list[str] | None
    created_at: datetime

    @field_validator("dropdown_options", mode="before")
    @classmethod
    def _decode_options(cls, value: object) -> object:
        if isinstance(value, str):
            return json.loads(value)
        return value


class CustomValueInput(BaseModel):
    field_id: int | None = None
    field_value: str | None = None


class CustomValuesWrite(BaseModel):
    custom_fields: list[CustomValueInput] = Field(default_factory=list)


class CustomValuesWriteResult(BaseModel):
    company_unique_id: str
    written: int
    skipped: int


class CustomFieldEntry(BaseModel):
    field_name: str
    field_value: str


class CustomerBase(BaseModel):
    first_name: str | None = Field(default=None, max_length=255)
    last_name: str | None = Field(default=None, max_length=255)
    phone_no: str | None = Field(default=None, max_length=32)
    email_id: str | None = Field(default=None, max_length=255)
    date_of_birth: date | None = None
    address: str | None = None
    company_name: str | None = Field(default=None, max_length=255)
    contact_type: str | None = Field(default=None, max_length=32)
    source: str | None = Field(default=None, max_length=128)
    disposition: str | None = Field(default=None, max_length=128)
    agent_name: str | None = Field(default=None, max_length=255)


class CustomerCreate(CustomerBase):
    company_unique_id: str = Field(min_length=1, max_length=64)


class CustomerUpdate(CustomerBase):
    custom_fields: list[CustomValueInput] | None = None


class CustomerRead(CustomerBase):
    model_config = ConfigDict(from_attributes=True)

    id: int
    company_unique_id: str
    contact_type: str
    date_created: datetime
    updated_at: datetime


class CustomerWithCustomFields(CustomerBase):
    customer_id: int
    company_unique_id: str
    date_created: datetime | None = None
    custom_fields: list[CustomFieldEntry] = Field(default_factory=list)


class FieldChange(BaseModel):
    field: str | None = Field(default=None, max_length=255)
    field_id: int | None = None
    old_value: str | None = None
    new_value: str | None = None
    is_custom_field: bool = False


class ChangeLogWrite(BaseModel):
    company_unique_id: str | None = Field(default=None, max_length=64)
    changes: list[FieldChange] | None = None


class ChangeLogRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    company_unique_id: str
    field: str
    old_value: str | None
    new_value: str | None
    changed_at: datetime


class ChangeHistoryResponse(BaseModel):
    message: str
    change_history: list[ChangeLogRead]
