from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator


QuotationStatusValue = Literal["UPLOADED", "SENT", "ACCEPTED", "REJECTED"]
QuotationTargetStatus = Literal["SENT", "ACCEPTED", "REJECTED"]


class QuotationUpload(BaseModel):
    title: str = Field(min_length=1, max_length=500)
    amount: Decimal | None = Field(default=None, ge=Decimal("0"))
    currency: str | None = Field(default=None, min_length=1, max_length=16)
    notes: str | None = None
    document_path: str | None = None
    original_file_name: str | None = None
    file_size: int | None = Field(default=None, ge=0)


class QuotationMetadataUpdate(BaseModel):
    title: str | None = Field(default=None, min_length=1, max_length=500)
    amount: Decimal | None = Field(default=None, ge=Decimal("0"))
    notes: str | None = None


class QuotationStatusUpdate(BaseModel):
    status: QuotationTargetStatus
    notes: str | None = None

    @field_validator("status", mode="before")
    @classmethod
    def _uppercase_status(cls, value: object) -> object:
        if isinstance(value, str):
            return value.strip().upper()
        return value


class QuotationUserRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    email: str
    first_name: str | None
    last_name: str | None


class QuotationRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    lead_id: UUID
    quotation_number: str
    title: str
    amount: Decimal | None
    currency: str
    notes: str | None
    valid_until: datetime | None
    document_path: str | None
    original_file_name: str | None
    file_size: int | None
    status: QuotationStatusValue | str
    uploaded_by_id: UUID
    status_changed_by_id: UUID | None
    status_changed_at: datetime | None
    sent_at: datetime | None
    created_at: datetime
    updated_at: datetime
    uploader: QuotationUserRead | None = None
    status_changer: QuotationUserRead | None = None


class ClientAccountRead(BaseModel):
    """Account created while accepting a quotation. Never carries the password."""

    id: UUID
    email: str
    role: str


class QuotationStatusChangeResult(BaseModel):
    quotation: QuotationRead
    client_account: ClientAccountRead | None = None
    client_account_skipped: bool = False


class QuotationStats(BaseModel):
    total: int
    uploaded: int
    sent: int
    accepted: int
    rejected: int
    total_value: Decimal
    accepted_value: Decimal
