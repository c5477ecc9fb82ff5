from __future__ import annotations

import uuid
from datetime import datetime, timezone
from decimal import Decimal
from enum import StrEnum

from sqlalchemy import Boolean, CheckConstraint, DateTime, ForeignKey, Index, Integer, Numeric, String, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.authz.models import User
from app.core.database import Base
from app.crm.models import CRMLead


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class QuotationStatus(StrEnum):
    UPLOADED = "UPLOADED"
    SENT = "SENT"
    ACCEPTED = "ACCEPTED"
    REJECTED = "REJECTED"


class Quotation(Base):
    __tablename__ = "quotation"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    lead_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("crm_lead.id", ondelete="CASCADE"),
        nullable=False,
    )
    quotation_number: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    title: Mapped[str] = mapped_column(Text, nullable=False)
    amount: Mapped[Decimal | None] = mapped_column(Numeric(18, 2), nullable=True)
    currency: Mapped[str] = mapped_column(String(16), nullable=False, default="USD", server_default="USD")
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    valid_until: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    document_path: Mapped[str | None] = mapped_column(Text, nullable=True)
    original_file_name: Mapped[str | None] = mapped_column(Text, nullable=True)
    file_size: Mapped[int | None] = mapped_column(Integer, nullable=True)
    status: Mapped[str] = mapped_column(
        String(16),
        nullable=False,
        default=QuotationStatus.UPLOADED.value,
        server_default=QuotationStatus.UPLOADED.value,
    )
    uploaded_by_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("authz_user.id", ondelete="RESTRICT"),
        nullable=False,
    )
    status_changed_by_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("authz_user.id", ondelete="SET NULL"),
        nullable=True,
    )
    status_changed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    sent_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    is_deleted: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default="false")
    deleted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        onupdate=utcnow,
    )

    lead: Mapped[CRMLead] = relationship(CRMLead)
    uploader: Mapped[User] = relationship(User, foreign_keys=[uploaded_by_id])
    status_changer: Mapped[User | None] = relationship(User, foreign_keys=[status_changed_by_id])

    __table_args__ = (
        CheckConstraint(
            "status IN ('UPLOADED', 'SENT', 'ACCEPTED', 'REJECTED')",
            name="ck_quotation_status",
        ),
        Index("ix_quotation_lead_id", "lead_id"),
        Index("ix_quotation_status", "status"),
        Index("ix_quotation_uploaded_by_id", "uploaded_by_id"),
        Index("ix_quotation_created_at", "created_at"),
    )
