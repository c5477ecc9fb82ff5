"""create quotation table

Revision ID: 202610010002
Revises: 202610010001
Create Date: 2026-10-01 09:30:00
"""

from __future__ import annotations

from collections.abc import Sequence

from alembic import op
import sqlalchemy as sa


revision: str = "202610010002"
down_revision: str | None = "202610010001"
branch_labels: Sequence[str] | None = None
depends_on: Sequence[str] | None = None


def upgrade() -> None:
    op.create_table(
        "quotation",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("lead_id", sa.Uuid(), nullable=False),
        sa.Column("quotation_number", sa.String(length=64), nullable=False),
        sa.Column("title", sa.Text(), nullable=False),
        sa.Column("amount", sa.Numeric(18, 2), nullable=True),
        sa.Column("currency", sa.String(length=16), nullable=False, server_default="USD"),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("valid_until", sa.DateTime(timezone=True), nullable=True),
        sa.Column("document_path", sa.Text(), nullable=True),
        sa.Column("original_file_name", sa.Text(), nullable=True),
        sa.Column("file_size", sa.Integer(), nullable=True),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="UPLOADED"),
        sa.Column("uploaded_by_id", sa.Uuid(), nullable=False),
        sa.Column("status_changed_by_id", sa.Uuid(), nullable=True),
        sa.Column("status_changed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("sent_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("is_deleted", sa.Boolean(), nullable=False, server_default="false"),
        sa.Column("deleted_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.CheckConstraint(
            "status IN ('UPLOADED', 'SENT', 'ACCEPTED', 'REJECTED')",
            name="ck_quotation_status",
        ),
        sa.ForeignKeyConstraint(["lead_id"], ["crm_lead.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["uploaded_by_id"], ["authz_user.id"], ondelete="RESTRICT"),
        sa.ForeignKeyConstraint(["status_changed_by_id"], ["authz_user.id"], ondelete="SET NULL"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("quotation_number"),
    )
    op.create_index("ix_quotation_lead_id", "quotation", ["lead_id"])
    op.create_index("ix_quotation_status", "quotation", ["status"])
    op.create_index("ix_quotation_uploaded_by_id", "quotation", ["uploaded_by_id"])
    op.create_index("ix_quotation_created_at", "quotation", ["created_at"])


def downgrade() -> None:
    op.drop_index("ix_quotation_created_at", table_name="quotation")
    op.drop_index("ix_quotation_uploaded_by_id", table_name="quotation")
    op.drop_index("ix_quotation_status", table_name="quotation")
    op.drop_index("ix_quotation_lead_id", table_name="quotation")
    op.drop_table("quotation")
