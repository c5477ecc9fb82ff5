from __future__ import annotations

import uuid
from decimal import Decimal

from sqlalchemy import Select, and_, func, select
from sqlalchemy.orm import Session, joinedload, selectinload

from app.authz.models import Role, User, UserType
from app.business.quotations.models import Quotation, QuotationStatus
from app.crm.models import CRMLead, CRMOrganization


def _supports_row_locks(session: Session) -> bool:
    return session.get_bind().dialect.name != "sqlite"


class QuotationRepository:
    def _base_query(self) -> Select[tuple[Quotation]]:
        return (
            select(Quotation)
            .where(Quotation.is_deleted.is_(False))
            .options(
                joinedload(Quotation.lead).joinedload(CRMLead.organization),
                joinedload(Quotation.lead).joinedload(CRMLead.contact),
                joinedload(Quotation.uploader),
                joinedload(Quotation.status_changer),
            )
        )

    def get_active(self, session: Session, quotation_id: uuid.UUID) -> Quotation | None:
        return session.scalar(self._base_query().where(Quotation.id == quotation_id))

    def get_for_update(self, session: Session, quotation_id: uuid.UUID) -> Quotation | None:
        stmt = self._base_query().where(Quotation.id == quotation_id)
        if _supports_row_locks(session):
            stmt = stmt.with_for_update(of=Quotation)
        return session.scalar(stmt)

    def list_for_lead(self, session: Session, lead_id: uuid.UUID) -> list[Quotation]:
        stmt = self._base_query().where(Quotation.lead_id == lead_id).order_by(Quotation.created_at.desc())
        return list(session.scalars(stmt).unique().all())

    def count_active_for_lead(self, session: Session, lead_id: uuid.UUID) -> int:
        return session.scalar(
            select(func.count())
            .select_from(Quotation)
            .where(and_(Quotation.lead_id == lead_id, Quotation.is_deleted.is_(False)))
        ) or 0

    def stats(self, session: Session, *, uploaded_by_id: uuid.UUID | None = None) -> dict[str, int | Decimal]:
        conditions = [Quotation.is_deleted.is_(False)]
        if uploaded_by_id is not None:
            conditions.append(Quotation.uploaded_by_id == uploaded_by_id)

        rows = session.execute(
            select(
                Quotation.status,
                func.count(),
                func.coalesce(func.sum(Quotation.amount), 0),
            )
            .where(and_(*conditions))
            .group_by(Quotation.status)
        ).all()

        counts = {status.value: 0 for status in QuotationStatus}
        total_value = Decimal("0")
        accepted_value = Decimal("0")
        for status, count, amount in rows:
            counts[status] = int(count)
            total_value += Decimal(str(amount))
            if status == QuotationStatus.ACCEPTED.value:
                accepted_value = Decimal(str(amount))

        return {
            "total": sum(counts.values()),
            "uploaded": counts[QuotationStatus.UPLOADED.value],
            "sent": counts[QuotationStatus.SENT.value],
            "accepted": counts[QuotationStatus.ACCEPTED.value],
            "rejected": counts[QuotationStatus.REJECTED.value],
            "total_value": total_value,
            "accepted_value": accepted_value,
        }


class LeadRepository:
    def get_active(self, session: Session, lead_id: uuid.UUID) -> CRMLead | None:
        return session.scalar(
            select(CRMLead)
            .where(and_(CRMLead.id == lead_id, CRMLead.is_deleted.is_(False)))
            .options(joinedload(CRMLead.organization), joinedload(CRMLead.contact))
        )

    def lock_organization(self, session: Session, organization_id: uuid.UUID) -> CRMOrganization | None:
        """Serialize client provisioning per organization where the database supports row locks."""

        stmt = select(CRMOrganization).where(CRMOrganization.id == organization_id)
        if _supports_row_locks(session):
            stmt = stmt.with_for_update()
        return session.scalar(stmt)


class AccountRepository:
    def find_active_client_for_organization(self, session: Session, organization_id: uuid.UUID) -> User | None:
        return session.scalar(
            select(User)
            .where(
                and_(
                    User.organization_id == organization_id,
                    User.user_type == UserType.CLIENT.value,
                    User.is_active.is_(True),
                )
            )
            .order_by(User.created_at.asc())
            .limit(1)
        )

    def find_by_email(self, session: Session, email: str) -> User | None:
        return session.scalar(select(User).where(func.lower(User.email) == email.lower()).limit(1))

    def get_role_by_name(self, session: Session, name: str) -> Role | None:
        return session.scalar(
            select(Role).where(func.lower(Role.name) == name.strip().lower()).order_by(Role.name.asc()).limit(1)
        )

    def list_roles(self, session: Session) -> list[Role]:
        return list(session.scalars(select(Role).order_by(Role.name.asc())).all())

    def get_user(self, session: Session, user_id: uuid.UUID) -> User | None:
        return session.scalar(select(User).where(User.id == user_id).options(selectinload(User.roles)))
