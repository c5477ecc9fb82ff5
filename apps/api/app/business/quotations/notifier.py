from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal

from app.business.quotations import templates
from app.business.quotations.errors import NotificationFailedError
from app.business.quotations.models import Quotation
from app.core.config import get_settings
from app.metrics import observe_notification_failure
from app.platform.notifications import EmailDispatcher, get_email_dispatcher


logger = logging.getLogger("app.quotations.notifications")


@dataclass(frozen=True, slots=True)
class QuotationSnapshot:
    """Plain copy of what notifications need, taken before the transaction commits."""

    quotation_id: str
    title: str
    status: str
    amount: Decimal | None
    currency: str | None
    valid_until: datetime | None
    uploader_email: str | None
    uploader_name: str | None
    # Structured contact only; the lead's legacy contact columns never receive mail.
    contact_email: str | None
    organization_email: str | None

    @classmethod
    def capture(cls, quotation: Quotation) -> QuotationSnapshot:
        lead = quotation.lead
        organization = lead.organization if lead is not None else None
        contact = lead.contact if lead is not None else None
        uploader = quotation.uploader
        return cls(
            quotation_id=str(quotation.id),
            title=quotation.title,
            status=quotation.status,
            amount=quotation.amount,
            currency=quotation.currency,
            valid_until=quotation.valid_until,
            uploader_email=uploader.email if uploader is not None else None,
            uploader_name=uploader.display_name if uploader is not None else None,
            contact_email=contact.email if contact is not None else None,
            organization_email=organization.email if organization is not None else None,
        )


def collect_recipients(
    uploader_email: str | None,
    contact_email: str | None,
    organization_email: str | None,
) -> list[str]:
    candidates = [uploader_email, contact_email]
    if not (contact_email or "").strip():
        candidates.append(organization_email)

    recipients: list[str] = []
    seen: set[str] = set()
    for candidate in candidates:
        value = (candidate or "").strip()
        if not value or value.lower() in seen:
            continue
        seen.add(value.lower())
        recipients.append(value)
    return recipients


class QuotationNotifier:
    """Best-effort email side effects. Delivery problems are logged and counted, never raised."""

    def __init__(self, dispatcher: EmailDispatcher | None = None) -> None:
        self._dispatcher = dispatcher

    @property
    def dispatcher(self) -> EmailDispatcher:
        return self._dispatcher or get_email_dispatcher()

    def quotation_uploaded(self, snapshot: QuotationSnapshot) -> bool:
        rendered = templates.quotation_uploaded(
            title=snapshot.title,
            amount=snapshot.amount,
            currency=snapshot.currency,
            valid_until=snapshot.valid_until,
            uploader_name=snapshot.uploader_name,
            portal_name=get_settings().portal_name,
        )
        recipients = collect_recipients(None, snapshot.contact_email, snapshot.organization_email)
        return self._deliver("quotation_uploaded", recipients, rendered, snapshot.quotation_id)

    def status_changed(
        self,
        snapshot: QuotationSnapshot,
        *,
        old_status: str,
        new_status: str,
        changed_by: str | None,
        notes: str | None,
    ) -> bool:
        rendered = templates.quotation_status_updated(
            title=snapshot.title,
            old_status=old_status,
            new_status=new_status,
            changed_by=changed_by,
            notes=notes,
            portal_name=get_settings().portal_name,
        )
        return self._deliver("status_changed", self._recipients(snapshot), rendered, snapshot.quotation_id)

    def quotation_deleted(self, snapshot: QuotationSnapshot) -> bool:
        rendered = templates.quotation_deleted(
            title=snapshot.title,
            status=snapshot.status,
            portal_name=get_settings().portal_name,
        )
        return self._deliver("quotation_deleted", self._recipients(snapshot), rendered, snapshot.quotation_id)

    def client_welcome(
        self,
        *,
        quotation_id: str,
        email: str,
        first_name: str | None,
        last_name: str | None,
        temporary_password: str,
    ) -> bool:
        settings = get_settings()
        rendered = templates.client_welcome(
            first_name=first_name,
            last_name=last_name,
            email=email,
            temporary_password=temporary_password,
            login_url=f"{settings.frontend_url.rstrip('/')}/login",
            portal_name=settings.portal_name,
        )
        return self._deliver("client_welcome", [email], rendered, quotation_id)

    @staticmethod
    def _recipients(snapshot: QuotationSnapshot) -> list[str]:
        return collect_recipients(snapshot.uploader_email, snapshot.contact_email, snapshot.organization_email)

    def _deliver(
        self,
        kind: str,
        recipients: list[str],
        rendered: templates.RenderedEmail,
        quotation_id: str,
    ) -> bool:
        try:
            if not recipients:
                raise NotificationFailedError(kind, recipients)
            if not self.dispatcher.send(recipients, rendered.subject, rendered.html, rendered.text):
                raise NotificationFailedError(kind, recipients)
        except Exception as exc:
            observe_notification_failure(kind)
            logger.warning(
                "notification.failed",
                extra={
                    "kind": kind,
                    "quotation_id": quotation_id,
                    "recipients": recipients,
                    "error": str(exc),
                },
            )
            return False

        logger.info(
            "notification.sent",
            extra={"kind": kind, "quotation_id": quotation_id, "recipients": recipients, "subject": rendered.subject},
        )
        return True
