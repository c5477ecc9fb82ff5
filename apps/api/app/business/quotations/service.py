from __future__ import annotations

import logging
import secrets
import string
import time
import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from opentelemetry import trace
from sqlalchemy.orm import Session

from app import audit, events
from app.business.quotations.errors import (
    ClientProvisioningFailedError,
    LeadNotFoundError,
    QuotationLockedError,
    QuotationNotFoundError,
)
from app.business.quotations.models import Quotation, QuotationStatus
from app.business.quotations.notifier import QuotationNotifier, QuotationSnapshot
from app.business.quotations.provisioning import ClientAccountProvisioner, ClientProvisioningValidator
from app.business.quotations.repository import AccountRepository, LeadRepository, QuotationRepository
from app.business.quotations.schemas import (
    ClientAccountRead,
    QuotationMetadataUpdate,
    QuotationRead,
    QuotationStats,
    QuotationStatusChangeResult,
    QuotationUpload,
)
from app.business.quotations.state_machine import TERMINAL_STATUSES, QuotationStateMachine, lead_stage_for
from app.core.config import get_settings
from app.core.database import TransactionTimeoutError, transaction
from app.crm.models import CLOSED_LEAD_STAGES, CRMLead, LeadBusinessStage
from app.metrics import (
    observe_client_provisioning,
    observe_post_commit_failure,
    observe_quotation_transaction,
    observe_quotation_transition,
)


logger = logging.getLogger("app.quotations")
tracer = trace.get_tracer("app.quotations")

_NUMBER_SUFFIX_ALPHABET = string.ascii_uppercase + string.digits


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def generate_quotation_number(now: datetime | None = None) -> str:
    stamp = (now or utcnow()).strftime("%Y%m%d%H%M%S")
    suffix = "".join(secrets.choice(_NUMBER_SUFFIX_ALPHABET) for _ in range(5))
    return f"QUO-{stamp}-{suffix}"


def append_status_note(existing: str | None, notes: str) -> str:
    return f"{existing or ''}\n\nStatus Update: {notes}".strip()


@dataclass(slots=True)
class _ProvisionedClient:
    user_id: uuid.UUID
    email: str
    first_name: str | None
    last_name: str | None
    role_name: str
    temporary_password: str


@contextmanager
def _post_commit_step(step: str, quotation_id: str) -> Iterator[None]:
    """Run a side effect of an already committed change; errors are logged and counted, never raised."""

    try:
        yield
    except Exception:
        observe_post_commit_failure(step)
        logger.exception("quotation.post_commit_failed", extra={"quotation_id": quotation_id, "step": step})


def _move_lead_stage(lead: CRMLead, stage: str, actor_id: uuid.UUID, now: datetime) -> None:
    if lead.business_stage == stage:
        return
    lead.business_stage = stage
    lead.stage_changed_at = now
    lead.stage_changed_by_id = actor_id


@dataclass(slots=True)
class QuotationService:
    quotation_repository: QuotationRepository = QuotationRepository()
    lead_repository: LeadRepository = LeadRepository()
    account_repository: AccountRepository = AccountRepository()
    state_machine: QuotationStateMachine = QuotationStateMachine()
    validator: ClientProvisioningValidator = ClientProvisioningValidator()
    provisioner: ClientAccountProvisioner = ClientAccountProvisioner()
    notifier: QuotationNotifier = QuotationNotifier()

    def update_status(
        self,
        session: Session,
        quotation_id: uuid.UUID,
        new_status: str,
        actor_id: uuid.UUID,
        notes: str | None = None,
    ) -> QuotationStatusChangeResult:
        """Move a quotation to ``new_status`` as one unit of work.

        Accepting provisions the organization's client account in the same
        transaction. Any failure, including a provisioning failure or an
        exhausted time budget, rolls back every write of the call and leaves the
        quotation as it was. Emails go out only after the commit and never fail
        the call.
        """

        settings = get_settings()
        started = time.perf_counter()
        provisioned: _ProvisionedClient | None = None
        existing_client_id: uuid.UUID | None = None

        with tracer.start_as_current_span("quotations.update_status") as span:
            span.set_attribute("quotation_id", str(quotation_id))
            span.set_attribute("to_status", str(new_status).upper())
            try:
                with transaction(session, timeout_seconds=settings.quotation_transaction_timeout_seconds) as deadline:
                    quotation = self.quotation_repository.get_for_update(session, quotation_id)
                    if quotation is None:
                        raise QuotationNotFoundError(quotation_id)

                    decision = self.state_machine.request_transition(quotation, new_status)
                    deadline.check("transition")

                    now = utcnow()
                    quotation.status = decision.to_status.value
                    quotation.status_changed_by_id = actor_id
                    quotation.status_changed_at = now
                    if decision.to_status == QuotationStatus.SENT:
                        quotation.sent_at = now
                    if notes and notes.strip():
                        quotation.notes = append_status_note(quotation.notes, notes.strip())

                    lead = quotation.lead
                    _move_lead_stage(lead, lead_stage_for(decision.to_status, lead.business_stage), actor_id, now)

                    if decision.requires_provisioning:
                        self.lead_repository.lock_organization(session, lead.organization_id)
                        verdict = self.validator.validate(session, quotation)
                        deadline.check("validate")

                        if verdict.already_provisioned:
                            existing_client_id = verdict.existing_user.id
                            logger.info(
                                "client_user.provisioning_skipped",
                                extra={
                                    "quotation_id": str(quotation_id),
                                    "organization_id": str(lead.organization_id),
                                    "user_id": str(existing_client_id),
                                },
                            )
                        elif not verdict.can_create:
                            raise ClientProvisioningFailedError(verdict.reason, verdict.message or "")
                        else:
                            account = self.provisioner.provision(session, quotation, verdict)
                            deadline.check("provision")
                            provisioned = _ProvisionedClient(
                                user_id=account.user.id,
                                email=account.user.email,
                                first_name=account.user.first_name,
                                last_name=account.user.last_name,
                                role_name=account.role.name,
                                temporary_password=account.temporary_password,
                            )

                    session.flush()
            except ClientProvisioningFailedError as exc:
                observe_client_provisioning(exc.reason.value)
                observe_quotation_transaction("provisioning_failed", time.perf_counter() - started)
                span.set_attribute("provisioning_failure_reason", exc.reason.value)
                logger.error(
                    "client_user.provisioning_failed",
                    extra={"quotation_id": str(quotation_id), "reason": exc.reason.value, "error": exc.message},
                )
                raise
            except TransactionTimeoutError as exc:
                observe_quotation_transaction("timeout", time.perf_counter() - started)
                logger.error(
                    "quotation.transaction_timeout",
                    extra={"quotation_id": str(quotation_id), "step": exc.step, "timeout_seconds": exc.timeout_seconds},
                )
                raise

            observe_quotation_transaction("committed", time.perf_counter() - started)
            from_status = decision.from_status.value
            to_status = decision.to_status.value

        quotation = self._reload(session, quotation_id)
        self._after_status_commit(
            quotation,
            from_status=from_status,
            to_status=to_status,
            actor_id=actor_id,
            notes=notes,
            provisioned=provisioned,
            provisioning_skipped=existing_client_id is not None,
        )

        client_account = None
        if provisioned is not None:
            client_account = ClientAccountRead(id=provisioned.user_id, email=provisioned.email, role=provisioned.role_name)
        return QuotationStatusChangeResult(
            quotation=QuotationRead.model_validate(quotation),
            client_account=client_account,
            client_account_skipped=existing_client_id is not None,
        )

    def _after_status_commit(
        self,
        quotation: Quotation,
        *,
        from_status: str,
        to_status: str,
        actor_id: uuid.UUID,
        notes: str | None,
        provisioned: _ProvisionedClient | None,
        provisioning_skipped: bool,
    ) -> None:
        quotation_id = str(quotation.id)
        with _post_commit_step("record_status_change", quotation_id):
            observe_quotation_transition(from_status, to_status)
            logger.info(
                "quotation.status_changed",
                extra={
                    "quotation_id": quotation_id,
                    "lead_id": str(quotation.lead_id),
                    "from_status": from_status,
                    "to_status": to_status,
                    "actor_id": str(actor_id),
                },
            )
            audit.record(
                actor_user_id=str(actor_id),
                entity_type="quotation",
                entity_id=quotation_id,
                action="quotation.status_changed",
                before={"status": from_status},
                after={"status": to_status},
            )
            events.publish(
                {
                    "event_type": "quotation.status_changed",
                    "quotation_id": quotation_id,
                    "lead_id": str(quotation.lead_id),
                    "from_status": from_status,
                    "to_status": to_status,
                    "actor_id": str(actor_id),
                }
            )

        if provisioning_skipped:
            with _post_commit_step("record_provisioning", quotation_id):
                observe_client_provisioning("skipped")

        if provisioned is not None:
            with _post_commit_step("record_provisioning", quotation_id):
                observe_client_provisioning("created")
                logger.info(
                    "client_user.provisioned",
                    extra={
                        "quotation_id": quotation_id,
                        "organization_id": str(quotation.lead.organization_id),
                        "user_id": str(provisioned.user_id),
                    },
                )
                audit.record(
                    actor_user_id=str(actor_id),
                    entity_type="user",
                    entity_id=str(provisioned.user_id),
                    action="client_user.provisioned",
                    before=None,
                    after={"email": provisioned.email, "role": provisioned.role_name, "quotation_id": quotation_id},
                )
                events.publish(
                    {
                        "event_type": "client_user.provisioned",
                        "user_id": str(provisioned.user_id),
                        "organization_id": str(quotation.lead.organization_id),
                        "lead_id": str(quotation.lead_id),
                        "quotation_id": quotation_id,
                    }
                )

        with _post_commit_step("status_email", quotation_id):
            snapshot = QuotationSnapshot.capture(quotation)
            changed_by = quotation.status_changer.display_name if quotation.status_changer is not None else None
            self.notifier.status_changed(
                snapshot,
                old_status=from_status,
                new_status=to_status,
                changed_by=changed_by,
                notes=notes.strip() if notes and notes.strip() else None,
            )
        # The welcome email carries the only copy of the temporary password.
        if provisioned is not None:
            with _post_commit_step("welcome_email", quotation_id):
                self.notifier.client_welcome(
                    quotation_id=quotation_id,
                    email=provisioned.email,
                    first_name=provisioned.first_name,
                    last_name=provisioned.last_name,
                    temporary_password=provisioned.temporary_password,
                )

    def upload_quotation(
        self,
        session: Session,
        lead_id: uuid.UUID,
        uploader_id: uuid.UUID,
        payload: QuotationUpload,
    ) -> QuotationRead:
        settings = get_settings()
        with transaction(session):
            lead = self.lead_repository.get_active(session, lead_id)
            if lead is None:
                raise LeadNotFoundError(lead_id)
            if lead.business_stage in CLOSED_LEAD_STAGES:
                raise QuotationLockedError(f"Cannot upload quotation for a lead in {lead.business_stage} stage")

            is_first = self.quotation_repository.count_active_for_lead(session, lead_id) == 0
            now = utcnow()
            quotation = Quotation(
                lead_id=lead_id,
                quotation_number=generate_quotation_number(now),
                title=payload.title.strip(),
                amount=payload.amount,
                currency=payload.currency or "USD",
                notes=payload.notes,
                valid_until=now + timedelta(days=settings.quotation_valid_days),
                document_path=payload.document_path,
                original_file_name=payload.original_file_name,
                file_size=payload.file_size,
                status=QuotationStatus.UPLOADED.value,
                uploaded_by_id=uploader_id,
            )
            session.add(quotation)
            if is_first:
                _move_lead_stage(lead, LeadBusinessStage.QUOTATION_SENT.value, uploader_id, now)
            session.flush()
            quotation_id = quotation.id

        quotation = self._reload(session, quotation_id)
        with _post_commit_step("record_upload", str(quotation_id)):
            logger.info(
                "quotation.uploaded",
                extra={
                    "quotation_id": str(quotation_id),
                    "quotation_number": quotation.quotation_number,
                    "lead_id": str(lead_id),
                },
            )
            audit.record(
                actor_user_id=str(uploader_id),
                entity_type="quotation",
                entity_id=str(quotation_id),
                action="quotation.uploaded",
                before=None,
                after={"status": quotation.status, "quotation_number": quotation.quotation_number},
            )
            events.publish(
                {
                    "event_type": "quotation.uploaded",
                    "quotation_id": str(quotation_id),
                    "lead_id": str(lead_id),
                }
            )
        with _post_commit_step("upload_email", str(quotation_id)):
            self.notifier.quotation_uploaded(QuotationSnapshot.capture(quotation))
        return QuotationRead.model_validate(quotation)

    def get_quotation(self, session: Session, quotation_id: uuid.UUID) -> QuotationRead:
        return QuotationRead.model_validate(self._get(session, quotation_id))

    def list_lead_quotations(self, session: Session, lead_id: uuid.UUID) -> list[QuotationRead]:
        if self.lead_repository.get_active(session, lead_id) is None:
            raise LeadNotFoundError(lead_id)
        return [QuotationRead.model_validate(row) for row in self.quotation_repository.list_for_lead(session, lead_id)]

    def update_metadata(
        self,
        session: Session,
        quotation_id: uuid.UUID,
        actor_id: uuid.UUID,
        payload: QuotationMetadataUpdate,
    ) -> QuotationRead:
        changes = payload.model_dump(exclude_unset=True)
        with transaction(session):
            quotation = self._get(session, quotation_id, for_update=True)
            if QuotationStatus(quotation.status) in TERMINAL_STATUSES:
                raise QuotationLockedError(f"Cannot modify a quotation in {quotation.status} status")

            before = {key: _plain(getattr(quotation, key)) for key in changes}
            if "title" in changes and changes["title"] is not None:
                quotation.title = changes["title"].strip()
            if "amount" in changes:
                quotation.amount = changes["amount"]
            if "notes" in changes:
                quotation.notes = changes["notes"]
            after = {key: _plain(getattr(quotation, key)) for key in changes}

        if changes:
            with _post_commit_step("record_update", str(quotation_id)):
                audit.record(
                    actor_user_id=str(actor_id),
                    entity_type="quotation",
                    entity_id=str(quotation_id),
                    action="quotation.updated",
                    before=before,
                    after=after,
                )
        return QuotationRead.model_validate(self._reload(session, quotation_id))

    def delete_quotation(self, session: Session, quotation_id: uuid.UUID, actor_id: uuid.UUID) -> None:
        with transaction(session):
            quotation = self._get(session, quotation_id, for_update=True)
            if quotation.status == QuotationStatus.ACCEPTED.value:
                raise QuotationLockedError("Cannot delete an accepted quotation")
            snapshot = QuotationSnapshot.capture(quotation)
            quotation.is_deleted = True
            quotation.deleted_at = utcnow()

        with _post_commit_step("record_delete", str(quotation_id)):
            logger.info("quotation.deleted", extra={"quotation_id": str(quotation_id), "actor_id": str(actor_id)})
            audit.record(
                actor_user_id=str(actor_id),
                entity_type="quotation",
                entity_id=str(quotation_id),
                action="quotation.deleted",
                before={"status": snapshot.status, "is_deleted": False},
                after={"status": snapshot.status, "is_deleted": True},
            )
            events.publish({"event_type": "quotation.deleted", "quotation_id": str(quotation_id)})
        with _post_commit_step("delete_email", str(quotation_id)):
            self.notifier.quotation_deleted(snapshot)

    def quotation_stats(self, session: Session, *, uploaded_by_id: uuid.UUID | None = None) -> QuotationStats:
        return QuotationStats(**self.quotation_repository.stats(session, uploaded_by_id=uploaded_by_id))

    def _get(self, session: Session, quotation_id: uuid.UUID, *, for_update: bool = False) -> Quotation:
        if for_update:
            quotation = self.quotation_repository.get_for_update(session, quotation_id)
        else:
            quotation = self.quotation_repository.get_active(session, quotation_id)
        if quotation is None:
            raise QuotationNotFoundError(quotation_id)
        return quotation

    def _reload(self, session: Session, quotation_id: uuid.UUID) -> Quotation:
        quotation = self.quotation_repository.get_active(session, quotation_id)
        if quotation is None:
            raise QuotationNotFoundError(quotation_id)
        return quotation


def _plain(value: object) -> object:
    if value is None or isinstance(value, (str, int, float, bool)):
        return value
    return str(value)


quotation_service = QuotationService()
