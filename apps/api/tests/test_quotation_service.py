from __future__ import annotations

import logging
import re
import uuid
from collections.abc import Generator
from dataclasses import dataclass
from datetime import timedelta
from decimal import Decimal

import pytest
from sqlalchemy import create_engine, func, select
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app import audit, events, models  # noqa: F401
from app.authz.models import Role, User, UserType
from app.business.quotations.errors import (
    ClientProvisioningFailedError,
    InvalidTransitionError,
    LeadNotFoundError,
    ProvisioningFailureReason,
    QuotationLockedError,
    QuotationNotFoundError,
)
from app.business.quotations.models import Quotation
from app.business.quotations.notifier import QuotationNotifier
from app.business.quotations.provisioning import ClientAccountProvisioner, ClientProvisioningValidator
from app.business.quotations.schemas import QuotationMetadataUpdate, QuotationUpload
from app.business.quotations.service import QuotationService, append_status_note
from app.core.config import get_settings
from app.core.database import Base, TransactionDeadline, TransactionTimeoutError
from app.core.events import DomainEvent, InProcessEventBus, event_bus
from app.crm.models import CRMContact, CRMLead, CRMOrganization
from app.platform.notifications import InMemoryEmailDispatcher
from app.platform.security.passwords import PasswordHasher


@pytest.fixture()
def db_session() -> Generator[Session, None, None]:
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture(autouse=True)
def clear_stubs() -> Generator[None, None, None]:
    audit.audit_entries.clear()
    events.published_events.clear()
    get_settings.cache_clear()
    yield
    audit.audit_entries.clear()
    events.published_events.clear()
    get_settings.cache_clear()


@pytest.fixture()
def mailbox() -> InMemoryEmailDispatcher:
    return InMemoryEmailDispatcher()


@pytest.fixture()
def hasher() -> PasswordHasher:
    return PasswordHasher(rounds=4)


@pytest.fixture()
def service(mailbox: InMemoryEmailDispatcher, hasher: PasswordHasher) -> QuotationService:
    return QuotationService(
        validator=ClientProvisioningValidator(),
        provisioner=ClientAccountProvisioner(hasher),
        notifier=QuotationNotifier(mailbox),
    )


@dataclass
class Seeded:
    organization_id: uuid.UUID
    lead_id: uuid.UUID
    quotation_id: uuid.UUID
    actor_id: uuid.UUID


def _seed(
    session: Session,
    *,
    contact: dict | None = None,
    lead_fields: dict | None = None,
    status: str = "UPLOADED",
    notes: str | None = None,
    organization_id: uuid.UUID | None = None,
    with_role: bool = True,
) -> Seeded:
    if organization_id is None:
        organization = CRMOrganization(name="Acme Solar", email="office@acme.test")
        session.add(organization)
        session.flush()
        organization_id = organization.id

    structured = None
    if contact is not None:
        structured = CRMContact(organization_id=organization_id, **contact)
        session.add(structured)
        session.flush()

    lead = CRMLead(
        title="Rooftop install",
        organization_id=organization_id,
        contact_id=structured.id if structured is not None else None,
        business_stage="QUOTATION_SENT",
        **(lead_fields or {}),
    )
    actor = session.scalar(select(User).where(User.email == "sales@greenex.test"))
    if actor is None:
        actor = User(email="sales@greenex.test", first_name="Sam", last_name="Seller")
        session.add(actor)
    if with_role and session.scalar(select(Role).where(Role.name == "Client User")) is None:
        session.add(Role(name="Client User"))
    session.add(lead)
    session.flush()

    quotation = Quotation(
        lead_id=lead.id,
        quotation_number=f"QUO-20261001000000-{uuid.uuid4().hex[:5].upper()}",
        title="Rooftop install",
        amount=Decimal("1500.00"),
        status=status,
        notes=notes,
        uploaded_by_id=actor.id,
    )
    session.add(quotation)
    session.commit()
    return Seeded(
        organization_id=organization_id,
        lead_id=lead.id,
        quotation_id=quotation.id,
        actor_id=actor.id,
    )


ANA = {"first_name": "Ana", "last_name": "Lee", "email": "a@x.com"}


def _client_users(session: Session, organization_id: uuid.UUID) -> list[User]:
    return list(
        session.scalars(
            select(User).where(User.organization_id == organization_id, User.user_type == UserType.CLIENT.value)
        ).all()
    )


def _status(session: Session, quotation_id: uuid.UUID) -> str:
    session.expire_all()
    return session.scalar(select(Quotation.status).where(Quotation.id == quotation_id))


def test_accept_provisions_exactly_one_client_account(
    db_session: Session,
    service: QuotationService,
    mailbox: InMemoryEmailDispatcher,
    hasher: PasswordHasher,
) -> None:
    seeded = _seed(db_session, contact=ANA)

    result = service.update_status(db_session, seeded.quotation_id, "ACCEPTED", seeded.actor_id)

    assert result.quotation.status == "ACCEPTED"
    assert result.quotation.status_changed_by_id == seeded.actor_id
    assert result.quotation.status_changed_at is not None
    assert result.client_account is not None
    assert result.client_account.email == "a@x.com"
    assert result.client_account.role == "Client User"

    users = _client_users(db_session, seeded.organization_id)
    assert len(users) == 1
    assert users[0].email == "a@x.com"
    assert users[0].is_active is True
    assert [assignment.role.name for assignment in users[0].roles] == ["Client User"]

    lead = db_session.get(CRMLead, seeded.lead_id)
    assert lead is not None
    assert lead.business_stage == "QUOTATION_ACCEPTED"
    assert lead.stage_changed_by_id == seeded.actor_id

    welcome = [mail for mail in mailbox.sent if mail.subject.startswith("Welcome to")]
    assert len(welcome) == 1
    assert welcome[0].to == ["a@x.com"]
    match = re.search(r"Temporary password: (\S+)", welcome[0].text or "")
    assert match is not None
    assert hasher.verify(match.group(1), users[0].password_hash)

    status_mail = [mail for mail in mailbox.sent if mail.subject == "Quotation ACCEPTED: Rooftop install"]
    assert len(status_mail) == 1
    assert status_mail[0].to == ["sales@greenex.test", "a@x.com"]

    event_types = [item["event_type"] for item in events.published_events]
    assert event_types == ["quotation.status_changed", "client_user.provisioned"]
    assert {entry["action"] for entry in audit.audit_entries} == {
        "quotation.status_changed",
        "client_user.provisioned",
    }


def test_accept_without_email_rolls_back_everything(
    db_session: Session,
    service: QuotationService,
    mailbox: InMemoryEmailDispatcher,
) -> None:
    seeded = _seed(db_session, contact={"first_name": "Ana", "last_name": "Lee"}, status="SENT", notes="Initial")

    with pytest.raises(ClientProvisioningFailedError) as exc_info:
        service.update_status(db_session, seeded.quotation_id, "ACCEPTED", seeded.actor_id, notes="Signed")

    assert exc_info.value.reason == ProvisioningFailureReason.MISSING_EMAIL
    assert str(exc_info.value).startswith("Cannot accept quotation: client user creation failed - ")

    assert _status(db_session, seeded.quotation_id) == "SENT"
    quotation = db_session.get(Quotation, seeded.quotation_id)
    assert quotation is not None
    assert quotation.notes == "Initial"
    assert quotation.status_changed_at is None
    lead = db_session.get(CRMLead, seeded.lead_id)
    assert lead is not None and lead.business_stage == "QUOTATION_SENT"
    assert _client_users(db_session, seeded.organization_id) == []
    assert mailbox.sent == []
    assert events.published_events == []
    assert audit.audit_entries == []


def test_role_missing_keeps_quotation_retryable(db_session: Session, service: QuotationService) -> None:
    seeded = _seed(db_session, contact=ANA, with_role=False)
    db_session.add(Role(name="Administrator"))
    db_session.commit()

    with pytest.raises(ClientProvisioningFailedError) as exc_info:
        service.update_status(db_session, seeded.quotation_id, "accepted", seeded.actor_id)
    assert exc_info.value.reason == ProvisioningFailureReason.ROLE_NOT_FOUND
    assert "available roles: Administrator" in exc_info.value.message
    assert _status(db_session, seeded.quotation_id) == "UPLOADED"

    db_session.add(Role(name="client_user"))
    db_session.commit()

    result = service.update_status(db_session, seeded.quotation_id, "accepted", seeded.actor_id)
    assert result.quotation.status == "ACCEPTED"
    assert len(_client_users(db_session, seeded.organization_id)) == 1


def test_accept_twice_fails_without_duplicate_account(db_session: Session, service: QuotationService) -> None:
    seeded = _seed(db_session, contact=ANA)
    service.update_status(db_session, seeded.quotation_id, "ACCEPTED", seeded.actor_id)

    with pytest.raises(InvalidTransitionError):
        service.update_status(db_session, seeded.quotation_id, "ACCEPTED", seeded.actor_id)

    assert len(_client_users(db_session, seeded.organization_id)) == 1
    assert _status(db_session, seeded.quotation_id) == "ACCEPTED"


def test_second_quotation_of_same_organization_skips_provisioning(
    db_session: Session,
    service: QuotationService,
    mailbox: InMemoryEmailDispatcher,
) -> None:
    first = _seed(db_session, contact=ANA)
    second = _seed(
        db_session,
        contact={"first_name": "Bo", "last_name": "Kim", "email": "bo@x.com"},
        organization_id=first.organization_id,
    )

    service.update_status(db_session, first.quotation_id, "ACCEPTED", first.actor_id)
    mailbox.clear()
    result = service.update_status(db_session, second.quotation_id, "ACCEPTED", second.actor_id)

    assert result.quotation.status == "ACCEPTED"
    assert result.client_account is None
    assert result.client_account_skipped is True
    users = _client_users(db_session, first.organization_id)
    assert [user.email for user in users] == ["a@x.com"]
    assert not any(mail.subject.startswith("Welcome to") for mail in mailbox.sent)


def test_concurrent_insert_surfaces_as_email_taken(
    db_session: Session,
    service: QuotationService,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    seeded = _seed(db_session, contact=ANA)
    # Another transaction committed an account with the same email after our checks ran.
    db_session.add(User(email="a@x.com", first_name="Racer", last_name="Winner"))
    db_session.commit()
    monkeypatch.setattr(service.validator.accounts, "find_by_email", lambda session, email: None)

    with pytest.raises(ClientProvisioningFailedError) as exc_info:
        service.update_status(db_session, seeded.quotation_id, "ACCEPTED", seeded.actor_id)

    assert exc_info.value.reason == ProvisioningFailureReason.EMAIL_TAKEN
    assert _status(db_session, seeded.quotation_id) == "UPLOADED"
    assert _client_users(db_session, seeded.organization_id) == []


def test_sent_appends_notes_and_stamps_sent_at(db_session: Session, service: QuotationService) -> None:
    seeded = _seed(db_session, contact=ANA, notes="Initial offer")

    result = service.update_status(db_session, seeded.quotation_id, "SENT", seeded.actor_id, notes="  Emailed PDF  ")

    assert result.quotation.status == "SENT"
    assert result.quotation.notes == "Initial offer\n\nStatus Update: Emailed PDF"
    assert result.quotation.sent_at is not None
    assert result.client_account is None
    lead = db_session.get(CRMLead, seeded.lead_id)
    assert lead is not None and lead.business_stage == "QUOTATION_SENT"


def test_append_status_note_without_existing_notes() -> None:
    assert append_status_note(None, "Call back Monday") == "Status Update: Call back Monday"


def test_reject_moves_lead_stage_without_provisioning(db_session: Session, service: QuotationService) -> None:
    seeded = _seed(db_session, contact={"first_name": "Ana"})

    result = service.update_status(db_session, seeded.quotation_id, "REJECTED", seeded.actor_id)

    assert result.quotation.status == "REJECTED"
    lead = db_session.get(CRMLead, seeded.lead_id)
    assert lead is not None and lead.business_stage == "QUOTATION_REJECTED"
    assert _client_users(db_session, seeded.organization_id) == []


def test_timeout_aborts_the_transaction(
    db_session: Session,
    service: QuotationService,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    seeded = _seed(db_session, contact=ANA)
    monkeypatch.setattr(TransactionDeadline, "elapsed", property(lambda self: 999.0))

    with pytest.raises(TransactionTimeoutError) as exc_info:
        service.update_status(db_session, seeded.quotation_id, "ACCEPTED", seeded.actor_id)

    assert exc_info.value.timeout_seconds == 15.0
    assert _status(db_session, seeded.quotation_id) == "UPLOADED"
    assert _client_users(db_session, seeded.organization_id) == []


def test_unknown_and_deleted_quotations_are_not_found(db_session: Session, service: QuotationService) -> None:
    seeded = _seed(db_session, contact=ANA)
    with pytest.raises(QuotationNotFoundError):
        service.update_status(db_session, uuid.uuid4(), "SENT", seeded.actor_id)

    service.delete_quotation(db_session, seeded.quotation_id, seeded.actor_id)
    with pytest.raises(QuotationNotFoundError):
        service.update_status(db_session, seeded.quotation_id, "SENT", seeded.actor_id)


def test_notification_failure_does_not_fail_the_status_change(db_session: Session, hasher: PasswordHasher) -> None:
    seeded = _seed(db_session, contact=ANA)
    failing = QuotationService(
        validator=ClientProvisioningValidator(),
        provisioner=ClientAccountProvisioner(hasher),
        notifier=QuotationNotifier(InMemoryEmailDispatcher(fail=True)),
    )

    result = failing.update_status(db_session, seeded.quotation_id, "ACCEPTED", seeded.actor_id)

    assert result.quotation.status == "ACCEPTED"
    assert len(_client_users(db_session, seeded.organization_id)) == 1


def test_upload_creates_numbered_quotation_and_notifies_organization(
    db_session: Session,
    service: QuotationService,
    mailbox: InMemoryEmailDispatcher,
) -> None:
    organization = CRMOrganization(name="Beta Farms", email="office@beta.test")
    uploader = User(email="sales@greenex.test", first_name="Sam", last_name="Seller")
    db_session.add_all([organization, uploader])
    db_session.flush()
    lead = CRMLead(title="Irrigation pumps", organization_id=organization.id, contact_email="owner@beta.test")
    db_session.add(lead)
    db_session.commit()

    created = service.upload_quotation(
        db_session,
        lead.id,
        uploader.id,
        QuotationUpload(title="  Pump set  ", amount=Decimal("980.50"), original_file_name="pumps.pdf"),
    )

    assert created.status == "UPLOADED"
    assert created.title == "Pump set"
    assert created.currency == "USD"
    assert re.fullmatch(r"QUO-\d{14}-[A-Z0-9]{5}", created.quotation_number)
    assert created.valid_until is not None
    window = created.valid_until.replace(tzinfo=None) - created.created_at.replace(tzinfo=None)
    assert abs(window - timedelta(days=30)) < timedelta(minutes=1)

    db_session.expire_all()
    refreshed = db_session.get(CRMLead, lead.id)
    assert refreshed is not None and refreshed.business_stage == "QUOTATION_SENT"

    assert len(mailbox.sent) == 1
    assert mailbox.sent[0].subject == "New Quotation: Pump set"
    assert mailbox.sent[0].to == ["office@beta.test"]


def test_upload_rejects_closed_and_missing_leads(db_session: Session, service: QuotationService) -> None:
    seeded = _seed(db_session, contact=ANA)
    lead = db_session.get(CRMLead, seeded.lead_id)
    assert lead is not None
    lead.business_stage = "COMPLETED"
    db_session.commit()

    with pytest.raises(QuotationLockedError):
        service.upload_quotation(db_session, seeded.lead_id, seeded.actor_id, QuotationUpload(title="Extra"))
    with pytest.raises(LeadNotFoundError):
        service.upload_quotation(db_session, uuid.uuid4(), seeded.actor_id, QuotationUpload(title="Extra"))

    count = db_session.scalar(select(func.count()).select_from(Quotation).where(Quotation.lead_id == seeded.lead_id))
    assert count == 1


def test_metadata_is_locked_once_terminal(db_session: Session, service: QuotationService) -> None:
    seeded = _seed(db_session, contact=ANA)

    updated = service.update_metadata(
        db_session,
        seeded.quotation_id,
        seeded.actor_id,
        QuotationMetadataUpdate(title="Rooftop install v2", amount=Decimal("1750.00")),
    )
    assert updated.title == "Rooftop install v2"
    assert updated.amount == Decimal("1750.00")
    assert audit.audit_entries[-1]["action"] == "quotation.updated"

    service.update_status(db_session, seeded.quotation_id, "REJECTED", seeded.actor_id)
    with pytest.raises(QuotationLockedError):
        service.update_metadata(db_session, seeded.quotation_id, seeded.actor_id, QuotationMetadataUpdate(notes="late"))


def test_delete_is_soft_and_forbidden_once_accepted(
    db_session: Session,
    service: QuotationService,
    mailbox: InMemoryEmailDispatcher,
) -> None:
    removable = _seed(db_session, contact=ANA)
    service.delete_quotation(db_session, removable.quotation_id, removable.actor_id)

    db_session.expire_all()
    row = db_session.get(Quotation, removable.quotation_id)
    assert row is not None
    assert row.is_deleted is True
    assert row.deleted_at is not None
    with pytest.raises(QuotationNotFoundError):
        service.get_quotation(db_session, removable.quotation_id)
    assert service.list_lead_quotations(db_session, removable.lead_id) == []
    assert mailbox.sent[-1].subject == "Quotation Deleted: Rooftop install"

    accepted = _seed(db_session, contact={"first_name": "Bo", "last_name": "Kim", "email": "bo@x.com"})
    service.update_status(db_session, accepted.quotation_id, "ACCEPTED", accepted.actor_id)
    with pytest.raises(QuotationLockedError):
        service.delete_quotation(db_session, accepted.quotation_id, accepted.actor_id)
    assert service.get_quotation(db_session, accepted.quotation_id).status == "ACCEPTED"


def test_stats_count_live_quotations(db_session: Session, service: QuotationService) -> None:
    first = _seed(db_session, contact=ANA)
    second = _seed(db_session, contact={"first_name": "Bo", "last_name": "Kim", "email": "bo@x.com"})
    deleted = _seed(db_session, contact={"first_name": "Cy", "last_name": "Oh", "email": "cy@x.com"})
    service.update_status(db_session, first.quotation_id, "ACCEPTED", first.actor_id)
    service.update_status(db_session, second.quotation_id, "SENT", second.actor_id)
    service.delete_quotation(db_session, deleted.quotation_id, deleted.actor_id)

    stats = service.quotation_stats(db_session)

    assert stats.total == 2
    assert stats.accepted == 1
    assert stats.sent == 1
    assert stats.uploaded == 0
    assert stats.rejected == 0
    assert stats.total_value == Decimal("3000")
    assert stats.accepted_value == Decimal("1500")


LEGACY_ONLY = {"contact_name": "Lena Legacy", "contact_email": "legacy@x.com", "contact_phone": "+1 555 0199"}


def test_status_email_without_structured_contact_goes_to_organization(
    db_session: Session,
    service: QuotationService,
    mailbox: InMemoryEmailDispatcher,
) -> None:
    seeded = _seed(db_session, lead_fields=LEGACY_ONLY)

    service.update_status(db_session, seeded.quotation_id, "SENT", seeded.actor_id)

    assert len(mailbox.sent) == 1
    assert mailbox.sent[0].to == ["sales@greenex.test", "office@acme.test"]


def test_accept_with_legacy_contact_welcomes_legacy_address_and_mails_organization(
    db_session: Session,
    service: QuotationService,
    mailbox: InMemoryEmailDispatcher,
) -> None:
    seeded = _seed(db_session, lead_fields=LEGACY_ONLY)

    result = service.update_status(db_session, seeded.quotation_id, "ACCEPTED", seeded.actor_id)

    assert result.client_account is not None and result.client_account.email == "legacy@x.com"
    status_mail = [mail for mail in mailbox.sent if mail.subject == "Quotation ACCEPTED: Rooftop install"]
    assert [mail.to for mail in status_mail] == [["sales@greenex.test", "office@acme.test"]]
    welcome = [mail for mail in mailbox.sent if mail.subject.startswith("Welcome to")]
    assert [mail.to for mail in welcome] == [["legacy@x.com"]]


def test_delete_email_without_structured_contact_goes_to_organization(
    db_session: Session,
    service: QuotationService,
    mailbox: InMemoryEmailDispatcher,
) -> None:
    seeded = _seed(db_session, lead_fields=LEGACY_ONLY)

    service.delete_quotation(db_session, seeded.quotation_id, seeded.actor_id)

    assert mailbox.sent[0].subject == "Quotation Deleted: Rooftop install"
    assert mailbox.sent[0].to == ["sales@greenex.test", "office@acme.test"]


def test_failing_subscriber_does_not_fail_a_committed_acceptance(
    db_session: Session,
    service: QuotationService,
    mailbox: InMemoryEmailDispatcher,
    caplog: pytest.LogCaptureFixture,
) -> None:
    def subscriber_down(event: DomainEvent) -> None:
        raise RuntimeError("subscriber down")

    caplog.set_level(logging.ERROR)
    seeded = _seed(db_session, contact=ANA)
    event_bus.subscribe("quotation.status_changed", subscriber_down)
    event_bus.subscribe("client_user.provisioned", subscriber_down)
    try:
        result = service.update_status(db_session, seeded.quotation_id, "ACCEPTED", seeded.actor_id)
    finally:
        event_bus.unsubscribe("quotation.status_changed", subscriber_down)
        event_bus.unsubscribe("client_user.provisioned", subscriber_down)

    assert result.quotation.status == "ACCEPTED"
    assert result.client_account is not None
    assert _status(db_session, seeded.quotation_id) == "ACCEPTED"
    assert len(_client_users(db_session, seeded.organization_id)) == 1
    assert [mail.to for mail in mailbox.sent if mail.subject.startswith("Welcome to")] == [["a@x.com"]]

    failures = [record for record in caplog.records if record.getMessage() == "event.handler_failed"]
    assert [getattr(record, "event_type", None) for record in failures] == [
        "quotation.status_changed",
        "client_user.provisioned",
    ]


def test_post_commit_errors_are_absorbed_and_welcome_still_sent(
    db_session: Session,
    service: QuotationService,
    mailbox: InMemoryEmailDispatcher,
    monkeypatch: pytest.MonkeyPatch,
    caplog: pytest.LogCaptureFixture,
) -> None:
    def audit_down(*args: object, **kwargs: object) -> None:
        raise RuntimeError("audit store unavailable")

    caplog.set_level(logging.ERROR)
    seeded = _seed(db_session, contact=ANA)
    monkeypatch.setattr(audit, "record", audit_down)

    result = service.update_status(db_session, seeded.quotation_id, "ACCEPTED", seeded.actor_id)

    assert result.quotation.status == "ACCEPTED"
    assert _status(db_session, seeded.quotation_id) == "ACCEPTED"
    subjects = [mail.subject for mail in mailbox.sent]
    assert "Quotation ACCEPTED: Rooftop install" in subjects
    assert any(subject.startswith("Welcome to") for subject in subjects)

    steps = [
        getattr(record, "step", None)
        for record in caplog.records
        if record.getMessage() == "quotation.post_commit_failed"
    ]
    assert steps == ["record_status_change", "record_provisioning"]


def test_event_bus_keeps_delivering_after_a_subscriber_fails() -> None:
    bus = InProcessEventBus()
    received: list[str] = []

    def broken(event: DomainEvent) -> None:
        raise ValueError("broken")

    bus.subscribe("quotation.deleted", broken)
    bus.subscribe("quotation.deleted", lambda event: received.append(event.payload["quotation_id"]))

    failures = bus.publish("quotation.deleted", {"quotation_id": "q-1"})

    assert failures == 1
    assert received == ["q-1"]


def test_configured_role_name_matches_regardless_of_case(
    db_session: Session,
    service: QuotationService,
) -> None:
    seeded = _seed(db_session, contact=ANA, with_role=False)
    db_session.add_all([Role(name="CLIENT USER"), Role(name="Administrator")])
    db_session.commit()

    assert service.account_repository.get_role_by_name(db_session, "Client User").name == "CLIENT USER"

    result = service.update_status(db_session, seeded.quotation_id, "ACCEPTED", seeded.actor_id)

    assert result.client_account is not None and result.client_account.role == "CLIENT USER"
