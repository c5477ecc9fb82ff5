from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field

from opentelemetry import trace
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.authz.models import Role, User, UserRole, UserType
from app.business.quotations.contact_resolver import ResolvedContact, resolve_contact_info
from app.business.quotations.errors import ClientProvisioningFailedError, ProvisioningFailureReason
from app.business.quotations.models import Quotation
from app.business.quotations.repository import AccountRepository
from app.core.config import get_settings
from app.platform.security.passwords import PasswordHasher, generate_temporary_password


logger = logging.getLogger("app.quotations.provisioning")
tracer = trace.get_tracer("app.quotations.provisioning")

# Spellings operators have used for the client role across environments.
CLIENT_ROLE_SPELLINGS = ("Client User", "client user", "client_user", "client-user", "clientuser")

_SEPARATORS_RE = re.compile(r"[\s_\-.]+")


def normalize_role_name(name: str) -> str:
    return _SEPARATORS_RE.sub("", name).lower()


_RECOGNIZED_CLIENT_ROLES = frozenset(normalize_role_name(item) for item in CLIENT_ROLE_SPELLINGS)


@dataclass(slots=True)
class ProvisioningDecision:
    can_create: bool
    contact: ResolvedContact
    role: Role | None = None
    reason: ProvisioningFailureReason | None = None
    message: str | None = None
    existing_user: User | None = None

    @property
    def already_provisioned(self) -> bool:
        return not self.can_create and self.existing_user is not None


@dataclass(slots=True)
class ProvisionedAccount:
    user: User
    role: Role
    temporary_password: str = field(repr=False)


def match_client_role(roles: list[Role]) -> Role | None:
    """Normalized spelling match first, then any role mentioning "client"."""

    for role in roles:
        if normalize_role_name(role.name) in _RECOGNIZED_CLIENT_ROLES:
            return role
    for role in roles:
        if "client" in role.name.lower():
            return role
    return None


class ClientProvisioningValidator:
    def __init__(self, accounts: AccountRepository | None = None) -> None:
        self.accounts = accounts or AccountRepository()

    def validate(self, session: Session, quotation: Quotation) -> ProvisioningDecision:
        contact = resolve_contact_info(quotation.lead)
        organization_id = quotation.lead.organization_id

        if not contact.email:
            return self._fail(
                contact,
                ProvisioningFailureReason.MISSING_EMAIL,
                "Contact does not have an email address",
            )

        existing_client = self.accounts.find_active_client_for_organization(session, organization_id)
        if existing_client is not None:
            return ProvisioningDecision(
                can_create=False,
                contact=contact,
                message="Client user already exists for this organization",
                existing_user=existing_client,
            )

        if self.accounts.find_by_email(session, contact.email) is not None:
            return self._fail(
                contact,
                ProvisioningFailureReason.EMAIL_TAKEN,
                f"User with email {contact.email} already exists",
            )

        role = self.resolve_client_role(session)
        if role is None:
            available = [item.name for item in self.accounts.list_roles(session)]
            logger.error(
                "client_user.role_not_found",
                extra={"quotation_id": str(quotation.id), "available_roles": available},
            )
            return self._fail(
                contact,
                ProvisioningFailureReason.ROLE_NOT_FOUND,
                "Client User role not found in the system; available roles: "
                + (", ".join(available) if available else "none"),
            )

        if not contact.has_full_name:
            return self._fail(
                contact,
                ProvisioningFailureReason.MISSING_NAME,
                "Contact must have first name and last name. "
                f'Got: first_name="{contact.first_name or ""}", last_name="{contact.last_name or ""}"',
            )

        return ProvisioningDecision(can_create=True, contact=contact, role=role)

    def resolve_client_role(self, session: Session) -> Role | None:
        exact = self.accounts.get_role_by_name(session, get_settings().client_role_name)
        if exact is not None:
            return exact
        return match_client_role(self.accounts.list_roles(session))

    @staticmethod
    def _fail(contact: ResolvedContact, reason: ProvisioningFailureReason, message: str) -> ProvisioningDecision:
        return ProvisioningDecision(can_create=False, contact=contact, reason=reason, message=message)


class ClientAccountProvisioner:
    """Creates the client account and its role assignment inside the caller's transaction."""

    def __init__(self, hasher: PasswordHasher | None = None) -> None:
        self._hasher = hasher

    @property
    def hasher(self) -> PasswordHasher:
        if self._hasher is None:
            self._hasher = PasswordHasher()
        return self._hasher

    def provision(self, session: Session, quotation: Quotation, decision: ProvisioningDecision) -> ProvisionedAccount:
        if not decision.can_create or decision.role is None:
            raise ValueError("provisioning decision does not allow account creation")

        contact = decision.contact
        temporary_password = generate_temporary_password()

        with tracer.start_as_current_span("quotations.provision_client_user") as span:
            span.set_attribute("quotation_id", str(quotation.id))
            span.set_attribute("organization_id", str(quotation.lead.organization_id))

            user = User(
                email=contact.email,
                password_hash=self.hasher.hash(temporary_password),
                first_name=contact.first_name,
                last_name=contact.last_name,
                phone=contact.phone,
                user_type=UserType.CLIENT.value,
                organization_id=quotation.lead.organization_id,
                lead_id=quotation.lead_id,
                is_active=True,
                is_verified=True,
            )
            session.add(user)
            try:
                session.flush()
                session.add(UserRole(user_id=user.id, role_id=decision.role.id))
                session.flush()
            except IntegrityError as exc:
                # A concurrent acceptance committed an account with this email first.
                raise ClientProvisioningFailedError(
                    ProvisioningFailureReason.EMAIL_TAKEN,
                    f"User with email {contact.email} already exists",
                ) from exc

            span.set_attribute("user_id", str(user.id))

        return ProvisionedAccount(user=user, role=decision.role, temporary_password=temporary_password)
