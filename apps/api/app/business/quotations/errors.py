from __future__ import annotations

import uuid
from enum import StrEnum


class ProvisioningFailureReason(StrEnum):
    MISSING_EMAIL = "missing_email"
    EMAIL_TAKEN = "email_taken"
    ROLE_NOT_FOUND = "role_not_found"
    MISSING_NAME = "missing_name"


class QuotationError(Exception):
    """Base error for the quotation lifecycle."""

    code = "quotation_error"


class QuotationNotFoundError(QuotationError):
    code = "quotation_not_found"

    def __init__(self, quotation_id: uuid.UUID) -> None:
        self.quotation_id = quotation_id
        super().__init__("Quotation not found")


class LeadNotFoundError(QuotationError):
    code = "lead_not_found"

    def __init__(self, lead_id: uuid.UUID) -> None:
        self.lead_id = lead_id
        super().__init__("Lead not found or inactive")


class InvalidTransitionError(QuotationError):
    code = "invalid_transition"

    def __init__(self, current: str, target: str) -> None:
        self.current = current
        self.target = target
        super().__init__(f"Invalid status transition from {current} to {target}")


class QuotationLockedError(QuotationError):
    """Raised when the quotation (or its lead) is in a state that forbids the change."""

    code = "quotation_locked"


class ClientProvisioningFailedError(QuotationError):
    """Accepting the quotation requires a client account that could not be created.

    The whole unit of work is rolled back, so the quotation keeps its previous status
    and the same request can be retried once the data or configuration is fixed.
    """

    code = "client_provisioning_failed"

    def __init__(self, reason: ProvisioningFailureReason, message: str) -> None:
        self.reason = reason
        self.message = message
        super().__init__(f"Cannot accept quotation: client user creation failed - {message}")


class NotificationFailedError(QuotationError):
    code = "notification_failed"

    def __init__(self, kind: str, recipients: list[str]) -> None:
        self.kind = kind
        self.recipients = recipients
        super().__init__(f"Failed to deliver {kind} email to {', '.join(recipients) or 'no recipients'}")
