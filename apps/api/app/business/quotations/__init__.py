from app.business.quotations.errors import (
    ClientProvisioningFailedError,
    InvalidTransitionError,
    LeadNotFoundError,
    ProvisioningFailureReason,
    QuotationError,
    QuotationLockedError,
    QuotationNotFoundError,
)
from app.business.quotations.models import Quotation, QuotationStatus

__all__ = [
    "ClientProvisioningFailedError",
    "InvalidTransitionError",
    "LeadNotFoundError",
    "ProvisioningFailureReason",
    "Quotation",
    "QuotationError",
    "QuotationLockedError",
    "QuotationNotFoundError",
    "QuotationStatus",
]
