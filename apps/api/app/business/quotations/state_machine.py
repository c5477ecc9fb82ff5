from __future__ import annotations

from dataclasses import dataclass

from app.business.quotations.errors import InvalidTransitionError, QuotationNotFoundError
from app.business.quotations.models import Quotation, QuotationStatus
from app.crm.models import LeadBusinessStage


VALID_QUOTATION_TRANSITIONS: dict[QuotationStatus, frozenset[QuotationStatus]] = {
    QuotationStatus.UPLOADED: frozenset({QuotationStatus.SENT, QuotationStatus.ACCEPTED, QuotationStatus.REJECTED}),
    QuotationStatus.SENT: frozenset({QuotationStatus.ACCEPTED, QuotationStatus.REJECTED}),
    QuotationStatus.ACCEPTED: frozenset(),
    QuotationStatus.REJECTED: frozenset(),
}

TERMINAL_STATUSES = frozenset(status for status, targets in VALID_QUOTATION_TRANSITIONS.items() if not targets)

LEAD_STAGE_BY_QUOTATION_STATUS: dict[QuotationStatus, LeadBusinessStage] = {
    QuotationStatus.SENT: LeadBusinessStage.QUOTATION_SENT,
    QuotationStatus.ACCEPTED: LeadBusinessStage.QUOTATION_ACCEPTED,
    QuotationStatus.REJECTED: LeadBusinessStage.QUOTATION_REJECTED,
}


@dataclass(frozen=True, slots=True)
class TransitionDecision:
    from_status: QuotationStatus
    to_status: QuotationStatus
    requires_provisioning: bool


def _coerce_status(value: str) -> QuotationStatus | None:
    try:
        return QuotationStatus(str(value).upper())
    except ValueError:
        return None


class QuotationStateMachine:
    """Legal quotation status transitions. Performs no I/O."""

    def allowed_targets(self, current: str) -> frozenset[QuotationStatus]:
        status = _coerce_status(current)
        if status is None:
            return frozenset()
        return VALID_QUOTATION_TRANSITIONS[status]

    def request_transition(self, quotation: Quotation, target: str) -> TransitionDecision:
        if quotation.is_deleted or quotation.deleted_at is not None:
            raise QuotationNotFoundError(quotation.id)

        current = _coerce_status(quotation.status)
        requested = _coerce_status(target)
        if current is None or requested is None or requested not in VALID_QUOTATION_TRANSITIONS[current]:
            raise InvalidTransitionError(str(quotation.status), str(target))

        return TransitionDecision(
            from_status=current,
            to_status=requested,
            requires_provisioning=requested == QuotationStatus.ACCEPTED,
        )


def lead_stage_for(status: QuotationStatus, current_stage: str) -> str:
    stage = LEAD_STAGE_BY_QUOTATION_STATUS.get(status)
    return stage.value if stage is not None else current_stage
