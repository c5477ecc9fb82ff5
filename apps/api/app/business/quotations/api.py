from __future__ import annotations

import uuid

from fastapi import APIRouter, Depends, Query, Request, status
from fastapi.responses import JSONResponse, Response
from sqlalchemy.orm import Session

from app.api.errors import UnauthorizedError, domain_error_response
from app.business.quotations.errors import QuotationError
from app.business.quotations.schemas import (
    QuotationMetadataUpdate,
    QuotationRead,
    QuotationStats,
    QuotationStatusUpdate,
    QuotationUpload,
)
from app.business.quotations.service import quotation_service
from app.context import set_actor_id
from app.core.auth import AuthUser, get_current_user
from app.core.database import TransactionTimeoutError, get_db

router = APIRouter(prefix="/api/quotations", tags=["quotations"])
lead_quotations_router = APIRouter(prefix="/api/leads", tags=["quotations"])


async def get_actor_id(user: AuthUser = Depends(get_current_user)) -> uuid.UUID:
    """Bearer subject as a user id. Anonymous callers and non-UUID subjects are rejected."""

    if user.is_anonymous:
        raise UnauthorizedError("Authentication required")
    try:
        actor_id = uuid.UUID(user.sub)
    except ValueError as exc:
        raise UnauthorizedError("Token subject is not a user id") from exc
    # Scoped to the request task; downstream events pick it up for their metadata.
    set_actor_id(str(actor_id))
    return actor_id


@lead_quotations_router.post(
    "/{lead_id}/quotations",
    response_model=QuotationRead,
    status_code=status.HTTP_201_CREATED,
)
def upload_quotation(
    request: Request,
    lead_id: uuid.UUID,
    dto: QuotationUpload,
    db: Session = Depends(get_db),
    actor_id: uuid.UUID = Depends(get_actor_id),
) -> QuotationRead | JSONResponse:
    try:
        return quotation_service.upload_quotation(db, lead_id, actor_id, dto)
    except (QuotationError, TransactionTimeoutError) as exc:
        return domain_error_response(request, exc)


@lead_quotations_router.get("/{lead_id}/quotations", response_model=list[QuotationRead])
def list_lead_quotations(
    request: Request,
    lead_id: uuid.UUID,
    db: Session = Depends(get_db),
    actor_id: uuid.UUID = Depends(get_actor_id),
) -> list[QuotationRead] | JSONResponse:
    try:
        return quotation_service.list_lead_quotations(db, lead_id)
    except QuotationError as exc:
        return domain_error_response(request, exc)


@router.get("/stats", response_model=QuotationStats)
def quotation_stats(
    uploaded_by: uuid.UUID | None = Query(default=None),
    db: Session = Depends(get_db),
    actor_id: uuid.UUID = Depends(get_actor_id),
) -> QuotationStats:
    return quotation_service.quotation_stats(db, uploaded_by_id=uploaded_by)


@router.get("/{quotation_id}", response_model=QuotationRead)
def get_quotation(
    request: Request,
    quotation_id: uuid.UUID,
    db: Session = Depends(get_db),
    actor_id: uuid.UUID = Depends(get_actor_id),
) -> QuotationRead | JSONResponse:
    try:
        return quotation_service.get_quotation(db, quotation_id)
    except QuotationError as exc:
        return domain_error_response(request, exc)


@router.patch("/{quotation_id}", response_model=QuotationRead)
def update_quotation(
    request: Request,
    quotation_id: uuid.UUID,
    dto: QuotationMetadataUpdate,
    db: Session = Depends(get_db),
    actor_id: uuid.UUID = Depends(get_actor_id),
) -> QuotationRead | JSONResponse:
    try:
        return quotation_service.update_metadata(db, quotation_id, actor_id, dto)
    except (QuotationError, TransactionTimeoutError) as exc:
        return domain_error_response(request, exc)


@router.post("/{quotation_id}/status", response_model=QuotationRead)
def update_quotation_status(
    request: Request,
    quotation_id: uuid.UUID,
    dto: QuotationStatusUpdate,
    db: Session = Depends(get_db),
    actor_id: uuid.UUID = Depends(get_actor_id),
) -> QuotationRead | JSONResponse:
    try:
        result = quotation_service.update_status(db, quotation_id, dto.status, actor_id, dto.notes)
    except (QuotationError, TransactionTimeoutError) as exc:
        return domain_error_response(request, exc)
    return result.quotation


@router.delete("/{quotation_id}", status_code=status.HTTP_204_NO_CONTENT, response_model=None)
def delete_quotation(
    request: Request,
    quotation_id: uuid.UUID,
    db: Session = Depends(get_db),
    actor_id: uuid.UUID = Depends(get_actor_id),
) -> Response:
    try:
        quotation_service.delete_quotation(db, quotation_id, actor_id)
    except (QuotationError, TransactionTimeoutError) as exc:
        return domain_error_response(request, exc)
    return Response(status_code=status.HTTP_204_NO_CONTENT)
