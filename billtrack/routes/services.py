from datetime import date
from typing import List, Optional
from uuid import UUID
import logging

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from billtrack.database import get_db
from billtrack.db_helpers import get_user_id
from billtrack.models import PaymentStatus
from billtrack.schemas import (
    ConfirmDetectedRequest,
    ConfirmDetectedResponse,
    DetectedServiceCandidate,
    DetectRequest,
    DetectResponse,
    LinkRequest,
    MonthPaymentsResponse,
    PaymentEntryResponse,
    RecalculationResponse,
    ServiceCreate,
    ServicePaymentResponse,
    ServiceResponse,
    ServiceUpdate,
    SummaryResponse,
    UpcomingPaymentsResponse,
)
from billtrack.services.pattern_detector import ServiceCandidate
from billtrack.services.payment_ledger import PaymentLedger
from billtrack.services.schedule_projector import utc_today
from billtrack.services.service_registry import RecurringServiceManager
from billtrack.services.status_reconciler import StatusReconciler

logger = logging.getLogger(__name__)

router = APIRouter()


def _to_candidate(payload: DetectedServiceCandidate) -> ServiceCandidate:
    data = payload.model_dump()
    data["transaction_ids"] = tuple(str(tid) for tid in payload.transaction_ids)
    data["category_id"] = str(payload.category_id) if payload.category_id else None
    return ServiceCandidate(**data)


@router.post("/detect", response_model=DetectResponse)
def detect_services(
    request: DetectRequest,
    user_id: Optional[str] = None,
    db: Session = Depends(get_db)
):
    """Detect candidate recurring services from unlinked transactions. Nothing is saved."""
    user_id = get_user_id(user_id)
    manager = RecurringServiceManager(db, user_id)
    candidates = manager.detect(
        min_occurrences=request.min_occurrences,
        lookback_months=request.lookback_months,
        today=request.today,
    )
    return DetectResponse(
        candidates=[DetectedServiceCandidate.model_validate(c) for c in candidates],
        total=len(candidates),
    )


@router.post("/confirm-detected", response_model=ConfirmDetectedResponse)
def confirm_detected_services(
    request: ConfirmDetectedRequest,
    user_id: Optional[str] = None,
    db: Session = Depends(get_db)
):
    """Persist the candidates the user confirmed and link their transactions."""
    user_id = get_user_id(user_id)
    manager = RecurringServiceManager(db, user_id)
    result = manager.confirm_detected(
        [_to_candidate(c) for c in request.candidates],
        today=request.today,
    )
    return ConfirmDetectedResponse(**result.__dict__)


@router.get("/summary", response_model=SummaryResponse)
def get_services_summary(
    user_id: Optional[str] = None,
    db: Session = Depends(get_db)
):
    """Monthly and yearly cost of live services, per frequency and currency."""
    user_id = get_user_id(user_id)
    return RecurringServiceManager(db, user_id).get_summary()


@router.get("/calendar/upcoming", response_model=UpcomingPaymentsResponse)
def get_upcoming_payments(
    months: int = Query(1, ge=1, le=24),
    today: Optional[date] = None,
    user_id: Optional[str] = None,
    db: Session = Depends(get_db)
):
    """Realized and predicted payments from today over the next `months` months."""
    user_id = get_user_id(user_id)
    start = today or utc_today()
    entries = PaymentLedger(db, user_id).get_upcoming_payments(months, today=start)
    return UpcomingPaymentsResponse(
        start_date=start,
        months_ahead=months,
        payments=[PaymentEntryResponse.model_validate(e) for e in entries],
    )


@router.get("/calendar/{year}/{month}", response_model=MonthPaymentsResponse)
def get_month_payments(
    year: int,
    month: int,
    user_id: Optional[str] = None,
    db: Session = Depends(get_db)
):
    """Realized and predicted payments within one calendar month."""
    user_id = get_user_id(user_id)
    entries = PaymentLedger(db, user_id).get_month_payments(year, month)
    return MonthPaymentsResponse(
        year=year,
        month=month,
        payments=[PaymentEntryResponse.model_validate(e) for e in entries],
        paid_count=sum(1 for e in entries if e.status == PaymentStatus.PAID),
        pending_count=sum(1 for e in entries if e.status == PaymentStatus.PENDING),
    )


@router.post("/recalculate-all", response_model=RecalculationResponse)
def recalculate_all_services(
    today: Optional[date] = None,
    user_id: Optional[str] = None,
    db: Session = Depends(get_db)
):
    """Recompute status and next expected date for every live service."""
    user_id = get_user_id(user_id)
    result = StatusReconciler(db, user_id).recalculate_all_services(today)
    return RecalculationResponse(**result.__dict__)


@router.delete("/payments/{payment_id}", status_code=204)
def unlink_payment(
    payment_id: UUID,
    user_id: Optional[str] = None,
    db: Session = Depends(get_db)
):
    """Remove a linked payment; the service's dates and status are recomputed."""
    user_id = get_user_id(user_id)
    PaymentLedger(db, user_id).unlink(payment_id)
    return None


@router.get("/", response_model=List[ServiceResponse])
def list_services(
    status: Optional[str] = None,
    include_payments: bool = False,
    user_id: Optional[str] = None,
    db: Session = Depends(get_db)
):
    """List services by status; "all" returns every status, "live" drops paused and cancelled."""
    user_id = get_user_id(user_id)
    listings = RecurringServiceManager(db, user_id).get_services(status, include_payments)

    response = []
    for listing in listings:
        item = ServiceResponse.model_validate(listing.service)
        if listing.recent_payments is not None:
            item.recent_payments = [PaymentEntryResponse.model_validate(p) for p in listing.recent_payments]
        response.append(item)
    return response


@router.post("/", response_model=ServiceResponse, status_code=201)
def create_service(
    service: ServiceCreate,
    user_id: Optional[str] = None,
    db: Session = Depends(get_db)
):
    """Create a service manually."""
    user_id = get_user_id(user_id)
    fields = service.model_dump(exclude_unset=True, exclude={"first_payment_date"})
    return RecurringServiceManager(db, user_id).create_service(
        fields,
        first_payment_date=service.first_payment_date,
    )


@router.get("/{service_id}", response_model=ServiceResponse)
def get_service(
    service_id: UUID,
    user_id: Optional[str] = None,
    db: Session = Depends(get_db)
):
    """Get a specific service by ID."""
    user_id = get_user_id(user_id)
    return RecurringServiceManager(db, user_id).get_service(service_id)


@router.patch("/{service_id}", response_model=ServiceResponse)
def update_service(
    service_id: UUID,
    updates: ServiceUpdate,
    user_id: Optional[str] = None,
    db: Session = Depends(get_db)
):
    """Update a service. Schedule fields are recomputed, not edited."""
    user_id = get_user_id(user_id)
    return RecurringServiceManager(db, user_id).update_service(
        service_id,
        updates.model_dump(exclude_unset=True),
    )


@router.delete("/{service_id}", status_code=204)
def delete_service(
    service_id: UUID,
    user_id: Optional[str] = None,
    db: Session = Depends(get_db)
):
    """Delete a service and all of its payments."""
    user_id = get_user_id(user_id)
    RecurringServiceManager(db, user_id).delete_service(service_id)
    return None


@router.get("/{service_id}/payments", response_model=List[PaymentEntryResponse])
def get_service_payments(
    service_id: UUID,
    limit: int = Query(50, ge=1, le=500),
    include_transaction_detail: bool = False,
    user_id: Optional[str] = None,
    db: Session = Depends(get_db)
):
    """Linked payments of a service, newest first."""
    user_id = get_user_id(user_id)
    entries = PaymentLedger(db, user_id).get_service_payments(
        service_id,
        limit=limit,
        include_transaction_detail=include_transaction_detail,
    )
    return [PaymentEntryResponse.model_validate(e) for e in entries]


@router.post("/{service_id}/link", response_model=ServicePaymentResponse, status_code=201)
def link_transaction(
    service_id: UUID,
    request: LinkRequest,
    user_id: Optional[str] = None,
    db: Session = Depends(get_db)
):
    """Link a transaction to a service as a realized payment."""
    user_id = get_user_id(user_id)
    return PaymentLedger(db, user_id).link(
        service_id,
        request.transaction_id,
        matched_by=request.matched_by,
        confidence=request.confidence,
    )
