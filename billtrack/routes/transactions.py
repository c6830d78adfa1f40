from typing import List, Optional
from uuid import UUID
import logging

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from billtrack.database import get_db
from billtrack.db_helpers import get_user_id
from billtrack.schemas import (
    AutoLinkResponse,
    PotentialMatch,
    ServicePaymentResponse,
    ServiceResponse,
    TransactionServiceResponse,
)
from billtrack.services.payment_ledger import PaymentLedger

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("/{transaction_id}/matches", response_model=List[PotentialMatch])
def find_potential_matches(
    transaction_id: UUID,
    user_id: Optional[str] = None,
    db: Session = Depends(get_db)
):
    """Live services this transaction could belong to, best match first."""
    user_id = get_user_id(user_id)
    matches = PaymentLedger(db, user_id).find_potential_matches(transaction_id)
    return [
        PotentialMatch(
            service_id=service.id,
            service_name=service.name,
            confidence=score.confidence,
            text_score=score.text_score,
            amount_score=score.amount_score,
            date_score=score.date_score,
            reasons=score.reasons,
        )
        for service, score in matches
    ]


@router.get("/{transaction_id}/service", response_model=TransactionServiceResponse)
def get_transaction_service(
    transaction_id: UUID,
    user_id: Optional[str] = None,
    db: Session = Depends(get_db)
):
    """The service a transaction is linked to, if any."""
    user_id = get_user_id(user_id)
    payment = PaymentLedger(db, user_id).get_transaction_service(transaction_id)
    if payment is None:
        return TransactionServiceResponse()
    return TransactionServiceResponse(
        service=ServiceResponse.model_validate(payment.service),
        payment=ServicePaymentResponse.model_validate(payment),
    )


@router.post("/{transaction_id}/auto-link", response_model=AutoLinkResponse)
def auto_link_transaction(
    transaction_id: UUID,
    user_id: Optional[str] = None,
    db: Session = Depends(get_db)
):
    """Link the transaction to its best-matching service when confident enough."""
    user_id = get_user_id(user_id)
    payment = PaymentLedger(db, user_id).auto_link_transaction(transaction_id)
    if payment is None:
        return AutoLinkResponse(linked=False)
    return AutoLinkResponse(linked=True, payment=ServicePaymentResponse.model_validate(payment))
