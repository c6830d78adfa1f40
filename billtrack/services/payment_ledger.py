"""
Payment ledger: links between transactions and recurring services.

A realized payment is a ServicePayment row backed by a transaction. Predicted
payments are never stored; calendar and upcoming views synthesize them from
each live service's schedule.

Usage:
    ledger = PaymentLedger(db, user_id)
    payment = ledger.link(service_id, transaction_id)
    upcoming = ledger.get_upcoming_payments(months_ahead=1)
"""
import logging
from dataclasses import dataclass
from datetime import date, timedelta
from decimal import Decimal
from typing import Dict, List, Optional, Tuple
from uuid import UUID

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, joinedload

from billtrack.db_helpers import get_user_id
from billtrack.models import (
    MatchedBy,
    PaymentStatus,
    RecurringService,
    ServicePayment,
    ServiceStatus,
    Transaction,
)
from billtrack.services.errors import AlreadyLinkedError, NotFoundError, ValidationError
from billtrack.services.match_scorer import AUTO_LINK_MIN_CONFIDENCE, MatchScore, MatchScorer
from billtrack.services.schedule_projector import (
    add_months,
    iter_schedule,
    next_date,
    nominal_interval_days,
    utc_today,
)
from billtrack.services.status_reconciler import StatusReconciler

logger = logging.getLogger(__name__)


MAX_MONTHS_AHEAD = 24
RECENT_PAYMENTS_LIMIT = 5


@dataclass
class LedgerEntry:
    """One row of a ledger or calendar view, realized or predicted."""
    id: Optional[UUID]
    service_id: UUID
    service_name: str
    transaction_id: Optional[UUID]
    payment_date: date
    amount: Optional[Decimal]
    currency: Optional[str]
    status: PaymentStatus
    is_predicted: bool
    match_confidence: Optional[int] = None
    matched_by: Optional[MatchedBy] = None
    transaction: Optional[Dict] = None


def _to_uuid(value, entity: str) -> UUID:
    if isinstance(value, UUID):
        return value
    try:
        return UUID(str(value))
    except (ValueError, TypeError):
        raise NotFoundError(entity, value)


def transaction_detail(txn: Optional[Transaction]) -> Optional[Dict]:
    if txn is None:
        return None
    return {
        "id": txn.id,
        "transaction_date": txn.transaction_date,
        "amount": txn.amount,
        "currency": txn.currency,
        "description": txn.description,
        "merchant": txn.merchant,
    }


def realized_entry(payment: ServicePayment, include_transaction_detail: bool = False) -> LedgerEntry:
    return LedgerEntry(
        id=payment.id,
        service_id=payment.service_id,
        service_name=payment.service.name if payment.service else "",
        transaction_id=payment.transaction_id,
        payment_date=payment.payment_date,
        amount=payment.amount,
        currency=payment.currency,
        status=payment.status,
        is_predicted=False,
        match_confidence=payment.match_confidence,
        matched_by=payment.matched_by,
        transaction=transaction_detail(payment.transaction) if include_transaction_detail else None,
    )


class PaymentLedger:
    """Links, unlinks and reads service payments for one user."""

    def __init__(self, db: Session, user_id: Optional[str] = None, scorer: Optional[MatchScorer] = None):
        self.db = db
        self.user_id = get_user_id(user_id)
        self.scorer = scorer or MatchScorer()
        self.reconciler = StatusReconciler(db, self.user_id)

    # ---- lookups ----

    def get_service(self, service_id, lock: bool = False) -> RecurringService:
        query = self.db.query(RecurringService).filter(
            RecurringService.id == _to_uuid(service_id, "Service"),
            RecurringService.user_id == self.user_id,
        )
        if lock:
            query = query.with_for_update()
        service = query.first()
        if not service:
            raise NotFoundError("Service", service_id)
        return service

    def _get_transaction(self, transaction_id) -> Transaction:
        txn = self.db.query(Transaction).filter(
            Transaction.id == _to_uuid(transaction_id, "Transaction"),
            Transaction.user_id == self.user_id,
        ).first()
        if not txn:
            raise NotFoundError("Transaction", transaction_id)
        return txn

    def _realized_link(self, transaction_id: UUID) -> Optional[ServicePayment]:
        return self.db.query(ServicePayment).filter(
            ServicePayment.user_id == self.user_id,
            ServicePayment.transaction_id == transaction_id,
            ServicePayment.is_predicted == False,
        ).first()

    def linked_transaction_ids(self) -> List[UUID]:
        rows = self.db.query(ServicePayment.transaction_id).filter(
            ServicePayment.user_id == self.user_id,
            ServicePayment.is_predicted == False,
            ServicePayment.transaction_id.isnot(None),
        ).all()
        return [row[0] for row in rows]

    # ---- link / unlink ----

    def link(
        self,
        service_id,
        transaction_id,
        matched_by: MatchedBy = MatchedBy.MANUAL,
        confidence: Optional[int] = None,
        today: Optional[date] = None,
        commit: bool = True,
    ) -> ServicePayment:
        """
        Record a transaction as a realized payment of a service.

        Manual links are allowed at any confidence. Raises AlreadyLinkedError
        when the transaction already funds a realized payment; the existing
        link is left untouched.
        """
        matched_by = MatchedBy(matched_by)
        service = self.get_service(service_id, lock=True)
        txn = self._get_transaction(transaction_id)

        existing = self._realized_link(txn.id)
        if existing:
            logger.warning(
                f"[PAYMENT_LEDGER] Rejected link of transaction {txn.id} to service {service.id}: "
                f"already linked to service {existing.service_id}"
            )
            raise AlreadyLinkedError(txn.id, existing.service_id)

        if confidence is None:
            if matched_by == MatchedBy.MANUAL:
                confidence = 100
            else:
                confidence = self.scorer.score(txn, service).confidence
        if not 0 <= int(confidence) <= 100:
            raise ValidationError("Match confidence must be between 0 and 100")

        payment = ServicePayment(
            user_id=self.user_id,
            service_id=service.id,
            transaction_id=txn.id,
            payment_date=txn.transaction_date,
            amount=abs(Decimal(txn.amount)),
            currency=txn.currency or service.currency,
            status=PaymentStatus.PAID,
            is_predicted=False,
            match_confidence=int(confidence),
            matched_by=matched_by,
        )
        self.db.add(payment)
        try:
            self.db.flush()
        except IntegrityError:
            self.db.rollback()
            logger.warning(f"[PAYMENT_LEDGER] Concurrent link of transaction {txn.id} lost the race")
            raise AlreadyLinkedError(txn.id)

        self.refresh_payment_dates(service)
        self.reconciler.recalculate_service(service, today)

        if commit:
            self.db.commit()
            self.db.refresh(payment)

        logger.info(
            f"[PAYMENT_LEDGER] Linked transaction {txn.id} to service '{service.name}' "
            f"({matched_by.value}, confidence={payment.match_confidence})"
        )
        return payment

    def unlink(self, payment_id, today: Optional[date] = None) -> RecurringService:
        """Delete a realized payment and recompute its service. Returns the service."""
        payment = self.db.query(ServicePayment).filter(
            ServicePayment.id == _to_uuid(payment_id, "Payment"),
            ServicePayment.user_id == self.user_id,
        ).first()
        if not payment:
            raise NotFoundError("Payment", payment_id)

        service = self.get_service(payment.service_id, lock=True)
        self.db.delete(payment)
        self.db.flush()

        self.refresh_payment_dates(service)
        self.reconciler.recalculate_service(service, today)
        self.db.commit()
        self.db.refresh(service)

        logger.info(f"[PAYMENT_LEDGER] Unlinked payment {payment_id} from service '{service.name}'")
        return service

    def refresh_payment_dates(self, service: RecurringService) -> None:
        """
        Recompute first/last payment dates from realized payments.

        With no payments left both are cleared, so the schedule falls back
        to the creation date. A manual first_payment_date seed only lasts
        until the first link.
        """
        dates = [
            row[0] for row in self.db.query(ServicePayment.payment_date).filter(
                ServicePayment.user_id == self.user_id,
                ServicePayment.service_id == service.id,
                ServicePayment.is_predicted == False,
            ).all()
        ]
        if dates:
            service.first_payment_date = min(dates)
            service.last_payment_date = max(dates)
        else:
            service.first_payment_date = None
            service.last_payment_date = None
        self.db.flush()

    # ---- reads ----

    def get_service_payments(
        self,
        service_id,
        limit: int = 50,
        include_transaction_detail: bool = False,
    ) -> List[LedgerEntry]:
        """Realized payments of a service, newest first."""
        service = self.get_service(service_id)
        query = self.db.query(ServicePayment).filter(
            ServicePayment.user_id == self.user_id,
            ServicePayment.service_id == service.id,
            ServicePayment.is_predicted == False,
        )
        if include_transaction_detail:
            query = query.options(joinedload(ServicePayment.transaction))
        payments = query.order_by(
            ServicePayment.payment_date.desc(),
            ServicePayment.created_at.desc(),
        ).limit(max(1, int(limit))).all()
        return [realized_entry(p, include_transaction_detail) for p in payments]

    def get_recent_payments(self, service_ids: List[UUID], limit: int = RECENT_PAYMENTS_LIMIT) -> Dict[UUID, List[LedgerEntry]]:
        recent: Dict[UUID, List[LedgerEntry]] = {service_id: [] for service_id in service_ids}
        if not service_ids:
            return recent
        payments = self.db.query(ServicePayment).filter(
            ServicePayment.user_id == self.user_id,
            ServicePayment.service_id.in_(service_ids),
            ServicePayment.is_predicted == False,
        ).order_by(ServicePayment.payment_date.desc()).all()
        for payment in payments:
            bucket = recent[payment.service_id]
            if len(bucket) < limit:
                bucket.append(realized_entry(payment))
        return recent

    def get_transaction_service(self, transaction_id) -> Optional[ServicePayment]:
        """The realized payment (and through it, the service) a transaction funds, if any."""
        txn = self._get_transaction(transaction_id)
        return self._realized_link(txn.id)

    def _live_services(self) -> List[RecurringService]:
        return self.db.query(RecurringService).filter(
            RecurringService.user_id == self.user_id,
            RecurringService.status.notin_([ServiceStatus.PAUSED, ServiceStatus.CANCELLED]),
        ).all()

    def find_potential_matches(self, transaction_id) -> List[Tuple[RecurringService, MatchScore]]:
        txn = self._get_transaction(transaction_id)
        return self.scorer.find_potential_matches(txn, self._live_services())

    def auto_link_transaction(self, transaction_id, today: Optional[date] = None) -> Optional[ServicePayment]:
        """
        Link a transaction to its best-matching service when the match is strong enough.

        Returns the new payment, or None when the transaction is already linked
        or no service reaches AUTO_LINK_MIN_CONFIDENCE.
        """
        txn = self._get_transaction(transaction_id)
        if self._realized_link(txn.id):
            logger.info(f"[PAYMENT_LEDGER] Transaction {txn.id} already linked, skipping auto-link")
            return None

        matches = self.scorer.find_potential_matches(txn, self._live_services())
        if not matches or matches[0][1].confidence < AUTO_LINK_MIN_CONFIDENCE:
            logger.info(f"[PAYMENT_LEDGER] No confident match for transaction {txn.id}")
            return None

        service, score = matches[0]
        return self.link(service.id, txn.id, MatchedBy.AUTO, score.confidence, today=today)

    # ---- calendar views ----

    def get_month_payments(self, year: int, month: int) -> List[LedgerEntry]:
        if not 1 <= month <= 12:
            raise ValidationError("Month must be between 1 and 12")
        if not 1900 <= year <= 9998:
            raise ValidationError("Year out of range")
        start = date(year, month, 1)
        return self._window_entries(start, add_months(start, 1))

    def get_upcoming_payments(self, months_ahead: int = 1, today: Optional[date] = None) -> List[LedgerEntry]:
        if not 1 <= months_ahead <= MAX_MONTHS_AHEAD:
            raise ValidationError(f"months_ahead must be between 1 and {MAX_MONTHS_AHEAD}")
        start = today or utc_today()
        return self._window_entries(start, add_months(start, months_ahead))

    def _window_entries(self, start: date, end: date) -> List[LedgerEntry]:
        """Realized payments in [start, end) merged with predicted ones for live services."""
        realized = self.db.query(ServicePayment).options(
            joinedload(ServicePayment.service),
        ).filter(
            ServicePayment.user_id == self.user_id,
            ServicePayment.is_predicted == False,
            ServicePayment.payment_date >= start,
            ServicePayment.payment_date < end,
        ).all()
        entries = [realized_entry(p) for p in realized]

        for service in self._live_services():
            entries.extend(self._predicted_entries(service, start, end))

        entries.sort(key=lambda e: (e.payment_date, e.service_name, e.is_predicted))
        return entries

    def _predicted_entries(self, service: RecurringService, start: date, end: date) -> List[LedgerEntry]:
        first_expected = service.next_expected_date
        if first_expected is None:
            base = service.last_payment_date or service.first_payment_date
            if base is None:
                return []
            first_expected = next_date(service.frequency, service.typical_day_of_month, base)

        half_interval = timedelta(days=nominal_interval_days(service.frequency) / 2)
        paid_dates = [
            row[0] for row in self.db.query(ServicePayment.payment_date).filter(
                ServicePayment.user_id == self.user_id,
                ServicePayment.service_id == service.id,
                ServicePayment.is_predicted == False,
                ServicePayment.payment_date >= start - half_interval,
                ServicePayment.payment_date < end + half_interval,
            ).all()
        ]

        predicted = []
        for expected in iter_schedule(service.frequency, service.typical_day_of_month, first_expected, start, end):
            if any(abs(paid - expected) <= half_interval for paid in paid_dates):
                continue
            predicted.append(LedgerEntry(
                id=None,
                service_id=service.id,
                service_name=service.name,
                transaction_id=None,
                payment_date=expected,
                amount=service.estimated_amount,
                currency=service.currency,
                status=PaymentStatus.PENDING,
                is_predicted=True,
            ))
        return predicted
