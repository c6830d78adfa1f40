"""
Service status state machine.

`reconcile` is pure: it derives (status, next_expected_date) from a service's
schedule and realized payments. `StatusReconciler` applies it to stored
services and only writes when something changed, so re-running it with
unchanged inputs is a no-op.

Usage:
    reconciler = StatusReconciler(db, user_id)
    result = reconciler.recalculate_all_services()
"""
import logging
from dataclasses import dataclass, field
from datetime import date
from typing import Dict, Iterable, List, Optional

from sqlalchemy.orm import Session

from billtrack.db_helpers import get_user_id
from billtrack.models import RecurringService, ServicePayment, ServiceStatus
from billtrack.services.schedule_projector import (
    DueWindow,
    classify_due_window,
    next_date,
    utc_today,
)

logger = logging.getLogger(__name__)


WINDOW_STATUS = {
    DueWindow.OVERDUE: ServiceStatus.OVERDUE,
    DueWindow.DUE_SOON: ServiceStatus.DUE_SOON,
    DueWindow.UP_TO_DATE: ServiceStatus.UP_TO_DATE,
}


@dataclass(frozen=True)
class Reconciliation:
    status: ServiceStatus
    next_expected_date: Optional[date]


@dataclass
class RecalculationResult:
    total: int = 0
    updated: int = 0
    unchanged: int = 0
    errors: List[Dict] = field(default_factory=list)
    details: List[Dict] = field(default_factory=list)


def schedule_base_date(service, payments: Iterable) -> Optional[date]:
    """Latest realized payment date, else first_payment_date, else the creation date."""
    realized = [p.payment_date for p in payments if not p.is_predicted]
    if realized:
        return max(realized)
    if service.first_payment_date:
        return service.first_payment_date
    if service.created_at:
        return service.created_at.date()
    return None


def reconcile(service, payments: Iterable, today: date) -> Reconciliation:
    """
    Derive status and next expected date for a service.

    Paused and cancelled services are returned unchanged. Without any base
    date the service stays active with its current next date.
    """
    status = ServiceStatus(service.status) if service.status else ServiceStatus.ACTIVE
    if status.is_sticky:
        return Reconciliation(status=status, next_expected_date=service.next_expected_date)

    base = schedule_base_date(service, payments)
    if base is None:
        return Reconciliation(status=ServiceStatus.ACTIVE, next_expected_date=service.next_expected_date)

    projected = next_date(service.frequency, service.typical_day_of_month, base)
    return Reconciliation(
        status=WINDOW_STATUS[classify_due_window(today, projected)],
        next_expected_date=projected,
    )


class StatusReconciler:
    """Applies `reconcile` to a user's stored services."""

    def __init__(self, db: Session, user_id: Optional[str] = None):
        self.db = db
        self.user_id = get_user_id(user_id)

    def _realized_payments(self, service_id) -> List[ServicePayment]:
        return self.db.query(ServicePayment).filter(
            ServicePayment.user_id == self.user_id,
            ServicePayment.service_id == service_id,
            ServicePayment.is_predicted == False,
        ).all()

    def recalculate_service(self, service: RecurringService, today: Optional[date] = None) -> bool:
        """
        Reconcile one service in the current session. Returns True if it changed.

        The caller owns the transaction; nothing is committed here.
        """
        today = today or utc_today()
        result = reconcile(service, self._realized_payments(service.id), today)

        changed = False
        if service.status != result.status:
            service.status = result.status
            changed = True
        if service.next_expected_date != result.next_expected_date:
            service.next_expected_date = result.next_expected_date
            changed = True

        if changed:
            self.db.flush()
            logger.debug(
                f"[STATUS_RECONCILER] Service {service.id}: status={result.status.value}, "
                f"next={result.next_expected_date}"
            )
        return changed

    def recalculate_all_services(self, today: Optional[date] = None) -> RecalculationResult:
        """
        Reconcile every live service of the user, committing each on its own.

        A failing service is rolled back and reported; the run continues.
        """
        today = today or utc_today()
        services = self.db.query(RecurringService).filter(
            RecurringService.user_id == self.user_id,
            RecurringService.status.notin_([ServiceStatus.PAUSED, ServiceStatus.CANCELLED]),
        ).order_by(RecurringService.created_at, RecurringService.id).all()
        service_ids = [service.id for service in services]

        result = RecalculationResult(total=len(service_ids))
        for service_id in service_ids:
            try:
                service = self.db.query(RecurringService).filter(
                    RecurringService.id == service_id,
                    RecurringService.user_id == self.user_id,
                ).with_for_update().one()
                changed = self.recalculate_service(service, today)
                self.db.commit()
            except Exception as e:
                self.db.rollback()
                logger.exception(f"[STATUS_RECONCILER] Failed to recalculate service {service_id}")
                result.errors.append({"service_id": str(service_id), "error": str(e)})
                continue

            if changed:
                result.updated += 1
            else:
                result.unchanged += 1
            result.details.append({
                "service_id": str(service_id),
                "name": service.name,
                "status": service.status.value,
                "next_expected_date": service.next_expected_date,
                "changed": changed,
            })

        logger.info(
            f"[STATUS_RECONCILER] Recalculated {result.total} services for user {self.user_id}: "
            f"{result.updated} updated, {result.unchanged} unchanged, {len(result.errors)} errors"
        )
        return result
