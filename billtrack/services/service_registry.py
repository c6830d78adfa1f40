"""
Recurring service registry: CRUD over service definitions plus the two-phase
detect/confirm flow.

`detect` only returns immutable candidates. `confirm_detected` is the single
place where detected services are persisted, and it re-checks duplicates at
confirmation time because data may have changed since detection.

Usage:
    manager = RecurringServiceManager(db, user_id)
    candidates = manager.detect()
    result = manager.confirm_detected(candidates)
"""
import logging
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Iterable, List, Optional
from uuid import UUID

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from billtrack.db_helpers import get_user_id
from billtrack.models import (
    Category,
    Frequency,
    MatchedBy,
    RecurringService,
    ServicePayment,
    ServiceStatus,
    Transaction,
)
from billtrack.services.errors import (
    DuplicateServiceError,
    NotFoundError,
    RecurringServiceError,
    ValidationError,
)
from billtrack.services.name_normalizer import NameNormalizer
from billtrack.services.pattern_detector import (
    DEFAULT_LOOKBACK_MONTHS,
    DEFAULT_MIN_OCCURRENCES,
    PatternDetector,
    ServiceCandidate,
)
from billtrack.services.payment_ledger import LedgerEntry, PaymentLedger
from billtrack.services.schedule_projector import add_months, monthly_equivalent, utc_today
from billtrack.services.status_reconciler import StatusReconciler

logger = logging.getLogger(__name__)


EDITABLE_FIELDS = (
    "name",
    "description",
    "category_id",
    "frequency",
    "typical_day_of_month",
    "estimated_amount",
    "amount_varies",
    "min_amount",
    "max_amount",
    "currency",
    "status",
    "merchant_patterns",
    "notes",
)

# Maintained by the ledger and the reconciler only
DERIVED_FIELDS = (
    "next_expected_date",
    "first_payment_date",
    "last_payment_date",
    "auto_detection_confidence",
    "is_auto_detected",
    "normalized_name",
)

USER_SETTABLE_STATUSES = (ServiceStatus.ACTIVE, ServiceStatus.PAUSED, ServiceStatus.CANCELLED)
STICKY_STATUSES = (ServiceStatus.PAUSED, ServiceStatus.CANCELLED)

# A null in a patch leaves these unchanged
NON_NULLABLE_FIELDS = ("name", "frequency", "currency", "status")

MAX_LOOKBACK_MONTHS = 60


@dataclass
class ConfirmResult:
    created_count: int = 0
    skipped_duplicates: List[str] = field(default_factory=list)
    linked_count: int = 0
    service_ids: List[str] = field(default_factory=list)
    errors: List[Dict[str, str]] = field(default_factory=list)


@dataclass
class ServiceListing:
    service: RecurringService
    recent_payments: Optional[List[LedgerEntry]] = None


def _decimal(value, label: str) -> Optional[Decimal]:
    if value is None or value == "":
        return None
    try:
        return abs(Decimal(str(value)))
    except (InvalidOperation, ValueError):
        raise ValidationError(f"Invalid {label}: {value!r}")


class RecurringServiceManager:
    """Manages one user's recurring services."""

    def __init__(self, db: Session, user_id: Optional[str] = None):
        self.db = db
        self.user_id = get_user_id(user_id)
        self.normalizer = NameNormalizer()
        self.ledger = PaymentLedger(db, self.user_id)
        self.reconciler = StatusReconciler(db, self.user_id)

    # ---- validation ----

    def _validate(self, values: Dict[str, Any]) -> Dict[str, Any]:
        """
        Validate and coerce a full set of editable values.

        Raises ValidationError before anything is written.
        """
        cleaned = dict(values)

        name = (cleaned.get("name") or "").strip()
        if not name:
            raise ValidationError("Service name is required")
        normalized_name = self.normalizer.canonical_key(name)
        if not normalized_name:
            raise ValidationError("Service name must contain letters or digits")
        cleaned["name"] = name[:255]
        cleaned["normalized_name"] = normalized_name

        try:
            frequency = Frequency(cleaned.get("frequency") or Frequency.MONTHLY)
        except ValueError:
            allowed = ", ".join(f.value for f in Frequency)
            raise ValidationError(f"Invalid frequency '{cleaned.get('frequency')}'. Allowed: {allowed}")
        cleaned["frequency"] = frequency

        day = cleaned.get("typical_day_of_month")
        if day is not None:
            try:
                day = int(day)
            except (TypeError, ValueError):
                raise ValidationError(f"Invalid typical_day_of_month: {day!r}")
            if not 1 <= day <= 31:
                raise ValidationError("typical_day_of_month must be between 1 and 31")
        cleaned["typical_day_of_month"] = day if frequency.is_month_based else None

        estimated = _decimal(cleaned.get("estimated_amount"), "estimated_amount")
        low = _decimal(cleaned.get("min_amount"), "min_amount")
        high = _decimal(cleaned.get("max_amount"), "max_amount")
        if low is not None and high is not None and low > high:
            raise ValidationError("min_amount cannot be greater than max_amount")
        amount_varies = bool(cleaned.get("amount_varies"))
        cleaned["estimated_amount"] = estimated
        cleaned["amount_varies"] = amount_varies
        cleaned["min_amount"] = low if amount_varies else None
        cleaned["max_amount"] = high if amount_varies else None

        currency = (cleaned.get("currency") or "EUR").strip().upper()
        if len(currency) != 3 or not currency.isalpha():
            raise ValidationError(f"Invalid currency code: {currency!r}")
        cleaned["currency"] = currency

        try:
            status = ServiceStatus(cleaned.get("status") or ServiceStatus.ACTIVE)
        except ValueError:
            raise ValidationError(f"Invalid status '{cleaned.get('status')}'")
        cleaned["status"] = status

        category_id = cleaned.get("category_id")
        if category_id is not None:
            cleaned["category_id"] = self._resolve_category_id(category_id)

        patterns = cleaned.get("merchant_patterns")
        if patterns is not None:
            keys = [self.normalizer.canonical_key(p) for p in patterns]
            cleaned["merchant_patterns"] = list(dict.fromkeys(k for k in keys if k))

        return cleaned

    def _resolve_category_id(self, category_id) -> UUID:
        try:
            category_uuid = category_id if isinstance(category_id, UUID) else UUID(str(category_id))
        except (ValueError, TypeError):
            raise ValidationError(f"Invalid category_id: {category_id!r}")
        exists = self.db.query(Category.id).filter(
            Category.id == category_uuid,
            Category.user_id == self.user_id,
        ).first()
        if not exists:
            raise ValidationError("Category not found")
        return category_uuid

    def _find_live_service(self, normalized_name: str, exclude_id=None) -> Optional[RecurringService]:
        query = self.db.query(RecurringService).filter(
            RecurringService.user_id == self.user_id,
            RecurringService.normalized_name == normalized_name,
            RecurringService.status != ServiceStatus.CANCELLED,
        )
        if exclude_id is not None:
            query = query.filter(RecurringService.id != exclude_id)
        return query.first()

    def _ensure_unique(self, name: str, normalized_name: str, exclude_id=None) -> None:
        if self._find_live_service(normalized_name, exclude_id):
            logger.warning(f"[SERVICE_REGISTRY] Duplicate service name '{name}' for user {self.user_id}")
            raise DuplicateServiceError(name, normalized_name)

    def _flush_service(self, service: RecurringService) -> None:
        try:
            self.db.flush()
        except IntegrityError:
            self.db.rollback()
            raise DuplicateServiceError(service.name, service.normalized_name)

    # ---- CRUD ----

    def create_service(
        self,
        fields: Dict[str, Any],
        today: Optional[date] = None,
        first_payment_date: Optional[date] = None,
    ) -> RecurringService:
        """
        Create a service manually. first_payment_date optionally seeds the
        schedule until a payment is linked.
        """
        unknown = set(fields) - set(EDITABLE_FIELDS)
        if unknown:
            raise ValidationError(f"Unknown or read-only fields: {', '.join(sorted(unknown))}")

        values = self._validate(fields)
        if values["status"] not in USER_SETTABLE_STATUSES:
            raise ValidationError(f"Status '{values['status'].value}' is computed and cannot be set")
        if values["status"] != ServiceStatus.CANCELLED:
            self._ensure_unique(values["name"], values["normalized_name"])
        if not values.get("merchant_patterns"):
            values["merchant_patterns"] = [values["normalized_name"]]

        service = RecurringService(
            user_id=self.user_id,
            is_auto_detected=False,
            first_payment_date=first_payment_date,
            **values,
        )
        self.db.add(service)
        self._flush_service(service)

        self.reconciler.recalculate_service(service, today)
        self.db.commit()
        self.db.refresh(service)

        logger.info(f"[SERVICE_REGISTRY] Created service '{service.name}' ({service.frequency.value})")
        return service

    def update_service(self, service_id, patch: Dict[str, Any], today: Optional[date] = None) -> RecurringService:
        """
        Apply a field patch.

        A frequency or anchor-day change drops the cached next date before
        reconciling. Setting paused/cancelled is sticky; setting active again
        hands the status back to the reconciler.
        """
        derived = set(patch) & set(DERIVED_FIELDS)
        if derived:
            raise ValidationError(f"Derived fields cannot be edited: {', '.join(sorted(derived))}")
        unknown = set(patch) - set(EDITABLE_FIELDS)
        if unknown:
            raise ValidationError(f"Unknown fields: {', '.join(sorted(unknown))}")
        patch = {
            key: value for key, value in patch.items()
            if not (value is None and key in NON_NULLABLE_FIELDS)
        }
        if "status" in patch:
            try:
                requested = ServiceStatus(patch["status"])
            except ValueError:
                raise ValidationError(f"Invalid status '{patch['status']}'")
            if requested not in USER_SETTABLE_STATUSES:
                raise ValidationError(f"Status '{requested.value}' is computed and cannot be set")

        service = self.ledger.get_service(service_id, lock=True)
        current = {name: getattr(service, name) for name in EDITABLE_FIELDS}
        values = self._validate({**current, **patch})

        was_cancelled = service.status == ServiceStatus.CANCELLED
        name_changed = values["normalized_name"] != service.normalized_name
        if values["status"] != ServiceStatus.CANCELLED and (name_changed or was_cancelled):
            self._ensure_unique(values["name"], values["normalized_name"], exclude_id=service.id)

        schedule_changed = (
            values["frequency"] != service.frequency
            or values["typical_day_of_month"] != service.typical_day_of_month
        )

        for key, value in values.items():
            setattr(service, key, value)
        if schedule_changed:
            service.next_expected_date = None
        self._flush_service(service)

        self.reconciler.recalculate_service(service, today)
        self.db.commit()
        self.db.refresh(service)

        logger.info(
            f"[SERVICE_REGISTRY] Updated service '{service.name}' "
            f"(fields={sorted(patch)}, schedule_changed={schedule_changed})"
        )
        return service

    def delete_service(self, service_id) -> None:
        service = self.ledger.get_service(service_id, lock=True)
        name = service.name
        removed = self.db.query(ServicePayment).filter(
            ServicePayment.user_id == self.user_id,
            ServicePayment.service_id == service.id,
        ).delete(synchronize_session=False)
        self.db.delete(service)
        self.db.commit()
        logger.info(f"[SERVICE_REGISTRY] Deleted service '{name}' and {removed} payments")

    def get_service(self, service_id) -> RecurringService:
        return self.ledger.get_service(service_id)

    def get_services(self, status_filter: Optional[str] = None, include_payments: bool = False) -> List[ServiceListing]:
        """
        Services of the user; None or "all" returns every status, "live"
        everything that is neither paused nor cancelled.

        With include_payments each listing carries its most recent realized
        payments (RECENT_PAYMENTS_LIMIT per service).
        """
        query = self.db.query(RecurringService).filter(RecurringService.user_id == self.user_id)
        if status_filter == "live":
            query = query.filter(RecurringService.status.notin_(STICKY_STATUSES))
        elif status_filter and status_filter != "all":
            try:
                status = ServiceStatus(status_filter)
            except ValueError:
                raise ValidationError(f"Invalid status filter '{status_filter}'")
            query = query.filter(RecurringService.status == status)

        services = query.order_by(
            RecurringService.next_expected_date.is_(None),
            RecurringService.next_expected_date,
            RecurringService.name,
        ).all()

        if not include_payments:
            return [ServiceListing(service=s) for s in services]
        recent = self.ledger.get_recent_payments([s.id for s in services])
        return [ServiceListing(service=s, recent_payments=recent[s.id]) for s in services]

    # ---- detection ----

    def existing_keys(self) -> List[str]:
        """Normalized names and merchant patterns of every non-cancelled service."""
        keys = []
        services = self.db.query(RecurringService).filter(
            RecurringService.user_id == self.user_id,
            RecurringService.status != ServiceStatus.CANCELLED,
        ).all()
        for service in services:
            keys.append(service.normalized_name)
            keys.extend(service.merchant_patterns or [])
        return keys

    def detect(
        self,
        min_occurrences: Optional[int] = None,
        lookback_months: Optional[int] = None,
        today: Optional[date] = None,
    ) -> List[ServiceCandidate]:
        today = today or utc_today()
        min_occurrences = DEFAULT_MIN_OCCURRENCES if min_occurrences is None else int(min_occurrences)
        lookback_months = DEFAULT_LOOKBACK_MONTHS if lookback_months is None else int(lookback_months)
        if min_occurrences < 2:
            raise ValidationError("min_occurrences must be at least 2")
        if not 1 <= lookback_months <= MAX_LOOKBACK_MONTHS:
            raise ValidationError(f"lookback_months must be between 1 and {MAX_LOOKBACK_MONTHS}")

        transactions = self.db.query(Transaction).filter(
            Transaction.user_id == self.user_id,
            Transaction.transaction_date >= add_months(today, -lookback_months),
            Transaction.transaction_date <= today,
        ).all()

        detector = PatternDetector(min_occurrences, lookback_months, self.normalizer)
        candidates = detector.detect(
            transactions,
            today,
            linked_transaction_ids=self.ledger.linked_transaction_ids(),
            existing_keys=self.existing_keys(),
        )
        logger.info(
            f"[SERVICE_REGISTRY] Detection for user {self.user_id}: "
            f"{len(transactions)} transactions, {len(candidates)} candidates"
        )
        return candidates

    def confirm_detected(self, candidates: Iterable[ServiceCandidate], today: Optional[date] = None) -> ConfirmResult:
        """
        Persist confirmed candidates and link their transactions.

        Each candidate is committed on its own. Duplicates are skipped and
        reported, failures are recorded in `errors`, and transactions linked
        in the meantime are left alone.
        """
        result = ConfirmResult()

        for candidate in candidates:
            try:
                service_id, linked = self._confirm_one(candidate, today)
            except DuplicateServiceError:
                self.db.rollback()
                result.skipped_duplicates.append(candidate.name)
                continue
            except RecurringServiceError as e:
                self.db.rollback()
                logger.warning(f"[SERVICE_REGISTRY] Could not confirm '{candidate.name}': {e.message}")
                result.errors.append({"name": candidate.name, "error": e.message})
                continue

            result.created_count += 1
            result.linked_count += linked
            result.service_ids.append(str(service_id))

        logger.info(
            f"[SERVICE_REGISTRY] Confirmed detected services: created={result.created_count}, "
            f"duplicates={len(result.skipped_duplicates)}, linked={result.linked_count}, "
            f"errors={len(result.errors)}"
        )
        return result

    def _confirm_one(self, candidate: ServiceCandidate, today: Optional[date]):
        values = self._validate({
            "name": candidate.name,
            "category_id": None,
            "frequency": candidate.frequency,
            "typical_day_of_month": candidate.typical_day_of_month,
            "estimated_amount": candidate.estimated_amount,
            "amount_varies": candidate.amount_varies,
            "min_amount": candidate.min_amount,
            "max_amount": candidate.max_amount,
            "currency": candidate.currency,
            "merchant_patterns": [candidate.normalized_name],
        })
        values["category_id"] = self._candidate_category(candidate.category_id)

        self._ensure_unique(values["name"], values["normalized_name"])
        group_key = self.normalizer.canonical_key(candidate.normalized_name)
        if group_key and group_key != values["normalized_name"]:
            self._ensure_unique(values["name"], group_key)
        patterns = [values["normalized_name"]] + (values.get("merchant_patterns") or [])
        values["merchant_patterns"] = list(dict.fromkeys(patterns))

        service = RecurringService(
            user_id=self.user_id,
            is_auto_detected=True,
            auto_detection_confidence=max(0, min(100, int(candidate.auto_detection_confidence))),
            **values,
        )
        self.db.add(service)
        self._flush_service(service)

        already_linked = {str(tid) for tid in self.ledger.linked_transaction_ids()}
        linked = 0
        for transaction_id in candidate.transaction_ids:
            if str(transaction_id) in already_linked:
                logger.debug(f"[SERVICE_REGISTRY] Transaction {transaction_id} linked meanwhile, skipping")
                continue
            try:
                self.ledger.link(
                    service.id,
                    transaction_id,
                    MatchedBy.AUTO,
                    confidence=service.auto_detection_confidence,
                    today=today,
                    commit=False,
                )
            except NotFoundError:
                logger.debug(f"[SERVICE_REGISTRY] Transaction {transaction_id} no longer exists, skipping")
                continue
            linked += 1

        if linked == 0:
            self.reconciler.recalculate_service(service, today)
        self.db.commit()
        logger.info(f"[SERVICE_REGISTRY] Created detected service '{service.name}' with {linked} payments")
        return service.id, linked

    def _candidate_category(self, category_id) -> Optional[UUID]:
        # A suggested category that no longer exists is dropped rather than failing the candidate.
        if category_id is None:
            return None
        try:
            return self._resolve_category_id(category_id)
        except ValidationError:
            return None

    # ---- summary ----

    def get_summary(self) -> Dict[str, Any]:
        """Counts and monthly/yearly cost of live services, by frequency and currency."""
        services = self.db.query(RecurringService).filter(
            RecurringService.user_id == self.user_id,
        ).all()

        by_status: Dict[str, int] = defaultdict(int)
        by_frequency: Dict[str, Dict[str, Any]] = {}
        monthly_by_currency: Dict[str, Decimal] = defaultdict(Decimal)
        live_count = 0

        for service in services:
            by_status[service.status.value] += 1
            if service.status.is_sticky:
                continue
            live_count += 1

            frequency = service.frequency.value
            bucket = by_frequency.setdefault(frequency, {"count": 0, "monthly_equivalent": {}})
            bucket["count"] += 1
            if service.estimated_amount is None:
                continue

            monthly = monthly_equivalent(Decimal(service.estimated_amount), service.frequency)
            currency = service.currency or "EUR"
            monthly_by_currency[currency] += monthly
            bucket["monthly_equivalent"][currency] = round(
                bucket["monthly_equivalent"].get(currency, 0.0) + float(monthly), 2
            )

        return {
            "total_services": len(services),
            "total_live": live_count,
            "by_status": dict(by_status),
            "by_frequency": by_frequency,
            "monthly_total_by_currency": {c: round(float(v), 2) for c, v in monthly_by_currency.items()},
            "yearly_total_by_currency": {c: round(float(v * 12), 2) for c, v in monthly_by_currency.items()},
        }
