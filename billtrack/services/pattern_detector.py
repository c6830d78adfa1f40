"""
Recurring pattern detection over historical transactions.

Core approach: group unlinked transactions by their canonical merchant key,
check whether the gaps between consecutive occurrences fit one frequency of the
schedule table, and describe each qualifying group as an immutable candidate.
Nothing is persisted here; confirmation happens in the service registry.

Usage:
    detector = PatternDetector(min_occurrences=3, lookback_months=12)
    candidates = detector.detect(transactions, today=date.today())
"""
import os
import logging
from collections import Counter, defaultdict
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal, ROUND_HALF_UP
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from billtrack.models import Frequency
from billtrack.services.name_normalizer import NameNormalizer
from billtrack.services.schedule_projector import (
    add_months,
    next_date,
    nominal_interval_days,
)

logger = logging.getLogger(__name__)


# Configuration
DEFAULT_MIN_OCCURRENCES = int(os.getenv("DETECTION_MIN_OCCURRENCES", "3"))
DEFAULT_LOOKBACK_MONTHS = int(os.getenv("DETECTION_LOOKBACK_MONTHS", "12"))

# Relative spread (max - min) / mean above which a service is "variable amount"
AMOUNT_VARIANCE_THRESHOLD = float(os.getenv("DETECTION_AMOUNT_VARIANCE_THRESHOLD", "0.15"))

# Occurrence count at which the occurrence component of confidence saturates
OCCURRENCE_SATURATION = int(os.getenv("DETECTION_OCCURRENCE_SATURATION", "6"))

# Gap tolerance around the nominal interval, in days
WEEKLY_TOLERANCE_DAYS = float(os.getenv("DETECTION_WEEKLY_TOLERANCE_DAYS", "1"))
MONTHLY_TOLERANCE_DAYS = float(os.getenv("DETECTION_MONTHLY_TOLERANCE_DAYS", "3"))

# Confidence weights
GAP_WEIGHT = 0.5
AMOUNT_WEIGHT = 0.3
OCCURRENCE_WEIGHT = 0.2

OUTFLOW = "outflow"
INFLOW = "inflow"

CENTS = Decimal("0.01")


@dataclass(frozen=True)
class ServiceCandidate:
    """A detected recurring pattern, not yet persisted."""
    normalized_name: str
    name: str
    frequency: Frequency
    typical_day_of_month: Optional[int]
    estimated_amount: Decimal
    amount_varies: bool
    min_amount: Optional[Decimal]
    max_amount: Optional[Decimal]
    currency: str
    category_id: Optional[str]
    first_payment_date: date
    last_payment_date: date
    next_expected_date: date
    auto_detection_confidence: int  # 0-100
    transaction_ids: Tuple[str, ...] = field(default_factory=tuple)
    occurrence_count: int = 0


@dataclass
class GapAnalysis:
    frequency: Frequency
    in_band: int
    total: int

    @property
    def regularity(self) -> float:
        return self.in_band / self.total if self.total else 0.0


def tolerance_days(frequency: Frequency) -> float:
    if frequency.is_month_based:
        return MONTHLY_TOLERANCE_DAYS
    return WEEKLY_TOLERANCE_DAYS


class PatternDetector:
    """
    Detects recurring payment patterns from a flat list of transactions.

    Transactions only need the attributes id, transaction_date, amount,
    currency, description, merchant and (optionally) category_id.
    """

    def __init__(
        self,
        min_occurrences: int = DEFAULT_MIN_OCCURRENCES,
        lookback_months: int = DEFAULT_LOOKBACK_MONTHS,
        normalizer: Optional[NameNormalizer] = None,
    ):
        self.min_occurrences = max(2, int(min_occurrences))
        self.lookback_months = max(1, int(lookback_months))
        self.normalizer = normalizer or NameNormalizer()

    def detect(
        self,
        transactions: Iterable,
        today: date,
        linked_transaction_ids: Iterable = (),
        existing_keys: Iterable[str] = (),
    ) -> List[ServiceCandidate]:
        """
        Return candidate services, best first.

        Linked transactions and transactions outside the lookback window are
        ignored. Groups whose key already belongs to an existing service are
        skipped. Sparse input yields an empty list.
        """
        window_start = add_months(today, -self.lookback_months)
        linked = {str(tid) for tid in linked_transaction_ids}
        existing = {key for key in existing_keys if key}

        groups: Dict[Tuple[str, str], List] = defaultdict(list)
        for txn in transactions:
            if str(txn.id) in linked:
                continue
            if not (window_start <= txn.transaction_date <= today):
                continue
            key = self.normalizer.canonical_key(txn.merchant or txn.description)
            if not key:
                continue
            direction = OUTFLOW if Decimal(txn.amount) < 0 else INFLOW
            groups[(key, direction)].append(txn)

        logger.info(
            f"[PATTERN_DETECTOR] {len(groups)} groups from window {window_start} - {today} "
            f"(min_occurrences={self.min_occurrences})"
        )

        candidates = []
        for (key, direction), group in groups.items():
            if key in existing:
                logger.debug(f"[PATTERN_DETECTOR] Skipping '{key}': already tracked")
                continue
            if len(group) < self.min_occurrences:
                continue
            candidate = self._evaluate_group(key, group)
            if candidate:
                candidates.append(candidate)

        candidates.sort(key=lambda c: (-c.auto_detection_confidence, -c.occurrence_count))
        logger.info(f"[PATTERN_DETECTOR] Detected {len(candidates)} candidate services")
        return candidates

    def _evaluate_group(self, key: str, group: List) -> Optional[ServiceCandidate]:
        group = sorted(group, key=lambda t: (t.transaction_date, str(t.id)))
        dates = [t.transaction_date for t in group]
        gaps = [(later - earlier).days for earlier, later in zip(dates, dates[1:])]

        analysis = self._dominant_frequency(gaps)
        if analysis is None or analysis.in_band < self.min_occurrences - 1:
            logger.debug(f"[PATTERN_DETECTOR] '{key}' rejected: irregular gaps {gaps}")
            return None

        amounts = [abs(Decimal(t.amount)) for t in group]
        mean = (sum(amounts) / len(amounts)).quantize(CENTS, rounding=ROUND_HALF_UP)
        low, high = min(amounts), max(amounts)
        relative_range = float((high - low) / mean) if mean > 0 else 0.0
        amount_varies = relative_range > AMOUNT_VARIANCE_THRESHOLD

        confidence = self._confidence(analysis.regularity, relative_range, len(group))

        frequency = analysis.frequency
        typical_day = self._typical_day(dates) if frequency.is_month_based else None
        latest = group[-1]
        category_id = self._most_common([getattr(t, "category_id", None) for t in group])

        return ServiceCandidate(
            normalized_name=key,
            name=self.normalizer.display_name(latest.merchant or latest.description),
            frequency=frequency,
            typical_day_of_month=typical_day,
            estimated_amount=mean,
            amount_varies=amount_varies,
            min_amount=low if amount_varies else None,
            max_amount=high if amount_varies else None,
            currency=self._most_common([t.currency for t in group]) or "EUR",
            category_id=str(category_id) if category_id is not None else None,
            first_payment_date=dates[0],
            last_payment_date=dates[-1],
            next_expected_date=next_date(frequency, typical_day, dates[-1]),
            auto_detection_confidence=confidence,
            transaction_ids=tuple(str(t.id) for t in group),
            occurrence_count=len(group),
        )

    @staticmethod
    def _dominant_frequency(gaps: Sequence[int]) -> Optional[GapAnalysis]:
        """Frequency with the most gaps inside its tolerance band (first wins on ties)."""
        if not gaps:
            return None

        best = None
        for frequency in Frequency:
            nominal = nominal_interval_days(frequency)
            tolerance = tolerance_days(frequency)
            in_band = sum(1 for gap in gaps if abs(gap - nominal) <= tolerance)
            if in_band and (best is None or in_band > best.in_band):
                best = GapAnalysis(frequency=frequency, in_band=in_band, total=len(gaps))
        return best

    @staticmethod
    def _confidence(gap_regularity: float, relative_range: float, occurrences: int) -> int:
        amount_regularity = 1 - min(relative_range, 1.0)
        occurrence_score = min(1.0, occurrences / OCCURRENCE_SATURATION)
        raw = 100 * (
            GAP_WEIGHT * gap_regularity
            + AMOUNT_WEIGHT * amount_regularity
            + OCCURRENCE_WEIGHT * occurrence_score
        )
        rounded = int(Decimal(str(raw)).quantize(Decimal("1"), rounding=ROUND_HALF_UP))
        return max(0, min(100, rounded))

    @staticmethod
    def _typical_day(dates: Sequence[date]) -> int:
        """Most frequent day of month; ties go to the later day."""
        counts = Counter(d.day for d in dates)
        return max(counts.items(), key=lambda item: (item[1], item[0]))[0]

    @staticmethod
    def _most_common(values: Sequence):
        present = [v for v in values if v is not None]
        if not present:
            return None
        return Counter(present).most_common(1)[0][0]
