"""
Confidence scoring between a transaction and a recurring service.

The score combines three sub-scores (0-100 each):
- text: token overlap between the transaction and the service name/patterns
- amount: proximity to the service's expected amount or range
- date: proximity to the service's next expected date
"""
import os
import logging
from dataclasses import dataclass, field
from decimal import Decimal, ROUND_HALF_UP
from typing import Iterable, List, Optional, Tuple

from billtrack.models import ServiceStatus
from billtrack.services.text_similarity import TextSimilarity

logger = logging.getLogger(__name__)


# Weights
TEXT_WEIGHT = 0.4
AMOUNT_WEIGHT = 0.35
DATE_WEIGHT = 0.25

# Fixed-amount services count as an exact match within this relative tolerance
AMOUNT_TOLERANCE = float(os.getenv("MATCH_AMOUNT_TOLERANCE", "0.05"))
# Relative deviation at which the amount score reaches 0
MAX_AMOUNT_DEVIATION = float(os.getenv("MATCH_MAX_AMOUNT_DEVIATION", "0.5"))
# Day offset at which the date score reaches 0
MAX_DATE_OFFSET_DAYS = int(os.getenv("MATCH_MAX_DATE_OFFSET_DAYS", "10"))

NO_AMOUNT_SCORE = 50.0
NO_DATE_SCORE = 40.0

MIN_MATCH_CONFIDENCE = int(os.getenv("MATCH_MIN_CONFIDENCE", "30"))
AUTO_LINK_MIN_CONFIDENCE = int(os.getenv("AUTO_LINK_MIN_CONFIDENCE", "80"))
HIGH_CONFIDENCE = 75


@dataclass
class MatchScore:
    confidence: int  # 0-100
    text_score: float
    amount_score: float
    date_score: float
    reasons: List[str] = field(default_factory=list)


def round_half_up(value: float) -> int:
    return int(Decimal(str(value)).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


class MatchScorer:
    """
    Scores how likely a transaction is a payment of a given service.

    Usage:
        scorer = MatchScorer()
        result = scorer.score(transaction, service)
        if result.confidence >= AUTO_LINK_MIN_CONFIDENCE: ...
    """

    def __init__(self, text_similarity: Optional[TextSimilarity] = None):
        self.text_similarity = text_similarity or TextSimilarity()

    def score(self, transaction, service) -> MatchScore:
        reasons = []

        text_score = self._text_score(transaction, service)
        if text_score >= 50:
            reasons.append(f"Name matches '{service.name}'")

        amount = abs(Decimal(transaction.amount))
        amount_score = self._amount_score(amount, service)
        has_amount = service.estimated_amount is not None or (
            service.min_amount is not None and service.max_amount is not None
        )
        if has_amount and amount_score >= 100:
            reasons.append("Amount within expected range")
        elif has_amount and amount_score > 0:
            reasons.append("Amount close to expected")

        date_score = self._date_score(transaction.transaction_date, service.next_expected_date)
        if service.next_expected_date is not None and date_score > 0:
            offset = abs((transaction.transaction_date - service.next_expected_date).days)
            reasons.append(f"Date within {offset} days of expected")

        confidence = round_half_up(
            TEXT_WEIGHT * text_score + AMOUNT_WEIGHT * amount_score + DATE_WEIGHT * date_score
        )
        confidence = max(0, min(100, confidence))
        if confidence >= HIGH_CONFIDENCE:
            reasons.insert(0, "High match confidence")

        return MatchScore(
            confidence=confidence,
            text_score=round(text_score, 2),
            amount_score=round(amount_score, 2),
            date_score=round(date_score, 2),
            reasons=reasons,
        )

    def find_potential_matches(
        self,
        transaction,
        services: Iterable,
        floor: int = MIN_MATCH_CONFIDENCE,
    ) -> List[Tuple[object, MatchScore]]:
        """Live services scoring above `floor`, best first."""
        matches = []
        for service in services:
            if ServiceStatus(service.status).is_sticky:
                continue
            result = self.score(transaction, service)
            if result.confidence > floor:
                matches.append((service, result))

        matches.sort(key=lambda item: item[1].confidence, reverse=True)
        return matches

    def _text_score(self, transaction, service) -> float:
        texts = [t for t in (transaction.merchant, transaction.description) if t]
        candidates = [service.name] + list(service.merchant_patterns or [])

        # Aliases of a known merchant ("ANTHROPIC" for claude) share its canonical key
        normalizer = self.text_similarity.normalizer
        service_keys = {normalizer.normalize(c) for c in candidates} - {""}
        if any(normalizer.canonical_key(text) in service_keys for text in texts):
            return 100.0

        best = 0.0
        for text in texts:
            best = max(best, self.text_similarity.best_match(text, candidates).score)
        return best

    @staticmethod
    def _amount_score(amount: Decimal, service) -> float:
        low, high = service.min_amount, service.max_amount
        if service.amount_varies and low is not None and high is not None:
            low, high = Decimal(low), Decimal(high)
            if low <= amount <= high:
                return 100.0
            bound = low if amount < low else high
            if bound <= 0:
                return 0.0
            deviation = float(abs(amount - bound) / bound)
            return max(0.0, 100.0 * (1 - deviation / MAX_AMOUNT_DEVIATION))

        if service.estimated_amount is None:
            return NO_AMOUNT_SCORE
        expected = abs(Decimal(service.estimated_amount))
        if expected == 0:
            return 100.0 if amount == 0 else 0.0

        deviation = float(abs(amount - expected) / expected)
        if deviation <= AMOUNT_TOLERANCE:
            return 100.0
        span = MAX_AMOUNT_DEVIATION - AMOUNT_TOLERANCE
        return max(0.0, 100.0 * (MAX_AMOUNT_DEVIATION - deviation) / span)

    @staticmethod
    def _date_score(transaction_date, next_expected_date) -> float:
        if next_expected_date is None:
            return NO_DATE_SCORE
        offset = abs((transaction_date - next_expected_date).days)
        return max(0.0, 100.0 * (1 - offset / MAX_DATE_OFFSET_DAYS))
