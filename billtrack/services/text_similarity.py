"""
Token-overlap similarity between normalized names.
"""
from dataclasses import dataclass, field
from typing import Iterable, List, Optional, Set

from billtrack.services.name_normalizer import NameNormalizer


@dataclass
class SimilarityResult:
    score: float  # 0-100
    shared_tokens: List[str] = field(default_factory=list)


class TextSimilarity:
    """
    Compares two strings by the overlap of their normalized token sets.

    The overlap coefficient |A & B| / min(|A|, |B|) is used rather than Jaccard so
    that a short service name ("Netflix") fully matches a longer transaction text
    ("NETFLIX.COM AMSTERDAM").
    """

    def __init__(self, normalizer: Optional[NameNormalizer] = None):
        self.normalizer = normalizer or NameNormalizer()

    def calculate(self, text1: Optional[str], text2: Optional[str]) -> SimilarityResult:
        tokens1 = set(self.normalizer.tokens(text1))
        tokens2 = set(self.normalizer.tokens(text2))
        return self._overlap(tokens1, tokens2)

    def best_match(self, text: Optional[str], candidates: Iterable[Optional[str]]) -> SimilarityResult:
        """Highest similarity between text and any of the candidates."""
        best = SimilarityResult(score=0.0)
        for candidate in candidates:
            result = self.calculate(text, candidate)
            if result.score > best.score:
                best = result
        return best

    @staticmethod
    def _overlap(tokens1: Set[str], tokens2: Set[str]) -> SimilarityResult:
        if not tokens1 or not tokens2:
            return SimilarityResult(score=0.0)
        shared = tokens1 & tokens2
        score = 100.0 * len(shared) / min(len(tokens1), len(tokens2))
        return SimilarityResult(score=score, shared_tokens=sorted(shared))
