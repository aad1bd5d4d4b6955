"""
Pluggable string similarity strategies.

Every strategy scores two already-normalized strings in [0, 1]. The Matcher
depends only on the Similarity interface; the concrete strategy is chosen by
the SIMILARITY_STRATEGY setting.
"""

from abc import ABC, abstractmethod
from typing import Dict, Type
from rapidfuzz import fuzz
from rapidfuzz.distance import JaroWinkler


class Similarity(ABC):
    """Score two normalized strings; 1.0 means identical."""

    name: str = ""

    @abstractmethod
    def score(self, a: str, b: str) -> float:
        pass

    def __call__(self, a: str, b: str) -> float:
        if not a or not b:
            return 0.0
        if a == b:
            return 1.0
        return max(0.0, min(1.0, self.score(a, b)))


class TokenSortSimilarity(Similarity):
    """Levenshtein ratio over alphabetically sorted tokens."""

    name = "token_sort"

    def score(self, a: str, b: str) -> float:
        return fuzz.token_sort_ratio(a, b) / 100.0


class JaroWinklerSimilarity(Similarity):
    """Jaro-Winkler; favours shared prefixes, good for short names."""

    name = "jaro_winkler"

    def score(self, a: str, b: str) -> float:
        return JaroWinkler.similarity(a, b)


class ContainmentSimilarity(Similarity):
    """
    Containment ratio, then word-overlap Jaccard.

    If one string contains the other the score is the length ratio;
    otherwise the share of distinct words the two have in common.
    """

    name = "containment"

    def score(self, a: str, b: str) -> float:
        shorter, longer = sorted((a, b), key=len)
        if shorter in longer:
            return len(shorter) / len(longer)

        words_a = set(a.split())
        words_b = set(b.split())
        union = words_a | words_b
        if not union:
            return 0.0
        return len(words_a & words_b) / len(union)


SIMILARITY_STRATEGIES: Dict[str, Type[Similarity]] = {
    TokenSortSimilarity.name: TokenSortSimilarity,
    JaroWinklerSimilarity.name: JaroWinklerSimilarity,
    ContainmentSimilarity.name: ContainmentSimilarity,
}


def get_similarity(name: str) -> Similarity:
    try:
        return SIMILARITY_STRATEGIES[name]()
    except KeyError:
        raise ValueError(
            f"Unknown similarity strategy {name!r}; "
            f"expected one of {', '.join(sorted(SIMILARITY_STRATEGIES))}"
        ) from None
