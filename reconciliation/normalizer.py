"""
Free-text normalization for matching.

Pure functions over strings: they never raise and return "" for anything
that is not usable text. Locale rules (postal code shapes, noise words) live
on the Normalizer instance so they can be swapped or extended per market.
"""

import re
import unicodedata
from dataclasses import dataclass, field
from typing import Any, Iterable, List, Optional, Pattern, Tuple


_PUNCTUATION = re.compile(r"[^\w\s]", re.UNICODE)
_WHITESPACE = re.compile(r"\s+")
_COMMAS = re.compile(r"\s*,\s*(,\s*)*")

DEFAULT_POSTAL_PATTERNS: Tuple[str, ...] = (
    # UK: SW1A 1AA, EC2A 4NE
    r"\b[A-Z]{1,2}\d[A-Z\d]?\s*\d[A-Z]{2}\b",
    # Canada: K1A 0B1
    r"\b[A-Z]\d[A-Z]\s?\d[A-Z]\d\b",
    # Netherlands: 1012 AB
    r"\b\d{4}\s?[A-Z]{2}\b",
    # US / DE / FR / ES: 10115, 75001
    r"\b\d{5}(?:-\d{4})?\b",
    # AT / BE / CH / DK: 1010
    r"\b\d{4}\b",
)


@dataclass
class AddressParts:
    street: str
    postal_code: Optional[str]
    normalized: str


@dataclass
class Normalizer:
    """
    Text normalizer with per-locale rules.

    Attributes:
        postal_patterns: Regexes tried in order to find a postal code
        noise_words: Tokens dropped from labels before comparison
    """

    postal_patterns: Tuple[str, ...] = DEFAULT_POSTAL_PATTERNS
    noise_words: Tuple[str, ...] = ()
    _compiled: List[Pattern] = field(default_factory=list, init=False, repr=False)

    def __post_init__(self):
        self._compiled = [re.compile(p, re.IGNORECASE) for p in self.postal_patterns]

    def text(self, value: Any) -> str:
        """Trim, fold case and punctuation, collapse whitespace."""
        if not isinstance(value, str) or not value:
            return ""
        value = unicodedata.normalize("NFKC", value).casefold()
        value = value.replace("&", " and ")
        value = _PUNCTUATION.sub(" ", value)
        value = value.replace("_", " ")
        tokens = _WHITESPACE.sub(" ", value).strip().split(" ")
        if self.noise_words:
            tokens = [t for t in tokens if t not in self.noise_words]
        return " ".join(t for t in tokens if t)

    def compact(self, value: Any) -> str:
        """Normalized text with all spaces removed (exact-match key)."""
        return self.text(value).replace(" ", "")

    def postal_code(self, value: Any) -> Optional[str]:
        if not isinstance(value, str) or not value:
            return None
        for pattern in self._compiled:
            match = pattern.search(value)
            if match:
                return match.group(0).upper()
        return None

    def address(
        self,
        value: Any,
        city: Optional[str] = None,
        country: Optional[str] = None
    ) -> AddressParts:
        """
        Split a free-text address into street and postal code.

        Only the first ';'-separated segment is used. City and country tokens
        and the postal code are stripped from the street part.
        """
        if not isinstance(value, str) or not value.strip():
            return AddressParts(street="", postal_code=None, normalized="")

        segment = value.split(";")[0]
        postal = self.postal_code(segment)
        street = segment
        if postal:
            street = re.sub(re.escape(postal), " ", street, flags=re.IGNORECASE)
        for token in _strip_tokens(city, country):
            street = re.sub(rf"\b{re.escape(token)}\b", " ", street, flags=re.IGNORECASE)

        street = _COMMAS.sub(", ", street)
        street = _WHITESPACE.sub(" ", street).strip(" ,")
        return AddressParts(street=street, postal_code=postal, normalized=self.text(street))


def _strip_tokens(*values: Optional[str]) -> Iterable[str]:
    for value in values:
        if isinstance(value, str) and value.strip():
            yield value.strip()


default_normalizer = Normalizer()


def normalize_text(value: Any) -> str:
    return default_normalizer.text(value)


def compact(value: Any) -> str:
    return default_normalizer.compact(value)


def normalize_address(
    value: Any,
    city: Optional[str] = None,
    country: Optional[str] = None
) -> AddressParts:
    return default_normalizer.address(value, city=city, country=country)
