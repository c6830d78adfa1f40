"""
Canonicalization of transaction descriptions and merchant names.

The normalized key is what detection groups on and what match scoring compares,
so it must be deterministic and total: any input (including None) yields a string.
"""
import re
import unicodedata
from dataclasses import dataclass
from typing import List, Optional, Tuple


# Payment processor prefixes like "PAYPAL *NETFLIX" or "SQ *COFFEE BAR"
PROCESSOR_PREFIX_PATTERN = re.compile(
    r'\b(?:paypal|pp|sq|sqr|sumup|zettle|izettle|stripe|mollie|adyen|fs|dlo|mp)\s*\*\s*'
)

NOISE_PATTERNS = [
    r'\d{4}[-/.]\d{1,2}[-/.]\d{1,2}',  # ISO dates (YYYY-MM-DD), before DD/MM so the year is not split
    r'\d{1,2}[-/.]\d{1,2}[-/.]\d{2,4}',  # Dates (DD/MM/YYYY)
    r'\b(?:ref|reference|invoice|factura|nro|order)\b[.:#]?\s*\w*\d\w*',  # Reference labels with a code
]

# Boilerplate tokens added by banks and card networks; multi-word phrases first.
BOILERPLATE_PATTERN = re.compile(
    r'\b(?:'
    r'debit card purchase|card purchase|recurring payment|direct debit|standing order|'
    r'debito automatico|pago automatico|compra con tarjeta|'
    r'pos|purchase|payment|sepa|incasso|visa|mastercard|maestro|debit|card|compra|pago'
    r')\b'
)

DIGIT_RUN_PATTERN = re.compile(r'\d{4,}')  # Reference/invoice numbers
NON_ALNUM_PATTERN = re.compile(r'[^a-z0-9]+')
WHITESPACE_PATTERN = re.compile(r'\s+')


@dataclass(frozen=True)
class KnownService:
    key: str
    display_name: str
    patterns: Tuple[str, ...]


# Well-known merchants whose transaction text varies a lot between banks.
# Patterns are matched as whole words against the normalized key.
KNOWN_SERVICES: Tuple[KnownService, ...] = (
    KnownService("netflix", "Netflix", ("netflix",)),
    KnownService("spotify", "Spotify", ("spotify",)),
    KnownService("disney plus", "Disney+", ("disney plus", "disneyplus")),
    KnownService("hbo max", "HBO Max", ("hbo max", "hbomax")),
    KnownService("amazon prime", "Amazon Prime", ("amazon prime", "prime video", "amzn prime")),
    KnownService("youtube premium", "YouTube Premium", ("youtube premium", "google youtube")),
    KnownService("apple services", "Apple Services", ("apple com bill", "itunes")),
    KnownService("icloud", "iCloud", ("icloud",)),
    KnownService("google one", "Google One", ("google one", "google storage")),
    KnownService("chatgpt", "ChatGPT Plus", ("chatgpt", "openai")),
    KnownService("claude", "Claude Pro", ("anthropic", "claude ai")),
    KnownService("github", "GitHub", ("github",)),
    KnownService("slack", "Slack", ("slack",)),
    KnownService("notion", "Notion", ("notion so", "notion")),
    KnownService("dropbox", "Dropbox", ("dropbox",)),
    KnownService("edenor", "Edenor", ("edenor",)),
    KnownService("edesur", "Edesur", ("edesur",)),
    KnownService("metrogas", "Metrogas", ("metrogas",)),
    KnownService("aysa", "AySA", ("aysa",)),
    KnownService("telecentro", "Telecentro", ("telecentro",)),
    KnownService("fibertel", "Fibertel", ("fibertel", "cablevision")),
    KnownService("movistar", "Movistar", ("movistar", "telefonica")),
)


class NameNormalizer:
    """
    Turns raw descriptions/merchants into comparable keys.

    Usage:
        normalizer = NameNormalizer()
        normalizer.normalize("PAYPAL *NETFLIX.COM 12345678")  # -> "netflix com"
    """

    def normalize(self, text: Optional[str]) -> str:
        if not text:
            return ""

        normalized = self._fold_accents(text).casefold()
        normalized = PROCESSOR_PREFIX_PATTERN.sub(' ', normalized)

        for pattern in NOISE_PATTERNS:
            normalized = re.sub(pattern, ' ', normalized)

        normalized = NON_ALNUM_PATTERN.sub(' ', normalized)
        normalized = DIGIT_RUN_PATTERN.sub(' ', normalized)
        normalized = BOILERPLATE_PATTERN.sub(' ', normalized)

        return WHITESPACE_PATTERN.sub(' ', normalized).strip()

    def tokens(self, text: Optional[str]) -> List[str]:
        return self.normalize(text).split()

    def known_service(self, text: Optional[str]) -> Optional[KnownService]:
        """Return the well-known merchant the text refers to, if any."""
        key = self.normalize(text)
        if not key:
            return None
        for service in KNOWN_SERVICES:
            for pattern in service.patterns:
                if re.search(rf'\b{re.escape(pattern)}\b', key):
                    return service
        return None

    def canonical_key(self, text: Optional[str]) -> str:
        """Grouping key: the known-service key when recognized, else the normalized text."""
        known = self.known_service(text)
        if known:
            return known.key
        return self.normalize(text)

    def display_name(self, text: Optional[str]) -> str:
        known = self.known_service(text)
        if known:
            return known.display_name
        return self.normalize(text).title()[:50]

    @staticmethod
    def _fold_accents(text: str) -> str:
        decomposed = unicodedata.normalize("NFKD", text)
        return "".join(ch for ch in decomposed if not unicodedata.combining(ch))
