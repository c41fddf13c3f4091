"""
Cross-platform event matching. Maps the same real-world event between venues.

Venues assign unrelated IDs to the same event, so matching is done on a
canonical content hash: normalized title + resolution date (day precision).
Two markets with equal hashes are treated as settling on the same outcome.

Free-text market search (used by the gateway's market listing) combines
exact keyword containment with rapidfuzz scoring for typo tolerance.
"""

from __future__ import annotations

import hashlib
import logging
import re

from rapidfuzz import fuzz

from scanner.models import Market

logger = logging.getLogger(__name__)

# Minimum token-set similarity for a fuzzy search hit
SEARCH_FUZZY_THRESHOLD = 80.0

_NON_ALNUM = re.compile(r"[^a-z0-9\s]")
_WHITESPACE = re.compile(r"\s+")


def normalize_title(text: str) -> str:
    """Lower-case, drop punctuation, collapse whitespace."""
    lowered = _NON_ALNUM.sub("", text.lower())
    return _WHITESPACE.sub(" ", lowered).strip()


def canonical_hash(description: str, resolution_date: str) -> str:
    """
    Fingerprint an event for cross-venue matching.

    The resolution date is truncated to YYYY-MM-DD so venues that publish
    different times of day for the same close still match.
    """
    date_part = resolution_date.split("T")[0]
    digest = hashlib.sha256(f"{normalize_title(description)}|{date_part}".encode("utf-8"))
    return digest.hexdigest()[:16]


def market_hash(market: Market) -> str:
    """Connector-supplied hash when present, otherwise computed from title + date."""
    if market.canonical_hash:
        return market.canonical_hash
    if not market.title:
        return ""
    return canonical_hash(market.title, market.resolution_date)


def find_matching_markets(markets: list[Market], target_hash: str) -> list[Market]:
    return [m for m in markets if market_hash(m) == target_hash]


def index_by_hash(markets: list[Market]) -> dict[str, Market]:
    """First market per canonical hash. Markets without a hash are skipped."""
    index: dict[str, Market] = {}
    for m in markets:
        h = market_hash(m)
        if h and h not in index:
            index[h] = m
    return index


def search_markets(
    markets: list[Market],
    query: str,
    fuzzy_threshold: float = SEARCH_FUZZY_THRESHOLD,
) -> list[Market]:
    """
    Keyword search over title + description.

    A market matches when every query term appears in its text, or when the
    rapidfuzz token-set ratio clears fuzzy_threshold. Exact matches rank
    first, then by fuzzy score, then by liquidity.
    """
    terms = normalize_title(query).split()
    if not terms:
        return list(markets)

    normalized_query = " ".join(terms)
    scored: list[tuple[int, float, float, Market]] = []
    for m in markets:
        text = normalize_title(f"{m.title} {m.description}")
        exact = all(t in text for t in terms)
        score = fuzz.token_set_ratio(normalized_query, text)
        if exact or score >= fuzzy_threshold:
            scored.append((1 if exact else 0, score, m.liquidity, m))

    scored.sort(key=lambda s: (s[0], s[1], s[2]), reverse=True)
    return [s[3] for s in scored]
