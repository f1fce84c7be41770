"""
Smart holding matcher: decides whether a symbol from the user refers to a
holding they already own.

  1. exact symbol (case-insensitive)        -> add_to_existing, confidence 1.0
  2. Levenshtein ratio / known aliases      -> surfaced above 0.7
  3. company-name overlap                   -> same thresholds
  4. external symbol lookup                 -> create_new (metadata optional)

A single surfaced match above 0.8 is selected automatically; several, or a
borderline one, ask the user to clarify.
"""

from typing import Awaitable, Callable, Optional

from portfolio_agent.log_config import get_logger
from portfolio_agent.models import Holding, MatchOutcome, MatchResult
from portfolio_agent.tools.market_data import lookup_symbol

logger = get_logger(__name__)

SURFACE_THRESHOLD = 0.7
AUTO_SELECT_THRESHOLD = 0.8
ALIAS_CONFIDENCE = 0.9

SYMBOL_ALIASES = [
    {"BTC", "BITCOIN", "BTC-USD"},
    {"ETH", "ETHEREUM", "ETH-USD"},
    {"META", "FB"},
    {"GOOGL", "GOOG"},
    {"BRK.B", "BRK-B"},
]

SymbolLookup = Callable[[str], Awaitable[Optional[dict]]]


def levenshtein_distance(s1: str, s2: str) -> int:
    if len(s1) < len(s2):
        return levenshtein_distance(s2, s1)
    if len(s2) == 0:
        return len(s1)

    previous_row = range(len(s2) + 1)
    for i, c1 in enumerate(s1):
        current_row = [i + 1]
        for j, c2 in enumerate(s2):
            insertions = previous_row[j + 1] + 1
            deletions = current_row[j] + 1
            substitutions = previous_row[j] + (c1 != c2)
            current_row.append(min(insertions, deletions, substitutions))
        previous_row = current_row
    return previous_row[-1]


def symbol_similarity(a: str, b: str) -> float:
    a, b = a.upper(), b.upper()
    if a == b:
        return 1.0
    if any(a in group and b in group for group in SYMBOL_ALIASES):
        return ALIAS_CONFIDENCE
    longer = max(len(a), len(b))
    if longer == 0:
        return 0.0
    return (longer - levenshtein_distance(a, b)) / longer


def name_similarity(query: str, name: str) -> float:
    query, name = query.lower().strip(), name.lower().strip()
    if len(query) < 3 or not name:
        return 0.0
    if query in name or name in query:
        return 0.9
    query_words = set(query.split())
    name_words = set(name.split())
    common = query_words & name_words
    if not common:
        return 0.0
    return min(0.8, len(common) / max(len(query_words), len(name_words)))


def _sort_key(match: MatchResult):
    return (-match.confidence, match.symbol)


class SmartHoldingMatcher:
    def __init__(self, lookup: SymbolLookup = lookup_symbol):
        self.lookup = lookup

    async def find_matches(
        self, symbol: str, holdings: list[Holding], name: Optional[str] = None
    ) -> MatchOutcome:
        query = symbol.upper().strip()

        exact = [h for h in holdings if h.symbol.upper() == query]
        if exact:
            ranked = sorted(exact, key=lambda h: (-(h.value_usd or 0), h.id))
            matches = [
                MatchResult(symbol=h.symbol, name=h.name, confidence=1.0, holding_id=h.id, match_type="exact_symbol")
                for h in ranked
            ]
            return MatchOutcome(suggested_action="add_to_existing", best_match=matches[0], matches=matches)

        best_by_holding: dict[str, MatchResult] = {}

        def _offer(candidate: MatchResult) -> None:
            current = best_by_holding.get(candidate.holding_id)
            if current is None or candidate.confidence > current.confidence:
                best_by_holding[candidate.holding_id] = candidate

        for h in holdings:
            score = symbol_similarity(query, h.symbol)
            if score > SURFACE_THRESHOLD:
                _offer(MatchResult(
                    symbol=h.symbol, name=h.name, confidence=round(score, 4),
                    holding_id=h.id, match_type="similar_symbol",
                ))
            for text in filter(None, (symbol, name)):
                score = name_similarity(text, h.name)
                if score > SURFACE_THRESHOLD:
                    _offer(MatchResult(
                        symbol=h.symbol, name=h.name, confidence=round(score, 4),
                        holding_id=h.id, match_type="similar_name",
                    ))

        matches = sorted(best_by_holding.values(), key=_sort_key)
        if len(matches) == 1 and matches[0].confidence > AUTO_SELECT_THRESHOLD:
            return MatchOutcome(suggested_action="add_to_existing", best_match=matches[0], matches=matches)
        if matches:
            return MatchOutcome(suggested_action="clarify", best_match=matches[0], matches=matches)

        try:
            lookup = await self.lookup(query)
        except Exception as e:
            logger.warning("Symbol lookup failed for %s: %s", query, e)
            lookup = None
        return MatchOutcome(suggested_action="create_new", external_lookup=lookup)
