"""
Pattern tier of intent recognition.

Ordered (regex, extractor) pairs per intent; the first match wins and its
confidence comes from how much of the message the match covers. Anything
the patterns cannot place goes to the LLM tier in llm.py.

Short replies ("yes", "cancel", "undo") are intercepted by classify_reply()
before any of this runs.
"""

import re
from typing import Callable, Optional

from pydantic import ValidationError

from portfolio_agent.log_config import get_logger
from portfolio_agent.models import IntentKind, IntentResult, payload_from_entities

logger = get_logger(__name__)

CONFIRM_REPLIES = {"yes", "y", "confirm", "ok", "yes please", "sure", "proceed"}
CANCEL_REPLIES = {"no", "n", "cancel", "abort", "stop", "never mind", "nevermind"}
UNDO_REPLIES = {"undo", "undo that", "undo last", "undo last action", "revert", "revert that"}

COMPANY_SYMBOLS = {
    "apple": "AAPL",
    "microsoft": "MSFT",
    "google": "GOOGL",
    "alphabet": "GOOGL",
    "amazon": "AMZN",
    "tesla": "TSLA",
    "nvidia": "NVDA",
    "meta": "META",
    "facebook": "META",
    "netflix": "NFLX",
    "bitcoin": "BTC",
    "ethereum": "ETH",
    "etf": "VUAA",
    "vanguard": "VUAA",
    "india": "INDIA",
}

# Custodians and brokers a holding's location is usually one of
KNOWN_LOCATIONS = {
    "DBS", "OCBC", "UOB", "SCB", "IBKR", "SYFE", "ENDOWUS", "TIGER", "MOOMOO",
    "ZERODHA", "CPF", "SRS", "STASHAWAY", "SAXO", "GEMINI", "COINBASE",
    "BINANCE", "KRAKEN", "WISE", "HSBC", "CITI", "POEMS", "FSMONE", "GROWW",
}

_TICKER_SHAPE = re.compile(r"^[A-Z0-9][A-Z0-9.\-]{0,5}$")

SYM = r"(?!(?:shares?|units?|more|of|my|the|all|half)\b)([A-Za-z][A-Za-z0-9.\-]*)"
NUM = r"(\d+(?:,\d{3})*(?:\.\d+)?|\.\d+)"
PRICE = r"(?:S\$|\$|₹)?" + NUM
CUR = r"(?:\s*(sgd|usd|inr))?"
CATEGORY = r"(core|growth|hedge|liquidity)"
FRACTION = r"(half|a\s+half|a\s+quarter|a\s+third)"

_FRACTIONS = {"half": 0.5, "a half": 0.5, "a quarter": 0.25, "a third": 1 / 3}


def normalize_symbol(symbol: str) -> str:
    symbol = symbol.strip().strip(".-")
    return COMPANY_SYMBOLS.get(symbol.lower(), symbol.upper())


def _num(text: str) -> float:
    return float(text.replace(",", ""))


def _fraction(text: str) -> float:
    return _FRACTIONS[re.sub(r"\s+", " ", text.lower())]


def _cur(text: Optional[str]) -> Optional[str]:
    return text.upper() if text else None


def _title(text: str) -> str:
    return text.strip().capitalize()


def detect_currency(message: str) -> Optional[str]:
    """Explicit code or S$/₹ wins; a bare "$" reads as USD."""
    m = re.search(r"\b(SGD|USD|INR)\b", message, re.I)
    if m:
        return m.group(1).upper()
    if "S$" in message:
        return "SGD"
    if "₹" in message:
        return "INR"
    if "$" in message:
        return "USD"
    return None


def rename_readings(value: str) -> list[str]:
    """Which fields a rename target plausibly refers to: symbol, name, location."""
    value = value.strip()
    readings = []
    words = value.split()
    if words and words[0].upper() in KNOWN_LOCATIONS:
        readings.append("location")
    if _TICKER_SHAPE.match(value):
        readings.append("symbol")
    if len(words) > 1 or (len(value) > 6 and not _TICKER_SHAPE.match(value)):
        readings.append("name")
    return readings


def rename_entities(symbol: str, value: str) -> dict:
    entities = {"symbol": normalize_symbol(symbol), "rename_value": value.strip()}
    readings = rename_readings(value)
    if readings == ["symbol"]:
        entities["new_symbol"] = value.strip().upper()
    elif readings == ["name"]:
        entities["name"] = value.strip()
    elif readings == ["location"]:
        entities["location"] = value.strip()
    return entities


def selection_entities(target: str, value: str) -> dict:
    """Entities for a picked rename option ("Rename location to DBS")."""
    value = value.strip()
    entities = {"rename_value": value}
    if target == "symbol":
        entities["new_symbol"] = value.upper()
    elif target.startswith("company"):
        entities["name"] = value
    else:
        entities["location"] = value
    return entities


_YEARLY_FIELDS = {
    "income": "income", "earned": "income", "made": "income",
    "expense": "expenses", "expenses": "expenses",
    "net worth": "net_worth",
    "saving": "savings", "savings": "savings",
    "market gain": "market_gains", "market gains": "market_gains",
}
_YEARLY_FIELD_RE = r"(income|earned|made|expenses?|net\s+worth|savings?|market\s+gains?)"
_AMOUNT = r"(?:S\$|\$|₹)?" + NUM + r"\s*([km])?\b"


def _amount(number: str, suffix: Optional[str]) -> float:
    multiplier = {"k": 1_000, "m": 1_000_000}.get((suffix or "").lower(), 1)
    return _num(number) * multiplier


def _yearly_field(raw: str) -> str:
    return _YEARLY_FIELDS[re.sub(r"\s+", " ", raw.lower())]


def _yearly_extra_fields(message: str) -> dict:
    """Every "<field> [was] <amount>" pair in the message."""
    fields = {}
    pattern = _YEARLY_FIELD_RE + r"\s+(?:(?:in|for)\s+\d{4}\s+)?(?:was|were|is|are|of)?\s*" + _AMOUNT
    for m in re.finditer(pattern, message, re.I):
        fields[_yearly_field(m.group(1))] = _amount(m.group(2), m.group(3))
    return fields


Extractor = Callable[[re.Match], dict]

INTENT_PATTERNS: list[tuple[IntentKind, list[tuple[str, Extractor]]]] = [
    (IntentKind.INCREASE_HOLDING, [
        (
            r"(?:increase|top\s+up)\s+(?:my\s+)?" + SYM + r"\s+(?:holdings?\s+|position\s+)?by\s+"
            + NUM + r"(?:\s*(?:shares?|units?))?(?:\s+at\s+" + PRICE + CUR + r")?",
            lambda m: {"symbol": normalize_symbol(m.group(1)), "quantity": _num(m.group(2)),
                       "unit_price": _num(m.group(3)) if m.group(3) else None, "currency": _cur(m.group(4))},
        ),
        (
            r"(?:buy|add|bought)\s+" + NUM + r"\s+more\s+(?:shares?\s+of\s+|units?\s+of\s+)?" + SYM
            + r"(?:\s+(?:at|@|for)\s+" + PRICE + CUR + r")?",
            lambda m: {"symbol": normalize_symbol(m.group(2)), "quantity": _num(m.group(1)),
                       "unit_price": _num(m.group(3)) if m.group(3) else None, "currency": _cur(m.group(4))},
        ),
    ]),
    (IntentKind.ADD_HOLDING, [
        (
            r"(?:add|buy|bought|purchased?)\s+" + NUM + r"\s+(?:shares?|units?)\s+of\s+" + SYM
            + r"\s+(?:at|@|for)\s+" + PRICE + CUR,
            lambda m: {"quantity": _num(m.group(1)), "symbol": normalize_symbol(m.group(2)),
                       "unit_price": _num(m.group(3)), "currency": _cur(m.group(4))},
        ),
        (
            r"(?:add|buy|bought|purchased?)\s+" + NUM + r"\s+" + SYM + r"\s+(?:at|@|for)\s+" + PRICE + CUR,
            lambda m: {"quantity": _num(m.group(1)), "symbol": normalize_symbol(m.group(2)),
                       "unit_price": _num(m.group(3)), "currency": _cur(m.group(4))},
        ),
        (
            r"purchased\s+" + SYM + r"\s+" + NUM + r"\s+shares?\s+at\s+" + PRICE + CUR,
            lambda m: {"symbol": normalize_symbol(m.group(1)), "quantity": _num(m.group(2)),
                       "unit_price": _num(m.group(3)), "currency": _cur(m.group(4))},
        ),
        (
            r"add\s+" + SYM + r"\s+" + NUM + r"\s+shares?\s+for\s+" + PRICE + CUR,
            lambda m: {"symbol": normalize_symbol(m.group(1)), "quantity": _num(m.group(2)),
                       "unit_price": _num(m.group(3)), "currency": _cur(m.group(4))},
        ),
        (
            r"bought\s+" + SYM + r"\s+at\s+" + PRICE + CUR,
            lambda m: {"symbol": normalize_symbol(m.group(1)), "unit_price": _num(m.group(2)),
                       "currency": _cur(m.group(3))},
        ),
        (
            r"add\s+" + SYM + r"\s+to\s+" + CATEGORY,
            lambda m: {"symbol": normalize_symbol(m.group(1)), "category": _title(m.group(2))},
        ),
        (
            r"(?:add|buy|bought|purchased?)\s+" + NUM + r"\s+(?:shares?|units?)\s+of\s+" + SYM,
            lambda m: {"quantity": _num(m.group(1)), "symbol": normalize_symbol(m.group(2))},
        ),
        (
            r"(?:buy|bought)\s+" + NUM + r"\s+" + SYM,
            lambda m: {"quantity": _num(m.group(1)), "symbol": normalize_symbol(m.group(2))},
        ),
    ]),
    (IntentKind.EDIT_HOLDING, [
        (
            r"rename\s+(symbol|company\s+name|location)\s+to\s+(.+)",
            lambda m: selection_entities(m.group(1).lower(), m.group(2)),
        ),
        (
            r"rename\s+(.+?)\s+(?:to|as)\s+(.+)",
            lambda m: rename_entities(m.group(1).strip(), m.group(2)),
        ),
        (
            r"(?:update|set|change)\s+(?:the\s+)?(?:current|market)\s+price\s+of\s+" + SYM + r"\s+to\s+" + PRICE,
            lambda m: {"symbol": normalize_symbol(m.group(1)), "current_unit_price": _num(m.group(2))},
        ),
        (
            r"(?:update|set|change)\s+" + SYM + r"\s+(?:current|market)\s+price\s+to\s+" + PRICE,
            lambda m: {"symbol": normalize_symbol(m.group(1)), "current_unit_price": _num(m.group(2))},
        ),
        (
            r"(?:update|set|change)\s+(?:the\s+)?(?:cost|buy)\s+price\s+of\s+" + SYM + r"\s+to\s+" + PRICE,
            lambda m: {"symbol": normalize_symbol(m.group(1)), "unit_price": _num(m.group(2))},
        ),
        (
            r"(?:update|set|change)\s+" + SYM + r"\s+(?:buy\s+|cost\s+)?price\s+to\s+" + PRICE,
            lambda m: {"symbol": normalize_symbol(m.group(1)), "unit_price": _num(m.group(2))},
        ),
        (
            r"(?:change|set|update)\s+" + SYM + r"\s+quantity\s+to\s+" + NUM,
            lambda m: {"symbol": normalize_symbol(m.group(1)), "quantity": _num(m.group(2))},
        ),
        (
            r"modify\s+" + SYM + r"\s+to\s+" + NUM + r"\s+(?:shares?|units?)",
            lambda m: {"symbol": normalize_symbol(m.group(1)), "quantity": _num(m.group(2))},
        ),
        (
            r"(?:move|change)\s+" + SYM + r"\s+(?:category\s+)?to\s+" + CATEGORY + r"\b",
            lambda m: {"symbol": normalize_symbol(m.group(1)), "category": _title(m.group(2))},
        ),
        (
            r"(?:change|set|update)\s+" + SYM + r"\s+location\s+to\s+(.+)",
            lambda m: {"symbol": normalize_symbol(m.group(1)), "location": m.group(2).strip()},
        ),
        (
            r"move\s+" + SYM + r"\s+to\s+(.+)",
            lambda m: {"symbol": normalize_symbol(m.group(1)), "location": m.group(2).strip()},
        ),
        (
            r"(enable|disable)\s+(manual|auto(?:matic)?)\s+pricing\s+for\s+" + SYM,
            lambda m: {"symbol": normalize_symbol(m.group(3)),
                       "manual_pricing": (m.group(1).lower() == "enable") == (m.group(2).lower() == "manual")},
        ),
        (
            r"edit\s+" + SYM + r"\s+holding",
            lambda m: {"symbol": normalize_symbol(m.group(1))},
        ),
    ]),
    (IntentKind.REDUCE_HOLDING, [
        (
            r"(?:sell|reduce|trim)\s+" + FRACTION + r"\s+(?:of\s+)?(?:my\s+)?" + SYM
            + r"(?:\s+(?:shares?|holdings?|position))?(?:\s+at\s+" + PRICE + CUR + r")?",
            lambda m: {"fraction": _fraction(m.group(1)), "symbol": normalize_symbol(m.group(2)),
                       "unit_price": _num(m.group(3)) if m.group(3) else None, "currency": _cur(m.group(4))},
        ),
        (
            r"reduce\s+(?:my\s+)?" + SYM + r"\s+(?:holdings?\s+|position\s+)?by\s+" + FRACTION,
            lambda m: {"symbol": normalize_symbol(m.group(1)), "fraction": _fraction(m.group(2))},
        ),
        (
            r"(?:sell|sold|reduce)\s+" + NUM + r"\s+(?:shares?\s+|units?\s+)?(?:of\s+)?(?:my\s+)?" + SYM
            + r"(?:\s+(?:at|@|for)\s+" + PRICE + CUR + r")?",
            lambda m: {"quantity": _num(m.group(1)), "symbol": normalize_symbol(m.group(2)),
                       "unit_price": _num(m.group(3)) if m.group(3) else None, "currency": _cur(m.group(4))},
        ),
        (
            r"reduce\s+(?:my\s+)?" + SYM + r"\s+(?:holdings?\s+|position\s+)?by\s+" + NUM
            + r"(?:\s*(?:shares?|units?))?",
            lambda m: {"symbol": normalize_symbol(m.group(1)), "quantity": _num(m.group(2))},
        ),
    ]),
    (IntentKind.DELETE_HOLDING, [
        (
            r"(?:delete|remove)\s+(?:my\s+)?" + SYM + r"(?:\s+(?:holding|position))?",
            lambda m: {"symbol": normalize_symbol(m.group(1))},
        ),
        (
            r"exit\s+(?:my\s+)?" + SYM + r"\s+position",
            lambda m: {"symbol": normalize_symbol(m.group(1))},
        ),
        (
            r"sell\s+(?:everything\s+in\s+|all\s+(?:of\s+)?)?(?:my\s+)?" + SYM,
            lambda m: {"symbol": normalize_symbol(m.group(1))},
        ),
    ]),
    (IntentKind.ADD_YEARLY_DATA, [
        (
            r"(\d{4})\s+" + _YEARLY_FIELD_RE + r"\s+(?:was\s+|were\s+|is\s+|are\s+|of\s+)?" + _AMOUNT,
            lambda m: {"year": int(m.group(1)), _yearly_field(m.group(2)): _amount(m.group(3), m.group(4))},
        ),
        (
            _YEARLY_FIELD_RE + r"\s+(?:in|for)\s+(\d{4})\s+(?:was|were|is|are)\s+" + _AMOUNT,
            lambda m: {"year": int(m.group(2)), _yearly_field(m.group(1)): _amount(m.group(3), m.group(4))},
        ),
        (
            r"(?:in\s+)?(\d{4})\s*,?\s+i\s+(?:earned|made)\s+" + _AMOUNT,
            lambda m: {"year": int(m.group(1)), "income": _amount(m.group(2), m.group(3))},
        ),
    ]),
    (IntentKind.PORTFOLIO_ANALYSIS, [
        (r"how\s+am\s+i\s+doing", lambda m: {}),
        (r"how\s+is\s+my\s+portfolio\s+(?:doing|performing)", lambda m: {}),
        (r"portfolio\s+performance", lambda m: {}),
        (r"analy[sz]e\s+(?:my\s+)?portfolio", lambda m: {}),
        (r"portfolio\s+health", lambda m: {}),
        (r"allocation\s+review", lambda m: {}),
    ]),
]

_COMPILED = [
    (intent, [(re.compile(r"\b" + p, re.I), extract) for p, extract in patterns])
    for intent, patterns in INTENT_PATTERNS
]


def coverage_confidence(match: re.Match, message: str) -> float:
    coverage = len(match.group(0)) / max(len(message), 1)
    if coverage > 0.8:
        return 0.95
    if coverage > 0.6:
        return 0.85
    if coverage > 0.4:
        return 0.75
    return 0.6


def classify_reply(message: str) -> Optional[IntentKind]:
    """Short yes / no / undo replies, checked before any pattern work."""
    reply = re.sub(r"[.!?\s]+$", "", message.lower().strip())
    if reply in CONFIRM_REPLIES:
        return IntentKind.CONFIRM_ACTION
    if reply in CANCEL_REPLIES:
        return IntentKind.CANCEL_ACTION
    if reply in UNDO_REPLIES:
        return IntentKind.UNDO_ACTION
    return None


def recognize(message: str) -> IntentResult:
    """First matching pattern wins; unknown with confidence 0 otherwise."""
    text = message.strip()
    for intent, patterns in _COMPILED:
        for regex, extract in patterns:
            m = regex.search(text)
            if not m:
                continue
            entities = {k: v for k, v in extract(m).items() if v is not None}
            if intent in (IntentKind.INCREASE_HOLDING, IntentKind.ADD_HOLDING, IntentKind.REDUCE_HOLDING):
                entities.setdefault("currency", detect_currency(text))
                entities = {k: v for k, v in entities.items() if v is not None}
            if intent == IntentKind.ADD_YEARLY_DATA:
                entities = {**_yearly_extra_fields(text), **entities}
            try:
                payload = payload_from_entities(intent.value, entities)
            except ValidationError as e:
                logger.debug("Pattern matched %s but entities did not validate: %s", intent.value, e)
                continue
            return IntentResult(
                intent=intent,
                confidence=coverage_confidence(m, text),
                entities=payload,
                source="pattern",
            )
    return IntentResult(intent=IntentKind.UNKNOWN, confidence=0.0, source="none")
