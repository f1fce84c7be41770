"""
Read-only snapshot of everything the intent tier needs for one message:
the holding the message most likely refers to, all holdings, yearly data,
the financial profile, recent actions and relevant learned patterns.
"""

import re
from typing import Optional

from pydantic import BaseModel, Field

from portfolio_agent.learning import LearningService
from portfolio_agent.log_config import get_logger
from portfolio_agent.models import ActionRecord, Holding, UserPattern, YearlyData
from portfolio_agent.tools import AVAILABLE_OPERATIONS

logger = get_logger(__name__)

RECENT_ACTIONS_LIMIT = 5

STOP_WORDS = {
    "rename", "to", "as", "the", "a", "an", "and", "or", "but", "in", "on", "at",
    "by", "for", "with", "about", "against", "between", "into", "through",
    "during", "before", "after", "above", "below", "from", "up", "down", "of",
    "off", "over", "under", "again", "further", "then", "once", "here", "there",
    "when", "where", "why", "how", "all", "any", "both", "each", "few", "more",
    "most", "other", "some", "such", "no", "nor", "not", "only", "own", "same",
    "so", "than", "too", "very", "can", "will", "just", "don", "should", "now",
    "company", "name", "symbol", "location", "my", "me", "is", "was", "it",
}

DEFAULT_FINANCIAL_PROFILE = {
    "core_target": 25,
    "growth_target": 55,
    "hedge_target": 10,
    "liquidity_target": 10,
}


class RichContext(BaseModel):
    user_input: str
    user_selection: Optional[str] = None
    matched_holding: Optional[Holding] = None
    all_holdings: list[Holding] = Field(default_factory=list)
    yearly_data: list[YearlyData] = Field(default_factory=list)
    financial_profile: dict = Field(default_factory=lambda: dict(DEFAULT_FINANCIAL_PROFILE))
    display_currency: str = "SGD"
    recent_actions: list[ActionRecord] = Field(default_factory=list)
    user_patterns: list[UserPattern] = Field(default_factory=list)
    available_operations: list[str] = Field(default_factory=lambda: list(AVAILABLE_OPERATIONS))


def extract_entities(user_input: str) -> list[str]:
    """Lower-cased candidate tokens: stop words and single characters dropped."""
    entities = []
    for word in user_input.lower().split():
        word = re.sub(r"[^\w.\-&]", "", word)
        if len(word) > 1 and word not in STOP_WORDS:
            entities.append(word)
    return entities


def _contains_either(a: str, b: str) -> bool:
    return bool(a) and bool(b) and (a in b or b in a)


def _by_exact_symbol(entities, holdings) -> Optional[Holding]:
    for entity in entities:
        for h in holdings:
            if h.symbol.lower() == entity:
                return h
    return None


def _by_location(entities, holdings) -> Optional[Holding]:
    for entity in entities:
        for h in holdings:
            if _contains_either(h.location.lower(), entity):
                return h
    return None


def find_holding(user_input: str, holdings: list[Holding]) -> Optional[Holding]:
    """
    Resolves the holding a message refers to. Order: exact symbol, name
    substring, partial symbol, location. Rename requests try exact symbol
    then location first, since the thing being renamed is often a custodian.
    """
    entities = extract_entities(user_input)

    if "rename" in user_input.lower():
        match = _by_exact_symbol(entities, holdings) or _by_location(entities, holdings)
        if match:
            return match

    match = _by_exact_symbol(entities, holdings)
    if match:
        return match

    for entity in entities:
        for h in holdings:
            if _contains_either(h.name.lower(), entity):
                return h

    for entity in entities:
        for h in holdings:
            if _contains_either(h.symbol.lower(), entity):
                return h

    match = _by_location(entities, holdings)
    if match is None:
        logger.debug("No holding found for input: %s", user_input)
    return match


def extract_new_value(user_input: str) -> str:
    """The rename target: text after "to", else after "as", else "New Name"."""
    m = re.search(r"\bto\s+([a-zA-Z0-9\s]+)", user_input, re.I)
    if m:
        return m.group(1).strip()
    m = re.search(r"\bas\s+([a-zA-Z0-9\s]+)", user_input, re.I)
    if m:
        return m.group(1).strip()
    return "New Name"


def rename_options(holding: Holding, user_input: str, new_value: Optional[str] = None) -> dict:
    new_value = new_value or extract_new_value(user_input)
    return {
        "message": f"I found your {holding.symbol} ({holding.name}) holding. What would you like to rename?",
        "options": [
            f"Rename symbol to {new_value}",
            f"Rename company name to {new_value}",
            f"Rename location to {new_value}",
        ],
        "matched_holding": holding,
    }


def selection_target(selection: str) -> Optional[str]:
    """Which field a rename option refers to: symbol, name or location."""
    lower = selection.lower()
    if "symbol" in lower:
        return "symbol"
    if "company name" in lower:
        return "name"
    if "location" in lower:
        return "location"
    return None


class ContextProvider:
    def __init__(self, learning: LearningService):
        self.learning = learning

    async def build(
        self,
        user_input: str,
        holdings: list[Holding],
        yearly_data: Optional[list[YearlyData]] = None,
        financial_profile: Optional[dict] = None,
        display_currency: str = "SGD",
        user_selection: Optional[str] = None,
    ) -> RichContext:
        # A selection ("Rename symbol to X") is resolved against the original input
        matched = find_holding(user_input, holdings)
        return RichContext(
            user_input=user_input,
            user_selection=user_selection,
            matched_holding=matched,
            all_holdings=holdings,
            yearly_data=yearly_data or [],
            financial_profile=financial_profile or dict(DEFAULT_FINANCIAL_PROFILE),
            display_currency=display_currency,
            recent_actions=await self.learning.get_recent_actions(RECENT_ACTIONS_LIMIT),
            user_patterns=await self.learning.get_relevant_patterns(user_input),
        )


def format_for_prompt(context: RichContext) -> str:
    holdings_list = ", ".join(
        f"{h.symbol} ({h.name}) - {h.quantity or 0:g} shares @ {h.location or 'n/a'}"
        for h in context.all_holdings
    )
    recent = ", ".join(
        f"{a.user_input} → {a.action_taken} ({'success' if a.success else 'failed'})"
        for a in context.recent_actions
    )
    patterns = ", ".join(
        f"{p.pattern} ({round(p.success_rate * 100)}% success, {p.usage_count} uses)"
        for p in context.user_patterns
    )

    lines = ["CONTEXT:", f'- User Input: "{context.user_input}"']
    if context.user_selection:
        lines.append(f'- User Selection: "{context.user_selection}"')
    if context.matched_holding:
        h = context.matched_holding
        lines.append(f"- Matched Holding: {h.symbol} ({h.name}), {h.quantity or 0:g} units")
    lines += [
        f"- All Holdings: {holdings_list or 'None'}",
        f"- Display Currency: {context.display_currency}",
        f"- Yearly Data: {len(context.yearly_data)} years",
        f"- Available Operations: {', '.join(context.available_operations)}",
        f"- Recent Actions: {recent or 'None'}",
        f"- Successful Patterns: {patterns or 'None'}",
    ]
    return "\n".join(lines)
