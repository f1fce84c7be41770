"""
Read-only answers computed straight from the holdings (no LLM call):
portfolio summary, biggest holding, allocation gaps, total value and
per-category listings, all in the display currency.
"""

import re
from typing import Optional

from portfolio_agent.context import DEFAULT_FINANCIAL_PROFILE
from portfolio_agent.models import CATEGORIES, AgentResponse, Holding

GAP_THRESHOLD_PCT = 2.0

_MUTATION_VERBS = re.compile(
    r"\b(add|buy|bought|purchase[sd]?|sell|sold|reduce|increase|delete|remove|"
    r"rename|change|update|edit|move|set|modify|exit|enable|disable)\b",
    re.I,
)
_YEAR = re.compile(r"\b(19|20)\d{2}\b")


def is_quick_query_candidate(message: str) -> bool:
    """Messages that mention a mutation verb or a year are never fast-path."""
    return not (_MUTATION_VERBS.search(message) or _YEAR.search(message))


def _value(h: Holding, currency: str) -> float:
    return h.value_in(currency)


def _fmt(amount: float) -> str:
    return f"{amount:,.2f}"


def _group_by_category(holdings: list[Holding]) -> dict[str, list[Holding]]:
    groups: dict[str, list[Holding]] = {}
    for h in holdings:
        groups.setdefault(h.category or "Uncategorized", []).append(h)
    return groups


def _targets(financial_profile: Optional[dict]) -> dict[str, float]:
    profile = {**DEFAULT_FINANCIAL_PROFILE, **(financial_profile or {})}
    return {c: float(profile.get(f"{c.lower()}_target", 0) or 0) for c in CATEGORIES}


def portfolio_summary(holdings: list[Holding], currency: str) -> AgentResponse:
    total = sum(_value(h, currency) for h in holdings)
    categories = {}
    lines = []
    for category, items in _group_by_category(holdings).items():
        value = sum(_value(h, currency) for h in items)
        pct = value / total * 100 if total > 0 else 0.0
        categories[category] = round(value, 2)
        lines.append(f"{category}: {_fmt(value)} ({pct:.1f}%)")
    return AgentResponse(
        action="analyze",
        message=f"📊 **Portfolio Summary**\n\nTotal Value: {_fmt(total)} {currency}\n\n" + "\n".join(lines),
        data={"total_value": round(total, 2), "holdings_count": len(holdings), "categories": categories},
        confidence=1.0,
    )


def biggest_holding(holdings: list[Holding], currency: str) -> AgentResponse:
    if not holdings:
        return AgentResponse(action="analyze", message="No holdings found", confidence=1.0)
    total = sum(_value(h, currency) for h in holdings)
    biggest = max(holdings, key=lambda h: _value(h, currency))
    value = _value(biggest, currency)
    pct = value / total * 100 if total > 0 else 0.0
    return AgentResponse(
        action="analyze",
        message=(
            f"🏆 **Biggest Holding**\n\n{biggest.symbol} ({biggest.name})\n"
            f"Value: {_fmt(value)} {currency}\nPercentage: {pct:.1f}%"
        ),
        data={"symbol": biggest.symbol, "value": round(value, 2), "percentage": round(pct, 1)},
        confidence=1.0,
    )


def allocation_gaps(holdings: list[Holding], currency: str, financial_profile: Optional[dict] = None) -> AgentResponse:
    total = sum(_value(h, currency) for h in holdings)
    targets = _targets(financial_profile)
    groups = _group_by_category(holdings)

    gaps = []
    for category in sorted(set(groups) | set(targets)):
        value = sum(_value(h, currency) for h in groups.get(category, []))
        current = value / total * 100 if total > 0 else 0.0
        target = targets.get(category, 0.0)
        gap = current - target
        if abs(gap) > GAP_THRESHOLD_PCT:
            gaps.append({
                "category": category,
                "current": round(current, 1),
                "target": target,
                "gap": round(gap, 1),
                "gap_amount": round(gap / 100 * total, 2),
            })

    if not gaps:
        return AgentResponse(
            action="analyze",
            message="✅ All allocations are within target ranges!",
            data={"gaps": []},
            confidence=1.0,
        )

    blocks = []
    for g in gaps:
        direction = "over" if g["gap"] > 0 else "under"
        advice = "Consider reducing" if g["gap"] > 0 else "Consider adding"
        blocks.append(
            f"{g['category']}: {g['current']:.1f}% ({direction} by {abs(g['gap']):.1f}%)\n"
            f"   {advice} {_fmt(abs(g['gap_amount']))} {currency}"
        )
    return AgentResponse(
        action="analyze",
        message="🎯 **Allocation Gaps**\n\n" + "\n\n".join(blocks),
        data={"gaps": gaps},
        confidence=1.0,
    )


def total_value(holdings: list[Holding], currency: str) -> AgentResponse:
    total = sum(_value(h, currency) for h in holdings)
    return AgentResponse(
        action="analyze",
        message=f"💰 **Total Portfolio Value**\n\n{_fmt(total)} {currency}",
        data={"total_value": round(total, 2)},
        confidence=1.0,
    )


def category_holdings(category: str, holdings: list[Holding], currency: str) -> AgentResponse:
    items = [h for h in holdings if h.category == category]
    if not items:
        return AgentResponse(action="analyze", message=f"No {category} holdings found", confidence=1.0)
    total = sum(_value(h, currency) for h in items)
    listing = "\n".join(f"• {h.symbol}: {_fmt(_value(h, currency))} {currency}" for h in items)
    return AgentResponse(
        action="analyze",
        message=f"📂 **{category} Holdings**\n\nTotal: {_fmt(total)} {currency}\n\n{listing}",
        data={"category": category, "symbols": [h.symbol for h in items], "total_value": round(total, 2)},
        confidence=1.0,
    )


def handle_quick_query(
    message: str,
    holdings: list[Holding],
    display_currency: str = "SGD",
    financial_profile: Optional[dict] = None,
) -> Optional[AgentResponse]:
    """Returns an answer for a recognised read-only query, else None."""
    if not is_quick_query_candidate(message):
        return None
    lower = message.lower()

    if "summary" in lower:
        return portfolio_summary(holdings, display_currency)
    if "biggest holding" in lower or "largest" in lower:
        return biggest_holding(holdings, display_currency)
    if "gap" in lower:
        return allocation_gaps(holdings, display_currency, financial_profile)
    if "total" in lower:
        return total_value(holdings, display_currency)
    for category in CATEGORIES:
        if category.lower() in lower:
            return category_holdings(category, holdings, display_currency)
    return None
