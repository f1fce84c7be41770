"""
Deterministic stand-ins for the outbound services: exchange rates, the
Yahoo symbol lookup and the completion service.
"""

from portfolio_agent.currency import DEFAULT_RATES
from portfolio_agent.executor import valuation_fields
from portfolio_agent.store import PortfolioStore

KNOWN_QUOTES = {
    "META": {"name": "Meta Platforms, Inc.", "price": 310.0, "currency": "USD"},
    "NVDA": {"name": "NVIDIA Corporation", "price": 120.0, "currency": "USD"},
    "TSLA": {"name": "Tesla, Inc.", "price": 250.0, "currency": "USD"},
}


async def fixed_rates():
    return DEFAULT_RATES


async def fake_lookup(symbol: str):
    quote = KNOWN_QUOTES.get(symbol.upper())
    if quote is None:
        return None
    return {"symbol": symbol.upper(), "exchange": "NMS", "confidence": 0.8, **quote}


class FakeCompleter:
    """Returns a canned completion and records what it was asked."""

    def __init__(self, response: str = "", error: Exception | None = None):
        self.response = response
        self.error = error
        self.calls: list[tuple[str, str]] = []

    async def complete(self, system: str, user: str) -> str:
        self.calls.append((system, user))
        if self.error is not None:
            raise self.error
        return self.response


async def seed_holding(
    store: PortfolioStore,
    symbol: str,
    quantity: float,
    unit_price: float,
    *,
    name: str = "",
    category: str = "Growth",
    location: str = "IBKR",
    currency: str = "SGD",
    current_unit_price: float | None = None,
):
    fields = {
        "symbol": symbol,
        "name": name or symbol,
        "category": category,
        "location": location,
        "quantity": quantity,
        "unit_price": unit_price,
        "current_unit_price": current_unit_price,
        "entry_currency": currency,
        **valuation_fields(quantity, unit_price, current_unit_price, currency, DEFAULT_RATES),
    }
    return await store.create_holding(fields)
