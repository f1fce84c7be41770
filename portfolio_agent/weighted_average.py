"""
Weighted-average cost basis for adding a lot to a holding.

combine_lots() is the pure arithmetic. calculate_weighted_average() looks up
the existing same-symbol holding and the live rate table, converts the
existing unit price into the caller's currency, then combines. It never
raises: failed lookups degrade to "new holding" / default rates.
"""

import math
from typing import Awaitable, Callable, Optional

from portfolio_agent.currency import DEFAULT_RATES, convert_currency
from portfolio_agent.log_config import get_logger
from portfolio_agent.models import ExchangeRates, Holding, WeightedAverageResult
from portfolio_agent.tools.exchange_rates import get_exchange_rates

logger = get_logger(__name__)

HoldingsLoader = Callable[[], Awaitable[list[Holding]]]
RatesLoader = Callable[[], Awaitable[ExchangeRates]]


def round_units(quantity: float) -> int:
    """Half-up rounding to whole units for display."""
    return int(math.floor(quantity + 0.5))


def units_from_total(total_amount: float, unit_price: float) -> float:
    if unit_price <= 0:
        return 0.0
    return total_amount / unit_price


def total_from_units(quantity: float, unit_price: float) -> float:
    return quantity * unit_price


def combine_lots(
    existing_quantity: float,
    existing_unit_price: float,
    added_quantity: float,
    added_total_cost: float,
) -> dict:
    """
    Combines an existing position with a new lot. Both prices must already
    be in the same currency. Returns the unrounded quantity together with
    the 2 dp average and total.
    """
    existing_total = existing_quantity * existing_unit_price
    new_quantity = existing_quantity + added_quantity
    new_total = existing_total + added_total_cost
    avg = new_total / new_quantity if new_quantity > 0 else 0.0
    return {
        "quantity": new_quantity,
        "avg_cost_basis": round(avg, 2),
        "total_invested": round(new_total, 2),
        "existing_total": round(existing_total, 2),
    }


def pick_existing(symbol: str, holdings: list[Holding]) -> Optional[Holding]:
    """Same-symbol holding with the largest USD valuation, if any."""
    matches = [h for h in holdings if h.symbol.upper() == symbol.upper()]
    if not matches:
        return None
    return max(matches, key=lambda h: h.value_usd or 0)


def _new_holding_result(added_quantity, added_unit_price, added_total_cost) -> WeightedAverageResult:
    return WeightedAverageResult(
        new_quantity=round_units(added_quantity),
        new_avg_cost_basis=added_unit_price,
        new_total_invested=added_total_cost,
        is_new_holding=True,
        exact_quantity=added_quantity,
    )


async def calculate_weighted_average(
    symbol: str,
    added_quantity: float,
    added_unit_price: float,
    added_total_cost: float,
    user_currency: str = "SGD",
    *,
    load_holdings: HoldingsLoader,
    load_rates: RatesLoader = get_exchange_rates,
) -> WeightedAverageResult:
    try:
        rates = await load_rates()
    except Exception as e:
        logger.warning("Rate lookup failed, using defaults: %s", e)
        rates = DEFAULT_RATES

    try:
        holdings = await load_holdings()
    except Exception as e:
        logger.error("Holdings lookup failed for %s, treating as new holding: %s", symbol, e)
        return _new_holding_result(added_quantity, added_unit_price, added_total_cost)

    existing = pick_existing(symbol, holdings)
    if existing is None:
        return _new_holding_result(added_quantity, added_unit_price, added_total_cost)

    existing_price = existing.unit_price or existing.current_unit_price or 0.0
    try:
        current_unit_price = convert_currency(
            existing_price, existing.entry_currency, user_currency, rates
        )
    except KeyError as e:
        logger.error("No rate for %s: %s", symbol, e)
        current_unit_price = existing_price
    current_quantity = existing.quantity or 0.0

    if current_quantity == 0 or current_unit_price == 0:
        return WeightedAverageResult(
            new_quantity=round_units(added_quantity),
            new_avg_cost_basis=added_unit_price,
            new_total_invested=added_total_cost,
            is_new_holding=False,
            exact_quantity=added_quantity,
            existing_data={
                "current_quantity": 0,
                "current_avg_price": 0,
                "current_total_invested": 0,
            },
        )

    combined = combine_lots(current_quantity, current_unit_price, added_quantity, added_total_cost)
    return WeightedAverageResult(
        new_quantity=round_units(combined["quantity"]),
        new_avg_cost_basis=combined["avg_cost_basis"],
        new_total_invested=combined["total_invested"],
        is_new_holding=False,
        exact_quantity=combined["quantity"],
        existing_data={
            "holding_id": existing.id,
            "current_quantity": round_units(current_quantity),
            "current_avg_price": round(current_unit_price, 2),
            "current_total_invested": combined["existing_total"],
        },
    )
