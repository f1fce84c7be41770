"""
Currency conversion among SGD, USD and INR.

Pure functions over an ExchangeRates table. Live rates are fetched by
tools/exchange_rates.py; DEFAULT_RATES is the table used whenever that
fetch fails.
"""

from portfolio_agent.models import CURRENCIES, ExchangeRates

DEFAULT_RATES = ExchangeRates(
    SGD_TO_USD=0.74,
    SGD_TO_INR=63.50,
    USD_TO_SGD=1.35,
    USD_TO_INR=85.50,
    INR_TO_SGD=0.0157,
    INR_TO_USD=0.0117,
)


def convert_currency(
    amount: float,
    from_currency: str,
    to_currency: str,
    rates: ExchangeRates = DEFAULT_RATES,
) -> float:
    """
    Converts amount between two currencies, rounded to 2 dp.
    Raises KeyError when the rate table has no entry for the pair.
    """
    if from_currency.upper() == to_currency.upper():
        return round(amount, 2)
    return round(amount * rates.rate(from_currency, to_currency), 2)


def convert_to_all_currencies(
    amount: float,
    from_currency: str,
    rates: ExchangeRates = DEFAULT_RATES,
) -> dict:
    """Returns {"value_sgd": ..., "value_usd": ..., "value_inr": ...} for amount."""
    return {
        f"value_{code.lower()}": convert_currency(amount, from_currency, code, rates)
        for code in CURRENCIES
    }


def format_money(amount: float, currency: str) -> str:
    symbol = {"SGD": "S$", "USD": "$", "INR": "₹"}.get(currency.upper(), "")
    return f"{symbol}{amount:,.2f}"
