"""
Field and cross-field validation of intent payloads, plus the confirmation
and clarification messages shown to the user.

Errors block the action (the agent answers with a clarification);
warnings are shown alongside the confirmation prompt.
"""

from datetime import date
from typing import Optional

from portfolio_agent.currency import format_money
from portfolio_agent.models import (
    CATEGORIES,
    CURRENCIES,
    AddHolding,
    AddYearlyData,
    DeleteHolding,
    EditHolding,
    Holding,
    IncreaseHolding,
    ReduceHolding,
    ValidationResult,
    WeightedAverageResult,
    YearlyData,
)

MAX_QUANTITY = 1_000_000
MAX_PRICE = 100_000
MAX_YEARLY_AMOUNT = 1_000_000_000
SAVINGS_TOLERANCE = 1000


def _confidence(errors: list[str], warnings: list[str]) -> float:
    if errors:
        return 0.0
    if len(warnings) > 2:
        return 0.7
    if warnings:
        return 0.85
    return 0.95


def _result(errors, warnings, suggestions) -> ValidationResult:
    return ValidationResult(
        is_valid=not errors,
        confidence=_confidence(errors, warnings),
        errors=errors,
        warnings=warnings,
        suggestions=suggestions,
    )


def _check_symbol(symbol: str, errors: list[str], label: str = "Symbol") -> None:
    if not symbol:
        errors.append(f"{label} is required")
    elif len(symbol) > 10:
        errors.append(f"{label} must be 1-10 characters")


def _check_quantity(quantity: Optional[float], errors, warnings) -> None:
    if quantity is None:
        return
    if quantity <= 0:
        errors.append("Quantity must be greater than 0")
    elif quantity > MAX_QUANTITY:
        warnings.append("Quantity seems very large - please verify")


def _check_price(price: Optional[float], errors, warnings, label: str = "Price") -> None:
    if price is None:
        return
    if price <= 0:
        errors.append(f"{label} must be greater than 0")
    elif price > MAX_PRICE:
        warnings.append(f"{label} seems very high - please verify")


def _check_category(category: Optional[str], errors) -> None:
    if category and category.lower() not in {c.lower() for c in CATEGORIES}:
        errors.append("Category must be one of: Core, Growth, Hedge, Liquidity")


def _check_currency(currency: Optional[str], errors) -> None:
    if currency and currency.upper() not in CURRENCIES:
        errors.append("Currency must be SGD, USD, or INR")


def validate_holding(
    payload,
    holdings: list[Holding],
    target: Optional[Holding] = None,
) -> ValidationResult:
    """
    Validates a holding payload. target is the resolved existing holding for
    reduce / edit / delete so quantities can be checked against it.
    """
    errors: list[str] = []
    warnings: list[str] = []
    suggestions: list[str] = []

    _check_symbol(payload.symbol, errors)

    if isinstance(payload, AddHolding):
        _check_quantity(payload.quantity, errors, warnings)
        _check_price(payload.unit_price, errors, warnings)
        _check_category(payload.category, errors)
        _check_currency(payload.currency, errors)
        if payload.symbol and any(h.symbol.lower() == payload.symbol.lower() for h in holdings):
            warnings.append(f"Holding {payload.symbol} already exists in your portfolio")
            suggestions.append("Consider editing the existing holding instead")

    elif isinstance(payload, IncreaseHolding):
        _check_quantity(payload.quantity, errors, warnings)
        _check_price(payload.unit_price, errors, warnings)
        _check_currency(payload.currency, errors)

    elif isinstance(payload, ReduceHolding):
        _check_quantity(payload.quantity, errors, warnings)
        _check_price(payload.unit_price, errors, warnings)
        _check_currency(payload.currency, errors)
        if payload.fraction is not None and not 0 < payload.fraction <= 1:
            errors.append("Fraction to sell must be between 0 and 1")
        if payload.quantity is None and payload.fraction is None:
            errors.append("How much would you like to sell?")
        if target is not None:
            wanted = payload.resolve_quantity(target.quantity or 0)
            if wanted is not None and wanted > (target.quantity or 0):
                errors.append(
                    f"Cannot sell {wanted:g} {target.symbol}: you only hold {target.quantity or 0:g}"
                )
                suggestions.append(f"Sell all {target.quantity or 0:g} units of {target.symbol}")

    elif isinstance(payload, EditHolding):
        _check_quantity(payload.quantity, errors, warnings)
        _check_price(payload.unit_price, errors, warnings, "Buy price")
        _check_price(payload.current_unit_price, errors, warnings, "Current price")
        _check_category(payload.category, errors)
        if payload.new_symbol is not None:
            _check_symbol(payload.new_symbol, errors, "New symbol")
        if not payload.changes() and not payload.rename_value:
            errors.append(f"What would you like to change about {payload.symbol or 'this holding'}?")
            suggestions += [
                f"Set {payload.symbol or 'AAPL'} price to $150",
                f"Move {payload.symbol or 'AAPL'} to Growth",
            ]

    elif isinstance(payload, DeleteHolding):
        pass

    return _result(errors, warnings, suggestions)


def validate_yearly(payload: AddYearlyData, yearly_data: list[YearlyData]) -> ValidationResult:
    errors: list[str] = []
    warnings: list[str] = []
    suggestions: list[str] = []

    if payload.year is None:
        errors.append("Year is required")
    else:
        current_year = date.today().year
        if payload.year < 1900 or payload.year > current_year + 10:
            errors.append(f"Year must be between 1900 and {current_year + 10}")
        if any(y.year == payload.year for y in yearly_data):
            warnings.append(f"Data for {payload.year} already exists")
            suggestions.append("This will update the existing year data")

    amounts = payload.monetary_fields()
    if not amounts:
        errors.append("Which amounts should I record? e.g. income, expenses, savings or net worth")
    for field, value in amounts.items():
        label = field.replace("_", " ")
        if value < 0:
            errors.append(f"{label} cannot be negative")
        elif value > MAX_YEARLY_AMOUNT:
            warnings.append(f"{label} seems very large - please verify")

    if None not in (payload.income, payload.expenses, payload.savings):
        expected = payload.income - payload.expenses
        if abs(expected - payload.savings) > SAVINGS_TOLERANCE:
            warnings.append("Savings amount doesn't match income minus expenses")
            suggestions.append(f"Expected savings: {expected:,.0f}")

    return _result(errors, warnings, suggestions)


# ---------------------------------------------------------------------------
# Messages
# ---------------------------------------------------------------------------

CONFIRM_SUFFIX = "\n\nConfirm? (yes / no)"


def clarification_message(errors: list[str], warnings: list[str]) -> str:
    if errors:
        return "I need some clarification:\n" + "\n".join(f"• {e}" for e in errors)
    if warnings:
        return "Please verify these details:\n" + "\n".join(f"• {w}" for w in warnings)
    return "I didn't understand that. Could you rephrase your request?"


def _warning_block(warnings: list[str]) -> str:
    if not warnings:
        return ""
    return "\n\n⚠️ " + "\n⚠️ ".join(warnings)


def add_confirmation(
    payload,
    currency: str,
    weighted: Optional[WeightedAverageResult] = None,
    price_note: str = "",
    warnings: Optional[list[str]] = None,
    category: Optional[str] = None,
    location: Optional[str] = None,
) -> str:
    price = format_money(payload.unit_price, currency)
    if weighted is not None and not weighted.is_new_holding and weighted.existing_data:
        existing = weighted.existing_data
        body = (
            f"You already hold {existing.get('current_quantity', 0):g} {payload.symbol}. "
            f"Adding **{payload.quantity:g} at {price}{price_note}** gives "
            f"**{weighted.new_quantity:g} units at an average cost of "
            f"{format_money(weighted.new_avg_cost_basis, currency)}** "
            f"(total invested {format_money(weighted.new_total_invested, currency)})."
        )
    else:
        where = ", ".join(filter(None, (category, location)))
        body = (
            f"I am about to add **{payload.quantity:g} {payload.symbol} at {price}{price_note}**"
            + (f" ({where})" if where else "") + "."
        )
    return body + _warning_block(warnings or []) + CONFIRM_SUFFIX


def reduce_confirmation(
    payload: ReduceHolding, holding: Holding, quantity: float, warnings: Optional[list[str]] = None
) -> str:
    remaining = round((holding.quantity or 0) - quantity, 8)
    portion = ""
    if payload.fraction is not None:
        portion = " (half)" if payload.fraction == 0.5 else f" ({payload.fraction:.0%})"
    body = f"I am about to sell **{quantity:g} of your {holding.quantity or 0:g} {holding.symbol}**{portion}"
    if payload.unit_price:
        body += f" at {format_money(payload.unit_price, payload.currency or holding.entry_currency)}"
    if remaining <= 0:
        body += ". This sells the entire position and removes the holding."
    else:
        body += f", leaving {remaining:g}."
    return body + _warning_block(warnings or []) + CONFIRM_SUFFIX


def delete_confirmation(holding: Holding) -> str:
    return (
        f"I am about to remove **{holding.symbol} ({holding.name})** from your portfolio. "
        "You can undo this afterwards." + CONFIRM_SUFFIX
    )


_EDIT_LABELS = {
    "new_symbol": "Rename symbol to",
    "name": "New name:",
    "location": "New location:",
    "category": "New category:",
    "quantity": "New quantity:",
    "unit_price": "New buy price:",
    "current_unit_price": "New current price:",
}


def edit_confirmation(payload: EditHolding, holding: Holding, warnings: Optional[list[str]] = None) -> str:
    parts = []
    for field, value in payload.changes().items():
        if field == "manual_pricing":
            parts.append(f"Manual pricing: {'enabled' if value else 'disabled'}")
        elif isinstance(value, float):
            parts.append(f"{_EDIT_LABELS[field]} {value:g}")
        else:
            parts.append(f"{_EDIT_LABELS[field]} {value}")
    body = f"I am about to update your {holding.symbol} ({holding.name}) holding. " + "; ".join(parts) + "."
    return body + _warning_block(warnings or []) + CONFIRM_SUFFIX


def yearly_confirmation(payload: AddYearlyData, warnings: Optional[list[str]] = None) -> str:
    amounts = ", ".join(
        f"{field.replace('_', ' ').title()}: {value:,.0f}" for field, value in payload.monetary_fields().items()
    )
    body = f"I am about to record data for {payload.year}: {amounts}."
    return body + _warning_block(warnings or []) + CONFIRM_SUFFIX
