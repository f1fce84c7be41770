"""
Smart holding matcher, validator and the context provider's holding lookup.
"""

from datetime import date

import pytest

from portfolio_agent.context import extract_new_value, find_holding, rename_options, selection_target
from portfolio_agent.evals.fakes import fake_lookup
from portfolio_agent.matcher import SmartHoldingMatcher, levenshtein_distance, name_similarity, symbol_similarity
from portfolio_agent.models import (
    AddHolding,
    AddYearlyData,
    EditHolding,
    Holding,
    ReduceHolding,
    YearlyData,
)
from portfolio_agent.validator import clarification_message, validate_holding, validate_yearly

HOLDINGS = [
    Holding(id="h_aapl", symbol="AAPL", name="Apple Inc.", quantity=10, unitPrice=150, valueUSD=1500),
    Holding(id="h_hims", symbol="HIMS", name="Hims & Hers Health", quantity=20, unitPrice=30, valueUSD=600),
    Holding(id="h_scb", symbol="SCB", name="Standard Chartered", location="IBKR", quantity=100, unitPrice=12),
    Holding(id="h_goog", symbol="GOOGL", name="Alphabet Inc.", quantity=3, unitPrice=140),
]


@pytest.fixture
def matcher():
    return SmartHoldingMatcher(lookup=fake_lookup)


# ---------------------------------------------------------------------------
# Similarity primitives
# ---------------------------------------------------------------------------

def test_levenshtein():
    assert levenshtein_distance("kitten", "sitting") == 3
    assert levenshtein_distance("", "abc") == 3
    assert levenshtein_distance("AAPL", "AAPL") == 0


def test_symbol_similarity_ratio_and_aliases():
    assert symbol_similarity("aapl", "AAPL") == 1.0
    assert symbol_similarity("BTC", "BITCOIN") == 0.9
    assert symbol_similarity("GOOG", "GOOGL") == 0.9
    assert symbol_similarity("APPL", "AAPL") == 0.75


def test_name_similarity():
    assert name_similarity("apple", "Apple Inc.") == 0.9
    assert name_similarity("ap", "Apple Inc.") == 0.0
    assert name_similarity("standard bank", "Standard Chartered") == 0.5


# ---------------------------------------------------------------------------
# SmartHoldingMatcher
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_exact_match_wins(matcher):
    outcome = await matcher.find_matches("aapl", HOLDINGS)
    assert outcome.suggested_action == "add_to_existing"
    assert outcome.best_match.holding_id == "h_aapl"
    assert outcome.best_match.confidence == 1.0


@pytest.mark.asyncio
async def test_exact_duplicates_prefer_largest_usd_value(matcher):
    holdings = HOLDINGS + [
        Holding(id="h_aapl_big", symbol="AAPL", name="Apple Inc.", quantity=100, unitPrice=150, valueUSD=15000)
    ]
    outcome = await matcher.find_matches("AAPL", holdings)
    assert outcome.best_match.holding_id == "h_aapl_big"
    assert len(outcome.matches) == 2


@pytest.mark.asyncio
async def test_alias_auto_selects(matcher):
    outcome = await matcher.find_matches("GOOG", HOLDINGS)
    assert outcome.suggested_action == "add_to_existing"
    assert outcome.best_match.symbol == "GOOGL"


@pytest.mark.asyncio
async def test_borderline_match_asks(matcher):
    """
    GIVEN  HIMS in the portfolio
    WHEN   the user types HIMZ (ratio 0.75)
    THEN   the match is surfaced but not auto-selected.
    """
    outcome = await matcher.find_matches("HIMZ", HOLDINGS)
    assert outcome.suggested_action == "clarify"
    assert outcome.best_match.symbol == "HIMS"


@pytest.mark.asyncio
async def test_company_name_match(matcher):
    outcome = await matcher.find_matches("Apple", HOLDINGS)
    assert outcome.suggested_action == "add_to_existing"
    assert outcome.best_match.match_type == "similar_name"


@pytest.mark.asyncio
async def test_matches_are_sorted_and_idempotent(matcher):
    holdings = HOLDINGS + [Holding(id="h_ham", symbol="HIMX", name="Himax", quantity=1, unitPrice=5)]
    first = await matcher.find_matches("HIMZ", holdings)
    second = await matcher.find_matches("HIMZ", holdings)
    assert first == second
    confidences = [m.confidence for m in first.matches]
    assert confidences == sorted(confidences, reverse=True)
    assert first.suggested_action == "clarify"


@pytest.mark.asyncio
async def test_unknown_symbol_uses_lookup(matcher):
    outcome = await matcher.find_matches("META", HOLDINGS)
    assert outcome.suggested_action == "create_new"
    assert outcome.external_lookup["name"] == "Meta Platforms, Inc."


@pytest.mark.asyncio
async def test_lookup_failure_never_blocks():
    async def broken(symbol):
        raise ConnectionError("yahoo down")

    outcome = await SmartHoldingMatcher(lookup=broken).find_matches("ZZZZZ", HOLDINGS)
    assert outcome.suggested_action == "create_new"
    assert outcome.external_lookup is None


# ---------------------------------------------------------------------------
# Validator
# ---------------------------------------------------------------------------

def test_valid_add_is_high_confidence():
    result = validate_holding(AddHolding(symbol="META", quantity=100, unit_price=300, currency="USD"), HOLDINGS)
    assert result.is_valid
    assert result.confidence == 0.95


def test_add_errors():
    result = validate_holding(
        AddHolding(symbol="", quantity=0, unit_price=-1, category="Speculative", currency="EUR"), HOLDINGS
    )
    assert not result.is_valid
    assert result.confidence == 0.0
    assert "Symbol is required" in result.errors
    assert "Quantity must be greater than 0" in result.errors
    assert "Price must be greater than 0" in result.errors
    assert "Category must be one of: Core, Growth, Hedge, Liquidity" in result.errors
    assert "Currency must be SGD, USD, or INR" in result.errors


def test_existing_symbol_is_a_warning():
    result = validate_holding(AddHolding(symbol="AAPL", quantity=1, unit_price=100), HOLDINGS)
    assert result.is_valid
    assert result.confidence == 0.85
    assert result.warnings == ["Holding AAPL already exists in your portfolio"]
    assert result.suggestions == ["Consider editing the existing holding instead"]


def test_many_warnings_lower_confidence():
    result = validate_holding(AddHolding(symbol="AAPL", quantity=2_000_000, unit_price=200_000), HOLDINGS)
    assert result.is_valid
    assert len(result.warnings) == 3
    assert result.confidence == 0.7


def test_over_reduce_is_an_error():
    target = HOLDINGS[1]
    result = validate_holding(ReduceHolding(symbol="HIMS", quantity=25), HOLDINGS, target)
    assert not result.is_valid
    assert "you only hold 20" in result.errors[0]

    assert validate_holding(ReduceHolding(symbol="HIMS", fraction=0.5), HOLDINGS, target).is_valid


def test_edit_without_changes_asks():
    result = validate_holding(EditHolding(symbol="AAPL"), HOLDINGS, HOLDINGS[0])
    assert not result.is_valid


def test_yearly_rules():
    existing = [YearlyData(year=2023, income=100_000)]
    result = validate_yearly(AddYearlyData(year=2023, income=120_000, expenses=50_000, savings=10_000), existing)
    assert result.is_valid
    assert "Data for 2023 already exists" in result.warnings
    assert "Savings amount doesn't match income minus expenses" in result.warnings
    assert "Expected savings: 70,000" in result.suggestions

    result = validate_yearly(AddYearlyData(year=1800, income=-5), [])
    assert f"Year must be between 1900 and {date.today().year + 10}" in result.errors
    assert "income cannot be negative" in result.errors


def test_clarification_message_lists_errors():
    message = clarification_message(["Quantity must be greater than 0"], [])
    assert message == "I need some clarification:\n• Quantity must be greater than 0"


# ---------------------------------------------------------------------------
# Context provider lookups
# ---------------------------------------------------------------------------

def test_find_holding_order():
    assert find_holding("sell half my hims", HOLDINGS).id == "h_hims"
    assert find_holding("add more apple", HOLDINGS).id == "h_aapl"
    assert find_holding("rename ibkr to DBS", HOLDINGS).id == "h_scb"
    assert find_holding("nothing relevant", HOLDINGS) is None


def test_rename_options_are_three_labelled_choices():
    options = rename_options(HOLDINGS[2], "rename SCB to DBS")
    assert options["options"] == [
        "Rename symbol to DBS",
        "Rename company name to DBS",
        "Rename location to DBS",
    ]
    assert extract_new_value("rename SCB as Standard") == "Standard"
    assert selection_target(options["options"][2]) == "location"
