"""
Intent recognition: the regex tier and the LLM tier.

The LLM tier runs against FakeCompleter; nothing here calls Anthropic.
"""

import pytest

from portfolio_agent.context import RichContext
from portfolio_agent.errors import LLMResponseError
from portfolio_agent.evals.fakes import FakeCompleter
from portfolio_agent.intent import classify_reply, detect_currency, normalize_symbol, recognize
from portfolio_agent.llm import ERROR_MESSAGE, LLMIntentService, build_system_prompt, parse_llm_response
from portfolio_agent.models import (
    AddHolding,
    AddYearlyData,
    DeleteHolding,
    EditHolding,
    Holding,
    IncreaseHolding,
    IntentKind,
    ReduceHolding,
)


# ---------------------------------------------------------------------------
# Pattern tier
# ---------------------------------------------------------------------------

def test_add_meta_full_coverage():
    """
    GIVEN  "add 100 shares of META at $300"
    WHEN   the pattern tier runs
    THEN   add_holding with symbol, quantity, USD price and confidence >= 0.85.
    """
    result = recognize("add 100 shares of META at $300")
    assert result.intent == IntentKind.ADD_HOLDING
    assert result.source == "pattern"
    assert result.confidence >= 0.85
    payload = result.entities
    assert isinstance(payload, AddHolding)
    assert (payload.symbol, payload.quantity, payload.unit_price) == ("META", 100, 300)
    assert payload.currency == "USD"


def test_partial_coverage_lowers_confidence():
    result = recognize("please could you add 100 shares of META at $300 for me today thanks")
    assert result.intent == IntentKind.ADD_HOLDING
    assert 0.6 <= result.confidence < 0.95


def test_sell_half_is_a_fraction_not_a_guess():
    result = recognize("sell half my HIMS")
    assert result.intent == IntentKind.REDUCE_HOLDING
    assert isinstance(result.entities, ReduceHolding)
    assert result.entities.symbol == "HIMS"
    assert result.entities.fraction == 0.5
    assert result.entities.quantity is None


def test_sell_quantity_with_price():
    result = recognize("sell 10 AAPL at $200")
    assert result.intent == IntentKind.REDUCE_HOLDING
    assert result.entities.quantity == 10
    assert result.entities.unit_price == 200
    assert result.entities.currency == "USD"


def test_sell_all_is_a_delete():
    result = recognize("sell all my HIMS")
    assert result.intent == IntentKind.DELETE_HOLDING
    assert isinstance(result.entities, DeleteHolding)
    assert result.entities.symbol == "HIMS"


def test_buy_more_is_an_increase():
    result = recognize("buy 10 more NVDA")
    assert result.intent == IntentKind.INCREASE_HOLDING
    assert isinstance(result.entities, IncreaseHolding)
    assert result.entities.quantity == 10
    assert result.entities.unit_price is None


def test_rename_ambiguous_target_sets_no_field():
    """
    GIVEN  "rename SCB to DBS"
    WHEN   the pattern tier runs
    THEN   DBS reads as a symbol and as a location, so only rename_value is set.
    """
    result = recognize("rename SCB to DBS")
    payload = result.entities
    assert result.intent == IntentKind.EDIT_HOLDING
    assert isinstance(payload, EditHolding)
    assert payload.symbol == "SCB"
    assert payload.rename_value == "DBS"
    assert payload.changes() == {}


def test_rename_to_descriptive_name():
    payload = recognize("rename VUAA to Vanguard S&P 500 ETF").entities
    assert payload.name == "Vanguard S&P 500 ETF"
    assert payload.new_symbol is None


def test_rename_selection_option():
    payload = recognize("Rename location to DBS").entities
    assert isinstance(payload, EditHolding)
    assert payload.symbol == ""
    assert payload.location == "DBS"


def test_company_name_normalised_to_symbol():
    result = recognize("update the current price of apple to $180")
    assert result.intent == IntentKind.EDIT_HOLDING
    assert result.entities.symbol == "AAPL"
    assert result.entities.current_unit_price == 180
    assert normalize_symbol("Facebook") == "META"


def test_move_to_category():
    payload = recognize("move AAPL to core").entities
    assert payload.category == "Core"


def test_yearly_data_with_suffix_and_extra_fields():
    payload = recognize("2023 income was $120k").entities
    assert isinstance(payload, AddYearlyData)
    assert payload.year == 2023
    assert payload.income == 120_000

    payload = recognize("2022 income was 150000 and expenses were 90000").entities
    assert payload.monetary_fields() == {"income": 150_000, "expenses": 90_000}


def test_portfolio_analysis():
    assert recognize("how is my portfolio performing").intent == IntentKind.PORTFOLIO_ANALYSIS


def test_unknown_input():
    result = recognize("what's the weather like")
    assert result.intent == IntentKind.UNKNOWN
    assert result.confidence == 0.0
    assert result.source == "none"


def test_detect_currency():
    assert detect_currency("bought at S$12") == "SGD"
    assert detect_currency("bought at $12") == "USD"
    assert detect_currency("bought at 12 inr") == "INR"
    assert detect_currency("bought at 12") is None


def test_classify_reply():
    assert classify_reply("Yes!") == IntentKind.CONFIRM_ACTION
    assert classify_reply("never mind") == IntentKind.CANCEL_ACTION
    assert classify_reply("undo") == IntentKind.UNDO_ACTION
    assert classify_reply("yes add 10 more") is None


# ---------------------------------------------------------------------------
# LLM response parsing
# ---------------------------------------------------------------------------

def test_parse_direct_json():
    decision = parse_llm_response('{"action": "confirm", "intent": "add_holding", "confidence": 0.9}')
    assert decision.action == "confirm"
    assert decision.confidence == 0.9


def test_parse_json_wrapped_in_prose():
    text = 'Sure! Here you go:\n{"action": "clarify", "intent": "unknown", "message": "Which one?"}\nThanks'
    assert parse_llm_response(text).message == "Which one?"


def test_parse_strips_control_characters():
    text = 'Result: {"action": "clarify", "message": "two\x01 lines\nhere"}'
    assert parse_llm_response(text).action == "clarify"


@pytest.mark.parametrize("text", ["", "no json at all", "{not: valid}", '{"confidence": 1.5}', "[1, 2]"])
def test_parse_failures_raise(text):
    with pytest.raises(LLMResponseError):
        parse_llm_response(text)


# ---------------------------------------------------------------------------
# LLM tier
# ---------------------------------------------------------------------------

def _context(**kw) -> RichContext:
    holding = Holding(id="hold_1", symbol="HIMS", name="Hims & Hers Health", quantity=20, unitPrice=30)
    return RichContext(user_input="cut my hims and hers position in half", all_holdings=[holding], **kw)


@pytest.mark.asyncio
async def test_llm_without_completer_falls_back_to_keywords():
    result = await LLMIntentService(None).recognize("I want to add something", _context())
    assert result.intent == IntentKind.UNKNOWN
    assert result.action == "clarify"
    assert result.confidence == 0.3
    assert result.suggestions


@pytest.mark.asyncio
async def test_llm_reduce_half():
    """
    GIVEN  a completion that answers reduce_holding with quantity "half"
    WHEN   the LLM tier recognises the message
    THEN   the payload carries fraction 0.5 and the prompt included the holdings.
    """
    completer = FakeCompleter(
        '{"action":"confirm","intent":"reduce_holding","entities":{"symbol":"HIMS","quantity":"half"},'
        '"message":"I\'ll reduce HIMS by half","confidence":0.9,"requires_confirmation":true}'
    )
    result = await LLMIntentService(completer).recognize("cut my hims and hers position in half", _context())
    assert result.intent == IntentKind.REDUCE_HOLDING
    assert result.source == "llm"
    assert result.entities.fraction == 0.5
    system, _ = completer.calls[0]
    assert "HIMS (Hims & Hers Health)" in system
    assert "reduce_holding" in system


@pytest.mark.asyncio
async def test_llm_unparseable_response_is_an_error():
    result = await LLMIntentService(FakeCompleter("I think you want to sell.")).recognize("x", _context())
    assert result.action == "error"
    assert result.confidence == 0.0
    assert result.message == ERROR_MESSAGE


@pytest.mark.asyncio
async def test_llm_service_failure_is_an_error():
    result = await LLMIntentService(FakeCompleter(error=TimeoutError("slow"))).recognize("x", _context())
    assert result.action == "error"
    assert result.confidence == 0.0


@pytest.mark.asyncio
async def test_llm_invalid_entities_ask_for_clarification():
    completer = FakeCompleter(
        '{"action":"confirm","intent":"reduce_holding","entities":{"symbol":"HIMS","quantity":"lots"},'
        '"confidence":0.9}'
    )
    result = await LLMIntentService(completer).recognize("sell lots of hims", _context())
    assert result.action == "clarify"
    assert result.entities is None


def test_system_prompt_lists_operations_and_context():
    prompt = build_system_prompt(_context())
    assert "add_yearly_data" in prompt
    assert "CONTEXT:" in prompt
    assert "Return JSON only" in prompt


def test_buy_with_price_keeps_the_price():
    """
    GIVEN  "buy 10 AAPL at $150"
    WHEN   the pattern tier runs
    THEN   the typed price is kept, so it is never replaced by a market quote.
    """
    result = recognize("buy 10 AAPL at $150")
    assert result.intent == IntentKind.ADD_HOLDING
    assert result.confidence == 0.95
    assert (result.entities.quantity, result.entities.unit_price) == (10, 150)
    assert result.entities.currency == "USD"


def test_verbs_match_whole_words_only():
    result = recognize("remove TSLA to free up cash")
    assert result.intent == IntentKind.DELETE_HOLDING
    assert result.entities.symbol == "TSLA"
