"""
End-to-end message flows through PortfolioAgent and the compiled graph:
confirmation gate, clarification re-entry, undo and the fast path.
"""

import pytest

from portfolio_agent.agent import PortfolioAgent
from portfolio_agent.evals.fakes import FakeCompleter, fake_lookup, fixed_rates, seed_holding


async def _confirm(agent: PortfolioAgent, message: str, **kw):
    """Runs message, asserts it needs confirmation, then confirms it."""
    state = await agent.run(message, **kw)
    response = state["response"]
    assert response.action == "confirm", response.message
    assert response.requires_confirmation is True
    confirmed = await agent.run("yes", pending_action=state["pending_action"])
    return response, confirmed["response"]


# ---------------------------------------------------------------------------
# Confirmation gate
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_meta_add_requires_confirmation(agent, store):
    """
    GIVEN  an empty portfolio
    WHEN   "add 100 shares of META at $300" is sent
    THEN   the agent asks for confirmation and nothing is written until "yes".
    """
    response = await agent.process_message("add 100 shares of META at $300")
    assert response.action == "confirm"
    assert response.confidence >= 0.85
    assert response.message.endswith("Confirm? (yes / no)")
    pending = response.data["pending_action"]
    assert pending["kind"] == "add_holding"
    assert pending["payload"]["symbol"] == "META"
    assert pending["payload"]["quantity"] == 100
    assert pending["payload"]["unit_price"] == 300
    assert await store.list_holdings() == []

    _, executed = await _confirm(agent, "add 100 shares of META at $300")
    assert executed.action == "execute"
    assert [h.symbol for h in await store.list_holdings()] == ["META"]


@pytest.mark.asyncio
async def test_cancel_discards_pending_action(agent, store):
    state = await agent.run("add 100 shares of META at $300")
    cancelled = await agent.run("no", pending_action=state["pending_action"])
    assert cancelled["response"].action == "cancelled"
    assert cancelled["pending_action"] is None
    assert await store.list_holdings() == []


@pytest.mark.asyncio
async def test_yes_without_pending_action(agent):
    response = await agent.process_message("yes")
    assert response.action == "clarify"


@pytest.mark.asyncio
async def test_missing_price_is_fetched(agent):
    response = await agent.process_message("buy 10 TSLA")
    assert response.action == "confirm"
    assert "current market price" in response.message
    assert response.data["pending_action"]["payload"]["unit_price"] == 250.0


@pytest.mark.asyncio
async def test_missing_quantity_asks(agent):
    response = await agent.process_message("bought TSLA at $250")
    assert response.action == "clarify"
    assert "How many TSLA" in response.message


# ---------------------------------------------------------------------------
# Existing holdings
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_aapl_add_merges_into_existing(agent, store):
    """
    GIVEN  AAPL 5 units at 140 SGD
    WHEN   "add 5 shares of AAPL at 160 sgd" is confirmed
    THEN   the confirmation shows the weighted average and the holding becomes 10 at 150.
    """
    aapl = await seed_holding(store, "AAPL", 5, 140, name="Apple Inc.")
    prompt, executed = await _confirm(agent, "add 5 shares of AAPL at 160 sgd")
    assert prompt.data["pending_action"]["kind"] == "add_to_existing"
    assert prompt.data["weighted_average"]["new_avg_cost_basis"] == 150.0
    assert "You already hold 5 AAPL" in prompt.message
    assert executed.action == "execute"

    updated = await store.get_holding(aapl.id)
    assert (updated.quantity, updated.unit_price) == (10, 150)


@pytest.mark.asyncio
async def test_sell_half_hims_then_undo(agent, store):
    hims = await seed_holding(store, "HIMS", 20, 30, name="Hims & Hers Health")
    prompt, executed = await _confirm(agent, "sell half my HIMS")
    assert "sell **10 of your 20 HIMS**" in prompt.message
    assert prompt.data["quantity_to_sell"] == 10
    assert executed.action == "execute"
    assert (await store.get_holding(hims.id)).quantity == 10

    undone = await agent.process_message("undo")
    assert undone.action == "execute"
    assert (await store.get_holding(hims.id)).quantity == 20


@pytest.mark.asyncio
async def test_over_reduce_asks_for_clarification(agent, store):
    await seed_holding(store, "HIMS", 20, 30)
    response = await agent.process_message("sell 25 HIMS")
    assert response.action == "clarify"
    assert "you only hold 20" in response.message


@pytest.mark.asyncio
async def test_delete_requires_confirmation(agent, store):
    await seed_holding(store, "TSLA", 3, 250)
    prompt, executed = await _confirm(agent, "delete TSLA")
    assert "remove **TSLA" in prompt.message
    assert executed.action == "execute"
    assert await store.list_holdings() == []


@pytest.mark.asyncio
async def test_fuzzy_symbol_offers_candidates(agent, store):
    await seed_holding(store, "HIMS", 20, 30, name="Hims & Hers Health")
    response = await agent.process_message("sell 5 HIMZ")
    assert response.action == "clarify"
    assert response.suggestions == ["Sell half of HIMS (Hims & Hers Health)"]


# ---------------------------------------------------------------------------
# Rename clarification
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_rename_scb_to_dbs_offers_three_options(agent, store):
    """
    GIVEN  SCB held at IBKR
    WHEN   "rename SCB to DBS" is sent
    THEN   the agent offers the three labelled options and selects none;
           picking "Rename location to DBS" leads to a confirmation for a location change.
    """
    scb = await seed_holding(store, "SCB", 100, 12, name="Standard Chartered", location="IBKR")
    state = await agent.run("rename SCB to DBS")
    response = state["response"]
    assert response.action == "clarify"
    assert response.suggestions == [
        "Rename symbol to DBS",
        "Rename company name to DBS",
        "Rename location to DBS",
    ]
    assert state["pending_action"] is None

    picked = await agent.run("Rename location to DBS", pending_clarification=state["pending_clarification"])
    assert picked["response"].action == "confirm"
    pending = picked["pending_action"]
    assert pending["holding_id"] == scb.id
    assert pending["payload"]["location"] == "DBS"

    done = await agent.run("yes", pending_action=pending)
    assert done["response"].action == "execute"
    assert (await store.get_holding(scb.id)).location == "DBS"


# ---------------------------------------------------------------------------
# Yearly data, analysis, fast path
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_yearly_income(agent, store):
    _, executed = await _confirm(agent, "2023 income was $120k")
    assert executed.action == "execute"
    assert (await store.get_yearly(2023)).income == 120_000


@pytest.mark.asyncio
async def test_fast_path_total_value_skips_intent(agent, store):
    await seed_holding(store, "AAPL", 10, 100)
    response = await agent.process_message("what is my total value?")
    assert response.action == "analyze"
    assert response.data["total_value"] == 1000


@pytest.mark.asyncio
async def test_portfolio_analysis(agent, store):
    await seed_holding(store, "AAPL", 10, 100, category="Core")
    response = await agent.process_message("how am I doing")
    assert response.action == "analyze"
    assert "Portfolio Summary" in response.message


@pytest.mark.asyncio
async def test_unknown_message_without_llm_clarifies(agent):
    response = await agent.process_message("what should I do about the weather")
    assert response.action == "clarify"
    assert response.suggestions


@pytest.mark.asyncio
async def test_llm_tier_handles_free_text(store):
    hims = await seed_holding(store, "HIMS", 20, 30, name="Hims & Hers Health")
    completer = FakeCompleter(
        '{"action":"confirm","intent":"reduce_holding","entities":{"symbol":"HIMS","quantity":"half"},'
        '"message":"ok","confidence":0.9,"requires_confirmation":true}'
    )
    agent = PortfolioAgent(store=store, completer=completer, lookup=fake_lookup, load_rates=fixed_rates)
    response = await agent.process_message("cut my hims and hers position in half")
    assert response.action == "confirm"
    assert response.data["pending_action"]["holding_id"] == hims.id
    assert completer.calls


@pytest.mark.asyncio
async def test_llm_garbage_is_an_error(store):
    agent = PortfolioAgent(
        store=store, completer=FakeCompleter("not json"), lookup=fake_lookup, load_rates=fixed_rates
    )
    response = await agent.process_message("do the thing with my stuff")
    assert response.action == "error"
    assert response.confidence == 0.0


@pytest.mark.asyncio
async def test_history_is_appended(agent):
    state = await agent.run("yes", history=[{"role": "user", "content": "hi"}, {"role": "assistant", "content": "hello"}])
    assert len(state["messages"]) == 4


@pytest.mark.asyncio
async def test_rename_custodian_named_in_location(agent, store):
    """
    GIVEN  a holding whose custodian is SCB but whose symbol is not
    WHEN   "rename SCB to DBS" is sent
    THEN   the holding is found through its location and the three options are offered.
    """
    cash = await seed_holding(store, "CASH", 1, 5000, name="Cash Savings", location="SCB")
    state = await agent.run("rename SCB to DBS")
    assert state["response"].action == "clarify"
    assert state["response"].suggestions == [
        "Rename symbol to DBS",
        "Rename company name to DBS",
        "Rename location to DBS",
    ]
    assert state["pending_clarification"]["holding_id"] == cash.id


@pytest.mark.asyncio
async def test_typed_price_is_not_replaced_by_market_price(agent):
    response = await agent.process_message("buy 10 TSLA at $150")
    assert response.action == "confirm"
    assert response.data["pending_action"]["payload"]["unit_price"] == 150
    assert "current market price" not in response.message


@pytest.mark.asyncio
async def test_llm_increase_without_quantity_asks(store):
    await seed_holding(store, "AAPL", 5, 140, name="Apple Inc.")
    completer = FakeCompleter(
        '{"action":"confirm","intent":"increase_holding","entities":{"symbol":"AAPL"},"confidence":0.9}'
    )
    agent = PortfolioAgent(store=store, completer=completer, lookup=fake_lookup, load_rates=fixed_rates)
    state = await agent.run("top up my apple position")
    assert state["response"].action == "clarify"
    assert "How many AAPL" in state["response"].message
    assert state["missing_fields"] == ["quantity"]
    assert state["pending_action"] is None
