"""
Action executor and undo manager against the in-memory store.
"""

import pytest

from portfolio_agent.errors import StaleHoldingError
from portfolio_agent.evals.fakes import fixed_rates, seed_holding
from portfolio_agent.executor import ActionExecutor
from portfolio_agent.learning import LearningService
from portfolio_agent.models import (
    ActionKind,
    AddHolding,
    AddYearlyData,
    AgentAction,
    DeleteHolding,
    EditHolding,
    IncreaseHolding,
    ReduceHolding,
)
from portfolio_agent.store import PortfolioStore


@pytest.fixture
def executor(store):
    return ActionExecutor(store, LearningService(store), load_rates=fixed_rates)


# ---------------------------------------------------------------------------
# Add / undo round trip
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_add_then_undo_restores_empty_portfolio(store, executor):
    """
    GIVEN  an empty portfolio
    WHEN   a holding is added and the add is undone
    THEN   the portfolio is empty again and history records both steps.
    """
    action = AgentAction(
        kind=ActionKind.ADD_HOLDING,
        payload=AddHolding(symbol="META", quantity=100, unit_price=300, currency="USD"),
        user_input="add 100 shares of META at $300",
    )
    result = await executor.execute(action)
    assert result.success, result.message

    holdings = await store.list_holdings()
    assert len(holdings) == 1
    meta = holdings[0]
    assert meta.cost_basis == 30_000
    assert meta.value_usd == 30_000
    assert meta.value_sgd == 40_500
    assert meta.category == "Growth"
    assert meta.location == "IBKR"

    undone = await executor.undo()
    assert undone.success, undone.message
    assert await store.list_holdings() == []

    history = await store.recent_actions()
    assert [h.action_taken for h in history] == ["undo_add_holding", "add_holding"]
    assert history[0].metadata["undo_of"] == history[1].id


@pytest.mark.asyncio
async def test_second_undo_does_not_repeat(store, executor):
    await executor.execute(AgentAction(
        kind=ActionKind.ADD_HOLDING, payload=AddHolding(symbol="TSLA", quantity=1, unit_price=250)
    ))
    assert (await executor.undo()).success
    again = await executor.undo()
    assert again.success is False
    assert again.message == "There is nothing to undo"


@pytest.mark.asyncio
async def test_add_uses_default_location_env(store, executor, monkeypatch):
    monkeypatch.setenv("DEFAULT_LOCATION", "DBS")
    await executor.execute(AgentAction(
        kind=ActionKind.ADD_HOLDING, payload=AddHolding(symbol="TSLA", quantity=1, unit_price=250)
    ))
    assert (await store.list_holdings())[0].location == "DBS"


# ---------------------------------------------------------------------------
# Lots and weighted average
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_add_to_existing_weighted_average_and_undo(store, executor):
    """
    GIVEN  AAPL 5 units at 140 SGD
    WHEN   5 more are added at 160 SGD
    THEN   10 units at 150 with 1500 invested; undo restores 5 at 140.
    """
    aapl = await seed_holding(store, "AAPL", 5, 140)
    result = await executor.execute(AgentAction(
        kind=ActionKind.ADD_TO_EXISTING,
        payload=AddHolding(symbol="AAPL", quantity=5, unit_price=160, currency="SGD"),
        holding_id=aapl.id,
    ))
    assert result.success, result.message

    updated = await store.get_holding(aapl.id)
    assert updated.quantity == 10
    assert updated.unit_price == 150
    assert updated.cost_basis == 1500
    assert updated.value_sgd == 1500
    assert updated.version == 2

    assert (await executor.undo()).success
    restored = await store.get_holding(aapl.id)
    assert (restored.quantity, restored.unit_price, restored.cost_basis) == (5, 140, 700)


@pytest.mark.asyncio
async def test_increase_converts_lot_price_into_entry_currency(store, executor):
    nvda = await seed_holding(store, "NVDA", 10, 100, currency="USD")
    result = await executor.execute(AgentAction(
        kind=ActionKind.INCREASE_HOLDING,
        payload=IncreaseHolding(symbol="NVDA", quantity=10, unit_price=135, currency="SGD"),
        holding_id=nvda.id,
    ))
    assert result.success, result.message
    updated = await store.get_holding(nvda.id)
    # 135 SGD is 99.90 USD at the fixed rate
    assert updated.quantity == 20
    assert updated.unit_price == pytest.approx(99.95)


# ---------------------------------------------------------------------------
# Reduce
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_reduce_half_of_hims(store, executor):
    """
    GIVEN  HIMS 20 units
    WHEN   half is sold
    THEN   10 remain and the cost basis scales with the average unchanged.
    """
    hims = await seed_holding(store, "HIMS", 20, 30, name="Hims & Hers Health")
    result = await executor.execute(AgentAction(
        kind=ActionKind.REDUCE_HOLDING, payload=ReduceHolding(symbol="HIMS", fraction=0.5), holding_id=hims.id
    ))
    assert result.success, result.message
    updated = await store.get_holding(hims.id)
    assert updated.quantity == 10
    assert updated.unit_price == 30
    assert updated.cost_basis == 300


@pytest.mark.asyncio
async def test_reduce_to_zero_deletes_and_undo_recreates(store, executor):
    hims = await seed_holding(store, "HIMS", 20, 30)
    result = await executor.execute(AgentAction(
        kind=ActionKind.REDUCE_HOLDING, payload=ReduceHolding(symbol="HIMS", quantity=20), holding_id=hims.id
    ))
    assert result.success
    assert result.data["deleted"] is True
    assert await store.get_holding(hims.id) is None

    assert (await executor.undo()).success
    recreated = await store.get_holding(hims.id)
    assert recreated.quantity == 20
    assert recreated.symbol == "HIMS"


@pytest.mark.asyncio
async def test_over_reduce_is_rejected(store, executor):
    hims = await seed_holding(store, "HIMS", 20, 30)
    result = await executor.execute(AgentAction(
        kind=ActionKind.REDUCE_HOLDING, payload=ReduceHolding(symbol="HIMS", quantity=21), holding_id=hims.id
    ))
    assert result.success is False
    assert "you only hold 20" in result.message
    assert (await store.get_holding(hims.id)).quantity == 20


# ---------------------------------------------------------------------------
# Edit / delete
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_edit_location_and_undo(store, executor):
    scb = await seed_holding(store, "SCB", 100, 12, name="Standard Chartered", location="IBKR")
    result = await executor.execute(AgentAction(
        kind=ActionKind.EDIT_HOLDING, payload=EditHolding(symbol="SCB", location="DBS"), holding_id=scb.id
    ))
    assert result.success
    assert (await store.get_holding(scb.id)).location == "DBS"

    assert (await executor.undo()).success
    assert (await store.get_holding(scb.id)).location == "IBKR"


@pytest.mark.asyncio
async def test_edit_price_revalues(store, executor):
    aapl = await seed_holding(store, "AAPL", 10, 100)
    await executor.execute(AgentAction(
        kind=ActionKind.EDIT_HOLDING, payload=EditHolding(symbol="AAPL", current_unit_price=120), holding_id=aapl.id
    ))
    updated = await store.get_holding(aapl.id)
    assert updated.cost_basis == 1000
    assert updated.value_sgd == 1200


@pytest.mark.asyncio
async def test_unresolved_rename_is_not_applied(store, executor):
    scb = await seed_holding(store, "SCB", 100, 12)
    result = await executor.execute(AgentAction(
        kind=ActionKind.EDIT_HOLDING, payload=EditHolding(symbol="SCB", rename_value="DBS"), holding_id=scb.id
    ))
    assert result.success is False
    assert "symbol, company name or location" in result.message


@pytest.mark.asyncio
async def test_delete_then_undo_recreates_same_id(store, executor):
    tsla = await seed_holding(store, "TSLA", 3, 250, category="Hedge")
    result = await executor.execute(AgentAction(
        kind=ActionKind.DELETE_HOLDING, payload=DeleteHolding(symbol="TSLA")
    ))
    assert result.success
    assert await store.list_holdings() == []

    assert (await executor.undo()).success
    recreated = await store.get_holding(tsla.id)
    assert recreated.category == "Hedge"
    assert recreated.quantity == 3


@pytest.mark.asyncio
async def test_missing_holding_is_a_failed_execution(executor):
    result = await executor.execute(AgentAction(
        kind=ActionKind.DELETE_HOLDING, payload=DeleteHolding(symbol="NOPE")
    ))
    assert result.success is False
    assert "not found" in result.message


@pytest.mark.asyncio
async def test_stale_version_is_rejected(store, executor):
    aapl = await seed_holding(store, "AAPL", 10, 100)
    await store.update_holding(aapl.id, {"name": "Apple"})
    with pytest.raises(StaleHoldingError):
        await store.update_holding(aapl.id, {"name": "Apple Inc."}, expected_version=1)


# ---------------------------------------------------------------------------
# Yearly data
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_yearly_new_then_undo_deletes(store, executor):
    await executor.execute(AgentAction(
        kind=ActionKind.ADD_YEARLY_DATA, payload=AddYearlyData(year=2023, income=120_000)
    ))
    assert (await store.get_yearly(2023)).income == 120_000
    assert (await executor.undo()).success
    assert await store.get_yearly(2023) is None


@pytest.mark.asyncio
async def test_yearly_update_then_undo_restores(store, executor):
    await store.upsert_yearly(2023, {"income": 100_000, "expenses": 40_000})
    await executor.execute(AgentAction(
        kind=ActionKind.ADD_YEARLY_DATA, payload=AddYearlyData(year=2023, income=120_000)
    ))
    updated = await store.get_yearly(2023)
    assert (updated.income, updated.expenses) == (120_000, 40_000)

    assert (await executor.undo()).success
    restored = await store.get_yearly(2023)
    assert (restored.income, restored.expenses) == (100_000, 40_000)


# ---------------------------------------------------------------------------
# Failure reporting and repeated undo
# ---------------------------------------------------------------------------

class _BrokenWriteStore(PortfolioStore):
    async def create_holding(self, fields, holding_id=None):
        raise RuntimeError("sqlite3 disk I/O error at /var/secret/portfolio.db")


@pytest.mark.asyncio
async def test_internal_errors_do_not_reach_the_user():
    broken = _BrokenWriteStore()
    executor = ActionExecutor(broken, LearningService(broken), load_rates=fixed_rates)
    result = await executor.execute(AgentAction(
        kind=ActionKind.ADD_HOLDING, payload=AddHolding(symbol="META", quantity=1, unit_price=300)
    ))
    assert result.success is False
    assert "sqlite3" not in result.message
    assert "/var/secret" not in result.message
    assert "Nothing was changed" in result.message


@pytest.mark.asyncio
async def test_explicit_undo_of_an_undone_action_is_rejected(store, executor):
    """
    GIVEN  an edit that was undone by its history id
    WHEN   the holding changes again and the same id is undone a second time
    THEN   the second undo is refused and the later change survives.
    """
    scb = await seed_holding(store, "SCB", 100, 12, location="IBKR")
    await executor.execute(AgentAction(
        kind=ActionKind.EDIT_HOLDING, payload=EditHolding(symbol="SCB", location="DBS"), holding_id=scb.id
    ))
    record = (await store.recent_actions())[0]
    assert (await executor.undo(record)).success

    await store.update_holding(scb.id, {"location": "OCBC"})
    again = await executor.undo(record)
    assert again.success is False
    assert again.message == "That action has already been undone"
    assert (await store.get_holding(scb.id)).location == "OCBC"


@pytest.mark.asyncio
async def test_undo_records_cannot_be_undone(store, executor):
    await executor.execute(AgentAction(
        kind=ActionKind.ADD_HOLDING, payload=AddHolding(symbol="TSLA", quantity=1, unit_price=250)
    ))
    await executor.undo()
    undo_record = (await store.recent_actions())[0]
    result = await executor.undo(undo_record)
    assert result.success is False
    assert result.message == "That action cannot be undone"
