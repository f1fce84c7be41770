"""
Action executor and undo manager.

Every confirmed action is executed here, and these operations run nowhere
else. Each handler snapshots the record it is about to change, writes with
a version compare-and-swap, and appends an action-history record whose
metadata carries the payload plus the before/after snapshots. undo() reads
those snapshots back to revert the latest mutation that has not already
been undone.

Handlers return ExecutionResult envelopes; they never raise to the caller.
"""

import os
from typing import Awaitable, Callable, Optional

from portfolio_agent.currency import convert_currency, convert_to_all_currencies, format_money
from portfolio_agent.errors import StaleHoldingError
from portfolio_agent.learning import LearningService
from portfolio_agent.log_config import get_logger
from portfolio_agent.models import (
    ActionKind,
    ActionRecord,
    AgentAction,
    ExchangeRates,
    ExecutionResult,
    Holding,
)
from portfolio_agent.store import PortfolioStore
from portfolio_agent.tools.exchange_rates import get_exchange_rates
from portfolio_agent.weighted_average import combine_lots, pick_existing

logger = get_logger(__name__)

RatesLoader = Callable[[], Awaitable[ExchangeRates]]

# Columns written back when an undo restores a holding snapshot
RESTORABLE_FIELDS = (
    "symbol", "name", "category", "location", "quantity", "unit_price",
    "current_unit_price", "cost_basis", "value_sgd", "value_usd", "value_inr",
    "entry_currency", "manual_pricing",
)

QUANTITY_EPSILON = 1e-9


def default_location() -> str:
    return os.getenv("DEFAULT_LOCATION", "IBKR")


def _snapshot(holding: Holding) -> dict:
    return holding.model_dump(by_alias=False)


def _restorable(snapshot: dict) -> dict:
    return {k: snapshot[k] for k in RESTORABLE_FIELDS if k in snapshot}


def _normalize_category(category: Optional[str]) -> str:
    if not category:
        return "Growth"
    return category.strip().capitalize()


def valuation_fields(
    quantity: float, unit_price: float, current_unit_price: Optional[float],
    entry_currency: str, rates: ExchangeRates,
) -> dict:
    """cost_basis plus value_sgd / value_usd / value_inr for a position."""
    market_price = current_unit_price or unit_price
    return {
        "cost_basis": round(quantity * unit_price, 2),
        **convert_to_all_currencies(round(quantity * market_price, 2), entry_currency, rates),
    }


def _fail(kind: Optional[ActionKind], message: str) -> ExecutionResult:
    return ExecutionResult(success=False, message=message, kind=kind)


class ActionExecutor:
    def __init__(
        self,
        store: PortfolioStore,
        learning: LearningService,
        load_rates: RatesLoader = get_exchange_rates,
    ):
        self.store = store
        self.learning = learning
        self.load_rates = load_rates
        self._handlers = {
            ActionKind.ADD_HOLDING: self._add_holding,
            ActionKind.ADD_TO_EXISTING: self._add_lot,
            ActionKind.INCREASE_HOLDING: self._add_lot,
            ActionKind.EDIT_HOLDING: self._edit_holding,
            ActionKind.DELETE_HOLDING: self._delete_holding,
            ActionKind.REDUCE_HOLDING: self._reduce_holding,
            ActionKind.ADD_YEARLY_DATA: self._add_yearly_data,
        }
        self._undo_handlers = {
            ActionKind.ADD_HOLDING: self._undo_add,
            ActionKind.ADD_TO_EXISTING: self._undo_restore,
            ActionKind.INCREASE_HOLDING: self._undo_restore,
            ActionKind.EDIT_HOLDING: self._undo_restore,
            ActionKind.DELETE_HOLDING: self._undo_recreate,
            ActionKind.REDUCE_HOLDING: self._undo_reduce,
            ActionKind.ADD_YEARLY_DATA: self._undo_yearly,
        }

    async def _rates(self) -> ExchangeRates:
        return await self.load_rates()

    async def _target(self, action: AgentAction) -> Optional[Holding]:
        if action.holding_id:
            return await self.store.get_holding(action.holding_id)
        symbol = getattr(action.payload, "symbol", "")
        if not symbol:
            return None
        return pick_existing(symbol, await self.store.find_by_symbol(symbol))

    # ------------------------------------------------------------------
    # Execute
    # ------------------------------------------------------------------

    async def execute(self, action: AgentAction) -> ExecutionResult:
        handler = self._handlers.get(action.kind)
        if handler is None:
            return _fail(action.kind, f"Unsupported action: {action.kind}")

        try:
            result = await handler(action)
        except StaleHoldingError as e:
            logger.warning("Stale write rejected: %s", e)
            result = _fail(
                action.kind,
                "This holding was changed by another request. Please review it and try again.",
            )
        except Exception:
            logger.exception("Execution of %s failed", action.kind.value)
            result = _fail(
                action.kind,
                f"Sorry, I couldn't {action.kind.value.replace('_', ' ')} right now. Nothing was changed.",
            )

        result.kind = action.kind
        result.history_id = await self.learning.record(
            action.user_input or action.kind.value,
            action.kind.value,
            result.success,
            {
                "kind": action.kind.value,
                "payload": action.payload.model_dump(by_alias=False),
                "holding_id": action.holding_id,
                "original_data": result.original_data,
                "data": result.data,
            },
        )
        logger.info("Executed %s success=%s", action.kind.value, result.success)
        return result

    async def _add_holding(self, action: AgentAction) -> ExecutionResult:
        p = action.payload
        if not p.quantity or not p.unit_price:
            return _fail(action.kind, "Quantity and price are required to add a holding")
        rates = await self._rates()
        currency = (p.currency or action.currency).upper()
        symbol = p.symbol.upper()
        name = p.name or (action.lookup or {}).get("name") or symbol
        fields = {
            "symbol": symbol,
            "name": name,
            "category": _normalize_category(p.category),
            "location": p.location or default_location(),
            "quantity": p.quantity,
            "unit_price": p.unit_price,
            "entry_currency": currency,
            "manual_pricing": False,
            **valuation_fields(p.quantity, p.unit_price, None, currency, rates),
        }
        holding = await self.store.create_holding(fields)
        return ExecutionResult(
            success=True,
            message=f"✅ Added {p.quantity:g} {symbol} at {format_money(p.unit_price, currency)}",
            data=_snapshot(holding),
        )

    async def _add_lot(self, action: AgentAction) -> ExecutionResult:
        """add_to_existing and increase_holding: merge a new lot into a holding."""
        p = action.payload
        holding = await self._target(action)
        if holding is None:
            return _fail(action.kind, f"Holding {p.symbol or action.holding_id} not found")
        if not p.quantity:
            return _fail(action.kind, f"How many {holding.symbol} units did you add?")

        rates = await self._rates()
        currency = (p.currency or action.currency).upper()
        if p.unit_price:
            lot_price = convert_currency(p.unit_price, currency, holding.entry_currency, rates)
        else:
            lot_price = holding.price_for_valuation

        combined = combine_lots(
            holding.quantity or 0.0, holding.unit_price or 0.0, p.quantity, round(p.quantity * lot_price, 2)
        )
        quantity = combined["quantity"]
        avg = combined["avg_cost_basis"]
        fields = {
            "quantity": quantity,
            "unit_price": avg,
            **valuation_fields(quantity, avg, holding.current_unit_price, holding.entry_currency, rates),
        }
        fields["cost_basis"] = combined["total_invested"]

        updated = await self.store.update_holding(holding.id, fields, expected_version=holding.version)
        if updated is None:
            return _fail(action.kind, f"Holding {holding.symbol} not found")
        return ExecutionResult(
            success=True,
            message=(
                f"✅ Added {p.quantity:g} {updated.symbol}. You now hold {quantity:g} at an average cost of "
                f"{format_money(avg, updated.entry_currency)}"
            ),
            data=_snapshot(updated),
            original_data=_snapshot(holding),
        )

    async def _edit_holding(self, action: AgentAction) -> ExecutionResult:
        p = action.payload
        holding = await self._target(action)
        if holding is None:
            return _fail(action.kind, f"Holding {p.symbol or action.holding_id} not found")

        changes = p.changes()
        if not changes:
            if p.rename_value:
                return _fail(
                    action.kind,
                    f"Should {p.rename_value} become the symbol, company name or location of {holding.symbol}?",
                )
            return _fail(action.kind, f"Nothing to change on {holding.symbol}")

        fields = dict(changes)
        if "new_symbol" in fields:
            fields["symbol"] = fields.pop("new_symbol").upper()
        if "category" in fields:
            fields["category"] = _normalize_category(fields["category"])

        if {"quantity", "unit_price", "current_unit_price"} & fields.keys():
            rates = await self._rates()
            fields.update(valuation_fields(
                fields.get("quantity", holding.quantity or 0.0),
                fields.get("unit_price", holding.unit_price or 0.0),
                fields.get("current_unit_price", holding.current_unit_price),
                holding.entry_currency,
                rates,
            ))

        updated = await self.store.update_holding(holding.id, fields, expected_version=holding.version)
        if updated is None:
            return _fail(action.kind, f"Holding {holding.symbol} not found")
        return ExecutionResult(
            success=True,
            message=f"✅ Updated {updated.symbol} ({updated.name})",
            data=_snapshot(updated),
            original_data=_snapshot(holding),
        )

    async def _delete_holding(self, action: AgentAction) -> ExecutionResult:
        holding = await self._target(action)
        if holding is None:
            return _fail(action.kind, f"Holding {action.payload.symbol or action.holding_id} not found")
        await self.store.delete_holding(holding.id)
        return ExecutionResult(
            success=True,
            message=f"✅ Removed {holding.symbol} from your portfolio",
            data={"deleted": True, "holding_id": holding.id},
            original_data=_snapshot(holding),
        )

    async def _reduce_holding(self, action: AgentAction) -> ExecutionResult:
        p = action.payload
        holding = await self._target(action)
        if holding is None:
            return _fail(action.kind, f"Holding {p.symbol or action.holding_id} not found")

        held = holding.quantity or 0.0
        sold = p.resolve_quantity(held)
        if sold is None or sold <= 0:
            return _fail(action.kind, f"How many {holding.symbol} units did you sell?")
        if sold > held + QUANTITY_EPSILON:
            return _fail(action.kind, f"Cannot sell {sold:g} {holding.symbol}: you only hold {held:g}")

        remaining = round(held - sold, 8)
        proceeds = round(sold * p.unit_price, 2) if p.unit_price else None
        if remaining <= QUANTITY_EPSILON:
            await self.store.delete_holding(holding.id)
            return ExecutionResult(
                success=True,
                message=f"✅ Sold all {held:g} {holding.symbol}; the holding has been removed",
                data={"deleted": True, "holding_id": holding.id, "sold": sold, "proceeds": proceeds},
                original_data=_snapshot(holding),
            )

        rates = await self._rates()
        fields = {
            "quantity": remaining,
            **valuation_fields(
                remaining, holding.unit_price or 0.0, holding.current_unit_price, holding.entry_currency, rates
            ),
        }
        updated = await self.store.update_holding(holding.id, fields, expected_version=holding.version)
        if updated is None:
            return _fail(action.kind, f"Holding {holding.symbol} not found")
        return ExecutionResult(
            success=True,
            message=f"✅ Sold {sold:g} {updated.symbol}. {remaining:g} remaining",
            data={**_snapshot(updated), "sold": sold, "proceeds": proceeds},
            original_data=_snapshot(holding),
        )

    async def _add_yearly_data(self, action: AgentAction) -> ExecutionResult:
        p = action.payload
        if p.year is None:
            return _fail(action.kind, "Which year is this data for?")
        amounts = p.monetary_fields()
        if not amounts:
            return _fail(action.kind, f"No amounts given for {p.year}")

        existing = await self.store.get_yearly(p.year)
        saved = await self.store.upsert_yearly(p.year, amounts)
        verb = "Updated" if existing else "Added"
        return ExecutionResult(
            success=True,
            message=f"✅ {verb} data for {p.year}",
            data=saved.model_dump(by_alias=False),
            original_data=existing.model_dump(by_alias=False) if existing else None,
        )

    # ------------------------------------------------------------------
    # Undo
    # ------------------------------------------------------------------

    async def undo(self, last_action: Optional[ActionRecord] = None) -> ExecutionResult:
        """Reverts last_action, or the latest successful mutation not yet undone."""
        record = last_action or await self.store.latest_undoable()
        if record is None:
            return _fail(None, "There is nothing to undo")
        if record.action_taken.startswith("undo_") or not record.success:
            return _fail(None, "That action cannot be undone")
        if await self.store.is_undone(record.id):
            return _fail(None, "That action has already been undone")

        try:
            kind = ActionKind(record.metadata.get("kind", record.action_taken))
        except ValueError:
            return _fail(None, f"Cannot undo {record.action_taken}")

        try:
            result = await self._undo_handlers[kind](record)
        except StaleHoldingError as e:
            logger.warning("Stale undo rejected: %s", e)
            result = _fail(kind, "This holding has changed since that action. Undo was not applied.")
        except Exception:
            logger.exception("Undo of %s failed", kind.value)
            result = _fail(kind, f"Sorry, I couldn't undo the {kind.value.replace('_', ' ')} right now.")

        result.kind = kind
        result.history_id = await self.learning.store_action_history(
            f"undo: {record.user_input}",
            f"undo_{kind.value}",
            result.success,
            metadata={"undo_of": record.id, "kind": kind.value},
        )
        logger.info("Undid %s (history %s) success=%s", kind.value, record.id, result.success)
        return result

    async def _undo_add(self, record: ActionRecord) -> ExecutionResult:
        holding_id = (record.metadata.get("data") or {}).get("id")
        if not holding_id or not await self.store.delete_holding(holding_id):
            return _fail(ActionKind.ADD_HOLDING, "The added holding no longer exists")
        symbol = record.metadata["data"].get("symbol", "")
        return ExecutionResult(success=True, message=f"↩️ Removed the {symbol} holding that was added")

    async def _undo_restore(self, record: ActionRecord) -> ExecutionResult:
        original = record.metadata.get("original_data") or {}
        if not original.get("id"):
            return _fail(None, "No snapshot recorded for this action")
        current = await self.store.get_holding(original["id"])
        if current is None:
            return _fail(None, f"Holding {original.get('symbol', '')} no longer exists")
        restored = await self.store.update_holding(
            current.id, _restorable(original), expected_version=current.version
        )
        return ExecutionResult(
            success=True,
            message=f"↩️ Restored {restored.symbol} to {restored.quantity:g} units",
            data=_snapshot(restored),
            original_data=_snapshot(current),
        )

    async def _undo_recreate(self, record: ActionRecord) -> ExecutionResult:
        original = record.metadata.get("original_data") or {}
        if not original.get("id"):
            return _fail(ActionKind.DELETE_HOLDING, "No snapshot recorded for this action")
        if await self.store.get_holding(original["id"]) is not None:
            return _fail(ActionKind.DELETE_HOLDING, f"{original.get('symbol', '')} already exists")
        recreated = await self.store.create_holding(_restorable(original), holding_id=original["id"])
        return ExecutionResult(
            success=True,
            message=f"↩️ Restored {recreated.symbol} ({recreated.quantity:g} units)",
            data=_snapshot(recreated),
        )

    async def _undo_reduce(self, record: ActionRecord) -> ExecutionResult:
        if (record.metadata.get("data") or {}).get("deleted"):
            return await self._undo_recreate(record)
        return await self._undo_restore(record)

    async def _undo_yearly(self, record: ActionRecord) -> ExecutionResult:
        original = record.metadata.get("original_data")
        year = (record.metadata.get("data") or {}).get("year")
        if year is None:
            return _fail(ActionKind.ADD_YEARLY_DATA, "No year recorded for this action")
        if original is None:
            await self.store.delete_yearly(year)
            return ExecutionResult(success=True, message=f"↩️ Removed data for {year}")
        restored = await self.store.upsert_yearly(year, {k: v for k, v in original.items() if k != "year"})
        return ExecutionResult(
            success=True,
            message=f"↩️ Restored previous data for {year}",
            data=restored.model_dump(by_alias=False),
        )
