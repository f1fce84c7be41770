"""
LangGraph state machine for one chat message.

  classify ──► format                  (cancel, stray yes/no, fast-path query)
     │
     ├──► execute ──► format           (confirmed pending action)
     ├──► undo ──► format
     └──► recognize ──► format         (analysis, LLM clarify / error)
              │
              └──► resolve ──► format  (missing fields, ambiguity)
                      │
                      └──► validate ──► format

Nothing is written until the user confirms: validate returns the built
action in response.data["pending_action"], and the client echoes it back
with the next message.
"""

from dataclasses import dataclass
from typing import Optional

from langchain_core.messages import AIMessage, HumanMessage
from langgraph.graph import END, StateGraph

from portfolio_agent.context import ContextProvider, find_holding, rename_options
from portfolio_agent.executor import ActionExecutor
from portfolio_agent.intent import classify_reply, recognize
from portfolio_agent.llm import LLMIntentService
from portfolio_agent.log_config import get_logger
from portfolio_agent.matcher import SmartHoldingMatcher, SymbolLookup
from portfolio_agent.models import (
    MUTATING_INTENTS,
    ActionKind,
    AddHolding,
    AddYearlyData,
    AgentAction,
    AgentResponse,
    DeleteHolding,
    EditHolding,
    Holding,
    IncreaseHolding,
    IntentKind,
    ReduceHolding,
)
from portfolio_agent.quick_queries import allocation_gaps, handle_quick_query, portfolio_summary
from portfolio_agent.state import AgentState
from portfolio_agent.validator import (
    add_confirmation,
    clarification_message,
    delete_confirmation,
    edit_confirmation,
    reduce_confirmation,
    validate_holding,
    validate_yearly,
    yearly_confirmation,
)
from portfolio_agent.weighted_average import RatesLoader, calculate_weighted_average, pick_existing

logger = get_logger(__name__)

CANCELLED_MESSAGE = "Cancelled. Nothing was changed."
NOTHING_PENDING_MESSAGE = "There is nothing waiting for confirmation. What would you like to do?"


@dataclass
class AgentServices:
    context_provider: ContextProvider
    llm: LLMIntentService
    matcher: SmartHoldingMatcher
    executor: ActionExecutor
    lookup: SymbolLookup
    load_rates: RatesLoader


def _clarify(message: str, suggestions: Optional[list[str]] = None, data: Optional[dict] = None,
             confidence: float = 0.5) -> AgentResponse:
    return AgentResponse(
        action="clarify", message=message, suggestions=suggestions or [], data=data, confidence=confidence
    )


def _append_messages(state: AgentState, user_query: str, answer: str) -> list:
    updated = list(state.get("messages", []))
    updated.append(HumanMessage(content=user_query))
    updated.append(AIMessage(content=answer))
    return updated


def _holdings_loader(holdings: list[Holding]):
    async def _load() -> list[Holding]:
        return holdings
    return _load


def _candidate_suggestions(verb: str, matches) -> list[str]:
    return [f"{verb} {m.symbol} ({m.name})" if m.name else f"{verb} {m.symbol}" for m in matches]


def build_graph(services: AgentServices):
    """Builds and compiles the LangGraph state machine over the given services."""

    # ------------------------------------------------------------------
    # classify
    # ------------------------------------------------------------------

    async def classify_node(state: AgentState) -> AgentState:
        """
        Keyword classification, no LLM call. Confirmation replies are
        intercepted first, then read-only fast-path queries.
        """
        query = (state.get("user_query") or "").strip()
        if not query:
            return {**state, "query_type": "done", "error": "empty_query",
                    "response": _clarify("What would you like to do with your portfolio?")}

        reply = classify_reply(query)
        pending = state.get("pending_action")
        if reply == IntentKind.UNDO_ACTION:
            return {**state, "query_type": "undo"}
        if reply == IntentKind.CONFIRM_ACTION:
            if pending:
                return {**state, "query_type": "confirmed"}
            return {**state, "query_type": "done", "response": _clarify(NOTHING_PENDING_MESSAGE)}
        if reply == IntentKind.CANCEL_ACTION:
            return {
                **state,
                "query_type": "done",
                "pending_action": None,
                "pending_clarification": None,
                "response": AgentResponse(action="cancelled", message=CANCELLED_MESSAGE, confidence=1.0),
            }

        quick = handle_quick_query(
            query,
            state.get("holdings", []),
            state.get("display_currency", "SGD"),
            state.get("financial_profile"),
        )
        if quick is not None:
            return {**state, "query_type": "done", "response": quick}

        return {**state, "query_type": "intent"}

    # ------------------------------------------------------------------
    # recognize
    # ------------------------------------------------------------------

    async def recognize_node(state: AgentState) -> AgentState:
        """Pattern tier first; the LLM tier only when no pattern matches."""
        query = state["user_query"]
        holdings = state.get("holdings", [])
        clarification = state.get("pending_clarification") or {}

        context = await services.context_provider.build(
            clarification.get("original_input") or query,
            holdings,
            state.get("yearly_data"),
            state.get("financial_profile"),
            state.get("display_currency", "SGD"),
            user_selection=query if clarification else None,
        )

        intent = recognize(query)
        if intent.intent == IntentKind.UNKNOWN:
            intent = await services.llm.recognize(query, context)
        logger.info("Intent %s (%s, %.2f)", intent.intent.value, intent.source, intent.confidence)

        if intent.intent == IntentKind.PORTFOLIO_ANALYSIS:
            currency = state.get("display_currency", "SGD")
            summary = portfolio_summary(holdings, currency)
            gaps = allocation_gaps(holdings, currency, state.get("financial_profile"))
            response = AgentResponse(
                action="analyze",
                message=f"{summary.message}\n\n{gaps.message}",
                data={**(summary.data or {}), **(gaps.data or {})},
                confidence=max(intent.confidence, 0.9),
            )
            return {**state, "context": context, "intent": intent, "query_type": "done", "response": response}

        if intent.intent in MUTATING_INTENTS and intent.entities is not None and intent.action not in ("clarify", "error"):
            return {**state, "context": context, "intent": intent, "query_type": "mutation"}

        if intent.action == "error":
            response = AgentResponse(action="error", message=intent.message, confidence=0.0)
        else:
            response = _clarify(
                intent.message or "I didn't understand that. Could you rephrase your request?",
                intent.suggestions,
                confidence=intent.confidence,
            )
        return {**state, "context": context, "intent": intent, "query_type": "done", "response": response}

    # ------------------------------------------------------------------
    # resolve
    # ------------------------------------------------------------------

    async def _find_target(state: AgentState, symbol: str, verb: str, use_context: bool = False):
        """
        Existing holding a reduce / delete / edit / increase refers to.
        Returns (holding, None) or (None, clarify response).

        use_context lets the context provider's match win over fuzzy symbol
        matching; renames use it since the named thing is often a custodian.
        """
        holdings = state.get("holdings", [])
        context = state.get("context")
        matched = context.matched_holding if context else find_holding(state["user_query"], holdings)
        if not symbol:
            if matched is not None:
                return matched, None
        else:
            exact = pick_existing(symbol, holdings)
            if exact is not None:
                return exact, None
            if use_context and matched is not None:
                return matched, None
            outcome = await services.matcher.find_matches(symbol, holdings)
            if outcome.suggested_action == "add_to_existing":
                best = outcome.best_match
                return next(h for h in holdings if h.id == best.holding_id), None
            if outcome.suggested_action == "clarify":
                return None, _clarify(
                    f"I couldn't find {symbol} exactly. Did you mean one of these?",
                    _candidate_suggestions(verb, outcome.matches),
                    data={"matches": [m.model_dump() for m in outcome.matches]},
                    confidence=outcome.best_match.confidence,
                )

        owned = ", ".join(h.symbol for h in holdings) or "none"
        return None, _clarify(
            f"I couldn't find a holding matching {symbol or 'your request'}. Your holdings: {owned}",
            [f"{verb} {h.symbol}" for h in holdings[:3]],
            confidence=0.3,
        )

    async def _market_price(symbol: str) -> Optional[dict]:
        try:
            return await services.lookup(symbol)
        except Exception as e:
            logger.warning("Price lookup failed for %s: %s", symbol, e)
            return None

    async def resolve_node(state: AgentState) -> AgentState:
        """
        Turns the payload into an AgentAction: matches holdings, fills a
        missing price from market data and asks for anything still missing.
        """
        intent = state["intent"]
        payload = intent.entities
        query = state["user_query"]
        currency = (getattr(payload, "currency", None) or state.get("display_currency") or "SGD").upper()
        holdings = state.get("holdings", [])

        def _done(response: AgentResponse, **extra) -> AgentState:
            return {**state, "query_type": "done", "response": response, **extra}

        def _action(kind: ActionKind, p, holding: Optional[Holding] = None, lookup=None) -> AgentState:
            action = AgentAction(
                kind=kind, payload=p, holding_id=holding.id if holding else None,
                user_input=(state.get("pending_clarification") or {}).get("original_input") or query,
                currency=currency, lookup=lookup,
            )
            return {**state, "query_type": "validate", "action": action, "target": holding, "missing_fields": []}

        if isinstance(payload, AddHolding):
            if payload.quantity is None:
                return _done(
                    _clarify(f"How many {payload.symbol} shares did you buy?",
                             [f"Add 10 shares of {payload.symbol}", f"Add 100 shares of {payload.symbol}"]),
                    missing_fields=["quantity"],
                )
            lookup = None
            if payload.unit_price is None:
                lookup = await _market_price(payload.symbol)
                if not lookup or not lookup.get("price"):
                    return _done(
                        _clarify(f"What price did you pay for {payload.symbol}?",
                                 [f"Add {payload.quantity:g} shares of {payload.symbol} at $100"]),
                        missing_fields=["price"],
                    )
                currency = (lookup.get("currency") or currency).upper()
                payload = payload.model_copy(update={"unit_price": lookup["price"], "currency": currency})

            outcome = await services.matcher.find_matches(payload.symbol, holdings, payload.name)
            if outcome.suggested_action == "clarify":
                return _done(_clarify(
                    f"You don't hold {payload.symbol}, but these look similar. Which did you mean?",
                    _candidate_suggestions(f"Add {payload.quantity:g} shares of", outcome.matches)
                    + [f"Create new holding {payload.symbol}"],
                    data={"matches": [m.model_dump() for m in outcome.matches]},
                    confidence=outcome.best_match.confidence,
                ))
            if outcome.suggested_action == "add_to_existing":
                holding = next(h for h in holdings if h.id == outcome.best_match.holding_id)
                payload = payload.model_copy(update={"symbol": holding.symbol})
                return _action(ActionKind.ADD_TO_EXISTING, payload, holding, lookup)
            if outcome.external_lookup and not payload.name:
                payload = payload.model_copy(update={"name": outcome.external_lookup.get("name")})
            return _action(ActionKind.ADD_HOLDING, payload, None, lookup)

        if isinstance(payload, IncreaseHolding):
            holding, response = await _find_target(state, payload.symbol, f"Add {payload.quantity or 10:g} more")
            if response:
                return _done(response)
            if payload.quantity is None:
                return _done(
                    _clarify(f"How many {holding.symbol} units did you add?",
                             [f"Buy 10 more {holding.symbol}", f"Buy 100 more {holding.symbol}"]),
                    missing_fields=["quantity"],
                )
            lookup = None
            if payload.unit_price is None:
                lookup = await _market_price(holding.symbol)
                if lookup and lookup.get("price"):
                    currency = (lookup.get("currency") or currency).upper()
                    payload = payload.model_copy(update={"unit_price": lookup["price"], "currency": currency})
            payload = payload.model_copy(update={"symbol": holding.symbol})
            return _action(ActionKind.INCREASE_HOLDING, payload, holding, lookup)

        if isinstance(payload, ReduceHolding):
            holding, response = await _find_target(state, payload.symbol, "Sell half of")
            if response:
                return _done(response)
            if payload.quantity is None and payload.fraction is None:
                return _done(
                    _clarify(f"How many {holding.symbol} units did you sell? You hold {holding.quantity or 0:g}.",
                             [f"Sell half my {holding.symbol}", f"Sell all my {holding.symbol}"]),
                    missing_fields=["quantity"],
                )
            return _action(ActionKind.REDUCE_HOLDING, payload.model_copy(update={"symbol": holding.symbol}), holding)

        if isinstance(payload, DeleteHolding):
            holding, response = await _find_target(state, payload.symbol, "Remove")
            if response:
                return _done(response)
            return _action(ActionKind.DELETE_HOLDING, payload.model_copy(update={"symbol": holding.symbol}), holding)

        if isinstance(payload, EditHolding):
            clarification = state.get("pending_clarification") or {}
            if not payload.symbol and clarification.get("holding_id"):
                holding = next((h for h in holdings if h.id == clarification["holding_id"]), None)
                if holding is None:
                    return _done(_clarify("That holding no longer exists. What would you like to rename?"))
            else:
                holding, response = await _find_target(
                    state, payload.symbol, "Edit", use_context=bool(payload.rename_value)
                )
                if response:
                    return _done(response)

            if payload.rename_value and not payload.changes():
                options = rename_options(holding, query, payload.rename_value)
                return _done(
                    _clarify(
                        options["message"],
                        options["options"],
                        data={"options": options["options"], "holding_id": holding.id, "symbol": holding.symbol},
                        confidence=0.6,
                    ),
                    pending_clarification={
                        "holding_id": holding.id,
                        "original_input": query,
                        "new_value": payload.rename_value,
                    },
                )
            return _action(ActionKind.EDIT_HOLDING, payload.model_copy(update={"symbol": holding.symbol}), holding)

        if isinstance(payload, AddYearlyData):
            return _action(ActionKind.ADD_YEARLY_DATA, payload)

        return _done(_clarify("I didn't understand that. Could you rephrase your request?"))

    # ------------------------------------------------------------------
    # validate
    # ------------------------------------------------------------------

    async def validate_node(state: AgentState) -> AgentState:
        """Validates the built action and returns the confirmation prompt."""
        action: AgentAction = state["action"]
        payload = action.payload
        target = state.get("target")
        holdings = state.get("holdings", [])

        if isinstance(payload, AddYearlyData):
            validation = validate_yearly(payload, state.get("yearly_data", []))
        elif action.kind == ActionKind.ADD_TO_EXISTING:
            # Adding to the matched holding is expected, so no duplicate warning
            validation = validate_holding(payload, [], target)
        else:
            validation = validate_holding(payload, holdings, target)

        if not validation.is_valid:
            return {
                **state,
                "validation": validation,
                "response": _clarify(
                    clarification_message(validation.errors, validation.warnings),
                    validation.suggestions,
                    confidence=validation.confidence,
                ),
            }

        warnings = validation.warnings
        price_note = " (current market price)" if action.lookup and action.lookup.get("price") else ""

        if action.kind in (ActionKind.ADD_TO_EXISTING, ActionKind.INCREASE_HOLDING):
            price = payload.unit_price or target.price_for_valuation
            currency = action.currency if payload.unit_price else target.entry_currency
            weighted = await calculate_weighted_average(
                target.symbol, payload.quantity, price, round(payload.quantity * price, 2), currency,
                load_holdings=_holdings_loader([target]), load_rates=services.load_rates,
            )
            message = add_confirmation(
                payload.model_copy(update={"unit_price": price}), currency, weighted, price_note, warnings
            )
            data_extra = {"weighted_average": weighted.model_dump()}
        elif action.kind == ActionKind.ADD_HOLDING:
            message = add_confirmation(
                payload, action.currency, None, price_note, warnings,
                category=payload.category, location=payload.location,
            )
            data_extra = {}
        elif action.kind == ActionKind.REDUCE_HOLDING:
            quantity = payload.resolve_quantity(target.quantity or 0)
            message = reduce_confirmation(payload, target, quantity, warnings)
            data_extra = {"quantity_to_sell": quantity}
        elif action.kind == ActionKind.DELETE_HOLDING:
            message = delete_confirmation(target)
            data_extra = {}
        elif action.kind == ActionKind.EDIT_HOLDING:
            message = edit_confirmation(payload, target, warnings)
            data_extra = {}
        else:
            message = yearly_confirmation(payload, warnings)
            data_extra = {}

        intent = state["intent"]
        pending = action.model_dump(mode="json")
        response = AgentResponse(
            action="confirm",
            message=message,
            data={"pending_action": pending, "intent": intent.intent.value, **data_extra},
            confidence=min(intent.confidence, validation.confidence),
            suggestions=validation.suggestions,
            requires_confirmation=True,
        )
        return {
            **state,
            "validation": validation,
            "pending_action": pending,
            "pending_clarification": None,
            "response": response,
        }

    # ------------------------------------------------------------------
    # execute / undo
    # ------------------------------------------------------------------

    async def execute_node(state: AgentState) -> AgentState:
        """Executes a confirmed action echoed back by the client."""
        try:
            action = AgentAction.model_validate(state["pending_action"])
        except ValueError as e:
            logger.warning("Invalid pending action: %s", e)
            return {
                **state,
                "pending_action": None,
                "response": AgentResponse(
                    action="error", message="That confirmation has expired. Please repeat your request."
                ),
            }

        result = await services.executor.execute(action)
        response = AgentResponse(
            action="execute" if result.success else "error",
            message=result.message,
            data=result.model_dump(mode="json"),
            confidence=1.0 if result.success else 0.0,
            suggestions=["undo"] if result.success else [],
        )
        return {**state, "pending_action": None, "response": response}

    async def undo_node(state: AgentState) -> AgentState:
        result = await services.executor.undo()
        response = AgentResponse(
            action="execute" if result.success else "error",
            message=result.message,
            data=result.model_dump(mode="json"),
            confidence=1.0 if result.success else 0.0,
        )
        return {**state, "pending_action": None, "response": response}

    # ------------------------------------------------------------------
    # format
    # ------------------------------------------------------------------

    async def format_node(state: AgentState) -> AgentState:
        response = state.get("response") or AgentResponse(
            action="error", message="Sorry, I encountered an error. Please try rephrasing your request."
        )
        return {
            **state,
            "response": response,
            "final_response": response.message,
            "messages": _append_messages(state, state.get("user_query", ""), response.message),
        }

    # ------------------------------------------------------------------
    # Routing
    # ------------------------------------------------------------------

    def _route_after_classify(state: AgentState) -> str:
        qt = state.get("query_type")
        if qt == "confirmed":
            return "execute"
        if qt == "undo":
            return "undo"
        if qt == "intent":
            return "recognize"
        return "format"

    def _route_after_recognize(state: AgentState) -> str:
        return "resolve" if state.get("query_type") == "mutation" else "format"

    def _route_after_resolve(state: AgentState) -> str:
        return "validate" if state.get("query_type") == "validate" else "format"

    g = StateGraph(AgentState)

    g.add_node("classify", classify_node)
    g.add_node("recognize", recognize_node)
    g.add_node("resolve", resolve_node)
    g.add_node("validate", validate_node)
    g.add_node("execute", execute_node)
    g.add_node("undo", undo_node)
    g.add_node("format", format_node)

    g.set_entry_point("classify")

    g.add_conditional_edges(
        "classify",
        _route_after_classify,
        {"execute": "execute", "undo": "undo", "recognize": "recognize", "format": "format"},
    )
    g.add_conditional_edges("recognize", _route_after_recognize, {"resolve": "resolve", "format": "format"})
    g.add_conditional_edges("resolve", _route_after_resolve, {"validate": "validate", "format": "format"})

    g.add_edge("validate", "format")
    g.add_edge("execute", "format")
    g.add_edge("undo", "format")
    g.add_edge("format", END)

    return g.compile()
