"""
PortfolioAgent: the public entry point wrapping the compiled graph, the
executor and the store behind process_message / execute_action / undo.
"""

from typing import Optional, Union

from langchain_core.messages import AIMessage, HumanMessage

from portfolio_agent.context import ContextProvider
from portfolio_agent.executor import ActionExecutor
from portfolio_agent.graph import AgentServices, build_graph
from portfolio_agent.learning import LearningService
from portfolio_agent.llm import Completer, LLMIntentService, default_completer
from portfolio_agent.log_config import get_logger
from portfolio_agent.matcher import SmartHoldingMatcher, SymbolLookup
from portfolio_agent.models import (
    ActionRecord,
    AgentAction,
    AgentResponse,
    ExecutionResult,
    Holding,
    YearlyData,
)
from portfolio_agent.state import AgentState
from portfolio_agent.store import PortfolioStore
from portfolio_agent.tools.exchange_rates import get_exchange_rates
from portfolio_agent.tools.market_data import lookup_symbol
from portfolio_agent.weighted_average import RatesLoader

logger = get_logger(__name__)


def history_to_messages(history: Optional[list[dict]]) -> list:
    """[{role, content}] chat history to langchain messages, other roles dropped."""
    messages = []
    for m in history or []:
        role = m.get("role", "")
        content = m.get("content", "")
        if role == "user":
            messages.append(HumanMessage(content=content))
        elif role == "assistant":
            messages.append(AIMessage(content=content))
    return messages


class PortfolioAgent:
    def __init__(
        self,
        store: Optional[PortfolioStore] = None,
        completer: Optional[Completer] = None,
        lookup: SymbolLookup = lookup_symbol,
        load_rates: RatesLoader = get_exchange_rates,
    ):
        self.store = store or PortfolioStore()
        self.learning = LearningService(self.store)
        self.executor = ActionExecutor(self.store, self.learning, load_rates)
        self.graph = build_graph(AgentServices(
            context_provider=ContextProvider(self.learning),
            llm=LLMIntentService(completer if completer is not None else default_completer()),
            matcher=SmartHoldingMatcher(lookup),
            executor=self.executor,
            lookup=lookup,
            load_rates=load_rates,
        ))

    async def _holdings(self, context: dict) -> list[Holding]:
        if context.get("holdings") is not None:
            return [h if isinstance(h, Holding) else Holding.model_validate(h) for h in context["holdings"]]
        return await self.store.list_holdings()

    async def _yearly(self, context: dict) -> list[YearlyData]:
        if context.get("yearly_data") is not None:
            return [y if isinstance(y, YearlyData) else YearlyData.model_validate(y) for y in context["yearly_data"]]
        return await self.store.list_yearly()

    async def run(
        self,
        message: str,
        context: Optional[dict] = None,
        pending_action: Optional[dict] = None,
        pending_clarification: Optional[dict] = None,
        history: Optional[list[dict]] = None,
    ) -> AgentState:
        """Runs the graph and returns the final state (response plus pending state to echo back)."""
        context = context or {}
        initial_state: AgentState = {
            "user_query": message,
            "messages": history_to_messages(history),
            "query_type": "",
            "holdings": await self._holdings(context),
            "yearly_data": await self._yearly(context),
            "financial_profile": context.get("financial_profile") or {},
            "display_currency": (context.get("display_currency") or "SGD").upper(),
            "context": None,
            "intent": None,
            "target": None,
            "action": None,
            "pending_action": pending_action,
            "pending_clarification": pending_clarification,
            "validation": None,
            "missing_fields": [],
            "response": None,
            "final_response": None,
            "error": None,
        }
        return await self.graph.ainvoke(initial_state)

    async def process_message(
        self,
        message: str,
        context: Optional[dict] = None,
        pending_action: Optional[dict] = None,
        pending_clarification: Optional[dict] = None,
        history: Optional[list[dict]] = None,
    ) -> AgentResponse:
        try:
            state = await self.run(message, context, pending_action, pending_clarification, history)
        except Exception:
            logger.exception("Agent failed on message: %s", message[:80])
            return AgentResponse(
                action="error", message="Sorry, I encountered an error. Please try rephrasing your request."
            )
        return state["response"]

    async def execute_action(self, action: Union[AgentAction, dict]) -> ExecutionResult:
        if isinstance(action, dict):
            action = AgentAction.model_validate(action)
        return await self.executor.execute(action)

    async def undo(self, last_action: Optional[ActionRecord] = None) -> ExecutionResult:
        return await self.executor.undo(last_action)
