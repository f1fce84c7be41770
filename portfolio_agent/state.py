from typing import Optional, TypedDict

from langchain_core.messages import BaseMessage

from portfolio_agent.context import RichContext
from portfolio_agent.models import (
    AgentAction,
    AgentResponse,
    Holding,
    IntentResult,
    ValidationResult,
    YearlyData,
)


class AgentState(TypedDict, total=False):
    # Conversation
    messages: list[BaseMessage]
    user_query: str
    query_type: str

    # Caller-supplied portfolio context
    holdings: list[Holding]
    yearly_data: list[YearlyData]
    financial_profile: dict
    display_currency: str

    # Intent resolution
    context: Optional[RichContext]
    intent: Optional[IntentResult]
    target: Optional[Holding]

    # Human-in-the-loop: pending_action is the fully-built action echoed back
    # by the client on the next message; pending_clarification carries the
    # holding and value of an open rename question.
    action: Optional[AgentAction]
    pending_action: Optional[dict]
    pending_clarification: Optional[dict]
    validation: Optional[ValidationResult]
    missing_fields: list[str]

    # Response
    response: Optional[AgentResponse]
    final_response: Optional[str]
    error: Optional[str]
