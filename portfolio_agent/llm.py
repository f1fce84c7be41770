"""
LLM tier of intent recognition.

The completion service is a black box that takes a system prompt plus the
user's message and returns text. The text must contain a JSON decision;
parse_llm_response() recovers it in two stages (direct parse, then the
first {...} block with control characters stripped) and validates it with
pydantic. Anything unusable becomes an error response with confidence 0.
"""

import json
import os
import re
from typing import Literal, Optional, Protocol

import anthropic
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from portfolio_agent.context import RichContext, format_for_prompt
from portfolio_agent.errors import LLMResponseError
from portfolio_agent.log_config import get_logger
from portfolio_agent.models import MUTATING_INTENTS, IntentKind, IntentResult, payload_from_entities
from portfolio_agent.tools import OPERATION_REGISTRY

logger = get_logger(__name__)

DEFAULT_MODEL = "claude-sonnet-4-20250514"

ERROR_MESSAGE = "Sorry, I encountered an error. Please try rephrasing your request."

SYSTEM_PROMPT = """You are a financial portfolio assistant. Extract structured data from the user's message and respond with JSON only.

Available actions:
{operations}

Categories for holdings: Core, Growth, Hedge, Liquidity
Currencies: SGD, USD, INR

IMPORTANT: When the user mentions a company name or a misspelled symbol, use the closest matching symbol from their portfolio, not the user's wording.
When reducing by "half", set quantity to "half"; the exact number is calculated later.
Any change to holdings or yearly data must set requires_confirmation to true.

Return JSON only:
{{
  "action": "confirm|clarify|analyze|error",
  "intent": "add_holding|edit_holding|delete_holding|reduce_holding|increase_holding|add_yearly_data|portfolio_analysis|unknown",
  "entities": {{...}},
  "message": "Human readable confirmation or clarification",
  "confidence": 0.95,
  "requires_confirmation": true,
  "suggestions": ["suggestion1", "suggestion2"]
}}

Examples:
User: "Add 100 shares of [SYMBOL] at $150"
Response: {{"action":"confirm","intent":"add_holding","entities":{{"symbol":"[SYMBOL]","quantity":100,"unitPrice":150,"currency":"USD","category":"Core"}},"message":"I'll add 100 shares of [SYMBOL] at $150 USD to your portfolio.","confidence":0.95,"requires_confirmation":true}}

User: "Reduce my [COMPANY] holdings by half. I sold it at $115"
Response: {{"action":"confirm","intent":"reduce_holding","entities":{{"symbol":"[FOUND_SYMBOL]","quantity":"half","unitPrice":115,"currency":"USD"}},"message":"I'll reduce your [FOUND_SYMBOL] holding by half at $115 USD. Is this correct?","confidence":0.9,"requires_confirmation":true}}

User: "2023 income was $120,000"
Response: {{"action":"confirm","intent":"add_yearly_data","entities":{{"year":2023,"income":120000}},"message":"I'll add data for 2023: Income: $120,000","confidence":0.95,"requires_confirmation":true}}

User: "Update the current price of [COMPANY] to $130"
Response: {{"action":"confirm","intent":"edit_holding","entities":{{"symbol":"[FOUND_SYMBOL]","currentUnitPrice":130}},"message":"I'll update your [FOUND_SYMBOL] current market price to $130. Is this correct?","confidence":0.95,"requires_confirmation":true}}

{context}
"""

_CONTROL_CHARS = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]")


class LLMDecision(BaseModel):
    model_config = ConfigDict(extra="ignore")

    action: Literal["confirm", "clarify", "analyze", "error", "execute"] = "clarify"
    intent: str = "unknown"
    entities: dict = Field(default_factory=dict)
    message: str = "I understand your request."
    confidence: float = Field(default=0.8, ge=0.0, le=1.0)
    requires_confirmation: bool = False
    suggestions: list[str] = Field(default_factory=list)


def parse_llm_response(text: str) -> LLMDecision:
    """Raises LLMResponseError when no valid decision can be recovered."""
    if not text or not text.strip():
        raise LLMResponseError("Empty response from completion service", text or "")

    try:
        data = json.loads(text)
    except json.JSONDecodeError:
        m = re.search(r"\{.*\}", text, re.S)
        if not m:
            raise LLMResponseError("No JSON object in completion", text)
        try:
            data = json.loads(_CONTROL_CHARS.sub("", m.group(0)), strict=False)
        except json.JSONDecodeError as e:
            raise LLMResponseError(f"Malformed JSON in completion: {e}", text)

    if not isinstance(data, dict):
        raise LLMResponseError("Completion JSON is not an object", text)
    try:
        return LLMDecision.model_validate(data)
    except ValidationError as e:
        raise LLMResponseError(f"Completion JSON failed validation: {e.error_count()} errors", text)


class Completer(Protocol):
    async def complete(self, system: str, user: str) -> str: ...


class AnthropicCompleter:
    def __init__(self, api_key: Optional[str] = None, model: Optional[str] = None):
        self.client = anthropic.AsyncAnthropic(api_key=api_key or os.getenv("ANTHROPIC_API_KEY"))
        self.model = model or os.getenv("AGENT_LLM_MODEL", DEFAULT_MODEL)

    async def complete(self, system: str, user: str) -> str:
        response = await self.client.messages.create(
            model=self.model,
            max_tokens=500,
            temperature=0.1,
            system=system,
            messages=[{"role": "user", "content": user}],
            timeout=25.0,
        )
        return "".join(block.text for block in response.content if getattr(block, "type", "") == "text")


def default_completer() -> Optional[Completer]:
    """An Anthropic completer when ANTHROPIC_API_KEY is set, else None."""
    if not os.getenv("ANTHROPIC_API_KEY"):
        return None
    return AnthropicCompleter()


def simple_fallback(message: str) -> tuple[str, list[str]]:
    """Keyword clarification used when no completion service is configured."""
    lower = message.lower()
    if any(w in lower for w in ("add", "buy", "purchase")):
        return (
            "I understand you want to add something. Could you be more specific?",
            ["Add 100 shares of [SYMBOL] at $150", "Add 50 shares of [SYMBOL] at $200"],
        )
    if any(w in lower for w in ("income", "earned", "made")):
        return (
            "I understand you want to add income data. Could you specify the year and amount?",
            ["2023 income was $120,000", "2024 income is $150,000"],
        )
    if "portfolio" in lower or "performance" in lower:
        return (
            "I can help you analyze your portfolio. What specific information would you like?",
            ["How is my portfolio performing?", "Show my allocation breakdown"],
        )
    return (
        "I didn't understand that. Try saying something like \"Add 100 shares of [SYMBOL]\" "
        "or \"2023 income was $120k\"",
        ["Add 100 shares of [SYMBOL] at $150", "2023 income was $120,000", "How is my portfolio performing?"],
    )


def _operations_block() -> str:
    lines = []
    for op in OPERATION_REGISTRY.values():
        params = ", ".join(op["parameters"]) or "none"
        lines.append(f"- {op['name']}: {{{params}}} {op['description']}")
    return "\n".join(lines)


def build_system_prompt(context: RichContext) -> str:
    return SYSTEM_PROMPT.format(operations=_operations_block(), context=format_for_prompt(context))


class LLMIntentService:
    def __init__(self, completer: Optional[Completer] = None):
        self.completer = completer

    @staticmethod
    def _error() -> IntentResult:
        return IntentResult(
            intent=IntentKind.UNKNOWN, confidence=0.0, source="llm", action="error", message=ERROR_MESSAGE
        )

    async def recognize(self, message: str, context: RichContext) -> IntentResult:
        if self.completer is None:
            logger.warning("ANTHROPIC_API_KEY not available, using keyword fallback")
            text, suggestions = simple_fallback(message)
            return IntentResult(
                intent=IntentKind.UNKNOWN,
                confidence=0.3,
                source="llm",
                action="clarify",
                message=text,
                suggestions=suggestions,
            )

        try:
            raw = await self.completer.complete(build_system_prompt(context), message)
        except Exception as e:
            logger.error("Completion service failed: %s", e)
            return self._error()

        try:
            decision = parse_llm_response(raw)
        except LLMResponseError as e:
            logger.error("Unusable completion: %s | raw=%r", e, e.raw[:200])
            return self._error()

        try:
            intent = IntentKind(decision.intent)
        except ValueError:
            intent = IntentKind.UNKNOWN

        payload = None
        if intent in MUTATING_INTENTS or intent == IntentKind.PORTFOLIO_ANALYSIS:
            try:
                payload = payload_from_entities(intent.value, decision.entities)
            except (ValidationError, ValueError) as e:
                logger.warning("LLM entities for %s did not validate: %s", intent.value, e)
                return IntentResult(
                    intent=intent,
                    confidence=min(decision.confidence, 0.5),
                    source="llm",
                    action="clarify",
                    message="I couldn't work out all the details. Could you rephrase with the symbol and amounts?",
                    suggestions=decision.suggestions,
                )

        return IntentResult(
            intent=intent,
            confidence=decision.confidence,
            entities=payload,
            source="llm",
            action=decision.action,
            message=decision.message,
            suggestions=decision.suggestions,
        )
