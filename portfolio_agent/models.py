"""
Typed records shared by every stage of the agent.

Holdings and yearly data accept the camelCase keys the dashboard sends
(valueSGD, unitPrice, netWorth ...) as well as their snake_case names.

Intent payloads are a closed, tagged union discriminated on ``intent`` so the
validator and executor dispatch on the variant instead of probing optional
keys of a free-form dict.
"""

from datetime import datetime
from enum import Enum
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, model_validator

CATEGORIES = ("Core", "Growth", "Hedge", "Liquidity")
CURRENCIES = ("SGD", "USD", "INR")


class IntentKind(str, Enum):
    ADD_HOLDING = "add_holding"
    EDIT_HOLDING = "edit_holding"
    DELETE_HOLDING = "delete_holding"
    REDUCE_HOLDING = "reduce_holding"
    INCREASE_HOLDING = "increase_holding"
    ADD_YEARLY_DATA = "add_yearly_data"
    PORTFOLIO_ANALYSIS = "portfolio_analysis"
    CONFIRM_ACTION = "confirm_action"
    CANCEL_ACTION = "cancel_action"
    UNDO_ACTION = "undo_action"
    UNKNOWN = "unknown"


class ActionKind(str, Enum):
    ADD_HOLDING = "add_holding"
    ADD_TO_EXISTING = "add_to_existing"
    INCREASE_HOLDING = "increase_holding"
    EDIT_HOLDING = "edit_holding"
    DELETE_HOLDING = "delete_holding"
    REDUCE_HOLDING = "reduce_holding"
    ADD_YEARLY_DATA = "add_yearly_data"


HOLDING_INTENTS = {
    IntentKind.ADD_HOLDING,
    IntentKind.EDIT_HOLDING,
    IntentKind.DELETE_HOLDING,
    IntentKind.REDUCE_HOLDING,
    IntentKind.INCREASE_HOLDING,
}

MUTATING_INTENTS = HOLDING_INTENTS | {IntentKind.ADD_YEARLY_DATA}


class _Record(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


# ---------------------------------------------------------------------------
# Stored records
# ---------------------------------------------------------------------------

class ExchangeRates(_Record):
    SGD_TO_USD: float
    SGD_TO_INR: float
    USD_TO_SGD: float
    USD_TO_INR: float
    INR_TO_SGD: float
    INR_TO_USD: float

    def rate(self, from_currency: str, to_currency: str) -> float:
        from_currency = from_currency.upper()
        to_currency = to_currency.upper()
        if from_currency == to_currency:
            return 1.0
        key = f"{from_currency}_TO_{to_currency}"
        value = getattr(self, key, None)
        if not value:
            raise KeyError(f"Exchange rate not found for {from_currency} to {to_currency}")
        return value


class Holding(_Record):
    id: str
    symbol: str
    name: str = ""
    category: str = "Growth"
    location: str = ""
    quantity: float = 0.0
    unit_price: float = Field(default=0.0, alias="unitPrice")
    current_unit_price: Optional[float] = Field(default=None, alias="currentUnitPrice")
    cost_basis: float = Field(default=0.0, alias="costBasis")
    value_sgd: float = Field(default=0.0, alias="valueSGD")
    value_usd: float = Field(default=0.0, alias="valueUSD")
    value_inr: float = Field(default=0.0, alias="valueINR")
    entry_currency: str = Field(default="SGD", alias="entryCurrency")
    manual_pricing: bool = Field(default=False, alias="manualPricing")
    version: int = 1

    @model_validator(mode="before")
    @classmethod
    def _null_numbers(cls, data: Any) -> Any:
        # The dashboard sends null for holdings tracked by value only
        if isinstance(data, dict):
            data = dict(data)
            for key in ("quantity", "unitPrice", "unit_price", "costBasis", "cost_basis"):
                if key in data and data[key] is None:
                    data[key] = 0.0
        return data

    def value_in(self, currency: str) -> float:
        return getattr(self, f"value_{currency.lower()}", 0.0) or 0.0

    @property
    def price_for_valuation(self) -> float:
        return self.current_unit_price or self.unit_price


class YearlyData(_Record):
    year: int
    income: Optional[float] = None
    expenses: Optional[float] = None
    savings: Optional[float] = None
    net_worth: Optional[float] = Field(default=None, alias="netWorth")
    market_gains: Optional[float] = Field(default=None, alias="marketGains")


class ActionRecord(_Record):
    id: Optional[int] = None
    user_input: str
    action_taken: str
    success: bool
    pattern_used: Optional[str] = None
    timestamp: datetime
    metadata: dict = Field(default_factory=dict)


class UserPattern(_Record):
    id: Optional[int] = None
    pattern: str
    success_rate: float
    usage_count: int
    last_used: datetime
    examples: list[str] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Intent payloads (tagged union)
# ---------------------------------------------------------------------------

_FRACTION_WORDS = {"half": 0.5, "quarter": 0.25, "third": 1 / 3, "all": 1.0}


class AddHolding(_Record):
    intent: Literal["add_holding"] = "add_holding"
    symbol: str = ""
    name: Optional[str] = None
    quantity: Optional[float] = None
    unit_price: Optional[float] = Field(default=None, alias="unitPrice")
    currency: Optional[str] = None
    category: Optional[str] = None
    location: Optional[str] = None


class IncreaseHolding(_Record):
    intent: Literal["increase_holding"] = "increase_holding"
    symbol: str = ""
    quantity: Optional[float] = None
    unit_price: Optional[float] = Field(default=None, alias="unitPrice")
    currency: Optional[str] = None


class ReduceHolding(_Record):
    intent: Literal["reduce_holding"] = "reduce_holding"
    symbol: str = ""
    quantity: Optional[float] = None
    fraction: Optional[float] = None
    unit_price: Optional[float] = Field(default=None, alias="unitPrice")
    currency: Optional[str] = None

    @model_validator(mode="before")
    @classmethod
    def _fraction_words(cls, data: Any) -> Any:
        """Accept "half" / "all" style quantities from the LLM."""
        if isinstance(data, dict) and isinstance(data.get("quantity"), str):
            data = dict(data)
            raw = data["quantity"].strip().lower()
            if raw in _FRACTION_WORDS:
                data["fraction"] = _FRACTION_WORDS[raw]
                data["quantity"] = None
            else:
                data["quantity"] = float(raw.replace(",", ""))
        return data

    def resolve_quantity(self, held: float) -> Optional[float]:
        if self.quantity is not None:
            return self.quantity
        if self.fraction is not None:
            return round(held * self.fraction, 8)
        return None


class EditHolding(_Record):
    intent: Literal["edit_holding"] = "edit_holding"
    symbol: str = ""
    new_symbol: Optional[str] = Field(default=None, alias="newSymbol")
    name: Optional[str] = None
    location: Optional[str] = None
    category: Optional[str] = None
    quantity: Optional[float] = None
    unit_price: Optional[float] = Field(default=None, alias="unitPrice")
    current_unit_price: Optional[float] = Field(default=None, alias="currentUnitPrice")
    manual_pricing: Optional[bool] = Field(default=None, alias="manualPricing")
    # Raw rename target before it is resolved to symbol / name / location
    rename_value: Optional[str] = None

    def changes(self) -> dict:
        fields = (
            "new_symbol", "name", "location", "category", "quantity",
            "unit_price", "current_unit_price", "manual_pricing",
        )
        return {f: getattr(self, f) for f in fields if getattr(self, f) is not None}

    @property
    def is_rename(self) -> bool:
        return bool(self.rename_value or self.new_symbol or self.name or self.location)


class DeleteHolding(_Record):
    intent: Literal["delete_holding"] = "delete_holding"
    symbol: str = ""


class AddYearlyData(_Record):
    intent: Literal["add_yearly_data"] = "add_yearly_data"
    year: Optional[int] = None
    income: Optional[float] = None
    expenses: Optional[float] = None
    savings: Optional[float] = None
    net_worth: Optional[float] = Field(default=None, alias="netWorth")
    market_gains: Optional[float] = Field(default=None, alias="marketGains")

    def monetary_fields(self) -> dict:
        fields = ("income", "expenses", "net_worth", "savings", "market_gains")
        return {f: getattr(self, f) for f in fields if getattr(self, f) is not None}


class PortfolioAnalysis(_Record):
    intent: Literal["portfolio_analysis"] = "portfolio_analysis"


IntentPayload = Annotated[
    Union[
        AddHolding,
        IncreaseHolding,
        ReduceHolding,
        EditHolding,
        DeleteHolding,
        AddYearlyData,
        PortfolioAnalysis,
    ],
    Field(discriminator="intent"),
]

_PAYLOAD_ADAPTER = TypeAdapter(IntentPayload)


def payload_from_entities(intent: str, entities: dict) -> IntentPayload:
    """Builds the payload variant for ``intent``; raises pydantic.ValidationError."""
    return _PAYLOAD_ADAPTER.validate_python({**(entities or {}), "intent": intent})


# ---------------------------------------------------------------------------
# Transient results
# ---------------------------------------------------------------------------

class IntentResult(_Record):
    intent: IntentKind
    confidence: float
    entities: Optional[IntentPayload] = None
    source: Literal["pattern", "llm", "intercept", "none"] = "pattern"
    # Carried through from the LLM tier
    action: Optional[str] = None
    message: Optional[str] = None
    suggestions: list[str] = Field(default_factory=list)


class MatchResult(_Record):
    symbol: str
    name: str = ""
    confidence: float
    holding_id: Optional[str] = None
    match_type: Literal["exact_symbol", "similar_symbol", "similar_name", "lookup"] = "exact_symbol"


class MatchOutcome(_Record):
    suggested_action: Literal["add_to_existing", "create_new", "clarify"]
    best_match: Optional[MatchResult] = None
    matches: list[MatchResult] = Field(default_factory=list)
    external_lookup: Optional[dict] = None


class ValidationResult(_Record):
    is_valid: bool
    confidence: float
    errors: list[str] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)
    suggestions: list[str] = Field(default_factory=list)


class WeightedAverageResult(_Record):
    new_quantity: float
    new_avg_cost_basis: float
    new_total_invested: float
    is_new_holding: bool
    exact_quantity: float
    existing_data: Optional[dict] = None


class AgentAction(_Record):
    kind: ActionKind
    payload: IntentPayload
    holding_id: Optional[str] = None
    user_input: str = ""
    currency: str = "SGD"
    lookup: Optional[dict] = None


class ExecutionResult(_Record):
    success: bool
    message: str
    kind: Optional[ActionKind] = None
    data: Optional[dict] = None
    original_data: Optional[dict] = None
    history_id: Optional[int] = None


class AgentResponse(_Record):
    action: Literal["confirm", "clarify", "execute", "analyze", "error", "cancelled"]
    data: Optional[dict] = None
    message: str
    confidence: float = 0.0
    suggestions: list[str] = Field(default_factory=list)
    requires_confirmation: bool = False
