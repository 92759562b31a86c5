from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field, field_validator, model_validator


EventType = Literal[
    "step",
    "price_data",
    "answer_chunk",
    "answer_complete",
    "session_token",
    "direct_answer",
    "error",
]
TERMINAL_EVENTS = {"answer_complete", "direct_answer", "error"}


class SavingsPlanPrice(BaseModel):
    term: str = ""
    price: Optional[float] = Field(default=None, alias="retailPrice")

    model_config = {"frozen": True, "populate_by_name": True, "extra": "ignore"}


class PriceRecord(BaseModel):
    sku_name: str = Field(default="", alias="armSkuName")
    unit_price: float = Field(default=0.0, alias="retailPrice")
    unit: str = Field(default="", alias="unitOfMeasure")
    region_code: str = Field(default="", alias="armRegionName")
    meter_id: str = Field(default="", alias="meterId")
    meter_name: str = Field(default="", alias="meterName")
    product_name: str = Field(default="", alias="productName")
    offer_type: str = Field(default="", alias="type")
    location: Optional[str] = None
    reservation_term: Optional[str] = Field(default=None, alias="reservationTerm")
    savings_plans: Optional[List[SavingsPlanPrice]] = Field(default=None, alias="savingsPlan")

    model_config = {"frozen": True, "populate_by_name": True, "extra": "ignore"}

    @field_validator("sku_name", "unit", "region_code", "meter_id", "meter_name", "product_name", "offer_type", mode="before")
    @classmethod
    def none_to_empty(cls, value: Any) -> Any:
        return "" if value is None else value

    @field_validator("unit_price", mode="before")
    @classmethod
    def none_price_to_zero(cls, value: Any) -> Any:
        return 0.0 if value is None else value

    @classmethod
    def from_catalog(cls, item: Dict[str, Any]) -> "PriceRecord":
        return cls.model_validate(item)


class PriceResultSet(BaseModel):
    records: List[PriceRecord] = Field(default_factory=list)
    filter_used: str
    original_filter: str = ""
    attempts: int = 1

    model_config = {"frozen": True}

    @property
    def count(self) -> int:
        return len(self.records)

    def records_payload(self, limit: Optional[int] = None) -> List[Dict[str, Any]]:
        items = self.records if limit is None else self.records[:limit]
        return [record.model_dump() for record in items]


class ToolInvocation(BaseModel):
    call_id: str
    name: str = ""
    filter_text: Optional[str] = None
    raw_arguments: str = ""
    argument_error: Optional[str] = None

    model_config = {"frozen": True}


class CompletionResult(BaseModel):
    response_id: str = ""
    tool_calls: List[ToolInvocation] = Field(default_factory=list)
    text: str = ""
    reasoning: str = ""

    model_config = {"frozen": True}


class TurnResult(BaseModel):
    answer_text: str
    result_set: Optional[PriceResultSet] = None
    continuation_token: str
    tool_rounds: int = 0
    round_limit_reached: bool = False


class StreamEvent(BaseModel):
    type: EventType
    data: Dict[str, Any] = Field(default_factory=dict)

    @property
    def terminal(self) -> bool:
        return self.type in TERMINAL_EVENTS


class PriceQueryRequest(BaseModel):
    prompt: str = ""
    continuation_token: Optional[str] = None

    @model_validator(mode="before")
    @classmethod
    def normalize_inputs(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        data = dict(data)
        if not data.get("prompt"):
            data["prompt"] = data.pop("promptText", None) or data.get("prompt") or ""
        if not data.get("continuation_token"):
            token = data.pop("previous_response_id", None) or data.pop("continuationToken", None)
            data["continuation_token"] = token or None
        if data.get("prompt") is not None and not isinstance(data["prompt"], str):
            data["prompt"] = str(data["prompt"])
        token = data.get("continuation_token")
        if isinstance(token, str) and not token.strip():
            data["continuation_token"] = None
        return data
