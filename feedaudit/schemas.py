from __future__ import annotations

import json
import re
from typing import Annotated, Any, Literal, Union

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    NonNegativeInt,
    PositiveInt,
    TypeAdapter,
    ValidationError,
    field_validator,
    model_validator,
)


CROSS_FIELD_OPERATORS: dict[str, str] = {
    "==": "equal to",
    "!=": "not equal to",
    "contains": "containing",
    ">": "greater than",
    ">=": "greater than or equal to",
    "<": "less than",
    "<=": "less than or equal to",
}

DATE_FORMATS: dict[str, str | None] = {
    "YYYY-MM-DD": "%Y-%m-%d",
    "MM/DD/YYYY": "%m/%d/%Y",
    "DD/MM/YYYY": "%d/%m/%Y",
    "ISO": None,
}

CRITICALITIES = ("warning", "critical")


def _decode_json_payload(value: Any) -> Any:
    if isinstance(value, str):
        try:
            return json.loads(value)
        except json.JSONDecodeError as exc:
            raise ValueError("value must be a JSON object") from exc
    return value


class _ConditionBase(BaseModel):
    model_config = ConfigDict(populate_by_name=True, frozen=True)

    field: str = Field(min_length=1)


class NotEmptyCondition(_ConditionBase):
    type: Literal["notEmpty"]
    value: Any = None


class MinLengthCondition(_ConditionBase):
    type: Literal["minLength"]
    value: PositiveInt


class MaxLengthCondition(_ConditionBase):
    type: Literal["maxLength"]
    value: NonNegativeInt


class ContainsCondition(_ConditionBase):
    type: Literal["contains"]
    value: str = Field(min_length=1)
    case_sensitive: bool = Field(default=False, alias="caseSensitive")


class DoesntContainCondition(_ConditionBase):
    type: Literal["doesntContain"]
    value: str = Field(min_length=1)
    case_sensitive: bool = Field(default=False, alias="caseSensitive")


class RegexCondition(_ConditionBase):
    type: Literal["regex"]
    value: str = Field(min_length=1)
    case_sensitive: bool = Field(default=False, alias="caseSensitive")


class RangeBounds(BaseModel):
    model_config = ConfigDict(frozen=True)

    min: float
    max: float

    @model_validator(mode="after")
    def _ordered(self) -> RangeBounds:
        if self.min >= self.max:
            raise ValueError("range min must be lower than max")
        return self


class RangeCondition(_ConditionBase):
    type: Literal["range"]
    value: RangeBounds

    @field_validator("value", mode="before")
    @classmethod
    def _decode(cls, value: Any) -> Any:
        return _decode_json_payload(value)


class CrossFieldTarget(BaseModel):
    model_config = ConfigDict(frozen=True)

    field: str = Field(min_length=1)
    operator: str = Field(min_length=1)


class CrossFieldCondition(_ConditionBase):
    type: Literal["crossField"]
    value: CrossFieldTarget

    @field_validator("value", mode="before")
    @classmethod
    def _decode(cls, value: Any) -> Any:
        return _decode_json_payload(value)


class DateCondition(_ConditionBase):
    type: Literal["date"]
    value: Any = None
    date_format: str = Field(default="YYYY-MM-DD", alias="dateFormat")


Condition = Annotated[
    Union[
        NotEmptyCondition,
        MinLengthCondition,
        MaxLengthCondition,
        ContainsCondition,
        DoesntContainCondition,
        RegexCondition,
        RangeCondition,
        CrossFieldCondition,
        DateCondition,
    ],
    Field(discriminator="type"),
]

CONDITION_ADAPTER: TypeAdapter[Condition] = TypeAdapter(Condition)


def parse_condition(payload: Any) -> Condition:
    return CONDITION_ADAPTER.validate_python(payload)


def dump_condition(condition: Condition) -> dict[str, Any]:
    return condition.model_dump(by_alias=True, exclude_none=True)


def _summarize_validation_error(exc: ValidationError) -> str:
    parts = []
    for error in exc.errors():
        location = ".".join(str(item) for item in error.get("loc", ()))
        parts.append(f"{location}: {error.get('msg')}" if location else str(error.get("msg")))
    return "; ".join(parts)


class CreateRuleRequest(BaseModel):
    name: str = Field(min_length=1)
    description: str = Field(min_length=1)
    category: str = Field(min_length=1)
    condition: Condition
    criticality: Literal["warning", "critical"]

    @model_validator(mode="after")
    def _check_condition(self) -> CreateRuleRequest:
        condition = self.condition
        if isinstance(condition, RegexCondition):
            try:
                re.compile(condition.value)
            except re.error as exc:
                raise ValueError(f"invalid regex pattern: {exc}") from exc
        elif isinstance(condition, CrossFieldCondition):
            if condition.value.operator not in CROSS_FIELD_OPERATORS:
                supported = ", ".join(CROSS_FIELD_OPERATORS)
                raise ValueError(f"cross-field operator must be one of: {supported}")
        elif isinstance(condition, DateCondition):
            if condition.date_format not in DATE_FORMATS:
                supported = ", ".join(DATE_FORMATS)
                raise ValueError(f"date format must be one of: {supported}")
        return self


class Rule(BaseModel):
    id: str
    name: str
    description: str
    category: str
    condition: dict[str, Any]
    criticality: str
    created_at: str | None = None


class RuleSnapshot(BaseModel):
    """Immutable copy of a rule taken when an audit starts.

    ``condition`` is None when the stored condition no longer validates;
    ``condition_error`` then says why and every verdict for the rule is a
    warning.
    """

    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    criticality: Literal["warning", "critical"]
    field_name: str = ""
    condition: Condition | None = None
    condition_error: str | None = None

    @classmethod
    def from_rule(cls, rule: dict[str, Any]) -> RuleSnapshot:
        payload = rule.get("condition") or {}
        condition: Condition | None = None
        condition_error: str | None = None
        try:
            condition = parse_condition(payload)
        except ValidationError as exc:
            condition_error = _summarize_validation_error(exc)

        criticality = rule.get("criticality")
        if criticality not in CRITICALITIES:
            criticality = "warning"
        field_name = payload.get("field", "") if isinstance(payload, dict) else ""
        return cls(
            id=str(rule["id"]),
            name=str(rule.get("name") or rule["id"]),
            criticality=criticality,
            field_name=str(field_name or ""),
            condition=condition,
            condition_error=condition_error,
        )


class AuditResultRow(BaseModel):
    audit_id: str | None = None
    rule_id: str
    rule_name: str
    field_name: str = ""
    product_id: str
    status: Literal["ok", "warning", "critical"]
    details: str | None = None


class ComplianceCounts(BaseModel):
    compliant: int = 0
    warning: int = 0
    critical: int = 0

    @property
    def total(self) -> int:
        return self.compliant + self.warning + self.critical


class RuleBreakdown(BaseModel):
    rule_name: str
    evaluated_products: int
    ok_percent: float
    warning_percent: float
    critical_percent: float


class AuditProgress(BaseModel):
    audit_id: str
    status: str
    total_products: int
    total_rules: int
    rules_processed: int
    progress: int
    compliant_products: int = 0
    warning_products: int = 0
    critical_products: int = 0
    chunk_index: int | None = None


class PreviewResult(BaseModel):
    total_products: int
    results: list[AuditResultRow]
    counts: ComplianceCounts = Field(default_factory=ComplianceCounts)
