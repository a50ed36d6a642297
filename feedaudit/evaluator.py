from __future__ import annotations

import logging
import re
import threading
from collections import OrderedDict
from dataclasses import dataclass
from datetime import datetime
from typing import Mapping

from feedaudit.models import ResultStatus
from feedaudit.schemas import (
    CROSS_FIELD_OPERATORS,
    DATE_FORMATS,
    ContainsCondition,
    CrossFieldCondition,
    DateCondition,
    DoesntContainCondition,
    MaxLengthCondition,
    MinLengthCondition,
    NotEmptyCondition,
    RangeCondition,
    RegexCondition,
    RuleSnapshot,
)
from feedaudit.vocabulary import FieldResolver

logger = logging.getLogger(__name__)

_LEADING_NUMBER = re.compile(r"^\s*[+-]?(?:\d+\.?\d*|\.\d+)(?:[eE][+-]?\d+)?")
_UTC_DESIGNATOR = re.compile(r"[zZ]$")


@dataclass(frozen=True)
class Verdict:
    status: ResultStatus
    details: str = ""

    @property
    def is_violation(self) -> bool:
        return self.status is not ResultStatus.OK


OK = Verdict(ResultStatus.OK)


def parse_number(value: str) -> float | None:
    """Parse the leading number of ``value`` (``"299.99 EUR"`` -> 299.99)."""
    match = _LEADING_NUMBER.match(value)
    if match is None:
        return None
    return float(match.group(0))


def _format_number(value: float) -> str:
    return str(int(value)) if value.is_integer() else str(value)


class EvaluationCache:
    def __init__(self, resolver: FieldResolver | None = None, max_patterns: int = 256) -> None:
        self.resolver = resolver or FieldResolver()
        self.max_patterns = max_patterns
        self._patterns: OrderedDict[tuple[str, bool], re.Pattern[str] | re.error] = OrderedDict()
        self._candidates: dict[str, tuple[str, ...]] = {}
        self._lock = threading.Lock()

    def pattern(self, source: str, case_sensitive: bool) -> re.Pattern[str]:
        """Return the compiled pattern, raising ``re.error`` if it is invalid."""
        key = (source, case_sensitive)
        with self._lock:
            cached = self._patterns.get(key)
            if cached is None:
                try:
                    cached = re.compile(source, 0 if case_sensitive else re.IGNORECASE)
                except re.error as exc:
                    cached = exc
                self._patterns[key] = cached
                if len(self._patterns) > self.max_patterns:
                    self._patterns.popitem(last=False)
            else:
                self._patterns.move_to_end(key)
        if isinstance(cached, re.error):
            raise cached
        return cached

    def candidates(self, field: str) -> tuple[str, ...]:
        cached = self._candidates.get(field)
        if cached is None:
            cached = self.resolver.candidates(field)
            self._candidates[field] = cached
        return cached

    def lookup(self, record: Mapping[str, str | None], field: str) -> str:
        return self.resolver.lookup(record, field, self.candidates(field))

    @property
    def pattern_count(self) -> int:
        return len(self._patterns)


class ConditionEvaluator:
    def __init__(self, cache: EvaluationCache | None = None) -> None:
        self.cache = cache or EvaluationCache()

    def evaluate(self, record: Mapping[str, str | None], rule: RuleSnapshot) -> Verdict:
        condition = rule.condition
        if condition is None:
            return Verdict(ResultStatus.WARNING, f"Invalid rule condition: {rule.condition_error or 'unknown'}")

        violation = ResultStatus(rule.criticality)
        try:
            value = self.cache.lookup(record, condition.field)
            if isinstance(condition, NotEmptyCondition):
                return self._not_empty(condition, value, violation)
            if isinstance(condition, MinLengthCondition):
                return self._min_length(condition, value, violation)
            if isinstance(condition, MaxLengthCondition):
                return self._max_length(condition, value, violation)
            if isinstance(condition, ContainsCondition):
                return self._contains(condition, value, violation)
            if isinstance(condition, DoesntContainCondition):
                return self._doesnt_contain(condition, value, violation)
            if isinstance(condition, RegexCondition):
                return self._regex(condition, value, violation)
            if isinstance(condition, RangeCondition):
                return self._range(condition, value, violation)
            if isinstance(condition, DateCondition):
                return self._date(condition, value, violation)
            if isinstance(condition, CrossFieldCondition):
                return self._cross_field(condition, record, value, violation)
            return Verdict(ResultStatus.WARNING, f"Unsupported condition type: {condition.type}")
        except Exception as exc:
            logger.warning("Rule %s raised during evaluation", rule.id, exc_info=True)
            return Verdict(ResultStatus.WARNING, f"Error evaluating rule: {exc}")

    def _not_empty(self, condition: NotEmptyCondition, value: str, violation: ResultStatus) -> Verdict:
        if value.strip():
            return OK
        return Verdict(violation, f"Field '{condition.field}' is empty or contains only whitespace")

    def _min_length(self, condition: MinLengthCondition, value: str, violation: ResultStatus) -> Verdict:
        if len(value) >= condition.value:
            return OK
        return Verdict(
            violation,
            f"Field '{condition.field}' has {len(value)} characters (minimum required: {condition.value})",
        )

    def _max_length(self, condition: MaxLengthCondition, value: str, violation: ResultStatus) -> Verdict:
        if len(value) <= condition.value:
            return OK
        return Verdict(
            violation,
            f"Field '{condition.field}' has {len(value)} characters (maximum allowed: {condition.value})",
        )

    @staticmethod
    def _includes(condition: ContainsCondition | DoesntContainCondition, value: str) -> bool:
        if condition.case_sensitive:
            return condition.value in value
        return condition.value.casefold() in value.casefold()

    def _contains(self, condition: ContainsCondition, value: str, violation: ResultStatus) -> Verdict:
        if self._includes(condition, value):
            return OK
        return Verdict(violation, f"Field '{condition.field}' does not contain '{condition.value}'")

    def _doesnt_contain(self, condition: DoesntContainCondition, value: str, violation: ResultStatus) -> Verdict:
        if not self._includes(condition, value):
            return OK
        return Verdict(violation, f"Field '{condition.field}' contains forbidden value '{condition.value}'")

    def _regex(self, condition: RegexCondition, value: str, violation: ResultStatus) -> Verdict:
        try:
            pattern = self.cache.pattern(condition.value, condition.case_sensitive)
        except re.error:
            return Verdict(ResultStatus.WARNING, f"Invalid regex pattern: {condition.value}")
        if pattern.search(value):
            return OK
        return Verdict(violation, f"Field '{condition.field}' does not match pattern '{condition.value}'")

    def _range(self, condition: RangeCondition, value: str, violation: ResultStatus) -> Verdict:
        bounds = condition.value
        number = parse_number(value)
        if number is None:
            return Verdict(violation, f"Field '{condition.field}' value '{value}' is not a valid number")
        if bounds.min <= number <= bounds.max:
            return OK
        return Verdict(
            violation,
            f"Field '{condition.field}' value {_format_number(number)} is not within range "
            f"{_format_number(bounds.min)}-{_format_number(bounds.max)}",
        )

    def _date(self, condition: DateCondition, value: str, violation: ResultStatus) -> Verdict:
        label = condition.date_format
        if label in DATE_FORMATS:
            strptime_format = DATE_FORMATS[label]
        elif "%" in label:
            strptime_format = label
        else:
            return Verdict(ResultStatus.WARNING, f"Unsupported date format: {label}")

        text = value.strip()
        try:
            if strptime_format is None:
                datetime.fromisoformat(_UTC_DESIGNATOR.sub("+00:00", text))
            else:
                datetime.strptime(text, strptime_format)
        except ValueError:
            return Verdict(violation, f"Field '{condition.field}' is not a valid date in format {label}")
        return OK

    def _cross_field(
        self,
        condition: CrossFieldCondition,
        record: Mapping[str, str | None],
        value: str,
        violation: ResultStatus,
    ) -> Verdict:
        other_field = condition.value.field
        operator = condition.value.operator
        phrase = CROSS_FIELD_OPERATORS.get(operator)
        if phrase is None:
            return Verdict(ResultStatus.WARNING, f"Cross-field rule uses unsupported operator '{operator}'")

        other = self.cache.lookup(record, other_field)
        if compare_values(value, other, operator):
            return OK
        return Verdict(
            violation,
            f"Field '{condition.field}' ({value}) is not {phrase} '{other_field}' ({other})",
        )


def compare_values(left: str, right: str, operator: str) -> bool:
    """Compare two field values; numeric operators are False when either side is not a number."""
    if operator in ("==", "!=", "contains"):
        a, b = left.casefold(), right.casefold()
        if operator == "==":
            return a == b
        if operator == "!=":
            return a != b
        return b in a

    a_num, b_num = parse_number(left), parse_number(right)
    if a_num is None or b_num is None:
        return False
    if operator == ">":
        return a_num > b_num
    if operator == ">=":
        return a_num >= b_num
    if operator == "<":
        return a_num < b_num
    if operator == "<=":
        return a_num <= b_num
    return False
