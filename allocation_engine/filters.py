"""
Typed filter criteria for selecting cases.

Filters are validated when they are built, so a malformed filter never
reaches an allocation job. Each filter tests one attribute of a case record.
"""

from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Tuple, Union

from .exceptions import ValidationError


class FilterOperator(Enum):
    """Comparison operators accepted in filter criteria"""
    GTE = ">="
    LTE = "<="
    EQ = "="
    RANGE = "RANGE"
    IN = "IN"
    BETWEEN = "BETWEEN"


TEXT_OPERATORS = frozenset({FilterOperator.EQ, FilterOperator.IN})
NUMERIC_OPERATORS = frozenset({FilterOperator.GTE, FilterOperator.LTE, FilterOperator.EQ, FilterOperator.RANGE})
DATE_OPERATORS = frozenset({FilterOperator.GTE, FilterOperator.LTE, FilterOperator.EQ, FilterOperator.BETWEEN})


def _to_decimal(value: Any, field_name: str) -> Decimal:
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError):
        raise ValidationError(f"Invalid numeric value for {field_name}: {value!r}", field_name=field_name)


def _to_date(value: Any, field_name: str) -> date:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(str(value))
    except ValueError:
        raise ValidationError(f"Invalid date value for {field_name}: {value!r}", field_name=field_name)


@dataclass(frozen=True)
class TextFilter:
    """Case-insensitive match of a text attribute against one or more values"""
    field: str
    operator: FilterOperator
    values: Tuple[str, ...]

    def __post_init__(self):
        if self.operator not in TEXT_OPERATORS:
            raise ValidationError(
                f"Operator {self.operator.value} is not valid for text field {self.field}",
                field_name=self.field
            )
        if not self.values:
            raise ValidationError(f"Text filter on {self.field} needs at least one value", field_name=self.field)
        if self.operator == FilterOperator.EQ and len(self.values) != 1:
            raise ValidationError(f"Operator = on {self.field} takes exactly one value", field_name=self.field)

    def matches(self, record: Dict[str, Any]) -> bool:
        value = record.get(self.field)
        if value is None:
            return False
        wanted = {v.strip().lower() for v in self.values}
        return str(value).strip().lower() in wanted


@dataclass(frozen=True)
class NumericFilter:
    """Comparison of a numeric attribute; RANGE bounds are inclusive"""
    field: str
    operator: FilterOperator
    value: Optional[Decimal] = None
    low: Optional[Decimal] = None
    high: Optional[Decimal] = None

    def __post_init__(self):
        if self.operator not in NUMERIC_OPERATORS:
            raise ValidationError(
                f"Operator {self.operator.value} is not valid for numeric field {self.field}",
                field_name=self.field
            )
        if self.operator == FilterOperator.RANGE:
            if self.low is None or self.high is None:
                raise ValidationError(f"RANGE on {self.field} needs both min and max", field_name=self.field)
            if self.low > self.high:
                raise ValidationError(f"RANGE on {self.field} has min greater than max", field_name=self.field)
        elif self.value is None:
            raise ValidationError(f"Operator {self.operator.value} on {self.field} needs a value", field_name=self.field)

    def matches(self, record: Dict[str, Any]) -> bool:
        raw = record.get(self.field)
        if raw is None or raw == "":
            return False
        try:
            value = Decimal(str(raw))
        except (InvalidOperation, ValueError):
            return False
        if self.operator == FilterOperator.GTE:
            return value >= self.value
        if self.operator == FilterOperator.LTE:
            return value <= self.value
        if self.operator == FilterOperator.EQ:
            return value == self.value
        return self.low <= value <= self.high


@dataclass(frozen=True)
class DateFilter:
    """Comparison of a date attribute; BETWEEN bounds are inclusive"""
    field: str
    operator: FilterOperator
    value: Optional[date] = None
    start: Optional[date] = None
    end: Optional[date] = None

    def __post_init__(self):
        if self.operator not in DATE_OPERATORS:
            raise ValidationError(
                f"Operator {self.operator.value} is not valid for date field {self.field}",
                field_name=self.field
            )
        if self.operator == FilterOperator.BETWEEN:
            if self.start is None or self.end is None:
                raise ValidationError(f"BETWEEN on {self.field} needs both from and to", field_name=self.field)
            if self.start > self.end:
                raise ValidationError(f"BETWEEN on {self.field} has from after to", field_name=self.field)
        elif self.value is None:
            raise ValidationError(f"Operator {self.operator.value} on {self.field} needs a value", field_name=self.field)

    def matches(self, record: Dict[str, Any]) -> bool:
        raw = record.get(self.field)
        if not raw:
            return False
        try:
            value = _to_date(raw, self.field)
        except ValidationError:
            return False
        if self.operator == FilterOperator.GTE:
            return value >= self.value
        if self.operator == FilterOperator.LTE:
            return value <= self.value
        if self.operator == FilterOperator.EQ:
            return value == self.value
        return self.start <= value <= self.end


FilterCriteria = Union[TextFilter, NumericFilter, DateFilter]


def parse_filter(raw: Dict[str, Any]) -> FilterCriteria:
    """
    Build a typed filter from its dictionary form.

    Expected keys: ``type`` (TEXT, NUMERIC or DATE), ``field``, ``operator``
    and then ``value``/``values`` or the bounds ``min``/``max`` (numeric
    RANGE) and ``from``/``to`` (date BETWEEN).
    """
    if isinstance(raw, (TextFilter, NumericFilter, DateFilter)):
        return raw
    if not isinstance(raw, dict):
        raise ValidationError(f"Filter must be an object, got {type(raw).__name__}")

    field_name = raw.get('field')
    if not field_name:
        raise ValidationError("Filter is missing 'field'")

    try:
        operator = FilterOperator(str(raw.get('operator', '=')).upper())
    except ValueError:
        raise ValidationError(f"Unknown filter operator: {raw.get('operator')!r}", field_name=field_name)

    filter_type = str(raw.get('type', 'TEXT')).upper()

    if filter_type == 'TEXT':
        values = raw.get('values')
        if values is None and raw.get('value') is not None:
            values = [raw['value']]
        if isinstance(values, str):
            values = [values]
        return TextFilter(field_name, operator, tuple(str(v) for v in (values or [])))

    if filter_type == 'NUMERIC':
        if operator == FilterOperator.RANGE:
            low = raw.get('min')
            high = raw.get('max')
            return NumericFilter(
                field_name, operator,
                low=_to_decimal(low, field_name) if low is not None else None,
                high=_to_decimal(high, field_name) if high is not None else None
            )
        value = raw.get('value')
        return NumericFilter(field_name, operator, value=_to_decimal(value, field_name) if value is not None else None)

    if filter_type == 'DATE':
        if operator == FilterOperator.BETWEEN:
            start = raw.get('from')
            end = raw.get('to')
            return DateFilter(
                field_name, operator,
                start=_to_date(start, field_name) if start else None,
                end=_to_date(end, field_name) if end else None
            )
        value = raw.get('value')
        return DateFilter(field_name, operator, value=_to_date(value, field_name) if value else None)

    raise ValidationError(f"Unknown filter type: {filter_type}", field_name=field_name)


def parse_filters(raw_filters: Optional[Iterable[Any]]) -> List[FilterCriteria]:
    """Parse a list of filters, failing on the first invalid one"""
    return [parse_filter(raw) for raw in (raw_filters or [])]


def matches_all(criteria: Iterable[FilterCriteria], record: Dict[str, Any]) -> bool:
    """True when the record satisfies every filter (an empty list matches everything)"""
    return all(f.matches(record) for f in criteria)
