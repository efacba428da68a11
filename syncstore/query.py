"""Filter, sort and pagination parameters for local and remote queries."""
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional


class FilterOperator(str, Enum):
    EQUALS = "equals"
    NOT_EQUALS = "notEquals"
    GREATER_THAN = "greaterThan"
    GREATER_THAN_OR_EQUAL = "greaterThanOrEqual"
    LESS_THAN = "lessThan"
    LESS_THAN_OR_EQUAL = "lessThanOrEqual"
    CONTAINS = "contains"
    STARTS_WITH = "startsWith"
    ENDS_WITH = "endsWith"
    IN_LIST = "inList"
    NOT_IN_LIST = "notInList"
    IS_NULL = "isNull"
    IS_NOT_NULL = "isNotNull"


class SortDirection(str, Enum):
    ASCENDING = "asc"
    DESCENDING = "desc"


@dataclass(frozen=True)
class FilterCondition:
    field: str
    operator: FilterOperator
    value: Any = None

    def matches(self, record: Dict[str, Any]) -> bool:
        actual = record.get(self.field)
        op = self.operator

        if op == FilterOperator.IS_NULL:
            return actual is None
        if op == FilterOperator.IS_NOT_NULL:
            return actual is not None
        if op == FilterOperator.EQUALS:
            return actual == self.value
        if op == FilterOperator.NOT_EQUALS:
            return actual != self.value
        if op == FilterOperator.IN_LIST:
            return actual in self.value
        if op == FilterOperator.NOT_IN_LIST:
            return actual not in self.value

        # Remaining operators never match a missing value
        if actual is None:
            return False
        if op == FilterOperator.CONTAINS:
            return str(self.value) in str(actual)
        if op == FilterOperator.STARTS_WITH:
            return str(actual).startswith(str(self.value))
        if op == FilterOperator.ENDS_WITH:
            return str(actual).endswith(str(self.value))
        try:
            if op == FilterOperator.GREATER_THAN:
                return actual > self.value
            if op == FilterOperator.GREATER_THAN_OR_EQUAL:
                return actual >= self.value
            if op == FilterOperator.LESS_THAN:
                return actual < self.value
            if op == FilterOperator.LESS_THAN_OR_EQUAL:
                return actual <= self.value
        except TypeError:
            return False
        raise ValueError(f"Unsupported filter operator: {op}")


def _sort_key(value: Any):
    """Group values by kind so mixed columns order instead of raising."""
    if isinstance(value, bool):
        return (0, value)
    if isinstance(value, (int, float)):
        return (1, value)
    if isinstance(value, str):
        return (2, value)
    if isinstance(value, datetime):
        return (3, value)
    return (4, str(value))


@dataclass(frozen=True)
class SortCondition:
    field: str
    direction: SortDirection = SortDirection.ASCENDING


@dataclass(frozen=True)
class Pagination:
    limit: Optional[int] = None
    offset: Optional[int] = None


@dataclass(frozen=True)
class QueryParams:
    """Filters are ANDed; sorts apply in order; pagination applies last."""

    filters: List[FilterCondition] = field(default_factory=list)
    sorts: List[SortCondition] = field(default_factory=list)
    pagination: Optional[Pagination] = None

    @classmethod
    def where(cls, **equals) -> "QueryParams":
        """Shorthand for equality filters: QueryParams.where(user_id="u1")."""
        return cls(filters=[FilterCondition(name, FilterOperator.EQUALS, value) for name, value in equals.items()])

    def apply(self, records: Iterable[Dict[str, Any]]) -> List[Dict[str, Any]]:
        """Filter, sort and page a collection of JSON records."""
        result = [r for r in records if all(f.matches(r) for f in self.filters)]

        # Stable sorts applied in reverse give multi-key ordering
        for sort in reversed(self.sorts):
            reverse = sort.direction == SortDirection.DESCENDING
            present = [r for r in result if r.get(sort.field) is not None]
            missing = [r for r in result if r.get(sort.field) is None]
            present.sort(key=lambda r: _sort_key(r[sort.field]), reverse=reverse)
            result = present + missing

        if self.pagination:
            start = self.pagination.offset or 0
            end = start + self.pagination.limit if self.pagination.limit is not None else None
            result = result[start:end]
        return result

    def to_http_params(self) -> Dict[str, str]:
        """Encode as query-string parameters for the REST adapter."""
        params: Dict[str, str] = {}

        for f in self.filters:
            params[f"filter[{f.field}][{f.operator.value}]"] = _value_to_string(f.value)

        if self.sorts:
            params["sort"] = ",".join(f"{s.field}:{s.direction.value}" for s in self.sorts)

        if self.pagination:
            if self.pagination.limit is not None:
                params["limit"] = str(self.pagination.limit)
            if self.pagination.offset is not None:
                params["offset"] = str(self.pagination.offset)
        return params


def _value_to_string(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, (list, tuple, set)):
        return ",".join(_value_to_string(v) for v in value)
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)
