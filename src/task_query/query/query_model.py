# src/task_query/query/query_model.py

"""
Structured query model.

Operators and canonical fields are closed enums resolved once by the parser,
so the compiler and the refine pass dispatch on enum members rather than on
raw strings.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

FilterValue = str | tuple[str, ...]


class QueryOperator(str, Enum):
    EQUALS = "="
    NOT_EQUALS = "!="
    LESS_THAN = "<"
    LESS_THAN_OR_EQUAL = "<="
    GREATER_THAN = ">"
    GREATER_THAN_OR_EQUAL = ">="
    CONTAINS = "includes"
    NOT_CONTAINS = "not includes"
    IN = "in"
    NOT_IN = "not in"

    @property
    def negative(self) -> bool:
        return self in _NEGATIVE_OPERATORS

    @property
    def ordering(self) -> bool:
        return self in _ORDERING_OPERATORS

    def positive(self) -> QueryOperator:
        """The non-negated counterpart (!= -> =, not in -> in, ...)."""
        return _POSITIVE_OF.get(self, self)


_NEGATIVE_OPERATORS = frozenset(
    {QueryOperator.NOT_EQUALS, QueryOperator.NOT_CONTAINS, QueryOperator.NOT_IN}
)
_ORDERING_OPERATORS = frozenset(
    {
        QueryOperator.LESS_THAN,
        QueryOperator.LESS_THAN_OR_EQUAL,
        QueryOperator.GREATER_THAN,
        QueryOperator.GREATER_THAN_OR_EQUAL,
    }
)
_POSITIVE_OF = {
    QueryOperator.NOT_EQUALS: QueryOperator.EQUALS,
    QueryOperator.NOT_CONTAINS: QueryOperator.CONTAINS,
    QueryOperator.NOT_IN: QueryOperator.IN,
}


class BooleanLogic(str, Enum):
    """How a condition joins the chain built so far. NOT means AND NOT."""

    AND = "and"
    OR = "or"
    NOT = "not"


class SortDirection(str, Enum):
    ASC = "asc"
    DESC = "desc"


class TaskField(str, Enum):
    TASK_ID = "task_id"
    STATUS = "status"
    DUE_DATE = "due_date"
    SCHEDULED_DATE = "scheduled_date"
    START_DATE = "start_date"
    DONE_DATE = "done_date"
    CANCELLED_DATE = "cancelled_date"
    PRIORITY = "priority"
    RECURRENCE_RULE = "recurrence_rule"
    TAGS = "tags"
    DESCRIPTION = "description"
    DEPENDS_ON = "depends_on"

    @property
    def is_date(self) -> bool:
        return self.value.endswith("_date")

    @property
    def is_list(self) -> bool:
        return self in (TaskField.TAGS, TaskField.DEPENDS_ON)


FIELD_ALIASES: dict[str, str] = {
    "due": "due_date",
    "scheduled": "scheduled_date",
    "start": "start_date",
    "done": "done_date",
    "cancelled": "cancelled_date",
    "tag": "tags",
    "depends": "depends_on",
}


def normalize_field_name(name: str) -> str:
    """Alias -> canonical field name. Idempotent; unknown names pass through lower-cased."""
    key = name.strip().lower()
    return FIELD_ALIASES.get(key, key)


def resolve_field(name: str) -> TaskField | None:
    try:
        return TaskField(normalize_field_name(name))
    except ValueError:
        return None


@dataclass(frozen=True, slots=True)
class FilterCondition:
    field: str
    operator: QueryOperator
    value: FilterValue
    logic: BooleanLogic | None = None
    target: TaskField | None = None

    @property
    def canonical_field(self) -> str:
        return self.target.value if self.target is not None else normalize_field_name(self.field)

    @property
    def values(self) -> tuple[str, ...]:
        return self.value if isinstance(self.value, tuple) else (self.value,)

    @property
    def scalar(self) -> str:
        """First value; scalar operators given a list use its first item."""
        return self.values[0] if self.values else ""


@dataclass(frozen=True, slots=True)
class SortCondition:
    field: str
    direction: SortDirection = SortDirection.ASC
    target: TaskField | None = None

    @property
    def canonical_field(self) -> str:
        return self.target.value if self.target is not None else normalize_field_name(self.field)


@dataclass(frozen=True, slots=True)
class StructuredQuery:
    filters: tuple[FilterCondition, ...] = ()
    sorts: tuple[SortCondition, ...] = ()
    limit: int | None = None
