# src/task_query/query/query_compiler.py

"""
Compile a structured query into a two-phase filter.

Phase 1 is a native narrowing predicate: LIKE patterns over the block's
inline attribute list (IAL), the only thing the record store can evaluate.
Phase 2 is the refine plan: exact predicates evaluated in memory on hydrated
records.

Every native clause records whether it is exact or an over-approximation.
AND/OR keep a superset a superset, but negating an over-approximation would
drop real matches, so such negations are replaced by the "any task"
predicate. The native result is therefore always a superset of the exact
answer and the refine plan alone decides membership.

Conditions combine strictly left to right, ((c1 op c2) op c3) ..., with
explicit parentheses in the native predicate so SQL precedence can never
regroup the chain.
"""

from __future__ import annotations

import logging
import operator
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass
from datetime import date

from ..tasks.task_models import PRIORITY_NAMES, TaskRecord, attr_name, escape_ial_value
from .query_model import (
    BooleanLogic,
    FilterCondition,
    QueryOperator,
    SortCondition,
    SortDirection,
    StructuredQuery,
    TaskField,
)
from .query_parser import resolve_query_date

logger = logging.getLogger(__name__)

RecordTest = Callable[[TaskRecord], bool]

_ORDERING = {
    QueryOperator.LESS_THAN: operator.lt,
    QueryOperator.LESS_THAN_OR_EQUAL: operator.le,
    QueryOperator.GREATER_THAN: operator.gt,
    QueryOperator.GREATER_THAN_OR_EQUAL: operator.ge,
}

_PRIORITY_SPELLING = {int(p): name for name, p in PRIORITY_NAMES.items()}


@dataclass(frozen=True, slots=True)
class NativeClause:
    sql: str
    exact: bool


def _escape_like(literal: str) -> str:
    return literal.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_").replace("'", "''")


def _like(*literals: str, negate: bool = False) -> str:
    """LIKE over the IAL column; literals are joined by % wildcards."""
    pattern = "%".join(_escape_like(p) for p in literals)
    op = "NOT LIKE" if negate else "LIKE"
    return f"(ial {op} '{pattern}' ESCAPE '\\')"


ANY_TASK = NativeClause(_like("", ' custom-task-id="', ""), exact=True)
NOTHING = NativeClause("(1 = 0)", exact=True)


def attribute_exists(attr: str) -> NativeClause:
    return NativeClause(_like("", f' {attr}="', ""), exact=False)


def _equals_clause(attr: str, value: str, *, exact: bool) -> NativeClause:
    return NativeClause(_like("", f' {attr}="{escape_ial_value(value)}"', ""), exact=exact)


def _contains_clause(attr: str, value: str) -> NativeClause:
    return NativeClause(_like("", f' {attr}="', escape_ial_value(value), '"', ""), exact=False)


def _any_of(clauses: Sequence[NativeClause]) -> NativeClause:
    if not clauses:
        return NOTHING
    if len(clauses) == 1:
        return clauses[0]
    return NativeClause(
        "(" + " OR ".join(c.sql for c in clauses) + ")",
        exact=all(c.exact for c in clauses),
    )


def _negate(clause: NativeClause) -> NativeClause:
    if not clause.exact:
        return NativeClause(ANY_TASK.sql, exact=False)
    return NativeClause(f"(NOT {clause.sql})", exact=True)


def _case_exact(value: str) -> bool:
    """SQLite LIKE folds ASCII case; a value without cased characters matches exactly."""
    return value.lower() == value.upper()


def _fold(text: str) -> str:
    """
    Case-fold for substring and membership tests.

    Non-ASCII characters whose lower form contains ASCII (KELVIN SIGN, dotted
    capital I) are kept as-is, so an ASCII needle can only match ASCII text
    and stays visible to the LIKE narrowing.
    """
    out = []
    for ch in text:
        low = ch.lower()
        out.append(ch if not ch.isascii() and any(c.isascii() for c in low) else low)
    return "".join(out)


def _like_contains(attr: str, needle: str, *, json_list: bool = False) -> NativeClause:
    """
    Substring narrowing for a case-insensitive needle.

    LIKE only folds ASCII case, and JSON escapes quotes, backslashes and
    control characters inside list attributes; such needles fall back to the
    attribute being present.
    """
    if not needle.isascii():
        return attribute_exists(attr)
    if json_list and (not needle.isprintable() or '"' in needle or "\\" in needle):
        return attribute_exists(attr)
    return _contains_clause(attr, needle)


@dataclass(frozen=True, slots=True)
class CompiledCondition:
    condition: FilterCondition
    native: NativeClause
    test: RecordTest


@dataclass(frozen=True, slots=True)
class RefinePlan:
    """Exact, in-memory evaluation of the filter chain. Usable with any record source."""

    steps: tuple[tuple[BooleanLogic | None, RecordTest], ...] = ()

    def __call__(self, record: TaskRecord) -> bool:
        if not self.steps:
            return True

        first_logic, first_test = self.steps[0]
        acc = first_test(record)
        if first_logic == BooleanLogic.NOT:
            acc = not acc

        for logic, test in self.steps[1:]:
            if logic == BooleanLogic.OR:
                acc = acc or test(record)
            elif logic == BooleanLogic.NOT:
                acc = acc and not test(record)
            else:
                acc = acc and test(record)
        return acc

    def apply(self, records: Iterable[TaskRecord]) -> list[TaskRecord]:
        return [r for r in records if self(r)]


@dataclass(frozen=True, slots=True)
class CompiledQuery:
    predicate: str
    refine: RefinePlan
    sorts: tuple[SortCondition, ...]
    limit: int | None
    exact: bool


def compile_query(query: StructuredQuery, today: date) -> CompiledQuery:
    """Compile a (validated, optimized) query. `today` anchors relative dates."""
    compiled = [compile_condition(c, today) for c in query.filters]

    chain: NativeClause | None = None
    for cc in compiled:
        logic = cc.condition.logic
        if chain is None:
            chain = _negate(cc.native) if logic == BooleanLogic.NOT else cc.native
        elif logic == BooleanLogic.OR:
            chain = NativeClause(f"({chain.sql} OR {cc.native.sql})", chain.exact and cc.native.exact)
        elif logic == BooleanLogic.NOT:
            neg = _negate(cc.native)
            chain = NativeClause(f"({chain.sql} AND {neg.sql})", chain.exact and neg.exact)
        else:
            chain = NativeClause(f"({chain.sql} AND {cc.native.sql})", chain.exact and cc.native.exact)

    if chain is None:
        predicate, exact = ANY_TASK.sql, True
    else:
        predicate, exact = f"{ANY_TASK.sql} AND {chain.sql}", chain.exact

    refine = RefinePlan(tuple((cc.condition.logic, cc.test) for cc in compiled))
    logger.debug("Compiled query exact=%s predicate=%s", exact, predicate)
    return CompiledQuery(
        predicate=predicate,
        refine=refine,
        sorts=query.sorts,
        limit=query.limit,
        exact=exact,
    )


def compile_condition(cond: FilterCondition, today: date) -> CompiledCondition:
    field = cond.target
    if field is None:
        return _compile_unknown(cond)
    if field == TaskField.STATUS:
        return _compile_status(cond)
    if field.is_list:
        return _compile_list(cond, field)
    if field.is_date:
        return _compile_date(cond, field, today)
    if field == TaskField.PRIORITY:
        return _compile_priority(cond)
    return _compile_text(cond, field)


def _exists_fallback(cond: FilterCondition, attr: str) -> CompiledCondition:
    def test(r: TaskRecord) -> bool:
        return bool(r.attributes.get(attr))

    return CompiledCondition(cond, attribute_exists(attr), test)


def _compile_unknown(cond: FilterCondition) -> CompiledCondition:
    attr = attr_name(cond.canonical_field)
    logger.debug("Unknown field %r; compiling as attribute-exists %s", cond.field, attr)
    return _exists_fallback(cond, attr)


def _raw(r: TaskRecord, attr: str) -> str | None:
    v = r.attributes.get(attr)
    return v if v else None


def _compile_status(cond: FilterCondition) -> CompiledCondition:
    attr = attr_name(TaskField.STATUS.value)
    op = cond.operator
    wanted = tuple(v.strip().upper() for v in cond.values)

    if op in (QueryOperator.EQUALS, QueryOperator.NOT_EQUALS):
        wanted = wanted[:1]
    elif op not in (QueryOperator.IN, QueryOperator.NOT_IN):
        return _exists_fallback(cond, attr)

    # Closed upper-case vocabulary: case folding in LIKE cannot widen the match.
    positive = _any_of([_equals_clause(attr, v, exact=True) for v in wanted])
    wanted_set = frozenset(wanted)

    def test(r: TaskRecord) -> bool:
        hit = (_raw(r, attr) or "").strip().upper() in wanted_set
        return not hit if op.negative else hit

    native = _negate(positive) if op.negative else positive
    return CompiledCondition(cond, native, test)


def _compile_list(cond: FilterCondition, field: TaskField) -> CompiledCondition:
    attr = attr_name(field.value)
    op = cond.operator
    if op.positive() not in (QueryOperator.CONTAINS, QueryOperator.IN):
        return _exists_fallback(cond, attr)

    def clean(v: str) -> str:
        v = v.strip()
        return _fold(v.lstrip("#")) if field == TaskField.TAGS else _fold(v)

    wanted = frozenset(clean(v) for v in cond.values if clean(v))
    positive = _any_of(
        [_like_contains(attr, v, json_list=True) for v in sorted(wanted)] or [attribute_exists(attr)]
    )
    items = operator.attrgetter(field.value)

    def test(r: TaskRecord) -> bool:
        hit = any(clean(item) in wanted for item in items(r))
        return not hit if op.negative else hit

    native = _negate(positive) if op.negative else positive
    return CompiledCondition(cond, native, test)


def _compile_date(cond: FilterCondition, field: TaskField, today: date) -> CompiledCondition:
    attr = attr_name(field.value)
    op = cond.operator
    resolved = tuple(resolve_query_date(v.strip(), today) for v in cond.values)
    getter = operator.attrgetter(field.value)

    if op.ordering:
        bound = resolved[0]
        compare = _ORDERING[op]

        def ordering_test(r: TaskRecord) -> bool:
            value = getter(r)
            return value is not None and compare(value, bound)

        # Substring predicates cannot express < or >; narrow to "has the date" and refine.
        return CompiledCondition(cond, attribute_exists(attr), ordering_test)

    return _compile_scalar(cond, attr, resolved, getter)


def _compile_priority(cond: FilterCondition) -> CompiledCondition:
    attr = attr_name(TaskField.PRIORITY.value)
    op = cond.operator

    def as_number(raw: str | None) -> int | None:
        if raw is None:
            return None
        key = raw.strip().lower()
        if key in PRIORITY_NAMES:
            return int(PRIORITY_NAMES[key])
        try:
            return int(key)
        except ValueError:
            return None

    def record_priority(r: TaskRecord) -> int | None:
        return as_number(_raw(r, attr))

    if op.ordering:
        bound = as_number(cond.scalar)
        compare = _ORDERING[op]

        def ordering_test(r: TaskRecord) -> bool:
            value = record_priority(r)
            return value is not None and bound is not None and compare(value, bound)

        return CompiledCondition(cond, attribute_exists(attr), ordering_test)

    positive_op = op.positive()
    candidates = cond.values if positive_op == QueryOperator.IN else cond.values[:1]
    numbers = frozenset(n for n in (as_number(v) for v in candidates) if n is not None)
    if not numbers or positive_op == QueryOperator.CONTAINS:
        return _compile_scalar(cond, attr, cond.values, _raw_getter(attr))

    # A stored priority may be written as a number or as its name.
    spellings: list[str] = []
    for n in sorted(numbers):
        spellings.append(str(n))
        if n in _PRIORITY_SPELLING:
            spellings.append(_PRIORITY_SPELLING[n])
    positive = _any_of([_equals_clause(attr, s, exact=True) for s in spellings])

    def test(r: TaskRecord) -> bool:
        hit = record_priority(r) in numbers
        return not hit if op.negative else hit

    native = _negate(positive) if op.negative else positive
    return CompiledCondition(cond, native, test)


def _raw_getter(attr: str) -> Callable[[TaskRecord], str | None]:
    return lambda r: _raw(r, attr)


def _compile_text(cond: FilterCondition, field: TaskField) -> CompiledCondition:
    attr = attr_name(field.value)
    getter = _raw_getter(attr)

    if cond.operator.ordering:
        bound = cond.scalar
        compare = _ORDERING[cond.operator]

        def ordering_test(r: TaskRecord) -> bool:
            value = getter(r)
            return value is not None and compare(value, bound)

        return CompiledCondition(cond, attribute_exists(attr), ordering_test)

    return _compile_scalar(cond, attr, tuple(v.strip() for v in cond.values), getter)


def _compile_scalar(
    cond: FilterCondition,
    attr: str,
    values: Sequence[str],
    getter: Callable[[TaskRecord], str | None],
) -> CompiledCondition:
    """=, !=, includes, not includes, in, not in over a single string value."""
    op = cond.operator
    positive_op = op.positive()

    if positive_op == QueryOperator.CONTAINS:
        needle = values[0] if values else ""
        folded = _fold(needle)
        positive = _like_contains(attr, needle)

        def hit(r: TaskRecord) -> bool:
            value = getter(r)
            return value is not None and folded in _fold(value)

    else:
        wanted = tuple(values) if positive_op == QueryOperator.IN else tuple(values[:1])
        wanted_set = frozenset(wanted)
        positive = _any_of([_equals_clause(attr, v, exact=_case_exact(v)) for v in wanted])

        def hit(r: TaskRecord) -> bool:
            return getter(r) in wanted_set

    def test(r: TaskRecord) -> bool:
        return not hit(r) if op.negative else hit(r)

    native = _negate(positive) if op.negative else positive
    return CompiledCondition(cond, native, test)


def sort_value(record: TaskRecord, sort: SortCondition) -> str | int | None:
    field = sort.target
    if field is None:
        return record.attributes.get(attr_name(sort.canonical_field)) or None
    if field == TaskField.PRIORITY:
        return int(record.priority)
    if field == TaskField.STATUS:
        return record.status.value
    if field.is_list:
        items = getattr(record, field.value)
        return " ".join(items).casefold() if items else None
    value = getattr(record, field.value)
    if value is None or value == "":
        return None
    return value.casefold() if field == TaskField.DESCRIPTION else value


def order_records(records: Iterable[TaskRecord], sorts: Sequence[SortCondition]) -> list[TaskRecord]:
    """
    Stable multi-key sort.

    Keys are applied last to first so the first sort condition wins. Missing
    values come first in both directions.
    """
    out = list(records)
    for sort in reversed(sorts):
        desc = sort.direction == SortDirection.DESC
        # Reversed under desc, so rank 2 still puts missing values first.
        missing_rank = 2 if desc else 0

        def key(r: TaskRecord, sort: SortCondition = sort, rank: int = missing_rank) -> tuple[int, str | int]:
            value = sort_value(r, sort)
            return (rank, "") if value is None else (1, value)

        out.sort(key=key, reverse=desc)
    return out
