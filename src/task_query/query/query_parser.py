# src/task_query/query/query_parser.py

"""
Task query parser.

Query text is line oriented:

    tasks
    where status != done
      and due <= today + 7d
    sort by due asc, priority desc
    limit 50

Parsing is tolerant: a line or clause that cannot be understood is dropped
(and logged at DEBUG level) instead of failing the whole query. The parser is
pure: it keeps no state between calls and never looks at the clock; relative
dates stay as text until compile time.
"""

from __future__ import annotations

import calendar
import logging
import re
from datetime import date, timedelta

from .query_model import (
    BooleanLogic,
    FilterCondition,
    FilterValue,
    QueryOperator,
    SortCondition,
    SortDirection,
    StructuredQuery,
    resolve_field,
)

logger = logging.getLogger(__name__)

_HEADER = "tasks"
_COMMENT_PREFIX = "#"

_CONNECTIVES = {
    "and": BooleanLogic.AND,
    "or": BooleanLogic.OR,
    "not": BooleanLogic.NOT,
}

# Multi-word operators come before the single-word ones they contain,
# two-character symbols before one-character ones.
_OPERATOR_PRECEDENCE: tuple[tuple[str, QueryOperator], ...] = (
    (r"not\s+includes", QueryOperator.NOT_CONTAINS),
    (r"not\s+in", QueryOperator.NOT_IN),
    (r"includes", QueryOperator.CONTAINS),
    (r"in", QueryOperator.IN),
    (r"<=", QueryOperator.LESS_THAN_OR_EQUAL),
    (r">=", QueryOperator.GREATER_THAN_OR_EQUAL),
    (r"!=", QueryOperator.NOT_EQUALS),
    (r"=", QueryOperator.EQUALS),
    (r"<", QueryOperator.LESS_THAN),
    (r">", QueryOperator.GREATER_THAN),
)

_FIELD_RE = re.compile(r"^(?P<field>[^\s<>=!]+)")
_WORD_OPERATOR_TEMPLATE = r"\s+({op})\s+"
_SYMBOL_OPERATOR_TEMPLATE = r"\s*({op})\s*"

_OPERATOR_PATTERNS: tuple[tuple[re.Pattern[str], QueryOperator], ...] = tuple(
    (
        re.compile(
            (_WORD_OPERATOR_TEMPLATE if pattern[0].isalpha() else _SYMBOL_OPERATOR_TEMPLATE).format(
                op=pattern
            ),
            re.IGNORECASE,
        ),
        op,
    )
    for pattern, op in _OPERATOR_PRECEDENCE
)

# Words of the clause body; a quoted run is kept as a single token.
_TOKEN_RE = re.compile(r"\"[^\"]*\"?|'[^']*'?|\S+")

_QUOTE_RE = re.compile(r"^['\"]|['\"]$")
_SORT_RE = re.compile(r"^sort\s+by\s+", re.IGNORECASE)
_LIMIT_RE = re.compile(r"^limit\s+", re.IGNORECASE)

_RELATIVE_DATE_RE = re.compile(
    r"^(?P<base>today|tomorrow|yesterday)(?:\s*(?P<sign>[+-])\s*(?P<amount>\d+)\s*(?P<unit>[dwmy]))?$",
    re.IGNORECASE,
)

_BASE_OFFSETS = {"today": 0, "tomorrow": 1, "yesterday": -1}


def parse(text: str) -> StructuredQuery:
    """Parse query text into a StructuredQuery. Never raises on malformed input."""
    filters: list[FilterCondition] = []
    sorts: list[SortCondition] = []
    limit: int | None = None

    pending: BooleanLogic | None = None

    for lineno, raw_line in enumerate((text or "").splitlines(), start=1):
        line = raw_line.strip()
        if not line or line.startswith(_COMMENT_PREFIX):
            continue

        lower = line.lower()

        if lower == _HEADER:
            continue

        if lower in _CONNECTIVES:
            pending = _CONNECTIVES[lower]
            continue

        m = _SORT_RE.match(line)
        if m:
            parsed_sorts = _parse_sorts(line[m.end() :])
            if not parsed_sorts:
                logger.debug("Dropped sort line %d: %r", lineno, line)
            sorts.extend(parsed_sorts)
            continue

        m = _LIMIT_RE.match(line)
        if m:
            parsed_limit = _parse_limit(line[m.end() :])
            if parsed_limit is None:
                logger.debug("Dropped limit line %d: %r", lineno, line)
            else:
                limit = parsed_limit
            continue

        if _is_filter_line(lower):
            body = line[len("where ") :] if lower.startswith("where ") else line
            line_filters = _parse_filter_line(body, pending)
            if line_filters:
                pending = None
            else:
                logger.debug("Dropped filter line %d: %r", lineno, line)
            filters.extend(line_filters)
            continue

        logger.debug("Dropped unrecognized line %d: %r", lineno, line)

    return StructuredQuery(filters=tuple(filters), sorts=tuple(sorts), limit=limit)


def _is_filter_line(lower: str) -> bool:
    if lower.startswith("where "):
        return True
    first = lower.split(None, 1)[0]
    if first in _CONNECTIVES:
        return True
    return " and " in lower or " or " in lower


def _parse_filter_line(body: str, pending: BooleanLogic | None) -> list[FilterCondition]:
    """Split a filter line on its connectives and parse every clause."""
    out: list[FilterCondition] = []
    for clause, logic in _split_clauses(body, pending):
        cond = parse_filter(clause, logic)
        if cond is None:
            logger.debug("Dropped filter clause: %r", clause)
            continue
        out.append(cond)
    return out


def _split_clauses(
    body: str, pending: BooleanLogic | None
) -> list[tuple[str, BooleanLogic | None]]:
    tokens = _TOKEN_RE.findall(body)
    clauses: list[tuple[str, BooleanLogic | None]] = []
    current: list[str] = []
    logic = pending

    for i, token in enumerate(tokens):
        word = token.lower()
        following = tokens[i + 1].lower() if i + 1 < len(tokens) else ""

        if word in ("and", "or"):
            if current:
                clauses.append((" ".join(current), logic))
                current = []
            logic = _CONNECTIVES[word]
            continue

        # "not" is an operator prefix in "not includes" / "not in"; a connective otherwise.
        if word == "not" and following not in ("includes", "in"):
            if current:
                clauses.append((" ".join(current), logic))
                current = []
            logic = BooleanLogic.NOT
            continue

        current.append(token)

    if current:
        clauses.append((" ".join(current), logic))
    return clauses


def parse_filter(clause: str, logic: BooleanLogic | None = None) -> FilterCondition | None:
    """
    Parse a single "<field> <op> <value>" clause.

    The field is the first token; the operator must follow it directly and is
    matched in precedence order, so "not includes" can never be read as
    "includes" with a stray "not".
    """
    clause = clause.strip()
    m = _FIELD_RE.match(clause)
    if not m:
        return None

    field_name = m.group("field")
    rest = clause[m.end() :]

    for pattern, op in _OPERATOR_PATTERNS:
        om = pattern.match(rest)
        if not om:
            continue
        raw_value = rest[om.end() :].strip()
        if not raw_value:
            return None
        return FilterCondition(
            field=field_name,
            operator=op,
            value=parse_value(raw_value),
            logic=logic,
            target=resolve_field(field_name),
        )
    return None


def _unquote(s: str) -> str:
    return _QUOTE_RE.sub("", s.strip())


def parse_value(raw: str) -> FilterValue:
    """Strip quotes; a comma makes a membership list, anything else stays verbatim."""
    value = _unquote(raw)
    if "," in value:
        return tuple(item for item in (_unquote(v) for v in value.split(",")) if item)
    return value


def _parse_sorts(body: str) -> list[SortCondition]:
    out: list[SortCondition] = []
    for item in body.split(","):
        parts = item.split()
        if not parts:
            continue
        direction = (
            SortDirection.DESC
            if len(parts) > 1 and parts[1].lower() == SortDirection.DESC.value
            else SortDirection.ASC
        )
        out.append(SortCondition(field=parts[0], direction=direction, target=resolve_field(parts[0])))
    return out


def _parse_limit(body: str) -> int | None:
    raw = body.strip()
    # str.isdigit also accepts superscripts and other non-decimal digits.
    if not (raw.isascii() and raw.isdigit()):
        return None
    return int(raw)


def resolve_query_date(expr: str, today: date) -> str:
    """
    Resolve a relative date expression against `today`.

    Supports today/tomorrow/yesterday with an optional +/- N(d|w|m|y) offset.
    Month and year offsets clamp to the end of the target month. Anything else
    (absolute dates included) is returned unchanged.
    """
    m = _RELATIVE_DATE_RE.match((expr or "").strip())
    if not m:
        return expr

    base = today + timedelta(days=_BASE_OFFSETS[m.group("base").lower()])
    if m.group("sign") is None:
        return base.isoformat()

    amount = int(m.group("amount")) * (-1 if m.group("sign") == "-" else 1)
    unit = m.group("unit").lower()

    if unit == "d":
        return (base + timedelta(days=amount)).isoformat()
    if unit == "w":
        return (base + timedelta(weeks=amount)).isoformat()
    if unit == "m":
        return _add_months(base, amount).isoformat()
    return _add_months(base, amount * 12).isoformat()


def _add_months(d: date, months: int) -> date:
    index = d.month - 1 + months
    year = d.year + index // 12
    month = index % 12 + 1
    day = min(d.day, calendar.monthrange(year, month)[1])
    return date(year, month, day)
