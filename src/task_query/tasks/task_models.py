# src/task_query/tasks/task_models.py

from __future__ import annotations

import json
from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import IntEnum, StrEnum
from typing import Any

ATTR_PREFIX = "custom-task-"


class TaskStatus(StrEnum):
    """Closed status vocabulary, stored upper case."""

    TODO = "TODO"
    DOING = "DOING"
    DONE = "DONE"
    CANCELLED = "CANCELLED"
    ON_HOLD = "ON_HOLD"

    @classmethod
    def from_attr(cls, raw: str | None) -> TaskStatus:
        if not raw:
            return cls.TODO
        try:
            return cls(raw.strip().upper())
        except ValueError:
            return cls.TODO


class TaskPriority(IntEnum):
    """1 = highest, 6 = no priority."""

    HIGHEST = 1
    HIGH = 2
    MEDIUM = 3
    LOW = 4
    LOWEST = 5
    NONE = 6

    @classmethod
    def from_attr(cls, raw: str | None) -> TaskPriority:
        if not raw:
            return cls.NONE
        key = raw.strip().lower()
        if key in PRIORITY_NAMES:
            return PRIORITY_NAMES[key]
        try:
            return cls(int(key))
        except ValueError:
            return cls.NONE


PRIORITY_NAMES: dict[str, TaskPriority] = {p.name.lower(): p for p in TaskPriority}


@dataclass(frozen=True, slots=True)
class TaskRecord:
    """
    A hydrated task.

    Frozen with tuple collections, so a result snapshot can be shared between
    cache hits without callers being able to mutate it.
    """

    task_id: str
    description: str
    status: TaskStatus = TaskStatus.TODO
    priority: TaskPriority = TaskPriority.NONE

    due_date: str | None = None
    scheduled_date: str | None = None
    start_date: str | None = None
    done_date: str | None = None
    cancelled_date: str | None = None

    recurrence_rule: str | None = None
    tags: tuple[str, ...] = ()
    depends_on: tuple[str, ...] = ()

    source_block_id: str = ""
    # Full attribute set as returned by the record source (includes unknown attributes).
    attributes: Mapping[str, str] = field(default_factory=dict, compare=False, repr=False)

    def attribute(self, name: str) -> str | None:
        """Raw attribute value by canonical field name (e.g. "due_date" -> custom-task-due)."""
        return self.attributes.get(attr_name(name))


# canonical field -> attribute suffix, where the two differ
_ATTR_SUFFIX = {
    "task_id": "id",
    "due_date": "due",
    "scheduled_date": "scheduled",
    "start_date": "start",
    "done_date": "done",
    "cancelled_date": "cancelled",
    "recurrence_rule": "recurrence",
}


def attr_name(field_name: str) -> str:
    """Block attribute name for a canonical field ("depends_on" -> "custom-task-depends-on")."""
    suffix = _ATTR_SUFFIX.get(field_name, field_name)
    return ATTR_PREFIX + suffix.replace("_", "-")


def _json_list(raw: str | None) -> tuple[str, ...]:
    if not raw:
        return ()
    try:
        val = json.loads(raw)
    except ValueError:
        return ()
    if not isinstance(val, list):
        return ()
    return tuple(str(v) for v in val)


def attributes_to_record(block_id: str, attrs: Mapping[str, Any]) -> TaskRecord | None:
    """
    Convert block attributes into a TaskRecord.

    Returns None when the block is not a task (missing id or description).
    """
    task_id = attrs.get(attr_name("task_id"))
    description = attrs.get(attr_name("description"))
    if not task_id or not description:
        return None

    def opt(name: str) -> str | None:
        v = attrs.get(attr_name(name))
        return str(v) if v else None

    return TaskRecord(
        task_id=str(task_id),
        description=str(description),
        status=TaskStatus.from_attr(opt("status")),
        priority=TaskPriority.from_attr(opt("priority")),
        due_date=opt("due_date"),
        scheduled_date=opt("scheduled_date"),
        start_date=opt("start_date"),
        done_date=opt("done_date"),
        cancelled_date=opt("cancelled_date"),
        recurrence_rule=opt("recurrence_rule"),
        tags=_json_list(opt("tags")),
        depends_on=_json_list(opt("depends_on")),
        source_block_id=block_id,
        attributes={str(k): str(v) for k, v in attrs.items() if v is not None},
    )


def record_to_attributes(record: TaskRecord) -> dict[str, str]:
    """Inverse of attributes_to_record; None-valued fields are omitted."""
    attrs: dict[str, str] = dict(record.attributes)
    attrs.update(
        {
            attr_name("task_id"): record.task_id,
            attr_name("description"): record.description,
            attr_name("status"): record.status.value,
            attr_name("priority"): str(int(record.priority)),
            attr_name("tags"): json.dumps(list(record.tags), ensure_ascii=False),
            attr_name("depends_on"): json.dumps(list(record.depends_on), ensure_ascii=False),
        }
    )
    for name in (
        "due_date",
        "scheduled_date",
        "start_date",
        "done_date",
        "cancelled_date",
        "recurrence_rule",
    ):
        value = getattr(record, name)
        key = attr_name(name)
        if value:
            attrs[key] = value
        else:
            attrs.pop(key, None)
    return attrs


def format_ial(attrs: Mapping[str, str]) -> str:
    """
    Serialize attributes as an inline attribute list: {: name="value" ...}.

    Double quotes inside values are escaped as &quot; so a quoted value never
    terminates early; narrowing patterns rely on that.
    """
    parts = [f'{key}="{escape_ial_value(attrs[key])}"' for key in sorted(attrs)]
    return "{: " + " ".join(parts) + "}"


def escape_ial_value(value: str) -> str:
    return str(value).replace("&", "&amp;").replace('"', "&quot;").replace("\n", "_esc_newline_")
