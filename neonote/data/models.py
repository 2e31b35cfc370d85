from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum

from neonote.data.errors import CorruptRecord


class NoteKind(StrEnum):
    NOTE = "note"
    TASK = "task"
    EVENT = "event"


@dataclass(frozen=True)
class CodeLocation:
    """A place in a source file a note points at."""

    file_path: str
    line_number: int


@dataclass(frozen=True)
class Note:
    """A single stored note.

    ``id`` is assigned by the store and never reused. ``updated_at`` is
    never earlier than ``created_at``. The task and event fields
    (``completed``, ``due_date``, ``start_time``, ``end_time``) and
    ``code_location`` are optional and ``None`` when unset.
    """

    id: int
    title: str
    body: str
    created_at: datetime
    updated_at: datetime
    kind: NoteKind = NoteKind.NOTE
    tags: tuple[str, ...] = field(default_factory=tuple)
    completed: bool | None = None
    due_date: datetime | None = None
    start_time: datetime | None = None
    end_time: datetime | None = None
    code_location: CodeLocation | None = None

    def has_tags(self, tags: tuple[str, ...] | list[str]) -> bool:
        return all(tag in self.tags for tag in tags)


@dataclass(frozen=True)
class NotePage:
    """One page of a cursor-driven listing."""

    notes: list[Note]
    next_cursor: str | None
    corrupt: list[CorruptRecord] = field(default_factory=list)
