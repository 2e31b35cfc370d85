"""Byte layout of a note record as stored in the database.

Every record starts with a fixed little-endian header followed by a UTF-8
JSON payload::

    magic   2 bytes   b"NN"
    version uint8     record format version
    length  uint32    payload size in bytes

The version tag lets newer layouts be added next to old records still on
disk. Version 2 is written today. It adds the task, event and code location
fields, which must all be present (``null`` when unset). Version 1 records
lack them and decode with those fields set to ``None``.
"""

from __future__ import annotations

import json
import struct
from dataclasses import replace
from datetime import UTC, datetime, timedelta
from typing import Any

from neonote.data.errors import CorruptRecord
from neonote.data.models import CodeLocation, Note, NoteKind

MAGIC = b"NN"
FORMAT_VERSION = 2
SUPPORTED_VERSIONS = frozenset({1, 2})

_HEADER = struct.Struct("<2sBI")
_EPOCH = datetime(1970, 1, 1, tzinfo=UTC)


def to_micros(value: datetime) -> int:
    """Encode an aware datetime as integer microseconds since the epoch."""
    return (value - _EPOCH) // timedelta(microseconds=1)


def from_micros(value: int) -> datetime:
    return _EPOCH + timedelta(microseconds=value)


def encode(note: Note) -> bytes:
    location = note.code_location
    payload = json.dumps(
        {
            "id": note.id,
            "kind": note.kind.value,
            "title": note.title,
            "body": note.body,
            "tags": list(note.tags),
            "created_at": to_micros(note.created_at),
            "updated_at": to_micros(note.updated_at),
            "completed": note.completed,
            "due_date": _optional_micros(note.due_date),
            "start_time": _optional_micros(note.start_time),
            "end_time": _optional_micros(note.end_time),
            "code_location": None
            if location is None
            else {"file_path": location.file_path, "line_number": location.line_number},
        },
        ensure_ascii=False,
        separators=(",", ":"),
    ).encode("utf-8")
    return _HEADER.pack(MAGIC, FORMAT_VERSION, len(payload)) + payload


def decode(data: bytes) -> Note:
    if len(data) < _HEADER.size:
        raise CorruptRecord(f"truncated header ({len(data)} bytes)")
    magic, version, length = _HEADER.unpack_from(data)
    if magic != MAGIC:
        raise CorruptRecord(f"bad magic {magic!r}")
    if version not in SUPPORTED_VERSIONS:
        raise CorruptRecord(f"unsupported format version {version}")
    payload = data[_HEADER.size :]
    if len(payload) != length:
        raise CorruptRecord(
            f"payload length mismatch: header says {length}, got {len(payload)}"
        )
    try:
        fields = json.loads(payload.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise CorruptRecord(f"unreadable payload: {exc}") from exc
    if not isinstance(fields, dict):
        raise CorruptRecord("payload is not an object")
    note = _note_from_fields(fields)
    if version >= 2:
        note = _with_extra_fields(note, fields)
    return note


def _note_from_fields(fields: dict[str, Any]) -> Note:
    note_id = _require(fields, "id", int)
    title = _require(fields, "title", str)
    body = _require(fields, "body", str)
    kind_raw = _require(fields, "kind", str)
    tags = _require(fields, "tags", list)
    created = _require(fields, "created_at", int)
    updated = _require(fields, "updated_at", int)

    try:
        kind = NoteKind(kind_raw)
    except ValueError as exc:
        raise CorruptRecord(f"unknown kind {kind_raw!r}") from exc
    if not all(isinstance(tag, str) for tag in tags):
        raise CorruptRecord("tags must be strings")
    if updated < created:
        raise CorruptRecord("updated_at precedes created_at")

    return Note(
        id=note_id,
        title=title,
        body=body,
        kind=kind,
        tags=tuple(tags),
        created_at=_timestamp(created),
        updated_at=_timestamp(updated),
    )


def _with_extra_fields(note: Note, fields: dict[str, Any]) -> Note:
    completed = _require(fields, "completed", bool, nullable=True)
    due = _require(fields, "due_date", int, nullable=True)
    start = _require(fields, "start_time", int, nullable=True)
    end = _require(fields, "end_time", int, nullable=True)
    location_raw = _require(fields, "code_location", dict, nullable=True)

    location = None
    if location_raw is not None:
        location = CodeLocation(
            file_path=_require(location_raw, "file_path", str),
            line_number=_require(location_raw, "line_number", int),
        )

    return replace(
        note,
        completed=completed,
        due_date=None if due is None else _timestamp(due),
        start_time=None if start is None else _timestamp(start),
        end_time=None if end is None else _timestamp(end),
        code_location=location,
    )


def _optional_micros(value: datetime | None) -> int | None:
    return None if value is None else to_micros(value)


def _timestamp(micros: int) -> datetime:
    try:
        return from_micros(micros)
    except OverflowError as exc:
        raise CorruptRecord("timestamp out of range") from exc


def _require(
    fields: dict[str, Any], name: str, expected: type, *, nullable: bool = False
) -> Any:
    if name not in fields:
        raise CorruptRecord(f"missing field {name!r}")
    value = fields[name]
    if value is None and nullable:
        return None
    # bool is an int subclass; it is never a valid id or timestamp
    if expected is bool:
        valid = isinstance(value, bool)
    else:
        valid = isinstance(value, expected) and not isinstance(value, bool)
    if not valid:
        raise CorruptRecord(f"field {name!r} has type {type(value).__name__}")
    return value
