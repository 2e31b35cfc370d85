from __future__ import annotations

import base64
import binascii
import logging
import sqlite3
from collections.abc import Callable, Iterable, Iterator
from contextlib import contextmanager
from dataclasses import replace
from datetime import UTC, datetime

from neonote.data.codec import decode, encode
from neonote.data.database import NotesDatabase
from neonote.data.errors import CorruptRecord, InvalidCursor, NotFound, StorageUnavailable
from neonote.data.locks import KeyedLocks
from neonote.data.models import CodeLocation, Note, NoteKind, NotePage

logger = logging.getLogger(__name__)

# Largest id SQLite can store in an INTEGER PRIMARY KEY
MAX_ID = 2**63 - 1

_CURSOR_PREFIX = "after:"


def _utcnow() -> datetime:
    return datetime.now(UTC)


def _as_utc(value: datetime | None) -> datetime | None:
    """Naive datetimes are taken to be UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def encode_cursor(after_id: int) -> str:
    raw = f"{_CURSOR_PREFIX}{after_id}".encode("ascii")
    return base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")


def decode_cursor(cursor: str) -> int:
    padded = cursor + "=" * (-len(cursor) % 4)
    try:
        raw = base64.urlsafe_b64decode(padded.encode("ascii")).decode("ascii")
    except (binascii.Error, UnicodeError, ValueError) as exc:
        raise InvalidCursor(f"Invalid cursor {cursor!r}") from exc
    if not raw.startswith(_CURSOR_PREFIX):
        raise InvalidCursor(f"Invalid cursor {cursor!r}")
    position = raw[len(_CURSOR_PREFIX) :]
    if not position.isdigit() or int(position) > MAX_ID:
        raise InvalidCursor(f"Invalid cursor {cursor!r}")
    return int(position)


class NoteStore:
    """Create, read, update, delete and list notes.

    The store works on an already opened ``NotesDatabase`` and never opens
    or closes it itself. Mutations of one note are serialized through a
    per-id lock; reads take no engine lock at all. Each stored note is a
    single encoded value, so a reader sees either the old or the new
    record, never a mix.

    Database failures surface as ``StorageUnavailable`` and are not retried.
    """

    def __init__(
        self,
        db: NotesDatabase,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._db = db
        self._clock = clock or _utcnow
        self._locks = KeyedLocks()

    @property
    def db(self) -> NotesDatabase:
        return self._db

    # -- mutations -----------------------------------------------------------

    def create_note(
        self,
        title: str,
        body: str,
        *,
        kind: NoteKind | str = NoteKind.NOTE,
        tags: Iterable[str] = (),
        completed: bool | None = None,
        due_date: datetime | None = None,
        start_time: datetime | None = None,
        end_time: datetime | None = None,
        code_location: CodeLocation | None = None,
    ) -> int:
        note_kind = NoteKind(kind)
        note_tags = tuple(tags)
        with self._db.transaction() as conn:
            note_id = self._next_id(conn)
            now = self._clock()
            note = Note(
                id=note_id,
                title=title,
                body=body,
                kind=note_kind,
                tags=note_tags,
                created_at=now,
                updated_at=now,
                completed=completed,
                due_date=_as_utc(due_date),
                start_time=_as_utc(start_time),
                end_time=_as_utc(end_time),
                code_location=code_location,
            )
            conn.execute(
                "INSERT INTO notes(id, record) VALUES (?, ?)",
                (note_id, encode(note)),
            )
        logger.debug(f"Created note {note_id}")
        return note_id

    def update_note(
        self,
        note_id: int,
        title: str | None,
        body: str | None,
        *,
        kind: NoteKind | str | None = None,
        tags: Iterable[str] | None = None,
        completed: bool | None = None,
        due_date: datetime | None = None,
        start_time: datetime | None = None,
        end_time: datetime | None = None,
        code_location: CodeLocation | None = None,
    ) -> Note:
        """Replace the given fields of a note and refresh ``updated_at``.

        ``None`` keeps the stored value of that field. The read, change and
        write happen in one transaction while the note's lock is held.
        """
        self._check_id(note_id)
        changes = {
            name: value
            for name, value in (
                ("completed", completed),
                ("due_date", _as_utc(due_date)),
                ("start_time", _as_utc(start_time)),
                ("end_time", _as_utc(end_time)),
                ("code_location", code_location),
            )
            if value is not None
        }
        with self._locks.hold(note_id):
            with self._db.transaction() as conn:
                row = conn.execute(
                    "SELECT record FROM notes WHERE id = ?", (note_id,)
                ).fetchone()
                if row is None:
                    raise NotFound(note_id)
                current = self._decode(note_id, row["record"])
                updated = replace(
                    current,
                    title=current.title if title is None else title,
                    body=current.body if body is None else body,
                    kind=current.kind if kind is None else NoteKind(kind),
                    tags=current.tags if tags is None else tuple(tags),
                    # clamp so a clock step backwards cannot move updated_at back
                    updated_at=max(self._clock(), current.updated_at),
                    **changes,
                )
                conn.execute(
                    "UPDATE notes SET record = ? WHERE id = ?",
                    (encode(updated), note_id),
                )
        logger.debug(f"Updated note {note_id}")
        return updated

    def delete_note(self, note_id: int) -> None:
        self._check_id(note_id)
        with self._locks.hold(note_id):
            with self._db.transaction() as conn:
                cur = conn.execute("DELETE FROM notes WHERE id = ?", (note_id,))
                if cur.rowcount == 0:
                    raise NotFound(note_id)
        logger.debug(f"Deleted note {note_id}")

    # -- reads ---------------------------------------------------------------

    def get_note(self, note_id: int) -> Note:
        self._check_id(note_id)
        with self._reading() as conn:
            row = conn.execute(
                "SELECT record FROM notes WHERE id = ?", (note_id,)
            ).fetchone()
        if row is None:
            raise NotFound(note_id)
        return self._decode(note_id, row["record"])

    def list_notes(
        self,
        cursor: str | None = None,
        limit: int = 50,
        *,
        kind: NoteKind | str | None = None,
        tags: Iterable[str] | None = None,
    ) -> NotePage:
        """Return up to ``limit`` notes in id order, starting after ``cursor``.

        Records that fail to decode are skipped and reported in
        ``NotePage.corrupt``. ``next_cursor`` is ``None`` once the end of
        the table has been reached.
        """
        if limit < 1:
            raise ValueError("limit must be at least 1")
        position = decode_cursor(cursor) if cursor else 0
        wanted_kind = NoteKind(kind) if kind is not None else None
        wanted_tags = tuple(tags or ())

        notes: list[Note] = []
        corrupt: list[CorruptRecord] = []
        with self._reading() as conn:
            while True:
                rows = conn.execute(
                    "SELECT id, record FROM notes WHERE id > ? ORDER BY id LIMIT ?",
                    (position, limit),
                ).fetchall()
                for row in rows:
                    position = int(row["id"])
                    try:
                        note = self._decode(position, row["record"])
                    except CorruptRecord as exc:
                        logger.warning(str(exc))
                        corrupt.append(exc)
                        continue
                    if wanted_kind is not None and note.kind != wanted_kind:
                        continue
                    if not note.has_tags(wanted_tags):
                        continue
                    notes.append(note)
                    if len(notes) == limit:
                        more = conn.execute(
                            "SELECT 1 FROM notes WHERE id > ? LIMIT 1", (position,)
                        ).fetchone()
                        next_cursor = encode_cursor(position) if more else None
                        return NotePage(notes, next_cursor, corrupt)
                if len(rows) < limit:
                    return NotePage(notes, None, corrupt)

    def iter_notes(
        self,
        *,
        kind: NoteKind | str | None = None,
        tags: Iterable[str] | None = None,
        page_size: int = 100,
    ) -> Iterator[Note]:
        """Lazily walk every matching note, one page per database read."""
        wanted_tags = tuple(tags or ())
        cursor: str | None = None
        while True:
            page = self.list_notes(cursor, page_size, kind=kind, tags=wanted_tags)
            yield from page.notes
            if page.next_cursor is None:
                return
            cursor = page.next_cursor

    def count(self) -> int:
        with self._reading() as conn:
            row = conn.execute("SELECT COUNT(*) AS cnt FROM notes").fetchone()
        return int(row["cnt"])

    # -- helpers -------------------------------------------------------------

    @contextmanager
    def _reading(self) -> Iterator[sqlite3.Connection]:
        with self._db.connection() as conn:
            try:
                yield conn
            except sqlite3.Error as exc:
                raise StorageUnavailable(f"Read failed: {exc}") from exc

    @staticmethod
    def _check_id(note_id: int) -> None:
        # ids outside this range are never assigned, and SQLite cannot bind them
        if not 1 <= note_id <= MAX_ID:
            raise NotFound(note_id)

    @staticmethod
    def _next_id(conn: sqlite3.Connection) -> int:
        row = conn.execute("SELECT value FROM sequence WHERE name = 'notes'").fetchone()
        note_id = int(row["value"]) + 1
        conn.execute("UPDATE sequence SET value = ? WHERE name = 'notes'", (note_id,))
        return note_id

    @staticmethod
    def _decode(note_id: int, data: bytes) -> Note:
        try:
            note = decode(data)
        except CorruptRecord as exc:
            raise exc.with_note_id(note_id) from exc
        if note.id != note_id:
            raise CorruptRecord(f"record carries id {note.id}", note_id)
        return note
