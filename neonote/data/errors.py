"""Failure kinds raised by the notes storage engine."""

from __future__ import annotations


class StorageError(Exception):
    """Base class for every storage engine failure."""


class NotFound(StorageError, LookupError):
    def __init__(self, note_id: int) -> None:
        super().__init__(f"Note {note_id} not found")
        self.note_id = note_id


class CorruptRecord(StorageError):
    """A stored value does not match the record layout.

    ``note_id`` is ``None`` when the codec is used on its own and the key
    is unknown; the store fills it in before re-raising.
    """

    def __init__(self, reason: str, note_id: int | None = None) -> None:
        self.reason = reason
        self.note_id = note_id
        if note_id is None:
            super().__init__(f"Corrupt record: {reason}")
        else:
            super().__init__(f"Corrupt record for note {note_id}: {reason}")

    def with_note_id(self, note_id: int) -> CorruptRecord:
        return CorruptRecord(self.reason, note_id)


class StorageUnavailable(StorageError):
    """The embedded database rejected an open, read or write."""


class InvalidCursor(StorageError, ValueError):
    pass
