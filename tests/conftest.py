"""Shared fixtures for storage tests."""

from __future__ import annotations

import threading
from collections.abc import Iterator
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest

from neonote.data.database import NotesDatabase
from neonote.data.store import NoteStore


class StepClock:
    """Deterministic clock that moves forward by ``step`` on every call."""

    def __init__(
        self,
        start: datetime = datetime(2024, 1, 1, tzinfo=UTC),
        step: timedelta = timedelta(seconds=1),
    ) -> None:
        self._now = start
        self._step = step
        self._lock = threading.Lock()

    def __call__(self) -> datetime:
        with self._lock:
            now = self._now
            self._now = now + self._step
            return now

    def set(self, value: datetime) -> None:
        with self._lock:
            self._now = value


@pytest.fixture
def db_dir(tmp_path: Path) -> Path:
    return tmp_path / "notes_db"


@pytest.fixture
def db(db_dir: Path) -> Iterator[NotesDatabase]:
    handle = NotesDatabase(db_dir)
    handle.open()
    yield handle
    handle.close()


@pytest.fixture
def clock() -> StepClock:
    return StepClock()


@pytest.fixture
def store(db: NotesDatabase, clock: StepClock) -> NoteStore:
    return NoteStore(db, clock=clock)
