from __future__ import annotations

import threading
from datetime import UTC, datetime, timedelta

import pytest

from neonote.data.database import NotesDatabase
from neonote.data.errors import CorruptRecord, InvalidCursor, NotFound, StorageUnavailable
from neonote.data.models import CodeLocation, NoteKind
from neonote.data.store import MAX_ID, NoteStore, decode_cursor, encode_cursor


def _corrupt(db: NotesDatabase, note_id: int, data: bytes = b"NN\x01\x10") -> None:
    with db.transaction() as conn:
        conn.execute("UPDATE notes SET record = ? WHERE id = ?", (data, note_id))


class TestCreateAndGet:
    def test_get_returns_created_note(self, store: NoteStore) -> None:
        note_id = store.create_note("Title", "Body")
        note = store.get_note(note_id)
        assert note.id == note_id
        assert note.title == "Title"
        assert note.body == "Body"
        assert note.kind == NoteKind.NOTE
        assert note.tags == ()
        assert note.created_at == note.updated_at

    def test_kind_and_tags(self, store: NoteStore) -> None:
        note_id = store.create_note("Call Bob", "", kind="task", tags=["work", "phone"])
        note = store.get_note(note_id)
        assert note.kind == NoteKind.TASK
        assert note.tags == ("work", "phone")

    def test_empty_title_allowed(self, store: NoteStore) -> None:
        note_id = store.create_note("", "just a body")
        assert store.get_note(note_id).title == ""

    def test_unknown_kind_rejected(self, store: NoteStore) -> None:
        with pytest.raises(ValueError):
            store.create_note("t", "b", kind="reminder")
        assert store.count() == 0

    def test_get_missing(self, store: NoteStore) -> None:
        with pytest.raises(NotFound) as info:
            store.get_note(12345)
        assert info.value.note_id == 12345

    @pytest.mark.parametrize("note_id", [0, -1, MAX_ID + 1, 2**64])
    def test_ids_outside_storable_range_are_not_found(
        self, store: NoteStore, note_id: int
    ) -> None:
        store.create_note("t", "b")
        with pytest.raises(NotFound):
            store.get_note(note_id)
        with pytest.raises(NotFound):
            store.update_note(note_id, "t", "b")
        with pytest.raises(NotFound):
            store.delete_note(note_id)
        assert store.count() == 1

    def test_task_event_and_location_fields(self, store: NoteStore) -> None:
        due = datetime(2024, 3, 1, 17, 0, tzinfo=UTC)
        note_id = store.create_note(
            "Fix parser",
            "",
            kind="task",
            completed=False,
            due_date=due,
            code_location=CodeLocation("src/parser.py", 120),
        )
        note = store.get_note(note_id)
        assert note.completed is False
        assert note.due_date == due
        assert note.start_time is None
        assert note.end_time is None
        assert note.code_location == CodeLocation("src/parser.py", 120)

    def test_naive_times_are_taken_as_utc(self, store: NoteStore) -> None:
        note_id = store.create_note(
            "Standup",
            "",
            kind="event",
            start_time=datetime(2024, 3, 1, 9, 0),
            end_time=datetime(2024, 3, 1, 9, 15),
        )
        note = store.get_note(note_id)
        assert note.start_time == datetime(2024, 3, 1, 9, 0, tzinfo=UTC)
        assert note.end_time == datetime(2024, 3, 1, 9, 15, tzinfo=UTC)

    def test_ids_are_unique_and_increasing(self, store: NoteStore) -> None:
        ids = [store.create_note(f"n{i}", "") for i in range(20)]
        assert len(set(ids)) == 20
        assert ids == sorted(ids)

    def test_ids_not_reused_after_delete(self, store: NoteStore) -> None:
        first = store.create_note("a", "")
        second = store.create_note("b", "")
        store.delete_note(second)
        store.delete_note(first)
        third = store.create_note("c", "")
        assert third not in {first, second}
        assert third > second

    def test_ids_not_reused_after_reopen(self, db_dir) -> None:
        with NotesDatabase(db_dir) as db:
            store = NoteStore(db)
            issued = [store.create_note(str(i), "") for i in range(3)]
            store.delete_note(issued[-1])
        with NotesDatabase(db_dir) as db:
            store = NoteStore(db)
            new_id = store.create_note("after reopen", "")
            assert new_id not in issued
            assert [n.id for n in store.iter_notes()] == issued[:2] + [new_id]


class TestUpdate:
    def test_update_replaces_fields(self, store: NoteStore) -> None:
        note_id = store.create_note("Old", "Old body", tags=["x"])
        updated = store.update_note(note_id, "New", "New body")
        assert updated.title == "New"
        assert updated.body == "New body"
        assert updated.tags == ("x",)

        fetched = store.get_note(note_id)
        assert fetched == updated
        assert fetched.updated_at >= fetched.created_at

    def test_updated_at_strictly_increases(self, store: NoteStore) -> None:
        note_id = store.create_note("t", "b")
        before = store.get_note(note_id)
        after = store.update_note(note_id, "t2", "b2")
        assert after.updated_at > before.updated_at
        assert after.created_at == before.created_at

    def test_updated_at_never_moves_back(self, store: NoteStore, clock) -> None:
        note_id = store.create_note("t", "b")
        created = store.get_note(note_id)
        clock.set(created.created_at - timedelta(days=1))
        after = store.update_note(note_id, "t2", "b2")
        assert after.updated_at == created.updated_at
        assert after.updated_at >= after.created_at

    def test_none_keeps_stored_values(self, store: NoteStore) -> None:
        note_id = store.create_note("Title", "Body", kind="event", tags=["a"])
        updated = store.update_note(note_id, None, "Changed")
        assert updated.title == "Title"
        assert updated.body == "Changed"
        assert updated.kind == NoteKind.EVENT
        assert updated.tags == ("a",)

    def test_partial_update_of_task_fields(self, store: NoteStore) -> None:
        due = datetime(2024, 3, 1, 17, 0, tzinfo=UTC)
        note_id = store.create_note(
            "t", "b", completed=False, due_date=due, code_location=CodeLocation("a.py", 1)
        )
        updated = store.update_note(note_id, None, None, completed=True)
        assert updated.completed is True
        assert updated.due_date == due
        assert updated.code_location == CodeLocation("a.py", 1)

        moved = datetime(2024, 3, 2, 17, 0, tzinfo=UTC)
        updated = store.update_note(
            note_id, None, None, due_date=moved, code_location=CodeLocation("b.py", 7)
        )
        assert updated.completed is True
        assert updated.due_date == moved
        assert updated.code_location == CodeLocation("b.py", 7)
        assert store.get_note(note_id) == updated

    def test_update_kind_and_tags(self, store: NoteStore) -> None:
        note_id = store.create_note("t", "b")
        updated = store.update_note(note_id, None, None, kind=NoteKind.TASK, tags=[])
        assert updated.kind == NoteKind.TASK
        assert updated.tags == ()

    def test_update_missing(self, store: NoteStore) -> None:
        with pytest.raises(NotFound):
            store.update_note(99, "t", "b")
        assert store.count() == 0


class TestDelete:
    def test_delete_then_get_and_update_fail(self, store: NoteStore) -> None:
        note_id = store.create_note("t", "b")
        store.delete_note(note_id)
        with pytest.raises(NotFound):
            store.get_note(note_id)
        with pytest.raises(NotFound):
            store.update_note(note_id, "t", "b")
        with pytest.raises(NotFound):
            store.delete_note(note_id)

    def test_delete_leaves_other_notes(self, store: NoteStore) -> None:
        keep = store.create_note("keep", "")
        drop = store.create_note("drop", "")
        store.delete_note(drop)
        assert store.get_note(keep).title == "keep"
        assert store.count() == 1

    def test_delete_corrupt_record(self, store: NoteStore, db: NotesDatabase) -> None:
        note_id = store.create_note("t", "b")
        _corrupt(db, note_id)
        store.delete_note(note_id)
        with pytest.raises(NotFound):
            store.get_note(note_id)


class TestList:
    def test_pages_cover_all_notes_once(self, store: NoteStore) -> None:
        created = [store.create_note(f"note {i}", "") for i in range(10)]
        seen: list[int] = []
        cursor = None
        pages = 0
        while True:
            page = store.list_notes(cursor, limit=3)
            pages += 1
            assert len(page.notes) <= 3
            seen.extend(note.id for note in page.notes)
            if page.next_cursor is None:
                break
            cursor = page.next_cursor
        assert seen == created
        assert pages == 4

    def test_exact_multiple_has_no_empty_trailing_page(self, store: NoteStore) -> None:
        for i in range(6):
            store.create_note(str(i), "")
        first = store.list_notes(limit=3)
        second = store.list_notes(first.next_cursor, limit=3)
        assert len(second.notes) == 3
        assert second.next_cursor is None

    def test_empty_store(self, store: NoteStore) -> None:
        page = store.list_notes()
        assert page.notes == []
        assert page.next_cursor is None
        assert page.corrupt == []

    def test_cursor_survives_deletion(self, store: NoteStore) -> None:
        ids = [store.create_note(str(i), "") for i in range(5)]
        page = store.list_notes(limit=2)
        store.delete_note(ids[1])
        store.delete_note(ids[2])
        rest = store.list_notes(page.next_cursor, limit=10)
        assert [n.id for n in rest.notes] == ids[3:]

    def test_filter_by_kind_and_tags(self, store: NoteStore) -> None:
        task = store.create_note("task", "", kind="task", tags=["work", "urgent"])
        store.create_note("note", "", tags=["work"])
        store.create_note("other task", "", kind="task", tags=["home"])
        page = store.list_notes(kind="task", tags=["work"])
        assert [n.id for n in page.notes] == [task]

    def test_filtered_paging(self, store: NoteStore) -> None:
        wanted = []
        for i in range(12):
            tags = ["even"] if i % 2 == 0 else []
            note_id = store.create_note(str(i), "", tags=tags)
            if i % 2 == 0:
                wanted.append(note_id)
        got = [n.id for n in store.iter_notes(tags=["even"], page_size=2)]
        assert got == wanted

    def test_corrupt_record_does_not_abort_listing(
        self, store: NoteStore, db: NotesDatabase
    ) -> None:
        ids = [store.create_note(str(i), "") for i in range(5)]
        _corrupt(db, ids[2])
        page = store.list_notes(limit=10)
        assert [n.id for n in page.notes] == [ids[0], ids[1], ids[3], ids[4]]
        assert [err.note_id for err in page.corrupt] == [ids[2]]
        assert page.next_cursor is None

    def test_invalid_cursor(self, store: NoteStore) -> None:
        with pytest.raises(InvalidCursor):
            store.list_notes("not a cursor!")
        with pytest.raises(ValueError):
            store.list_notes(encode_cursor(1)[:-1] + "$")

    def test_cursor_beyond_storable_ids(self, store: NoteStore) -> None:
        store.create_note("t", "b")
        with pytest.raises(InvalidCursor):
            store.list_notes(encode_cursor(99999999999999999999))
        with pytest.raises(InvalidCursor):
            decode_cursor(encode_cursor(MAX_ID + 1))
        assert decode_cursor(encode_cursor(MAX_ID)) == MAX_ID
        assert store.list_notes(encode_cursor(MAX_ID)).notes == []

    def test_invalid_limit(self, store: NoteStore) -> None:
        with pytest.raises(ValueError):
            store.list_notes(limit=0)

    def test_cursor_round_trip(self) -> None:
        assert decode_cursor(encode_cursor(0)) == 0
        assert decode_cursor(encode_cursor(987654321)) == 987654321

    def test_iter_notes_is_restartable(self, store: NoteStore) -> None:
        for i in range(7):
            store.create_note(str(i), "")
        first = [n.id for n in store.iter_notes(page_size=3)]
        second = [n.id for n in store.iter_notes(page_size=3)]
        assert first == second
        assert len(first) == 7


class TestCorruption:
    def test_get_reports_corrupt_record(self, store: NoteStore, db: NotesDatabase) -> None:
        note_id = store.create_note("t", "b")
        _corrupt(db, note_id)
        with pytest.raises(CorruptRecord) as info:
            store.get_note(note_id)
        assert info.value.note_id == note_id

    def test_update_reports_corrupt_record_and_leaves_it(
        self, store: NoteStore, db: NotesDatabase
    ) -> None:
        note_id = store.create_note("t", "b")
        _corrupt(db, note_id, b"garbage")
        with pytest.raises(CorruptRecord):
            store.update_note(note_id, "new", "new")
        with db.connection() as conn:
            row = conn.execute(
                "SELECT record FROM notes WHERE id = ?", (note_id,)
            ).fetchone()
        assert row["record"] == b"garbage"

    def test_record_under_wrong_key(self, store: NoteStore, db: NotesDatabase) -> None:
        first = store.create_note("first", "")
        second = store.create_note("second", "")
        with db.connection() as conn:
            data = conn.execute(
                "SELECT record FROM notes WHERE id = ?", (first,)
            ).fetchone()["record"]
        _corrupt(db, second, data)
        with pytest.raises(CorruptRecord, match="carries id"):
            store.get_note(second)


class TestClosedDatabase:
    def test_operations_after_close_fail(self, db_dir) -> None:
        db = NotesDatabase(db_dir).open()
        store = NoteStore(db)
        note_id = store.create_note("t", "b")
        db.close()
        with pytest.raises(StorageUnavailable):
            store.create_note("t", "b")
        with pytest.raises(StorageUnavailable):
            store.get_note(note_id)
        with pytest.raises(StorageUnavailable):
            store.update_note(note_id, "x", "y")
        with pytest.raises(StorageUnavailable):
            store.delete_note(note_id)
        with pytest.raises(StorageUnavailable):
            store.list_notes()


class TestConcurrency:
    def test_concurrent_creates_get_unique_ids(self, store: NoteStore) -> None:
        ids: list[int] = []
        ids_lock = threading.Lock()
        errors: list[BaseException] = []

        def worker() -> None:
            try:
                for i in range(25):
                    note_id = store.create_note(f"n{i}", "")
                    with ids_lock:
                        ids.append(note_id)
            except BaseException as exc:
                errors.append(exc)

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert errors == []
        assert len(ids) == 200
        assert len(set(ids)) == 200
        assert store.count() == 200

    def test_concurrent_updates_never_mix_payloads(self, db: NotesDatabase) -> None:
        store = NoteStore(db)
        note_id = store.create_note("seed-0-0", "seed-0-0")
        payloads: set[tuple[str, str]] = set()
        stop = threading.Event()
        errors: list[BaseException] = []

        def writer(n: int) -> None:
            try:
                for i in range(40):
                    tag = f"w{n}-{i}"
                    store.update_note(note_id, f"title {tag}", f"body {tag}")
            except BaseException as exc:
                errors.append(exc)

        def reader() -> None:
            try:
                while not stop.is_set():
                    note = store.get_note(note_id)
                    assert note.title.split(" ", 1)[-1] == note.body.split(" ", 1)[-1]
            except BaseException as exc:
                errors.append(exc)

        for n in range(6):
            for i in range(40):
                tag = f"w{n}-{i}"
                payloads.add((f"title {tag}", f"body {tag}"))

        readers = [threading.Thread(target=reader) for _ in range(2)]
        writers = [threading.Thread(target=writer, args=(n,)) for n in range(6)]
        for t in readers + writers:
            t.start()
        for t in writers:
            t.join()
        stop.set()
        for t in readers:
            t.join()

        assert errors == []
        final = store.get_note(note_id)
        assert (final.title, final.body) in payloads

    def test_updated_at_monotonic_under_concurrency(self, db: NotesDatabase) -> None:
        store = NoteStore(db)
        note_id = store.create_note("t", "b")
        seen: list[datetime] = []
        seen_lock = threading.Lock()

        def writer() -> None:
            for _ in range(20):
                note = store.update_note(note_id, "t", "b")
                with seen_lock:
                    seen.append(note.updated_at)

        threads = [threading.Thread(target=writer) for _ in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        final = store.get_note(note_id)
        assert final.updated_at == max(seen)
        assert final.updated_at >= final.created_at
        assert final.updated_at.tzinfo is not None
        assert final.updated_at <= datetime.now(UTC) + timedelta(seconds=1)
