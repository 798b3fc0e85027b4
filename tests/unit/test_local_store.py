from __future__ import annotations

import sqlite3
from datetime import UTC, datetime, timedelta

import pytest

from state.local_store import SQLiteLocalStore, extract_tags
from state.models import ChangeType, Entry, Tag, Tracker


T0 = datetime(2024, 5, 1, 12, 0, tzinfo=UTC)


class StepClock:
    def __init__(self, start: datetime = T0) -> None:
        self.now = start

    def __call__(self) -> datetime:
        self.now = self.now + timedelta(seconds=1)
        return self.now


def _tracker(tid: str = "t1") -> Tracker:
    return Tracker(id=tid, title="Mood", type="scale", is_number=True)


def _entry(eid: str = "e1", tid: str = "t1", comment: str | None = None) -> Entry:
    return Entry(id=eid, tracker_id=tid, date="2024-05-01", value=4, comment=comment, created_at=T0)


def test_extract_tags_dedupes_case_insensitively():
    tags = extract_tags(_entry(comment="#Run then #run and #gym"))
    assert [(t.tag_name, t.tag_name_with_original_casing) for t in tags] == [("run", "Run"), ("gym", "gym")]
    assert tags[0].id == "e1:run"
    assert extract_tags(_entry()) == []


@pytest.mark.asyncio
async def test_mutations_bump_change_clock_and_notify(tmp_path):
    changes = []
    clock = StepClock()
    store = SQLiteLocalStore(tmp_path / "db.sqlite", clock=clock, on_change=changes.append)

    # the first connection stamps a new database with the current time
    assert await store.last_local_change_at() == T0 + timedelta(seconds=1)
    saved = await store.save_tracker(_tracker())
    assert saved.updated_at is not None
    first = await store.last_local_change_at()

    await store.save_tracker(_tracker())
    await store.add_entry(_entry(comment="good #sleep"))
    await store.update_entry(_entry(comment="great"))
    assert await store.delete_entry("e1") is True
    assert await store.delete_tracker("t1") is True
    assert await store.delete_entry("missing") is False

    assert changes == [
        ChangeType.TRACKER_CREATED,
        ChangeType.TRACKER_UPDATED,
        ChangeType.ENTRY_ADDED,
        ChangeType.ENTRY_UPDATED,
        ChangeType.ENTRY_DELETED,
        ChangeType.TRACKER_DELETED,
    ]
    assert await store.last_local_change_at() > first

    captured = await store.capture_all_entities()
    assert captured.trackers[0].deleted_at is not None
    assert captured.entries[0].deleted_at is not None
    # retagging on update removed the #sleep tag
    assert captured.tags == []


@pytest.mark.asyncio
async def test_add_entry_for_unknown_tracker(tmp_path):
    store = SQLiteLocalStore(tmp_path / "db.sqlite")
    with pytest.raises(KeyError):
        await store.add_entry(_entry(tid="nope"))


@pytest.mark.asyncio
async def test_replace_all_swaps_everything(tmp_path):
    store = SQLiteLocalStore(tmp_path / "db.sqlite")
    await store.save_tracker(_tracker("old"))

    tag = Tag(id="e1:x", entry_id="e1", tracker_id="t1", tag_name="x")
    await store.replace_all_entities([_tracker()], [_entry()], [tag], last_change_at=T0)

    captured = await store.capture_all_entities()
    assert [t.id for t in captured.trackers] == ["t1"]
    assert [e.id for e in captured.entries] == ["e1"]
    assert [t.id for t in captured.tags] == ["e1:x"]
    assert await store.last_local_change_at() == T0


@pytest.mark.asyncio
async def test_replace_all_rolls_back_on_failure(tmp_path):
    store = SQLiteLocalStore(tmp_path / "db.sqlite", clock=StepClock())
    await store.save_tracker(_tracker("keep"))
    before = await store.last_local_change_at()

    # duplicate primary keys fail mid-transaction
    with pytest.raises(sqlite3.IntegrityError):
        await store.replace_all_entities([_tracker(), _tracker()], [], [], last_change_at=T0)

    captured = await store.capture_all_entities()
    assert [t.id for t in captured.trackers] == ["keep"]
    assert await store.last_local_change_at() == before
    await store.save_tracker(_tracker("next"))
    assert len((await store.capture_all_entities()).trackers) == 2


@pytest.mark.asyncio
async def test_new_database_gets_a_stable_change_clock(tmp_path):
    path = tmp_path / "db.sqlite"
    store = SQLiteLocalStore(path, clock=StepClock())
    seeded = await store.last_local_change_at()
    assert seeded == T0 + timedelta(seconds=1)
    assert await store.last_local_change_at() == seeded

    # reopening an existing database keeps its clock
    reopened = SQLiteLocalStore(path, clock=StepClock(T0 + timedelta(days=1)))
    assert await reopened.last_local_change_at() == seeded
