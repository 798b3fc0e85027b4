from __future__ import annotations

import asyncio
import os
import re
import sqlite3
from contextlib import closing
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Callable, List, Optional, Protocol, Sequence

from .models import ChangeType, Entry, Tag, Tracker


LAST_CHANGE_KEY = "lastChangeAt"

_SCHEMA = """
CREATE TABLE IF NOT EXISTS trackers (id TEXT PRIMARY KEY, data TEXT NOT NULL);
CREATE TABLE IF NOT EXISTS entries (id TEXT PRIMARY KEY, tracker_id TEXT NOT NULL, data TEXT NOT NULL);
CREATE TABLE IF NOT EXISTS entry_tags (id TEXT PRIMARY KEY, entry_id TEXT NOT NULL, data TEXT NOT NULL);
CREATE TABLE IF NOT EXISTS metadata (key TEXT PRIMARY KEY, value TEXT NOT NULL);
"""

_HASHTAG = re.compile(r"#(\w+)")


@dataclass(frozen=True)
class EntitySet:
    trackers: List[Tracker] = field(default_factory=list)
    entries: List[Entry] = field(default_factory=list)
    tags: List[Tag] = field(default_factory=list)


class LocalStore(Protocol):
    """What the sync engine needs from the on-device store."""

    async def capture_all_entities(self) -> EntitySet:
        ...

    async def replace_all_entities(
        self,
        trackers: Sequence[Tracker],
        entries: Sequence[Entry],
        tags: Sequence[Tag],
        *,
        last_change_at: Optional[datetime],
    ) -> None:
        """Swap the whole data set in one transaction; nothing changes on failure."""
        ...

    async def last_local_change_at(self) -> Optional[datetime]:
        ...


def extract_tags(entry: Entry) -> List[Tag]:
    """Hashtags in the entry comment, deduplicated case-insensitively (first casing wins)."""
    if not entry.comment:
        return []
    seen: dict[str, str] = {}
    for match in _HASHTAG.finditer(entry.comment):
        original = match.group(1)
        seen.setdefault(original.lower(), original)
    return [
        Tag(
            id=f"{entry.id}:{lower}",
            entry_id=entry.id,
            tracker_id=entry.tracker_id,
            tag_name=lower,
            tag_name_with_original_casing=original,
        )
        for lower, original in seen.items()
    ]


def _dump(model) -> str:
    return model.model_dump_json(by_alias=True, exclude_none=True)


class SQLiteLocalStore:
    """
    SQLite-backed tracker store.

    - Entities are stored as their JSON wire form, keyed by id.
    - Every create/update/delete bumps `lastChangeAt` in the same transaction
      and then reports a ChangeType to `on_change` (e.g. ChangeNotifier.notify).
    - Blocking sqlite calls run in a worker thread; one connection per call.
    """

    def __init__(
        self,
        path: os.PathLike[str] | str,
        *,
        clock: Callable[[], datetime] = lambda: datetime.now(UTC),
        on_change: Optional[Callable[[ChangeType], None]] = None,
    ) -> None:
        self._path = Path(path)
        self._clock = clock
        self._on_change = on_change
        self._initialized = False

    def set_change_listener(self, listener: Optional[Callable[[ChangeType], None]]) -> None:
        self._on_change = listener

    # -------- Sync boundary --------
    async def capture_all_entities(self) -> EntitySet:
        return await asyncio.to_thread(self._capture)

    async def replace_all_entities(
        self,
        trackers: Sequence[Tracker],
        entries: Sequence[Entry],
        tags: Sequence[Tag],
        *,
        last_change_at: Optional[datetime],
    ) -> None:
        await asyncio.to_thread(self._replace_all, list(trackers), list(entries), list(tags), last_change_at)

    async def last_local_change_at(self) -> Optional[datetime]:
        return await asyncio.to_thread(self._read_last_change)

    # -------- Mutations --------
    async def save_tracker(self, tracker: Tracker) -> Tracker:
        """Insert or update a tracker; stamps `updatedAt`."""
        now = self._clock()
        tracker = tracker.model_copy(update={"updated_at": now})
        created = await asyncio.to_thread(self._upsert_tracker, tracker, now)
        self._emit(ChangeType.TRACKER_CREATED if created else ChangeType.TRACKER_UPDATED)
        return tracker

    async def delete_tracker(self, tracker_id: str) -> bool:
        """Soft-delete so the deletion travels with the next snapshot."""
        found = await asyncio.to_thread(self._soft_delete, "trackers", Tracker, tracker_id, self._clock())
        if found:
            self._emit(ChangeType.TRACKER_DELETED)
        return found

    async def add_entry(self, entry: Entry) -> Entry:
        await asyncio.to_thread(self._upsert_entry, entry, self._clock())
        self._emit(ChangeType.ENTRY_ADDED)
        return entry

    async def update_entry(self, entry: Entry) -> Entry:
        await asyncio.to_thread(self._upsert_entry, entry, self._clock())
        self._emit(ChangeType.ENTRY_UPDATED)
        return entry

    async def delete_entry(self, entry_id: str) -> bool:
        found = await asyncio.to_thread(self._soft_delete, "entries", Entry, entry_id, self._clock())
        if found:
            self._emit(ChangeType.ENTRY_DELETED)
        return found

    # -------- Internal --------
    def _emit(self, change: ChangeType) -> None:
        if self._on_change is not None:
            self._on_change(change)

    def _connect(self) -> sqlite3.Connection:
        created = False
        if not self._initialized:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            created = not self._path.exists()
        conn = sqlite3.connect(self._path)
        if not self._initialized:
            conn.executescript(_SCHEMA)
            if created:
                # A brand-new database starts with a stable change clock
                with conn:
                    self._set_last_change(conn, self._clock())
            self._initialized = True
        return conn

    def _capture(self) -> EntitySet:
        with closing(self._connect()) as conn:
            trackers = [Tracker.model_validate_json(row[0]) for row in conn.execute("SELECT data FROM trackers ORDER BY id")]
            entries = [Entry.model_validate_json(row[0]) for row in conn.execute("SELECT data FROM entries ORDER BY id")]
            tags = [Tag.model_validate_json(row[0]) for row in conn.execute("SELECT data FROM entry_tags ORDER BY id")]
        return EntitySet(trackers=trackers, entries=entries, tags=tags)

    def _replace_all(
        self,
        trackers: List[Tracker],
        entries: List[Entry],
        tags: List[Tag],
        last_change_at: Optional[datetime],
    ) -> None:
        with closing(self._connect()) as conn:
            # `with conn` commits on success and rolls everything back on error
            with conn:
                conn.execute("DELETE FROM entry_tags")
                conn.execute("DELETE FROM entries")
                conn.execute("DELETE FROM trackers")
                conn.executemany(
                    "INSERT INTO trackers (id, data) VALUES (?, ?)",
                    [(t.id, _dump(t)) for t in trackers],
                )
                conn.executemany(
                    "INSERT INTO entries (id, tracker_id, data) VALUES (?, ?, ?)",
                    [(e.id, e.tracker_id, _dump(e)) for e in entries],
                )
                conn.executemany(
                    "INSERT INTO entry_tags (id, entry_id, data) VALUES (?, ?, ?)",
                    [(t.id, t.entry_id, _dump(t)) for t in tags],
                )
                if last_change_at is None:
                    conn.execute("DELETE FROM metadata WHERE key = ?", (LAST_CHANGE_KEY,))
                else:
                    self._set_last_change(conn, last_change_at)

    def _read_last_change(self) -> Optional[datetime]:
        with closing(self._connect()) as conn:
            row = conn.execute("SELECT value FROM metadata WHERE key = ?", (LAST_CHANGE_KEY,)).fetchone()
        if row is None:
            return None
        return datetime.fromisoformat(row[0])

    @staticmethod
    def _set_last_change(conn: sqlite3.Connection, when: datetime) -> None:
        conn.execute(
            "INSERT OR REPLACE INTO metadata (key, value) VALUES (?, ?)",
            (LAST_CHANGE_KEY, when.isoformat()),
        )

    def _upsert_tracker(self, tracker: Tracker, now: datetime) -> bool:
        with closing(self._connect()) as conn:
            with conn:
                existed = conn.execute("SELECT 1 FROM trackers WHERE id = ?", (tracker.id,)).fetchone()
                conn.execute("INSERT OR REPLACE INTO trackers (id, data) VALUES (?, ?)", (tracker.id, _dump(tracker)))
                self._set_last_change(conn, now)
        return existed is None

    def _upsert_entry(self, entry: Entry, now: datetime) -> None:
        with closing(self._connect()) as conn:
            with conn:
                if conn.execute("SELECT 1 FROM trackers WHERE id = ?", (entry.tracker_id,)).fetchone() is None:
                    raise KeyError(f"Unknown tracker: {entry.tracker_id}")
                conn.execute(
                    "INSERT OR REPLACE INTO entries (id, tracker_id, data) VALUES (?, ?, ?)",
                    (entry.id, entry.tracker_id, _dump(entry)),
                )
                conn.execute("DELETE FROM entry_tags WHERE entry_id = ?", (entry.id,))
                conn.executemany(
                    "INSERT OR REPLACE INTO entry_tags (id, entry_id, data) VALUES (?, ?, ?)",
                    [(t.id, t.entry_id, _dump(t)) for t in extract_tags(entry)],
                )
                self._set_last_change(conn, now)

    def _soft_delete(self, table: str, model, entity_id: str, now: datetime) -> bool:
        with closing(self._connect()) as conn:
            with conn:
                row = conn.execute(f"SELECT data FROM {table} WHERE id = ?", (entity_id,)).fetchone()
                if row is None:
                    return False
                update = {"deleted_at": now}
                if model is Tracker:
                    update["updated_at"] = now
                item = model.model_validate_json(row[0]).model_copy(update=update)
                conn.execute(f"UPDATE {table} SET data = ? WHERE id = ?", (_dump(item), entity_id))
                self._set_last_change(conn, now)
        return True


__all__ = ["EntitySet", "LocalStore", "SQLiteLocalStore", "extract_tags", "LAST_CHANGE_KEY"]
