from __future__ import annotations

import logging
from datetime import UTC, datetime
from typing import Any, Callable, Dict, List, Optional, Tuple

from pydantic import ValidationError

from common.errors import LocalWriteFailed, MalformedDocument

from .local_store import EntitySet, LocalStore
from .models import SCHEMA_VERSION, Entry, Snapshot, Tag, Tracker


logger = logging.getLogger(__name__)


def _check_references(snapshot: Snapshot) -> None:
    tracker_ids = [t.id for t in snapshot.trackers]
    if len(set(tracker_ids)) != len(tracker_ids):
        raise MalformedDocument("Snapshot contains duplicate tracker ids")
    entry_ids = [e.id for e in snapshot.entries]
    if len(set(entry_ids)) != len(entry_ids):
        raise MalformedDocument("Snapshot contains duplicate entry ids")

    known_trackers = set(tracker_ids)
    orphans = [e.id for e in snapshot.entries if e.tracker_id not in known_trackers]
    if orphans:
        raise MalformedDocument(f"{len(orphans)} entries reference unknown trackers")
    known_entries = set(entry_ids)
    orphan_tags = [t.id for t in snapshot.tags if t.entry_id not in known_entries]
    if orphan_tags:
        raise MalformedDocument(f"{len(orphan_tags)} tags reference unknown entries")


def parse_snapshot(doc: Any) -> Snapshot:
    """Validate a decoded JSON document and return it as a Snapshot.

    Raises MalformedDocument on any shape or reference problem; nothing is
    ever partially accepted.
    """
    if not isinstance(doc, dict):
        raise MalformedDocument("Snapshot must be a JSON object")
    try:
        snapshot = Snapshot.model_validate(doc)
    except ValidationError as ex:
        raise MalformedDocument(f"Invalid snapshot: {ex.error_count()} validation error(s)") from ex
    _check_references(snapshot)
    return snapshot


def _consistent(entities: EntitySet) -> Tuple[List[Tracker], List[Entry], List[Tag]]:
    tracker_ids = {t.id for t in entities.trackers}
    entries = [e for e in entities.entries if e.tracker_id in tracker_ids]
    entry_ids = {e.id for e in entries}
    tags = [t for t in entities.tags if t.entry_id in entry_ids]
    dropped = (len(entities.entries) - len(entries), len(entities.tags) - len(tags))
    if any(dropped):
        logger.warning("Dropped %d orphan entries and %d orphan tags from snapshot", *dropped)
    return list(entities.trackers), entries, tags


def _later(a: Optional[datetime], b: Optional[datetime]) -> Optional[datetime]:
    if a is None:
        return b
    if b is None:
        return a
    return max(a, b)


def merge_snapshots(local: Snapshot, incoming: Snapshot, *, now: Optional[datetime] = None) -> Snapshot:
    """
    Entity-level import merge of `incoming` into `local`.

    - Trackers: metadata (title, goal) from the side with the newer `updatedAt`;
      an incoming tracker without `updatedAt` wins (older export format).
      A deletion from either side is kept.
    - Entries: the one with the newer `createdAt` wins; on equal `createdAt`
      an incoming deletion is applied.
    - Tags: added only for entries present after the merge, never duplicated.
    - `lastChangeAt`: the later of the two.
    """
    trackers: Dict[str, Tracker] = {t.id: t for t in local.trackers}
    for theirs in incoming.trackers:
        mine = trackers.get(theirs.id)
        if mine is None:
            trackers[theirs.id] = theirs
            continue
        take_theirs = (
            theirs.updated_at is None
            or mine.updated_at is None
            or theirs.updated_at > mine.updated_at
        )
        update: Dict[str, Any] = {"deleted_at": theirs.deleted_at or mine.deleted_at}
        if take_theirs:
            update.update(title=theirs.title, goal=theirs.goal, updated_at=theirs.updated_at)
        trackers[theirs.id] = mine.model_copy(update=update)

    entries: Dict[str, Entry] = {e.id: e for e in local.entries}
    for theirs in incoming.entries:
        mine = entries.get(theirs.id)
        if mine is None or theirs.created_at > mine.created_at:
            entries[theirs.id] = theirs
        elif theirs.created_at == mine.created_at and theirs.deleted_at and not mine.deleted_at:
            entries[theirs.id] = mine.model_copy(update={"deleted_at": theirs.deleted_at})

    tags: Dict[str, Tag] = {t.id: t for t in local.tags}
    for tag in incoming.tags:
        if tag.entry_id in entries and tag.id not in tags:
            tags[tag.id] = tag

    return Snapshot(
        schema_version=SCHEMA_VERSION,
        trackers=list(trackers.values()),
        entries=[e for e in entries.values() if e.tracker_id in trackers],
        tags=[t for t in tags.values() if t.entry_id in entries],
        exported_at=now or datetime.now(UTC),
        last_change_at=_later(local.last_change_at, incoming.last_change_at),
    )


class SnapshotSerializer:
    """
    Converts the whole local data set to a Snapshot and back.

    - `capture()` stamps `lastChangeAt` with the store's own change clock,
      which deletions bump too.
    - `apply()` validates before touching the store and writes through one
      `replace_all_entities` transaction, so the store ends up either fully
      replaced or untouched.
    """

    def __init__(self, store: LocalStore, *, clock: Callable[[], datetime] = lambda: datetime.now(UTC)) -> None:
        self._store = store
        self._clock = clock

    async def capture(self) -> Snapshot:
        entities = await self._store.capture_all_entities()
        last_change = await self._store.last_local_change_at()
        trackers, entries, tags = _consistent(entities)
        return Snapshot(
            schema_version=SCHEMA_VERSION,
            trackers=trackers,
            entries=entries,
            tags=tags,
            exported_at=self._clock(),
            last_change_at=last_change,
        )

    @staticmethod
    def validate(doc: Any) -> bool:
        try:
            parse_snapshot(doc)
        except MalformedDocument:
            return False
        return True

    @staticmethod
    def parse(doc: Any) -> Snapshot:
        return parse_snapshot(doc)

    async def apply(self, doc: Snapshot | Dict[str, Any], *, replace_all: bool = True) -> Snapshot:
        """Write `doc` into the local store; returns what was written.

        `replace_all=True` swaps the whole data set for the document's and
        adopts its change clock. `replace_all=False` merges entity by entity
        (see `merge_snapshots`).
        """
        if isinstance(doc, Snapshot):
            _check_references(doc)
            incoming = doc
        else:
            incoming = parse_snapshot(doc)

        if replace_all:
            target = incoming
            last_change = incoming.change_clock
        else:
            local = await self.capture()
            target = merge_snapshots(local, incoming, now=self._clock())
            last_change = target.last_change_at

        try:
            await self._store.replace_all_entities(
                target.trackers,
                target.entries,
                target.tags,
                last_change_at=last_change,
            )
        except Exception as ex:
            raise LocalWriteFailed(f"Failed to write snapshot to local store: {ex}") from ex

        logger.info(
            "Applied snapshot (%s): %d trackers, %d entries",
            "replace" if replace_all else "merge",
            len(target.trackers),
            len(target.entries),
        )
        return target


__all__ = ["SnapshotSerializer", "parse_snapshot", "merge_snapshots"]
