from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Sequence

from common.gist import GistBlobClient
from common.remote import RemoteBlobClient
from common.timers import LoopTimers, Timers
from state.config import ConfigStore, SyncConfig, sync_home
from state.local_store import SQLiteLocalStore
from state.s3_blob import S3BlobClient
from state.snapshot import SnapshotSerializer

from .notifier import ChangeNotifier
from .orchestrator import ConflictChoice, ConflictResolver, SyncOrchestrator, SyncResult
from .scheduler import SyncScheduler


logger = logging.getLogger(__name__)


@dataclass
class SyncEngine:
    """Everything one device needs to sync, wired together."""

    config: SyncConfig
    store: SQLiteLocalStore
    remote: RemoteBlobClient
    orchestrator: SyncOrchestrator
    notifier: ChangeNotifier
    scheduler: SyncScheduler

    async def aclose(self) -> None:
        self.notifier.cancel()
        await self.scheduler.stop()
        if isinstance(self.remote, GistBlobClient):
            await self.remote.aclose()


def build_remote(config: SyncConfig) -> RemoteBlobClient:
    if config.backend == "s3":
        return S3BlobClient()
    return GistBlobClient()


def build_engine(
    config_store: Optional[ConfigStore] = None,
    *,
    store: Optional[SQLiteLocalStore] = None,
    remote: Optional[RemoteBlobClient] = None,
    timers: Optional[Timers] = None,
    conflict_resolver: Optional[ConflictResolver] = None,
    on_wifi: Optional[Callable[[], bool]] = None,
) -> SyncEngine:
    """
    Build a SyncEngine from the persisted settings (plus environment overrides).

    `on_wifi` reports whether the device is on Wi-Fi; with `wifi_only` set,
    automatic attempts are skipped while it returns False.

    Store mutations feed the change notifier; debounced changes feed the
    scheduler. Must be called with an event loop running when `timers` is
    not given.
    """
    config_store = config_store or ConfigStore()
    config = config_store.load()
    timers = timers or LoopTimers()
    store = store or SQLiteLocalStore(sync_home() / "tracker.db")
    remote = remote or build_remote(config)

    orchestrator = SyncOrchestrator(
        serializer=SnapshotSerializer(store),
        remote=remote,
        config_store=config_store,
        timers=timers,
        config=config,
        conflict_resolver=conflict_resolver,
        on_wifi=on_wifi,
    )
    notifier = ChangeNotifier(timers=timers, debounce_seconds=config.debounce_seconds)
    scheduler = SyncScheduler(orchestrator, timers=timers, interval_seconds=config.auto_sync_interval_seconds)

    store.set_change_listener(notifier.notify)
    notifier.subscribe(scheduler.on_data_changed)
    return SyncEngine(
        config=config,
        store=store,
        remote=remote,
        orchestrator=orchestrator,
        notifier=notifier,
        scheduler=scheduler,
    )


def _prefer(choice: Optional[str]) -> Optional[ConflictResolver]:
    if not choice:
        return None
    picked = ConflictChoice.APPLY_REMOTE if choice == "remote" else ConflictChoice.KEEP_LOCAL
    return lambda local, remote: picked


def _summary(result: SyncResult, engine: SyncEngine) -> Dict[str, Any]:
    state = engine.orchestrator.state
    return {
        "ok": result.error is None,
        "action": result.action.value,
        "data_changed": result.data_changed,
        "phase": state.phase.value,
        "message": state.message,
        "error": result.error,
        "last_sync_at": state.last_sync_at.isoformat() if state.last_sync_at else None,
    }


async def run_once(
    manual: bool = False,
    *,
    prefer: Optional[str] = None,
    config_store: Optional[ConfigStore] = None,
    store: Optional[SQLiteLocalStore] = None,
    remote: Optional[RemoteBlobClient] = None,
    timers: Optional[Timers] = None,
    on_wifi: Optional[Callable[[], bool]] = None,
) -> Dict[str, Any]:
    """Run a single sync attempt and return a JSON-friendly summary."""
    engine = build_engine(
        config_store,
        store=store,
        remote=remote,
        timers=timers,
        conflict_resolver=_prefer(prefer),
        on_wifi=on_wifi,
    )
    try:
        if not engine.orchestrator.is_configured:
            return {"ok": False, "action": "skipped", "note": "Sync is not configured"}
        result = await engine.orchestrator.sync(auto=not manual)
        return _summary(result, engine)
    finally:
        await engine.aclose()


async def serve(
    *,
    duration: Optional[float] = None,
    config_store: Optional[ConfigStore] = None,
    store: Optional[SQLiteLocalStore] = None,
    remote: Optional[RemoteBlobClient] = None,
    on_wifi: Optional[Callable[[], bool]] = None,
) -> None:
    """Run the scheduler until cancelled (or for `duration` seconds)."""
    engine = build_engine(config_store, store=store, remote=remote, on_wifi=on_wifi)
    try:
        engine.config.require()
    except RuntimeError:
        await engine.aclose()
        raise
    engine.orchestrator.subscribe(
        lambda s: logger.info("Sync %s%s", s.phase.value, f": {s.message}" if s.message else "")
    )
    engine.scheduler.start()
    try:
        if duration is None:
            await asyncio.Event().wait()
        else:
            await asyncio.sleep(duration)
    finally:
        await engine.aclose()


def _parse_args(argv: Optional[Sequence[str]]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="tracker-sync", description="Sync tracker data with a remote blob")
    parser.add_argument("-v", "--verbose", action="store_true", help="debug logging")
    parser.add_argument(
        "--metered",
        action="store_true",
        help="report the connection as not Wi-Fi (automatic syncs obey wifi_only)",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    once = sub.add_parser("sync", help="run one sync attempt")
    once.add_argument("--manual", action="store_true", help="manual sync (may stop on conflict)")
    once.add_argument(
        "--prefer",
        choices=["remote", "local"],
        help="on conflict, apply remote data or keep local data and upload",
    )

    run = sub.add_parser("serve", help="sync periodically and on local changes")
    run.add_argument("--duration", type=float, default=None, help="stop after this many seconds")
    return parser.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> int:
    args = _parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    on_wifi = (lambda: False) if args.metered else (lambda: True)
    if args.command == "serve":
        try:
            asyncio.run(serve(duration=args.duration, on_wifi=on_wifi))
        except KeyboardInterrupt:
            pass
        return 0

    out = asyncio.run(run_once(manual=args.manual, prefer=args.prefer, on_wifi=on_wifi))
    print(json.dumps(out, indent=2))
    return 0 if out.get("ok") else 1


if __name__ == "__main__":
    sys.exit(main())
