from __future__ import annotations

import json
from typing import Dict, List, Optional

import pytest

from common.gist import GistBlobClient
from state.config import ConfigStore, SyncConfig
from state.local_store import SQLiteLocalStore
from state.models import ChangeType, Tracker
from state.s3_blob import S3BlobClient
from sync import handler


class _MemoryRemote:
    def __init__(self) -> None:
        self.files: Dict[str, str] = {}

    async def fetch(self, container_id: str, credential: str, file_name: str) -> Optional[str]:
        return self.files.get(file_name)

    async def put(self, container_id, credential, file_name, content, description="") -> None:
        self.files[file_name] = content


@pytest.fixture(autouse=True)
def _isolated_env(monkeypatch, tmp_path):
    for name in ("TRACKER_SYNC_TOKEN", "TRACKER_SYNC_CONTAINER_ID", "TRACKER_SYNC_BACKEND", "TRACKER_SYNC_ENCRYPT"):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("TRACKER_SYNC_HOME", str(tmp_path))


def test_build_remote_per_backend(monkeypatch):
    monkeypatch.setattr("state.s3_blob.boto3.client", lambda *a, **kw: object())
    assert isinstance(handler.build_remote(SyncConfig(backend="s3")), S3BlobClient)
    assert isinstance(handler.build_remote(SyncConfig(backend="gist")), GistBlobClient)


@pytest.mark.asyncio
async def test_run_once_uploads_local_data(tmp_path):
    config_store = ConfigStore(tmp_path / "sync.json")
    config_store.save(SyncConfig(token="tok", container_id="gist-1", encryption_enabled=True))
    store = SQLiteLocalStore(tmp_path / "tracker.db")
    await store.save_tracker(Tracker(id="t1", title="Pages read", type="count", is_number=True))
    remote = _MemoryRemote()

    out = await handler.run_once(config_store=config_store, store=store, remote=remote)

    assert out["ok"] is True
    assert out["action"] == "uploaded"
    assert out["phase"] == "success"
    assert json.loads(remote.files["tracker-data.json"])["encrypted"] is True

    again = await handler.run_once(config_store=config_store, store=store, remote=remote)
    assert again["action"] == "noop"


@pytest.mark.asyncio
async def test_run_once_unconfigured(tmp_path):
    out = await handler.run_once(
        config_store=ConfigStore(tmp_path / "sync.json"),
        store=SQLiteLocalStore(tmp_path / "tracker.db"),
        remote=_MemoryRemote(),
    )
    assert out == {"ok": False, "action": "skipped", "note": "Sync is not configured"}


@pytest.mark.asyncio
async def test_store_changes_flow_to_scheduler(tmp_path):
    config_store = ConfigStore(tmp_path / "sync.json")
    config_store.save(SyncConfig(token="tok", container_id="gist-1"))
    store = SQLiteLocalStore(tmp_path / "tracker.db")
    engine = handler.build_engine(config_store, store=store, remote=_MemoryRemote())

    seen: List[ChangeType] = []
    engine.notifier.subscribe(lambda change: seen.extend(change.types))
    await store.save_tracker(Tracker(id="t1", title="Mood", type="scale", is_number=True))
    assert engine.notifier.pending
    engine.notifier.flush()
    assert seen == [ChangeType.TRACKER_CREATED]
    await engine.aclose()


def test_cli_requires_command():
    with pytest.raises(SystemExit):
        handler.main([])


@pytest.mark.asyncio
async def test_run_once_on_empty_device_settles(tmp_path):
    config_store = ConfigStore(tmp_path / "sync.json")
    config_store.save(SyncConfig(token="tok", container_id="gist-1"))
    store = SQLiteLocalStore(tmp_path / "tracker.db")
    remote = _MemoryRemote()

    first = await handler.run_once(config_store=config_store, store=store, remote=remote)
    assert first["action"] == "uploaded"
    uploaded = remote.files["tracker-data.json"]

    second = await handler.run_once(config_store=config_store, store=store, remote=remote)
    assert second["action"] == "noop"
    assert remote.files["tracker-data.json"] == uploaded


@pytest.mark.asyncio
async def test_run_once_honours_wifi_only(tmp_path):
    config_store = ConfigStore(tmp_path / "sync.json")
    config_store.save(SyncConfig(token="tok", container_id="gist-1", wifi_only=True))
    store = SQLiteLocalStore(tmp_path / "tracker.db")
    await store.save_tracker(Tracker(id="t1", title="Steps", type="count", is_number=True))
    remote = _MemoryRemote()

    out = await handler.run_once(config_store=config_store, store=store, remote=remote, on_wifi=lambda: False)
    assert out["action"] == "skipped"
    assert remote.files == {}

    manual = await handler.run_once(
        manual=True, config_store=config_store, store=store, remote=remote, on_wifi=lambda: False
    )
    assert manual["action"] == "uploaded"
    assert "tracker-data.json" in remote.files


def test_cli_metered_flag_reaches_the_engine(monkeypatch):
    seen = {}

    async def fake_run_once(manual=False, *, prefer=None, on_wifi=None, **kwargs):
        seen["on_wifi"] = on_wifi()
        return {"ok": True, "action": "skipped"}

    monkeypatch.setattr(handler, "run_once", fake_run_once)
    assert handler.main(["--metered", "sync"]) == 0
    assert seen["on_wifi"] is False
