"""
Sync orchestrator -- one attempt, one decision, observable state.

Each attempt captures the local snapshot, fetches the remote document and
performs exactly one of: nothing, upload, download.

    idle -> checking -> uploading | downloading -> success
                     +-> conflict (manual sync, remote newer)
    any in-flight phase -> error

Only `idle` and `success` accept a new attempt; anything started while an
attempt is in flight is rejected rather than queued.
"""

from __future__ import annotations

import asyncio
import inspect
import json
import logging
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum
from typing import Awaitable, Callable, List, Optional, Union

from common.errors import DecryptionFailed, MalformedDocument, SyncError
from common.remote import RemoteBlobClient
from common.timers import TimerHandle, Timers
from state.config import ConfigStore, SyncConfig
from state.envelope import decrypt_snapshot, encrypt_snapshot, is_encrypted_envelope, parse_envelope
from state.models import Snapshot, SyncPhase, SyncState, SyncTrigger
from state.snapshot import SnapshotSerializer, parse_snapshot


logger = logging.getLogger(__name__)


class SyncAction(str, Enum):
    NOOP = "noop"
    UPLOADED = "uploaded"
    DOWNLOADED = "downloaded"
    REJECTED = "rejected"
    SKIPPED = "skipped"
    CONFLICT = "conflict"
    FAILED = "failed"


@dataclass(frozen=True)
class SyncResult:
    """Outcome of one attempt. `data_changed` means local data was replaced."""

    action: SyncAction
    data_changed: bool = False
    error: Optional[str] = None


class ConflictChoice(str, Enum):
    APPLY_REMOTE = "apply-remote"
    KEEP_LOCAL = "keep-local"


class Decision(str, Enum):
    NOOP = "noop"
    UPLOAD = "upload"
    DOWNLOAD = "download"
    ASK = "ask"


ConflictResolver = Callable[
    [Snapshot, Snapshot],
    Union[Optional[ConflictChoice], Awaitable[Optional[ConflictChoice]]],
]
StateListener = Callable[[SyncState], None]

_TERMINAL = (SyncPhase.SUCCESS, SyncPhase.ERROR, SyncPhase.CONFLICT)


def decide(local: Snapshot, remote: Snapshot, *, auto: bool) -> Decision:
    """Pick the sync direction for a valid remote snapshot."""
    # First sync on a fresh device: take the remote data whatever the clocks say
    if not local.trackers and remote.trackers:
        return Decision.DOWNLOAD

    local_change = local.change_clock
    remote_change = remote.change_clock
    if local_change == remote_change:
        return Decision.NOOP
    if remote_change > local_change:
        return Decision.DOWNLOAD if auto else Decision.ASK
    return Decision.UPLOAD


def _success_message(action: SyncAction, trigger: SyncTrigger, *, first_sync: bool = False) -> str:
    if action is SyncAction.DOWNLOADED:
        return "Initial sync completed" if first_sync else "Downloaded from cloud"
    if action is SyncAction.UPLOADED:
        if trigger is SyncTrigger.DATA_CHANGE:
            return "Changes uploaded"
        if trigger is SyncTrigger.MANUAL:
            return "Uploaded to cloud"
        return "Auto-synced (uploaded)"
    return "Already up to date"


class SyncOrchestrator:
    """
    Runs sync attempts and owns the observable `SyncState`.

    Collaborators are injected: the snapshot serializer (local side), a remote
    blob client, the config store (settings and persisted `last_sync_at`),
    timers for the status reset, an optional conflict resolver consulted on
    manual syncs, and an optional Wi-Fi check used when `wifi_only` is set.
    """

    def __init__(
        self,
        *,
        serializer: SnapshotSerializer,
        remote: RemoteBlobClient,
        config_store: ConfigStore,
        timers: Timers,
        config: Optional[SyncConfig] = None,
        conflict_resolver: Optional[ConflictResolver] = None,
        on_wifi: Optional[Callable[[], bool]] = None,
        clock: Callable[[], datetime] = lambda: datetime.now(UTC),
    ) -> None:
        self._serializer = serializer
        self._remote = remote
        self._config_store = config_store
        self._timers = timers
        self._config = config or config_store.load()
        self._resolver = conflict_resolver
        self._on_wifi = on_wifi
        self._clock = clock
        self._state = SyncState(last_sync_at=config_store.last_sync_at())
        self._listeners: List[StateListener] = []
        self._reset_handle: Optional[TimerHandle] = None

    # -------- Observers & configuration --------
    @property
    def state(self) -> SyncState:
        return self._state

    @property
    def config(self) -> SyncConfig:
        return self._config

    @property
    def is_configured(self) -> bool:
        return self._config.is_configured

    def reload_config(self) -> SyncConfig:
        """Re-read settings from the config store; used after the user edits them."""
        self._config = self._config_store.load()
        return self._config

    def subscribe(self, listener: StateListener) -> Callable[[], None]:
        """Call `listener` with every new state; returns an unsubscribe function."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    # -------- Entry point --------
    async def sync(self, *, auto: bool = True, trigger: Optional[SyncTrigger] = None) -> SyncResult:
        """Run one attempt. Automatic attempts never prompt; manual ones may."""
        trigger = trigger or (SyncTrigger.AUTO if auto else SyncTrigger.MANUAL)
        cfg = self._config
        if not cfg.is_configured:
            return SyncResult(SyncAction.SKIPPED, error="Sync is not configured")
        if not self._state.can_start:
            logger.debug("Sync attempt (%s) rejected while %s", trigger.value, self._state.phase.value)
            return SyncResult(SyncAction.REJECTED)
        if auto and cfg.wifi_only and self._on_wifi is not None and not self._on_wifi():
            logger.info("Auto-sync skipped: Wi-Fi-only mode enabled and not on Wi-Fi")
            return SyncResult(SyncAction.SKIPPED)

        # No await between the phase check above and this transition
        previous = self._state
        self._cancel_reset()
        self._transition(
            SyncPhase.CHECKING,
            message="Checking for changes...",
            last_error=None,
            trigger=trigger,
        )
        try:
            result = await self._attempt(cfg, auto=auto, trigger=trigger, previous=previous)
        except Exception as exc:
            result = self._fail(exc, auto=auto)
        self._schedule_reset()
        return result

    # -------- Attempt steps --------
    async def _attempt(
        self,
        cfg: SyncConfig,
        *,
        auto: bool,
        trigger: SyncTrigger,
        previous: SyncState,
    ) -> SyncResult:
        local = await self._serializer.capture()
        raw = await self._remote.fetch(cfg.container_id or "", cfg.token or "", cfg.file_name)
        remote = await self._decode_remote(raw, cfg)
        if remote is None:
            return await self._upload(local, cfg, trigger)

        decision = decide(local, remote, auto=auto)
        if decision is Decision.NOOP:
            self._transition(
                SyncPhase.SUCCESS,
                message=_success_message(SyncAction.NOOP, trigger),
                last_sync_at=self._clock(),
            )
            return SyncResult(SyncAction.NOOP)

        if decision is Decision.ASK:
            choice = await self._ask(local, remote)
            if choice is None:
                self._transition(
                    SyncPhase.CONFLICT,
                    message="Remote data is newer. Choose whether to download it or upload local data.",
                )
                return SyncResult(SyncAction.CONFLICT)
            if choice is ConflictChoice.APPLY_REMOTE:
                return await self._download(remote, cfg, trigger, first_sync=False)
            return await self._upload(local, cfg, trigger)

        if decision is Decision.DOWNLOAD:
            return await self._download(remote, cfg, trigger, first_sync=not local.trackers)

        if self._uploaded_since(local, previous):
            self._transition(SyncPhase.SUCCESS, message=_success_message(SyncAction.NOOP, trigger))
            return SyncResult(SyncAction.NOOP)
        return await self._upload(local, cfg, trigger)

    async def _decode_remote(self, raw: Optional[str], cfg: SyncConfig) -> Optional[Snapshot]:
        """Remote text -> Snapshot; None when absent or not a valid document.

        Decryption failures propagate: ciphertext is never treated as absent.
        """
        if raw is None:
            logger.info("No remote document yet; local data is authoritative")
            return None
        try:
            doc = json.loads(raw)
        except ValueError:
            logger.warning("Remote document is not valid JSON; treating it as absent")
            return None

        if is_encrypted_envelope(doc):
            # An encrypted backup that cannot be read is an error, never a blank remote
            try:
                envelope = parse_envelope(doc)
                return await asyncio.to_thread(decrypt_snapshot, envelope, cfg.token or "")
            except MalformedDocument as ex:
                raise DecryptionFailed(f"Encrypted remote document is unreadable: {ex}") from ex

        try:
            return parse_snapshot(doc)
        except MalformedDocument as ex:
            logger.warning("Remote document failed validation (%s); treating it as absent", ex)
            return None

    async def _ask(self, local: Snapshot, remote: Snapshot) -> Optional[ConflictChoice]:
        if self._resolver is None:
            return None
        self._transition(SyncPhase.CONFLICT, message="Remote data is newer than local data")
        choice = self._resolver(local, remote)
        if inspect.isawaitable(choice):
            choice = await choice
        return ConflictChoice(choice) if choice is not None else None

    def _uploaded_since(self, local: Snapshot, previous: SyncState) -> bool:
        """True when the last successful sync already covers every local change."""
        if previous.phase is not SyncPhase.SUCCESS:
            return False
        last_sync = self._config_store.last_sync_at()
        return last_sync is not None and local.change_clock <= last_sync

    async def _upload(self, local: Snapshot, cfg: SyncConfig, trigger: SyncTrigger) -> SyncResult:
        self._transition(SyncPhase.UPLOADING, message="Uploading...")
        if cfg.encryption_enabled:
            envelope = await asyncio.to_thread(encrypt_snapshot, local, cfg.token or "")
            doc = envelope.to_wire()
        else:
            doc = local.to_wire()
        content = json.dumps(doc, indent=2)

        await self._remote.put(cfg.container_id or "", cfg.token or "", cfg.file_name, content, cfg.description)
        now = self._clock()
        self._remember_sync(now)
        logger.info("Uploaded snapshot: %d trackers, %d entries", len(local.trackers), len(local.entries))
        self._transition(
            SyncPhase.SUCCESS,
            message=_success_message(SyncAction.UPLOADED, trigger),
            last_sync_at=now,
        )
        return SyncResult(SyncAction.UPLOADED)

    async def _download(
        self,
        remote: Snapshot,
        cfg: SyncConfig,
        trigger: SyncTrigger,
        *,
        first_sync: bool,
    ) -> SyncResult:
        self._transition(
            SyncPhase.DOWNLOADING,
            message="First-time sync, downloading data..." if first_sync else "Downloading...",
        )
        await self._serializer.apply(remote, replace_all=True)
        now = self._clock()
        self._remember_sync(now)
        self._transition(
            SyncPhase.SUCCESS,
            message=_success_message(SyncAction.DOWNLOADED, trigger, first_sync=first_sync),
            last_sync_at=now,
        )
        return SyncResult(SyncAction.DOWNLOADED, data_changed=True)

    def _remember_sync(self, when: datetime) -> None:
        # The remote or local write already happened; the attempt still succeeded
        try:
            self._config_store.record_last_sync(when)
        except OSError:
            logger.exception("Could not persist last sync time to %s", self._config_store.path)

    def _fail(self, exc: Exception, *, auto: bool) -> SyncResult:
        if isinstance(exc, SyncError):
            reason = exc.user_message
            if exc.retryable:
                logger.warning("Sync failed, will retry on next trigger: %s", exc)
            else:
                logger.error("Sync failed: %s", exc)
        else:
            reason = str(exc) or type(exc).__name__
            logger.exception("Sync failed with unexpected error")
        self._transition(
            SyncPhase.ERROR,
            message="Auto-sync failed" if auto else "Sync failed",
            last_error=reason,
        )
        return SyncResult(SyncAction.FAILED, error=reason)

    # -------- State --------
    def _transition(self, phase: SyncPhase, **changes) -> None:
        self._state = self._state.model_copy(update={"phase": phase, **changes})
        for listener in list(self._listeners):
            try:
                listener(self._state)
            except Exception:
                logger.exception("Sync state listener failed")

    def _cancel_reset(self) -> None:
        if self._reset_handle is not None:
            self._reset_handle.cancel()
            self._reset_handle = None

    def _schedule_reset(self) -> None:
        phase = self._state.phase
        if phase is SyncPhase.SUCCESS and not self._config.reset_success:
            return
        if phase in _TERMINAL:
            self._cancel_reset()
            self._reset_handle = self._timers.call_later(self._config.status_reset_seconds, self._reset_to_idle)

    def _reset_to_idle(self) -> None:
        self._reset_handle = None
        if self._state.phase in _TERMINAL:
            self._transition(SyncPhase.IDLE, message=None)


__all__ = [
    "SyncOrchestrator",
    "SyncResult",
    "SyncAction",
    "ConflictChoice",
    "ConflictResolver",
    "Decision",
    "decide",
]
