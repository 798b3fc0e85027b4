from __future__ import annotations

from datetime import UTC, datetime
from enum import Enum
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, StrictBool, StrictStr, field_validator


# Bump when the document shape changes incompatibly
SCHEMA_VERSION = 1


def _aware(value: Optional[datetime]) -> Optional[datetime]:
    # Legacy documents may carry naive timestamps; they were always written in UTC
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


class _WireModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    def to_wire(self) -> dict:
        return self.model_dump(by_alias=True, mode="json", exclude_none=True)


class Tracker(_WireModel):
    id: StrictStr
    title: StrictStr
    type: StrictStr
    is_number: StrictBool = Field(alias="isNumber")
    goal: Optional[float] = None
    parent_id: Optional[StrictStr] = Field(default=None, alias="parentId")
    deleted_at: Optional[datetime] = Field(default=None, alias="deletedAt")
    updated_at: Optional[datetime] = Field(default=None, alias="updatedAt")

    @field_validator("deleted_at", "updated_at")
    @classmethod
    def _utc(cls, v):
        return _aware(v)


class Entry(_WireModel):
    id: StrictStr
    tracker_id: StrictStr = Field(alias="trackerId")
    date: StrictStr = Field(description="Calendar day the value belongs to (YYYY-MM-DD)")
    value: float
    comment: Optional[StrictStr] = None
    created_at: datetime = Field(alias="createdAt")
    deleted_at: Optional[datetime] = Field(default=None, alias="deletedAt")

    @field_validator("created_at", "deleted_at")
    @classmethod
    def _utc(cls, v):
        return _aware(v)

    @field_validator("value", mode="before")
    @classmethod
    def _numeric_value(cls, v):
        if isinstance(v, bool) or not isinstance(v, (int, float)):
            raise ValueError("value must be a number")
        return v


class Tag(_WireModel):
    id: StrictStr
    entry_id: StrictStr = Field(alias="entryId")
    tracker_id: StrictStr = Field(alias="trackerId")
    tag_name: StrictStr = Field(alias="tagName")
    tag_name_with_original_casing: Optional[StrictStr] = Field(
        default=None, alias="tagNameWithOriginalCasing"
    )


class Snapshot(_WireModel):
    """
    Full point-in-time copy of the local data set.

    Wire format (stable across versions):
        { "schemaVersion": 1, "trackers": [...], "entries": [...], "tags": [...],
          "exportedAt": ISO8601, "lastChangeAt": ISO8601 | omitted }

    `last_change_at` is the logical clock compared during sync; documents
    without it fall back to `exported_at`.
    """

    model_config = ConfigDict(populate_by_name=True, extra="ignore", frozen=True)

    schema_version: int = Field(alias="schemaVersion", ge=1)
    trackers: List[Tracker] = Field(default_factory=list)
    entries: List[Entry] = Field(default_factory=list)
    tags: List[Tag] = Field(default_factory=list)
    exported_at: datetime = Field(alias="exportedAt")
    last_change_at: Optional[datetime] = Field(default=None, alias="lastChangeAt")

    @field_validator("exported_at", "last_change_at")
    @classmethod
    def _utc(cls, v):
        return _aware(v)

    @field_validator("schema_version", mode="before")
    @classmethod
    def _int_version(cls, v):
        if isinstance(v, bool) or not isinstance(v, int):
            raise ValueError("schemaVersion must be an integer")
        return v

    @property
    def change_clock(self) -> datetime:
        """Timestamp used to order replicas: lastChangeAt, else exportedAt."""
        return self.last_change_at or self.exported_at


class EncryptedEnvelope(_WireModel):
    """
    Encrypted wrapper around a serialized Snapshot.

    Wire format:
        { "encrypted": true, "version": 1, "data": base64, "timestamp": ISO8601,
          "tokenHash": hex | omitted }

    `payload` decodes to [version:1][salt:16][nonce:12][ciphertext+tag].
    """

    encrypted: Literal[True] = True
    version: int
    payload: StrictStr = Field(alias="data")
    created_at: datetime = Field(alias="timestamp")
    credential_fingerprint: Optional[StrictStr] = Field(default=None, alias="tokenHash")


class ChangeType(str, Enum):
    """Kinds of local mutation reported to the change notifier."""

    TRACKER_CREATED = "tracker_created"
    TRACKER_UPDATED = "tracker_updated"
    TRACKER_DELETED = "tracker_deleted"
    ENTRY_ADDED = "entry_added"
    ENTRY_UPDATED = "entry_updated"
    ENTRY_DELETED = "entry_deleted"
    DATA_IMPORTED = "data_imported"


class SyncPhase(str, Enum):
    IDLE = "idle"
    CHECKING = "checking"
    UPLOADING = "uploading"
    DOWNLOADING = "downloading"
    SUCCESS = "success"
    ERROR = "error"
    CONFLICT = "conflict"


class SyncTrigger(str, Enum):
    STARTUP = "startup"
    AUTO = "auto"
    DATA_CHANGE = "data-change"
    MANUAL = "manual"


class SyncState(BaseModel):
    """Observable sync status; replaced (never mutated) on every transition."""

    model_config = ConfigDict(frozen=True)

    phase: SyncPhase = SyncPhase.IDLE
    message: Optional[str] = None
    last_sync_at: Optional[datetime] = None
    last_error: Optional[str] = None
    trigger: Optional[SyncTrigger] = None

    @property
    def in_flight(self) -> bool:
        return self.phase in (SyncPhase.CHECKING, SyncPhase.UPLOADING, SyncPhase.DOWNLOADING)

    @property
    def can_start(self) -> bool:
        """A new attempt may only begin from idle or success."""
        return self.phase in (SyncPhase.IDLE, SyncPhase.SUCCESS)
