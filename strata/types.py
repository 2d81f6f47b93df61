"""Core types shared across all strata subsystems."""

from __future__ import annotations

import functools
import re
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Annotated, Any, Literal, TypeAlias, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from strata.exceptions import StrataError

# ── ID Types ──────────────────────────────────────────────────────────────────

UnitId: TypeAlias = str
InstanceId: TypeAlias = str


def new_id() -> str:
    return uuid.uuid4().hex[:12]


# ── Versions ──────────────────────────────────────────────────────────────────

BASELINE_VERSION = "none"

_SEGMENT = re.compile(r"^[A-Za-z0-9_\-]+$")


@functools.total_ordering
class Version:
    """A dotted, ordered schema version such as ``4.3.1``.

    Numeric segments compare numerically, other segments as strings (after
    any numeric segment). Trailing zero segments are ignored, so ``1.0`` and
    ``1.0.0`` name the same version. ``none`` is the empty-store baseline and
    sorts below everything else.
    """

    __slots__ = ("raw", "_key")

    def __init__(self, raw: str) -> None:
        raw = str(raw).strip()
        self.raw = raw
        self._key = _sort_key(raw)

    @classmethod
    def parse(cls, value: Version | str) -> Version:
        if isinstance(value, Version):
            return value
        return cls(value)

    @property
    def is_baseline(self) -> bool:
        return self._key == (0,)

    def __eq__(self, other: object) -> bool:
        if isinstance(other, str):
            other = Version(other)
        if not isinstance(other, Version):
            return NotImplemented
        return self._key == other._key

    def __lt__(self, other: Version | str) -> bool:
        return self._key < Version.parse(other)._key

    def __hash__(self) -> int:
        return hash(self._key)

    def __str__(self) -> str:
        return self.raw

    def __repr__(self) -> str:
        return f"Version({self.raw!r})"


def _sort_key(raw: str) -> tuple:
    if not raw:
        raise ValueError("Version must not be empty")
    if raw.lower() == BASELINE_VERSION:
        return (0,)
    parts: list[tuple[int, Any]] = []
    for segment in raw.split("."):
        if not _SEGMENT.match(segment):
            raise ValueError(f"Malformed version {raw!r}")
        parts.append((0, int(segment)) if segment.isdigit() else (1, segment))
    while len(parts) > 1 and parts[-1] == (0, 0):
        parts.pop()
    return (1, tuple(parts))


def _check_version(value: str) -> str:
    Version(value)
    return value


# ── Actions ──────────────────────────────────────────────────────────────────


class SqlAction(BaseModel):
    """Inline SQL; may hold several statements."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["sql"] = "sql"
    sql: str


class ScriptAction(BaseModel):
    """A ``.sql`` file on disk."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["script"] = "script"
    path: Path


class CallAction(BaseModel):
    """A ``package.module:function`` data migration taking the open connection."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["call"] = "call"
    target: str = Field(pattern=r"^[\w.]+:\w+$")


Action = Annotated[Union[SqlAction, ScriptAction, CallAction], Field(discriminator="kind")]


# ── Migration Units ──────────────────────────────────────────────────────────


class MigrationUnit(BaseModel):
    """A single directed edge in the version graph.

    The unit accepts a store sitting exactly at ``range_from`` and leaves it
    at ``produced_version``. ``prepare`` must be safe while old-version
    instances still use the schema; ``cleanup`` is destructive and waits for
    fleet convergence.
    """

    model_config = ConfigDict(frozen=True)

    id: UnitId = ""
    range_from: str
    range_to: str
    produced_version: str = ""
    description: str = ""
    prepare: tuple[Action, ...] = ()
    data_migration: CallAction | None = None
    cleanup: tuple[Action, ...] = ()
    supports_rolling_upgrade: bool = True

    @model_validator(mode="before")
    @classmethod
    def _fill_defaults(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        data = dict(data)
        if not data.get("produced_version"):
            data["produced_version"] = data.get("range_to", "")
        if not data.get("id"):
            data["id"] = f"{data.get('range_from')}-{data.get('range_to')}"
        if isinstance(data.get("data_migration"), str):
            data["data_migration"] = {"kind": "call", "target": data["data_migration"]}
        return data

    @field_validator("range_from", "range_to", "produced_version")
    @classmethod
    def _valid_version(cls, value: str) -> str:
        return _check_version(value)

    @property
    def source(self) -> Version:
        return Version(self.range_from)

    @property
    def produced(self) -> Version:
        return Version(self.produced_version)

    @property
    def edge(self) -> tuple[Version, Version]:
        return (Version(self.range_from), Version(self.range_to))

    @property
    def has_cleanup(self) -> bool:
        return bool(self.cleanup)


# ── Fleet ────────────────────────────────────────────────────────────────────


class MemberStatus(str, Enum):
    STARTING = "starting"
    SERVING = "serving"
    DRAINING = "draining"
    STOPPED = "stopped"


class FleetMember(BaseModel):
    instance_id: InstanceId
    reported_version: str
    status: MemberStatus = MemberStatus.SERVING

    @property
    def version(self) -> Version:
        return Version(self.reported_version)


# ── Durable state ────────────────────────────────────────────────────────────


class VersionMarker(BaseModel):
    """Snapshot of the durable version marker."""

    current_version: str = BASELINE_VERSION
    applied_unit_checkpoints: set[UnitId] = Field(default_factory=set)
    cleanup_pending: set[UnitId] = Field(default_factory=set)
    updated_at: datetime | None = None

    @property
    def version(self) -> Version:
        return Version(self.current_version)


class HistoryEntry(BaseModel):
    unit_id: UnitId
    step: str  # "prepare" or "cleanup"
    from_version: str
    to_version: str
    holder_id: str = ""
    applied_at: datetime


class LeaseRecord(BaseModel):
    """The current row of the migration lock."""

    name: str
    holder_id: str
    acquired_at: float
    expires_at: float


class LockGranted(BaseModel):
    granted: Literal[True] = True
    holder_id: str
    expires_at: float


class LockDenied(BaseModel):
    granted: Literal[False] = False
    holder_id: str
    expires_at: float
    acquired_at: float


# ── Outcomes ─────────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class Applied:
    from_version: str
    to_version: str
    units_applied: list[UnitId] = field(default_factory=list)


@dataclass(frozen=True)
class NoOpAlreadyCurrent:
    version: str


@dataclass(frozen=True)
class Failed:
    at_unit: UnitId | None
    cause: StrataError


UpgradeOutcome: TypeAlias = Union[Applied, NoOpAlreadyCurrent, Failed]


@dataclass(frozen=True)
class CleanedUnits:
    units: list[UnitId] = field(default_factory=list)
    failed: list[UnitId] = field(default_factory=list)


@dataclass(frozen=True)
class Deferred:
    reason: str
    pending: list[UnitId] = field(default_factory=list)


SweepOutcome: TypeAlias = Union[CleanedUnits, Deferred]
