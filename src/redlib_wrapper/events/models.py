"""Typed lifecycle events emitted by the update and run agents.

Every event is an immutable pydantic model carrying the correlation ``id`` of
the invocation that produced it and a UTC ``timestamp``. The ``type`` field is
the discriminator used on the wire; field names serialize to camelCase::

    >>> RunLine(id="abc", stream="stdout", text="hi").to_dict()["type"]
    'RunLine'
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Annotated, Any, Literal, Union
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter
from pydantic.alias_generators import to_camel

from ..exceptions import RunFailureReason, UpdateFailureReason

StreamName = Literal["stdout", "stderr"]
RunState = Literal["running", "stopped", "killed"]


def new_correlation_id() -> str:
    """Return a fresh opaque identifier for one invocation."""
    return uuid4().hex


def _utcnow() -> datetime:
    return datetime.now(UTC)


class BaseEvent(BaseModel):
    """Fields shared by every event variant."""

    model_config = ConfigDict(
        frozen=True,
        alias_generator=to_camel,
        populate_by_name=True,
    )

    id: str
    timestamp: datetime = Field(default_factory=_utcnow)

    def to_dict(self) -> dict[str, Any]:
        """Serialize to the JSON-compatible wire record."""
        return self.model_dump(mode="json", by_alias=True)


# Update family


class UpdateStarted(BaseEvent):
    type: Literal["UpdateStarted"] = "UpdateStarted"
    source: str


class UpdateProgress(BaseEvent):
    type: Literal["UpdateProgress"] = "UpdateProgress"
    phase: str
    bytes_done: int = 0
    bytes_total: int | None = None
    percent: float | None = None


class UpdateExtracted(BaseEvent):
    type: Literal["UpdateExtracted"] = "UpdateExtracted"
    temp_path: str
    entries: tuple[str, ...] = ()


class UpdateSanityCheck(BaseEvent):
    type: Literal["UpdateSanityCheck"] = "UpdateSanityCheck"
    success: bool
    version_output: str | None = None
    notes: str | None = None


class UpdateCompleted(BaseEvent):
    type: Literal["UpdateCompleted"] = "UpdateCompleted"
    installed_path: str
    checksum: str | None = None
    version: str


class UpdateFailed(BaseEvent):
    type: Literal["UpdateFailed"] = "UpdateFailed"
    reason: UpdateFailureReason
    error_detail: str | None = None


class RollbackPerformed(BaseEvent):
    type: Literal["RollbackPerformed"] = "RollbackPerformed"
    restored_path: str


# Run family


class RunStarted(BaseEvent):
    type: Literal["RunStarted"] = "RunStarted"
    pid: int | None = None


class RunLine(BaseEvent):
    type: Literal["RunLine"] = "RunLine"
    stream: StreamName
    text: str


class RunStatus(BaseEvent):
    type: Literal["RunStatus"] = "RunStatus"
    exit_code: int | None = None
    state: RunState


class RunResult(BaseEvent):
    type: Literal["RunResult"] = "RunResult"
    exit_code: int
    duration_ms: int
    stdout_summary: str | None = None
    stderr_summary: str | None = None
    logs_path: str | None = None


class RunFailed(BaseEvent):
    type: Literal["RunFailed"] = "RunFailed"
    reason: RunFailureReason
    stderr_sample: str | None = None


UpdateEvent = Union[
    UpdateStarted,
    UpdateProgress,
    UpdateExtracted,
    UpdateSanityCheck,
    UpdateCompleted,
    UpdateFailed,
    RollbackPerformed,
]
RunEvent = Union[RunStarted, RunLine, RunStatus, RunResult, RunFailed]
Event = Annotated[Union[UpdateEvent, RunEvent], Field(discriminator="type")]

TERMINAL_EVENT_TYPES = frozenset(
    {"UpdateCompleted", "UpdateFailed", "RunResult", "RunFailed"}
)

_EVENT_ADAPTER: TypeAdapter[Any] = TypeAdapter(Event)


def parse_event(payload: dict[str, Any]) -> BaseEvent:
    """Restore a typed event from its wire record."""
    return _EVENT_ADAPTER.validate_python(payload)


def is_terminal(event: BaseEvent) -> bool:
    """Return True when ``event`` ends its invocation's event sequence."""
    return getattr(event, "type", "") in TERMINAL_EVENT_TYPES
