"""Event model and broadcast bus shared by the agents and their observers."""

from .bus import EventBus, Subscription
from .models import (
    BaseEvent,
    Event,
    RollbackPerformed,
    RunFailed,
    RunLine,
    RunResult,
    RunStarted,
    RunStatus,
    UpdateCompleted,
    UpdateExtracted,
    UpdateFailed,
    UpdateProgress,
    UpdateSanityCheck,
    UpdateStarted,
    is_terminal,
    new_correlation_id,
    parse_event,
)

__all__ = [
    "BaseEvent",
    "Event",
    "EventBus",
    "RollbackPerformed",
    "RunFailed",
    "RunLine",
    "RunResult",
    "RunStarted",
    "RunStatus",
    "Subscription",
    "UpdateCompleted",
    "UpdateExtracted",
    "UpdateFailed",
    "UpdateProgress",
    "UpdateSanityCheck",
    "UpdateStarted",
    "is_terminal",
    "new_correlation_id",
    "parse_event",
]
