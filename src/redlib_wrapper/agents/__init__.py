"""Agents that drive one update or one run to completion."""

from .run import EnvResolver, RunAgent, RunRequest
from .update import (
    UpdateAgent,
    UpdateFailure,
    UpdateResult,
    UpdateSuccess,
    read_install_record,
    target_lock,
)

__all__ = [
    "EnvResolver",
    "RunAgent",
    "RunRequest",
    "UpdateAgent",
    "UpdateFailure",
    "UpdateResult",
    "UpdateSuccess",
    "read_install_record",
    "target_lock",
]
