"""Top-level package for redlib-wrapper."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from .agents import (
        RunAgent,
        RunRequest,
        UpdateAgent,
        UpdateFailure,
        UpdateResult,
        UpdateSuccess,
    )
    from .config import ensure_config_dir, load_config
    from .events import EventBus
    from .exceptions import (
        ConfigValidationError,
        RedlibWrapperError,
        RunFailureReason,
        UpdateFailureReason,
    )
    from .process import AsyncioProcessRunner, ProcessRunner

__all__ = [
    "AsyncioProcessRunner",
    "ConfigValidationError",
    "EventBus",
    "ProcessRunner",
    "RedlibWrapperError",
    "RunAgent",
    "RunFailureReason",
    "RunRequest",
    "UpdateAgent",
    "UpdateFailure",
    "UpdateFailureReason",
    "UpdateResult",
    "UpdateSuccess",
    "ensure_config_dir",
    "load_config",
]

_AGENT_EXPORTS = {
    "RunAgent",
    "RunRequest",
    "UpdateAgent",
    "UpdateFailure",
    "UpdateResult",
    "UpdateSuccess",
}
_EXCEPTION_EXPORTS = {
    "ConfigValidationError",
    "RedlibWrapperError",
    "RunFailureReason",
    "UpdateFailureReason",
}


def __getattr__(name: str) -> Any:
    """Lazily import symbols so ``import redlib_wrapper`` stays cheap."""
    if name in _AGENT_EXPORTS:
        from . import agents

        return getattr(agents, name)
    if name in _EXCEPTION_EXPORTS:
        from . import exceptions

        return getattr(exceptions, name)
    if name in {"ensure_config_dir", "load_config"}:
        from .config import ensure_config_dir, load_config

        return {"ensure_config_dir": ensure_config_dir, "load_config": load_config}[name]
    if name == "EventBus":
        from .events import EventBus

        return EventBus
    if name in {"AsyncioProcessRunner", "ProcessRunner"}:
        from . import process

        return getattr(process, name)
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
