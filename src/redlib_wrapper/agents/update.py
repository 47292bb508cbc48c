"""Update agent: stage, verify and atomically activate a new binary.

Phases run in a fixed order::

    fetch -> verify -> extract -> sanity check -> swap -> record

Everything up to the sanity check happens inside ``<temp_root>/<id>`` and
never touches the live binary at ``<current_root>/<artifact_name>``. The swap
is a single ``os.replace`` from a sibling file of the live path, so readers
see either the old or the new binary. A failure after the live binary was
displaced restores the previous one and emits ``RollbackPerformed``.

Cancellation is honored until the swap begins. The swap and record phases
are shielded: a cancellation that arrives during them is re-raised only
after the new binary is fully activated (or rolled back).
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import UTC, datetime
import json
import logging
import os
from pathlib import Path
import shutil
import sys
from typing import ClassVar
import weakref

from ..config import UpdateConfig
from ..events.bus import EventBus
from ..events.models import (
    BaseEvent,
    RollbackPerformed,
    UpdateCompleted,
    UpdateExtracted,
    UpdateFailed,
    UpdateProgress,
    UpdateSanityCheck,
    UpdateStarted,
    new_correlation_id,
)
from ..exceptions import (
    ExtractError,
    FetchError,
    SanityCheckError,
    SwapError,
    UpdateError,
    UpdateFailureReason,
    VerifyError,
)
from ..process import ProcessRunner
from ..staging.extract import ArchiveExtractor, ExtractedArtifact, Extractor
from ..staging.fetch import Fetcher, HttpFetcher, LocalFileFetcher, SourceFetcher
from ..staging.probe import SanityProbe, VersionProbe
from ..staging.verify import ChecksumVerifier, Verifier, format_checksum, sha256_file

LOGGER = logging.getLogger(__name__)

_TARGET_LOCKS: weakref.WeakKeyDictionary[
    asyncio.AbstractEventLoop, dict[str, asyncio.Lock]
] = weakref.WeakKeyDictionary()


def target_lock(path: Path) -> asyncio.Lock:
    """Return the lock serializing swaps onto ``path`` in the running loop."""
    locks = _TARGET_LOCKS.setdefault(asyncio.get_running_loop(), {})
    key = str(path.expanduser().resolve(strict=False))
    lock = locks.get(key)
    if lock is None:
        lock = locks[key] = asyncio.Lock()
    return lock


@dataclass(frozen=True)
class UpdateSuccess:
    version: str
    installed_path: str
    checksum: str | None = None

    ok: ClassVar[bool] = True


@dataclass(frozen=True)
class UpdateFailure:
    reason: UpdateFailureReason
    error: BaseException

    ok: ClassVar[bool] = False


UpdateResult = UpdateSuccess | UpdateFailure


@contextmanager
def _phase(error_cls: type[UpdateError], *wrapped: type[BaseException]) -> Iterator[None]:
    """Re-raise ``wrapped`` exceptions as the phase's ``UpdateError``."""
    try:
        yield
    except UpdateError:
        raise
    except wrapped as exc:
        raise error_cls(str(exc) or type(exc).__name__) from exc


def _copy_durably(source: Path, target: Path) -> None:
    shutil.copy2(source, target)
    with target.open("rb+") as fh:
        os.fsync(fh.fileno())


def _preserve(current: Path, backup: Path) -> None:
    try:
        os.link(current, backup)
    except OSError:
        shutil.copy2(current, backup)


def _fsync_dir(directory: Path) -> None:
    if os.name != "posix":
        return
    fd = os.open(directory, os.O_RDONLY)
    try:
        os.fsync(fd)
    finally:
        os.close(fd)


def _unlink_quietly(path: Path) -> None:
    try:
        path.unlink(missing_ok=True)
    except OSError as exc:
        LOGGER.warning(
            "update.cleanup_failed",
            extra={"event": "update.cleanup_failed", "path": str(path), "error": str(exc)},
        )


def _remove_tree(path: Path) -> None:
    """Best-effort recursive delete that keeps going past individual failures."""

    def _on_error(func: Callable[..., object], failed: str, exc: BaseException) -> None:
        LOGGER.warning(
            "update.cleanup_failed",
            extra={"event": "update.cleanup_failed", "path": failed, "error": str(exc)},
        )

    if not path.exists():
        return
    if sys.version_info >= (3, 12):
        shutil.rmtree(path, onexc=_on_error)
    else:  # pragma: no cover - Python 3.11
        shutil.rmtree(path, onerror=lambda func, failed, info: _on_error(func, failed, info[1]))


class UpdateAgent:
    """Runs one update to completion per :meth:`run_update` call.

    Two invocations targeting the same live path are serialized at the swap
    step by a per-path lock; their staging work runs concurrently.
    """

    def __init__(
        self,
        bus: EventBus,
        config: UpdateConfig | None = None,
        fetcher: Fetcher | None = None,
        verifier: Verifier | None = None,
        extractor: Extractor | None = None,
        probe: SanityProbe | None = None,
        runner: ProcessRunner | None = None,
    ) -> None:
        self.bus = bus
        self.config = config or UpdateConfig()
        self.fetcher = fetcher or SourceFetcher(
            http=HttpFetcher(
                timeout=self.config.fetch_timeout_seconds,
                chunk_size=self.config.chunk_size,
            ),
            local=LocalFileFetcher(chunk_size=self.config.chunk_size),
        )
        self.verifier = verifier or ChecksumVerifier()
        self.extractor = extractor or ArchiveExtractor()
        self.probe = probe or VersionProbe(
            runner=runner,
            mode=self.config.sanity_mode,
            probe_args=self.config.probe_args,
            timeout=self.config.probe_timeout_seconds,
            version_pattern=self.config.version_pattern,
        )

    async def _emit(self, event: BaseEvent) -> None:
        await self.bus.publish(event)

    async def run_update(
        self, source: str, expected_sha256: str | None = None
    ) -> UpdateResult:
        """Install the binary found at ``source`` as the live binary.

        Args:
            source: Local path, ``file://`` URL or ``http(s)://`` URL.
            expected_sha256: Optional hex digest the fetched artifact must match.

        Returns:
            ``UpdateSuccess`` or ``UpdateFailure``; phase errors never raise.
        """
        update_id = new_correlation_id()
        staging_root = self.config.temp_root_path / update_id
        activation: asyncio.Future[UpdateResult] | None = None
        LOGGER.info(
            "update.started",
            extra={"event": "update.started", "update_id": update_id, "source": source},
        )
        try:
            await self._emit(UpdateStarted(id=update_id, source=source))
            artifact = await self._fetch(update_id, source, staging_root)
            artifact_checksum = await self._verify(update_id, artifact, expected_sha256)
            extracted = await self._extract(update_id, artifact, staging_root / "staged")
            version = await self._sanity_check(update_id, extracted)

            # Point of no return: the swap finishes even if we are cancelled.
            activation = asyncio.ensure_future(
                self._activate(update_id, source, extracted, version, artifact_checksum)
            )
            return await asyncio.shield(activation)
        except asyncio.CancelledError:
            if activation is not None:
                LOGGER.warning(
                    "update.cancel_deferred",
                    extra={"event": "update.cancel_deferred", "update_id": update_id},
                )
                await asyncio.wait({activation})
            else:
                LOGGER.info(
                    "update.cancelled",
                    extra={"event": "update.cancelled", "update_id": update_id},
                )
                await self._emit(
                    UpdateFailed(
                        id=update_id,
                        reason=UpdateFailureReason.UNKNOWN_ERROR,
                        error_detail="update cancelled",
                    )
                )
            raise
        except Exception as exc:  # noqa: BLE001 - every fault becomes an UpdateFailed event.
            return await self._fail(update_id, exc)
        finally:
            await asyncio.to_thread(_remove_tree, staging_root)

    async def _fail(self, update_id: str, exc: BaseException) -> UpdateFailure:
        if isinstance(exc, UpdateError):
            reason = exc.reason
            LOGGER.warning(
                "update.phase.failed",
                extra={
                    "event": "update.phase.failed",
                    "update_id": update_id,
                    "reason": str(reason),
                    "error": str(exc),
                },
            )
        else:
            reason = UpdateFailureReason.UNKNOWN_ERROR
            LOGGER.error(
                "update.unknown_error",
                exc_info=exc,
                extra={"event": "update.unknown_error", "update_id": update_id},
            )
        detail = str(exc) or type(exc).__name__
        await self._emit(UpdateFailed(id=update_id, reason=reason, error_detail=detail))
        return UpdateFailure(reason=reason, error=exc)

    async def _fetch(self, update_id: str, source: str, staging_root: Path) -> Path:
        last_percent: list[int | None] = [None]

        async def _progress(done: int, total: int | None) -> None:
            percent = round(done * 100 / total, 1) if total else None
            # One event per whole percent keeps large downloads from flooding the bus.
            bucket = int(percent) if percent is not None else None
            if total is not None and bucket == last_percent[0] and done != total:
                return
            last_percent[0] = bucket
            await self._emit(
                UpdateProgress(
                    id=update_id,
                    phase="fetch",
                    bytes_done=done,
                    bytes_total=total,
                    percent=percent,
                )
            )

        with _phase(FetchError, OSError):
            staging_root.mkdir(parents=True, exist_ok=False)
            artifact = await self.fetcher.fetch(source, staging_root / "download", _progress)
            size = artifact.stat().st_size
        if last_percent[0] != 100:
            await self._emit(
                UpdateProgress(
                    id=update_id,
                    phase="fetch",
                    bytes_done=size,
                    bytes_total=size,
                    percent=100.0,
                )
            )
        return artifact

    async def _verify(
        self, update_id: str, artifact: Path, expected_sha256: str | None
    ) -> str:
        with _phase(VerifyError, OSError):
            checksum = await self.verifier.verify(artifact, expected_sha256)
            size = artifact.stat().st_size
        await self._emit(
            UpdateProgress(
                id=update_id,
                phase="verify",
                bytes_done=size,
                bytes_total=size,
                percent=100.0,
            )
        )
        return checksum

    async def _extract(
        self, update_id: str, artifact: Path, staging_dir: Path
    ) -> ExtractedArtifact:
        with _phase(ExtractError, OSError):
            extracted = await self.extractor.extract(
                artifact, staging_dir, self.config.artifact_name
            )
            size = extracted.binary_path.stat().st_size
        await self._emit(
            UpdateProgress(
                id=update_id,
                phase="extract",
                bytes_done=size,
                bytes_total=size,
                percent=100.0,
            )
        )
        await self._emit(
            UpdateExtracted(
                id=update_id,
                temp_path=str(extracted.staging_dir),
                entries=extracted.entries,
            )
        )
        return extracted

    async def _sanity_check(self, update_id: str, extracted: ExtractedArtifact) -> str:
        try:
            outcome = await self.probe.probe(extracted.binary_path)
        except Exception as exc:  # noqa: BLE001 - a probe that cannot run is a failed probe.
            LOGGER.warning(
                "update.probe_crashed",
                extra={"event": "update.probe_crashed", "update_id": update_id, "error": str(exc)},
            )
            notes = f"Probe failed to run: {exc}"
            await self._emit(UpdateSanityCheck(id=update_id, success=False, notes=notes))
            raise SanityCheckError(notes) from exc

        success = outcome.success and bool(outcome.version)
        await self._emit(
            UpdateSanityCheck(
                id=update_id,
                success=success,
                version_output=outcome.version,
                notes=outcome.notes,
            )
        )
        if not success:
            raise SanityCheckError(f"Sanity check failed: {outcome.notes or 'no version'}")
        return str(outcome.version)

    async def _activate(
        self,
        update_id: str,
        source: str,
        extracted: ExtractedArtifact,
        version: str,
        artifact_checksum: str,
    ) -> UpdateResult:
        """Swap and record. Runs shielded from cancellation."""
        try:
            with _phase(SwapError, OSError):
                checksum = format_checksum(
                    await asyncio.to_thread(sha256_file, extracted.binary_path)
                )
            async with target_lock(self.config.current_path):
                installed = await self._swap(update_id, extracted.binary_path, checksum)
                # The record must describe whatever binary holds the lock last.
                await asyncio.to_thread(
                    self._write_install_record,
                    update_id,
                    source,
                    version,
                    checksum,
                    artifact_checksum,
                )
        except Exception as exc:  # noqa: BLE001 - converted into UpdateFailed.
            return await self._fail(update_id, exc)

        size = extracted.binary_path.stat().st_size
        await self._emit(
            UpdateProgress(
                id=update_id,
                phase="swap",
                bytes_done=size,
                bytes_total=size,
                percent=100.0,
            )
        )
        LOGGER.info(
            "update.completed",
            extra={
                "event": "update.completed",
                "update_id": update_id,
                "version": version,
                "installed_path": str(installed),
            },
        )
        await self._emit(
            UpdateCompleted(
                id=update_id,
                installed_path=str(installed),
                checksum=checksum,
                version=version,
            )
        )
        return UpdateSuccess(version=version, installed_path=str(installed), checksum=checksum)

    async def _swap(self, update_id: str, staged: Path, checksum: str) -> Path:
        current = self.config.current_path
        root = current.parent
        name = self.config.artifact_name
        incoming = root / f".{name}.{update_id}.incoming"
        backup = root / f".{name}.{update_id}.previous"
        had_previous = False
        displaced = False
        try:
            with _phase(SwapError, OSError):
                root.mkdir(parents=True, exist_ok=True)
                # Same directory as the live path, so os.replace stays atomic.
                await asyncio.to_thread(_copy_durably, staged, incoming)
                had_previous = current.exists()
                if had_previous:
                    await asyncio.to_thread(_preserve, current, backup)
                await asyncio.to_thread(os.replace, incoming, current)
                displaced = True
                await asyncio.to_thread(_fsync_dir, root)
                await asyncio.to_thread(self._check_installed, current, checksum)
            return current
        except BaseException:
            if displaced:
                await self._rollback(update_id, current, backup, had_previous)
            raise
        finally:
            _unlink_quietly(incoming)
            _unlink_quietly(backup)

    def _check_installed(self, installed: Path, checksum: str) -> None:
        actual = format_checksum(sha256_file(installed))
        if actual != checksum:
            raise SwapError(
                f"Installed binary checksum {actual} does not match staged {checksum}"
            )

    async def _rollback(
        self, update_id: str, current: Path, backup: Path, had_previous: bool
    ) -> None:
        try:
            if had_previous:
                await asyncio.to_thread(os.replace, backup, current)
            else:
                await asyncio.to_thread(current.unlink, missing_ok=True)
        except OSError as exc:
            LOGGER.error(
                "update.rollback_failed",
                extra={
                    "event": "update.rollback_failed",
                    "update_id": update_id,
                    "path": str(current),
                    "error": str(exc),
                },
            )
            return
        LOGGER.warning(
            "update.rolled_back",
            extra={"event": "update.rolled_back", "update_id": update_id, "path": str(current)},
        )
        await self._emit(RollbackPerformed(id=update_id, restored_path=str(current)))

    def _write_install_record(
        self,
        update_id: str,
        source: str,
        version: str,
        checksum: str,
        artifact_checksum: str,
    ) -> None:
        """Write ``<name>.install.json`` next to the live binary, atomically."""
        current = self.config.current_path
        record_path = current.with_name(f"{current.name}.install.json")
        tmp_path = current.with_name(f".{current.name}.{update_id}.install.json")
        payload = {
            "id": update_id,
            "version": version,
            "checksum": checksum,
            "artifact_checksum": artifact_checksum,
            "source": source,
            "installed_path": str(current),
            "installed_at": datetime.now(UTC).isoformat(),
        }
        try:
            tmp_path.write_text(
                json.dumps(payload, ensure_ascii=False, indent=2, sort_keys=True),
                encoding="utf-8",
            )
            os.replace(tmp_path, record_path)
        except OSError as exc:
            LOGGER.warning(
                "update.record_failed",
                extra={
                    "event": "update.record_failed",
                    "update_id": update_id,
                    "path": str(record_path),
                    "error": str(exc),
                },
            )
            _unlink_quietly(tmp_path)


def read_install_record(config: UpdateConfig) -> dict[str, object] | None:
    """Return the install record of the live binary, if one was written."""
    current = config.current_path
    record_path = current.with_name(f"{current.name}.install.json")
    try:
        payload = json.loads(record_path.read_text(encoding="utf-8"))
    except (OSError, ValueError):
        return None
    return payload if isinstance(payload, dict) else None
