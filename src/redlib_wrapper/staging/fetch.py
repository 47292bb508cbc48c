"""Fetchers bring an update artifact into the per-invocation staging area."""

from __future__ import annotations

from abc import ABC, abstractmethod
import asyncio
from collections.abc import Awaitable, Callable
from pathlib import Path
import shutil
from urllib.parse import unquote, urlparse

import httpx

from ..exceptions import FetchError

DEFAULT_CHUNK_SIZE = 64 * 1024
DEFAULT_TIMEOUT_SECONDS = 120.0
FALLBACK_ARTIFACT_NAME = "artifact"

ProgressCallback = Callable[[int, int | None], Awaitable[None]]


async def _no_progress(done: int, total: int | None) -> None:
    return None


class Fetcher(ABC):
    """Obtain the artifact named by ``source`` into ``dest_dir``."""

    @abstractmethod
    async def fetch(
        self,
        source: str,
        dest_dir: Path,
        progress: ProgressCallback = _no_progress,
    ) -> Path:
        """Return the path of the fetched file inside ``dest_dir``.

        Raises:
            FetchError: The source is unreadable or unreachable.
        """


def _local_path(source: str) -> Path:
    parsed = urlparse(source)
    if parsed.scheme == "file":
        return Path(unquote(parsed.path))
    return Path(source).expanduser()


class LocalFileFetcher(Fetcher):
    """Copy a local file (plain path or ``file://`` URL), keeping its mode bits."""

    def __init__(self, chunk_size: int = DEFAULT_CHUNK_SIZE) -> None:
        self.chunk_size = chunk_size

    async def fetch(
        self,
        source: str,
        dest_dir: Path,
        progress: ProgressCallback = _no_progress,
    ) -> Path:
        path = _local_path(source)
        if not path.is_file():
            raise FetchError(f"Update source not found: {source}")
        try:
            total = path.stat().st_size
            dest_dir.mkdir(parents=True, exist_ok=True)
            target = dest_dir / path.name
            done = 0
            with path.open("rb") as src, target.open("wb") as dst:
                while True:
                    chunk = await asyncio.to_thread(src.read, self.chunk_size)
                    if not chunk:
                        break
                    await asyncio.to_thread(dst.write, chunk)
                    done += len(chunk)
                    await progress(done, total)
            shutil.copymode(path, target)
        except OSError as exc:
            raise FetchError(f"Unable to read update source {source}: {exc}") from exc
        return target


class HttpFetcher(Fetcher):
    """Stream an artifact over HTTP(S) with ``httpx``.

    A caller-supplied client is used as-is and left open; otherwise a client
    is created per fetch.
    """

    def __init__(
        self,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.timeout = timeout
        self.chunk_size = chunk_size
        self._client = client

    @staticmethod
    def _artifact_name(source: str) -> str:
        name = Path(unquote(urlparse(source).path)).name
        return name or FALLBACK_ARTIFACT_NAME

    async def _download(
        self,
        client: httpx.AsyncClient,
        source: str,
        target: Path,
        progress: ProgressCallback,
    ) -> None:
        async with client.stream("GET", source) as response:
            response.raise_for_status()
            length = response.headers.get("content-length")
            total = int(length) if length and length.isdigit() else None
            done = 0
            with target.open("wb") as fh:
                async for chunk in response.aiter_bytes(self.chunk_size):
                    fh.write(chunk)
                    done += len(chunk)
                    await progress(done, total)

    async def fetch(
        self,
        source: str,
        dest_dir: Path,
        progress: ProgressCallback = _no_progress,
    ) -> Path:
        target = dest_dir / self._artifact_name(source)
        try:
            dest_dir.mkdir(parents=True, exist_ok=True)
            if self._client is not None:
                await self._download(self._client, source, target, progress)
            else:
                async with httpx.AsyncClient(
                    timeout=self.timeout, follow_redirects=True
                ) as client:
                    await self._download(client, source, target, progress)
        except httpx.HTTPStatusError as exc:
            raise FetchError(
                f"Download of {source} failed with HTTP {exc.response.status_code}"
            ) from exc
        except httpx.HTTPError as exc:
            raise FetchError(f"Download of {source} failed: {exc}") from exc
        except OSError as exc:
            raise FetchError(f"Unable to store download of {source}: {exc}") from exc
        return target


class SourceFetcher(Fetcher):
    """Pick the HTTP or local fetcher from the source's URL scheme."""

    def __init__(
        self,
        http: HttpFetcher | None = None,
        local: LocalFileFetcher | None = None,
    ) -> None:
        self.http = http or HttpFetcher()
        self.local = local or LocalFileFetcher()

    async def fetch(
        self,
        source: str,
        dest_dir: Path,
        progress: ProgressCallback = _no_progress,
    ) -> Path:
        scheme = urlparse(source).scheme.lower()
        if scheme in {"http", "https"}:
            return await self.http.fetch(source, dest_dir, progress)
        if scheme not in {"", "file"} and len(scheme) > 1:
            raise FetchError(f"Unsupported update source scheme: {scheme!r}")
        return await self.local.fetch(source, dest_dir, progress)
