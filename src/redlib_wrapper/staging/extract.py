"""Unpack a fetched artifact into the staging directory."""

from __future__ import annotations

from abc import ABC, abstractmethod
import asyncio
from dataclasses import dataclass
from pathlib import Path, PurePosixPath
import shutil
import tarfile
import zipfile

from ..exceptions import ExtractError


@dataclass(frozen=True)
class ExtractedArtifact:
    """Where the staged binary ended up and what was unpacked alongside it."""

    staging_dir: Path
    binary_path: Path
    entries: tuple[str, ...]


class Extractor(ABC):
    @abstractmethod
    async def extract(
        self, artifact: Path, staging_dir: Path, artifact_name: str
    ) -> ExtractedArtifact:
        """Unpack ``artifact`` into ``staging_dir`` and locate the binary.

        Raises:
            ExtractError: The artifact cannot be unpacked or has no binary.
        """


def _check_member_name(name: str) -> str:
    path = PurePosixPath(name)
    if path.is_absolute() or ".." in path.parts or name.startswith("\\"):
        raise ExtractError(f"Refusing to extract unsafe archive member {name!r}")
    return str(path)


class ArchiveExtractor(Extractor):
    """Handles tar (optionally compressed) and zip archives, or a bare binary."""

    async def extract(
        self, artifact: Path, staging_dir: Path, artifact_name: str
    ) -> ExtractedArtifact:
        try:
            return await asyncio.to_thread(
                self._extract_sync, artifact, staging_dir, artifact_name
            )
        except (OSError, tarfile.TarError, zipfile.BadZipFile) as exc:
            raise ExtractError(f"Unable to extract {artifact.name}: {exc}") from exc

    def _extract_sync(
        self, artifact: Path, staging_dir: Path, artifact_name: str
    ) -> ExtractedArtifact:
        staging_dir.mkdir(parents=True, exist_ok=True)
        if tarfile.is_tarfile(artifact):
            entries = self._extract_tar(artifact, staging_dir)
        elif zipfile.is_zipfile(artifact):
            entries = self._extract_zip(artifact, staging_dir)
        else:
            shutil.copy2(artifact, staging_dir / artifact_name)
            entries = (artifact_name,)
        binary = self._locate_binary(staging_dir, entries, artifact_name)
        return ExtractedArtifact(staging_dir=staging_dir, binary_path=binary, entries=entries)

    def _extract_tar(self, artifact: Path, staging_dir: Path) -> tuple[str, ...]:
        with tarfile.open(artifact) as archive:
            members = archive.getmembers()
            for member in members:
                _check_member_name(member.name)
                if not (member.isfile() or member.isdir()):
                    raise ExtractError(
                        f"Refusing to extract non-regular archive member {member.name!r}"
                    )
            if hasattr(tarfile, "data_filter"):
                archive.extractall(staging_dir, members=members, filter="data")
            else:  # pragma: no cover - interpreters without extraction filters
                archive.extractall(staging_dir, members=members)
        return tuple(_check_member_name(m.name) for m in members)

    def _extract_zip(self, artifact: Path, staging_dir: Path) -> tuple[str, ...]:
        entries: list[str] = []
        with zipfile.ZipFile(artifact) as archive:
            infos = archive.infolist()
            for info in infos:
                entries.append(_check_member_name(info.filename))
            archive.extractall(staging_dir)
            # zipfile drops permission bits; restore the recorded ones.
            for info in infos:
                mode = (info.external_attr >> 16) & 0o777
                if mode and not info.is_dir():
                    (staging_dir / info.filename).chmod(mode)
        return tuple(entries)

    @staticmethod
    def _locate_binary(
        staging_dir: Path, entries: tuple[str, ...], artifact_name: str
    ) -> Path:
        candidates = [
            entry
            for entry in entries
            if PurePosixPath(entry).name == artifact_name
            and (staging_dir / entry).is_file()
        ]
        if not candidates:
            raise ExtractError(f"Artifact does not contain {artifact_name!r}")
        if len(candidates) > 1:
            if artifact_name not in candidates:
                raise ExtractError(
                    f"Artifact contains several {artifact_name!r} binaries: {candidates}"
                )
            return staging_dir / artifact_name
        return staging_dir / candidates[0]
