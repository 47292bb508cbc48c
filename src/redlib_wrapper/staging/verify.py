"""Integrity verification for fetched artifacts."""

from __future__ import annotations

from abc import ABC, abstractmethod
import asyncio
import hashlib
import hmac
from pathlib import Path

from ..exceptions import VerifyError

CHECKSUM_PREFIX = "sha256:"


def sha256_file(path: Path, chunk_size: int = 64 * 1024) -> str:
    """Return the hex SHA-256 digest of ``path``."""
    digest = hashlib.sha256()
    with path.open("rb") as fh:
        for chunk in iter(lambda: fh.read(chunk_size), b""):
            digest.update(chunk)
    return digest.hexdigest()


def format_checksum(hex_digest: str) -> str:
    return f"{CHECKSUM_PREFIX}{hex_digest}"


def _normalize_expected(expected: str) -> str:
    value = expected.strip().lower()
    if value.startswith(CHECKSUM_PREFIX):
        value = value[len(CHECKSUM_PREFIX) :]
    return value


class Verifier(ABC):
    @abstractmethod
    async def verify(self, artifact: Path, expected_sha256: str | None = None) -> str:
        """Check ``artifact`` and return its checksum as ``sha256:<hex>``.

        Raises:
            VerifyError: The artifact failed verification.
        """


class ChecksumVerifier(Verifier):
    """Hash the artifact; compare with an expected digest when one is given.

    Without an expected digest this only records the checksum, which is what
    local sources get.
    """

    async def verify(self, artifact: Path, expected_sha256: str | None = None) -> str:
        try:
            actual = await asyncio.to_thread(sha256_file, artifact)
        except OSError as exc:
            raise VerifyError(f"Unable to hash {artifact.name}: {exc}") from exc
        if expected_sha256:
            expected = _normalize_expected(expected_sha256)
            if not hmac.compare_digest(actual, expected):
                raise VerifyError(
                    f"Checksum mismatch for {artifact.name}: expected {expected}, got {actual}"
                )
        return format_checksum(actual)
