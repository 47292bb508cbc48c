"""Update phase collaborators: fetch, verify, extract and sanity-probe."""

from .extract import ArchiveExtractor, ExtractedArtifact, Extractor
from .fetch import Fetcher, HttpFetcher, LocalFileFetcher, SourceFetcher
from .probe import ProbeOutcome, SanityProbe, VersionProbe
from .verify import ChecksumVerifier, Verifier, format_checksum, sha256_file

__all__ = [
    "ArchiveExtractor",
    "ChecksumVerifier",
    "ExtractedArtifact",
    "Extractor",
    "Fetcher",
    "HttpFetcher",
    "LocalFileFetcher",
    "ProbeOutcome",
    "SanityProbe",
    "SourceFetcher",
    "Verifier",
    "VersionProbe",
    "format_checksum",
    "sha256_file",
]
