"""Values that travel through the engine: chunks in, results out."""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional


class SourceType(Enum):
    GIT = "git"
    GITHUB = "github"
    GITLAB = "gitlab"
    FILESYSTEM = "filesystem"
    S3 = "s3"
    SYSLOG = "syslog"
    CIRCLECI = "circleci"


@dataclass
class Chunk:
    """A unit of scanned content plus where it came from."""
    data: bytes
    source_type: SourceType
    source_name: str
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class Result:
    """One detected (and possibly verified) secret."""
    detector_name: str
    verified: bool
    raw: str
    redacted: str
    source_type: SourceType
    source_name: str
    metadata: Dict[str, Any] = field(default_factory=dict)
    decoder_name: str = "PLAIN"
    extra_data: Optional[Dict[str, str]] = None


def redact(value: str, keep: int = 4) -> str:
    """Keep the first few characters of a secret and mask the rest."""
    if len(value) <= keep:
        return "*" * len(value)
    return value[:keep] + "*" * min(len(value) - keep, 16)
