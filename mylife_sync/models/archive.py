"""Transient archive containers passed between pipeline stages."""

from dataclasses import dataclass
from datetime import datetime


@dataclass(frozen=True)
class FetchWindow:
    """Time window requested from the archive service."""

    start: datetime
    end: datetime


@dataclass(frozen=True)
class RawArchiveBlob:
    """Encrypted archive as returned by the mylife cloud."""

    data: bytes
    version: str
    encoding: str
    window: FetchWindow | None = None

    def __repr__(self) -> str:
        return (
            f"RawArchiveBlob(version={self.version!r}, encoding={self.encoding!r}, "
            f"size={len(self.data)})"
        )


@dataclass(frozen=True)
class DecryptedPayload:
    """Plaintext XML event container."""

    content: bytes
    version: str
