"""Event archive decryption.

The mylife cloud delivers the event archive as a Fernet token (AES-128-CBC
with HMAC-SHA256). The key is derived with PBKDF2 from account and pump
identifiers that are known at configuration time, so it is computed once per
connector and never persisted next to the session.

The decrypted plaintext is an XML event container, optionally gzip
compressed.
"""

import base64
import gzip
import hashlib
import zlib

from cryptography.fernet import Fernet, InvalidToken

from mylife_sync.core.errors import DecryptionError
from mylife_sync.models.archive import DecryptedPayload, RawArchiveBlob

# PBKDF2 parameters
_PBKDF2_ITERATIONS = 100_000
# Static salt -- changing this would make every archive undecryptable.
_PBKDF2_SALT = b"mylife-event-archive-v1"

SUPPORTED_ARCHIVE_VERSIONS = {"1"}
ARCHIVE_ENCODING = "fernet"
_GZIP_MAGIC = b"\x1f\x8b"


def derive_archive_key(username: str, device_serial: str) -> bytes:
    """Derive the Fernet key for a pump's archives.

    Args:
        username: mylife account name (case-insensitive)
        device_serial: Pump serial number

    Returns:
        A 32-byte URL-safe base64-encoded key suitable for Fernet.
    """
    material = f"{username.strip().lower()}:{device_serial.strip()}"
    key_bytes = hashlib.pbkdf2_hmac(
        "sha256",
        material.encode("utf-8"),
        _PBKDF2_SALT,
        _PBKDF2_ITERATIONS,
    )
    return base64.urlsafe_b64encode(key_bytes)


def encrypt_archive(
    plaintext: bytes, key_material: bytes, compress: bool = False
) -> RawArchiveBlob:
    """Build an archive blob the way the mylife cloud does.

    Used by the test suite and by tooling that replays captured archives.
    """
    if compress:
        plaintext = gzip.compress(plaintext)
    token = Fernet(key_material).encrypt(plaintext)
    return RawArchiveBlob(data=token, version="1", encoding=ARCHIVE_ENCODING)


def decrypt_archive(blob: RawArchiveBlob, key_material: bytes) -> DecryptedPayload:
    """Decrypt a raw archive blob into its plaintext container.

    Args:
        blob: Encrypted archive with its version/encoding markers
        key_material: Key from derive_archive_key()

    Returns:
        DecryptedPayload with the XML container bytes

    Raises:
        DecryptionError: On unsupported version or encoding, wrong key,
            corrupted token or corrupted compressed stream
    """
    if blob.version not in SUPPORTED_ARCHIVE_VERSIONS:
        raise DecryptionError(f"Unsupported archive version: {blob.version!r}")
    if blob.encoding.lower() != ARCHIVE_ENCODING:
        raise DecryptionError(f"Unsupported archive encoding: {blob.encoding!r}")
    if not blob.data:
        raise DecryptionError("Archive is empty")

    try:
        fernet = Fernet(key_material)
    except (ValueError, TypeError) as e:
        raise DecryptionError("Invalid archive key material") from e

    try:
        plaintext = fernet.decrypt(blob.data)
    except InvalidToken as e:
        raise DecryptionError(
            "Failed to decrypt archive - invalid key or corrupted data"
        ) from e

    if plaintext.startswith(_GZIP_MAGIC):
        try:
            plaintext = gzip.decompress(plaintext)
        except (OSError, EOFError, zlib.error) as e:
            raise DecryptionError("Archive compression stream is corrupted") from e

    return DecryptedPayload(content=plaintext, version=blob.version)
