"""Pytest configuration and shared fixtures.

Wires archive builders and in-memory fakes for the mylife cloud and the
downstream treatment store, so pipeline tests run without network access.
"""

import os
from collections.abc import Callable

import pytest

# Set testing mode BEFORE importing settings
os.environ["TESTING"] = "true"

from mylife_sync.config import settings

settings.testing = True

from archive_builder import DEVICE_SERIAL, USERNAME
from fakes import FakeArchiveTransport, FakeLoginClient, FakeSubmitter
from mylife_sync.core.archive_crypto import derive_archive_key, encrypt_archive
from mylife_sync.models.archive import RawArchiveBlob
from mylife_sync.services.dedup import EventDedupCache


@pytest.fixture
def device_serial() -> str:
    return DEVICE_SERIAL


@pytest.fixture(scope="session")
def key_material() -> bytes:
    """Archive key for the test account (PBKDF2 is slow, derive once)."""
    return derive_archive_key(USERNAME, DEVICE_SERIAL)


@pytest.fixture
def make_blob(key_material) -> Callable[..., RawArchiveBlob]:
    """Encrypt a plaintext container into an archive blob."""

    def _make(content: bytes, compress: bool = False) -> RawArchiveBlob:
        return encrypt_archive(content, key_material, compress=compress)

    return _make


@pytest.fixture
def dedup() -> EventDedupCache:
    return EventDedupCache(ttl_seconds=48 * 3600)


@pytest.fixture
def login_client() -> FakeLoginClient:
    return FakeLoginClient()


@pytest.fixture
def archive_transport() -> FakeArchiveTransport:
    return FakeArchiveTransport()


@pytest.fixture
def submitter() -> FakeSubmitter:
    return FakeSubmitter()
