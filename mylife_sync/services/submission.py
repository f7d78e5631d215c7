"""Downstream submission of treatment records.

The connector hands finished records to a TreatmentSubmitter. The reference
implementation posts them to a Nightscout-compatible treatments API.
"""

import hashlib
from collections.abc import Sequence
from typing import Protocol

import httpx

from mylife_sync.logging_config import get_logger
from mylife_sync.schemas.treatment import TreatmentRecord

logger = get_logger(__name__)

TREATMENTS_PATH = "/api/v1/treatments"


class TreatmentSubmitter(Protocol):
    """Accepts a batch of records; returns False if the batch was not stored."""

    async def submit(self, records: Sequence[TreatmentRecord]) -> bool: ...


def hash_api_secret(api_secret: str) -> str:
    """Return the SHA-1 hex digest Nightscout expects in the API-SECRET header."""
    return hashlib.sha1(api_secret.encode("utf-8")).hexdigest()


class NightscoutTreatmentSubmitter:
    """Posts treatments to ``<url>/api/v1/treatments`` in fixed-size batches.

    Records carry deterministic ids, so re-posting a batch upserts rather
    than duplicates.
    """

    def __init__(
        self,
        base_url: str,
        api_secret: str,
        batch_size: int = 50,
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        if batch_size < 1:
            raise ValueError("batch_size must be at least 1")
        self._url = f"{base_url.rstrip('/')}{TREATMENTS_PATH}"
        self._hashed_secret = hash_api_secret(api_secret)
        self._batch_size = batch_size
        self._timeout = timeout
        self._transport = transport

    async def submit(self, records: Sequence[TreatmentRecord]) -> bool:
        if not records:
            return True

        headers = {
            "API-SECRET": self._hashed_secret,
            "Content-Type": "application/json",
        }
        try:
            async with httpx.AsyncClient(
                timeout=self._timeout, transport=self._transport
            ) as client:
                for start in range(0, len(records), self._batch_size):
                    batch = records[start : start + self._batch_size]
                    response = await client.post(
                        self._url,
                        json=[record.to_upload() for record in batch],
                        headers=headers,
                    )
                    if response.is_error:
                        logger.error(
                            "Treatment upload rejected",
                            status_code=response.status_code,
                            batch_start=start,
                            batch_size=len(batch),
                        )
                        return False
        except httpx.HTTPError as e:
            logger.error(
                "Treatment upload failed",
                error_type=type(e).__name__,
                error=str(e),
            )
            return False

        logger.info("Uploaded treatments", count=len(records))
        return True
