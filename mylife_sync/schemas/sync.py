"""Sync endpoint schemas."""

from datetime import datetime

from pydantic import BaseModel, Field


class SyncTriggerResponse(BaseModel):
    """Response schema for a manually triggered sync."""

    message: str
    cycle_id: str
    events_parsed: int
    records_skipped: int = Field(0, description="Malformed archive records skipped")
    archive_truncated: bool = Field(
        False, description="Archive container was malformed and read record by record"
    )
    events_seen: int = Field(0, description="Events already processed earlier")
    events_handled: int
    handler_errors: int = 0
    records_submitted: int


class SyncStatusResponse(BaseModel):
    """Response schema for the sync loop status."""

    state: str
    is_syncing: bool
    consecutive_failures: int
    next_run_at: datetime | None = None
    last_cycle_id: str | None = None
    last_sync_at: datetime | None = None
    last_success: bool | None = None
    last_error: str | None = None
    last_error_stage: str | None = None
    last_records_skipped: int | None = None
    last_archive_truncated: bool | None = None
