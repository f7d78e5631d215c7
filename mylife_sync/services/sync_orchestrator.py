"""mylife sync orchestration.

Drives one sync cycle through its stages (authenticate, fetch, decrypt,
parse, dispatch, submit), keeps at most one cycle in flight, and paces the
polling loop with exponential backoff after failures.
"""

import asyncio
import enum
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import Protocol
from zoneinfo import ZoneInfo

from mylife_sync.config import Settings
from mylife_sync.core.archive_crypto import decrypt_archive, derive_archive_key
from mylife_sync.core.errors import (
    ConfigurationError,
    MyLifeSyncError,
    SessionRejectedError,
    SubmissionError,
    SyncCancelledError,
)
from mylife_sync.logging_config import get_logger, sync_cycle_id_ctx
from mylife_sync.models.archive import FetchWindow, RawArchiveBlob
from mylife_sync.services.archive_reader import ArchiveReader
from mylife_sync.services.dedup import EventDedupCache
from mylife_sync.services.event_processor import EventProcessor
from mylife_sync.services.session import Session, SessionProvider
from mylife_sync.services.soap_client import MyLifeSoapClient
from mylife_sync.services.submission import (
    NightscoutTreatmentSubmitter,
    TreatmentSubmitter,
)
from mylife_sync.services.treatment_handlers import MapperOptions

logger = get_logger(__name__)


class SyncState(str, enum.Enum):
    """Stage the orchestrator is currently in."""

    IDLE = "idle"
    AUTHENTICATING = "authenticating"
    FETCHING = "fetching"
    DECRYPTING = "decrypting"
    PARSING = "parsing"
    DISPATCHING = "dispatching"
    SUBMITTING = "submitting"
    BACKOFF = "backoff"


class ArchiveTransport(Protocol):
    async def fetch_archive(self, session: Session, window: FetchWindow) -> RawArchiveBlob: ...


@dataclass
class SyncResult:
    """Summary of one sync cycle."""

    cycle_id: str
    started_at: datetime
    finished_at: datetime | None = None
    success: bool = False
    events_parsed: int = 0
    records_skipped: int = 0
    archive_truncated: bool = False
    events_seen: int = 0
    events_deleted: int = 0
    events_handled: int = 0
    handler_errors: int = 0
    records_submitted: int = 0
    error: str | None = None
    error_stage: str | None = None
    retryable: bool | None = None
    next_delay_seconds: float = 0.0
    handler_counts: dict[str, int] = field(default_factory=dict)


class SyncOrchestrator:
    """Runs sync cycles and the polling loop around them."""

    def __init__(
        self,
        session_provider: SessionProvider,
        transport: ArchiveTransport,
        key_material: bytes,
        processor: EventProcessor,
        submitter: TreatmentSubmitter,
        reader: ArchiveReader | None = None,
        lookback: timedelta = timedelta(hours=24),
        interval: timedelta = timedelta(minutes=5),
        backoff_base_seconds: float = 10.0,
        backoff_max_seconds: float = 300.0,
        clock: Callable[[], datetime] = lambda: datetime.now(UTC),
    ):
        self._sessions = session_provider
        self._transport = transport
        self._key_material = key_material
        self._processor = processor
        self._submitter = submitter
        self._reader = reader or ArchiveReader()
        self._lookback = lookback
        self._interval = interval
        self._backoff_base = backoff_base_seconds
        self._backoff_max = backoff_max_seconds
        self._clock = clock

        self._state = SyncState.IDLE
        self._consecutive_failures = 0
        self._last_result: SyncResult | None = None
        self._next_run_at: datetime | None = None

        self._cycle_lock = asyncio.Lock()
        self._inflight: asyncio.Task | None = None
        self._stop_event = asyncio.Event()

    @property
    def state(self) -> SyncState:
        return self._state

    @property
    def consecutive_failures(self) -> int:
        return self._consecutive_failures

    @property
    def last_result(self) -> SyncResult | None:
        return self._last_result

    @property
    def next_run_at(self) -> datetime | None:
        return self._next_run_at

    @property
    def is_syncing(self) -> bool:
        return self._inflight is not None and not self._inflight.done()

    @property
    def is_stopped(self) -> bool:
        return self._stop_event.is_set()

    def backoff_delay(self, failures: int, retryable: bool = True) -> float:
        """Delay before the next attempt after ``failures`` consecutive failures."""
        if failures <= 0:
            return self._interval.total_seconds()
        if not retryable:
            return self._backoff_max
        return min(self._backoff_max, self._backoff_base * 2 ** (failures - 1))

    async def trigger_sync(self) -> SyncResult:
        """Run a sync cycle, or join the one already in flight."""
        async with self._cycle_lock:
            if self._inflight is None or self._inflight.done():
                self._inflight = asyncio.create_task(self.run_cycle())
            task = self._inflight
        return await asyncio.shield(task)

    async def run_forever(self) -> None:
        """Poll until stop() is called."""
        logger.info(
            "mylife sync loop started",
            interval_seconds=self._interval.total_seconds(),
        )
        while not self._stop_event.is_set():
            result = await self.trigger_sync()
            if self._stop_event.is_set():
                break

            delay = result.next_delay_seconds
            self._next_run_at = self._clock() + timedelta(seconds=delay)
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=delay)
            except TimeoutError:
                pass
        self._state = SyncState.IDLE
        self._next_run_at = None
        logger.info("mylife sync loop stopped")

    def stop(self) -> None:
        """Stop the loop; an in-flight network call may finish, nothing new starts."""
        self._stop_event.set()

    def _check_stopped(self) -> None:
        if self._stop_event.is_set():
            raise SyncCancelledError("Sync stopped before the next network call")

    async def run_cycle(self) -> SyncResult:
        """Run one full sync cycle. Errors are reported in the result."""
        cycle_id = uuid.uuid4().hex[:12]
        token = sync_cycle_id_ctx.set(cycle_id)
        result = SyncResult(cycle_id=cycle_id, started_at=self._clock())
        try:
            await self._run_stages(result)
        except SyncCancelledError as e:
            result.error = str(e)
            result.error_stage = e.stage
            result.retryable = False
            self._state = SyncState.IDLE
            logger.info("mylife sync cycle cancelled")
        except MyLifeSyncError as e:
            self._record_failure(result, e, e.stage, e.retryable)
        except Exception as e:
            logger.exception(
                "Unexpected error in mylife sync cycle", stage=self._state.value
            )
            self._record_failure(result, e, self._state.value, True)
        else:
            result.success = True
            self._consecutive_failures = 0
            self._state = SyncState.IDLE
            result.next_delay_seconds = self.backoff_delay(0)
            logger.info(
                "mylife sync cycle completed",
                events_parsed=result.events_parsed,
                records_skipped=result.records_skipped,
                archive_truncated=result.archive_truncated,
                events_seen=result.events_seen,
                events_handled=result.events_handled,
                handler_errors=result.handler_errors,
                records_submitted=result.records_submitted,
            )
        finally:
            result.finished_at = self._clock()
            self._last_result = result
            sync_cycle_id_ctx.reset(token)
        return result

    def _record_failure(
        self, result: SyncResult, error: Exception, stage: str, retryable: bool
    ) -> None:
        self._consecutive_failures += 1
        self._state = SyncState.BACKOFF
        result.error = str(error)
        result.error_stage = stage
        result.retryable = retryable
        result.next_delay_seconds = self.backoff_delay(
            self._consecutive_failures, retryable
        )
        logger.warning(
            "mylife sync cycle failed",
            stage=stage,
            retryable=retryable,
            error=str(error),
            consecutive_failures=self._consecutive_failures,
            next_delay_seconds=result.next_delay_seconds,
        )

    async def _run_stages(self, result: SyncResult) -> None:
        self._check_stopped()
        self._state = SyncState.AUTHENTICATING
        session = await self._sessions.get_valid_session()

        self._check_stopped()
        self._state = SyncState.FETCHING
        end = self._clock()
        window = FetchWindow(start=end - self._lookback, end=end)
        try:
            blob = await self._transport.fetch_archive(session, window)
        except SessionRejectedError:
            self._sessions.invalidate(session.token)
            raise

        # Nothing is marked seen once a stop arrived during the fetch
        self._check_stopped()
        self._state = SyncState.DECRYPTING
        payload = decrypt_archive(blob, self._key_material)

        self._state = SyncState.PARSING
        events = list(self._reader.parse(payload))
        result.events_parsed = len(events)
        result.records_skipped = self._reader.skipped_records
        result.archive_truncated = self._reader.truncated

        self._state = SyncState.DISPATCHING
        processed = self._processor.process(events)
        result.events_seen = processed.events_seen
        result.events_deleted = processed.events_deleted
        result.events_handled = processed.events_handled
        result.handler_errors = processed.handler_errors
        result.handler_counts = dict(processed.handler_counts)

        if not processed.records:
            return

        self._check_stopped()
        self._state = SyncState.SUBMITTING
        if not await self._submitter.submit(processed.records):
            raise SubmissionError(
                f"Downstream store rejected {len(processed.records)} treatments"
            )
        result.records_submitted = len(processed.records)


def build_orchestrator(
    config: Settings,
    dedup: EventDedupCache | None = None,
    submitter: TreatmentSubmitter | None = None,
) -> SyncOrchestrator:
    """Wire an orchestrator from settings."""
    try:
        device_tz = ZoneInfo(config.mylife_timezone)
    except (KeyError, ValueError) as e:
        raise ConfigurationError(
            f"Unknown MYLIFE_TIMEZONE: {config.mylife_timezone!r}"
        ) from e

    client = MyLifeSoapClient(
        base_url=config.resolved_base_url,
        device_serial=config.mylife_device_serial,
        timeout=config.http_timeout_seconds,
    )
    sessions = SessionProvider(
        client,
        username=config.mylife_username,
        password=config.mylife_password.get_secret_value(),
        refresh_margin=timedelta(seconds=config.session_refresh_margin_seconds),
    )
    dedup = dedup or EventDedupCache(
        ttl_seconds=config.dedup_window_hours * 3600,
        max_entries=config.dedup_max_entries,
    )
    processor = EventProcessor(
        dedup,
        device_serial=config.mylife_device_serial,
        device_tz=device_tz,
        options=MapperOptions(
            enable_manual_bg_sync=config.enable_manual_bg_sync,
            enable_meal_carb_consolidation=config.enable_meal_carb_consolidation,
            enable_temp_basal_consolidation=config.enable_temp_basal_consolidation,
            temp_basal_consolidation_window_minutes=config.temp_basal_consolidation_window_minutes,
        ),
    )
    submitter = submitter or NightscoutTreatmentSubmitter(
        base_url=config.nightscout_url,
        api_secret=config.nightscout_api_secret.get_secret_value(),
        batch_size=config.submit_batch_size,
        timeout=config.http_timeout_seconds,
    )
    return SyncOrchestrator(
        session_provider=sessions,
        transport=client,
        key_material=derive_archive_key(
            config.mylife_username, config.mylife_device_serial
        ),
        processor=processor,
        submitter=submitter,
        reader=ArchiveReader(device_tz=device_tz),
        lookback=timedelta(hours=config.sync_lookback_hours),
        interval=timedelta(minutes=config.sync_interval_minutes),
        backoff_base_seconds=config.backoff_base_seconds,
        backoff_max_seconds=config.backoff_max_seconds,
    )
