"""Event processing: dedup, handler dispatch and batch post-processing."""

import bisect
from collections import Counter
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta, tzinfo

from mylife_sync.core.errors import HandlerError
from mylife_sync.core.timestamps import device_time_to_utc
from mylife_sync.logging_config import get_logger
from mylife_sync.models.events import DeviceEvent, MyLifeEventType
from mylife_sync.schemas.treatment import TreatmentEventType, TreatmentRecord
from mylife_sync.services.dedup import EventDedupCache
from mylife_sync.services.treatment_handlers import (
    HANDLERS,
    MapperOptions,
    TreatmentContext,
    TreatmentHandler,
    select_handler,
)

logger = get_logger(__name__)

# Upper bound for a basal segment whose successor is far away or missing
MAX_BASAL_DURATION = timedelta(hours=24)


@dataclass
class ProcessResult:
    """Outcome of processing one batch of device events."""

    records: list[TreatmentRecord] = field(default_factory=list)
    events_total: int = 0
    events_deleted: int = 0
    events_seen: int = 0
    events_handled: int = 0
    handler_errors: int = 0
    handler_counts: Counter = field(default_factory=Counter)


class EventProcessor:
    """Maps device events to treatment records exactly once.

    Events whose identity is already in the dedup cache are skipped before
    any handler runs. An event is marked seen only after its handler
    succeeded; events that fail mapping stay unmarked and are retried when
    the next archive window contains them again.
    """

    def __init__(
        self,
        dedup: EventDedupCache,
        device_serial: str,
        device_tz: tzinfo = UTC,
        options: MapperOptions | None = None,
        handlers: tuple[TreatmentHandler, ...] = HANDLERS,
    ):
        self._dedup = dedup
        self._device_serial = device_serial
        self._device_tz = device_tz
        self._options = options or MapperOptions()
        self._handlers = handlers

    def process(self, events: Iterable[DeviceEvent]) -> ProcessResult:
        """Process a batch of events in source order."""
        batch = list(events)
        result = ProcessResult(events_total=len(batch))

        pending: list[tuple[DeviceEvent, str]] = []
        pending_ids: set[str] = set()
        for event in batch:
            if event.deleted:
                result.events_deleted += 1
                continue

            identity = event.identity(self._device_serial)
            if identity in pending_ids or self._dedup.seen(identity):
                result.events_seen += 1
                continue
            pending.append((event, identity))
            pending_ids.add(identity)

        context = TreatmentContext.create(
            [event for event, _ in pending],
            self._device_serial,
            self._device_tz,
            self._options,
        )

        for event, identity in pending:
            handler = select_handler(event, self._handlers)
            try:
                records = handler.handle(event, context)
            except HandlerError as e:
                result.handler_errors += 1
                logger.warning(
                    "Failed to map device event",
                    stage=e.stage,
                    handler=handler.name,
                    event_type_id=event.event_type_id,
                    record_id=event.record_id,
                    error=str(e),
                )
                continue
            except Exception as e:
                result.handler_errors += 1
                logger.warning(
                    "Unexpected error mapping device event",
                    stage="dispatching",
                    handler=handler.name,
                    event_type_id=event.event_type_id,
                    record_id=event.record_id,
                    error=str(e),
                )
                continue

            self._dedup.mark_seen(identity)
            result.events_handled += 1
            result.handler_counts[handler.name] += 1
            result.records.extend(records)

        result.records = self._fill_basal_durations(batch, result.records)

        logger.debug(
            "Processed device events",
            events_total=result.events_total,
            events_deleted=result.events_deleted,
            events_seen=result.events_seen,
            events_handled=result.events_handled,
            handler_errors=result.handler_errors,
            records=len(result.records),
        )
        return result

    def _fill_basal_durations(
        self, batch: list[DeviceEvent], records: list[TreatmentRecord]
    ) -> list[TreatmentRecord]:
        """Give open-ended basal records the length of their segment.

        A basal rate runs until the next basal rate change of the batch,
        seen or not; the latest one is still running and gets duration 0.
        """
        start_set: set[datetime] = set()
        for ev in batch:
            if ev.event_type_id != MyLifeEventType.BASAL_RATE or ev.deleted:
                continue
            try:
                start_set.add(device_time_to_utc(ev.device_timestamp, self._device_tz))
            except ValueError:
                continue
        starts = sorted(start_set)

        filled = []
        for record in records:
            if record.event_type != TreatmentEventType.BASAL or record.duration is not None:
                filled.append(record)
                continue

            index = bisect.bisect_right(starts, record.timestamp)
            if index >= len(starts):
                # Still running: length and delivered amount are unknown
                filled.append(record.model_copy(update={"duration": 0.0}))
                continue

            gap = min(starts[index] - record.timestamp, MAX_BASAL_DURATION)
            minutes = gap.total_seconds() / 60
            insulin = round((record.rate or 0.0) * minutes / 60, 3)
            filled.append(
                record.model_copy(update={"duration": minutes, "insulin": insulin})
            )
        return filled
