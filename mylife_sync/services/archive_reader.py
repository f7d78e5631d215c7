"""Event archive reader.

Turns a decrypted archive container into device events. The container is
read incrementally and every record is validated on its own, so a corrupt
record is logged and skipped without losing the rest of the batch.
"""

import io
import re
import xml.etree.ElementTree as ET
from collections.abc import Iterator
from datetime import UTC, tzinfo

from mylife_sync.core.errors import ParseError
from mylife_sync.core.timestamps import device_time_to_utc, parse_device_timestamp
from mylife_sync.logging_config import get_logger
from mylife_sync.models.archive import DecryptedPayload
from mylife_sync.models.events import DeviceEvent

logger = get_logger(__name__)

_EVENT_TAG = "Event"
_INFO_TAG = "InformationFromDevice"

# One self-closing or complete <Event> element in the raw container
_EVENT_FRAGMENT = re.compile(rb"<Event\b[^>]*?/>|<Event\b[^>]*>.*?</Event>", re.DOTALL)


def _local_name(tag: str) -> str:
    return tag.rsplit("}", 1)[-1]


def _parse_bool(value: str | None) -> bool:
    return (value or "").strip().lower() in ("true", "1", "yes")


class ArchiveReader:
    """Parse decrypted archives into ordered DeviceEvent sequences.

    ``skipped_records`` and ``truncated`` describe the most recent
    ``parse()`` run and are only final once its iterator is exhausted.
    """

    def __init__(self, device_tz: tzinfo = UTC):
        self._device_tz = device_tz
        self.skipped_records = 0
        self.truncated = False

    def parse(self, payload: DecryptedPayload) -> Iterator[DeviceEvent]:
        """Yield device events in archive order.

        The returned iterator is lazy and can be consumed once.
        """
        self.skipped_records = 0
        self.truncated = False
        return self._iter_events(payload)

    def _iter_events(self, payload: DecryptedPayload) -> Iterator[DeviceEvent]:
        index = 0
        try:
            for _, elem in ET.iterparse(io.BytesIO(payload.content), events=("end",)):
                if _local_name(elem.tag) != _EVENT_TAG:
                    continue
                index += 1
                try:
                    event = self._parse_record(elem)
                except ParseError as e:
                    self._skip(index, elem.get("Id"), e)
                    continue
                finally:
                    elem.clear()
                yield event
        except ET.ParseError as e:
            self.truncated = True
            logger.error(
                "Archive container is malformed, recovering remaining records",
                stage="parsing",
                records_read=index,
                error=str(e),
            )
            yield from self._recover_events(payload, index)

    def _recover_events(
        self, payload: DecryptedPayload, records_read: int
    ) -> Iterator[DeviceEvent]:
        """Parse the records after a container break one fragment at a time.

        The first ``records_read`` fragments were already handled by the
        streaming pass; the fragment that broke it is skipped as malformed.
        """
        fragments = _EVENT_FRAGMENT.finditer(payload.content)
        for index, match in enumerate(fragments, start=1):
            if index <= records_read:
                continue
            try:
                elem = ET.fromstring(match.group(0))
            except ET.ParseError as e:
                self._skip(index, None, ParseError(f"Unreadable record: {e}"))
                continue
            try:
                yield self._parse_record(elem)
            except ParseError as e:
                self._skip(index, elem.get("Id"), e)

    def _skip(self, index: int, record_id: str | None, error: ParseError) -> None:
        self.skipped_records += 1
        logger.warning(
            "Skipping malformed archive record",
            stage=error.stage,
            record_index=index,
            record_id=record_id,
            error=str(error),
        )

    def _parse_record(self, elem: ET.Element) -> DeviceEvent:
        raw_type = elem.get("EventTypeId")
        try:
            event_type_id = int((raw_type or "").strip())
        except ValueError as e:
            raise ParseError(f"Invalid EventTypeId: {raw_type!r}") from e

        raw_time = elem.get("DeviceDateTime")
        try:
            device_timestamp = parse_device_timestamp(raw_time or "", self._device_tz)
            device_time_to_utc(device_timestamp, self._device_tz)
        except ValueError as e:
            raise ParseError(f"Invalid DeviceDateTime: {raw_time!r}") from e

        information = elem.get(_INFO_TAG)
        for child in elem:
            if _local_name(child.tag) == _INFO_TAG:
                information = child.text
                break

        return DeviceEvent(
            event_type_id=event_type_id,
            device_timestamp=device_timestamp,
            raw_information=(information or "").strip(),
            deleted=_parse_bool(elem.get("Deleted")),
            record_id=elem.get("Id"),
        )
