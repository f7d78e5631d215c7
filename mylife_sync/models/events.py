"""mylife device event model.

Events are parsed from the decrypted archive and never mutate afterwards.
Each carries an opaque ``InformationFromDevice`` text, usually a JSON
object with a ``Key`` and positional ``Parameter0..N`` fields whose
meaning depends on the event type.
"""

import enum
import hashlib
import json
import math
from dataclasses import dataclass
from datetime import datetime
from typing import Any


class MyLifeEventType(enum.IntEnum):
    """Event type identifiers used in the mylife archive."""

    BOLUS_STANDARD = 1
    BOLUS_EXTENDED = 2
    BOLUS_COMBINED = 3
    BASAL_RATE = 4
    TEMP_BASAL = 5
    CARB_CORRECTION = 6
    MANUAL_BG = 7
    TOTAL_DAILY_DOSE = 8
    BASAL_AMOUNT = 9
    PROFILE_SWITCH = 10
    ALERT = 11
    INDICATION = 12
    PRIMING = 13
    POD_ACTIVATED = 20
    POD_DEACTIVATED = 21
    PUMP_SUSPEND = 22
    PUMP_RESUME = 23
    DATE_CHANGED = 24
    TIME_CHANGED = 25
    SITE_CHANGE = 26
    REWIND = 27
    BOLUS_MAX_CHANGED = 28
    BASAL_MAX_CHANGED = 29


class InfoKeys:
    """Field names and ``Key`` values found in InformationFromDevice."""

    KEY = "Key"
    PARAMETER0 = "Parameter0"
    PARAMETER1 = "Parameter1"
    PARAMETER2 = "Parameter2"

    INDICATION_BASAL_PROFILE_X_CHANGED = "IndicationBasalProfileXChanged"
    INDICATION_BASAL_PROFILE_CHANGED = "IndicationBasalProfileChanged"
    INDICATION_BATTERY_REMOVED = "IndicationBatteryRemoved"
    PRIMING_CANNULA = "PrimingCannula"


@dataclass(frozen=True)
class DeviceEvent:
    """One timestamped occurrence recorded by the pump."""

    event_type_id: int
    device_timestamp: datetime  # Pump-local wall time, naive
    raw_information: str = ""
    deleted: bool = False
    record_id: str | None = None

    def identity(self, device_serial: str) -> str:
        """Return the dedup identity of this event for the given pump.

        Two events with the same identity are the same occurrence even when
        they arrive in different (overlapping) archives.
        """
        content_hash = hashlib.sha256(self.raw_information.encode("utf-8")).hexdigest()
        material = "|".join(
            [
                device_serial,
                str(self.event_type_id),
                self.device_timestamp.isoformat(),
                content_hash,
            ]
        )
        return hashlib.sha256(material.encode("utf-8")).hexdigest()


class InfoPayload:
    """Schema-less lookup over a parsed InformationFromDevice object.

    Every accessor checks the kind of the stored value and returns None when
    the field is absent or of an unexpected kind; nothing here raises.
    """

    def __init__(self, fields: dict[str, Any]):
        self._fields = fields

    def get_str(self, name: str) -> str | None:
        value = self._fields.get(name)
        if isinstance(value, str):
            return value
        return None

    def get_float(self, name: str) -> float | None:
        """Return a finite numeric field; numeric strings are accepted, booleans are not."""
        value = self._fields.get(name)
        if isinstance(value, bool):
            return None
        if isinstance(value, (int, float)):
            try:
                number = float(value)
            except OverflowError:
                return None
        elif isinstance(value, str):
            try:
                # Pumps configured with a comma locale write "1,5"
                number = float(value.strip().replace(",", "."))
            except ValueError:
                return None
        else:
            return None
        if not math.isfinite(number):
            return None
        return number

    def get_int(self, name: str) -> int | None:
        value = self.get_float(name)
        if value is None or value != int(value):
            return None
        return int(value)

    @property
    def key(self) -> str | None:
        return self.get_str(InfoKeys.KEY)

    def key_is(self, expected: str) -> bool:
        """Case-insensitive comparison of the ``Key`` field."""
        key = self.key
        return key is not None and key.strip().lower() == expected.lower()


def parse_info(raw_information: str) -> InfoPayload | None:
    """Parse InformationFromDevice text into an InfoPayload.

    Returns None when the text is empty, not JSON, or not a JSON object.
    """
    if not raw_information or not raw_information.strip():
        return None
    try:
        parsed = json.loads(raw_information)
    except (ValueError, TypeError):
        return None
    if not isinstance(parsed, dict):
        return None
    return InfoPayload(parsed)
