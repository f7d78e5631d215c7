"""Normalized treatment records.

Pydantic schema of the storage-ready records produced from device events,
serialized with the field names of the Nightscout treatments API.
"""

import enum
from datetime import UTC, datetime

from pydantic import BaseModel, ConfigDict, Field, field_serializer

TREATMENT_SOURCE = "mylife"


class TreatmentEventType(str, enum.Enum):
    """Treatment categories emitted by the connector."""

    INDICATION = "Indication"
    PROFILE_SWITCH = "Profile Switch"
    PUMP_BATTERY_CHANGE = "Pump Battery Change"
    CORRECTION_BOLUS = "Correction Bolus"
    MEAL_BOLUS = "Meal Bolus"
    COMBO_BOLUS = "Combo Bolus"
    TEMP_BASAL = "Temp Basal"
    BASAL = "Basal"
    BG_CHECK = "BG Check"
    CARB_CORRECTION = "Carb Correction"
    ANNOUNCEMENT = "Announcement"
    TOTAL_DAILY_DOSE = "Total Daily Dose"
    SITE_CHANGE = "Site Change"
    POD_ACTIVATED = "Pod Activated"
    POD_DEACTIVATED = "Pod Deactivated"
    PUMP_SUSPEND = "Pump Suspend"
    PUMP_RESUME = "Pump Resume"
    DATE_CHANGED = "Date Changed"
    TIME_CHANGED = "Time Changed"
    REWIND = "Rewind"
    BOLUS_MAX_CHANGED = "Bolus Max Changed"
    BASAL_MAX_CHANGED = "Basal Max Changed"
    PRIME = "Prime"
    NOTE = "Note"


class TreatmentRecord(BaseModel):
    """One normalized treatment derived from a device event."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    id: str
    event_type: TreatmentEventType = Field(alias="eventType")
    timestamp: datetime = Field(alias="created_at")
    notes: str | None = None
    profile: str | None = None
    insulin: float | None = None
    carbs: float | None = None
    glucose: float | None = None
    glucose_type: str | None = Field(default=None, alias="glucoseType")
    units: str | None = None
    rate: float | None = None
    absolute: float | None = None
    percent: float | None = None
    duration: float | None = None  # minutes
    entered_by: str = Field(default=TREATMENT_SOURCE, alias="enteredBy")
    device: str | None = None

    @field_serializer("timestamp")
    def _serialize_timestamp(self, value: datetime) -> str:
        return value.astimezone(UTC).strftime("%Y-%m-%dT%H:%M:%S.000Z")

    @property
    def mills(self) -> int:
        return int(self.timestamp.timestamp() * 1000)

    def to_upload(self) -> dict:
        """Serialize for the treatments API (aliases, no empty fields)."""
        data = self.model_dump(mode="json", by_alias=True, exclude_none=True)
        data["mills"] = self.mills
        return data
