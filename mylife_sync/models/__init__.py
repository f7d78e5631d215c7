# Device and archive models
from mylife_sync.models.archive import DecryptedPayload, FetchWindow, RawArchiveBlob
from mylife_sync.models.events import (
    DeviceEvent,
    InfoKeys,
    InfoPayload,
    MyLifeEventType,
    parse_info,
)

__all__ = [
    "DecryptedPayload",
    "DeviceEvent",
    "FetchWindow",
    "InfoKeys",
    "InfoPayload",
    "MyLifeEventType",
    "RawArchiveBlob",
    "parse_info",
]
