"""Device event to treatment mapping.

Each handler is a (predicate, mapping function) pair. Handlers are evaluated
top-down in HANDLERS and the first whose predicate matches maps the event
exclusively. The terminal default handler matches every event, so every
event type yields at least a best-effort record.

Mapping functions are pure: they see the event and an immutable
TreatmentContext built once per batch, and keep no state between events.
"""

from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field
from datetime import UTC, timedelta, tzinfo
from types import MappingProxyType

from mylife_sync.core.errors import HandlerError
from mylife_sync.core.timestamps import device_time_to_utc
from mylife_sync.models.events import DeviceEvent, InfoKeys, InfoPayload, MyLifeEventType, parse_info
from mylife_sync.schemas.treatment import TreatmentEventType, TreatmentRecord

# Carbs entered within this distance of a bolus are folded into it
MEAL_CARB_WINDOW = timedelta(minutes=10)

_BOLUS_TYPES = frozenset(
    {
        MyLifeEventType.BOLUS_STANDARD,
        MyLifeEventType.BOLUS_EXTENDED,
        MyLifeEventType.BOLUS_COMBINED,
    }
)


class IdSuffixes:
    """Suffixes for records whose type differs from the event's own type."""

    PROFILE_SWITCH = "profile-switch"


@dataclass(frozen=True)
class MapperOptions:
    """Switches for optional mapping behaviour."""

    enable_manual_bg_sync: bool = True
    enable_meal_carb_consolidation: bool = True
    enable_temp_basal_consolidation: bool = False
    temp_basal_consolidation_window_minutes: int = 5


@dataclass(frozen=True)
class TreatmentContext:
    """Immutable lookup tables shared by all handlers for one batch."""

    device_serial: str
    device_tz: tzinfo = UTC
    options: MapperOptions = MapperOptions()
    # bolus identity -> grams of carbs folded into it
    meal_carbs: Mapping[str, float] = field(default_factory=lambda: MappingProxyType({}))
    # carb events already represented by a meal bolus
    consumed_carb_events: frozenset[str] = frozenset()
    # temp basal head identity -> merged duration in minutes
    temp_basal_durations: Mapping[str, float] = field(
        default_factory=lambda: MappingProxyType({})
    )
    # temp basal events merged into an earlier one
    temp_basal_continuations: frozenset[str] = frozenset()

    @classmethod
    def create(
        cls,
        events: Iterable[DeviceEvent],
        device_serial: str,
        device_tz: tzinfo = UTC,
        options: MapperOptions | None = None,
    ) -> "TreatmentContext":
        """Build the context from the events still to be mapped.

        Pass only events that have not been seen: carbs fold into a bolus and
        temp basals merge only when both sides are emitted in this batch.
        """
        options = options or MapperOptions()
        live = [ev for ev in events if not ev.deleted]

        meal_carbs: dict[str, float] = {}
        consumed: set[str] = set()
        if options.enable_meal_carb_consolidation:
            meal_carbs, consumed = _consolidate_meal_carbs(live, device_serial)

        durations: dict[str, float] = {}
        continuations: set[str] = set()
        if options.enable_temp_basal_consolidation:
            durations, continuations = _consolidate_temp_basals(
                live,
                device_serial,
                timedelta(minutes=options.temp_basal_consolidation_window_minutes),
            )

        return cls(
            device_serial=device_serial,
            device_tz=device_tz,
            options=options,
            meal_carbs=MappingProxyType(meal_carbs),
            consumed_carb_events=frozenset(consumed),
            temp_basal_durations=MappingProxyType(durations),
            temp_basal_continuations=frozenset(continuations),
        )


def _consolidate_meal_carbs(
    events: list[DeviceEvent], device_serial: str
) -> tuple[dict[str, float], set[str]]:
    boluses = [ev for ev in events if ev.event_type_id in _BOLUS_TYPES]
    meal_carbs: dict[str, float] = {}
    consumed: set[str] = set()
    if not boluses:
        return meal_carbs, consumed

    for ev in events:
        if ev.event_type_id != MyLifeEventType.CARB_CORRECTION:
            continue
        info = parse_info(ev.raw_information)
        carbs = info.get_float(InfoKeys.PARAMETER0) if info else None
        if carbs is None or carbs <= 0:
            continue

        candidates = [
            bolus
            for bolus in boluses
            if abs(bolus.device_timestamp - ev.device_timestamp) <= MEAL_CARB_WINDOW
        ]
        if not candidates:
            continue
        # Nearest bolus wins; the earlier one on a tie
        nearest = min(
            candidates,
            key=lambda b: (abs(b.device_timestamp - ev.device_timestamp), b.device_timestamp),
        )
        bolus_id = nearest.identity(device_serial)
        meal_carbs[bolus_id] = meal_carbs.get(bolus_id, 0.0) + carbs
        consumed.add(ev.identity(device_serial))
    return meal_carbs, consumed


def _consolidate_temp_basals(
    events: list[DeviceEvent], device_serial: str, window: timedelta
) -> tuple[dict[str, float], set[str]]:
    temp_basals = []
    for ev in events:
        if ev.event_type_id != MyLifeEventType.TEMP_BASAL:
            continue
        info = parse_info(ev.raw_information)
        if info is None:
            continue
        percent = info.get_float(InfoKeys.PARAMETER0)
        duration = info.get_float(InfoKeys.PARAMETER1)
        if percent is None or duration is None or duration <= 0:
            continue
        temp_basals.append((ev, percent, duration))
    temp_basals.sort(key=lambda item: item[0].device_timestamp)

    durations: dict[str, float] = {}
    continuations: set[str] = set()
    head = None
    head_end = None
    for ev, percent, duration in temp_basals:
        start = ev.device_timestamp
        end = start + timedelta(minutes=duration)
        if (
            head is not None
            and percent == head[1]
            and timedelta(0) <= start - head_end <= window
        ):
            continuations.add(ev.identity(device_serial))
            head_end = max(head_end, end)
            head_start = head[0].device_timestamp
            durations[head[0].identity(device_serial)] = (
                head_end - head_start
            ).total_seconds() / 60
            continue
        head = (ev, percent)
        head_end = end
    return durations, continuations


# ---------------------------------------------------------------------------
# Record factory
# ---------------------------------------------------------------------------


def create_record(
    ev: DeviceEvent,
    context: TreatmentContext,
    event_type: TreatmentEventType,
    suffix: str | None = None,
    **fields,
) -> TreatmentRecord:
    """Create a record whose id is derived from the event identity."""
    record_id = f"mylife-{ev.identity(context.device_serial)}"
    if suffix:
        record_id = f"{record_id}-{suffix}"
    return TreatmentRecord(
        id=record_id,
        event_type=event_type,
        timestamp=device_time_to_utc(ev.device_timestamp, context.device_tz),
        device=f"mylife-{context.device_serial}",
        **fields,
    )


def _require_info(ev: DeviceEvent) -> InfoPayload:
    info = parse_info(ev.raw_information)
    if info is None:
        raise HandlerError(
            f"Event type {ev.event_type_id} has no readable InformationFromDevice"
        )
    return info


def _require_float(info: InfoPayload, ev: DeviceEvent, name: str) -> float:
    value = info.get_float(name)
    if value is None:
        raise HandlerError(f"Event type {ev.event_type_id} is missing numeric {name}")
    return value


def _non_blank(value: str | None) -> str | None:
    if value is None or not value.strip():
        return None
    return value


# ---------------------------------------------------------------------------
# Mapping functions
# ---------------------------------------------------------------------------


def map_manual_bg(ev: DeviceEvent, context: TreatmentContext) -> list[TreatmentRecord]:
    """Fingerstick reading: Parameter0 = value, Parameter1 = unit."""
    if not context.options.enable_manual_bg_sync:
        return []
    info = _require_info(ev)
    glucose = _require_float(info, ev, InfoKeys.PARAMETER0)
    unit = (info.get_str(InfoKeys.PARAMETER1) or "").lower()
    units = "mmol" if unit.startswith("mmol") else "mg/dl"
    return [
        create_record(
            ev,
            context,
            TreatmentEventType.BG_CHECK,
            glucose=glucose,
            glucose_type="Finger",
            units=units,
        )
    ]


def map_total_daily_dose(
    ev: DeviceEvent, context: TreatmentContext
) -> list[TreatmentRecord]:
    """Parameter0 = total units, Parameter1 = bolus part, Parameter2 = basal part."""
    info = _require_info(ev)
    total = _require_float(info, ev, InfoKeys.PARAMETER0)
    bolus = info.get_float(InfoKeys.PARAMETER1)
    basal = info.get_float(InfoKeys.PARAMETER2)
    notes = f"Total daily dose {total:g} U"
    if bolus is not None and basal is not None:
        notes += f" (bolus {bolus:g} U, basal {basal:g} U)"
    return [
        create_record(
            ev, context, TreatmentEventType.TOTAL_DAILY_DOSE, insulin=total, notes=notes
        )
    ]


def map_temp_basal(ev: DeviceEvent, context: TreatmentContext) -> list[TreatmentRecord]:
    """Parameter0 = rate in percent of profile, Parameter1 = duration in minutes.

    ``percent`` on the record is the change relative to the profile rate
    (pump 80 % becomes -20), as the treatments API expects.
    """
    identity = ev.identity(context.device_serial)
    if identity in context.temp_basal_continuations:
        return []
    info = _require_info(ev)
    percent = _require_float(info, ev, InfoKeys.PARAMETER0)
    duration = _require_float(info, ev, InfoKeys.PARAMETER1)
    duration = context.temp_basal_durations.get(identity, duration)
    return [
        create_record(
            ev,
            context,
            TreatmentEventType.TEMP_BASAL,
            percent=percent - 100,
            duration=duration,
        )
    ]


def map_bolus(ev: DeviceEvent, context: TreatmentContext) -> list[TreatmentRecord]:
    """Standard, extended and combined boluses.

    Standard: Parameter0 = units.
    Extended: Parameter0 = units, Parameter1 = duration in minutes.
    Combined: Parameter0 = immediate units, Parameter1 = extended units,
    Parameter2 = duration in minutes.
    """
    info = _require_info(ev)
    carbs = context.meal_carbs.get(ev.identity(context.device_serial))

    if ev.event_type_id == MyLifeEventType.BOLUS_COMBINED:
        immediate = _require_float(info, ev, InfoKeys.PARAMETER0)
        extended = _require_float(info, ev, InfoKeys.PARAMETER1)
        return [
            create_record(
                ev,
                context,
                TreatmentEventType.COMBO_BOLUS,
                insulin=immediate + extended,
                duration=info.get_float(InfoKeys.PARAMETER2),
                carbs=carbs,
                notes=f"Immediate {immediate:g} U, extended {extended:g} U",
            )
        ]

    insulin = _require_float(info, ev, InfoKeys.PARAMETER0)
    if ev.event_type_id == MyLifeEventType.BOLUS_EXTENDED:
        return [
            create_record(
                ev,
                context,
                TreatmentEventType.COMBO_BOLUS,
                insulin=insulin,
                duration=info.get_float(InfoKeys.PARAMETER1),
                carbs=carbs,
                notes=f"Extended {insulin:g} U",
            )
        ]

    event_type = (
        TreatmentEventType.MEAL_BOLUS if carbs else TreatmentEventType.CORRECTION_BOLUS
    )
    return [create_record(ev, context, event_type, insulin=insulin, carbs=carbs)]


def map_alert(ev: DeviceEvent, context: TreatmentContext) -> list[TreatmentRecord]:
    info = parse_info(ev.raw_information)
    key = _non_blank(info.key) if info else None
    return [
        create_record(
            ev,
            context,
            TreatmentEventType.ANNOUNCEMENT,
            notes=key or ev.raw_information or "Pump alert",
        )
    ]


def map_carb_correction(
    ev: DeviceEvent, context: TreatmentContext
) -> list[TreatmentRecord]:
    """Parameter0 = grams. Carbs folded into a meal bolus produce nothing."""
    if ev.identity(context.device_serial) in context.consumed_carb_events:
        return []
    info = _require_info(ev)
    carbs = _require_float(info, ev, InfoKeys.PARAMETER0)
    if carbs <= 0:
        return []
    return [create_record(ev, context, TreatmentEventType.CARB_CORRECTION, carbs=carbs)]


def map_basal_rate(ev: DeviceEvent, context: TreatmentContext) -> list[TreatmentRecord]:
    """Parameter0 = programmed rate in U/h; duration is filled in per batch."""
    info = _require_info(ev)
    rate = _require_float(info, ev, InfoKeys.PARAMETER0)
    return [
        create_record(ev, context, TreatmentEventType.BASAL, rate=rate, absolute=rate)
    ]


def map_profile_switch(
    ev: DeviceEvent, context: TreatmentContext
) -> list[TreatmentRecord]:
    info = parse_info(ev.raw_information)
    profile = _non_blank(info.get_str(InfoKeys.PARAMETER0)) if info else None
    return [
        create_record(
            ev,
            context,
            TreatmentEventType.PROFILE_SWITCH,
            profile=profile,
            notes=ev.raw_information or None,
        )
    ]


def map_indication(ev: DeviceEvent, context: TreatmentContext) -> list[TreatmentRecord]:
    """Indications route on the embedded ``Key``.

    IndicationBasalProfileXChanged carries the new profile in Parameter0,
    IndicationBasalProfileChanged in Parameter1; both become a single
    profile switch. Anything else is a generic indication, re-typed as a
    battery change when the key reports a removed battery.
    """
    info = parse_info(ev.raw_information)
    key = _non_blank(info.key) if info else None

    if key is not None:
        profile_field = None
        if info.key_is(InfoKeys.INDICATION_BASAL_PROFILE_X_CHANGED):
            profile_field = InfoKeys.PARAMETER0
        elif info.key_is(InfoKeys.INDICATION_BASAL_PROFILE_CHANGED):
            profile_field = InfoKeys.PARAMETER1

        if profile_field is not None:
            return [
                create_record(
                    ev,
                    context,
                    TreatmentEventType.PROFILE_SWITCH,
                    suffix=IdSuffixes.PROFILE_SWITCH,
                    profile=_non_blank(info.get_str(profile_field)),
                    notes=ev.raw_information,
                )
            ]

    event_type = TreatmentEventType.INDICATION
    if info is not None and info.key_is(InfoKeys.INDICATION_BATTERY_REMOVED):
        event_type = TreatmentEventType.PUMP_BATTERY_CHANGE
    return [create_record(ev, context, event_type, notes=ev.raw_information)]


def map_priming(ev: DeviceEvent, context: TreatmentContext) -> list[TreatmentRecord]:
    """Parameter0 = primed units; a primed cannula is a site change."""
    info = parse_info(ev.raw_information)
    amount = info.get_float(InfoKeys.PARAMETER0) if info else None
    if info is not None and info.key_is(InfoKeys.PRIMING_CANNULA):
        notes = "Cannula primed" + (f" ({amount:g} U)" if amount is not None else "")
        return [create_record(ev, context, TreatmentEventType.SITE_CHANGE, notes=notes)]
    return [
        create_record(
            ev,
            context,
            TreatmentEventType.PRIME,
            insulin=amount,
            notes=ev.raw_information or None,
        )
    ]


def map_basal_amount(
    ev: DeviceEvent, context: TreatmentContext
) -> list[TreatmentRecord]:
    """Parameter0 = basal insulin delivered since the previous report."""
    info = _require_info(ev)
    amount = _require_float(info, ev, InfoKeys.PARAMETER0)
    return [
        create_record(
            ev,
            context,
            TreatmentEventType.NOTE,
            insulin=amount,
            notes=f"Basal amount {amount:g} U",
        )
    ]


SIMPLE_EVENT_TYPES: Mapping[int, TreatmentEventType] = MappingProxyType(
    {
        MyLifeEventType.POD_ACTIVATED: TreatmentEventType.POD_ACTIVATED,
        MyLifeEventType.POD_DEACTIVATED: TreatmentEventType.POD_DEACTIVATED,
        MyLifeEventType.PUMP_SUSPEND: TreatmentEventType.PUMP_SUSPEND,
        MyLifeEventType.PUMP_RESUME: TreatmentEventType.PUMP_RESUME,
        MyLifeEventType.DATE_CHANGED: TreatmentEventType.DATE_CHANGED,
        MyLifeEventType.TIME_CHANGED: TreatmentEventType.TIME_CHANGED,
        MyLifeEventType.SITE_CHANGE: TreatmentEventType.SITE_CHANGE,
        MyLifeEventType.REWIND: TreatmentEventType.REWIND,
        MyLifeEventType.BOLUS_MAX_CHANGED: TreatmentEventType.BOLUS_MAX_CHANGED,
        MyLifeEventType.BASAL_MAX_CHANGED: TreatmentEventType.BASAL_MAX_CHANGED,
    }
)


def map_simple(ev: DeviceEvent, context: TreatmentContext) -> list[TreatmentRecord]:
    return [
        create_record(
            ev,
            context,
            SIMPLE_EVENT_TYPES[ev.event_type_id],
            notes=ev.raw_information or None,
        )
    ]


def map_default(ev: DeviceEvent, context: TreatmentContext) -> list[TreatmentRecord]:
    return [
        create_record(
            ev,
            context,
            TreatmentEventType.NOTE,
            notes=ev.raw_information or f"mylife event {ev.event_type_id}",
        )
    ]


# ---------------------------------------------------------------------------
# Dispatch table
# ---------------------------------------------------------------------------

Predicate = Callable[[DeviceEvent], bool]
MappingFunction = Callable[[DeviceEvent, TreatmentContext], list[TreatmentRecord]]


@dataclass(frozen=True)
class TreatmentHandler:
    """A named (predicate, mapping function) pair."""

    name: str
    can_handle: Predicate
    handle: MappingFunction


def _for_types(*event_types: int) -> Predicate:
    accepted = frozenset(int(t) for t in event_types)
    return lambda ev: ev.event_type_id in accepted


DEFAULT_HANDLER = TreatmentHandler("default", lambda ev: True, map_default)

HANDLERS: tuple[TreatmentHandler, ...] = (
    TreatmentHandler("manual_bg", _for_types(MyLifeEventType.MANUAL_BG), map_manual_bg),
    TreatmentHandler(
        "total_daily_dose",
        _for_types(MyLifeEventType.TOTAL_DAILY_DOSE),
        map_total_daily_dose,
    ),
    TreatmentHandler("temp_basal", _for_types(MyLifeEventType.TEMP_BASAL), map_temp_basal),
    TreatmentHandler("bolus", _for_types(*_BOLUS_TYPES), map_bolus),
    TreatmentHandler("alert", _for_types(MyLifeEventType.ALERT), map_alert),
    TreatmentHandler(
        "carb_correction",
        _for_types(MyLifeEventType.CARB_CORRECTION),
        map_carb_correction,
    ),
    TreatmentHandler("basal_rate", _for_types(MyLifeEventType.BASAL_RATE), map_basal_rate),
    TreatmentHandler(
        "profile_switch",
        _for_types(MyLifeEventType.PROFILE_SWITCH),
        map_profile_switch,
    ),
    TreatmentHandler("indication", _for_types(MyLifeEventType.INDICATION), map_indication),
    TreatmentHandler("priming", _for_types(MyLifeEventType.PRIMING), map_priming),
    TreatmentHandler(
        "basal_amount", _for_types(MyLifeEventType.BASAL_AMOUNT), map_basal_amount
    ),
    TreatmentHandler("simple", _for_types(*SIMPLE_EVENT_TYPES), map_simple),
    DEFAULT_HANDLER,
)


def select_handler(
    ev: DeviceEvent, handlers: tuple[TreatmentHandler, ...] = HANDLERS
) -> TreatmentHandler:
    """Return the first handler whose predicate matches (first match wins)."""
    for handler in handlers:
        if handler.can_handle(ev):
            return handler
    return DEFAULT_HANDLER
