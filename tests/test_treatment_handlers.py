"""Tests for device event to treatment mapping."""

import json
from datetime import datetime
from zoneinfo import ZoneInfo

import pytest

from archive_builder import DEVICE_SERIAL
from mylife_sync.core.errors import HandlerError
from mylife_sync.models.events import DeviceEvent, MyLifeEventType, parse_info
from mylife_sync.schemas.treatment import TreatmentEventType
from mylife_sync.services.treatment_handlers import (
    DEFAULT_HANDLER,
    HANDLERS,
    SIMPLE_EVENT_TYPES,
    MapperOptions,
    TreatmentContext,
    select_handler,
)

T0 = datetime(2024, 5, 1, 10, 0)


def make_event(event_type, info=None, at: datetime = T0, **kwargs) -> DeviceEvent:
    raw = info if isinstance(info, str) or info is None else json.dumps(info)
    return DeviceEvent(
        event_type_id=int(event_type),
        device_timestamp=at,
        raw_information=raw or "",
        **kwargs,
    )


def map_one(event: DeviceEvent, context: TreatmentContext | None = None):
    context = context or TreatmentContext.create([event], DEVICE_SERIAL)
    return select_handler(event).handle(event, context)


class TestDispatchTable:
    """Tests for handler ordering and selection."""

    def test_default_handler_is_last(self):
        assert HANDLERS[-1] is DEFAULT_HANDLER

    def test_context_defaults_are_empty(self):
        """A bare context maps events without any batch consolidation."""
        context = TreatmentContext(device_serial=DEVICE_SERIAL)
        other = TreatmentContext(device_serial=DEVICE_SERIAL)

        assert dict(context.meal_carbs) == {}
        assert dict(context.temp_basal_durations) == {}
        assert context.meal_carbs is not other.meal_carbs
        (record,) = map_one(
            make_event(MyLifeEventType.BOLUS_STANDARD, {"Parameter0": 1}), context
        )
        assert record.event_type == TreatmentEventType.CORRECTION_BOLUS

    def test_handler_order(self):
        """Specific handlers are tried in a fixed order."""
        assert [h.name for h in HANDLERS] == [
            "manual_bg",
            "total_daily_dose",
            "temp_basal",
            "bolus",
            "alert",
            "carb_correction",
            "basal_rate",
            "profile_switch",
            "indication",
            "priming",
            "basal_amount",
            "simple",
            "default",
        ]

    @pytest.mark.parametrize("event_type_id", [0, 14, 19, 30, 99, 4711])
    def test_unknown_types_fall_to_default(self, event_type_id):
        """Event types without a specific handler become notes."""
        event = make_event(event_type_id, {"Key": "Something"})
        assert select_handler(event) is DEFAULT_HANDLER

        (record,) = map_one(event)
        assert record.event_type == TreatmentEventType.NOTE
        assert record.notes == event.raw_information

    def test_default_without_payload(self):
        (record,) = map_one(make_event(99))
        assert record.notes == "mylife event 99"

    def test_every_known_type_has_a_specific_handler(self):
        for event_type in MyLifeEventType:
            assert select_handler(make_event(event_type)) is not DEFAULT_HANDLER

    def test_first_match_wins(self):
        """Only the first matching handler runs."""
        event = make_event(MyLifeEventType.INDICATION, {"Key": "IndicationBatteryRemoved"})
        records = map_one(event)
        assert len(records) == 1


class TestIndicationHandler:
    """Tests for indication sub-routing."""

    def test_profile_x_changed_emits_profile_switch(self):
        """IndicationBasalProfileXChanged emits only a profile switch."""
        event = make_event(
            MyLifeEventType.INDICATION,
            {"Key": "IndicationBasalProfileXChanged", "Parameter0": "Profile A"},
        )
        records = map_one(event)

        assert len(records) == 1
        (record,) = records
        assert record.event_type == TreatmentEventType.PROFILE_SWITCH
        assert record.profile == "Profile A"
        assert record.notes == event.raw_information
        assert record.id.endswith("-profile-switch")

    def test_profile_key_is_case_insensitive(self):
        event = make_event(
            MyLifeEventType.INDICATION,
            {"Key": "indicationbasalprofilexchanged", "Parameter0": "Night"},
        )
        (record,) = map_one(event)
        assert record.event_type == TreatmentEventType.PROFILE_SWITCH
        assert record.profile == "Night"

    def test_profile_changed_reads_parameter1(self):
        event = make_event(
            MyLifeEventType.INDICATION,
            {
                "Key": "IndicationBasalProfileChanged",
                "Parameter0": "1",
                "Parameter1": "Weekend",
            },
        )
        (record,) = map_one(event)
        assert record.event_type == TreatmentEventType.PROFILE_SWITCH
        assert record.profile == "Weekend"

    @pytest.mark.parametrize("profile", ["", "   ", 3, None])
    def test_blank_or_non_string_profile(self, profile):
        """A blank or non-string profile still switches, without a name."""
        info = {"Key": "IndicationBasalProfileXChanged"}
        if profile is not None:
            info["Parameter0"] = profile
        (record,) = map_one(make_event(MyLifeEventType.INDICATION, info))
        assert record.event_type == TreatmentEventType.PROFILE_SWITCH
        assert record.profile is None

    def test_generic_indication_notes_are_raw_payload(self):
        """Unrecognized keys emit one indication with the raw payload as notes."""
        raw = '{"Key": "IndicationReservoirLow", "Parameter0": 20}'
        records = map_one(make_event(MyLifeEventType.INDICATION, raw))

        assert len(records) == 1
        assert records[0].event_type == TreatmentEventType.INDICATION
        assert records[0].notes == raw

    def test_battery_removed_is_battery_change(self):
        raw = '{"Key": "IndicationBatteryRemoved"}'
        (record,) = map_one(make_event(MyLifeEventType.INDICATION, raw))
        assert record.event_type == TreatmentEventType.PUMP_BATTERY_CHANGE
        assert record.notes == raw

    @pytest.mark.parametrize("raw", ["not json", "[1, 2]", '{"Key": 5}', "{}"])
    def test_missing_or_invalid_key_is_generic(self, raw):
        """Payloads without a usable key fall back to a generic indication."""
        (record,) = map_one(make_event(MyLifeEventType.INDICATION, raw))
        assert record.event_type == TreatmentEventType.INDICATION
        assert record.notes == raw


class TestBolusHandler:
    """Tests for bolus mapping and meal consolidation."""

    def test_standard_bolus_is_correction(self):
        (record,) = map_one(make_event(MyLifeEventType.BOLUS_STANDARD, {"Parameter0": 2.5}))
        assert record.event_type == TreatmentEventType.CORRECTION_BOLUS
        assert record.insulin == 2.5
        assert record.carbs is None

    def test_comma_decimal_amount(self):
        (record,) = map_one(make_event(MyLifeEventType.BOLUS_STANDARD, {"Parameter0": "1,5"}))
        assert record.insulin == 1.5

    def test_missing_amount_raises(self):
        with pytest.raises(HandlerError):
            map_one(make_event(MyLifeEventType.BOLUS_STANDARD, {"Key": "Bolus"}))

    def test_boolean_amount_is_rejected(self):
        with pytest.raises(HandlerError):
            map_one(make_event(MyLifeEventType.BOLUS_STANDARD, {"Parameter0": True}))

    def test_combined_bolus(self):
        event = make_event(
            MyLifeEventType.BOLUS_COMBINED,
            {"Parameter0": 2, "Parameter1": 1.5, "Parameter2": 90},
        )
        (record,) = map_one(event)
        assert record.event_type == TreatmentEventType.COMBO_BOLUS
        assert record.insulin == 3.5
        assert record.duration == 90

    def test_extended_bolus(self):
        event = make_event(MyLifeEventType.BOLUS_EXTENDED, {"Parameter0": 3, "Parameter1": 120})
        (record,) = map_one(event)
        assert record.event_type == TreatmentEventType.COMBO_BOLUS
        assert record.duration == 120

    def test_carbs_near_bolus_become_meal_bolus(self):
        """Carbs within the window fold into the bolus and emit nothing alone."""
        bolus = make_event(MyLifeEventType.BOLUS_STANDARD, {"Parameter0": 4})
        carbs = make_event(
            MyLifeEventType.CARB_CORRECTION,
            {"Parameter0": 45},
            at=T0.replace(minute=5),
        )
        context = TreatmentContext.create([bolus, carbs], DEVICE_SERIAL)

        (record,) = map_one(bolus, context)
        assert record.event_type == TreatmentEventType.MEAL_BOLUS
        assert record.carbs == 45
        assert map_one(carbs, context) == []

    def test_distant_carbs_stay_separate(self):
        bolus = make_event(MyLifeEventType.BOLUS_STANDARD, {"Parameter0": 4})
        carbs = make_event(
            MyLifeEventType.CARB_CORRECTION, {"Parameter0": 20}, at=T0.replace(hour=12)
        )
        context = TreatmentContext.create([bolus, carbs], DEVICE_SERIAL)

        assert map_one(bolus, context)[0].event_type == TreatmentEventType.CORRECTION_BOLUS
        (record,) = map_one(carbs, context)
        assert record.event_type == TreatmentEventType.CARB_CORRECTION
        assert record.carbs == 20

    def test_consolidation_can_be_disabled(self):
        bolus = make_event(MyLifeEventType.BOLUS_STANDARD, {"Parameter0": 4})
        carbs = make_event(MyLifeEventType.CARB_CORRECTION, {"Parameter0": 45})
        context = TreatmentContext.create(
            [bolus, carbs],
            DEVICE_SERIAL,
            options=MapperOptions(enable_meal_carb_consolidation=False),
        )
        assert map_one(bolus, context)[0].event_type == TreatmentEventType.CORRECTION_BOLUS
        assert map_one(carbs, context)[0].carbs == 45


class TestTempBasalHandler:
    """Tests for temp basal mapping and consolidation."""

    def test_percent_is_relative_change(self):
        event = make_event(MyLifeEventType.TEMP_BASAL, {"Parameter0": 80, "Parameter1": 60})
        (record,) = map_one(event)
        assert record.event_type == TreatmentEventType.TEMP_BASAL
        assert record.percent == -20
        assert record.duration == 60

    def test_missing_duration_raises(self):
        with pytest.raises(HandlerError):
            map_one(make_event(MyLifeEventType.TEMP_BASAL, {"Parameter0": 80}))

    def test_continuations_are_merged(self):
        """Back-to-back temp basals with the same rate merge into one."""
        first = make_event(MyLifeEventType.TEMP_BASAL, {"Parameter0": 150, "Parameter1": 30})
        second = make_event(
            MyLifeEventType.TEMP_BASAL,
            {"Parameter0": 150, "Parameter1": 30},
            at=T0.replace(minute=32),
        )
        context = TreatmentContext.create(
            [first, second],
            DEVICE_SERIAL,
            options=MapperOptions(enable_temp_basal_consolidation=True),
        )

        (record,) = map_one(first, context)
        assert record.duration == 62
        assert map_one(second, context) == []

    def test_different_rates_are_not_merged(self):
        first = make_event(MyLifeEventType.TEMP_BASAL, {"Parameter0": 150, "Parameter1": 30})
        second = make_event(
            MyLifeEventType.TEMP_BASAL,
            {"Parameter0": 50, "Parameter1": 30},
            at=T0.replace(minute=30),
        )
        context = TreatmentContext.create(
            [first, second],
            DEVICE_SERIAL,
            options=MapperOptions(enable_temp_basal_consolidation=True),
        )
        assert map_one(first, context)[0].duration == 30
        assert map_one(second, context)[0].percent == -50


class TestOtherHandlers:
    """Tests for the remaining specific handlers."""

    def test_manual_bg_mmol(self):
        event = make_event(MyLifeEventType.MANUAL_BG, {"Parameter0": 6.2, "Parameter1": "mmol/L"})
        (record,) = map_one(event)
        assert record.event_type == TreatmentEventType.BG_CHECK
        assert record.glucose == 6.2
        assert record.units == "mmol"
        assert record.glucose_type == "Finger"

    def test_manual_bg_disabled(self):
        event = make_event(MyLifeEventType.MANUAL_BG, {"Parameter0": 120})
        context = TreatmentContext.create(
            [event], DEVICE_SERIAL, options=MapperOptions(enable_manual_bg_sync=False)
        )
        assert map_one(event, context) == []

    def test_total_daily_dose(self):
        event = make_event(
            MyLifeEventType.TOTAL_DAILY_DOSE,
            {"Parameter0": 42.5, "Parameter1": 20, "Parameter2": 22.5},
        )
        (record,) = map_one(event)
        assert record.event_type == TreatmentEventType.TOTAL_DAILY_DOSE
        assert record.insulin == 42.5
        assert "bolus 20 U" in record.notes

    def test_alert_uses_key(self):
        (record,) = map_one(make_event(MyLifeEventType.ALERT, {"Key": "AlertOcclusion"}))
        assert record.event_type == TreatmentEventType.ANNOUNCEMENT
        assert record.notes == "AlertOcclusion"

    def test_basal_rate(self):
        (record,) = map_one(make_event(MyLifeEventType.BASAL_RATE, {"Parameter0": 0.85}))
        assert record.event_type == TreatmentEventType.BASAL
        assert record.rate == 0.85
        assert record.duration is None

    def test_profile_switch_event(self):
        (record,) = map_one(make_event(MyLifeEventType.PROFILE_SWITCH, {"Parameter0": "Sport"}))
        assert record.event_type == TreatmentEventType.PROFILE_SWITCH
        assert record.profile == "Sport"
        assert not record.id.endswith("-profile-switch")

    def test_priming_cannula_is_site_change(self):
        event = make_event(MyLifeEventType.PRIMING, {"Key": "PrimingCannula", "Parameter0": 0.3})
        (record,) = map_one(event)
        assert record.event_type == TreatmentEventType.SITE_CHANGE
        assert "0.3 U" in record.notes

    def test_priming_tubing_is_prime(self):
        event = make_event(MyLifeEventType.PRIMING, {"Key": "PrimingTubing", "Parameter0": 8})
        (record,) = map_one(event)
        assert record.event_type == TreatmentEventType.PRIME
        assert record.insulin == 8

    def test_basal_amount(self):
        (record,) = map_one(make_event(MyLifeEventType.BASAL_AMOUNT, {"Parameter0": 0.4}))
        assert record.event_type == TreatmentEventType.NOTE
        assert record.insulin == 0.4

    @pytest.mark.parametrize("event_type,treatment_type", list(SIMPLE_EVENT_TYPES.items()))
    def test_simple_mapped_types(self, event_type, treatment_type):
        (record,) = map_one(make_event(event_type))
        assert record.event_type == treatment_type


class TestRecordIdentity:
    """Tests for deterministic record construction."""

    def test_processing_is_deterministic(self):
        """The same event always yields identical records."""
        event = make_event(MyLifeEventType.BOLUS_STANDARD, {"Parameter0": 2.5})
        assert map_one(event) == map_one(event)
        assert map_one(event)[0].id == f"mylife-{event.identity(DEVICE_SERIAL)}"

    def test_identity_depends_on_payload(self):
        a = make_event(MyLifeEventType.BOLUS_STANDARD, {"Parameter0": 2.5})
        b = make_event(MyLifeEventType.BOLUS_STANDARD, {"Parameter0": 3.0})
        assert a.identity(DEVICE_SERIAL) != b.identity(DEVICE_SERIAL)

    def test_identity_depends_on_pump(self):
        event = make_event(MyLifeEventType.BOLUS_STANDARD, {"Parameter0": 2.5})
        assert event.identity(DEVICE_SERIAL) != event.identity("YP-0000001")

    def test_timestamp_converted_to_utc(self):
        event = make_event(MyLifeEventType.BOLUS_STANDARD, {"Parameter0": 1})
        context = TreatmentContext.create(
            [event], DEVICE_SERIAL, device_tz=ZoneInfo("Europe/Berlin")
        )
        (record,) = map_one(event, context)
        assert record.to_upload()["created_at"] == "2024-05-01T08:00:00.000Z"

    def test_upload_uses_api_field_names(self):
        (record,) = map_one(make_event(MyLifeEventType.BOLUS_STANDARD, {"Parameter0": 1}))
        upload = record.to_upload()
        assert upload["eventType"] == "Correction Bolus"
        assert upload["enteredBy"] == "mylife"
        assert upload["mills"] == record.mills
        assert "carbs" not in upload


class TestInfoPayload:
    """Tests for schema-less payload lookup."""

    def test_kind_checks(self):
        info = parse_info('{"Key": "K", "Parameter0": "abc", "Parameter1": 2, "Parameter2": [1]}')
        assert info.get_str("Key") == "K"
        assert info.get_float("Parameter0") is None
        assert info.get_str("Parameter1") is None
        assert info.get_int("Parameter1") == 2
        assert info.get_float("Parameter2") is None
        assert info.get_str("Missing") is None

    @pytest.mark.parametrize(
        "raw",
        [
            '{"Parameter0": NaN}',
            '{"Parameter0": Infinity}',
            '{"Parameter0": "nan"}',
            '{"Parameter0": "-inf"}',
            '{"Parameter0": 1' + "0" * 400 + "}",
        ],
    )
    def test_non_finite_numbers_are_absent(self, raw):
        info = parse_info(raw)
        assert info.get_float("Parameter0") is None
        assert info.get_int("Parameter0") is None

    @pytest.mark.parametrize("raw", ["", "   ", "not json", "[1]", "3"])
    def test_unreadable_payloads(self, raw):
        assert parse_info(raw) is None
