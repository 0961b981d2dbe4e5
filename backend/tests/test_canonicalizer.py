"""
Tests for channel canonicalization.
"""

import pytest

from app.models.raw import RawColumn
from app.models.telemetry import ChannelCategory, ValueType
from app.services.canonicalizer import (
    MAX_KEY_LENGTH,
    available_metrics,
    convert_value,
    describe_column,
    infer_category,
    is_text_channel,
    normalize_columns,
    sanitize_key,
)


def _columns(*headers, units=None):
    units = units or [""] * len(headers)
    return [RawColumn(original_header=h, unit=u, column_index=i) for i, (h, u) in enumerate(zip(headers, units))]


class TestSanitizeKey:
    """Tests for header -> key sanitization."""

    @pytest.mark.parametrize("header,expected", [
        ("Engine Speed", "engine_speed"),
        ("5V Aux Supply", "5v_aux_supply"),
        ("  Brake Pressure (Front) ", "brake_pressure_front"),
        ("G Force Lat", "g_force_lat"),
        ("__Time__", "time"),
        ("Fuel/Lap", "fuel_lap"),
    ])
    def test_examples(self, header, expected):
        assert sanitize_key(header) == expected

    def test_length_capped(self):
        key = sanitize_key("Very Long Channel Name " * 10)

        assert len(key) <= MAX_KEY_LENGTH
        assert not key.endswith("_")

    def test_empty_header(self):
        assert sanitize_key("!!!") == ""


class TestDescribeColumn:
    """Tests for known and unknown channel descriptors."""

    def test_known_channel(self):
        d = describe_column(RawColumn("Engine Speed", "rpm", 2))

        assert d.key == "engine_speed"
        assert d.label == "Engine RPM"
        assert d.unit == "rpm"
        assert d.category is ChannelCategory.ENGINE
        assert d.column_index == 2
        assert d.original_header == "Engine Speed"

    def test_known_channel_default_unit(self):
        d = describe_column(RawColumn("Throttle Position", "", 0))

        assert d.unit == "%"
        assert d.category is ChannelCategory.DRIVER_INPUT

    def test_unknown_channel(self):
        d = describe_column(RawColumn("rear_wing_angle", "deg", 5))

        assert d.key == "rear_wing_angle"
        assert d.label == "Rear Wing Angle"
        assert d.unit == "deg"
        assert d.category is ChannelCategory.OTHER

    @pytest.mark.parametrize("key,expected", [
        ("exhaust_temp_1", ChannelCategory.ENGINE),
        ("tyre_pressure_fl", ChannelCategory.ENGINE),  # pressure is checked before tyre
        ("shaft_rpm", ChannelCategory.PERFORMANCE),
        ("gps_nsat", ChannelCategory.GPS),
        ("best_lap_delta", ChannelCategory.LAP_DATA),
        ("fuel_mix_map", ChannelCategory.FUEL),
        ("gear_request", ChannelCategory.TRANSMISSION),
        ("steering_torque", ChannelCategory.DRIVER_INPUT),
        ("g_force_combined", ChannelCategory.FORCES),
        ("damper_vel_fl", ChannelCategory.SUSPENSION),
        ("wheel_slip_rl", ChannelCategory.TIRES),
        ("ecu_status", ChannelCategory.OTHER),
    ])
    def test_category_heuristics(self, key, expected):
        assert infer_category(key) is expected

    def test_speed_channel_normalized_to_kmh(self):
        d = describe_column(RawColumn("Ground Speed", "m/s", 1))

        assert d.unit == "km/h"
        assert d.source_unit == "m/s"
        assert d.scale == pytest.approx(3.6)

    def test_mph_speed_channel(self):
        d = describe_column(RawColumn("GPS Speed", "mph", 1))

        assert d.unit == "km/h"
        assert d.scale == pytest.approx(1.60934)

    def test_kmh_speed_unchanged(self):
        d = describe_column(RawColumn("Drive Speed", "km/h", 1))

        assert d.scale == 1.0

    def test_non_speed_channel_not_scaled(self):
        d = describe_column(RawColumn("Wheel Speed FL", "m/s", 1))

        assert d.scale == 1.0
        assert d.unit == "m/s"


class TestTextChannels:
    """Tests for channels stored as strings."""

    @pytest.mark.parametrize("key,expected", [
        ("gps_time", True),
        ("gps_date", True),
        ("gps_utc_time", True),
        ("log_date", True),
        ("gps_update", False),
        ("lap_time", False),
        ("time", False),
    ])
    def test_is_text_channel(self, key, expected):
        assert is_text_channel(key) is expected

    def test_text_value_kept_as_string(self):
        d = describe_column(RawColumn("GPS Time", "", 4))

        assert d.value_type is ValueType.TEXT
        assert convert_value(d, "14:30:01.250") == "14:30:01.250"


class TestNormalizeColumns:
    """Tests for whole-header normalization."""

    def test_keys_in_column_order(self):
        descriptors = normalize_columns(_columns("Time", "Ground Speed", "Engine Speed"))

        assert [d.key for d in descriptors] == ["time", "ground_speed", "engine_speed"]
        assert [d.column_index for d in descriptors] == [0, 1, 2]

    def test_colliding_keys_are_suffixed(self):
        descriptors = normalize_columns(_columns("Time", "Oil Temp", "Oil-Temp", "oil temp"))

        assert [d.key for d in descriptors] == ["time", "oil_temp", "oil_temp_2", "oil_temp_3"]
        assert len({d.key for d in descriptors}) == 4

    def test_suffixed_key_respects_length_cap(self):
        long_header = "x" * 80
        descriptors = normalize_columns(_columns(long_header, long_header))

        assert len(descriptors[1].key) <= MAX_KEY_LENGTH
        assert descriptors[1].key.endswith("_2")
        assert descriptors[0].key != descriptors[1].key

    def test_empty_key_uses_column_index(self):
        descriptors = normalize_columns(_columns("Time", "???"))

        assert descriptors[1].key == "column_1"

    def test_available_metrics_excludes_time_and_linkage(self):
        descriptors = normalize_columns(
            _columns("Time", "Session ID", "Ground Speed", "Row Index", "Gear")
        )

        keys = [d.key for d in available_metrics(descriptors)]

        assert keys == ["ground_speed", "gear"]


class TestConvertValue:
    """Tests for per-cell conversion."""

    def test_speed_converted_once(self):
        d = describe_column(RawColumn("Ground Speed", "m/s", 1))

        assert convert_value(d, "10") == pytest.approx(36.0)
        assert convert_value(d, "25") == pytest.approx(90.0)

    def test_numeric_value(self):
        d = describe_column(RawColumn("Engine Speed", "rpm", 1))

        assert convert_value(d, "6500.5") == 6500.5

    @pytest.mark.parametrize("text", ["", "abc", "nan", "inf", "1.2.3"])
    def test_unparseable_returns_none(self, text):
        d = describe_column(RawColumn("Engine Speed", "rpm", 1))

        assert convert_value(d, text) is None

    def test_descriptor_round_trip(self):
        d = describe_column(RawColumn("Ground Speed", "mph", 1))

        assert type(d).from_dict(d.to_dict()) == d
