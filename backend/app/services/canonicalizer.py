"""
Canonicalizer for raw telemetry columns.

Maps raw CSV columns onto stable channel descriptors (key, label, unit,
category) and normalizes channel values at ingestion time.
"""

from __future__ import annotations

import math
import re
from typing import Iterable, Optional

from app.models.raw import RawColumn
from app.models.telemetry import (
    ChannelCategory,
    ChannelDescriptor,
    ChannelValue,
    ValueType,
)


MAX_KEY_LENGTH = 63  # persistence-layer identifier limit

TIME_KEY = "time"

# Columns that link rows to their session/file and never appear as metrics
LINKAGE_KEYS = frozenset({"id", "session_id", "file_id", "row_index"})

# Channels converted to km/h at ingestion
SPEED_CHANNELS = frozenset({"ground_speed", "gps_speed", "drive_speed"})
SPEED_UNIT = "km/h"
SPEED_FACTORS = {
    "m/s": 3.6,
    "mph": 1.60934,
}

# Channels stored as text
TEXT_CHANNELS = frozenset({"gps_time", "gps_date"})

_NON_ALNUM = re.compile(r"[^a-z0-9]+")

C = ChannelCategory

# key -> (label, default unit, category)
KNOWN_CHANNELS: dict[str, tuple[str, str, ChannelCategory]] = {
    # Timing
    "time": ("Time", "s", C.TIMING),
    "session_time": ("Session Time", "s", C.TIMING),
    # Speed
    "ground_speed": ("Speed", SPEED_UNIT, C.PERFORMANCE),
    "gps_speed": ("GPS Speed", SPEED_UNIT, C.PERFORMANCE),
    "drive_speed": ("Drive Speed", SPEED_UNIT, C.PERFORMANCE),
    "engine_speed": ("Engine RPM", "RPM", C.ENGINE),
    "engine_rpm": ("Engine RPM", "RPM", C.ENGINE),
    # Driver inputs
    "throttle_position": ("Throttle Position", "%", C.DRIVER_INPUT),
    "throttle_pedal": ("Throttle Pedal", "%", C.DRIVER_INPUT),
    "brake_pressure": ("Brake Pressure", "bar", C.DRIVER_INPUT),
    "brake_pressure_front": ("Front Brake Pressure", "bar", C.DRIVER_INPUT),
    "brake_pressure_rear": ("Rear Brake Pressure", "bar", C.DRIVER_INPUT),
    "brake_position": ("Brake Position", "%", C.DRIVER_INPUT),
    "steering_angle": ("Steering Angle", "deg", C.DRIVER_INPUT),
    "clutch_position": ("Clutch Position", "%", C.DRIVER_INPUT),
    # Forces
    "g_force_lat": ("Lateral G-Force", "G", C.FORCES),
    "g_force_long": ("Longitudinal G-Force", "G", C.FORCES),
    "g_force_vert": ("Vertical G-Force", "G", C.FORCES),
    # Engine
    "engine_oil_temperature": ("Oil Temperature", "°C", C.ENGINE),
    "engine_oil_pressure": ("Oil Pressure", "bar", C.ENGINE),
    "coolant_temperature": ("Coolant Temperature", "°C", C.ENGINE),
    "coolant_pressure": ("Coolant Pressure", "bar", C.ENGINE),
    "boost_pressure": ("Boost Pressure", "bar", C.ENGINE),
    "inlet_air_temperature": ("Inlet Air Temperature", "°C", C.ENGINE),
    "lambda_1": ("Lambda", "LA", C.ENGINE),
    # Fuel
    "fuel_pressure": ("Fuel Pressure", "bar", C.FUEL),
    "fuel_temperature": ("Fuel Temperature", "°C", C.FUEL),
    "fuel_level": ("Fuel Level", "l", C.FUEL),
    "fuel_used": ("Fuel Used", "l", C.FUEL),
    "fuel_flow": ("Fuel Flow", "l/h", C.FUEL),
    # Transmission
    "gear": ("Gear", "", C.TRANSMISSION),
    "gearbox_oil_temperature": ("Gearbox Oil Temperature", "°C", C.TRANSMISSION),
    # Electrical
    "bat_volts_ecu": ("Battery ECU", "V", C.ELECTRICAL),
    "bat_volts_dash": ("Battery Dash", "V", C.ELECTRICAL),
    "battery_voltage": ("Battery Voltage", "V", C.ELECTRICAL),
    # GPS
    "gps_latitude": ("GPS Latitude", "deg", C.GPS),
    "gps_longitude": ("GPS Longitude", "deg", C.GPS),
    "gps_altitude": ("GPS Altitude", "m", C.GPS),
    "gps_heading": ("GPS Heading", "deg", C.GPS),
    "gps_sats_used": ("GPS Satellites", "", C.GPS),
    "gps_time": ("GPS Time", "", C.GPS),
    "gps_date": ("GPS Date", "", C.GPS),
    # Lap data
    "lap_number": ("Lap Number", "", C.LAP_DATA),
    "lap_time": ("Lap Time", "s", C.LAP_DATA),
    "lap_distance": ("Lap Distance", "m", C.LAP_DATA),
    "running_lap_time": ("Running Lap Time", "s", C.LAP_DATA),
    "lap_gain_loss_running": ("Lap Gain/Loss", "s", C.LAP_DATA),
    # Suspension
    "damper_pos_fl": ("Damper Position FL", "mm", C.SUSPENSION),
    "damper_pos_fr": ("Damper Position FR", "mm", C.SUSPENSION),
    "damper_pos_rl": ("Damper Position RL", "mm", C.SUSPENSION),
    "damper_pos_rr": ("Damper Position RR", "mm", C.SUSPENSION),
    # Tires
    "tire_temp_fl": ("Tire Temperature FL", "°C", C.TIRES),
    "tire_temp_fr": ("Tire Temperature FR", "°C", C.TIRES),
    "tire_temp_rl": ("Tire Temperature RL", "°C", C.TIRES),
    "tire_temp_rr": ("Tire Temperature RR", "°C", C.TIRES),
    "wheel_speed_fl": ("Wheel Speed FL", SPEED_UNIT, C.TIRES),
    "wheel_speed_fr": ("Wheel Speed FR", SPEED_UNIT, C.TIRES),
    "wheel_speed_rl": ("Wheel Speed RL", SPEED_UNIT, C.TIRES),
    "wheel_speed_rr": ("Wheel Speed RR", SPEED_UNIT, C.TIRES),
}

# Substring heuristics for unknown channels, checked in order
CATEGORY_HEURISTICS: list[tuple[tuple[str, ...], ChannelCategory]] = [
    (("temp",), C.ENGINE),
    (("pressure",), C.ENGINE),
    (("speed", "rpm"), C.PERFORMANCE),
    (("gps",), C.GPS),
    (("lap",), C.LAP_DATA),
    (("fuel",), C.FUEL),
    (("gear",), C.TRANSMISSION),
    (("throttle", "brake", "steering"), C.DRIVER_INPUT),
    (("g_force",), C.FORCES),
    (("suspension", "damper"), C.SUSPENSION),
    (("tire", "tyre", "wheel"), C.TIRES),
]


def sanitize_key(header: str) -> str:
    """
    Sanitize a raw header into a stable identifier.

    "Engine Speed" -> "engine_speed", "5V Aux Supply" -> "5v_aux_supply".
    """
    key = _NON_ALNUM.sub("_", header.strip().lower()).strip("_")
    return key[:MAX_KEY_LENGTH].rstrip("_")


def infer_category(key: str) -> ChannelCategory:
    for needles, category in CATEGORY_HEURISTICS:
        if any(n in key for n in needles):
            return category
    return C.OTHER


def is_text_channel(key: str) -> bool:
    if key in TEXT_CHANNELS:
        return True
    parts = key.split("_")
    return ("gps" in parts and "time" in parts) or "date" in parts


def humanize_header(header: str) -> str:
    """Label for channels missing from the known-channel table."""
    words = header.replace("_", " ").split()
    return " ".join(w[:1].upper() + w[1:] for w in words)


def _unique_key(key: str, used: set[str]) -> str:
    if key not in used:
        return key
    n = 2
    while True:
        suffix = f"_{n}"
        candidate = key[: MAX_KEY_LENGTH - len(suffix)] + suffix
        if candidate not in used:
            return candidate
        n += 1


def describe_column(column: RawColumn, key: Optional[str] = None) -> ChannelDescriptor:
    """
    Build the descriptor for a single raw column.

    Args:
        column: The raw column from the header section.
        key: Pre-resolved unique key. Defaults to the sanitized header.
    """
    base_key = sanitize_key(column.original_header)
    key = key or base_key or f"column_{column.column_index}"
    source_unit = column.unit.strip()
    value_type = ValueType.TEXT if is_text_channel(base_key) else ValueType.NUMBER

    known = KNOWN_CHANNELS.get(base_key)
    if known is not None:
        label, default_unit, category = known
        unit = source_unit or default_unit
    else:
        label = humanize_header(column.original_header) or key
        unit = source_unit
        category = infer_category(base_key)

    scale = 1.0
    if base_key in SPEED_CHANNELS:
        unit = SPEED_UNIT
        scale = SPEED_FACTORS.get(source_unit.lower(), 1.0)

    return ChannelDescriptor(
        key=key,
        label=label,
        unit=unit,
        category=category,
        column_index=column.column_index,
        original_header=column.original_header,
        value_type=value_type,
        source_unit=source_unit,
        scale=scale,
    )


def normalize_columns(columns: Iterable[RawColumn]) -> list[ChannelDescriptor]:
    """
    Map raw columns onto descriptors with keys unique within the file.

    A key already taken by an earlier column gets a numeric suffix
    ("_2", "_3", ...) so distinct channels are never merged.
    """
    descriptors: list[ChannelDescriptor] = []
    used: set[str] = set()
    for column in columns:
        base_key = sanitize_key(column.original_header) or f"column_{column.column_index}"
        key = _unique_key(base_key, used)
        used.add(key)
        descriptors.append(describe_column(column, key))
    return descriptors


def available_metrics(descriptors: Iterable[ChannelDescriptor]) -> list[ChannelDescriptor]:
    """
    Descriptors exposed to metric pickers.

    Excludes the time channel and linkage columns; every other declared
    column is listed, even if it carries no data.
    """
    return [
        d for d in descriptors
        if d.key != TIME_KEY and d.key not in LINKAGE_KEYS
    ]


def parse_number(text: str) -> Optional[float]:
    """Parse a numeric cell; None if empty or not numeric."""
    try:
        value = float(text)
    except ValueError:
        return None
    if math.isnan(value) or math.isinf(value):
        return None
    return value


def convert_value(descriptor: ChannelDescriptor, text: str) -> Optional[ChannelValue]:
    """
    Convert one raw cell for a channel.

    Text channels are stored as-is. Numeric channels return None when the
    cell does not parse; speed channels are converted to km/h here and
    nowhere else.
    """
    if descriptor.is_text:
        return text
    value = parse_number(text)
    if value is None:
        return None
    return value * descriptor.scale
