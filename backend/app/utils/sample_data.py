"""
Sample data generator for testing.

Generates realistic-looking circuit telemetry in MoTeC CSV export format:
a 14-line metadata block, channel names on line 15, units on line 16 and
data rows from line 17.
"""

import math
from datetime import datetime
from pathlib import Path
from typing import Optional, Sequence

import numpy as np


METADATA_LINES = 14


def build_metadata_block(
    venue: str = "Silverstone",
    driver: str = "Test Driver",
    vehicle: str = "Formula Test",
    sample_rate_hz: float = 20.0,
    duration_s: float = 0.0,
    log_date: Optional[datetime] = None,
) -> list[str]:
    """The fixed 14-line metadata block that precedes the channel names."""
    log_date = log_date or datetime(2024, 6, 1, 14, 30, 0)
    lines = [
        '"Format","MoTeC CSV File",,,"Workbook","Default"',
        f'"Venue","{venue}",,,"Worksheet","Driver"',
        f'"Vehicle","{vehicle}",,,"Vehicle Desc",""',
        f'"Driver","{driver}",,,"Engine ID",""',
        '"Device","ADL3"',
        '"Comment",""',
        f'"Log Date","{log_date:%d/%m/%Y}",,,"Origin Time","0.000","s"',
        f'"Log Time","{log_date:%H:%M:%S}",,,"Start Time","0.000","s"',
        f'"Sample Rate","{sample_rate_hz:g}",,,"End Time","{duration_s:.3f}","s"',
        f'"Duration","{duration_s:.3f}",,,"Start Distance","0","m"',
        '"Range","entire outing",,,"End Distance","0","m"',
        '"Beacon Markers",""',
        '"Segment Times",""',
        "",
    ]
    return lines


def _format_cell(value) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return f'"{value}"'
    if isinstance(value, float) and math.isnan(value):
        return ""
    return f'"{value}"'


def build_motec_lines(
    headers: Sequence[str],
    units: Sequence[str],
    rows: Sequence[Sequence],
    metadata: Optional[list[str]] = None,
) -> list[str]:
    """
    Assemble a complete file as a list of lines.

    None or NaN cells are written empty; strings are written as-is (quoted).
    """
    lines = list(metadata) if metadata is not None else build_metadata_block()
    lines.append(",".join(f'"{h}"' for h in headers))
    lines.append(",".join(f'"{u}"' for u in units))
    for row in rows:
        lines.append(",".join(_format_cell(v) for v in row))
    return lines


def motec_csv_bytes(
    headers: Sequence[str],
    units: Sequence[str],
    rows: Sequence[Sequence],
    metadata: Optional[list[str]] = None,
    line_ending: str = "\n",
) -> bytes:
    return line_ending.join(build_motec_lines(headers, units, rows, metadata)).encode("utf-8")


def generate_circuit_lap(
    duration_s: float = 90.0,
    sample_rate_hz: float = 20.0,
    speed_unit: str = "km/h",
    max_speed_kmh: float = 250.0,
    seed: Optional[int] = None,
) -> tuple[list[str], list[str], list[list]]:
    """
    Generate one flying lap of a circuit.

    Speed follows a few straights and braking zones; RPM, gear, throttle,
    brake pressure, G-forces and a GPS trace are derived from it.

    Returns:
        (headers, units, rows) ready for build_motec_lines
    """
    rng = np.random.default_rng(seed)
    n_samples = int(duration_s * sample_rate_hz)
    timestamps = np.arange(n_samples) / sample_rate_hz

    # Speed profile: five corners per lap
    phase = timestamps / duration_s * 5 * 2 * np.pi
    speed_kmh = max_speed_kmh * (0.65 + 0.35 * np.cos(phase))
    speed_kmh += rng.normal(0, 1.0, n_samples)
    speed_kmh = np.clip(speed_kmh, 40.0, max_speed_kmh)
    speed_ms = speed_kmh / 3.6

    dt = 1.0 / sample_rate_hz
    accel = np.gradient(speed_ms, dt)
    long_g = np.clip(accel / 9.81, -4.5, 2.0)
    lat_g = np.clip(3.5 * np.sin(phase) * (1 - speed_kmh / max_speed_kmh) * 2, -4.0, 4.0)
    lat_g += rng.normal(0, 0.05, n_samples)

    throttle = np.clip(50 + accel * 15, 0, 100)
    brake = np.clip(-accel * 8, 0, 120)

    gear = np.clip(np.ceil(speed_kmh / (max_speed_kmh / 7)), 1, 7).astype(int)
    rpm = np.clip(4000 + (speed_kmh % (max_speed_kmh / 7)) / (max_speed_kmh / 7) * 8000, 4000, 12500)

    # GPS: circle approximation of the lap
    distance = np.cumsum(speed_ms * dt)
    lap_length = max(distance[-1], 1.0)
    angle = distance / lap_length * 2 * np.pi
    radius_deg = lap_length / (2 * np.pi) / 111000
    lat = 52.0786 + radius_deg * np.sin(angle)
    lon = -1.0169 + radius_deg * np.cos(angle) / np.cos(np.radians(52.0786))

    oil_temp = 105 + 5 * timestamps / duration_s + rng.normal(0, 0.2, n_samples)

    if speed_unit == "m/s":
        ground_speed = speed_ms
    elif speed_unit == "mph":
        ground_speed = speed_kmh / 1.60934
    else:
        ground_speed = speed_kmh

    headers = [
        "Time", "Ground Speed", "Engine Speed", "Gear", "Throttle Pos",
        "Brake Pressure", "G Force Lat", "G Force Long", "GPS Latitude",
        "GPS Longitude", "Engine Oil Temperature", "Lap Distance", "GPS Time",
    ]
    units = [
        "s", speed_unit, "rpm", "", "%", "bar", "G", "G", "deg", "deg", "C", "m", "",
    ]
    rows = []
    for i in range(n_samples):
        t = timestamps[i]
        rows.append([
            round(float(t), 3),
            round(float(ground_speed[i]), 2),
            round(float(rpm[i]), 0),
            int(gear[i]),
            round(float(throttle[i]), 1),
            round(float(brake[i]), 1),
            round(float(lat_g[i]), 3),
            round(float(long_g[i]), 3),
            round(float(lat[i]), 7),
            round(float(lon[i]), 7),
            round(float(oil_temp[i]), 1),
            round(float(distance[i]), 1),
            f"14:30:{t:06.3f}",
        ])
    return headers, units, rows


def generate_motec_run(
    output_path: Path,
    duration_s: float = 90.0,
    sample_rate_hz: float = 20.0,
    speed_unit: str = "km/h",
    seed: Optional[int] = None,
) -> Path:
    """Write one generated lap as a MoTeC CSV file."""
    headers, units, rows = generate_circuit_lap(
        duration_s=duration_s,
        sample_rate_hz=sample_rate_hz,
        speed_unit=speed_unit,
        seed=seed,
    )
    metadata = build_metadata_block(sample_rate_hz=sample_rate_hz, duration_s=duration_s)

    output_path.parent.mkdir(parents=True, exist_ok=True)
    with open(output_path, "wb") as f:
        f.write(motec_csv_bytes(headers, units, rows, metadata))
    return output_path


def generate_test_data_set(output_folder: Path) -> list[Path]:
    """Generate a set of test data files."""
    output_folder.mkdir(parents=True, exist_ok=True)

    return [
        generate_motec_run(output_folder / "silverstone_lap_kmh.csv", duration_s=90.0, seed=1),
        generate_motec_run(
            output_folder / "silverstone_lap_ms.csv", duration_s=60.0, speed_unit="m/s", seed=2
        ),
        generate_motec_run(
            output_folder / "long_stint.csv", duration_s=600.0, sample_rate_hz=50.0, seed=3
        ),
    ]


if __name__ == "__main__":
    output = Path("./data/samples")
    files = generate_test_data_set(output)
    print(f"Generated {len(files)} test files in {output}")
    for f in files:
        print(f"  - {f.name}")
