#!/usr/bin/env python3
"""
probe_sensor.py — AirWatch live sensor probe

Runs one sensor through the ingestion path without touching the database:
  1. Sensor lookup (adapter)
  2. Latest reading on both channel feeds
  3. Reading validation and channel agreement

Usage: python scripts/probe_sensor.py <purpleair_id> [<purpleair_id> ...]
"""

import os
import sys

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from pipeline.config import load_settings
from pipeline.ingestion.purpleair_client import fetch_channel_measurement, fetch_sensor_descriptor
from pipeline.ingestion.sensor_adapter import MalformedResponse
from pipeline.ingestion.validator import validate_reading

CHECKS = []


def check(name, fn):
    try:
        result = fn()
        ok = bool(result) if not isinstance(result, bool) else result
        if ok:
            print(f"  ✅  {name}")
            CHECKS.append((name, True, None))
        else:
            print(f"  ❌  {name}: returned falsy")
            CHECKS.append((name, False, "returned falsy"))
        return result
    except Exception as e:
        print(f"  ❌  {name}: {e}")
        CHECKS.append((name, False, str(e)))
        return None


def probe(sensor_index: int, settings) -> None:
    print(f"── Sensor {sensor_index} ──")

    def lookup():
        try:
            return fetch_sensor_descriptor(sensor_index, settings)
        except MalformedResponse as e:
            raise RuntimeError(f"malformed lookup: {e}")

    descriptor = check("Lookup fetched and parsed", lookup)
    if descriptor is None:
        return
    print(f"      location=({descriptor.latitude}, {descriptor.longitude}) "
          f"downgraded A={descriptor.channel_a_downgraded} B={descriptor.channel_b_downgraded}")

    channel_a = check("Channel A feed", lambda: fetch_channel_measurement(descriptor.channel_a_primary, settings))
    channel_b = check("Channel B feed", lambda: fetch_channel_measurement(descriptor.channel_b_primary, settings))
    for label, m in (("A", channel_a), ("B", channel_b)):
        if m is not None:
            print(f"      {label}: t={m.timestamp} pm25={m.pm25} humidity={m.humidity}")

    outcome = validate_reading(
        channel_a, channel_b, descriptor,
        divergence_threshold=settings.divergence_threshold,
    )
    check("Reading usable", lambda: outcome.usable)
    print(f"      {outcome} mpd={outcome.mean_percent_difference}")
    print()


def main():
    if len(sys.argv) < 2:
        print(__doc__)
        sys.exit(2)

    settings = load_settings()
    print()
    print("=" * 60)
    print("  AirWatch — Live Sensor Probe")
    print("=" * 60)
    print()
    for raw in sys.argv[1:]:
        probe(int(raw), settings)

    failed = [c for c in CHECKS if not c[1]]
    print(f"{len(CHECKS) - len(failed)}/{len(CHECKS)} checks passed")
    sys.exit(1 if failed else 0)


if __name__ == "__main__":
    main()
