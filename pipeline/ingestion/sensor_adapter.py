"""
Sensor lookup adapter.

Turns the sensor network's lookup document into a typed SensorDescriptor.
A lookup carries one result record per laser channel: results[0] is
channel A, results[1] is channel B. Each record names the feeds (id + read
key) that hold that channel's raw time series.
"""

import logging
from dataclasses import dataclass
from typing import Any, Optional

logger = logging.getLogger(__name__)

ACCESS_FIELDS = (
    "PRIMARY_ID",
    "PRIMARY_ID_READ_KEY",
    "SECONDARY_ID",
    "SECONDARY_ID_READ_KEY",
)
FEED_FIELD_PREFIX = "THINGSPEAK_"


class MalformedResponse(ValueError):
    """The lookup document does not describe a reachable dual-channel sensor."""


@dataclass(frozen=True)
class ChannelAccess:
    """Identifies one raw feed: the external feed id and its read key."""
    feed_id: str
    read_key: str


@dataclass(frozen=True)
class SensorDescriptor:
    """One physical dual-channel sensor as described by a fresh lookup."""
    latitude: float
    longitude: float
    channel_a_primary: ChannelAccess
    channel_a_secondary: ChannelAccess
    channel_b_primary: ChannelAccess
    channel_b_secondary: ChannelAccess
    label: Optional[str] = None
    channel_a_downgraded: bool = False
    channel_b_downgraded: bool = False


def _field(record: dict, name: str, channel: str) -> Any:
    """Read an access field, accepting the feed-prefixed spelling first."""
    for key in (FEED_FIELD_PREFIX + name, name):
        value = record.get(key)
        if value not in (None, ""):
            return value
    raise MalformedResponse(f"Channel {channel} result is missing {name}")


def _coordinate(record: dict, name: str, channel: str) -> float:
    value = record.get(name)
    if value is None or value == "":
        raise MalformedResponse(f"Channel {channel} result is missing {name}")
    try:
        return float(value)
    except (TypeError, ValueError):
        raise MalformedResponse(
            f"Channel {channel} result has non-numeric {name}: {value!r}"
        ) from None


def _is_flagged(record: dict) -> bool:
    """A non-zero Flag means the network has downgraded this channel."""
    flag = record.get("Flag")
    try:
        return bool(int(flag)) if flag not in (None, "") else False
    except (TypeError, ValueError):
        return False


def _access(record: dict, which: str, channel: str) -> ChannelAccess:
    return ChannelAccess(
        feed_id=str(_field(record, f"{which}_ID", channel)),
        read_key=str(_field(record, f"{which}_ID_READ_KEY", channel)),
    )


def parse_sensor_descriptor(payload: Any) -> SensorDescriptor:
    """
    Build a SensorDescriptor from a lookup document.

    Args:
        payload: Decoded JSON body of the lookup call.

    Returns:
        SensorDescriptor with coordinates taken from channel A.

    Raises:
        MalformedResponse: fewer than two result records, or a record lacks
            a location or feed-access field.
    """
    if not isinstance(payload, dict):
        raise MalformedResponse("Lookup response is not a JSON object")

    results = payload.get("results")
    if not isinstance(results, list) or len(results) < 2:
        count = len(results) if isinstance(results, list) else 0
        raise MalformedResponse(
            f"Lookup response has {count} result records, expected at least 2"
        )

    record_a, record_b = results[0], results[1]
    if not isinstance(record_a, dict) or not isinstance(record_b, dict):
        raise MalformedResponse("Lookup result records must be objects")

    # Both records must be complete even though only channel A's location is used.
    _coordinate(record_b, "Lat", "B")
    _coordinate(record_b, "Lon", "B")

    descriptor = SensorDescriptor(
        latitude=_coordinate(record_a, "Lat", "A"),
        longitude=_coordinate(record_a, "Lon", "A"),
        channel_a_primary=_access(record_a, "PRIMARY", "A"),
        channel_a_secondary=_access(record_a, "SECONDARY", "A"),
        channel_b_primary=_access(record_b, "PRIMARY", "B"),
        channel_b_secondary=_access(record_b, "SECONDARY", "B"),
        label=record_a.get("Label"),
        channel_a_downgraded=_is_flagged(record_a),
        channel_b_downgraded=_is_flagged(record_b),
    )
    logger.debug("Parsed sensor descriptor: %s", descriptor)
    return descriptor
