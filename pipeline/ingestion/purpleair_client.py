"""
Sensor network API client.

Two calls per sensor per tick:
  1. the lookup document, parsed into a SensorDescriptor
  2. the latest entry of each channel's primary feed

Transport failures are logged and reported as None so one unreachable
sensor never stops the pass. A lookup that arrives but cannot be parsed
raises MalformedResponse: that sensor is misconfigured, not just noisy.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

import httpx

from pipeline.config import Settings
from pipeline.ingestion.sensor_adapter import (
    ChannelAccess,
    MalformedResponse,
    SensorDescriptor,
    parse_sensor_descriptor,
)

logger = logging.getLogger(__name__)

# Primary feed layout: field2 = PM2.5 (ATM), field8 = PM2.5 (CF=1),
# field7 = relative humidity (channel A only).
PM25_FIELDS = ("field2", "field8")
HUMIDITY_FIELD = "field7"


@dataclass(frozen=True)
class ChannelMeasurement:
    """Most recent entry of one channel's primary feed."""
    timestamp: Optional[datetime]
    pm25: Optional[float]
    humidity: Optional[float] = None


def _safe_float(val) -> Optional[float]:
    """Safely convert a value to float, returning None on failure."""
    if val is None or val == "":
        return None
    try:
        return float(val)
    except (TypeError, ValueError):
        return None


def _parse_timestamp(raw) -> Optional[datetime]:
    """Parse a feed 'created_at' value into a UTC datetime."""
    if not raw:
        return None
    try:
        dt = datetime.fromisoformat(str(raw).replace("Z", "+00:00"))
    except ValueError:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def _get_json(url: str, settings: Settings, what: str, **kwargs) -> Optional[object]:
    try:
        resp = httpx.get(url, timeout=settings.request_timeout, **kwargs)
        resp.raise_for_status()
    except httpx.TimeoutException:
        logger.error("%s request timed out", what)
        return None
    except httpx.HTTPStatusError as e:
        logger.error("%s HTTP error %s", what, e.response.status_code)
        return None
    except httpx.RequestError as e:
        logger.error("%s network error: %s", what, e)
        return None

    try:
        return resp.json()
    except ValueError:
        logger.error("%s returned malformed JSON", what)
        return None


def fetch_sensor_descriptor(sensor_index: int, settings: Settings) -> Optional[SensorDescriptor]:
    """
    Look up a sensor and describe its channels.

    Args:
        sensor_index: The sensor network's numeric sensor id.
        settings: Runtime settings (URL, timeout, optional API key).

    Returns:
        SensorDescriptor, or None when the lookup could not be fetched.

    Raises:
        MalformedResponse: the lookup arrived but does not describe a
            dual-channel sensor.
    """
    headers = {"X-API-Key": settings.api_key} if settings.api_key else {}
    payload = _get_json(
        settings.lookup_url,
        settings,
        f"Sensor lookup {sensor_index}",
        params={"show": sensor_index},
        headers=headers,
    )
    if payload is None:
        return None

    try:
        return parse_sensor_descriptor(payload)
    except MalformedResponse as e:
        logger.error("Malformed lookup for sensor %s: %s", sensor_index, e)
        raise


def parse_channel_feed(payload) -> Optional[ChannelMeasurement]:
    """
    Extract the latest entry from a feed response.

    PM2.5 is the higher of the two PM2.5 fields, as the EPA guidance for
    these sensors recommends. Returns None when there is no entry at all.
    """
    if not isinstance(payload, dict):
        return None
    feeds = payload.get("feeds") or []
    if not feeds or not isinstance(feeds[-1], dict):
        return None

    entry = feeds[-1]
    pm_values = [v for v in (_safe_float(entry.get(f)) for f in PM25_FIELDS) if v is not None]
    return ChannelMeasurement(
        timestamp=_parse_timestamp(entry.get("created_at")),
        pm25=max(pm_values) if pm_values else None,
        humidity=_safe_float(entry.get(HUMIDITY_FIELD)),
    )


def fetch_channel_measurement(access: ChannelAccess, settings: Settings) -> Optional[ChannelMeasurement]:
    """Fetch the most recent measurement on one channel's primary feed."""
    url = f"{settings.feed_base_url}/{access.feed_id}/feeds.json"
    payload = _get_json(
        url,
        settings,
        f"Feed {access.feed_id}",
        params={"api_key": access.read_key, "results": 1},
    )
    if payload is None:
        return None

    measurement = parse_channel_feed(payload)
    if measurement is None:
        logger.warning("Feed %s returned no entries", access.feed_id)
    return measurement
