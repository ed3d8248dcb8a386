"""
Validator for dual-channel sensor readings.

Classifies the latest channel A / channel B measurements of one sensor:
- Both channels must have reported a new reading this tick
- PM2.5, humidity, timestamp and location must all be present
- The channels must agree (mean percent difference within the threshold)
- Neither channel may be downgraded by the sensor network

The outcome always carries the element to buffer. The slot is never
skipped, so buffers stay time-aligned.
"""

import enum
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import FrozenSet, Optional

from pipeline.buffers.elements import Pm25BufferElement
from pipeline.confidence.scorer import (
    MAX_MEAN_PERCENT_DIFFERENCE,
    agreement_confidence,
    mean_percent_difference,
)
from pipeline.ingestion.purpleair_client import ChannelMeasurement
from pipeline.ingestion.sensor_adapter import SensorDescriptor

logger = logging.getLogger(__name__)

DEFAULT_DIVERGENCE_THRESHOLD = 0.7


class SensorReadingError(str, enum.Enum):
    """
    Per-reading quality problems. Advisory: a sensor still gets a valid AQI
    when enough other readings in the window are clean.
    """
    ReadingNotReceived = "ReadingNotReceived"
    NoHumidityReading = "NoHumidityReading"
    IncompleteSensorReading = "IncompleteSensorReading"
    ChannelsDiverged = "ChannelsDiverged"
    ChannelADowngraded = "ChannelADowngraded"
    ChannelBDowngraded = "ChannelBDowngraded"


UNUSABLE_ERRORS = frozenset({
    SensorReadingError.ReadingNotReceived,
    SensorReadingError.IncompleteSensorReading,
    SensorReadingError.ChannelsDiverged,
})


@dataclass(frozen=True)
class ValidationOutcome:
    """Result of validating one tick's reading for one sensor."""
    usable: bool
    errors: FrozenSet[SensorReadingError]
    confidence: Optional[int]
    mean_percent_difference: Optional[float]
    element: Pm25BufferElement

    def __str__(self) -> str:
        if self.usable:
            return f"Usable (confidence={self.confidence})"
        return "Unusable: " + ", ".join(sorted(e.value for e in self.errors))


def _as_utc(ts: datetime) -> datetime:
    return ts.replace(tzinfo=timezone.utc) if ts.tzinfo is None else ts.astimezone(timezone.utc)


def _is_repeat(timestamp: Optional[datetime], last_reading_time: Optional[datetime]) -> bool:
    """The feed still shows the reading we buffered on a previous tick."""
    if timestamp is None or last_reading_time is None:
        return False
    return int(_as_utc(timestamp).timestamp()) == int(_as_utc(last_reading_time).timestamp())


def validate_reading(
    channel_a: Optional[ChannelMeasurement],
    channel_b: Optional[ChannelMeasurement],
    descriptor: Optional[SensorDescriptor],
    last_reading_time: Optional[datetime] = None,
    divergence_threshold: float = DEFAULT_DIVERGENCE_THRESHOLD,
) -> ValidationOutcome:
    """
    Validate the latest reading of a dual-channel sensor.

    Args:
        channel_a: Latest channel A measurement, or None if none arrived.
        channel_b: Latest channel B measurement, or None if none arrived.
        descriptor: Lookup for the sensor (location and downgrade flags), or
            None when the lookup failed; the reading then counts as not received.
        last_reading_time: Timestamp of the reading buffered on a previous
            tick; a measurement with the same timestamp is not new.
        divergence_threshold: Maximum mean percent difference (fraction).

    Returns:
        ValidationOutcome. Readings that were not received or are incomplete
        carry the default element; complete readings carry their measurements
        even when the channels diverged, flagged through the stored mean
        percent difference.
    """
    errors = set()

    if (
        descriptor is None
        or channel_a is None
        or channel_b is None
        or _is_repeat(channel_a.timestamp, last_reading_time)
    ):
        errors.add(SensorReadingError.ReadingNotReceived)
        outcome = ValidationOutcome(
            usable=False,
            errors=frozenset(errors),
            confidence=None,
            mean_percent_difference=None,
            element=Pm25BufferElement.default(),
        )
        logger.warning("Reading rejected: %s", outcome)
        return outcome

    pm_a, pm_b = channel_a.pm25, channel_b.pm25
    humidity = channel_a.humidity

    # 1. Completeness
    if pm_a is not None and pm_b is not None and humidity is None:
        errors.add(SensorReadingError.NoHumidityReading)
        errors.add(SensorReadingError.IncompleteSensorReading)
    if (
        pm_a is None
        or pm_b is None
        or humidity is None
        or channel_a.timestamp is None
        or descriptor.latitude is None
        or descriptor.longitude is None
    ):
        errors.add(SensorReadingError.IncompleteSensorReading)

    # 2. Downgraded channels are treated as diverged
    if descriptor.channel_a_downgraded:
        errors.add(SensorReadingError.ChannelADowngraded)
        errors.add(SensorReadingError.ChannelsDiverged)
    if descriptor.channel_b_downgraded:
        errors.add(SensorReadingError.ChannelBDowngraded)
        errors.add(SensorReadingError.ChannelsDiverged)

    # 3. Channel agreement
    confidence = None
    mpd = None
    if pm_a is not None and pm_b is not None:
        confidence = agreement_confidence(pm_a, pm_b)
        mpd = mean_percent_difference(pm_a, pm_b)
        if descriptor.channel_a_downgraded or descriptor.channel_b_downgraded:
            mpd = MAX_MEAN_PERCENT_DIFFERENCE
        if mpd > divergence_threshold:
            errors.add(SensorReadingError.ChannelsDiverged)

    if SensorReadingError.IncompleteSensorReading in errors:
        element = Pm25BufferElement.default()
    else:
        element = Pm25BufferElement(
            timestamp=_as_utc(channel_a.timestamp),
            channel_a_pm25=pm_a,
            channel_b_pm25=pm_b,
            humidity=humidity,
            latitude=descriptor.latitude,
            longitude=descriptor.longitude,
            mean_percent_difference=mpd,
        )

    outcome = ValidationOutcome(
        usable=not (errors & UNUSABLE_ERRORS),
        errors=frozenset(errors),
        confidence=confidence,
        mean_percent_difference=mpd,
        element=element,
    )
    if not outcome.usable:
        logger.warning("Reading rejected: %s", outcome)
    return outcome
