"""
AQI Calculator — PM2.5 buffer -> AQI buffer element.

Steps, per sensor and tick:
  1. Split the PM2.5 buffer (most recent first) into one-hour spans
  2. Check that at least two of the last three hours received enough readings
  3. Check that at least two of the last three hours had enough valid readings
  4. Correct each qualifying hour (EPA humidity correction) and combine them
     with the NowCast recency weighting
  5. Convert the NowCast concentration to AQI

Never raises on bad data: every failure maps to an InvalidAqiReason and the
default AqiBufferElement.
"""

import enum
import logging
import math
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, List, Optional, Sequence

from pipeline.aqi.breakpoints import aqi_from_pm25
from pipeline.buffers.elements import AqiBufferElement, Pm25BufferElement

logger = logging.getLogger(__name__)

READINGS_PER_HOUR = 30
LOOKBACK_HOURS = 12
MEASUREMENT_COUNT_THRESHOLD = 23      # 75% of 30 two-minute readings
RECENT_HOURS = 3
RECENT_HOURS_REQUIRED = 2
DIVERGENCE_THRESHOLD = 0.7
MINIMUM_WEIGHT_FACTOR = 0.5


class InvalidAqiReason(str, enum.Enum):
    InfiniteAqi = "InfiniteAqi"
    NotEnoughNewReadings = "NotEnoughNewReadings"
    NotEnoughRecentValidReadings = "NotEnoughRecentValidReadings"


@dataclass(frozen=True)
class HourSummary:
    """Counts and (if enough valid readings) averages for one hour span."""
    hours_ago: int
    received: int
    valid: int
    pm25: Optional[float] = None
    humidity: Optional[float] = None
    corrected_pm25: Optional[float] = None


@dataclass(frozen=True)
class AqiComputation:
    element: AqiBufferElement
    reason: Optional[InvalidAqiReason] = None
    nowcast_pm25: Optional[float] = None
    hours: List[HourSummary] = field(default_factory=list)

    @property
    def is_valid(self) -> bool:
        return self.reason is None


def epa_correction(pm25: float, humidity: float) -> float:
    """EPA US-wide correction for this sensor family's PM2.5."""
    return 0.534 * pm25 - 0.0844 * humidity + 5.604


def partition_hours(
    buffer: Sequence[Pm25BufferElement],
    readings_per_hour: int = READINGS_PER_HOUR,
    lookback_hours: int = LOOKBACK_HOURS,
) -> List[List[Pm25BufferElement]]:
    """Consecutive spans of readings_per_hour slots, most recent hour first."""
    return [
        list(buffer[h * readings_per_hour:(h + 1) * readings_per_hour])
        for h in range(lookback_hours)
    ]


def summarize_hour(
    hours_ago: int,
    span: Sequence[Pm25BufferElement],
    divergence_threshold: float = DIVERGENCE_THRESHOLD,
    measurement_count_threshold: int = MEASUREMENT_COUNT_THRESHOLD,
) -> HourSummary:
    received = [e for e in span if not e.is_default]
    valid = [e for e in received if e.is_valid(divergence_threshold)]
    if len(valid) < measurement_count_threshold:
        return HourSummary(hours_ago=hours_ago, received=len(received), valid=len(valid))

    pm25 = sum(e.pm25 for e in valid) / len(valid)
    humidity = sum(e.humidity for e in valid) / len(valid)
    return HourSummary(
        hours_ago=hours_ago,
        received=len(received),
        valid=len(valid),
        pm25=pm25,
        humidity=humidity,
        corrected_pm25=epa_correction(pm25, humidity),
    )


def nowcast(hourly: Sequence[Optional[float]]) -> float:
    """
    EPA NowCast over hourly concentrations, most recent first.

    Missing hours (None) contribute nothing but still age the later hours.
    """
    present = [c for c in hourly if c is not None]
    if not present:
        return math.nan

    low, high = min(present), max(present)
    if high > 0:
        weight_factor = max(MINIMUM_WEIGHT_FACTOR, 1 - (high - low) / high)
    else:
        weight_factor = 1.0

    weighted_sum = 0.0
    weight_sum = 0.0
    weight = 1.0
    for concentration in hourly:
        if concentration is not None:
            weighted_sum += weight * concentration
            weight_sum += weight
        weight *= weight_factor
    return weighted_sum / weight_sum


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def compute_aqi(
    buffer: Sequence[Pm25BufferElement],
    readings_per_hour: int = READINGS_PER_HOUR,
    lookback_hours: int = LOOKBACK_HOURS,
    divergence_threshold: float = DIVERGENCE_THRESHOLD,
    measurement_count_threshold: int = MEASUREMENT_COUNT_THRESHOLD,
    recent_hours_required: int = RECENT_HOURS_REQUIRED,
    clock: Callable[[], datetime] = _utcnow,
) -> AqiComputation:
    """
    Derive the AQI for one sensor from its PM2.5 buffer.

    Args:
        buffer: PM2.5 buffer, index 0 most recent.
        readings_per_hour: Slots per one-hour span (the feed's cadence).
        lookback_hours: Hours fed into the NowCast.
        divergence_threshold: Max mean percent difference of a valid element.
        measurement_count_threshold: Readings an hour needs to count.
        recent_hours_required: Qualifying hours needed among the last three.
        clock: Source of the timestamp stamped on a computed element.

    Returns:
        AqiComputation whose element is the default element whenever reason
        is set.
    """
    hours = [
        summarize_hour(h, span, divergence_threshold, measurement_count_threshold)
        for h, span in enumerate(partition_hours(buffer, readings_per_hour, lookback_hours))
    ]
    recent = hours[:RECENT_HOURS]

    received_hours = sum(1 for s in recent if s.received >= measurement_count_threshold)
    if received_hours < recent_hours_required:
        logger.info(
            "AQI invalid: only %d of the last %d hours received %d+ readings",
            received_hours, RECENT_HOURS, measurement_count_threshold,
        )
        return AqiComputation(
            element=AqiBufferElement.default(),
            reason=InvalidAqiReason.NotEnoughNewReadings,
            hours=hours,
        )

    valid_hours = sum(1 for s in recent if s.valid >= measurement_count_threshold)
    if valid_hours < recent_hours_required:
        logger.info(
            "AQI invalid: only %d of the last %d hours had %d+ valid readings",
            valid_hours, RECENT_HOURS, measurement_count_threshold,
        )
        return AqiComputation(
            element=AqiBufferElement.default(),
            reason=InvalidAqiReason.NotEnoughRecentValidReadings,
            hours=hours,
        )

    concentration = nowcast([s.corrected_pm25 for s in hours])
    aqi = aqi_from_pm25(concentration)
    if not math.isfinite(aqi):
        logger.warning("AQI invalid: NowCast PM2.5 %.2f maps to %s", concentration, aqi)
        return AqiComputation(
            element=AqiBufferElement.default(),
            reason=InvalidAqiReason.InfiniteAqi,
            nowcast_pm25=concentration,
            hours=hours,
        )

    return AqiComputation(
        element=AqiBufferElement(timestamp=clock(), aqi=aqi),
        nowcast_pm25=concentration,
        hours=hours,
    )
