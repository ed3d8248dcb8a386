"""
Rolling-buffer element types.

In memory a missing value is None, so a legitimate 0.0 reading can never be
mistaken for "no reading". The NaN / null sentinel encoding used by the
persisted buffers exists only in to_record() / from_record().
"""

import enum
import math
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional


class BufferKind(str, enum.Enum):
    pm25 = "pm25"
    aqi = "aqi"


class BufferStatus(str, enum.Enum):
    """
    Creation state of one sensor's buffer.

    InProgress means another actor is allocating the buffer right now:
    appenders skip the tick instead of creating a second one.
    """
    Exists = "Exists"
    InProgress = "InProgress"
    DoesNotExist = "DoesNotExist"


def _encode_number(value: Optional[float]) -> float:
    return math.nan if value is None else float(value)


def _decode_number(value) -> Optional[float]:
    if value is None:
        return None
    value = float(value)
    return None if math.isnan(value) else value


def _encode_time(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def _decode_time(value) -> Optional[datetime]:
    if not value:
        return None
    dt = datetime.fromisoformat(value)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


@dataclass(frozen=True)
class Pm25BufferElement:
    """
    One slot of a sensor's raw PM2.5 buffer.

    timestamp is None only for the default element, which stands for
    "no usable reading this tick".
    """
    timestamp: Optional[datetime] = None
    channel_a_pm25: Optional[float] = None
    channel_b_pm25: Optional[float] = None
    humidity: Optional[float] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    mean_percent_difference: Optional[float] = None

    @classmethod
    def default(cls) -> "Pm25BufferElement":
        return cls()

    @property
    def is_default(self) -> bool:
        return self.timestamp is None

    @property
    def pm25(self) -> Optional[float]:
        """Average of the two channels."""
        if self.channel_a_pm25 is None or self.channel_b_pm25 is None:
            return None
        return (self.channel_a_pm25 + self.channel_b_pm25) / 2

    def is_valid(self, divergence_threshold: float) -> bool:
        """A received element whose channels agree within the threshold."""
        if self.is_default or self.pm25 is None or self.humidity is None:
            return False
        if self.mean_percent_difference is None:
            return False
        return self.mean_percent_difference <= divergence_threshold

    def to_record(self) -> dict:
        return {
            "timestamp": _encode_time(self.timestamp),
            "channelAPm25": _encode_number(self.channel_a_pm25),
            "channelBPm25": _encode_number(self.channel_b_pm25),
            "humidity": _encode_number(self.humidity),
            "latitude": _encode_number(self.latitude),
            "longitude": _encode_number(self.longitude),
            "meanPercentDifference": _encode_number(self.mean_percent_difference),
        }

    @classmethod
    def from_record(cls, record: dict) -> "Pm25BufferElement":
        timestamp = _decode_time(record.get("timestamp"))
        if timestamp is None:
            return cls.default()
        return cls(
            timestamp=timestamp,
            channel_a_pm25=_decode_number(record.get("channelAPm25")),
            channel_b_pm25=_decode_number(record.get("channelBPm25")),
            humidity=_decode_number(record.get("humidity")),
            latitude=_decode_number(record.get("latitude")),
            longitude=_decode_number(record.get("longitude")),
            mean_percent_difference=_decode_number(record.get("meanPercentDifference")),
        )


@dataclass(frozen=True)
class AqiBufferElement:
    """One slot of a sensor's derived AQI buffer; default = AQI not computable."""
    timestamp: Optional[datetime] = None
    aqi: Optional[float] = None

    @classmethod
    def default(cls) -> "AqiBufferElement":
        return cls()

    @property
    def is_default(self) -> bool:
        return self.timestamp is None

    def to_record(self) -> dict:
        return {"timestamp": _encode_time(self.timestamp), "aqi": _encode_number(self.aqi)}

    @classmethod
    def from_record(cls, record: dict) -> "AqiBufferElement":
        timestamp = _decode_time(record.get("timestamp"))
        if timestamp is None:
            return cls.default()
        return cls(timestamp=timestamp, aqi=_decode_number(record.get("aqi")))


ELEMENT_TYPES = {
    BufferKind.pm25: Pm25BufferElement,
    BufferKind.aqi: AqiBufferElement,
}
