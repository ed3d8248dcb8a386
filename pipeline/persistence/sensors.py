"""
Sensor bookkeeping: tracked sensors, published state, historical readings.

All helpers take an open Session and leave committing to the caller.
"""

import csv
import io
import json
import logging
import os
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import List, Optional

from sqlalchemy import delete, select
from sqlalchemy.orm import Session

from api.models.db_models import Sensor, SensorReading
from pipeline.aqi.calculator import AqiComputation
from pipeline.buffers.elements import Pm25BufferElement
from pipeline.ingestion.sensor_adapter import SensorDescriptor
from pipeline.ingestion.validator import ValidationOutcome

logger = logging.getLogger(__name__)

CSV_FIELDS = [
    "timestamp",
    "pm25",
    "mean_percent_difference",
    "humidity",
    "latitude",
    "longitude",
    "channel_a_pm25",
    "channel_b_pm25",
]


@dataclass(frozen=True)
class TrackedSensor:
    """Snapshot of a sensors row, safe to hand to worker threads."""
    sensor_id: str
    purpleair_id: int
    name: str


def _utc(ts: Optional[datetime]) -> Optional[datetime]:
    # SQLite hands back naive datetimes; everything is stored in UTC.
    if ts is None:
        return None
    return ts.replace(tzinfo=timezone.utc) if ts.tzinfo is None else ts.astimezone(timezone.utc)


def seed_sensors(db: Session, config_path: str) -> int:
    """Insert sensors from the JSON config that are not in the table yet."""
    if not os.path.exists(config_path):
        raise FileNotFoundError(f"Sensor config not found at {config_path}")

    with open(config_path, "r") as f:
        sensor_cfgs = json.load(f)

    seeded = 0
    for cfg in sensor_cfgs:
        if db.get(Sensor, cfg["sensor_id"]) is not None:
            continue
        db.add(Sensor(
            id=cfg["sensor_id"],
            purpleair_id=int(cfg["purpleair_id"]),
            name=cfg["name"],
            is_active=cfg.get("is_active", True),
            latitude=cfg.get("latitude"),
            longitude=cfg.get("longitude"),
        ))
        seeded += 1
    db.flush()
    if seeded:
        logger.info("Seeded %d sensors from %s", seeded, config_path)
    return seeded


def load_active_sensors(db: Session) -> List[TrackedSensor]:
    rows = db.execute(
        select(Sensor).where(Sensor.is_active.is_(True)).order_by(Sensor.id)
    ).scalars()
    return [TrackedSensor(sensor_id=s.id, purpleair_id=s.purpleair_id, name=s.name) for s in rows]


def get_last_reading_time(db: Session, sensor_id: str) -> Optional[datetime]:
    """Timestamp of the newest reading buffered for the sensor, if any."""
    ts = db.execute(
        select(Sensor.last_sensor_reading_time).where(Sensor.id == sensor_id)
    ).scalar_one_or_none()
    return _utc(ts)


def record_reading(db: Session, sensor_id: str, element: Pm25BufferElement) -> SensorReading:
    """Keep a historical row for a newly received reading."""
    if element.is_default:
        raise ValueError("Cannot record the default element as a reading")

    reading = SensorReading(
        sensor_id=sensor_id,
        timestamp=element.timestamp,
        channel_a_pm25=element.channel_a_pm25,
        channel_b_pm25=element.channel_b_pm25,
        humidity=element.humidity,
        latitude=element.latitude,
        longitude=element.longitude,
        mean_percent_difference=element.mean_percent_difference,
    )
    db.add(reading)

    sensor = db.get(Sensor, sensor_id)
    if sensor is not None:
        sensor.last_sensor_reading_time = element.timestamp
    return reading


def publish_sensor_state(
    db: Session,
    sensor_id: str,
    outcome: ValidationOutcome,
    computation: Optional[AqiComputation],
    descriptor: Optional[SensorDescriptor] = None,
) -> Sensor:
    """
    Write the tick's results onto the sensors row.

    computation is None when the PM2.5 buffer was not ready; the previous AQI
    state is then left untouched.
    """
    sensor = db.get(Sensor, sensor_id)
    if sensor is None:
        raise LookupError(f"Unknown sensor {sensor_id}")

    sensor.reading_errors = sorted(e.value for e in outcome.errors)
    sensor.reading_confidence = outcome.confidence
    if descriptor is not None:
        sensor.latitude = descriptor.latitude
        sensor.longitude = descriptor.longitude

    if computation is not None:
        sensor.is_valid = computation.is_valid
        sensor.invalid_aqi_reason = computation.reason.value if computation.reason else None
        sensor.nowcast_pm25 = computation.nowcast_pm25
        if computation.is_valid:
            sensor.aqi = computation.element.aqi
            sensor.aqi_timestamp = computation.element.timestamp
            sensor.last_valid_aqi_time = computation.element.timestamp
        else:
            sensor.aqi = None
            sensor.aqi_timestamp = None

    sensor.last_updated = datetime.now(timezone.utc)
    return sensor


def prune_old_readings(
    db: Session,
    retention_days: int,
    now: Optional[datetime] = None,
) -> int:
    """Delete historical readings older than the retention window."""
    now = now or datetime.now(timezone.utc)
    cutoff = now - timedelta(days=retention_days)
    result = db.execute(
        delete(SensorReading)
        .where(SensorReading.timestamp < cutoff)
        .execution_options(synchronize_session=False)
    )
    logger.info("Pruned %d readings older than %s", result.rowcount, cutoff.isoformat())
    return result.rowcount


def readings_to_csv(
    db: Session,
    sensor_id: str,
    since: Optional[datetime] = None,
) -> str:
    """Historical readings of one sensor as CSV, oldest first."""
    stmt = select(SensorReading).where(SensorReading.sensor_id == sensor_id)
    if since is not None:
        stmt = stmt.where(SensorReading.timestamp >= since)
    stmt = stmt.order_by(SensorReading.timestamp)

    out = io.StringIO()
    writer = csv.DictWriter(out, fieldnames=CSV_FIELDS)
    writer.writeheader()
    for r in db.execute(stmt).scalars():
        pm25 = None
        if r.channel_a_pm25 is not None and r.channel_b_pm25 is not None:
            pm25 = (r.channel_a_pm25 + r.channel_b_pm25) / 2
        writer.writerow({
            "timestamp": _utc(r.timestamp).isoformat(),
            "pm25": pm25,
            "mean_percent_difference": r.mean_percent_difference,
            "humidity": r.humidity,
            "latitude": r.latitude,
            "longitude": r.longitude,
            "channel_a_pm25": r.channel_a_pm25,
            "channel_b_pm25": r.channel_b_pm25,
        })
    return out.getvalue()
