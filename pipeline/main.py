"""
AirWatch — Pipeline Main Entry Point

APScheduler (BackgroundScheduler) drives two jobs:
  sensor_tick: every POLL_INTERVAL_SECONDS, for every active sensor in
      parallel (ThreadPoolExecutor):
        1. Fetch the sensor lookup and the latest reading of both channels
        2. Ensure the PM2.5 buffer exists, validate the reading, append it
        3. Compute the NowCast AQI from the PM2.5 buffer
        4. Ensure the AQI buffer exists, append the AQI element
        5. Record the reading history and publish the sensor's state
  prune_readings: daily, drops historical readings past the retention window

A failure for one sensor is logged and never affects the others.
"""

import logging
import signal
import sys
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import List, Optional

from sqlalchemy.orm import Session

from pipeline.aqi.calculator import AqiComputation, compute_aqi
from pipeline.buffers.elements import BufferKind, BufferStatus
from pipeline.buffers.manager import BufferManager
from pipeline.buffers.store import BufferStore
from pipeline.config import Settings, load_settings
from pipeline.ingestion.purpleair_client import fetch_channel_measurement, fetch_sensor_descriptor
from pipeline.ingestion.sensor_adapter import MalformedResponse
from pipeline.ingestion.validator import ValidationOutcome, validate_reading
from pipeline.persistence.sensors import (
    TrackedSensor,
    get_last_reading_time,
    load_active_sensors,
    prune_old_readings,
    publish_sensor_state,
    record_reading,
)

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [PIPELINE] %(levelname)s %(name)s: %(message)s",
    datefmt="%Y-%m-%dT%H:%M:%S",
    stream=sys.stdout,
)
logger = logging.getLogger("pipeline.main")


@dataclass
class TickResult:
    """What happened to one sensor during one tick."""
    sensor_id: str
    outcome: Optional[ValidationOutcome] = None
    computation: Optional[AqiComputation] = None
    skipped: Optional[str] = None


def build_buffer_manager(store: BufferStore, settings: Settings) -> BufferManager:
    return BufferManager(
        store,
        {
            BufferKind.pm25: settings.pm25_buffer_size,
            BufferKind.aqi: settings.aqi_buffer_size,
        },
        claim_timeout=settings.buffer_claim_timeout_seconds,
    )


def process_sensor(
    sensor: TrackedSensor,
    settings: Settings,
    manager: BufferManager,
    sql_engine,
) -> TickResult:
    """
    Run one tick for one sensor. Persistence errors propagate to the caller.

    A failed lookup still occupies the tick's slot with the default element,
    so an outage ages the buffer like any other missing reading.
    """
    try:
        descriptor = fetch_sensor_descriptor(sensor.purpleair_id, settings)
    except MalformedResponse as exc:
        logger.warning("Malformed lookup for sensor %s: %s", sensor.sensor_id, exc)
        descriptor = None

    if descriptor is None:
        logger.warning("No lookup for sensor %s, buffering a missing reading", sensor.sensor_id)
        channel_a = channel_b = None
    else:
        channel_a = fetch_channel_measurement(descriptor.channel_a_primary, settings)
        channel_b = fetch_channel_measurement(descriptor.channel_b_primary, settings)

    pm25_status = manager.ensure_buffer(sensor.sensor_id, BufferKind.pm25)

    with Session(sql_engine) as db:
        last_reading_time = get_last_reading_time(db, sensor.sensor_id)

    outcome = validate_reading(
        channel_a,
        channel_b,
        descriptor,
        last_reading_time=last_reading_time,
        divergence_threshold=settings.divergence_threshold,
    )

    computation = None
    if pm25_status == BufferStatus.Exists:
        pm25_buffer = manager.append(sensor.sensor_id, BufferKind.pm25, outcome.element)
        computation = compute_aqi(
            pm25_buffer,
            readings_per_hour=settings.readings_per_hour,
            lookback_hours=settings.lookback_hours,
            divergence_threshold=settings.divergence_threshold,
            measurement_count_threshold=settings.measurement_count_threshold,
            recent_hours_required=settings.recent_hours_required,
        )
        if manager.ensure_buffer(sensor.sensor_id, BufferKind.aqi) == BufferStatus.Exists:
            manager.append(sensor.sensor_id, BufferKind.aqi, computation.element)
        else:
            logger.info("AQI buffer for %s not ready, skipping append", sensor.sensor_id)
    else:
        logger.info("PM2.5 buffer for %s is %s, skipping append", sensor.sensor_id, pm25_status.value)

    with Session(sql_engine) as db:
        try:
            if pm25_status == BufferStatus.Exists and not outcome.element.is_default:
                record_reading(db, sensor.sensor_id, outcome.element)
            publish_sensor_state(db, sensor.sensor_id, outcome, computation, descriptor)
            db.commit()
        except Exception:
            db.rollback()
            raise

    if computation is not None and computation.is_valid:
        logger.info("Sensor %s AQI=%.0f (NowCast PM2.5 %.1f)",
                    sensor.sensor_id, computation.element.aqi, computation.nowcast_pm25)
    elif computation is not None:
        logger.info("Sensor %s AQI invalid: %s", sensor.sensor_id, computation.reason.value)

    return TickResult(sensor.sensor_id, outcome=outcome, computation=computation,
                      skipped=None if computation is not None else "buffer not ready")


def run_tick(settings: Settings, manager: BufferManager, sql_engine) -> List[TickResult]:
    """One scheduler tick across every active sensor."""
    with Session(sql_engine) as db:
        sensors = load_active_sensors(db)

    logger.info("Tick starting for %d sensors", len(sensors))
    results = []
    if not sensors:
        return results

    with ThreadPoolExecutor(max_workers=min(settings.max_workers, len(sensors))) as pool:
        futures = {
            pool.submit(process_sensor, sensor, settings, manager, sql_engine): sensor
            for sensor in sensors
        }
        for future in as_completed(futures):
            sensor = futures[future]
            try:
                result = future.result()
            except Exception as exc:
                logger.error("Tick failed for sensor %s: %s", sensor.sensor_id, exc)
                continue
            if result.skipped:
                logger.warning("Sensor %s skipped: %s", sensor.sensor_id, result.skipped)
            results.append(result)

    logger.info("Tick complete: %d/%d sensors processed", len(results), len(sensors))
    return results


def prune_job(settings: Settings, sql_engine) -> int:
    with Session(sql_engine) as db:
        try:
            removed = prune_old_readings(db, settings.reading_retention_days)
            db.commit()
        except Exception:
            db.rollback()
            raise
    return removed


# ── Main entry point ──────────────────────────────────────────────────────────

def main() -> None:
    from apscheduler.schedulers.background import BackgroundScheduler
    from sqlalchemy import create_engine

    from pipeline.persistence.buffer_store import SqlBufferStore
    from pipeline.persistence.sensors import seed_sensors

    running = True

    def _shutdown(sig, frame):
        nonlocal running
        logger.info("Shutdown signal (%s), stopping scheduler.", sig)
        running = False

    signal.signal(signal.SIGINT, _shutdown)
    signal.signal(signal.SIGTERM, _shutdown)

    settings = load_settings()
    sql_engine = create_engine(settings.database_url, pool_pre_ping=True, pool_recycle=300)

    with Session(sql_engine) as db:
        seed_sensors(db, settings.sensors_config)
        db.commit()

    manager = build_buffer_manager(SqlBufferStore(sql_engine), settings)

    scheduler = BackgroundScheduler()
    scheduler.add_job(
        func=run_tick,
        args=[settings, manager, sql_engine],
        trigger="interval",
        seconds=settings.poll_interval_seconds,
        next_run_time=datetime.now(timezone.utc),  # run immediately on start
        id="sensor_tick",
        name="Sensor Tick",
        max_instances=1,
        coalesce=True,
    )
    scheduler.add_job(
        func=prune_job,
        args=[settings, sql_engine],
        trigger="interval",
        days=1,
        id="prune_readings",
        name="Prune Old Readings",
        max_instances=1,
        coalesce=True,
    )
    scheduler.start()
    logger.info("Scheduler started, polling every %ds", settings.poll_interval_seconds)

    try:
        while running:
            time.sleep(1)
    finally:
        logger.info("Stopping scheduler...")
        scheduler.shutdown(wait=False)
        sql_engine.dispose()
        logger.info("Pipeline stopped cleanly.")


if __name__ == "__main__":
    main()
