"""
Tests for Module 06 — sensor bookkeeping: seeding, published state, history.
"""

import csv
import io
import json
from datetime import timedelta

import pytest

from api.models.db_models import Sensor, SensorReading
from pipeline.aqi.calculator import AqiComputation, InvalidAqiReason
from pipeline.buffers.elements import AqiBufferElement, Pm25BufferElement
from pipeline.config import Settings
from pipeline.ingestion.validator import SensorReadingError, ValidationOutcome
from pipeline.persistence.sensors import (
    get_last_reading_time,
    load_active_sensors,
    prune_old_readings,
    publish_sensor_state,
    readings_to_csv,
    record_reading,
    seed_sensors,
)

from conftest import NOW, make_element


def _outcome(errors=(), confidence=100):
    return ValidationOutcome(
        usable=not errors,
        errors=frozenset(errors),
        confidence=confidence,
        mean_percent_difference=0.0,
        element=Pm25BufferElement.default(),
    )


class TestSeedSensors:
    def test_seeds_from_config(self, db_session, tmp_path):
        path = tmp_path / "sensors.json"
        path.write_text(json.dumps([
            {"sensor_id": "S010", "purpleair_id": 1, "name": "One"},
            {"sensor_id": "S011", "purpleair_id": 2, "name": "Two", "is_active": False},
        ]))
        assert seed_sensors(db_session, str(path)) == 2
        db_session.commit()
        assert seed_sensors(db_session, str(path)) == 0
        assert [s.sensor_id for s in load_active_sensors(db_session)] == ["S010"]

    def test_bundled_config_loads(self, db_session):
        assert seed_sensors(db_session, Settings().sensors_config) >= 1

    def test_missing_config_fails_fast(self, db_session, tmp_path):
        with pytest.raises(FileNotFoundError):
            seed_sensors(db_session, str(tmp_path / "absent.json"))


class TestReadings:
    def test_record_updates_last_reading_time(self, seeded_engine, db_session):
        assert get_last_reading_time(db_session, "S001") is None
        record_reading(db_session, "S001", make_element())
        db_session.commit()
        assert get_last_reading_time(db_session, "S001") == NOW

    def test_default_element_rejected(self, seeded_engine, db_session):
        with pytest.raises(ValueError):
            record_reading(db_session, "S001", Pm25BufferElement.default())

    def test_prune_keeps_recent(self, seeded_engine, db_session):
        record_reading(db_session, "S001", make_element(minutes_ago=0))
        record_reading(db_session, "S001", make_element(minutes_ago=60 * 24 * 8))
        db_session.commit()
        removed = prune_old_readings(db_session, retention_days=7, now=NOW)
        db_session.commit()
        assert removed == 1
        assert db_session.query(SensorReading).count() == 1

    def test_csv_export(self, seeded_engine, db_session):
        record_reading(db_session, "S001", make_element(pm25=12.0, minutes_ago=0))
        record_reading(db_session, "S001", make_element(pm25=8.0, minutes_ago=2))
        db_session.commit()

        rows = list(csv.DictReader(io.StringIO(readings_to_csv(db_session, "S001"))))
        assert len(rows) == 2
        assert float(rows[0]["pm25"]) == 8.0
        assert float(rows[1]["pm25"]) == 12.0
        assert rows[1]["timestamp"] == NOW.isoformat()

    def test_csv_since_filter(self, seeded_engine, db_session):
        record_reading(db_session, "S001", make_element(minutes_ago=0))
        record_reading(db_session, "S001", make_element(minutes_ago=120))
        db_session.commit()
        rows = list(csv.DictReader(io.StringIO(
            readings_to_csv(db_session, "S001", since=NOW - timedelta(hours=1))
        )))
        assert len(rows) == 1


class TestPublishSensorState:
    def test_valid_aqi(self, seeded_engine, db_session):
        computation = AqiComputation(element=AqiBufferElement(timestamp=NOW, aqi=42.0), nowcast_pm25=10.1)
        publish_sensor_state(db_session, "S001", _outcome(), computation)
        db_session.commit()

        sensor = db_session.get(Sensor, "S001")
        assert sensor.is_valid is True
        assert sensor.aqi == 42.0
        assert sensor.nowcast_pm25 == 10.1
        assert sensor.reading_confidence == 100
        assert sensor.last_valid_aqi_time is not None

    def test_invalid_aqi_clears_value(self, seeded_engine, db_session):
        valid = AqiComputation(element=AqiBufferElement(timestamp=NOW, aqi=42.0))
        invalid = AqiComputation(
            element=AqiBufferElement.default(),
            reason=InvalidAqiReason.NotEnoughRecentValidReadings,
        )
        publish_sensor_state(db_session, "S001", _outcome(), valid)
        publish_sensor_state(
            db_session, "S001", _outcome([SensorReadingError.ChannelsDiverged], confidence=40), invalid
        )
        db_session.commit()

        sensor = db_session.get(Sensor, "S001")
        assert sensor.is_valid is False
        assert sensor.aqi is None
        assert sensor.invalid_aqi_reason == "NotEnoughRecentValidReadings"
        assert sensor.reading_errors == ["ChannelsDiverged"]
        # The last valid time survives an invalid tick.
        assert sensor.last_valid_aqi_time is not None

    def test_without_computation_keeps_aqi(self, seeded_engine, db_session):
        valid = AqiComputation(element=AqiBufferElement(timestamp=NOW, aqi=42.0))
        publish_sensor_state(db_session, "S001", _outcome(), valid)
        publish_sensor_state(db_session, "S001", _outcome([SensorReadingError.ReadingNotReceived]), None)
        db_session.commit()
        assert db_session.get(Sensor, "S001").aqi == 42.0

    def test_unknown_sensor(self, seeded_engine, db_session):
        with pytest.raises(LookupError):
            publish_sensor_state(db_session, "NOPE", _outcome(), None)
