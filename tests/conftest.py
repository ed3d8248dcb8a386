"""Shared test fixtures and configuration for the AirWatch test suite."""

import os

# api.database builds its engine at import time; keep it off Postgres.
os.environ.setdefault("DATABASE_URL", "sqlite:///./airwatch_test.db")

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from api.models.db_models import Base, Sensor
from pipeline.buffers.elements import Pm25BufferElement
from pipeline.ingestion.sensor_adapter import ChannelAccess, SensorDescriptor

NOW = datetime(2026, 10, 19, 12, 0, tzinfo=timezone.utc)


@pytest.fixture()
def db_engine(tmp_path):
    """A fresh SQLite database with every table created."""
    engine = create_engine(f"sqlite:///{tmp_path / 'airwatch.db'}")
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture()
def db_session(db_engine):
    Session = sessionmaker(bind=db_engine)
    session = Session()
    yield session
    session.close()


@pytest.fixture()
def seeded_engine(db_engine):
    """Engine whose sensors table holds one active and one inactive sensor."""
    Session = sessionmaker(bind=db_engine)
    with Session() as db:
        db.add(Sensor(id="S001", purpleair_id=31105, name="Library Rooftop", is_active=True))
        db.add(Sensor(id="S002", purpleair_id=31107, name="Community Center", is_active=False))
        db.commit()
    return db_engine


@pytest.fixture()
def descriptor():
    return SensorDescriptor(
        latitude=40.0,
        longitude=-105.0,
        channel_a_primary=ChannelAccess("1001", "KEYA1"),
        channel_a_secondary=ChannelAccess("1002", "KEYA2"),
        channel_b_primary=ChannelAccess("1003", "KEYB1"),
        channel_b_secondary=ChannelAccess("1004", "KEYB2"),
        label="Library Rooftop",
    )


def make_element(pm25=10.0, humidity=40.0, mpd=0.05, minutes_ago=0):
    """A received reading with both channels at pm25."""
    return Pm25BufferElement(
        timestamp=NOW - timedelta(minutes=minutes_ago),
        channel_a_pm25=pm25,
        channel_b_pm25=pm25,
        humidity=humidity,
        latitude=40.0,
        longitude=-105.0,
        mean_percent_difference=mpd,
    )


def make_hour(valid=30, invalid=0, pm25=10.0, humidity=40.0, size=30):
    """One hour span: valid readings, then diverged ones, padded with defaults."""
    span = [make_element(pm25, humidity) for _ in range(valid)]
    span += [make_element(pm25, humidity, mpd=1.5) for _ in range(invalid)]
    span += [Pm25BufferElement.default() for _ in range(size - len(span))]
    return span
