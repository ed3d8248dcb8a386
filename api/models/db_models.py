"""
SQLAlchemy ORM models for AirWatch.
Tables: sensors, sensor_buffers, sensor_readings
"""

import uuid

from sqlalchemy import (
    Column, String, Integer, Float, Boolean, DateTime, Text, JSON,
    ForeignKey, Enum, Index
)
from sqlalchemy.orm import declarative_base, relationship
from sqlalchemy.sql import func

from pipeline.buffers.elements import BufferKind, BufferStatus


Base = declarative_base()


class Sensor(Base):
    """A tracked sensor and the latest state published for consumers."""
    __tablename__ = "sensors"

    id = Column(String(20), primary_key=True)
    purpleair_id = Column(Integer, nullable=False, unique=True)
    name = Column(String(200), nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)
    latitude = Column(Float, nullable=True)
    longitude = Column(Float, nullable=True)
    # Latest AQI outcome
    is_valid = Column(Boolean, default=False, nullable=False)
    aqi = Column(Float, nullable=True)
    aqi_timestamp = Column(DateTime(timezone=True), nullable=True)
    nowcast_pm25 = Column(Float, nullable=True)
    invalid_aqi_reason = Column(String(50), nullable=True)
    # Latest reading outcome
    reading_errors = Column(JSON, nullable=True)
    reading_confidence = Column(Integer, nullable=True)
    last_sensor_reading_time = Column(DateTime(timezone=True), nullable=True)
    last_valid_aqi_time = Column(DateTime(timezone=True), nullable=True)
    last_updated = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    buffers = relationship("SensorBuffer", back_populates="sensor", cascade="all, delete-orphan")
    readings = relationship("SensorReading", back_populates="sensor", cascade="all, delete-orphan")

    __table_args__ = (
        Index("ix_sensors_is_active", "is_active"),
    )


class SensorBuffer(Base):
    """One rolling buffer (pm25 or aqi) of one sensor, stored as a JSON list."""
    __tablename__ = "sensor_buffers"

    sensor_id = Column(String(20), ForeignKey("sensors.id"), primary_key=True)
    kind = Column(Enum(BufferKind, name="bufferkind"), primary_key=True)
    status = Column(Enum(BufferStatus, name="bufferstatus"), nullable=False)
    elements = Column(Text, nullable=True)
    updated_at = Column(DateTime(timezone=True), nullable=True)

    sensor = relationship("Sensor", back_populates="buffers")


class SensorReading(Base):
    """Historical record of every new reading received for a sensor."""
    __tablename__ = "sensor_readings"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    sensor_id = Column(String(20), ForeignKey("sensors.id"), nullable=False)
    timestamp = Column(DateTime(timezone=True), nullable=False)
    channel_a_pm25 = Column(Float, nullable=True)
    channel_b_pm25 = Column(Float, nullable=True)
    humidity = Column(Float, nullable=True)
    latitude = Column(Float, nullable=True)
    longitude = Column(Float, nullable=True)
    mean_percent_difference = Column(Float, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    sensor = relationship("Sensor", back_populates="readings")

    __table_args__ = (
        Index("ix_sensor_readings_sensor_timestamp", "sensor_id", "timestamp"),
        Index("ix_sensor_readings_timestamp", "timestamp"),
    )
