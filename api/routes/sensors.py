"""
Sensors routes — published AQI state, reading export, tracking toggle.
"""
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import Response
from sqlalchemy.orm import Session

from api.database import get_db
from api.models.db_models import Sensor
from pipeline.persistence.buffer_store import SqlBufferStore
from pipeline.persistence.sensors import readings_to_csv

router = APIRouter()


def _iso(ts) -> Optional[str]:
    return ts.isoformat() if ts else None


def _serialize(s: Sensor) -> dict:
    has_aqi = s.is_valid and s.aqi is not None
    return {
        "id": s.id,
        "purpleair_id": s.purpleair_id,
        "name": s.name,
        "is_active": s.is_active,
        "latitude": s.latitude,
        "longitude": s.longitude,
        "aqi": s.aqi if has_aqi else None,
        "status": "ok" if has_aqi else "insufficient_data",
        "nowcast_pm25": s.nowcast_pm25,
        "invalid_aqi_reason": s.invalid_aqi_reason,
        "reading_errors": s.reading_errors or [],
        "reading_confidence": s.reading_confidence,
        "aqi_timestamp": _iso(s.aqi_timestamp),
        "last_valid_aqi_time": _iso(s.last_valid_aqi_time),
        "last_sensor_reading_time": _iso(s.last_sensor_reading_time),
        "last_updated": _iso(s.last_updated),
    }


def _get_or_404(db: Session, sensor_id: str) -> Sensor:
    sensor = db.query(Sensor).filter(Sensor.id == sensor_id).first()
    if not sensor:
        raise HTTPException(status_code=404, detail=f"Sensor '{sensor_id}' not found")
    return sensor


@router.get("/")
def list_sensors(
    active_only: bool = False,
    db: Session = Depends(get_db),
):
    """Latest published state of every sensor."""
    query = db.query(Sensor)
    if active_only:
        query = query.filter(Sensor.is_active.is_(True))
    return [_serialize(s) for s in query.order_by(Sensor.id).all()]


@router.get("/{sensor_id}")
def get_sensor(sensor_id: str, db: Session = Depends(get_db)):
    return _serialize(_get_or_404(db, sensor_id))


@router.get("/{sensor_id}/readings.csv")
def export_readings(sensor_id: str, db: Session = Depends(get_db)):
    """Historical readings of one sensor, oldest first."""
    _get_or_404(db, sensor_id)
    return Response(
        content=readings_to_csv(db, sensor_id),
        media_type="text/csv",
        headers={"Content-Disposition": f'attachment; filename="readings_{sensor_id}.csv"'},
    )


@router.patch("/{sensor_id}/active")
def set_sensor_active(
    sensor_id: str,
    body: dict,
    db: Session = Depends(get_db),
):
    """Start or stop tracking a sensor. Stopping drops its buffers."""
    sensor = _get_or_404(db, sensor_id)

    is_active = body.get("is_active")
    if not isinstance(is_active, bool):
        raise HTTPException(status_code=400, detail="is_active must be true or false")

    sensor.is_active = is_active
    db.commit()
    if not is_active:
        SqlBufferStore(db.get_bind()).delete_buffers(sensor_id)
    db.refresh(sensor)
    return {"id": sensor.id, "is_active": sensor.is_active}
