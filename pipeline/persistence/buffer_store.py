"""
SQL-backed buffer store.

Each (sensor, kind) pair is one row of sensor_buffers holding the status and
the JSON-encoded element list. Every operation runs in its own transaction:
  - status compare-and-set is a single conditional UPDATE, or an INSERT that
    loses to a concurrent creator on the primary key
  - a stale InProgress claim is taken over by a conditional UPDATE on
    (status, updated_at), so only one claimant wins it
  - appends lock the row (SELECT ... FOR UPDATE where supported) and rewrite
    the whole list before committing
"""

import json
import logging
from datetime import datetime, timezone

from sqlalchemy import delete, select, update
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from api.models.db_models import SensorBuffer
from pipeline.buffers.elements import BufferStatus
from pipeline.buffers.store import BufferNotReady, BufferStore

logger = logging.getLogger(__name__)


def _now() -> datetime:
    return datetime.now(timezone.utc)


class SqlBufferStore(BufferStore):

    def __init__(self, sql_engine: Engine):
        self._engine = sql_engine

    def get_status(self, sensor_id, kind):
        with Session(self._engine) as db:
            status = db.execute(
                select(SensorBuffer.status).where(
                    SensorBuffer.sensor_id == sensor_id,
                    SensorBuffer.kind == kind,
                )
            ).scalar_one_or_none()
        return status if status is not None else BufferStatus.DoesNotExist

    def compare_and_set_status(self, sensor_id, kind, expected, new):
        with Session(self._engine) as db:
            with db.begin():
                result = db.execute(
                    update(SensorBuffer)
                    .where(
                        SensorBuffer.sensor_id == sensor_id,
                        SensorBuffer.kind == kind,
                        SensorBuffer.status == expected,
                    )
                    .values(status=new, updated_at=_now())
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount == 1:
                    return True
                if expected != BufferStatus.DoesNotExist:
                    return False
                row_exists = db.execute(
                    select(SensorBuffer.sensor_id).where(
                        SensorBuffer.sensor_id == sensor_id,
                        SensorBuffer.kind == kind,
                    )
                ).first() is not None
                if row_exists:
                    return False

        # No row at all means DoesNotExist; the primary key lets exactly one
        # concurrent creator win the insert.
        try:
            with Session(self._engine) as db:
                with db.begin():
                    db.add(SensorBuffer(
                        sensor_id=sensor_id,
                        kind=kind,
                        status=new,
                        elements=None,
                        updated_at=_now(),
                    ))
        except IntegrityError:
            logger.info("Lost %s buffer creation race for sensor %s", kind.value, sensor_id)
            return False
        return True

    def take_over_stale_claim(self, sensor_id, kind, older_than):
        # SQLite keeps DateTime columns as naive text, so compare in UTC.
        cutoff = older_than.astimezone(timezone.utc)
        with Session(self._engine) as db:
            with db.begin():
                result = db.execute(
                    update(SensorBuffer)
                    .where(
                        SensorBuffer.sensor_id == sensor_id,
                        SensorBuffer.kind == kind,
                        SensorBuffer.status == BufferStatus.InProgress,
                        SensorBuffer.updated_at < cutoff,
                    )
                    .values(updated_at=_now())
                    .execution_options(synchronize_session=False)
                )
        return result.rowcount == 1

    def replace_buffer(self, sensor_id, kind, records, status):
        with Session(self._engine) as db:
            with db.begin():
                db.merge(SensorBuffer(
                    sensor_id=sensor_id,
                    kind=kind,
                    status=status,
                    elements=json.dumps(records),
                    updated_at=_now(),
                ))

    def update_buffer(self, sensor_id, kind, mutate):
        with Session(self._engine) as db:
            with db.begin():
                row = db.execute(
                    select(SensorBuffer)
                    .where(SensorBuffer.sensor_id == sensor_id, SensorBuffer.kind == kind)
                    .with_for_update()
                ).scalar_one_or_none()
                status = row.status if row is not None else BufferStatus.DoesNotExist
                if status != BufferStatus.Exists:
                    raise BufferNotReady(sensor_id, kind, status)

                updated = mutate(json.loads(row.elements or "[]"))
                row.elements = json.dumps(updated)
                row.updated_at = _now()
        return updated

    def read_buffer(self, sensor_id, kind):
        with Session(self._engine) as db:
            row = db.execute(
                select(SensorBuffer).where(
                    SensorBuffer.sensor_id == sensor_id,
                    SensorBuffer.kind == kind,
                )
            ).scalar_one_or_none()
            if row is None:
                return BufferStatus.DoesNotExist, []
            if row.status != BufferStatus.Exists:
                return row.status, []
            return row.status, json.loads(row.elements or "[]")

    def delete_buffers(self, sensor_id):
        with Session(self._engine) as db:
            with db.begin():
                db.execute(delete(SensorBuffer).where(SensorBuffer.sensor_id == sensor_id))
        logger.info("Deleted buffers for sensor %s", sensor_id)
