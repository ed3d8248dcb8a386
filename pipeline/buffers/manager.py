"""
Buffer Manager — owns the two rolling buffers of every tracked sensor.

  pm25 buffer: raw dual-channel readings, one slot per tick
  aqi buffer:  derived AQI values, one slot per tick

Index 0 is always the most recent slot and a buffer always holds exactly N
elements; unfilled slots hold the default element.

Creation is guarded by the tri-state BufferStatus. The first caller to move
DoesNotExist -> InProgress allocates; anyone observing InProgress skips the
tick rather than allocating a second buffer. A claim left InProgress for
longer than the claim timeout (the allocator died) is taken over by the next
caller.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, List, Optional, Union

from pipeline.buffers.elements import (
    ELEMENT_TYPES,
    AqiBufferElement,
    BufferKind,
    BufferStatus,
    Pm25BufferElement,
)
from pipeline.buffers.store import BufferNotReady, BufferStore

logger = logging.getLogger(__name__)

BufferElement = Union[Pm25BufferElement, AqiBufferElement]

DEFAULT_CLAIM_TIMEOUT_SECONDS = 300.0

__all__ = ["BufferManager", "BufferNotReady", "BufferElement"]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class BufferManager:

    def __init__(
        self,
        store: BufferStore,
        capacities: Dict[BufferKind, int],
        claim_timeout: float = DEFAULT_CLAIM_TIMEOUT_SECONDS,
        clock: Callable[[], datetime] = _utcnow,
    ):
        missing = [k.value for k in BufferKind if k not in capacities]
        if missing:
            raise ValueError(f"No capacity configured for buffer kind(s): {missing}")
        self._store = store
        self._capacities = dict(capacities)
        self._claim_timeout = timedelta(seconds=claim_timeout)
        self._clock = clock

    def capacity(self, kind: BufferKind) -> int:
        return self._capacities[kind]

    def _claim(self, sensor_id: str, kind: BufferKind) -> Optional[BufferStatus]:
        """Try to become the allocator. None on success, else the status to report."""
        status = self._store.get_status(sensor_id, kind)
        if status == BufferStatus.Exists:
            return status

        if status == BufferStatus.InProgress:
            cutoff = self._clock() - self._claim_timeout
            if self._store.take_over_stale_claim(sensor_id, kind, older_than=cutoff):
                logger.warning("Taking over stale %s buffer claim for sensor %s", kind.value, sensor_id)
                return None
            return status

        if not self._store.compare_and_set_status(
            sensor_id, kind, BufferStatus.DoesNotExist, BufferStatus.InProgress
        ):
            # Lost the race: someone else moved it first.
            return self._store.get_status(sensor_id, kind)
        return None

    def ensure_buffer(self, sensor_id: str, kind: BufferKind) -> BufferStatus:
        """
        Make sure the sensor's buffer exists.

        Returns:
            Exists if the buffer is ready (possibly just allocated here),
            InProgress if another actor is allocating it. The caller must treat
            anything but Exists as "skip this sensor this tick".
        """
        status = self._claim(sensor_id, kind)
        if status is not None:
            return status

        size = self._capacities[kind]
        default = ELEMENT_TYPES[kind].default().to_record()
        try:
            self._store.replace_buffer(
                sensor_id, kind, [dict(default) for _ in range(size)], BufferStatus.Exists
            )
        except Exception:
            # Release the claim so the next tick can try again.
            self._store.compare_and_set_status(
                sensor_id, kind, BufferStatus.InProgress, BufferStatus.DoesNotExist
            )
            raise
        logger.info("Allocated %s buffer (%d slots) for sensor %s", kind.value, size, sensor_id)
        return BufferStatus.Exists

    def append(self, sensor_id: str, kind: BufferKind, element: BufferElement) -> List[BufferElement]:
        """
        Insert element at index 0 and drop the oldest slot.

        A buffer stored at a different capacity is padded with default slots
        or cut to the configured size in the same write.

        Returns:
            The buffer after the append, most recent first.

        Raises:
            BufferNotReady: the buffer status is not Exists.
        """
        element_type = ELEMENT_TYPES[kind]
        if not isinstance(element, element_type):
            raise TypeError(f"{kind.value} buffer expects {element_type.__name__}")

        size = self._capacities[kind]
        record = element.to_record()
        default = element_type.default().to_record()

        def shift(records):
            shifted = ([record] + records)[:size]
            return shifted + [dict(default) for _ in range(size - len(shifted))]

        records = self._store.update_buffer(sensor_id, kind, shift)
        return [element_type.from_record(r) for r in records]

    def read(self, sensor_id: str, kind: BufferKind) -> Optional[List[BufferElement]]:
        """Current buffer contents, or None when the buffer is not ready."""
        status, records = self._store.read_buffer(sensor_id, kind)
        if status != BufferStatus.Exists:
            return None
        element_type = ELEMENT_TYPES[kind]
        return [element_type.from_record(r) for r in records]


