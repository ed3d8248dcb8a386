"""
Buffer persistence interface.

A store keeps, per (sensor, buffer kind), a status field and a list of
encoded element records. Every mutation is atomic: a reader never sees a
half-shifted buffer or a status that disagrees with the contents.
"""

import abc
import copy
import threading
from datetime import datetime, timezone
from typing import Callable, Dict, List, Tuple

from pipeline.buffers.elements import BufferKind, BufferStatus

Records = List[dict]


class BufferNotReady(RuntimeError):
    """An append was attempted on a buffer whose status is not Exists."""

    def __init__(self, sensor_id: str, kind: BufferKind, status: BufferStatus):
        super().__init__(
            f"{kind.value} buffer for sensor {sensor_id} is {status.value}, not Exists"
        )
        self.sensor_id = sensor_id
        self.kind = kind
        self.status = status


class BufferStore(abc.ABC):

    @abc.abstractmethod
    def get_status(self, sensor_id: str, kind: BufferKind) -> BufferStatus:
        """Current status; DoesNotExist when nothing was ever stored."""

    @abc.abstractmethod
    def compare_and_set_status(
        self,
        sensor_id: str,
        kind: BufferKind,
        expected: BufferStatus,
        new: BufferStatus,
    ) -> bool:
        """Atomically move expected -> new. False if the status was anything else."""

    @abc.abstractmethod
    def take_over_stale_claim(
        self,
        sensor_id: str,
        kind: BufferKind,
        older_than: datetime,
    ) -> bool:
        """
        Refresh an InProgress claim last touched before older_than, in one
        compare-and-set on (status, updated time). True means the caller now
        holds the claim and must allocate.
        """

    @abc.abstractmethod
    def replace_buffer(
        self,
        sensor_id: str,
        kind: BufferKind,
        records: Records,
        status: BufferStatus,
    ) -> None:
        """Write the whole buffer and its status in one transaction."""

    @abc.abstractmethod
    def update_buffer(
        self,
        sensor_id: str,
        kind: BufferKind,
        mutate: Callable[[Records], Records],
    ) -> Records:
        """
        Read-modify-write the records of an existing buffer in one transaction.

        Raises:
            BufferNotReady: the buffer status is not Exists.
        """

    @abc.abstractmethod
    def read_buffer(self, sensor_id: str, kind: BufferKind) -> Tuple[BufferStatus, Records]:
        """Status and a copy of the records (empty unless Exists)."""

    @abc.abstractmethod
    def delete_buffers(self, sensor_id: str) -> None:
        """Drop both buffers of a sensor that is no longer tracked."""


def _now() -> datetime:
    return datetime.now(timezone.utc)


class InMemoryBufferStore(BufferStore):
    """Process-local store guarded by a single lock."""

    def __init__(self):
        self._lock = threading.Lock()
        self._status: Dict[Tuple[str, BufferKind], BufferStatus] = {}
        self._records: Dict[Tuple[str, BufferKind], Records] = {}
        self._updated_at: Dict[Tuple[str, BufferKind], datetime] = {}

    def get_status(self, sensor_id, kind):
        with self._lock:
            return self._status.get((sensor_id, kind), BufferStatus.DoesNotExist)

    def compare_and_set_status(self, sensor_id, kind, expected, new):
        key = (sensor_id, kind)
        with self._lock:
            if self._status.get(key, BufferStatus.DoesNotExist) != expected:
                return False
            self._status[key] = new
            self._updated_at[key] = _now()
            return True

    def take_over_stale_claim(self, sensor_id, kind, older_than):
        key = (sensor_id, kind)
        with self._lock:
            if self._status.get(key) != BufferStatus.InProgress:
                return False
            if self._updated_at[key] >= older_than:
                return False
            self._updated_at[key] = _now()
            return True

    def replace_buffer(self, sensor_id, kind, records, status):
        key = (sensor_id, kind)
        with self._lock:
            self._records[key] = copy.deepcopy(records)
            self._status[key] = status
            self._updated_at[key] = _now()

    def update_buffer(self, sensor_id, kind, mutate):
        key = (sensor_id, kind)
        with self._lock:
            status = self._status.get(key, BufferStatus.DoesNotExist)
            if status != BufferStatus.Exists:
                raise BufferNotReady(sensor_id, kind, status)
            updated = mutate(copy.deepcopy(self._records[key]))
            self._records[key] = updated
            self._updated_at[key] = _now()
            return copy.deepcopy(updated)

    def read_buffer(self, sensor_id, kind):
        key = (sensor_id, kind)
        with self._lock:
            status = self._status.get(key, BufferStatus.DoesNotExist)
            if status != BufferStatus.Exists:
                return status, []
            return status, copy.deepcopy(self._records[key])

    def delete_buffers(self, sensor_id):
        with self._lock:
            for kind in BufferKind:
                self._status.pop((sensor_id, kind), None)
                self._records.pop((sensor_id, kind), None)
                self._updated_at.pop((sensor_id, kind), None)
