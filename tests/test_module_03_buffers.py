"""
Tests for Module 03 — Buffer Manager, element encoding and buffer stores.
"""

import math
import threading
import time
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import update
from sqlalchemy.orm import Session

from api.models.db_models import SensorBuffer
from pipeline.buffers.elements import (
    AqiBufferElement,
    BufferKind,
    BufferStatus,
    Pm25BufferElement,
)
from pipeline.buffers.manager import BufferManager, BufferNotReady
from pipeline.buffers.store import InMemoryBufferStore
from pipeline.persistence.buffer_store import SqlBufferStore

from conftest import make_element

CAPACITIES = {BufferKind.pm25: 10, BufferKind.aqi: 5}


class SpyStore(InMemoryBufferStore):
    """Counts allocations and widens the window between claim and allocation."""

    def __init__(self):
        super().__init__()
        self.allocations = 0

    def replace_buffer(self, sensor_id, kind, records, status):
        self.allocations += 1
        time.sleep(0.05)
        super().replace_buffer(sensor_id, kind, records, status)


class FailingStore(InMemoryBufferStore):
    def replace_buffer(self, sensor_id, kind, records, status):
        raise RuntimeError("disk full")


# ============================================================
# Elements
# ============================================================

class TestElements:
    def test_default_is_default(self):
        assert Pm25BufferElement.default().is_default
        assert AqiBufferElement.default().is_default

    def test_zero_reading_is_not_missing(self):
        element = make_element(pm25=0.0, humidity=0.0, mpd=0.0)
        decoded = Pm25BufferElement.from_record(element.to_record())
        assert decoded.channel_a_pm25 == 0.0
        assert decoded.humidity == 0.0
        assert decoded.is_valid(0.7)

    def test_default_record_uses_nan(self):
        record = Pm25BufferElement.default().to_record()
        assert record["timestamp"] is None
        assert math.isnan(record["channelAPm25"])
        assert Pm25BufferElement.from_record(record) == Pm25BufferElement.default()

    def test_pm25_is_channel_average(self):
        element = Pm25BufferElement(
            timestamp=datetime(2026, 10, 19, tzinfo=timezone.utc),
            channel_a_pm25=10.0, channel_b_pm25=14.0,
        )
        assert element.pm25 == 12.0

    def test_validity_uses_threshold(self):
        assert make_element(mpd=0.7).is_valid(0.7)
        assert not make_element(mpd=0.71).is_valid(0.7)
        assert not Pm25BufferElement.default().is_valid(0.7)


# ============================================================
# Manager over the in-memory store
# ============================================================

class TestBufferManager:
    def test_missing_capacity_rejected(self):
        with pytest.raises(ValueError):
            BufferManager(InMemoryBufferStore(), {BufferKind.pm25: 10})

    def test_ensure_allocates_defaults(self):
        manager = BufferManager(InMemoryBufferStore(), CAPACITIES)
        assert manager.ensure_buffer("S001", BufferKind.pm25) == BufferStatus.Exists
        buffer = manager.read("S001", BufferKind.pm25)
        assert len(buffer) == 10
        assert all(e.is_default for e in buffer)

    def test_ensure_is_idempotent(self):
        store = SpyStore()
        manager = BufferManager(store, CAPACITIES)
        manager.ensure_buffer("S001", BufferKind.pm25)
        manager.ensure_buffer("S001", BufferKind.pm25)
        assert store.allocations == 1

    def test_read_before_ensure_is_none(self):
        manager = BufferManager(InMemoryBufferStore(), CAPACITIES)
        assert manager.read("S001", BufferKind.aqi) is None

    def test_append_shifts_and_keeps_length(self):
        manager = BufferManager(InMemoryBufferStore(), CAPACITIES)
        manager.ensure_buffer("S001", BufferKind.pm25)
        appended = [make_element(pm25=float(i), minutes_ago=20 - i) for i in range(15)]
        for element in appended:
            buffer = manager.append("S001", BufferKind.pm25, element)
            assert len(buffer) == 10
        # Most recent first, oldest five dropped.
        assert buffer == list(reversed(appended[5:]))

    def test_append_to_missing_buffer_raises(self):
        manager = BufferManager(InMemoryBufferStore(), CAPACITIES)
        with pytest.raises(BufferNotReady) as exc:
            manager.append("S001", BufferKind.pm25, make_element())
        assert exc.value.status == BufferStatus.DoesNotExist

    def test_append_while_in_progress_raises(self):
        store = InMemoryBufferStore()
        store.compare_and_set_status("S001", BufferKind.aqi, BufferStatus.DoesNotExist, BufferStatus.InProgress)
        manager = BufferManager(store, CAPACITIES)
        assert manager.ensure_buffer("S001", BufferKind.aqi) == BufferStatus.InProgress
        with pytest.raises(BufferNotReady):
            manager.append("S001", BufferKind.aqi, AqiBufferElement.default())

    def test_wrong_element_type_rejected(self):
        manager = BufferManager(InMemoryBufferStore(), CAPACITIES)
        manager.ensure_buffer("S001", BufferKind.aqi)
        with pytest.raises(TypeError):
            manager.append("S001", BufferKind.aqi, make_element())

    def test_failed_allocation_releases_claim(self):
        store = FailingStore()
        manager = BufferManager(store, CAPACITIES)
        with pytest.raises(RuntimeError):
            manager.ensure_buffer("S001", BufferKind.pm25)
        assert store.get_status("S001", BufferKind.pm25) == BufferStatus.DoesNotExist

    def test_stale_claim_is_taken_over(self):
        store = InMemoryBufferStore()
        store.compare_and_set_status("S001", BufferKind.pm25, BufferStatus.DoesNotExist, BufferStatus.InProgress)
        later = datetime.now(timezone.utc) + timedelta(hours=1)
        manager = BufferManager(store, CAPACITIES, claim_timeout=300, clock=lambda: later)

        assert manager.ensure_buffer("S001", BufferKind.pm25) == BufferStatus.Exists
        buffer = manager.read("S001", BufferKind.pm25)
        assert len(buffer) == 10
        assert all(e.is_default for e in buffer)

    def test_fresh_claim_is_left_alone(self):
        store = SpyStore()
        store.compare_and_set_status("S001", BufferKind.pm25, BufferStatus.DoesNotExist, BufferStatus.InProgress)
        manager = BufferManager(store, CAPACITIES, claim_timeout=300)
        for _ in range(3):
            assert manager.ensure_buffer("S001", BufferKind.pm25) == BufferStatus.InProgress
        assert store.allocations == 0

    def test_append_pads_to_raised_capacity(self):
        store = InMemoryBufferStore()
        BufferManager(store, {BufferKind.pm25: 5, BufferKind.aqi: 5}).ensure_buffer("S001", BufferKind.pm25)
        manager = BufferManager(store, CAPACITIES)

        latest = make_element(pm25=7.0)
        for _ in range(3):
            buffer = manager.append("S001", BufferKind.pm25, latest)
            assert len(buffer) == 10
        assert buffer[:3] == [latest] * 3
        assert all(e.is_default for e in buffer[3:])
        assert len(manager.read("S001", BufferKind.pm25)) == 10

    def test_append_trims_to_lowered_capacity(self):
        store = InMemoryBufferStore()
        BufferManager(store, CAPACITIES).ensure_buffer("S001", BufferKind.pm25)
        manager = BufferManager(store, {BufferKind.pm25: 4, BufferKind.aqi: 5})
        assert len(manager.append("S001", BufferKind.pm25, make_element())) == 4

    def test_concurrent_ensure_allocates_once(self):
        store = SpyStore()
        manager = BufferManager(store, CAPACITIES)
        results = []
        start = threading.Barrier(8)

        def worker():
            start.wait()
            results.append(manager.ensure_buffer("S001", BufferKind.pm25))

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert store.allocations == 1
        assert BufferStatus.Exists in results
        assert set(results) <= {BufferStatus.Exists, BufferStatus.InProgress}
        assert len(manager.read("S001", BufferKind.pm25)) == 10

    def test_concurrent_appends_lose_nothing(self):
        manager = BufferManager(InMemoryBufferStore(), {BufferKind.pm25: 100, BufferKind.aqi: 5})
        manager.ensure_buffer("S001", BufferKind.pm25)

        def worker(offset):
            for i in range(10):
                manager.append("S001", BufferKind.pm25, make_element(pm25=float(offset * 10 + i)))

        threads = [threading.Thread(target=worker, args=(n,)) for n in range(5)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        buffer = manager.read("S001", BufferKind.pm25)
        assert len(buffer) == 100
        assert sorted(e.channel_a_pm25 for e in buffer if not e.is_default) == [float(v) for v in range(50)]


# ============================================================
# SQL store
# ============================================================

class TestSqlBufferStore:
    def test_status_defaults_to_does_not_exist(self, seeded_engine):
        store = SqlBufferStore(seeded_engine)
        assert store.get_status("S001", BufferKind.pm25) == BufferStatus.DoesNotExist

    def test_compare_and_set_from_missing_row(self, seeded_engine):
        store = SqlBufferStore(seeded_engine)
        assert store.compare_and_set_status(
            "S001", BufferKind.pm25, BufferStatus.DoesNotExist, BufferStatus.InProgress
        )
        assert store.get_status("S001", BufferKind.pm25) == BufferStatus.InProgress
        # A second claimant loses.
        assert not store.compare_and_set_status(
            "S001", BufferKind.pm25, BufferStatus.DoesNotExist, BufferStatus.InProgress
        )

    def test_manager_round_trip(self, seeded_engine):
        manager = BufferManager(SqlBufferStore(seeded_engine), CAPACITIES)
        assert manager.ensure_buffer("S001", BufferKind.pm25) == BufferStatus.Exists
        first = make_element(pm25=5.0, minutes_ago=2)
        second = make_element(pm25=0.0, minutes_ago=0)
        manager.append("S001", BufferKind.pm25, first)
        buffer = manager.append("S001", BufferKind.pm25, second)

        assert len(buffer) == 10
        assert buffer[0] == second
        assert buffer[1] == first
        assert all(e.is_default for e in buffer[2:])
        assert manager.read("S001", BufferKind.pm25) == buffer

    def test_append_without_buffer_raises(self, seeded_engine):
        manager = BufferManager(SqlBufferStore(seeded_engine), CAPACITIES)
        with pytest.raises(BufferNotReady):
            manager.append("S001", BufferKind.aqi, AqiBufferElement.default())

    def test_delete_buffers(self, seeded_engine):
        store = SqlBufferStore(seeded_engine)
        manager = BufferManager(store, CAPACITIES)
        manager.ensure_buffer("S001", BufferKind.pm25)
        manager.ensure_buffer("S001", BufferKind.aqi)
        store.delete_buffers("S001")
        assert store.get_status("S001", BufferKind.pm25) == BufferStatus.DoesNotExist
        assert store.get_status("S001", BufferKind.aqi) == BufferStatus.DoesNotExist

    def test_stale_claim_taken_over_once(self, seeded_engine):
        store = SqlBufferStore(seeded_engine)
        store.compare_and_set_status("S001", BufferKind.pm25, BufferStatus.DoesNotExist, BufferStatus.InProgress)
        _age_buffer_row(seeded_engine, "S001", BufferKind.pm25, timedelta(hours=1))

        cutoff = datetime.now(timezone.utc) - timedelta(minutes=5)
        assert store.take_over_stale_claim("S001", BufferKind.pm25, older_than=cutoff)
        # The takeover refreshed the claim, so a second claimant loses.
        assert not store.take_over_stale_claim("S001", BufferKind.pm25, older_than=cutoff)
        assert store.get_status("S001", BufferKind.pm25) == BufferStatus.InProgress

    def test_fresh_claim_is_not_taken_over(self, seeded_engine):
        store = SqlBufferStore(seeded_engine)
        store.compare_and_set_status("S001", BufferKind.pm25, BufferStatus.DoesNotExist, BufferStatus.InProgress)
        cutoff = datetime.now(timezone.utc) - timedelta(minutes=5)
        assert not store.take_over_stale_claim("S001", BufferKind.pm25, older_than=cutoff)

    def test_manager_recovers_abandoned_allocation(self, seeded_engine):
        store = SqlBufferStore(seeded_engine)
        store.compare_and_set_status("S001", BufferKind.aqi, BufferStatus.DoesNotExist, BufferStatus.InProgress)
        manager = BufferManager(store, CAPACITIES, claim_timeout=300)
        assert manager.ensure_buffer("S001", BufferKind.aqi) == BufferStatus.InProgress

        _age_buffer_row(seeded_engine, "S001", BufferKind.aqi, timedelta(minutes=10))

        assert manager.ensure_buffer("S001", BufferKind.aqi) == BufferStatus.Exists
        assert len(manager.read("S001", BufferKind.aqi)) == 5

    def test_append_pads_stored_buffer(self, seeded_engine):
        store = SqlBufferStore(seeded_engine)
        BufferManager(store, {BufferKind.pm25: 3, BufferKind.aqi: 5}).ensure_buffer("S001", BufferKind.pm25)
        buffer = BufferManager(store, CAPACITIES).append("S001", BufferKind.pm25, make_element())
        assert len(buffer) == 10
        _, records = store.read_buffer("S001", BufferKind.pm25)
        assert len(records) == 10


def _age_buffer_row(engine, sensor_id, kind, age):
    with Session(engine) as db:
        db.execute(
            update(SensorBuffer)
            .where(SensorBuffer.sensor_id == sensor_id, SensorBuffer.kind == kind)
            .values(updated_at=datetime.now(timezone.utc) - age)
        )
        db.commit()
