"""Tests for imu_worker.services.admission."""

import asyncio

import pytest

from imu_worker.services.admission import AdmissionGate


def test_capacity_must_be_positive():
    with pytest.raises(ValueError):
        AdmissionGate(0)


@pytest.mark.asyncio
async def test_in_flight_never_exceeds_capacity():
    gate = AdmissionGate(3)
    observed = []

    async def work():
        async with await gate.acquire():
            observed.append(gate.in_flight)
            await asyncio.sleep(0.01)

    await asyncio.gather(*(work() for _ in range(20)))

    assert max(observed) <= 3
    assert gate.peak_in_flight == 3
    assert gate.in_flight == 0
    assert gate.admitted_total == gate.released_total == 20


@pytest.mark.asyncio
async def test_acquire_blocks_when_full():
    gate = AdmissionGate(1)
    slot = await gate.acquire()

    waiter = asyncio.create_task(gate.acquire())
    await asyncio.sleep(0.01)
    assert not waiter.done()

    slot.release()
    second = await asyncio.wait_for(waiter, timeout=1)
    assert gate.in_flight == 1
    second.release()


@pytest.mark.asyncio
async def test_slot_released_on_exception():
    gate = AdmissionGate(2)

    with pytest.raises(RuntimeError):
        async with await gate.acquire():
            raise RuntimeError("processing failed")

    assert gate.in_flight == 0
    assert gate.available == 2


@pytest.mark.asyncio
async def test_slot_released_on_cancellation():
    gate = AdmissionGate(1)
    entered = asyncio.Event()

    async def hold():
        async with await gate.acquire():
            entered.set()
            await asyncio.sleep(3600)

    task = asyncio.create_task(hold())
    await entered.wait()
    assert gate.in_flight == 1

    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    assert gate.in_flight == 0
    await asyncio.wait_for(gate.wait_idle(), timeout=1)


@pytest.mark.asyncio
async def test_release_is_idempotent():
    gate = AdmissionGate(2)
    slot = await gate.acquire()

    slot.release()
    slot.release()

    assert slot.released
    assert gate.in_flight == 0
    assert gate.released_total == 1
    assert gate.available == 2
