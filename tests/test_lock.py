import asyncio

import pytest

from parking_iot.errors import BusyError, InvalidCommandError, InvalidStateError
from parking_iot.protocol.messages import ArmPosition, LockState

from conftest import FakeClock, make_lock, settle


def _collect(lock):
    reports = []
    lock.on_status_changed = reports.append
    return reports


def test_reserve_sets_status_before_arm_moves():
    async def scenario():
        lock = make_lock()
        reports = _collect(lock)

        message = lock.reserve({"plate_number": "AB123", "duration": 60})

        assert message == "Lock reserved successfully"
        assert lock.status == LockState.RESERVED
        assert lock.arm_position == ArmPosition.DOWN
        assert lock.arm.is_moving
        assert lock.reservation["plate_number"] == "AB123"
        assert "accepted_at" in lock.reservation
        assert len(reports) == 1

        await settle()

        assert lock.arm_position == ArmPosition.UP
        assert not lock.arm.is_moving
        # Arm settling is its own observable change
        assert len(reports) == 2
        assert reports[-1].arm_position == ArmPosition.UP

    asyncio.run(scenario())


def test_reserve_rejected_unless_free():
    async def scenario():
        lock = make_lock()
        lock.reserve({"plate_number": "AB123"})
        await settle()

        with pytest.raises(InvalidStateError):
            lock.reserve({"plate_number": "CD456"})
        assert lock.reservation["plate_number"] == "AB123"

    asyncio.run(scenario())


def test_reserve_rolls_back_when_arm_busy():
    async def scenario():
        lock = make_lock(arm_motion_seconds=1.0)
        lock.arm_position = ArmPosition.UP
        lock.arm.lower_arm()

        with pytest.raises(BusyError):
            lock.reserve({"plate_number": "AB123"})

        assert lock.status == LockState.FREE
        assert lock.reservation is None
        lock.arm.cancel()

    asyncio.run(scenario())


def test_release_from_free_is_invalid():
    lock = make_lock()

    with pytest.raises(InvalidStateError, match="already free"):
        lock.release()


def test_release_clears_reservation_and_lowers_arm():
    async def scenario():
        lock = make_lock()
        lock.reserve({"plate_number": "AB123"})
        await settle()

        assert lock.release() == "Lock released successfully"
        assert lock.status == LockState.FREE
        assert lock.reservation is None
        assert not lock.vehicle_detected

        await settle()
        assert lock.arm_position == ArmPosition.DOWN

    asyncio.run(scenario())


def test_release_rolls_back_when_arm_busy():
    async def scenario():
        lock = make_lock(arm_motion_seconds=1.0)
        lock.reserve({"plate_number": "AB123"})

        with pytest.raises(BusyError):
            lock.release()

        assert lock.status == LockState.RESERVED
        assert lock.reservation["plate_number"] == "AB123"
        lock.arm.cancel()

    asyncio.run(scenario())


def test_open_requires_reserved():
    async def scenario():
        lock = make_lock()
        with pytest.raises(InvalidStateError):
            lock.open_for_parking()

    asyncio.run(scenario())


def test_open_lowers_arm_and_vehicle_arrives():
    async def scenario():
        lock = make_lock(arrival_probability=1.0)
        lock.reserve({"plate_number": "AB123"})
        await settle()

        assert lock.open_for_parking() == "Lock opened for parking"
        # Status stays reserved until the sensor sees the vehicle
        assert lock.status == LockState.RESERVED

        await settle(0.1)

        assert lock.arm_position == ArmPosition.DOWN
        assert lock.vehicle_detected
        assert lock.status == LockState.OCCUPIED

    asyncio.run(scenario())


def test_no_arrival_when_vehicle_does_not_show():
    async def scenario():
        lock = make_lock(arrival_probability=0.0)
        lock.reserve({"plate_number": "AB123"})
        await settle()
        lock.open_for_parking()
        await settle(0.1)

        assert lock.status == LockState.RESERVED
        assert not lock.vehicle_detected

    asyncio.run(scenario())


def test_vehicle_detected_only_from_reserved():
    lock = make_lock()

    lock.on_vehicle_detected()

    assert lock.status == LockState.FREE
    assert not lock.vehicle_detected


def test_vehicle_left_frees_lock():
    async def scenario():
        lock = make_lock()
        lock.reserve({"plate_number": "AB123"})
        await settle()
        lock.on_vehicle_detected()
        assert lock.status == LockState.OCCUPIED

        lock.on_vehicle_left()

        assert lock.status == LockState.FREE
        assert lock.reservation is None
        assert not lock.vehicle_detected
        await settle()
        assert lock.arm_position == ArmPosition.DOWN

    asyncio.run(scenario())


def test_vehicle_left_ignored_without_vehicle():
    lock = make_lock()
    reports = _collect(lock)

    lock.on_vehicle_left()

    assert reports == []


def test_process_command_dispatch():
    async def scenario():
        lock = make_lock()

        assert lock.process_command("status") == "Lock is free"
        assert lock.process_command("reserve", {"plate_number": "AB123"}) == "Lock reserved successfully"
        with pytest.raises(InvalidCommandError):
            lock.process_command("explode")
        lock.arm.cancel()

    asyncio.run(scenario())


def test_local_expiry_releases_lock():
    async def scenario():
        clock = FakeClock()
        lock = make_lock(clock=clock, departure_probability=0.0, tamper_probability=0.0)
        lock.reserve({"plate_number": "AB123", "duration": 1})
        await settle()

        lock.tick_behaviour()
        assert lock.status == LockState.RESERVED

        clock.advance(minutes=2)
        lock.tick_behaviour()

        assert lock.status == LockState.FREE
        assert lock.reservation is None
        lock.arm.cancel()

    asyncio.run(scenario())


def test_behaviour_tick_departure_frees_occupied_lock():
    async def scenario():
        lock = make_lock(departure_probability=1.0, tamper_probability=0.0)
        lock.reserve({"plate_number": "AB123", "duration": 30})
        await settle()
        lock.magnetic.simulate_vehicle_arrival()
        assert lock.status == LockState.OCCUPIED

        lock.tick_behaviour()

        assert lock.status == LockState.FREE
        assert lock.reservation is None
        assert not lock.vehicle_detected
        await settle()

    asyncio.run(scenario())


def test_behaviour_tick_tamper_alarm_leaves_status():
    async def scenario():
        lock = make_lock(departure_probability=0.0, tamper_probability=1.0)
        lock.reserve({"plate_number": "AB123"})
        await settle()

        lock.tick_behaviour()

        assert lock.speaker.is_playing
        assert lock.status == LockState.RESERVED
        assert lock.reservation["plate_number"] == "AB123"
        lock.speaker.cancel()

    asyncio.run(scenario())


@pytest.mark.parametrize("duration", ["soon", 0, -5, [30]])
def test_reserve_rejects_invalid_duration(duration):
    lock = make_lock()

    with pytest.raises(InvalidCommandError):
        lock.reserve({"plate_number": "AB123", "duration": duration})

    assert lock.status == LockState.FREE
    assert lock.reservation is None
    assert lock.arm_position == ArmPosition.DOWN


def test_status_report_reflects_lock():
    lock = make_lock()

    report = lock.get_status()

    assert report.lock_id == "lock_gateway_001_1"
    assert report.gateway_id == "gateway_001"
    assert report.status == LockState.FREE
    assert report.timestamp == lock.last_update
    assert report.sensors.magnetic.threshold == 500
    assert not report.sensors.magnetic.vehicle_detected


def test_status_listener_errors_do_not_break_transition():
    async def scenario():
        lock = make_lock()

        def broken(report):
            raise RuntimeError("listener down")

        lock.on_status_changed = broken
        lock.reserve({"plate_number": "AB123"})
        assert lock.status == LockState.RESERVED
        lock.arm.cancel()

    asyncio.run(scenario())


def test_start_and_stop_cancel_background_work():
    async def scenario():
        lock = make_lock(sensor_interval=0.01, behaviour_interval=0.01, tamper_probability=0.0)
        lock.start()
        await settle()
        await lock.stop()

        assert lock._tasks == []
        assert not lock.arm.is_moving

    asyncio.run(scenario())
