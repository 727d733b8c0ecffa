import asyncio

from parking_iot.device.gateway import Gateway
from parking_iot.protocol.messages import ArmPosition, Command, GatewayTopics, LockState

from conftest import RecordingTransport, make_lock, settle

TOPICS = GatewayTopics("gateway_001")


def _gateway(**lock_kwargs):
    transport = RecordingTransport()
    lock = make_lock(**lock_kwargs)
    gateway = Gateway("gateway_001", transport, [lock], heartbeat_interval=60)
    return gateway, lock, transport


def test_reserve_command_acks_once_and_publishes_once():
    async def scenario():
        gateway, lock, transport = _gateway()

        gateway.process_command(Command(command_id="cmd-1", lock_id=lock.lock_id, action="reserve", data={"plate_number": "AB123"}))

        acks = transport.on(TOPICS.down_link_ack)
        assert len(acks) == 1
        assert acks[0]["command_id"] == "cmd-1"
        assert acks[0]["success"] is True
        assert acks[0]["message"] == "Lock reserved successfully"

        statuses = transport.on(TOPICS.up_link)
        assert len(statuses) == 1
        assert statuses[0]["status"] == "reserved"

        await settle()

        # Arm settling after the command is published separately
        statuses = transport.on(TOPICS.up_link)
        assert len(statuses) == 2
        assert statuses[1]["arm_position"] == ArmPosition.UP.value
        assert len(transport.on(TOPICS.down_link_ack)) == 1

    asyncio.run(scenario())


def test_unknown_lock_gets_failed_ack_and_no_state_change():
    async def scenario():
        gateway, lock, transport = _gateway()

        gateway.process_command(Command(command_id="cmd-2", lock_id="lock_999", action="reserve"))

        acks = transport.on(TOPICS.down_link_ack)
        assert acks == [
            {
                "command_id": "cmd-2",
                "gateway_id": "gateway_001",
                "success": False,
                "message": "Lock not found",
                "timestamp": acks[0]["timestamp"],
            }
        ]
        assert transport.on(TOPICS.up_link) == []
        assert lock.status == LockState.FREE

    asyncio.run(scenario())


def test_invalid_transition_gets_failed_ack_without_status():
    async def scenario():
        gateway, lock, transport = _gateway()

        gateway.process_command(Command(command_id="cmd-3", lock_id=lock.lock_id, action="release"))

        acks = transport.on(TOPICS.down_link_ack)
        assert len(acks) == 1
        assert acks[0]["success"] is False
        assert acks[0]["message"] == "Lock is already free"
        assert transport.on(TOPICS.up_link) == []

    asyncio.run(scenario())


def test_reserve_with_bad_duration_gets_failed_ack():
    gateway, lock, transport = _gateway()

    gateway.process_command(
        Command(
            command_id="cmd-4",
            lock_id=lock.lock_id,
            action="reserve",
            data={"plate_number": "AB123", "duration": "an hour"},
        )
    )

    acks = transport.on(TOPICS.down_link_ack)
    assert len(acks) == 1
    assert acks[0]["success"] is False
    assert acks[0]["message"] == "Invalid reservation duration: 'an hour'"
    assert transport.on(TOPICS.up_link) == []
    assert lock.status == LockState.FREE


def test_status_command_publishes_snapshot():
    async def scenario():
        gateway, lock, transport = _gateway()

        gateway.process_command(Command(command_id="cmd-4", lock_id=lock.lock_id, action="status"))

        assert transport.on(TOPICS.down_link_ack)[0]["message"] == "Lock is free"
        assert len(transport.on(TOPICS.up_link)) == 1

    asyncio.run(scenario())


def test_malformed_payload_is_dropped():
    async def scenario():
        gateway, lock, transport = _gateway()

        gateway.handle_message(TOPICS.down_link, b"{not json")
        gateway.handle_message(TOPICS.down_link, b'{"lock_id": "x", "action": "reserve"}')

        assert transport.published == []

    asyncio.run(scenario())


def test_invalid_command_with_id_is_acknowledged():
    async def scenario():
        gateway, lock, transport = _gateway()

        gateway.handle_message(TOPICS.down_link, b'{"command_id": "cmd-5", "action": "reserve"}')

        acks = transport.on(TOPICS.down_link_ack)
        assert len(acks) == 1
        assert acks[0]["command_id"] == "cmd-5"
        assert acks[0]["success"] is False

    asyncio.run(scenario())


def test_autonomous_change_is_published():
    async def scenario():
        gateway, lock, transport = _gateway()
        gateway.process_command(Command(command_id="cmd-6", lock_id=lock.lock_id, action="reserve"))
        await settle()
        transport.published.clear()

        lock.on_vehicle_detected()

        statuses = transport.on(TOPICS.up_link)
        assert len(statuses) == 1
        assert statuses[0]["status"] == "occupied"
        assert statuses[0]["vehicle_detected"] is True

    asyncio.run(scenario())


def test_start_subscribes_and_announces():
    async def scenario():
        gateway, lock, transport = _gateway()

        await gateway.start(simulate=False)

        assert transport.subscriptions[0][0] == TOPICS.down_link
        heartbeats = transport.on(TOPICS.heartbeat)
        assert len(heartbeats) == 1
        assert heartbeats[0]["locks"] == [lock.lock_id]
        assert heartbeats[0]["locks_count"] == 1
        assert len(transport.on(TOPICS.up_link)) == 1

        # Commands are routed through the subscription
        transport.deliver(TOPICS.down_link, {"command_id": "cmd-7", "lock_id": lock.lock_id, "action": "status"})
        assert transport.on(TOPICS.down_link_ack)[0]["command_id"] == "cmd-7"

        await gateway.stop()

    asyncio.run(scenario())


def test_publish_failure_is_contained():
    async def scenario():
        gateway, lock, transport = _gateway()
        transport.fail_publish = True

        gateway.process_command(Command(command_id="cmd-8", lock_id=lock.lock_id, action="reserve"))

        assert lock.status == LockState.RESERVED
        lock.arm.cancel()

    asyncio.run(scenario())
