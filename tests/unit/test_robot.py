"""Unit tests for the Robot command pipeline and driver management."""

import asyncio
import math

import pytest

from armhub.contracts.models import JointValue, RobotCommand, USBDriverConfig
from armhub.drivers.base import Producer
from armhub.errors import CalibrationRequired, UnknownJoint


class RecordingProducer(Producer):
    kind = "test"

    def __init__(self, driver_id, fail=False):
        super().__init__(driver_id)
        self.fail = fail
        self.sent = []

    async def connect(self):
        self._set_status(True)

    async def disconnect(self):
        self._set_status(False)

    async def send_command(self, command):
        if self.fail:
            raise OSError("producer offline")
        self.sent.append(command.as_dict())


class SlowRelayConsumerClient:
    """Relay client whose room join takes a few milliseconds."""

    def __init__(self):
        self.connected = False
        self.joint_callbacks = []

    async def connect(self, workspace_id, room_id, participant_id):
        await asyncio.sleep(0.01)
        self.connected = True
        return True

    async def disconnect(self):
        self.connected = False

    def on_joint_update(self, callback):
        self.joint_callbacks.append(callback)

    def on_state_sync(self, callback):
        pass

    def push_joints(self, values):
        joints = [JointValue(name=name, value=value) for name, value in values.items()]
        for callback in self.joint_callbacks:
            callback(joints)


async def _attach(robot, producer):
    await producer.connect()
    robot.producers.append(producer)
    return producer


@pytest.mark.asyncio
class TestManualControl:
    async def test_values_are_clamped_to_joint_range(self, make_robot):
        robot = make_robot()
        assert await robot.update_joint("Rotation", 150)
        assert await robot.update_joint("Jaw", -300)
        assert robot.joint_values() == {"Rotation": 100.0, "Jaw": 0.0}

    async def test_unknown_joint_raises(self, make_robot):
        robot = make_robot()
        with pytest.raises(UnknownJoint):
            await robot.update_joint("Elbow", 10)
        with pytest.raises(KeyError):
            robot.normalized_to_radians("Elbow", 10)

    async def test_manual_control_disabled_while_consumer_connected(self, make_robot, remote_config, relay_clients):
        robot = make_robot()
        await robot.set_consumer(remote_config)
        assert not robot.is_manual_control_enabled
        assert await robot.update_joint("Rotation", 50) is False
        assert robot.joint_values()["Rotation"] == 0.0

        relay_clients["consumer"].push_joints({"Rotation": 25.0})
        await robot.wait_idle()
        assert robot.joint_values()["Rotation"] == 25.0

        await robot.remove_consumer()
        assert robot.is_manual_control_enabled
        await robot.destroy()

    async def test_joint_change_observers_see_clamped_values(self, make_robot):
        robot = make_robot()
        changes = []
        robot.on_joint_change(changes.append)
        await robot.update_joint("Rotation", 120)
        assert [(change.name, change.value) for change in changes] == [("Rotation", 100.0)]

    async def test_normalized_to_radians_uses_limits(self, make_robot):
        robot = make_robot()
        robot.joints["Rotation"].limits = (-1.0, 1.0)
        assert robot.normalized_to_radians("Rotation", 100) == pytest.approx(1.0)
        assert robot.normalized_to_radians("Jaw", 50) == pytest.approx(math.pi / 2)


@pytest.mark.asyncio
class TestCommandPipeline:
    async def test_duplicate_within_window_is_dropped(self, make_robot, clock):
        robot = make_robot()
        command = RobotCommand.from_values({"Rotation": 10.0})
        assert robot.submit(command)
        assert not robot.submit(RobotCommand.from_values({"Rotation": 10.3}))
        assert robot.submit(RobotCommand.from_values({"Rotation": 11.0}))
        clock.advance(0.02)
        assert robot.submit(RobotCommand.from_values({"Rotation": 11.0}))
        await robot.wait_idle()

    async def test_new_joint_counts_as_change(self, make_robot):
        robot = make_robot()
        assert robot.submit(RobotCommand.from_values({"Rotation": 10.0}))
        assert robot.submit(RobotCommand.from_values({"Jaw": 10.0}))
        await robot.wait_idle()

    async def test_queue_drops_oldest_when_full(self, make_robot, clock, caplog):
        robot = make_robot()
        changes = []
        robot.on_joint_change(changes.append)
        with caplog.at_level("WARNING"):
            for index in range(51):
                assert robot.submit(RobotCommand.from_values({"Rotation": float(index)}))
        assert robot.pending_count == 50
        assert any(record.getMessage() == "robot.command.queue_full" for record in caplog.records)

        await robot.wait_idle()
        assert changes[0].value == 1.0
        assert robot.joint_values()["Rotation"] == 50.0

    async def test_commands_apply_in_order(self, make_robot, clock):
        robot = make_robot()
        producer = await _attach(robot, RecordingProducer("p1"))
        for value in (10.0, 20.0, 30.0):
            robot.submit(RobotCommand.from_values({"Rotation": value}))
        await robot.wait_idle()
        assert producer.sent == [{"Rotation": 10.0}, {"Rotation": 20.0}, {"Rotation": 30.0}]

    async def test_failing_producer_does_not_block_others(self, make_robot):
        robot = make_robot()
        broken = await _attach(robot, RecordingProducer("broken", fail=True))
        healthy = await _attach(robot, RecordingProducer("healthy"))
        assert await robot.update_joint("Rotation", 40)
        assert healthy.sent == [{"Rotation": 40.0}]
        assert broken.sent == []
        assert robot.joint_values()["Rotation"] == 40.0

    async def test_fan_out_skips_unknown_joints_and_clamps(self, make_robot):
        robot = make_robot()
        producer = await _attach(robot, RecordingProducer("p1"))
        await robot.execute_command(RobotCommand.from_values({"Rotation": 500.0, "Elbow": 1.0}))
        assert producer.sent == [{"Rotation": 100.0}]

    async def test_disconnected_producers_are_skipped(self, make_robot):
        robot = make_robot()
        producer = await _attach(robot, RecordingProducer("p1"))
        await producer.disconnect()
        await robot.update_joint("Rotation", 5)
        assert producer.sent == []


@pytest.mark.asyncio
class TestCalibrationGating:
    async def test_state_held_while_calibrating(self, make_robot, fake_bus):
        robot = make_robot()
        producer = await _attach(robot, RecordingProducer("p1"))
        await robot.start_calibration()
        assert robot.calibration.is_calibrating

        await robot.update_joint("Rotation", 30)
        assert robot.joint_values()["Rotation"] == 0.0
        assert producer.sent == [{"Rotation": 30.0}]

        await robot.cancel_calibration()
        assert not fake_bus.connected
        await robot.update_joint("Rotation", 35)
        assert robot.joint_values()["Rotation"] == 35.0

    async def test_completion_reseeds_joint_values(self, make_robot, fake_bus):
        robot = make_robot()
        await robot.start_calibration()
        fake_bus.positions.update({1: 3000, 2: 3600})
        await robot.transport.read_positions()
        fake_bus.positions.update({1: 2000})
        final = await robot.complete_calibration()
        assert final == {"Rotation": 2000, "Jaw": 3600}
        assert robot.joint_values() == pytest.approx({"Rotation": 0.0, "Jaw": 100.0})
        assert not robot.needs_calibration

    async def test_usb_producer_rejected_until_calibrated(self, make_robot, fake_bus):
        robot = make_robot()
        with pytest.raises(CalibrationRequired):
            await robot.add_producer(USBDriverConfig())
        assert robot.producers == []
        assert not fake_bus.connected

        await robot.skip_calibration()
        producer_id = await robot.add_producer(USBDriverConfig())
        assert producer_id.startswith("usb-producer-arm-1-")
        assert robot.connected_producer_count == 1
        await robot.destroy()
        assert not fake_bus.connected

    async def test_usb_consumer_rejected_until_calibrated(self, make_robot, fake_bus):
        robot = make_robot()
        with pytest.raises(CalibrationRequired):
            await robot.set_consumer(USBDriverConfig())
        assert robot.consumer is None
        assert not fake_bus.connected

    async def test_save_and_load_calibration(self, make_robot, tmp_path):
        robot = make_robot()
        await robot.load_calibration_preset()
        path = tmp_path / "cal" / "arm.json"
        robot.save_calibration(path)

        other = make_robot()
        await other.load_calibration_file(path)
        assert other.calibration.calibration_for("Rotation").min_raw == 764
        assert other.calibration.calibration_for("Jaw").max_raw == 3555


@pytest.mark.asyncio
class TestDriverManagement:
    async def test_set_consumer_replaces_existing(self, make_robot, remote_config, relay_clients):
        robot = make_robot()
        first = await robot.set_consumer(remote_config)
        second = await robot.set_consumer(remote_config)
        assert first != second
        assert robot.consumer.id == second
        assert relay_clients["consumer"].disconnected
        await robot.destroy()

    async def test_join_requires_remote_config(self, make_robot):
        robot = make_robot()
        with pytest.raises(TypeError):
            await robot.join_as_consumer(USBDriverConfig())
        with pytest.raises(TypeError):
            await robot.join_as_producer(USBDriverConfig())

    async def test_join_as_producer_skips_room_creation(self, make_robot, remote_config, relay_clients):
        robot = make_robot()
        await robot.join_as_producer(remote_config)
        assert relay_clients["directory"].rooms == {}
        assert relay_clients["producer"].connected_to[1] == "room-a"
        await robot.destroy()

    async def test_remote_producer_receives_commands(self, make_robot, remote_config, relay_clients):
        robot = make_robot()
        await robot.add_producer(remote_config)
        await robot.update_joint("Jaw", 75)
        [update] = relay_clients["producer"].joint_updates
        assert [(joint.name, joint.value) for joint in update] == [("Jaw", 75.0)]
        await robot.destroy()

    async def test_remove_producer(self, make_robot, remote_config, relay_clients):
        robot = make_robot()
        producer_id = await robot.add_producer(remote_config)
        assert await robot.remove_producer(producer_id)
        assert not await robot.remove_producer(producer_id)
        assert relay_clients["producer"].disconnected
        assert robot.connected_producer_count == 0

    async def test_connection_state_tracks_drivers(self, make_robot, remote_config):
        robot = make_robot()
        states = []
        robot.on_state_change(states.append)
        await robot.add_producer(remote_config)
        assert robot.connection_status.is_connected
        await robot.destroy()
        assert not robot.connection_status.is_connected
        assert states[-1].is_connected is False

    async def test_destroy_disconnects_everything(self, make_robot, remote_config, relay_clients):
        robot = make_robot()
        await robot.set_consumer(remote_config)
        await robot.add_producer(remote_config)
        await robot.destroy()
        assert robot.consumer is None
        assert robot.producers == []
        assert relay_clients["consumer"].disconnected
        assert relay_clients["producer"].disconnected

    async def test_concurrent_set_consumer_leaves_one_attached(self, make_robot, remote_config, relay_clients):
        """Overlapping attaches are serialized so the earlier consumer is fully detached."""
        clients = []

        def factory(config):
            clients.append(SlowRelayConsumerClient())
            return clients[-1]

        robot = make_robot(relay_factories={**relay_clients["factories"], "consumer": factory})
        first_id, second_id = await asyncio.gather(robot.set_consumer(remote_config), robot.set_consumer(remote_config))

        assert len(clients) == 2
        assert sum(client.connected for client in clients) == 1
        assert robot.consumer.id == second_id != first_id

        clients[0].push_joints({"Rotation": 42.0})
        await robot.wait_idle()
        assert robot.joint_values()["Rotation"] == 0.0
        await robot.destroy()

    async def test_manual_control_refused_while_consumer_attaching(self, make_robot, remote_config, relay_clients):
        factories = {**relay_clients["factories"], "consumer": lambda config: SlowRelayConsumerClient()}
        robot = make_robot(relay_factories=factories)
        attach = asyncio.create_task(robot.set_consumer(remote_config))
        await asyncio.sleep(0)
        assert not robot.is_manual_control_enabled
        assert await robot.update_joint("Rotation", 50) is False
        await attach
        assert robot.joint_values()["Rotation"] == 0.0
        await robot.destroy()
