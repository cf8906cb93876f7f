"""Unit tests for RobotManager and the bridge service."""

import asyncio

import pytest

from armhub.config import BridgeSettings
from armhub.contracts.models import JointState
from armhub.errors import ArmHubError, RelayError
from armhub.manager import RobotManager
from armhub.service import BridgeService


class UnreachableDirectory:
    async def create_room(self, workspace_id, room_id=None):
        raise RelayError("broker unreachable")

    async def list_rooms(self, workspace_id):
        raise RelayError("broker unreachable")


@pytest.fixture
def manager(fast_settings, fake_bus, relay_clients):
    return RobotManager(
        fast_settings,
        directory=relay_clients["directory"],
        bus_factory=lambda: fake_bus,
        relay_factories=relay_clients["factories"],
    )


@pytest.mark.asyncio
class TestRobotRegistry:
    async def test_create_and_lookup(self, manager):
        robot = manager.create_robot("arm-1", [JointState(name="Rotation", servo_id=1)])
        assert manager.get_robot("arm-1") is robot
        assert manager.get_robot("missing") is None
        assert manager.robot_count == 1
        assert manager.robots == [robot]

    async def test_duplicate_id_is_rejected(self, manager):
        manager.create_robot("arm-1", [])
        with pytest.raises(ValueError):
            manager.create_robot("arm-1", [])

    async def test_so100_robot_has_six_mapped_joints(self, manager):
        robot = manager.create_so100_robot()
        assert robot.id.startswith("so100-")
        assert list(robot.joints) == ["Rotation", "Pitch", "Elbow", "Wrist_Pitch", "Wrist_Roll", "Jaw"]
        assert robot.joints["Jaw"].servo_id == 6

    async def test_robot_from_urdf(self, manager, tmp_path):
        urdf = tmp_path / "arm.urdf"
        urdf.write_text(
            """<robot name="arm">
              <joint name="Rotation" type="revolute"><limit lower="-1.5" upper="1.5"/></joint>
              <joint name="base_fixed" type="fixed"/>
              <joint name="Jaw" type="revolute"><limit lower="0" upper="1.2"/></joint>
            </robot>"""
        )
        robot = manager.create_robot_from_urdf("urdf-arm", urdf, {"Jaw": 6})
        assert robot.joints["Rotation"].limits == (-1.5, 1.5)
        assert robot.joints["Rotation"].servo_id == 1
        assert robot.joints["Jaw"].servo_id == 6

    async def test_remove_robot_destroys_it(self, manager, remote_config, relay_clients):
        robot = manager.create_robot("arm-1", [JointState(name="Rotation", servo_id=1)])
        await robot.add_producer(remote_config)
        await manager.remove_robot("arm-1")
        await manager.remove_robot("arm-1")
        assert manager.robot_count == 0
        assert relay_clients["producer"].disconnected


@pytest.mark.asyncio
class TestRooms:
    async def test_create_room_refreshes_cache(self, manager):
        result = await manager.create_room("ws-1", "room-x")
        assert result.success
        assert result.room_id == "room-x"
        assert [room.room_id for room in manager.rooms["ws-1"]] == ["room-x"]

    async def test_directory_failure_is_reported(self, fast_settings):
        manager = RobotManager(fast_settings, directory=UnreachableDirectory())
        result = await manager.create_room("ws-1")
        assert not result.success
        assert "broker unreachable" in result.error
        assert await manager.refresh_rooms("ws-1") == []

    async def test_generate_room_id(self, manager):
        room_id = manager.generate_room_id("arm-1")
        assert room_id.startswith("arm-1-")
        assert len(room_id) == len("arm-1-") + 6

    async def test_connect_producer_as_producer_creates_then_joins(self, manager, relay_clients):
        manager.create_robot("arm-1", [JointState(name="Rotation", servo_id=1)])
        result = await manager.connect_producer_as_producer("ws-1", "arm-1")
        assert result.success
        assert len(relay_clients["directory"].rooms["ws-1"]) == 1
        assert relay_clients["producer"].connected_to[1] == result.room_id
        await manager.destroy()

    async def test_connect_consumer_to_room_joins_existing(self, manager, relay_clients):
        manager.create_robot("arm-1", [JointState(name="Rotation", servo_id=1)])
        await manager.connect_consumer_to_room("ws-1", "arm-1", "room-b")
        assert relay_clients["consumer"].connected_to[:2] == ("ws-1", "room-b")
        assert relay_clients["directory"].rooms == {}
        await manager.destroy()

    async def test_unknown_robot_raises(self, manager):
        with pytest.raises(KeyError):
            await manager.connect_producer_to_room("ws-1", "ghost", "room-a")


@pytest.mark.asyncio
class TestBridgeService:
    async def test_follower_drives_local_arm(self, manager, fast_settings, fake_bus, relay_clients):
        settings = BridgeSettings(mode="follower", room_id="room-a", robot=fast_settings)
        service = BridgeService(settings, manager)
        robot = await service.start()
        assert not robot.needs_calibration
        assert (6, True) in fake_bus.torque_writes

        relay_clients["consumer"].push_joints({"Jaw": 100.0})
        await robot.wait_idle()
        assert fake_bus.position_writes[-1] == {6: 3555}

        await service.stop()
        assert not fake_bus.connected
        assert manager.robot_count == 0

    async def test_leader_publishes_local_movements(self, manager, fast_settings, fake_bus, relay_clients):
        settings = BridgeSettings(mode="leader", room_id="room-a", robot=fast_settings)
        service = BridgeService(settings, manager)
        robot = await service.start()
        assert robot.consumer.kind == "usb"
        await asyncio.sleep(0.01)
        fake_bus.positions[1] = 3000
        await asyncio.sleep(0.02)
        assert relay_clients["producer"].joint_updates
        await service.stop()
        assert relay_clients["producer"].disconnected

    async def test_join_existing_does_not_create_room(self, manager, fast_settings, relay_clients):
        settings = BridgeSettings(mode="follower", room_id="room-a", join_existing=True, robot=fast_settings)
        service = BridgeService(settings, manager)
        await service.start()
        assert relay_clients["directory"].rooms == {}
        await service.stop()

    async def test_missing_calibration_file_fails_start(self, manager, fast_settings, tmp_path):
        robot_settings = fast_settings.model_copy(
            update={"calibration": fast_settings.calibration.model_copy(update={"calibration_path": tmp_path / "none.json"})}
        )
        service = BridgeService(BridgeSettings(calibration="file", robot=robot_settings), manager)
        with pytest.raises(ArmHubError, match="Calibration file not found"):
            await service.start()
        await service.stop()

    async def test_run_stops_when_event_is_set(self, manager, fast_settings):
        service = BridgeService(BridgeSettings(mode="follower", robot=fast_settings), manager)
        stop = asyncio.Event()
        task = asyncio.create_task(service.run(stop))
        await asyncio.sleep(0.01)
        assert service.robot is not None
        stop.set()
        await task
        assert service.robot is None
