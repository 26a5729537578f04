"""
Unit tests for the ThermSmart device session.
Tests the connect sequence, command exchange and link loss handling.
"""

import asyncio
from datetime import datetime

import pytest

from thermsmart.ble.device import SessionRegistry, SessionState, ThermSmartDevice
from thermsmart.ble.errors import (
    CommandInProgressError,
    CommandTimeoutError,
    ConnectFailedError,
    DeviceNotFoundError,
    ProtocolMismatchError,
    RadioStateChangedError,
    SessionClosedError,
    SessionStateError,
    SubscribeFailedError,
    UnexpectedDisconnectError,
    WriteFailedError,
)
from thermsmart.ble.protocol import NOTIFY_CHARACTERISTIC_UUID, WRITE_CHARACTERISTIC_UUID
from thermsmart.ble.radio import RadioState
from tests.fixtures.advertisements import AdvertisementFixtures

ADDRESS = AdvertisementFixtures.ADDRESS


def make_device(radio, **kwargs) -> ThermSmartDevice:
    options = {"command_timeout": 0.5, "scan_timeout": 0.5, "ready_timeout": 0.2}
    options.update(kwargs)
    return ThermSmartDevice(radio, address=ADDRESS, **options)


async def wait_for_connect_call(radio):
    while not radio.connect_calls:
        await asyncio.sleep(0.01)


class TestConnect:
    """Test the connect sequence."""

    @pytest.mark.asyncio
    async def test_connect_success(self, fake_radio):
        device = make_device(fake_radio)

        await device.connect()

        assert device.state == SessionState.READY
        assert device.is_ready
        assert fake_radio.connect_calls == [ADDRESS]
        assert fake_radio.subscriptions == [(ADDRESS, f"handle:{NOTIFY_CHARACTERISTIC_UUID}")]
        # Only the link watch remains subscribed to radio events
        assert fake_radio.listener_count == 1

    @pytest.mark.asyncio
    async def test_connect_is_idempotent_when_ready(self, fake_radio):
        device = make_device(fake_radio)

        await device.connect()
        await device.connect()

        assert fake_radio.connect_calls == [ADDRESS]

    @pytest.mark.asyncio
    async def test_connect_with_known_peripheral_skips_scan(self, fake_radio, sensor_peripheral):
        device = ThermSmartDevice(fake_radio, peripheral=sensor_peripheral)
        assert device.state == SessionState.DISCOVERED

        await device.connect()

        assert fake_radio.scan_requests == []
        assert device.state == SessionState.READY

    @pytest.mark.asyncio
    async def test_connect_first_sensor_without_address(self, fake_radio):
        device = ThermSmartDevice(fake_radio, scan_timeout=0.5)

        await device.connect()

        assert device.address == ADDRESS
        assert device.name == "ThermSmart E2D3"

    @pytest.mark.asyncio
    async def test_device_not_found_returns_to_idle(self, fake_radio):
        device = ThermSmartDevice(fake_radio, address="000000000000", scan_timeout=0.1)

        with pytest.raises(DeviceNotFoundError):
            await device.connect()

        assert device.state == SessionState.IDLE
        assert fake_radio.listener_count == 0
        assert fake_radio.connect_calls == []

    @pytest.mark.asyncio
    async def test_connect_failure_returns_to_idle(self, fake_radio):
        error = RuntimeError("Connection refused")
        fake_radio.connect_error = error
        device = make_device(fake_radio)

        with pytest.raises(ConnectFailedError) as exc_info:
            await device.connect()

        assert exc_info.value.cause is error
        assert device.state == SessionState.IDLE
        assert fake_radio.listener_count == 0

    @pytest.mark.asyncio
    async def test_missing_characteristic_faults_session(self, fake_radio):
        fake_radio.missing_characteristics = {WRITE_CHARACTERISTIC_UUID}
        device = make_device(fake_radio)

        with pytest.raises(ProtocolMismatchError):
            await device.connect()

        assert device.state == SessionState.FAULTED
        assert fake_radio.disconnect_calls == [ADDRESS]
        assert fake_radio.listener_count == 0

    @pytest.mark.asyncio
    async def test_discovery_error_faults_session(self, fake_radio):
        fake_radio.discover_error = RuntimeError("GATT error")
        device = make_device(fake_radio)

        with pytest.raises(ConnectFailedError):
            await device.connect()

        assert device.state == SessionState.FAULTED
        assert fake_radio.listener_count == 0

    @pytest.mark.asyncio
    async def test_subscribe_failure_faults_session(self, fake_radio):
        error = RuntimeError("CCCD write failed")
        fake_radio.subscribe_error = error
        device = make_device(fake_radio)

        with pytest.raises(SubscribeFailedError) as exc_info:
            await device.connect()

        assert exc_info.value.cause is error
        assert device.state == SessionState.FAULTED
        assert fake_radio.disconnect_calls == [ADDRESS]

    @pytest.mark.asyncio
    async def test_disconnect_while_connecting(self, fake_radio):
        fake_radio.connect_gate = asyncio.Event()
        device = make_device(fake_radio)

        connect_task = asyncio.create_task(device.connect())
        await wait_for_connect_call(fake_radio)
        fake_radio.drop_link(ADDRESS)

        with pytest.raises(UnexpectedDisconnectError, match="Peripheral disconnected unexpectedly"):
            await connect_task

        assert device.state == SessionState.DISCONNECTED
        assert fake_radio.listener_count == 0

    @pytest.mark.asyncio
    async def test_cancelled_connect_releases_link(self, fake_radio):
        fake_radio.connect_gate = asyncio.Event()
        device = make_device(fake_radio)

        connect_task = asyncio.create_task(device.connect())
        await wait_for_connect_call(fake_radio)
        connect_task.cancel()

        with pytest.raises(asyncio.CancelledError):
            await connect_task

        assert device.state == SessionState.DISCONNECTED
        assert fake_radio.disconnect_calls == [ADDRESS]
        assert fake_radio.listener_count == 0

    @pytest.mark.asyncio
    async def test_closed_session_cannot_reconnect(self, fake_radio):
        device = make_device(fake_radio)
        await device.connect()
        await device.disconnect()

        with pytest.raises(SessionStateError):
            await device.connect()


class TestCommands:
    """Test command/response exchange on a ready session."""

    @pytest.mark.asyncio
    async def test_read_time(self, responsive_radio):
        device = make_device(responsive_radio)
        await device.connect()

        sensor_time = await device.read_time()

        assert sensor_time == datetime(2024, 3, 15, 13, 45, 30)
        assert responsive_radio.writes[-1] == (ADDRESS, b'\xd1\x01')

    @pytest.mark.asyncio
    async def test_sync_time(self, responsive_radio):
        device = make_device(responsive_radio)
        await device.connect()

        written = await device.sync_time(datetime(2024, 3, 15, 13, 45, 30, 500000))

        assert written == datetime(2024, 3, 15, 13, 45, 30)
        assert responsive_radio.writes[-1] == (
            ADDRESS, bytes([0xD1, 0x00, 0x24, 0x03, 0x15, 0x13, 0x45, 0x30])
        )

    @pytest.mark.asyncio
    async def test_identify_needs_no_response(self, fake_radio):
        device = make_device(fake_radio)
        await device.connect()

        assert await device.identify() is None
        assert fake_radio.writes == [(ADDRESS, b'\xd5')]

    @pytest.mark.asyncio
    async def test_unrelated_notifications_are_discarded(self, fake_radio):
        fake_radio.responders[0xD1] = [b'\xd2\x00\x00', AdvertisementFixtures.time_response()]
        device = make_device(fake_radio)
        await device.connect()

        assert await device.read_time() == datetime(2024, 3, 15, 13, 45, 30)

    @pytest.mark.asyncio
    async def test_malformed_time_response(self, fake_radio):
        fake_radio.responders[0xD1] = [b'\xd1\x01\x24']
        device = make_device(fake_radio)
        await device.connect()

        with pytest.raises(ProtocolMismatchError):
            await device.read_time()

        assert device.state == SessionState.READY

    @pytest.mark.asyncio
    async def test_command_timeout(self, fake_radio):
        device = make_device(fake_radio, command_timeout=0.05)
        await device.connect()

        with pytest.raises(CommandTimeoutError):
            await device.read_time()

        # The slot is free again
        assert device.state == SessionState.READY
        await device.identify()

    @pytest.mark.asyncio
    async def test_concurrent_command_rejected(self, fake_radio):
        device = make_device(fake_radio, command_timeout=1.0)
        await device.connect()

        pending = asyncio.create_task(device.read_time())
        await asyncio.sleep(0.01)

        with pytest.raises(CommandInProgressError):
            await device.identify()

        fake_radio.notify(ADDRESS, AdvertisementFixtures.time_response())
        assert await pending == datetime(2024, 3, 15, 13, 45, 30)

    @pytest.mark.asyncio
    async def test_write_failure_keeps_session_ready(self, fake_radio):
        error = RuntimeError("ATT error")
        fake_radio.write_error = error
        device = make_device(fake_radio)
        await device.connect()

        with pytest.raises(WriteFailedError) as exc_info:
            await device.identify()

        assert exc_info.value.cause is error
        assert device.state == SessionState.READY

        fake_radio.write_error = None
        await device.identify()

    @pytest.mark.asyncio
    async def test_write_requires_ready_session(self, fake_radio):
        device = make_device(fake_radio)

        with pytest.raises(SessionStateError):
            await device.identify()

    @pytest.mark.asyncio
    async def test_connect_and_response_are_timed(self, responsive_radio, mock_performance_monitor):
        device = make_device(responsive_radio, performance_monitor=mock_performance_monitor)
        await device.connect()
        await device.read_time()
        await device.identify()

        timed = [c[0][0] for c in mock_performance_monitor.measure_time.call_args_list]
        assert timed == ["ble_connect", "ble_response"]


class TestLinkLoss:
    """Test disconnects and radio state changes while connected."""

    @pytest.mark.asyncio
    async def test_disconnect_during_command(self, fake_radio):
        device = make_device(fake_radio, command_timeout=1.0)
        await device.connect()

        pending = asyncio.create_task(device.read_time())
        await asyncio.sleep(0.01)
        fake_radio.drop_link(ADDRESS)

        with pytest.raises(UnexpectedDisconnectError):
            await pending

        assert device.state == SessionState.DISCONNECTED
        assert fake_radio.listener_count == 0

    @pytest.mark.asyncio
    async def test_disconnect_of_other_device_is_ignored(self, fake_radio):
        device = make_device(fake_radio)
        await device.connect()

        fake_radio.drop_link(AdvertisementFixtures.OTHER_ADDRESS)
        await asyncio.sleep(0.01)

        assert device.state == SessionState.READY

    @pytest.mark.asyncio
    async def test_radio_power_off_while_ready(self, fake_radio):
        device = make_device(fake_radio, command_timeout=1.0)
        await device.connect()

        pending = asyncio.create_task(device.read_time())
        await asyncio.sleep(0.01)
        fake_radio.power(RadioState.POWERED_OFF)

        with pytest.raises(RadioStateChangedError) as exc_info:
            await pending

        assert exc_info.value.state == RadioState.POWERED_OFF
        assert device.state == SessionState.DISCONNECTED

    @pytest.mark.asyncio
    async def test_local_disconnect_fails_pending_command(self, fake_radio):
        device = make_device(fake_radio, command_timeout=1.0)
        await device.connect()

        pending = asyncio.create_task(device.read_time())
        await asyncio.sleep(0.01)
        await device.disconnect()

        with pytest.raises(SessionClosedError):
            await pending

        assert device.state == SessionState.DISCONNECTED
        assert fake_radio.disconnect_calls == [ADDRESS]
        assert fake_radio.listener_count == 0


class TestSessionRegistry:

    @pytest.mark.asyncio
    async def test_one_live_session_per_address(self, fake_radio):
        registry = SessionRegistry(fake_radio, scan_timeout=0.5)

        session = registry.session_for(ADDRESS)
        assert registry.session_for(ADDRESS) is session
        assert registry.session_for(AdvertisementFixtures.OTHER_ADDRESS) is not session

        await session.connect()
        await session.disconnect()

        replacement = registry.session_for(ADDRESS)
        assert replacement is not session
        assert replacement.state == SessionState.IDLE

    @pytest.mark.asyncio
    async def test_close_all(self, fake_radio):
        registry = SessionRegistry(fake_radio, scan_timeout=0.5)
        session = registry.session_for(ADDRESS)
        await session.connect()

        await registry.close_all()

        assert session.state == SessionState.DISCONNECTED
        assert registry.sessions == []
