import asyncio
from datetime import timedelta

import pytest
from unittest.mock import AsyncMock

from gate_attendance.backend.models.db_models import Device, DeviceStatus, DeviceTelemetry
from gate_attendance.backend.services.device_service import DeviceService
from gate_attendance.backend.services.errors import InvalidArgumentError, NotFoundError
from gate_attendance.backend.tools.keyed_lock import KeyedLock


@pytest.mark.asyncio
class TestHeartbeats:

    async def test_first_heartbeat_creates_normal_device(self, device_service, db, clock):
        telemetry = DeviceTelemetry(ip_address="10.0.0.21", wifi_signal=-61, uptime=3600, firmware="1.4.2")

        device = await device_service.record_heartbeat("gate-1", telemetry)

        assert device.status == DeviceStatus.NORMAL
        assert device.ip_address == "10.0.0.21"
        assert device.last_heartbeat.tzinfo is not None
        assert clock.now() - device.last_heartbeat < timedelta(seconds=5)
        assert "gate-1" in db.devices

    async def test_heartbeat_brings_offline_device_back(self, device_service, db, clock):
        db.devices["gate-1"] = Device(device_id="gate-1", status=DeviceStatus.OFFLINE,
                                      last_heartbeat=clock.now() - timedelta(minutes=10))

        device = await device_service.record_heartbeat("gate-1")

        assert device.status == DeviceStatus.NORMAL
        assert clock.now() - device.last_heartbeat < timedelta(seconds=5)

    async def test_tampered_is_sticky_until_reported_otherwise(self, device_service, db):
        db.devices["gate-1"] = Device(device_id="gate-1", status=DeviceStatus.TAMPERED)

        still = await device_service.record_heartbeat("gate-1", DeviceTelemetry(ip_address="10.0.0.2"))
        cleared = await device_service.record_heartbeat("gate-1", DeviceTelemetry(status="NORMAL"))

        assert still.status == DeviceStatus.TAMPERED
        assert cleared.status == DeviceStatus.NORMAL

    async def test_heartbeat_requires_device_id(self, device_service):
        with pytest.raises(InvalidArgumentError):
            await device_service.record_heartbeat(" ")

    async def test_offline_cannot_be_reported(self):
        with pytest.raises(ValueError):
            DeviceTelemetry(status="offline")


@pytest.mark.asyncio
class TestRegistration:

    async def test_new_device_starts_offline(self, device_service):
        device = await device_service.upsert_registration("gate-9", "North gate")

        assert device.status == DeviceStatus.OFFLINE
        assert device.location == "North gate"
        assert device.description == ""

    async def test_registration_keeps_status_of_existing_device(self, device_service):
        await device_service.record_heartbeat("gate-1")

        device = await device_service.upsert_registration("gate-1", "Main gate", "left reader")

        assert device.status == DeviceStatus.NORMAL
        assert device.description == "left reader"

    async def test_report_tamper_on_unknown_device_is_ignored(self, device_service, db):
        assert await device_service.report_tamper("ghost") is None
        assert db.devices == {}


@pytest.mark.asyncio
class TestLiveness:

    async def test_silent_device_is_offline_on_next_listing(self, device_service, db, clock):
        db.devices["gate-1"] = Device(device_id="gate-1", status=DeviceStatus.NORMAL,
                                      last_heartbeat=clock.now() - timedelta(minutes=3))
        db.devices["gate-2"] = Device(device_id="gate-2", status=DeviceStatus.NORMAL,
                                      last_heartbeat=clock.now() - timedelta(seconds=30))

        devices = {d.device_id: d for d in await device_service.list_all()}

        assert devices["gate-1"].status == DeviceStatus.OFFLINE
        assert devices["gate-2"].status == DeviceStatus.NORMAL

    async def test_offline_then_heartbeat_is_normal_again(self, device_service, db, clock):
        db.devices["gate-1"] = Device(device_id="gate-1", status=DeviceStatus.NORMAL,
                                      last_heartbeat=clock.now() - timedelta(minutes=3))
        await device_service.list_all()

        await device_service.record_heartbeat("gate-1")
        devices = await device_service.list_all()

        assert devices[0].status == DeviceStatus.NORMAL

    async def test_tampered_device_also_goes_offline(self, device_service, db, clock):
        db.devices["gate-1"] = Device(device_id="gate-1", status=DeviceStatus.TAMPERED,
                                      last_heartbeat=clock.now() - timedelta(minutes=5))

        assert await device_service.sweep_offline_devices() == ["gate-1"]

    async def test_heartbeat_landing_during_sweep_wins(self, device_service, db, clock):
        db.devices["gate-1"] = Device(device_id="gate-1", status=DeviceStatus.NORMAL,
                                      last_heartbeat=clock.now() - timedelta(minutes=3))

        _, device = await asyncio.gather(
            device_service.sweep_offline_devices(),
            device_service.record_heartbeat("gate-1"),
        )

        assert device.status == DeviceStatus.NORMAL
        assert db.devices["gate-1"].status == DeviceStatus.NORMAL

    async def test_failing_row_is_skipped(self, db, clock, storage):
        db_client = AsyncMock()
        db_client.find_stale_devices.return_value = ["gate-1", "gate-2"]
        db_client.mark_offline_if_stale.side_effect = [RuntimeError("row locked"), True]
        service = DeviceService(db_client=db_client, clock=clock, locks=KeyedLock(), storage=storage)

        assert await service.sweep_offline_devices() == ["gate-2"]

    async def test_listing_survives_a_failed_sweep(self, device_service, db, clock, caplog):
        db.devices["gate-1"] = Device(device_id="gate-1", status=DeviceStatus.NORMAL,
                                      last_heartbeat=clock.now() - timedelta(minutes=3))
        db.find_stale_devices = AsyncMock(side_effect=OSError("connection reset"))

        devices = await device_service.list_all()

        assert [d.device_id for d in devices] == ["gate-1"]
        assert devices[0].status == DeviceStatus.NORMAL
        assert "Liveness sweep before device listing failed" in caplog.text


@pytest.mark.asyncio
class TestAdministration:

    async def test_get_update_delete(self, device_service):
        await device_service.upsert_registration("gate-1")

        updated = await device_service.update("gate-1", {"location": "Back gate", "description": None})
        assert updated.location == "Back gate"
        assert (await device_service.get("gate-1")).location == "Back gate"

        await device_service.delete("gate-1")
        with pytest.raises(NotFoundError):
            await device_service.get("gate-1")

    async def test_missing_device(self, device_service):
        with pytest.raises(NotFoundError):
            await device_service.update("nope", {"location": "x"})
        with pytest.raises(NotFoundError):
            await device_service.delete("nope")


@pytest.mark.asyncio
class TestLastScannedTag:

    async def test_remember_and_take(self, device_service, redis_store):
        await device_service.remember_tag("04FF", "gate-1")

        peeked = await device_service.take_last_tag()
        taken = await device_service.take_last_tag(clear=True)

        assert peeked.rfid_tag == taken.rfid_tag == "04FF"
        assert redis_store.ttl == 300
        with pytest.raises(NotFoundError):
            await device_service.take_last_tag()

    async def test_empty_slot(self, device_service):
        with pytest.raises(NotFoundError, match="No RFID tag"):
            await device_service.take_last_tag()
