import logging
from datetime import timedelta
from typing import Any, Dict, List, Optional

from ..db.db_client import AsyncPostgresClient
from ..db.redis_client import RedisClient
from ..models.db_models import Device, DeviceStatus, DeviceTelemetry
from ..models.redis_models import LastScannedTag
from ..modules.clock import ClockService
from ..tools.keyed_lock import KeyedLock
from ..tools.storage_guard import StorageGuard
from .errors import InvalidArgumentError, NotFoundError, ServiceError

logger = logging.getLogger(__name__)


def _require_device_id(device_id: Optional[str]) -> str:
    if not device_id or not device_id.strip():
        raise InvalidArgumentError("Device ID is required.")
    return device_id.strip()


class DeviceService:
    """
    Device registry and liveness tracker. Also owns the single-slot store of the
    last unmatched tag seen at a reader.

    Liveness is pull-based: `sweep_offline_devices` lowers stale devices to
    'offline' and runs before every listing and from the scheduler.
    """
    def __init__(
        self,
        db_client: AsyncPostgresClient,
        clock: ClockService,
        locks: KeyedLock,
        redis_client: Optional[RedisClient] = None,
        storage: Optional[StorageGuard] = None,
        liveness_timeout_seconds: int = 120,
        last_tag_ttl_seconds: int = 300,
    ):
        self.db_client = db_client
        self.redis_client = redis_client
        self.clock = clock
        self.locks = locks
        self.storage = storage or StorageGuard()
        self.liveness_timeout = timedelta(seconds=liveness_timeout_seconds)
        self.last_tag_ttl_seconds = last_tag_ttl_seconds

    def _localize(self, device: Device) -> Device:
        updates = {}
        if device.last_heartbeat:
            updates["last_heartbeat"] = self.clock.to_local(device.last_heartbeat)
        return device.model_copy(update=updates) if updates else device

    # ----- Device-facing -----

    async def upsert_registration(self, device_id: str, location: Optional[str] = None, description: Optional[str] = None) -> Device:
        """New devices start 'offline'; existing ones only get location/description refreshed."""
        device_id = _require_device_id(device_id)
        async with self.locks.hold(device_id):
            device = await self.storage.write(
                lambda: self.db_client.register_device(device_id, location or "Unknown", description or ""),
                "device registration",
            )
        logger.info(f"Device '{device_id}' registered at '{device.location}'.")
        return self._localize(device)

    async def record_heartbeat(self, device_id: str, telemetry: Optional[DeviceTelemetry] = None) -> Device:
        """
        Stamps the heartbeat with the current time and stores telemetry verbatim.
        A stale 'offline' always clears; a 'tampered' device stays tampered
        unless the heartbeat itself reports a status.
        """
        device_id = _require_device_id(device_id)
        telemetry = telemetry or DeviceTelemetry()
        async with self.locks.hold(device_id):
            device = await self.storage.write(
                lambda: self.db_client.record_heartbeat(device_id, telemetry, self.clock.now()),
                "device heartbeat",
            )
        if device.status == DeviceStatus.TAMPERED:
            logger.warning(f"Heartbeat from '{device_id}': device is in tampered state.")
        else:
            logger.debug(f"Heartbeat from '{device_id}' ({telemetry.ip_address}).")
        return self._localize(device)

    async def report_tamper(self, device_id: str) -> Optional[Device]:
        """Marks a known device as tampered after a scan carried a tamper flag. Unknown devices are ignored."""
        device_id = _require_device_id(device_id)
        logger.warning(f"Security alert: device '{device_id}' reported tampered status.")
        async with self.locks.hold(device_id):
            device = await self.storage.write(
                lambda: self.db_client.set_device_status(device_id, DeviceStatus.TAMPERED),
                "device tamper report",
            )
        if not device:
            logger.warning(f"Tamper report for unregistered device '{device_id}' ignored.")
            return None
        return self._localize(device)

    # ----- Liveness -----

    async def sweep_offline_devices(self) -> List[str]:
        """
        Flips every device without a heartbeat inside the liveness timeout to 'offline'.

        Candidates come from a snapshot; each flip is made under the device lock with
        staleness re-checked in the update itself, so a heartbeat that landed in
        between always wins. A failing row is logged and skipped.
        """
        cutoff = self.clock.now() - self.liveness_timeout
        candidates = await self.storage.read(lambda: self.db_client.find_stale_devices(cutoff), "stale device scan")
        flipped = []
        for device_id in candidates:
            try:
                async with self.locks.hold(device_id):
                    changed = await self.storage.write(
                        lambda: self.db_client.mark_offline_if_stale(device_id, cutoff),
                        "device offline flip",
                    )
                if changed:
                    flipped.append(device_id)
            except Exception as e:
                logger.error(f"Liveness sweep skipped device '{device_id}': {e}", exc_info=True)
        if flipped:
            logger.info(f"Liveness sweep marked {len(flipped)} device(s) offline: {', '.join(flipped)}")
        return flipped

    # ----- Administration -----

    async def list_all(self) -> List[Device]:
        try:
            await self.sweep_offline_devices()
        except ServiceError as e:
            logger.error(f"Liveness sweep before device listing failed: {e}")
        devices = await self.storage.read(self.db_client.list_devices, "device listing")
        return [self._localize(device) for device in devices]

    async def get(self, device_id: str) -> Device:
        device = await self.storage.read(lambda: self.db_client.get_device(device_id), "device lookup")
        if not device:
            raise NotFoundError("Device not found.")
        return self._localize(device)

    async def update(self, device_id: str, changes: Dict[str, Any]) -> Device:
        changes = {key: value for key, value in changes.items() if value is not None}
        async with self.locks.hold(device_id):
            device = await self.storage.write(lambda: self.db_client.update_device(device_id, changes), "device update")
        if not device:
            raise NotFoundError("Device not found.")
        return self._localize(device)

    async def delete(self, device_id: str) -> None:
        async with self.locks.hold(device_id):
            deleted = await self.storage.write(lambda: self.db_client.delete_device(device_id), "device delete")
        if not deleted:
            raise NotFoundError("Device not found.")
        logger.info(f"Device '{device_id}' deleted.")

    # ----- Last scanned tag -----

    async def remember_tag(self, rfid_tag: str, device_id: Optional[str] = None) -> LastScannedTag:
        if not rfid_tag or not rfid_tag.strip():
            raise InvalidArgumentError("RFID tag is required.")
        if self.redis_client is None:
            raise InvalidArgumentError("Last-tag store is not configured.")
        entry = LastScannedTag(rfid_tag=rfid_tag.strip(), device_id=device_id, detected_at=self.clock.now())
        await self.storage.write(lambda: self.redis_client.put_last_tag(entry, ttl=self.last_tag_ttl_seconds), "last tag store")
        logger.info(f"Stored last scanned tag '{entry.rfid_tag}' from '{device_id}'.")
        return entry

    async def take_last_tag(self, clear: bool = False) -> LastScannedTag:
        if self.redis_client is None:
            raise NotFoundError("No RFID tag has been detected recently.")
        # Clearing consumes the slot, so it must not be retried.
        run = self.storage.write if clear else self.storage.read
        entry = await run(lambda: self.redis_client.get_last_tag(clear=clear), "last tag read")
        if not entry:
            raise NotFoundError("No RFID tag has been detected recently.")
        return entry.model_copy(update={"detected_at": self.clock.to_local(entry.detected_at)})
