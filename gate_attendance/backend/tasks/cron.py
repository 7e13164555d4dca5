import logging

from ..services.device_service import DeviceService

logger = logging.getLogger(__name__)


async def device_liveness_sweep_task(device_service: DeviceService):
    """
    Periodic job: lowers devices that stopped sending heartbeats to 'offline'.
    Runs from the scheduler, so failures are logged and never raised.
    """
    logger.debug("Running device_liveness_sweep_task...")
    try:
        flipped = await device_service.sweep_offline_devices()
    except Exception as e:
        logger.error(f"Device liveness sweep failed: {e}", exc_info=True)
        return []
    return flipped
