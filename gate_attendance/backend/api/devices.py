from fastapi import APIRouter, Depends, Request, Response, status
from typing import List

from ..models.db_models import Device
from ..services.device_service import DeviceService
from ..services.errors import ServiceError
from .schemas.device import (
    DeviceRegisterRequest, DeviceUpdateRequest, HeartbeatRequest, HeartbeatResponse,
)
from .dependencies import get_device_service
from .errors import to_http_exception
from .utilities.limiter import limiter

router = APIRouter(prefix="/devices", tags=["Devices"])


@router.post("/heartbeat", response_model=HeartbeatResponse, summary="Reader heartbeat with telemetry")
@limiter.limit("30/minute")
async def device_heartbeat(
    request: Request,
    heartbeat: HeartbeatRequest,
    service: DeviceService = Depends(get_device_service),
):
    """Unknown devices are registered on their first heartbeat."""
    try:
        device = await service.record_heartbeat(heartbeat.device_id, heartbeat.to_telemetry())
    except ServiceError as e:
        raise to_http_exception(e)
    return HeartbeatResponse(data=device, server_time=service.clock.now())


@router.post("/register", response_model=Device, status_code=status.HTTP_201_CREATED, summary="Register a device or refresh its location")
async def register_device(body: DeviceRegisterRequest, service: DeviceService = Depends(get_device_service)):
    try:
        return await service.upsert_registration(body.device_id, body.location, body.description)
    except ServiceError as e:
        raise to_http_exception(e)


@router.get("", response_model=List[Device], summary="List devices, newest heartbeat first")
async def list_devices(service: DeviceService = Depends(get_device_service)):
    """Devices silent for longer than the liveness timeout are marked offline before listing."""
    try:
        return await service.list_all()
    except ServiceError as e:
        raise to_http_exception(e)


@router.get("/{device_id}", response_model=Device, summary="Get one device")
async def get_device(device_id: str, service: DeviceService = Depends(get_device_service)):
    try:
        return await service.get(device_id)
    except ServiceError as e:
        raise to_http_exception(e)


@router.put("/{device_id}", response_model=Device, summary="Update location/description")
async def update_device(device_id: str, body: DeviceUpdateRequest, service: DeviceService = Depends(get_device_service)):
    try:
        return await service.update(device_id, body.model_dump())
    except ServiceError as e:
        raise to_http_exception(e)


@router.delete("/{device_id}", status_code=status.HTTP_204_NO_CONTENT, summary="Delete a device")
async def delete_device(device_id: str, service: DeviceService = Depends(get_device_service)):
    try:
        await service.delete(device_id)
    except ServiceError as e:
        raise to_http_exception(e)
    return Response(status_code=status.HTTP_204_NO_CONTENT)
