from pydantic import BaseModel, Field, ConfigDict, field_validator
from datetime import datetime
from typing import Optional

from ...models.db_models import Device, DeviceStatus, DeviceTelemetry, parse_reported_status


class HeartbeatRequest(BaseModel):
    """Periodic liveness report from a reader, with its network telemetry."""
    model_config = ConfigDict(populate_by_name=True)

    device_id: str = Field(..., alias="deviceId")
    ip_address: Optional[str] = Field(None, alias="ipAddress")
    wifi_signal: Optional[int] = Field(None, alias="wifiSignal")
    uptime: Optional[int] = None
    cache_size: Optional[int] = Field(None, alias="cacheSize")
    firmware: Optional[str] = None
    mac_address: Optional[str] = Field(None, alias="macAddress")
    status: Optional[DeviceStatus] = Field(None, description="Explicit security report ('NORMAL' or 'TAMPERED').")

    @field_validator("status", mode="before")
    def reported_status(cls, v):
        return parse_reported_status(v)

    def to_telemetry(self) -> DeviceTelemetry:
        return DeviceTelemetry(**self.model_dump(exclude={"device_id"}))


class HeartbeatResponse(BaseModel):
    success: bool = True
    data: Device
    server_time: datetime = Field(description="Current server time in the canonical timezone.")


class DeviceRegisterRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    device_id: str = Field(..., alias="deviceId")
    location: Optional[str] = None
    description: Optional[str] = None


class DeviceUpdateRequest(BaseModel):
    location: Optional[str] = None
    description: Optional[str] = None
