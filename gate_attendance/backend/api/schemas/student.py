from pydantic import BaseModel, Field, ConfigDict
from typing import Optional

from ...models.redis_models import LastScannedTag


class StudentCreateRequest(BaseModel):
    """Request model for enrolling a student."""
    model_config = ConfigDict(populate_by_name=True)

    school_number: str = Field(..., alias="studentId", description="External student id, unique.")
    rfid_tag: str = Field(..., alias="rfidTag")
    full_name: str = Field(..., alias="name")
    class_name: str = Field(..., alias="class")
    grade: str
    gender: Optional[str] = None
    parent_contact: Optional[str] = Field(None, alias="parentContact")
    active: bool = True


class StudentUpdateRequest(BaseModel):
    """Partial update; omitted fields keep their value."""
    model_config = ConfigDict(populate_by_name=True)

    school_number: Optional[str] = Field(None, alias="studentId")
    rfid_tag: Optional[str] = Field(None, alias="rfidTag")
    full_name: Optional[str] = Field(None, alias="name")
    class_name: Optional[str] = Field(None, alias="class")
    grade: Optional[str] = None
    gender: Optional[str] = None
    parent_contact: Optional[str] = Field(None, alias="parentContact")
    active: Optional[bool] = None


class StoreTagRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    rfid_tag: str = Field(..., alias="rfidTag")
    device_id: str = Field(..., alias="deviceId")


class StoreTagResponse(BaseModel):
    success: bool = True
    message: str = "RFID tag stored successfully"


class LastTagResponse(BaseModel):
    success: bool = True
    data: LastScannedTag
