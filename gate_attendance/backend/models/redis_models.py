from pydantic import BaseModel, Field
from datetime import datetime
from typing import Optional


class LastScannedTag(BaseModel):
    """
    The most recent tag seen at a reader that did not belong to any student.
    Lives in a single Redis slot with a short TTL so an enrolment screen can pick it up.
    """
    rfid_tag: str = Field(..., description="The scanned tag UID.")
    device_id: Optional[str] = Field(None, description="Reader that saw the tag, if known.")
    detected_at: datetime = Field(..., description="When the tag was seen, canonical timezone.")
