"""Real-time notification schemas."""

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, Field


class AppointmentNotification(BaseModel):
    """Payload pushed to a patient when their appointment changes state."""

    appointment_id: int
    message: str
    old_status: str
    new_status: str
    payment_status: str | None = None
    category: Literal["appointment"] = "appointment"
    timestamp: datetime
    context: dict[str, Any] = Field(default_factory=dict)


class NotificationEnvelope(BaseModel):
    """Wire envelope for every server-to-client notification frame."""

    type: Literal["notification"] = "notification"
    data: dict[str, Any]
