# backend/classbook/schemas/waitlist.py
"""Waitlist listing schema."""

from datetime import datetime
from typing import Optional

from pydantic import ConfigDict

from ._strict_base import StrictModel


class WaitlistEntryView(StrictModel):
    model_config = ConfigDict(extra="ignore", from_attributes=True)

    id: str
    session_id: str
    student_id: str
    position: int
    student_package_id: Optional[str] = None
    notified_at: Optional[datetime] = None
    notification_expires_at: Optional[datetime] = None
