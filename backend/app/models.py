from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field


def utc_now() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


class Channel(str, Enum):
    phone = "phone"
    sms = "sms"


class PlanType(str, Enum):
    free = "free"
    pay_as_you_go = "pay-as-you-go"
    subscription = "subscription"


class SessionStatus(str, Enum):
    pending = "pending"
    active = "active"
    ongoing = "ongoing"
    open = "open"
    completed = "completed"
    closed = "closed"


ACTIVE_SESSION_STATUSES = {
    SessionStatus.pending.value,
    SessionStatus.active.value,
    SessionStatus.ongoing.value,
    SessionStatus.open.value,
}


class Priority(str, Enum):
    high = "high"
    medium = "medium"
    low = "low"


PLAN_PRIORITY = {
    PlanType.subscription: Priority.high,
    PlanType.pay_as_you_go: Priority.medium,
    PlanType.free: Priority.low,
}


class UsageStatus(str, Enum):
    reported = "reported"
    report_failed = "report_failed"


class UserRecord(BaseModel):
    id: str
    name: str
    email: Optional[str] = None
    phone: str
    subscription_id: Optional[str] = None
    usage_id: Optional[str] = None
    tech_usage: Optional[str] = None
    experience_level: Optional[str] = None


class FreeTrialRecord(BaseModel):
    phone: str
    created_at_utc: datetime


class HelpSessionRecord(BaseModel):
    id: str
    user_id: str
    type: Channel
    title: str
    status: str = SessionStatus.ongoing.value
    completed: bool = False
    priority: Priority = Priority.medium
    last_message: Optional[str] = None
    created_at_utc: datetime
    updated_at_utc: datetime

    @property
    def is_active(self) -> bool:
        return not self.completed and self.status in ACTIVE_SESSION_STATUSES


class MessageRecord(BaseModel):
    id: str
    help_session_id: str
    content: str
    is_admin: bool = False
    read: bool = False
    created_at_utc: datetime


class UsageRecord(BaseModel):
    id: str
    user_id: str
    session_id: str
    status: UsageStatus
    created_at_utc: datetime


class Entitlement(BaseModel):
    user: Optional[UserRecord] = None
    plan_type: PlanType = PlanType.free
    sessions_used_this_month: int = 0
    free_sessions_remaining: int = 0
    unlimited: bool = False
    degraded: bool = False

    @property
    def registered(self) -> bool:
        return self.user is not None


class SmsRespondRequest(BaseModel):
    session_id: Optional[str] = Field(default=None, alias="sessionId")
    message: Optional[str] = None
    user_id: Optional[str] = Field(default=None, alias="userId")
    media_url: Optional[str] = Field(default=None, alias="mediaUrl")


class SmsRespondResponse(BaseModel):
    success: bool
    message_id: Optional[str] = Field(default=None, serialization_alias="messageId")
    to: Optional[str] = None
    error: Optional[str] = None
