from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Optional

from backend.app.models import (
    PLAN_PRIORITY,
    Channel,
    HelpSessionRecord,
    MessageRecord,
    PlanType,
    utc_now,
)

logger = logging.getLogger("support_line.sessions")


class SessionThrottledError(Exception):
    def __init__(self, user_id: str, last_created_at: datetime) -> None:
        super().__init__(f"session created at {last_created_at.isoformat()} for user {user_id}")
        self.user_id = user_id
        self.last_created_at = last_created_at


def session_title(channel: Channel, now: datetime) -> str:
    label = "Text Message Support" if channel == Channel.sms else "Phone Support"
    return f"{label} - {now.strftime('%m/%d/%Y')}"


class SessionTracker:
    """Keeps one open HelpSession per user across the phone and SMS channels."""

    def __init__(self, store, *, payg_cooldown_hours: int = 24) -> None:
        self.store = store
        self.payg_cooldown = timedelta(hours=payg_cooldown_hours)

    def find_active_session(self, user_id: str) -> Optional[HelpSessionRecord]:
        return self.store.find_active_session(user_id)

    def find_or_create_active_session(
        self,
        *,
        user_id: str,
        plan_type: PlanType,
        channel: Channel,
        message_text: str = "",
        now: Optional[datetime] = None,
    ) -> tuple[HelpSessionRecord, bool]:
        existing = self.store.find_active_session(user_id)
        if existing is not None:
            if existing.type != channel:
                logger.info(
                    "session_channel_switched session_id=%s from=%s to=%s",
                    existing.id,
                    existing.type.value,
                    channel.value,
                )
                existing = self.store.update_session_type(existing.id, channel)
            return existing, False

        current = now or utc_now()
        if plan_type == PlanType.pay_as_you_go and self.payg_cooldown:
            recent = self.store.latest_session_created_since(user_id, current - self.payg_cooldown)
            if recent is not None:
                logger.info(
                    "session_throttled user_id=%s last_created_at=%s",
                    user_id,
                    recent.created_at_utc.isoformat(),
                )
                raise SessionThrottledError(user_id, recent.created_at_utc)

        return self.open_session(
            user_id=user_id,
            plan_type=plan_type,
            channel=channel,
            message_text=message_text,
            now=current,
        ), True

    def open_session(
        self,
        *,
        user_id: str,
        plan_type: PlanType,
        channel: Channel,
        message_text: str = "",
        now: Optional[datetime] = None,
    ) -> HelpSessionRecord:
        current = now or utc_now()
        session = self.store.create_session(
            user_id=user_id,
            channel=channel,
            title=session_title(channel, current),
            priority=PLAN_PRIORITY[plan_type],
            last_message=message_text,
            created_at_utc=current,
        )
        logger.info(
            "session_created session_id=%s user_id=%s channel=%s priority=%s",
            session.id,
            user_id,
            channel.value,
            session.priority.value,
        )
        return session

    def append_message(
        self, session_id: str, content: str, *, is_admin: bool = False
    ) -> MessageRecord:
        return self.store.add_message(session_id, content, is_admin=is_admin)
