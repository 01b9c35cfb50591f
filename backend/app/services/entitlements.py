from __future__ import annotations

import logging
from datetime import datetime
from typing import Optional

from backend.app.models import Entitlement, PlanType, UserRecord, utc_now
from backend.app.store import StoreUnavailableError

logger = logging.getLogger("support_line.entitlements")


def month_window(now: datetime) -> tuple[datetime, datetime]:
    start = datetime(now.year, now.month, 1)
    if now.month == 12:
        end = datetime(now.year + 1, 1, 1)
    else:
        end = datetime(now.year, now.month + 1, 1)
    return start, end


def plan_type_for(user: UserRecord) -> PlanType:
    if user.subscription_id:
        return PlanType.subscription
    if user.usage_id:
        return PlanType.pay_as_you_go
    return PlanType.free


class EntitlementResolver:
    def __init__(self, store, *, free_sessions_per_month: int = 3) -> None:
        self.store = store
        self.free_sessions_per_month = free_sessions_per_month

    def find_user(self, contact: str) -> Optional[UserRecord]:
        try:
            return self.store.find_user_by_phone(contact)
        except StoreUnavailableError:
            logger.exception("user_lookup_failed contact=%s", contact)
            return None

    def resolve(self, contact: str, *, now: Optional[datetime] = None) -> Entitlement:
        user = self.find_user(contact)
        if user is None:
            return Entitlement()
        return self.resolve_for_user(user, now=now)

    def resolve_for_user(self, user: UserRecord, *, now: Optional[datetime] = None) -> Entitlement:
        start, end = month_window(now or utc_now())
        try:
            used = self.store.count_completed_sessions(user.id, start, end)
        except StoreUnavailableError:
            logger.exception("session_count_failed user_id=%s", user.id)
            return Entitlement(
                user=user,
                plan_type=PlanType.free,
                sessions_used_this_month=0,
                free_sessions_remaining=self.free_sessions_per_month,
                unlimited=False,
                degraded=True,
            )

        plan_type = plan_type_for(user)
        entitlement = Entitlement(
            user=user,
            plan_type=plan_type,
            sessions_used_this_month=used,
            free_sessions_remaining=max(0, self.free_sessions_per_month - used),
            unlimited=plan_type != PlanType.free,
        )
        logger.info(
            "entitlement_resolved user_id=%s plan=%s used=%s remaining=%s",
            user.id,
            plan_type.value,
            used,
            entitlement.free_sessions_remaining,
        )
        return entitlement

    def quota_exhausted(self, entitlement: Entitlement) -> bool:
        return (
            entitlement.plan_type == PlanType.free
            and entitlement.sessions_used_this_month >= self.free_sessions_per_month
        )

    def is_billable(self, entitlement: Entitlement) -> bool:
        return (
            entitlement.plan_type == PlanType.pay_as_you_go
            and entitlement.sessions_used_this_month >= self.free_sessions_per_month
        )
