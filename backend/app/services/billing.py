"""
Metered usage reporting for pay-as-you-go members.

Only usage is reported here; prices, invoices and payment collection live in Stripe.
"""

from __future__ import annotations

import logging
from typing import Protocol

import stripe

from backend.app.settings import Settings

logger = logging.getLogger("support_line.billing")


class UsageReporter(Protocol):
    def report_session(self, *, customer_id: str, session_id: str) -> bool:
        ...


class StripeUsageReporter:
    def __init__(self, *, api_key: str, meter_event_name: str) -> None:
        self.api_key = api_key
        self.meter_event_name = meter_event_name

    def report_session(self, *, customer_id: str, session_id: str) -> bool:
        try:
            stripe.billing.MeterEvent.create(
                api_key=self.api_key,
                event_name=self.meter_event_name,
                identifier=session_id,
                payload={"stripe_customer_id": customer_id, "value": "1"},
            )
        except stripe.StripeError:
            logger.exception(
                "usage_report_failed customer_id=%s session_id=%s", customer_id, session_id
            )
            return False
        logger.info("usage_reported customer_id=%s session_id=%s", customer_id, session_id)
        return True


class DisabledUsageReporter:
    def report_session(self, *, customer_id: str, session_id: str) -> bool:
        logger.warning(
            "usage_not_reported customer_id=%s session_id=%s reason=missing_stripe_key",
            customer_id,
            session_id,
        )
        return False


def build_usage_reporter(settings: Settings) -> UsageReporter:
    if settings.stripe_api_key:
        return StripeUsageReporter(
            api_key=settings.stripe_api_key,
            meter_event_name=settings.stripe_meter_event_name,
        )
    logger.warning("STRIPE_API_KEY is not set; metered billing disabled")
    return DisabledUsageReporter()
