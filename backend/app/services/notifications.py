from __future__ import annotations

import logging
from typing import Optional

from backend.app.services.contacts import display_phone

logger = logging.getLogger("support_line.notifications")


class NotificationDispatcher:
    def __init__(self, messenger, *, admin_phone: str, brand_name: str) -> None:
        self.messenger = messenger
        self.admin_phone = admin_phone
        self.brand_name = brand_name

    def send_to_contact(self, phone: str, text: str, media_url: Optional[str] = None) -> bool:
        return self._send(phone, text, media_url=media_url)

    def notify_admin(self, text: str) -> bool:
        if not self.admin_phone:
            logger.warning("admin_notification_skipped reason=no_admin_phone")
            return False
        return self._send(self.admin_phone, text)

    def alert_admin(self, reason: str, contact: str, details: str = "") -> bool:
        text = (
            f"{self.brand_name.upper()} IVR ALERT: {display_phone(contact)} tried to call "
            f"but was {reason}. {details}"
        ).strip()
        return self.notify_admin(text)

    def _send(self, to: str, text: str, media_url: Optional[str] = None) -> bool:
        try:
            sid = self.messenger.send(to, text, media_url=media_url)
        except Exception:
            logger.exception("notification_failed to=%s", to)
            return False
        return sid is not None
