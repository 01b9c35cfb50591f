from __future__ import annotations

from datetime import datetime
from threading import RLock
from typing import Optional
from uuid import uuid4

from backend.app.models import (
    Channel,
    FreeTrialRecord,
    HelpSessionRecord,
    MessageRecord,
    Priority,
    SessionStatus,
    UsageRecord,
    UsageStatus,
    UserRecord,
    utc_now,
)
from backend.app.services.contacts import normalize_phone


def new_id() -> str:
    return str(uuid4())


class StoreUnavailableError(Exception):
    pass


class StoreNotFoundError(Exception):
    pass


def pick_user_match(users: list[UserRecord], digits: str) -> Optional[UserRecord]:
    """Prefer an exact normalized match over a substring match."""
    partial: Optional[UserRecord] = None
    for user in users:
        normalized = normalize_phone(user.phone)
        if normalized == digits:
            return user
        if partial is None and digits in normalized:
            partial = user
    return partial


class InMemoryStore:
    def __init__(self) -> None:
        self._lock = RLock()
        self.users: dict[str, UserRecord] = {}
        self.free_trials: dict[str, FreeTrialRecord] = {}
        self.sessions: dict[str, HelpSessionRecord] = {}
        self.messages: list[MessageRecord] = []
        self.usage_records: list[UsageRecord] = []

    def ping(self) -> bool:
        return True

    def add_user(self, user: UserRecord) -> UserRecord:
        with self._lock:
            self.users[user.id] = user
            return user

    def get_user(self, user_id: str) -> Optional[UserRecord]:
        return self.users.get(user_id)

    def find_user_by_phone(self, phone: str) -> Optional[UserRecord]:
        digits = normalize_phone(phone)
        if not digits:
            return None
        with self._lock:
            return pick_user_match(list(self.users.values()), digits)

    def has_free_trial(self, phone: str) -> bool:
        digits = normalize_phone(phone)
        if not digits:
            return False
        with self._lock:
            return any(digits in key for key in self.free_trials)

    def record_free_trial(self, phone: str) -> bool:
        digits = normalize_phone(phone)
        with self._lock:
            if not digits or digits in self.free_trials:
                return False
            self.free_trials[digits] = FreeTrialRecord(phone=digits, created_at_utc=utc_now())
            return True

    def list_free_trials(self) -> list[FreeTrialRecord]:
        with self._lock:
            return list(self.free_trials.values())

    def count_completed_sessions(self, user_id: str, start: datetime, end: datetime) -> int:
        with self._lock:
            return sum(
                1
                for session in self.sessions.values()
                if session.user_id == user_id
                and session.completed
                and start <= session.created_at_utc < end
            )

    def find_active_session(self, user_id: str) -> Optional[HelpSessionRecord]:
        with self._lock:
            candidates = [
                session
                for session in self.sessions.values()
                if session.user_id == user_id and session.is_active
            ]
        if not candidates:
            return None
        return max(candidates, key=lambda item: item.created_at_utc)

    def latest_session_created_since(
        self, user_id: str, since: datetime
    ) -> Optional[HelpSessionRecord]:
        with self._lock:
            candidates = [
                session
                for session in self.sessions.values()
                if session.user_id == user_id and session.created_at_utc > since
            ]
        if not candidates:
            return None
        return max(candidates, key=lambda item: item.created_at_utc)

    def create_session(
        self,
        *,
        user_id: str,
        channel: Channel,
        title: str,
        priority: Priority,
        last_message: Optional[str] = None,
        status: str = SessionStatus.ongoing.value,
        completed: bool = False,
        created_at_utc: Optional[datetime] = None,
    ) -> HelpSessionRecord:
        with self._lock:
            now = created_at_utc or utc_now()
            session = HelpSessionRecord(
                id=new_id(),
                user_id=user_id,
                type=channel,
                title=title,
                status=status,
                completed=completed,
                priority=priority,
                last_message=last_message or None,
                created_at_utc=now,
                updated_at_utc=now,
            )
            self.sessions[session.id] = session
            return session

    def get_session(self, session_id: str) -> HelpSessionRecord:
        session = self.sessions.get(session_id)
        if not session:
            raise StoreNotFoundError(f"help session not found: {session_id}")
        return session

    def list_sessions(self, user_id: Optional[str] = None) -> list[HelpSessionRecord]:
        with self._lock:
            sessions = [
                session
                for session in self.sessions.values()
                if user_id is None or session.user_id == user_id
            ]
        return sorted(sessions, key=lambda item: item.created_at_utc)

    def update_session_type(self, session_id: str, channel: Channel) -> HelpSessionRecord:
        with self._lock:
            session = self.get_session(session_id)
            session.type = channel
            session.updated_at_utc = utc_now()
            return session

    def add_message(self, session_id: str, content: str, is_admin: bool = False) -> MessageRecord:
        with self._lock:
            session = self.get_session(session_id)
            now = utc_now()
            message = MessageRecord(
                id=new_id(),
                help_session_id=session_id,
                content=content,
                is_admin=is_admin,
                created_at_utc=now,
            )
            self.messages.append(message)
            session.last_message = content
            session.updated_at_utc = now
            return message

    def list_messages(self, session_id: str) -> list[MessageRecord]:
        with self._lock:
            return [item for item in self.messages if item.help_session_id == session_id]

    def add_usage_record(
        self, *, user_id: str, session_id: str, status: UsageStatus
    ) -> UsageRecord:
        with self._lock:
            record = UsageRecord(
                id=new_id(),
                user_id=user_id,
                session_id=session_id,
                status=status,
                created_at_utc=utc_now(),
            )
            self.usage_records.append(record)
            return record

    def list_usage_records(self, user_id: Optional[str] = None) -> list[UsageRecord]:
        with self._lock:
            return [
                record
                for record in self.usage_records
                if user_id is None or record.user_id == user_id
            ]
