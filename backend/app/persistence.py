from __future__ import annotations

from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from threading import Lock
from typing import Iterator, Optional

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    create_engine,
    func,
    select,
)
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from backend.app.models import (
    ACTIVE_SESSION_STATUSES,
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
from backend.app.store import StoreNotFoundError, StoreUnavailableError, new_id, pick_user_match


def _normalize_database_url(database_url: str) -> str:
    value = database_url.strip()
    if value.startswith("sqlite:///"):
        sqlite_path = value[len("sqlite:///") :].split("?", 1)[0]
        if sqlite_path and sqlite_path != ":memory:":
            path = Path(sqlite_path)
            if path.parent:
                path.parent.mkdir(parents=True, exist_ok=True)
        return value
    if "://" in value:
        return value
    path = Path(value)
    if path.parent:
        path.parent.mkdir(parents=True, exist_ok=True)
    return f"sqlite:///{str(path).replace(chr(92), '/')}"


class SqlStore:
    """
    Relational store shared with the account system. Table and column names follow
    that system's schema; the User table is only read here.
    """

    def __init__(self, database_url: str) -> None:
        self.database_url = _normalize_database_url(database_url)
        self._lock = Lock()
        self.engine: Engine = create_engine(
            self.database_url,
            future=True,
            pool_pre_ping=True,
        )
        self.metadata = MetaData()
        self.users = Table(
            "User",
            self.metadata,
            Column("id", String(191), primary_key=True),
            Column("name", String(191), nullable=False),
            Column("email", String(191), nullable=True),
            Column("phone", String(50), nullable=False),
            Column("subscriptionId", String(191), nullable=True),
            Column("usageId", String(191), nullable=True),
            Column("techUsage", String(191), nullable=True),
            Column("experienceLevel", String(191), nullable=True),
        )
        self.free_trials = Table(
            "FreeTrial",
            self.metadata,
            Column("id", Integer, primary_key=True, autoincrement=True),
            Column("phone", String(50), nullable=False, unique=True),
            Column("createdAt", DateTime, nullable=False),
        )
        self.help_sessions = Table(
            "HelpSession",
            self.metadata,
            Column("id", String(191), primary_key=True),
            Column("userId", String(191), nullable=False, index=True),
            Column("type", String(20), nullable=False),
            Column("title", String(191), nullable=False),
            Column("status", String(50), nullable=False),
            Column("priority", String(20), nullable=False),
            Column("completed", Boolean, nullable=False, default=False),
            Column("lastMessage", Text, nullable=True),
            Column("createdAt", DateTime, nullable=False),
            Column("updatedAt", DateTime, nullable=False),
        )
        self.messages = Table(
            "Message",
            self.metadata,
            Column("id", String(191), primary_key=True),
            Column("content", Text, nullable=False),
            Column("isAdmin", Boolean, nullable=False),
            Column("helpSessionId", String(191), nullable=False, index=True),
            Column("createdAt", DateTime, nullable=False),
            Column("read", Boolean, nullable=False),
        )
        self.usage_records = Table(
            "UsageRecord",
            self.metadata,
            Column("id", String(191), primary_key=True),
            Column("userId", String(191), nullable=False, index=True),
            Column("sessionId", String(191), nullable=False),
            Column("status", String(50), nullable=False),
            Column("createdAt", DateTime, nullable=False),
        )
        self._ensure_schema()

    def _ensure_schema(self) -> None:
        self.metadata.create_all(self.engine)

    @contextmanager
    def _connect(self, *, write: bool = False) -> Iterator[Connection]:
        try:
            if write:
                with self._lock, self.engine.begin() as conn:
                    yield conn
            else:
                with self.engine.connect() as conn:
                    yield conn
        except IntegrityError:
            raise
        except SQLAlchemyError as exc:
            raise StoreUnavailableError(f"database error: {exc.__class__.__name__}") from exc

    def ping(self) -> bool:
        try:
            with self.engine.connect() as conn:
                conn.execute(select(1))
            return True
        except SQLAlchemyError:
            return False

    def add_user(self, user: UserRecord) -> UserRecord:
        with self._connect(write=True) as conn:
            conn.execute(
                self.users.insert().values(
                    id=user.id,
                    name=user.name,
                    email=user.email,
                    phone=user.phone,
                    subscriptionId=user.subscription_id,
                    usageId=user.usage_id,
                    techUsage=user.tech_usage,
                    experienceLevel=user.experience_level,
                )
            )
        return user

    def get_user(self, user_id: str) -> Optional[UserRecord]:
        with self._connect() as conn:
            row = conn.execute(select(self.users).where(self.users.c.id == user_id)).first()
        return self._user_from_row(row) if row else None

    def find_user_by_phone(self, phone: str) -> Optional[UserRecord]:
        digits = normalize_phone(phone)
        if not digits:
            return None
        with self._connect() as conn:
            rows = conn.execute(
                select(self.users).where(self.users.c.phone.like(f"%{digits}%"))
            ).all()
        return pick_user_match([self._user_from_row(row) for row in rows], digits)

    def has_free_trial(self, phone: str) -> bool:
        digits = normalize_phone(phone)
        if not digits:
            return False
        with self._connect() as conn:
            row = conn.execute(
                select(self.free_trials.c.id).where(self.free_trials.c.phone.like(f"%{digits}%"))
            ).first()
        return row is not None

    def record_free_trial(self, phone: str) -> bool:
        digits = normalize_phone(phone)
        if not digits:
            return False
        try:
            with self._connect(write=True) as conn:
                conn.execute(self.free_trials.insert().values(phone=digits, createdAt=utc_now()))
        except IntegrityError:
            return False
        return True

    def list_free_trials(self) -> list[FreeTrialRecord]:
        with self._connect() as conn:
            rows = conn.execute(select(self.free_trials)).all()
        return [FreeTrialRecord(phone=row.phone, created_at_utc=row.createdAt) for row in rows]

    def count_completed_sessions(self, user_id: str, start: datetime, end: datetime) -> int:
        sessions = self.help_sessions
        with self._connect() as conn:
            count = conn.execute(
                select(func.count())
                .select_from(sessions)
                .where(
                    sessions.c.userId == user_id,
                    sessions.c.completed.is_(True),
                    sessions.c.createdAt >= start,
                    sessions.c.createdAt < end,
                )
            ).scalar_one()
        return int(count or 0)

    def find_active_session(self, user_id: str) -> Optional[HelpSessionRecord]:
        sessions = self.help_sessions
        with self._connect() as conn:
            row = conn.execute(
                select(sessions)
                .where(
                    sessions.c.userId == user_id,
                    sessions.c.completed.is_(False),
                    sessions.c.status.in_(sorted(ACTIVE_SESSION_STATUSES)),
                )
                .order_by(sessions.c.createdAt.desc())
                .limit(1)
            ).first()
        return self._session_from_row(row) if row else None

    def latest_session_created_since(
        self, user_id: str, since: datetime
    ) -> Optional[HelpSessionRecord]:
        sessions = self.help_sessions
        with self._connect() as conn:
            row = conn.execute(
                select(sessions)
                .where(sessions.c.userId == user_id, sessions.c.createdAt > since)
                .order_by(sessions.c.createdAt.desc())
                .limit(1)
            ).first()
        return self._session_from_row(row) if row else None

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
        with self._connect(write=True) as conn:
            conn.execute(
                self.help_sessions.insert().values(
                    id=session.id,
                    userId=session.user_id,
                    type=session.type.value,
                    title=session.title,
                    status=session.status,
                    priority=session.priority.value,
                    completed=session.completed,
                    lastMessage=session.last_message,
                    createdAt=session.created_at_utc,
                    updatedAt=session.updated_at_utc,
                )
            )
        return session

    def get_session(self, session_id: str) -> HelpSessionRecord:
        with self._connect() as conn:
            row = conn.execute(
                select(self.help_sessions).where(self.help_sessions.c.id == session_id)
            ).first()
        if not row:
            raise StoreNotFoundError(f"help session not found: {session_id}")
        return self._session_from_row(row)

    def list_sessions(self, user_id: Optional[str] = None) -> list[HelpSessionRecord]:
        query = select(self.help_sessions).order_by(self.help_sessions.c.createdAt.asc())
        if user_id is not None:
            query = query.where(self.help_sessions.c.userId == user_id)
        with self._connect() as conn:
            rows = conn.execute(query).all()
        return [self._session_from_row(row) for row in rows]

    def update_session_type(self, session_id: str, channel: Channel) -> HelpSessionRecord:
        with self._connect(write=True) as conn:
            result = conn.execute(
                self.help_sessions.update()
                .where(self.help_sessions.c.id == session_id)
                .values(type=channel.value, updatedAt=utc_now())
            )
        if result.rowcount == 0:
            raise StoreNotFoundError(f"help session not found: {session_id}")
        return self.get_session(session_id)

    def add_message(self, session_id: str, content: str, is_admin: bool = False) -> MessageRecord:
        now = utc_now()
        message = MessageRecord(
            id=new_id(),
            help_session_id=session_id,
            content=content,
            is_admin=is_admin,
            created_at_utc=now,
        )
        with self._connect(write=True) as conn:
            result = conn.execute(
                self.help_sessions.update()
                .where(self.help_sessions.c.id == session_id)
                .values(lastMessage=content, updatedAt=now)
            )
            if result.rowcount == 0:
                raise StoreNotFoundError(f"help session not found: {session_id}")
            conn.execute(
                self.messages.insert().values(
                    id=message.id,
                    content=message.content,
                    isAdmin=message.is_admin,
                    helpSessionId=session_id,
                    createdAt=now,
                    read=False,
                )
            )
        return message

    def list_messages(self, session_id: str) -> list[MessageRecord]:
        with self._connect() as conn:
            rows = conn.execute(
                select(self.messages)
                .where(self.messages.c.helpSessionId == session_id)
                .order_by(self.messages.c.createdAt.asc())
            ).all()
        return [
            MessageRecord(
                id=row.id,
                help_session_id=row.helpSessionId,
                content=row.content,
                is_admin=bool(row.isAdmin),
                read=bool(row.read),
                created_at_utc=row.createdAt,
            )
            for row in rows
        ]

    def add_usage_record(
        self, *, user_id: str, session_id: str, status: UsageStatus
    ) -> UsageRecord:
        record = UsageRecord(
            id=new_id(),
            user_id=user_id,
            session_id=session_id,
            status=status,
            created_at_utc=utc_now(),
        )
        with self._connect(write=True) as conn:
            conn.execute(
                self.usage_records.insert().values(
                    id=record.id,
                    userId=record.user_id,
                    sessionId=record.session_id,
                    status=record.status.value,
                    createdAt=record.created_at_utc,
                )
            )
        return record

    def list_usage_records(self, user_id: Optional[str] = None) -> list[UsageRecord]:
        query = select(self.usage_records).order_by(self.usage_records.c.createdAt.asc())
        if user_id is not None:
            query = query.where(self.usage_records.c.userId == user_id)
        with self._connect() as conn:
            rows = conn.execute(query).all()
        return [
            UsageRecord(
                id=row.id,
                user_id=row.userId,
                session_id=row.sessionId,
                status=UsageStatus(row.status),
                created_at_utc=row.createdAt,
            )
            for row in rows
        ]

    @staticmethod
    def _user_from_row(row) -> UserRecord:
        return UserRecord(
            id=row.id,
            name=row.name,
            email=row.email,
            phone=row.phone,
            subscription_id=row.subscriptionId or None,
            usage_id=row.usageId or None,
            tech_usage=row.techUsage,
            experience_level=row.experienceLevel,
        )

    @staticmethod
    def _session_from_row(row) -> HelpSessionRecord:
        return HelpSessionRecord(
            id=row.id,
            user_id=row.userId,
            type=Channel(row.type),
            title=row.title,
            status=row.status,
            completed=bool(row.completed),
            priority=Priority(row.priority),
            last_message=row.lastMessage,
            created_at_utc=row.createdAt,
            updated_at_utc=row.updatedAt,
        )
