from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from backend.app.main import create_app
from backend.app.models import Channel, Priority, SessionStatus, UserRecord, utc_now
from backend.app.services.decision import DecisionEngine
from backend.app.store import new_id

ADMIN_PHONE = "+17206122979"
BASE_URL = "https://support.test"


@dataclass
class SentMessage:
    to: str
    body: str
    media_url: Optional[str] = None


class FakeMessenger:
    def __init__(self) -> None:
        self.sent: list[SentMessage] = []
        self.accepting = True

    def send(self, to: str, body: str, media_url: Optional[str] = None) -> Optional[str]:
        if not self.accepting:
            return None
        self.sent.append(SentMessage(to=to, body=body, media_url=media_url))
        return f"SM{len(self.sent):032d}"

    def bodies_to(self, number: str) -> list[str]:
        return [message.body for message in self.sent if message.to == number]


class FakeUsageReporter:
    def __init__(self) -> None:
        self.reports: list[tuple[str, str]] = []
        self.succeed = True

    def report_session(self, *, customer_id: str, session_id: str) -> bool:
        self.reports.append((customer_id, session_id))
        return self.succeed


class FakeRecordingStorage:
    def __init__(self) -> None:
        self.uploads = []

    def upload(self, recording) -> str:
        self.uploads.append(recording)
        return f"https://recordings.test/{recording.recording_sid}.mp3"


@pytest.fixture()
def app(monkeypatch: pytest.MonkeyPatch) -> FastAPI:
    monkeypatch.setenv("PERSISTENCE_ENABLED", "false")
    monkeypatch.setenv("AUTH_ENABLED", "false")
    monkeypatch.setenv("VERIFY_TWILIO_SIGNATURES", "false")
    monkeypatch.setenv("PUBLIC_BASE_URL", BASE_URL)
    monkeypatch.setenv("FORWARD_NUMBER", ADMIN_PHONE)
    monkeypatch.setenv("ADMIN_PHONE", ADMIN_PHONE)
    for key in ("TWILIO_ACCOUNT_SID", "TWILIO_AUTH_TOKEN", "STRIPE_API_KEY", "RECORDINGS_BUCKET"):
        monkeypatch.delenv(key, raising=False)
    application = create_app()
    application.state.messenger = FakeMessenger()
    application.state.usage_reporter = FakeUsageReporter()
    application.state.recording_storage = FakeRecordingStorage()
    return application


@pytest.fixture()
def client(app: FastAPI) -> TestClient:
    return TestClient(app)


@pytest.fixture()
def store(app: FastAPI):
    return app.state.store


@pytest.fixture()
def messenger(app: FastAPI) -> FakeMessenger:
    return app.state.messenger


@pytest.fixture()
def usage_reporter(app: FastAPI) -> FakeUsageReporter:
    return app.state.usage_reporter


@pytest.fixture()
def recording_storage(app: FastAPI) -> FakeRecordingStorage:
    return app.state.recording_storage


@pytest.fixture()
def engine(app: FastAPI) -> DecisionEngine:
    return DecisionEngine(
        settings=app.state.settings,
        store=app.state.store,
        messenger=app.state.messenger,
        usage_reporter=app.state.usage_reporter,
        storage=app.state.recording_storage,
        metrics=app.state.metrics,
        base_url=BASE_URL,
    )


def add_member(
    store,
    *,
    phone: str,
    name: str = "Ada",
    subscription_id: Optional[str] = None,
    usage_id: Optional[str] = None,
    completed_sessions: int = 0,
) -> UserRecord:
    user = store.add_user(
        UserRecord(
            id=new_id(),
            name=name,
            email=f"{name.lower()}@example.com",
            phone=phone,
            subscription_id=subscription_id,
            usage_id=usage_id,
            tech_usage="smartphone",
            experience_level="beginner",
        )
    )
    for _ in range(completed_sessions):
        store.create_session(
            user_id=user.id,
            channel=Channel.phone,
            title="Phone Support",
            priority=Priority.low,
            status=SessionStatus.completed.value,
            completed=True,
            created_at_utc=utc_now(),
        )
    return user


@pytest.fixture()
def member(store):
    def factory(**kwargs) -> UserRecord:
        return add_member(store, **kwargs)

    return factory
