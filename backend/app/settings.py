from __future__ import annotations

import os
from dataclasses import dataclass


def _int_env(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _bool_env(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "y", "on"}


@dataclass(frozen=True)
class Settings:
    app_env: str
    persistence_enabled: bool
    persistence_db_path: str
    database_url: str
    twilio_account_sid: str
    twilio_auth_token: str
    twilio_phone_number: str
    forward_number: str
    admin_phone: str
    verify_twilio_signatures: bool
    public_base_url: str
    auth_enabled: bool
    jwt_secret: str
    jwt_algorithm: str
    stripe_api_key: str
    stripe_meter_event_name: str
    recordings_bucket: str
    recordings_region: str
    recordings_public_base_url: str
    recording_download_timeout_seconds: int
    call_recording_enabled: bool
    free_sessions_per_month: int
    payg_cooldown_hours: int
    dial_timeout_seconds: int
    brand_name: str
    signup_url: str
    chat_base_url: str

    @property
    def admin_numbers(self) -> set[str]:
        return {number for number in (self.admin_phone, self.forward_number) if number}


def load_settings() -> Settings:
    persistence_db_path = os.getenv("PERSISTENCE_DB_PATH", "data/support_line.sqlite3").strip()
    database_url = os.getenv("DATABASE_URL", "").strip()
    if not database_url:
        database_url = f"sqlite:///{persistence_db_path.replace(chr(92), '/')}"
    forward_number = os.getenv("FORWARD_NUMBER", "+17206122979").strip()
    return Settings(
        app_env=os.getenv("APP_ENV", "development"),
        persistence_enabled=_bool_env("PERSISTENCE_ENABLED", True),
        persistence_db_path=persistence_db_path,
        database_url=database_url,
        twilio_account_sid=os.getenv("TWILIO_ACCOUNT_SID", "").strip(),
        twilio_auth_token=os.getenv("TWILIO_AUTH_TOKEN", "").strip(),
        twilio_phone_number=os.getenv("TWILIO_PHONE_NUMBER", "").strip(),
        forward_number=forward_number,
        admin_phone=os.getenv("ADMIN_PHONE", "").strip() or forward_number,
        verify_twilio_signatures=_bool_env("VERIFY_TWILIO_SIGNATURES", False),
        public_base_url=os.getenv("PUBLIC_BASE_URL", "").strip().rstrip("/"),
        auth_enabled=_bool_env("AUTH_ENABLED", False),
        jwt_secret=os.getenv("JWT_SECRET", "dev-only-secret-change-in-prod").strip(),
        jwt_algorithm=os.getenv("JWT_ALGORITHM", "HS256").strip(),
        stripe_api_key=os.getenv("STRIPE_API_KEY", "").strip(),
        stripe_meter_event_name=os.getenv("STRIPE_METER_EVENT_NAME", "help_session").strip(),
        recordings_bucket=os.getenv("RECORDINGS_BUCKET", "").strip(),
        recordings_region=os.getenv("RECORDINGS_REGION", "us-east-1").strip(),
        recordings_public_base_url=os.getenv("RECORDINGS_PUBLIC_BASE_URL", "").strip().rstrip("/"),
        recording_download_timeout_seconds=max(
            1, min(9, _int_env("RECORDING_DOWNLOAD_TIMEOUT_SECONDS", 5))
        ),
        call_recording_enabled=_bool_env("CALL_RECORDING_ENABLED", True),
        free_sessions_per_month=max(0, _int_env("FREE_SESSIONS_PER_MONTH", 3)),
        payg_cooldown_hours=max(0, _int_env("PAYG_COOLDOWN_HOURS", 24)),
        dial_timeout_seconds=max(5, min(120, _int_env("DIAL_TIMEOUT_SECONDS", 30))),
        brand_name=os.getenv("BRAND_NAME", "Eldrix").strip(),
        signup_url=os.getenv("SIGNUP_URL", "eldrix.app").strip(),
        chat_base_url=os.getenv("CHAT_BASE_URL", "http://localhost:3001/chat").strip(),
    )
