from __future__ import annotations

import logging
import time
from typing import Optional, Union

from fastapi import APIRouter, Depends, FastAPI, Form, HTTPException, Query, Request, Response, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse

from backend.app.auth import AuthContext, require_roles
from backend.app.models import SmsRespondRequest, SmsRespondResponse
from backend.app.observability import MetricsRegistry, configure_logging, observe_request
from backend.app.persistence import SqlStore
from backend.app.services.billing import build_usage_reporter
from backend.app.services.decision import (
    ContactNotFoundError,
    DecisionEngine,
    DeliveryFailedError,
    InvalidRecipientError,
)
from backend.app.services.recordings import build_recording_storage
from backend.app.services.telephony import (
    VoiceReply,
    build_messenger,
    render_message_ack,
    render_voice_reply,
)
from backend.app.services.webhooks import SignatureVerificationError, verify_twilio_signature
from backend.app.settings import Settings, load_settings
from backend.app.store import InMemoryStore, StoreUnavailableError

logger = logging.getLogger("support_line.api")


def create_app() -> FastAPI:
    app = FastAPI(title="Support Line API", version="0.1.0")
    configure_logging()
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=False,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    settings = load_settings()
    app.state.settings = settings
    app.state.store = SqlStore(settings.database_url) if settings.persistence_enabled else InMemoryStore()
    app.state.messenger = build_messenger(settings)
    app.state.usage_reporter = build_usage_reporter(settings)
    app.state.recording_storage = build_recording_storage(settings)
    app.state.metrics = MetricsRegistry()

    @app.middleware("http")
    async def observability_middleware(request: Request, call_next):
        return await observe_request(request, call_next, metrics=app.state.metrics)

    app.include_router(build_router())
    return app


def get_store(request: Request):
    return request.app.state.store


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_metrics(request: Request) -> MetricsRegistry:
    return request.app.state.metrics


def callback_base_url(request: Request) -> str:
    settings = get_settings(request)
    return settings.public_base_url or str(request.base_url).rstrip("/")


def get_engine(request: Request) -> DecisionEngine:
    state = request.app.state
    return DecisionEngine(
        settings=state.settings,
        store=state.store,
        messenger=state.messenger,
        usage_reporter=state.usage_reporter,
        storage=state.recording_storage,
        metrics=state.metrics,
        base_url=callback_base_url(request),
    )


def twiml(content: str) -> Response:
    return Response(content=content, media_type="text/xml")


def send_failure(status_code: int, error: str) -> JSONResponse:
    body = SmsRespondResponse(success=False, error=error)
    return JSONResponse(
        status_code=status_code, content=body.model_dump(by_alias=True, exclude_none=True)
    )


def signed_url(request: Request) -> str:
    settings = get_settings(request)
    if not settings.public_base_url:
        return str(request.url)
    url = f"{settings.public_base_url}{request.url.path}"
    if request.url.query:
        url = f"{url}?{request.url.query}"
    return url


async def verified_twilio_request(request: Request) -> None:
    settings = get_settings(request)
    if not settings.verify_twilio_signatures:
        return
    form = await request.form()
    params = {key: str(value) for key, value in form.items()}
    try:
        verify_twilio_signature(
            headers=request.headers,
            url=signed_url(request),
            params=params,
            auth_token=settings.twilio_auth_token,
        )
    except SignatureVerificationError as exc:
        logger.warning("twilio_signature_rejected path=%s detail=%s", request.url.path, exc)
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc


def build_router() -> APIRouter:
    router = APIRouter()
    twilio_webhook = [Depends(verified_twilio_request)]

    @router.get("/api/health")
    def api_health() -> dict[str, object]:
        return {"status": "ok", "time": int(time.time() * 1000)}

    @router.get("/health")
    def health() -> dict[str, str]:
        return {"status": "ok"}

    @router.get("/health/ready")
    def readiness(request: Request) -> dict[str, str]:
        if not get_store(request).ping():
            raise HTTPException(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                detail="database unavailable",
            )
        return {"status": "ready"}

    @router.get("/metrics", response_class=PlainTextResponse)
    def metrics(request: Request) -> Response:
        registry = get_metrics(request)
        return PlainTextResponse(registry.to_prometheus())

    @router.post("/twilio/voice", dependencies=twilio_webhook)
    def voice_webhook(
        request: Request,
        caller: str = Form("", alias="From"),
        called: str = Form("", alias="To"),
        call_sid: str = Form("", alias="CallSid"),
        digits: Optional[str] = Form(None, alias="Digits"),
        call_status: Optional[str] = Form(None, alias="CallStatus"),
    ) -> Response:
        logger.info(
            "voice_webhook call_sid=%s from=%s to=%s digits=%s status=%s",
            call_sid,
            caller,
            called,
            digits,
            call_status,
        )
        engine = get_engine(request)
        try:
            reply = engine.handle_call(caller, digits).reply
        except Exception:
            logger.exception("voice_webhook_failed call_sid=%s", call_sid)
            reply = engine.technical_error()
        return twiml(render_voice_reply(reply))

    @router.post("/twilio/free-trial", dependencies=twilio_webhook)
    def free_trial_webhook(
        request: Request,
        caller: str = Form("", alias="From"),
        digits: Optional[str] = Form(None, alias="Digits"),
        call_sid: str = Form("", alias="CallSid"),
    ) -> Response:
        logger.info("free_trial_webhook call_sid=%s from=%s digits=%s", call_sid, caller, digits)
        engine = get_engine(request)
        try:
            reply = engine.confirm_free_trial(caller, digits).reply
        except Exception:
            logger.exception("free_trial_webhook_failed call_sid=%s", call_sid)
            reply = engine.technical_error()
        return twiml(render_voice_reply(reply))

    @router.post("/twilio/no-answer", dependencies=twilio_webhook)
    def no_answer_webhook(
        request: Request,
        call_sid: str = Form("", alias="CallSid"),
        dial_status: Optional[str] = Form(None, alias="DialCallStatus"),
    ) -> Response:
        logger.info("dial_finished call_sid=%s dial_status=%s", call_sid, dial_status)
        return twiml(render_voice_reply(get_engine(request).no_answer(dial_status)))

    @router.post("/twilio/whisper", dependencies=twilio_webhook)
    def whisper_webhook(
        request: Request,
        kind: Optional[str] = Query(None, alias="type"),
        name: Optional[str] = None,
    ) -> Response:
        return twiml(render_voice_reply(get_engine(request).whisper(kind, name)))

    @router.post("/twilio/sms", dependencies=twilio_webhook)
    def sms_webhook(
        request: Request,
        sender: str = Form("", alias="From"),
        recipient: str = Form("", alias="To"),
        body: str = Form("", alias="Body"),
    ) -> Response:
        logger.info("sms_webhook from=%s to=%s", sender, recipient)
        try:
            get_engine(request).handle_sms(sender, body)
        except Exception:
            logger.exception("sms_webhook_failed from=%s", sender)
        return twiml(render_message_ack())

    @router.post("/twilio/sms-reply", dependencies=twilio_webhook)
    def sms_reply_webhook(
        request: Request,
        sender: str = Form("", alias="From"),
        recipient: str = Form("", alias="To"),
        body: str = Form("", alias="Body"),
    ) -> Response:
        logger.info("admin_reply_webhook from=%s to=%s", sender, recipient)
        try:
            get_engine(request).handle_admin_reply(sender, recipient, body)
        except Exception:
            logger.exception("admin_reply_failed from=%s", sender)
        return twiml(render_message_ack())

    @router.post("/twilio/call-status", dependencies=twilio_webhook)
    def call_status_webhook(
        request: Request,
        session_id: Optional[str] = Query(None, alias="sessionId"),
        call_sid: str = Form("", alias="CallSid"),
        call_status: str = Form("", alias="CallStatus"),
        duration: Optional[str] = Form(None, alias="CallDuration"),
    ) -> Response:
        try:
            get_engine(request).record_call_status(
                session_id=session_id,
                call_sid=call_sid,
                call_status=call_status,
                duration=duration,
            )
        except Exception:
            logger.exception("call_status_failed call_sid=%s", call_sid)
        return twiml(render_voice_reply(VoiceReply()))

    @router.post("/twilio/recording-status", dependencies=twilio_webhook)
    def recording_status_webhook(
        request: Request,
        session_id: Optional[str] = Query(None, alias="sessionId"),
        contact: Optional[str] = None,
        recording_sid: str = Form("", alias="RecordingSid"),
        recording_url: str = Form("", alias="RecordingUrl"),
        recording_status: str = Form("", alias="RecordingStatus"),
    ) -> Response:
        logger.info(
            "recording_status sid=%s status=%s session_id=%s",
            recording_sid,
            recording_status,
            session_id,
        )
        try:
            get_engine(request).archive_recording(
                session_id=session_id,
                contact=contact,
                recording_sid=recording_sid,
                recording_url=recording_url,
                recording_status=recording_status,
            )
        except Exception:
            logger.exception("recording_status_failed sid=%s", recording_sid)
        return twiml(render_voice_reply(VoiceReply()))

    @router.post("/twilio/sms/respond", response_model=SmsRespondResponse)
    def sms_respond(
        payload: SmsRespondRequest,
        request: Request,
        _: AuthContext = Depends(require_roles("service", "admin")),
    ) -> Union[SmsRespondResponse, JSONResponse]:
        if not payload.session_id or not payload.message or not payload.user_id:
            return send_failure(
                status.HTTP_400_BAD_REQUEST,
                "Missing required parameters: sessionId, message, and userId are required",
            )
        engine = get_engine(request)
        try:
            sid, recipient = engine.send_to_user(
                payload.user_id, payload.message, media_url=payload.media_url
            )
        except ContactNotFoundError:
            return send_failure(status.HTTP_404_NOT_FOUND, "User not found")
        except InvalidRecipientError:
            return send_failure(status.HTTP_400_BAD_REQUEST, "No phone number found for user")
        except StoreUnavailableError:
            logger.exception("sms_respond_lookup_failed user_id=%s", payload.user_id)
            return send_failure(
                status.HTTP_500_INTERNAL_SERVER_ERROR, "Database error looking up user"
            )
        except DeliveryFailedError:
            return send_failure(status.HTTP_502_BAD_GATEWAY, "Failed to send SMS")
        logger.info(
            "sms_respond_sent session_id=%s to=%s sid=%s", payload.session_id, recipient, sid
        )
        return SmsRespondResponse(success=True, message_id=sid, to=recipient)

    return router


app = create_app()
