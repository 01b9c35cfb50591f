from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Optional, Protocol, Union

from twilio.base.exceptions import TwilioException
from twilio.rest import Client
from twilio.twiml.messaging_response import MessagingResponse
from twilio.twiml.voice_response import VoiceResponse

from backend.app.settings import Settings

logger = logging.getLogger("support_line.telephony")

VOICE = "Polly.Joanna"
LANGUAGE = "en-US"


@dataclass(frozen=True)
class Say:
    text: str


@dataclass(frozen=True)
class Gather:
    prompt: str
    action: str
    num_digits: int = 1


@dataclass(frozen=True)
class Dial:
    number: str
    caller_id: str
    action: str
    timeout: int = 30
    whisper_url: Optional[str] = None
    status_callback: Optional[str] = None
    recording_callback: Optional[str] = None


@dataclass(frozen=True)
class Hangup:
    pass


VoiceStep = Union[Say, Gather, Dial, Hangup]


@dataclass
class VoiceReply:
    """Provider-neutral description of what the caller hears next."""

    steps: list[VoiceStep] = field(default_factory=list)

    def say(self, text: str) -> "VoiceReply":
        self.steps.append(Say(text))
        return self

    def gather(self, prompt: str, action: str, num_digits: int = 1) -> "VoiceReply":
        self.steps.append(Gather(prompt=prompt, action=action, num_digits=num_digits))
        return self

    def dial(self, dial: Dial) -> "VoiceReply":
        self.steps.append(dial)
        return self

    def hangup(self) -> "VoiceReply":
        self.steps.append(Hangup())
        return self

    @property
    def dialed(self) -> Optional[Dial]:
        for step in self.steps:
            if isinstance(step, Dial):
                return step
        return None

    @property
    def gathered(self) -> Optional[Gather]:
        for step in self.steps:
            if isinstance(step, Gather):
                return step
        return None

    @property
    def spoken_text(self) -> str:
        parts: list[str] = []
        for step in self.steps:
            if isinstance(step, Say):
                parts.append(step.text)
            elif isinstance(step, Gather):
                parts.append(step.prompt)
        return " ".join(parts)


def render_voice_reply(reply: VoiceReply) -> str:
    response = VoiceResponse()
    for step in reply.steps:
        if isinstance(step, Say):
            response.say(step.text, voice=VOICE, language=LANGUAGE)
        elif isinstance(step, Gather):
            gather = response.gather(num_digits=step.num_digits, action=step.action, method="POST")
            gather.say(step.prompt, voice=VOICE, language=LANGUAGE)
        elif isinstance(step, Dial):
            dial_options = {
                "caller_id": step.caller_id,
                "timeout": step.timeout,
                "action": step.action,
                "method": "POST",
            }
            if step.recording_callback:
                dial_options.update(
                    record="record-from-answer-dual",
                    recording_status_callback=step.recording_callback,
                    recording_status_callback_method="POST",
                )
            dial = response.dial(**dial_options)
            number_options = {}
            if step.whisper_url:
                number_options["url"] = step.whisper_url
            if step.status_callback:
                number_options.update(
                    status_callback=step.status_callback,
                    status_callback_event="completed",
                    status_callback_method="POST",
                )
            dial.number(step.number, **number_options)
        elif isinstance(step, Hangup):
            response.hangup()
    return str(response)


def render_message_ack() -> str:
    return str(MessagingResponse())


class Messenger(Protocol):
    def send(self, to: str, body: str, media_url: Optional[str] = None) -> Optional[str]:
        ...


class TwilioMessenger:
    def __init__(self, *, account_sid: str, auth_token: str, from_number: str) -> None:
        self.client = Client(account_sid, auth_token)
        self.from_number = from_number

    def send(self, to: str, body: str, media_url: Optional[str] = None) -> Optional[str]:
        options = {"body": body, "from_": self.from_number, "to": to}
        if media_url:
            options["media_url"] = [media_url]
        try:
            message = self.client.messages.create(**options)
        except (TwilioException, OSError):
            logger.exception("sms_send_failed to=%s", to)
            return None
        logger.info("sms_sent to=%s sid=%s", to, message.sid)
        return message.sid


class DisabledMessenger:
    def send(self, to: str, body: str, media_url: Optional[str] = None) -> Optional[str]:
        logger.warning("sms_not_sent to=%s reason=missing_twilio_credentials", to)
        return None


def build_messenger(settings: Settings) -> Messenger:
    if settings.twilio_account_sid and settings.twilio_auth_token and settings.twilio_phone_number:
        return TwilioMessenger(
            account_sid=settings.twilio_account_sid,
            auth_token=settings.twilio_auth_token,
            from_number=settings.twilio_phone_number,
        )
    logger.warning("twilio credentials missing; outbound SMS disabled")
    return DisabledMessenger()
