from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional
from urllib.parse import quote, urlencode

from backend.app.models import Channel, Entitlement, HelpSessionRecord, PlanType, UsageStatus, UserRecord
from backend.app.services.contacts import normalize_phone, same_contact, split_reply_target, to_e164
from backend.app.services.entitlements import EntitlementResolver, plan_type_for
from backend.app.services.notifications import NotificationDispatcher
from backend.app.services.recordings import (
    RecordingDownloadError,
    RecordingUploadError,
    download_recording,
)
from backend.app.services.sessions import SessionThrottledError, SessionTracker
from backend.app.services.telephony import Dial, VoiceReply
from backend.app.settings import Settings
from backend.app.store import StoreNotFoundError, StoreUnavailableError

logger = logging.getLogger("support_line.decision")

TERMINAL_CALL_STATUSES = {"completed", "busy", "no-answer", "failed", "canceled"}
ORDINALS = ["first", "second", "third", "fourth", "fifth", "sixth", "seventh", "eighth", "ninth"]


class Outcome(str, Enum):
    menu = "menu"
    invalid_option = "invalid_option"
    account_info = "account_info"
    account_not_found = "account_not_found"
    connected = "connected"
    continued = "continued"
    trial_offered = "trial_offered"
    trial_connected = "trial_connected"
    trial_forwarded = "trial_forwarded"
    trial_declined = "trial_declined"
    denied_trial_used = "denied_trial_used"
    denied_quota = "denied_quota"
    denied_throttled = "denied_throttled"
    forwarded = "forwarded"
    admin_reply_forwarded = "admin_reply_forwarded"
    ignored = "ignored"


@dataclass
class CallDecision:
    outcome: Outcome
    reply: VoiceReply = field(default_factory=VoiceReply)
    session_id: Optional[str] = None
    new_session: bool = False


@dataclass
class SmsDecision:
    outcome: Outcome
    session_id: Optional[str] = None
    new_session: bool = False


class ContactNotFoundError(Exception):
    pass


class InvalidRecipientError(Exception):
    pass


class DeliveryFailedError(Exception):
    pass


class DecisionEngine:
    """
    Turns one inbound call or message event into an access decision.

    Entitlement is resolved fresh for every event; nothing is cached between events, so
    an engine is built per request around the shared store and provider adapters.
    """

    def __init__(
        self,
        *,
        settings: Settings,
        store,
        messenger,
        usage_reporter,
        base_url: str,
        storage=None,
        metrics=None,
    ) -> None:
        self.settings = settings
        self.store = store
        self.usage_reporter = usage_reporter
        self.storage = storage
        self.metrics = metrics
        self.base_url = base_url.rstrip("/")
        self.allowance = settings.free_sessions_per_month
        self.resolver = EntitlementResolver(store, free_sessions_per_month=self.allowance)
        self.tracker = SessionTracker(store, payg_cooldown_hours=settings.payg_cooldown_hours)
        self.notifier = NotificationDispatcher(
            messenger,
            admin_phone=settings.admin_phone,
            brand_name=settings.brand_name,
        )

    # Voice

    def handle_call(self, contact: str, digits: Optional[str]) -> CallDecision:
        digits = (digits or "").strip()
        if not digits:
            return self._record(self._menu())
        if digits == "1":
            return self._record(self._account_lookup(contact))
        if digits == "2":
            return self._record(self._representative(contact))
        logger.info("invalid_menu_option contact=%s digits=%s", contact, digits)
        reply = VoiceReply().gather(
            "I'm sorry, that's not a valid option. Please press 1 to connect your account, "
            "or press 2 to talk to a representative.",
            self._url("/twilio/voice"),
        )
        reply.say("No input received. Goodbye!").hangup()
        return self._record(CallDecision(Outcome.invalid_option, reply))

    def confirm_free_trial(self, contact: str, digits: Optional[str]) -> CallDecision:
        digits = (digits or "").strip()
        if digits == "2":
            reply = VoiceReply().say(
                f"Thank you for your interest in {self.settings.brand_name}. To learn more about "
                "our services, please visit our website. Goodbye!"
            )
            return self._record(CallDecision(Outcome.trial_declined, reply.hangup()))
        if digits != "1":
            reply = VoiceReply().gather(
                "I'm sorry, that's not a valid option. Press 1 to continue with your free trial "
                "call. Press 2 to end the call.",
                self._url("/twilio/free-trial"),
            )
            reply.say("No input received. Goodbye!").hangup()
            return self._record(CallDecision(Outcome.invalid_option, reply))

        entitlement = self.resolver.resolve(contact)
        if entitlement.registered:
            return self._record(self._connect_registered(contact, entitlement))
        if self._trial_used(contact) or not self._consume_trial(contact):
            return self._record(self._deny_used_trial_call(contact, stage="confirmation stage"))

        logger.info("free_trial_connecting contact=%s", contact)
        self.notifier.notify_admin(
            f"FREE TRIAL call from {contact}: connecting to representative now. "
            "This caller has no account."
        )
        reply = VoiceReply().say(
            "Thank you! Connecting you to our representative now. This is a one-time free trial call."
        )
        reply.dial(
            Dial(
                number=self.settings.forward_number,
                caller_id=contact,
                action=self._url("/twilio/no-answer"),
                timeout=self.settings.dial_timeout_seconds,
                whisper_url=self._url("/twilio/whisper", type="freetrial"),
                recording_callback=(
                    self._url("/twilio/recording-status", contact=contact)
                    if self.settings.call_recording_enabled
                    else None
                ),
            )
        )
        return self._record(CallDecision(Outcome.trial_connected, reply))

    def no_answer(self, dial_status: Optional[str] = None) -> VoiceReply:
        if dial_status in {"completed", "answered"}:
            return VoiceReply().hangup()
        reply = VoiceReply().say(
            "Sorry, we couldn't reach our representative at this time. We'll call you back as "
            f"soon as possible. Thank you for contacting {self.settings.brand_name}!"
        )
        return reply.hangup()

    def whisper(self, kind: Optional[str], name: Optional[str]) -> VoiceReply:
        if kind == "customer":
            intro = f"Incoming call from customer {name or 'with account'}."
        elif kind == "freetrial":
            intro = "Incoming call from free trial customer."
        else:
            intro = "Incoming customer call."
        return VoiceReply().say(f"{intro} Connecting now.")

    def technical_error(self) -> VoiceReply:
        reply = VoiceReply().say(
            "We're sorry, there was a technical error processing your request. "
            "Please try again later. Goodbye!"
        )
        return reply.hangup()

    def _menu(self) -> CallDecision:
        reply = VoiceReply().gather(
            f"Welcome to {self.settings.brand_name}, your real world helper for all your tech "
            "needs! Press 1 to connect your account. Press 2 to talk to a representative now.",
            self._url("/twilio/voice"),
        )
        reply.say("I didn't hear any input. Goodbye!").hangup()
        return CallDecision(Outcome.menu, reply)

    def _account_lookup(self, contact: str) -> CallDecision:
        entitlement = self.resolver.resolve(contact)
        if not entitlement.registered:
            reply = VoiceReply().gather(
                "We couldn't find an account with your phone number. To create an account, "
                "please press 2 now to talk to a representative.",
                self._url("/twilio/voice"),
            )
            reply.say("No input received. Goodbye!").hangup()
            return CallDecision(Outcome.account_not_found, reply)

        user = entitlement.user
        greeting = (
            f"Hello {user.name}! Your account email is {user.email or 'not on file'}. "
            f"Your tech usage is {user.tech_usage or 'not specified'} with "
            f"{user.experience_level or 'beginner'} experience level."
        )
        if self.resolver.quota_exhausted(entitlement):
            reply = VoiceReply().say(
                f"{greeting} You have used all {self.allowance} sessions for this "
                "month. Please check back next month for more available sessions. Goodbye!"
            )
            return CallDecision(Outcome.account_info, reply.hangup())

        reply = VoiceReply().gather(
            f"{greeting} {self._spoken_plan_summary(entitlement)} To schedule a new session, "
            "please press 2 now to talk to a representative.",
            self._url("/twilio/voice"),
        )
        reply.say("We didn't receive any input. Goodbye!").hangup()
        return CallDecision(Outcome.account_info, reply)

    def _representative(self, contact: str) -> CallDecision:
        entitlement = self.resolver.resolve(contact)
        if entitlement.registered:
            return self._connect_registered(contact, entitlement)

        if self._trial_used(contact):
            return self._deny_used_trial_call(contact)

        logger.info("free_trial_offered contact=%s", contact)
        reply = VoiceReply().gather(
            "We don't have an account with your phone number yet. We're offering you a free "
            "trial call with our representative. Press 1 to continue with your free trial call. "
            "Press 2 to end the call.",
            self._url("/twilio/free-trial"),
        )
        reply.say("No input received. Goodbye!").hangup()
        return CallDecision(Outcome.trial_offered, reply)

    def _connect_registered(self, contact: str, entitlement: Entitlement) -> CallDecision:
        user = entitlement.user
        if self.resolver.quota_exhausted(entitlement):
            logger.info("session_limit_reached user_id=%s channel=phone", user.id)
            self.notifier.alert_admin(
                "blocked (session limit)",
                contact,
                f"User: {user.name}, used all {self.allowance} monthly sessions",
            )
            reply = VoiceReply().say(
                f"I'm sorry, but you've used all {self.allowance} sessions for this "
                "month. Please check back next month for more available sessions. Thank you for "
                f"using {self.settings.brand_name}!"
            )
            return CallDecision(Outcome.denied_quota, reply.hangup())

        try:
            session, created = self._admit(entitlement, Channel.phone, "Incoming phone call")
        except SessionThrottledError:
            self.notifier.alert_admin(
                "blocked (24-hour session limit)",
                contact,
                f"User: {user.name}, pay-as-you-go session already started in the last "
                f"{self.settings.payg_cooldown_hours} hours",
            )
            reply = VoiceReply().say(
                "You've already started a help session in the last "
                f"{self.settings.payg_cooldown_hours} hours. Please wait "
                f"{self.settings.payg_cooldown_hours} hours between new sessions. Goodbye!"
            )
            return CallDecision(Outcome.denied_throttled, reply.hangup())

        lead = "New session" if created else "Ongoing conversation"
        self.notifier.notify_admin(
            f"Incoming call from {user.name} ({contact})\n{lead}. "
            f"{self._admin_plan_summary(entitlement)}\n\n"
            f"Web interface: {self._chat_link(session.id)}"
        )
        if created:
            self.notifier.send_to_contact(
                contact,
                "Thanks for calling. Our representative will be with you shortly. "
                f"{self._session_confirmation(entitlement)}",
            )

        logger.info(
            "call_connecting user_id=%s session_id=%s new_session=%s",
            user.id,
            session.id,
            created,
        )
        reply = VoiceReply().dial(
            Dial(
                number=self.settings.forward_number,
                caller_id=contact,
                action=self._url("/twilio/no-answer"),
                timeout=self.settings.dial_timeout_seconds,
                whisper_url=self._url("/twilio/whisper", type="customer", name=user.name or "registered"),
                status_callback=self._url("/twilio/call-status", sessionId=session.id),
                recording_callback=(
                    self._url("/twilio/recording-status", sessionId=session.id)
                    if self.settings.call_recording_enabled
                    else None
                ),
            )
        )
        outcome = Outcome.connected if created else Outcome.continued
        return CallDecision(outcome, reply, session_id=session.id, new_session=created)

    def _deny_used_trial_call(self, contact: str, stage: str = "") -> CallDecision:
        logger.info("free_trial_denied contact=%s", contact)
        suffix = f", {stage}" if stage else ""
        self.notifier.alert_admin(
            f"denied free trial (already used free trial{suffix})",
            contact,
            "Caller already used their free trial and tried again",
        )
        reply = VoiceReply().say(
            "We notice you've already used a free trial call with us. To create an account and "
            f"get regular access, please visit our website at {self.settings.signup_url}. "
            "Thank you for your interest in our services. Goodbye!"
        )
        return CallDecision(Outcome.denied_trial_used, reply.hangup())

    # SMS

    def handle_sms(self, contact: str, body: str) -> SmsDecision:
        entitlement = self.resolver.resolve(contact)
        if entitlement.registered:
            return self._record(self._registered_sms(contact, body, entitlement))
        return self._record(self._unregistered_sms(contact, body))

    def _registered_sms(self, contact: str, body: str, entitlement: Entitlement) -> SmsDecision:
        user = entitlement.user
        brand = self.settings.brand_name.upper()
        if self.resolver.quota_exhausted(entitlement):
            logger.info("session_limit_reached user_id=%s channel=sms", user.id)
            self.notifier.send_to_contact(
                contact,
                f"Hello {user.name}! You've used all {self.allowance} sessions for "
                "this month. Please check back next month for more available sessions.",
            )
            self.notifier.notify_admin(
                f"{brand} SMS ALERT: Message received from {contact} ({user.name}), but not "
                "forwarded because they've used all their monthly sessions (session limit).\n\n"
                f'Their message: "{body}"'
            )
            return SmsDecision(Outcome.denied_quota)

        try:
            session, created = self._admit(entitlement, Channel.sms, body)
        except SessionThrottledError:
            hours = self.settings.payg_cooldown_hours
            self.notifier.send_to_contact(
                contact,
                f"Hello {user.name}! You've already started a help session in the last {hours} "
                f"hours. Please wait {hours} hours before starting a new session.",
            )
            self.notifier.notify_admin(
                f"{brand} SMS ALERT: Message received from {contact} ({user.name}), but not "
                f"forwarded because a pay-as-you-go session was started in the last {hours} hours."
                f'\n\nTheir message: "{body}"'
            )
            return SmsDecision(Outcome.denied_throttled)

        self.tracker.append_message(session.id, body)
        if created:
            prefix = (
                f"From: {user.name} ({contact})\n{self._admin_plan_summary(entitlement)}\n\n"
            )
        else:
            prefix = f"{user.name} ({contact}) replied to their ongoing conversation.\n\n"
        self.notifier.notify_admin(
            f"{prefix}To reply directly to this user, respond with your message OR start with "
            f"their number: {contact} Your message here\n\n"
            f"Click here to respond in web interface: {self._chat_link(session.id)}\n\n{body}"
        )
        if created:
            self.notifier.send_to_contact(
                contact,
                "Thank you for your message. Our representative will respond shortly. "
                f"{self._session_confirmation(entitlement)}",
            )
        logger.info(
            "sms_forwarded user_id=%s session_id=%s new_session=%s",
            user.id,
            session.id,
            created,
        )
        outcome = Outcome.forwarded if created else Outcome.continued
        return SmsDecision(outcome, session_id=session.id, new_session=created)

    def _unregistered_sms(self, contact: str, body: str) -> SmsDecision:
        brand = self.settings.brand_name.upper()
        if self._trial_used(contact) or not self._consume_trial(contact):
            logger.info("free_trial_denied contact=%s channel=sms", contact)
            self.notifier.send_to_contact(
                contact,
                "We notice you've already used a free trial with us. To create an account and "
                f"get regular access, please visit our website at {self.settings.signup_url}.",
            )
            self.notifier.notify_admin(
                f"{brand} SMS ALERT: Message received from {contact}, but not forwarded because "
                "they've already used their free trial (already used free trial).\n\n"
                f'Their message: "{body}"'
            )
            return SmsDecision(Outcome.denied_trial_used)

        logger.info("free_trial_sms_forwarded contact=%s", contact)
        self.notifier.notify_admin(
            f"FREE TRIAL SMS from: {contact}\n\nTo reply directly to this user, respond with "
            f"your message OR start with their number: {contact} Your message here\n\n{body}"
        )
        self.notifier.send_to_contact(
            contact,
            "Thank you for your message. Our representative will respond shortly. This is your "
            "one-time free trial message. To continue using our services, please visit "
            f"{self.settings.signup_url} to create an account.",
        )
        return SmsDecision(Outcome.trial_forwarded)

    def handle_admin_reply(self, sender: str, recipient: str, body: str) -> Outcome:
        if not any(same_contact(sender, number) for number in self.settings.admin_numbers):
            logger.warning("admin_reply_rejected sender=%s", sender)
            return self._record(Outcome.ignored)

        target, text = split_reply_target(body)
        if target is None:
            target, text = recipient, (body or "").strip()
        if not normalize_phone(target) or not text:
            logger.warning("admin_reply_incomplete target=%s", target)
            return self._record(Outcome.ignored)

        user = self.resolver.find_user(target)
        if user is not None:
            try:
                session = self.tracker.find_active_session(user.id)
                if session is None:
                    session = self.tracker.open_session(
                        user_id=user.id,
                        plan_type=plan_type_for(user),
                        channel=Channel.sms,
                        message_text=text,
                    )
                self.tracker.append_message(session.id, text, is_admin=True)
            except StoreUnavailableError:
                logger.exception("admin_reply_not_stored user_id=%s", user.id)
        else:
            logger.info("admin_reply_no_user target=%s", target)

        self.notifier.send_to_contact(to_e164(target), text)
        return self._record(Outcome.admin_reply_forwarded)

    # External API

    def send_to_user(
        self, user_ref: str, message: str, media_url: Optional[str] = None
    ) -> tuple[str, str]:
        phone = ""
        if len(normalize_phone(user_ref)) >= 10 and self.resolver.find_user(user_ref):
            phone = user_ref
        else:
            user = self.store.get_user(user_ref)
            if user is None:
                raise ContactNotFoundError(f"user not found: {user_ref}")
            phone = user.phone
        if not normalize_phone(phone):
            raise InvalidRecipientError("no phone number found for user")

        recipient = to_e164(phone)
        sid = self.notifier.messenger.send(recipient, message, media_url=media_url)
        if sid is None:
            raise DeliveryFailedError(f"message to {recipient} was not accepted")
        return sid, recipient

    # Provider callbacks

    def record_call_status(
        self,
        *,
        session_id: Optional[str],
        call_sid: str,
        call_status: str,
        duration: Optional[str],
    ) -> bool:
        logger.info(
            "call_status call_sid=%s status=%s duration=%s session_id=%s",
            call_sid,
            call_status,
            duration,
            session_id,
        )
        if not session_id or call_status not in TERMINAL_CALL_STATUSES:
            return False
        try:
            self.tracker.append_message(
                session_id, f"Call {call_status} ({duration or 0}s)", is_admin=True
            )
        except (StoreNotFoundError, StoreUnavailableError):
            logger.exception("call_status_not_stored session_id=%s", session_id)
            return False
        return True

    def archive_recording(
        self,
        *,
        session_id: Optional[str],
        contact: Optional[str],
        recording_sid: str,
        recording_url: str,
        recording_status: str,
    ) -> Optional[str]:
        if recording_status != "completed" or not recording_url:
            logger.info("recording_skipped sid=%s status=%s", recording_sid, recording_status)
            return None
        if self.storage is None:
            logger.info("recording_skipped sid=%s reason=no_storage", recording_sid)
            return None
        try:
            recording = download_recording(
                recording_url=recording_url,
                recording_sid=recording_sid,
                timeout_seconds=self.settings.recording_download_timeout_seconds,
                account_sid=self.settings.twilio_account_sid,
                auth_token=self.settings.twilio_auth_token,
            )
            public_url = self.storage.upload(recording)
        except (RecordingDownloadError, RecordingUploadError):
            logger.warning("recording_archive_failed sid=%s", recording_sid, exc_info=True)
            return None

        if session_id:
            try:
                self.tracker.append_message(
                    session_id, f"Call recording: {public_url}", is_admin=True
                )
            except (StoreNotFoundError, StoreUnavailableError):
                logger.exception("recording_not_stored session_id=%s", session_id)
        else:
            self.notifier.notify_admin(
                f"FREE TRIAL call recording from {contact or 'unknown caller'}: {public_url}"
            )
        logger.info("recording_archived sid=%s url=%s", recording_sid, public_url)
        return public_url

    # Helpers

    def _admit(
        self, entitlement: Entitlement, channel: Channel, text: str
    ) -> tuple[HelpSessionRecord, bool]:
        user = entitlement.user
        session, created = self.tracker.find_or_create_active_session(
            user_id=user.id,
            plan_type=entitlement.plan_type,
            channel=channel,
            message_text=text,
        )
        if created and self.resolver.is_billable(entitlement):
            self._bill(user, session)
        return session, created

    def _bill(self, user: UserRecord, session: HelpSessionRecord) -> None:
        reported = self.usage_reporter.report_session(
            customer_id=user.usage_id, session_id=session.id
        )
        status = UsageStatus.reported if reported else UsageStatus.report_failed
        try:
            self.store.add_usage_record(user_id=user.id, session_id=session.id, status=status)
        except StoreUnavailableError:
            logger.exception("usage_record_failed user_id=%s session_id=%s", user.id, session.id)
        if self.metrics is not None:
            self.metrics.record_usage(reported=reported)

    def _trial_used(self, contact: str) -> bool:
        try:
            return self.store.has_free_trial(contact)
        except StoreUnavailableError:
            logger.exception("free_trial_lookup_failed contact=%s", contact)
            return False

    def _consume_trial(self, contact: str) -> bool:
        try:
            return self.store.record_free_trial(contact)
        except StoreUnavailableError:
            logger.exception("free_trial_record_failed contact=%s", contact)
            return True

    def _session_confirmation(self, entitlement: Entitlement) -> str:
        if entitlement.plan_type == PlanType.subscription:
            return "Your plan includes unlimited sessions."
        used = entitlement.sessions_used_this_month
        if used >= self.allowance:
            return "This session will be billed to your account."
        if used == self.allowance - 1:
            ordinal = "final"
        elif used < len(ORDINALS):
            ordinal = ORDINALS[used]
        else:
            ordinal = f"number {used + 1}"
        return f"This is your {ordinal} session of {self.allowance} this month."

    def _admin_plan_summary(self, entitlement: Entitlement) -> str:
        if entitlement.plan_type == PlanType.subscription:
            return "Plan: subscription (unlimited)"
        if self.resolver.is_billable(entitlement):
            return "Plan: pay-as-you-go (billing active)"
        summary = f"Remaining sessions: {entitlement.free_sessions_remaining}/{self.allowance}"
        if entitlement.plan_type == PlanType.pay_as_you_go:
            return f"{summary} (pay-as-you-go)"
        return summary

    def _spoken_plan_summary(self, entitlement: Entitlement) -> str:
        if entitlement.plan_type == PlanType.subscription:
            return "Your plan includes unlimited help sessions."
        remaining = entitlement.free_sessions_remaining
        noun = "session" if remaining == 1 else "sessions"
        if entitlement.plan_type == PlanType.pay_as_you_go:
            if remaining == 0:
                return "Additional help sessions this month are billed to your account."
            return f"You have {remaining} free help {noun} remaining this month."
        return f"You have {remaining} help {noun} remaining this month."

    def _chat_link(self, session_id: str) -> str:
        return f"{self.settings.chat_base_url}?id={quote(session_id)}"

    def _url(self, path: str, **params: str) -> str:
        url = f"{self.base_url}{path}"
        if params:
            url = f"{url}?{urlencode(params)}"
        return url

    def _record(self, decision):
        if self.metrics is not None:
            outcome = decision if isinstance(decision, Outcome) else decision.outcome
            self.metrics.record_outcome(outcome.value)
        return decision
