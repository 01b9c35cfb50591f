from __future__ import annotations

from dataclasses import replace
from datetime import timedelta

import pytest

from backend.app.models import Channel, Priority, SessionStatus, UsageStatus, utc_now
from backend.app.services.decision import (
    ContactNotFoundError,
    DecisionEngine,
    DeliveryFailedError,
    Outcome,
)
from backend.app.services.recordings import RecordingDownloadError, RecordingFile
from backend.app.store import StoreUnavailableError

ADMIN = "+17206122979"
BASE_URL = "https://support.test"


def _engine(app, **overrides) -> DecisionEngine:
    return DecisionEngine(
        settings=replace(app.state.settings, **overrides),
        store=app.state.store,
        messenger=app.state.messenger,
        usage_reporter=app.state.usage_reporter,
        storage=app.state.recording_storage,
        metrics=app.state.metrics,
        base_url=BASE_URL,
    )


def test_unregistered_caller_gets_one_free_trial(engine, store, messenger) -> None:
    contact = "+15551234567"

    offered = engine.handle_call(contact, "2")
    assert offered.outcome == Outcome.trial_offered
    assert offered.reply.gathered.action == f"{BASE_URL}/twilio/free-trial"
    assert store.list_free_trials() == []

    accepted = engine.confirm_free_trial(contact, "1")
    assert accepted.outcome == Outcome.trial_connected
    assert [trial.phone for trial in store.list_free_trials()] == ["5551234567"]
    dial = accepted.reply.dialed
    assert dial.number == ADMIN
    assert dial.caller_id == contact
    assert "type=freetrial" in dial.whisper_url
    assert any("free trial" in body.lower() for body in messenger.bodies_to(ADMIN))

    again = engine.handle_call(contact, "2")
    assert again.outcome == Outcome.denied_trial_used
    assert again.reply.dialed is None
    assert "eldrix.app" in again.reply.spoken_text
    assert len(store.list_free_trials()) == 1
    assert "already used free trial" in messenger.bodies_to(ADMIN)[-1]


def test_free_trial_confirmation_rechecks_trial(engine, store) -> None:
    contact = "+15551234568"
    engine.handle_call(contact, "2")
    store.record_free_trial(contact)

    decision = engine.confirm_free_trial(contact, "1")
    assert decision.outcome == Outcome.denied_trial_used
    assert decision.reply.dialed is None
    assert len(store.list_free_trials()) == 1


def test_free_trial_decline_and_invalid_digit(engine, store) -> None:
    declined = engine.confirm_free_trial("+15551234569", "2")
    assert declined.outcome == Outcome.trial_declined

    invalid = engine.confirm_free_trial("+15551234569", "7")
    assert invalid.outcome == Outcome.invalid_option
    assert invalid.reply.gathered.action == f"{BASE_URL}/twilio/free-trial"
    assert store.list_free_trials() == []


def test_free_member_at_quota_is_denied_on_sms(engine, store, messenger, member) -> None:
    contact = "+15557654321"
    user = member(phone=contact, name="Ada", completed_sessions=3)

    decision = engine.handle_sms(contact, "my tablet will not turn on")

    assert decision.outcome == Outcome.denied_quota
    assert "used all 3 sessions" in messenger.bodies_to(contact)[0]
    assert "not forwarded" in messenger.bodies_to(ADMIN)[0]
    assert len(store.list_sessions(user.id)) == 3


def test_free_member_at_quota_is_denied_on_voice(engine, store, messenger, member) -> None:
    contact = "+15557654322"
    user = member(phone=contact, completed_sessions=3)

    decision = engine.handle_call(contact, "2")

    assert decision.outcome == Outcome.denied_quota
    assert decision.reply.dialed is None
    assert "session limit" in messenger.bodies_to(ADMIN)[0]
    assert len(store.list_sessions(user.id)) == 3


def test_subscription_member_is_never_denied(engine, messenger, member) -> None:
    contact = "+15557654323"
    member(phone=contact, subscription_id="sub_1", completed_sessions=12)

    sms = engine.handle_sms(contact, "hello")
    assert sms.outcome == Outcome.forwarded
    assert sms.new_session
    assert messenger.bodies_to(contact)[-1].endswith("Your plan includes unlimited sessions.")

    call = engine.handle_call(contact, "2")
    assert call.outcome == Outcome.continued
    assert call.session_id == sms.session_id
    assert call.reply.dialed is not None


def test_first_message_confirms_and_continuation_does_not(engine, store, messenger, member) -> None:
    contact = "+15557654324"
    member(phone=contact, name="Lin")

    first = engine.handle_sms(contact, "wifi keeps dropping")
    assert first.outcome == Outcome.forwarded
    assert messenger.bodies_to(contact) == [
        "Thank you for your message. Our representative will respond shortly. "
        "This is your first session of 3 this month."
    ]
    admin_first = messenger.bodies_to(ADMIN)[0]
    assert "Remaining sessions: 3/3" in admin_first
    assert f"http://localhost:3001/chat?id={first.session_id}" in admin_first
    assert admin_first.endswith("wifi keeps dropping")

    second = engine.handle_sms(contact, "still dropping")
    assert second.outcome == Outcome.continued
    assert second.session_id == first.session_id
    assert len(messenger.bodies_to(contact)) == 1
    assert "replied to their ongoing conversation" in messenger.bodies_to(ADMIN)[-1]
    assert [item.content for item in store.list_messages(first.session_id)] == [
        "wifi keeps dropping",
        "still dropping",
    ]


def test_last_free_session_is_called_final(engine, messenger, member) -> None:
    contact = "+15557654325"
    member(phone=contact, completed_sessions=2)

    engine.handle_sms(contact, "one more question")

    assert messenger.bodies_to(contact)[0].endswith("This is your final session of 3 this month.")


def test_pay_as_you_go_past_allowance_is_billed_once(app, store, messenger, usage_reporter, member) -> None:
    engine = _engine(app, payg_cooldown_hours=0)
    contact = "+15557654326"
    user = member(phone=contact, usage_id="cus_42", completed_sessions=3)

    first = engine.handle_sms(contact, "need help with email")
    engine.handle_sms(contact, "also my calendar")

    assert usage_reporter.reports == [("cus_42", first.session_id)]
    records = store.list_usage_records(user.id)
    assert len(records) == 1
    assert records[0].status == UsageStatus.reported
    assert messenger.bodies_to(contact)[0].endswith("This session will be billed to your account.")
    assert "billing active" in messenger.bodies_to(ADMIN)[0]


def test_failed_usage_report_is_recorded(app, store, usage_reporter, member) -> None:
    engine = _engine(app, payg_cooldown_hours=0)
    usage_reporter.succeed = False
    user = member(phone="+15557654327", usage_id="cus_43", completed_sessions=4)

    decision = engine.handle_sms("+15557654327", "hello")

    assert decision.outcome == Outcome.forwarded
    records = store.list_usage_records(user.id)
    assert [record.status for record in records] == [UsageStatus.report_failed]


def test_pay_as_you_go_within_allowance_is_not_billed(app, usage_reporter, messenger, member) -> None:
    engine = _engine(app, payg_cooldown_hours=0)
    member(phone="+15557654328", usage_id="cus_44", completed_sessions=1)

    engine.handle_sms("+15557654328", "hello")

    assert usage_reporter.reports == []
    assert messenger.bodies_to("+15557654328")[0].endswith(
        "This is your second session of 3 this month."
    )


def test_pay_as_you_go_throttled_within_cooldown(engine, store, messenger, member) -> None:
    contact = "+15557654329"
    user = member(phone=contact, usage_id="cus_45")
    store.create_session(
        user_id=user.id,
        channel=Channel.sms,
        title="Text Message Support",
        priority=Priority.medium,
        status=SessionStatus.completed.value,
        completed=True,
        created_at_utc=utc_now() - timedelta(hours=2),
    )

    sms = engine.handle_sms(contact, "hello again")
    call = engine.handle_call(contact, "2")

    assert sms.outcome == Outcome.denied_throttled
    assert call.outcome == Outcome.denied_throttled
    assert call.reply.dialed is None
    assert "24 hours" in messenger.bodies_to(contact)[0]
    assert len(store.list_sessions(user.id)) == 1
    assert len(messenger.bodies_to(ADMIN)) == 2


def test_unregistered_sms_consumes_trial(engine, store, messenger) -> None:
    contact = "+15550009999"

    first = engine.handle_sms(contact, "is this the help line?")
    second = engine.handle_sms(contact, "hello?")

    assert first.outcome == Outcome.trial_forwarded
    assert second.outcome == Outcome.denied_trial_used
    assert messenger.bodies_to(ADMIN)[0].startswith(f"FREE TRIAL SMS from: {contact}")
    assert "already used their free trial" in messenger.bodies_to(ADMIN)[1]
    assert "eldrix.app" in messenger.bodies_to(contact)[1]
    assert len(store.list_free_trials()) == 1


def test_registered_status_wins_over_stale_trial(engine, store, member) -> None:
    contact = "+15557654330"
    store.record_free_trial(contact)
    member(phone=contact)

    decision = engine.handle_call(contact, "2")

    assert decision.outcome == Outcome.connected
    assert decision.new_session


def test_connected_call_dial_options(engine, store, member) -> None:
    contact = "+15557654331"
    user = member(phone=contact, name="Ada", subscription_id="sub_2")

    decision = engine.handle_call(contact, "2")

    dial = decision.reply.dialed
    assert dial.number == ADMIN
    assert dial.caller_id == contact
    assert dial.timeout == 30
    assert dial.action == f"{BASE_URL}/twilio/no-answer"
    assert dial.whisper_url == f"{BASE_URL}/twilio/whisper?type=customer&name=Ada"
    assert dial.status_callback == f"{BASE_URL}/twilio/call-status?sessionId={decision.session_id}"
    assert dial.recording_callback.startswith(f"{BASE_URL}/twilio/recording-status?sessionId=")
    session = store.get_session(decision.session_id)
    assert session.user_id == user.id
    assert session.type == Channel.phone
    assert session.priority == Priority.high


def test_menu_invalid_digit_and_account_lookup(engine, member) -> None:
    contact = "+15557654332"

    menu = engine.handle_call(contact, None)
    assert menu.outcome == Outcome.menu
    assert "Press 1" in menu.reply.gathered.prompt

    assert engine.handle_call(contact, "9").outcome == Outcome.invalid_option
    assert engine.handle_call(contact, "1").outcome == Outcome.account_not_found

    member(phone=contact, name="Ada", completed_sessions=1)
    lookup = engine.handle_call(contact, "1")
    assert lookup.outcome == Outcome.account_info
    assert "Hello Ada" in lookup.reply.spoken_text
    assert "ada@example.com" in lookup.reply.spoken_text
    assert "2 help sessions remaining" in lookup.reply.spoken_text
    assert lookup.reply.gathered.action == f"{BASE_URL}/twilio/voice"


def test_no_answer_and_whisper(engine) -> None:
    assert "couldn't reach" in engine.no_answer("no-answer").spoken_text
    assert engine.no_answer("completed").spoken_text == ""
    assert "customer Ada" in engine.whisper("customer", "Ada").spoken_text
    assert "free trial" in engine.whisper("freetrial", None).spoken_text


def test_admin_reply_with_number_prefix(engine, store, messenger, member) -> None:
    contact = "+15553334444"
    user = member(phone=contact)

    outcome = engine.handle_admin_reply(ADMIN, "+15550001234", "+15553334444 On my way")

    assert outcome == Outcome.admin_reply_forwarded
    assert messenger.bodies_to(contact) == ["On my way"]
    session = store.find_active_session(user.id)
    assert session.type == Channel.sms
    messages = store.list_messages(session.id)
    assert [(item.content, item.is_admin) for item in messages] == [("On my way", True)]


def test_admin_reply_targets_to_number(engine, messenger) -> None:
    outcome = engine.handle_admin_reply(ADMIN, "5553335555", "Checking in")

    assert outcome == Outcome.admin_reply_forwarded
    assert messenger.bodies_to("+15553335555") == ["Checking in"]


def test_admin_reply_from_unknown_sender_is_ignored(engine, messenger) -> None:
    outcome = engine.handle_admin_reply("+15550000000", "+15553334444", "hi")

    assert outcome == Outcome.ignored
    assert messenger.sent == []


def test_send_to_user_by_phone_or_id(engine, messenger, member) -> None:
    user = member(phone="5556667777")

    sid, recipient = engine.send_to_user("5556667777", "Your ticket is resolved")
    assert recipient == "+15556667777"
    assert sid.startswith("SM")

    _, by_id = engine.send_to_user(user.id, "Following up", media_url="https://img.test/a.png")
    assert by_id == "+15556667777"
    assert messenger.sent[-1].media_url == "https://img.test/a.png"

    with pytest.raises(ContactNotFoundError):
        engine.send_to_user("unknown-user", "hello")

    messenger.accepting = False
    with pytest.raises(DeliveryFailedError):
        engine.send_to_user(user.id, "hello")


def test_call_status_notes_terminal_status(engine, store, member) -> None:
    user = member(phone="+15557654333", subscription_id="sub_3")
    session = engine.handle_call("+15557654333", "2")

    assert engine.record_call_status(
        session_id=session.session_id, call_sid="CA1", call_status="completed", duration="42"
    )
    assert not engine.record_call_status(
        session_id=session.session_id, call_sid="CA1", call_status="ringing", duration=None
    )
    assert not engine.record_call_status(
        session_id="missing", call_sid="CA1", call_status="completed", duration="1"
    )
    messages = store.list_messages(session.session_id)
    assert messages[-1].content == "Call completed (42s)"
    assert messages[-1].is_admin
    assert store.get_session(session.session_id).user_id == user.id


def test_recording_is_archived_to_session(engine, store, member, recording_storage, monkeypatch) -> None:
    member(phone="+15557654334", subscription_id="sub_4")
    session_id = engine.handle_call("+15557654334", "2").session_id
    calls = []

    def fake_download(**kwargs) -> RecordingFile:
        calls.append(kwargs)
        return RecordingFile(recording_sid=kwargs["recording_sid"], content=b"ID3", content_type="audio/mpeg")

    monkeypatch.setattr("backend.app.services.decision.download_recording", fake_download)

    url = engine.archive_recording(
        session_id=session_id,
        contact=None,
        recording_sid="RE1",
        recording_url="https://api.twilio.com/Recordings/RE1",
        recording_status="completed",
    )

    assert url == "https://recordings.test/RE1.mp3"
    assert calls[0]["timeout_seconds"] == 5
    assert store.list_messages(session_id)[-1].content == "Call recording: https://recordings.test/RE1.mp3"
    assert len(recording_storage.uploads) == 1


def test_recording_failures_are_skipped(engine, messenger, recording_storage, monkeypatch) -> None:
    def failing_download(**kwargs) -> RecordingFile:
        raise RecordingDownloadError("timed out")

    monkeypatch.setattr("backend.app.services.decision.download_recording", failing_download)

    assert (
        engine.archive_recording(
            session_id=None,
            contact="+15550001111",
            recording_sid="RE2",
            recording_url="https://api.twilio.com/Recordings/RE2",
            recording_status="completed",
        )
        is None
    )
    assert (
        engine.archive_recording(
            session_id=None,
            contact=None,
            recording_sid="RE3",
            recording_url="https://api.twilio.com/Recordings/RE3",
            recording_status="absent",
        )
        is None
    )
    assert recording_storage.uploads == []
    assert messenger.sent == []


def test_trial_recording_goes_to_admin(engine, messenger, monkeypatch) -> None:
    monkeypatch.setattr(
        "backend.app.services.decision.download_recording",
        lambda **kwargs: RecordingFile(recording_sid="RE4", content=b"ID3", content_type="audio/mpeg"),
    )

    engine.archive_recording(
        session_id=None,
        contact="+15550001111",
        recording_sid="RE4",
        recording_url="https://api.twilio.com/Recordings/RE4",
        recording_status="completed",
    )

    assert messenger.bodies_to(ADMIN) == [
        "FREE TRIAL call recording from +15550001111: https://recordings.test/RE4.mp3"
    ]


def test_decisions_are_counted(app, engine, member) -> None:
    member(phone="+15557654335", completed_sessions=3)

    engine.handle_sms("+15557654335", "hi")
    engine.handle_call("+15557654335", "2")

    assert app.state.metrics.outcome_count("denied_quota") == 2


def _offline(*args, **kwargs):
    raise StoreUnavailableError("database offline")


def test_user_lookup_outage_treats_caller_as_unregistered(
    engine, store, member, monkeypatch
) -> None:
    contact = "+15557650001"
    member(phone=contact, subscription_id="sub_9")
    monkeypatch.setattr(store, "find_user_by_phone", _offline)

    decision = engine.handle_call(contact, "2")

    assert decision.outcome == Outcome.trial_offered
    assert decision.reply.dialed is None


def test_trial_lookup_outage_still_offers_trial(engine, store, monkeypatch) -> None:
    monkeypatch.setattr(store, "has_free_trial", _offline)

    decision = engine.handle_call("+15557650002", "2")

    assert decision.outcome == Outcome.trial_offered
    assert decision.reply.gathered.action == f"{BASE_URL}/twilio/free-trial"


def test_trial_record_outage_still_connects_caller(engine, store, monkeypatch) -> None:
    contact = "+15557650003"
    monkeypatch.setattr(store, "record_free_trial", _offline)

    decision = engine.confirm_free_trial(contact, "1")

    assert decision.outcome == Outcome.trial_connected
    assert decision.reply.dialed.number == ADMIN
    assert store.list_free_trials() == []


def test_trial_record_outage_still_forwards_sms(engine, store, messenger, monkeypatch) -> None:
    contact = "+15557650004"
    monkeypatch.setattr(store, "record_free_trial", _offline)

    decision = engine.handle_sms(contact, "Printer is offline")

    assert decision.outcome == Outcome.trial_forwarded
    assert any("FREE TRIAL SMS" in body for body in messenger.bodies_to(ADMIN))
