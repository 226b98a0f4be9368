from datetime import timedelta
from unittest.mock import Mock, patch

import pytest
import requests

from dental_clinic import messaging
from dental_clinic.auth_service import resolve_current_user
from dental_clinic.db import db_session, utcnow
from dental_clinic.messaging import SendResult, WhatsAppSender
from dental_clinic.models import Message, MessageStatus, MessageType
from dental_clinic.services import create_appointment, create_patient, create_treatment_type

# the autouse fixture patches send; keep the real one for the gateway tests
REAL_SEND = WhatsAppSender.send


def _admin(clinic):
    return resolve_current_user(clinic.admin_id, clinic.org_id)


def _patient(clinic, **kw):
    return create_patient(_admin(clinic), "Jane", "Doe", "+1 555 123 4567", **kw)


# =============================================================================
# State machine
# =============================================================================

def test_failed_message_moves_to_sent_on_retry():
    m = Message(status=MessageStatus.PENDING, attempts=0)

    messaging.apply_send_result(m, SendResult(False, "SMTP timeout"))
    assert m.status == MessageStatus.FAILED
    assert m.error == "SMTP timeout"
    assert m.attempts == 1

    messaging.apply_send_result(m, SendResult(True))
    assert m.status == MessageStatus.SENT
    assert m.error is None
    assert m.sent_at is not None
    assert m.attempts == 2


def test_sent_message_is_final():
    m = Message(status=MessageStatus.SENT, attempts=1)
    with pytest.raises(ValueError):
        messaging.apply_send_result(m, SendResult(False, "late failure"))
    assert m.status == MessageStatus.SENT


def test_failure_without_error_text():
    m = Message(status=MessageStatus.PENDING, attempts=0)
    messaging.apply_send_result(m, SendResult(False))
    assert m.error == "Unknown error"


# =============================================================================
# Templates
# =============================================================================

def test_render_template():
    out = messaging.render_template(
        "Hi {{patientName}}, {{ amount }} at {{clinicName}} {{unknown}}",
        {"patientName": "Jane", "amount": "10.00", "clinicName": None},
    )
    assert out == "Hi Jane, 10.00 at  {{unknown}}"


def test_format_chat_id():
    assert messaging.format_chat_id("+1 (555) 123-4567") == "15551234567@c.us"
    assert messaging.format_chat_id("") == "@c.us"


# =============================================================================
# Gateway
# =============================================================================

def test_sender_posts_to_waha():
    sender = WhatsAppSender("http://waha.test/", "key-1", session="clinic")
    with patch("dental_clinic.messaging.requests.post", return_value=Mock(ok=True)) as post:
        result = REAL_SEND(sender, "+1 555 123 4567", "hello")

    assert result == SendResult(True)
    url = post.call_args.args[0]
    kwargs = post.call_args.kwargs
    assert url == "http://waha.test/api/sendText"
    assert kwargs["headers"]["X-Api-Key"] == "key-1"
    assert kwargs["json"]["chatId"] == "15551234567@c.us"
    assert kwargs["json"]["text"] == "hello"
    assert kwargs["json"]["session"] == "clinic"


def test_sender_reports_http_error():
    sender = WhatsAppSender("http://waha.test", "key-1")
    response = Mock(ok=False, status_code=500, text="session down")
    with patch("dental_clinic.messaging.requests.post", return_value=response):
        result = REAL_SEND(sender, "15551234567", "hello")
    assert not result.success
    assert result.error == "WAHA API error: 500 - session down"


def test_sender_reports_network_error():
    sender = WhatsAppSender("http://waha.test", "key-1")
    with patch("dental_clinic.messaging.requests.post", side_effect=requests.ConnectionError("connection refused")):
        result = REAL_SEND(sender, "15551234567", "hello")
    assert result == SendResult(False, "connection refused")


def test_sender_rejects_number_without_digits():
    sender = WhatsAppSender("http://waha.test", "key-1")
    with patch("dental_clinic.messaging.requests.post") as post:
        result = REAL_SEND(sender, "n/a", "hello")
    assert not result.success
    post.assert_not_called()


def test_organization_gateway_overrides_config(clinic):
    info = messaging.update_whatsapp_integration(clinic.org_id, api_url="http://clinic-waha.test", api_key="org-key")
    assert info["api_url"] == "http://clinic-waha.test"
    assert info["uses_organization_settings"] is True
    assert info["configured"] is True
    with db_session() as s:
        sender = messaging.sender_for_org(s, clinic.org_id)
    assert sender.api_key == "org-key"


# =============================================================================
# Dispatch and resend
# =============================================================================

def test_new_patient_gets_medical_history_link(clinic, whatsapp):
    p = _patient(clinic)
    page = messaging.list_messages(clinic.org_id, patient_id=p["id"])
    assert page["total"] == 1
    m = page["data"][0]
    assert m["type"] == "medical_history"
    assert m["status"] == "sent"
    assert m["attempts"] == 1
    assert m["content"].startswith("Hello Jane Doe, please fill out your medical history form: "
                                   "http://frontend.test/medical-history?token=")
    assert m["metadata"]["medicalHistoryLink"] in m["content"]

    _, phone, text = whatsapp.call_args.args
    assert phone == "+1 555 123 4567"
    assert text == m["content"]


def test_failed_send_is_stored_and_resent(clinic, whatsapp):
    whatsapp.return_value = SendResult(False, "SMTP timeout")
    p = _patient(clinic)
    m = messaging.list_messages(clinic.org_id, patient_id=p["id"])["data"][0]
    assert m["status"] == "failed"
    assert m["error"] == "SMTP timeout"

    whatsapp.return_value = SendResult(True)
    resent = messaging.resend_message(clinic.org_id, m["id"])
    assert resent["id"] == m["id"]
    assert resent["status"] == "sent"
    assert resent["attempts"] == 2
    assert resent["error"] is None

    with pytest.raises(ValueError):
        messaging.resend_message(clinic.org_id, m["id"])
    assert messaging.get_message(clinic.org_id, m["id"])["status"] == "sent"


def test_disabled_message_type_is_not_stored(clinic, whatsapp):
    messaging.update_notification_settings(clinic.org_id, notification_toggles={"medical_history": False})
    p = _patient(clinic)
    assert messaging.list_messages(clinic.org_id, patient_id=p["id"])["total"] == 0
    whatsapp.assert_not_called()


def test_custom_template(clinic):
    messaging.update_notification_settings(
        clinic.org_id,
        message_templates={"medical_history": "{{clinicName}}: {{patientName}} -> {{medicalHistoryLink}}"},
    )
    p = _patient(clinic)
    m = messaging.list_messages(clinic.org_id, patient_id=p["id"])["data"][0]
    assert m["content"].startswith("Smile Clinic: Jane Doe -> http://frontend.test/medical-history?token=")


def test_settings_validation(clinic):
    with pytest.raises(ValueError):
        messaging.update_notification_settings(clinic.org_id, notification_toggles={"newsletter": True})
    with pytest.raises(ValueError):
        messaging.update_notification_settings(clinic.org_id, appointment_reminders=[{"timing_in_hours": 0}])

    settings = messaging.update_notification_settings(
        clinic.org_id, appointment_reminders=[{"enabled": True, "timing_in_hours": 48}]
    )
    assert settings["appointment_reminders"] == [{"enabled": True, "timing_in_hours": 48}]
    assert settings["notification_toggles"]["payment_receipt"] is True


def test_message_listing_filters(clinic, whatsapp):
    _patient(clinic)
    whatsapp.return_value = SendResult(False, "offline")
    create_patient(_admin(clinic), "John", "Roe", "+1 555 000 0000")

    assert messaging.list_messages(clinic.org_id)["total"] == 2
    failed = messaging.list_messages(clinic.org_id, status=MessageStatus.FAILED)
    assert [m["patient_name"] for m in failed["data"]] == ["John Roe"]
    assert messaging.list_messages(clinic.org_id, message_type=MessageType.PAYMENT_RECEIPT)["total"] == 0
    assert messaging.list_messages(clinic.org_id, limit=1)["total_pages"] == 2


# =============================================================================
# Appointment reminders
# =============================================================================

def test_due_appointment_reminders(clinic, whatsapp):
    admin = _admin(clinic)
    p = _patient(clinic, send_medical_history=False)
    tt = create_treatment_type(clinic.org_id, "Cleaning", [{"name": "Standard", "price": "50"}], duration_minutes=30)
    now = utcnow()
    soon = create_appointment(admin, p["id"], tt["id"], now + timedelta(hours=2), doctor_id=clinic.dentist_id)
    create_appointment(admin, p["id"], tt["id"], now + timedelta(days=3), doctor_id=clinic.dentist_id)

    sent = messaging.send_due_appointment_reminders(within_hours=24, now=now)
    assert len(sent) == 1
    assert sent[0]["type"] == "appointment_reminder"
    assert sent[0]["metadata"]["appointmentId"] == soon["id"]
    assert "Dr. Dan Dentist" in sent[0]["content"]
    assert "1 Main Street" in sent[0]["content"]

    # already reminded
    assert messaging.send_due_appointment_reminders(within_hours=24, now=now) == []


def test_failed_reminder_is_retried_by_next_run(clinic, whatsapp):
    admin = _admin(clinic)
    p = _patient(clinic, send_medical_history=False)
    tt = create_treatment_type(clinic.org_id, "Cleaning", [{"name": "Standard", "price": "50"}])
    now = utcnow()
    create_appointment(admin, p["id"], tt["id"], now + timedelta(hours=1), doctor_id=clinic.dentist_id)

    whatsapp.return_value = SendResult(False, "offline")
    assert messaging.send_due_appointment_reminders(within_hours=24, now=now)[0]["status"] == "failed"

    whatsapp.return_value = SendResult(True)
    assert messaging.send_due_appointment_reminders(within_hours=24, now=now)[0]["status"] == "sent"
