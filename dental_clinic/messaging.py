"""
Patient messaging (WhatsApp).

Every outbound message is stored first as `pending`, then the gateway result
moves it to `sent` or `failed`. A failed message can be resent by hand: the
same row is retried and moves again to `sent` or `failed`; it never goes
back to `pending`. A `sent` message is final.
"""
from __future__ import annotations

import logging
import math
import re
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

import requests
from sqlalchemy import and_, func, select

from . import config
from .auth_models import Organization, User
from .auth_security import create_medical_history_token
from .db import db_session, utcnow
from .errors import NotFoundError
from .models import (
    Appointment,
    AppointmentStatus,
    Message,
    MessageStatus,
    MessageType,
    NotificationSettings,
    OrganizationVariable,
    OrganizationVariableKey,
    Patient,
)

logger = logging.getLogger(__name__)

DEFAULT_TEMPLATES: dict[str, str] = {
    MessageType.MEDICAL_HISTORY.value:
        "Hello {{patientName}}, please fill out your medical history form: {{medicalHistoryLink}}",
    MessageType.PAYMENT_RECEIPT.value:
        "Hello {{patientName}}, thank you for your payment of {{amount}}. "
        "Your remaining balance is {{remainingBalance}}.",
    MessageType.APPOINTMENT_REMINDER.value:
        "Hello {{patientName}}, this is a reminder for your appointment on {{appointmentDate}} "
        "at {{appointmentTime}} with Dr. {{doctorName}} at {{clinicLocation}}.",
    MessageType.FOLLOW_UP.value:
        "Hello {{patientName}}, this is a reminder for your follow-up appointment. "
        "Reason: {{followUpReason}}. Please contact us at {{clinicLocation}}.",
    MessageType.PAYMENT_OVERDUE.value:
        "Hello {{patientName}}, you have an outstanding balance of {{amountDue}} for completed treatments. "
        "Please contact us at {{clinicLocation}} to arrange payment.",
}

DEFAULT_TOGGLES: dict[str, bool] = {t.value: True for t in MessageType}

DEFAULT_APPOINTMENT_REMINDERS: list[dict[str, Any]] = [
    {"enabled": True, "timing_in_hours": 24},
    {"enabled": True, "timing_in_hours": 1},
]

_VARIABLE = re.compile(r"\{\{\s*(\w+)\s*\}\}")


def render_template(template: str, variables: dict[str, Any]) -> str:
    """Replace {{name}} placeholders; unknown placeholders are left untouched."""
    def repl(m: re.Match) -> str:
        key = m.group(1)
        if key not in variables:
            return m.group(0)
        value = variables[key]
        return "" if value is None else str(value)

    return _VARIABLE.sub(repl, template)


# =========================
# WhatsApp gateway (WAHA HTTP API)
# =========================
@dataclass(frozen=True)
class SendResult:
    success: bool
    error: str | None = None


def format_chat_id(phone_number: str) -> str:
    digits = re.sub(r"\D", "", phone_number or "")
    return f"{digits}@c.us"


class WhatsAppSender:
    def __init__(self, api_url: str, api_key: str, session: str = "default", timeout: float = 10.0):
        self.api_url = (api_url or "").rstrip("/")
        self.api_key = api_key or ""
        self.session = session
        self.timeout = timeout

    def is_configured(self) -> bool:
        return bool(self.api_url and self.api_key)

    def send(self, phone_number: str, text: str) -> SendResult:
        chat_id = format_chat_id(phone_number)
        if chat_id == "@c.us":
            return SendResult(False, "Patient has no valid mobile number")

        logger.info("Sending WhatsApp message to %s", chat_id)
        try:
            r = requests.post(
                f"{self.api_url}/api/sendText",
                headers={"accept": "application/json", "X-Api-Key": self.api_key},
                json={
                    "chatId": chat_id,
                    "text": text,
                    "session": self.session,
                    "reply_to": None,
                    "linkPreview": True,
                    "linkPreviewHighQuality": False,
                },
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            logger.error("Failed to send WhatsApp message: %s", e)
            return SendResult(False, str(e) or e.__class__.__name__)

        if not r.ok:
            error = f"WAHA API error: {r.status_code} - {r.text}"
            logger.error(error)
            return SendResult(False, error)

        logger.info("WhatsApp message sent to %s", chat_id)
        return SendResult(True)


def get_org_variable(s, org_id: str, key: OrganizationVariableKey) -> str | None:
    row = s.execute(
        select(OrganizationVariable).where(OrganizationVariable.org_id == org_id, OrganizationVariable.key == key.value)
    ).scalar_one_or_none()
    return row.value if row else None


def set_org_variable(s, org_id: str, key: OrganizationVariableKey, value: str | None) -> None:
    row = s.execute(
        select(OrganizationVariable).where(OrganizationVariable.org_id == org_id, OrganizationVariable.key == key.value)
    ).scalar_one_or_none()
    if row is None:
        s.add(OrganizationVariable(org_id=org_id, key=key.value, value=value))
    else:
        row.value = value


def sender_for_org(s, org_id: str) -> WhatsAppSender:
    """Organization variables override the global gateway settings."""
    return WhatsAppSender(
        api_url=get_org_variable(s, org_id, OrganizationVariableKey.WAHA_API_URL) or config.WAHA_API_URL,
        api_key=get_org_variable(s, org_id, OrganizationVariableKey.WAHA_API_KEY) or config.WAHA_API_KEY,
        session=config.WAHA_SESSION,
        timeout=config.WAHA_TIMEOUT_SECONDS,
    )


def get_whatsapp_integration(org_id: str) -> dict:
    with db_session() as s:
        url = get_org_variable(s, org_id, OrganizationVariableKey.WAHA_API_URL)
        key = get_org_variable(s, org_id, OrganizationVariableKey.WAHA_API_KEY)
        sender = sender_for_org(s, org_id)
        return {
            "api_url": sender.api_url,
            "has_api_key": bool(sender.api_key),
            "uses_organization_settings": bool(url or key),
            "configured": sender.is_configured(),
        }


def update_whatsapp_integration(org_id: str, api_url: str | None = None, api_key: str | None = None) -> dict:
    with db_session() as s:
        if api_url is not None:
            set_org_variable(s, org_id, OrganizationVariableKey.WAHA_API_URL, api_url.strip() or None)
        if api_key is not None:
            set_org_variable(s, org_id, OrganizationVariableKey.WAHA_API_KEY, api_key.strip() or None)
    return get_whatsapp_integration(org_id)


# =========================
# Notification settings
# =========================
def get_or_create_settings(s, org_id: str) -> NotificationSettings:
    settings = s.execute(
        select(NotificationSettings).where(NotificationSettings.org_id == org_id)
    ).scalar_one_or_none()
    if settings is None:
        settings = NotificationSettings(
            org_id=org_id,
            message_templates=dict(DEFAULT_TEMPLATES),
            notification_toggles=dict(DEFAULT_TOGGLES),
            appointment_reminders=[dict(r) for r in DEFAULT_APPOINTMENT_REMINDERS],
        )
        s.add(settings)
        s.flush()
    return settings


def _settings_dict(settings: NotificationSettings) -> dict:
    return {
        "message_templates": {**DEFAULT_TEMPLATES, **(settings.message_templates or {})},
        "notification_toggles": {**DEFAULT_TOGGLES, **(settings.notification_toggles or {})},
        "appointment_reminders": list(settings.appointment_reminders or []),
    }


def get_notification_settings(org_id: str) -> dict:
    with db_session() as s:
        return _settings_dict(get_or_create_settings(s, org_id))


def update_notification_settings(
    org_id: str,
    message_templates: dict[str, str] | None = None,
    notification_toggles: dict[str, bool] | None = None,
    appointment_reminders: list[dict[str, Any]] | None = None,
) -> dict:
    known = {t.value for t in MessageType}
    for name in list(message_templates or {}) + list(notification_toggles or {}):
        if name not in known:
            raise ValueError(f"Unknown message type: {name}")

    with db_session() as s:
        settings = get_or_create_settings(s, org_id)
        # JSON columns: assign new objects so the change is detected
        if message_templates:
            settings.message_templates = {**(settings.message_templates or {}), **message_templates}
        if notification_toggles:
            settings.notification_toggles = {**(settings.notification_toggles or {}), **notification_toggles}
        if appointment_reminders is not None:
            for r in appointment_reminders:
                if int(r.get("timing_in_hours", 0)) <= 0:
                    raise ValueError("Reminder timing must be a positive number of hours.")
            settings.appointment_reminders = [
                {"enabled": bool(r.get("enabled", True)), "timing_in_hours": int(r["timing_in_hours"])}
                for r in appointment_reminders
            ]
        return _settings_dict(settings)


def is_enabled(settings: NotificationSettings, message_type: MessageType) -> bool:
    return bool({**DEFAULT_TOGGLES, **(settings.notification_toggles or {})}.get(message_type.value, True))


# =========================
# State machine
# =========================
def apply_send_result(message: Message, result: SendResult) -> Message:
    """Single transition point after a delivery attempt."""
    if message.status == MessageStatus.SENT:
        raise ValueError("Message was already sent.")

    message.attempts = (message.attempts or 0) + 1
    if result.success:
        message.status = MessageStatus.SENT
        message.sent_at = utcnow()
        message.error = None
    else:
        message.status = MessageStatus.FAILED
        message.error = result.error or "Unknown error"
    return message


def message_dict(m: Message) -> dict:
    return {
        "id": m.id,
        "patient_id": m.patient_id,
        "patient_name": m.patient.full_name if m.patient else None,
        "type": m.type.value,
        "content": m.content,
        "status": m.status.value,
        "attempts": m.attempts,
        "sent_at": m.sent_at.isoformat() if m.sent_at else None,
        "error": m.error,
        "metadata": m.meta or {},
        "created_at": m.created_at.isoformat(),
    }


def _clinic_variables(org: Organization) -> dict[str, str]:
    return {"clinicName": org.name, "clinicLocation": org.location or org.name}


def dispatch(
    s,
    org_id: str,
    patient: Patient,
    message_type: MessageType,
    variables: dict[str, Any],
    metadata: dict[str, Any] | None = None,
    sender: WhatsAppSender | None = None,
) -> Message | None:
    """
    Render the organization template, store the message as pending and try to deliver it.
    Returns None when this message type is disabled for the organization.
    """
    settings = get_or_create_settings(s, org_id)
    if not is_enabled(settings, message_type):
        logger.info("%s notifications disabled for org %s", message_type.value, org_id)
        return None

    org = s.get(Organization, org_id)
    if org is None:
        raise NotFoundError("Organization")

    template = {**DEFAULT_TEMPLATES, **(settings.message_templates or {})}[message_type.value]
    content = render_template(template, {
        "patientName": patient.full_name,
        **_clinic_variables(org),
        **variables,
    })

    message = Message(
        org_id=org_id,
        patient_id=patient.id,
        type=message_type,
        content=content,
        status=MessageStatus.PENDING,
        meta=metadata or {},
    )
    s.add(message)
    s.flush()

    result = (sender or sender_for_org(s, org_id)).send(patient.mobile_number, content)
    apply_send_result(message, result)
    if result.success:
        logger.info("%s sent to patient %s", message_type.value, patient.id)
    else:
        logger.error("Failed to send %s to patient %s: %s", message_type.value, patient.id, result.error)
    s.flush()
    return message


def _get_patient(s, org_id: str, patient_id: str) -> Patient:
    p = s.execute(
        select(Patient).where(Patient.id == patient_id, Patient.org_id == org_id, Patient.deleted_at.is_(None))
    ).scalar_one_or_none()
    if p is None:
        raise NotFoundError("Patient")
    return p


# =========================
# Use cases
# =========================
def medical_history_link(patient_id: str, org_id: str) -> str:
    token = create_medical_history_token(patient_id, org_id)
    return f"{config.FRONTEND_URL.rstrip('/')}/medical-history?token={token}"


def send_medical_history_link(org_id: str, patient_id: str) -> dict | None:
    with db_session() as s:
        patient = _get_patient(s, org_id, patient_id)
        link = medical_history_link(patient.id, org_id)
        m = dispatch(s, org_id, patient, MessageType.MEDICAL_HISTORY,
                     {"medicalHistoryLink": link}, {"medicalHistoryLink": link})
        return message_dict(m) if m else None


def send_payment_receipt(s, org_id: str, patient: Patient, payment_id: str, amount, remaining_balance) -> Message | None:
    return dispatch(
        s, org_id, patient, MessageType.PAYMENT_RECEIPT,
        {"amount": f"{amount:.2f}", "remainingBalance": f"{remaining_balance:.2f}"},
        {"paymentId": payment_id, "amount": str(amount), "remainingBalance": str(remaining_balance)},
    )


def send_payment_overdue(s, org_id: str, patient: Patient, amount_due) -> Message | None:
    return dispatch(
        s, org_id, patient, MessageType.PAYMENT_OVERDUE,
        {"amountDue": f"{amount_due:.2f}"},
        {"amountDue": str(amount_due)},
    )


def send_follow_up_reminder(org_id: str, patient_id: str) -> dict | None:
    with db_session() as s:
        patient = _get_patient(s, org_id, patient_id)
        m = dispatch(
            s, org_id, patient, MessageType.FOLLOW_UP,
            {"followUpReason": patient.follow_up_reason or "Follow-up required"},
            {
                "followUpDate": patient.follow_up_date.isoformat() if patient.follow_up_date else None,
                "followUpReason": patient.follow_up_reason,
            },
        )
        return message_dict(m) if m else None


def _send_appointment_reminder(s, app: Appointment, timing_in_hours: int | None = None) -> Message | None:
    doctor = s.get(User, app.doctor_id) if app.doctor_id else None
    appointment_date = app.start_at.date().isoformat()
    appointment_time = app.start_at.strftime("%H:%M")
    m = dispatch(
        s, app.org_id, app.patient, MessageType.APPOINTMENT_REMINDER,
        {
            "appointmentDate": appointment_date,
            "appointmentTime": appointment_time,
            "doctorName": doctor.name if doctor else "the doctor",
        },
        {
            "appointmentId": app.id,
            "appointmentDate": appointment_date,
            "appointmentTime": appointment_time,
            "doctorName": doctor.name if doctor else None,
            "timingInHours": timing_in_hours,
        },
    )
    if m is not None and m.status == MessageStatus.SENT:
        app.reminder_sent_at = utcnow()
    return m


def send_appointment_reminder(org_id: str, appointment_id: str) -> dict | None:
    with db_session() as s:
        app = s.execute(
            select(Appointment).where(
                Appointment.id == appointment_id, Appointment.org_id == org_id, Appointment.deleted_at.is_(None)
            )
        ).scalar_one_or_none()
        if app is None:
            raise NotFoundError("Appointment")
        if app.status == AppointmentStatus.CANCELLED:
            raise ValueError("Cannot remind a cancelled appointment.")
        m = _send_appointment_reminder(s, app)
        return message_dict(m) if m else None


def send_due_appointment_reminders(within_hours: int = 24, now: datetime | None = None) -> list[dict]:
    """
    Reminders for every organization: appointments starting in the next
    `within_hours` hours, not cancelled, not yet reminded.
    """
    now = now or utcnow()
    until = now + timedelta(hours=within_hours)
    out: list[dict] = []
    with db_session() as s:
        q = (
            select(Appointment)
            .where(
                and_(
                    Appointment.start_at >= now,
                    Appointment.start_at < until,
                    Appointment.status != AppointmentStatus.CANCELLED,
                    Appointment.deleted_at.is_(None),
                    Appointment.reminder_sent_at.is_(None),
                )
            )
            .order_by(Appointment.start_at.asc())
        )
        for app in list(s.scalars(q)):
            m = _send_appointment_reminder(s, app, timing_in_hours=within_hours)
            if m is not None:
                out.append(message_dict(m))
    return out


def resend_message(org_id: str, message_id: str) -> dict:
    with db_session() as s:
        m = s.execute(
            select(Message).where(Message.id == message_id, Message.org_id == org_id)
        ).scalar_one_or_none()
        if m is None:
            raise NotFoundError("Message")
        if m.status == MessageStatus.SENT:
            raise ValueError("Message was already sent.")

        result = sender_for_org(s, org_id).send(m.patient.mobile_number, m.content)
        apply_send_result(m, result)
        if result.success:
            logger.info("Message %s resent", m.id)
        else:
            logger.error("Failed to resend message %s: %s", m.id, result.error)
        s.flush()
        return message_dict(m)


# =========================
# Queries
# =========================
def list_messages(
    org_id: str,
    patient_id: str | None = None,
    message_type: MessageType | None = None,
    status: MessageStatus | None = None,
    page: int = 1,
    limit: int = 20,
) -> dict:
    page = max(1, page)
    limit = max(1, min(limit, 200))
    with db_session() as s:
        where = [Message.org_id == org_id]
        if patient_id:
            where.append(Message.patient_id == patient_id)
        if message_type is not None:
            where.append(Message.type == message_type)
        if status is not None:
            where.append(Message.status == status)

        total = s.execute(select(func.count()).select_from(Message).where(*where)).scalar_one()
        rows = s.scalars(
            select(Message).where(*where)
            .order_by(Message.created_at.desc())
            .limit(limit)
            .offset((page - 1) * limit)
        ).all()
        return {
            "data": [message_dict(m) for m in rows],
            "total": total,
            "page": page,
            "limit": limit,
            "total_pages": math.ceil(total / limit),
        }


def get_message(org_id: str, message_id: str) -> dict:
    with db_session() as s:
        m = s.execute(
            select(Message).where(Message.id == message_id, Message.org_id == org_id)
        ).scalar_one_or_none()
        if m is None:
            raise NotFoundError("Message")
        return message_dict(m)


def latest_message_for(org_id: str, message_type: MessageType, key: str, value: str) -> dict | None:
    """Most recent message of a type whose metadata[key] == value (e.g. receipt of a payment)."""
    with db_session() as s:
        rows = s.scalars(
            select(Message)
            .where(Message.org_id == org_id, Message.type == message_type)
            .order_by(Message.created_at.desc())
        )
        for m in rows:
            if (m.meta or {}).get(key) == value:
                return message_dict(m)
    return None
