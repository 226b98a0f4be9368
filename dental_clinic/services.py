from __future__ import annotations

import logging
import math
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Iterable

from sqlalchemy import and_, func, or_, select

from . import messaging
from .auth_models import MembershipStatus, UserOrganization, UserRole
from .auth_security import MEDICAL_HISTORY, get_claims
from .auth_service import CurrentUser
from .db import Base, db_session, engine, utcnow
from .errors import AuthError, ForbiddenError, NotFoundError
from .models import (
    Appointment,
    AppointmentStatus,
    FollowUpStatus,
    MedicalHistoryAudit,
    MedicalHistoryQuestion,
    MessageType,
    OrganizationVariableKey,
    Patient,
    QuestionType,
    Treatment,
    TreatmentCategory,
    TreatmentStatus,
    TreatmentType,
)
from .permissions import sees_only_own
from .pricing import ZERO, load_variants, price_range, quote_treatment, to_money, validate_variants
from .teeth import find_duplicate_teeth, format_tooth_numbers, is_valid_tooth

logger = logging.getLogger(__name__)


# =========================
# Bootstrap DB
# =========================
def init_db() -> None:
    """Create the tables if they do not exist."""
    # registers every mapped class on Base.metadata
    from . import auth_models, models  # noqa: F401

    Base.metadata.create_all(bind=engine)


# =========================
# Helpers
# =========================
def _naive_utc(value: datetime) -> datetime:
    if value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def _page(page: int, limit: int) -> tuple[int, int]:
    return max(1, page), max(1, min(limit, 200))


def _paginated(rows: list[dict], total: int, page: int, limit: int) -> dict:
    return {
        "data": rows,
        "total": total,
        "page": page,
        "limit": limit,
        "total_pages": math.ceil(total / limit),
    }


def _get_patient(s, org_id: str, patient_id: str) -> Patient:
    p = s.execute(
        select(Patient).where(Patient.id == patient_id, Patient.org_id == org_id, Patient.deleted_at.is_(None))
    ).scalar_one_or_none()
    if p is None:
        raise NotFoundError("Patient")
    return p


def _get_treatment_type(s, org_id: str, type_id: str) -> TreatmentType:
    tt = s.execute(
        select(TreatmentType).where(
            TreatmentType.id == type_id, TreatmentType.org_id == org_id, TreatmentType.deleted_at.is_(None)
        )
    ).scalar_one_or_none()
    if tt is None:
        raise NotFoundError("Treatment type")
    return tt


def _active_dentist(s, org_id: str, user_id: str) -> UserOrganization:
    m = s.execute(
        select(UserOrganization).where(
            UserOrganization.org_id == org_id,
            UserOrganization.user_id == user_id,
            UserOrganization.status == MembershipStatus.ACTIVE,
        )
    ).scalar_one_or_none()
    if m is None or m.role != UserRole.DENTIST:
        raise ValueError("Doctor must be an active dentist of this organization.")
    return m


def validate_tooth_list(tooth_numbers: Iterable[int]) -> list[int]:
    teeth = [int(t) for t in tooth_numbers or []]
    if not teeth:
        raise ValueError("At least one tooth must be selected.")
    invalid = [t for t in teeth if not is_valid_tooth(t)]
    if invalid:
        raise ValueError(f"Invalid tooth numbers: {', '.join(map(str, invalid))}")
    dup = find_duplicate_teeth(teeth)
    if dup:
        raise ValueError(f"Duplicate tooth numbers: {', '.join(map(str, dup))}")
    return teeth


# =========================
# Patients
# =========================
def _patient_dict(p: Patient) -> dict:
    return {
        "id": p.id,
        "first_name": p.first_name,
        "last_name": p.last_name,
        "full_name": p.full_name,
        "mobile_number": p.mobile_number,
        "email": p.email,
        "date_of_birth": p.date_of_birth.isoformat() if p.date_of_birth else None,
        "address": p.address,
        "emergency_contact": p.emergency_contact,
        "blood_type": p.blood_type,
        "has_medical_history": bool(p.medical_history),
        "follow_up_date": p.follow_up_date.isoformat() if p.follow_up_date else None,
        "follow_up_reason": p.follow_up_reason,
        "follow_up_status": p.follow_up_status.value,
        "created_at": p.created_at.isoformat(),
    }


PATIENT_FIELDS = (
    "first_name", "last_name", "mobile_number", "email", "date_of_birth", "address",
    "emergency_contact", "blood_type", "follow_up_date", "follow_up_reason", "follow_up_status",
)


def _check_mobile_free(s, org_id: str, mobile_number: str, exclude_id: str | None = None) -> None:
    q = select(Patient.id).where(
        Patient.org_id == org_id, Patient.mobile_number == mobile_number, Patient.deleted_at.is_(None)
    )
    if exclude_id:
        q = q.where(Patient.id != exclude_id)
    if s.execute(q.limit(1)).first() is not None:
        raise ValueError("A patient with this mobile number already exists.")


def create_patient(
    user: CurrentUser,
    first_name: str,
    last_name: str,
    mobile_number: str,
    send_medical_history: bool = True,
    **fields: Any,
) -> dict:
    """
    Use case: register a patient.
    - mobile number unique inside the organization
    - sends the medical-history form link (WhatsApp) unless disabled
    """
    if not (first_name or "").strip() or not (last_name or "").strip():
        raise ValueError("First and last name are required.")
    mobile_number = (mobile_number or "").strip()
    if not mobile_number:
        raise ValueError("Mobile number is required.")

    with db_session() as s:
        _check_mobile_free(s, user.org_id, mobile_number)
        p = Patient(
            org_id=user.org_id,
            first_name=first_name.strip(),
            last_name=last_name.strip(),
            mobile_number=mobile_number,
            created_by=user.id,
        )
        for k, v in fields.items():
            if k in PATIENT_FIELDS and v is not None:
                setattr(p, k, v)
        s.add(p)
        s.flush()
        logger.info("Patient %s created in org %s", p.id, user.org_id)

        if send_medical_history:
            link = messaging.medical_history_link(p.id, user.org_id)
            messaging.dispatch(s, user.org_id, p, MessageType.MEDICAL_HISTORY,
                               {"medicalHistoryLink": link}, {"medicalHistoryLink": link})
        return _patient_dict(p)


def get_patient(org_id: str, patient_id: str) -> dict:
    with db_session() as s:
        return _patient_dict(_get_patient(s, org_id, patient_id))


def list_patients(org_id: str, search: str | None = None, page: int = 1, limit: int = 20) -> dict:
    page, limit = _page(page, limit)
    with db_session() as s:
        where = [Patient.org_id == org_id, Patient.deleted_at.is_(None)]
        if search and search.strip():
            like = f"%{search.strip()}%"
            where.append(or_(
                Patient.first_name.ilike(like),
                Patient.last_name.ilike(like),
                Patient.mobile_number.ilike(like),
                Patient.email.ilike(like),
            ))
        total = s.execute(select(func.count()).select_from(Patient).where(*where)).scalar_one()
        rows = s.scalars(
            select(Patient).where(*where)
            .order_by(Patient.last_name, Patient.first_name)
            .limit(limit)
            .offset((page - 1) * limit)
        ).all()
        return _paginated([_patient_dict(p) for p in rows], total, page, limit)


def update_patient(org_id: str, patient_id: str, **fields: Any) -> dict:
    with db_session() as s:
        p = _get_patient(s, org_id, patient_id)
        if fields.get("mobile_number"):
            fields["mobile_number"] = fields["mobile_number"].strip()
            _check_mobile_free(s, org_id, fields["mobile_number"], exclude_id=p.id)
        for k, v in fields.items():
            if k not in PATIENT_FIELDS or v is None:
                continue
            if k in ("first_name", "last_name") and not str(v).strip():
                raise ValueError("First and last name are required.")
            setattr(p, k, v.strip() if isinstance(v, str) else v)
        if "follow_up_status" in fields and isinstance(p.follow_up_status, str):
            p.follow_up_status = FollowUpStatus(p.follow_up_status)
        return _patient_dict(p)


def delete_patient(org_id: str, patient_id: str) -> bool:
    with db_session() as s:
        p = _get_patient(s, org_id, patient_id)
        p.deleted_at = utcnow()
        logger.info("Patient %s deleted in org %s", p.id, org_id)
        return True


# =========================
# Medical history
# =========================
def _field_changes(previous: dict, new: dict) -> dict:
    changes: dict[str, Any] = {}
    for key in sorted(set(previous) | set(new)):
        if previous.get(key) != new.get(key):
            changes[key] = {"from": previous.get(key), "to": new.get(key)}
    return changes


def _patient_from_form_token(s, token: str) -> Patient:
    claims = get_claims(token, MEDICAL_HISTORY)
    if claims is None:
        raise AuthError("Invalid or expired medical history link.")
    return _get_patient(s, claims.get("org_id"), claims["sub"])


def get_medical_history_form(token: str) -> dict:
    """Public form: the patient's first name and the organization's questions."""
    with db_session() as s:
        p = _patient_from_form_token(s, token)
        return {
            "patient_first_name": p.first_name,
            "questions": [_question_dict(q) for q in _questions(s, p.org_id)],
            "already_submitted": bool(p.medical_history),
        }


def submit_medical_history(token: str, data: dict[str, Any]) -> dict:
    if not isinstance(data, dict) or not data:
        raise ValueError("Medical history answers are required.")
    with db_session() as s:
        p = _patient_from_form_token(s, token)
        required = [q for q in _questions(s, p.org_id) if q.required]
        missing = [q.question for q in required if data.get(q.id) in (None, "", [])]
        if missing:
            raise ValueError(f"Missing required answers: {'; '.join(missing)}")
        p.medical_history = {**data, "submitted_at": utcnow().isoformat()}
        logger.info("Medical history submitted for patient %s", p.id)
        return {"patient_id": p.id, "medical_history": p.medical_history}


def get_medical_history(org_id: str, patient_id: str) -> dict:
    with db_session() as s:
        p = _get_patient(s, org_id, patient_id)
        return {"patient_id": p.id, "medical_history": p.medical_history}


def update_medical_history(user: CurrentUser, patient_id: str, data: dict[str, Any], notes: str | None = None) -> dict:
    """Staff edit: every change is recorded in the audit trail."""
    if not isinstance(data, dict):
        raise ValueError("Medical history must be an object.")
    with db_session() as s:
        p = _get_patient(s, user.org_id, patient_id)
        previous = dict(p.medical_history or {})
        new = {**previous, **data}
        changes = _field_changes(previous, new)
        if not changes:
            return {"patient_id": p.id, "medical_history": p.medical_history, "changes": {}}

        p.medical_history = new
        s.add(MedicalHistoryAudit(
            org_id=user.org_id,
            patient_id=p.id,
            edited_by=user.id,
            previous_data=previous,
            new_data=new,
            changes=changes,
            notes=notes,
        ))
        return {"patient_id": p.id, "medical_history": new, "changes": changes}


def list_medical_history_audits(org_id: str, patient_id: str) -> list[dict]:
    with db_session() as s:
        _get_patient(s, org_id, patient_id)
        rows = s.scalars(
            select(MedicalHistoryAudit)
            .where(MedicalHistoryAudit.org_id == org_id, MedicalHistoryAudit.patient_id == patient_id)
            .order_by(MedicalHistoryAudit.created_at.desc())
        ).all()
        return [
            {
                "id": a.id,
                "edited_by": a.edited_by,
                "changes": a.changes,
                "previous_data": a.previous_data,
                "new_data": a.new_data,
                "notes": a.notes,
                "created_at": a.created_at.isoformat(),
            }
            for a in rows
        ]


# medical history questions
def _questions(s, org_id: str) -> list[MedicalHistoryQuestion]:
    return list(s.scalars(
        select(MedicalHistoryQuestion)
        .where(MedicalHistoryQuestion.org_id == org_id)
        .order_by(MedicalHistoryQuestion.sort_order, MedicalHistoryQuestion.question)
    ))


def _question_dict(q: MedicalHistoryQuestion) -> dict:
    return {
        "id": q.id,
        "question": q.question,
        "type": q.type.value,
        "options": q.options or [],
        "text_trigger_option": q.text_trigger_option,
        "text_field_label": q.text_field_label,
        "required": q.required,
        "order": q.sort_order,
    }


def _check_question(qtype: QuestionType, options: list[str] | None, trigger: str | None) -> None:
    if qtype in (QuestionType.RADIO, QuestionType.CHECKBOX, QuestionType.RADIO_WITH_TEXT) and not options:
        raise ValueError("Choice questions need at least one option.")
    if qtype == QuestionType.RADIO_WITH_TEXT and trigger not in (options or []):
        raise ValueError("The text trigger must be one of the options.")


def list_questions(org_id: str) -> list[dict]:
    with db_session() as s:
        return [_question_dict(q) for q in _questions(s, org_id)]


def create_question(
    org_id: str,
    question: str,
    qtype: QuestionType,
    options: list[str] | None = None,
    required: bool = False,
    order: int | None = None,
    text_trigger_option: str | None = None,
    text_field_label: str | None = None,
) -> dict:
    if not (question or "").strip():
        raise ValueError("Question text is required.")
    _check_question(qtype, options, text_trigger_option)
    with db_session() as s:
        if order is None:
            order = len(_questions(s, org_id))
        q = MedicalHistoryQuestion(
            org_id=org_id,
            question=question.strip(),
            type=qtype,
            options=options,
            required=required,
            sort_order=order,
            text_trigger_option=text_trigger_option,
            text_field_label=text_field_label,
        )
        s.add(q)
        s.flush()
        return _question_dict(q)


def update_question(org_id: str, question_id: str, **fields: Any) -> dict:
    with db_session() as s:
        q = s.execute(
            select(MedicalHistoryQuestion).where(
                MedicalHistoryQuestion.id == question_id, MedicalHistoryQuestion.org_id == org_id
            )
        ).scalar_one_or_none()
        if q is None:
            raise NotFoundError("Question")
        mapping = {"question": "question", "qtype": "type", "options": "options", "required": "required",
                   "order": "sort_order", "text_trigger_option": "text_trigger_option",
                   "text_field_label": "text_field_label"}
        for k, v in fields.items():
            if k in mapping and v is not None:
                setattr(q, mapping[k], v)
        _check_question(q.type, q.options, q.text_trigger_option)
        return _question_dict(q)


def delete_question(org_id: str, question_id: str) -> bool:
    with db_session() as s:
        q = s.execute(
            select(MedicalHistoryQuestion).where(
                MedicalHistoryQuestion.id == question_id, MedicalHistoryQuestion.org_id == org_id
            )
        ).scalar_one_or_none()
        if q is None:
            raise NotFoundError("Question")
        s.delete(q)
        return True


# =========================
# Treatment catalog
# =========================
def _category_dict(c: TreatmentCategory) -> dict:
    return {"id": c.id, "name": c.name, "icon": c.icon, "order": c.sort_order}


def _type_dict(t: TreatmentType) -> dict:
    variants = load_variants(t.price_variants)
    rng = price_range(variants)
    return {
        "id": t.id,
        "name": t.name,
        "category_id": t.category_id,
        "category_name": t.category.name if t.category else None,
        "duration_minutes": t.duration_minutes,
        "color": t.color,
        "price_variants": [v.to_dict() for v in variants],
        "price_range": [str(rng[0]), str(rng[1])] if rng else None,
    }


def _get_category(s, org_id: str, category_id: str) -> TreatmentCategory:
    c = s.execute(
        select(TreatmentCategory).where(TreatmentCategory.id == category_id, TreatmentCategory.org_id == org_id)
    ).scalar_one_or_none()
    if c is None:
        raise NotFoundError("Treatment category")
    return c


def list_categories(org_id: str) -> list[dict]:
    with db_session() as s:
        rows = s.scalars(
            select(TreatmentCategory)
            .where(TreatmentCategory.org_id == org_id)
            .order_by(TreatmentCategory.sort_order, TreatmentCategory.name)
        ).all()
        return [_category_dict(c) for c in rows]


def create_category(org_id: str, name: str, icon: str = "tooth", order: int = 0) -> dict:
    if not (name or "").strip():
        raise ValueError("Category name is required.")
    with db_session() as s:
        c = TreatmentCategory(org_id=org_id, name=name.strip(), icon=icon, sort_order=order)
        s.add(c)
        s.flush()
        return _category_dict(c)


def update_category(org_id: str, category_id: str, name: str | None = None, icon: str | None = None,
                    order: int | None = None) -> dict:
    with db_session() as s:
        c = _get_category(s, org_id, category_id)
        if name is not None:
            if not name.strip():
                raise ValueError("Category name is required.")
            c.name = name.strip()
        if icon is not None:
            c.icon = icon
        if order is not None:
            c.sort_order = order
        return _category_dict(c)


def delete_category(org_id: str, category_id: str) -> bool:
    with db_session() as s:
        c = _get_category(s, org_id, category_id)
        in_use = s.execute(
            select(TreatmentType.id)
            .where(TreatmentType.category_id == c.id, TreatmentType.deleted_at.is_(None))
            .limit(1)
        ).first()
        if in_use is not None:
            raise ValueError("Category still has treatment types.")
        s.delete(c)
        return True


def _checked_variants(raw: list[dict[str, Any]]) -> list[dict[str, Any]]:
    variants = validate_variants(load_variants(raw))
    for v in variants:
        bad = [t for t in v.tooth_numbers if not is_valid_tooth(t)]
        if bad:
            raise ValueError(f"Invalid tooth numbers in variant {v.name!r}: {', '.join(map(str, sorted(bad)))}")
    return [v.to_dict() for v in variants]


def list_treatment_types(org_id: str, category_id: str | None = None) -> list[dict]:
    with db_session() as s:
        q = select(TreatmentType).where(TreatmentType.org_id == org_id, TreatmentType.deleted_at.is_(None))
        if category_id:
            q = q.where(TreatmentType.category_id == category_id)
        return [_type_dict(t) for t in s.scalars(q.order_by(TreatmentType.name))]


def get_treatment_type(org_id: str, type_id: str) -> dict:
    with db_session() as s:
        return _type_dict(_get_treatment_type(s, org_id, type_id))


def create_treatment_type(
    org_id: str,
    name: str,
    price_variants: list[dict[str, Any]],
    category_id: str | None = None,
    duration_minutes: int = 30,
    color: str = "#3B82F6",
) -> dict:
    if not (name or "").strip():
        raise ValueError("Treatment type name is required.")
    if duration_minutes <= 0:
        raise ValueError("Duration must be positive.")
    variants = _checked_variants(price_variants)
    with db_session() as s:
        if category_id:
            _get_category(s, org_id, category_id)
        t = TreatmentType(
            org_id=org_id,
            name=name.strip(),
            category_id=category_id,
            duration_minutes=duration_minutes,
            color=color,
            price_variants=variants,
        )
        s.add(t)
        s.flush()
        return _type_dict(t)


def update_treatment_type(org_id: str, type_id: str, **fields: Any) -> dict:
    with db_session() as s:
        t = _get_treatment_type(s, org_id, type_id)
        if fields.get("name") is not None:
            if not fields["name"].strip():
                raise ValueError("Treatment type name is required.")
            t.name = fields["name"].strip()
        if fields.get("category_id") is not None:
            _get_category(s, org_id, fields["category_id"])
            t.category_id = fields["category_id"]
        if fields.get("duration_minutes") is not None:
            if fields["duration_minutes"] <= 0:
                raise ValueError("Duration must be positive.")
            t.duration_minutes = fields["duration_minutes"]
        if fields.get("color") is not None:
            t.color = fields["color"]
        if fields.get("price_variants") is not None:
            t.price_variants = _checked_variants(fields["price_variants"])
        return _type_dict(t)


def delete_treatment_type(org_id: str, type_id: str) -> bool:
    with db_session() as s:
        t = _get_treatment_type(s, org_id, type_id)
        t.deleted_at = utcnow()
        return True


def quote_for_type(
    org_id: str,
    type_id: str,
    tooth_numbers: list[int],
    discount_amount: Any = None,
    discount_percent: Any = None,
) -> dict:
    """Price preview for a tooth selection; teeth without a matching rule or default cost 0."""
    teeth = validate_tooth_list(tooth_numbers)
    with db_session() as s:
        t = _get_treatment_type(s, org_id, type_id)
        quote = quote_treatment(load_variants(t.price_variants), teeth, discount_amount, discount_percent)
        return {**quote.to_dict(), "tooth_label": format_tooth_numbers(teeth)}


# =========================
# Appointments
# =========================
def _appointment_dict(a: Appointment) -> dict:
    return {
        "id": a.id,
        "patient_id": a.patient_id,
        "patient_name": a.patient.full_name,
        "treatment_type_id": a.treatment_type_id,
        "treatment_type_name": a.treatment_type.name,
        "doctor_id": a.doctor_id,
        "start_at": a.start_at.isoformat(),
        "end_at": a.end_at.isoformat(),
        "status": a.status.value,
        "notes": a.notes,
        "reminder_sent_at": a.reminder_sent_at.isoformat() if a.reminder_sent_at else None,
    }


def _doctor_is_free(s, org_id: str, doctor_id: str, start: datetime, end: datetime,
                    exclude_id: str | None = None) -> bool:
    """No overlap [start, end) with the doctor's other appointments that are not cancelled."""
    q = (
        select(Appointment.id)
        .where(
            and_(
                Appointment.org_id == org_id,
                Appointment.doctor_id == doctor_id,
                Appointment.status != AppointmentStatus.CANCELLED,
                Appointment.deleted_at.is_(None),
                Appointment.start_at < end,
                Appointment.end_at > start,
            )
        )
        .limit(1)
    )
    if exclude_id:
        q = q.where(Appointment.id != exclude_id)
    return s.execute(q).first() is None


def _get_appointment(s, user: CurrentUser, appointment_id: str) -> Appointment:
    a = s.execute(
        select(Appointment).where(
            Appointment.id == appointment_id, Appointment.org_id == user.org_id, Appointment.deleted_at.is_(None)
        )
    ).scalar_one_or_none()
    if a is None:
        raise NotFoundError("Appointment")
    if sees_only_own(user.role) and a.doctor_id != user.id:
        raise NotFoundError("Appointment")
    return a


def _resolve_doctor(s, user: CurrentUser, doctor_id: str | None) -> str | None:
    if user.role == UserRole.DENTIST:
        if doctor_id and doctor_id != user.id:
            raise ForbiddenError("Dentists can only book their own appointments.")
        return user.id
    if not doctor_id:
        doctor_id = messaging.get_org_variable(s, user.org_id, OrganizationVariableKey.DEFAULT_DOCTOR_ID)
    if doctor_id:
        _active_dentist(s, user.org_id, doctor_id)
    return doctor_id


def get_default_doctor(org_id: str) -> str | None:
    with db_session() as s:
        return messaging.get_org_variable(s, org_id, OrganizationVariableKey.DEFAULT_DOCTOR_ID)


def set_default_doctor(org_id: str, doctor_id: str | None) -> str | None:
    """Doctor assigned to appointments booked without one (None clears it)."""
    with db_session() as s:
        if doctor_id:
            _active_dentist(s, org_id, doctor_id)
        messaging.set_org_variable(s, org_id, OrganizationVariableKey.DEFAULT_DOCTOR_ID, doctor_id or None)
        return doctor_id or None


def create_appointment(
    user: CurrentUser,
    patient_id: str,
    treatment_type_id: str,
    start_at: datetime,
    end_at: datetime | None = None,
    doctor_id: str | None = None,
    status: AppointmentStatus = AppointmentStatus.PENDING,
    notes: str | None = None,
) -> dict:
    """
    Use case: book an appointment.
    - duration from the treatment type when no end is given
    - the doctor must be free in [start, end)
    """
    with db_session() as s:
        _get_patient(s, user.org_id, patient_id)
        tt = _get_treatment_type(s, user.org_id, treatment_type_id)
        doctor_id = _resolve_doctor(s, user, doctor_id)

        start = _naive_utc(start_at)
        end = _naive_utc(end_at) if end_at else start + timedelta(minutes=tt.duration_minutes)
        if end <= start:
            raise ValueError("Appointment end must be after its start.")
        if doctor_id and status != AppointmentStatus.CANCELLED and not _doctor_is_free(s, user.org_id, doctor_id, start, end):
            raise ValueError("The doctor already has an appointment in this time slot.")

        a = Appointment(
            org_id=user.org_id,
            patient_id=patient_id,
            treatment_type_id=tt.id,
            doctor_id=doctor_id,
            start_at=start,
            end_at=end,
            status=status,
            notes=notes,
            created_by=user.id,
        )
        s.add(a)
        s.flush()
        logger.info("Appointment %s booked for %s", a.id, start.isoformat())
        return _appointment_dict(a)


def list_appointments(
    user: CurrentUser,
    start: datetime | None = None,
    end: datetime | None = None,
    patient_id: str | None = None,
    doctor_id: str | None = None,
    status: AppointmentStatus | None = None,
) -> list[dict]:
    with db_session() as s:
        q = select(Appointment).where(Appointment.org_id == user.org_id, Appointment.deleted_at.is_(None))
        if sees_only_own(user.role):
            q = q.where(Appointment.doctor_id == user.id)
        elif doctor_id:
            q = q.where(Appointment.doctor_id == doctor_id)
        if start:
            q = q.where(Appointment.start_at >= _naive_utc(start))
        if end:
            q = q.where(Appointment.start_at < _naive_utc(end))
        if patient_id:
            q = q.where(Appointment.patient_id == patient_id)
        if status is not None:
            q = q.where(Appointment.status == status)
        return [_appointment_dict(a) for a in s.scalars(q.order_by(Appointment.start_at.asc()))]


def daily_agenda(user: CurrentUser, day: date) -> list[dict]:
    start = datetime.combine(day, datetime.min.time())
    return list_appointments(user, start=start, end=start + timedelta(days=1))


def get_appointment(user: CurrentUser, appointment_id: str) -> dict:
    with db_session() as s:
        return _appointment_dict(_get_appointment(s, user, appointment_id))


def update_appointment(user: CurrentUser, appointment_id: str, **fields: Any) -> dict:
    with db_session() as s:
        a = _get_appointment(s, user, appointment_id)

        if fields.get("patient_id"):
            _get_patient(s, user.org_id, fields["patient_id"])
            a.patient_id = fields["patient_id"]
        if fields.get("treatment_type_id"):
            a.treatment_type_id = _get_treatment_type(s, user.org_id, fields["treatment_type_id"]).id
        if fields.get("doctor_id"):
            a.doctor_id = _resolve_doctor(s, user, fields["doctor_id"])

        moved = False
        if fields.get("start_at"):
            duration = a.end_at - a.start_at
            a.start_at = _naive_utc(fields["start_at"])
            a.end_at = _naive_utc(fields["end_at"]) if fields.get("end_at") else a.start_at + duration
            moved = True
        elif fields.get("end_at"):
            a.end_at = _naive_utc(fields["end_at"])
            moved = True
        if a.end_at <= a.start_at:
            raise ValueError("Appointment end must be after its start.")
        if moved:
            a.reminder_sent_at = None

        if fields.get("status") is not None:
            a.status = fields["status"]
        if fields.get("notes") is not None:
            a.notes = fields["notes"]

        if a.doctor_id and a.status != AppointmentStatus.CANCELLED and not _doctor_is_free(
            s, user.org_id, a.doctor_id, a.start_at, a.end_at, exclude_id=a.id
        ):
            raise ValueError("The doctor already has an appointment in this time slot.")
        return _appointment_dict(a)


def delete_appointment(user: CurrentUser, appointment_id: str) -> bool:
    with db_session() as s:
        a = _get_appointment(s, user, appointment_id)
        linked = s.execute(
            select(Treatment.id)
            .where(Treatment.appointment_id == a.id, Treatment.deleted_at.is_(None),
                   Treatment.status == TreatmentStatus.COMPLETED)
            .limit(1)
        ).first()
        if linked is not None:
            raise ValueError("Appointment has completed treatments.")
        a.deleted_at = utcnow()
        return True


# =========================
# Treatments
# =========================
def _treatment_doctor_id(t: Treatment) -> str | None:
    if t.appointment is not None and t.appointment.doctor_id:
        return t.appointment.doctor_id
    return t.created_by


def _treatment_dict(t: Treatment) -> dict:
    return {
        "id": t.id,
        "patient_id": t.patient_id,
        "patient_name": t.patient.full_name,
        "treatment_type_id": t.treatment_type_id,
        "treatment_type_name": t.treatment_type.name,
        "appointment_id": t.appointment_id,
        "doctor_id": _treatment_doctor_id(t),
        "tooth_numbers": list(t.tooth_numbers or []),
        "tooth_label": format_tooth_numbers(t.tooth_numbers or []),
        "total_price": str(t.total_price),
        "discount": str(t.discount),
        "amount_due": str(t.amount_due),
        "status": t.status.value,
        "date": t.date.isoformat(),
        "notes": t.notes,
    }


def _own_treatments(user: CurrentUser):
    """Filter: treatments of the dentist's appointments, or created by them without an appointment."""
    return or_(
        Treatment.appointment_id.in_(select(Appointment.id).where(Appointment.doctor_id == user.id)),
        and_(Treatment.appointment_id.is_(None), Treatment.created_by == user.id),
    )


def _get_treatment(s, user: CurrentUser, treatment_id: str) -> Treatment:
    q = select(Treatment).where(
        Treatment.id == treatment_id, Treatment.org_id == user.org_id, Treatment.deleted_at.is_(None)
    )
    if sees_only_own(user.role):
        q = q.where(_own_treatments(user))
    t = s.execute(q).scalar_one_or_none()
    if t is None:
        raise NotFoundError("Treatment")
    return t


def _check_status_link(status: TreatmentStatus, appointment_id: str | None) -> None:
    if status != TreatmentStatus.PLANNED and not appointment_id:
        raise ValueError("Only planned treatments can exist without an appointment.")


def _credit_commission(s, t: Treatment) -> None:
    """On completion the doctor's wallet gets `percentage` of the amount due."""
    doctor_id = _treatment_doctor_id(t)
    if not doctor_id:
        return
    m = s.execute(
        select(UserOrganization).where(
            UserOrganization.org_id == t.org_id, UserOrganization.user_id == doctor_id
        )
    ).scalar_one_or_none()
    if m is None or m.role != UserRole.DENTIST or not m.percentage:
        return
    commission = to_money(t.amount_due * Decimal(m.percentage) / Decimal(100))
    m.wallet = to_money((m.wallet or ZERO) + commission)
    logger.info("Credited %s to doctor %s for treatment %s", commission, doctor_id, t.id)


def _price(tt: TreatmentType, teeth: list[int], discount: Any, discount_percent: Any):
    # strict: a type with no rule for a tooth is a configuration error
    return quote_treatment(load_variants(tt.price_variants), teeth, discount, discount_percent, strict=True)


def create_treatment(
    user: CurrentUser,
    patient_id: str,
    treatment_type_id: str,
    tooth_numbers: list[int],
    discount: Any = None,
    discount_percent: Any = None,
    status: TreatmentStatus = TreatmentStatus.PLANNED,
    appointment_id: str | None = None,
    treatment_date: datetime | None = None,
    notes: str | None = None,
) -> dict:
    """
    Use case: record a treatment.
    - the total is always recomputed from the treatment type's price variants
    - a completed treatment credits the doctor's commission
    """
    teeth = validate_tooth_list(tooth_numbers)
    _check_status_link(status, appointment_id)

    with db_session() as s:
        patient = _get_patient(s, user.org_id, patient_id)
        tt = _get_treatment_type(s, user.org_id, treatment_type_id)
        if appointment_id:
            app = _get_appointment(s, user, appointment_id)
            if app.patient_id != patient.id:
                raise ValueError("The appointment belongs to another patient.")

        quote = _price(tt, teeth, discount, discount_percent)
        if not quote.payable:
            raise ValueError("A treatment needs at least one tooth.")

        t = Treatment(
            org_id=user.org_id,
            patient_id=patient.id,
            treatment_type_id=tt.id,
            appointment_id=appointment_id,
            tooth_numbers=teeth,
            total_price=quote.total_price,
            discount=quote.discount,
            status=status,
            date=_naive_utc(treatment_date) if treatment_date else utcnow(),
            notes=notes,
            created_by=user.id,
        )
        s.add(t)
        s.flush()
        if status == TreatmentStatus.COMPLETED:
            _credit_commission(s, t)
        return _treatment_dict(t)


def list_treatments(
    user: CurrentUser,
    patient_id: str | None = None,
    status: TreatmentStatus | None = None,
    appointment_id: str | None = None,
) -> list[dict]:
    with db_session() as s:
        q = select(Treatment).where(Treatment.org_id == user.org_id, Treatment.deleted_at.is_(None))
        if sees_only_own(user.role):
            q = q.where(_own_treatments(user))
        if patient_id:
            q = q.where(Treatment.patient_id == patient_id)
        if status is not None:
            q = q.where(Treatment.status == status)
        if appointment_id:
            q = q.where(Treatment.appointment_id == appointment_id)
        return [_treatment_dict(t) for t in s.scalars(q.order_by(Treatment.date.desc()))]


def get_treatment(user: CurrentUser, treatment_id: str) -> dict:
    with db_session() as s:
        return _treatment_dict(_get_treatment(s, user, treatment_id))


def update_treatment(user: CurrentUser, treatment_id: str, **fields: Any) -> dict:
    with db_session() as s:
        t = _get_treatment(s, user, treatment_id)
        if t.status == TreatmentStatus.COMPLETED:
            raise ValueError("Completed treatments cannot be modified.")

        if fields.get("treatment_type_id"):
            t.treatment_type = _get_treatment_type(s, user.org_id, fields["treatment_type_id"])
        if fields.get("appointment_id"):
            app = _get_appointment(s, user, fields["appointment_id"])
            if app.patient_id != t.patient_id:
                raise ValueError("The appointment belongs to another patient.")
            t.appointment = app
            t.appointment_id = app.id
        teeth = validate_tooth_list(fields["tooth_numbers"]) if fields.get("tooth_numbers") is not None \
            else list(t.tooth_numbers)

        discount = fields.get("discount")
        discount_percent = fields.get("discount_percent")
        if discount is None and discount_percent is None:
            discount = t.discount
        quote = _price(t.treatment_type, teeth, discount, discount_percent)
        if not quote.payable:
            raise ValueError("A treatment needs at least one tooth.")
        t.tooth_numbers = teeth
        t.total_price = quote.total_price
        t.discount = quote.discount

        if fields.get("treatment_date") is not None:
            t.date = _naive_utc(fields["treatment_date"])
        if fields.get("notes") is not None:
            t.notes = fields["notes"]

        new_status = fields.get("status")
        if new_status is not None and new_status != t.status:
            _check_status_link(new_status, t.appointment_id)
            t.status = new_status
            s.flush()
            if new_status == TreatmentStatus.COMPLETED:
                _credit_commission(s, t)
        return _treatment_dict(t)


def delete_treatment(user: CurrentUser, treatment_id: str) -> bool:
    with db_session() as s:
        t = _get_treatment(s, user, treatment_id)
        if t.status == TreatmentStatus.COMPLETED:
            raise ValueError("Completed treatments cannot be deleted.")
        t.deleted_at = utcnow()
        return True


def apply_bulk_discount(user: CurrentUser, patient_id: str, treatment_ids: list[str], discount_percent: Any) -> list[dict]:
    """Same percentage discount on several open treatments of one patient."""
    if not treatment_ids:
        raise ValueError("Select at least one treatment.")
    with db_session() as s:
        _get_patient(s, user.org_id, patient_id)
        out = []
        for tid in dict.fromkeys(treatment_ids):
            t = _get_treatment(s, user, tid)
            if t.patient_id != patient_id:
                raise ValueError("Treatment belongs to another patient.")
            if t.status == TreatmentStatus.COMPLETED:
                raise ValueError("Completed treatments cannot be modified.")
            quote = quote_treatment(
                load_variants(t.treatment_type.price_variants), list(t.tooth_numbers),
                discount_percent=discount_percent, strict=True,
            )
            t.total_price = quote.total_price
            t.discount = quote.discount
            out.append(_treatment_dict(t))
        return out


def patient_treatment_stats(user: CurrentUser, patient_id: str) -> dict:
    with db_session() as s:
        _get_patient(s, user.org_id, patient_id)
        q = select(Treatment).where(
            Treatment.org_id == user.org_id, Treatment.patient_id == patient_id, Treatment.deleted_at.is_(None)
        )
        if sees_only_own(user.role):
            q = q.where(_own_treatments(user))
        rows = list(s.scalars(q))

        by_status = {st.value: 0 for st in TreatmentStatus}
        total = discount = ZERO
        for t in rows:
            by_status[t.status.value] += 1
            if t.status != TreatmentStatus.CANCELLED:
                total += t.total_price
                discount += t.discount
        return {
            "count": len(rows),
            "by_status": by_status,
            "total_price": str(total),
            "total_discount": str(discount),
            "amount_due": str(max(ZERO, total - discount)),
        }
