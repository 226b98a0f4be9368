"""
Money side of the clinic: payments, patient balance, expenses,
doctor payments and the dashboard figures.
"""
from __future__ import annotations

import logging
from datetime import date, datetime, timedelta
from decimal import Decimal
from typing import Any

from sqlalchemy import func, select

from . import messaging
from .auth_models import UserOrganization, UserRole
from .auth_service import CurrentUser
from .db import db_session, utcnow
from .errors import NotFoundError
from .models import (
    Appointment,
    AppointmentStatus,
    Attachment,
    Expense,
    ExpenseType,
    Patient,
    Payment,
    PaymentMethod,
    Treatment,
    TreatmentStatus,
)
from .permissions import sees_only_own
from .pricing import ZERO, to_money

logger = logging.getLogger(__name__)

# treatments that count towards what the patient owes
BILLABLE_STATUSES = (TreatmentStatus.IN_PROGRESS, TreatmentStatus.COMPLETED)


def _get_patient(s, org_id: str, patient_id: str) -> Patient:
    p = s.execute(
        select(Patient).where(Patient.id == patient_id, Patient.org_id == org_id, Patient.deleted_at.is_(None))
    ).scalar_one_or_none()
    if p is None:
        raise NotFoundError("Patient")
    return p


def _positive_amount(amount: Any) -> Decimal:
    value = to_money(amount)
    if value <= ZERO:
        raise ValueError("Amount must be greater than zero.")
    return value


# =========================
# Balance
# =========================
def _balance(s, org_id: str, patient_id: str) -> dict:
    billed = s.execute(
        select(func.coalesce(func.sum(Treatment.total_price - Treatment.discount), 0)).where(
            Treatment.org_id == org_id,
            Treatment.patient_id == patient_id,
            Treatment.deleted_at.is_(None),
            Treatment.status.in_(BILLABLE_STATUSES),
        )
    ).scalar_one()
    paid = s.execute(
        select(func.coalesce(func.sum(Payment.amount), 0)).where(
            Payment.org_id == org_id, Payment.patient_id == patient_id, Payment.deleted_at.is_(None)
        )
    ).scalar_one()
    billed, paid = to_money(billed), to_money(paid)
    return {"total_billed": billed, "total_paid": paid, "balance": billed - paid}


def patient_balance(org_id: str, patient_id: str) -> dict:
    """Billed (in-progress and completed treatments, net of discount) minus paid. Negative means credit."""
    with db_session() as s:
        _get_patient(s, org_id, patient_id)
        return {k: str(v) for k, v in _balance(s, org_id, patient_id).items()}


def send_overdue_reminder(org_id: str, patient_id: str) -> dict | None:
    with db_session() as s:
        p = _get_patient(s, org_id, patient_id)
        due = _balance(s, org_id, patient_id)["balance"]
        if due <= ZERO:
            raise ValueError("Patient has no outstanding balance.")
        m = messaging.send_payment_overdue(s, org_id, p, due)
        return messaging.message_dict(m) if m else None


# =========================
# Payments
# =========================
def _payment_dict(p: Payment) -> dict:
    return {
        "id": p.id,
        "patient_id": p.patient_id,
        "patient_name": p.patient.full_name,
        "amount": str(p.amount),
        "date": p.date.isoformat(),
        "payment_method": p.payment_method.value,
        "notes": p.notes,
        "created_at": p.created_at.isoformat(),
    }


def _get_payment(s, org_id: str, payment_id: str) -> Payment:
    p = s.execute(
        select(Payment).where(Payment.id == payment_id, Payment.org_id == org_id, Payment.deleted_at.is_(None))
    ).scalar_one_or_none()
    if p is None:
        raise NotFoundError("Payment")
    return p


def create_payment(
    user: CurrentUser,
    patient_id: str,
    amount: Any,
    payment_method: PaymentMethod,
    payment_date: date | None = None,
    notes: str | None = None,
    send_receipt: bool = True,
) -> dict:
    """
    Use case: record a payment.
    The receipt message is best effort: a failed send is stored on the message, the payment stays.
    """
    value = _positive_amount(amount)
    with db_session() as s:
        patient = _get_patient(s, user.org_id, patient_id)
        p = Payment(
            org_id=user.org_id,
            patient_id=patient.id,
            amount=value,
            date=payment_date or utcnow().date(),
            payment_method=payment_method,
            notes=notes,
            created_by=user.id,
        )
        s.add(p)
        s.flush()
        logger.info("Payment %s of %s recorded for patient %s", p.id, value, patient.id)

        out = _payment_dict(p)
        if send_receipt:
            remaining = _balance(s, user.org_id, patient.id)["balance"]
            m = messaging.send_payment_receipt(s, user.org_id, patient, p.id, value, remaining)
            out["receipt"] = messaging.message_dict(m) if m else None
        return out


def list_payments(
    org_id: str,
    patient_id: str | None = None,
    start: date | None = None,
    end: date | None = None,
) -> list[dict]:
    with db_session() as s:
        q = select(Payment).where(Payment.org_id == org_id, Payment.deleted_at.is_(None))
        if patient_id:
            q = q.where(Payment.patient_id == patient_id)
        if start:
            q = q.where(Payment.date >= start)
        if end:
            q = q.where(Payment.date <= end)
        return [_payment_dict(p) for p in s.scalars(q.order_by(Payment.date.desc(), Payment.created_at.desc()))]


def get_payment(org_id: str, payment_id: str) -> dict:
    with db_session() as s:
        return _payment_dict(_get_payment(s, org_id, payment_id))


def update_payment(org_id: str, payment_id: str, amount: Any = None, payment_method: PaymentMethod | None = None,
                   payment_date: date | None = None, notes: str | None = None) -> dict:
    with db_session() as s:
        p = _get_payment(s, org_id, payment_id)
        if amount is not None:
            p.amount = _positive_amount(amount)
        if payment_method is not None:
            p.payment_method = payment_method
        if payment_date is not None:
            p.date = payment_date
        if notes is not None:
            p.notes = notes
        return _payment_dict(p)


def delete_payment(org_id: str, payment_id: str) -> bool:
    with db_session() as s:
        p = _get_payment(s, org_id, payment_id)
        p.deleted_at = utcnow()
        logger.info("Payment %s deleted", p.id)
        return True


def send_receipt(org_id: str, payment_id: str) -> dict | None:
    """Send (again) the receipt of an existing payment, with the current balance."""
    with db_session() as s:
        p = _get_payment(s, org_id, payment_id)
        remaining = _balance(s, org_id, p.patient_id)["balance"]
        m = messaging.send_payment_receipt(s, org_id, p.patient, p.id, p.amount, remaining)
        return messaging.message_dict(m) if m else None


# =========================
# Expenses
# =========================
def _expense_dict(e: Expense) -> dict:
    return {
        "id": e.id,
        "name": e.name,
        "amount": str(e.amount),
        "date": e.date.isoformat(),
        "expense_type": e.expense_type.value,
        "notes": e.notes,
        "doctor_id": e.doctor_id,
        "invoice_id": e.invoice_id,
    }


def _get_expense(s, org_id: str, expense_id: str) -> Expense:
    e = s.execute(
        select(Expense).where(Expense.id == expense_id, Expense.org_id == org_id, Expense.deleted_at.is_(None))
    ).scalar_one_or_none()
    if e is None:
        raise NotFoundError("Expense")
    return e


def _check_invoice(s, org_id: str, invoice_id: str | None) -> None:
    if not invoice_id:
        return
    found = s.execute(
        select(Attachment.id).where(Attachment.id == invoice_id, Attachment.org_id == org_id)
    ).first()
    if found is None:
        raise NotFoundError("Invoice")


def create_expense(
    user: CurrentUser,
    name: str,
    amount: Any,
    expense_type: ExpenseType = ExpenseType.OTHER,
    expense_date: date | None = None,
    notes: str | None = None,
    invoice_id: str | None = None,
) -> dict:
    if not (name or "").strip():
        raise ValueError("Expense name is required.")
    if expense_type == ExpenseType.DOCTOR_PAYMENT:
        raise ValueError("Doctor payments are recorded through the doctor payment operation.")
    value = _positive_amount(amount)
    with db_session() as s:
        _check_invoice(s, user.org_id, invoice_id)
        e = Expense(
            org_id=user.org_id,
            name=name.strip(),
            amount=value,
            date=expense_date or utcnow().date(),
            expense_type=expense_type,
            notes=notes,
            invoice_id=invoice_id,
            created_by=user.id,
        )
        s.add(e)
        s.flush()
        return _expense_dict(e)


def list_expenses(org_id: str, start: date | None = None, end: date | None = None,
                  expense_type: ExpenseType | None = None) -> list[dict]:
    with db_session() as s:
        q = select(Expense).where(Expense.org_id == org_id, Expense.deleted_at.is_(None))
        if start:
            q = q.where(Expense.date >= start)
        if end:
            q = q.where(Expense.date <= end)
        if expense_type is not None:
            q = q.where(Expense.expense_type == expense_type)
        return [_expense_dict(e) for e in s.scalars(q.order_by(Expense.date.desc()))]


def get_expense(org_id: str, expense_id: str) -> dict:
    with db_session() as s:
        return _expense_dict(_get_expense(s, org_id, expense_id))


def update_expense(org_id: str, expense_id: str, **fields: Any) -> dict:
    with db_session() as s:
        e = _get_expense(s, org_id, expense_id)
        if e.expense_type == ExpenseType.DOCTOR_PAYMENT and fields.get("amount") is not None:
            raise ValueError("The amount of a doctor payment cannot be changed.")
        if fields.get("name") is not None:
            if not fields["name"].strip():
                raise ValueError("Expense name is required.")
            e.name = fields["name"].strip()
        if fields.get("amount") is not None:
            e.amount = _positive_amount(fields["amount"])
        if fields.get("expense_date") is not None:
            e.date = fields["expense_date"]
        if fields.get("notes") is not None:
            e.notes = fields["notes"]
        if fields.get("invoice_id") is not None:
            _check_invoice(s, org_id, fields["invoice_id"])
            e.invoice_id = fields["invoice_id"]
        return _expense_dict(e)


def _dentist_membership(s, org_id: str, doctor_id: str) -> UserOrganization:
    m = s.execute(
        select(UserOrganization).where(UserOrganization.org_id == org_id, UserOrganization.user_id == doctor_id)
    ).scalar_one_or_none()
    if m is None or m.role != UserRole.DENTIST:
        raise NotFoundError("Doctor")
    return m


def delete_expense(org_id: str, expense_id: str) -> bool:
    """Deleting a doctor payment gives the amount back to the doctor's wallet."""
    with db_session() as s:
        e = _get_expense(s, org_id, expense_id)
        if e.expense_type == ExpenseType.DOCTOR_PAYMENT and e.doctor_id:
            m = _dentist_membership(s, org_id, e.doctor_id)
            m.wallet = to_money((m.wallet or ZERO) + e.amount)
        e.deleted_at = utcnow()
        return True


def pay_doctor(user: CurrentUser, doctor_id: str, amount: Any, payment_date: date | None = None,
               notes: str | None = None) -> dict:
    """
    Use case: pay a dentist from the commission wallet.
    - amount cannot exceed the wallet
    - recorded as a doctor_payment expense
    """
    value = _positive_amount(amount)
    with db_session() as s:
        m = _dentist_membership(s, user.org_id, doctor_id)
        wallet = to_money(m.wallet or ZERO)
        if value > wallet:
            raise ValueError(f"Amount exceeds the doctor's wallet ({wallet}).")
        m.wallet = wallet - value
        e = Expense(
            org_id=user.org_id,
            name=f"Doctor payment - {m.user.name}",
            amount=value,
            date=payment_date or utcnow().date(),
            expense_type=ExpenseType.DOCTOR_PAYMENT,
            notes=notes,
            doctor_id=doctor_id,
            created_by=user.id,
        )
        s.add(e)
        s.flush()
        logger.info("Doctor %s paid %s", doctor_id, value)
        return {**_expense_dict(e), "wallet": str(m.wallet)}


# =========================
# Dashboard
# =========================
def dashboard(user: CurrentUser, day: date | None = None) -> dict:
    """
    Figures for one day. Secretaries get the revenue fields zeroed;
    dentists see their own appointments and the amount of their own completed treatments.
    """
    day = day or utcnow().date()
    start = datetime.combine(day, datetime.min.time())
    end = start + timedelta(days=1)

    with db_session() as s:
        apps = select(func.count()).select_from(Appointment).where(
            Appointment.org_id == user.org_id,
            Appointment.deleted_at.is_(None),
            Appointment.status != AppointmentStatus.CANCELLED,
            Appointment.start_at >= start,
            Appointment.start_at < end,
        )
        if sees_only_own(user.role):
            apps = apps.where(Appointment.doctor_id == user.id)
        todays_appointments = s.execute(apps).scalar_one()

        total_patients = s.execute(
            select(func.count()).select_from(Patient).where(Patient.org_id == user.org_id, Patient.deleted_at.is_(None))
        ).scalar_one()

        out = {
            "date": day.isoformat(),
            "todays_appointments": todays_appointments,
            "total_patients": total_patients,
            "pending_payments": "0.00",
            "daily_revenue": "0.00",
            "daily_expenses": "0.00",
            "daily_net_income": "0.00",
        }
        if user.role == UserRole.SECRETARY:
            return out

        if user.role == UserRole.DENTIST:
            own = s.execute(
                select(func.coalesce(func.sum(Treatment.total_price - Treatment.discount), 0))
                .join(Appointment, Appointment.id == Treatment.appointment_id)
                .where(
                    Treatment.org_id == user.org_id,
                    Treatment.deleted_at.is_(None),
                    Treatment.status == TreatmentStatus.COMPLETED,
                    Appointment.doctor_id == user.id,
                    Treatment.date >= start,
                    Treatment.date < end,
                )
            ).scalar_one()
            out["daily_revenue"] = out["daily_net_income"] = str(to_money(own))
            return out

        billed = s.execute(
            select(func.coalesce(func.sum(Treatment.total_price - Treatment.discount), 0)).where(
                Treatment.org_id == user.org_id,
                Treatment.deleted_at.is_(None),
                Treatment.status.in_(BILLABLE_STATUSES),
            )
        ).scalar_one()
        paid_total = s.execute(
            select(func.coalesce(func.sum(Payment.amount), 0)).where(
                Payment.org_id == user.org_id, Payment.deleted_at.is_(None)
            )
        ).scalar_one()
        revenue = s.execute(
            select(func.coalesce(func.sum(Payment.amount), 0)).where(
                Payment.org_id == user.org_id, Payment.deleted_at.is_(None), Payment.date == day
            )
        ).scalar_one()
        expenses = s.execute(
            select(func.coalesce(func.sum(Expense.amount), 0)).where(
                Expense.org_id == user.org_id, Expense.deleted_at.is_(None), Expense.date == day
            )
        ).scalar_one()

        revenue, expenses = to_money(revenue), to_money(expenses)
        out.update({
            "pending_payments": str(max(ZERO, to_money(billed) - to_money(paid_total))),
            "daily_revenue": str(revenue),
            "daily_expenses": str(expenses),
            "daily_net_income": str(revenue - expenses),
        })
        return out
