from __future__ import annotations

import enum
import datetime as dt
from datetime import datetime
from decimal import Decimal
from typing import Any

from sqlalchemy import JSON, Boolean, Date, DateTime, Enum, ForeignKey, Index, Integer, Numeric, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .db import Base, new_uuid, utcnow


class FollowUpStatus(enum.Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class AppointmentStatus(enum.Enum):
    CONFIRMED = "confirmed"
    PENDING = "pending"
    CANCELLED = "cancelled"


class TreatmentStatus(enum.Enum):
    PLANNED = "planned"
    IN_PROGRESS = "in-progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class PaymentMethod(enum.Enum):
    CASH = "cash"
    CARD = "card"
    TRANSFER = "transfer"
    CHECK = "check"
    OTHER = "other"


class ExpenseType(enum.Enum):
    LAB = "lab"
    EQUIPMENT = "equipment"
    UTILITIES = "utilities"
    RENT = "rent"
    SALARY = "salary"
    DOCTOR_PAYMENT = "doctor_payment"
    OTHER = "other"


class MessageType(enum.Enum):
    MEDICAL_HISTORY = "medical_history"
    PAYMENT_RECEIPT = "payment_receipt"
    APPOINTMENT_REMINDER = "appointment_reminder"
    FOLLOW_UP = "follow_up"
    PAYMENT_OVERDUE = "payment_overdue"


class MessageStatus(enum.Enum):
    PENDING = "pending"
    SENT = "sent"
    FAILED = "failed"


class QuestionType(enum.Enum):
    TEXT = "text"
    RADIO = "radio"
    CHECKBOX = "checkbox"
    TEXTAREA = "textarea"
    RADIO_WITH_TEXT = "radio_with_text"  # radio with a conditional free-text field


class OrganizationVariableKey(enum.Enum):
    WAHA_API_URL = "waha.apiUrl"
    WAHA_API_KEY = "waha.apiKey"
    DEFAULT_DOCTOR_ID = "appointments.defaultDoctorId"


class Patient(Base):
    __tablename__ = "patients"
    __table_args__ = (
        Index("ix_patients_mobile_org", "mobile_number", "org_id"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_uuid)
    org_id: Mapped[str] = mapped_column(ForeignKey("organizations.id"), nullable=False, index=True)

    first_name: Mapped[str] = mapped_column(String(255), nullable=False)
    last_name: Mapped[str] = mapped_column(String(255), nullable=False)
    mobile_number: Mapped[str] = mapped_column(String(50), nullable=False)
    email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    date_of_birth: Mapped[dt.date | None] = mapped_column(Date, nullable=True)
    address: Mapped[str | None] = mapped_column(Text, nullable=True)
    emergency_contact: Mapped[str | None] = mapped_column(String(50), nullable=True)
    blood_type: Mapped[str | None] = mapped_column(String(10), nullable=True)
    medical_history: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)

    follow_up_date: Mapped[dt.date | None] = mapped_column(Date, nullable=True)
    follow_up_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    follow_up_status: Mapped[FollowUpStatus] = mapped_column(
        Enum(FollowUpStatus), default=FollowUpStatus.PENDING, nullable=False
    )

    created_by: Mapped[str | None] = mapped_column(String(36), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)
    deleted_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    appointments: Mapped[list["Appointment"]] = relationship(back_populates="patient")
    treatments: Mapped[list["Treatment"]] = relationship(back_populates="patient")
    payments: Mapped[list["Payment"]] = relationship(back_populates="patient")

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}"

    def __repr__(self) -> str:
        return f"Patient({self.first_name} {self.last_name})"


class TreatmentCategory(Base):
    __tablename__ = "treatment_categories"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_uuid)
    org_id: Mapped[str] = mapped_column(ForeignKey("organizations.id"), nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    icon: Mapped[str] = mapped_column(String(32), default="tooth", nullable=False)
    sort_order: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    types: Mapped[list["TreatmentType"]] = relationship(back_populates="category")


class TreatmentType(Base):
    """
    price_variants: JSON list of
    {"name", "price", "currency", "tooth_numbers": [..], "is_default"}
    (see pricing.PriceVariant).
    """
    __tablename__ = "treatment_types"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_uuid)
    org_id: Mapped[str] = mapped_column(ForeignKey("organizations.id"), nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    category_id: Mapped[str | None] = mapped_column(ForeignKey("treatment_categories.id"), nullable=True)
    duration_minutes: Mapped[int] = mapped_column(Integer, default=30, nullable=False)
    color: Mapped[str] = mapped_column(String(7), default="#3B82F6", nullable=False)
    price_variants: Mapped[list[dict[str, Any]]] = mapped_column(JSON, default=list, nullable=False)
    deleted_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    category: Mapped["TreatmentCategory"] = relationship(back_populates="types")


class Appointment(Base):
    __tablename__ = "appointments"
    __table_args__ = (
        Index("ix_appointments_start_org", "start_at", "org_id"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_uuid)
    org_id: Mapped[str] = mapped_column(ForeignKey("organizations.id"), nullable=False, index=True)

    patient_id: Mapped[str] = mapped_column(ForeignKey("patients.id"), nullable=False)
    treatment_type_id: Mapped[str] = mapped_column(ForeignKey("treatment_types.id"), nullable=False)
    doctor_id: Mapped[str | None] = mapped_column(ForeignKey("users.id"), nullable=True)

    start_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    end_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)

    status: Mapped[AppointmentStatus] = mapped_column(
        Enum(AppointmentStatus), default=AppointmentStatus.PENDING, nullable=False
    )
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    reminder_sent_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    created_by: Mapped[str | None] = mapped_column(String(36), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    deleted_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    patient: Mapped["Patient"] = relationship(back_populates="appointments")
    treatment_type: Mapped["TreatmentType"] = relationship()
    treatments: Mapped[list["Treatment"]] = relationship(back_populates="appointment")


class Treatment(Base):
    __tablename__ = "treatments"
    __table_args__ = (
        Index("ix_treatments_patient_org", "patient_id", "org_id"),
        Index("ix_treatments_status_org", "status", "org_id"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_uuid)
    org_id: Mapped[str] = mapped_column(ForeignKey("organizations.id"), nullable=False, index=True)

    patient_id: Mapped[str] = mapped_column(ForeignKey("patients.id"), nullable=False)
    treatment_type_id: Mapped[str] = mapped_column(ForeignKey("treatment_types.id"), nullable=False)
    appointment_id: Mapped[str | None] = mapped_column(ForeignKey("appointments.id"), nullable=True)

    tooth_numbers: Mapped[list[int]] = mapped_column(JSON, default=list, nullable=False)
    total_price: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    discount: Mapped[Decimal] = mapped_column(Numeric(10, 2), default=Decimal("0.00"), nullable=False)
    status: Mapped[TreatmentStatus] = mapped_column(
        Enum(TreatmentStatus, values_callable=lambda e: [m.value for m in e]),
        default=TreatmentStatus.PLANNED,
        nullable=False,
    )
    date: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_by: Mapped[str | None] = mapped_column(String(36), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)
    deleted_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    patient: Mapped["Patient"] = relationship(back_populates="treatments")
    treatment_type: Mapped["TreatmentType"] = relationship()
    appointment: Mapped["Appointment"] = relationship(back_populates="treatments")

    @property
    def amount_due(self) -> Decimal:
        return max(Decimal("0.00"), self.total_price - self.discount)


class Payment(Base):
    __tablename__ = "payments"
    __table_args__ = (
        Index("ix_payments_patient_org", "patient_id", "org_id"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_uuid)
    org_id: Mapped[str] = mapped_column(ForeignKey("organizations.id"), nullable=False, index=True)
    patient_id: Mapped[str] = mapped_column(ForeignKey("patients.id"), nullable=False)

    amount: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    date: Mapped[dt.date] = mapped_column(Date, nullable=False)
    payment_method: Mapped[PaymentMethod] = mapped_column(Enum(PaymentMethod), nullable=False)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_by: Mapped[str | None] = mapped_column(String(36), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    deleted_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    patient: Mapped["Patient"] = relationship(back_populates="payments")


class Expense(Base):
    __tablename__ = "expenses"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_uuid)
    org_id: Mapped[str] = mapped_column(ForeignKey("organizations.id"), nullable=False, index=True)

    name: Mapped[str] = mapped_column(String(255), nullable=False)
    amount: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    date: Mapped[dt.date] = mapped_column(Date, nullable=False)
    expense_type: Mapped[ExpenseType] = mapped_column(Enum(ExpenseType), default=ExpenseType.OTHER, nullable=False)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    doctor_id: Mapped[str | None] = mapped_column(ForeignKey("users.id"), nullable=True)
    invoice_id: Mapped[str | None] = mapped_column(ForeignKey("attachments.id"), nullable=True)

    created_by: Mapped[str | None] = mapped_column(String(36), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    deleted_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)


class Message(Base):
    """
    Outbound patient message.
    status: pending -> sent | failed; failed -> sent | failed on resend (same row).
    """
    __tablename__ = "messages"
    __table_args__ = (
        Index("ix_messages_patient_org", "patient_id", "org_id"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_uuid)
    org_id: Mapped[str] = mapped_column(ForeignKey("organizations.id"), nullable=False, index=True)
    patient_id: Mapped[str] = mapped_column(ForeignKey("patients.id"), nullable=False)

    type: Mapped[MessageType] = mapped_column(Enum(MessageType), nullable=False)
    content: Mapped[str] = mapped_column(Text, nullable=False)
    status: Mapped[MessageStatus] = mapped_column(Enum(MessageStatus), default=MessageStatus.PENDING, nullable=False)
    attempts: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    sent_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)
    # "metadata" is reserved on declarative classes
    meta: Mapped[dict[str, Any] | None] = mapped_column("metadata", JSON, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)

    patient: Mapped["Patient"] = relationship()


class MedicalHistoryQuestion(Base):
    __tablename__ = "medical_history_questions"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_uuid)
    org_id: Mapped[str] = mapped_column(ForeignKey("organizations.id"), nullable=False, index=True)
    question: Mapped[str] = mapped_column(Text, nullable=False)
    type: Mapped[QuestionType] = mapped_column(Enum(QuestionType), nullable=False)
    options: Mapped[list[str] | None] = mapped_column(JSON, nullable=True)
    text_trigger_option: Mapped[str | None] = mapped_column(Text, nullable=True)
    text_field_label: Mapped[str | None] = mapped_column(Text, nullable=True)
    required: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    sort_order: Mapped[int] = mapped_column(Integer, default=0, nullable=False)


class MedicalHistoryAudit(Base):
    __tablename__ = "medical_history_audits"
    __table_args__ = (
        Index("ix_mh_audits_patient_org", "patient_id", "org_id"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_uuid)
    org_id: Mapped[str] = mapped_column(ForeignKey("organizations.id"), nullable=False)
    patient_id: Mapped[str] = mapped_column(ForeignKey("patients.id"), nullable=False)
    edited_by: Mapped[str] = mapped_column(ForeignKey("users.id"), nullable=False)
    previous_data: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False)
    new_data: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False)
    changes: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)


class Attachment(Base):
    __tablename__ = "attachments"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_uuid)
    org_id: Mapped[str] = mapped_column(ForeignKey("organizations.id"), nullable=False, index=True)
    patient_id: Mapped[str | None] = mapped_column(ForeignKey("patients.id"), nullable=True)
    file_name: Mapped[str] = mapped_column(String(255), nullable=False)
    content_type: Mapped[str] = mapped_column(String(255), nullable=False)
    size: Mapped[int] = mapped_column(Integer, nullable=False)
    storage_key: Mapped[str] = mapped_column(String(512), nullable=False, unique=True)
    created_by: Mapped[str | None] = mapped_column(String(36), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)


class OrganizationVariable(Base):
    __tablename__ = "organization_variables"
    __table_args__ = (
        UniqueConstraint("org_id", "key", name="uq_org_variable_key"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    org_id: Mapped[str] = mapped_column(ForeignKey("organizations.id"), nullable=False)
    key: Mapped[str] = mapped_column(String(255), nullable=False)
    value: Mapped[str | None] = mapped_column(Text, nullable=True)


class NotificationSettings(Base):
    __tablename__ = "notification_settings"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    org_id: Mapped[str] = mapped_column(ForeignKey("organizations.id"), nullable=False, unique=True)
    message_templates: Mapped[dict[str, str]] = mapped_column(JSON, nullable=False)
    notification_toggles: Mapped[dict[str, bool]] = mapped_column(JSON, nullable=False)
    # e.g. [{"enabled": true, "timing_in_hours": 24}, {"enabled": true, "timing_in_hours": 1}]
    appointment_reminders: Mapped[list[dict[str, Any]]] = mapped_column(JSON, nullable=False)
