from __future__ import annotations

import logging

from sqlalchemy import select

from . import config
from .auth_models import Organization, User, UserOrganization, UserRole
from .auth_security import hash_password
from .db import db_session
from .models import MedicalHistoryQuestion, QuestionType, TreatmentCategory, TreatmentType

logger = logging.getLogger(__name__)

DEMO_ORG_NAME = "Demo Dental Clinic"

# category -> [(type name, minutes, color, default price)]
CATALOG: dict[str, list[tuple[str, int, str, str]]] = {
    "Diagnostics": [
        ("Consultation", 20, "#6366F1", "30.00"),
        ("Panoramic X-ray", 15, "#8B5CF6", "45.00"),
    ],
    "Restorative": [
        ("Composite Filling", 45, "#3B82F6", "80.00"),
        ("Crown", 60, "#0EA5E9", "450.00"),
    ],
    "Endodontics": [
        ("Root Canal", 90, "#EF4444", "300.00"),
    ],
    "Hygiene": [
        ("Scaling and Polishing", 40, "#10B981", "60.00"),
    ],
    "Surgery": [
        ("Extraction", 30, "#F59E0B", "90.00"),
    ],
}

QUESTIONS: list[tuple[str, QuestionType, list[str] | None, bool]] = [
    ("Do you have any allergies?", QuestionType.RADIO_WITH_TEXT, ["No", "Yes"], True),
    ("Are you currently taking any medication?", QuestionType.RADIO_WITH_TEXT, ["No", "Yes"], True),
    ("Do you have any of the following conditions?", QuestionType.CHECKBOX,
     ["Diabetes", "Heart disease", "High blood pressure", "Asthma", "Bleeding disorder"], False),
    ("Are you pregnant?", QuestionType.RADIO, ["No", "Yes", "Not applicable"], False),
    ("Other notes for the dentist", QuestionType.TEXTAREA, None, False),
]

DEMO_USERS = [
    ("admin@demo.local", "Clinic Admin", UserRole.ADMIN, None),
    ("dentist@demo.local", "Sam Carter", UserRole.DENTIST, 30),
    ("secretary@demo.local", "Front Desk", UserRole.SECRETARY, None),
]


def seed_org_catalog(s, org_id: str) -> None:
    """Default categories, treatment types (one default price each) and medical-history questions."""
    for order, (cat_name, types) in enumerate(CATALOG.items()):
        cat = s.execute(
            select(TreatmentCategory).where(TreatmentCategory.org_id == org_id, TreatmentCategory.name == cat_name)
        ).scalar_one_or_none()
        if cat is None:
            cat = TreatmentCategory(org_id=org_id, name=cat_name, sort_order=order)
            s.add(cat)
            s.flush()

        for name, minutes, color, price in types:
            exists = s.execute(
                select(TreatmentType).where(TreatmentType.org_id == org_id, TreatmentType.name == name)
            ).scalar_one_or_none()
            if exists is None:
                s.add(TreatmentType(
                    org_id=org_id,
                    name=name,
                    category_id=cat.id,
                    duration_minutes=minutes,
                    color=color,
                    price_variants=[{
                        "name": "Standard",
                        "price": price,
                        "currency": "USD",
                        "tooth_numbers": [],
                        "is_default": True,
                    }],
                ))

    for order, (text, qtype, options, required) in enumerate(QUESTIONS):
        exists = s.execute(
            select(MedicalHistoryQuestion).where(
                MedicalHistoryQuestion.org_id == org_id, MedicalHistoryQuestion.question == text
            )
        ).scalar_one_or_none()
        if exists is None:
            s.add(MedicalHistoryQuestion(
                org_id=org_id,
                question=text,
                type=qtype,
                options=options,
                required=required,
                sort_order=order,
                text_trigger_option="Yes" if qtype == QuestionType.RADIO_WITH_TEXT else None,
                text_field_label="Please specify" if qtype == QuestionType.RADIO_WITH_TEXT else None,
            ))


def seed_base() -> None:
    """
    Minimal data (idempotent):
    - demo organization
    - one user per role
    - treatment catalog and medical-history questions
    """
    with db_session() as s:
        org = s.execute(select(Organization).where(Organization.name == DEMO_ORG_NAME)).scalar_one_or_none()
        if org is None:
            org = Organization(name=DEMO_ORG_NAME, location="1 Main Street", phone="+10000000000")
            s.add(org)
            s.flush()
            logger.info("Seeded demo organization %s", org.id)

        for email, name, role, percentage in DEMO_USERS:
            user = s.execute(select(User).where(User.email == email)).scalar_one_or_none()
            if user is None:
                user = User(email=email, name=name, password_hash=hash_password(config.DEMO_PASSWORD))
                s.add(user)
                s.flush()
            member = s.execute(
                select(UserOrganization).where(UserOrganization.user_id == user.id, UserOrganization.org_id == org.id)
            ).scalar_one_or_none()
            if member is None:
                s.add(UserOrganization(user_id=user.id, org_id=org.id, role=role, percentage=percentage))

        seed_org_catalog(s, org.id)


def seed_catalog_for(org_id: str) -> None:
    with db_session() as s:
        seed_org_catalog(s, org_id)
