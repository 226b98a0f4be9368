from __future__ import annotations

import logging
from contextlib import asynccontextmanager
import datetime as dt
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Callable

from fastapi import Depends, FastAPI, File, Form, HTTPException, Query, Request, UploadFile, status
from fastapi.responses import FileResponse, JSONResponse
from fastapi.security import OAuth2PasswordBearer, OAuth2PasswordRequestForm
from pydantic import BaseModel, Field

from . import auth_service, billing, files, messaging, services
from .auth_models import MembershipStatus, UserRole
from .auth_security import ACCESS, ORG_SELECTION, get_claims
from .auth_service import CurrentUser
from .config import SEED_DEMO, configure_logging
from .errors import AuthError, ForbiddenError, NotFoundError
from .models import (
    AppointmentStatus,
    ExpenseType,
    FollowUpStatus,
    MessageStatus,
    MessageType,
    PaymentMethod,
    QuestionType,
    TreatmentStatus,
)
from .permissions import ROLE_PERMISSIONS, Permission, can_reach
from .pricing import PriceResolutionError
from .seed import seed_base, seed_catalog_for
from .teeth import format_tooth_numbers, tooth_options

logger = logging.getLogger(__name__)

# OAuth2 Bearer (Authorization: Bearer <token>)
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/api/auth/login")


@asynccontextmanager
async def lifespan(app: FastAPI):
    # tables, then demo data (idempotent)
    configure_logging()
    services.init_db()
    if SEED_DEMO:
        logger.info("Seeding demo clinic")
        seed_base()
    yield


app = FastAPI(title="Dental Clinic API", version="1.0.0", lifespan=lifespan)


# Error mapping

@app.exception_handler(NotFoundError)
def not_found_handler(request: Request, exc: NotFoundError) -> JSONResponse:
    return JSONResponse(status_code=status.HTTP_404_NOT_FOUND, content={"detail": str(exc)})


@app.exception_handler(ForbiddenError)
def forbidden_handler(request: Request, exc: ForbiddenError) -> JSONResponse:
    return JSONResponse(status_code=status.HTTP_403_FORBIDDEN, content={"detail": str(exc)})


@app.exception_handler(AuthError)
def auth_error_handler(request: Request, exc: AuthError) -> JSONResponse:
    return JSONResponse(
        status_code=status.HTTP_401_UNAUTHORIZED,
        content={"detail": str(exc)},
        headers={"WWW-Authenticate": "Bearer"},
    )


@app.exception_handler(PriceResolutionError)
def price_error_handler(request: Request, exc: PriceResolutionError) -> JSONResponse:
    return JSONResponse(status_code=422, content={"detail": str(exc)})


@app.exception_handler(ValueError)
def value_error_handler(request: Request, exc: ValueError) -> JSONResponse:
    return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content={"detail": str(exc)})


# Auth schemas

class RegisterOrganizationIn(BaseModel):
    org_name: str = Field(..., min_length=1)
    name: str = Field(..., min_length=1)
    email: str
    password: str
    location: str | None = None
    phone: str | None = None
    with_default_catalog: bool = True


class OrganizationOut(BaseModel):
    org_id: str
    org_name: str
    role: str
    status: str


class LoginOut(BaseModel):
    access_token: str
    token_type: str = "bearer"
    refresh_token: str | None = None
    needs_org_selection: bool
    user: dict[str, Any]
    organizations: list[OrganizationOut] = []
    current_org: OrganizationOut | None = None


class SelectOrganizationIn(BaseModel):
    org_id: str


class RefreshIn(BaseModel):
    refresh_token: str


class TokenOut(BaseModel):
    access_token: str
    token_type: str = "bearer"


class MeOut(BaseModel):
    id: str
    email: str
    name: str
    org_id: str
    role: str
    permissions: list[str]


class ProfileIn(BaseModel):
    name: str | None = None
    phone: str | None = None
    current_password: str | None = None
    new_password: str | None = None


# Organization / Users schemas

class OrganizationPatchIn(BaseModel):
    name: str | None = None
    location: str | None = None
    phone: str | None = None
    email: str | None = None
    website: str | None = None
    time_zone: str | None = None


class DefaultDoctorIn(BaseModel):
    doctor_id: str | None = None


class MemberCreateIn(BaseModel):
    email: str
    name: str
    role: UserRole
    password: str | None = None
    phone: str | None = None
    percentage: int | None = Field(None, ge=0, le=100)


class MemberPatchIn(BaseModel):
    role: UserRole | None = None
    status: MembershipStatus | None = None
    percentage: int | None = Field(None, ge=0, le=100)
    name: str | None = None
    phone: str | None = None


# Patients schemas

class PatientCreateIn(BaseModel):
    first_name: str
    last_name: str
    mobile_number: str
    email: str | None = None
    date_of_birth: date | None = None
    address: str | None = None
    emergency_contact: str | None = None
    blood_type: str | None = None
    follow_up_date: date | None = None
    follow_up_reason: str | None = None
    send_medical_history: bool = True


class PatientPatchIn(BaseModel):
    first_name: str | None = None
    last_name: str | None = None
    mobile_number: str | None = None
    email: str | None = None
    date_of_birth: date | None = None
    address: str | None = None
    emergency_contact: str | None = None
    blood_type: str | None = None
    follow_up_date: date | None = None
    follow_up_reason: str | None = None
    follow_up_status: FollowUpStatus | None = None


class MedicalHistoryIn(BaseModel):
    data: dict[str, Any]
    notes: str | None = None


class PublicMedicalHistoryIn(BaseModel):
    token: str
    answers: dict[str, Any]


class QuestionIn(BaseModel):
    question: str
    type: QuestionType
    options: list[str] | None = None
    required: bool = False
    order: int | None = None
    text_trigger_option: str | None = None
    text_field_label: str | None = None


class QuestionPatchIn(BaseModel):
    question: str | None = None
    type: QuestionType | None = None
    options: list[str] | None = None
    required: bool | None = None
    order: int | None = None
    text_trigger_option: str | None = None
    text_field_label: str | None = None


# Catalog schemas

class CategoryIn(BaseModel):
    name: str
    icon: str = "tooth"
    order: int = 0


class CategoryPatchIn(BaseModel):
    name: str | None = None
    icon: str | None = None
    order: int | None = None


class PriceVariantIn(BaseModel):
    name: str
    price: Decimal = Field(..., ge=0)
    currency: str = "USD"
    tooth_numbers: list[int] = []
    is_default: bool = False


class TreatmentTypeIn(BaseModel):
    name: str
    category_id: str | None = None
    duration_minutes: int = Field(30, gt=0)
    color: str = "#3B82F6"
    price_variants: list[PriceVariantIn]


class TreatmentTypePatchIn(BaseModel):
    name: str | None = None
    category_id: str | None = None
    duration_minutes: int | None = Field(None, gt=0)
    color: str | None = None
    price_variants: list[PriceVariantIn] | None = None


class QuoteIn(BaseModel):
    tooth_numbers: list[int]
    discount: Decimal | None = None
    discount_percent: Decimal | None = None


# Appointments / Treatments schemas

class AppointmentIn(BaseModel):
    patient_id: str
    treatment_type_id: str
    start_at: datetime
    end_at: datetime | None = None
    doctor_id: str | None = None
    status: AppointmentStatus = AppointmentStatus.PENDING
    notes: str | None = None


class AppointmentPatchIn(BaseModel):
    patient_id: str | None = None
    treatment_type_id: str | None = None
    start_at: datetime | None = None
    end_at: datetime | None = None
    doctor_id: str | None = None
    status: AppointmentStatus | None = None
    notes: str | None = None


class TreatmentIn(BaseModel):
    patient_id: str
    treatment_type_id: str
    tooth_numbers: list[int]
    discount: Decimal | None = None
    discount_percent: Decimal | None = None
    status: TreatmentStatus = TreatmentStatus.PLANNED
    appointment_id: str | None = None
    date: datetime | None = None
    notes: str | None = None


class TreatmentPatchIn(BaseModel):
    treatment_type_id: str | None = None
    tooth_numbers: list[int] | None = None
    discount: Decimal | None = None
    discount_percent: Decimal | None = None
    status: TreatmentStatus | None = None
    appointment_id: str | None = None
    date: datetime | None = None
    notes: str | None = None


class BulkDiscountIn(BaseModel):
    patient_id: str
    treatment_ids: list[str]
    discount_percent: Decimal = Field(..., ge=0)


# Billing schemas

class PaymentIn(BaseModel):
    patient_id: str
    amount: Decimal = Field(..., gt=0)
    payment_method: PaymentMethod
    date: dt.date | None = None
    notes: str | None = None
    send_receipt: bool = True


class PaymentPatchIn(BaseModel):
    amount: Decimal | None = Field(None, gt=0)
    payment_method: PaymentMethod | None = None
    date: dt.date | None = None
    notes: str | None = None


class ExpenseIn(BaseModel):
    name: str
    amount: Decimal = Field(..., gt=0)
    expense_type: ExpenseType = ExpenseType.OTHER
    date: dt.date | None = None
    notes: str | None = None
    invoice_id: str | None = None


class ExpensePatchIn(BaseModel):
    name: str | None = None
    amount: Decimal | None = Field(None, gt=0)
    date: dt.date | None = None
    notes: str | None = None
    invoice_id: str | None = None


class DoctorPaymentIn(BaseModel):
    doctor_id: str
    amount: Decimal = Field(..., gt=0)
    date: dt.date | None = None
    notes: str | None = None


# Messaging schemas

class ReminderSettingIn(BaseModel):
    enabled: bool = True
    timing_in_hours: int = Field(..., gt=0)


class NotificationSettingsIn(BaseModel):
    message_templates: dict[str, str] | None = None
    notification_toggles: dict[str, bool] | None = None
    appointment_reminders: list[ReminderSettingIn] | None = None


class WhatsAppIntegrationIn(BaseModel):
    api_url: str | None = None
    api_key: str | None = None


# Auth dependencies

def _clean(token: str) -> str:
    # protects against stray spaces / quotes pasted with the token
    return token.strip().strip('"').strip("'")


def get_current_user(token: str = Depends(oauth2_scheme)) -> CurrentUser:
    claims = get_claims(_clean(token), ACCESS)
    if not claims:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token")

    user = auth_service.resolve_current_user(claims["sub"], claims.get("org_id"))
    if user is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid user")
    return user


def require(permission: Permission) -> Callable[..., CurrentUser]:
    """Dependency: the role must hold the permission (or its "own" variant)."""
    def dependency(user: CurrentUser = Depends(get_current_user)) -> CurrentUser:
        if not can_reach(user.role, permission):
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Insufficient permissions")
        return user

    return dependency


def _login_out(result: auth_service.LoginResult) -> LoginOut:
    return LoginOut(
        access_token=result.access_token,
        refresh_token=result.refresh_token,
        needs_org_selection=result.needs_org_selection,
        user=result.user,
        organizations=[OrganizationOut(**o) for o in result.organizations],
        current_org=OrganizationOut(**result.current_org) if result.current_org else None,
    )


# AUTH endpoints

@app.post("/api/auth/register-organization", status_code=status.HTTP_201_CREATED)
def register_organization(payload: RegisterOrganizationIn) -> dict[str, Any]:
    org_id, user_id = auth_service.register_organization(
        payload.org_name, payload.email, payload.name, payload.password, payload.location, payload.phone
    )
    if payload.with_default_catalog:
        seed_catalog_for(org_id)
    return {"ok": True, "org_id": org_id, "user_id": user_id}


@app.post("/api/auth/login", response_model=LoginOut)
def login(form: OAuth2PasswordRequestForm = Depends()) -> LoginOut:
    return _login_out(auth_service.login(form.username, form.password))


@app.post("/api/auth/select-organization", response_model=LoginOut)
def select_organization(payload: SelectOrganizationIn, token: str = Depends(oauth2_scheme)) -> LoginOut:
    # the intermediate token from login, or a full token to switch clinic
    token = _clean(token)
    claims = get_claims(token, ORG_SELECTION) or get_claims(token, ACCESS)
    if not claims:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token")
    return _login_out(auth_service.select_organization(claims["sub"], payload.org_id))


@app.post("/api/auth/refresh", response_model=TokenOut)
def refresh(payload: RefreshIn) -> TokenOut:
    return TokenOut(access_token=auth_service.refresh_access_token(_clean(payload.refresh_token)))


@app.post("/api/auth/logout")
def logout(user: CurrentUser = Depends(get_current_user)) -> dict[str, Any]:
    auth_service.logout(user.id)
    return {"ok": True}


@app.get("/api/me", response_model=MeOut)
def me(user: CurrentUser = Depends(get_current_user)) -> MeOut:
    return MeOut(
        id=user.id,
        email=user.email,
        name=user.name,
        org_id=user.org_id,
        role=user.role.value,
        permissions=sorted(p.value for p in ROLE_PERMISSIONS[user.role]),
    )


@app.patch("/api/me")
def update_me(payload: ProfileIn, user: CurrentUser = Depends(get_current_user)) -> dict[str, Any]:
    return auth_service.update_profile(user.id, **payload.model_dump())


# Organization / users

@app.get("/api/organization")
def get_organization(user: CurrentUser = Depends(get_current_user)) -> dict[str, Any]:
    return {**auth_service.get_organization(user.org_id), "default_doctor_id": services.get_default_doctor(user.org_id)}


@app.patch("/api/organization")
def patch_organization(payload: OrganizationPatchIn,
                       user: CurrentUser = Depends(require(Permission.UPDATE_SETTINGS))) -> dict[str, Any]:
    return auth_service.update_organization(user.org_id, **payload.model_dump(exclude_none=True))


@app.put("/api/organization/default-doctor")
def put_default_doctor(payload: DefaultDoctorIn,
                       user: CurrentUser = Depends(require(Permission.UPDATE_SETTINGS))) -> dict[str, Any]:
    return {"default_doctor_id": services.set_default_doctor(user.org_id, payload.doctor_id)}


@app.get("/api/users")
def api_users(role: UserRole | None = None, user: CurrentUser = Depends(get_current_user)) -> list[dict]:
    # the dentist list is needed to book appointments; the rest is for admins
    if role != UserRole.DENTIST and not can_reach(user.role, Permission.VIEW_USERS):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Insufficient permissions")
    members = auth_service.list_members(user.org_id, role)
    if not can_reach(user.role, Permission.VIEW_USERS):
        members = [{k: m[k] for k in ("user_id", "name", "role", "status")} for m in members]
    return members


@app.post("/api/users", status_code=status.HTTP_201_CREATED)
def api_create_user(payload: MemberCreateIn,
                    user: CurrentUser = Depends(require(Permission.CREATE_USER))) -> dict[str, Any]:
    return auth_service.add_member(user.org_id, **payload.model_dump())


@app.get("/api/users/{user_id}")
def api_get_user(user_id: str, user: CurrentUser = Depends(require(Permission.VIEW_USERS))) -> dict[str, Any]:
    return auth_service.get_member(user.org_id, user_id)


@app.patch("/api/users/{user_id}")
def api_update_user(user_id: str, payload: MemberPatchIn,
                    user: CurrentUser = Depends(require(Permission.UPDATE_USER))) -> dict[str, Any]:
    return auth_service.update_member(user.org_id, user_id, acting_user_id=user.id, **payload.model_dump())


@app.delete("/api/users/{user_id}")
def api_deactivate_user(user_id: str, user: CurrentUser = Depends(require(Permission.DELETE_USER))) -> dict[str, Any]:
    return {"ok": auth_service.deactivate_member(user.org_id, user_id, acting_user_id=user.id)}


# Teeth helpers

@app.get("/api/teeth")
def api_teeth() -> list[dict]:
    return tooth_options()


@app.get("/api/teeth/format")
def api_format_teeth(numbers: list[int] = Query(default=[])) -> dict[str, str]:
    return {"label": format_tooth_numbers(numbers)}


# Patients

@app.get("/api/patients")
def api_patients(
    search: str | None = None,
    page: int = 1,
    limit: int = 20,
    user: CurrentUser = Depends(require(Permission.VIEW_PATIENTS)),
) -> dict[str, Any]:
    return services.list_patients(user.org_id, search, page, limit)


@app.post("/api/patients", status_code=status.HTTP_201_CREATED)
def api_create_patient(payload: PatientCreateIn,
                       user: CurrentUser = Depends(require(Permission.CREATE_PATIENT))) -> dict[str, Any]:
    return services.create_patient(user, **payload.model_dump())


@app.get("/api/patients/{patient_id}")
def api_get_patient(patient_id: str, user: CurrentUser = Depends(require(Permission.VIEW_PATIENTS))) -> dict[str, Any]:
    return services.get_patient(user.org_id, patient_id)


@app.patch("/api/patients/{patient_id}")
def api_update_patient(patient_id: str, payload: PatientPatchIn,
                       user: CurrentUser = Depends(require(Permission.UPDATE_PATIENT))) -> dict[str, Any]:
    return services.update_patient(user.org_id, patient_id, **payload.model_dump(exclude_none=True))


@app.delete("/api/patients/{patient_id}")
def api_delete_patient(patient_id: str,
                       user: CurrentUser = Depends(require(Permission.DELETE_PATIENT))) -> dict[str, Any]:
    return {"ok": services.delete_patient(user.org_id, patient_id)}


@app.get("/api/patients/{patient_id}/medical-history")
def api_get_medical_history(patient_id: str,
                            user: CurrentUser = Depends(require(Permission.VIEW_PATIENTS))) -> dict[str, Any]:
    return services.get_medical_history(user.org_id, patient_id)


@app.put("/api/patients/{patient_id}/medical-history")
def api_update_medical_history(patient_id: str, payload: MedicalHistoryIn,
                               user: CurrentUser = Depends(require(Permission.UPDATE_PATIENT))) -> dict[str, Any]:
    return services.update_medical_history(user, patient_id, payload.data, payload.notes)


@app.get("/api/patients/{patient_id}/medical-history/audits")
def api_medical_history_audits(patient_id: str,
                               user: CurrentUser = Depends(require(Permission.VIEW_PATIENTS))) -> list[dict]:
    return services.list_medical_history_audits(user.org_id, patient_id)


@app.post("/api/patients/{patient_id}/send-medical-history")
def api_send_medical_history(patient_id: str,
                             user: CurrentUser = Depends(require(Permission.UPDATE_PATIENT))) -> dict[str, Any]:
    return {"message": messaging.send_medical_history_link(user.org_id, patient_id)}


@app.post("/api/patients/{patient_id}/follow-up-reminder")
def api_follow_up_reminder(patient_id: str,
                           user: CurrentUser = Depends(require(Permission.UPDATE_PATIENT))) -> dict[str, Any]:
    return {"message": messaging.send_follow_up_reminder(user.org_id, patient_id)}


@app.post("/api/patients/{patient_id}/overdue-reminder")
def api_overdue_reminder(patient_id: str,
                         user: CurrentUser = Depends(require(Permission.VIEW_PAYMENTS))) -> dict[str, Any]:
    return {"message": billing.send_overdue_reminder(user.org_id, patient_id)}


@app.get("/api/patients/{patient_id}/balance")
def api_patient_balance(patient_id: str,
                        user: CurrentUser = Depends(require(Permission.VIEW_PAYMENTS))) -> dict[str, Any]:
    return billing.patient_balance(user.org_id, patient_id)


@app.get("/api/patients/{patient_id}/treatment-stats")
def api_patient_treatment_stats(patient_id: str,
                                user: CurrentUser = Depends(require(Permission.VIEW_TREATMENTS))) -> dict[str, Any]:
    return services.patient_treatment_stats(user, patient_id)


@app.get("/api/patients/{patient_id}/messages")
def api_patient_messages(patient_id: str, page: int = 1, limit: int = 20,
                         user: CurrentUser = Depends(require(Permission.VIEW_PATIENTS))) -> dict[str, Any]:
    services.get_patient(user.org_id, patient_id)
    return messaging.list_messages(user.org_id, patient_id=patient_id, page=page, limit=limit)


# PUBLIC endpoints (no JWT): medical history form reached from the WhatsApp link

@app.get("/api/public/medical-history")
def api_public_medical_history_form(token: str = Query(...)) -> dict[str, Any]:
    return services.get_medical_history_form(_clean(token))


@app.post("/api/public/medical-history")
def api_public_submit_medical_history(payload: PublicMedicalHistoryIn) -> dict[str, Any]:
    services.submit_medical_history(_clean(payload.token), payload.answers)
    return {"ok": True}


# Medical history questions

@app.get("/api/medical-history-questions")
def api_questions(user: CurrentUser = Depends(get_current_user)) -> list[dict]:
    return services.list_questions(user.org_id)


@app.post("/api/medical-history-questions", status_code=status.HTTP_201_CREATED)
def api_create_question(payload: QuestionIn,
                        user: CurrentUser = Depends(require(Permission.UPDATE_SETTINGS))) -> dict[str, Any]:
    data = payload.model_dump()
    return services.create_question(user.org_id, qtype=data.pop("type"), **data)


@app.patch("/api/medical-history-questions/{question_id}")
def api_update_question(question_id: str, payload: QuestionPatchIn,
                        user: CurrentUser = Depends(require(Permission.UPDATE_SETTINGS))) -> dict[str, Any]:
    data = payload.model_dump(exclude_none=True)
    if "type" in data:
        data["qtype"] = data.pop("type")
    return services.update_question(user.org_id, question_id, **data)


@app.delete("/api/medical-history-questions/{question_id}")
def api_delete_question(question_id: str,
                        user: CurrentUser = Depends(require(Permission.UPDATE_SETTINGS))) -> dict[str, Any]:
    return {"ok": services.delete_question(user.org_id, question_id)}


# Treatment catalog

@app.get("/api/treatment-categories")
def api_categories(user: CurrentUser = Depends(get_current_user)) -> list[dict]:
    return services.list_categories(user.org_id)


@app.post("/api/treatment-categories", status_code=status.HTTP_201_CREATED)
def api_create_category(payload: CategoryIn,
                        user: CurrentUser = Depends(require(Permission.UPDATE_SETTINGS))) -> dict[str, Any]:
    return services.create_category(user.org_id, payload.name, payload.icon, payload.order)


@app.patch("/api/treatment-categories/{category_id}")
def api_update_category(category_id: str, payload: CategoryPatchIn,
                        user: CurrentUser = Depends(require(Permission.UPDATE_SETTINGS))) -> dict[str, Any]:
    return services.update_category(user.org_id, category_id, payload.name, payload.icon, payload.order)


@app.delete("/api/treatment-categories/{category_id}")
def api_delete_category(category_id: str,
                        user: CurrentUser = Depends(require(Permission.UPDATE_SETTINGS))) -> dict[str, Any]:
    return {"ok": services.delete_category(user.org_id, category_id)}


@app.get("/api/treatment-types")
def api_treatment_types(category_id: str | None = None, user: CurrentUser = Depends(get_current_user)) -> list[dict]:
    return services.list_treatment_types(user.org_id, category_id)


@app.post("/api/treatment-types", status_code=status.HTTP_201_CREATED)
def api_create_treatment_type(payload: TreatmentTypeIn,
                              user: CurrentUser = Depends(require(Permission.UPDATE_SETTINGS))) -> dict[str, Any]:
    data = payload.model_dump()
    return services.create_treatment_type(user.org_id, **data)


@app.get("/api/treatment-types/{type_id}")
def api_get_treatment_type(type_id: str, user: CurrentUser = Depends(get_current_user)) -> dict[str, Any]:
    return services.get_treatment_type(user.org_id, type_id)


@app.patch("/api/treatment-types/{type_id}")
def api_update_treatment_type(type_id: str, payload: TreatmentTypePatchIn,
                              user: CurrentUser = Depends(require(Permission.UPDATE_SETTINGS))) -> dict[str, Any]:
    return services.update_treatment_type(user.org_id, type_id, **payload.model_dump(exclude_none=True))


@app.delete("/api/treatment-types/{type_id}")
def api_delete_treatment_type(type_id: str,
                              user: CurrentUser = Depends(require(Permission.UPDATE_SETTINGS))) -> dict[str, Any]:
    return {"ok": services.delete_treatment_type(user.org_id, type_id)}


@app.post("/api/treatment-types/{type_id}/quote")
def api_quote(type_id: str, payload: QuoteIn, user: CurrentUser = Depends(get_current_user)) -> dict[str, Any]:
    return services.quote_for_type(
        user.org_id, type_id, payload.tooth_numbers, payload.discount, payload.discount_percent
    )


# Appointments

@app.get("/api/appointments")
def api_appointments(
    start: datetime | None = None,
    end: datetime | None = None,
    patient_id: str | None = None,
    doctor_id: str | None = None,
    status_filter: AppointmentStatus | None = Query(None, alias="status"),
    user: CurrentUser = Depends(require(Permission.VIEW_APPOINTMENTS)),
) -> list[dict]:
    return services.list_appointments(user, start, end, patient_id, doctor_id, status_filter)


@app.get("/api/agenda")
def api_agenda(day: date = Query(...), user: CurrentUser = Depends(require(Permission.VIEW_APPOINTMENTS))) -> list[dict]:
    return services.daily_agenda(user, day)


@app.post("/api/appointments", status_code=status.HTTP_201_CREATED)
def api_create_appointment(payload: AppointmentIn,
                           user: CurrentUser = Depends(require(Permission.CREATE_APPOINTMENT))) -> dict[str, Any]:
    return services.create_appointment(user, **payload.model_dump())


@app.get("/api/appointments/{appointment_id}")
def api_get_appointment(appointment_id: str,
                        user: CurrentUser = Depends(require(Permission.VIEW_APPOINTMENTS))) -> dict[str, Any]:
    return services.get_appointment(user, appointment_id)


@app.patch("/api/appointments/{appointment_id}")
def api_update_appointment(appointment_id: str, payload: AppointmentPatchIn,
                           user: CurrentUser = Depends(require(Permission.UPDATE_APPOINTMENT))) -> dict[str, Any]:
    return services.update_appointment(user, appointment_id, **payload.model_dump(exclude_none=True))


@app.delete("/api/appointments/{appointment_id}")
def api_delete_appointment(appointment_id: str,
                           user: CurrentUser = Depends(require(Permission.DELETE_APPOINTMENT))) -> dict[str, Any]:
    return {"ok": services.delete_appointment(user, appointment_id)}


@app.post("/api/appointments/{appointment_id}/send-reminder")
def api_send_appointment_reminder(appointment_id: str,
                                  user: CurrentUser = Depends(require(Permission.UPDATE_APPOINTMENT))) -> dict[str, Any]:
    services.get_appointment(user, appointment_id)
    return {"message": messaging.send_appointment_reminder(user.org_id, appointment_id)}


# Treatments

@app.get("/api/treatments")
def api_treatments(
    patient_id: str | None = None,
    appointment_id: str | None = None,
    status_filter: TreatmentStatus | None = Query(None, alias="status"),
    user: CurrentUser = Depends(require(Permission.VIEW_TREATMENTS)),
) -> list[dict]:
    return services.list_treatments(user, patient_id, status_filter, appointment_id)


@app.post("/api/treatments", status_code=status.HTTP_201_CREATED)
def api_create_treatment(payload: TreatmentIn,
                         user: CurrentUser = Depends(require(Permission.CREATE_TREATMENT))) -> dict[str, Any]:
    data = payload.model_dump()
    data["treatment_date"] = data.pop("date")
    return services.create_treatment(user, **data)


@app.post("/api/treatments/bulk-discount")
def api_bulk_discount(payload: BulkDiscountIn,
                      user: CurrentUser = Depends(require(Permission.UPDATE_TREATMENT))) -> list[dict]:
    return services.apply_bulk_discount(user, payload.patient_id, payload.treatment_ids, payload.discount_percent)


@app.get("/api/treatments/{treatment_id}")
def api_get_treatment(treatment_id: str,
                      user: CurrentUser = Depends(require(Permission.VIEW_TREATMENTS))) -> dict[str, Any]:
    return services.get_treatment(user, treatment_id)


@app.patch("/api/treatments/{treatment_id}")
def api_update_treatment(treatment_id: str, payload: TreatmentPatchIn,
                         user: CurrentUser = Depends(require(Permission.UPDATE_TREATMENT))) -> dict[str, Any]:
    data = payload.model_dump(exclude_none=True)
    if "date" in data:
        data["treatment_date"] = data.pop("date")
    return services.update_treatment(user, treatment_id, **data)


@app.delete("/api/treatments/{treatment_id}")
def api_delete_treatment(treatment_id: str,
                         user: CurrentUser = Depends(require(Permission.DELETE_TREATMENT))) -> dict[str, Any]:
    return {"ok": services.delete_treatment(user, treatment_id)}


# Payments

@app.get("/api/payments")
def api_payments(
    patient_id: str | None = None,
    start: date | None = None,
    end: date | None = None,
    user: CurrentUser = Depends(require(Permission.VIEW_PAYMENTS)),
) -> list[dict]:
    return billing.list_payments(user.org_id, patient_id, start, end)


@app.post("/api/payments", status_code=status.HTTP_201_CREATED)
def api_create_payment(payload: PaymentIn,
                       user: CurrentUser = Depends(require(Permission.CREATE_PAYMENT))) -> dict[str, Any]:
    return billing.create_payment(
        user, payload.patient_id, payload.amount, payload.payment_method,
        payload.date, payload.notes, payload.send_receipt,
    )


@app.get("/api/payments/{payment_id}")
def api_get_payment(payment_id: str, user: CurrentUser = Depends(require(Permission.VIEW_PAYMENTS))) -> dict[str, Any]:
    return billing.get_payment(user.org_id, payment_id)


@app.patch("/api/payments/{payment_id}")
def api_update_payment(payment_id: str, payload: PaymentPatchIn,
                       user: CurrentUser = Depends(require(Permission.UPDATE_PAYMENT))) -> dict[str, Any]:
    return billing.update_payment(user.org_id, payment_id, payload.amount, payload.payment_method,
                                  payload.date, payload.notes)


@app.delete("/api/payments/{payment_id}")
def api_delete_payment(payment_id: str,
                       user: CurrentUser = Depends(require(Permission.DELETE_PAYMENT))) -> dict[str, Any]:
    return {"ok": billing.delete_payment(user.org_id, payment_id)}


@app.post("/api/payments/{payment_id}/send-receipt")
def api_send_receipt(payment_id: str,
                     user: CurrentUser = Depends(require(Permission.CREATE_PAYMENT))) -> dict[str, Any]:
    return {"message": billing.send_receipt(user.org_id, payment_id)}


# Expenses

@app.get("/api/expenses")
def api_expenses(
    start: date | None = None,
    end: date | None = None,
    expense_type: ExpenseType | None = None,
    user: CurrentUser = Depends(require(Permission.VIEW_EXPENSES)),
) -> list[dict]:
    return billing.list_expenses(user.org_id, start, end, expense_type)


@app.post("/api/expenses", status_code=status.HTTP_201_CREATED)
def api_create_expense(payload: ExpenseIn,
                       user: CurrentUser = Depends(require(Permission.CREATE_EXPENSE))) -> dict[str, Any]:
    return billing.create_expense(user, payload.name, payload.amount, payload.expense_type,
                                  payload.date, payload.notes, payload.invoice_id)


@app.post("/api/expenses/doctor-payment", status_code=status.HTTP_201_CREATED)
def api_doctor_payment(payload: DoctorPaymentIn,
                       user: CurrentUser = Depends(require(Permission.UPDATE_USER))) -> dict[str, Any]:
    return billing.pay_doctor(user, payload.doctor_id, payload.amount, payload.date, payload.notes)


@app.get("/api/expenses/{expense_id}")
def api_get_expense(expense_id: str, user: CurrentUser = Depends(require(Permission.VIEW_EXPENSES))) -> dict[str, Any]:
    return billing.get_expense(user.org_id, expense_id)


@app.patch("/api/expenses/{expense_id}")
def api_update_expense(expense_id: str, payload: ExpensePatchIn,
                       user: CurrentUser = Depends(require(Permission.UPDATE_EXPENSE))) -> dict[str, Any]:
    data = payload.model_dump(exclude_none=True)
    if "date" in data:
        data["expense_date"] = data.pop("date")
    return billing.update_expense(user.org_id, expense_id, **data)


@app.delete("/api/expenses/{expense_id}")
def api_delete_expense(expense_id: str,
                       user: CurrentUser = Depends(require(Permission.DELETE_EXPENSE))) -> dict[str, Any]:
    return {"ok": billing.delete_expense(user.org_id, expense_id)}


# Messages / notifications

@app.get("/api/messages")
def api_messages(
    patient_id: str | None = None,
    message_type: MessageType | None = Query(None, alias="type"),
    status_filter: MessageStatus | None = Query(None, alias="status"),
    page: int = 1,
    limit: int = 20,
    user: CurrentUser = Depends(require(Permission.VIEW_PATIENTS)),
) -> dict[str, Any]:
    return messaging.list_messages(user.org_id, patient_id, message_type, status_filter, page, limit)


@app.get("/api/messages/{message_id}")
def api_get_message(message_id: str, user: CurrentUser = Depends(require(Permission.VIEW_PATIENTS))) -> dict[str, Any]:
    return messaging.get_message(user.org_id, message_id)


@app.post("/api/messages/{message_id}/resend")
def api_resend_message(message_id: str,
                       user: CurrentUser = Depends(require(Permission.UPDATE_PATIENT))) -> dict[str, Any]:
    return messaging.resend_message(user.org_id, message_id)


@app.get("/api/notification-settings")
def api_notification_settings(user: CurrentUser = Depends(require(Permission.VIEW_SETTINGS))) -> dict[str, Any]:
    return messaging.get_notification_settings(user.org_id)


@app.put("/api/notification-settings")
def api_update_notification_settings(payload: NotificationSettingsIn,
                                     user: CurrentUser = Depends(require(Permission.UPDATE_SETTINGS))) -> dict[str, Any]:
    reminders = [r.model_dump() for r in payload.appointment_reminders] if payload.appointment_reminders is not None else None
    return messaging.update_notification_settings(
        user.org_id, payload.message_templates, payload.notification_toggles, reminders
    )


@app.get("/api/integrations/whatsapp")
def api_whatsapp(user: CurrentUser = Depends(require(Permission.VIEW_SETTINGS))) -> dict[str, Any]:
    return messaging.get_whatsapp_integration(user.org_id)


@app.put("/api/integrations/whatsapp")
def api_update_whatsapp(payload: WhatsAppIntegrationIn,
                        user: CurrentUser = Depends(require(Permission.UPDATE_SETTINGS))) -> dict[str, Any]:
    return messaging.update_whatsapp_integration(user.org_id, payload.api_url, payload.api_key)


# Attachments

@app.post("/api/attachments", status_code=status.HTTP_201_CREATED)
def api_upload_attachment(
    file: UploadFile = File(...),
    patient_id: str | None = Form(None),
    user: CurrentUser = Depends(require(Permission.UPDATE_PATIENT)),
) -> dict[str, Any]:
    data = file.file.read()
    return files.save_attachment(user, file.filename or "file", file.content_type, data, patient_id)


@app.get("/api/attachments")
def api_attachments(patient_id: str | None = None,
                    user: CurrentUser = Depends(require(Permission.VIEW_PATIENTS))) -> list[dict]:
    return files.list_attachments(user.org_id, patient_id)


@app.get("/api/attachments/{attachment_id}")
def api_download_attachment(attachment_id: str, user: CurrentUser = Depends(require(Permission.VIEW_PATIENTS))):
    info, path = files.open_attachment(user.org_id, attachment_id)
    return FileResponse(path, media_type=info["content_type"], filename=info["file_name"])


@app.delete("/api/attachments/{attachment_id}")
def api_delete_attachment(attachment_id: str,
                          user: CurrentUser = Depends(require(Permission.DELETE_PATIENT))) -> dict[str, Any]:
    return {"ok": files.delete_attachment(user.org_id, attachment_id)}


# Dashboard

@app.get("/api/dashboard")
def api_dashboard(day: date | None = None, user: CurrentUser = Depends(get_current_user)) -> dict[str, Any]:
    return billing.dashboard(user, day)
