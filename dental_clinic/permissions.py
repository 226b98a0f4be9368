from __future__ import annotations

import enum

from .auth_models import UserRole


class Permission(enum.Enum):
    VIEW_PATIENTS = "view_patients"
    CREATE_PATIENT = "create_patient"
    UPDATE_PATIENT = "update_patient"
    DELETE_PATIENT = "delete_patient"

    VIEW_APPOINTMENTS = "view_appointments"
    VIEW_OWN_APPOINTMENTS = "view_own_appointments"
    CREATE_APPOINTMENT = "create_appointment"
    UPDATE_APPOINTMENT = "update_appointment"
    DELETE_APPOINTMENT = "delete_appointment"

    VIEW_TREATMENTS = "view_treatments"
    VIEW_OWN_TREATMENTS = "view_own_treatments"
    CREATE_TREATMENT = "create_treatment"
    UPDATE_TREATMENT = "update_treatment"
    DELETE_TREATMENT = "delete_treatment"

    VIEW_PAYMENTS = "view_payments"
    CREATE_PAYMENT = "create_payment"
    UPDATE_PAYMENT = "update_payment"
    DELETE_PAYMENT = "delete_payment"

    VIEW_EXPENSES = "view_expenses"
    CREATE_EXPENSE = "create_expense"
    UPDATE_EXPENSE = "update_expense"
    DELETE_EXPENSE = "delete_expense"

    VIEW_ALL_REVENUE = "view_all_revenue"
    VIEW_OWN_REVENUE = "view_own_revenue"

    VIEW_USERS = "view_users"
    CREATE_USER = "create_user"
    UPDATE_USER = "update_user"
    DELETE_USER = "delete_user"

    VIEW_SETTINGS = "view_settings"
    UPDATE_SETTINGS = "update_settings"


ROLE_PERMISSIONS: dict[UserRole, frozenset[Permission]] = {
    # admin: everything except the "own" variants, which are implied
    UserRole.ADMIN: frozenset(
        p for p in Permission if p not in (
            Permission.VIEW_OWN_APPOINTMENTS,
            Permission.VIEW_OWN_TREATMENTS,
            Permission.VIEW_OWN_REVENUE,
        )
    ),
    UserRole.DENTIST: frozenset({
        Permission.VIEW_PATIENTS,
        Permission.VIEW_OWN_APPOINTMENTS,
        Permission.VIEW_OWN_TREATMENTS,
        Permission.VIEW_OWN_REVENUE,
    }),
    # secretary: no deletes on patients/treatments/payments, no revenue
    UserRole.SECRETARY: frozenset({
        Permission.VIEW_PATIENTS,
        Permission.CREATE_PATIENT,
        Permission.UPDATE_PATIENT,
        Permission.VIEW_APPOINTMENTS,
        Permission.CREATE_APPOINTMENT,
        Permission.UPDATE_APPOINTMENT,
        Permission.DELETE_APPOINTMENT,
        Permission.VIEW_TREATMENTS,
        Permission.CREATE_TREATMENT,
        Permission.UPDATE_TREATMENT,
        Permission.VIEW_PAYMENTS,
        Permission.CREATE_PAYMENT,
        Permission.UPDATE_PAYMENT,
        Permission.VIEW_EXPENSES,
        Permission.CREATE_EXPENSE,
    }),
}

# a permission or its "own" variant is enough to reach the endpoint;
# services then restrict dentists to their own rows
OWN_VARIANTS: dict[Permission, Permission] = {
    Permission.VIEW_APPOINTMENTS: Permission.VIEW_OWN_APPOINTMENTS,
    Permission.VIEW_TREATMENTS: Permission.VIEW_OWN_TREATMENTS,
    Permission.VIEW_ALL_REVENUE: Permission.VIEW_OWN_REVENUE,
}


def has_permission(role: UserRole, permission: Permission) -> bool:
    return permission in ROLE_PERMISSIONS.get(role, frozenset())


def has_any_permission(role: UserRole, permissions: list[Permission]) -> bool:
    return any(has_permission(role, p) for p in permissions)


def has_all_permissions(role: UserRole, permissions: list[Permission]) -> bool:
    return all(has_permission(role, p) for p in permissions)


def can_reach(role: UserRole, permission: Permission) -> bool:
    own = OWN_VARIANTS.get(permission)
    return has_permission(role, permission) or (own is not None and has_permission(role, own))


def sees_only_own(role: UserRole) -> bool:
    return role == UserRole.DENTIST
