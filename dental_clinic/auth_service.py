from __future__ import annotations

import logging
from dataclasses import dataclass, field
from decimal import Decimal

from sqlalchemy import select

from .auth_models import MembershipStatus, Organization, User, UserOrganization, UserRole
from .auth_security import (
    REFRESH,
    create_access_token,
    create_org_selection_token,
    create_refresh_token,
    get_claims,
    hash_password,
    hash_token,
    refresh_expiry,
    token_matches,
    verify_password,
)
from .db import db_session, utcnow
from .errors import AuthError, NotFoundError
from .pricing import to_money

logger = logging.getLogger(__name__)

MIN_PASSWORD_LENGTH = 8


@dataclass(frozen=True)
class CurrentUser:
    """Authenticated principal scoped to one organization."""
    id: str
    email: str
    name: str
    org_id: str
    role: UserRole


@dataclass(frozen=True)
class LoginResult:
    user: dict
    needs_org_selection: bool
    access_token: str
    refresh_token: str | None = None
    organizations: list[dict] = field(default_factory=list)
    current_org: dict | None = None


def _normalize_email(email: str) -> str:
    return (email or "").strip().lower()


def _check_password(password: str) -> None:
    if not password or len(password) < MIN_PASSWORD_LENGTH:
        raise ValueError(f"Password must be at least {MIN_PASSWORD_LENGTH} characters.")


def _membership_dict(m: UserOrganization) -> dict:
    return {
        "org_id": m.org_id,
        "org_name": m.organization.name,
        "role": m.role.value,
        "status": m.status.value,
    }


def _member_dict(m: UserOrganization) -> dict:
    return {
        "user_id": m.user_id,
        "email": m.user.email,
        "name": m.user.name,
        "phone": m.user.phone,
        "role": m.role.value,
        "status": m.status.value,
        "percentage": m.percentage,
        "wallet": str(to_money(m.wallet or 0)),
    }


# =========================
# Organizations / bootstrap
# =========================
def register_organization(
    org_name: str,
    admin_email: str,
    admin_name: str,
    admin_password: str,
    location: str | None = None,
    phone: str | None = None,
) -> tuple[str, str]:
    """Create a clinic with its first admin. Returns (org_id, user_id)."""
    org_name = (org_name or "").strip()
    email = _normalize_email(admin_email)
    if not org_name or not email or not (admin_name or "").strip():
        raise ValueError("Organization name, admin email and admin name are required.")

    with db_session() as s:
        org = Organization(name=org_name, location=location, phone=phone)
        s.add(org)

        user = s.execute(select(User).where(User.email == email)).scalar_one_or_none()
        if user is None:
            _check_password(admin_password)
            user = User(email=email, name=admin_name.strip(), password_hash=hash_password(admin_password))
            s.add(user)
        elif not verify_password(admin_password, user.password_hash):
            raise ValueError("Email already registered: use that account's password.")

        s.flush()
        s.add(UserOrganization(user_id=user.id, org_id=org.id, role=UserRole.ADMIN))
        s.flush()
        logger.info("Organization %s created with admin %s", org.id, user.id)
        return org.id, user.id


def get_organization(org_id: str) -> dict:
    with db_session() as s:
        org = s.get(Organization, org_id)
        if not org:
            raise NotFoundError("Organization")
        return _organization_dict(org)


def update_organization(org_id: str, **fields) -> dict:
    allowed = {"name", "location", "phone", "email", "website", "time_zone"}
    with db_session() as s:
        org = s.get(Organization, org_id)
        if not org:
            raise NotFoundError("Organization")
        for k, v in fields.items():
            if k in allowed and v is not None:
                setattr(org, k, v.strip() if isinstance(v, str) else v)
        if not org.name:
            raise ValueError("Organization name cannot be empty.")
        return _organization_dict(org)


def _organization_dict(org: Organization) -> dict:
    return {
        "id": org.id,
        "name": org.name,
        "location": org.location,
        "phone": org.phone,
        "email": org.email,
        "website": org.website,
        "time_zone": org.time_zone,
        "is_active": org.is_active,
    }


# =========================
# Login flow
# =========================
def authenticate(email: str, password: str) -> User | None:
    email = _normalize_email(email)
    with db_session() as s:
        u = s.execute(select(User).where(User.email == email)).scalar_one_or_none()
        if not u or not u.is_active:
            return None
        if not verify_password(password, u.password_hash):
            return None
        return u


def _active_memberships(s, user_id: str) -> list[UserOrganization]:
    q = (
        select(UserOrganization)
        .join(Organization, Organization.id == UserOrganization.org_id)
        .where(
            UserOrganization.user_id == user_id,
            UserOrganization.status == MembershipStatus.ACTIVE,
            Organization.is_active.is_(True),
        )
        .order_by(Organization.name)
    )
    return list(s.scalars(q))


def _issue_tokens(s, user: User, membership: UserOrganization) -> tuple[str, str]:
    access = create_access_token(user.id, membership.org_id, membership.role.value, extra={"email": user.email})
    refresh = create_refresh_token(user.id, membership.org_id, membership.role.value)
    user.refresh_token_hash = hash_token(refresh)
    user.refresh_token_expires_at = refresh_expiry()
    return access, refresh


def login(email: str, password: str) -> LoginResult:
    """
    - one active organization: selected automatically, full tokens
    - several: intermediate token, the client must call select_organization
    """
    with db_session() as s:
        user = s.execute(select(User).where(User.email == _normalize_email(email))).scalar_one_or_none()
        if not user or not user.is_active or not verify_password(password, user.password_hash):
            logger.warning("Failed login for %s", _normalize_email(email))
            raise AuthError("Invalid credentials")

        memberships = _active_memberships(s, user.id)
        if not memberships:
            raise AuthError("No active organizations found")

        user_info = {"id": user.id, "email": user.email, "name": user.name}

        if len(memberships) == 1:
            m = memberships[0]
            access, refresh = _issue_tokens(s, user, m)
            return LoginResult(
                user=user_info,
                needs_org_selection=False,
                access_token=access,
                refresh_token=refresh,
                organizations=[_membership_dict(m)],
                current_org=_membership_dict(m),
            )

        return LoginResult(
            user=user_info,
            needs_org_selection=True,
            access_token=create_org_selection_token(user.id, extra={"email": user.email}),
            organizations=[_membership_dict(m) for m in memberships],
        )


def select_organization(user_id: str, org_id: str) -> LoginResult:
    with db_session() as s:
        user = s.get(User, user_id)
        if not user or not user.is_active:
            raise AuthError("User not found")

        m = next((m for m in _active_memberships(s, user.id) if m.org_id == org_id), None)
        if m is None:
            raise ValueError("Organization not found or inactive")

        access, refresh = _issue_tokens(s, user, m)
        return LoginResult(
            user={"id": user.id, "email": user.email, "name": user.name},
            needs_org_selection=False,
            access_token=access,
            refresh_token=refresh,
            current_org=_membership_dict(m),
        )


def refresh_access_token(refresh_token: str) -> str:
    claims = get_claims(refresh_token, typ=REFRESH)
    if not claims:
        raise AuthError("Invalid refresh token")

    with db_session() as s:
        user = s.get(User, claims["sub"])
        if not user or not user.is_active or not token_matches(refresh_token, user.refresh_token_hash):
            raise AuthError("Invalid refresh token")
        if user.refresh_token_expires_at and user.refresh_token_expires_at < utcnow():
            raise AuthError("Refresh token expired")

        m = get_active_membership(s, user.id, claims.get("org_id"))
        if m is None:
            raise AuthError("Membership no longer active")
        return create_access_token(user.id, m.org_id, m.role.value, extra={"email": user.email})


def logout(user_id: str) -> None:
    with db_session() as s:
        user = s.get(User, user_id)
        if user:
            user.refresh_token_hash = None
            user.refresh_token_expires_at = None


def get_active_membership(s, user_id: str, org_id: str | None) -> UserOrganization | None:
    if not org_id:
        return None
    return next((m for m in _active_memberships(s, user_id) if m.org_id == org_id), None)


def resolve_current_user(user_id: str, org_id: str | None) -> CurrentUser | None:
    """Principal for an access token, None if the user or the membership is no longer active."""
    with db_session() as s:
        user = s.get(User, user_id)
        if not user or not user.is_active:
            return None
        m = get_active_membership(s, user.id, org_id)
        if m is None:
            return None
        return CurrentUser(id=user.id, email=user.email, name=user.name, org_id=m.org_id, role=m.role)


def get_user_by_id(user_id: str) -> User | None:
    with db_session() as s:
        return s.get(User, user_id)


# =========================
# Members (users of an organization)
# =========================
def list_members(org_id: str, role: UserRole | None = None) -> list[dict]:
    with db_session() as s:
        q = select(UserOrganization).where(UserOrganization.org_id == org_id)
        if role is not None:
            q = q.where(UserOrganization.role == role)
        members = list(s.scalars(q))
        return sorted((_member_dict(m) for m in members), key=lambda d: d["name"].lower())


def get_member(org_id: str, user_id: str) -> dict:
    with db_session() as s:
        m = _find_membership(s, org_id, user_id)
        return _member_dict(m)


def _find_membership(s, org_id: str, user_id: str) -> UserOrganization:
    m = s.execute(
        select(UserOrganization).where(UserOrganization.org_id == org_id, UserOrganization.user_id == user_id)
    ).scalar_one_or_none()
    if m is None:
        raise NotFoundError("User")
    return m


def _check_percentage(percentage: int | None) -> None:
    if percentage is not None and not 0 <= percentage <= 100:
        raise ValueError("Commission percentage must be between 0 and 100.")


def add_member(
    org_id: str,
    email: str,
    name: str,
    role: UserRole,
    password: str | None = None,
    phone: str | None = None,
    percentage: int | None = None,
) -> dict:
    """
    Add a user to the organization.
    An existing account (same email) just gets a new membership.
    """
    email = _normalize_email(email)
    if not email or not (name or "").strip():
        raise ValueError("Email and name are required.")
    _check_percentage(percentage)

    with db_session() as s:
        user = s.execute(select(User).where(User.email == email)).scalar_one_or_none()
        if user is None:
            _check_password(password or "")
            user = User(email=email, name=name.strip(), phone=phone, password_hash=hash_password(password))
            s.add(user)
            s.flush()
        elif s.execute(
            select(UserOrganization).where(UserOrganization.user_id == user.id, UserOrganization.org_id == org_id)
        ).scalar_one_or_none():
            raise ValueError("User is already a member of this organization.")

        m = UserOrganization(
            user_id=user.id,
            org_id=org_id,
            role=role,
            percentage=percentage if role == UserRole.DENTIST else None,
            wallet=Decimal("0.00"),
        )
        s.add(m)
        s.flush()
        s.refresh(m)
        return _member_dict(m)


def update_member(
    org_id: str,
    user_id: str,
    role: UserRole | None = None,
    status: MembershipStatus | None = None,
    percentage: int | None = None,
    name: str | None = None,
    phone: str | None = None,
    acting_user_id: str | None = None,
) -> dict:
    _check_percentage(percentage)
    with db_session() as s:
        m = _find_membership(s, org_id, user_id)
        if acting_user_id == user_id and (
            (role is not None and role != UserRole.ADMIN) or status == MembershipStatus.INACTIVE
        ):
            raise ValueError("You cannot demote or deactivate yourself.")
        if role is not None:
            m.role = role
        if status is not None:
            m.status = status
        if percentage is not None:
            m.percentage = percentage
        if name is not None and name.strip():
            m.user.name = name.strip()
        if phone is not None:
            m.user.phone = phone.strip() or None
        return _member_dict(m)


def deactivate_member(org_id: str, user_id: str, acting_user_id: str | None = None) -> bool:
    update_member(org_id, user_id, status=MembershipStatus.INACTIVE, acting_user_id=acting_user_id)
    return True


def update_profile(user_id: str, name: str | None = None, phone: str | None = None,
                   current_password: str | None = None, new_password: str | None = None) -> dict:
    with db_session() as s:
        user = s.get(User, user_id)
        if not user:
            raise NotFoundError("User")
        if name is not None and name.strip():
            user.name = name.strip()
        if phone is not None:
            user.phone = phone.strip() or None
        if new_password:
            if not current_password or not verify_password(current_password, user.password_hash):
                raise ValueError("Current password is not correct.")
            _check_password(new_password)
            user.password_hash = hash_password(new_password)
            # invalidate sessions on other devices
            user.refresh_token_hash = None
        return {"id": user.id, "email": user.email, "name": user.name, "phone": user.phone}
