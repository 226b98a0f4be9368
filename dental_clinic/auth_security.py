from __future__ import annotations

import hashlib
import hmac
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any

from jose import JWTError, jwt
from passlib.context import CryptContext

from .config import ACCESS_TOKEN_EXPIRE_MINUTES, JWT_ALG, JWT_SECRET, REFRESH_TOKEN_EXPIRE_DAYS

# token "typ" claim
ACCESS = "access"
ORG_SELECTION = "org_selection"  # intermediate token: only valid for select-organization
REFRESH = "refresh"
MEDICAL_HISTORY = "medical_history"  # patient link for the public medical history form
MEDICAL_HISTORY_LINK_DAYS = 7

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")


def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(password: str, password_hash: str) -> bool:
    return pwd_context.verify(password, password_hash)


def hash_token(token: str) -> str:
    # refresh tokens are longer than bcrypt's 72-byte input limit
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def token_matches(token: str, token_hash: str | None) -> bool:
    return bool(token_hash) and hmac.compare_digest(hash_token(token), token_hash)


def _encode(subject: str, typ: str, lifetime: timedelta, extra: dict[str, Any] | None = None) -> str:
    """
    subject: the user id.
    Uses timezone-aware datetimes to avoid offset bugs on timestamps.
    """
    now = datetime.now(timezone.utc)
    expire = now + lifetime

    payload: dict[str, Any] = {
        "sub": subject,
        "typ": typ,
        "iat": int(now.timestamp()),
        "exp": int(expire.timestamp()),
        "jti": uuid.uuid4().hex,
    }
    if extra:
        payload.update(extra)

    return jwt.encode(payload, JWT_SECRET, algorithm=JWT_ALG)


def create_access_token(subject: str, org_id: str, role: str, extra: dict[str, Any] | None = None) -> str:
    claims = {"org_id": org_id, "role": role}
    if extra:
        claims.update(extra)
    return _encode(subject, ACCESS, timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES), claims)


def create_org_selection_token(subject: str, extra: dict[str, Any] | None = None) -> str:
    return _encode(subject, ORG_SELECTION, timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES), extra)


def create_refresh_token(subject: str, org_id: str, role: str) -> str:
    return _encode(subject, REFRESH, timedelta(days=REFRESH_TOKEN_EXPIRE_DAYS), {"org_id": org_id, "role": role})


def create_medical_history_token(patient_id: str, org_id: str) -> str:
    return _encode(patient_id, MEDICAL_HISTORY, timedelta(days=MEDICAL_HISTORY_LINK_DAYS), {"org_id": org_id})


def refresh_expiry() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None) + timedelta(days=REFRESH_TOKEN_EXPIRE_DAYS)


def decode_token(token: str) -> dict[str, Any]:
    return jwt.decode(token, JWT_SECRET, algorithms=[JWT_ALG])


def get_claims(token: str, typ: str = ACCESS) -> dict[str, Any] | None:
    """Claims of a valid token of the given type, None otherwise."""
    try:
        payload = decode_token(token)
    except JWTError:
        return None
    if payload.get("typ") != typ or not payload.get("sub"):
        return None
    return payload


def get_subject(token: str) -> str | None:
    claims = get_claims(token)
    return claims.get("sub") if claims else None
