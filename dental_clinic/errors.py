from __future__ import annotations


class NotFoundError(LookupError):
    """Row missing, soft-deleted, or owned by another organization."""

    def __init__(self, what: str):
        super().__init__(f"{what} not found")
        self.what = what


class ForbiddenError(PermissionError):
    pass


class AuthError(Exception):
    """Invalid credentials or token (HTTP 401)."""
