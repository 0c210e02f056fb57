from __future__ import annotations

from typing import Any, Dict, Optional


class ConstraintViolation(Exception):
    """A write was refused by a store rule such as "users cannot follow themselves".

    ``detail`` names the offending fields or ids and is safe to return to
    clients; it never carries credentials.
    """

    status_code = 409

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class DuplicateEntry(ConstraintViolation):
    """A unique field (user email or username) is already taken."""


class MissingReference(ConstraintViolation):
    """A write referenced a user or chat that does not exist."""

    status_code = 404


__all__ = ["ConstraintViolation", "DuplicateEntry", "MissingReference"]
