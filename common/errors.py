"""
errors.py - Error Taxonomy
Common: Shared utilities and models

Transient backend errors (BackendUnavailable, InsufficientResources) are
absorbed by the resolver and turned into a fallback.  Duplicate and storage
errors always reach the caller.
"""

from typing import Optional, Dict, Any


class IdentityError(Exception):
    """Base class for every error raised by the identity engine."""

    error_code = "IDENTITY"

    def __init__(self, message: str, context: Optional[Dict[str, Any]] = None):
        self.message = message
        self.context = context or {}
        super().__init__(message)

    def __str__(self) -> str:
        if not self.context:
            return self.message
        ctx = ", ".join(f"{k}={v}" for k, v in self.context.items())
        return f"{self.message} [{ctx}]"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error_type": self.__class__.__name__,
            "error_code": self.error_code,
            "message": self.message,
            "context": self.context,
        }


# ─────────────────────────────────────────────
# DESCRIPTOR ERRORS
# ─────────────────────────────────────────────
class InvalidDescriptor(IdentityError):
    error_code = "DESCRIPTOR_INVALID"


class DimensionMismatch(IdentityError):
    error_code = "DESCRIPTOR_DIMENSION"

    def __init__(self, left: int, right: int):
        super().__init__(
            f"Descriptor lengths differ: {left} != {right}",
            {"left": left, "right": right},
        )


# ─────────────────────────────────────────────
# BACKEND ERRORS (transient)
# ─────────────────────────────────────────────
class BackendError(IdentityError):
    """A backend could not answer.  Never fatal for the engine."""
    error_code = "BACKEND"


class BackendUnavailable(BackendError):
    error_code = "BACKEND_UNAVAILABLE"


class InsufficientResources(BackendError):
    error_code = "BACKEND_BUDGET"


# ─────────────────────────────────────────────
# REGISTRATION ERRORS (surface to the caller)
# ─────────────────────────────────────────────
class RegistrationError(IdentityError):
    error_code = "REGISTRATION"


class DuplicateAccount(RegistrationError):
    error_code = "DUPLICATE_ACCOUNT"

    def __init__(self, account_key: str, backend: Optional[str] = None):
        context = {"account_key": account_key}
        if backend:
            context["backend"] = backend
        super().__init__(
            "This email is already registered. Please use a different email address.",
            context,
        )


class DuplicateBiometric(RegistrationError):
    error_code = "DUPLICATE_BIOMETRIC"

    def __init__(self, backend: str, distance: Optional[float] = None):
        context: Dict[str, Any] = {"backend": backend}
        if distance is not None:
            context["distance"] = round(distance, 6)
        super().__init__(
            "This face is already enrolled. Cannot create multiple accounts with the same face.",
            context,
        )


# ─────────────────────────────────────────────
# STORAGE ERRORS (fatal)
# ─────────────────────────────────────────────
class StorageError(IdentityError):
    """The local store is the system of last resort; failures are fatal."""
    error_code = "STORAGE"
