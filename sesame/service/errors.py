from __future__ import annotations

from contextlib import contextmanager
from typing import Iterator, Optional

from sesame.storage.errors import ConstraintViolation, StorageError


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each class carries an HTTP status_code and a stable error_code:
    - unauthorized (401)
    - forbidden (403)
    - not_found (404)
    - validation_error (400)
    - conflict (409)
    - server_error (500)
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class ValidationError(ServiceError):
    """Malformed email, phone or name input (400)."""
    status_code = 400
    error_code = "validation_error"


class InvalidCredentialError(ServiceError):
    """Any failed authentication attempt (401).

    The message is always generic so callers cannot tell an unknown email from
    a used token or a missing ceremony.
    """
    status_code = 401
    error_code = "unauthorized"

    def __init__(self, reason: str = "invalid_credentials") -> None:
        super().__init__("invalid credentials")
        # Internal only; never rendered into a response.
        self.reason = reason


class ReplayDetectedError(ServiceError):
    """A passkey signature counter failed to increase (401, alerted).

    Rendered like a credential failure, but logged at error level because it
    indicates a cloned authenticator.
    """
    status_code = 401
    error_code = "unauthorized"

    def __init__(self, credential_id: str, stored_count: int, presented_count: int) -> None:
        super().__init__("invalid credentials")
        self.credential_id = credential_id
        self.stored_count = stored_count
        self.presented_count = presented_count


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Duplicate email or account link (409)."""
    status_code = 409
    error_code = "conflict"


class InternalError(ServiceError):
    """Storage or collaborator failure (500)."""
    status_code = 500
    error_code = "server_error"


class ConsistencyError(InternalError):
    """Dangling reference, e.g. a session or identity whose user is gone."""


@contextmanager
def translate_storage_errors(operation: str) -> Iterator[None]:
    try:
        yield
    except ConstraintViolation as exc:
        raise ConflictError(exc.message, detail=exc.detail) from exc
    except StorageError as exc:
        raise InternalError(
            "storage failure", detail={"operation": operation}
        ) from exc


__all__ = [
    "ServiceError",
    "ValidationError",
    "InvalidCredentialError",
    "ReplayDetectedError",
    "NotFoundError",
    "ConflictError",
    "InternalError",
    "ConsistencyError",
    "translate_storage_errors",
]
