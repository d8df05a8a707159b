from __future__ import annotations

from typing import Any, Dict, List, Optional


class BaseAPIException(Exception):
    """Base exception for all API errors."""

    def __init__(
        self,
        message: str,
        status_code: int = 500,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        self.message = message
        self.status_code = status_code
        self.code = code or self.__class__.__name__
        self.details = details or {}
        super().__init__(self.message)


class AuthenticationError(BaseAPIException):
    """Authentication failed."""
    def __init__(self, message: str = "Authentication failed", **kwargs):
        super().__init__(message, status_code=401, **kwargs)


class AuthorizationError(BaseAPIException):
    """Authorization failed."""
    def __init__(self, message: str = "Authorization failed", **kwargs):
        super().__init__(message, status_code=403, **kwargs)


class NotFoundError(BaseAPIException):
    """Resource not found."""
    def __init__(self, message: str = "Resource not found", **kwargs):
        super().__init__(message, status_code=404, **kwargs)


class ValidationError(BaseAPIException):
    """Validation error."""
    def __init__(self, message: str = "Validation error", **kwargs):
        super().__init__(message, status_code=422, **kwargs)


class ConflictError(BaseAPIException):
    """Resource conflict."""
    def __init__(self, message: str = "Resource conflict", **kwargs):
        super().__init__(message, status_code=409, **kwargs)


class BusinessRuleError(BaseAPIException):
    """Business rule violation."""
    def __init__(self, message: str = "Business rule violation", **kwargs):
        super().__init__(message, status_code=400, **kwargs)


class RateLimitError(BaseAPIException):
    """Rate limit exceeded."""
    def __init__(self, message: str = "Rate limit exceeded", retry_after: Optional[int] = None, **kwargs):
        super().__init__(message, status_code=429, **kwargs)
        self.retry_after = retry_after


class DatabaseError(BaseAPIException):
    """Database error."""
    def __init__(self, message: str = "Database error", **kwargs):
        super().__init__(message, status_code=500, **kwargs)


class ExternalServiceError(BaseAPIException):
    """External service error."""
    def __init__(self, message: str = "External service error", **kwargs):
        super().__init__(message, status_code=502, **kwargs)


class AlreadyLockedError(ConflictError):
    """Another dealer holds an active lock on the application."""
    def __init__(self, message: str = "Application is locked by another dealer", **kwargs):
        kwargs.setdefault("code", "already_locked")
        super().__init__(message, **kwargs)


class PaymentSetupFailedError(ExternalServiceError):
    """The payment gateway refused to create a checkout session."""
    def __init__(self, message: str = "Unable to start checkout", **kwargs):
        kwargs.setdefault("code", "payment_setup_failed")
        super().__init__(message, **kwargs)


class SignatureInvalidError(BaseAPIException):
    """Webhook payload failed signature verification."""
    def __init__(self, message: str = "Invalid webhook signature", **kwargs):
        kwargs.setdefault("code", "signature_invalid")
        super().__init__(message, status_code=400, **kwargs)


class PersistenceError(DatabaseError):
    """A store read or write failed; the whole action may be retried."""
    retryable = True

    def __init__(self, message: str = "Unable to save changes, please retry", **kwargs):
        kwargs.setdefault("code", "persistence_error")
        super().__init__(message, **kwargs)


class PartialReconciliationFailure(BaseAPIException):
    """One or more leads in a paid checkout could not be applied."""

    def __init__(
        self,
        session_id: str,
        failed_lead_ids: List[str],
        message: str = "Checkout was only partially applied",
        **kwargs,
    ):
        kwargs.setdefault("code", "partial_reconciliation")
        details = kwargs.pop("details", None) or {}
        details.update({"session_id": session_id, "failed_lead_ids": list(failed_lead_ids)})
        super().__init__(message, status_code=500, details=details, **kwargs)
        self.session_id = session_id
        self.failed_lead_ids = list(failed_lead_ids)
