"""Domain errors raised by the lifecycle services.

Services never raise ``HTTPException``; the request layer translates these
through ``app.api.errors``.
"""

from datetime import datetime

from fastapi import status


class LifecycleError(Exception):
    code = "LIFECYCLE_ERROR"
    status_code = status.HTTP_400_BAD_REQUEST
    retryable = False

    def __init__(self, message: str, **context):
        super().__init__(message)
        self.message = message
        self.context = context

    def to_dict(self) -> dict:
        payload = {"success": False, "error": self.code, "detail": self.message}
        if self.context:
            payload["context"] = {
                key: value.isoformat() if isinstance(value, datetime) else value
                for key, value in self.context.items()
            }
        if self.retryable:
            payload["retryable"] = True
        return payload


class ValidationFailed(LifecycleError):
    code = "VALIDATION_FAILED"


class MissingCustomDays(ValidationFailed):
    code = "MISSING_CUSTOM_DAYS"


class InvalidTransition(ValidationFailed):
    code = "INVALID_TRANSITION"


class EditWindowExpired(ValidationFailed):
    code = "EDIT_WINDOW_EXPIRED"


class AliasTaken(LifecycleError):
    code = "ALIAS_TAKEN"
    status_code = status.HTTP_409_CONFLICT


class AliasConflict(AliasTaken):
    code = "ALIAS_CONFLICT"


class LimitExceeded(LifecycleError):
    code = "LIMIT_EXCEEDED"


class ProtectionSlotsFull(LimitExceeded):
    code = "PROTECTION_SLOTS_FULL"


class NotFound(LifecycleError):
    code = "NOT_FOUND"
    status_code = status.HTTP_404_NOT_FOUND


class AccessDenied(LifecycleError):
    code = "ACCESS_DENIED"
    status_code = status.HTTP_403_FORBIDDEN


class NotUsable(LifecycleError):
    code = "IDENTITY_NOT_USABLE"


class ScheduleConflict(LifecycleError):
    """Auto-delete would fire after the identity itself expires."""

    code = "SCHEDULE_CONFLICT"

    def __init__(self, message: str, auto_delete_at: datetime, expires_at: datetime):
        super().__init__(message, auto_delete_at=auto_delete_at, expires_at=expires_at)
        self.auto_delete_at = auto_delete_at
        self.expires_at = expires_at


InvalidSchedule = ScheduleConflict


class ProtectedIdentity(LifecycleError):
    code = "PROTECTED_IDENTITY"


class CannotUnprotectDefault(ProtectedIdentity):
    code = "CANNOT_UNPROTECT_DEFAULT"


class NoReplacementDefault(LifecycleError):
    code = "NO_REPLACEMENT_DEFAULT"


class ForwardChainExceeded(LifecycleError):
    code = "FORWARD_CHAIN_EXCEEDED"


class ForwardingDisabled(LifecycleError):
    code = "FORWARDING_DISABLED"
    status_code = status.HTTP_403_FORBIDDEN


class AttributionRequired(LifecycleError):
    code = "ATTRIBUTION_REQUIRED"


class ActiveUsageConflict(LifecycleError):
    code = "ACTIVE_USAGE_CONFLICT"
    status_code = status.HTTP_409_CONFLICT


class TransactionFailed(LifecycleError):
    code = "TRANSACTION_FAILED"
    status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    retryable = True
