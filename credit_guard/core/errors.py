"""
Error taxonomy.

Every request-terminating condition is a ``CreditGuardError`` carrying a
machine-readable code and a human message. ``to_dict`` renders the
response envelope returned to callers.
"""

from typing import Any, Dict, Optional


class CreditGuardError(Exception):
    """Base class for all request-level failures."""
    code = "INTERNAL_ERROR"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        envelope: Dict[str, Any] = {
            "success": False,
            "error": self.code,
            "message": self.message,
        }
        if self.details:
            envelope["data"] = self.details
        return envelope


class InvalidRequest(CreditGuardError):
    code = "INVALID_REQUEST"


class QuotaExceeded(CreditGuardError):
    code = "QUOTA_EXCEEDED"


class PaymentRequired(CreditGuardError):
    code = "PAYMENT_REQUIRED"


class PaymentInvalid(CreditGuardError):
    code = "PAYMENT_INVALID"


class OrderExpired(CreditGuardError):
    code = "ORDER_EXPIRED"


class IpDeviceLimit(CreditGuardError):
    code = "IP_DEVICE_LIMIT"

    def __init__(self, message: str, device_count: int):
        super().__init__(message, {"device_count": device_count})
        self.device_count = device_count


class RateLimited(CreditGuardError):
    """Raised by the request limiter or when the provider reports rate limiting."""
    code = "RATE_LIMITED"

    def __init__(self, message: str, retry_after_seconds: Optional[int] = None):
        details = {}
        if retry_after_seconds is not None:
            details["retry_after_seconds"] = retry_after_seconds
        super().__init__(message, details)
        self.retry_after_seconds = retry_after_seconds


class CredentialPoolExhausted(CreditGuardError):
    code = "CREDENTIAL_POOL_EXHAUSTED"


class SynthesisFailed(CreditGuardError):
    code = "SYNTHESIS_FAILED"


def ok(data: Any) -> Dict[str, Any]:
    """Build the success envelope."""
    return {"success": True, "data": data}
