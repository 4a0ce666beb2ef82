"""
Typed errors raised by the fleet components.

Every error carries a stable machine code, a human message, an HTTP status and
structured details, so the HTTP boundary can render it without string parsing:

    try:
        enroll_device(db, report)
    except FleetError as e:
        if e.code == "CUSTOMER_NOT_FOUND":
            ...
"""
from typing import Any, Dict, Optional


class FleetError(Exception):
    status_code = 500
    default_code = "INTERNAL_ERROR"

    _default_messages = {
        "VALIDATION_FAILED": "Request validation failed",
        "INVALID_COMMAND": "Unsupported remote command",
        "INVALID_ENROLLMENT_TOKEN": "Enrollment token is invalid or expired",
        "NOT_AUTHENTICATED": "Not authenticated",
        "INVALID_CREDENTIALS": "Invalid credentials",
        "FORBIDDEN": "You do not have permission to perform this action",
        "QUOTA_EXCEEDED": "Device limit reached",
        "CUSTOMER_NOT_FOUND": "Customer not found",
        "DEVICE_NOT_FOUND": "Device not found",
        "ADMIN_NOT_FOUND": "Admin not found",
        "DUPLICATE_IMEI": "A customer with this IMEI already exists",
        "DUPLICATE_CUSTOMER_ID": "A customer with this ID already exists",
        "DUPLICATE_EMAIL": "Email already registered",
        "INVALID_TRANSITION": "Invalid device state transition",
        "APK_NOT_FOUND": "Agent APK is missing on the server",
        "CHECKSUM_FAILED": "Failed to compute the agent APK checksum",
        "STORE_UNAVAILABLE": "Data store is unavailable",
        "PROVISIONING_MISCONFIGURED": "Provisioning base URL is not configured",
    }

    def __init__(self, code: Optional[str] = None, message: Optional[str] = None, **details: Any):
        self.code = code or self.default_code
        self.message = message or self._default_messages.get(self.code, self.code)
        self.details: Dict[str, Any] = details
        super().__init__(self.message)

    def as_dict(self) -> Dict[str, Any]:
        body = {"success": False, "error": self.code, "message": self.message}
        body.update(self.details)
        return body

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.code!r}, {self.message!r})"


class ValidationFailed(FleetError):
    status_code = 400
    default_code = "VALIDATION_FAILED"


class AuthenticationFailed(FleetError):
    status_code = 401
    default_code = "NOT_AUTHENTICATED"


class PermissionDenied(FleetError):
    status_code = 403
    default_code = "FORBIDDEN"


class QuotaExceeded(FleetError):
    status_code = 403
    default_code = "QUOTA_EXCEEDED"

    def __init__(self, current: int, limit: int):
        super().__init__(
            "QUOTA_EXCEEDED",
            f"You have reached your device limit of {limit}. "
            f"Contact support to increase your limit.",
            current=current,
            limit=limit,
        )


class NotFound(FleetError):
    status_code = 404
    default_code = "CUSTOMER_NOT_FOUND"


class Conflict(FleetError):
    status_code = 409
    default_code = "DUPLICATE_IMEI"


class InvalidTransition(Conflict):
    default_code = "INVALID_TRANSITION"

    def __init__(self, from_state: str, to_state: str, device_id: Optional[str] = None):
        message = f"Device cannot move from {from_state} to {to_state}"
        if from_state == "REMOVED":
            message += "; a removed device must be re-provisioned with a new QR code"
        super().__init__(
            "INVALID_TRANSITION",
            message,
            from_state=from_state,
            to_state=to_state,
            device_id=device_id,
        )


class InfrastructureError(FleetError):
    status_code = 500
    default_code = "STORE_UNAVAILABLE"

    def __init__(self, code: Optional[str] = None, message: Optional[str] = None, **details: Any):
        super().__init__(code, message, **details)
        if self.code == "STORE_UNAVAILABLE":
            self.status_code = 503
