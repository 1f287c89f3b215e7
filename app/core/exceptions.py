"""
Custom Exception Hierarchy

Provides structured exceptions for consistent error handling across the application.
Business-rule rejections (invalid queue choice, ticket already claimed) are not
exceptions: services return them as ordinary results.
"""
from typing import Any
from enum import Enum


class ErrorCode(str, Enum):
    """Standard error codes for API responses"""

    # General errors (1xxx)
    INTERNAL_ERROR = "ERR_1000"
    VALIDATION_ERROR = "ERR_1001"
    NOT_FOUND = "ERR_1002"
    ALREADY_EXISTS = "ERR_1003"
    UNAUTHORIZED = "ERR_1004"
    FORBIDDEN = "ERR_1005"
    RATE_LIMITED = "ERR_1006"

    # Connection / session errors (2xxx)
    CONNECTION_NOT_FOUND = "ERR_2001"
    INITIALIZATION_IN_PROGRESS = "ERR_2002"
    INITIALIZATION_BACKOFF = "ERR_2003"
    QR_NOT_AVAILABLE = "ERR_2004"

    # Ticket errors (3xxx)
    TICKET_NOT_FOUND = "ERR_3001"
    TICKET_ACCESS_DENIED = "ERR_3002"
    MESSAGE_NOT_FOUND = "ERR_3004"
    QUEUE_NOT_FOUND = "ERR_3005"

    # Transport errors (5xxx)
    TRANSPORT_ERROR = "ERR_5001"
    TRANSPORT_FATAL = "ERR_5002"
    TRANSPORT_UNAVAILABLE = "ERR_5003"

    # State machine errors (6xxx)
    INVALID_STATE_TRANSITION = "ERR_6001"


class AppException(Exception):
    """Base exception for all application errors"""

    def __init__(
        self,
        message: str,
        error_code: ErrorCode = ErrorCode.INTERNAL_ERROR,
        status_code: int = 500,
        details: dict[str, Any] | None = None
    ):
        super().__init__(message)
        self.message = message
        self.error_code = error_code
        self.status_code = status_code
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        """Convert exception to dictionary for API response"""
        return {
            "error": {
                "code": self.error_code.value,
                "message": self.message,
                "details": self.details
            }
        }


class ValidationException(AppException):
    """Raised when input validation fails"""

    def __init__(
        self,
        message: str,
        field: str | None = None,
        details: dict[str, Any] | None = None
    ):
        super().__init__(
            message=message,
            error_code=ErrorCode.VALIDATION_ERROR,
            status_code=400,
            details=details
        )
        if field:
            self.details["field"] = field


class NotFoundException(AppException):
    """Raised when a requested resource is not found"""

    def __init__(
        self,
        resource: str,
        identifier: Any,
        error_code: ErrorCode = ErrorCode.NOT_FOUND
    ):
        super().__init__(
            message=f"{resource} not found: {identifier}",
            error_code=error_code,
            status_code=404,
            details={"resource": resource, "identifier": str(identifier)}
        )


# ─── Connections / sessions ─────────────────────────────────────────────────

class ConnectionNotFoundError(NotFoundException):
    """Raised when a connection id does not exist"""

    def __init__(self, connection_id: int):
        super().__init__("Connection", connection_id, ErrorCode.CONNECTION_NOT_FOUND)


class InitializationInProgressError(AppException):
    """Raised when a second initialization is requested while one is in flight"""

    def __init__(self, connection_id: int):
        super().__init__(
            message=f"Initialization already in progress for connection {connection_id}",
            error_code=ErrorCode.INITIALIZATION_IN_PROGRESS,
            status_code=409,
            details={"connection_id": connection_id},
        )


class InitializationBackoffError(AppException):
    """Raised when a connection accumulated too many failed initializations"""

    def __init__(self, connection_id: int, retry_after_seconds: float, failures: int):
        super().__init__(
            message=(
                f"Connection {connection_id} failed {failures} times, "
                f"retry in {retry_after_seconds:.0f}s"
            ),
            error_code=ErrorCode.INITIALIZATION_BACKOFF,
            status_code=429,
            details={
                "connection_id": connection_id,
                "retry_after_seconds": round(retry_after_seconds, 1),
                "failures": failures,
            },
        )


class QrCodeNotAvailableError(AppException):
    """Raised when polling a QR code that does not exist"""

    def __init__(self, connection_id: int, reason: str | None = None):
        super().__init__(
            message=f"No QR code available for connection {connection_id}",
            error_code=ErrorCode.QR_NOT_AVAILABLE,
            status_code=404,
            details={"connection_id": connection_id, "last_error": reason},
        )


# ─── Tickets ────────────────────────────────────────────────────────────────

class TicketNotFoundError(NotFoundException):
    """Raised when ticket is not found"""

    def __init__(self, ticket_id: int):
        super().__init__("Ticket", ticket_id, ErrorCode.TICKET_NOT_FOUND)


class TicketAccessDeniedError(AppException):
    """Raised when an agent may not change a ticket"""

    def __init__(self, ticket_id: int, user_id: int, reason: str):
        super().__init__(
            message=f"Agent {user_id} may not modify ticket {ticket_id}: {reason}",
            error_code=ErrorCode.TICKET_ACCESS_DENIED,
            status_code=403,
            details={"ticket_id": ticket_id, "user_id": user_id, "reason": reason},
        )


class MessageNotFoundError(NotFoundException):
    """Raised when a message id does not exist"""

    def __init__(self, message_id: int):
        super().__init__("Message", message_id, ErrorCode.MESSAGE_NOT_FOUND)


class QueueNotFoundError(NotFoundException):
    """Raised when a queue id does not exist"""

    def __init__(self, queue_id: int):
        super().__init__("Queue", queue_id, ErrorCode.QUEUE_NOT_FOUND)


# ─── Transport ──────────────────────────────────────────────────────────────

class ExternalServiceException(AppException):
    """Base exception for external service errors"""

    def __init__(
        self,
        service_name: str,
        message: str,
        error_code: ErrorCode = ErrorCode.TRANSPORT_ERROR,
        details: dict[str, Any] | None = None
    ):
        super().__init__(
            message=message,
            error_code=error_code,
            status_code=503,
            details=details
        )
        self.details["service"] = service_name


class TransportError(ExternalServiceException):
    """Transient transport failure - already retried locally, never tears the session down"""

    is_fatal = False

    def __init__(
        self,
        message: str,
        details: dict[str, Any] | None = None,
        error_code: ErrorCode = ErrorCode.TRANSPORT_ERROR,
    ):
        super().__init__(
            service_name="whatsapp_gateway",
            message=f"Transport error: {message}",
            error_code=error_code,
            details=details
        )

    @classmethod
    def from_response(
        cls,
        operation: str,
        response: Any,
        *,
        message: str | None = None,
        max_response_chars: int = 500
    ) -> "TransportError":
        """
        יצירת שגיאה מתוך HTTP response בצורה עקבית.

        Args:
            operation: שם הפעולה (send, start, state)
            response: אובייקט response (httpx.Response)
            message: הודעת שגיאה מותאמת (אם לא סופק - נבנית אוטומטית)
            max_response_chars: אורך מקסימלי לשמירת response_text
        """
        status_code = getattr(response, "status_code", None)
        response_text = getattr(response, "text", "") or ""
        return cls(
            message=message or f"{operation} returned status {status_code}",
            details={
                "operation": operation,
                "status_code": status_code,
                "response_text": response_text[:max_response_chars],
            },
        )


class TransportFatalError(TransportError):
    """Critical transport failure - the underlying automated session is likely unusable"""

    is_fatal = True

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(message, details=details, error_code=ErrorCode.TRANSPORT_FATAL)


class TransportUnavailableError(TransportError):
    """No live, connected client is registered for the connection"""

    def __init__(self, connection_id: int, state: str | None = None):
        super().__init__(
            f"connection {connection_id} has no usable session",
            details={"connection_id": connection_id, "state": state},
            error_code=ErrorCode.TRANSPORT_UNAVAILABLE,
        )


# ─── State machine ──────────────────────────────────────────────────────────

class StateMachineException(AppException):
    """Base exception for state machine errors"""

    def __init__(
        self,
        message: str,
        error_code: ErrorCode,
        details: dict[str, Any] | None = None
    ):
        super().__init__(
            message=message,
            error_code=error_code,
            status_code=400,
            details=details
        )


class InvalidStateTransitionError(StateMachineException):
    """Raised when state transition is not allowed"""

    def __init__(self, current_state: str, target_state: str, ticket_id: int | None = None):
        super().__init__(
            message=f"Invalid transition from '{current_state}' to '{target_state}'",
            error_code=ErrorCode.INVALID_STATE_TRANSITION,
            details={
                "current_state": current_state,
                "target_state": target_state,
                "ticket_id": ticket_id
            }
        )


# טקסטים שמעידים שה-session האוטומטי מת (דפדפן נסגר, context נהרס)
CRITICAL_TRANSPORT_MARKERS = (
    "session closed",
    "protocol error",
    "target closed",
    "browser has disconnected",
    "execution context was destroyed",
)


def is_critical_transport_error(error: BaseException | str) -> bool:
    """Whether a transport failure indicates the underlying session is broken."""
    if isinstance(error, TransportError) and error.is_fatal:
        return True
    text = str(error).lower()
    return any(marker in text for marker in CRITICAL_TRANSPORT_MARKERS)
