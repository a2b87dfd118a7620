"""
Custom Exception Hierarchy

Structured exceptions shared by the API layer and the chatbot engine.
"""
from typing import Any
from enum import Enum


class ErrorCode(str, Enum):
    """Standard error codes for API responses"""

    # General errors (1xxx)
    INTERNAL_ERROR = "ERR_1000"
    VALIDATION_ERROR = "ERR_1001"
    NOT_FOUND = "ERR_1002"
    UNAUTHORIZED = "ERR_1004"
    FORBIDDEN = "ERR_1005"

    # Session errors (2xxx)
    SESSION_NOT_FOUND = "ERR_2001"
    SESSION_CLOSED = "ERR_2002"
    INVALID_SESSION_TRANSITION = "ERR_2003"

    # Chatbot configuration errors (3xxx)
    CHATBOT_NOT_CONFIGURED = "ERR_3001"
    TEMPLATE_NOT_FOUND = "ERR_3002"
    INVALID_FLOW_DEFINITION = "ERR_3003"

    # Business action errors (4xxx)
    BUSINESS_ACTION_FAILED = "ERR_4001"
    SLOT_UNAVAILABLE = "ERR_4002"

    # External service errors (5xxx)
    WHATSAPP_ERROR = "ERR_5002"
    EXTERNAL_SERVICE_UNAVAILABLE = "ERR_5003"


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


class SessionNotFoundError(NotFoundException):
    """Raised when a conversation session does not exist"""

    def __init__(self, session_id: str):
        super().__init__(
            resource="ConversationSession",
            identifier=session_id,
            error_code=ErrorCode.SESSION_NOT_FOUND
        )


class InvalidSessionTransitionError(AppException):
    """Raised when a session status change is not allowed"""

    def __init__(self, session_id: str, current_status: str, target_status: str):
        super().__init__(
            message=f"Session {session_id} cannot move from '{current_status}' to '{target_status}'",
            error_code=ErrorCode.INVALID_SESSION_TRANSITION,
            status_code=409,
            details={
                "session_id": session_id,
                "current_status": current_status,
                "target_status": target_status,
            }
        )


class ChatbotNotConfiguredError(AppException):
    """Raised when a tenant has no active chatbot activation"""

    def __init__(self, tenant_id: str, channel_type: str | None = None):
        details: dict[str, Any] = {"tenant_id": tenant_id}
        if channel_type:
            details["channel_type"] = channel_type
        super().__init__(
            message=f"No active chatbot activation for tenant {tenant_id}",
            error_code=ErrorCode.CHATBOT_NOT_CONFIGURED,
            status_code=404,
            details=details
        )


class FlowDefinitionError(AppException):
    """Raised when a published template cannot be loaded as a flow graph"""

    def __init__(self, message: str, activation_id: str | None = None):
        super().__init__(
            message=message,
            error_code=ErrorCode.INVALID_FLOW_DEFINITION,
            status_code=422,
            details={"activation_id": activation_id} if activation_id else None
        )


class BusinessActionError(AppException):
    """Raised by business action adapters; converted to an error handle by the node executor"""

    def __init__(
        self,
        message: str,
        action: str,
        error_code: ErrorCode = ErrorCode.BUSINESS_ACTION_FAILED,
        details: dict[str, Any] | None = None
    ):
        super().__init__(
            message=message,
            error_code=error_code,
            status_code=400,
            details=details
        )
        self.details["action"] = action


class WhatsAppError(AppException):
    """Raised when the WhatsApp Cloud API rejects a send"""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(
            message=message,
            error_code=ErrorCode.WHATSAPP_ERROR,
            status_code=502,
            details={"upstream_status": status_code} if status_code else None
        )


class CircuitBreakerOpenError(AppException):
    """Raised when calls to an external service are blocked by its circuit breaker"""

    def __init__(self, service_name: str, retry_after: float):
        super().__init__(
            message=f"{service_name} is temporarily unavailable",
            error_code=ErrorCode.EXTERNAL_SERVICE_UNAVAILABLE,
            status_code=503,
            details={"service": service_name, "retry_after_seconds": round(retry_after, 1)}
        )
