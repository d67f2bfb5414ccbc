"""
Error taxonomy and error response helpers for the fulfillment workflows
"""

import uuid
import traceback
import logging
from typing import Optional, Dict, Any
from datetime import datetime
from fastapi import Request
from fastapi.responses import JSONResponse

logger = logging.getLogger(__name__)


class ErrorContext:
    """Context object for tracking error information across the request lifecycle"""

    def __init__(self, request: Request):
        self.request_id = str(uuid.uuid4())
        self.request = request
        self.endpoint = str(request.url.path)
        self.method = request.method
        self.client_ip = self._get_client_ip()
        self.user_agent = request.headers.get("user-agent")
        self.timestamp = datetime.utcnow()

    def _get_client_ip(self) -> Optional[str]:
        """Extract client IP from request headers"""
        if "x-forwarded-for" in self.request.headers:
            return self.request.headers["x-forwarded-for"].split(",")[0].strip()
        elif "x-real-ip" in self.request.headers:
            return self.request.headers["x-real-ip"]
        elif self.request.client:
            return self.request.client.host
        return None


class WorkflowError(Exception):
    """Base class for errors a workflow component returns to its caller"""

    code = "WORKFLOW_ERROR"
    status_code = 400

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        self.message = message
        self.details = details or {}
        super().__init__(self.message)


class InvalidStateError(WorkflowError):
    """Transition is illegal from the record's current status"""

    code = "INVALID_STATE"
    status_code = 409


class PreconditionError(WorkflowError):
    """A required upstream fact is missing, e.g. the order is not yet paid"""

    code = "PRECONDITION_FAILED"
    status_code = 412


class ConflictError(WorkflowError):
    """A concurrent writer won the race for an exclusive resource"""

    code = "CONFLICT"
    status_code = 409


class NotFoundError(WorkflowError):
    code = "NOT_FOUND"
    status_code = 404


class ValidationError(WorkflowError):
    """Malformed input"""

    code = "VALIDATION_ERROR"
    status_code = 400


class PermissionDeniedError(WorkflowError):
    """The caller is not the party allowed to perform the transition"""

    code = "PERMISSION_DENIED"
    status_code = 403


class DatabaseError(Exception):
    """Custom exception for database-related errors"""
    def __init__(self, message: str, original_error: Optional[Exception] = None):
        self.message = message
        self.original_error = original_error
        super().__init__(self.message)


class ErrorHandler:
    """Centralized error handling service"""

    @staticmethod
    def create_error_response(
        error_context: ErrorContext,
        error: Exception,
        status_code: Optional[int] = None
    ) -> JSONResponse:
        """Create a standardized error response"""
        if status_code is None:
            status_code = error.status_code if isinstance(error, WorkflowError) else 500

        error_data = {
            "error": {
                "code": ErrorHandler._get_error_code(error),
                "message": ErrorHandler._get_user_friendly_message(error),
                "request_id": error_context.request_id,
                "timestamp": error_context.timestamp.isoformat(),
                "endpoint": error_context.endpoint,
                "method": error_context.method
            }
        }

        if isinstance(error, WorkflowError) and error.details:
            error_data["error"]["details"] = error.details

        ErrorHandler._log_error(error_context, error, status_code)

        return JSONResponse(
            status_code=status_code,
            content=error_data
        )

    @staticmethod
    def _get_error_code(error: Exception) -> str:
        """Map exception types to stable error codes"""
        if isinstance(error, WorkflowError):
            return error.code
        elif isinstance(error, DatabaseError):
            return "DATABASE_ERROR"
        else:
            return "INTERNAL_ERROR"

    @staticmethod
    def _get_user_friendly_message(error: Exception) -> str:
        """Generate user-facing error messages"""
        if isinstance(error, ConflictError):
            return f"{error.message}. Please refresh and try again."
        elif isinstance(error, WorkflowError):
            return error.message
        elif isinstance(error, DatabaseError):
            return "A database error occurred. Please try again later."
        else:
            return "An unexpected error occurred. Please try again later."

    @staticmethod
    def _log_error(error_context: ErrorContext, error: Exception, status_code: int):
        """Log error with request context; workflow refusals are expected and logged as warnings"""
        extra = {
            "request_id": error_context.request_id,
            "endpoint": error_context.endpoint,
            "method": error_context.method,
            "status_code": status_code,
            "client_ip": error_context.client_ip,
            "user_agent": error_context.user_agent,
            "error_type": type(error).__name__,
            "error_message": str(error),
        }
        if isinstance(error, WorkflowError):
            logger.warning(
                f"Refused {error_context.method} {error_context.endpoint}: {error.code} {error.message}",
                extra=extra
            )
        else:
            extra["stack_trace"] = traceback.format_exc()
            logger.error(
                f"Error {error_context.request_id}: {type(error).__name__} in {error_context.method} {error_context.endpoint}",
                extra=extra
            )


async def workflow_exception_handler(request: Request, exc: WorkflowError) -> JSONResponse:
    """Application-level handler turning workflow errors into typed JSON results"""
    return ErrorHandler.create_error_response(ErrorContext(request), exc)


async def database_exception_handler(request: Request, exc: DatabaseError) -> JSONResponse:
    """Database failures surface as a typed 500 without the driver message"""
    return ErrorHandler.create_error_response(ErrorContext(request), exc, status_code=500)
