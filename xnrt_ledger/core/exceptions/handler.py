"""
Centralized error handling for the ledger API.
Provides consistent error responses, logging, and HTTP status codes across all services.
"""

import traceback
from typing import Dict, Any, Optional
from fastapi import HTTPException, Request
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
from datetime import datetime, timezone

from xnrt_ledger.core.logger.logger import get_logger
from xnrt_ledger.infra.config.settings import get_settings

logger = get_logger(__name__)
settings = get_settings()


class ServiceErrorCode:
    """Standard error codes for services"""

    # Validation
    INVALID_INPUT = "INVALID_INPUT"

    # Authentication / authorization
    UNAUTHORIZED = "UNAUTHORIZED"
    FORBIDDEN = "FORBIDDEN"

    # Wallet proof
    INVALID_SIGNATURE = "INVALID_SIGNATURE"
    EXPIRED_CHALLENGE = "EXPIRED_CHALLENGE"
    CHALLENGE_NOT_FOUND = "CHALLENGE_NOT_FOUND"
    ALREADY_LINKED = "ALREADY_LINKED"

    # Ledger
    NOT_FOUND = "NOT_FOUND"
    CONFLICT = "CONFLICT"
    INSUFFICIENT_BALANCE = "INSUFFICIENT_BALANCE"
    NOT_MATURED = "NOT_MATURED"
    ALREADY_WITHDRAWN = "ALREADY_WITHDRAWN"
    HOUSE_ACCOUNT_MISSING = "HOUSE_ACCOUNT_MISSING"

    # Chain
    RPC_ERROR = "RPC_ERROR"

    # System
    INTERNAL_ERROR = "INTERNAL_ERROR"
    SERVICE_UNAVAILABLE = "SERVICE_UNAVAILABLE"


class ServiceError(Exception):
    """
    Standardized service error for internal use.
    Gets converted to proper HTTP response by error handler.
    """

    def __init__(
        self,
        code: str,
        message: str,
        status_code: int = 500,
        details: Optional[Dict[str, Any]] = None,
        context: Optional[Dict[str, Any]] = None
    ):
        self.code = code
        self.message = message
        self.status_code = status_code
        self.details = details or {}
        self.context = context or {}
        super().__init__(message)


class ErrorResponseBuilder:
    """Builds standardized error responses"""

    @staticmethod
    def build_error_response(
        error_code: str,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        request_id: Optional[str] = None
    ) -> Dict[str, Any]:
        """Build standardized error response"""

        response = {
            "success": False,
            "error": {
                "code": error_code,
                "message": message,
                "timestamp": datetime.now(timezone.utc).isoformat()
            }
        }

        if details:
            response["error"]["details"] = details

        if request_id:
            response["error"]["request_id"] = request_id

        return response


class GlobalErrorHandler:
    """Global error handler for all application errors"""

    @staticmethod
    async def service_error_handler(request: Request, exc: ServiceError) -> JSONResponse:
        """Handle ServiceError exceptions"""

        request_id = request.headers.get("X-Request-ID", "unknown")

        log = logger.error if exc.status_code >= 500 else logger.warning
        log(
            f"Service error: {exc.code}",
            extra={
                "error_code": exc.code,
                "error_message": exc.message,
                "status_code": exc.status_code,
                "details": exc.details,
                "context": exc.context,
                "request_id": request_id,
                "path": request.url.path,
                "method": request.method
            }
        )

        response = ErrorResponseBuilder.build_error_response(
            error_code=exc.code,
            message=exc.message,
            details=exc.details,
            request_id=request_id
        )

        return JSONResponse(status_code=exc.status_code, content=response)

    @staticmethod
    async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
        """Handle HTTPException with standardized format"""

        request_id = request.headers.get("X-Request-ID", "unknown")

        if exc.status_code == 401:
            error_code = ServiceErrorCode.UNAUTHORIZED
        elif exc.status_code == 403:
            error_code = ServiceErrorCode.FORBIDDEN
        elif exc.status_code == 404:
            error_code = ServiceErrorCode.NOT_FOUND
        elif exc.status_code == 422:
            error_code = ServiceErrorCode.INVALID_INPUT
        else:
            error_code = ServiceErrorCode.INTERNAL_ERROR

        logger.warning(
            f"HTTP exception: {exc.status_code}",
            extra={
                "status_code": exc.status_code,
                "detail": exc.detail,
                "request_id": request_id,
                "path": request.url.path,
                "method": request.method
            }
        )

        response = ErrorResponseBuilder.build_error_response(
            error_code=error_code,
            message=str(exc.detail),
            request_id=request_id
        )

        return JSONResponse(status_code=exc.status_code, content=response, headers=exc.headers)

    @staticmethod
    async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
        """Handle Pydantic validation errors"""

        request_id = request.headers.get("X-Request-ID", "unknown")

        validation_errors = []
        for error in exc.errors():
            field = '.'.join(str(loc) for loc in error['loc'])
            validation_errors.append({
                'field': field,
                'message': error['msg']
            })

        logger.warning(
            f"Validation error: {len(validation_errors)} errors",
            extra={
                "validation_errors": validation_errors,
                "request_id": request_id,
                "path": request.url.path,
                "method": request.method
            }
        )

        response = ErrorResponseBuilder.build_error_response(
            error_code=ServiceErrorCode.INVALID_INPUT,
            message="Validation failed",
            details={"validation_errors": validation_errors},
            request_id=request_id
        )

        return JSONResponse(status_code=422, content=response)

    @staticmethod
    async def general_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """Handle unexpected exceptions"""

        request_id = request.headers.get("X-Request-ID", "unknown")

        logger.error(
            f"Unexpected error: {type(exc).__name__}",
            extra={
                "error_type": type(exc).__name__,
                "error_message": str(exc),
                "request_id": request_id,
                "path": request.url.path,
                "method": request.method
            },
            exc_info=True
        )

        # Never expose internal errors in production
        if settings.DEBUG:
            message = f"Internal error: {str(exc)}"
            details = {"traceback": traceback.format_exc()}
        else:
            message = "An unexpected error occurred. Please try again."
            details = {}

        response = ErrorResponseBuilder.build_error_response(
            error_code=ServiceErrorCode.INTERNAL_ERROR,
            message=message,
            details=details,
            request_id=request_id
        )

        return JSONResponse(status_code=500, content=response)
