from typing import Any, Dict, Optional
from fastapi import status

from xnrt_ledger.core.exceptions.handler import ServiceError, ServiceErrorCode


class ValidationError(ServiceError):
    def __init__(self, message: str = "Validation error", details: Optional[Dict[str, Any]] = None):
        super().__init__(
            code=ServiceErrorCode.INVALID_INPUT,
            message=message,
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            details=details,
        )


class ConflictError(ServiceError):
    def __init__(self, message: str = "Conflict", details: Optional[Dict[str, Any]] = None,
                 code: str = ServiceErrorCode.CONFLICT):
        super().__init__(
            code=code,
            message=message,
            status_code=status.HTTP_409_CONFLICT,
            details=details,
        )


class NotFoundError(ServiceError):
    def __init__(self, message: str = "Resource not found", details: Optional[Dict[str, Any]] = None,
                 code: str = ServiceErrorCode.NOT_FOUND):
        super().__init__(
            code=code,
            message=message,
            status_code=status.HTTP_404_NOT_FOUND,
            details=details,
        )


class UnauthorizedError(ServiceError):
    def __init__(self, message: str = "Unauthorized", details: Optional[Dict[str, Any]] = None):
        super().__init__(
            code=ServiceErrorCode.UNAUTHORIZED,
            message=message,
            status_code=status.HTTP_401_UNAUTHORIZED,
            details=details,
        )


class ForbiddenError(ServiceError):
    def __init__(self, message: str = "Forbidden", details: Optional[Dict[str, Any]] = None):
        super().__init__(
            code=ServiceErrorCode.FORBIDDEN,
            message=message,
            status_code=status.HTTP_403_FORBIDDEN,
            details=details,
        )


class ExternalUnavailableError(ServiceError):
    def __init__(self, message: str = "Blockchain RPC unavailable", details: Optional[Dict[str, Any]] = None):
        super().__init__(
            code=ServiceErrorCode.RPC_ERROR,
            message=message,
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            details=details,
        )


class InsufficientBalanceError(ServiceError):
    def __init__(self, message: str = "Insufficient balance", details: Optional[Dict[str, Any]] = None):
        super().__init__(
            code=ServiceErrorCode.INSUFFICIENT_BALANCE,
            message=message,
            status_code=status.HTTP_400_BAD_REQUEST,
            details=details,
        )


class NotMaturedError(ServiceError):
    def __init__(self, message: str = "Stake has not matured yet", details: Optional[Dict[str, Any]] = None):
        super().__init__(
            code=ServiceErrorCode.NOT_MATURED,
            message=message,
            status_code=status.HTTP_400_BAD_REQUEST,
            details=details,
        )


class AlreadyWithdrawnError(ConflictError):
    def __init__(self, message: str = "Stake has already been withdrawn", details: Optional[Dict[str, Any]] = None):
        super().__init__(message=message, details=details, code=ServiceErrorCode.ALREADY_WITHDRAWN)


class AlreadyLinkedError(ConflictError):
    def __init__(self, message: str = "Wallet is already linked", details: Optional[Dict[str, Any]] = None):
        super().__init__(message=message, details=details, code=ServiceErrorCode.ALREADY_LINKED)


class ChallengeNotFoundError(NotFoundError):
    def __init__(self, message: str = "No matching challenge found", details: Optional[Dict[str, Any]] = None):
        super().__init__(message=message, details=details, code=ServiceErrorCode.CHALLENGE_NOT_FOUND)


class ChallengeExpiredError(ServiceError):
    def __init__(self, message: str = "Challenge has expired", details: Optional[Dict[str, Any]] = None):
        super().__init__(
            code=ServiceErrorCode.EXPIRED_CHALLENGE,
            message=message,
            status_code=status.HTTP_410_GONE,
            details=details,
        )


class InvalidSignatureError(ServiceError):
    def __init__(self, message: str = "Invalid signature", details: Optional[Dict[str, Any]] = None):
        super().__init__(
            code=ServiceErrorCode.INVALID_SIGNATURE,
            message=message,
            status_code=status.HTTP_400_BAD_REQUEST,
            details=details,
        )
