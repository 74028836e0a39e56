"""
Exception hierarchy for the authenticated API client.

This module defines structured exceptions with error codes, context information,
and recovery suggestions so that every error surfaced to a caller can be
classified, logged and rendered consistently.
"""

import asyncio
from datetime import datetime
from typing import Optional, Dict, Any, List
from enum import Enum

import aiohttp


class ErrorCode(Enum):
    """Standardized error codes for the authenticated API client."""

    # Authentication Errors (1000-1099)
    AUTH_TOKEN_EXPIRED_REPEAT = "AUTH_1002"
    AUTH_REFRESH_FAILED = "AUTH_1003"
    AUTH_NO_REFRESH_TOKEN = "AUTH_1004"
    AUTH_REFRESH_CANCELLED = "AUTH_1005"
    AUTH_EXEMPT_REJECTED = "AUTH_1006"
    AUTH_REFRESH_ABORTED = "AUTH_1007"

    # Network and Communication Errors (2000-2099)
    NETWORK_CONNECTION_FAILED = "NETWORK_2001"
    NETWORK_TIMEOUT = "NETWORK_2002"

    # Request Errors (4000-4099)
    REQUEST_REJECTED = "REQUEST_4001"
    REQUEST_INVALID_RESPONSE = "REQUEST_4002"

    # Server Errors (5000-5099)
    SERVER_ERROR = "SERVER_5001"

    # Token Storage Errors (7000-7099)
    STORAGE_READ_FAILED = "STORAGE_7001"
    STORAGE_WRITE_FAILED = "STORAGE_7002"

    # Configuration Errors (8000-8099)
    CONFIG_INVALID_FORMAT = "CONFIG_8001"
    CONFIG_INVALID_VALUE = "CONFIG_8002"

    # Internal Errors (9000-9099)
    INTERNAL_UNEXPECTED_ERROR = "INTERNAL_9001"


class ErrorSeverity(Enum):
    """Error severity levels for logging and handling."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class RecoveryAction(Enum):
    """Suggested recovery actions for errors."""
    RETRY = "retry"
    REFRESH_TOKEN = "refresh_token"
    LOGIN = "login"
    USER_INTERVENTION = "user_intervention"
    CONTACT_ADMIN = "contact_admin"
    IGNORE = "ignore"


class AuthClientError(Exception):
    """
    Base exception class for all authenticated API client errors.

    Provides structured error information including error codes, context,
    and recovery suggestions for consistent error handling.
    """

    def __init__(
        self,
        message: str,
        error_code: ErrorCode,
        severity: ErrorSeverity = ErrorSeverity.MEDIUM,
        context: Optional[Dict[str, Any]] = None,
        recovery_actions: Optional[List[RecoveryAction]] = None,
        cause: Optional[BaseException] = None,
        user_message: Optional[str] = None
    ):
        super().__init__(message)

        self.message = message
        self.error_code = error_code
        self.severity = severity
        self.context = context or {}
        self.recovery_actions = recovery_actions or []
        self.cause = cause
        self.user_message = user_message or message
        self.timestamp = datetime.now()

        if cause:
            self.context['cause_type'] = type(cause).__name__
            self.context['cause_message'] = str(cause)

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary format for serialization."""
        return {
            'error': {
                'code': self.error_code.value,
                'message': self.message,
                'user_message': self.user_message,
                'severity': self.severity.value,
                'timestamp': self.timestamp.isoformat(),
                'context': self.context,
                'recovery_actions': [action.value for action in self.recovery_actions],
                'cause': {
                    'type': self.context.get('cause_type'),
                    'message': self.context.get('cause_message')
                } if self.cause else None
            }
        }


class APIResponseError(AuthClientError):
    """
    Error carrying the HTTP response that produced it.

    The status code and decoded body are kept verbatim so callers see exactly
    what the upstream API returned.
    """

    def __init__(
        self,
        message: str,
        error_code: ErrorCode,
        status_code: int,
        response_data: Any = None,
        path: Optional[str] = None,
        **kwargs
    ):
        context = kwargs.pop('context', {})
        context['status_code'] = status_code
        if path:
            context['path'] = path

        super().__init__(message=message, error_code=error_code, context=context, **kwargs)

        self.status_code = status_code
        self.response_data = response_data
        self.path = path


class AuthInvalidError(AuthClientError):
    """The refresh call failed or no refresh token was available. Unrecoverable."""

    def __init__(
        self,
        message: str,
        error_code: ErrorCode = ErrorCode.AUTH_REFRESH_FAILED,
        status_code: Optional[int] = None,
        **kwargs
    ):
        context = kwargs.pop('context', {})
        if status_code is not None:
            context['status_code'] = status_code

        super().__init__(
            message=message,
            error_code=error_code,
            severity=ErrorSeverity.HIGH,
            recovery_actions=[RecoveryAction.LOGIN],
            context=context,
            **kwargs
        )
        self.status_code = status_code


class AuthExpiredRepeatError(APIResponseError):
    """Expiry observed again on a request that was already retried once."""

    def __init__(self, message: str, status_code: int, **kwargs):
        super().__init__(
            message=message,
            error_code=ErrorCode.AUTH_TOKEN_EXPIRED_REPEAT,
            status_code=status_code,
            severity=ErrorSeverity.HIGH,
            recovery_actions=[RecoveryAction.LOGIN],
            **kwargs
        )


class AuthExemptRejectedError(APIResponseError):
    """Error response from a login, register or refresh endpoint."""

    def __init__(self, message: str, status_code: int, **kwargs):
        super().__init__(
            message=message,
            error_code=ErrorCode.AUTH_EXEMPT_REJECTED,
            status_code=status_code,
            severity=ErrorSeverity.MEDIUM,
            recovery_actions=[RecoveryAction.USER_INTERVENTION],
            **kwargs
        )


class ServerError(APIResponseError):
    """Server-side errors (5xx)."""

    def __init__(self, message: str, status_code: int, **kwargs):
        super().__init__(
            message=message,
            error_code=ErrorCode.SERVER_ERROR,
            status_code=status_code,
            severity=ErrorSeverity.HIGH,
            recovery_actions=[RecoveryAction.RETRY, RecoveryAction.CONTACT_ADMIN],
            **kwargs
        )


class ValidationError(APIResponseError):
    """Any other non-2xx response the server rejected."""

    def __init__(self, message: str, status_code: int, **kwargs):
        super().__init__(
            message=message,
            error_code=ErrorCode.REQUEST_REJECTED,
            status_code=status_code,
            severity=ErrorSeverity.LOW,
            recovery_actions=[RecoveryAction.USER_INTERVENTION],
            **kwargs
        )


class NetworkError(AuthClientError):
    """No response was received (timeout, connectivity)."""

    def __init__(self, message: str, error_code: ErrorCode = ErrorCode.NETWORK_CONNECTION_FAILED, **kwargs):
        super().__init__(
            message=message,
            error_code=error_code,
            severity=ErrorSeverity.MEDIUM,
            recovery_actions=[RecoveryAction.RETRY],
            **kwargs
        )


class TokenStorageError(AuthClientError):
    """Token store read or write failures."""

    def __init__(self, message: str, error_code: ErrorCode = ErrorCode.STORAGE_WRITE_FAILED, **kwargs):
        super().__init__(
            message=message,
            error_code=error_code,
            severity=ErrorSeverity.HIGH,
            recovery_actions=[RecoveryAction.USER_INTERVENTION],
            **kwargs
        )


class ConfigurationError(AuthClientError):
    """Configuration related errors."""

    def __init__(self, message: str, error_code: ErrorCode = ErrorCode.CONFIG_INVALID_VALUE,
                 config_key: Optional[str] = None, **kwargs):
        context = kwargs.pop('context', {})
        if config_key:
            context['config_key'] = config_key

        super().__init__(
            message=message,
            error_code=error_code,
            severity=ErrorSeverity.HIGH,
            recovery_actions=[RecoveryAction.USER_INTERVENTION],
            context=context,
            **kwargs
        )


def handle_exception(
    exception: BaseException,
    context: Optional[Dict[str, Any]] = None,
    default_error_code: ErrorCode = ErrorCode.INTERNAL_UNEXPECTED_ERROR
) -> AuthClientError:
    """
    Convert a generic exception to a structured AuthClientError.

    Args:
        exception: The original exception
        context: Additional context information
        default_error_code: Default error code if specific mapping not found

    Returns:
        Structured AuthClientError
    """
    if isinstance(exception, AuthClientError):
        return exception

    # asyncio.TimeoutError is an alias of TimeoutError on 3.11+, so check it first
    if isinstance(exception, (asyncio.TimeoutError, TimeoutError, aiohttp.ServerTimeoutError)):
        return NetworkError(
            message=f"Request timed out: {exception}" if str(exception) else "Request timed out",
            error_code=ErrorCode.NETWORK_TIMEOUT,
            context=context,
            cause=exception
        )

    if isinstance(exception, (aiohttp.ClientError, ConnectionError, OSError)):
        return NetworkError(
            message=f"Network request failed: {exception}",
            error_code=ErrorCode.NETWORK_CONNECTION_FAILED,
            context=context,
            cause=exception
        )

    if isinstance(exception, ValueError):
        return AuthClientError(
            message=str(exception),
            error_code=ErrorCode.REQUEST_INVALID_RESPONSE,
            context=context,
            cause=exception
        )

    return AuthClientError(
        message=str(exception),
        error_code=default_error_code,
        context=context,
        cause=exception
    )
