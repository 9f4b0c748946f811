"""
Application error taxonomy.

Every error carries a user-facing ``message`` and a ``recoverable`` flag.
The flag drives both the retry executor's default classifier and whether
callers offer a retry or a corrective action. Technical details stay on
the error for logging and are never part of ``user_message``.
"""

import json
import logging
from datetime import datetime
from enum import Enum
from typing import Optional

import openai

logger = logging.getLogger(__name__)


class ErrorType(Enum):
    """Error domains."""
    CAMERA = "camera"
    NETWORK = "network"
    PROCESSING = "processing"
    STORAGE = "storage"
    SUBSCRIPTION = "subscription"
    PERMISSION = "permission"
    UNKNOWN = "unknown"


class RecoveryAction(Enum):
    """What a caller should offer the user after a failure."""
    RETRY = "retry"
    OPEN_SETTINGS = "open_settings"
    UPGRADE = "upgrade"
    NONE = "none"


class AppError(Exception):
    """Base class for all application errors."""

    error_type = ErrorType.UNKNOWN

    def __init__(
        self,
        message: str,
        recoverable: bool = True,
        technical_details: Optional[str] = None,
    ):
        super().__init__(message)
        self.message = message
        self.recoverable = recoverable
        self.technical_details = technical_details
        self.timestamp = datetime.now()

    def __str__(self) -> str:
        return f"{self.message} (type: {self.error_type.value})"


class CameraError(AppError):
    error_type = ErrorType.CAMERA

    @classmethod
    def permission_denied(cls) -> "CameraError":
        return cls("Camera permission is required to scan food items", recoverable=False)

    @classmethod
    def hardware_unavailable(cls) -> "CameraError":
        return cls("Camera is not available on this device", recoverable=False)

    @classmethod
    def capture_failure(cls, details: Optional[str] = None) -> "CameraError":
        return cls("Failed to capture photo. Please try again.", technical_details=details)


class NetworkError(AppError):
    error_type = ErrorType.NETWORK
    status_code: Optional[int] = None

    @classmethod
    def no_connection(cls, details: Optional[str] = None) -> "NetworkError":
        return cls(
            "No internet connection. Please check your network settings.",
            technical_details=details,
        )

    @classmethod
    def timeout(cls, details: Optional[str] = None) -> "NetworkError":
        return cls("Request timed out. Please try again.", technical_details=details)

    @classmethod
    def server_error(cls, status_code: Optional[int] = None) -> "NetworkError":
        error = cls(
            "Server error occurred. Please try again later.",
            technical_details=f"Status code: {status_code}" if status_code is not None else None,
        )
        error.status_code = status_code
        return error

    @classmethod
    def request_rejected(cls, status_code: Optional[int] = None) -> "NetworkError":
        error = cls(
            "The service rejected the request.",
            recoverable=False,
            technical_details=f"Status code: {status_code}" if status_code is not None else None,
        )
        error.status_code = status_code
        return error

    @classmethod
    def rate_limited(cls) -> "NetworkError":
        return cls("Too many requests. Please wait a moment before trying again.")

    @classmethod
    def authentication_failed(cls) -> "NetworkError":
        return cls("Authentication failed. Please check your API key.", recoverable=False)


class ProcessingError(AppError):
    error_type = ErrorType.PROCESSING

    @classmethod
    def invalid_image(cls, details: Optional[str] = None) -> "ProcessingError":
        return cls("Invalid image format. Please capture a new photo.", technical_details=details)

    @classmethod
    def no_food_detected(cls) -> "ProcessingError":
        return cls("No food items detected in the image. Please try a clearer photo.")

    @classmethod
    def service_failure(cls, details: Optional[str] = None) -> "ProcessingError":
        return cls("Failed to process image. Please try again.", technical_details=details)


class StorageError(AppError):
    error_type = ErrorType.STORAGE

    @classmethod
    def write_failure(cls, details: Optional[str] = None) -> "StorageError":
        return cls("Failed to save data. Please try again.", technical_details=details)

    @classmethod
    def read_failure(cls, details: Optional[str] = None) -> "StorageError":
        return cls("Failed to load data. Please restart the app.", technical_details=details)

    @classmethod
    def corrupted_data(cls, details: Optional[str] = None) -> "StorageError":
        return cls(
            "Data corruption detected. App will reset to defaults.",
            recoverable=False,
            technical_details=details,
        )


class SubscriptionError(AppError):
    error_type = ErrorType.SUBSCRIPTION

    @classmethod
    def payment_failed(cls) -> "SubscriptionError":
        return cls("Payment processing failed. Please check your payment method.")

    @classmethod
    def quota_exceeded(cls) -> "SubscriptionError":
        return cls(
            "Daily scan limit reached. Upgrade or watch an ad for more scans.",
            recoverable=False,
        )

    @classmethod
    def feature_access_denied(cls) -> "SubscriptionError":
        return cls("This feature requires a premium subscription.", recoverable=False)


class PermissionDeniedError(AppError):
    error_type = ErrorType.PERMISSION

    def __init__(self, message: str, recoverable: bool = False, technical_details: Optional[str] = None):
        super().__init__(message, recoverable=recoverable, technical_details=technical_details)

    @classmethod
    def camera_permission_denied(cls) -> "PermissionDeniedError":
        return cls("Camera permission is required to use this feature.")


_TRANSIENT_OPENAI_ERRORS = (
    openai.APITimeoutError,
    openai.APIConnectionError,
    openai.RateLimitError,
    openai.InternalServerError,
)


def to_app_error(error: BaseException) -> AppError:
    """Map any exception onto the application taxonomy.

    ``AppError`` instances are returned unchanged.
    """
    if isinstance(error, AppError):
        return error

    # APITimeoutError subclasses APIConnectionError, so check it first.
    if isinstance(error, openai.APITimeoutError):
        return NetworkError.timeout(str(error))
    if isinstance(error, openai.APIConnectionError):
        return NetworkError.no_connection(str(error))
    if isinstance(error, openai.RateLimitError):
        return NetworkError.rate_limited()
    if isinstance(error, openai.AuthenticationError):
        return NetworkError.authentication_failed()
    if isinstance(error, openai.APIStatusError):
        if error.status_code >= 500:
            return NetworkError.server_error(error.status_code)
        return NetworkError.request_rejected(error.status_code)

    if isinstance(error, TimeoutError):
        return NetworkError.timeout(str(error))
    if isinstance(error, ConnectionError):
        return NetworkError.no_connection(str(error))
    if isinstance(error, json.JSONDecodeError):
        return ProcessingError.service_failure(f"Malformed JSON response: {error}")

    return AppError(
        "An unexpected error occurred. Please try again.",
        technical_details=repr(error),
    )


def is_retryable(error: BaseException) -> bool:
    """Default classifier: is ``error`` transient enough to try again?"""
    if isinstance(error, AppError):
        return error.recoverable
    if isinstance(error, _TRANSIENT_OPENAI_ERRORS):
        return True
    if isinstance(error, (TimeoutError, ConnectionError)):
        return True
    return False


def user_message(error: BaseException) -> str:
    """Human-readable message for ``error``, with technical details logged only."""
    app_error = to_app_error(error)
    if app_error.technical_details:
        logger.debug(
            "%s error details: %s", app_error.error_type.value, app_error.technical_details
        )
    return app_error.message


def recovery_action(error: BaseException) -> RecoveryAction:
    """The affordance to present alongside ``user_message``."""
    app_error = to_app_error(error)
    if app_error.recoverable:
        return RecoveryAction.RETRY
    if app_error.error_type in (ErrorType.CAMERA, ErrorType.PERMISSION):
        return RecoveryAction.OPEN_SETTINGS
    if app_error.error_type is ErrorType.SUBSCRIPTION:
        return RecoveryAction.UPGRADE
    return RecoveryAction.NONE
