from __future__ import annotations

from enum import Enum
from typing import Optional


class ErrorKind(str, Enum):
    """Coarse classification shared by every errno."""

    CONFLICT = "conflict"
    NOT_FOUND = "not_found"
    TOKEN_NOT_FOUND = "token_not_found"
    DEVICE_CONFLICT = "device_conflict"
    UNKNOWN_DEVICE = "unknown_device"
    INVALID_CODE = "invalid_code"
    VALIDATION = "validation_error"
    STORAGE = "storage_error"


class ServiceError(Exception):
    """Base class for credential errors carrying a stable errno.

    ``errno`` is the numeric code clients switch on; ``status_code`` is the
    HTTP status a route layer should send and ``error_code`` its string form.
    """

    status_code: int = 400
    errno: int = 999
    error_code: str = "validation_error"
    kind: ErrorKind = ErrorKind.VALIDATION

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}

    def to_dict(self) -> dict:
        body = {
            "code": self.status_code,
            "errno": self.errno,
            "error": self.error_code,
            "message": self.message,
        }
        body.update(self.detail)
        return body


class AccountExistsError(ServiceError):
    status_code = 409
    errno = 101
    error_code = "conflict"
    kind = ErrorKind.CONFLICT

    def __init__(self, message: str = "Account already exists", **kwargs) -> None:
        super().__init__(message, **kwargs)


class UnknownAccountError(ServiceError):
    status_code = 404
    errno = 102
    error_code = "not_found"
    kind = ErrorKind.NOT_FOUND

    def __init__(self, message: str = "Unknown account", **kwargs) -> None:
        super().__init__(message, **kwargs)


class InvalidVerificationCodeError(ServiceError):
    errno = 105
    error_code = "invalid_verification_code"
    kind = ErrorKind.INVALID_CODE

    def __init__(self, message: str = "Invalid verification code", **kwargs) -> None:
        super().__init__(message, **kwargs)


class BadRequestError(ServiceError):
    """Malformed or semantically invalid input (400)."""

    errno = 107
    error_code = "validation_error"
    kind = ErrorKind.VALIDATION


class InvalidTokenError(ServiceError):
    """The token is absent, of another kind, or expired."""

    status_code = 401
    errno = 110
    error_code = "unauthorized"
    kind = ErrorKind.TOKEN_NOT_FOUND

    def __init__(
        self, message: str = "The authentication token could not be found", **kwargs
    ) -> None:
        super().__init__(message, **kwargs)


class UnknownDeviceError(ServiceError):
    errno = 123
    error_code = "unknown_device"
    kind = ErrorKind.UNKNOWN_DEVICE

    def __init__(self, message: str = "Unknown device", **kwargs) -> None:
        super().__init__(message, **kwargs)


class DeviceConflictError(ServiceError):
    status_code = 409
    errno = 124
    error_code = "device_session_conflict"
    kind = ErrorKind.DEVICE_CONFLICT

    def __init__(self, device_id: str, message: str = "Session already registered by another device") -> None:
        super().__init__(message, detail={"deviceId": device_id})
        self.device_id = device_id


class InvalidUnblockCodeError(ServiceError):
    errno = 127
    error_code = "invalid_unblock_code"
    kind = ErrorKind.INVALID_CODE

    def __init__(self, message: str = "Invalid unblock code", **kwargs) -> None:
        super().__init__(message, **kwargs)


class CannotDeletePrimaryEmailError(ServiceError):
    errno = 136
    error_code = "cannot_delete_primary_email"
    kind = ErrorKind.VALIDATION

    def __init__(self, message: str = "Can not delete primary email", **kwargs) -> None:
        super().__init__(message, **kwargs)


class InvalidSigninCodeError(ServiceError):
    errno = 146
    error_code = "invalid_signin_code"
    kind = ErrorKind.INVALID_CODE

    def __init__(self, message: str = "Invalid signin code", **kwargs) -> None:
        super().__init__(message, **kwargs)


class StorageError(ServiceError):
    """Durable storage could not complete the operation (500)."""

    status_code = 500
    errno = 999
    error_code = "server_error"
    kind = ErrorKind.STORAGE


__all__ = [
    "ErrorKind",
    "ServiceError",
    "AccountExistsError",
    "UnknownAccountError",
    "InvalidVerificationCodeError",
    "BadRequestError",
    "InvalidTokenError",
    "UnknownDeviceError",
    "DeviceConflictError",
    "InvalidUnblockCodeError",
    "CannotDeletePrimaryEmailError",
    "InvalidSigninCodeError",
    "StorageError",
]
