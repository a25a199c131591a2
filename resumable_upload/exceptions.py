# exceptions.py
from typing import Optional


class UploadError(Exception):
    """Base class for every error raised by the upload engine"""


class PausedError(UploadError):
    """Raised when an attempt is suspended by a pause. Not a failure."""

    def __init__(self, message: str = "Upload was paused"):
        super().__init__(message)


class UploadCancelledError(UploadError):
    def __init__(self, message: str = "Upload was cancelled"):
        super().__init__(message)


class TransportError(UploadError):
    """Non-2xx response or network fault during a data-transfer call"""

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        body: Optional[str] = None,
        retryable: bool = True,
    ):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.body = body
        self.retryable = retryable

    def __str__(self) -> str:
        if self.status_code is not None:
            return f"{self.message} (status: {self.status_code})"
        return self.message


class ExpiredUrlError(TransportError):
    """
    The presigned URL expired before the request was accepted.

    Recovery requires a new signature, so the retry policy never
    retries this error blindly.
    """

    EXPIRY_MARKERS = (
        "<Message>Request has expired</Message>",
        "Request has expired",
        "ExpiredToken",
        "TokenExpired",
    )

    def __init__(
        self,
        message: str = "Presigned URL has expired",
        status_code: Optional[int] = None,
        body: Optional[str] = None,
    ):
        super().__init__(message, status_code=status_code, body=body, retryable=False)

    @classmethod
    def is_expired_response(cls, status_code: int, body: Optional[str]) -> bool:
        if status_code != 403 or not body:
            return False
        return any(marker in body for marker in cls.EXPIRY_MARKERS)


class CallbackError(UploadError):
    """A backend callback raised. Never retried by the engine."""

    def __init__(self, callback: str, error: BaseException):
        super().__init__(f"{callback} failed: {error}")
        self.callback = callback
        self.error = error


class MissingPartsError(UploadError):
    def __init__(self, missing: list):
        super().__init__(f"Cannot complete upload, missing parts: {missing}")
        self.missing = missing
