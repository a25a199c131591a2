"""Resumable, pausable multipart uploads to S3-compatible storage."""

from .exceptions import (
    CallbackError,
    ExpiredUrlError,
    MissingPartsError,
    PausedError,
    TransportError,
    UploadCancelledError,
    UploadError,
)
from .models import (
    MultipartState,
    Part,
    TemporaryCredentials,
    UploadFile,
    UploadProgress,
    UploadResponse,
    UploadStatus,
)
from .services import (
    AwsSignatureV4,
    CancellationToken,
    CancelReason,
    HttpTransport,
    InMemoryStateStore,
    RedisStateStore,
    RetryPolicy,
    S3Uploader,
    S3UploaderOptions,
    UploadBackend,
    UploadOrchestrator,
)
from .services.http_backend import HttpBackend

__version__ = "0.1.0"
