from .upload_models import (
    AbortMultipartOptions,
    CompleteMultipartOptions,
    CompleteMultipartResult,
    CreateMultipartUploadResult,
    CredentialsOptions,
    FileSourceType,
    ListPartsOptions,
    MultipartState,
    Part,
    SignPartOptions,
    SignPartResult,
    TemporaryCredentials,
    TransferResult,
    UploadFile,
    UploadOptions,
    UploadParameters,
    UploadPartBytesOptions,
    UploadProgress,
    UploadResponse,
    UploadStatus,
)
from .events import (
    AllUploadsCompleteEvent,
    AnyUploadEvent,
    FileAddedEvent,
    FileRemovedEvent,
    PartUploadedEvent,
    StateChangedEvent,
    UploadCancelledEvent,
    UploadCompleteEvent,
    UploadErrorEvent,
    UploadEvent,
    UploadPausedEvent,
    UploadProgressEvent,
    UploadResumedEvent,
    UploadRetryEvent,
    UploadStartedEvent,
)
