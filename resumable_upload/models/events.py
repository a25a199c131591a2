# models/events.py
from typing import Any, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict

from .upload_models import Part, UploadFile, UploadProgress, UploadResponse, UploadStatus


class UploadEvent(BaseModel):
    model_config = ConfigDict(arbitrary_types_allowed=True)

    type: str
    file: Optional[UploadFile] = None


class FileAddedEvent(UploadEvent):
    type: Literal["file-added"] = "file-added"


class FileRemovedEvent(UploadEvent):
    type: Literal["file-removed"] = "file-removed"


class UploadStartedEvent(UploadEvent):
    type: Literal["upload-started"] = "upload-started"


class UploadProgressEvent(UploadEvent):
    type: Literal["upload-progress"] = "upload-progress"
    progress: UploadProgress


class PartUploadedEvent(UploadEvent):
    type: Literal["part-uploaded"] = "part-uploaded"
    part: Part
    total_parts: int


class UploadPausedEvent(UploadEvent):
    type: Literal["upload-paused"] = "upload-paused"


class UploadResumedEvent(UploadEvent):
    type: Literal["upload-resumed"] = "upload-resumed"


class UploadRetryEvent(UploadEvent):
    type: Literal["upload-retry"] = "upload-retry"
    attempt: int


class UploadCompleteEvent(UploadEvent):
    type: Literal["upload-complete"] = "upload-complete"
    response: Optional[UploadResponse] = None


class UploadErrorEvent(UploadEvent):
    type: Literal["upload-error"] = "upload-error"
    message: str
    cause: Any = None


class UploadCancelledEvent(UploadEvent):
    type: Literal["upload-cancelled"] = "upload-cancelled"


class StateChangedEvent(UploadEvent):
    type: Literal["state-changed"] = "state-changed"
    previous_status: UploadStatus
    new_status: UploadStatus


class AllUploadsCompleteEvent(UploadEvent):
    type: Literal["all-uploads-complete"] = "all-uploads-complete"
    successful: List[UploadFile] = []
    failed: List[UploadFile] = []


AnyUploadEvent = Union[
    FileAddedEvent,
    FileRemovedEvent,
    UploadStartedEvent,
    UploadProgressEvent,
    PartUploadedEvent,
    UploadPausedEvent,
    UploadResumedEvent,
    UploadRetryEvent,
    UploadCompleteEvent,
    UploadErrorEvent,
    UploadCancelledEvent,
    StateChangedEvent,
    AllUploadsCompleteEvent,
]
