# models/upload_models.py
import asyncio
import mimetypes
import os
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, AsyncIterator, Callable, Dict, List, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field

MAX_PART_NUMBER = 10000


class UploadStatus(str, Enum):
    PENDING = "pending"
    UPLOADING = "uploading"
    PAUSED = "paused"
    COMPLETE = "complete"
    ERROR = "error"
    CANCELLED = "cancelled"


class FileSourceType(str, Enum):
    PATH = "path"
    BYTES = "bytes"
    STREAM = "stream"


class UploadProgress(BaseModel):
    bytes_uploaded: int
    bytes_total: int
    parts_uploaded: Optional[int] = None
    parts_total: Optional[int] = None

    @property
    def fraction(self) -> float:
        return self.bytes_uploaded / self.bytes_total if self.bytes_total > 0 else 0.0

    @property
    def percent(self) -> float:
        return self.fraction * 100


class UploadResponse(BaseModel):
    location: Optional[str] = None
    body: Optional[Dict[str, Any]] = None


class Part(BaseModel):
    """One confirmed part of a multipart upload"""

    model_config = ConfigDict(frozen=True)

    part_number: int = Field(ge=1, le=MAX_PART_NUMBER)
    size: int = Field(ge=0)
    etag: str

    def to_dict(self) -> Dict[str, Any]:
        return {"PartNumber": self.part_number, "Size": self.size, "ETag": self.etag}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Part":
        return cls(part_number=data["PartNumber"], size=data["Size"], etag=data["ETag"])


class MultipartState(BaseModel):
    upload_id: Optional[str] = None
    key: Optional[str] = None
    uploaded_parts: List[Part] = []
    is_multipart: bool = False

    def reset(self) -> None:
        self.upload_id = None
        self.key = None
        self.uploaded_parts.clear()
        self.is_multipart = False


class UploadFile(BaseModel):
    """
    One logical upload unit.

    The data source is opaque to the engine: a path on disk, bytes held
    in memory, or a factory returning an async byte stream. Protocol
    state lives with the uploader, keyed by `id`.
    """

    model_config = ConfigDict(arbitrary_types_allowed=True)

    id: str = Field(default_factory=lambda: str(uuid4()))
    name: str
    size: int = Field(ge=0)
    type: Optional[str] = None
    source_type: FileSourceType
    path: Optional[str] = None
    data: Optional[bytes] = None
    stream_provider: Optional[Callable[[], AsyncIterator[bytes]]] = None
    metadata: Dict[str, Any] = {}

    status: UploadStatus = UploadStatus.PENDING
    progress: Optional[UploadProgress] = None
    error_message: Optional[str] = None
    error: Optional[Any] = None
    response: Optional[UploadResponse] = None

    @classmethod
    def from_path(cls, file_path: str, name: Optional[str] = None, type: Optional[str] = None, **kwargs) -> "UploadFile":
        if not os.path.isfile(file_path):
            raise ValueError(f"File does not exist: {file_path}")
        return cls(
            name=name or os.path.basename(file_path),
            size=os.path.getsize(file_path),
            type=type or mimetypes.guess_type(file_path)[0],
            source_type=FileSourceType.PATH,
            path=file_path,
            **kwargs,
        )

    @classmethod
    def from_bytes(cls, data: bytes, name: str, type: Optional[str] = None, **kwargs) -> "UploadFile":
        return cls(
            name=name,
            size=len(data),
            type=type or mimetypes.guess_type(name)[0],
            source_type=FileSourceType.BYTES,
            data=bytes(data),
            **kwargs,
        )

    @classmethod
    def from_stream(
        cls,
        stream_provider: Callable[[], AsyncIterator[bytes]],
        name: str,
        size: int,
        type: Optional[str] = None,
        **kwargs,
    ) -> "UploadFile":
        return cls(
            name=name,
            size=size,
            type=type or mimetypes.guess_type(name)[0],
            source_type=FileSourceType.STREAM,
            stream_provider=stream_provider,
            **kwargs,
        )

    async def get_bytes(self) -> bytes:
        return await self.get_chunk(0, self.size)

    async def get_chunk(self, start: int, end: int) -> bytes:
        """Read bytes [start, end) from the data source"""
        if self.source_type == FileSourceType.BYTES:
            return self.data[start:end]

        if self.source_type == FileSourceType.PATH:
            def _read() -> bytes:
                with open(self.path, "rb") as f:
                    f.seek(start)
                    return f.read(end - start)

            return await asyncio.to_thread(_read)

        # Streams cannot seek; skip up to `start` and stop at `end`
        buffer = bytearray()
        position = 0
        async for block in self.stream_provider():
            block_end = position + len(block)
            if block_end > start:
                buffer += block[max(start - position, 0):min(end - position, len(block))]
            position = block_end
            if position >= end:
                break
        return bytes(buffer)

    def reset(self) -> None:
        """Back to pending. Multipart state is kept for resume."""
        self.status = UploadStatus.PENDING
        self.progress = None
        self.error_message = None
        self.error = None
        self.response = None

    def mark_error(self, message: str, error: Any) -> None:
        self.status = UploadStatus.ERROR
        self.error_message = message
        self.error = error


class TemporaryCredentials(BaseModel):
    access_key_id: str
    secret_access_key: str
    session_token: str
    expiration: datetime
    bucket: str
    region: str

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TemporaryCredentials":
        """Parse the STS-style payload returned by the signing backend"""
        credentials = data.get("credentials", data)
        return cls(
            access_key_id=credentials["AccessKeyId"],
            secret_access_key=credentials["SecretAccessKey"],
            session_token=credentials["SessionToken"],
            expiration=credentials["Expiration"],
            bucket=data["bucket"],
            region=data["region"],
        )

    def _expiration_utc(self) -> datetime:
        if self.expiration.tzinfo is None:
            return self.expiration.replace(tzinfo=timezone.utc)
        return self.expiration

    @property
    def is_expired(self) -> bool:
        return datetime.now(timezone.utc) >= self._expiration_utc()

    def needs_refresh(self, buffer: timedelta = timedelta(minutes=5), now: Optional[datetime] = None) -> bool:
        now = now or datetime.now(timezone.utc)
        return now >= self._expiration_utc() - buffer


class UploadParameters(BaseModel):
    method: str = "PUT"
    url: str
    headers: Optional[Dict[str, str]] = None
    form_fields: Optional[Dict[str, str]] = None
    expires: Optional[int] = None


class CreateMultipartUploadResult(BaseModel):
    upload_id: str
    key: str


class SignPartResult(BaseModel):
    url: str
    headers: Optional[Dict[str, str]] = None
    expires: Optional[int] = None


class CompleteMultipartResult(BaseModel):
    location: Optional[str] = None
    etag: Optional[str] = None
    body: Optional[Dict[str, Any]] = None


class TransferResult(BaseModel):
    """Outcome of one data-transfer call"""

    etag: Optional[str] = None
    location: Optional[str] = None
    status_code: Optional[int] = None
    headers: Dict[str, str] = {}


class CallbackOptions(BaseModel):
    model_config = ConfigDict(arbitrary_types_allowed=True)

    # CancellationToken of the attempt issuing the call
    signal: Optional[Any] = None


class UploadOptions(CallbackOptions):
    pass


class CredentialsOptions(CallbackOptions):
    pass


class ListPartsOptions(CallbackOptions):
    upload_id: str
    key: str


class AbortMultipartOptions(CallbackOptions):
    upload_id: str
    key: str


class SignPartOptions(CallbackOptions):
    upload_id: str
    key: str
    part_number: int
    body: bytes


class CompleteMultipartOptions(CallbackOptions):
    upload_id: str
    key: str
    parts: List[Part]


class UploadPartBytesOptions(CallbackOptions):
    url: str
    method: str = "PUT"
    headers: Optional[Dict[str, str]] = None
    body: bytes
    size: int
    expires: Optional[int] = None
    on_progress: Optional[Callable[[int, int], None]] = None
