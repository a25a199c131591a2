# services/options.py
import math
from typing import Awaitable, Callable, Optional

from pydantic import BaseModel, ConfigDict, Field

from ..models.upload_models import (
    CredentialsOptions,
    TemporaryCredentials,
    TransferResult,
    UploadFile,
    UploadPartBytesOptions,
)
from .backend import UploadBackend
from .retry import RetryPolicy

DEFAULT_MULTIPART_THRESHOLD = 100 * 1024 * 1024
DEFAULT_CHUNK_SIZE = 5 * 1024 * 1024
MIN_CHUNK_SIZE = 5 * 1024 * 1024
MAX_PARTS = 10000


class S3UploaderOptions(BaseModel):
    model_config = ConfigDict(arbitrary_types_allowed=True)

    backend: UploadBackend
    should_use_multipart: Optional[Callable[[UploadFile], bool]] = None
    get_chunk_size: Optional[Callable[[UploadFile], int]] = None
    get_temporary_credentials: Optional[
        Callable[[CredentialsOptions], Awaitable[TemporaryCredentials]]
    ] = None
    # Replaces the built-in HTTP PUT for part bodies; still retried
    upload_part_bytes: Optional[Callable[[UploadPartBytesOptions], Awaitable[TransferResult]]] = None
    max_concurrent_parts: int = Field(default=3, ge=1)
    retry_policy: RetryPolicy = RetryPolicy()
    part_url_expires: int = Field(default=3600, ge=1, le=604800)

    def use_multipart(self, file: UploadFile) -> bool:
        if self.should_use_multipart is not None:
            return self.should_use_multipart(file)
        return file.size > DEFAULT_MULTIPART_THRESHOLD

    def chunk_size(self, file: UploadFile) -> int:
        size = DEFAULT_CHUNK_SIZE
        if self.get_chunk_size is not None:
            size = self.get_chunk_size(file)
        return max(size, MIN_CHUNK_SIZE, math.ceil(file.size / MAX_PARTS))

    def total_parts(self, file: UploadFile) -> int:
        return max(1, math.ceil(file.size / self.chunk_size(file)))
