# services/backend.py
from typing import Awaitable, List, Optional, Protocol, TypeVar, runtime_checkable

from ..exceptions import CallbackError, PausedError, UploadCancelledError
from ..models.upload_models import (
    AbortMultipartOptions,
    CompleteMultipartOptions,
    CompleteMultipartResult,
    CreateMultipartUploadResult,
    ListPartsOptions,
    Part,
    SignPartOptions,
    SignPartResult,
    UploadFile,
    UploadOptions,
    UploadParameters,
)
from .cancellation import CancellationToken

T = TypeVar("T")


@runtime_checkable
class UploadBackend(Protocol):
    """Callbacks an integrator supplies to issue URLs and manage uploads"""

    async def create_multipart_upload(self, file: UploadFile) -> CreateMultipartUploadResult: ...

    async def sign_part(self, file: UploadFile, options: SignPartOptions) -> SignPartResult: ...

    async def list_parts(self, file: UploadFile, options: ListPartsOptions) -> List[Part]: ...

    async def complete_multipart_upload(
        self, file: UploadFile, options: CompleteMultipartOptions
    ) -> CompleteMultipartResult: ...

    async def abort_multipart_upload(self, file: UploadFile, options: AbortMultipartOptions) -> None: ...

    async def get_upload_parameters(self, file: UploadFile, options: UploadOptions) -> UploadParameters: ...


async def invoke_callback(name: str, awaitable: Awaitable[T], token: Optional[CancellationToken] = None) -> T:
    """
    Await a backend callback exactly once.

    Anything the callback raises becomes a CallbackError, except the
    pause and cancel signals which pass through untouched.
    """
    try:
        if token is not None:
            return await token.guard(awaitable)
        return await awaitable
    except (PausedError, UploadCancelledError, CallbackError):
        raise
    except Exception as e:
        raise CallbackError(name, e) from e
