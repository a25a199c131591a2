# services/uploader.py
from typing import Callable, Protocol, runtime_checkable

from ..models.events import UploadEvent
from ..models.upload_models import UploadFile, UploadProgress, UploadResponse

ProgressCallback = Callable[[UploadProgress], None]
EventEmitter = Callable[[UploadEvent], None]


@runtime_checkable
class Uploader(Protocol):
    """
    What the orchestrator needs from a transport.

    Protocol-specific state stays inside the implementation, keyed by
    file id, so the orchestrator only ever asks for `reset_state`.
    """

    supports_pause: bool
    supports_resume: bool

    async def upload(self, file: UploadFile, on_progress: ProgressCallback, emit_event: EventEmitter) -> UploadResponse: ...

    async def pause(self, file: UploadFile) -> bool: ...

    async def resume(self, file: UploadFile, on_progress: ProgressCallback, emit_event: EventEmitter) -> UploadResponse: ...

    async def cancel(self, file: UploadFile) -> None: ...

    async def reset_state(self, file: UploadFile) -> None: ...

    async def dispose(self) -> None: ...
