# services/s3_uploader.py
import asyncio
import logging
from typing import Dict, Optional, Set

from ..exceptions import CallbackError
from ..models.upload_models import (
    AbortMultipartOptions,
    CredentialsOptions,
    MultipartState,
    TemporaryCredentials,
    UploadFile,
    UploadOptions,
    UploadProgress,
    UploadResponse,
)
from .backend import invoke_callback
from .cancellation import CancellationToken, CancelReason
from .multipart_controller import MultipartUploadController
from .options import S3UploaderOptions
from .state_store import InMemoryStateStore
from .transport import HttpTransport
from .uploader import EventEmitter, ProgressCallback

logger = logging.getLogger(__name__)


class S3Uploader:
    """
    Uploads files to S3-compatible storage through presigned URLs.

    Files above the multipart threshold go through a
    MultipartUploadController, one per file id; smaller files take a
    single presigned PUT. Multipart state lives in `state_store`.
    """

    supports_pause = True
    supports_resume = True

    def __init__(
        self,
        options: S3UploaderOptions,
        transport: Optional[HttpTransport] = None,
        state_store: Optional[InMemoryStateStore] = None,
    ):
        self.options = options
        self.transport = transport or HttpTransport()
        self._owns_transport = transport is None
        self.state_store = state_store or InMemoryStateStore()

        self._controllers: Dict[str, MultipartUploadController] = {}
        self._single_tokens: Dict[str, CancellationToken] = {}
        self._abort_tasks: Set[asyncio.Task] = set()

        self._credentials: Optional[TemporaryCredentials] = None
        self._credentials_lock = asyncio.Lock()

    @property
    def has_temporary_credentials(self) -> bool:
        return self.options.get_temporary_credentials is not None

    def multipart_state(self, file_id: str) -> Optional[MultipartState]:
        return self.state_store.peek(file_id)

    def controller_for(self, file_id: str) -> Optional[MultipartUploadController]:
        return self._controllers.get(file_id)

    async def upload(self, file: UploadFile, on_progress: ProgressCallback, emit_event: EventEmitter) -> UploadResponse:
        controller = self._controllers.get(file.id)
        if controller is not None:
            return await controller.start()

        if not self.options.use_multipart(file):
            return await self._upload_single(file, on_progress)

        multipart = await self.state_store.load(file.id)
        controller = self._register(file, multipart, on_progress, emit_event, bool(multipart.upload_id))
        return await controller.start()

    async def pause(self, file: UploadFile) -> bool:
        controller = self._controllers.get(file.id)
        if controller is None:
            return False
        return controller.pause()

    async def resume(self, file: UploadFile, on_progress: ProgressCallback, emit_event: EventEmitter) -> UploadResponse:
        controller = self._controllers.get(file.id)
        if controller is None:
            multipart = await self.state_store.load(file.id)
            if not multipart.upload_id:
                return await self.upload(file, on_progress, emit_event)
            # Controller lost (e.g. new process); keep the remote upload
            logger.info(f"Continuing existing multipart upload {multipart.upload_id} for {file.name}")
            controller = self._register(file, multipart, on_progress, emit_event, True)

        controller.resume()
        return await controller.start()

    async def cancel(self, file: UploadFile) -> None:
        token = self._single_tokens.pop(file.id, None)
        if token is not None:
            token.cancel(CancelReason.CANCEL)

        controller = self._controllers.pop(file.id, None)
        if controller is not None:
            controller.cancel()

        multipart = self.state_store.peek(file.id)
        if multipart is not None and multipart.upload_id:
            self._schedule_abort(file, multipart.upload_id, multipart.key)
            await self.state_store.reset(file.id)

    async def reset_state(self, file: UploadFile) -> None:
        self._controllers.pop(file.id, None)
        await self.state_store.remove(file.id)

    def clear_credentials_cache(self) -> None:
        self._credentials = None

    async def dispose(self) -> None:
        """Pause live controllers, wait for pending aborts, release the transport"""
        for controller in list(self._controllers.values()):
            controller.pause()
        self._controllers.clear()

        for token in self._single_tokens.values():
            token.cancel(CancelReason.CANCEL)
        self._single_tokens.clear()

        if self._abort_tasks:
            await asyncio.gather(*self._abort_tasks, return_exceptions=True)
        if self._owns_transport:
            await self.transport.aclose()

    def _register(
        self,
        file: UploadFile,
        multipart: MultipartState,
        on_progress: ProgressCallback,
        emit_event: EventEmitter,
        continue_existing: bool,
    ) -> MultipartUploadController:
        controller = MultipartUploadController(
            file,
            multipart,
            self.options,
            self.transport,
            on_progress=on_progress,
            emit_event=emit_event,
            get_credentials=self._get_credentials if self.has_temporary_credentials else None,
            state_store=self.state_store,
            on_finished=self._deregister,
            continue_existing=continue_existing,
        )
        self._controllers[file.id] = controller
        return controller

    def _deregister(self, controller: MultipartUploadController) -> None:
        if self._controllers.get(controller.file.id) is controller:
            del self._controllers[controller.file.id]

    def _schedule_abort(self, file: UploadFile, upload_id: str, key: str) -> None:
        async def abort() -> None:
            try:
                await invoke_callback(
                    "abort_multipart_upload",
                    self.options.backend.abort_multipart_upload(
                        file, AbortMultipartOptions(upload_id=upload_id, key=key)
                    ),
                )
                logger.info(f"Aborted multipart upload {upload_id}")
            except CallbackError as e:
                logger.warning(f"Could not abort multipart upload {upload_id}: {e}")

        task = asyncio.create_task(abort())
        self._abort_tasks.add(task)
        task.add_done_callback(self._abort_tasks.discard)

    async def _get_credentials(self, token: CancellationToken) -> Optional[TemporaryCredentials]:
        if self.options.get_temporary_credentials is None:
            return None
        if self._credentials is not None and not self._credentials.needs_refresh():
            return self._credentials

        async with self._credentials_lock:
            # Another caller may have refreshed while we waited
            if self._credentials is not None and not self._credentials.needs_refresh():
                return self._credentials
            logger.debug("Fetching temporary credentials")
            self._credentials = await invoke_callback(
                "get_temporary_credentials",
                self.options.get_temporary_credentials(CredentialsOptions(signal=token)),
                token,
            )
            return self._credentials

    async def _upload_single(self, file: UploadFile, on_progress: ProgressCallback) -> UploadResponse:
        token = CancellationToken()
        self._single_tokens[file.id] = token
        try:
            params = await invoke_callback(
                "get_upload_parameters",
                self.options.backend.get_upload_parameters(file, UploadOptions(signal=token)),
                token,
            )
            data = await file.get_bytes()

            reported = 0
            on_progress(UploadProgress(bytes_uploaded=0, bytes_total=file.size))

            def progress(sent: int, total: int) -> None:
                nonlocal reported
                # Retries restart the body from zero; only report forward movement
                if sent > reported and not token.is_cancelled:
                    reported = min(sent, file.size)
                    on_progress(UploadProgress(bytes_uploaded=reported, bytes_total=file.size))

            logger.debug(f"Uploading {file.name} in a single request ({file.size} bytes)")
            result = await self.options.retry_policy.execute(
                lambda: self.transport.send(
                    params.url,
                    data,
                    method=params.method,
                    headers=params.headers,
                    expires=params.expires,
                    on_progress=progress,
                    token=token,
                ),
                token=token,
            )
        finally:
            if self._single_tokens.get(file.id) is token:
                del self._single_tokens[file.id]

        if reported < file.size:
            on_progress(UploadProgress(bytes_uploaded=file.size, bytes_total=file.size))

        body = {}
        if result.etag:
            body["etag"] = result.etag
        location = result.location or params.url.split("?", 1)[0]
        logger.info(f"Uploaded {file.name} to {location}")
        return UploadResponse(location=location, body=body)
