# services/multipart_controller.py
import asyncio
import logging
from enum import Enum
from typing import Awaitable, Callable, Dict, List, Optional, Set

from ..exceptions import MissingPartsError, PausedError, TransportError, UploadCancelledError
from ..models.events import PartUploadedEvent, UploadEvent
from ..models.upload_models import (
    CompleteMultipartOptions,
    ListPartsOptions,
    MultipartState,
    Part,
    SignPartOptions,
    SignPartResult,
    TemporaryCredentials,
    TransferResult,
    UploadFile,
    UploadPartBytesOptions,
    UploadProgress,
    UploadResponse,
)
from ..utils import normalize_etag
from .backend import invoke_callback
from .cancellation import CancellationToken, CancelReason
from .options import S3UploaderOptions
from .signer import AwsSignatureV4
from .state_store import InMemoryStateStore
from .transport import HttpTransport

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[UploadProgress], None]
EventEmitter = Callable[[UploadEvent], None]
CredentialsProvider = Callable[[CancellationToken], Awaitable[Optional[TemporaryCredentials]]]


class ControllerState(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    PAUSED = "paused"
    CANCELLED = "cancelled"
    COMPLETED = "completed"
    ERROR = "error"


def _consume_result(future: asyncio.Future) -> None:
    if not future.cancelled():
        future.exception()


class MultipartUploadController:
    """
    Drives one file's multipart upload.

    idle -> running -> paused <-> running -> completed | cancelled | error

    The controller survives a pause: pause fires the attempt's token with
    the PAUSE reason and swaps in a fresh token, and the next start()
    lists the remote parts and uploads whatever is missing. Completion,
    cancellation and errors call `on_finished` so the owner can drop it.
    """

    def __init__(
        self,
        file: UploadFile,
        multipart: MultipartState,
        options: S3UploaderOptions,
        transport: HttpTransport,
        on_progress: ProgressCallback,
        emit_event: EventEmitter,
        get_credentials: Optional[CredentialsProvider] = None,
        state_store: Optional[InMemoryStateStore] = None,
        on_finished: Optional[Callable[["MultipartUploadController"], None]] = None,
        continue_existing: bool = False,
    ):
        self.file = file
        self.multipart = multipart
        self.options = options
        self.transport = transport
        self.on_progress = on_progress
        self.emit_event = emit_event
        self.get_credentials = get_credentials
        self.state_store = state_store
        self.on_finished = on_finished

        self._state = ControllerState.IDLE
        self._token: Optional[CancellationToken] = None
        self._result: Optional[asyncio.Future] = None
        self._started = continue_existing
        self._generation = 0
        self._finished = False

        self._total_parts = 0
        self._in_flight: Dict[int, int] = {}
        self._completed_bytes = 0
        self._confirmed: Set[int] = set()
        self._save_lock = asyncio.Lock()

    @property
    def state(self) -> ControllerState:
        return self._state

    def _ensure_result(self) -> asyncio.Future:
        if self._result is None:
            self._result = asyncio.get_running_loop().create_future()
            self._result.add_done_callback(_consume_result)
        return self._result

    async def start(self) -> UploadResponse:
        """
        Start the upload, or continue it after a pause.

        Raises PausedError if the attempt was paused before finishing.
        """
        result = self._ensure_result()
        if result.done() and self._state in (ControllerState.COMPLETED, ControllerState.ERROR):
            return result.result()
        if self._state == ControllerState.CANCELLED:
            raise UploadCancelledError()

        if self._token is not None and not self._token.is_cancelled:
            self._token.cancel(CancelReason.PAUSE)
        token = self._token = CancellationToken()
        self._generation += 1
        generation = self._generation
        resuming = self._started
        self._started = True

        await self._run(generation, token, resuming)

        # A newer start() owns the result once this attempt was superseded
        if self._state == ControllerState.PAUSED or generation != self._generation:
            raise PausedError()
        return await result

    def pause(self) -> bool:
        if self._state in (ControllerState.COMPLETED, ControllerState.CANCELLED, ControllerState.ERROR):
            return False

        self._state = ControllerState.PAUSED
        if self._token is not None and not self._token.is_cancelled:
            self._token.cancel(CancelReason.PAUSE)
        self._token = CancellationToken()
        logger.info(f"Paused multipart upload of {self.file.name}")
        return True

    def resume(self) -> None:
        """Mark as running; start() does the actual work"""
        if self._state in (ControllerState.COMPLETED, ControllerState.CANCELLED):
            return
        self._state = ControllerState.RUNNING

    def cancel(self) -> None:
        if self._state == ControllerState.COMPLETED:
            return

        self._state = ControllerState.CANCELLED
        if self._token is not None:
            self._token.cancel(CancelReason.CANCEL)
        result = self._ensure_result()
        if not result.done():
            result.set_exception(UploadCancelledError())
        logger.info(f"Cancelled multipart upload of {self.file.name}")
        self._finish()

    async def _run(self, generation: int, token: CancellationToken, resuming: bool) -> None:
        self._state = ControllerState.RUNNING
        try:
            if resuming and self.multipart.upload_id:
                await self._sync_parts(token)
            else:
                await self._create_upload(token)
            await self._upload_parts(token)
            response = await self._complete_upload(token)
        except PausedError:
            if generation == self._generation and self._state != ControllerState.CANCELLED:
                self._state = ControllerState.PAUSED
            return
        except UploadCancelledError as e:
            if generation == self._generation:
                self._fail(ControllerState.CANCELLED, e)
            return
        except Exception as e:
            if generation == self._generation and self._state != ControllerState.CANCELLED:
                logger.error(f"Multipart upload of {self.file.name} failed: {e}")
                self._fail(ControllerState.ERROR, e)
            return

        self._state = ControllerState.COMPLETED
        result = self._ensure_result()
        if not result.done():
            result.set_result(response)
        self._finish()

    def _fail(self, state: ControllerState, error: BaseException) -> None:
        self._state = state
        result = self._ensure_result()
        if not result.done():
            result.set_exception(error)
        self._finish()

    def _finish(self) -> None:
        if self._finished:
            return
        self._finished = True
        if self.on_finished is not None:
            self.on_finished(self)

    def _throw_if_interrupted(self, token: CancellationToken) -> None:
        token.throw_if_cancelled()
        if self._state == ControllerState.PAUSED:
            raise PausedError()
        if self._state == ControllerState.CANCELLED:
            raise UploadCancelledError()

    async def _persist(self) -> None:
        if self.state_store is None:
            return
        async with self._save_lock:
            await self.state_store.save(self.file.id)

    async def _create_upload(self, token: CancellationToken) -> None:
        self._throw_if_interrupted(token)
        result = await invoke_callback(
            "create_multipart_upload",
            self.options.backend.create_multipart_upload(self.file),
            token,
        )
        self.multipart.upload_id = result.upload_id
        self.multipart.key = result.key
        self.multipart.is_multipart = True
        self.multipart.uploaded_parts.clear()
        logger.info(f"Created multipart upload {result.upload_id} for {self.file.name}")
        await self._persist()

    async def _sync_parts(self, token: CancellationToken) -> None:
        """Replace local part bookkeeping with the remote listing"""
        self._throw_if_interrupted(token)
        parts = await invoke_callback(
            "list_parts",
            self.options.backend.list_parts(
                self.file,
                ListPartsOptions(upload_id=self.multipart.upload_id, key=self.multipart.key, signal=token),
            ),
            token,
        )

        total_parts = self.options.total_parts(self.file)
        listed: Dict[int, Part] = {}
        for part in parts:
            if 1 <= part.part_number <= total_parts:
                listed.setdefault(part.part_number, part)

        discarded = {p.part_number for p in self.multipart.uploaded_parts} - set(listed)
        if discarded:
            logger.debug(f"Discarding parts {sorted(discarded)} of {self.file.name} not present remotely")

        self.multipart.uploaded_parts[:] = list(listed.values())
        await self._persist()

    async def _upload_parts(self, token: CancellationToken) -> None:
        self._throw_if_interrupted(token)

        chunk_size = self.options.chunk_size(self.file)
        self._total_parts = self.options.total_parts(self.file)

        done = {p.part_number for p in self.multipart.uploaded_parts}
        self._completed_bytes = sum(p.size for p in self.multipart.uploaded_parts)
        self._in_flight.clear()
        self._confirmed = set(done)

        missing = [n for n in range(1, self._total_parts + 1) if n not in done]
        if not missing:
            return

        self._emit_progress()

        gate = asyncio.Semaphore(self.options.max_concurrent_parts)

        async def run_part(part_number: int) -> None:
            try:
                part = await self._upload_part(part_number, chunk_size, token)
                self._throw_if_interrupted(token)
                if self._confirm_part(part):
                    await self._persist()
            finally:
                gate.release()

        tasks: List[asyncio.Future] = []
        try:
            for part_number in missing:
                await gate.acquire()
                try:
                    self._throw_if_interrupted(token)
                    _raise_first_failure(tasks)
                except BaseException:
                    gate.release()
                    raise
                tasks.append(asyncio.ensure_future(run_part(part_number)))
            await asyncio.gather(*tasks)
        except BaseException:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise

    async def _upload_part(self, part_number: int, chunk_size: int, token: CancellationToken) -> Part:
        start = (part_number - 1) * chunk_size
        end = min(start + chunk_size, self.file.size)
        data = await self.file.get_chunk(start, end)
        self._throw_if_interrupted(token)

        signed = await self._sign_part(part_number, data, token)
        self._throw_if_interrupted(token)

        logger.debug(f"Uploading part {part_number}/{self._total_parts} of {self.file.name} ({len(data)} bytes)")
        result = await self.options.retry_policy.execute(
            lambda: self._send_part(signed, data, part_number, token),
            token=token,
        )
        return Part(part_number=part_number, size=len(data), etag=normalize_etag(result.etag))

    async def _sign_part(self, part_number: int, data: bytes, token: CancellationToken) -> SignPartResult:
        if self.get_credentials is not None:
            credentials = await self.get_credentials(token)
            if credentials is not None:
                return AwsSignatureV4.from_credentials(credentials).create_presigned_part_url(
                    key=self.multipart.key,
                    upload_id=self.multipart.upload_id,
                    part_number=part_number,
                    expires=self.options.part_url_expires,
                )

        return await invoke_callback(
            "sign_part",
            self.options.backend.sign_part(
                self.file,
                SignPartOptions(
                    upload_id=self.multipart.upload_id,
                    key=self.multipart.key,
                    part_number=part_number,
                    body=data,
                    signal=token,
                ),
            ),
            token,
        )

    async def _send_part(
        self,
        signed: SignPartResult,
        data: bytes,
        part_number: int,
        token: CancellationToken,
    ) -> TransferResult:
        def progress(sent: int, total: int) -> None:
            if not token.is_cancelled:
                self._update_part_progress(part_number, sent)

        if self.options.upload_part_bytes is not None:
            result = await token.guard(self.options.upload_part_bytes(
                UploadPartBytesOptions(
                    url=signed.url,
                    headers=signed.headers,
                    body=data,
                    size=len(data),
                    expires=signed.expires,
                    signal=token,
                    on_progress=progress,
                )
            ))
        else:
            result = await self.transport.send(
                signed.url,
                data,
                headers=signed.headers,
                expires=signed.expires,
                on_progress=progress,
                token=token,
            )

        if not result.etag:
            raise TransportError("No ETag in response", status_code=result.status_code, retryable=False)
        return result

    def _update_part_progress(self, part_number: int, sent: int) -> None:
        # Late callbacks for confirmed parts would count their bytes twice
        if part_number in self._confirmed:
            return
        self._in_flight[part_number] = max(self._in_flight.get(part_number, 0), sent)
        self._emit_progress()

    def _confirm_part(self, part: Part) -> bool:
        """
        Record a part the store has confirmed.

        The only place part bookkeeping changes during an attempt; it
        never awaits, so concurrent part tasks see it as one step.
        """
        if part.part_number in self._confirmed:
            return False
        self._confirmed.add(part.part_number)
        self._in_flight.pop(part.part_number, None)
        self._completed_bytes += part.size
        self.multipart.uploaded_parts.append(part)

        self._emit_progress()
        self.emit_event(PartUploadedEvent(file=self.file, part=part, total_parts=self._total_parts))
        return True

    def _emit_progress(self) -> None:
        in_flight = sum(self._in_flight.values())
        bytes_uploaded = min(max(self._completed_bytes + in_flight, 0), self.file.size)
        self.on_progress(UploadProgress(
            bytes_uploaded=bytes_uploaded,
            bytes_total=self.file.size,
            parts_uploaded=len(self.multipart.uploaded_parts),
            parts_total=self._total_parts,
        ))

    async def _complete_upload(self, token: CancellationToken) -> UploadResponse:
        self._throw_if_interrupted(token)

        parts = sorted(self.multipart.uploaded_parts, key=lambda p: p.part_number)
        missing = sorted(set(range(1, self._total_parts + 1)) - {p.part_number for p in parts})
        if missing:
            raise MissingPartsError(missing)

        result = await invoke_callback(
            "complete_multipart_upload",
            self.options.backend.complete_multipart_upload(
                self.file,
                CompleteMultipartOptions(
                    upload_id=self.multipart.upload_id,
                    key=self.multipart.key,
                    parts=parts,
                    signal=token,
                ),
            ),
            token,
        )

        self._in_flight.clear()
        self._completed_bytes = sum(p.size for p in parts)
        self._emit_progress()

        body = dict(result.body or {})
        body.setdefault("key", self.multipart.key)
        if result.etag:
            body.setdefault("etag", result.etag)
        logger.info(f"Completed multipart upload {self.multipart.upload_id} ({len(parts)} parts)")
        return UploadResponse(location=result.location, body=body)


def _raise_first_failure(tasks: List[asyncio.Future]) -> None:
    for task in tasks:
        if task.done() and not task.cancelled() and task.exception() is not None:
            raise task.exception()
