# services/orchestrator.py
import asyncio
import logging
from typing import AsyncIterator, Awaitable, Callable, Dict, List, Optional, Set

from ..exceptions import PausedError, UploadCancelledError
from ..models.events import (
    AllUploadsCompleteEvent,
    FileAddedEvent,
    FileRemovedEvent,
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
from ..models.upload_models import UploadFile, UploadProgress, UploadResponse, UploadStatus
from .uploader import Uploader

logger = logging.getLogger(__name__)

EventListener = Callable[[UploadEvent], None]

# Files in these states keep all-uploads-complete from firing
ACTIVE_STATUSES = (UploadStatus.PENDING, UploadStatus.UPLOADING, UploadStatus.PAUSED)

_CLOSED = object()


class UploadOrchestrator:
    """
    File queue in front of an Uploader.

    At most `max_concurrent` files transfer at once. Each file's status
    follows the outcome of its upload: complete, paused (controller kept
    for resume), cancelled or error (retryable).
    """

    def __init__(self, uploader: Uploader, max_concurrent: int = 6):
        if max_concurrent < 1:
            raise ValueError("max_concurrent must be at least 1")
        self.uploader = uploader
        self.max_concurrent = max_concurrent

        self._files: Dict[str, UploadFile] = {}
        self._semaphore = asyncio.Semaphore(max_concurrent)
        self._listeners: List[EventListener] = []
        self._queues: List[asyncio.Queue] = []
        self._resuming: Set[str] = set()
        self._attempts: Dict[str, int] = {}
        self._retries: Dict[str, int] = {}
        self._tasks: Set[asyncio.Task] = set()
        self._all_complete_emitted = False

    # Events

    def subscribe(self, listener: EventListener) -> Callable[[], None]:
        """Register `listener` for every event; returns the unsubscribe function"""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    async def events(self) -> AsyncIterator[UploadEvent]:
        """Async stream of events, ending when the orchestrator is disposed"""
        queue: asyncio.Queue = asyncio.Queue()
        self._queues.append(queue)
        try:
            while True:
                event = await queue.get()
                if event is _CLOSED:
                    return
                yield event
        finally:
            if queue in self._queues:
                self._queues.remove(queue)

    def emit(self, event: UploadEvent) -> None:
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception as e:
                logger.error(f"Event listener failed on {event.type}: {e}")
        for queue in self._queues:
            queue.put_nowait(event)

    # Files

    @property
    def files(self) -> List[UploadFile]:
        return list(self._files.values())

    def get_file(self, file_id: str) -> Optional[UploadFile]:
        return self._files.get(file_id)

    def _by_status(self, status: UploadStatus) -> List[UploadFile]:
        return [f for f in self._files.values() if f.status == status]

    @property
    def pending_files(self) -> List[UploadFile]:
        return self._by_status(UploadStatus.PENDING)

    @property
    def uploading_files(self) -> List[UploadFile]:
        return self._by_status(UploadStatus.UPLOADING)

    @property
    def paused_files(self) -> List[UploadFile]:
        return self._by_status(UploadStatus.PAUSED)

    @property
    def completed_files(self) -> List[UploadFile]:
        return self._by_status(UploadStatus.COMPLETE)

    @property
    def failed_files(self) -> List[UploadFile]:
        return self._by_status(UploadStatus.ERROR)

    @property
    def overall_progress(self) -> UploadProgress:
        total = 0
        uploaded = 0
        for file in self._files.values():
            total += file.size
            if file.status == UploadStatus.COMPLETE:
                uploaded += file.size
            elif file.progress is not None:
                uploaded += file.progress.bytes_uploaded
        return UploadProgress(bytes_uploaded=min(uploaded, total), bytes_total=total)

    def add_file(self, file: UploadFile) -> UploadFile:
        self._files[file.id] = file
        self._all_complete_emitted = False
        logger.debug(f"Added file {file.name} ({file.size} bytes)")
        self.emit(FileAddedEvent(file=file))
        return file

    def add_files(self, files: List[UploadFile]) -> List[UploadFile]:
        return [self.add_file(file) for file in files]

    async def remove_file(self, file_id: str) -> None:
        file = self._files.get(file_id)
        if file is None:
            return
        if file.status in (UploadStatus.UPLOADING, UploadStatus.PAUSED):
            await self.uploader.cancel(file)
        await self.uploader.reset_state(file)

        del self._files[file_id]
        self._attempts.pop(file_id, None)
        self._retries.pop(file_id, None)
        self.emit(FileRemovedEvent(file=file))
        self._check_all_complete()

    async def clear_completed(self) -> None:
        for file in self.completed_files:
            await self.remove_file(file.id)

    async def clear_all(self) -> None:
        for file_id in list(self._files):
            await self.remove_file(file_id)

    def _require(self, file_id: str) -> UploadFile:
        file = self._files.get(file_id)
        if file is None:
            raise ValueError(f"File not found: {file_id}")
        return file

    # Uploads

    async def upload(self, file_id: Optional[str] = None) -> None:
        """Upload one file, or every pending file when no id is given"""
        if file_id is not None:
            await self._upload_file(self._require(file_id))
            return
        await asyncio.gather(*(self._upload_file(file) for file in self.pending_files))

    async def _upload_file(self, file: UploadFile) -> None:
        if file.status != UploadStatus.PENDING:
            logger.debug(f"Skipping {file.name}: status is {file.status.value}")
            return

        async with self._semaphore:
            # Cancelled or removed while waiting for a slot
            if file.status != UploadStatus.PENDING or file.id not in self._files:
                return
            self._set_status(file, UploadStatus.UPLOADING)
            self.emit(UploadStartedEvent(file=file))
            await self._run(
                file,
                lambda: self.uploader.upload(file, self._progress_handler(file), self.emit),
            )

    async def pause(self, file_id: str) -> bool:
        file = self._require(file_id)
        if file.status != UploadStatus.UPLOADING or not self.uploader.supports_pause:
            return False

        paused = await self.uploader.pause(file)
        if paused:
            self._set_status(file, UploadStatus.PAUSED)
            self.emit(UploadPausedEvent(file=file))
        return paused

    async def resume(self, file_id: str) -> Optional[asyncio.Task]:
        """
        Resume a paused file in the background.

        Returns the task driving the resumed upload, or None when there
        is nothing to resume or a resume for this file is in progress.
        """
        file = self._require(file_id)
        if file_id in self._resuming:
            logger.debug(f"Resume of {file.name} already in progress")
            return None
        if file.status not in (UploadStatus.PAUSED, UploadStatus.PENDING) or not self.uploader.supports_resume:
            return None

        self._resuming.add(file_id)
        task = asyncio.create_task(self._resume_file(file))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _resume_file(self, file: UploadFile) -> None:
        try:
            async with self._semaphore:
                if file.status not in (UploadStatus.PAUSED, UploadStatus.PENDING) or file.id not in self._files:
                    return

                progress = file.progress
                all_parts_done = (
                    progress is not None
                    and bool(progress.parts_total)
                    and progress.parts_uploaded == progress.parts_total
                )
                first_start = file.status == UploadStatus.PENDING
                self._set_status(file, UploadStatus.UPLOADING)
                # A pending file has not started here yet, even if a remote upload exists
                if first_start:
                    self.emit(UploadStartedEvent(file=file))
                elif not all_parts_done:
                    self.emit(UploadResumedEvent(file=file))
                logger.info(f"Resuming upload of {file.name}")

                await self._run(
                    file,
                    lambda: self.uploader.resume(file, self._progress_handler(file), self.emit),
                )
        finally:
            self._resuming.discard(file.id)

    async def cancel(self, file_id: str) -> None:
        file = self._require(file_id)
        if file.status in (UploadStatus.COMPLETE, UploadStatus.CANCELLED):
            return

        await self.uploader.cancel(file)
        self._set_status(file, UploadStatus.CANCELLED)
        self.emit(UploadCancelledEvent(file=file))
        self._check_all_complete()

    async def retry(self, file_id: str) -> None:
        """Start a failed or cancelled file over with a fresh remote upload"""
        file = self._require(file_id)
        if file.status not in (UploadStatus.ERROR, UploadStatus.CANCELLED):
            return

        await self.uploader.reset_state(file)
        attempt = self._retries.get(file_id, 0) + 1
        self._retries[file_id] = attempt

        previous = file.status
        file.reset()
        self._notify_status(file, previous)
        self.emit(UploadRetryEvent(file=file, attempt=attempt))
        logger.info(f"Retrying upload of {file.name} (attempt {attempt})")

        await self._upload_file(file)

    async def pause_all(self) -> None:
        for file in self.uploading_files:
            await self.pause(file.id)

    async def resume_all(self) -> List[asyncio.Task]:
        tasks = []
        for file in self.paused_files:
            task = await self.resume(file.id)
            if task is not None:
                tasks.append(task)
        return tasks

    async def retry_all(self) -> None:
        await asyncio.gather(*(self.retry(file.id) for file in self.failed_files))

    async def cancel_all(self) -> None:
        for file in self.files:
            if file.status not in (UploadStatus.COMPLETE, UploadStatus.CANCELLED):
                await self.cancel(file.id)

    async def dispose(self) -> None:
        await self.uploader.dispose()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        for queue in self._queues:
            queue.put_nowait(_CLOSED)
        self._listeners.clear()

    # Internals

    def _progress_handler(self, file: UploadFile) -> Callable[[UploadProgress], None]:
        def handle(progress: UploadProgress) -> None:
            file.progress = progress
            self.emit(UploadProgressEvent(file=file, progress=progress))

        return handle

    def _set_status(self, file: UploadFile, status: UploadStatus) -> None:
        previous = file.status
        file.status = status
        self._notify_status(file, previous)

    def _notify_status(self, file: UploadFile, previous: UploadStatus) -> None:
        if file.status == previous:
            return
        if file.status in ACTIVE_STATUSES:
            self._all_complete_emitted = False
        self.emit(StateChangedEvent(file=file, previous_status=previous, new_status=file.status))

    async def _run(self, file: UploadFile, operation: Callable[[], Awaitable[UploadResponse]]) -> None:
        attempt = self._attempts.get(file.id, 0) + 1
        self._attempts[file.id] = attempt

        def current() -> bool:
            return file.id in self._files and self._attempts.get(file.id) == attempt

        try:
            response = await operation()
        except PausedError:
            if current() and file.status == UploadStatus.UPLOADING:
                self._set_status(file, UploadStatus.PAUSED)
            return
        except UploadCancelledError:
            if current() and file.status != UploadStatus.CANCELLED:
                self._set_status(file, UploadStatus.CANCELLED)
                self.emit(UploadCancelledEvent(file=file))
        except Exception as e:
            if not current() or file.status == UploadStatus.CANCELLED:
                return
            message = str(e)
            logger.error(f"Upload of {file.name} failed: {message}")
            previous = file.status
            file.mark_error(message, e)
            self._notify_status(file, previous)
            self.emit(UploadErrorEvent(file=file, message=message, cause=e))
        else:
            if not current() or file.status == UploadStatus.CANCELLED:
                return
            file.response = response
            self._set_status(file, UploadStatus.COMPLETE)
            logger.info(f"Upload of {file.name} complete")
            self.emit(UploadCompleteEvent(file=file, response=response))

        self._check_all_complete()

    def _check_all_complete(self) -> None:
        if not self._files or self._all_complete_emitted:
            return
        if any(file.status in ACTIVE_STATUSES for file in self._files.values()):
            return

        self._all_complete_emitted = True
        self.emit(AllUploadsCompleteEvent(successful=self.completed_files, failed=self.failed_files))
