# services/cancellation.py
import asyncio
import logging
from enum import Enum
from typing import Awaitable, Callable, List, Optional, TypeVar

from ..exceptions import ExpiredUrlError, PausedError, UploadCancelledError

logger = logging.getLogger(__name__)

T = TypeVar("T")


class CancelReason(str, Enum):
    PAUSE = "pause"
    CANCEL = "cancel"
    TIMED_OUT = "timed_out"


class CancellationToken:
    """
    One-shot cancellation signal shared by the operations of an attempt.

    The reason tells a resumable pause apart from a terminal cancel, so
    callers never have to inspect error messages.
    """

    def __init__(self):
        self._event = asyncio.Event()
        self._reason: Optional[CancelReason] = None
        self._listeners: List[Callable[[CancelReason], None]] = []
        self._unlink: Optional[Callable[[], None]] = None

    @property
    def is_cancelled(self) -> bool:
        return self._reason is not None

    @property
    def reason(self) -> Optional[CancelReason]:
        return self._reason

    def cancel(self, reason: CancelReason = CancelReason.CANCEL) -> None:
        if self._reason is not None:
            return
        self._reason = reason
        self._event.set()
        listeners, self._listeners = self._listeners, []
        for listener in listeners:
            try:
                listener(reason)
            except Exception as e:
                logger.error(f"Cancellation listener failed: {e}")

    def on_cancel(self, listener: Callable[[CancelReason], None]) -> Callable[[], None]:
        """Run `listener` once on cancellation; returns a function that detaches it"""
        if self._reason is not None:
            listener(self._reason)
        else:
            self._listeners.append(listener)

        def detach() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return detach

    def link(self) -> "CancellationToken":
        """
        Child token that fires whenever this one does.

        Cancelling the child leaves this token untouched. Call the
        returned child's `unlink()` once it is no longer needed.
        """
        child = CancellationToken()
        child._unlink = self.on_cancel(child.cancel)
        return child

    def unlink(self) -> None:
        if self._unlink is not None:
            self._unlink()
            self._unlink = None

    def error(self) -> Exception:
        """The exception matching the cancellation reason"""
        if self._reason == CancelReason.PAUSE:
            return PausedError()
        if self._reason == CancelReason.TIMED_OUT:
            return ExpiredUrlError("Request timed out (presigned URL may have expired)")
        return UploadCancelledError()

    def throw_if_cancelled(self) -> None:
        if self._reason is not None:
            raise self.error()

    async def wait(self) -> CancelReason:
        await self._event.wait()
        return self._reason

    async def guard(self, awaitable: Awaitable[T]) -> T:
        """
        Await `awaitable`, abandoning it as soon as the token fires.

        The abandoned operation is cancelled and the exception for the
        cancellation reason is raised instead.
        """
        if self._reason is not None:
            if asyncio.iscoroutine(awaitable):
                awaitable.close()
            raise self.error()
        task = asyncio.ensure_future(awaitable)
        waiter = asyncio.ensure_future(self._event.wait())
        try:
            await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            waiter.cancel()
            if not task.done():
                task.cancel()
                await asyncio.gather(task, return_exceptions=True)

        if not task.cancelled() and task.done() and (self._reason is None or task.exception() is None):
            return task.result()
        raise self.error()
