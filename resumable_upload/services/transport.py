# services/transport.py
import asyncio
import logging
from typing import AsyncIterator, Callable, Dict, Optional

import httpx

from ..exceptions import ExpiredUrlError, TransportError
from ..models.upload_models import TransferResult
from .cancellation import CancellationToken, CancelReason

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[int, int], None]

DEFAULT_TIMEOUT_SECONDS = 60.0

# Throttling and timeouts worth another attempt; 5xx are always retried
RETRYABLE_STATUS_CODES = (408, 429)


class HttpTransport:
    """
    Sends request bodies to presigned URLs with httpx.

    Progress is reported as the body is consumed by the connection. A
    presigned URL's expiry doubles as the request timeout.
    """

    def __init__(self, client: Optional[httpx.AsyncClient] = None, block_size: int = 64 * 1024):
        self._client = client or httpx.AsyncClient(timeout=DEFAULT_TIMEOUT_SECONDS)
        self._owns_client = client is None
        self.block_size = block_size

    async def send(
        self,
        url: str,
        data: bytes,
        method: str = "PUT",
        headers: Optional[Dict[str, str]] = None,
        expires: Optional[int] = None,
        on_progress: Optional[ProgressCallback] = None,
        token: Optional[CancellationToken] = None,
    ) -> TransferResult:
        request_headers = dict(headers or {})
        if not any(name.lower() == "content-type" for name in request_headers):
            request_headers["Content-Type"] = "application/octet-stream"
        # Storage rejects chunked uploads; the stream below needs an explicit length
        request_headers["Content-Length"] = str(len(data))

        timeout = httpx.Timeout(float(expires)) if expires and expires > 0 else httpx.USE_CLIENT_DEFAULT
        request = self._client.request(
            method,
            url,
            content=self._body(data, on_progress),
            headers=request_headers,
            timeout=timeout,
        )

        # The request gets its own token so the URL deadline ends only this call
        request_token = token.link() if token is not None else CancellationToken()
        deadline = None
        if expires and expires > 0:
            deadline = asyncio.get_running_loop().call_later(expires, request_token.cancel, CancelReason.TIMED_OUT)

        try:
            response = await request_token.guard(request)
        except httpx.TimeoutException as e:
            if expires:
                raise ExpiredUrlError(
                    f"Request timed out after {expires} seconds (presigned URL may have expired)"
                ) from e
            raise TransportError(f"Request timed out: {e}") from e
        except httpx.TransportError as e:
            raise TransportError(f"Network error: {e}") from e
        finally:
            if deadline is not None:
                deadline.cancel()
            request_token.unlink()

        if not 200 <= response.status_code < 300:
            body = response.text
            if ExpiredUrlError.is_expired_response(response.status_code, body):
                raise ExpiredUrlError(status_code=response.status_code, body=body)
            # Other 4xx responses (bad signature, missing upload) fail the same way every time
            raise TransportError(
                "Upload failed",
                status_code=response.status_code,
                body=body,
                retryable=response.status_code >= 500 or response.status_code in RETRYABLE_STATUS_CODES,
            )

        return TransferResult(
            etag=response.headers.get("etag"),
            location=response.headers.get("location"),
            status_code=response.status_code,
            headers=dict(response.headers),
        )

    async def _body(self, data: bytes, on_progress: Optional[ProgressCallback]) -> AsyncIterator[bytes]:
        total = len(data)
        sent = 0
        view = memoryview(data)
        while sent < total:
            block = bytes(view[sent:sent + self.block_size])
            yield block
            sent += len(block)
            if on_progress is not None:
                on_progress(sent, total)

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()
