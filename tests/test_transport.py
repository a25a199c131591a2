import asyncio

import httpx
import pytest

from resumable_upload.exceptions import ExpiredUrlError, PausedError, TransportError
from resumable_upload.services import CancellationToken, CancelReason, HttpTransport, RetryPolicy

URL = "https://bucket.s3.us-east-1.amazonaws.com/uploads/a.bin?X-Amz-Signature=abc"


def transport_for(handler, block_size=4):
    return HttpTransport(client=httpx.AsyncClient(transport=httpx.MockTransport(handler)), block_size=block_size)


class TestSend:
    async def test_success_reports_etag_and_progress(self):
        seen = {}

        async def handler(request):
            seen["body"] = await request.aread()
            seen["headers"] = request.headers
            return httpx.Response(200, headers={"ETag": '"abc"'})

        transport = transport_for(handler)
        progress = []

        result = await transport.send(URL, b"0123456789", on_progress=lambda sent, total: progress.append(sent))

        assert result.etag == '"abc"'
        assert result.status_code == 200
        assert seen["body"] == b"0123456789"
        assert seen["headers"]["content-length"] == "10"
        assert seen["headers"]["content-type"] == "application/octet-stream"
        assert progress == [4, 8, 10]

    async def test_keeps_caller_content_type(self):
        seen = {}

        def handler(request):
            seen["content-type"] = request.headers["content-type"]
            return httpx.Response(200)

        await transport_for(handler).send(URL, b"x", headers={"content-type": "image/png"})

        assert seen["content-type"] == "image/png"

    async def test_expired_url_is_not_retryable(self):
        def handler(request):
            return httpx.Response(403, text="<Error><Code>AccessDenied</Code><Message>Request has expired</Message></Error>")

        with pytest.raises(ExpiredUrlError) as exc_info:
            await transport_for(handler).send(URL, b"x")

        assert exc_info.value.status_code == 403
        assert not exc_info.value.retryable

    async def test_server_error_keeps_status(self):
        def handler(request):
            return httpx.Response(500, text="internal")

        with pytest.raises(TransportError) as exc_info:
            await transport_for(handler).send(URL, b"x")

        assert exc_info.value.status_code == 500
        assert exc_info.value.body == "internal"
        assert exc_info.value.retryable

    async def test_network_error(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        with pytest.raises(TransportError, match="Network error"):
            await transport_for(handler).send(URL, b"x")

    async def test_timeout_with_expiry_is_treated_as_expired(self):
        def handler(request):
            raise httpx.ReadTimeout("slow", request=request)

        with pytest.raises(ExpiredUrlError, match="timed out after 30 seconds"):
            await transport_for(handler).send(URL, b"x", expires=30)

    async def test_timeout_without_expiry(self):
        def handler(request):
            raise httpx.ReadTimeout("slow", request=request)

        with pytest.raises(TransportError) as exc_info:
            await transport_for(handler).send(URL, b"x")

        assert not isinstance(exc_info.value, ExpiredUrlError)


class TestRetryClassification:
    async def test_client_errors_are_attempted_once(self):
        attempts = []

        def handler(request):
            attempts.append(1)
            return httpx.Response(403, text="<Error><Code>SignatureDoesNotMatch</Code></Error>")

        transport = transport_for(handler)
        policy = RetryPolicy(max_retries=3, initial_delay_ms=0, max_delay_ms=0)

        with pytest.raises(TransportError) as exc_info:
            await policy.execute(lambda: transport.send(URL, b"x"))

        assert len(attempts) == 1
        assert not exc_info.value.retryable
        assert str(exc_info.value) == "Upload failed (status: 403)"

    @pytest.mark.parametrize("status, retryable", [(400, False), (404, False), (408, True), (429, True), (503, True)])
    async def test_status_classification(self, status, retryable):
        def handler(request):
            return httpx.Response(status)

        with pytest.raises(TransportError) as exc_info:
            await transport_for(handler).send(URL, b"x")

        assert exc_info.value.retryable is retryable


class TestRequestDeadline:
    async def test_url_expiry_ends_the_request(self):
        async def handler(request):
            await asyncio.sleep(10)
            return httpx.Response(200)

        token = CancellationToken()

        with pytest.raises(ExpiredUrlError, match="timed out"):
            await transport_for(handler).send(URL, b"x", expires=0.05, token=token)

        assert not token.is_cancelled

    async def test_pausing_the_attempt_ends_the_request(self):
        async def handler(request):
            await asyncio.sleep(10)
            return httpx.Response(200)

        token = CancellationToken()
        sending = asyncio.create_task(transport_for(handler).send(URL, b"x", token=token))
        await asyncio.sleep(0.01)
        token.cancel(CancelReason.PAUSE)

        with pytest.raises(PausedError):
            await sending
