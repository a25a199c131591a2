import httpx
import pytest
import pytest_asyncio
from conftest import MIB

from resumable_upload import HttpBackend
from resumable_upload.exceptions import CallbackError
from resumable_upload.main import app
from resumable_upload.models import (
    CompleteMultipartOptions,
    ListPartsOptions,
    Part,
    SignPartOptions,
    UploadFile,
    UploadOptions,
)
from resumable_upload.services import HttpTransport, S3Uploader, S3UploaderOptions


@pytest_asyncio.fixture
async def backend(api_client):
    # api_client installs the dependency override for the app
    client = httpx.AsyncClient(transport=httpx.ASGITransport(app=app))
    yield HttpBackend("http://signing/", client=client, allowed_meta_fields=["owner"])
    await client.aclose()


@pytest.fixture
def file():
    return UploadFile.from_bytes(b"z" * (12 * MIB), name="video.mp4", metadata={"owner": "ana", "secret": "x"})


class TestCallbacks:
    async def test_create_forwards_allowed_metadata(self, backend, file, s3_client):
        result = await backend.create_multipart_upload(file)

        assert result.upload_id == "upload-1"
        assert result.key.endswith("_video.mp4")
        metadata = s3_client.create_multipart_upload.call_args.kwargs["Metadata"]
        assert metadata["owner"] == "ana"
        assert "secret" not in metadata
        assert metadata["file-size"] == str(12 * MIB)

    async def test_sign_part(self, backend, file):
        result = await backend.sign_part(
            file, SignPartOptions(upload_id="upload-1", key="uploads/v.mp4", part_number=2, body=b"")
        )

        assert result.url.startswith("https://test-bucket.s3.us-east-1.amazonaws.com/uploads/v.mp4")
        assert result.expires == 3600

    async def test_list_parts(self, backend, file, s3_client):
        s3_client.list_parts.return_value = {"Parts": [{"PartNumber": 1, "Size": 5, "ETag": '"a"'}]}

        parts = await backend.list_parts(file, ListPartsOptions(upload_id="upload-1", key="uploads/v.mp4"))

        assert parts == [Part(part_number=1, size=5, etag='"a"')]

    async def test_complete(self, backend, file, s3_client):
        s3_client.complete_multipart_upload.return_value = {
            "Location": "https://test-bucket.s3.us-east-1.amazonaws.com/uploads/v.mp4",
            "ETag": '"final"',
        }

        result = await backend.complete_multipart_upload(
            file,
            CompleteMultipartOptions(
                upload_id="upload-1", key="uploads/v.mp4", parts=[Part(part_number=1, size=5, etag='"a"')]
            ),
        )

        assert result.location == "https://test-bucket.s3.us-east-1.amazonaws.com/uploads/v.mp4"
        assert result.etag == '"final"'
        assert result.body["status"] == "completed"

    async def test_upload_parameters(self, backend, file):
        params = await backend.get_upload_parameters(file, UploadOptions())

        assert params.method == "PUT"
        assert params.headers == {"Content-Type": "video/mp4"}
        assert params.expires == 3600

    async def test_temporary_credentials(self, backend):
        credentials = await backend.get_temporary_credentials()

        assert credentials.access_key_id == "ASIAEXAMPLE"
        assert credentials.bucket == "test-bucket"

    async def test_server_errors_raise(self, backend, file, s3_client):
        s3_client.create_multipart_upload.side_effect = RuntimeError("denied")

        with pytest.raises(httpx.HTTPStatusError):
            await backend.create_multipart_upload(file)


class TestEndToEnd:
    @pytest_asyncio.fixture
    async def storage_transport(self):
        received = []

        def handler(request):
            received.append((request.url.path, len(request.content)))
            return httpx.Response(200, headers={"ETag": f'"etag-{len(received)}"'})

        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        yield HttpTransport(client=client), received
        await client.aclose()

    async def test_multipart_upload_through_signing_service(self, backend, file, s3_client, storage_transport, fast_retry):
        transport, received = storage_transport
        s3_client.complete_multipart_upload.return_value = {"ETag": '"final"'}
        uploader = S3Uploader(
            S3UploaderOptions(backend=backend, retry_policy=fast_retry, should_use_multipart=lambda f: True),
            transport=transport,
        )
        progress = []

        response = await uploader.upload(file, lambda p: progress.append(p.bytes_uploaded), lambda event: None)

        assert sorted(size for _, size in received) == [2 * MIB, 5 * MIB, 5 * MIB]
        sent = s3_client.complete_multipart_upload.call_args.kwargs["MultipartUpload"]["Parts"]
        assert [p["PartNumber"] for p in sent] == [1, 2, 3]
        assert response.body["etag"] == '"final"'
        assert response.location.endswith("_video.mp4")
        assert progress[-1] == 12 * MIB

    async def test_backend_failure_is_a_callback_error(self, backend, file, s3_client, storage_transport, fast_retry):
        transport, _ = storage_transport
        s3_client.create_multipart_upload.side_effect = RuntimeError("denied")
        uploader = S3Uploader(
            S3UploaderOptions(backend=backend, retry_policy=fast_retry, should_use_multipart=lambda f: True),
            transport=transport,
        )

        with pytest.raises(CallbackError, match="create_multipart_upload failed"):
            await uploader.upload(file, lambda p: None, lambda event: None)
        assert s3_client.create_multipart_upload.call_count == 1
