"""Shared fixtures and fakes for the upload engine tests."""

import asyncio
from collections import Counter
from datetime import datetime, timezone
from fnmatch import fnmatch
from typing import Any, Dict, List, Optional
from unittest.mock import MagicMock
from urllib.parse import parse_qs, urlsplit

import httpx
import pytest
import pytest_asyncio

from resumable_upload.config import Settings
from resumable_upload.exceptions import TransportError
from resumable_upload.main import app, get_upload_service
from resumable_upload.models import (
    AbortMultipartOptions,
    CompleteMultipartOptions,
    CompleteMultipartResult,
    CreateMultipartUploadResult,
    ListPartsOptions,
    Part,
    SignPartOptions,
    SignPartResult,
    TransferResult,
    UploadFile,
    UploadOptions,
    UploadParameters,
    UploadPartBytesOptions,
)
from resumable_upload.services import HttpTransport, RetryPolicy, S3UploaderOptions
from resumable_upload.services.upload_service import UploadService

MIB = 1024 * 1024
BUCKET_URL = "https://test-bucket.s3.us-east-1.amazonaws.com"


class FakeStorage:
    """
    In-memory stand-in for both the backend callbacks and the storage
    that receives part bodies.

    Parts stored through `upload_part_bytes` show up in `list_parts`, like
    a real multipart upload. `gates` holds part transfers until released,
    keyed by part number or by `(object key, part number)`. `failures`
    makes a part's transfer fail that many times first.
    """

    def __init__(self):
        self.calls: Counter = Counter()
        self.errors: Dict[str, Exception] = {}
        self.upload_ids = 0
        self.remote: Dict[str, Dict[int, Part]] = {}
        self.signed_parts: List[int] = []
        self.transfers: List[int] = []
        self.completed_parts: Optional[List[Part]] = None
        self.aborted: List[str] = []
        self.gates: Dict[Any, asyncio.Event] = {}
        self.failures: Dict[int, int] = {}

    def _record(self, name: str) -> None:
        self.calls[name] += 1
        if name in self.errors:
            raise self.errors[name]

    async def create_multipart_upload(self, file: UploadFile) -> CreateMultipartUploadResult:
        self._record("create_multipart_upload")
        self.upload_ids += 1
        upload_id = f"upload-{self.upload_ids}"
        self.remote[upload_id] = {}
        return CreateMultipartUploadResult(upload_id=upload_id, key=f"uploads/{file.name}")

    async def sign_part(self, file: UploadFile, options: SignPartOptions) -> SignPartResult:
        self._record("sign_part")
        self.signed_parts.append(options.part_number)
        return SignPartResult(
            url=f"{BUCKET_URL}/{options.key}?partNumber={options.part_number}&uploadId={options.upload_id}",
            expires=3600,
        )

    async def list_parts(self, file: UploadFile, options: ListPartsOptions) -> List[Part]:
        self._record("list_parts")
        return list(self.remote.get(options.upload_id, {}).values())

    async def complete_multipart_upload(
        self, file: UploadFile, options: CompleteMultipartOptions
    ) -> CompleteMultipartResult:
        self._record("complete_multipart_upload")
        self.completed_parts = list(options.parts)
        return CompleteMultipartResult(
            location=f"{BUCKET_URL}/{options.key}",
            etag='"final-etag"',
            body={"bucket": "test-bucket"},
        )

    async def abort_multipart_upload(self, file: UploadFile, options: AbortMultipartOptions) -> None:
        self._record("abort_multipart_upload")
        self.aborted.append(options.upload_id)

    async def get_upload_parameters(self, file: UploadFile, options: UploadOptions) -> UploadParameters:
        self._record("get_upload_parameters")
        return UploadParameters(url=f"{BUCKET_URL}/uploads/{file.name}?X-Amz-Signature=abc", expires=3600)

    async def upload_part_bytes(self, options: UploadPartBytesOptions) -> TransferResult:
        query = parse_qs(urlsplit(options.url).query)
        part_number = int(query["partNumber"][0])
        upload_id = query["uploadId"][0]
        self.transfers.append(part_number)
        if options.on_progress is not None:
            options.on_progress(options.size // 2, options.size)

        key = urlsplit(options.url).path.lstrip("/")
        gate = self.gates.get(part_number) or self.gates.get((key, part_number))
        if gate is not None:
            await gate.wait()

        if self.failures.get(part_number, 0) > 0:
            self.failures[part_number] -= 1
            raise TransportError("Internal error", status_code=500)

        if options.on_progress is not None:
            options.on_progress(options.size, options.size)
        etag = f'"etag-{part_number}"'
        self.remote.setdefault(upload_id, {})[part_number] = Part(part_number=part_number, size=options.size, etag=etag)
        return TransferResult(etag=etag, status_code=200)


async def wait_for(condition, timeout: float = 2.0) -> None:
    """Yield to the event loop until `condition()` holds"""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not condition():
        if loop.time() > deadline:
            raise AssertionError("condition not reached")
        await asyncio.sleep(0.001)


@pytest.fixture
def storage():
    return FakeStorage()


@pytest.fixture
def fast_retry():
    """Retry policy without delays"""
    return RetryPolicy(max_retries=2, initial_delay_ms=0, max_delay_ms=0)


@pytest.fixture
def options(storage, fast_retry):
    return S3UploaderOptions(
        backend=storage,
        upload_part_bytes=storage.upload_part_bytes,
        retry_policy=fast_retry,
        should_use_multipart=lambda file: file.size > 5 * MIB,
        get_chunk_size=lambda file: 5 * MIB,
    )


@pytest_asyncio.fixture
async def transport():
    client = httpx.AsyncClient(transport=httpx.MockTransport(lambda request: httpx.Response(200, headers={"ETag": '"x"'})))
    transport = HttpTransport(client=client)
    yield transport
    await client.aclose()


@pytest.fixture
def large_file():
    """15 MiB, three 5 MiB parts"""
    return UploadFile.from_bytes(b"a" * (15 * MIB), name="large.bin")


@pytest.fixture
def small_file():
    return UploadFile.from_bytes(b"s" * 1024, name="small.txt")


class FakeRedis:
    """Dict-backed subset of the redis.asyncio client used by the services"""

    def __init__(self):
        self.data: Dict[str, bytes] = {}
        self.ttls: Dict[str, int] = {}
        self.available = True

    @staticmethod
    def _key(key) -> str:
        return key.decode() if isinstance(key, bytes) else key

    async def ping(self) -> bool:
        if not self.available:
            raise ConnectionError("redis is down")
        return True

    async def get(self, key):
        return self.data.get(self._key(key))

    async def setex(self, key, ttl, value) -> None:
        key = self._key(key)
        self.data[key] = value.encode() if isinstance(value, str) else value
        self.ttls[key] = ttl

    async def set(self, key, value) -> None:
        key = self._key(key)
        self.data[key] = value.encode() if isinstance(value, str) else value
        self.ttls[key] = -1

    async def ttl(self, key) -> int:
        return self.ttls.get(self._key(key), -2)

    async def delete(self, key) -> int:
        key = self._key(key)
        self.ttls.pop(key, None)
        return 1 if self.data.pop(key, None) is not None else 0

    async def scan_iter(self, match: str = "*"):
        for key in list(self.data):
            if fnmatch(key, match):
                yield key.encode()

    async def aclose(self) -> None:
        pass


@pytest.fixture
def fake_redis():
    return FakeRedis()


@pytest.fixture
def s3_client():
    client = MagicMock()
    client.generate_presigned_url.side_effect = (
        lambda operation, Params, ExpiresIn, HttpMethod: f"{BUCKET_URL}/{Params['Key']}?op={operation}&X-Amz-Signature=abc"
    )
    client.create_multipart_upload.return_value = {"UploadId": "upload-1"}
    return client


@pytest.fixture
def sts_client():
    client = MagicMock()
    client.get_session_token.return_value = {
        "Credentials": {
            "AccessKeyId": "ASIAEXAMPLE",
            "SecretAccessKey": "secret",
            "SessionToken": "session",
            "Expiration": datetime(2030, 1, 1, tzinfo=timezone.utc),
        }
    }
    return client


@pytest.fixture
def settings():
    return Settings(bucket_name="test-bucket", aws_region="us-east-1")


@pytest.fixture
def upload_service(settings, s3_client, sts_client, fake_redis):
    return UploadService(settings=settings, s3_client=s3_client, sts_client=sts_client, redis_client=fake_redis)


@pytest_asyncio.fixture
async def api_client(upload_service):
    app.dependency_overrides[get_upload_service] = lambda: upload_service
    async with httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test") as client:
        yield client
    app.dependency_overrides.clear()
