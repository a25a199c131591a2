# services/http_backend.py
import json
import logging
from typing import Any, Dict, Iterable, List, Optional

import httpx

from ..models.upload_models import (
    AbortMultipartOptions,
    CompleteMultipartOptions,
    CompleteMultipartResult,
    CreateMultipartUploadResult,
    CredentialsOptions,
    ListPartsOptions,
    Part,
    SignPartOptions,
    SignPartResult,
    TemporaryCredentials,
    UploadFile,
    UploadOptions,
    UploadParameters,
)
from ..utils import allowed_metadata

logger = logging.getLogger(__name__)


class HttpBackend:
    """
    Upload backend backed by the signing service in `main.py`.

    Errors surface as httpx exceptions; the engine wraps them as
    callback errors and never retries them.
    """

    def __init__(
        self,
        base_url: str,
        client: Optional[httpx.AsyncClient] = None,
        allowed_meta_fields: Optional[Iterable[str]] = None,
        timeout: float = 30.0,
    ):
        self.base_url = base_url.rstrip("/")
        self._client = client or httpx.AsyncClient(timeout=timeout)
        self._owns_client = client is None
        self.allowed_meta_fields = list(allowed_meta_fields) if allowed_meta_fields is not None else None

    async def _post(self, path: str, **kwargs) -> Dict[str, Any]:
        response = await self._client.post(f"{self.base_url}{path}", **kwargs)
        response.raise_for_status()
        return response.json()

    async def create_multipart_upload(self, file: UploadFile) -> CreateMultipartUploadResult:
        body = await self._post(
            "/upload/initiate",
            data={
                "filename": file.name,
                "file_size": str(file.size),
                "content_type": file.type or "application/octet-stream",
                "metadata": json.dumps(allowed_metadata(file.metadata, self.allowed_meta_fields)),
            },
        )
        return CreateMultipartUploadResult(upload_id=body["uploadId"], key=body["key"])

    async def sign_part(self, file: UploadFile, options: SignPartOptions) -> SignPartResult:
        body = await self._post(
            "/upload/presigned-url",
            data={
                "key": options.key,
                "upload_id": options.upload_id,
                "part_number": str(options.part_number),
            },
        )
        return SignPartResult(url=body["url"], expires=body.get("expires"))

    async def list_parts(self, file: UploadFile, options: ListPartsOptions) -> List[Part]:
        body = await self._post("/upload/parts", json={"key": options.key, "upload_id": options.upload_id})
        return [Part.from_dict(part) for part in body.get("parts", [])]

    async def complete_multipart_upload(
        self, file: UploadFile, options: CompleteMultipartOptions
    ) -> CompleteMultipartResult:
        body = await self._post(
            "/upload/complete",
            json={
                "key": options.key,
                "upload_id": options.upload_id,
                "parts": [part.to_dict() for part in options.parts],
            },
        )
        return CompleteMultipartResult(location=body.get("location"), etag=body.get("etag"), body=body)

    async def abort_multipart_upload(self, file: UploadFile, options: AbortMultipartOptions) -> None:
        await self._post("/upload/abort", json={"key": options.key, "upload_id": options.upload_id})

    async def get_upload_parameters(self, file: UploadFile, options: UploadOptions) -> UploadParameters:
        body = await self._post(
            "/upload/parameters",
            json={"filename": file.name, "content_type": file.type or "application/octet-stream"},
        )
        return UploadParameters(
            method=body.get("method", "PUT"),
            url=body["url"],
            headers=body.get("headers"),
            expires=body.get("expires"),
        )

    async def get_temporary_credentials(self, options: Optional[CredentialsOptions] = None) -> TemporaryCredentials:
        response = await self._client.get(f"{self.base_url}/sts-credentials")
        response.raise_for_status()
        return TemporaryCredentials.from_dict(response.json())

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()
