# services/upload_service.py
import asyncio
import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional
from uuid import uuid4

import boto3
import redis.asyncio as redis

from ..config import Settings, get_settings
from ..models.session_models import UploadSession, UploadSessionCreate
from ..models.upload_models import UploadStatus
from ..utils import allowed_metadata, construct_url, normalize_etag

logger = logging.getLogger(__name__)

SESSION_KEY_PREFIX = "upload_session:"


class UploadService:
    """
    Server side of the upload backend contract.

    Issues presigned URLs and drives S3 multipart operations with boto3;
    boto3 is blocking, so every call runs in a worker thread. Sessions
    are tracked in Redis with a TTL.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        s3_client=None,
        sts_client=None,
        redis_client: Optional[redis.Redis] = None,
    ):
        self.settings = settings or get_settings()

        self.s3_client = s3_client or boto3.client(
            "s3",
            region_name=self.settings.aws_region,
            aws_access_key_id=self.settings.aws_access_key,
            aws_secret_access_key=self.settings.aws_secret_key,
            endpoint_url=self.settings.s3_endpoint_url,
            config=boto3.session.Config(signature_version="s3v4"),
        )
        self.sts_client = sts_client or boto3.client(
            "sts",
            region_name=self.settings.aws_region,
            aws_access_key_id=self.settings.aws_access_key,
            aws_secret_access_key=self.settings.aws_secret_key,
        )

        self.bucket_name = self.settings.bucket_name

        self.redis_client = redis_client or redis.Redis(
            host=self.settings.redis_host,
            port=self.settings.redis_port,
            password=self.settings.redis_password,
            db=self.settings.redis_db,
            decode_responses=False,
            socket_connect_timeout=5,
            health_check_interval=30,
        )

        self.session_ttl = timedelta(days=self.settings.session_ttl_days)

    def _object_key(self, filename: str) -> str:
        return f"{self.settings.key_prefix}{uuid4()}_{filename}"

    async def get_temporary_credentials(self) -> Dict[str, Any]:
        """Short-lived credentials for client-side signing"""
        response = await asyncio.to_thread(
            self.sts_client.get_session_token,
            DurationSeconds=self.settings.sts_duration_seconds,
        )
        credentials = response.get("Credentials")
        if not credentials:
            raise ValueError("No credentials returned from STS")

        expiration = credentials["Expiration"]
        return {
            "credentials": {
                "AccessKeyId": credentials["AccessKeyId"],
                "SecretAccessKey": credentials["SecretAccessKey"],
                "SessionToken": credentials["SessionToken"],
                "Expiration": expiration.isoformat() if isinstance(expiration, datetime) else expiration,
            },
            "bucket": self.bucket_name,
            "region": self.settings.aws_region,
        }

    async def generate_upload_parameters(self, filename: str, content_type: str) -> Dict[str, Any]:
        """Presigned PUT for a single-request upload"""
        key = self._object_key(filename)
        url = await asyncio.to_thread(
            self.s3_client.generate_presigned_url,
            "put_object",
            Params={"Bucket": self.bucket_name, "Key": key, "ContentType": content_type},
            ExpiresIn=self.settings.presign_expires,
            HttpMethod="PUT",
        )
        logger.info(f"Issued single-part upload URL for {key}")
        return {
            "method": "PUT",
            "url": url,
            "headers": {"Content-Type": content_type},
            "key": key,
            "expires": self.settings.presign_expires,
        }

    async def create_session(self, session_data: UploadSessionCreate) -> UploadSession:
        """Start a multipart upload on S3 and track it as a session"""
        key = self._object_key(session_data.filename)

        metadata = allowed_metadata(session_data.metadata)
        metadata.update({
            "original-filename": session_data.filename,
            "file-size": str(session_data.file_size),
        })

        response = await asyncio.to_thread(
            self.s3_client.create_multipart_upload,
            Bucket=self.bucket_name,
            Key=key,
            ContentType=session_data.content_type,
            Metadata=metadata,
        )

        now = datetime.now()
        session = UploadSession(
            id=response["UploadId"],
            filename=session_data.filename,
            s3_key=key,
            upload_id=response["UploadId"],
            file_size=session_data.file_size,
            content_type=session_data.content_type,
            status=UploadStatus.PENDING,
            created_at=now,
            expires_at=now + self.session_ttl,
        )
        await self._store_session(session)

        logger.info(f"Created multipart upload {session.upload_id} for {key}")
        return session

    async def generate_presigned_url(self, key: str, upload_id: str, part_number: int) -> str:
        logger.debug(f"Signing part {part_number} of {upload_id}")
        return await asyncio.to_thread(
            self.s3_client.generate_presigned_url,
            "upload_part",
            Params={
                "Bucket": self.bucket_name,
                "Key": key,
                "UploadId": upload_id,
                "PartNumber": part_number,
            },
            ExpiresIn=self.settings.presign_expires,
            HttpMethod="PUT",
        )

    async def list_parts(self, key: str, upload_id: str) -> List[Dict[str, Any]]:
        """All parts S3 holds for the upload, following pagination"""
        parts: List[Dict[str, Any]] = []
        marker = 0
        while True:
            response = await asyncio.to_thread(
                self.s3_client.list_parts,
                Bucket=self.bucket_name,
                Key=key,
                UploadId=upload_id,
                PartNumberMarker=marker,
            )
            for part in response.get("Parts", []):
                parts.append({"PartNumber": part["PartNumber"], "Size": part["Size"], "ETag": part["ETag"]})

            if not response.get("IsTruncated"):
                break
            marker = response["NextPartNumberMarker"]

        session = await self.get_session(upload_id)
        if session is not None:
            session.uploaded_parts = parts
            session.status = UploadStatus.UPLOADING
            await self._store_session(session)

        return parts

    async def complete_upload(self, key: str, upload_id: str, parts: List[dict]) -> Dict[str, Any]:
        """Complete the multipart upload"""
        completed = []
        for p in parts:
            part_number = p.get("PartNumber", p.get("partNumber"))
            etag = p.get("ETag", p.get("eTag"))
            if not etag:
                raise ValueError(f"Part {part_number} has no ETag")
            completed.append({"PartNumber": part_number, "ETag": normalize_etag(etag)})
        sorted_parts = sorted(completed, key=lambda p: p["PartNumber"])

        response = await asyncio.to_thread(
            self.s3_client.complete_multipart_upload,
            Bucket=self.bucket_name,
            Key=key,
            UploadId=upload_id,
            MultipartUpload={"Parts": sorted_parts},
        )

        session = await self.get_session(upload_id)
        if session is not None:
            session.status = UploadStatus.COMPLETE
            session.completed_at = datetime.now()
            await self._store_session(session)

        logger.info(f"Completed multipart upload {upload_id} ({len(sorted_parts)} parts)")
        return {
            "location": response.get("Location")
            or construct_url(self.bucket_name, self.settings.aws_region, key, self.settings.s3_endpoint_url),
            "etag": response.get("ETag"),
            "key": response.get("Key", key),
            "bucket": response.get("Bucket", self.bucket_name),
        }

    async def abort_upload(self, key: str, upload_id: str) -> None:
        await asyncio.to_thread(
            self.s3_client.abort_multipart_upload,
            Bucket=self.bucket_name,
            Key=key,
            UploadId=upload_id,
        )

        session = await self.get_session(upload_id)
        if session is not None:
            session.status = UploadStatus.CANCELLED
            await self._store_session(session)
        logger.info(f"Aborted multipart upload {upload_id}")

    async def get_session(self, upload_id: str) -> Optional[UploadSession]:
        session_data = await self.redis_client.get(f"{SESSION_KEY_PREFIX}{upload_id}")
        if not session_data:
            return None
        return UploadSession.model_validate_json(session_data)

    async def get_active_sessions(self) -> List[UploadSession]:
        sessions = []
        async for key in self.redis_client.scan_iter(match=f"{SESSION_KEY_PREFIX}*"):
            session_data = await self.redis_client.get(key)
            if not session_data:
                continue
            session = UploadSession.model_validate_json(session_data)
            if session.status not in (UploadStatus.COMPLETE, UploadStatus.CANCELLED):
                sessions.append(session)
        return sessions

    async def _store_session(self, session: UploadSession) -> None:
        try:
            await self.redis_client.setex(
                f"{SESSION_KEY_PREFIX}{session.id}",
                int(self.session_ttl.total_seconds()),
                session.model_dump_json(),
            )
        except Exception as e:
            logger.error(f"Failed to store session {session.id}: {e}")
            raise

    async def close(self) -> None:
        await self.redis_client.aclose()
