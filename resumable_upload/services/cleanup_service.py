# services/cleanup_service.py
import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

from pydantic import ValidationError

from ..config import Settings, get_settings
from ..models.session_models import UploadSession
from ..models.upload_models import UploadStatus
from .upload_service import SESSION_KEY_PREFIX

logger = logging.getLogger(__name__)

FINISHED_SESSION_HOURS = 48
FINISHED_STATUSES = (UploadStatus.COMPLETE, UploadStatus.CANCELLED, UploadStatus.ERROR)


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class CleanupService:
    """Aborts stale multipart uploads and drops old sessions"""

    def __init__(self, s3_client, redis_client, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        self.s3_client = s3_client
        self.redis_client = redis_client
        self.bucket_name = self.settings.bucket_name

    async def start_cleanup_scheduler(self):
        interval = self.settings.cleanup_interval_hours * 60 * 60
        while True:
            try:
                await self.cleanup_expired_sessions()
                await self.cleanup_incomplete_uploads()
                await asyncio.sleep(interval)
            except asyncio.CancelledError:
                logger.info("Cleanup scheduler cancelled")
                break
            except Exception as e:
                logger.error(f"Error in cleanup scheduler: {e}")
                await asyncio.sleep(60)

    def _should_remove(self, session: UploadSession, now: datetime) -> bool:
        age = now - _as_utc(session.created_at)
        if age > timedelta(days=self.settings.stale_upload_days):
            return True
        return age > timedelta(hours=FINISHED_SESSION_HOURS) and session.status in FINISHED_STATUSES

    async def cleanup_expired_sessions(self) -> int:
        """
        Delete sessions older than the stale limit, and finished ones
        older than two days. Unreadable sessions without a TTL are
        deleted too.
        """
        try:
            await self.redis_client.ping()
        except Exception as e:
            logger.warning(f"Redis unavailable for cleanup: {e}")
            return 0

        now = datetime.now(timezone.utc)
        cleaned = 0
        async for key in self.redis_client.scan_iter(match=f"{SESSION_KEY_PREFIX}*"):
            session_data = await self.redis_client.get(key)
            if not session_data:
                continue

            try:
                session = UploadSession.model_validate_json(session_data)
            except ValidationError as e:
                logger.warning(f"Unreadable session {key}: {e}")
                if await self.redis_client.ttl(key) == -1:
                    await self.redis_client.delete(key)
                    cleaned += 1
                continue

            if self._should_remove(session, now):
                await self.redis_client.delete(key)
                cleaned += 1

        logger.info(f"Session cleanup completed, removed {cleaned} sessions")
        return cleaned

    async def cleanup_incomplete_uploads(self) -> int:
        """Abort multipart uploads under the key prefix older than the stale limit"""
        cutoff = datetime.now(timezone.utc) - timedelta(days=self.settings.stale_upload_days)

        response = await asyncio.to_thread(
            self.s3_client.list_multipart_uploads,
            Bucket=self.bucket_name,
            Prefix=self.settings.key_prefix,
        )

        aborted = 0
        for upload in response.get("Uploads", []):
            if _as_utc(upload["Initiated"]) >= cutoff:
                continue
            try:
                await asyncio.to_thread(
                    self.s3_client.abort_multipart_upload,
                    Bucket=self.bucket_name,
                    Key=upload["Key"],
                    UploadId=upload["UploadId"],
                )
                aborted += 1
                logger.info(f"Aborted stale upload: {upload['Key']}")
            except Exception as e:
                logger.error(f"Failed to abort upload {upload['UploadId']}: {e}")

        logger.info(f"Cleaned up {aborted} incomplete S3 uploads")
        return aborted
