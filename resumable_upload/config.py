# config.py
import logging
import os
from functools import lru_cache
from typing import List, Optional

from dotenv import load_dotenv
from pydantic import BaseModel


class Settings(BaseModel):
    aws_access_key: Optional[str] = None
    aws_secret_key: Optional[str] = None
    aws_region: str = "us-east-1"
    bucket_name: Optional[str] = None
    s3_endpoint_url: Optional[str] = None

    redis_host: str = "redis"
    redis_port: int = 6379
    redis_password: Optional[str] = None
    redis_db: int = 0

    session_ttl_days: int = 7
    presign_expires: int = 3600
    sts_duration_seconds: int = 3600
    cleanup_interval_hours: float = 6
    stale_upload_days: int = 7
    key_prefix: str = "uploads/"
    cors_origins: List[str] = ["*"]
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "Settings":
        load_dotenv()
        origins = [o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",") if o.strip()]
        return cls(
            aws_access_key=os.getenv("AWS_ACCESS_KEY"),
            aws_secret_key=os.getenv("AWS_SECRET_KEY"),
            aws_region=os.getenv("AWS_REGION", "us-east-1"),
            bucket_name=os.getenv("BUCKET_NAME"),
            s3_endpoint_url=os.getenv("S3_ENDPOINT_URL") or None,
            redis_host=os.getenv("REDIS_HOST", "redis"),
            redis_port=int(os.getenv("REDIS_PORT", "6379")),
            redis_password=os.getenv("REDIS_PASSWORD") or None,
            redis_db=int(os.getenv("REDIS_DB", "0")),
            session_ttl_days=int(os.getenv("SESSION_TTL_DAYS", "7")),
            presign_expires=int(os.getenv("PRESIGN_EXPIRES", "3600")),
            sts_duration_seconds=int(os.getenv("STS_DURATION_SECONDS", "3600")),
            cleanup_interval_hours=float(os.getenv("CLEANUP_INTERVAL_HOURS", "6")),
            stale_upload_days=int(os.getenv("STALE_UPLOAD_DAYS", "7")),
            key_prefix=os.getenv("KEY_PREFIX", "uploads/"),
            cors_origins=origins or ["*"],
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
        )


@lru_cache
def get_settings() -> Settings:
    return Settings.from_env()


def setup_logging(level: Optional[str] = None) -> None:
    """Configure the root logger; the library itself never does this on import"""
    level_name = (level or os.getenv("LOG_LEVEL", "INFO")).upper()
    logging.basicConfig(
        level=getattr(logging, level_name, logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )
