# models/session_models.py
from pydantic import BaseModel
from typing import List, Optional
from datetime import datetime

from .upload_models import UploadStatus


class UploadSessionCreate(BaseModel):
    filename: str
    file_size: int = 0
    content_type: str = "application/octet-stream"
    metadata: dict = {}


class UploadSession(BaseModel):
    id: str
    filename: str
    s3_key: str
    upload_id: str
    file_size: int
    content_type: str
    status: UploadStatus
    uploaded_parts: List[dict] = []
    created_at: datetime
    completed_at: Optional[datetime] = None
    expires_at: datetime
    error_message: Optional[str] = None


class UploadParametersRequest(BaseModel):
    filename: str
    content_type: str = "application/octet-stream"


class ListPartsRequest(BaseModel):
    key: str
    upload_id: str


class CompleteUploadRequest(BaseModel):
    key: str
    upload_id: str
    parts: List[dict]


class AbortUploadRequest(BaseModel):
    key: str
    upload_id: str
