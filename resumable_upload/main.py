# main.py
import asyncio
import json
import logging
from contextlib import asynccontextmanager
from functools import lru_cache

from fastapi import Depends, FastAPI, Form, HTTPException
from fastapi.middleware.cors import CORSMiddleware

from .config import get_settings, setup_logging
from .models.session_models import (
    AbortUploadRequest,
    CompleteUploadRequest,
    ListPartsRequest,
    UploadParametersRequest,
    UploadSessionCreate,
)
from .services.cleanup_service import CleanupService
from .services.upload_service import UploadService

logger = logging.getLogger(__name__)


@lru_cache
def get_upload_service() -> UploadService:
    return UploadService(get_settings())


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    setup_logging(get_settings().log_level)
    service = get_upload_service()
    cleanup_service = CleanupService(service.s3_client, service.redis_client, service.settings)
    cleanup_task = asyncio.create_task(cleanup_service.start_cleanup_scheduler())

    yield

    # Shutdown
    cleanup_task.cancel()
    try:
        await cleanup_task
    except asyncio.CancelledError:
        pass
    await service.close()


app = FastAPI(title="Resumable Upload Signing Service", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=get_settings().cors_origins,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["ETag"],
)


@app.get("/health")
async def health(service: UploadService = Depends(get_upload_service)):
    return {"status": "ok", "bucket": service.bucket_name}


@app.get("/sts-credentials")
async def sts_credentials(service: UploadService = Depends(get_upload_service)):
    """Temporary credentials for client-side signing"""
    try:
        return await service.get_temporary_credentials()
    except Exception as e:
        logger.error(f"Failed to issue temporary credentials: {e}")
        raise HTTPException(status_code=400, detail=str(e))


@app.post("/upload/parameters")
async def upload_parameters(
    request: UploadParametersRequest,
    service: UploadService = Depends(get_upload_service),
):
    """Presigned PUT for a file small enough for one request"""
    try:
        return await service.generate_upload_parameters(request.filename, request.content_type)
    except Exception as e:
        raise HTTPException(status_code=400, detail=str(e))


@app.post("/upload/initiate")
async def initiate_upload(
    filename: str = Form(...),
    file_size: int = Form(0),
    content_type: str = Form("application/octet-stream"),
    metadata: str = Form("{}"),
    service: UploadService = Depends(get_upload_service),
):
    """Initialize a new multipart upload session"""
    try:
        session_data = UploadSessionCreate(
            filename=filename,
            file_size=file_size,
            content_type=content_type,
            metadata=json.loads(metadata),
        )
        session = await service.create_session(session_data)
        return {
            "uploadId": session.upload_id,
            "key": session.s3_key,
            "expires_at": session.expires_at.isoformat(),
        }
    except Exception as e:
        raise HTTPException(status_code=400, detail=str(e))


@app.post("/upload/presigned-url")
async def get_presigned_url(
    key: str = Form(...),
    upload_id: str = Form(...),
    part_number: int = Form(...),
    service: UploadService = Depends(get_upload_service),
):
    """Generate presigned URL for uploading a specific part"""
    if not 1 <= part_number <= 10000:
        raise HTTPException(status_code=400, detail="part_number must be between 1 and 10000")
    try:
        url = await service.generate_presigned_url(key, upload_id, part_number)
        return {"url": url, "expires": service.settings.presign_expires}
    except Exception as e:
        logger.error(f"Presigned URL error: {e}")
        raise HTTPException(status_code=400, detail=str(e))


@app.post("/upload/parts")
async def list_parts(request: ListPartsRequest, service: UploadService = Depends(get_upload_service)):
    try:
        parts = await service.list_parts(request.key, request.upload_id)
        return {"parts": parts}
    except Exception as e:
        raise HTTPException(status_code=400, detail=str(e))


@app.post("/upload/complete")
async def complete_upload(request: CompleteUploadRequest, service: UploadService = Depends(get_upload_service)):
    """Complete the multipart upload"""
    try:
        result = await service.complete_upload(request.key, request.upload_id, request.parts)
        return {"status": "completed", **result}
    except Exception as e:
        raise HTTPException(status_code=400, detail=str(e))


@app.post("/upload/abort")
async def abort_upload(request: AbortUploadRequest, service: UploadService = Depends(get_upload_service)):
    """Abort an ongoing upload"""
    try:
        await service.abort_upload(request.key, request.upload_id)
        return {"status": "aborted"}
    except Exception as e:
        raise HTTPException(status_code=400, detail=str(e))


@app.get("/upload/session/{upload_id}")
async def get_session(upload_id: str, service: UploadService = Depends(get_upload_service)):
    """Get upload session details"""
    try:
        session = await service.get_session(upload_id)
    except Exception as e:
        raise HTTPException(status_code=400, detail=str(e))
    if not session:
        raise HTTPException(status_code=404, detail="Session not found")
    return session


@app.get("/upload/sessions/active")
async def get_active_sessions(service: UploadService = Depends(get_upload_service)):
    """Get all active upload sessions"""
    try:
        sessions = await service.get_active_sessions()
        return {"sessions": sessions}
    except Exception as e:
        raise HTTPException(status_code=400, detail=str(e))
