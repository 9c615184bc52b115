
from __future__ import annotations

from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Literal, Optional

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field

from photocheck_runner.config import ValidationSettings, load_validation_settings
from photocheck_runner.faces import FaceDetector
from photocheck_runner.validation import ValidationEngine

from .errors import AppError, NotFoundError, ValidationError
from .object_store import LocalObjectStore, ObjectStore, build_object_store
from .records import ALL_STATUSES, InMemoryRecordStore, RecordStore
from .sql_store import SqlRecordStore
from .upload_processor import UploadProcessor
from .uploads import issue_upload_slot
from .workers import PipelineWorkers


@dataclass
class GatewayConfig:
    # Storage settings
    storage_type: str = "local"  # "local" or "s3"
    s3_bucket_name: str = "photocheck-uploads"
    s3_region: str = "auto"
    s3_endpoint_url: Optional[str] = None
    s3_access_key_id: Optional[str] = None
    s3_secret_access_key: Optional[str] = None
    local_storage_dir: Path = Path("uploads_store")
    local_storage_base_url: str = "http://localhost:8000/v1/storage"
    presigned_url_expiry_seconds: int = 300
    # Record store; None keeps records in memory
    database_url: Optional[str] = None
    # Upload verification
    max_verification_attempts: int = 3
    verification_retry_delay_ms: int = 5000
    size_tolerance: float = 0.02
    # Queues
    verify_concurrency: int = 20
    verify_attempts: int = 3
    verify_backoff_delay: float = 2.0
    validate_concurrency: int = 5
    validate_attempts: int = 2
    validate_backoff_delay: float = 5.0
    # Validation thresholds file (JSON/TOML)
    validation_config: Optional[Path] = None


@dataclass
class GatewayState:
    config: GatewayConfig
    store: RecordStore
    object_store: ObjectStore
    settings: ValidationSettings
    engine: ValidationEngine
    processor: UploadProcessor
    workers: PipelineWorkers


class SignUploadRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    filename: str = Field(min_length=1, max_length=255)
    content_type: Literal["image/jpeg", "image/png", "image/heic"] = Field(alias="contentType")
    file_size: int = Field(gt=0, alias="fileSize")


class SignUploadResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    image_id: str = Field(alias="imageId")
    upload_url: str = Field(alias="uploadUrl")
    key: str
    expires_at: datetime = Field(alias="expiresAt")


class CompleteUploadRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    image_id: str = Field(min_length=1, alias="imageId")


class CompleteUploadResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    image_id: str = Field(alias="imageId")
    status: str
    started: bool
    message: str


def _build_store(cfg: GatewayConfig) -> RecordStore:
    if cfg.database_url:
        return SqlRecordStore(cfg.database_url)
    return InMemoryRecordStore()


def create_app(
    config: Optional[GatewayConfig] = None,
    store: Optional[RecordStore] = None,
    object_store: Optional[ObjectStore] = None,
    face_detector: Optional[FaceDetector] = None,
) -> FastAPI:
    cfg = config or GatewayConfig()
    record_store = store or _build_store(cfg)
    objects = object_store or build_object_store(cfg)
    settings = load_validation_settings(cfg.validation_config)

    engine = ValidationEngine(
        fetch_object=objects.get_object,
        known_hashes=record_store.accepted_hashes,
        settings=settings,
        face_detector=face_detector,
    )
    processor = UploadProcessor(
        record_store,
        objects,
        engine,
        max_verification_attempts=cfg.max_verification_attempts,
        verification_delay_ms=cfg.verification_retry_delay_ms,
        size_tolerance=cfg.size_tolerance,
    )
    workers = PipelineWorkers(processor, record_store, cfg)
    state = GatewayState(
        config=cfg,
        store=record_store,
        object_store=objects,
        settings=settings,
        engine=engine,
        processor=processor,
        workers=workers,
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):  # noqa: ANN001
        await workers.start()
        try:
            yield
        finally:
            await workers.stop()

    app = FastAPI(title="Photocheck Gateway", version="0.1.0", lifespan=lifespan)
    app.state.gateway = state

    def get_state() -> GatewayState:
        return state

    @app.exception_handler(AppError)
    async def app_error_handler(request: Request, exc: AppError) -> JSONResponse:
        return JSONResponse(
            status_code=exc.status_code,
            content={"error": exc.code, "message": exc.message, "retryable": exc.retryable},
        )

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
        return JSONResponse(
            status_code=400,
            content={
                "error": ValidationError.code,
                "message": "Invalid request",
                "retryable": False,
                "details": [
                    {"loc": list(err.get("loc", ())), "msg": err.get("msg")} for err in exc.errors()
                ],
            },
        )

    @app.post("/v1/uploads/sign", response_model=SignUploadResponse)
    async def sign_upload(
        payload: SignUploadRequest,
        state: GatewayState = Depends(get_state),
    ) -> SignUploadResponse:
        if payload.file_size > state.settings.max_upload_size_bytes:
            raise ValidationError(
                f"File too large (max {state.settings.max_upload_size_bytes} bytes)",
                {"file_size": payload.file_size},
            )
        slot = await issue_upload_slot(
            state.store,
            state.object_store,
            payload.filename,
            payload.content_type,
            payload.file_size,
            expires_in=state.config.presigned_url_expiry_seconds,
        )
        return SignUploadResponse(
            image_id=slot.image_id,
            upload_url=slot.upload_url,
            key=slot.key,
            expires_at=slot.expires_at,
        )

    @app.post("/v1/uploads/complete", response_model=CompleteUploadResponse)
    async def complete_upload(
        payload: CompleteUploadRequest,
        state: GatewayState = Depends(get_state),
    ) -> CompleteUploadResponse:
        result = await state.processor.initiate_verification(payload.image_id)
        if result.started:
            message = "Upload verification started"
        else:
            message = f"Upload already being processed or complete (status: {result.status})"
        return CompleteUploadResponse(
            image_id=payload.image_id,
            status=result.status,
            started=result.started,
            message=message,
        )

    @app.get("/v1/images")
    async def list_images(
        status: Optional[str] = None,
        state: GatewayState = Depends(get_state),
    ) -> JSONResponse:
        if status is not None and status not in ALL_STATUSES:
            raise HTTPException(status_code=400, detail=f"unknown status {status}")
        records = await state.store.list(status)
        items: List[Dict[str, Any]] = [record.to_dict() for record in records]
        return JSONResponse({"images": items, "count": len(items)})

    @app.get("/v1/images/{image_id}")
    async def get_image(image_id: str, state: GatewayState = Depends(get_state)) -> JSONResponse:
        record = await state.store.get(image_id)
        if record is None:
            raise NotFoundError("Image not found", {"image_id": image_id})
        return JSONResponse(record.to_dict())

    @app.put("/v1/storage/{key:path}")
    async def put_local_object(
        key: str,
        request: Request,
        state: GatewayState = Depends(get_state),
    ) -> JSONResponse:
        if not isinstance(state.object_store, LocalObjectStore):
            raise HTTPException(status_code=404, detail="local storage disabled")
        data = await request.body()
        if not data:
            raise HTTPException(status_code=400, detail="empty upload")
        await state.object_store.put_object(key, data)
        return JSONResponse({"key": key, "size": len(data)})

    @app.get("/health")
    async def health_check(state: GatewayState = Depends(get_state)) -> JSONResponse:
        queues = state.workers.stats()
        workers_alive = sum(stats["workers_alive"] for stats in queues.values())
        return JSONResponse(
            {
                "status": "healthy" if workers_alive else "degraded",
                "storage_type": state.config.storage_type,
                "record_store": type(state.store).__name__,
                "queues": queues,
            }
        )

    return app
