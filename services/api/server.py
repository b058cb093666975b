"""
Generation Gateway HTTP Server

FastAPI server that provides:
- POST /generate - Debit credits and queue a Kling job
- POST /reconcile - Run one reconcile sweep
- POST /status/check - One-off provider status check for a request
- GET /accounts/{account_id}/history - Paginated generation history
- GET /accounts/{account_id}/processing - Count of in-flight jobs
- GET /health - Health check

Usage:
    # Start server
    python -m uvicorn services.api.server:app --host 0.0.0.0 --port 8765

    # Or via main.py
    python main.py server
"""

import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Optional

from fastapi import Depends, FastAPI, HTTPException, Query
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from core.circuit_breaker import CircuitBreaker
from core.config import get_config
from services.generation.models import (
    ErrorCode,
    GenerationError,
    GenerationInputs,
    ModelSelector,
)
from services.generation.pipeline import GenerationPipeline
from services.generation.reconciler import JobReconciler
from services.storage.uploader import StorageUploader
from services.video_generation.client import FalQueueClient
from services.video_generation.endpoints import resolve_endpoint
from services.video_generation.store import GenerationStore

logger = logging.getLogger(__name__)

# Process-wide instances, created in lifespan
_store: Optional[GenerationStore] = None
_provider: Optional[FalQueueClient] = None
_uploader: Optional[StorageUploader] = None

ERROR_STATUS = {
    ErrorCode.INVALID_CONFIG: 400,
    ErrorCode.INVALID_REQUEST: 400,
    ErrorCode.ACCOUNT_NOT_FOUND: 404,
    ErrorCode.INSUFFICIENT_CREDITS: 402,
    ErrorCode.ACCESS_DENIED: 403,
    ErrorCode.CONCURRENCY_LIMIT_EXCEEDED: 429,
    ErrorCode.UPLOAD_FAILED: 502,
    ErrorCode.PROVIDER_REJECTED: 502,
    ErrorCode.PROVIDER_UNREACHABLE: 503,
    ErrorCode.STORAGE_ERROR: 500,
}


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown events."""
    global _store, _provider, _uploader

    config = get_config()
    logger.info("Starting generation gateway...")
    for issue in config.validate():
        logger.warning(f"Config: {issue}")

    _store = await GenerationStore.connect(config.database)
    _provider = FalQueueClient(config=config)
    _uploader = StorageUploader(config=config)

    yield

    logger.info("Shutting down generation gateway...")
    await _provider.close()
    await _uploader.close()
    await _store.close()
    _store = _provider = _uploader = None


app = FastAPI(
    title="Kling Generation Gateway",
    description="Credit-settled video generation over the fal.ai queue",
    version="1.0.0",
    lifespan=lifespan,
)


# Dependencies (overridden in tests)
def get_store() -> GenerationStore:
    if _store is None:
        raise HTTPException(status_code=503, detail="Store not initialized")
    return _store


def get_provider() -> FalQueueClient:
    global _provider
    if _provider is None:
        _provider = FalQueueClient()
    return _provider


def get_pipeline(
    store: GenerationStore = Depends(get_store),
    provider: FalQueueClient = Depends(get_provider),
) -> GenerationPipeline:
    return GenerationPipeline(store, provider=provider, uploader=_uploader)


def get_reconciler(
    store: GenerationStore = Depends(get_store),
    provider: FalQueueClient = Depends(get_provider),
) -> JobReconciler:
    return JobReconciler(store, provider=provider)


# Request/Response Models
class GenerateRequest(BaseModel):
    """Request to generate a video."""
    account_id: str
    model_version: str
    variant: str
    model_type: str = "kling"
    prompt: str = ""
    image_url: Optional[str] = None
    tail_image_url: Optional[str] = None
    video_url: Optional[str] = None
    aspect_ratio: Optional[str] = None
    duration: Optional[int] = None
    generate_audio: Optional[bool] = None
    character_orientation: Optional[str] = None
    keep_original_sound: Optional[bool] = None

    def selector(self) -> ModelSelector:
        return ModelSelector(
            model_version=self.model_version,
            variant=self.variant,
            model_type=self.model_type,
        )

    def inputs(self) -> GenerationInputs:
        return GenerationInputs(
            prompt=self.prompt,
            image_url=self.image_url,
            tail_image_url=self.tail_image_url,
            video_url=self.video_url,
            aspect_ratio=self.aspect_ratio,
            duration=self.duration,
            generate_audio=self.generate_audio,
            character_orientation=self.character_orientation,
            keep_original_sound=self.keep_original_sound,
        )


class StatusCheckRequest(BaseModel):
    """Manual status check for a known provider request."""
    request_id: str
    api_key: str
    endpoint: Optional[str] = None
    model_version: Optional[str] = None
    variant: Optional[str] = None


def _serialize_record(record: dict) -> dict:
    out = {}
    for key, value in record.items():
        if isinstance(value, datetime):
            out[key] = value.isoformat()
        elif isinstance(value, Decimal):
            out[key] = str(value)
        elif value is not None and not isinstance(value, (str, int, float, bool, dict, list)):
            out[key] = str(value)
        else:
            out[key] = value
    return out


@app.get("/health")
async def health():
    """Health check endpoint."""
    return {
        "status": "healthy",
        "circuit_breakers": CircuitBreaker.get_all_status(),
        "config_issues": get_config().validate(),
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


@app.post("/generate")
async def generate(
    request: GenerateRequest,
    pipeline: GenerationPipeline = Depends(get_pipeline),
):
    """Debit credits and queue a generation job."""
    result = await pipeline.submit(request.account_id, request.selector(), request.inputs())
    if result.success:
        return result.to_dict()
    return JSONResponse(status_code=ERROR_STATUS.get(result.error_code, 500), content=result.to_dict())


@app.post("/reconcile")
async def reconcile(reconciler: JobReconciler = Depends(get_reconciler)):
    """Run one reconcile sweep and return its counts."""
    try:
        summary = await reconciler.reconcile_once()
    except Exception as e:
        logger.exception("Reconcile sweep failed")
        raise HTTPException(status_code=500, detail=f"Reconcile failed: {e}")
    return summary.to_dict()


@app.post("/status/check")
async def check_status(
    request: StatusCheckRequest,
    provider: FalQueueClient = Depends(get_provider),
):
    """Ask the provider for the current state of one request."""
    try:
        endpoint = request.endpoint or resolve_endpoint(
            request.model_version or "", request.variant or ""
        )
        data: dict[str, Any] = await provider.check_request(endpoint, request.request_id, request.api_key)
    except GenerationError as e:
        raise HTTPException(
            status_code=ERROR_STATUS.get(e.error_code, 500),
            detail={"error_code": e.error_code.value, "error": str(e)},
        )
    return {"success": True, "request_id": request.request_id, **data}


@app.get("/accounts/{account_id}/history")
async def history(
    account_id: str,
    page: int = Query(1, ge=1),
    page_size: Optional[int] = Query(None, ge=1, le=100),
    store: GenerationStore = Depends(get_store),
):
    """Newest-first generation history."""
    size = page_size or get_config().history_page_size
    records = await store.list_history(account_id, limit=size, offset=(page - 1) * size)
    total = await store.count_history(account_id)
    return {
        "items": [_serialize_record(r) for r in records],
        "page": page,
        "page_size": size,
        "total": total,
        "total_pages": (total + size - 1) // size,
    }


@app.get("/accounts/{account_id}/processing")
async def processing(account_id: str, store: GenerationStore = Depends(get_store)):
    """Number of jobs still processing for an account."""
    return {"account_id": account_id, "processing": await store.count_processing(account_id)}
