"""API routes for the embedding service."""

import asyncio
import time
from contextlib import suppress
from typing import Any, Awaitable, Dict, List, Optional

from fastapi import APIRouter, Depends, Request, Response
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
import structlog

from ..encoders.errors import InferenceError, InvalidInputError
from ..encoders.models import BatchEncodeRequest, EncodeRequest, ModelMetadata
from ..encoders.presets import ConfigProvider, UnknownPresetError
from ..encoders.service import InferenceService

logger = structlog.get_logger("embedding_service.api")

router = APIRouter()

_DISCONNECT_POLL_SECONDS = 0.25
_CLIENT_CLOSED_REQUEST = 499

ERROR_STATUS = {
    "InvalidInput": 400,
    "SwitchInProgress": 409,
    "TokenizationFailure": 422,
    "RuntimeFailure": 500,
    "LoadFailure": 502,
    "ConcurrencyTimeout": 503,
    "ModelNotLoaded": 503,
}


class EncodeBody(BaseModel):
    """Request model for single text encoding."""
    text: str = Field(..., description="Text to embed")
    normalize: bool = Field(True, description="L2-normalize the embedding")


class EncodeResponse(BaseModel):
    """Response model for single text encoding."""
    embedding: List[float] = Field(..., description="Embedding vector")
    dimension: int = Field(..., description="Embedding dimension")
    model_id: str = Field(..., description="Model that produced the embedding")
    latency_ms: float = Field(..., description="Processing latency in milliseconds")

    model_config = {"protected_namespaces": ()}


class BatchEncodeBody(BaseModel):
    """Request model for batch encoding."""
    texts: List[str] = Field(..., description="Texts to embed, order is preserved")
    normalize: bool = Field(True, description="L2-normalize the embeddings")


class BatchEncodeResponse(BaseModel):
    """Response model for batch encoding."""
    embeddings: List[List[float]] = Field(..., description="Embeddings in input order")
    count: int = Field(..., description="Number of embeddings")
    dimension: int = Field(..., description="Embedding dimension")
    model_id: str = Field(..., description="Model that produced the embeddings")
    latency_ms: float = Field(..., description="Processing latency in milliseconds")

    model_config = {"protected_namespaces": ()}


class ModelInfo(BaseModel):
    """Model metadata as exposed over the API."""
    model_id: str
    tokenizer_id: str
    max_sequence_length: int
    device: str
    embedding_dimension: Optional[int] = None
    revision: Optional[str] = None
    backend: str
    pooling: str

    model_config = {"protected_namespaces": ()}


class SwitchModelBody(BaseModel):
    """Switch request: a named preset or explicit model fields."""
    preset: Optional[str] = Field(None, description="Configured preset name")
    model_id: Optional[str] = None
    tokenizer_id: Optional[str] = None
    max_sequence_length: Optional[int] = None
    device: Optional[str] = None
    embedding_dimension: Optional[int] = None
    revision: Optional[str] = None
    backend: Optional[str] = None
    pooling: Optional[str] = None

    model_config = {"protected_namespaces": ()}


class SwitchModelResponse(BaseModel):
    """Result of a completed switch."""
    previous: ModelInfo
    current: ModelInfo


def get_inference_service(request: Request) -> InferenceService:
    """Get inference service from application state."""
    return request.app.state.inference_service


def get_config_provider(request: Request) -> ConfigProvider:
    """Get config provider from application state."""
    return request.app.state.config_provider


def error_response(exc: InferenceError) -> JSONResponse:
    return JSONResponse(
        status_code=ERROR_STATUS.get(exc.kind, 500),
        content={"error": exc.kind, "detail": exc.message},
    )


async def run_until_disconnected(request: Request, work: Awaitable[Any]) -> Any:
    """Await ``work`` but cancel it if the client goes away first.

    Returns ``None`` when the client disconnected.
    """
    task = asyncio.ensure_future(work)
    try:
        while True:
            done, _ = await asyncio.wait({task}, timeout=_DISCONNECT_POLL_SECONDS)
            if done:
                return task.result()
            if await request.is_disconnected():
                logger.info("Client disconnected, abandoning request", path=request.url.path)
                task.cancel()
                with suppress(asyncio.CancelledError):
                    await task
                return None
    except asyncio.CancelledError:
        task.cancel()
        raise


def _model_info(metadata: ModelMetadata) -> ModelInfo:
    return ModelInfo(**metadata.as_dict())


@router.post("/encode", response_model=EncodeResponse)
async def encode(
    body: EncodeBody,
    request: Request,
    service: InferenceService = Depends(get_inference_service),
):
    """Encode a single text."""
    start_time = time.perf_counter()
    try:
        embedding = await run_until_disconnected(
            request, service.encode(EncodeRequest(text=body.text, normalize=body.normalize))
        )
    except InferenceError as exc:
        return error_response(exc)

    if embedding is None:
        return Response(status_code=_CLIENT_CLOSED_REQUEST)

    return EncodeResponse(
        embedding=embedding.to_list(),
        dimension=embedding.dimension,
        model_id=embedding.model_id,
        latency_ms=(time.perf_counter() - start_time) * 1000,
    )


@router.post("/encode/batch", response_model=BatchEncodeResponse)
async def encode_batch(
    body: BatchEncodeBody,
    request: Request,
    service: InferenceService = Depends(get_inference_service),
):
    """Encode a batch of texts in one pass."""
    start_time = time.perf_counter()
    try:
        embeddings = await run_until_disconnected(
            request,
            service.encode_batch(BatchEncodeRequest(texts=body.texts, normalize=body.normalize)),
        )
    except InferenceError as exc:
        return error_response(exc)

    if embeddings is None:
        return Response(status_code=_CLIENT_CLOSED_REQUEST)

    latency_ms = (time.perf_counter() - start_time) * 1000
    logger.info("Batch encoded", count=len(embeddings), latency_ms=round(latency_ms, 3))
    return BatchEncodeResponse(
        embeddings=[embedding.to_list() for embedding in embeddings],
        count=len(embeddings),
        dimension=embeddings[0].dimension,
        model_id=embeddings[0].model_id,
        latency_ms=latency_ms,
    )


@router.get("/model/info", response_model=ModelInfo)
async def model_info(service: InferenceService = Depends(get_inference_service)):
    """Metadata of the currently active model."""
    try:
        metadata = await service.current_model_info()
    except InferenceError as exc:
        return error_response(exc)
    return _model_info(metadata)


@router.get("/model/presets", response_model=Dict[str, ModelInfo])
async def model_presets(provider: ConfigProvider = Depends(get_config_provider)):
    """Named models available for switching."""
    return {name: _model_info(metadata) for name, metadata in provider.presets().items()}


@router.post("/model/switch", response_model=SwitchModelResponse)
async def switch_model(
    body: SwitchModelBody,
    service: InferenceService = Depends(get_inference_service),
    provider: ConfigProvider = Depends(get_config_provider),
):
    """Switch the active model to a preset or an explicit model."""
    fields = body.model_dump(exclude={"preset"}, exclude_none=True)

    try:
        if body.preset:
            try:
                base = provider.preset(body.preset).as_dict()
            except UnknownPresetError:
                return JSONResponse(
                    status_code=404,
                    content={"error": "UnknownPreset", "detail": f"Preset {body.preset} not found"},
                )
            base.update(fields)
            if "model_id" in fields and "tokenizer_id" not in fields:
                base["tokenizer_id"] = fields["model_id"]
            metadata = ModelMetadata.from_dict(base)
        elif body.model_id:
            current = await service.current_model_info()
            values = {
                "device": current.device,
                "backend": current.backend,
                "pooling": current.pooling,
                "max_sequence_length": provider.config.ml_embedding_max_length,
            }
            values.update(fields)
            metadata = ModelMetadata.from_dict(values)
        else:
            raise InvalidInputError("Either preset or model_id is required")

        result = await service.switch_model_detailed(metadata)
    except InferenceError as exc:
        return error_response(exc)

    logger.info(
        "Model switched",
        previous_model=result.previous.model_id,
        model_id=result.current.model_id,
    )
    return SwitchModelResponse(
        previous=_model_info(result.previous), current=_model_info(result.current)
    )
