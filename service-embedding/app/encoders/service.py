"""Inference service orchestrating encode, batch encode and model switches.

Encode path
- validate -> read guard -> tokenize -> forward -> postprocess -> release guard
- each stage runs on a bounded worker pool so the event loop keeps serving
- the guard is held across all three stages and dropped before results are
  turned into ``Embedding`` objects

Switch path
- validate -> load the replacement with no lock held -> swap under the write
  lock -> release the old unit outside the lock
"""

import asyncio
import functools
import time
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Callable, List, NamedTuple, Optional, Sequence

import structlog

from libs.common.config import EmbeddingConfig
from libs.common.logging import log_performance
from libs.common.metrics import MetricsCollector
from .errors import (
    EncoderRuntimeError,
    InferenceError,
    InvalidInputError,
    ModelLoadError,
    SwitchInProgressError,
)
from .models import (
    BACKENDS,
    POOLING_STRATEGIES,
    BatchEncodeRequest,
    Embedding,
    EncodeRequest,
    ModelMetadata,
    ModelUnit,
)
from .postprocess import postprocess
from .presets import ConfigProvider
from .registry import ModelHandleRegistry

logger = structlog.get_logger("embedding_service.inference")

SWITCH_POLICIES = ("queue", "reject")


class SwitchResult(NamedTuple):
    """Metadata replaced and installed by one completed switch."""

    previous: ModelMetadata
    current: ModelMetadata


def _is_positive_int(value: Any) -> bool:
    # bool is an int subclass; True must not pass as a length of 1
    return isinstance(value, int) and not isinstance(value, bool) and value > 0


class InferenceService:
    """Entry point of the inference core used by the transport layer.

    Parameters
    - registry: holds the active model unit
    - loader: collaborator with ``async load(metadata) -> ModelUnit``
    - max_batch_size: largest accepted batch
    - max_text_chars: per-text character limit, ``0`` disables it
    - switch_policy: ``queue`` waits for an in-flight switch, ``reject`` fails fast
    - workers: size of the inference worker pool when no executor is given
    """

    def __init__(
        self,
        registry: ModelHandleRegistry,
        loader: Any,
        max_batch_size: int = 100,
        max_text_chars: int = 100_000,
        switch_policy: str = "queue",
        workers: int = 4,
        metrics: Optional[MetricsCollector] = None,
        executor: Optional[ThreadPoolExecutor] = None,
    ):
        if switch_policy not in SWITCH_POLICIES:
            raise ValueError(f"Unknown switch policy: {switch_policy}")

        self._registry = registry
        self._loader = loader
        self.max_batch_size = max_batch_size
        self.max_text_chars = max_text_chars
        self.switch_policy = switch_policy
        self._metrics = metrics
        self._owns_executor = executor is None
        self._executor = executor or ThreadPoolExecutor(
            max_workers=max(1, workers), thread_name_prefix="inference"
        )
        self._switch_lock = asyncio.Lock()

    @classmethod
    async def create(
        cls,
        config: EmbeddingConfig,
        loader: Any,
        metrics: Optional[MetricsCollector] = None,
        initial_metadata: Optional[ModelMetadata] = None,
    ) -> "InferenceService":
        """Load the initial model from configuration and build the service."""
        metadata = initial_metadata or ConfigProvider(config).initial_metadata()
        cls.validate_metadata(metadata)

        unit = await loader.load(metadata)
        registry = ModelHandleRegistry(
            unit,
            read_timeout=config.ml_read_acquire_timeout,
            metrics=metrics,
        )
        service = cls(
            registry,
            loader,
            max_batch_size=config.ml_max_batch_size,
            max_text_chars=config.ml_max_text_chars,
            switch_policy=config.ml_switch_policy,
            workers=config.ml_inference_workers,
            metrics=metrics,
        )
        if metrics is not None:
            metrics.set_active_model(unit.metadata.model_id, unit.metadata.device)

        logger.info(
            "Inference service ready",
            model_id=unit.metadata.model_id,
            device=unit.metadata.device,
            dimension=unit.metadata.embedding_dimension,
            switch_policy=service.switch_policy,
        )
        return service

    @property
    def registry(self) -> ModelHandleRegistry:
        return self._registry

    @property
    def switch_in_progress(self) -> bool:
        return self._switch_lock.locked()

    # Encoding

    async def encode(self, request: EncodeRequest) -> Embedding:
        """Encode one text; same result as a one-element batch."""
        if not isinstance(request.text, str):
            raise InvalidInputError("text must be a string")
        embeddings = await self._encode_texts([request.text], request.normalize, "encode")
        return embeddings[0]

    async def encode_batch(self, request: BatchEncodeRequest) -> List[Embedding]:
        """Encode ``request.texts`` in one pass; output order matches input."""
        texts = self._validate_texts(request.texts)
        return await self._encode_texts(texts, request.normalize, "encode_batch")

    def _validate_texts(self, texts: Sequence[str]) -> List[str]:
        if isinstance(texts, str) or texts is None:
            raise InvalidInputError("texts must be a list of strings")
        texts = list(texts)
        if not texts:
            raise InvalidInputError("Text list cannot be empty")
        if len(texts) > self.max_batch_size:
            raise InvalidInputError(
                f"Batch size {len(texts)} exceeds maximum {self.max_batch_size}"
            )
        for index, text in enumerate(texts):
            if not isinstance(text, str):
                raise InvalidInputError(f"Item at position {index} is not a string")
        return texts

    def _check_lengths(self, texts: List[str]) -> None:
        if not self.max_text_chars:
            return
        for index, text in enumerate(texts):
            if len(text) > self.max_text_chars:
                raise InvalidInputError(
                    f"Text at position {index} has {len(text)} characters, "
                    f"limit is {self.max_text_chars}"
                )

    async def _encode_texts(self, texts: List[str], normalize: bool, operation: str) -> List[Embedding]:
        self._check_lengths(texts)

        start_time = time.perf_counter()
        model_id = "unknown"
        status = "error"
        try:
            async with self._registry.acquire_read() as unit:
                model_id = unit.metadata.model_id
                batch = await self._run_stage(
                    unit.tokenizer.encode_batch, texts, unit.metadata.max_sequence_length
                )
                hidden = await self._run_stage(unit.runtime.forward, batch)
                vectors = await self._run_stage(
                    postprocess, hidden, batch.attention_mask, unit.metadata.pooling, normalize
                )
                expected_dimension = unit.metadata.embedding_dimension

            if tuple(vectors.shape[:1]) != (len(texts),):
                raise EncoderRuntimeError(
                    f"Encoder returned {vectors.shape[0]} vectors for {len(texts)} texts"
                )
            if expected_dimension is not None and vectors.shape[1] != expected_dimension:
                raise EncoderRuntimeError(
                    f"Encoder returned {vectors.shape[1]}-dim vectors, expected {expected_dimension}"
                )

            embeddings = [Embedding(values=tuple(row), model_id=model_id) for row in vectors.tolist()]
            status = "success"
            return embeddings

        except asyncio.CancelledError:
            status = "cancelled"
            logger.info("Encode request cancelled", operation=operation, model_id=model_id)
            raise
        except InferenceError as exc:
            status = exc.kind
            logger.warning(
                "Encode request failed",
                operation=operation,
                model_id=model_id,
                kind=exc.kind,
                error=exc.message,
            )
            raise
        finally:
            if self._metrics is not None:
                self._metrics.record_embedding(
                    model_id=model_id,
                    operation=operation,
                    status=status,
                    duration=time.perf_counter() - start_time,
                    batch_size=len(texts),
                )

    async def _run_stage(self, func: Callable, *args: Any) -> Any:
        """Run one blocking pipeline stage on the worker pool.

        A cancellation arriving mid-stage waits for the stage to finish so the
        caller's read guard is never dropped while a worker still uses the unit.
        """
        loop = asyncio.get_running_loop()
        future = loop.run_in_executor(self._executor, functools.partial(func, *args))
        try:
            return await asyncio.shield(future)
        except asyncio.CancelledError:
            if not future.done():
                await asyncio.wait({future})
            if not future.cancelled() and future.exception() is not None:
                logger.debug("Abandoned stage failed", error=str(future.exception()))
            raise

    # Model management

    @staticmethod
    def validate_metadata(metadata: ModelMetadata) -> None:
        """Reject metadata that cannot describe a loadable model."""
        if not isinstance(metadata.model_id, str) or not metadata.model_id.strip():
            raise InvalidInputError("model_id must be a non-empty string")
        if not isinstance(metadata.tokenizer_id, str) or not metadata.tokenizer_id.strip():
            raise InvalidInputError("tokenizer_id must be a non-empty string")
        if not _is_positive_int(metadata.max_sequence_length):
            raise InvalidInputError("max_sequence_length must be a positive integer")
        if not isinstance(metadata.device, str) or not metadata.device.strip():
            raise InvalidInputError("device must be a non-empty string")
        if metadata.embedding_dimension is not None and not _is_positive_int(metadata.embedding_dimension):
            raise InvalidInputError("embedding_dimension must be a positive integer when given")
        if metadata.pooling not in POOLING_STRATEGIES:
            raise InvalidInputError(
                f"pooling must be one of {', '.join(POOLING_STRATEGIES)}"
            )
        if metadata.backend not in BACKENDS:
            raise InvalidInputError(f"backend must be one of {', '.join(BACKENDS)}")

    async def switch_model(self, metadata: ModelMetadata) -> ModelMetadata:
        """Load ``metadata`` and make it the active model.

        All-or-nothing: a failed load leaves the current model serving.
        Returns the metadata of the model that was replaced.
        """
        result = await self.switch_model_detailed(metadata)
        return result.previous

    async def switch_model_detailed(self, metadata: ModelMetadata) -> SwitchResult:
        """Like ``switch_model`` but also reports the metadata this call installed.

        ``current`` is taken from the unit swapped in by this call, so a switch
        queued right behind it cannot leak into the result.
        """
        self.validate_metadata(metadata)

        if self.switch_policy == "reject" and self._switch_lock.locked():
            self._record_switch("rejected", 0.0)
            raise SwitchInProgressError("Another model switch is already in progress")

        start_time = time.perf_counter()
        async with self._switch_lock:
            logger.info("Model switch started", model_id=metadata.model_id, device=metadata.device)
            try:
                new_unit = await self._loader.load(metadata)
            except ModelLoadError as exc:
                self._record_switch("failed", time.perf_counter() - start_time)
                logger.error("Model switch aborted, keeping current model", model_id=metadata.model_id, error=exc.message)
                raise

            try:
                previous = await self._registry.acquire_write_and_swap(new_unit)
            except BaseException:
                new_unit.release()
                self._record_switch("failed", time.perf_counter() - start_time)
                raise

            # gauge is set under the switch lock so it always names the slot's model
            if self._metrics is not None:
                self._metrics.set_active_model(new_unit.metadata.model_id, new_unit.metadata.device)
            generation = self._registry.generation

        await self._release_unit(previous)

        duration = time.perf_counter() - start_time
        self._record_switch("success", duration)
        log_performance(
            "model_switch",
            duration * 1000,
            previous_model=previous.metadata.model_id,
            model_id=new_unit.metadata.model_id,
            generation=generation,
        )
        return SwitchResult(previous=previous.metadata, current=new_unit.metadata)

    async def current_model_info(self) -> ModelMetadata:
        """Metadata of the model serving right now."""
        async with self._registry.acquire_read() as unit:
            return unit.metadata

    def _record_switch(self, status: str, duration: float) -> None:
        if self._metrics is not None:
            self._metrics.record_model_switch(status, duration)

    async def _release_unit(self, unit: ModelUnit) -> None:
        loop = asyncio.get_running_loop()
        try:
            await loop.run_in_executor(self._executor, unit.release)
        except Exception as e:
            logger.error("Failed to release model unit", model_id=unit.metadata.model_id, error=str(e))

    # Lifecycle

    async def health_check(self, timeout: float = 1.0) -> bool:
        """True when a model is active and reachable within ``timeout``."""
        try:
            async with self._registry.acquire_read(timeout=timeout):
                return True
        except InferenceError as e:
            logger.error("Health check failed", kind=e.kind, error=e.message)
            return False

    async def close(self) -> None:
        """Tear down the active model and the worker pool."""
        unit = await self._registry.close()
        if unit is not None:
            await self._release_unit(unit)
        if self._owns_executor:
            self._executor.shutdown(wait=False, cancel_futures=True)
        logger.info("Inference service closed")
