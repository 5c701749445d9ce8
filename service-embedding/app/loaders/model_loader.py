"""Model loader building ready-to-serve ``ModelUnit`` instances.

Loading is slow (hub downloads, weight parsing, device transfer) and always
happens before the registry is asked for exclusive access. Every failure
surfaces as ``ModelLoadError`` so a broken load never reaches the active slot.
"""

import asyncio
import dataclasses
import time
from typing import Optional, Tuple

import structlog
import torch
from sentence_transformers import SentenceTransformer
from transformers import AutoModel

from libs.common.config import EmbeddingConfig
from libs.common.logging import log_performance
from ..encoders.errors import ModelLoadError
from ..encoders.models import BACKENDS, ModelMetadata, ModelUnit
from ..encoders.postprocess import postprocess
from ..encoders.runtime import EncoderRuntime, SentenceTransformerRuntime, TransformerRuntime
from ..encoders.tokenizer import TokenizerAdapter
from ..pipelines.retry_handler import create_model_fetch_retry_handler
from ..runtime.devices import resolve_device

logger = structlog.get_logger("model_loader")


class ModelLoader:
    """Fetches tokenizer and weights for a ``ModelMetadata`` and wires a unit.

    Parameters
    - cache_dir: optional HuggingFace cache directory
    - load_timeout: upper bound in seconds for one ``load`` call
    - max_attempts: fetch attempts on ``OSError`` (network/file errors)
    - warmup: run one forward pass before handing the unit out
    """

    def __init__(
        self,
        cache_dir: Optional[str] = None,
        load_timeout: Optional[float] = 300.0,
        max_attempts: int = 1,
        warmup: bool = True,
        retry_base_delay: float = 2.0,
    ):
        self.cache_dir = cache_dir
        self.load_timeout = load_timeout
        self.warmup = warmup
        self._retry = create_model_fetch_retry_handler(max_attempts, retry_base_delay)

    @classmethod
    def from_config(cls, config: EmbeddingConfig) -> "ModelLoader":
        return cls(
            cache_dir=config.ml_model_cache_dir,
            load_timeout=config.ml_model_load_timeout,
            max_attempts=config.ml_model_load_attempts,
            warmup=config.ml_embedding_warmup,
        )

    async def load(self, metadata: ModelMetadata) -> ModelUnit:
        """Build a complete unit for ``metadata`` off the event loop."""
        start_time = time.perf_counter()
        try:
            unit = await asyncio.wait_for(
                self._retry.execute_with_retry(
                    self._load_once,
                    metadata,
                    operation_name=f"load_model_{metadata.model_id}",
                ),
                timeout=self.load_timeout,
            )
        except asyncio.TimeoutError as exc:
            logger.error("Model load timed out", model_id=metadata.model_id, timeout=self.load_timeout)
            raise ModelLoadError(
                f"Loading {metadata.model_id} exceeded {self.load_timeout}s"
            ) from exc
        except ModelLoadError as exc:
            logger.error("Failed to load model", model_id=metadata.model_id, error=exc.message)
            raise
        except Exception as exc:
            logger.error("Failed to load model", model_id=metadata.model_id, error=str(exc))
            raise ModelLoadError(f"Failed to load {metadata.model_id}: {exc}") from exc

        log_performance(
            "model_load",
            (time.perf_counter() - start_time) * 1000,
            model_id=unit.metadata.model_id,
            device=unit.metadata.device,
            dimension=unit.metadata.embedding_dimension,
        )
        return unit

    async def _load_once(self, metadata: ModelMetadata) -> ModelUnit:
        return await asyncio.to_thread(self.build_unit, metadata)

    def build_unit(self, metadata: ModelMetadata) -> ModelUnit:
        """Blocking load; runs in a worker thread."""
        if metadata.backend not in BACKENDS:
            raise ModelLoadError(f"Unknown encoder backend: {metadata.backend}")

        device = resolve_device(metadata.device)
        logger.info(
            "Loading model",
            model_id=metadata.model_id,
            tokenizer_id=metadata.tokenizer_id,
            backend=metadata.backend,
            revision=metadata.revision,
            device=str(device),
        )

        if metadata.backend == "sentence-transformers":
            tokenizer, runtime, max_positions = self._load_sentence_transformer(metadata, device)
        else:
            tokenizer, runtime, max_positions = self._load_transformer(metadata, device)

        dimension = runtime.dimension
        if metadata.embedding_dimension is not None and metadata.embedding_dimension != dimension:
            runtime.release()
            raise ModelLoadError(
                f"{metadata.model_id} produces {dimension}-dim embeddings, "
                f"expected {metadata.embedding_dimension}"
            )

        limits = [metadata.max_sequence_length, max_positions, tokenizer.model_max_length]
        max_length = min(limit for limit in limits if limit)

        resolved = dataclasses.replace(
            metadata,
            embedding_dimension=dimension,
            max_sequence_length=max_length,
            device=str(device),
        )
        unit = ModelUnit(metadata=resolved, tokenizer=tokenizer, runtime=runtime)

        if self.warmup:
            self._warmup(unit)

        return unit

    def _tokenizer_revision(self, metadata: ModelMetadata) -> Optional[str]:
        return metadata.revision if metadata.tokenizer_id == metadata.model_id else None

    def _load_transformer(
        self, metadata: ModelMetadata, device: torch.device
    ) -> Tuple[TokenizerAdapter, EncoderRuntime, Optional[int]]:
        tokenizer = TokenizerAdapter.from_pretrained(
            metadata.tokenizer_id,
            revision=self._tokenizer_revision(metadata),
            cache_dir=self.cache_dir,
        )
        model = AutoModel.from_pretrained(
            metadata.model_id,
            revision=metadata.revision,
            cache_dir=self.cache_dir,
        )
        hidden_size = getattr(model.config, "hidden_size", None)
        if hidden_size is None:
            raise ModelLoadError(f"{metadata.model_id} config has no hidden_size")

        runtime = TransformerRuntime(model, device, int(hidden_size))
        return tokenizer, runtime, getattr(model.config, "max_position_embeddings", None)

    def _load_sentence_transformer(
        self, metadata: ModelMetadata, device: torch.device
    ) -> Tuple[TokenizerAdapter, EncoderRuntime, Optional[int]]:
        pipeline = SentenceTransformer(
            metadata.model_id,
            device=str(device),
            revision=metadata.revision,
            cache_folder=self.cache_dir,
        )
        if metadata.tokenizer_id == metadata.model_id:
            tokenizer = TokenizerAdapter(pipeline.tokenizer, name=metadata.tokenizer_id)
        else:
            tokenizer = TokenizerAdapter.from_pretrained(metadata.tokenizer_id, cache_dir=self.cache_dir)

        module = pipeline[0]
        runtime = SentenceTransformerRuntime(module, device, module.get_word_embedding_dimension())
        return tokenizer, runtime, pipeline.max_seq_length

    def _warmup(self, unit: ModelUnit) -> None:
        """One tiny encode so a broken unit fails here, not on live traffic."""
        try:
            batch = unit.tokenizer.encode_batch(["warmup"], unit.metadata.max_sequence_length)
            hidden = unit.runtime.forward(batch)
            postprocess(hidden, batch.attention_mask, unit.metadata.pooling, normalize_output=True)
        except Exception as exc:
            unit.release()
            raise ModelLoadError(f"Warmup of {unit.metadata.model_id} failed: {exc}") from exc
        logger.debug("Model warmed up", model_id=unit.metadata.model_id, device=unit.metadata.device)
