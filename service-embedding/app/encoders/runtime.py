"""Encoder runtimes: loaded weights plus the device they live on.

Two variants share the ``EncoderRuntime`` interface:
- ``TransformerRuntime`` for plain HuggingFace ``AutoModel`` backbones
- ``SentenceTransformerRuntime`` for the transformer module of a
  ``sentence_transformers`` pipeline

Both return per-token hidden states; pooling happens in the post-processor so
the padding mask is honoured the same way for every model family.
"""

import inspect
from typing import Any, Dict, Optional, Protocol, runtime_checkable

import structlog
import torch

from .errors import EncoderRuntimeError
from .tokenizer import TokenBatch

logger = structlog.get_logger("embedding_service.runtime")


@runtime_checkable
class EncoderRuntime(Protocol):
    """Capability set every runtime variant provides."""

    @property
    def device(self) -> torch.device:
        ...

    @property
    def dimension(self) -> int:
        ...

    def forward(self, batch: TokenBatch) -> torch.Tensor:
        """Run one forward pass; returns ``(batch, seq, hidden)`` states."""
        ...

    def release(self) -> None:
        ...


class TransformerRuntime:
    """Runs a HuggingFace encoder over a whole token batch in one call."""

    def __init__(self, model: torch.nn.Module, device: torch.device, dimension: int):
        self._device = device
        self._dimension = int(dimension)
        self._model: Optional[torch.nn.Module] = model.to(device)
        self._model.eval()
        self._accepts_token_types = self._forward_accepts(model, "token_type_ids")

    @property
    def device(self) -> torch.device:
        return self._device

    @property
    def dimension(self) -> int:
        return self._dimension

    @staticmethod
    def _forward_accepts(model: torch.nn.Module, name: str) -> bool:
        try:
            parameters = inspect.signature(model.forward).parameters
        except (TypeError, ValueError):
            return False
        return name in parameters or any(
            p.kind is inspect.Parameter.VAR_KEYWORD for p in parameters.values()
        )

    def _inputs(self, batch: TokenBatch) -> Dict[str, torch.Tensor]:
        inputs = {
            "input_ids": batch.input_ids.to(self._device),
            "attention_mask": batch.attention_mask.to(self._device),
        }
        if batch.token_type_ids is not None and self._accepts_token_types:
            inputs["token_type_ids"] = batch.token_type_ids.to(self._device)
        return inputs

    def _hidden_states(self, model: torch.nn.Module, inputs: Dict[str, torch.Tensor]) -> torch.Tensor:
        outputs: Any = model(**inputs)
        hidden = getattr(outputs, "last_hidden_state", None)
        if hidden is None:
            hidden = outputs[0]
        return hidden

    def forward(self, batch: TokenBatch) -> torch.Tensor:
        """Run the encoder over ``batch``.

        Raises ``EncoderRuntimeError`` on malformed batches or any failure
        inside the model (out of memory, device fault); the runtime itself
        stays usable for later calls.
        """
        model = self._model
        if model is None:
            raise EncoderRuntimeError("Encoder runtime has been released")

        if batch.input_ids.dim() != 2 or batch.input_ids.shape != batch.attention_mask.shape:
            raise EncoderRuntimeError(
                f"Malformed token batch: input_ids {tuple(batch.input_ids.shape)} "
                f"vs attention_mask {tuple(batch.attention_mask.shape)}"
            )

        try:
            with torch.inference_mode():
                hidden = self._hidden_states(model, self._inputs(batch))
        except Exception as exc:
            logger.warning("Forward pass failed", device=str(self._device), error=str(exc))
            raise EncoderRuntimeError(f"Forward pass failed: {exc}") from exc

        if hidden.dim() != 3 or tuple(hidden.shape[:2]) != tuple(batch.input_ids.shape):
            raise EncoderRuntimeError(
                f"Unexpected hidden state shape {tuple(hidden.shape)} "
                f"for batch {tuple(batch.input_ids.shape)}"
            )
        return hidden

    def release(self) -> None:
        """Drop the weights; frees accelerator memory when on a GPU."""
        self._model = None
        if self._device.type == "cuda":
            torch.cuda.empty_cache()


class SentenceTransformerRuntime(TransformerRuntime):
    """Runs the transformer module of a sentence-transformers pipeline.

    Only the first module is used; its ``token_embeddings`` feed the shared
    post-processor instead of the pipeline's own pooling layer.
    """

    def __init__(self, module: torch.nn.Module, device: torch.device, dimension: int):
        super().__init__(module, device, dimension)
        # The module filters its feature dict itself
        self._accepts_token_types = True

    def _hidden_states(self, model: torch.nn.Module, inputs: Dict[str, torch.Tensor]) -> torch.Tensor:
        features = model(dict(inputs))
        return features["token_embeddings"]
