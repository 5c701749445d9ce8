"""Lightweight stand-ins for HuggingFace tokenizers, encoders and loaders.

Everything here runs on CPU in milliseconds so the serving engine can be
exercised without downloading models.
"""

import asyncio
import dataclasses
import threading
import time
import zlib
from types import SimpleNamespace
from typing import Dict, Iterable, List, Optional

import torch

from app.encoders.errors import ModelLoadError
from app.encoders.models import ModelMetadata, ModelUnit
from app.encoders.postprocess import postprocess
from app.encoders.runtime import TransformerRuntime
from app.encoders.tokenizer import TokenizerAdapter

PAD_ID = 0
CLS_ID = 1
SEP_ID = 2
FAIL_ID = 3
VOCAB_SIZE = 512

# Any text containing this word makes the fake encoder raise
FAIL_WORD = "__boom__"


class FakeTokenizer:
    """Whitespace tokenizer with the call signature of a HF fast tokenizer."""

    pad_token_id = PAD_ID
    truncation_side = "right"

    def __init__(self, model_max_length: int = 512, with_token_types: bool = False):
        self.model_max_length = model_max_length
        self.with_token_types = with_token_types
        self.calls = 0

    @staticmethod
    def token_id(word: str) -> int:
        if word == FAIL_WORD:
            return FAIL_ID
        return 4 + zlib.crc32(word.encode("utf-8")) % (VOCAB_SIZE - 4)

    def __call__(self, texts, add_special_tokens=True, truncation=True, max_length=None, padding=False):
        self.calls += 1
        input_ids: List[List[int]] = []
        for text in texts:
            if not isinstance(text, str):
                raise TypeError(f"text input must be of type str, got {type(text).__name__}")
            ids = [self.token_id(word) for word in text.split()]
            if add_special_tokens:
                if truncation and max_length is not None:
                    ids = ids[:max(max_length - 2, 0)]
                ids = [CLS_ID] + ids + [SEP_ID]
            elif truncation and max_length is not None:
                ids = ids[:max_length]
            input_ids.append(ids)

        encoded = {
            "input_ids": input_ids,
            "attention_mask": [[1] * len(ids) for ids in input_ids],
        }
        if self.with_token_types:
            encoded["token_type_ids"] = [[0] * len(ids) for ids in input_ids]
        return encoded


class TinyEncoder(torch.nn.Module):
    """Embedding table plus one masked context-mixing step.

    Hidden states of real tokens depend only on the real tokens of the same
    row, so padding never changes a result.
    """

    def __init__(
        self,
        dimension: int = 8,
        seed: int = 0,
        delay: float = 0.0,
        gate: Optional[threading.Event] = None,
    ):
        super().__init__()
        generator = torch.Generator().manual_seed(seed)
        weights = torch.randn(VOCAB_SIZE, dimension, generator=generator)
        self.embed = torch.nn.Embedding.from_pretrained(weights, freeze=True)
        self.delay = delay
        self.gate = gate
        self.started = threading.Event()
        self.calls = 0

    def forward(self, input_ids, attention_mask, token_type_ids=None):
        self.calls += 1
        self.started.set()
        if self.gate is not None:
            self.gate.wait(timeout=5.0)
        if self.delay:
            time.sleep(self.delay)
        if bool((input_ids == FAIL_ID).any()):
            raise RuntimeError("CUDA out of memory (simulated)")

        embedded = self.embed(input_ids)
        mask = attention_mask.unsqueeze(-1).to(embedded.dtype)
        context = (embedded * mask).sum(dim=1, keepdim=True) / mask.sum(dim=1, keepdim=True).clamp(min=1.0)
        return SimpleNamespace(last_hidden_state=torch.tanh(embedded + 0.5 * context))


def make_unit(
    model_id: str = "fake/minilm",
    dimension: int = 8,
    seed: int = 0,
    max_sequence_length: int = 16,
    pooling: str = "mean",
    **encoder_kwargs,
) -> ModelUnit:
    """Build a ready ``ModelUnit`` backed by ``FakeTokenizer`` and ``TinyEncoder``."""
    metadata = ModelMetadata(
        model_id=model_id,
        tokenizer_id=model_id,
        max_sequence_length=max_sequence_length,
        device="cpu",
        embedding_dimension=dimension,
        pooling=pooling,
    )
    encoder = TinyEncoder(dimension=dimension, seed=seed, **encoder_kwargs)
    return ModelUnit(
        metadata=metadata,
        tokenizer=TokenizerAdapter(FakeTokenizer(), name=model_id),
        runtime=TransformerRuntime(encoder, torch.device("cpu"), dimension),
    )


def reference_vectors(unit: ModelUnit, texts: Iterable[str], normalize: bool = True) -> List[List[float]]:
    """Encode ``texts`` one at a time, synchronously, bypassing the service."""
    vectors = []
    for text in texts:
        batch = unit.tokenizer.encode_batch([text], unit.metadata.max_sequence_length)
        hidden = unit.runtime.forward(batch)
        vectors.append(postprocess(hidden, batch.attention_mask, unit.metadata.pooling, normalize)[0].tolist())
    return vectors


def model_seed(model_id: str) -> int:
    return zlib.crc32(model_id.encode("utf-8"))


class StubLoader:
    """In-memory loader returning fake units.

    Parameters
    - dimensions: model_id -> embedding dimension (default 8)
    - fail_for: model ids whose load raises ``ModelLoadError``
    - gate: when set, every load waits on this event before finishing
    """

    def __init__(
        self,
        dimensions: Optional[Dict[str, int]] = None,
        fail_for: Iterable[str] = (),
        gate: Optional[asyncio.Event] = None,
    ):
        self.dimensions = dimensions or {}
        self.fail_for = set(fail_for)
        self.gate = gate
        self.started = asyncio.Event()
        self.loaded: List[ModelUnit] = []

    async def load(self, metadata: ModelMetadata) -> ModelUnit:
        self.started.set()
        if self.gate is not None:
            await self.gate.wait()
        if metadata.model_id in self.fail_for:
            raise ModelLoadError(f"Failed to load {metadata.model_id}: repository not found")

        dimension = self.dimensions.get(metadata.model_id, metadata.embedding_dimension or 8)
        unit = make_unit(
            metadata.model_id,
            dimension=dimension,
            seed=model_seed(metadata.model_id),
            max_sequence_length=metadata.max_sequence_length,
            pooling=metadata.pooling,
        )
        unit = dataclasses.replace(
            unit, metadata=dataclasses.replace(metadata, embedding_dimension=dimension)
        )
        self.loaded.append(unit)
        return unit
