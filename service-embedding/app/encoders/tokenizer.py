"""Tokenizer adapter turning raw texts into model-ready token batches."""

import threading
from dataclasses import dataclass
from typing import Any, Optional, Sequence

import structlog
import torch
from transformers import AutoTokenizer

from .errors import TokenizationError

logger = structlog.get_logger("embedding_service.tokenizer")

# HF tokenizers report this sentinel (int(1e30)) when no length limit is configured
_UNBOUNDED_LENGTH = 1_000_000


@dataclass(frozen=True)
class TokenBatch:
    """Right-padded token tensors for one batch of texts.

    ``attention_mask`` is 1 for real tokens and 0 for padding.
    """

    input_ids: torch.Tensor
    attention_mask: torch.Tensor
    token_type_ids: Optional[torch.Tensor] = None

    @property
    def size(self) -> int:
        return int(self.input_ids.shape[0])

    @property
    def width(self) -> int:
        return int(self.input_ids.shape[1])


class TokenizerAdapter:
    """Wraps a HuggingFace tokenizer behind a deterministic batch interface.

    Fast tokenizers rewrite their truncation and padding state on every call,
    so calls into the wrapped tokenizer are serialized per adapter.
    """

    def __init__(self, tokenizer: Any, name: str = ""):
        self._tokenizer = tokenizer
        self.name = name or getattr(tokenizer, "name_or_path", "")
        self._lock = threading.Lock()

        # Long inputs lose their tail, never their start
        if getattr(tokenizer, "truncation_side", "right") != "right":
            tokenizer.truncation_side = "right"

        pad_id = getattr(tokenizer, "pad_token_id", None)
        self.pad_token_id: int = pad_id if pad_id is not None else 0

        limit = getattr(tokenizer, "model_max_length", None)
        self.model_max_length: Optional[int] = (
            int(limit) if limit is not None and limit < _UNBOUNDED_LENGTH else None
        )

    @classmethod
    def from_pretrained(
        cls,
        tokenizer_id: str,
        revision: Optional[str] = None,
        cache_dir: Optional[str] = None,
    ) -> "TokenizerAdapter":
        """Load a fast tokenizer from the HuggingFace Hub or a local path."""
        logger.info("Loading tokenizer", tokenizer_id=tokenizer_id, revision=revision)
        tokenizer = AutoTokenizer.from_pretrained(
            tokenizer_id,
            revision=revision,
            cache_dir=cache_dir,
            use_fast=True,
        )
        return cls(tokenizer, name=tokenizer_id)

    def effective_max_length(self, max_len: int) -> int:
        """Cap the requested length by the tokenizer's own limit."""
        if self.model_max_length is not None:
            return min(max_len, self.model_max_length)
        return max_len

    def encode_batch(self, texts: Sequence[str], max_len: int) -> TokenBatch:
        """Tokenize, truncate and pad ``texts`` into a single batch.

        Sequences longer than ``max_len`` are cut from the tail with special
        tokens preserved. An empty string yields only the special tokens.
        """
        if max_len <= 0:
            raise TokenizationError(f"max_len must be positive, got {max_len}")

        length = self.effective_max_length(max_len)
        try:
            with self._lock:
                encoded = self._tokenizer(
                    list(texts),
                    add_special_tokens=True,
                    truncation=True,
                    max_length=length,
                    padding=False,
                )
        except Exception as exc:
            raise TokenizationError(f"Tokenization failed: {exc}") from exc

        sequences = encoded["input_ids"]
        type_sequences = encoded.get("token_type_ids")
        if len(sequences) != len(texts):
            raise TokenizationError(
                f"Tokenizer returned {len(sequences)} sequences for {len(texts)} texts"
            )

        # At least one column, so a batch of texts with no tokens still has a shape
        width = max([len(seq) for seq in sequences] + [1])
        input_ids = torch.full((len(sequences), width), self.pad_token_id, dtype=torch.long)
        attention_mask = torch.zeros((len(sequences), width), dtype=torch.long)
        token_type_ids = (
            torch.zeros((len(sequences), width), dtype=torch.long)
            if type_sequences is not None else None
        )

        for row, seq in enumerate(sequences):
            if not seq:
                continue
            input_ids[row, :len(seq)] = torch.tensor(seq, dtype=torch.long)
            attention_mask[row, :len(seq)] = 1
            if token_type_ids is not None:
                token_type_ids[row, :len(seq)] = torch.tensor(type_sequences[row], dtype=torch.long)

        return TokenBatch(
            input_ids=input_ids,
            attention_mask=attention_mask,
            token_type_ids=token_type_ids,
        )
