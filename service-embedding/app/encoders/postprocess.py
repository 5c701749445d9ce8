"""Pooling and normalization of raw encoder outputs."""

import torch

from .errors import EncoderRuntimeError


def pool(hidden_states: torch.Tensor, attention_mask: torch.Tensor, strategy: str = "mean") -> torch.Tensor:
    """Reduce ``(batch, seq, hidden)`` states to one vector per text.

    Padding positions (mask 0) never contribute to ``mean`` or ``max``.
    """
    if strategy == "cls":
        return hidden_states[:, 0]

    mask = attention_mask.to(hidden_states.device).unsqueeze(-1).to(hidden_states.dtype)

    if strategy == "max":
        masked = hidden_states.masked_fill(mask == 0, torch.finfo(hidden_states.dtype).min)
        pooled = masked.max(dim=1).values
        # rows without any real token stay zero rather than -inf
        has_tokens = attention_mask.to(hidden_states.device).sum(dim=1, keepdim=True) > 0
        return torch.where(has_tokens, pooled, torch.zeros_like(pooled))

    if strategy == "mean":
        summed = (hidden_states * mask).sum(dim=1)
        counts = mask.sum(dim=1).clamp(min=1e-9)
        return summed / counts

    raise EncoderRuntimeError(f"Unknown pooling strategy: {strategy}")


def normalize(vectors: torch.Tensor) -> torch.Tensor:
    """L2-normalize each row; all-zero rows are returned unchanged."""
    norms = vectors.norm(p=2, dim=1, keepdim=True)
    safe = torch.where(norms > 0, norms, torch.ones_like(norms))
    return vectors / safe


def postprocess(
    hidden_states: torch.Tensor,
    attention_mask: torch.Tensor,
    strategy: str = "mean",
    normalize_output: bool = True,
) -> torch.Tensor:
    """Pool, optionally normalize, and move the result to CPU float32."""
    try:
        with torch.inference_mode():
            vectors = pool(hidden_states, attention_mask, strategy)
            if normalize_output:
                vectors = normalize(vectors)
            return vectors.float().cpu()
    except EncoderRuntimeError:
        raise
    except Exception as exc:
        raise EncoderRuntimeError(f"Post-processing failed: {exc}") from exc
