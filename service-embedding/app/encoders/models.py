"""Value objects shared by the inference core.

``ModelMetadata`` describes a model, ``ModelUnit`` bundles a loaded tokenizer
and runtime with their metadata, and ``Embedding`` is the result handed back to
callers. All of them are immutable once built.
"""

from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Tuple

import structlog

from .runtime import EncoderRuntime
from .tokenizer import TokenizerAdapter

logger = structlog.get_logger("embedding_service.models")

POOLING_STRATEGIES = ("mean", "cls", "max")
BACKENDS = ("transformers", "sentence-transformers")


@dataclass(frozen=True)
class ModelMetadata:
    """Identity and serving parameters of one model.

    ``embedding_dimension`` may be omitted on a switch request; the loader
    fills it in from the model config.
    """

    model_id: str
    tokenizer_id: str
    max_sequence_length: int = 512
    device: str = "cpu"
    embedding_dimension: Optional[int] = None
    revision: Optional[str] = None
    backend: str = "transformers"
    pooling: str = "mean"

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ModelMetadata":
        """Build metadata from a plain mapping.

        ``tokenizer_id`` defaults to ``model_id``; unknown keys are ignored.
        """
        known = {name for name in cls.__dataclass_fields__}
        values = {key: value for key, value in data.items() if key in known and value is not None}
        values.setdefault("tokenizer_id", values.get("model_id", ""))
        return cls(**values)

    def as_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class ModelUnit:
    """A fully loaded model: metadata, tokenizer and runtime together.

    Units are only ever created complete by the loader and are never mutated;
    ``release`` is called once no reader can reach the unit anymore.
    """

    metadata: ModelMetadata
    tokenizer: TokenizerAdapter
    runtime: EncoderRuntime

    def release(self) -> None:
        logger.info("Releasing model unit", model_id=self.metadata.model_id, device=self.metadata.device)
        self.runtime.release()


@dataclass(frozen=True)
class EncodeRequest:
    text: str
    normalize: bool = True


@dataclass(frozen=True)
class BatchEncodeRequest:
    texts: Sequence[str]
    normalize: bool = True


@dataclass(frozen=True)
class Embedding:
    """One embedding vector together with the id of the model that made it."""

    values: Tuple[float, ...]
    model_id: str = field(default="")

    @property
    def dimension(self) -> int:
        return len(self.values)

    def to_list(self) -> List[float]:
        return list(self.values)
