"""Config provider: initial model metadata and named switch presets."""

from typing import Any, Dict

from libs.common.config import EmbeddingConfig
from .models import ModelMetadata


class UnknownPresetError(KeyError):
    """Raised when a switch names a preset that is not configured."""


class ConfigProvider:
    """Derives ``ModelMetadata`` from ``EmbeddingConfig``.

    Presets inherit device, backend and pooling from the configured initial
    model unless they set their own.
    """

    def __init__(self, config: EmbeddingConfig):
        self.config = config

    def _defaults(self) -> Dict[str, Any]:
        return {
            "max_sequence_length": self.config.ml_embedding_max_length,
            "device": self.config.ml_embedding_device,
            "backend": self.config.ml_embedding_backend,
            "pooling": self.config.ml_embedding_pooling,
        }

    def initial_metadata(self) -> ModelMetadata:
        values = self._defaults()
        values.update(
            model_id=self.config.ml_embedding_model,
            tokenizer_id=self.config.ml_embedding_tokenizer or self.config.ml_embedding_model,
            revision=self.config.ml_embedding_revision,
        )
        return ModelMetadata.from_dict(values)

    def presets(self) -> Dict[str, ModelMetadata]:
        return {name: self.preset(name) for name in sorted(self.config.ml_embedding_presets)}

    def preset(self, name: str) -> ModelMetadata:
        try:
            overrides = self.config.ml_embedding_presets[name]
        except KeyError:
            raise UnknownPresetError(name) from None
        values = self._defaults()
        values.update(overrides)
        return ModelMetadata.from_dict(values)
