"""Configuration management for the embedding inference service.

This module centralizes environment-driven configuration. It builds on
``pydantic_settings.BaseSettings`` so configuration can be provided via
environment variables, ``.env`` files, or defaults.

Highlights
- Strongly‑typed settings with sensible defaults
- One place to discover commonly used environment variables
- A small service‑specific subclass to keep concerns clear

Usage
- Inject the config in your service entrypoint: ``config = EmbeddingConfig()``
- Or select dynamically: ``config = get_config("embedding")``
"""

from typing import Any, Dict, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


DEFAULT_EMBEDDING_MODEL = "sentence-transformers/all-MiniLM-L6-v2"

PRESET_FIELDS = (
    "model_id",
    "tokenizer_id",
    "max_sequence_length",
    "device",
    "embedding_dimension",
    "revision",
    "backend",
    "pooling",
)


def _default_presets() -> Dict[str, Dict[str, Any]]:
    return {
        "minilm": {
            "model_id": DEFAULT_EMBEDDING_MODEL,
            "max_sequence_length": 256,
        },
        "mpnet": {
            "model_id": "sentence-transformers/all-mpnet-base-v2",
            "max_sequence_length": 384,
        },
        "bge-small": {
            "model_id": "BAAI/bge-small-en-v1.5",
            "max_sequence_length": 512,
            "pooling": "cls",
        },
    }


class BaseConfig(BaseSettings):
    """Base configuration class.

    Parameters are read from the process environment with the given names.
    Defaults keep local development convenient while still being explicit.

    Notes
    - Add new shared settings here so service configs inherit them.
    - Prefer ``Field(..., validation_alias="NAME")`` over reading ``os.environ`` directly.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
        populate_by_name=True,
        protected_namespaces=(),
    )

    # Environment
    ml_env: str = Field(default="local", validation_alias="ML_ENV")

    # Logging
    ml_log_level: str = Field(default="INFO", validation_alias="ML_LOG_LEVEL")
    ml_log_format: str = Field(default="json", validation_alias="ML_LOG_FORMAT")

    # Performance
    ml_max_batch_size: int = Field(default=100, validation_alias="ML_MAX_BATCH_SIZE")
    ml_max_text_chars: int = Field(default=100_000, validation_alias="ML_MAX_TEXT_CHARS")


class EmbeddingConfig(BaseConfig):
    """Configuration for the embedding service.

    Holds the initial model selection, the named presets offered for model
    switches, and the knobs of the concurrent serving engine.
    """

    ml_embedding_host: str = Field(default="0.0.0.0", validation_alias="ML_EMBEDDING_HOST")
    ml_embedding_port: int = Field(default=8080, validation_alias="ML_EMBEDDING_PORT")

    # Initial model
    ml_embedding_model: str = Field(default=DEFAULT_EMBEDDING_MODEL, validation_alias="ML_EMBEDDING_MODEL")
    ml_embedding_tokenizer: Optional[str] = Field(default=None, validation_alias="ML_EMBEDDING_TOKENIZER")
    ml_embedding_revision: Optional[str] = Field(default=None, validation_alias="ML_EMBEDDING_REVISION")
    ml_embedding_max_length: int = Field(default=512, validation_alias="ML_EMBEDDING_MAX_LENGTH")
    ml_embedding_device: str = Field(default="cpu", validation_alias="ML_EMBEDDING_DEVICE")
    ml_embedding_backend: str = Field(default="transformers", validation_alias="ML_EMBEDDING_BACKEND")
    ml_embedding_pooling: str = Field(default="mean", validation_alias="ML_EMBEDDING_POOLING")
    ml_embedding_warmup: bool = Field(default=True, validation_alias="ML_EMBEDDING_WARMUP")

    # Named presets for switch requests (JSON mapping when set via env)
    ml_embedding_presets: Dict[str, Dict[str, Any]] = Field(
        default_factory=_default_presets,
        validation_alias="ML_EMBEDDING_PRESETS",
    )

    # Load pipeline
    ml_model_cache_dir: Optional[str] = Field(default=None, validation_alias="ML_MODEL_CACHE_DIR")
    ml_model_load_timeout: float = Field(default=300.0, validation_alias="ML_MODEL_LOAD_TIMEOUT")
    ml_model_load_attempts: int = Field(default=1, validation_alias="ML_MODEL_LOAD_ATTEMPTS")

    # Serving engine
    ml_inference_workers: int = Field(default=4, validation_alias="ML_INFERENCE_WORKERS")
    ml_read_acquire_timeout: Optional[float] = Field(default=None, validation_alias="ML_READ_ACQUIRE_TIMEOUT")
    ml_switch_policy: str = Field(default="queue", validation_alias="ML_SWITCH_POLICY")

    @field_validator("ml_embedding_presets")
    @classmethod
    def _check_presets(cls, presets: Dict[str, Dict[str, Any]]) -> Dict[str, Dict[str, Any]]:
        """Every preset names a model and only known metadata fields."""
        for name, overrides in presets.items():
            model_id = overrides.get("model_id")
            if not isinstance(model_id, str) or not model_id.strip():
                raise ValueError(f"preset {name!r} must set a non-empty model_id")
            unknown = sorted(set(overrides) - set(PRESET_FIELDS))
            if unknown:
                raise ValueError(f"preset {name!r} has unknown fields: {', '.join(unknown)}")
        return presets


def get_config(service_name: str) -> BaseConfig:
    """Get configuration for a specific service.

    Parameters
    - service_name: Literal name, currently only ``embedding``.

    Returns
    - A concrete ``BaseConfig`` subclass pre‑wired to read the right env vars.
    """
    config_map = {
        "embedding": EmbeddingConfig,
    }

    # Default to ``BaseConfig`` to avoid surprising crashes for unknown names.
    config_class = config_map.get(service_name, BaseConfig)
    return config_class()
