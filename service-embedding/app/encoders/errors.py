"""Error kinds raised by the inference core.

Every error carries a stable ``kind`` string that the API layer reports to
clients. Request-scoped errors never affect the active model.
"""


class InferenceError(Exception):
    """Base class for all inference core errors."""

    kind = "InferenceError"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class InvalidInputError(InferenceError):
    """Request rejected before touching the model (empty batch, limits)."""

    kind = "InvalidInput"


class TokenizationError(InferenceError):
    """The tokenizer could not turn the texts into a token batch."""

    kind = "TokenizationFailure"


class EncoderRuntimeError(InferenceError):
    """Forward pass or post-processing failed (shape, device, memory)."""

    kind = "RuntimeFailure"


class ModelLoadError(InferenceError):
    """Model or tokenizer could not be fetched, parsed, or warmed up."""

    kind = "LoadFailure"


class ConcurrencyTimeoutError(InferenceError):
    """Access to the active model was not granted within the bounded wait."""

    kind = "ConcurrencyTimeout"


class SwitchInProgressError(InferenceError):
    """A switch was requested while another one is in flight (reject policy)."""

    kind = "SwitchInProgress"


class ModelNotLoadedError(InferenceError):
    """No model is active, either before startup or after shutdown."""

    kind = "ModelNotLoaded"
