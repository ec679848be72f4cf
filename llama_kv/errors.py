"""
Error types raised by the inference core.

Every failure surfaces synchronously to the caller; nothing is retried
internally. Build-time errors (bad hyperparameters, missing or unreadable
weights) are raised while the model is being constructed. Per-call errors
are raised before any output is produced, so the caller's cache value is
never left half-updated.

Each class also derives from the closest builtin exception so callers that
only know about ValueError / KeyError still catch them.
"""


class LlamaKVError(Exception):
    """Base class for all errors raised by llama_kv."""


class ConfigError(LlamaKVError, ValueError):
    """Invalid hyperparameter relationship (e.g. n_heads % n_kv_heads != 0)."""


class ShapeError(LlamaKVError, ValueError):
    """Runtime shape mismatch: cache layout, batch size, or rotary window."""


class MissingWeightError(LlamaKVError, KeyError):
    """A required named tensor is absent from the weight source."""

    def __str__(self) -> str:
        # KeyError repr-quotes its message; keep it readable.
        return str(self.args[0]) if self.args else ""


class UnsupportedEncodingError(LlamaKVError, ValueError):
    """A weight carries a quantization tag with no registered codec."""
