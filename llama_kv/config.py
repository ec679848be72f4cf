"""
Configuration for the LLaMA inference core.

This module is the SINGLE SOURCE OF TRUTH for all hyperparameters. They are
fixed for the model's lifetime: once a Decoder is built from a ModelConfig,
nothing on the forward path reads anything else.

Besides the architecture itself, the config selects the two execution
strategies that have interchangeable implementations:

  attention_impl:
    "reference" — explicit concat → repeat kv heads → softmax(QKᵀ/√d + mask)·V
    "fused"     — flash-decoding style: partial softmax over the cache and
                  over the new tokens, merged without concatenating them

  rope_impl:
    "decomposed" — rotate interleaved (re, im) pairs against a (seq, head_dim/2) table
    "fused"      — one expression against a (seq, head_dim) table

Both members of each pair honour the same input/output contract, so they
can be swapped (and compared) without touching any other code.
"""

from dataclasses import dataclass, asdict
from typing import Optional
import json
import os

from llama_kv.errors import ConfigError


ATTENTION_IMPLS = ("reference", "fused")
ROPE_IMPLS = ("decomposed", "fused")


@dataclass
class ModelConfig:
    """
    Architecture hyperparameters for the decoder.

    Defaults describe a small LLaMA-style model (~15M parameters). Real
    checkpoints override every size field.

    PER-LAYER WEIGHTS:
    ─────────────────────────────────────────────
      attn_q      (n_heads*head_dim, dim)
      attn_k      (n_kv_heads*head_dim, dim)
      attn_v      (n_kv_heads*head_dim, dim)
      attn_output (dim, n_heads*head_dim)
      ffn_gate    (hidden_dim, dim)
      ffn_up      (hidden_dim, dim)
      ffn_down    (dim, hidden_dim)
      attn_norm   (dim,)
      ffn_norm    (dim,)
    GLOBAL:
      token_embd  (vocab_size, dim)
      output_norm (dim,)
      output      (vocab_size, dim)
    """

    # ── Vocabulary ──────────────────────────────────────────────────────────
    vocab_size: int = 4096

    # ── Model Dimensions ───────────────────────────────────────────────────
    # Width of the residual stream.
    dim: int = 384

    # ── Depth ──────────────────────────────────────────────────────────────
    n_layers: int = 8

    # ── Attention Heads ────────────────────────────────────────────────────
    # n_heads query heads share n_kv_heads key/value heads (GQA).
    #   n_kv_heads == n_heads: standard MHA
    #   n_kv_heads == 1:       MQA
    n_heads: int = 6
    n_kv_heads: int = 2

    # Per-head width. None means dim // n_heads. When given explicitly it
    # must still satisfy head_dim * n_heads == dim.
    head_dim_override: Optional[int] = None

    # ── Sequence Length ────────────────────────────────────────────────────
    # Maximum number of positions a generation session may reach. The rotary
    # table is precomputed for twice this many positions.
    max_seq_len: int = 512

    # ── Feed-Forward Network ───────────────────────────────────────────────
    # SwiGLU intermediate width, ≈ (8/3) × dim rounded for the hardware.
    hidden_dim: int = 1024

    # ── Normalization ──────────────────────────────────────────────────────
    # Added inside the square root of RMSNorm; guards all-zero rows.
    norm_eps: float = 1e-5

    # ── Positional Encoding ────────────────────────────────────────────────
    # RoPE base angle θ. 10000.0 is LLaMA 1/2; LLaMA 3 uses 500000.0.
    rope_theta: float = 10000.0

    # ── Weight Tying ───────────────────────────────────────────────────────
    # Share the embedding table with the output projection. When True the
    # weight source may omit "output"; if present it must equal "token_embd".
    weight_tying: bool = False

    # ── Execution Strategies ───────────────────────────────────────────────
    attention_impl: str = "reference"
    rope_impl: str = "decomposed"

    @property
    def head_dim(self) -> int:
        """Dimension of each attention head."""
        if self.head_dim_override is not None:
            return self.head_dim_override
        if self.n_heads <= 0 or self.dim % self.n_heads != 0:
            raise ConfigError(
                f"dim ({self.dim}) must be divisible by n_heads ({self.n_heads})"
            )
        return self.dim // self.n_heads

    @property
    def n_kv_groups(self) -> int:
        """Number of query heads served by each KV head."""
        if self.n_kv_heads <= 0 or self.n_heads % self.n_kv_heads != 0:
            raise ConfigError(
                f"n_heads ({self.n_heads}) must be divisible by "
                f"n_kv_heads ({self.n_kv_heads})"
            )
        return self.n_heads // self.n_kv_heads

    @property
    def rope_extent(self) -> int:
        """Number of positions covered by the precomputed rotary table."""
        return 2 * self.max_seq_len

    def validate(self) -> None:
        """
        Validate configuration constraints.

        Called before model creation so that a bad config fails with a
        readable ConfigError instead of a shape mismatch deep in the model.
        """
        for name in ("vocab_size", "dim", "n_layers", "n_heads", "n_kv_heads",
                     "max_seq_len", "hidden_dim"):
            if getattr(self, name) <= 0:
                raise ConfigError(f"{name} must be positive, got {getattr(self, name)}")
        if self.n_kv_heads > self.n_heads:
            raise ConfigError(
                f"n_kv_heads ({self.n_kv_heads}) cannot exceed n_heads ({self.n_heads})"
            )
        if self.n_heads % self.n_kv_heads != 0:
            raise ConfigError(
                f"n_heads ({self.n_heads}) must be divisible by n_kv_heads ({self.n_kv_heads})"
            )
        head_dim = self.head_dim
        if head_dim <= 0 or head_dim * self.n_heads != self.dim:
            raise ConfigError(
                f"head_dim ({head_dim}) * n_heads ({self.n_heads}) must equal dim ({self.dim})"
            )
        if head_dim % 2 != 0:
            raise ConfigError(
                f"head_dim ({head_dim}) must be even for RoPE rotation pairs"
            )
        if self.norm_eps <= 0:
            raise ConfigError(f"norm_eps must be positive, got {self.norm_eps}")
        if self.rope_theta <= 0:
            raise ConfigError(f"rope_theta must be positive, got {self.rope_theta}")
        if self.attention_impl not in ATTENTION_IMPLS:
            raise ConfigError(
                f"Unknown attention_impl '{self.attention_impl}'. "
                f"Choose from: {list(ATTENTION_IMPLS)}"
            )
        if self.rope_impl not in ROPE_IMPLS:
            raise ConfigError(
                f"Unknown rope_impl '{self.rope_impl}'. Choose from: {list(ROPE_IMPLS)}"
            )

    def to_dict(self) -> dict:
        """Convert to dictionary for serialization."""
        return asdict(self)

    @classmethod
    def from_dict(cls, d: dict) -> "ModelConfig":
        """Reconstruct from dictionary."""
        return cls(**d)

    def save(self, path: str) -> None:
        """Save configuration to JSON file."""
        os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
        with open(path, "w") as f:
            json.dump(self.to_dict(), f, indent=2)

    @classmethod
    def load(cls, path: str) -> "ModelConfig":
        """Load configuration from JSON file."""
        with open(path, "r") as f:
            return cls.from_dict(json.load(f))
