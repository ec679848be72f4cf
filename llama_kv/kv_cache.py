"""
Key/value cache for incremental decoding.

WHY A CACHE:
  Without one, every generated token re-runs attention projections for the
  whole prefix (O(N²) total work for N tokens). With one, each step only
  projects its new tokens and attends against the stored keys/values.

LAYOUT:
  keys, values: (length, n_layers, batch, n_kv_heads, head_dim)

  Position is the leading axis so that growing the cache is a single
  concatenation, and slicing one layer (cache[:, i]) yields exactly the
  (length, batch, n_kv_heads, head_dim) tensor attention consumes.

VALUE SEMANTICS:
  A KVCache is immutable. extend() and replace() return a new instance and
  leave the old one untouched, so a step that fails midway cannot corrupt
  the session's history, and two holders of the same value never see each
  other's updates. One session owns one growing cache; caches are never
  shared between sequences.
"""

from dataclasses import dataclass
from typing import Optional, Tuple

import torch

from llama_kv.errors import ShapeError


@dataclass(frozen=True)
class KVCache:
    keys: torch.Tensor
    values: torch.Tensor
    capacity: Optional[int] = None

    def __post_init__(self):
        if self.keys.shape != self.values.shape:
            raise ShapeError(
                f"Key cache {tuple(self.keys.shape)} and value cache "
                f"{tuple(self.values.shape)} disagree"
            )
        if self.keys.dim() != 5:
            raise ShapeError(
                "Cache must be (length, n_layers, batch, n_kv_heads, head_dim), "
                f"got {tuple(self.keys.shape)}"
            )
        if self.capacity is not None and self.length > self.capacity:
            raise ShapeError(f"Cache length {self.length} exceeds capacity {self.capacity}")

    @classmethod
    def empty(
        cls,
        config,
        batch_size: int = 1,
        dtype: torch.dtype = torch.float32,
        device: Optional[torch.device] = None,
        capacity: Optional[int] = None,
    ) -> "KVCache":
        """Zero-length cache for a new generation session."""
        shape = (0, config.n_layers, batch_size, config.n_kv_heads, config.head_dim)
        return cls(
            keys=torch.empty(shape, dtype=dtype, device=device),
            values=torch.empty(shape, dtype=dtype, device=device),
            capacity=capacity,
        )

    @property
    def length(self) -> int:
        """Number of cached positions; also the position of the next token."""
        return self.keys.size(0)

    @property
    def n_layers(self) -> int:
        return self.keys.size(1)

    @property
    def batch_size(self) -> int:
        return self.keys.size(2)

    def layer(self, i: int) -> Tuple[torch.Tensor, torch.Tensor]:
        """(keys, values) of layer i, each (length, batch, n_kv_heads, head_dim)."""
        if not 0 <= i < self.n_layers:
            raise ShapeError(f"Layer {i} out of range for a {self.n_layers}-layer cache")
        return self.keys[:, i], self.values[:, i]

    def extend(self, k_delta: torch.Tensor, v_delta: torch.Tensor) -> "KVCache":
        """
        Append one step's deltas.

        Args:
            k_delta, v_delta: (seq_len, n_layers, batch, n_kv_heads, head_dim)

        Returns:
            A new KVCache of length self.length + seq_len.
        """
        if k_delta.shape != v_delta.shape:
            raise ShapeError(
                f"Key delta {tuple(k_delta.shape)} and value delta "
                f"{tuple(v_delta.shape)} disagree"
            )
        if k_delta.dim() != 5 or k_delta.shape[1:] != self.keys.shape[1:]:
            raise ShapeError(
                f"Delta {tuple(k_delta.shape)} does not fit cache rows "
                f"{tuple(self.keys.shape[1:])}"
            )
        if self.capacity is not None and self.length + k_delta.size(0) > self.capacity:
            raise ShapeError(
                f"Appending {k_delta.size(0)} positions to a cache of length "
                f"{self.length} exceeds capacity {self.capacity}"
            )
        return KVCache(
            keys=torch.cat([self.keys, k_delta.to(self.keys.dtype)], dim=0),
            values=torch.cat([self.values, v_delta.to(self.values.dtype)], dim=0),
            capacity=self.capacity,
        )

    def replace(self, keys: torch.Tensor, values: torch.Tensor) -> "KVCache":
        """New cache holding already-concatenated tensors (same capacity)."""
        if keys.shape[1:] != self.keys.shape[1:] or keys.size(0) < self.length:
            raise ShapeError(
                f"Replacement cache {tuple(keys.shape)} cannot follow {tuple(self.keys.shape)}"
            )
        return KVCache(keys=keys, values=values, capacity=self.capacity)
