"""
LLaMA-style decoder inference core.

Every component the forward pass needs lives here, in bottom-up order:
  1. RMSNorm               — pre-normalization
  2. RotaryEmbedding       — RoPE table + two rotation strategies
  3. build_attention_mask  — causal bias for new tokens against cached history
  4. GroupedQueryExpansion — repeat KV heads up to the query head count
  5. FeedForward           — SwiGLU MLP
  6. Attention             — GQA self-attention, reference and fused strategies
  7. DecoderLayer          — norm → attention → residual → norm → FFN → residual
  8. Decoder               — embedding, layer stack, final norm, output head

KEY/VALUE CACHE LAYOUT:
  The decoder threads one packed cache per tensor (keys, values) through the
  layers:

      (prev_len, n_layers, batch, n_kv_heads, head_dim)

  prev_len is the only record of how far generation has progressed; there is
  no separate position counter. Each call returns a NEW cache value
  (old cache concatenated with this step's keys/values); the input cache is
  never written to. A call that raises therefore leaves the caller's cache
  exactly as it was.

INFERENCE ONLY:
  Decoder.forward runs under torch.inference_mode(). Weights are either
  randomly initialised (GPT-2 convention, useful for tests) or loaded once
  through llama_kv.weights.
"""

import math
from typing import Optional, Tuple

import torch
import torch.nn as nn
import torch.nn.functional as F

from llama_kv.config import ModelConfig
from llama_kv.errors import ConfigError, ShapeError
from llama_kv.kv_cache import KVCache


# ═══════════════════════════════════════════════════════════════════════════
# 1. RMSNORM
# ═══════════════════════════════════════════════════════════════════════════

class RMSNorm(nn.Module):
    """
    Root Mean Square Layer Normalization (Zhang & Sennrich, 2019).

      rms(x) = sqrt( mean(x²) + eps )
      RMSNorm(x) = (x / rms(x)) * weight

    No mean centering and no bias. eps keeps an all-zero row finite.
    The reduction runs in float32 regardless of the activation dtype.
    """

    def __init__(self, dim: int, eps: float = 1e-5):
        super().__init__()
        self.eps = eps
        self.weight = nn.Parameter(torch.ones(dim))

    def forward(self, x: torch.Tensor) -> torch.Tensor:
        rms_inv = torch.rsqrt(x.float().pow(2).mean(-1, keepdim=True) + self.eps)
        return (x.float() * rms_inv).type_as(x) * self.weight


# ═══════════════════════════════════════════════════════════════════════════
# 2. ROTARY POSITIONAL EMBEDDINGS
# ═══════════════════════════════════════════════════════════════════════════

def precompute_rope_frequencies(
    head_dim: int,
    n_positions: int,
    theta: float = 10000.0,
    device: Optional[torch.device] = None,
) -> Tuple[torch.Tensor, torch.Tensor]:
    """
    Precompute cos and sin tables for Rotary Positional Embeddings.

    Each head vector is split into head_dim/2 interleaved pairs
    (d₀,d₁), (d₂,d₃), ... For pair i at position m the rotation angle is

        m · θᵢ,    θᵢ = theta^(-2i/head_dim)

    Low pair indices rotate fast, high indices slowly, giving a multi-scale
    encoding. Because rotations compose, dot(R(m)q, R(n)k) depends only on
    n - m: attention scores see relative positions.

    Args:
        head_dim: Dimension of each attention head (must be even).
        n_positions: Number of positions to precompute.
        theta: Base angle.
        device: Device to create tensors on.

    Returns:
        Tuple of (freqs_cos, freqs_sin), each of shape (n_positions, head_dim // 2).
    """
    if head_dim % 2 != 0:
        raise ConfigError(f"head_dim must be even for RoPE, got {head_dim}")

    dim_indices = torch.arange(0, head_dim, 2, device=device).float()
    inv_freq = 1.0 / (theta ** (dim_indices / head_dim))

    positions = torch.arange(n_positions, device=device).float()

    # angles[m, i] = m * θᵢ
    angles = torch.outer(positions, inv_freq)

    return angles.cos(), angles.sin()


def apply_rotary_embeddings(
    x: torch.Tensor,
    freqs_cos: torch.Tensor,
    freqs_sin: torch.Tensor,
) -> torch.Tensor:
    """
    Rotate interleaved (re, im) pairs of the last dimension.

        re' = re · cos − im · sin
        im' = re · sin + im · cos

    Args:
        x: Query or key tensor of shape (batch, seq_len, n_heads, head_dim).
        freqs_cos: cos table window, shape (seq_len, head_dim // 2).
        freqs_sin: sin table window, shape (seq_len, head_dim // 2).

    Returns:
        Rotated tensor of the same shape and dtype as x.
    """
    if x.size(-1) != 2 * freqs_cos.size(-1):
        raise ShapeError(
            f"head_dim {x.size(-1)} does not match rotary table width {freqs_cos.size(-1)}"
        )
    x_pairs = x.float().reshape(*x.shape[:-1], -1, 2)
    x_re = x_pairs[..., 0]
    x_im = x_pairs[..., 1]

    # (seq, hd/2) → (1, seq, 1, hd/2) to broadcast over batch and heads
    cos = freqs_cos.unsqueeze(0).unsqueeze(2)
    sin = freqs_sin.unsqueeze(0).unsqueeze(2)

    x_re_rot = x_re * cos - x_im * sin
    x_im_rot = x_re * sin + x_im * cos

    x_rotated = torch.stack([x_re_rot, x_im_rot], dim=-1).flatten(-2)
    return x_rotated.type_as(x)


def apply_rotary_embeddings_fused(
    x: torch.Tensor,
    cos_2d: torch.Tensor,
    sin_2d: torch.Tensor,
) -> torch.Tensor:
    """
    Same rotation as apply_rotary_embeddings, written as a single
    multiply-add against a (seq_len, head_dim) table:

        x' = x · cos2d + swap(x) · sin2d,   swap(re, im) = (−im, re)

    where cos2d/sin2d repeat every angle twice so that both members of a
    pair see the same value.
    """
    if x.size(-1) != cos_2d.size(-1):
        raise ShapeError(
            f"head_dim {x.size(-1)} does not match fused rotary table width {cos_2d.size(-1)}"
        )
    xf = x.float()
    pairs = xf.reshape(*x.shape[:-1], -1, 2)
    swapped = torch.stack([-pairs[..., 1], pairs[..., 0]], dim=-1).flatten(-2)
    cos = cos_2d.unsqueeze(0).unsqueeze(2)
    sin = sin_2d.unsqueeze(0).unsqueeze(2)
    return (xf * cos + swapped * sin).type_as(x)


class DecomposedRope:
    """Element-wise rotation over the (seq, head_dim/2) table."""

    name = "decomposed"

    def prepare(self, cos: torch.Tensor, sin: torch.Tensor) -> Tuple[torch.Tensor, torch.Tensor]:
        return cos, sin

    def apply(self, x: torch.Tensor, freqs: Tuple[torch.Tensor, torch.Tensor]) -> torch.Tensor:
        return apply_rotary_embeddings(x, freqs[0], freqs[1])


class FusedRope:
    """Single-expression rotation over the table reshaped to (seq, head_dim)."""

    name = "fused"

    def prepare(self, cos: torch.Tensor, sin: torch.Tensor) -> Tuple[torch.Tensor, torch.Tensor]:
        return cos.repeat_interleave(2, dim=-1), sin.repeat_interleave(2, dim=-1)

    def apply(self, x: torch.Tensor, freqs: Tuple[torch.Tensor, torch.Tensor]) -> torch.Tensor:
        return apply_rotary_embeddings_fused(x, freqs[0], freqs[1])


ROPE_STRATEGIES = {
    "decomposed": DecomposedRope,
    "fused": FusedRope,
}


class RotaryEmbedding(nn.Module):
    """
    Owns the precomputed rotary table and the rotation strategy.

    The table covers positions [0, 2·max_seq_len) and is computed once at
    construction (registered as non-persistent buffers, so it follows the
    module across .to(device) but never appears in a state dict).

    slice() returns the window for one forward call already in the layout
    the strategy expects; rotate() applies it to q or k.
    """

    def __init__(self, head_dim: int, n_positions: int, theta: float = 10000.0,
                 impl: str = "decomposed"):
        super().__init__()
        if impl not in ROPE_STRATEGIES:
            raise ConfigError(
                f"Unknown rope_impl '{impl}'. Choose from: {list(ROPE_STRATEGIES)}"
            )
        self.head_dim = head_dim
        self.n_positions = n_positions
        self.strategy = ROPE_STRATEGIES[impl]()

        freqs_cos, freqs_sin = precompute_rope_frequencies(head_dim, n_positions, theta)
        self.register_buffer("freqs_cos", freqs_cos, persistent=False)
        self.register_buffer("freqs_sin", freqs_sin, persistent=False)

    def slice(self, start_pos: int, seq_len: int) -> Tuple[torch.Tensor, torch.Tensor]:
        """Table rows [start_pos, start_pos + seq_len) in the strategy's layout."""
        end = start_pos + seq_len
        if start_pos < 0 or end > self.n_positions:
            raise ShapeError(
                f"Rotary window [{start_pos}, {end}) exceeds the precomputed "
                f"table extent of {self.n_positions} positions"
            )
        return self.strategy.prepare(self.freqs_cos[start_pos:end], self.freqs_sin[start_pos:end])

    def rotate(self, x: torch.Tensor, freqs: Tuple[torch.Tensor, torch.Tensor]) -> torch.Tensor:
        return self.strategy.apply(x, freqs)


# ═══════════════════════════════════════════════════════════════════════════
# 3. ATTENTION MASK
# ═══════════════════════════════════════════════════════════════════════════

def build_attention_mask(
    prev_len: int,
    seq_len: int,
    dtype: torch.dtype = torch.float32,
    device: Optional[torch.device] = None,
) -> torch.Tensor:
    """
    Additive causal bias for seq_len new tokens following prev_len cached ones.

    Shape (seq_len, prev_len + seq_len). Row r is new token r, which sits at
    absolute position prev_len + r:

        columns [0, prev_len)          → 0 (all history is visible)
        column prev_len + c, c ≤ r     → 0
        column prev_len + c, c > r     → finfo(dtype).min

    The masked value is the most negative finite number rather than -inf, so
    a row that is masked everywhere still softmaxes to finite values instead
    of NaN.

    Example, prev_len=2, seq_len=3 (M = large negative):
        [[0, 0, 0, M, M],
         [0, 0, 0, 0, M],
         [0, 0, 0, 0, 0]]
    """
    neg = torch.finfo(dtype).min
    mask = torch.full((seq_len, prev_len + seq_len), neg, dtype=dtype, device=device)
    # keep entries with col - row <= prev_len
    return torch.triu(mask, diagonal=prev_len + 1)


# ═══════════════════════════════════════════════════════════════════════════
# 4. GROUPED QUERY EXPANSION
# ═══════════════════════════════════════════════════════════════════════════

class GroupedQueryExpansion:
    """
    Repeat each key/value head so the head count matches the queries.

    With n_heads=6, n_kv_heads=2 each KV head serves a contiguous group of
    3 query heads:
        query heads [0, 1, 2] ← kv head 0
        query heads [3, 4, 5] ← kv head 1
    so kv head j is repeated 3 times in place (repeat_interleave), not tiled.
    """

    def __init__(self, n_heads: int, n_kv_heads: int):
        if n_kv_heads <= 0 or n_heads % n_kv_heads != 0:
            raise ConfigError(
                f"n_heads ({n_heads}) must be a multiple of n_kv_heads ({n_kv_heads})"
            )
        self.n_heads = n_heads
        self.n_kv_heads = n_kv_heads
        self.n_rep = n_heads // n_kv_heads

    def __call__(self, x: torch.Tensor, dim: int = 1) -> torch.Tensor:
        if x.size(dim) != self.n_kv_heads:
            raise ShapeError(
                f"Expected {self.n_kv_heads} kv heads on axis {dim}, got {x.size(dim)}"
            )
        if self.n_rep == 1:
            return x
        return x.repeat_interleave(self.n_rep, dim=dim)


# ═══════════════════════════════════════════════════════════════════════════
# 5. FEED-FORWARD (SwiGLU)
# ═══════════════════════════════════════════════════════════════════════════

class FeedForward(nn.Module):
    """
    SwiGLU feed-forward network:

        FFN(x) = (SiLU(x·W_gate) ⊙ (x·W_up)) · W_down

    Three bias-free projections; the SiLU branch gates the "up" branch
    element-wise.
    """

    def __init__(self, config: ModelConfig):
        super().__init__()
        self.w_gate = nn.Linear(config.dim, config.hidden_dim, bias=False)
        self.w_up = nn.Linear(config.dim, config.hidden_dim, bias=False)
        self.w_down = nn.Linear(config.hidden_dim, config.dim, bias=False)

    def forward(self, x: torch.Tensor) -> torch.Tensor:
        return self.w_down(F.silu(self.w_gate(x)) * self.w_up(x))


# ═══════════════════════════════════════════════════════════════════════════
# 6. ATTENTION
# ═══════════════════════════════════════════════════════════════════════════

class ReferenceAttention:
    """
    Explicit masked scaled dot-product attention.

    Materializes everything: the concatenated key/value history, the
    repeated KV heads, and the full (seq, prev_len + seq) score matrix.
    Slow but easy to audit; the fused strategy is checked against it.
    """

    name = "reference"

    def __init__(self, n_heads: int, n_kv_heads: int):
        self.expand = GroupedQueryExpansion(n_heads, n_kv_heads)

    def __call__(
        self,
        q: torch.Tensor,
        k: torch.Tensor,
        v: torch.Tensor,
        cache_k: torch.Tensor,
        cache_v: torch.Tensor,
        mask: torch.Tensor,
        scale: float,
    ) -> torch.Tensor:
        """
        Args:
            q: (batch, seq, n_heads, head_dim), already rotated.
            k, v: (batch, seq, n_kv_heads, head_dim), k already rotated.
            cache_k, cache_v: (prev_len, batch, n_kv_heads, head_dim).
            mask: (seq, prev_len + seq) additive bias.
            scale: 1/√head_dim.

        Returns:
            (batch, seq, n_heads, head_dim)
        """
        # (prev_len, batch, ...) → (batch, prev_len, ...), then append new rows
        keys = torch.cat([cache_k.transpose(0, 1), k], dim=1)
        values = torch.cat([cache_v.transpose(0, 1), v], dim=1)

        q = q.transpose(1, 2)  # (batch, n_heads, seq, head_dim)
        keys = self.expand(keys.transpose(1, 2), dim=1)  # (batch, n_heads, kv_len, head_dim)
        values = self.expand(values.transpose(1, 2), dim=1)

        scores = torch.matmul(q.float(), keys.float().transpose(-2, -1)) * scale
        scores = scores + mask.float()
        probs = F.softmax(scores, dim=-1)
        output = torch.matmul(probs, values.float()).type_as(q)

        return output.transpose(1, 2)


class FusedAttention:
    """
    Flash-decoding style masked attention that never concatenates the cache.

    The key axis is split into two partitions: the cached history and the
    tokens of this step. For each partition we compute the partial softmax
    statistics

        m = max(scores),  l = Σ exp(scores − m),  o = Σ exp(scores − m) · V

    and merge them with the usual log-sum-exp rescaling:

        M = max(m₁, m₂)
        out = (o₁·e^(m₁−M) + o₂·e^(m₂−M)) / (l₁·e^(m₁−M) + l₂·e^(m₂−M))

    Grouped-query expansion happens by reshaping the queries to
    (batch, n_kv_heads, group, seq, head_dim) so each KV head broadcasts over
    its group; KV heads are never copied.

    The cache partition is always fully visible. Only the new-token block
    of the mask applies, broadcast as (1, 1, 1, seq, seq).
    """

    name = "fused"

    def __init__(self, n_heads: int, n_kv_heads: int):
        if n_kv_heads <= 0 or n_heads % n_kv_heads != 0:
            raise ConfigError(
                f"n_heads ({n_heads}) must be a multiple of n_kv_heads ({n_kv_heads})"
            )
        self.n_heads = n_heads
        self.n_kv_heads = n_kv_heads
        self.n_groups = n_heads // n_kv_heads

    @staticmethod
    def to_split_layout(cache: torch.Tensor) -> torch.Tensor:
        """(prev_len, batch, n_kv, hd) → (batch, n_kv, 1, prev_len, hd)."""
        return cache.permute(1, 2, 0, 3).unsqueeze(2)

    @staticmethod
    def _partition(q, k, v, scale, bias=None):
        scores = torch.matmul(q, k.transpose(-2, -1)) * scale
        if bias is not None:
            scores = scores + bias
        m = scores.amax(dim=-1, keepdim=True)
        p = torch.exp(scores - m)
        return m, p.sum(dim=-1, keepdim=True), torch.matmul(p, v)

    def __call__(
        self,
        q: torch.Tensor,
        k: torch.Tensor,
        v: torch.Tensor,
        cache_k: torch.Tensor,
        cache_v: torch.Tensor,
        mask: torch.Tensor,
        scale: float,
    ) -> torch.Tensor:
        batch, seq_len, n_heads, head_dim = q.shape
        prev_len = cache_k.size(0)

        # (batch, seq, n_heads, hd) → (batch, n_kv, group, seq, hd)
        qg = q.float().reshape(batch, seq_len, self.n_kv_heads, self.n_groups, head_dim)
        qg = qg.permute(0, 2, 3, 1, 4)
        # (batch, seq, n_kv, hd) → (batch, n_kv, 1, seq, hd)
        k_new = k.float().permute(0, 2, 1, 3).unsqueeze(2)
        v_new = v.float().permute(0, 2, 1, 3).unsqueeze(2)

        new_bias = mask[:, prev_len:].float().reshape(1, 1, 1, seq_len, seq_len)
        m, l, o = self._partition(qg, k_new, v_new, scale, new_bias)

        if prev_len > 0:
            k_old = self.to_split_layout(cache_k.float())
            v_old = self.to_split_layout(cache_v.float())
            m_old, l_old, o_old = self._partition(qg, k_old, v_old, scale)

            m_tot = torch.maximum(m, m_old)
            a_new = torch.exp(m - m_tot)
            a_old = torch.exp(m_old - m_tot)
            o = o * a_new + o_old * a_old
            l = l * a_new + l_old * a_old

        out = (o / l).permute(0, 3, 1, 2, 4).reshape(batch, seq_len, n_heads, head_dim)
        return out.type_as(q)


ATTENTION_STRATEGIES = {
    "reference": ReferenceAttention,
    "fused": FusedAttention,
}


class Attention(nn.Module):
    """
    Grouped-query self-attention over an externally supplied KV cache.

    The module is stateless between calls: the cache for this layer comes in
    as (cache_k, cache_v) and this step's rotated keys and values go out as
    deltas. Writing the deltas into the session cache is the caller's job.

    Data flow:
      x (batch, seq, dim)
        ├─→ wq → (batch, seq, n_heads, hd)    → RoPE ─┐
        ├─→ wk → (batch, seq, n_kv_heads, hd) → RoPE ─┼─→ strategy ─→ wo
        └─→ wv → (batch, seq, n_kv_heads, hd) ────────┘
    """

    def __init__(self, config: ModelConfig, rope: RotaryEmbedding):
        super().__init__()
        if config.attention_impl not in ATTENTION_STRATEGIES:
            raise ConfigError(
                f"Unknown attention_impl '{config.attention_impl}'. "
                f"Choose from: {list(ATTENTION_STRATEGIES)}"
            )
        if config.head_dim * config.n_heads != config.dim:
            raise ConfigError(
                f"head_dim ({config.head_dim}) * n_heads ({config.n_heads}) "
                f"must equal dim ({config.dim})"
            )

        self.n_heads = config.n_heads
        self.n_kv_heads = config.n_kv_heads
        self.head_dim = config.head_dim
        self.scale = 1.0 / math.sqrt(self.head_dim)

        self.wq = nn.Linear(config.dim, config.n_heads * config.head_dim, bias=False)
        self.wk = nn.Linear(config.dim, config.n_kv_heads * config.head_dim, bias=False)
        self.wv = nn.Linear(config.dim, config.n_kv_heads * config.head_dim, bias=False)
        self.wo = nn.Linear(config.n_heads * config.head_dim, config.dim, bias=False)

        # shared with every other layer; the decoder owns the table
        self.rope = rope
        self.strategy = ATTENTION_STRATEGIES[config.attention_impl](
            config.n_heads, config.n_kv_heads
        )

    def forward(
        self,
        x: torch.Tensor,
        freqs: Tuple[torch.Tensor, torch.Tensor],
        cache_k: torch.Tensor,
        cache_v: torch.Tensor,
        mask: Optional[torch.Tensor] = None,
    ) -> Tuple[torch.Tensor, torch.Tensor, torch.Tensor]:
        """
        Args:
            x: (batch, seq_len, dim), already normalized.
            freqs: Rotary window for positions [prev_len, prev_len + seq_len).
            cache_k, cache_v: (prev_len, batch, n_kv_heads, head_dim).
            mask: Optional (seq_len, prev_len + seq_len) bias; built here if None.

        Returns:
            (output (batch, seq_len, dim),
             k_delta (seq_len, batch, n_kv_heads, head_dim),
             v_delta (seq_len, batch, n_kv_heads, head_dim))
        """
        batch_size, seq_len, _ = x.shape
        expected = (batch_size, self.n_kv_heads, self.head_dim)
        if cache_k.shape != cache_v.shape or tuple(cache_k.shape[1:]) != expected:
            raise ShapeError(
                f"Cache tensors {tuple(cache_k.shape)} / {tuple(cache_v.shape)} do not "
                f"match (prev_len, {batch_size}, {self.n_kv_heads}, {self.head_dim})"
            )
        prev_len = cache_k.size(0)

        if mask is None:
            mask = build_attention_mask(prev_len, seq_len, device=x.device)
        elif tuple(mask.shape) != (seq_len, prev_len + seq_len):
            raise ShapeError(
                f"Mask shape {tuple(mask.shape)} != ({seq_len}, {prev_len + seq_len})"
            )

        q = self.wq(x).view(batch_size, seq_len, self.n_heads, self.head_dim)
        k = self.wk(x).view(batch_size, seq_len, self.n_kv_heads, self.head_dim)
        v = self.wv(x).view(batch_size, seq_len, self.n_kv_heads, self.head_dim)

        q = self.rope.rotate(q, freqs)
        k = self.rope.rotate(k, freqs)

        output = self.strategy(q, k, v, cache_k, cache_v, mask, self.scale)
        output = output.contiguous().view(batch_size, seq_len, -1)

        # deltas in cache layout: (seq_len, batch, n_kv_heads, head_dim)
        return self.wo(output), k.transpose(0, 1), v.transpose(0, 1)


# ═══════════════════════════════════════════════════════════════════════════
# 7. DECODER LAYER
# ═══════════════════════════════════════════════════════════════════════════

class DecoderLayer(nn.Module):
    """
    One pre-norm decoder block:

        a  = attention_norm(h)
        h1 = h  + attention(a)
        h' = h1 + feed_forward(ffn_norm(h1))

    Both residual additions are unconditional. The block holds no state
    beyond its weights.
    """

    def __init__(self, layer_id: int, config: ModelConfig, rope: RotaryEmbedding):
        super().__init__()
        self.layer_id = layer_id
        self.attention_norm = RMSNorm(config.dim, config.norm_eps)
        self.attention = Attention(config, rope)
        self.ffn_norm = RMSNorm(config.dim, config.norm_eps)
        self.feed_forward = FeedForward(config)

    def forward(
        self,
        h: torch.Tensor,
        freqs: Tuple[torch.Tensor, torch.Tensor],
        cache_k: torch.Tensor,
        cache_v: torch.Tensor,
        mask: Optional[torch.Tensor] = None,
    ) -> Tuple[torch.Tensor, torch.Tensor, torch.Tensor]:
        attn_out, k_delta, v_delta = self.attention(
            self.attention_norm(h), freqs, cache_k, cache_v, mask
        )
        h = h + attn_out
        h = h + self.feed_forward(self.ffn_norm(h))
        return h, k_delta, v_delta


# ═══════════════════════════════════════════════════════════════════════════
# 8. DECODER
# ═══════════════════════════════════════════════════════════════════════════

class Decoder(nn.Module):
    """
    Complete decoder-only language model for incremental inference.

      tokens (batch, seq_len)
        → tok_embeddings
        → n_layers × DecoderLayer (each reads its cache rows, emits deltas)
        → norm
        → output
        → logits

    There is no positional embedding table: positions enter only through
    RoPE inside attention, and the position of the first new token is the
    length of the incoming cache.
    """

    def __init__(self, config: ModelConfig):
        super().__init__()
        config.validate()
        self.config = config

        self.rope = RotaryEmbedding(
            config.head_dim, config.rope_extent, config.rope_theta, config.rope_impl
        )

        self.tok_embeddings = nn.Embedding(config.vocab_size, config.dim)
        self.layers = nn.ModuleList([
            DecoderLayer(layer_id=i, config=config, rope=self.rope)
            for i in range(config.n_layers)
        ])
        self.norm = RMSNorm(config.dim, config.norm_eps)
        self.output = nn.Linear(config.dim, config.vocab_size, bias=False)

        if config.weight_tying:
            self.output.weight = self.tok_embeddings.weight

        # Encoding tag per loaded weight name; filled in by load_weights().
        self.encodings = {}

        self.apply(self._init_weights)
        # Scale residual-branch output projections by 1/√(2·n_layers).
        scale = 1.0 / math.sqrt(2 * config.n_layers)
        for layer in self.layers:
            nn.init.normal_(layer.attention.wo.weight, mean=0.0, std=0.02 * scale)
            nn.init.normal_(layer.feed_forward.w_down.weight, mean=0.0, std=0.02 * scale)

        for p in self.parameters():
            p.requires_grad_(False)
        self.eval()

    def _init_weights(self, module: nn.Module) -> None:
        """GPT-2 / nanoGPT convention: Normal(0, 0.02) for linears and embeddings."""
        if isinstance(module, nn.Linear):
            nn.init.normal_(module.weight, mean=0.0, std=0.02)
        elif isinstance(module, nn.Embedding):
            nn.init.normal_(module.weight, mean=0.0, std=0.02)

    @classmethod
    def from_weights(cls, config: ModelConfig, source) -> "Decoder":
        """Build a decoder and load every tensor from a weight source."""
        from llama_kv.weights import load_weights

        model = cls(config)
        load_weights(model, source)
        return model

    @property
    def device(self) -> torch.device:
        return self.tok_embeddings.weight.device

    @property
    def dtype(self) -> torch.dtype:
        return self.tok_embeddings.weight.dtype

    def new_cache(self, batch_size: int = 1, capacity: Optional[int] = None) -> KVCache:
        """Empty cache for one generation session on this model's device/dtype."""
        return KVCache.empty(
            self.config,
            batch_size,
            dtype=self.dtype,
            device=self.device,
            capacity=self.config.max_seq_len if capacity is None else capacity,
        )

    def _check_inputs(self, tokens, k_cache, v_cache) -> None:
        if tokens.dim() != 2:
            raise ShapeError(f"tokens must be (batch, seq_len), got {tuple(tokens.shape)}")
        if tokens.size(1) == 0:
            raise ShapeError("tokens must contain at least one position")
        if k_cache.shape != v_cache.shape:
            raise ShapeError(
                f"Key cache {tuple(k_cache.shape)} and value cache "
                f"{tuple(v_cache.shape)} disagree"
            )
        if k_cache.dim() != 5:
            raise ShapeError(
                "Cache must be (prev_len, n_layers, batch, n_kv_heads, head_dim), "
                f"got {tuple(k_cache.shape)}"
            )
        if k_cache.size(1) != self.config.n_layers:
            raise ShapeError(
                f"Cache has {k_cache.size(1)} layers, model has {self.config.n_layers}"
            )
        if k_cache.size(2) != tokens.size(0):
            raise ShapeError(
                f"Cache batch {k_cache.size(2)} != token batch {tokens.size(0)}"
            )

    @torch.inference_mode()
    def forward(
        self,
        tokens: torch.Tensor,
        k_cache: torch.Tensor,
        v_cache: torch.Tensor,
        last_only: bool = True,
    ) -> Tuple[torch.Tensor, torch.Tensor, torch.Tensor]:
        """
        One incremental step.

        Args:
            tokens: Token ids, shape (batch, seq_len).
            k_cache, v_cache: (prev_len, n_layers, batch, n_kv_heads, head_dim).
                prev_len = 0 for the first call of a session.
            last_only: Return logits for the last position only (the usual
                case when sampling); False returns every position.

        Returns:
            (logits, k_cache_new, v_cache_new) where logits is
            (batch, vocab_size) or (batch, seq_len, vocab_size) and the new
            caches have prev_len + seq_len rows.
        """
        self._check_inputs(tokens, k_cache, v_cache)
        seq_len = tokens.size(1)
        start_pos = k_cache.size(0)

        freqs = self.rope.slice(start_pos, seq_len)
        mask = build_attention_mask(start_pos, seq_len, device=tokens.device)

        h = self.tok_embeddings(tokens)

        k_deltas, v_deltas = [], []
        for i, layer in enumerate(self.layers):
            h, k_delta, v_delta = layer(h, freqs, k_cache[:, i], v_cache[:, i], mask)
            k_deltas.append(k_delta)
            v_deltas.append(v_delta)

        h = self.norm(h)
        if last_only:
            h = h[:, -1, :]
        logits = self.output(h)

        # (seq_len, n_layers, batch, n_kv_heads, head_dim)
        k_step = torch.stack(k_deltas, dim=1).to(k_cache.dtype)
        v_step = torch.stack(v_deltas, dim=1).to(v_cache.dtype)
        if k_step.size(1) != k_cache.size(1):
            raise ShapeError(
                f"Produced {k_step.size(1)} layer deltas for a {k_cache.size(1)}-layer cache"
            )

        return logits, torch.cat([k_cache, k_step], dim=0), torch.cat([v_cache, v_step], dim=0)

    def step(self, tokens: torch.Tensor, cache: KVCache, last_only: bool = True):
        """forward() over a KVCache value; returns (logits, new KVCache)."""
        if cache.capacity is not None and cache.length + tokens.size(-1) > cache.capacity:
            raise ShapeError(
                f"Step of {tokens.size(-1)} tokens at position {cache.length} "
                f"exceeds cache capacity {cache.capacity}"
            )
        logits, keys, values = self.forward(tokens, cache.keys, cache.values, last_only)
        return logits, cache.replace(keys, values)
