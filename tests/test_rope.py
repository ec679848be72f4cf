"""
Unit tests for Rotary Positional Embeddings (RoPE).

These tests verify the mathematical properties that make RoPE work:
  1. Rotation preserves vector magnitude (isometry)
  2. Rotating by θ then −θ is the identity
  3. Relative position encoding: dot products depend on distance
  4. Decomposed and fused strategies agree
  5. The table window cannot run past the precomputed extent
"""

import sys
import os

import torch
import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from llama_kv.errors import ConfigError, ShapeError
from llama_kv.model import (
    precompute_rope_frequencies,
    apply_rotary_embeddings,
    apply_rotary_embeddings_fused,
    DecomposedRope,
    FusedRope,
    RotaryEmbedding,
)


class TestRoPEFrequencies:
    """Tests for frequency precomputation."""

    def test_shape(self):
        cos, sin = precompute_rope_frequencies(64, 512)
        assert cos.shape == (512, 32)
        assert sin.shape == (512, 32)

    def test_position_zero(self):
        """At position 0, all angles are 0, so cos=1, sin=0."""
        cos, sin = precompute_rope_frequencies(64, 512)
        assert torch.allclose(cos[0], torch.ones(32), atol=1e-6)
        assert torch.allclose(sin[0], torch.zeros(32), atol=1e-6)

    def test_inverse_frequencies(self):
        """At position 1 the angle of pair i is exactly 1/θ^(2i/n)."""
        cos, sin = precompute_rope_frequencies(8, 4, theta=10000.0)
        angles = torch.atan2(sin[1], cos[1])
        expected = torch.tensor([1.0 / 10000.0 ** (2 * i / 8) for i in range(4)])
        assert torch.allclose(angles, expected, atol=1e-6)

    def test_frequencies_decrease(self):
        """Higher pair indices rotate slower."""
        cos, sin = precompute_rope_frequencies(64, 512, theta=10000.0)
        angles_at_pos1 = torch.atan2(sin[1], cos[1])
        for i in range(len(angles_at_pos1) - 1):
            assert angles_at_pos1[i] >= angles_at_pos1[i + 1] - 1e-6

    def test_different_theta(self):
        cos1, _ = precompute_rope_frequencies(64, 512, theta=10000.0)
        cos2, _ = precompute_rope_frequencies(64, 512, theta=500000.0)
        assert not torch.allclose(cos1, cos2)

    def test_even_dim_required(self):
        """head_dim must be even for RoPE."""
        with pytest.raises(ConfigError):
            precompute_rope_frequencies(63, 512)


class TestRoPEApplication:
    """Tests for applying RoPE to tensors."""

    def test_output_shape(self):
        cos, sin = precompute_rope_frequencies(64, 32)
        x = torch.randn(2, 32, 4, 64)
        out = apply_rotary_embeddings(x, cos, sin)
        assert out.shape == x.shape

    def test_magnitude_preservation(self):
        """Rotation preserves L2 norm (isometry property)."""
        cos, sin = precompute_rope_frequencies(64, 32)
        x = torch.randn(4, 32, 8, 64)

        x_rot = apply_rotary_embeddings(x, cos, sin)

        assert torch.allclose(x.norm(dim=-1), x_rot.norm(dim=-1), atol=1e-4)

    def test_identity_at_position_zero(self):
        cos, sin = precompute_rope_frequencies(64, 32)
        x = torch.randn(1, 1, 1, 64)
        x_rot = apply_rotary_embeddings(x, cos[:1], sin[:1])
        assert torch.allclose(x, x_rot, atol=1e-5)

    def test_round_trip(self):
        """Rotating by θ then by −θ returns the original pairs."""
        cos, sin = precompute_rope_frequencies(16, 64)
        x = torch.randn(2, 10, 3, 16)

        rotated = apply_rotary_embeddings(x, cos[20:30], sin[20:30])
        restored = apply_rotary_embeddings(rotated, cos[20:30], -sin[20:30])

        assert torch.allclose(restored, x, atol=1e-5)

    def test_round_trip_fused(self):
        cos, sin = precompute_rope_frequencies(16, 64)
        rope = FusedRope()
        x = torch.randn(2, 10, 3, 16)

        rotated = rope.apply(x, rope.prepare(cos[:10], sin[:10]))
        restored = rope.apply(rotated, rope.prepare(cos[:10], -sin[:10]))

        assert torch.allclose(restored, x, atol=1e-5)

    def test_pair_rotation_formula(self):
        """A single (re, im) pair follows re' = re·cos − im·sin, im' = re·sin + im·cos."""
        cos = torch.tensor([[0.6]])
        sin = torch.tensor([[0.8]])
        x = torch.tensor([2.0, 1.0]).view(1, 1, 1, 2)

        out = apply_rotary_embeddings(x, cos, sin).flatten()

        assert torch.allclose(out, torch.tensor([2.0 * 0.6 - 1.0 * 0.8, 2.0 * 0.8 + 1.0 * 0.6]))

    def test_relative_distance_invariance(self):
        """dot(R(q,m), R(k,n)) depends only on m - n."""
        cos, sin = precompute_rope_frequencies(64, 100)
        q = torch.randn(1, 1, 1, 64)
        k = torch.randn(1, 1, 1, 64)

        dots = []
        for base_pos in [0, 10, 20, 50, 80]:
            m = base_pos + 5
            n = base_pos
            q_rot = apply_rotary_embeddings(q, cos[m:m+1], sin[m:m+1])
            k_rot = apply_rotary_embeddings(k, cos[n:n+1], sin[n:n+1])
            dots.append((q_rot * k_rot).sum().item())

        for d in dots:
            assert abs(d - dots[0]) < 1e-3, f"Relative position property violated: dots = {dots}"

    def test_dtype_preservation(self):
        cos, sin = precompute_rope_frequencies(64, 32)
        x_f16 = torch.randn(1, 8, 2, 64).half()
        assert apply_rotary_embeddings(x_f16, cos[:8], sin[:8]).dtype == torch.float16
        assert apply_rotary_embeddings_fused(
            x_f16, cos[:8].repeat_interleave(2, -1), sin[:8].repeat_interleave(2, -1)
        ).dtype == torch.float16

    def test_head_dim_mismatch(self):
        cos, sin = precompute_rope_frequencies(32, 8)
        with pytest.raises(ShapeError):
            apply_rotary_embeddings(torch.randn(1, 8, 2, 64), cos, sin)


class TestRopeStrategies:
    """Decomposed and fused rotation must agree."""

    @pytest.mark.parametrize("head_dim", [4, 16, 64])
    def test_fused_matches_decomposed(self, head_dim):
        cos, sin = precompute_rope_frequencies(head_dim, 64)
        x = torch.randn(2, 12, 4, head_dim)
        window = (cos[7:19], sin[7:19])

        a = DecomposedRope()
        b = FusedRope()
        out_a = a.apply(x, a.prepare(*window))
        out_b = b.apply(x, b.prepare(*window))

        assert torch.allclose(out_a, out_b, atol=1e-5)

    def test_fused_table_is_2d(self):
        rope = RotaryEmbedding(head_dim=8, n_positions=32, impl="fused")
        cos, sin = rope.slice(3, 5)
        assert cos.shape == (5, 8)
        assert sin.shape == (5, 8)

    def test_decomposed_table_shape(self):
        rope = RotaryEmbedding(head_dim=8, n_positions=32)
        cos, sin = rope.slice(0, 5)
        assert cos.shape == (5, 4)


class TestRotaryEmbedding:

    def test_slice_offsets(self):
        rope = RotaryEmbedding(head_dim=8, n_positions=32)
        cos, sin = rope.slice(10, 4)
        assert torch.equal(cos, rope.freqs_cos[10:14])
        assert torch.equal(sin, rope.freqs_sin[10:14])

    def test_slice_to_the_end_is_allowed(self):
        rope = RotaryEmbedding(head_dim=8, n_positions=32)
        cos, _ = rope.slice(30, 2)
        assert cos.shape[0] == 2

    def test_slice_past_extent_raises(self):
        rope = RotaryEmbedding(head_dim=8, n_positions=32)
        with pytest.raises(ShapeError):
            rope.slice(30, 3)

    def test_unknown_impl(self):
        with pytest.raises(ConfigError):
            RotaryEmbedding(head_dim=8, n_positions=32, impl="complex")

    def test_table_not_in_state_dict(self):
        rope = RotaryEmbedding(head_dim=8, n_positions=32)
        assert "freqs_cos" not in rope.state_dict()

    def test_rotate_uses_strategy(self):
        rope = RotaryEmbedding(head_dim=8, n_positions=32, impl="fused")
        x = torch.randn(1, 4, 2, 8)
        cos, sin = precompute_rope_frequencies(8, 32)
        expected = apply_rotary_embeddings(x, cos[5:9], sin[5:9])
        assert torch.allclose(rope.rotate(x, rope.slice(5, 4)), expected, atol=1e-5)

    def test_module_apply_still_walks_children(self):
        """nn.Module.apply(fn) is not shadowed by the rotation method."""
        rope = RotaryEmbedding(head_dim=8, n_positions=32)
        visited = []
        rope.apply(lambda m: visited.append(m))
        assert visited == [rope]


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
