"""
Unit tests for the KV cache value type and its growth across decode steps.
"""

import sys
import os

import torch
import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from llama_kv.config import ModelConfig
from llama_kv.errors import ShapeError
from llama_kv.kv_cache import KVCache
from llama_kv.model import Decoder
from llama_kv.utils import set_seed


@pytest.fixture
def config():
    return ModelConfig(
        vocab_size=64, dim=32, n_layers=3, n_heads=4, n_kv_heads=2,
        hidden_dim=64, max_seq_len=32,
    )


def delta(config, seq_len, batch=1, fill=1.0):
    return torch.full((seq_len, config.n_layers, batch, config.n_kv_heads, config.head_dim), fill)


class TestKVCacheValue:

    def test_empty(self, config):
        cache = KVCache.empty(config, batch_size=2)
        assert cache.length == 0
        assert cache.n_layers == 3
        assert cache.batch_size == 2
        assert cache.keys.shape == (0, 3, 2, 2, 8)

    def test_extend_returns_new_value(self, config):
        cache = KVCache.empty(config)
        grown = cache.extend(delta(config, 4), delta(config, 4, fill=2.0))

        assert cache.length == 0
        assert grown.length == 4
        assert torch.all(grown.values == 2.0)

    def test_growth_is_sum_of_steps(self, config):
        cache = KVCache.empty(config)
        for i, n in enumerate([3, 1, 2, 1]):
            cache = cache.extend(delta(config, n, fill=float(i)), delta(config, n, fill=float(i)))
        assert cache.length == 7
        assert torch.all(cache.keys[:3] == 0.0)
        assert torch.all(cache.keys[3:4] == 1.0)
        assert torch.all(cache.keys[6:] == 3.0)

    def test_layer_slice(self, config):
        cache = KVCache.empty(config).extend(delta(config, 2), delta(config, 2))
        k, v = cache.layer(1)
        assert k.shape == (2, 1, config.n_kv_heads, config.head_dim)
        with pytest.raises(ShapeError):
            cache.layer(3)

    def test_capacity(self, config):
        cache = KVCache.empty(config, capacity=4).extend(delta(config, 3), delta(config, 3))
        with pytest.raises(ShapeError):
            cache.extend(delta(config, 2), delta(config, 2))
        assert cache.length == 3

    def test_delta_layer_mismatch(self, config):
        cache = KVCache.empty(config)
        bad = torch.zeros(1, config.n_layers - 1, 1, config.n_kv_heads, config.head_dim)
        with pytest.raises(ShapeError):
            cache.extend(bad, bad)

    def test_delta_key_value_mismatch(self, config):
        cache = KVCache.empty(config)
        with pytest.raises(ShapeError):
            cache.extend(delta(config, 1), delta(config, 2))

    def test_construction_checks(self, config):
        with pytest.raises(ShapeError):
            KVCache(keys=torch.zeros(2, 3, 1, 2, 8), values=torch.zeros(1, 3, 1, 2, 8))
        with pytest.raises(ShapeError):
            KVCache(keys=torch.zeros(2, 3, 1, 8), values=torch.zeros(2, 3, 1, 8))


class TestCacheThroughDecoder:

    def test_growth_and_history_preserved(self, config):
        """After N steps the cache holds Σ seq_len rows and old rows never change."""
        set_seed(0)
        model = Decoder(config)
        cache = model.new_cache()

        _, cache = model.step(torch.tensor([[1, 2, 3]]), cache)
        first_keys = cache.keys.clone()
        first_values = cache.values.clone()

        total = 3
        for chunk in ([4], [5, 6], [7]):
            _, cache = model.step(torch.tensor([chunk]), cache)
            total += len(chunk)
            assert cache.length == total
            assert torch.equal(cache.keys[:3], first_keys)
            assert torch.equal(cache.values[:3], first_values)

    def test_cache_matches_single_prefill(self, config):
        """Keys cached token by token equal keys from one prefill of the same tokens."""
        set_seed(0)
        model = Decoder(config)
        tokens = torch.tensor([[9, 8, 7, 6]])

        _, whole = model.step(tokens, model.new_cache())

        cache = model.new_cache()
        for i in range(4):
            _, cache = model.step(tokens[:, i:i + 1], cache)

        assert torch.allclose(cache.keys, whole.keys, atol=1e-5)
        assert torch.allclose(cache.values, whole.values, atol=1e-5)


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
