"""
Unit tests for ModelConfig validation and serialization, and dtype resolution.
"""

import sys
import os

import torch
import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from llama_kv.config import ModelConfig
from llama_kv.device import get_device, get_dtype, device_info
from llama_kv.errors import ConfigError, LlamaKVError


class TestModelConfig:

    def test_defaults_valid(self):
        config = ModelConfig()
        config.validate()
        assert config.head_dim == 64
        assert config.n_kv_groups == 3
        assert config.rope_extent == 2 * config.max_seq_len

    def test_explicit_head_dim(self):
        config = ModelConfig(dim=32, n_heads=4, n_kv_heads=2, head_dim_override=8)
        config.validate()
        assert config.head_dim == 8

    @pytest.mark.parametrize("overrides", [
        dict(n_heads=6, n_kv_heads=4),             # non-integer GQA ratio
        dict(n_kv_heads=8),                         # more kv heads than heads
        dict(dim=384, n_heads=6, head_dim_override=32),  # head_dim * n_heads != dim
        dict(dim=30, n_heads=10, n_kv_heads=5),     # odd head_dim
        dict(n_layers=0),
        dict(norm_eps=0.0),
        dict(rope_theta=-1.0),
        dict(attention_impl="paged"),
        dict(rope_impl="complex"),
    ])
    def test_invalid(self, overrides):
        with pytest.raises(ConfigError):
            ModelConfig(**overrides).validate()

    def test_config_error_is_value_error(self):
        with pytest.raises(ValueError):
            ModelConfig(n_heads=6, n_kv_heads=4).validate()

    def test_errors_share_root(self):
        with pytest.raises(LlamaKVError):
            ModelConfig(attention_impl="paged").validate()

    def test_save_load(self, tmp_path):
        config = ModelConfig(dim=32, n_heads=4, n_kv_heads=1, attention_impl="fused")
        path = str(tmp_path / "config.json")
        config.save(path)
        assert ModelConfig.load(path) == config


class TestDevice:

    def test_get_device(self):
        assert isinstance(get_device(), torch.device)

    def test_cpu_auto_dtype(self):
        assert get_dtype("auto", torch.device("cpu")) == torch.float32

    def test_explicit_dtype(self):
        assert get_dtype("bfloat16", torch.device("cpu")) == torch.bfloat16

    def test_unknown_dtype(self):
        with pytest.raises(ConfigError):
            get_dtype("float8", torch.device("cpu"))

    def test_device_info(self):
        info = device_info(torch.device("cpu"))
        assert "CPU" in info
        assert torch.__version__ in info


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
