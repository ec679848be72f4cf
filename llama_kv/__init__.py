"""
llama-kv: incremental inference core for LLaMA-style decoder models in PyTorch.

Given token ids and the key/value cache of everything processed so far, the
Decoder computes next-token logits and returns the extended cache.

Key modules:
  - config:    ModelConfig (hyperparameters + strategy selection)
  - model:     RMSNorm, RoPE, causal mask, GQA, SwiGLU, Attention, Decoder
  - kv_cache:  KVCache value type (append-only, replaced each step)
  - quant:     Weight encodings (f32 / f16 / bf16 / q8_0)
  - weights:   Named-tensor weight source and loading
  - generate:  GenerationSession and sampling
  - device:    Hardware abstraction (CUDA/MPS/CPU)
  - utils:     Seeding, parameter counting, session logger
  - errors:    Error taxonomy
"""

from llama_kv.config import ModelConfig
from llama_kv.errors import (
    ConfigError,
    LlamaKVError,
    MissingWeightError,
    ShapeError,
    UnsupportedEncodingError,
)
from llama_kv.kv_cache import KVCache
from llama_kv.model import Decoder
from llama_kv.generate import GenerationSession

__version__ = "0.1.0"
