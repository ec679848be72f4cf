"""
Weight source: named-tensor lookup and loading into a Decoder.

Weights are addressed by (name, optional layer index). The names follow
the GGUF convention used by llama.cpp-style model files:

    token_embd                               (vocab_size, dim)
    blk.{i}.attn_q / attn_k / attn_v         (out, dim)
    blk.{i}.attn_output                      (dim, n_heads*head_dim)
    blk.{i}.ffn_gate / ffn_up                (hidden_dim, dim)
    blk.{i}.ffn_down                         (dim, hidden_dim)
    blk.{i}.attn_norm / ffn_norm             (dim,)
    output_norm                              (dim,)
    output                                   (vocab_size, dim)

Matrices use the nn.Linear layout (out_features, in_features).

Parsing actual model files is outside this package: anything that can
answer get(name, layer) with an EncodedTensor is a weight source. The
in-memory TensorDictSource is the one implementation shipped here; it can
also be saved to / loaded from a torch file.

Loading happens once, at build time. Each tensor is looked up, its encoding
is decoded, its shape is checked against the config, and the result is
copied into the matching parameter. The forward pass only ever sees the
plain float parameters.
"""

import os
from typing import Dict, Optional, Tuple

import torch

from llama_kv.config import ModelConfig
from llama_kv.errors import ConfigError, MissingWeightError
from llama_kv.quant import EncodedTensor, encode


GLOBAL_WEIGHTS = ("token_embd", "output_norm", "output")
LAYER_WEIGHTS = (
    "attn_q", "attn_k", "attn_v", "attn_output",
    "ffn_gate", "ffn_up", "ffn_down",
    "attn_norm", "ffn_norm",
)

# weight name → attribute path under a DecoderLayer
_LAYER_PARAMS = {
    "attn_q": "attention.wq.weight",
    "attn_k": "attention.wk.weight",
    "attn_v": "attention.wv.weight",
    "attn_output": "attention.wo.weight",
    "ffn_gate": "feed_forward.w_gate.weight",
    "ffn_up": "feed_forward.w_up.weight",
    "ffn_down": "feed_forward.w_down.weight",
    "attn_norm": "attention_norm.weight",
    "ffn_norm": "ffn_norm.weight",
}

_GLOBAL_PARAMS = {
    "token_embd": "tok_embeddings.weight",
    "output_norm": "norm.weight",
    "output": "output.weight",
}


def weight_key(name: str, layer: Optional[int] = None) -> str:
    """Storage key: "blk.{layer}.{name}" for per-layer weights, else name."""
    return name if layer is None else f"blk.{layer}.{name}"


def expected_shapes(config: ModelConfig) -> Dict[str, Tuple[int, ...]]:
    """Logical shape of every weight name (per-layer names are the same for each layer)."""
    q_out = config.n_heads * config.head_dim
    kv_out = config.n_kv_heads * config.head_dim
    return {
        "token_embd": (config.vocab_size, config.dim),
        "output_norm": (config.dim,),
        "output": (config.vocab_size, config.dim),
        "attn_q": (q_out, config.dim),
        "attn_k": (kv_out, config.dim),
        "attn_v": (kv_out, config.dim),
        "attn_output": (config.dim, q_out),
        "ffn_gate": (config.hidden_dim, config.dim),
        "ffn_up": (config.hidden_dim, config.dim),
        "ffn_down": (config.dim, config.hidden_dim),
        "attn_norm": (config.dim,),
        "ffn_norm": (config.dim,),
    }


class WeightSource:
    """Anything that maps (name, layer) to an EncodedTensor."""

    def get(self, name: str, layer: Optional[int] = None) -> EncodedTensor:
        raise NotImplementedError

    def has(self, name: str, layer: Optional[int] = None) -> bool:
        try:
            self.get(name, layer)
        except MissingWeightError:
            return False
        return True


class TensorDictSource(WeightSource):
    """In-memory weight source keyed by weight_key()."""

    def __init__(self, tensors: Dict[str, EncodedTensor]):
        self.tensors = dict(tensors)

    def get(self, name: str, layer: Optional[int] = None) -> EncodedTensor:
        key = weight_key(name, layer)
        if key not in self.tensors:
            raise MissingWeightError(f"Required weight '{key}' not found in weight source")
        return self.tensors[key]

    def __len__(self) -> int:
        return len(self.tensors)

    @classmethod
    def from_decoder(cls, model, encoding: str = "f32") -> "TensorDictSource":
        """Export a decoder's parameters under their weight names."""
        tensors = {}
        for name, path in _GLOBAL_PARAMS.items():
            if name == "output" and model.config.weight_tying:
                continue
            tensors[weight_key(name)] = encode(_get_param(model, path), encoding)
        for i, layer in enumerate(model.layers):
            for name in LAYER_WEIGHTS:
                tensors[weight_key(name, i)] = encode(_get_param(layer, _LAYER_PARAMS[name]), encoding)
        return cls(tensors)

    def save(self, path: str) -> None:
        """Serialize with torch.save as plain dicts of tensors."""
        os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
        payload = {
            key: {
                "encoding": t.encoding,
                "shape": list(t.shape),
                "data": t.data,
                "scales": t.scales,
            }
            for key, t in self.tensors.items()
        }
        torch.save(payload, path)
        print(f"Weights saved: {path} ({len(payload)} tensors)")

    @classmethod
    def load(cls, path: str, map_location: str = "cpu") -> "TensorDictSource":
        payload = torch.load(path, map_location=map_location, weights_only=True)
        tensors = {
            key: EncodedTensor(
                encoding=entry["encoding"],
                shape=tuple(entry["shape"]),
                data=entry["data"],
                scales=entry["scales"],
            )
            for key, entry in payload.items()
        }
        print(f"Weights loaded: {path} ({len(tensors)} tensors)")
        return cls(tensors)


def _get_param(module, path: str) -> torch.Tensor:
    obj = module
    for attr in path.split("."):
        obj = getattr(obj, attr)
    return obj


def _copy_into(module, path: str, key: str, tensor: EncodedTensor, shape) -> None:
    if tensor.shape != tuple(shape):
        raise ConfigError(
            f"Weight '{key}' has shape {tensor.shape}, config expects {tuple(shape)}"
        )
    param = _get_param(module, path)
    with torch.no_grad():
        param.copy_(tensor.dequantize().to(dtype=param.dtype, device=param.device))


def _check_tied_output(model, source: WeightSource) -> None:
    # output.weight is tok_embeddings.weight; never write through it
    if not source.has("output"):
        return
    output = source.get("output").dequantize()
    embeddings = model.tok_embeddings.weight
    if output.shape != embeddings.shape or not torch.allclose(
        output.to(device=embeddings.device, dtype=embeddings.dtype), embeddings
    ):
        raise ConfigError(
            "weight_tying is set but the source's 'output' differs from 'token_embd'"
        )


def load_weights(model, source: WeightSource) -> Dict[str, str]:
    """
    Copy every required tensor from `source` into `model`.

    Raises MissingWeightError for an absent tensor, UnsupportedEncodingError
    for an unknown encoding tag, ConfigError for a shape that disagrees with
    the model config. Returns (and stores on model.encodings) the encoding tag
    of each loaded weight.

    With config.weight_tying the "output" tensor is optional and is never
    copied: the output projection already shares the embedding table. If it
    is present it must match "token_embd", otherwise ConfigError.
    """
    config = model.config
    shapes = expected_shapes(config)
    encodings = {}

    for name, path in _GLOBAL_PARAMS.items():
        if name == "output" and config.weight_tying:
            _check_tied_output(model, source)
            continue
        tensor = source.get(name)
        _copy_into(model, path, weight_key(name), tensor, shapes[name])
        encodings[weight_key(name)] = tensor.encoding

    for i, layer in enumerate(model.layers):
        for name in LAYER_WEIGHTS:
            key = weight_key(name, i)
            tensor = source.get(name, i)
            _copy_into(layer, _LAYER_PARAMS[name], key, tensor, shapes[name])
            encodings[key] = tensor.encoding

    model.encodings = encodings
    tags = sorted(set(encodings.values()))
    print(f"Loaded {len(encodings)} weight tensors (encodings: {', '.join(tags)})")
    return encodings
