"""
Weight encodings: the tagged union every stored weight is wrapped in.

A weight arrives from the weight source as an EncodedTensor:

    EncodedTensor(encoding="q8_0", shape=(256, 64), data=<int8>, scales=<fp16>)

The tag is resolved to a Codec when the EncodedTensor is constructed, so an
unknown tag fails immediately with UnsupportedEncodingError (at build time,
while weights are being read). After loading, the model only ever sees
plain float tensors; the forward path never branches on encoding identity.

SUPPORTED ENCODINGS:
  f32   — float32, stored as is
  f16   — float16
  bf16  — bfloat16
  q8_0  — blocks of 32 values along the last dimension, each block stored as
          int8 codes plus one fp16 scale: x ≈ q * scale, scale = amax / 127.
          The last dimension is zero-padded up to a multiple of the block.
"""

from dataclasses import dataclass, field
from typing import Callable, Dict, Optional, Tuple
import math

import torch
import torch.nn.functional as F

from llama_kv.errors import UnsupportedEncodingError


Q8_BLOCK = 32


@dataclass(frozen=True)
class Codec:
    """Encode/decode pair for one encoding tag."""
    name: str
    encode: Callable[[torch.Tensor], Tuple[torch.Tensor, Optional[torch.Tensor]]]
    decode: Callable[["EncodedTensor"], torch.Tensor]


@dataclass(frozen=True)
class EncodedTensor:
    """
    A weight as stored: encoding tag, logical shape, raw payload.

    The codec is looked up from `encoding` in __post_init__ and kept on the
    instance; dequantize() just calls it.
    """
    encoding: str
    shape: Tuple[int, ...]
    data: torch.Tensor
    scales: Optional[torch.Tensor] = None
    codec: Codec = field(init=False, repr=False, compare=False)

    def __post_init__(self):
        object.__setattr__(self, "shape", tuple(int(s) for s in self.shape))
        object.__setattr__(self, "codec", resolve_codec(self.encoding))

    def dequantize(self) -> torch.Tensor:
        """Decode to a float32 tensor of the logical shape."""
        return self.codec.decode(self)


# ═══════════════════════════════════════════════════════════════════════════
# FLOAT ENCODINGS
# ═══════════════════════════════════════════════════════════════════════════

def _float_codec(name: str, dtype: torch.dtype) -> Codec:
    def encode(x: torch.Tensor):
        return x.detach().to(dtype).contiguous(), None

    def decode(t: EncodedTensor) -> torch.Tensor:
        return t.data.to(torch.float32).reshape(t.shape)

    return Codec(name=name, encode=encode, decode=decode)


# ═══════════════════════════════════════════════════════════════════════════
# Q8_0 BLOCK QUANTIZATION
# ═══════════════════════════════════════════════════════════════════════════

def _q8_padded_dim(dim: int) -> int:
    return int(math.ceil(dim / Q8_BLOCK) * Q8_BLOCK)


def quantize_q8_0(x: torch.Tensor) -> Tuple[torch.Tensor, torch.Tensor]:
    """
    x: (..., dim) float
    returns (q int8 (..., pad_dim), scale fp16 (..., n_blocks))
    """
    dim = x.size(-1)
    pad_dim = _q8_padded_dim(dim)
    x = x.detach().to(torch.float32)
    if pad_dim != dim:
        x = F.pad(x, (0, pad_dim - dim), value=0.0)

    orig = x.shape[:-1]
    n_blocks = pad_dim // Q8_BLOCK
    blocks = x.reshape(-1, n_blocks, Q8_BLOCK)
    amax = blocks.abs().amax(dim=-1)
    # Round against the stored fp16 scale; the smallest normal fp16 keeps it nonzero.
    scale = (amax / 127.0).clamp(min=torch.finfo(torch.float16).tiny).to(torch.float16)
    q = torch.round(blocks / scale.float().unsqueeze(-1)).clamp(-127, 127).to(torch.int8)
    return q.reshape(*orig, pad_dim), scale.reshape(*orig, n_blocks)


def dequantize_q8_0(t: EncodedTensor) -> torch.Tensor:
    if t.scales is None:
        raise UnsupportedEncodingError("q8_0 tensor is missing its block scales")
    dim = t.shape[-1]
    pad_dim = _q8_padded_dim(dim)
    n_blocks = pad_dim // Q8_BLOCK
    if t.data.size(-1) != pad_dim or t.scales.size(-1) != n_blocks:
        raise UnsupportedEncodingError(
            f"q8_0 payload {tuple(t.data.shape)} / scales {tuple(t.scales.shape)} "
            f"do not match logical shape {t.shape}"
        )
    q = t.data.reshape(-1, n_blocks, Q8_BLOCK).to(torch.float32)
    s = t.scales.reshape(-1, n_blocks).to(torch.float32).unsqueeze(-1)
    x = (q * s).reshape(*t.shape[:-1], pad_dim)[..., :dim]
    return x.contiguous()


CODECS: Dict[str, Codec] = {
    "f32": _float_codec("f32", torch.float32),
    "f16": _float_codec("f16", torch.float16),
    "bf16": _float_codec("bf16", torch.bfloat16),
    "q8_0": Codec(name="q8_0", encode=quantize_q8_0, decode=dequantize_q8_0),
}


def resolve_codec(encoding: str) -> Codec:
    """Map an encoding tag to its codec, or raise UnsupportedEncodingError."""
    try:
        return CODECS[encoding]
    except KeyError:
        raise UnsupportedEncodingError(
            f"Unsupported weight encoding '{encoding}'. "
            f"Known encodings: {sorted(CODECS)}"
        ) from None


def encode(x: torch.Tensor, encoding: str = "f32") -> EncodedTensor:
    """Wrap a float tensor in the given encoding."""
    codec = resolve_codec(encoding)
    data, scales = codec.encode(x)
    return EncodedTensor(encoding=encoding, shape=tuple(x.shape), data=data, scales=scales)
