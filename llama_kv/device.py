"""
Hardware abstraction for inference.

All device and dtype decisions live here so the model code stays
device-agnostic: the decoder is built on CPU in float32 and moved with
.to(device, dtype) by whoever owns it.

SUPPORTED DEVICES:
  1. CUDA: bfloat16 on Ampere+, float16 on older GPUs.
  2. MPS (Apple Silicon): float32 storage.
  3. CPU: float32.
"""

import torch

from llama_kv.errors import ConfigError


def get_device() -> torch.device:
    """
    Auto-detect the best available compute device.

    Priority order: CUDA → MPS → CPU
    """
    if torch.cuda.is_available():
        return torch.device("cuda")
    elif hasattr(torch.backends, "mps") and torch.backends.mps.is_available():
        return torch.device("mps")
    else:
        return torch.device("cpu")


def get_dtype(requested: str, device: torch.device) -> torch.dtype:
    """
    Resolve a dtype string to a torch.dtype for the given device.

    "auto" picks bfloat16 on CUDA GPUs that support it, float16 on other
    CUDA GPUs, and float32 on MPS and CPU. Reduced precision widens the gap
    between the reference and fused attention strategies; tolerances in the
    test-suite assume float32.

    Args:
        requested: One of "auto", "float16", "bfloat16", "float32".
        device: The target device.

    Returns:
        torch.dtype: The resolved dtype.
    """
    if requested == "auto":
        if device.type == "cuda":
            if torch.cuda.is_bf16_supported():
                return torch.bfloat16
            return torch.float16
        return torch.float32

    dtype_map = {
        "float16": torch.float16,
        "bfloat16": torch.bfloat16,
        "float32": torch.float32,
    }
    if requested not in dtype_map:
        raise ConfigError(
            f"Unknown dtype '{requested}'. "
            f"Choose from: {list(dtype_map.keys())} or 'auto'"
        )
    return dtype_map[requested]


def device_info(device: torch.device) -> str:
    """Human-readable description of the device, logged when a session starts."""
    lines = [f"Device: {device}"]

    if device.type == "cuda":
        props = torch.cuda.get_device_properties(device)
        lines.append(f"  GPU: {props.name}")
        lines.append(f"  VRAM: {props.total_memory / 1024**3:.1f} GB")
        lines.append(f"  Compute Capability: {props.major}.{props.minor}")
        lines.append(f"  BF16 Support: {torch.cuda.is_bf16_supported()}")
    elif device.type == "mps":
        lines.append("  Backend: Metal Performance Shaders (Apple Silicon)")
    else:
        lines.append("  Backend: CPU (no GPU acceleration)")

    lines.append(f"  PyTorch Version: {torch.__version__}")

    return "\n".join(lines)
