"""
Cross-cutting helpers: seeding, parameter counting, and the session logger.

Kept deliberately small: nothing here beyond PyTorch, NumPy and the
standard library.
"""

import os
import random
from datetime import datetime
from typing import Optional

import numpy as np
import torch
import torch.nn as nn


def set_seed(seed: int) -> None:
    """
    Seed Python, NumPy and PyTorch RNGs.

    Random weight initialisation and sampling both draw from torch's RNG;
    seeding makes test models and sampled continuations reproducible.
    """
    random.seed(seed)
    np.random.seed(seed)
    torch.manual_seed(seed)
    if torch.cuda.is_available():
        torch.cuda.manual_seed_all(seed)


def count_parameters(model: nn.Module) -> int:
    """Total number of (unique) parameters in a model."""
    return sum(p.numel() for p in model.parameters())


class SessionLogger:
    """
    Lightweight logger that writes to console and an optional log file.

    One line per event; a generation session logs when it starts, resets,
    and finishes a prefill or decode step.
    """

    def __init__(self, log_dir: Optional[str] = None, verbose: bool = True):
        """
        Args:
            log_dir: Directory for log files. If None, only console output.
            verbose: If False, nothing is printed to the console.
        """
        self.verbose = verbose
        self.log_file = None
        if log_dir:
            os.makedirs(log_dir, exist_ok=True)
            timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
            log_path = os.path.join(log_dir, f"session_{timestamp}.log")
            self.log_file = open(log_path, "w")
            self._write(f"Logging to: {log_path}")

    def _write(self, msg: str) -> None:
        if self.verbose:
            print(msg)
        if self.log_file:
            self.log_file.write(msg + "\n")
            self.log_file.flush()

    def log_step(self, kind: str, start_pos: int, seq_len: int) -> None:
        """
        Example output:
          prefill | pos     0 → 12 | 12 tokens
        """
        self._write(
            f"{kind:<7} | pos {start_pos:>5d} → {start_pos + seq_len} | "
            f"{seq_len} token{'s' if seq_len != 1 else ''}"
        )

    def log_info(self, msg: str) -> None:
        self._write(f"[INFO] {msg}")

    def log_warning(self, msg: str) -> None:
        self._write(f"[WARN] {msg}")

    def close(self) -> None:
        if self.log_file:
            self.log_file.close()
            self.log_file = None
