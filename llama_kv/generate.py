"""
Generation session: one sequence, one growing KV cache, token sampling.

TWO-PHASE GENERATION:

  PREFILL: the whole prompt goes through the decoder in one call. The cache
  goes from length 0 to len(prompt) and we get logits for the last prompt
  position.

  DECODE: each sampled token is fed back alone. The cache supplies all
  earlier keys/values, so each step projects exactly one new position.

      step(prompt)   cache 0 → P        logits → sample t₀
      step([t₀])     cache P → P+1      logits → sample t₁
      ...

A session owns its cache exclusively. step() swaps in the decoder's new
cache value only after the call returns, so an error (e.g. the rotary
window running past the table) leaves the session at its previous
position.

SAMPLING (applied in order): temperature → top-k → top-p → multinomial.
temperature = 0 short-circuits to argmax.
"""

from typing import List, Optional, Sequence

import torch
import torch.nn.functional as F

from llama_kv.device import device_info, get_device, get_dtype
from llama_kv.errors import ShapeError
from llama_kv.kv_cache import KVCache
from llama_kv.model import Decoder
from llama_kv.utils import SessionLogger


def sample_top_p(probs: torch.Tensor, p: float) -> torch.Tensor:
    """
    Top-p (nucleus) sampling: keep the smallest prefix of the sorted
    distribution whose cumulative probability reaches p.

      probs = [0.4, 0.3, 0.15, 0.1, 0.05]   (sorted)
      p = 0.9 → keep [0.4, 0.3, 0.15, 0.1], renormalize, sample

    Args:
        probs: Probability distribution of shape (vocab_size,).
        p: Cumulative probability threshold (0.0 to 1.0).

    Returns:
        Sampled token index as a scalar tensor.
    """
    probs_sorted, sorted_indices = torch.sort(probs, descending=True)
    cumsum = torch.cumsum(probs_sorted, dim=-1)

    # Shifted by one so the token that crosses p is kept.
    mask = cumsum - probs_sorted > p
    probs_sorted[mask] = 0.0
    probs_sorted /= probs_sorted.sum()

    sampled_idx = torch.multinomial(probs_sorted, num_samples=1)
    return sorted_indices[sampled_idx].squeeze(0)


def sample_token(
    logits: torch.Tensor,
    temperature: float = 0.0,
    top_k: int = 0,
    top_p: float = 1.0,
) -> torch.Tensor:
    """
    Sample one token from last-position logits.

    Args:
        logits: Raw scores, shape (vocab_size,) or (1, vocab_size).
        temperature: 0 = greedy.
        top_k: Keep only the k largest logits (0 = disabled).
        top_p: Nucleus threshold (1.0 = disabled).

    Returns:
        Sampled token id as a scalar tensor.
    """
    logits = logits.reshape(-1).float()

    if temperature == 0.0:
        return logits.argmax()

    logits = logits / temperature

    if top_k > 0:
        top_k = min(top_k, logits.size(-1))
        kth_value = torch.topk(logits, top_k).values[-1]
        logits[logits < kth_value] = float("-inf")

    probs = F.softmax(logits, dim=-1)

    if top_p < 1.0:
        return sample_top_p(probs, top_p)
    return torch.multinomial(probs, num_samples=1).squeeze(0)


class GenerationSession:
    """
    Single-owner wrapper around one decoder and one KV cache.

    Usage:
        session = GenerationSession(decoder)
        logits = session.step(torch.tensor([[1, 2, 3]]))
        logits = session.step(torch.tensor([[4]]))
        session.position  # 4
    """

    def __init__(
        self,
        decoder: Decoder,
        batch_size: int = 1,
        logger: Optional[SessionLogger] = None,
        device: Optional[str] = None,
        dtype: Optional[str] = None,
    ):
        """
        Args:
            decoder: The model; moved in place when device or dtype is given.
            batch_size: Number of sequences stepped together.
            logger: Defaults to a silent SessionLogger.
            device: "auto" (CUDA → MPS → CPU), an explicit device string, or
                None to leave the decoder where it is.
            dtype: "auto", "float16", "bfloat16", "float32", or None.
        """
        if device is not None:
            target = get_device() if device == "auto" else torch.device(device)
            decoder.to(target)
        if dtype is not None:
            decoder.to(get_dtype(dtype, decoder.device))

        self.decoder = decoder
        self.batch_size = batch_size
        self.logger = logger or SessionLogger(verbose=False)
        self.cache: KVCache = decoder.new_cache(batch_size)
        self.logger.log_info(device_info(decoder.device))

    @property
    def position(self) -> int:
        """Number of positions processed so far (the cache length)."""
        return self.cache.length

    @property
    def remaining(self) -> int:
        return self.decoder.config.max_seq_len - self.position

    def reset(self) -> None:
        """Drop the history and start a new sequence."""
        self.cache = self.decoder.new_cache(self.batch_size)
        self.logger.log_info("session reset")

    def step(self, tokens: torch.Tensor) -> torch.Tensor:
        """
        Feed tokens (batch, seq_len) and return last-position logits (batch, vocab).
        """
        if tokens.dim() == 1:
            tokens = tokens.unsqueeze(0)
        tokens = tokens.to(self.decoder.device)
        start_pos = self.position
        logits, cache = self.decoder.step(tokens, self.cache)
        self.cache = cache
        self.logger.log_step("prefill" if start_pos == 0 else "decode", start_pos, tokens.size(1))
        return logits

    def generate(
        self,
        prompt_ids: Sequence[int],
        max_new_tokens: int = 200,
        temperature: float = 0.0,
        top_k: int = 0,
        top_p: float = 1.0,
        eos_id: Optional[int] = None,
    ) -> List[int]:
        """
        Continue the session from prompt_ids and return the generated ids.

        Stops at eos_id (included in the output), after max_new_tokens, or
        when the cache reaches the model's max_seq_len. Requires batch_size 1.
        """
        if self.batch_size != 1:
            raise ShapeError("generate() samples a single sequence; use batch_size=1")
        if len(prompt_ids) == 0:
            raise ShapeError("prompt_ids must not be empty")
        if len(prompt_ids) > self.remaining:
            raise ShapeError(
                f"Prompt of {len(prompt_ids)} tokens does not fit in the "
                f"{self.remaining} remaining positions"
            )

        tokens = torch.tensor([list(prompt_ids)], dtype=torch.long)
        logits = self.step(tokens)

        generated: List[int] = []
        for _ in range(max_new_tokens):
            next_token = int(sample_token(logits[0], temperature, top_k, top_p).item())
            generated.append(next_token)

            if eos_id is not None and next_token == eos_id:
                break
            if self.remaining <= 0:
                self.logger.log_warning(
                    f"max_seq_len {self.decoder.config.max_seq_len} reached; stopping"
                )
                break

            logits = self.step(torch.tensor([[next_token]], dtype=torch.long))

        return generated
