"""
Inference pipeline: sampling and the generation loop.

This module turns logits into tokens and drives the decode engine
autoregressively:
  1. Feed the prompt ids in chunks of n_batch (PREFILL phase)
  2. Sample the next token from the last logits
  3. Feed that single token back through the engine (DECODE phase)
  4. Repeat 2-3 until n_predict tokens, the end-of-text id, or the end of
     the context window

The core works on integer ids only; turning text into ids (and back) is the
tokenizer's job and happens outside this package.

SAMPLING PIPELINE (sample_top_k_top_p):

  1. TEMPERATURE:  logits / temperature     (temperature must be > 0)
  2. TOP-K:        keep the k largest, ties broken towards the lower id
  3. SOFTMAX:      over the k survivors, in float64, max-subtracted
  4. TOP-P:        keep the shortest prefix whose cumulative probability
                   reaches top_p, renormalize
  5. DRAW:         one categorical sample with the caller's torch.Generator

  EXAMPLE (top_k=4, top_p=0.8):
    sorted probs = [0.50, 0.25, 0.15, 0.10]
    cumsum       = [0.50, 0.75, 0.90, 1.00]
    kept         = [0.50, 0.25, 0.15] → renormalized [0.556, 0.278, 0.167]

Selection is deterministic given the logits; with a seeded generator the
whole loop is reproducible.
"""

from dataclasses import dataclass
from typing import Callable, List, Optional, Sequence, Tuple

import torch

from biogpt_rt.decode import KVCacheDecodeEngine
from biogpt_rt.errors import ContextOverflowError
from biogpt_rt.utils import Timer


@dataclass
class GenerateResult:
    """Result of one generation run with inference metrics."""
    tokens: List[int]               # sampled ids (including a final eos_id, if hit)
    prompt_tokens: int              # number of ids in the prompt
    n_past: int                     # positions held in the KV cache afterwards
    stopped_at_eos: bool            # True if the end-of-text id ended the run
    load_ms: float                  # model load time supplied by the caller (ms)
    prefill_ms: float               # time to evaluate the prompt (ms)
    sample_ms: float                # total time spent sampling (ms)
    predict_ms: float               # total time spent in decode calls (ms)
    total_ms: float                 # wall time of the run (ms)
    n_decode_calls: int             # number of engine.decode invocations
    mem_per_token: int              # scratch bytes per token measured by the engine
    temperature: float
    top_k: int
    top_p: float

    @property
    def generated_tokens(self) -> int:
        return len(self.tokens)

    @property
    def ms_per_token(self) -> float:
        """Average decode time per call (ms)."""
        if self.n_decode_calls == 0:
            return 0.0
        return self.predict_ms / self.n_decode_calls

    @property
    def decode_tok_per_sec(self) -> float:
        """Decode throughput (tokens/sec), excluding prefill."""
        decode_ms = self.predict_ms - self.prefill_ms
        n = max(0, self.n_past - self.prompt_tokens)
        if decode_ms <= 0 or n == 0:
            return 0.0
        return n / (decode_ms / 1000)

    def stats_string(self) -> str:
        """Formatted summary of inference metrics."""
        lines = [
            f"Sampling       : temp={self.temperature}, top_k={self.top_k}, top_p={self.top_p}",
            f"Prompt tokens  : {self.prompt_tokens}",
            f"Output tokens  : {self.generated_tokens}",
            f"mem per token  : {self.mem_per_token:8d} bytes",
            f"load time      : {self.load_ms:8.2f} ms",
            f"sample time    : {self.sample_ms:8.2f} ms",
            f"predict time   : {self.predict_ms:8.2f} ms / {self.ms_per_token:.2f} ms per token",
            f"total time     : {self.total_ms:8.2f} ms",
        ]
        if self.stopped_at_eos:
            lines.append("Stopped        : end of text")
        return "\n".join(lines)


# ═══════════════════════════════════════════════════════════════════════════
# SAMPLER
# ═══════════════════════════════════════════════════════════════════════════

def top_k_top_p_probs(
    logits: torch.Tensor,
    top_k: int,
    top_p: float,
    temperature: float,
) -> Tuple[torch.Tensor, torch.Tensor]:
    """
    Candidate ids and their probabilities after temperature, top-k and top-p.

    Returns:
        (ids, probs): ids as int64 in descending-probability order (ties by
        ascending id) and float64 probabilities summing to 1.

    Raises:
        ValueError: temperature <= 0.
    """
    if temperature <= 0.0:
        raise ValueError(f"temperature must be positive, got {temperature}")
    scaled = logits.detach().reshape(-1).to(torch.float64) / temperature
    n_vocab = scaled.numel()
    top_k = max(1, min(top_k, n_vocab))

    # stable sort keeps equal logits in ascending id order
    sorted_logits, sorted_ids = torch.sort(scaled, descending=True, stable=True)
    ids = sorted_ids[:top_k]
    top = sorted_logits[:top_k]

    probs = torch.exp(top - top[0])
    probs = probs / probs.sum()

    if top_p < 1.0:
        cumsum = torch.cumsum(probs, dim=0)
        # first index where the cumulative probability reaches top_p
        cut = int(torch.searchsorted(cumsum, torch.tensor([top_p], dtype=torch.float64))[0]) + 1
        cut = min(cut, top_k)
        ids = ids[:cut]
        probs = probs[:cut]
        probs = probs / probs.sum()

    return ids, probs


def sample_top_k_top_p(
    logits: torch.Tensor,
    top_k: int,
    top_p: float,
    temperature: float,
    rng: Optional[torch.Generator] = None,
) -> int:
    """
    Sample one token id from logits of shape (n_vocab,).

    Args:
        logits: Raw scores for the next position.
        top_k: Number of top candidates (clamped to [1, n_vocab]).
        top_p: Cumulative probability threshold; 1.0 disables it.
        temperature: Must be > 0.
        rng: Generator to draw from. Same seed, same logits → same id.
    """
    ids, probs = top_k_top_p_probs(logits, top_k, top_p, temperature)
    if ids.numel() == 1:
        return int(ids[0])
    choice = torch.multinomial(probs, num_samples=1, generator=rng)
    return int(ids[choice[0]])


# ═══════════════════════════════════════════════════════════════════════════
# GENERATION LOOP
# ═══════════════════════════════════════════════════════════════════════════

@torch.inference_mode()
def generate(
    engine: KVCacheDecodeEngine,
    prompt_ids: Sequence[int],
    n_predict: int = 200,
    n_batch: int = 8,
    top_k: int = 40,
    top_p: float = 0.9,
    temperature: float = 0.9,
    rng: Optional[torch.Generator] = None,
    eos_id: Optional[int] = 2,
    on_tokens: Optional[Callable[[List[int]], None]] = None,
    load_ms: float = 0.0,
) -> GenerateResult:
    """
    Generate up to n_predict ids continuing `prompt_ids`.

    GENERATION ALGORITHM:
      1. Clamp n_predict to the room left in the context window
      2. PREFILL: decode the prompt in chunks of n_batch, advancing n_past
      3. Sample an id from the last logits; report it via on_tokens
      4. Stop on eos_id or when n_predict ids were sampled; otherwise decode
         the sampled id at position n_past and go back to 3

    The last sampled id is never fed back through the engine, so the cache
    never needs more than n_positions slots.

    Args:
        engine: Decode engine over a loaded model. Its cache is overwritten
            from position 0.
        prompt_ids: Non-empty prompt, already tokenized.
        n_batch: Prompt ids per decode call during prefill.
        eos_id: End-of-text id; None disables the early stop.
        on_tokens: Called with each prompt chunk and each sampled id, in order.
        load_ms: Model load time to include in the report.

    Returns:
        GenerateResult with the sampled ids and timings.
    """
    prompt = list(prompt_ids)
    if not prompt:
        raise ValueError("prompt must contain at least one token")
    if n_batch <= 0:
        raise ValueError(f"n_batch must be positive, got {n_batch}")
    n_ctx = engine.n_ctx
    if len(prompt) > n_ctx:
        raise ContextOverflowError(0, len(prompt), n_ctx)
    n_predict = max(0, min(n_predict, n_ctx - len(prompt)))

    run_timer = Timer("total")
    sample_timer = Timer("sample")
    predict_timer = Timer("predict")
    n_calls = 0
    n_past = 0

    with run_timer:
        # ── PREFILL ───────────────────────────────────────────────────────
        for start in range(0, len(prompt), n_batch):
            chunk = prompt[start:start + n_batch]
            with predict_timer:
                logits = engine.decode(chunk, n_past)
            n_calls += 1
            n_past += len(chunk)
            if on_tokens is not None:
                on_tokens(chunk)
        prefill_ms = predict_timer.elapsed_ms

        # ── DECODE ────────────────────────────────────────────────────────
        generated: List[int] = []
        stopped_at_eos = False
        for step in range(n_predict):
            with sample_timer:
                next_id = sample_top_k_top_p(logits, top_k, top_p, temperature, rng)
            generated.append(next_id)
            if on_tokens is not None:
                on_tokens([next_id])

            if eos_id is not None and next_id == eos_id:
                stopped_at_eos = True
                break
            if step == n_predict - 1:
                break

            with predict_timer:
                logits = engine.decode([next_id], n_past)
            n_calls += 1
            n_past += 1

    return GenerateResult(
        tokens=generated,
        prompt_tokens=len(prompt),
        n_past=n_past,
        stopped_at_eos=stopped_at_eos,
        load_ms=load_ms,
        prefill_ms=prefill_ms,
        sample_ms=sample_timer.elapsed_ms,
        predict_ms=predict_timer.elapsed_ms,
        total_ms=run_timer.elapsed_ms + load_ms,
        n_decode_calls=n_calls,
        mem_per_token=engine.mem_per_token,
        temperature=temperature,
        top_k=top_k,
        top_p=top_p,
    )
