"""
Autoregressive decoding with a persistent KV cache.

One call to `KVCacheDecodeEngine.decode(token_ids, n_past)` evaluates the
batch of N new tokens occupying positions n_past .. n_past+N-1, writes their
keys and values into the model's cache, and returns the logits that predict
the token after the LAST position.

THE KV CACHE INVARIANT:
  Feeding a sequence in one call or in several consecutive calls (advancing
  n_past by the number of tokens fed each time) yields the same final
  logits. This holds because:
    - positions are derived from n_past, not from the batch
    - every query attends to all cached keys [0, n_past + N), with a causal
      mask inside the batch so query n_past+i never sees a later token
    - the cache slice written for positions n_past .. n_past+N-1 depends
      only on those tokens and the cache below them

ATTENTION DATA FLOW (per layer, H heads of size hd = d_model / H):

  x (N, d) ──LN──► cur ──┬─ q_proj ──► q (N, d) × 1/sqrt(hd)
                         ├─ k_proj ──► cache_k[n_past : n_past+N]
                         └─ v_proj ──► cache_v[n_past : n_past+N]

  Q (H, N, hd) @ K(H, T, hd)^T ──► scores (H, N, T),  T = n_past + N
  causal mask ─► softmax ─► @ V (H, T, hd) ─► (N, H, hd) ─► merge ─► out_proj
"""

import math
from typing import List, Optional, Sequence

import torch

from biogpt_rt.config import POSITION_OFFSET
from biogpt_rt.engine import ScratchArena, ScratchExhausted, TensorEngine
from biogpt_rt.errors import BioGPTError, ContextOverflowError
from biogpt_rt.model import DecoderLayer, Model
from biogpt_rt.utils import RunLogger, default_logger


# Headroom applied whenever the scratch arena is sized from a measurement.
SCRATCH_HEADROOM = 1.1
DEFAULT_SCRATCH_BYTES = 16 * 1024 * 1024


class KVCacheDecodeEngine:
    """
    Runs the BioGPT forward pass over a Model's weights and KV cache.

    Usage:
        engine = KVCacheDecodeEngine(model, n_threads=4)
        logits = engine.decode(prompt_ids, n_past=0)
        logits = engine.decode([next_id], n_past=len(prompt_ids))

    The engine owns its scratch arena and learns the per-token memory cost
    (`mem_per_token`) on its first call; later calls pre-grow the arena to
    1.1 × mem_per_token × N before evaluating.
    """

    def __init__(
        self,
        model: Model,
        n_threads: int = 1,
        scratch_bytes: int = DEFAULT_SCRATCH_BYTES,
        logger: Optional[RunLogger] = None,
    ):
        if model.closed:
            raise BioGPTError("model has been closed")
        if model.memory_k is None:
            model.allocate_kv_cache()
        self.model = model
        self.hparams = model.hparams
        self.tensors = TensorEngine(n_threads)
        self.scratch = ScratchArena(scratch_bytes)
        self.mem_per_token = 0
        self.logger = default_logger(logger)

    @property
    def n_threads(self) -> int:
        return self.tensors.n_threads

    @property
    def n_ctx(self) -> int:
        return self.hparams.n_positions

    def reset(self) -> None:
        """Clear the KV cache so decoding can start again at n_past = 0."""
        self.model.reset_cache()

    def close(self) -> None:
        self.tensors.release()

    # ─── public entry point ──────────────────────────────────────────────

    def decode(self, token_ids: Sequence[int], n_past: int) -> torch.Tensor:
        """
        Evaluate `token_ids` at positions n_past.. and return logits (n_vocab,).

        Raises:
            ValueError: empty batch, negative n_past, or an id outside [0, n_vocab).
            ContextOverflowError: n_past + len(token_ids) > n_positions.
            ResourceError: the scratch arena could not be grown.
            BioGPTError: the model was closed.
        """
        if self.model.closed:
            raise BioGPTError("model has been closed")
        hp = self.hparams
        n_tokens = len(token_ids)
        if n_tokens == 0:
            raise ValueError("decode needs at least one token")
        if n_past < 0:
            raise ValueError(f"n_past must be non-negative, got {n_past}")
        if n_past + n_tokens > hp.n_positions:
            raise ContextOverflowError(n_past, n_tokens, hp.n_positions)
        for tok in token_ids:
            if tok < 0 or tok >= hp.n_vocab:
                raise ValueError(f"token id {tok} out of range [0, {hp.n_vocab})")

        if self.mem_per_token > 0:
            wanted = int(SCRATCH_HEADROOM * self.mem_per_token * n_tokens)
            if wanted > self.scratch.capacity_bytes:
                self.logger.log_debug(
                    f"growing scratch arena {self.scratch.capacity_bytes:,} -> {wanted:,} bytes"
                )
                self.scratch.grow(wanted)

        ids = torch.tensor(list(token_ids), dtype=torch.long)
        while True:
            self.scratch.reset()
            try:
                with self.tensors.threads(), torch.inference_mode():
                    logits = self._forward(ids, n_past)
                break
            except ScratchExhausted as e:
                # The cache writes of the aborted attempt are rewritten
                # identically on the retry.
                new_size = int(max(e.needed_bytes, self.scratch.capacity_bytes) * SCRATCH_HEADROOM * 2)
                self.logger.log_debug(
                    f"scratch arena exhausted, retrying with {new_size:,} bytes"
                )
                self.scratch.grow(new_size)

        if self.mem_per_token == 0:
            self.mem_per_token = max(1, self.scratch.peak_bytes // n_tokens)
        return logits.clone()

    # ─── forward pass ────────────────────────────────────────────────────

    def _forward(self, ids: torch.Tensor, n_past: int) -> torch.Tensor:
        hp = self.hparams
        model = self.model
        te = self.tensors
        n_tokens = ids.numel()
        d = hp.d_model

        # Embeddings: tokens scaled by sqrt(d_model) plus learned positions
        x = self.scratch.alloc(n_tokens, d)
        torch.index_select(te.weight(model.embed_tokens), 0, ids, out=x)
        x.mul_(math.sqrt(d))
        first = n_past + POSITION_OFFSET
        x.add_(te.weight(model.embed_positions)[first:first + n_tokens])

        for layer_ix, layer in enumerate(model.layers):
            mark = self.scratch.mark()
            self._attention_block(layer_ix, layer, x, n_past)
            self._ffn_block(layer, x)
            self.scratch.release(mark)

        # Only the last position is needed for next-token prediction
        last = self.scratch.alloc(1, d)
        te.layer_norm(x[-1:], te.weight(model.ln_w), te.weight(model.ln_b), out=last)
        logits = self.scratch.alloc(1, hp.n_vocab)
        torch.mm(last, te.weight(model.lm_head).t(), out=logits)
        return logits[0]

    def _attention_block(self, layer_ix: int, layer: DecoderLayer, x: torch.Tensor, n_past: int) -> None:
        hp = self.hparams
        te = self.tensors
        n_tokens, d = x.shape
        n_head, head_dim = hp.n_head, hp.head_dim
        n_total = n_past + n_tokens

        cur = self.scratch.alloc(n_tokens, d)
        te.layer_norm(x, te.weight(layer.ln_1_w), te.weight(layer.ln_1_b), out=cur)

        q = self.scratch.alloc(n_tokens, d)
        te.linear(cur, te.weight(layer.q_proj_w), te.weight(layer.q_proj_b), out=q)
        q.mul_(1.0 / math.sqrt(head_dim))

        # Keys and values for the new positions go straight into the cache
        cache_k, cache_v = self.model.layer_cache(layer_ix)
        te.linear(cur, te.weight(layer.k_proj_w), te.weight(layer.k_proj_b),
                  out=cache_k[n_past:n_total])
        te.linear(cur, te.weight(layer.v_proj_w), te.weight(layer.v_proj_b),
                  out=cache_v[n_past:n_total])

        # (T, d) → (H, T, hd)
        keys = cache_k[:n_total].view(n_total, n_head, head_dim).transpose(0, 1)
        values = cache_v[:n_total].view(n_total, n_head, head_dim).transpose(0, 1)
        queries = q.view(n_tokens, n_head, head_dim).transpose(0, 1)

        scores = self.scratch.alloc(n_head, n_tokens, n_total)
        torch.bmm(queries, keys.transpose(1, 2), out=scores)
        if n_tokens > 1:
            # query i sits at position n_past + i and may not see keys beyond it
            mask = torch.ones(n_tokens, n_total, dtype=torch.bool).triu_(n_past + 1)
            scores.masked_fill_(mask, float("-inf"))
        te.softmax_(scores)

        context = self.scratch.alloc(n_head, n_tokens, head_dim)
        torch.bmm(scores, values, out=context)

        # merge heads: (H, N, hd) → (N, H, hd) → (N, d)
        merged = self.scratch.alloc(n_tokens, d)
        merged.view(n_tokens, n_head, head_dim).copy_(context.transpose(0, 1))

        te.linear(merged, te.weight(layer.out_proj_w), te.weight(layer.out_proj_b), out=cur)
        x.add_(cur)

    def _ffn_block(self, layer: DecoderLayer, x: torch.Tensor) -> None:
        te = self.tensors
        n_tokens, d = x.shape

        cur = self.scratch.alloc(n_tokens, d)
        te.layer_norm(x, te.weight(layer.ln_2_w), te.weight(layer.ln_2_b), out=cur)

        hidden = self.scratch.alloc(n_tokens, self.hparams.d_ff)
        te.linear(cur, te.weight(layer.fc1_w), te.weight(layer.fc1_b), out=hidden)
        te.gelu_(hidden)
        te.linear(hidden, te.weight(layer.fc2_w), te.weight(layer.fc2_b), out=cur)
        x.add_(cur)


def decode_sequence(engine: KVCacheDecodeEngine, token_ids: List[int], n_batch: int, n_past: int = 0) -> torch.Tensor:
    """Feed `token_ids` in chunks of `n_batch`; return the logits after the last chunk."""
    if n_batch <= 0:
        raise ValueError(f"n_batch must be positive, got {n_batch}")
    logits = None
    for start in range(0, len(token_ids), n_batch):
        chunk = token_ids[start:start + n_batch]
        logits = engine.decode(chunk, n_past)
        n_past += len(chunk)
    if logits is None:
        raise ValueError("decode_sequence needs at least one token")
    return logits
