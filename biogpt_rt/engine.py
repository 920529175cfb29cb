"""
Tensor engine: the thin layer between the model code and PyTorch.

All dense math runs on CPU through torch. This module owns the two things
the decode loop needs from the engine beyond plain kernels:

  1. THREAD CONTROL
     Each decode call runs with a caller-chosen number of intra-op threads.
     `TensorEngine.threads()` sets it for the duration of the call and
     restores the previous value afterwards, so two engines with different
     settings can share a process.

  2. WEIGHT VIEWS
     Weights sit in the arena in their stored type. `TensorEngine.weight()`
     turns a bound slot into a float32 torch tensor:
       F32     zero-copy view of the arena bytes
       F16     upcast once
       Q*_*    dequantized once with the block kernels in quants.py
     Non-F32 results are cached per tensor name; the cache is dropped with
     `release()`.

SCRATCH ARENA:
  Intermediate activations of a decode call are carved out of one float32
  buffer with a bump allocator instead of letting every op allocate. The
  arena reports its high-water mark so the decoder can learn how many bytes
  one token costs, and raises ScratchExhausted when a request does not fit.
  The decoder reacts by growing the arena and re-running the call.
"""

from contextlib import contextmanager
from typing import Dict, Iterator

import torch
import torch.nn.functional as F

from biogpt_rt.errors import BioGPTError, ResourceError
from biogpt_rt.ggml_types import GGMLType
from biogpt_rt import quants


FLOAT_BYTES = 4
LAYER_NORM_EPS = 1e-5


class ScratchExhausted(BioGPTError):
    """Raised by ScratchArena.alloc when the request does not fit."""

    def __init__(self, needed_bytes: int, capacity_bytes: int):
        super().__init__(
            f"scratch arena exhausted: need {needed_bytes:,} bytes, "
            f"capacity {capacity_bytes:,}"
        )
        self.needed_bytes = needed_bytes
        self.capacity_bytes = capacity_bytes


class ScratchArena:
    """
    Bump allocator over a single float32 buffer.

        arena.reset()
        x = arena.alloc(n_tokens, d_model)      # contiguous view
        mark = arena.mark()
        ...                                     # per-layer temporaries
        arena.release(mark)                     # reuse them next layer
    """

    def __init__(self, n_bytes: int):
        self._buf = self._allocate(n_bytes)
        self._offset = 0
        self.peak = 0

    @staticmethod
    def _allocate(n_bytes: int) -> torch.Tensor:
        n_floats = max(1, (n_bytes + FLOAT_BYTES - 1) // FLOAT_BYTES)
        try:
            return torch.empty(n_floats, dtype=torch.float32)
        except RuntimeError as e:
            raise ResourceError("scratch arena", n_floats * FLOAT_BYTES) from e

    @property
    def capacity_bytes(self) -> int:
        return self._buf.numel() * FLOAT_BYTES

    @property
    def peak_bytes(self) -> int:
        return self.peak * FLOAT_BYTES

    def reset(self) -> None:
        self._offset = 0
        self.peak = 0

    def mark(self) -> int:
        return self._offset

    def release(self, mark: int) -> None:
        self._offset = mark

    def alloc(self, *shape: int) -> torch.Tensor:
        n = 1
        for d in shape:
            n *= d
        end = self._offset + n
        if end > self._buf.numel():
            raise ScratchExhausted(end * FLOAT_BYTES, self.capacity_bytes)
        view = self._buf[self._offset:end].view(*shape)
        self._offset = end
        self.peak = max(self.peak, end)
        return view

    def grow(self, n_bytes: int) -> None:
        """Replace the buffer with one of at least `n_bytes`. Contents are not kept."""
        if n_bytes <= self.capacity_bytes:
            return
        self._buf = self._allocate(n_bytes)
        self._offset = 0


class TensorEngine:
    """Kernel front-end driven with a fixed thread count."""

    def __init__(self, n_threads: int = 1):
        if n_threads <= 0:
            raise ValueError(f"n_threads must be positive, got {n_threads}")
        self.n_threads = n_threads
        self._weights: Dict[str, torch.Tensor] = {}

    @contextmanager
    def threads(self) -> Iterator[None]:
        previous = torch.get_num_threads()
        torch.set_num_threads(self.n_threads)
        try:
            yield
        finally:
            torch.set_num_threads(previous)

    # ─── weights ──────────────────────────────────────────────────────────

    def weight(self, bound) -> torch.Tensor:
        """float32 tensor (torch shape) for a bound arena slot."""
        if bound.ggml_type is GGMLType.F32:
            return bound.data.view(torch.float32).view(bound.torch_shape)
        cached = self._weights.get(bound.name)
        if cached is None:
            cached = dequantize_slot(bound.data, bound.ggml_type, bound.torch_shape, bound.name)
            self._weights[bound.name] = cached
        return cached

    def release(self) -> None:
        self._weights.clear()

    # ─── kernels ──────────────────────────────────────────────────────────

    @staticmethod
    def layer_norm(x: torch.Tensor, w: torch.Tensor, b: torch.Tensor, out: torch.Tensor) -> torch.Tensor:
        out.copy_(F.layer_norm(x, (x.shape[-1],), w, b, LAYER_NORM_EPS))
        return out

    @staticmethod
    def linear(x: torch.Tensor, w: torch.Tensor, b: torch.Tensor, out: torch.Tensor) -> torch.Tensor:
        """out = x @ w.T + b, with w in (out_features, in_features) layout."""
        return torch.addmm(b, x, w.t(), out=out)

    @staticmethod
    def gelu_(x: torch.Tensor) -> torch.Tensor:
        x.copy_(F.gelu(x, approximate="tanh"))
        return x

    @staticmethod
    def softmax_(scores: torch.Tensor) -> torch.Tensor:
        """Numerically stable softmax over the last dim, in place."""
        scores.sub_(scores.amax(dim=-1, keepdim=True))
        scores.exp_()
        scores.div_(scores.sum(dim=-1, keepdim=True))
        return scores


def dequantize_slot(data: torch.Tensor, ggml_type: GGMLType, torch_shape, name: str = "?") -> torch.Tensor:
    """Decode raw uint8 slot bytes into a new float32 tensor of `torch_shape`."""
    n_elements = 1
    for d in torch_shape:
        n_elements *= d
    if ggml_type is GGMLType.F32:
        return data.view(torch.float32).view(torch_shape).clone()
    if ggml_type is GGMLType.F16:
        return data.view(torch.float16).view(torch_shape).float()
    values = quants.dequantize(data.numpy(), ggml_type, n_elements, name)
    return torch.from_numpy(values).view(torch_shape)
