"""
BioGPT model: bound weights, weight arena and KV cache.

A Model is not an nn.Module. It is the result of reconciling the tensor
catalog of one or more model files against the fixed BioGPT architecture,
with every weight living inside ONE contiguous uint8 arena in its stored
type, plus the float32 key/value cache the decoder fills.

ARCHITECTURE OVERVIEW:
  1. Token embedding, scaled by sqrt(d_model)
  2. Learned position embedding, offset by POSITION_OFFSET rows
  3. n_layer × DecoderLayer:
       x = x + out_proj(attn(LN(x)))       (pre-LayerNorm, biased projections)
       x = x + fc2(gelu(fc1(LN(x))))
  4. Final LayerNorm
  5. Untied output projection → logits

LOADING PIPELINE (load_model):
  ┌──────────────┐   ┌─────────────────┐   ┌────────────────────┐
  │ read headers │──►│ size the arena, │──►│ claim every tensor │
  │ + catalog    │   │ allocate once   │   │ the model needs    │
  └──────────────┘   └─────────────────┘   └─────────┬──────────┘
                                                     │
  ┌──────────────┐   ┌─────────────────┐   ┌─────────▼──────────┐
  │ Model ready  │◄──│ allocate the    │◄──│ reject leftovers,  │
  │              │   │ KV cache        │   │ stream payloads    │
  └──────────────┘   └─────────────────┘   └────────────────────┘

Anything that does not line up (a missing tensor, a shape the architecture
does not expect, a tensor nobody claimed) aborts the load with a specific
error; nothing is defaulted.
"""

import os
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import List, Optional, Sequence, Tuple, Union

import torch

from biogpt_rt.catalog import TensorCatalog, TensorDescriptor
from biogpt_rt.config import POSITION_OFFSET, TENSOR_ALIGNMENT, TENSOR_OVERHEAD, HyperParameters
from biogpt_rt.errors import (
    BioGPTError,
    ExtraTensorError,
    FormatError,
    MissingTensorError,
    ResourceError,
    ShapeMismatchError,
    TruncationError,
)
from biogpt_rt.ggml_types import GGMLType
from biogpt_rt.reader import Vocabulary, discover_shards, read_model_files
from biogpt_rt.utils import ProgressCallback, RunLogger, default_logger


@dataclass
class BoundTensor:
    """An arena slot claimed for one named tensor."""

    name: str
    shape: Tuple[int, ...]          # on-disk order (ne0 first)
    ggml_type: GGMLType
    data: torch.Tensor              # uint8 view into the arena
    descriptor: TensorDescriptor

    @property
    def torch_shape(self) -> Tuple[int, ...]:
        return tuple(reversed(self.shape))

    @property
    def nbytes(self) -> int:
        return self.data.numel()


# ═══════════════════════════════════════════════════════════════════════════
# 1. DecoderLayer: the weights of one transformer block
# ═══════════════════════════════════════════════════════════════════════════

@dataclass
class DecoderLayer:
    """
    Weights of one pre-LayerNorm decoder block.

    Shapes in on-disk order (d = d_model):
      self_attn_layer_norm.{weight,bias}   {d}
      self_attn.{q,k,v,out}_proj.weight    {d, d}
      self_attn.{q,k,v,out}_proj.bias      {d}
      final_layer_norm.{weight,bias}       {d}
      fc1.weight {d, d_ff}   fc1.bias {d_ff}
      fc2.weight {d_ff, d}   fc2.bias {d}
    """

    ln_1_w: BoundTensor
    ln_1_b: BoundTensor
    q_proj_w: BoundTensor
    q_proj_b: BoundTensor
    k_proj_w: BoundTensor
    k_proj_b: BoundTensor
    v_proj_w: BoundTensor
    v_proj_b: BoundTensor
    out_proj_w: BoundTensor
    out_proj_b: BoundTensor
    ln_2_w: BoundTensor
    ln_2_b: BoundTensor
    fc1_w: BoundTensor
    fc1_b: BoundTensor
    fc2_w: BoundTensor
    fc2_b: BoundTensor


# ═══════════════════════════════════════════════════════════════════════════
# 2. Model: hyperparameters, vocabulary, arena, bound fields, KV cache
# ═══════════════════════════════════════════════════════════════════════════

@dataclass
class Model:
    """
    A loaded model.

    KV CACHE LAYOUT:
      memory_k and memory_v are flat float32 buffers of
      n_layer × n_positions × d_model elements. The key (or value) vector of
      layer l at position p lives at

          offset = (l * n_positions + p) * d_model,  length d_model

      `layer_cache(l)` returns the (n_positions, d_model) views for one layer.
      Entries are only meaningful for positions below the caller's n_past.
    """

    hparams: HyperParameters
    vocab: Vocabulary
    arena: torch.Tensor
    embed_tokens: BoundTensor
    embed_positions: BoundTensor
    layers: List[DecoderLayer]
    ln_w: BoundTensor
    ln_b: BoundTensor
    lm_head: BoundTensor
    memory_k: Optional[torch.Tensor] = None
    memory_v: Optional[torch.Tensor] = None
    tensors: "OrderedDict[str, BoundTensor]" = field(default_factory=OrderedDict)

    @property
    def n_tensors(self) -> int:
        return len(self.tensors)

    @property
    def arena_bytes(self) -> int:
        return self.arena.numel() if self.arena is not None else 0

    @property
    def kv_cache_bytes(self) -> int:
        if self.memory_k is None:
            return 0
        return (self.memory_k.numel() + self.memory_v.numel()) * 4

    def allocate_kv_cache(self) -> None:
        hp = self.hparams
        n_elements = hp.n_layer * hp.n_positions * hp.d_model
        try:
            self.memory_k = torch.zeros(n_elements, dtype=torch.float32)
            self.memory_v = torch.zeros(n_elements, dtype=torch.float32)
        except RuntimeError as e:
            raise ResourceError("KV cache", 2 * n_elements * 4) from e

    def reset_cache(self) -> None:
        """Forget every cached position (n_past goes back to 0 for callers)."""
        if self.memory_k is not None:
            self.memory_k.zero_()
            self.memory_v.zero_()

    def cache_offset(self, layer_ix: int, position: int) -> int:
        return (layer_ix * self.hparams.n_positions + position) * self.hparams.d_model

    def layer_cache(self, layer_ix: int) -> Tuple[torch.Tensor, torch.Tensor]:
        hp = self.hparams
        start = self.cache_offset(layer_ix, 0)
        end = start + hp.n_positions * hp.d_model
        return (
            self.memory_k[start:end].view(hp.n_positions, hp.d_model),
            self.memory_v[start:end].view(hp.n_positions, hp.d_model),
        )

    def close(self) -> None:
        """Drop the arena, the cache and every bound view into the arena."""
        self.arena = None
        self.memory_k = None
        self.memory_v = None
        self.embed_tokens = self.embed_positions = None
        self.ln_w = self.ln_b = self.lm_head = None
        self.layers = []
        self.tensors.clear()

    @property
    def closed(self) -> bool:
        return self.arena is None


# ═══════════════════════════════════════════════════════════════════════════
# 3. ModelMaterializer: catalog → arena slots → loaded bytes
# ═══════════════════════════════════════════════════════════════════════════

def _align(offset: int, alignment: int = TENSOR_ALIGNMENT) -> int:
    return (offset + alignment - 1) // alignment * alignment


class ModelMaterializer:
    """
    Reconciles a TensorCatalog with the architecture and fills the arena.

    The arena is allocated up front from the catalog:

        arena_bytes = Σ nbytes + n_tensors × TENSOR_OVERHEAD

    `get_tensor` hands out 32-byte aligned slots in claim order. After every
    field has been claimed, `done_getting_tensors` rejects tensors nobody
    asked for and `load_all_data` streams the payloads into their slots.
    """

    def __init__(
        self,
        paths: Sequence[str],
        catalog: TensorCatalog,
        logger: Optional[RunLogger] = None,
    ):
        self.paths = list(paths)
        self.catalog = catalog
        self.logger = default_logger(logger)
        self.arena_bytes = catalog.total_nbytes() + len(catalog) * TENSOR_OVERHEAD
        try:
            self.arena = torch.empty(self.arena_bytes, dtype=torch.uint8)
        except RuntimeError as e:
            raise ResourceError("weight arena", self.arena_bytes) from e
        self._offset = 0
        self.bound: "OrderedDict[str, BoundTensor]" = OrderedDict()

    def get_tensor(self, name: str, expected_shape: Sequence[int]) -> BoundTensor:
        """Claim the slot for `name`, checking its shape (on-disk order)."""
        entry = self.catalog.get(name)
        if entry is None:
            raise MissingTensorError(name)
        expected_shape = tuple(expected_shape)
        if entry.shape != expected_shape:
            raise ShapeMismatchError(name, expected_shape, entry.shape)
        if name in self.bound:
            raise BioGPTError(f"tensor '{name}' was claimed twice")

        start = _align(self._offset)
        end = start + entry.nbytes
        if end > self.arena_bytes:
            raise ResourceError(f"slot for '{name}' (arena too small)", end)
        bound = BoundTensor(
            name=name,
            shape=entry.shape,
            ggml_type=entry.ggml_type,
            data=self.arena[start:end],
            descriptor=entry,
        )
        self._offset = end
        self.bound[name] = bound
        return bound

    def done_getting_tensors(self) -> None:
        unclaimed = [name for name in self.catalog.names() if name not in self.bound]
        if unclaimed:
            raise ExtraTensorError(unclaimed)

    def load_all_data(self, progress_callback: Optional[ProgressCallback] = None) -> int:
        """
        Read every payload into its slot. Returns the number of tensors loaded.

        `progress_callback(fraction)` is called with non-decreasing values,
        starting at 0.0 and ending at 1.0.
        """
        report = progress_callback or (lambda fraction: None)
        n_expected = len(self.catalog)
        if n_expected == 0:
            self.logger.log_warning("file contained no tensors; empty model, testing only")
            report(1.0)
            return 0

        total_bytes = max(1, sum(b.nbytes for b in self.bound.values()))
        done_bytes = 0
        loaded = set()
        report(0.0)

        for shard_index, path in enumerate(self.paths):
            # (tensor, byte offset within the slot, shard record) for this file
            work = []
            for bound in self.bound.values():
                slot_offset = 0
                for shard in bound.descriptor.shards:
                    if shard.shard_index == shard_index:
                        work.append((bound, slot_offset, shard))
                    slot_offset += shard.nbytes
            work.sort(key=lambda item: item[2].file_offset)

            with open(path, "rb") as f:
                for bound, slot_offset, shard in work:
                    slot_view = bound.data.numpy()
                    f.seek(shard.file_offset)
                    target = memoryview(slot_view[slot_offset:slot_offset + shard.nbytes])
                    n_read = f.readinto(target)
                    if n_read != shard.nbytes:
                        raise TruncationError(
                            f"data of '{bound.name}'", shard.file_offset, shard.nbytes,
                            os.fstat(f.fileno()).st_size,
                        )
                    loaded.add(bound.name)
                    done_bytes += shard.nbytes
                    report(min(1.0, done_bytes / total_bytes))
                    self.logger.log_tensor(
                        bound.name, bound.shape, bound.ggml_type.name.lower(),
                        shard.nbytes / 1024**2, f" (shard {shard_index})",
                    )

        if len(loaded) != n_expected:
            raise FormatError(
                f"loaded {len(loaded)} tensors, expected {n_expected}"
            )
        report(1.0)
        return len(loaded)


# ═══════════════════════════════════════════════════════════════════════════
# 4. Binding the architecture
# ═══════════════════════════════════════════════════════════════════════════

def _bind_layer(mat: ModelMaterializer, hp: HyperParameters, i: int) -> DecoderLayer:
    d, d_ff = hp.d_model, hp.d_ff
    p = f"layers.{i}"
    return DecoderLayer(
        ln_1_w=mat.get_tensor(f"{p}.self_attn_layer_norm.weight", (d,)),
        ln_1_b=mat.get_tensor(f"{p}.self_attn_layer_norm.bias", (d,)),
        q_proj_w=mat.get_tensor(f"{p}.self_attn.q_proj.weight", (d, d)),
        q_proj_b=mat.get_tensor(f"{p}.self_attn.q_proj.bias", (d,)),
        k_proj_w=mat.get_tensor(f"{p}.self_attn.k_proj.weight", (d, d)),
        k_proj_b=mat.get_tensor(f"{p}.self_attn.k_proj.bias", (d,)),
        v_proj_w=mat.get_tensor(f"{p}.self_attn.v_proj.weight", (d, d)),
        v_proj_b=mat.get_tensor(f"{p}.self_attn.v_proj.bias", (d,)),
        out_proj_w=mat.get_tensor(f"{p}.self_attn.out_proj.weight", (d, d)),
        out_proj_b=mat.get_tensor(f"{p}.self_attn.out_proj.bias", (d,)),
        ln_2_w=mat.get_tensor(f"{p}.final_layer_norm.weight", (d,)),
        ln_2_b=mat.get_tensor(f"{p}.final_layer_norm.bias", (d,)),
        fc1_w=mat.get_tensor(f"{p}.fc1.weight", (d, d_ff)),
        fc1_b=mat.get_tensor(f"{p}.fc1.bias", (d_ff,)),
        fc2_w=mat.get_tensor(f"{p}.fc2.weight", (d_ff, d)),
        fc2_b=mat.get_tensor(f"{p}.fc2.bias", (d,)),
    )


def bind_model(mat: ModelMaterializer, hparams: HyperParameters, vocab: Vocabulary) -> Model:
    """Claim every architecture field from the materializer, in file order."""
    d = hparams.d_model
    embed_tokens = mat.get_tensor("embed_tokens.weight", (d, hparams.n_vocab))
    embed_positions = mat.get_tensor(
        "embed_positions.weight", (d, hparams.n_positions + POSITION_OFFSET)
    )
    layers = [_bind_layer(mat, hparams, i) for i in range(hparams.n_layer)]
    ln_w = mat.get_tensor("layer_norm.weight", (d,))
    ln_b = mat.get_tensor("layer_norm.bias", (d,))
    lm_head = mat.get_tensor("output_projection.weight", (d, hparams.n_vocab))
    return Model(
        hparams=hparams,
        vocab=vocab,
        arena=mat.arena,
        embed_tokens=embed_tokens,
        embed_positions=embed_positions,
        layers=layers,
        ln_w=ln_w,
        ln_b=ln_b,
        lm_head=lm_head,
        tensors=mat.bound,
    )


def load_model(
    path_or_paths: Union[str, Sequence[str]],
    progress_callback: Optional[ProgressCallback] = None,
    logger: Optional[RunLogger] = None,
) -> Model:
    """
    Load a model file (or shard set) into memory.

    Args:
        path_or_paths: A single path (shards "<path>.1", "<path>.2", ...
            are picked up automatically) or an explicit ordered list.
        progress_callback: Called with the loaded fraction in [0, 1].
        logger: Where to report; console if None.
    """
    logger = default_logger(logger)
    if isinstance(path_or_paths, str):
        paths = discover_shards(path_or_paths)
    else:
        paths = list(path_or_paths)

    logger.log_info(f"loading model from '{paths[0]}' ({len(paths)} part(s))")
    hparams, vocab, catalog = read_model_files(paths)
    logger.log_info(
        f"n_vocab={hparams.n_vocab} n_merges={hparams.n_merges} n_layer={hparams.n_layer} "
        f"n_head={hparams.n_head} n_positions={hparams.n_positions} d_ff={hparams.d_ff} "
        f"d_model={hparams.d_model} ftype={hparams.ftype}"
    )

    mat = ModelMaterializer(paths, catalog, logger=logger)
    logger.log_info(f"weight arena = {mat.arena_bytes / 1024**2:.2f} MB")
    model = bind_model(mat, hparams, vocab)
    mat.done_getting_tensors()
    n_loaded = mat.load_all_data(progress_callback)
    model.allocate_kv_cache()

    logger.log_info(
        f"loaded {n_loaded} tensors, KV cache = {model.kv_cache_bytes / 1024**2:.2f} MB"
    )
    return model
