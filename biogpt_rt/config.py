"""
Configuration for the BioGPT inference runtime.

This module is the SINGLE SOURCE OF TRUTH for the on-disk format constants,
the model hyperparameters and the parameters that drive a generation run.
Everything else in the package imports these values instead of repeating
magic numbers.

Two dataclasses live here:
  1. HyperParameters: the architecture of one model file. Read from the
     header of a model file, copied verbatim by the quantizer (except the
     stored weight type), never edited at runtime.
  2. InferenceConfig: the "parameter bundle" a front-end hands to the core
     (model path, seed, thread count, sampling knobs, batch size). The
     command-line scripts build one from argparse; tests build them directly.

FILE LAYOUT (all integers little-endian):
  magic   u32   0x67676a74 ("ggjt")
  version u32   1
  hparams 8 × i32 in HPARAM_FIELDS order
  vocab   count u32, count × (len u32, bytes)
  merges  count u32, count × (len u32, bytes "left right")
  tensors until EOF:
      ndims u32, name_len u32, type u32, shape ndims × u32, name,
      zero padding up to the next multiple of TENSOR_ALIGNMENT, payload
"""

from dataclasses import dataclass, field, asdict, fields
from typing import List, Optional
import json
import os


# ── Format constants ─────────────────────────────────────────────────────────
FILE_MAGIC = 0x67676A74    # 'ggjt'
FILE_VERSION = 1

# Payloads start on a 32-byte file offset so they can be memory-mapped
# and handed to vectorized kernels without a copy.
TENSOR_ALIGNMENT = 32

# Fixed bookkeeping bytes reserved per tensor in the weight arena. Covers
# slot alignment padding as well.
TENSOR_OVERHEAD = 256

# BioGPT reserves the first two rows of the learned position table
# (fairseq padding convention). Architecture specific; not a general rule.
POSITION_OFFSET = 2

# Order of the int32 fields in the hparams block.
HPARAM_FIELDS = (
    "n_vocab",
    "n_merges",
    "n_layer",
    "n_head",
    "n_positions",
    "d_ff",
    "d_model",
    "ftype",
)


@dataclass
class HyperParameters:
    """
    Architecture hyperparameters stored in a model file header.

    Defaults describe the released BioGPT base model (347M parameters):

    PARAMETER COUNT BREAKDOWN (with defaults):
    ─────────────────────────────────────────────
    Token embedding (n_vocab × d_model):        43,401,216
    Position embedding ((n_pos+2) × d_model):    1,050,624
    24 decoder layers:                          302,309,376
      Per layer:
        q/k/v/out projections (4 × d²+d):         4,198,400
        fc1 (d_model × d_ff + d_ff):              4,198,400
        fc2 (d_ff × d_model + d_model):           4,195,328
        2× LayerNorm (2 × 2d):                        4,096
    Final LayerNorm:                                  2,048
    Output projection (d_model × n_vocab):       43,401,216
    """

    n_vocab: int = 42384
    n_merges: int = 40000
    n_layer: int = 24
    n_head: int = 16
    n_positions: int = 1024
    d_ff: int = 4096
    d_model: int = 1024

    # Type tag (see ggml_types.GGMLType) that most 2-D weights are stored in.
    # Informational only: every tensor record carries its own type tag.
    ftype: int = 0

    @property
    def head_dim(self) -> int:
        """Dimension of each attention head (d_model / n_head)."""
        assert self.d_model % self.n_head == 0, (
            f"d_model ({self.d_model}) must be divisible by n_head ({self.n_head})"
        )
        return self.d_model // self.n_head

    def validate(self) -> None:
        """
        Check structural constraints.

        Raises FormatError rather than asserting because hyperparameters come
        from untrusted files: a bad header is a malformed file, not a bug.
        """
        from biogpt_rt.errors import FormatError

        for name in HPARAM_FIELDS:
            if name in ("ftype", "n_merges"):
                continue
            value = getattr(self, name)
            if value <= 0:
                raise FormatError(f"hparam {name} must be positive, got {value}")
        if self.n_merges < 0:
            raise FormatError(f"hparam n_merges must be non-negative, got {self.n_merges}")
        if self.d_model % self.n_head != 0:
            raise FormatError(
                f"d_model ({self.d_model}) must be divisible by n_head ({self.n_head})"
            )

    def as_tuple(self) -> tuple:
        """Field values in on-disk order."""
        return tuple(getattr(self, name) for name in HPARAM_FIELDS)

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, d: dict) -> "HyperParameters":
        return cls(**d)


@dataclass
class InferenceConfig:
    """
    Parameter bundle for one generation run.

    These control HOW the model is driven, not what it is. The command-line
    front-ends parse arguments into this bundle; the core only ever sees an
    already-validated instance.
    """

    # ── Model ──────────────────────────────────────────────────────────────
    # Path of the model file. Additional shards named "<model>.1",
    # "<model>.2", ... are discovered automatically.
    model: str = "ggml_weights/ggml-model.bin"

    # ── Reproducibility ────────────────────────────────────────────────────
    # Seed for the sampling RNG. Negative means "derive from the clock".
    seed: int = -1

    # ── Compute ────────────────────────────────────────────────────────────
    # Threads handed to the tensor engine for each decode call.
    n_threads: int = field(default_factory=lambda: min(4, os.cpu_count() or 1))

    # Initial scratch arena size for decode working memory. The arena grows
    # on demand once the bytes-per-token cost has been measured.
    scratch_mb: int = 16

    # ── Generation ─────────────────────────────────────────────────────────
    # Maximum number of new tokens to sample (clamped to the context window).
    n_predict: int = 200

    # Prompt tokens fed per decode call during prefill.
    n_batch: int = 8

    # End-of-text id ("</s>" in the BioGPT vocabulary). Generation stops
    # when it is sampled.
    eos_id: Optional[int] = 2

    # ── Sampling ───────────────────────────────────────────────────────────
    top_k: int = 40
    top_p: float = 0.9
    temperature: float = 0.9

    # ── Logging ────────────────────────────────────────────────────────────
    # 0 = quiet, 1 = per-tensor listings and memory reports.
    verbosity: int = 0

    def validate(self) -> None:
        """Validate the bundle before it reaches the core."""
        assert self.n_threads > 0, "n_threads must be positive"
        assert self.n_predict >= 0, "n_predict must be non-negative"
        assert self.n_batch > 0, "n_batch must be positive"
        assert self.top_k > 0, "top_k must be positive"
        assert 0.0 < self.top_p <= 1.0, "top_p must be in (0, 1]"
        assert self.temperature > 0.0, "temperature must be positive"
        assert self.scratch_mb > 0, "scratch_mb must be positive"

    def to_dict(self) -> dict:
        """Convert to dictionary for serialization."""
        return asdict(self)

    @classmethod
    def from_dict(cls, d: dict) -> "InferenceConfig":
        """Reconstruct from dictionary, ignoring unknown keys."""
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in d.items() if k in known})

    def save(self, path: str) -> None:
        """Save configuration to JSON file."""
        os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
        with open(path, "w") as f:
            json.dump(self.to_dict(), f, indent=2)

    @classmethod
    def load(cls, path: str) -> "InferenceConfig":
        """Load configuration from JSON file."""
        with open(path, "r") as f:
            return cls.from_dict(json.load(f))


def layer_tensor_names(layer_ix: int) -> List[str]:
    """Names of every tensor that belongs to decoder layer `layer_ix`."""
    prefix = f"layers.{layer_ix}"
    names = []
    for norm in ("self_attn_layer_norm", "final_layer_norm"):
        names += [f"{prefix}.{norm}.weight", f"{prefix}.{norm}.bias"]
    for proj in ("q_proj", "k_proj", "v_proj", "out_proj"):
        names += [f"{prefix}.self_attn.{proj}.weight", f"{prefix}.self_attn.{proj}.bias"]
    for fc in ("fc1", "fc2"):
        names += [f"{prefix}.{fc}.weight", f"{prefix}.{fc}.bias"]
    return names
