"""
Checkpoint converter: torch state dict → model file.

Takes the weights of a BioGPT checkpoint (Hugging Face `BioGptForCausalLM`
layout or a bare decoder state dict), the tokenizer's vocabulary and merges,
and writes a single model file the loader accepts.

NAME MAPPING:
  biogpt.embed_tokens.weight      → embed_tokens.weight
  biogpt.layers.3.fc1.weight      → layers.3.fc1.weight
  lm_head.weight                  → output_projection.weight
  output_projection.weight        → output_projection.weight

SHAPES:
  torch stores a Linear weight as (out_features, in_features). On disk the
  contiguous dimension comes first, so the recorded shape is the reverse:
  (d_ff, d_model) in torch is written as {d_model, d_ff}. The bytes are the
  same row-major buffer either way.
"""

import json
from typing import Dict, List, Mapping, Optional, Sequence, Tuple, Union

import numpy as np
import torch

from biogpt_rt.config import POSITION_OFFSET, HyperParameters, layer_tensor_names
from biogpt_rt.errors import FormatError, MissingTensorError, ShapeMismatchError
from biogpt_rt.ggml_types import GGMLType
from biogpt_rt.reader import Vocabulary
from biogpt_rt.utils import RunLogger, default_logger
from biogpt_rt.writer import ModelFileWriter


NAME_ALIASES = {
    "lm_head.weight": "output_projection.weight",
}

# Bookkeeping buffers some checkpoints carry alongside the weights.
IGNORED_SUFFIXES = (".attn.bias", ".attn.masked_bias", "position_ids", "version")


def canonical_name(name: str) -> str:
    """Strip the HF `biogpt.` prefix and apply aliases."""
    if name.startswith("biogpt."):
        name = name[len("biogpt."):]
    return NAME_ALIASES.get(name, name)


def expected_tensors(hparams: HyperParameters) -> Dict[str, Tuple[int, ...]]:
    """Every tensor name the loader will ask for, with its torch shape, in file order."""
    d, d_ff = hparams.d_model, hparams.d_ff
    shapes = {
        "embed_tokens.weight": (hparams.n_vocab, d),
        "embed_positions.weight": (hparams.n_positions + POSITION_OFFSET, d),
    }
    for i in range(hparams.n_layer):
        for name in layer_tensor_names(i):
            if name.endswith("fc1.weight"):
                shape = (d_ff, d)
            elif name.endswith("fc1.bias"):
                shape = (d_ff,)
            elif name.endswith("fc2.weight"):
                shape = (d, d_ff)
            elif name.endswith("proj.weight"):
                shape = (d, d)
            else:
                shape = (d,)
            shapes[name] = shape
    shapes["layer_norm.weight"] = (d,)
    shapes["layer_norm.bias"] = (d,)
    shapes["output_projection.weight"] = (hparams.n_vocab, d)
    return shapes


def convert_state_dict(
    state_dict: Mapping[str, torch.Tensor],
    hparams: HyperParameters,
    vocab_tokens: Union[Vocabulary, Sequence[str]],
    merges: Sequence[Tuple[str, str]],
    path: str,
    ftype: Union[GGMLType, int] = GGMLType.F32,
    logger: Optional[RunLogger] = None,
) -> int:
    """
    Write a model file from a state dict.

    Args:
        state_dict: torch tensors keyed by HF or bare names.
        hparams: Architecture; its ftype field is replaced by `ftype`.
        vocab_tokens: Token strings in id order (or a Vocabulary).
        merges: BPE merge pairs in priority order.
        path: Output file.
        ftype: F32 or F16 storage for 2-D weights. 1-D tensors are always F32.

    Returns:
        Number of tensors written.
    """
    logger = default_logger(logger)
    if not isinstance(ftype, GGMLType):
        ftype = GGMLType.from_tag(ftype)
    if ftype not in (GGMLType.F32, GGMLType.F16):
        raise ValueError(
            f"conversion writes f32 or f16; use quantize_model for {ftype.name.lower()}"
        )

    if isinstance(vocab_tokens, Vocabulary):
        vocab = Vocabulary.from_lists(vocab_tokens.tokens, merges or vocab_tokens.merges)
    else:
        vocab = Vocabulary.from_lists(list(vocab_tokens), merges)

    hparams = HyperParameters(**{**hparams.to_dict(), "ftype": ftype.tag})
    hparams.validate()

    tensors = {}
    for raw_name, value in state_dict.items():
        if raw_name.endswith(IGNORED_SUFFIXES):
            continue
        tensors[canonical_name(raw_name)] = value

    wanted = expected_tensors(hparams)
    for name, shape in wanted.items():
        if name not in tensors:
            raise MissingTensorError(name)
        actual = tuple(tensors[name].shape)
        if actual != shape:
            raise ShapeMismatchError(name, shape, actual)
    extra = sorted(set(tensors) - set(wanted))
    if extra:
        logger.log_warning(f"skipping {len(extra)} tensors not used by the model: {extra[:5]}")

    with ModelFileWriter(path) as writer:
        writer.write_header(hparams, vocab)
        for name in wanted:
            value = tensors[name].detach().to("cpu", torch.float32).contiguous().numpy()
            out_type = ftype if value.ndim == 2 else GGMLType.F32
            disk_shape = tuple(reversed(value.shape))
            if out_type is GGMLType.F16:
                payload = value.astype(np.float16)
            else:
                payload = value.astype(np.float32)
            writer.write_tensor(name, disk_shape, out_type, payload)
            logger.log_tensor(name, disk_shape, out_type.name.lower(), payload.nbytes / 1024**2)

    logger.log_info(f"wrote {len(wanted)} tensors to '{path}' ({writer.bytes_written / 1024**2:.2f} MB)")
    return len(wanted)


def load_vocab_json(vocab_path: str, merges_path: Optional[str] = None) -> Tuple[List[str], List[Tuple[str, str]]]:
    """
    Read a HF-style tokenizer pair: vocab.json ({token: id}) and merges.txt.

    Lines starting with '#' in the merges file (the version header) are skipped.
    """
    with open(vocab_path, "r", encoding="utf-8") as f:
        mapping = json.load(f)
    tokens = [None] * len(mapping)
    for token, ix in mapping.items():
        if not 0 <= ix < len(tokens) or tokens[ix] is not None:
            raise FormatError(f"vocab.json id {ix} for {token!r} is out of range or repeated")
        tokens[ix] = token

    merges: List[Tuple[str, str]] = []
    if merges_path:
        with open(merges_path, "r", encoding="utf-8") as f:
            for line in f:
                line = line.rstrip("\n")
                if not line or line.startswith("#"):
                    continue
                parts = line.split(None, 1)
                if len(parts) != 2:
                    raise FormatError(f"malformed merge line {line!r}")
                merges.append((parts[0], parts[1].split()[0]))
    return tokens, merges
