"""
Shared fixtures: tiny random BioGPT models written to temporary files.

The tiny architecture keeps every 2-D weight a whole number of 32-element
blocks, so the same state dict can be written as f32/f16 and quantized to
every block type.
"""

import sys
import os
import math
from typing import Dict, List

import numpy as np
import pytest
import torch
import torch.nn.functional as F

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from biogpt_rt.config import POSITION_OFFSET, HyperParameters
from biogpt_rt.convert import convert_state_dict, expected_tensors
from biogpt_rt.ggml_types import GGMLType
from biogpt_rt.reader import Vocabulary
from biogpt_rt.utils import RunLogger
from biogpt_rt.writer import write_model_file


def tiny_hparams() -> HyperParameters:
    return HyperParameters(
        n_vocab=64,
        n_merges=3,
        n_layer=2,
        n_head=4,
        n_positions=16,
        d_ff=64,
        d_model=32,
        ftype=0,
    )


def tiny_vocab(hparams: HyperParameters) -> Vocabulary:
    tokens = [f"t{i}</w>" for i in range(hparams.n_vocab)]
    tokens[0], tokens[1], tokens[2] = "<s>", "<pad>", "</s>"
    merges = [("t", "1</w>"), ("t", "2</w>"), ("t1", "0</w>")][: hparams.n_merges]
    return Vocabulary.from_lists(tokens, merges)


def make_state_dict(hparams: HyperParameters, seed: int = 0) -> Dict[str, torch.Tensor]:
    """Random weights with the BioGPT names and torch shapes."""
    gen = torch.Generator().manual_seed(seed)
    state = {}
    for name, shape in expected_tensors(hparams).items():
        if "layer_norm.weight" in name:
            value = 1.0 + 0.1 * torch.randn(shape, generator=gen)
        elif name.startswith("embed"):
            value = 0.5 * torch.randn(shape, generator=gen)
        else:
            value = 0.1 * torch.randn(shape, generator=gen)
        state[name] = value
    return state


def write_tensors(path: str, hparams: HyperParameters, tensors: Dict[str, torch.Tensor]) -> None:
    """Write arbitrary f32 records, including ones the loader should reject."""
    records = []
    for name, value in tensors.items():
        array = value.detach().float().contiguous().numpy()
        records.append((name, tuple(reversed(array.shape)), GGMLType.F32, array))
    write_model_file(path, hparams, tiny_vocab(hparams), records)


def split_into_shards(
    paths: List[str], hparams: HyperParameters, state: Dict[str, torch.Tensor]
) -> None:
    """Write each tensor as len(paths) equal slices along its outermost dimension."""
    k = len(paths)
    for shard_ix, path in enumerate(paths):
        slices = {}
        for name, value in state.items():
            rows = value.shape[0] // k
            slices[name] = value[shard_ix * rows:(shard_ix + 1) * rows]
        write_tensors(path, hparams, slices)


def reference_logits(state: Dict[str, torch.Tensor], hp: HyperParameters, ids: List[int]) -> torch.Tensor:
    """Straightforward full-sequence forward pass with no cache."""
    d, n_head = hp.d_model, hp.n_head
    head_dim = d // n_head
    n = len(ids)
    W = lambda name: state[name].float()

    x = W("embed_tokens.weight")[torch.tensor(ids)] * math.sqrt(d)
    x = x + W("embed_positions.weight")[POSITION_OFFSET:POSITION_OFFSET + n]
    mask = torch.triu(torch.ones(n, n, dtype=torch.bool), diagonal=1)
    for i in range(hp.n_layer):
        p = f"layers.{i}."
        h = F.layer_norm(x, (d,), W(p + "self_attn_layer_norm.weight"),
                         W(p + "self_attn_layer_norm.bias"), 1e-5)
        q = F.linear(h, W(p + "self_attn.q_proj.weight"), W(p + "self_attn.q_proj.bias"))
        k = F.linear(h, W(p + "self_attn.k_proj.weight"), W(p + "self_attn.k_proj.bias"))
        v = F.linear(h, W(p + "self_attn.v_proj.weight"), W(p + "self_attn.v_proj.bias"))
        q = (q / math.sqrt(head_dim)).view(n, n_head, head_dim).transpose(0, 1)
        k = k.view(n, n_head, head_dim).transpose(0, 1)
        v = v.view(n, n_head, head_dim).transpose(0, 1)
        att = (q @ k.transpose(1, 2)).masked_fill(mask, float("-inf")).softmax(dim=-1)
        o = (att @ v).transpose(0, 1).reshape(n, d)
        x = x + F.linear(o, W(p + "self_attn.out_proj.weight"), W(p + "self_attn.out_proj.bias"))

        h = F.layer_norm(x, (d,), W(p + "final_layer_norm.weight"),
                         W(p + "final_layer_norm.bias"), 1e-5)
        h = F.gelu(F.linear(h, W(p + "fc1.weight"), W(p + "fc1.bias")), approximate="tanh")
        x = x + F.linear(h, W(p + "fc2.weight"), W(p + "fc2.bias"))

    x = F.layer_norm(x, (d,), W("layer_norm.weight"), W("layer_norm.bias"), 1e-5)
    return (x @ W("output_projection.weight").t())[-1]


@pytest.fixture
def hparams():
    return tiny_hparams()


@pytest.fixture
def state_dict(hparams):
    return make_state_dict(hparams)


@pytest.fixture
def quiet_logger():
    return RunLogger(verbosity=0)


@pytest.fixture
def model_path(tmp_path, hparams, state_dict, quiet_logger):
    """A tiny f32 model file."""
    path = str(tmp_path / "tiny-f32.bin")
    vocab = tiny_vocab(hparams)
    convert_state_dict(state_dict, hparams, vocab, vocab.merges, path,
                       ftype=GGMLType.F32, logger=quiet_logger)
    return path


@pytest.fixture
def f16_model_path(tmp_path, hparams, state_dict, quiet_logger):
    """The same weights with 2-D tensors stored as f16."""
    path = str(tmp_path / "tiny-f16.bin")
    vocab = tiny_vocab(hparams)
    convert_state_dict(state_dict, hparams, vocab, vocab.merges, path,
                       ftype=GGMLType.F16, logger=quiet_logger)
    return path


def random_blocks(n_blocks: int, seed: int = 0, scale: float = 1.0) -> np.ndarray:
    rng = np.random.default_rng(seed)
    return (scale * rng.standard_normal(n_blocks * 32)).astype(np.float32)
