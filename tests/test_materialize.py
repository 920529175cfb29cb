"""
Unit tests for loading a model into the weight arena.

Tests verify:
  1. Every architecture field is bound, aligned, and holds the file's bytes
  2. Missing / mis-shaped / unclaimed tensors abort the load
  3. Progress is reported monotonically from 0 to 1
  4. Shard sets load to the same weights as a single file
  5. The KV cache has the documented size and addressing
"""

import sys
import os

import pytest
import torch

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from biogpt_rt.catalog import TensorCatalog
from biogpt_rt.config import TENSOR_OVERHEAD
from biogpt_rt.engine import TensorEngine
from biogpt_rt.errors import (
    BioGPTError,
    ExtraTensorError,
    FormatError,
    MissingTensorError,
    ResourceError,
    ShapeMismatchError,
)
from biogpt_rt.ggml_types import GGMLType
from biogpt_rt.model import ModelMaterializer, load_model
from biogpt_rt.reader import read_model_files

from conftest import split_into_shards, write_tensors


class TestLoadModel:
    """Tests for load_model on well-formed files."""

    def test_all_fields_bound(self, model_path, hparams, quiet_logger):
        model = load_model(model_path, logger=quiet_logger)
        assert model.n_tensors == 2 + 16 * hparams.n_layer + 3
        assert len(model.layers) == hparams.n_layer
        assert model.embed_positions.shape == (hparams.d_model, hparams.n_positions + 2)
        assert model.layers[1].fc2_w.torch_shape == (hparams.d_model, hparams.d_ff)

    def test_arena_size_and_alignment(self, model_path, quiet_logger):
        _, _, catalog = read_model_files([model_path])
        model = load_model(model_path, logger=quiet_logger)
        assert model.arena_bytes == catalog.total_nbytes() + len(catalog) * TENSOR_OVERHEAD
        for bound in model.tensors.values():
            assert bound.data.storage_offset() % 32 == 0, bound.name
            assert bound.data.untyped_storage().data_ptr() == model.arena.untyped_storage().data_ptr()

    def test_weights_match_state_dict(self, model_path, state_dict, quiet_logger):
        model = load_model(model_path, logger=quiet_logger)
        te = TensorEngine()
        assert torch.equal(te.weight(model.embed_tokens), state_dict["embed_tokens.weight"])
        assert torch.equal(te.weight(model.layers[0].fc1_w), state_dict["layers.0.fc1.weight"])
        assert torch.equal(te.weight(model.layers[1].k_proj_b), state_dict["layers.1.self_attn.k_proj.bias"])
        assert torch.equal(te.weight(model.lm_head), state_dict["output_projection.weight"])

    def test_f16_weights_dequantize(self, f16_model_path, state_dict, quiet_logger):
        model = load_model(f16_model_path, logger=quiet_logger)
        assert model.layers[0].q_proj_w.ggml_type is GGMLType.F16
        w = TensorEngine().weight(model.layers[0].q_proj_w)
        assert w.dtype == torch.float32
        torch.testing.assert_close(w, state_dict["layers.0.self_attn.q_proj.weight"], atol=1e-3, rtol=1e-3)

    def test_progress_monotonic(self, model_path, quiet_logger):
        seen = []
        load_model(model_path, progress_callback=seen.append, logger=quiet_logger)
        assert seen[0] == 0.0
        assert seen[-1] == 1.0
        assert all(a <= b for a, b in zip(seen, seen[1:]))

    def test_kv_cache_layout(self, model_path, hparams, quiet_logger):
        model = load_model(model_path, logger=quiet_logger)
        n = hparams.n_layer * hparams.n_positions * hparams.d_model
        assert model.memory_k.numel() == n
        assert model.memory_v.dtype == torch.float32
        assert model.cache_offset(1, 3) == (1 * hparams.n_positions + 3) * hparams.d_model

        k, _ = model.layer_cache(1)
        k[3].fill_(7.0)
        start = model.cache_offset(1, 3)
        assert torch.all(model.memory_k[start:start + hparams.d_model] == 7.0)
        model.reset_cache()
        assert torch.count_nonzero(model.memory_k) == 0

    def test_close_releases(self, model_path, quiet_logger):
        model = load_model(model_path, logger=quiet_logger)
        model.close()
        assert model.arena is None
        assert model.memory_k is None
        assert model.n_tensors == 0
        assert model.closed
        assert model.lm_head is None
        assert model.layers == []


class TestShardedLoad:
    def test_shards_equal_single_file(self, tmp_path, hparams, state_dict, quiet_logger):
        paths = [str(tmp_path / "m.bin"), str(tmp_path / "m.bin.1")]
        split_into_shards(paths, hparams, state_dict)

        _, _, catalog = read_model_files(paths)
        assert catalog.n_shard_records() == 2 * len(catalog)
        assert catalog["layers.0.fc1.weight"].shape == (hparams.d_model, hparams.d_ff)

        model = load_model(paths[0], logger=quiet_logger)   # discovers m.bin.1
        te = TensorEngine()
        for name in ("embed_tokens.weight", "layers.0.fc1.weight", "layers.1.fc2.bias"):
            assert torch.equal(te.weight(model.tensors[name]), state_dict[name]), name


class TestReconciliation:
    """Tests for catalog/architecture mismatches."""

    def test_missing_tensor(self, tmp_path, hparams, state_dict, quiet_logger):
        path = str(tmp_path / "missing.bin")
        partial = dict(state_dict)
        del partial["layers.1.fc2.bias"]
        write_tensors(path, hparams, partial)
        with pytest.raises(MissingTensorError, match="layers.1.fc2.bias"):
            load_model(path, logger=quiet_logger)

    def test_shape_mismatch(self, tmp_path, hparams, state_dict, quiet_logger):
        path = str(tmp_path / "shape.bin")
        bad = dict(state_dict)
        bad["layers.0.fc1.bias"] = torch.zeros(hparams.d_ff + 32)
        write_tensors(path, hparams, bad)
        with pytest.raises(ShapeMismatchError) as excinfo:
            load_model(path, logger=quiet_logger)
        assert excinfo.value.expected == (hparams.d_ff,)
        assert excinfo.value.actual == (hparams.d_ff + 32,)
        assert "[64]" in str(excinfo.value) and "[96]" in str(excinfo.value)

    def test_extra_tensor(self, tmp_path, hparams, state_dict, quiet_logger):
        path = str(tmp_path / "extra.bin")
        extra = dict(state_dict)
        extra["layers.0.unused.weight"] = torch.zeros(32)
        write_tensors(path, hparams, extra)
        with pytest.raises(ExtraTensorError, match="unused"):
            load_model(path, logger=quiet_logger)

    def test_double_claim(self, model_path, quiet_logger):
        _, _, catalog = read_model_files([model_path])
        mat = ModelMaterializer([model_path], catalog, logger=quiet_logger)
        shape = catalog["layer_norm.bias"].shape
        mat.get_tensor("layer_norm.bias", shape)
        with pytest.raises(BioGPTError, match="twice"):
            mat.get_tensor("layer_norm.bias", shape)

    def test_done_requires_every_claim(self, model_path, quiet_logger):
        _, _, catalog = read_model_files([model_path])
        mat = ModelMaterializer([model_path], catalog, logger=quiet_logger)
        mat.get_tensor("layer_norm.bias", catalog["layer_norm.bias"].shape)
        with pytest.raises(ExtraTensorError) as excinfo:
            mat.done_getting_tensors()
        assert "layer_norm.bias" not in excinfo.value.names
        assert len(excinfo.value.names) == len(catalog) - 1


class TestEdgeCases:
    def test_empty_catalog_warns(self, capsys, quiet_logger):
        mat = ModelMaterializer([], TensorCatalog(), logger=quiet_logger)
        seen = []
        assert mat.load_all_data(seen.append) == 0
        assert seen == [1.0]
        assert "WARNING" in capsys.readouterr().out

    def test_allocation_failure(self, model_path, quiet_logger, monkeypatch):
        _, _, catalog = read_model_files([model_path])

        def refuse(*args, **kwargs):
            raise RuntimeError("not enough memory")

        monkeypatch.setattr(torch, "empty", refuse)
        with pytest.raises(ResourceError, match="weight arena"):
            ModelMaterializer([model_path], catalog, logger=quiet_logger)

    def test_partial_claim_fails_to_load(self, model_path, quiet_logger):
        _, _, catalog = read_model_files([model_path])
        mat = ModelMaterializer([model_path], catalog, logger=quiet_logger)
        mat.get_tensor("layer_norm.weight", catalog["layer_norm.weight"].shape)
        with pytest.raises(FormatError, match="loaded 1 tensors"):
            mat.load_all_data()
