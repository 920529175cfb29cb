"""
Unit tests for sampling and the generation loop.

Tests verify:
  1. Top-k keeps exactly k candidates, ties resolved towards the lower id
  2. Top-p keeps the shortest prefix reaching the threshold
  3. Sampling is reproducible with a seeded generator
  4. Sampling edge cases (k out of range, bad temperature)
  5. The loop batches the prompt, clamps to the context, stops at EOS
"""

import sys
import os
import math

import pytest
import torch

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from biogpt_rt.decode import KVCacheDecodeEngine
from biogpt_rt.errors import ContextOverflowError
from biogpt_rt.generate import generate, sample_top_k_top_p, top_k_top_p_probs
from biogpt_rt.model import load_model
from biogpt_rt.utils import set_seed


def log_probs(*probs):
    return torch.tensor([math.log(p) for p in probs])


@pytest.fixture
def engine(model_path, quiet_logger):
    model = load_model(model_path, logger=quiet_logger)
    return KVCacheDecodeEngine(model, n_threads=1, logger=quiet_logger)


class TestSampling:
    """Tests for token sampling functions."""

    def test_top_k_one_is_argmax(self):
        logits = torch.tensor([1.0, 5.0, 3.0, 2.0])
        for _ in range(10):
            assert sample_top_k_top_p(logits, top_k=1, top_p=1.0, temperature=0.7) == 1

    def test_ties_prefer_lower_id(self):
        logits = torch.tensor([1.0, 5.0, 5.0, 2.0, 5.0])
        ids, probs = top_k_top_p_probs(logits, top_k=2, top_p=1.0, temperature=1.0)
        assert ids.tolist() == [1, 2]
        torch.testing.assert_close(probs, torch.tensor([0.5, 0.5], dtype=torch.float64))

    def test_top_k_restricts_vocab(self):
        logits = torch.tensor([10.0, 5.0, 3.0, 1.0, 0.5, 0.1])
        rng = set_seed(0)
        samples = {sample_top_k_top_p(logits, 2, 1.0, 1.0, rng) for _ in range(200)}
        assert samples.issubset({0, 1})

    def test_top_k_clamped(self):
        logits = torch.tensor([0.1, 0.2, 0.3])
        ids, probs = top_k_top_p_probs(logits, top_k=1000, top_p=1.0, temperature=1.0)
        assert ids.tolist() == [2, 1, 0]
        ids, _ = top_k_top_p_probs(logits, top_k=0, top_p=1.0, temperature=1.0)
        assert ids.tolist() == [2]

    def test_top_p_prefix(self):
        logits = log_probs(0.5, 0.25, 0.15, 0.1)
        ids, probs = top_k_top_p_probs(logits, top_k=4, top_p=0.8, temperature=1.0)
        assert ids.tolist() == [0, 1, 2]
        expected = torch.tensor([0.5, 0.25, 0.15], dtype=torch.float64) / 0.9
        torch.testing.assert_close(probs, expected)

    def test_top_p_keeps_first_crossing(self):
        logits = log_probs(0.5, 0.25, 0.15, 0.1)
        ids, _ = top_k_top_p_probs(logits, top_k=4, top_p=0.7, temperature=1.0)
        assert ids.tolist() == [0, 1]
        ids, _ = top_k_top_p_probs(logits, top_k=4, top_p=0.3, temperature=1.0)
        assert ids.tolist() == [0]

    def test_probs_sum_to_one(self):
        logits = torch.randn(64, generator=torch.Generator().manual_seed(3)) * 4
        ids, probs = top_k_top_p_probs(logits, top_k=20, top_p=0.95, temperature=0.8)
        assert probs.dtype == torch.float64
        assert abs(probs.sum().item() - 1.0) < 1e-12
        assert torch.all(probs[:-1] >= probs[1:])

    def test_temperature_flattens(self):
        logits = torch.tensor([2.0, 1.0, 0.0])
        _, cold = top_k_top_p_probs(logits, 3, 1.0, temperature=0.5)
        _, hot = top_k_top_p_probs(logits, 3, 1.0, temperature=2.0)
        assert cold[0] > hot[0]

    def test_bad_temperature(self):
        logits = torch.tensor([1.0, 2.0])
        for t in (0.0, -1.0):
            with pytest.raises(ValueError):
                sample_top_k_top_p(logits, 2, 1.0, t)

    def test_same_seed_same_samples(self):
        logits = torch.randn(50, generator=torch.Generator().manual_seed(1))
        rng_a, rng_b = set_seed(7), set_seed(7)
        a = [sample_top_k_top_p(logits, 40, 0.95, 1.0, rng_a) for _ in range(30)]
        b = [sample_top_k_top_p(logits, 40, 0.95, 1.0, rng_b) for _ in range(30)]
        assert a == b

    def test_frequencies_follow_probs(self):
        logits = log_probs(0.5, 0.25, 0.15, 0.1)
        rng = set_seed(11)
        counts = [0, 0, 0, 0]
        n = 4000
        for _ in range(n):
            counts[sample_top_k_top_p(logits, 4, 1.0, 1.0, rng)] += 1
        for count, p in zip(counts, (0.5, 0.25, 0.15, 0.1)):
            assert abs(count / n - p) < 0.04


class TestGenerateLoop:
    """Tests for the prefill / decode loop."""

    def test_generates_n_predict(self, engine):
        prompt = [2, 10, 11, 12, 13]
        result = generate(engine, prompt, n_predict=5, n_batch=2, rng=set_seed(0), eos_id=None)
        assert result.generated_tokens == 5
        assert not result.stopped_at_eos
        # prompt in 3 chunks, then every sampled id but the last is fed back
        assert result.n_decode_calls == 3 + 4
        assert result.n_past == len(prompt) + 4
        assert all(0 <= t < engine.hparams.n_vocab for t in result.tokens)

    def test_clamped_to_context(self, engine, hparams):
        prompt = list(range(3, 3 + hparams.n_positions - 2))
        result = generate(engine, prompt, n_predict=100, n_batch=8, rng=set_seed(0), eos_id=None)
        assert result.generated_tokens == 2
        assert result.n_past <= hparams.n_positions

    def test_stops_at_eos(self, engine):
        prompt = [2, 40, 41]
        greedy = int(torch.argmax(engine.decode(prompt, 0)))
        result = generate(engine, prompt, n_predict=10, top_k=1, rng=set_seed(0), eos_id=greedy)
        assert result.tokens == [greedy]
        assert result.stopped_at_eos

    def test_greedy_matches_manual_loop(self, engine):
        prompt = [2, 20, 21]
        result = generate(engine, prompt, n_predict=4, n_batch=8, top_k=1, eos_id=None)

        engine.reset()
        ids = list(prompt)
        logits = engine.decode(prompt, 0)
        manual = []
        for _ in range(4):
            nxt = int(torch.argmax(logits))
            manual.append(nxt)
            logits = engine.decode([nxt], len(ids))
            ids.append(nxt)
        assert result.tokens == manual

    def test_reproducible(self, engine):
        prompt = [2, 30, 31, 32]
        a = generate(engine, prompt, n_predict=6, rng=set_seed(42), eos_id=None)
        b = generate(engine, prompt, n_predict=6, rng=set_seed(42), eos_id=None)
        assert a.tokens == b.tokens

    def test_on_tokens_sees_everything(self, engine):
        prompt = [2, 5, 6, 7, 8]
        seen = []
        result = generate(engine, prompt, n_predict=3, n_batch=2, rng=set_seed(1),
                          eos_id=None, on_tokens=seen.extend)
        assert seen == prompt + result.tokens

    def test_bad_prompts(self, engine, hparams):
        with pytest.raises(ValueError):
            generate(engine, [], n_predict=1)
        with pytest.raises(ContextOverflowError):
            generate(engine, [3] * (hparams.n_positions + 1), n_predict=1)

    def test_zero_predict(self, engine):
        result = generate(engine, [2, 3], n_predict=0)
        assert result.tokens == []
        assert result.n_decode_calls == 1

    def test_stats(self, engine):
        result = generate(engine, [2, 3, 4], n_predict=3, rng=set_seed(0), eos_id=None, load_ms=12.5)
        stats = result.stats_string()
        assert "predict time" in stats
        assert "mem per token" in stats
        assert result.load_ms == 12.5
        assert result.total_ms >= result.predict_ms
        assert result.mem_per_token > 0
        assert result.ms_per_token >= 0.0
