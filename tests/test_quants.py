"""
Unit tests for the block quantization kernels.

Tests verify:
  1. Hand-built blocks encode to the exact reference bytes
  2. Dequantization error stays within one quantization step per block
  3. Values that fit the code grid exactly survive a round trip
  4. Histograms count every quantized value
  5. Bad sizes are rejected
"""

import sys
import os
import struct

import numpy as np
import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from biogpt_rt import quants
from biogpt_rt.errors import FormatError
from biogpt_rt.ggml_types import GGMLType, QUANTIZED_TYPES, tensor_nbytes

from conftest import random_blocks


def step_size(x: np.ndarray, ggml_type: GGMLType) -> np.ndarray:
    """Per-block quantization step (the scale d) for each format."""
    xb = x.reshape(-1, 32)
    amax = np.abs(xb).max(axis=1)
    spread = xb.max(axis=1) - xb.min(axis=1)
    return {
        GGMLType.Q4_0: amax / 8,
        GGMLType.Q4_1: spread / 15,
        GGMLType.Q5_0: amax / 16,
        GGMLType.Q5_1: spread / 31,
        GGMLType.Q8_0: amax / 127,
    }[ggml_type]


class TestReferenceBytes:
    """Tests that hand-built blocks match the reference encodings."""

    def test_q4_0_block(self):
        x = np.zeros(32, dtype=np.float32)
        x[0] = -8.0
        out = quants.quantize(x, GGMLType.Q4_0).tobytes()
        # d = -8 / -8 = 1.0 (fp16 0x3c00); x[0] → code 0, zeros → code 8
        assert out == b"\x00\x3c" + bytes([0x80]) + bytes([0x88]) * 15
        np.testing.assert_array_equal(quants.dequantize(out, GGMLType.Q4_0, 32), x)

    def test_q5_0_high_bits(self):
        x = (np.arange(32) - 16).astype(np.float32)
        out = quants.quantize(x, GGMLType.Q5_0).tobytes()
        assert len(out) == 22
        d = np.frombuffer(out[:2], dtype="<f2")[0]
        qh = struct.unpack_from("<I", out, 2)[0]
        assert d == 1.0
        # codes are 0..31; elements 16..31 carry the fifth bit
        assert qh == 0xFFFF0000
        np.testing.assert_array_equal(quants.dequantize(out, GGMLType.Q5_0, 32), x)

    def test_q8_0_layout(self):
        x = np.zeros(32, dtype=np.float32)
        x[3] = 127.0
        x[4] = -63.5
        out = quants.quantize(x, GGMLType.Q8_0).tobytes()
        assert len(out) == 34
        assert np.frombuffer(out[:2], dtype="<f2")[0] == 1.0
        qs = np.frombuffer(out[2:], dtype=np.int8)
        assert qs[3] == 127
        assert qs[4] == -64   # halves round away from zero
        assert np.count_nonzero(qs) == 2

    def test_zero_block(self):
        x = np.zeros(64, dtype=np.float32)
        for t in QUANTIZED_TYPES:
            out = quants.quantize(x, t)
            np.testing.assert_array_equal(quants.dequantize(out, t, 64), x)


class TestExactGrids:
    """Values already on the code grid come back unchanged."""

    def test_q4_1_grid(self):
        x = (np.arange(32) // 2).astype(np.float32) + 3.0   # 3 .. 18, step 1
        out = quants.quantize(x, GGMLType.Q4_1)
        np.testing.assert_array_equal(quants.dequantize(out, GGMLType.Q4_1, 32), x)

    def test_q5_1_grid(self):
        x = np.arange(32, dtype=np.float32) - 4.0
        out = quants.quantize(x, GGMLType.Q5_1)
        np.testing.assert_array_equal(quants.dequantize(out, GGMLType.Q5_1, 32), x)


class TestErrorBounds:
    """Dequantized values stay within one step of the input."""

    @pytest.mark.parametrize("ggml_type", QUANTIZED_TYPES, ids=lambda t: t.name)
    def test_random_blocks(self, ggml_type):
        x = random_blocks(64, seed=1)
        out = quants.quantize(x, ggml_type)
        assert out.size == tensor_nbytes((x.size,), ggml_type)
        y = quants.dequantize(out, ggml_type, x.size)
        err = np.abs(x - y).reshape(-1, 32).max(axis=1)
        assert np.all(err <= step_size(x, ggml_type) * 1.02 + 1e-6)

    @pytest.mark.parametrize("ggml_type", QUANTIZED_TYPES, ids=lambda t: t.name)
    def test_requantize_is_stable(self, ggml_type):
        """Quantizing dequantized values again gives the same bytes."""
        x = random_blocks(16, seed=2)
        once = quants.quantize(x, ggml_type)
        twice = quants.quantize(quants.dequantize(once, ggml_type, x.size), ggml_type)
        y1 = quants.dequantize(once, ggml_type, x.size)
        y2 = quants.dequantize(twice, ggml_type, x.size)
        np.testing.assert_allclose(y1, y2, atol=float(step_size(x, ggml_type).max()) * 0.02)

    def test_finer_types_are_more_accurate(self):
        x = random_blocks(128, seed=3)
        errors = {}
        for t in (GGMLType.Q4_0, GGMLType.Q5_0, GGMLType.Q8_0):
            y = quants.dequantize(quants.quantize(x, t), t, x.size)
            errors[t] = np.abs(x - y).mean()
        assert errors[GGMLType.Q8_0] < errors[GGMLType.Q5_0] < errors[GGMLType.Q4_0]

    def test_f16_cast(self):
        x = random_blocks(2, seed=4)
        out = quants.quantize(x, GGMLType.F16)
        assert out.size == 2 * x.size
        y = quants.dequantize(out, GGMLType.F16, x.size)
        np.testing.assert_allclose(x, y, rtol=1e-3, atol=1e-3)


class TestHistogram:
    def test_counts_every_value(self):
        x = random_blocks(8, seed=5)
        for t in QUANTIZED_TYPES:
            hist = np.zeros(quants.HIST_BINS, dtype=np.int64)
            quants.quantize(x, t, hist=hist)
            assert hist.sum() == x.size

    def test_q4_0_bins(self):
        x = np.zeros(32, dtype=np.float32)
        x[0] = -8.0
        hist = np.zeros(quants.HIST_BINS, dtype=np.int64)
        quants.quantize(x, GGMLType.Q4_0, hist=hist)
        assert hist[0] == 1
        assert hist[8] == 31

    def test_q8_0_bins_truncate_towards_zero(self):
        x = np.zeros(32, dtype=np.float32)
        x[0] = 127.0    # d = 1.0
        x[1] = -1.0     # -1 / 16 + 8 = 8
        x[2] = -17.0    # -17 / 16 + 8 = 7
        x[3] = -127.0   # -127 / 16 + 8 = 1
        hist = np.zeros(quants.HIST_BINS, dtype=np.int64)
        quants.quantize(x, GGMLType.Q8_0, hist=hist)
        assert hist[15] == 1
        assert hist[8] == 28 + 1
        assert hist[7] == 1
        assert hist[1] == 1
        assert hist.sum() == 32


class TestBadSizes:
    def test_partial_block(self):
        with pytest.raises(FormatError):
            quants.quantize(np.zeros(40, dtype=np.float32), GGMLType.Q4_0, name="w")

    def test_wrong_payload_length(self):
        with pytest.raises(FormatError):
            quants.dequantize(b"\x00" * 17, GGMLType.Q4_0, 32, name="w")
