"""
Block quantization kernels.

Every quantized type groups values into blocks of 32 and stores, per block,
a float16 scale (and for the "_1" variants a float16 minimum) followed by
packed integer codes. The kernels below reproduce the ggml reference
routines exactly, vectorized with numpy over all blocks at once instead of
looping block by block.

HOW A Q4_0 BLOCK IS BUILT:
─────────────────────────
  x = 32 floats
  max = the element with the largest |x| (sign kept)
  d   = max / -8                    so that max maps to code 0
  q   = min(15, trunc(x / d + 8.5)) codes in [0, 15]
  qs[j] = q[j] | q[j + 16] << 4     first half in low nibbles

  dequantized: (q - 8) * d

The other formats follow the same pattern:
  Q4_1: d = (max - min) / 15, m = min, value = q * d + m
  Q5_0: like Q4_0 with 5-bit codes, d = max / -16; the fifth bit of every
        code lives in a 32-bit mask qh (bit j for element j)
  Q5_1: like Q4_1 with 5-bit codes, d = (max - min) / 31
  Q8_0: d = max|x| / 127, q = round(x / d) as int8

Codes are computed with the float32 scale; the stored scale is its float16
rounding. That asymmetry is part of the format: files produced here are
byte-identical to those produced by the reference tools.
"""

from typing import Optional

import numpy as np

from biogpt_rt.errors import FormatError
from biogpt_rt.ggml_types import GGMLType


QK = 32  # elements per quantized block

# Packed (unaligned) block layouts. Item sizes match bytes_per_block.
BLOCK_DTYPES = {
    GGMLType.Q4_0: np.dtype([("d", "<f2"), ("qs", "u1", (QK // 2,))]),
    GGMLType.Q4_1: np.dtype([("d", "<f2"), ("m", "<f2"), ("qs", "u1", (QK // 2,))]),
    GGMLType.Q5_0: np.dtype([("d", "<f2"), ("qh", "<u4"), ("qs", "u1", (QK // 2,))]),
    GGMLType.Q5_1: np.dtype(
        [("d", "<f2"), ("m", "<f2"), ("qh", "<u4"), ("qs", "u1", (QK // 2,))]
    ),
    GGMLType.Q8_0: np.dtype([("d", "<f2"), ("qs", "i1", (QK,))]),
}

HIST_BINS = 16


def _blocks(x: np.ndarray, name: str) -> np.ndarray:
    x = np.ascontiguousarray(x, dtype=np.float32).reshape(-1)
    if x.size % QK:
        raise FormatError(
            f"tensor '{name}': {x.size} elements is not a multiple of block size {QK}"
        )
    return x.reshape(-1, QK)


def _signed_absmax(xb: np.ndarray) -> np.ndarray:
    """Per block, the element with the largest magnitude (first one on ties)."""
    idx = np.argmax(np.abs(xb), axis=1)
    return xb[np.arange(xb.shape[0]), idx]


def _inverse(d: np.ndarray) -> np.ndarray:
    out = np.zeros_like(d)
    np.divide(1.0, d, out=out, where=d != 0)
    return out


def _pack_nibbles(q: np.ndarray) -> np.ndarray:
    half = QK // 2
    return ((q[:, :half] & 0x0F) | ((q[:, half:] & 0x0F) << 4)).astype(np.uint8)


def _pack_high_bits(q: np.ndarray) -> np.ndarray:
    bits = ((q >> 4) & 1).astype(np.uint32)
    shifts = np.arange(QK, dtype=np.uint32)
    return (bits << shifts).sum(axis=1, dtype=np.uint32)


def _unpack_nibbles(qs: np.ndarray) -> np.ndarray:
    return np.concatenate([qs & 0x0F, qs >> 4], axis=1).astype(np.int32)


def _unpack_high_bits(qh: np.ndarray) -> np.ndarray:
    shifts = np.arange(QK, dtype=np.uint32)
    return (((qh[:, None] >> shifts) & 1) << 4).astype(np.int32)


def _accumulate(hist: Optional[np.ndarray], codes: np.ndarray, shift: int) -> None:
    if hist is None:
        return
    bins = np.bincount((codes.reshape(-1) >> shift).astype(np.int64), minlength=HIST_BINS)
    hist[: HIST_BINS] += bins[:HIST_BINS]


# ═══════════════════════════════════════════════════════════════════════════
# Quantize: float32 → packed blocks
# ═══════════════════════════════════════════════════════════════════════════

def quantize_q4_0(x: np.ndarray, hist: Optional[np.ndarray] = None, name: str = "?") -> np.ndarray:
    xb = _blocks(x, name)
    d = _signed_absmax(xb) / np.float32(-8.0)
    inv = _inverse(d)
    q = np.minimum(15, np.trunc(xb * inv[:, None] + np.float32(8.5))).astype(np.int32)
    q = np.clip(q, 0, 15)
    out = np.empty(xb.shape[0], dtype=BLOCK_DTYPES[GGMLType.Q4_0])
    out["d"] = d.astype(np.float16)
    out["qs"] = _pack_nibbles(q)
    _accumulate(hist, q, 0)
    return out.view(np.uint8)


def quantize_q4_1(x: np.ndarray, hist: Optional[np.ndarray] = None, name: str = "?") -> np.ndarray:
    xb = _blocks(x, name)
    lo = xb.min(axis=1)
    hi = xb.max(axis=1)
    d = (hi - lo) / np.float32(15.0)
    inv = _inverse(d)
    q = np.minimum(15, np.trunc((xb - lo[:, None]) * inv[:, None] + np.float32(0.5)))
    q = np.clip(q, 0, 15).astype(np.int32)
    out = np.empty(xb.shape[0], dtype=BLOCK_DTYPES[GGMLType.Q4_1])
    out["d"] = d.astype(np.float16)
    out["m"] = lo.astype(np.float16)
    out["qs"] = _pack_nibbles(q)
    _accumulate(hist, q, 0)
    return out.view(np.uint8)


def quantize_q5_0(x: np.ndarray, hist: Optional[np.ndarray] = None, name: str = "?") -> np.ndarray:
    xb = _blocks(x, name)
    d = _signed_absmax(xb) / np.float32(-16.0)
    inv = _inverse(d)
    q = np.minimum(31, np.trunc(xb * inv[:, None] + np.float32(16.5)))
    q = np.clip(q, 0, 31).astype(np.int32)
    out = np.empty(xb.shape[0], dtype=BLOCK_DTYPES[GGMLType.Q5_0])
    out["d"] = d.astype(np.float16)
    out["qh"] = _pack_high_bits(q)
    out["qs"] = _pack_nibbles(q)
    _accumulate(hist, q, 1)
    return out.view(np.uint8)


def quantize_q5_1(x: np.ndarray, hist: Optional[np.ndarray] = None, name: str = "?") -> np.ndarray:
    xb = _blocks(x, name)
    lo = xb.min(axis=1)
    hi = xb.max(axis=1)
    d = (hi - lo) / np.float32(31.0)
    inv = _inverse(d)
    q = np.trunc((xb - lo[:, None]) * inv[:, None] + np.float32(0.5))
    q = np.clip(q, 0, 31).astype(np.int32)
    out = np.empty(xb.shape[0], dtype=BLOCK_DTYPES[GGMLType.Q5_1])
    out["d"] = d.astype(np.float16)
    out["m"] = lo.astype(np.float16)
    out["qh"] = _pack_high_bits(q)
    out["qs"] = _pack_nibbles(q)
    _accumulate(hist, q, 1)
    return out.view(np.uint8)


def quantize_q8_0(x: np.ndarray, hist: Optional[np.ndarray] = None, name: str = "?") -> np.ndarray:
    xb = _blocks(x, name)
    d = np.abs(xb).max(axis=1) / np.float32(127.0)
    inv = _inverse(d)
    v = xb * inv[:, None]
    # roundf: halves away from zero
    q = (np.sign(v) * np.floor(np.abs(v) + np.float32(0.5))).astype(np.int32)
    q = np.clip(q, -128, 127)
    out = np.empty(xb.shape[0], dtype=BLOCK_DTYPES[GGMLType.Q8_0])
    out["d"] = d.astype(np.float16)
    out["qs"] = q.astype(np.int8)
    # bins follow C integer division: q / 16 + 8
    _accumulate(hist, np.trunc(q / 16).astype(np.int32) + 8, 0)
    return out.view(np.uint8)


# ═══════════════════════════════════════════════════════════════════════════
# Dequantize: packed blocks → float32
# ═══════════════════════════════════════════════════════════════════════════

def _as_blocks(data, ggml_type: GGMLType, n_elements: int, name: str) -> np.ndarray:
    raw = np.frombuffer(data, dtype=np.uint8)
    n_blocks = n_elements // QK
    want = n_blocks * ggml_type.bytes_per_block
    if n_elements % QK or raw.size != want:
        raise FormatError(
            f"tensor '{name}': {ggml_type.name} payload is {raw.size} bytes, "
            f"expected {want} for {n_elements} elements"
        )
    return raw.view(BLOCK_DTYPES[ggml_type])


def dequantize_q4_0(blocks: np.ndarray) -> np.ndarray:
    d = blocks["d"].astype(np.float32)[:, None]
    return (_unpack_nibbles(blocks["qs"]) - 8).astype(np.float32) * d


def dequantize_q4_1(blocks: np.ndarray) -> np.ndarray:
    d = blocks["d"].astype(np.float32)[:, None]
    m = blocks["m"].astype(np.float32)[:, None]
    return _unpack_nibbles(blocks["qs"]).astype(np.float32) * d + m


def dequantize_q5_0(blocks: np.ndarray) -> np.ndarray:
    d = blocks["d"].astype(np.float32)[:, None]
    q = _unpack_nibbles(blocks["qs"]) | _unpack_high_bits(blocks["qh"])
    return (q - 16).astype(np.float32) * d


def dequantize_q5_1(blocks: np.ndarray) -> np.ndarray:
    d = blocks["d"].astype(np.float32)[:, None]
    m = blocks["m"].astype(np.float32)[:, None]
    q = _unpack_nibbles(blocks["qs"]) | _unpack_high_bits(blocks["qh"])
    return q.astype(np.float32) * d + m


def dequantize_q8_0(blocks: np.ndarray) -> np.ndarray:
    d = blocks["d"].astype(np.float32)[:, None]
    return blocks["qs"].astype(np.float32) * d


_QUANTIZERS = {
    GGMLType.Q4_0: quantize_q4_0,
    GGMLType.Q4_1: quantize_q4_1,
    GGMLType.Q5_0: quantize_q5_0,
    GGMLType.Q5_1: quantize_q5_1,
    GGMLType.Q8_0: quantize_q8_0,
}

_DEQUANTIZERS = {
    GGMLType.Q4_0: dequantize_q4_0,
    GGMLType.Q4_1: dequantize_q4_1,
    GGMLType.Q5_0: dequantize_q5_0,
    GGMLType.Q5_1: dequantize_q5_1,
    GGMLType.Q8_0: dequantize_q8_0,
}


def quantize(
    x: np.ndarray,
    ggml_type: GGMLType,
    hist: Optional[np.ndarray] = None,
    name: str = "?",
) -> np.ndarray:
    """
    Encode float values as `ggml_type`, returning the packed payload as uint8.

    F32 and F16 are plain casts. For block types, `hist` (length HIST_BINS,
    int64) accumulates a histogram of the produced codes scaled to 16 bins.
    """
    if ggml_type is GGMLType.F32:
        return np.ascontiguousarray(x, dtype="<f4").reshape(-1).view(np.uint8)
    if ggml_type is GGMLType.F16:
        return np.ascontiguousarray(x, dtype="<f2").reshape(-1).view(np.uint8)
    return _QUANTIZERS[ggml_type](x, hist=hist, name=name)


def dequantize(data, ggml_type: GGMLType, n_elements: int, name: str = "?") -> np.ndarray:
    """Decode a payload (bytes, memoryview or uint8 array) into a flat float32 array."""
    if ggml_type is GGMLType.F32:
        out = np.frombuffer(data, dtype="<f4")
    elif ggml_type is GGMLType.F16:
        out = np.frombuffer(data, dtype="<f2").astype(np.float32)
    else:
        out = _DEQUANTIZERS[ggml_type](_as_blocks(data, ggml_type, n_elements, name))
    out = out.reshape(-1)
    if out.size != n_elements:
        raise FormatError(
            f"tensor '{name}': decoded {out.size} elements, expected {n_elements}"
        )
    return out
