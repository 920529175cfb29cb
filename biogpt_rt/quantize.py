"""
Model quantizer: rewrite a model file with its 2-D weights in another type.

HOW A FILE IS QUANTIZED:
  0. The source is materialized like a load: every tensor the architecture
     needs must be present with its shape, and no others
     (MissingTensorError, ShapeMismatchError, ExtraTensorError). Nothing is
     written to the destination before this succeeds.
  1. The header (magic, version, hparams, vocab, merges) is copied byte for
     byte, except the ftype field which is overwritten with the target tag.
  2. Every tensor record is rewritten in file order:
       1-D tensors (biases, LayerNorm)   copied unchanged
       2-D tensors already in target     payload copied unchanged
       other 2-D tensors                 dequantized to float32, then
                                         quantized to the target type
  3. Each new payload is checked against tensor_nbytes(shape, target) before
     it is written, and starts on a 32-byte file offset.

The destination is written in place. A failure part way leaves a truncated,
invalid file behind; callers that care should write to a temporary name.

Any type can be a target, including F32 and F16. Re-quantizing a file into
the type it already has reproduces it byte for byte.
"""

from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Optional, Union

import numpy as np

from biogpt_rt import quants
from biogpt_rt.catalog import TensorCatalog
from biogpt_rt.ggml_types import GGMLType
from biogpt_rt.model import ModelMaterializer, bind_model
from biogpt_rt.reader import BinaryModelReader
from biogpt_rt.utils import ProgressCallback, RunLogger, default_logger
from biogpt_rt.writer import ModelFileWriter, patch_ftype


@dataclass
class QuantizeReport:
    """Sizes and code histogram of one quantization run."""
    target: GGMLType
    n_tensors: int = 0
    n_converted: int = 0
    size_org: int = 0           # payload bytes in the source
    size_new: int = 0           # payload bytes in the destination
    hist: np.ndarray = field(default_factory=lambda: np.zeros(quants.HIST_BINS, dtype=np.int64))

    @property
    def hist_fractions(self) -> np.ndarray:
        total = self.hist.sum()
        if total == 0:
            return np.zeros(quants.HIST_BINS, dtype=np.float64)
        return self.hist / total

    def summary_string(self) -> str:
        hist = " ".join(f"{v:5.3f}" for v in self.hist_fractions)
        return "\n".join([
            f"model size  = {self.size_org / 1024**2:8.2f} MB",
            f"quant size  = {self.size_new / 1024**2:8.2f} MB",
            f"tensors     = {self.n_tensors} ({self.n_converted} converted to {self.target.name.lower()})",
            f"hist        : {hist}",
        ])


def _quantize_parallel(
    values: np.ndarray,
    target: GGMLType,
    hist: np.ndarray,
    name: str,
    n_threads: int,
) -> np.ndarray:
    """Quantize block-aligned chunks on a thread pool; the output is identical to one call."""
    n_blocks = values.size // target.block_size
    if n_threads <= 1 or not target.is_quantized or n_blocks < 2 * n_threads:
        return quants.quantize(values, target, hist=hist, name=name)

    bounds = np.linspace(0, n_blocks, n_threads + 1).astype(np.int64) * target.block_size
    chunks = [values[bounds[i]:bounds[i + 1]] for i in range(n_threads)]
    hists = [np.zeros(quants.HIST_BINS, dtype=np.int64) for _ in chunks]
    with ThreadPoolExecutor(max_workers=n_threads) as pool:
        parts = list(pool.map(
            lambda args: quants.quantize(args[0], target, hist=args[1], name=name),
            zip(chunks, hists),
        ))
    for h in hists:
        hist += h
    return np.concatenate(parts)


def quantize_model(
    src: str,
    dst: str,
    target: Union[GGMLType, int, str],
    n_threads: int = 1,
    progress_callback: Optional[ProgressCallback] = None,
    logger: Optional[RunLogger] = None,
) -> QuantizeReport:
    """
    Write `dst`: a copy of the model file `src` with 2-D weights stored as `target`.

    Args:
        src: Source model file (single file, not a shard set).
        dst: Destination path (created or truncated).
        target: GGMLType, on-disk tag, or name such as "q4_0".
        n_threads: Worker threads for the block kernels.
        progress_callback: Called with the fraction of tensors written.
        logger: Where to report; console if None.

    Raises:
        OSError: either file could not be opened (logged first).
        FormatError: the source is malformed or a tensor cannot be
            expressed in the target type.
        MissingTensorError, ShapeMismatchError, ExtraTensorError: the
            source does not match the BioGPT architecture.
    """
    logger = default_logger(logger)
    if isinstance(target, str):
        target = GGMLType.from_name(target)
    elif not isinstance(target, GGMLType):
        target = GGMLType.from_tag(target)
    report = progress_callback or (lambda fraction: None)


    # ── Scan the source ───────────────────────────────────────────────────
    try:
        reader = BinaryModelReader(src)
    except OSError as e:
        logger.log_error(f"failed to open '{src}' for reading: {e}")
        raise
    catalog = TensorCatalog()
    with reader:
        hparams = reader.read_hparams()
        vocab = reader.read_vocab(hparams.n_vocab)
        reader.read_merges(hparams.n_merges, vocab)
        header_end = reader.tell()
        reader.read_tensor_metadata(0, catalog)

    # ── Materialize it: every architecture tensor present, nothing extra ──
    mat = ModelMaterializer([src], catalog, logger=logger)
    model = bind_model(mat, hparams, vocab)
    mat.done_getting_tensors()
    mat.load_all_data()

    logger.log_info(
        f"quantizing '{src}' -> '{dst}' as {target.name.lower()} "
        f"({len(catalog)} tensors, ftype {hparams.ftype} -> {target.tag})"
    )

    result = QuantizeReport(target=target)
    n_total = len(catalog)
    report(0.0)

    with open(src, "rb") as fin:
        header = bytearray(fin.read(header_end))

    try:
        writer = ModelFileWriter(dst)
    except OSError as e:
        logger.log_error(f"failed to open '{dst}' for writing: {e}")
        raise

    with writer:
        writer.write_raw(patch_ftype(header, target.tag))

        for i, entry in enumerate(catalog):
            bound = model.tensors[entry.name]
            raw = bound.data.numpy()

            if entry.ndims == 1 or entry.ggml_type is target:
                out_type, payload = entry.ggml_type, raw
            else:
                values = quants.dequantize(raw, entry.ggml_type, entry.n_elements, entry.name)
                payload = _quantize_parallel(values, target, result.hist, entry.name, n_threads)
                out_type = target
                result.n_converted += 1

            writer.write_tensor(entry.name, entry.shape, out_type, payload)
            result.n_tensors += 1
            result.size_org += bound.nbytes
            result.size_new += payload.size
            logger.log_tensor(
                entry.name, entry.shape, out_type.name.lower(), payload.size / 1024**2,
                f" (was {entry.ggml_type.name.lower()}, {bound.nbytes / 1024**2:.2f} MB)",
            )
            report((i + 1) / n_total)

    model.close()
    logger.log_info(result.summary_string())
    return result
