"""
Model file writer.

Produces files in the layout BinaryModelReader parses. Used by the converter
(which writes everything from scratch) and by the quantizer (which copies the
source header verbatim with `write_raw` and then emits tensor records).
"""

import struct
from typing import BinaryIO, Sequence, Tuple

import numpy as np

from biogpt_rt.config import FILE_MAGIC, FILE_VERSION, HPARAM_FIELDS, TENSOR_ALIGNMENT, HyperParameters
from biogpt_rt.errors import FormatError, format_shape
from biogpt_rt.ggml_types import GGMLType, tensor_nbytes
from biogpt_rt.reader import Vocabulary, encode_token


# Byte offset of the ftype field: magic + version + the 7 hparams before it.
FTYPE_OFFSET = 8 + 4 * HPARAM_FIELDS.index("ftype")


class ModelFileWriter:
    """Sequential writer; tracks the absolute offset for payload alignment."""

    def __init__(self, path: str):
        self.path = path
        self._f: BinaryIO = open(path, "wb")
        self.bytes_written = 0

    def __enter__(self) -> "ModelFileWriter":
        return self

    def __exit__(self, *args):
        self.close()

    def close(self) -> None:
        if not self._f.closed:
            self._f.close()

    def write_raw(self, data) -> None:
        self._f.write(data)
        self.bytes_written += len(memoryview(data).cast("B"))

    def _write_u32(self, value: int) -> None:
        self.write_raw(struct.pack("<I", value))

    def _write_string(self, text: str) -> None:
        raw = encode_token(text)
        self._write_u32(len(raw))
        self.write_raw(raw)

    def write_header(self, hparams: HyperParameters, vocab: Vocabulary) -> None:
        """Magic, version, hparams, vocabulary and merges."""
        hparams.validate()
        if len(vocab) != hparams.n_vocab:
            raise FormatError(
                f"vocabulary has {len(vocab)} tokens but n_vocab is {hparams.n_vocab}"
            )
        if len(vocab.merges) != hparams.n_merges:
            raise FormatError(
                f"vocabulary has {len(vocab.merges)} merges but n_merges is {hparams.n_merges}"
            )
        self._write_u32(FILE_MAGIC)
        self._write_u32(FILE_VERSION)
        self.write_raw(struct.pack(f"<{len(HPARAM_FIELDS)}i", *hparams.as_tuple()))
        self._write_u32(len(vocab.tokens))
        for token in vocab.tokens:
            self._write_string(token)
        self._write_u32(len(vocab.merges))
        for left, right in vocab.merges:
            self._write_string(f"{left} {right}")

    def write_tensor(
        self,
        name: str,
        shape: Tuple[int, ...],
        ggml_type: GGMLType,
        payload,
    ) -> int:
        """
        Write one tensor record. `shape` is in on-disk order (ne0 first).

        The payload must be exactly tensor_nbytes(shape, ggml_type) bytes;
        a mismatch is a FormatError raised before anything is written.
        Returns the absolute offset of the payload.
        """
        if isinstance(payload, np.ndarray):
            data = np.ascontiguousarray(payload).reshape(-1).view(np.uint8)
        else:
            data = np.frombuffer(payload, dtype=np.uint8)
        expected = tensor_nbytes(shape, ggml_type, name)
        if data.size != expected:
            raise FormatError(
                f"tensor '{name}' {format_shape(shape)} as {ggml_type.name}: "
                f"payload is {data.size} bytes, expected {expected}"
            )
        raw_name = name.encode("utf-8")
        header = struct.pack(f"<3I{len(shape)}I", len(shape), len(raw_name), ggml_type.tag, *shape)
        self.write_raw(header)
        self.write_raw(raw_name)
        pad = -self.bytes_written % TENSOR_ALIGNMENT
        self.write_raw(b"\x00" * pad)
        offset = self.bytes_written
        self.write_raw(data.tobytes())
        return offset


def patch_ftype(header: bytearray, ftype: int) -> bytearray:
    """Overwrite the stored weight type in a copied header."""
    struct.pack_into("<i", header, FTYPE_OFFSET, ftype)
    return header


def write_model_file(
    path: str,
    hparams: HyperParameters,
    vocab: Vocabulary,
    tensors: Sequence[Tuple[str, Tuple[int, ...], GGMLType, np.ndarray]],
) -> None:
    """Write a complete single-file model from (name, shape, type, payload) records."""
    with ModelFileWriter(path) as writer:
        writer.write_header(hparams, vocab)
        for name, shape, ggml_type, payload in tensors:
            writer.write_tensor(name, shape, ggml_type, payload)
