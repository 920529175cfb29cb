"""
Binary model reader.

Parses the header (magic, version, hyperparameters, vocabulary, merges) and
walks the tensor records to build a TensorCatalog. Payloads are skipped, not
read: the materializer streams them into the arena later.

Every read is bounds-checked against the file size first, so a short file
fails with TruncationError naming what was being read instead of returning
partial data.
"""

import os
import struct
from dataclasses import dataclass, field
from typing import BinaryIO, Dict, List, Optional, Sequence, Tuple

from biogpt_rt.catalog import TensorCatalog
from biogpt_rt.config import (
    FILE_MAGIC,
    FILE_VERSION,
    HPARAM_FIELDS,
    TENSOR_ALIGNMENT,
    HyperParameters,
)
from biogpt_rt.errors import FormatError, TruncationError
from biogpt_rt.ggml_types import GGMLType, tensor_nbytes


MAX_DIMS = 2


def decode_token(raw: bytes) -> str:
    """Token bytes → str. Invalid UTF-8 survives as surrogate escapes."""
    return raw.decode("utf-8", errors="surrogateescape")


def encode_token(token: str) -> bytes:
    return token.encode("utf-8", errors="surrogateescape")


@dataclass
class Vocabulary:
    """
    Token strings and BPE merges stored in a model file.

    `tokens[i]` is the string for id i and `token_to_id` is its inverse; the
    two always describe a bijection over [0, n_vocab). `merges` keeps the
    file order, which is also the merge priority (`bpe_ranks`, lower first).
    """

    tokens: List[str] = field(default_factory=list)
    merges: List[Tuple[str, str]] = field(default_factory=list)
    token_to_id: Dict[str, int] = field(default_factory=dict)
    bpe_ranks: Dict[Tuple[str, str], int] = field(default_factory=dict)

    @classmethod
    def from_lists(
        cls, tokens: Sequence[str], merges: Sequence[Tuple[str, str]] = ()
    ) -> "Vocabulary":
        vocab = cls()
        for token in tokens:
            vocab.add_token(token)
        for pair in merges:
            vocab.add_merge(pair[0], pair[1])
        return vocab

    def add_token(self, token: str) -> int:
        if token in self.token_to_id:
            raise FormatError(
                f"duplicate vocabulary entry {token!r} at id {len(self.tokens)} "
                f"(first seen at id {self.token_to_id[token]})"
            )
        ix = len(self.tokens)
        self.tokens.append(token)
        self.token_to_id[token] = ix
        return ix

    def add_merge(self, left: str, right: str) -> None:
        pair = (left, right)
        self.bpe_ranks.setdefault(pair, len(self.merges))
        self.merges.append(pair)

    def __len__(self) -> int:
        return len(self.tokens)

    def id_of(self, token: str) -> int:
        return self.token_to_id[token]

    def token_of(self, ix: int) -> str:
        return self.tokens[ix]

    def decode(self, ids: Sequence[int]) -> str:
        """Join token strings; BioGPT marks word ends with '</w>'."""
        return "".join(self.tokens[i] for i in ids).replace("</w>", " ").strip()


class BinaryModelReader:
    """
    Sequential reader over one model file (or one shard of a set).

    Usage mirrors the file layout:

        with BinaryModelReader(path) as reader:
            hparams = reader.read_hparams()
            vocab = reader.read_vocab(hparams.n_vocab)
            reader.read_merges(hparams.n_merges, vocab)
            reader.read_tensor_metadata(0, catalog)

    The magic and version are checked when the file is opened.
    """

    def __init__(self, path: str):
        self.path = path
        self._f: BinaryIO = open(path, "rb")
        try:
            self.file_size = os.fstat(self._f.fileno()).st_size
            self._read_header()
        except BaseException:
            self._f.close()
            raise

    def __enter__(self) -> "BinaryModelReader":
        return self

    def __exit__(self, *args):
        self.close()

    def close(self) -> None:
        if not self._f.closed:
            self._f.close()

    def tell(self) -> int:
        return self._f.tell()

    # ─── primitive reads ──────────────────────────────────────────────────

    def _read_bytes(self, n: int, what: str) -> bytes:
        offset = self._f.tell()
        if offset + n > self.file_size:
            raise TruncationError(what, offset, n, self.file_size)
        return self._f.read(n)

    def _read_u32(self, what: str) -> int:
        return struct.unpack("<I", self._read_bytes(4, what))[0]

    def _skip(self, n: int, what: str) -> None:
        offset = self._f.tell()
        if offset + n > self.file_size:
            raise TruncationError(what, offset, n, self.file_size)
        self._f.seek(n, os.SEEK_CUR)

    # ─── header ───────────────────────────────────────────────────────────

    def _read_header(self) -> None:
        magic = self._read_u32("magic")
        if magic != FILE_MAGIC:
            raise FormatError(
                f"invalid model file '{self.path}' (bad magic 0x{magic:08x}, "
                f"expected 0x{FILE_MAGIC:08x})"
            )
        version = self._read_u32("version")
        if version != FILE_VERSION:
            raise FormatError(
                f"model file '{self.path}' has unsupported version {version} "
                f"(expected {FILE_VERSION})"
            )

    def read_hparams(self) -> HyperParameters:
        raw = self._read_bytes(4 * len(HPARAM_FIELDS), "hparams")
        values = struct.unpack(f"<{len(HPARAM_FIELDS)}i", raw)
        hparams = HyperParameters(**dict(zip(HPARAM_FIELDS, values)))
        hparams.validate()
        return hparams

    def read_vocab(self, n_vocab: int) -> Vocabulary:
        count = self._read_u32("vocab size")
        if count != n_vocab:
            raise FormatError(
                f"vocab size mismatch: file has {count} entries, hparams say {n_vocab}"
            )
        vocab = Vocabulary()
        for i in range(count):
            length = self._read_u32(f"vocab entry {i} length")
            vocab.add_token(decode_token(self._read_bytes(length, f"vocab entry {i}")))
        return vocab

    def read_merges(self, n_merges: int, vocab: Optional[Vocabulary] = None) -> Vocabulary:
        """Read the merge list into `vocab` (a fresh one if None)."""
        vocab = vocab if vocab is not None else Vocabulary()
        count = self._read_u32("merges size")
        if count != n_merges:
            raise FormatError(
                f"merges size mismatch: file has {count} entries, hparams say {n_merges}"
            )
        for i in range(count):
            length = self._read_u32(f"merge {i} length")
            text = decode_token(self._read_bytes(length, f"merge {i}"))
            parts = text.split(None, 1)
            if len(parts) != 2:
                raise FormatError(f"merge {i} is not a pair: {text!r}")
            vocab.add_merge(parts[0], parts[1].strip())
        return vocab

    # ─── tensors ──────────────────────────────────────────────────────────

    def read_tensor_metadata(self, shard_index: int, catalog: TensorCatalog) -> int:
        """
        Walk tensor records until end of file, adding each to `catalog`.

        Returns the number of records read from this shard.
        """
        n_records = 0
        while self._f.tell() < self.file_size:
            ndims = self._read_u32("tensor ndims")
            name_len = self._read_u32("tensor name length")
            tag = self._read_u32("tensor type")
            if ndims < 1 or ndims > MAX_DIMS:
                raise FormatError(
                    f"tensor record {n_records} in shard {shard_index}: "
                    f"unsupported dimension count {ndims}"
                )
            ggml_type = GGMLType.from_tag(tag)
            shape = tuple(self._read_u32("tensor shape") for _ in range(ndims))
            raw_name = self._read_bytes(name_len, "tensor name")
            try:
                name = raw_name.decode("utf-8")
            except UnicodeDecodeError as e:
                raise FormatError(f"tensor name is not valid UTF-8: {raw_name!r}") from e

            pad = -self._f.tell() % TENSOR_ALIGNMENT
            self._skip(pad, f"alignment padding of '{name}'")

            offset = self._f.tell()
            nbytes = tensor_nbytes(shape, ggml_type, name)
            self._skip(nbytes, f"data of '{name}'")
            catalog.add_record(name, shape, ggml_type, shard_index, offset, nbytes)
            n_records += 1
        return n_records


def discover_shards(path: str) -> List[str]:
    """Return `path` followed by any `path.1`, `path.2`, ... that exist."""
    paths = [path]
    i = 1
    while os.path.exists(f"{path}.{i}"):
        paths.append(f"{path}.{i}")
        i += 1
    return paths


def read_model_files(
    paths: Sequence[str],
) -> Tuple[HyperParameters, Vocabulary, TensorCatalog]:
    """
    Read the header of every shard and catalog their tensors.

    Each shard repeats the full header; hyperparameters, vocabulary and
    merges must be identical across the set or the files do not belong
    together.
    """
    if not paths:
        raise ValueError("no model files given")
    catalog = TensorCatalog()
    hparams = vocab = None
    for shard_index, path in enumerate(paths):
        with BinaryModelReader(path) as reader:
            shard_hparams = reader.read_hparams()
            shard_vocab = reader.read_vocab(shard_hparams.n_vocab)
            reader.read_merges(shard_hparams.n_merges, shard_vocab)
            if hparams is None:
                hparams, vocab = shard_hparams, shard_vocab
            else:
                if shard_hparams != hparams:
                    raise FormatError(
                        f"shard '{path}' hparams {shard_hparams} differ from "
                        f"first shard {hparams}"
                    )
                if shard_vocab.tokens != vocab.tokens or shard_vocab.merges != vocab.merges:
                    raise FormatError(f"shard '{path}' vocabulary differs from first shard")
            reader.read_tensor_metadata(shard_index, catalog)
    return hparams, vocab, catalog
