"""
Tensor catalog: what the model files contain, before anything is loaded.

The reader walks every tensor record in every shard and records WHERE each
payload lives. Nothing is read into memory at this stage; the materializer
uses the catalog to size the arena and then streams payloads into place.

SHARDS:
A tensor may be split across k shard files. Each shard stores a slice with
the same shape and type; the logical tensor is the concatenation of the
slices in shard order, so its outermost (last on-disk) dimension is k times
the slice's:

    shard 0: {1024, 512}  ─┐
    shard 1: {1024, 512}  ─┴─► logical {1024, 1024}
"""

from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Iterator, List, Tuple

from biogpt_rt.errors import FormatError, format_shape
from biogpt_rt.ggml_types import GGMLType, tensor_nbytes


@dataclass(frozen=True)
class TensorShard:
    """One on-disk slice of a tensor."""

    shard_index: int
    file_offset: int
    nbytes: int


@dataclass
class TensorDescriptor:
    """
    A named tensor as described by the file(s).

    `shape` is in on-disk order: shape[0] (ne0) is the contiguous dimension.
    The torch view of the same tensor has the reversed shape.
    """

    name: str
    shard_shape: Tuple[int, ...]
    ggml_type: GGMLType
    shards: List[TensorShard] = field(default_factory=list)

    @property
    def shape(self) -> Tuple[int, ...]:
        """Logical shape: shard shape with the outermost dim scaled by the shard count."""
        k = max(1, len(self.shards))
        return self.shard_shape[:-1] + (self.shard_shape[-1] * k,)

    @property
    def torch_shape(self) -> Tuple[int, ...]:
        return tuple(reversed(self.shape))

    @property
    def ndims(self) -> int:
        return len(self.shard_shape)

    @property
    def n_elements(self) -> int:
        n = 1
        for d in self.shape:
            n *= d
        return n

    @property
    def nbytes(self) -> int:
        return tensor_nbytes(self.shape, self.ggml_type, self.name)

    def add_shard(self, shard: TensorShard) -> None:
        self.shards.append(shard)


class TensorCatalog:
    """
    Ordered mapping name → TensorDescriptor, built incrementally by the reader.

    Insertion order is the order in which tensors were first seen, which is
    also the order the materializer lays slots out in the arena.
    """

    def __init__(self):
        self._entries: "OrderedDict[str, TensorDescriptor]" = OrderedDict()

    def add_record(
        self,
        name: str,
        shape: Tuple[int, ...],
        ggml_type: GGMLType,
        shard_index: int,
        file_offset: int,
        nbytes: int,
    ) -> TensorDescriptor:
        """
        Record one tensor record found in shard `shard_index`.

        A name seen before (in an earlier shard) gains another shard; its
        slice shape and type must match what was recorded first.
        """
        shape = tuple(shape)
        entry = self._entries.get(name)
        if entry is None:
            entry = TensorDescriptor(name=name, shard_shape=shape, ggml_type=ggml_type)
            self._entries[name] = entry
        else:
            if entry.shard_shape != shape:
                raise FormatError(
                    f"tensor '{name}' has shape {format_shape(shape)} in shard "
                    f"{shard_index} but {format_shape(entry.shard_shape)} earlier"
                )
            if entry.ggml_type is not ggml_type:
                raise FormatError(
                    f"tensor '{name}' has type {ggml_type.name} in shard "
                    f"{shard_index} but {entry.ggml_type.name} earlier"
                )
            if any(s.shard_index == shard_index for s in entry.shards):
                raise FormatError(
                    f"tensor '{name}' appears twice in shard {shard_index}"
                )
        entry.add_shard(TensorShard(shard_index, file_offset, nbytes))
        return entry

    def __getitem__(self, name: str) -> TensorDescriptor:
        return self._entries[name]

    def get(self, name: str):
        return self._entries.get(name)

    def __contains__(self, name: str) -> bool:
        return name in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self) -> Iterator[TensorDescriptor]:
        return iter(self._entries.values())

    def names(self) -> List[str]:
        return list(self._entries)

    def total_nbytes(self) -> int:
        return sum(entry.nbytes for entry in self._entries.values())

    def n_shard_records(self) -> int:
        return sum(len(entry.shards) for entry in self._entries.values())
