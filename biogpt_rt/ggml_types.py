"""
Element types a tensor record can be stored in.

The set is closed: a type tag outside this enum is a FormatError when a file
is read. Each member carries its block geometry as associated data:

  ┌───────┬─────┬────────────┬─────────────────┬───────────────────────────────┐
  │ type  │ tag │ block_size │ bytes_per_block │ block layout                  │
  ├───────┼─────┼────────────┼─────────────────┼───────────────────────────────┤
  │ F32   │  0  │      1     │        4        │ float32                       │
  │ F16   │  1  │      1     │        2        │ float16                       │
  │ Q4_0  │  2  │     32     │       18        │ d:f16, qs:16B (4-bit)         │
  │ Q4_1  │  3  │     32     │       20        │ d:f16, m:f16, qs:16B          │
  │ Q5_0  │  6  │     32     │       22        │ d:f16, qh:u32, qs:16B         │
  │ Q5_1  │  7  │     32     │       24        │ d:f16, m:f16, qh:u32, qs:16B  │
  │ Q8_0  │  8  │     32     │       34        │ d:f16, qs:32 × int8           │
  └───────┴─────┴────────────┴─────────────────┴───────────────────────────────┘

Tags 4 and 5 belonged to formats that were retired before this layout was
fixed and are rejected.
"""

from enum import Enum
from typing import Sequence

from biogpt_rt.errors import FormatError


class GGMLType(Enum):
    F32 = (0, 1, 4)
    F16 = (1, 1, 2)
    Q4_0 = (2, 32, 18)
    Q4_1 = (3, 32, 20)
    Q5_0 = (6, 32, 22)
    Q5_1 = (7, 32, 24)
    Q8_0 = (8, 32, 34)

    def __init__(self, tag: int, block_size: int, bytes_per_block: int):
        self.tag = tag
        self.block_size = block_size
        self.bytes_per_block = bytes_per_block

    @property
    def is_quantized(self) -> bool:
        return self.block_size > 1

    @classmethod
    def from_tag(cls, tag: int) -> "GGMLType":
        """Look up a type by its on-disk tag (FormatError if unknown)."""
        for member in cls:
            if member.tag == tag:
                return member
        raise FormatError(f"unrecognized tensor type {tag}")

    @classmethod
    def from_name(cls, name: str) -> "GGMLType":
        """Look up a type by name, case-insensitive ("q4_0", "F16", ...)."""
        try:
            return cls[name.upper()]
        except KeyError:
            raise ValueError(
                f"Unknown type '{name}'. Choose from: {[m.name.lower() for m in cls]}"
            ) from None


QUANTIZED_TYPES = tuple(t for t in GGMLType if t.is_quantized)


def tensor_nbytes(shape: Sequence[int], ggml_type: GGMLType, name: str = "?") -> int:
    """
    Byte size of a tensor: prod(shape) * bytes_per_block / block_size.

    The element count must be a whole number of blocks. A remainder means the
    file (or the requested conversion) is malformed, so this raises instead
    of rounding.
    """
    n_elements = 1
    for d in shape:
        n_elements *= d
    n_blocks, remainder = divmod(n_elements, ggml_type.block_size)
    if remainder:
        raise FormatError(
            f"tensor '{name}': {n_elements} elements is not a multiple of the "
            f"{ggml_type.name} block size {ggml_type.block_size}"
        )
    return n_blocks * ggml_type.bytes_per_block
