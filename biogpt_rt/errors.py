"""
Exception taxonomy for the runtime.

Every failure the core can report has its own class so that callers can
decide what to do without parsing messages:

  BioGPTError
    ├── FormatError            bad magic/version, malformed field, unsupported
    │     │                    type or dimension count, inexact byte size
    │     └── TruncationError  end of file before the expected bytes
    ├── ShapeMismatchError     catalog shape disagrees with the architecture
    ├── MissingTensorError     architecture needs a tensor the file lacks
    ├── ExtraTensorError       file has tensors the architecture never claimed
    ├── ContextOverflowError   n_past + N > n_positions
    └── ResourceError          arena allocation failure

Load and quantize errors are fatal to the operation in progress. Messages
always carry the tensor name and the expected vs actual values so a caller
can log and abort.
"""

from typing import Sequence


class BioGPTError(Exception):
    """Base class for all runtime errors."""


class FormatError(BioGPTError):
    """The model file is malformed or uses something this runtime does not support."""


class TruncationError(FormatError):
    """A read would cross the end of the file."""

    def __init__(self, what: str, offset: int, wanted: int, file_size: int):
        super().__init__(
            f"unexpected end of file while reading {what}: "
            f"need {wanted} bytes at offset {offset}, file is {file_size} bytes"
        )
        self.offset = offset
        self.wanted = wanted
        self.file_size = file_size


class ShapeMismatchError(BioGPTError):
    """A tensor's shape in the file differs from what the architecture expects."""

    def __init__(self, name: str, expected: Sequence[int], actual: Sequence[int]):
        super().__init__(
            f"tensor '{name}' has wrong shape; expected {format_shape(expected)}, "
            f"got {format_shape(actual)}"
        )
        self.name = name
        self.expected = tuple(expected)
        self.actual = tuple(actual)


class MissingTensorError(BioGPTError):
    """The architecture requires a tensor the file does not contain."""

    def __init__(self, name: str):
        super().__init__(f"tensor '{name}' is missing from model")
        self.name = name


class ExtraTensorError(BioGPTError):
    """The file contains tensors that no architecture field claimed."""

    def __init__(self, names: Sequence[str]):
        preview = ", ".join(f"'{n}'" for n in list(names)[:5])
        more = f" (+{len(names) - 5} more)" if len(names) > 5 else ""
        super().__init__(
            f"file contained more tensors than expected: {preview}{more}"
        )
        self.names = list(names)


class ContextOverflowError(BioGPTError):
    """A decode call would run past the end of the context window."""

    def __init__(self, n_past: int, n_tokens: int, n_positions: int):
        super().__init__(
            f"context overflow: n_past ({n_past}) + tokens ({n_tokens}) "
            f"> n_positions ({n_positions})"
        )
        self.n_past = n_past
        self.n_tokens = n_tokens
        self.n_positions = n_positions


class ResourceError(BioGPTError):
    """An arena could not be allocated."""

    def __init__(self, what: str, n_bytes: int):
        super().__init__(f"failed to allocate {n_bytes:,} bytes for {what}")
        self.what = what
        self.n_bytes = n_bytes


def format_shape(shape: Sequence[int]) -> str:
    """Render a shape the way tensor listings print it: [1024, 42384]."""
    return "[" + ", ".join(f"{d}" for d in shape) + "]"
