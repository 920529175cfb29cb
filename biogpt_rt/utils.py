"""
Utility functions for the BioGPT inference runtime.

This module contains cross-cutting concerns that don't belong in any
specific component: reproducibility (seeding), diagnostics (catalog and
memory summaries), timing, logging and progress reporting.
"""

import os
import time
import random
from contextlib import contextmanager
from datetime import datetime
from typing import Callable, Iterator, Optional

import numpy as np
import torch
from tqdm import tqdm

from biogpt_rt.catalog import TensorCatalog
from biogpt_rt.errors import format_shape


ProgressCallback = Callable[[float], None]


# ═══════════════════════════════════════════════════════════════════════════
# REPRODUCIBILITY
# ═══════════════════════════════════════════════════════════════════════════

def resolve_seed(seed: int) -> int:
    """Negative seeds mean "pick one from the clock"."""
    if seed < 0:
        return int(time.time())
    return seed


def set_seed(seed: int) -> torch.Generator:
    """
    Seed every random number generator and return a dedicated sampler RNG.

    The returned torch.Generator is what the sampler draws from. Passing it
    explicitly (instead of relying on the global torch RNG) keeps two
    generators with the same seed producing the same token sequence even
    when other code touches the global state in between.

    Args:
        seed: The random seed value. Use the same seed for reproducible runs.
    """
    random.seed(seed)
    np.random.seed(seed)
    torch.manual_seed(seed)
    rng = torch.Generator()
    rng.manual_seed(seed)
    return rng


# ═══════════════════════════════════════════════════════════════════════════
# MODEL DIAGNOSTICS
# ═══════════════════════════════════════════════════════════════════════════

def print_catalog_summary(catalog: TensorCatalog, verbose: bool = True) -> str:
    """
    Print the tensors a model file contains, grouped by storage type.

    Example output:
      =================================================================
      Tensor Catalog
      =================================================================
      Name                                    Shape           Type  Shards
      -----------------------------------------------------------------
        embed_tokens.weight                   [1024, 42384]   q4_0       1
        ...
      -----------------------------------------------------------------
        f32                          123 tensors      2.1 MB
        q4_0                         145 tensors    190.4 MB
        TOTAL                        268 tensors    192.5 MB
      =================================================================

    Returns:
        The summary as a string (also printed to stdout).
    """
    lines = []
    lines.append("=" * 65)
    lines.append("Tensor Catalog")
    lines.append("=" * 65)
    if verbose:
        lines.append(f"{'Name':<40} {'Shape':<15} {'Type':<5} {'Shards':>6}")
        lines.append("-" * 65)

    by_type = {}
    for entry in catalog:
        count, nbytes = by_type.get(entry.ggml_type.name, (0, 0))
        by_type[entry.ggml_type.name] = (count + 1, nbytes + entry.nbytes)
        if verbose:
            lines.append(
                f"  {entry.name:<38} {format_shape(entry.shape):<15} "
                f"{entry.ggml_type.name.lower():<5} {len(entry.shards):>6}"
            )

    lines.append("-" * 65)
    for type_name, (count, nbytes) in sorted(by_type.items()):
        lines.append(f"  {type_name.lower():<28} {count:>5} tensors {nbytes / 1024**2:>9.1f} MB")
    lines.append(
        f"  {'TOTAL':<28} {len(catalog):>5} tensors "
        f"{catalog.total_nbytes() / 1024**2:>9.1f} MB"
    )
    lines.append("=" * 65)

    summary = "\n".join(lines)
    print(summary)
    return summary


# ═══════════════════════════════════════════════════════════════════════════
# TIMING
# ═══════════════════════════════════════════════════════════════════════════

class Timer:
    """
    Simple context manager for timing code blocks.

    Usage:
        with Timer("Load") as t:
            model = load_model(paths)
        print(t)   # "Load: 0.8123s"

    `elapsed` accumulates across repeated entries, so one Timer can total
    the time spent in many short calls (e.g. one per sampled token).
    """

    def __init__(self, name: str = "Block"):
        self.name = name
        self.elapsed: float = 0.0
        self.calls: int = 0

    def __enter__(self):
        self.start = time.perf_counter()
        return self

    def __exit__(self, *args):
        self.elapsed += time.perf_counter() - self.start
        self.calls += 1

    @property
    def elapsed_ms(self) -> float:
        return self.elapsed * 1000.0

    def __str__(self):
        return f"{self.name}: {self.elapsed:.4f}s"


# ═══════════════════════════════════════════════════════════════════════════
# RUN LOGGER
# ═══════════════════════════════════════════════════════════════════════════

class RunLogger:
    """
    Lightweight logger that writes to console and an optional log file.

    Library functions accept a `logger` argument and fall back to a
    console-only instance, so scripts can capture a whole run (load,
    generation, quantization) in one timestamped file:

        logger = RunLogger(log_dir="logs", prefix="quantize")
        quantize_model(src, dst, GGMLType.Q4_0, logger=logger)
        logger.close()
    """

    def __init__(self, log_dir: Optional[str] = None, prefix: str = "run", verbosity: int = 0):
        """
        Args:
            log_dir: Directory for log files. If None, only console output.
            prefix: Log file name prefix.
            verbosity: 0 = info and warnings only, 1 = also debug detail.
        """
        self.verbosity = verbosity
        self.log_file = None
        if log_dir:
            os.makedirs(log_dir, exist_ok=True)
            timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
            log_path = os.path.join(log_dir, f"{prefix}_{timestamp}.log")
            self.log_file = open(log_path, "w")
            print(f"Logging to: {log_path}")

    def _write(self, msg: str) -> None:
        """Write message to console and optionally to log file."""
        print(msg)
        if self.log_file:
            self.log_file.write(msg + "\n")
            self.log_file.flush()

    def log_info(self, msg: str) -> None:
        """Log an informational message."""
        self._write(f"[INFO] {msg}")

    def log_debug(self, msg: str) -> None:
        """Log detail that only matters at verbosity >= 1."""
        if self.verbosity >= 1:
            self._write(f"[DEBUG] {msg}")

    def log_warning(self, msg: str) -> None:
        self._write(f"WARNING: {msg}")

    def log_error(self, msg: str) -> None:
        self._write(f"ERROR: {msg}")

    def log_tensor(self, name: str, shape, type_name: str, size_mb: float, extra: str = "") -> None:
        """One line per tensor, as printed while loading or quantizing."""
        self.log_debug(
            f"{name:>48} - {format_shape(shape):<14} {type_name:<5} "
            f"{size_mb:>8.2f} MB{extra}"
        )

    def close(self) -> None:
        """Close the log file if open."""
        if self.log_file:
            self.log_file.close()
            self.log_file = None


def default_logger(logger: Optional[RunLogger]) -> RunLogger:
    return logger if logger is not None else RunLogger()


# ═══════════════════════════════════════════════════════════════════════════
# PROGRESS
# ═══════════════════════════════════════════════════════════════════════════

@contextmanager
def tqdm_progress(desc: str, disable: bool = False) -> Iterator[ProgressCallback]:
    """
    Yield a progress callback that drives a tqdm bar.

    The loaders report progress as a fraction in [0, 1]; the bar is scaled
    to 1000 steps and only ever moves forward.

        with tqdm_progress("Loading") as progress:
            model = load_model(paths, progress_callback=progress)
    """
    total = 1000
    bar = tqdm(total=total, desc=desc, unit="‰", disable=disable, leave=False)
    state = {"n": 0}

    def callback(fraction: float) -> None:
        target = min(total, max(0, int(round(fraction * total))))
        if target > state["n"]:
            bar.update(target - state["n"])
            state["n"] = target

    try:
        yield callback
    finally:
        bar.close()
