"""
Quantize a model file.

USAGE:
    python scripts/quantize_model.py ggml_weights/ggml-model.bin \
        ggml_weights/ggml-model-q4_0.bin q4_0

    # type can also be given as its numeric tag
    python scripts/quantize_model.py in.bin out.bin 8 --threads 8

Supported types: f32, f16, q4_0, q4_1, q5_0, q5_1, q8_0.
"""

import os
import sys
import argparse

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from biogpt_rt.errors import BioGPTError
from biogpt_rt.ggml_types import GGMLType
from biogpt_rt.quantize import quantize_model
from biogpt_rt.utils import RunLogger, Timer, tqdm_progress


def parse_type(value: str) -> GGMLType:
    if value.isdigit():
        return GGMLType.from_tag(int(value))
    return GGMLType.from_name(value)


def main():
    parser = argparse.ArgumentParser(
        description="Convert the 2-D weights of a model file to another type",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    parser.add_argument("input", type=str, help="Source model file")
    parser.add_argument("output", type=str, help="Destination model file")
    parser.add_argument("type", type=str, help="Target type name or tag")
    parser.add_argument("-t", "--threads", type=int, default=min(4, os.cpu_count() or 1),
                        help="Worker threads")
    parser.add_argument("-v", "--verbose", type=int, default=0, help="Verbosity level")
    parser.add_argument("--log-dir", type=str, default=None, help="Also write a log file here")
    args = parser.parse_args()

    logger = RunLogger(log_dir=args.log_dir, prefix="quantize", verbosity=args.verbose)
    try:
        target = parse_type(args.type)
        with Timer("quantize") as timer, tqdm_progress("Quantizing") as progress:
            quantize_model(
                args.input, args.output, target,
                n_threads=args.threads,
                progress_callback=progress,
                logger=logger,
            )
    except (BioGPTError, OSError, ValueError) as e:
        logger.log_error(f"failed to quantize '{args.input}': {e}")
        logger.close()
        sys.exit(1)

    logger.log_info(f"quantize time = {timer.elapsed_ms:8.2f} ms")
    logger.close()
    print("Done.")


if __name__ == "__main__":
    main()
