"""
Print what a model file contains without loading its weights.

USAGE:
    python scripts/inspect_model.py ggml_weights/ggml-model-q4_0.bin
    python scripts/inspect_model.py ggml_weights/ggml-model.bin --brief
"""

import os
import sys
import argparse

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from biogpt_rt.errors import BioGPTError
from biogpt_rt.reader import discover_shards, read_model_files
from biogpt_rt.utils import print_catalog_summary


def main():
    parser = argparse.ArgumentParser(
        description="Show hyperparameters and tensors of a model file",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    parser.add_argument("model", type=str, help="Model file (shards are picked up)")
    parser.add_argument("--brief", action="store_true", help="Only print per-type totals")
    args = parser.parse_args()

    paths = discover_shards(args.model)
    try:
        hparams, vocab, catalog = read_model_files(paths)
    except BioGPTError as e:
        print(f"ERROR: {e}")
        sys.exit(1)

    print(f"Files: {', '.join(paths)} ({catalog.n_shard_records()} tensor records)")
    for key, value in hparams.to_dict().items():
        print(f"  {key:<12} = {value}")
    print(f"  {'head_dim':<12} = {hparams.head_dim}")
    print(f"  vocab: {len(vocab)} tokens, {len(vocab.merges)} merges")
    print_catalog_summary(catalog, verbose=not args.brief)


if __name__ == "__main__":
    main()
