"""
Convert a PyTorch BioGPT checkpoint into a model file.

USAGE:
    python scripts/convert_checkpoint.py \
        --checkpoint biogpt/pytorch_model.bin \
        --config biogpt/config.json \
        --vocab biogpt/vocab.json --merges biogpt/merges.txt \
        --output ggml_weights/ggml-model.bin --ftype f16

WHAT THIS SCRIPT DOES:
    1. Loads the state dict with torch.load (CPU)
    2. Reads hyperparameters from the HF config.json
    3. Reads the tokenizer's vocab.json / merges.txt
    4. Writes a single model file (2-D weights as f32 or f16)
"""

import os
import sys
import json
import argparse

import torch

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from biogpt_rt.config import HyperParameters
from biogpt_rt.convert import convert_state_dict, load_vocab_json
from biogpt_rt.errors import BioGPTError
from biogpt_rt.ggml_types import GGMLType
from biogpt_rt.utils import RunLogger


def hparams_from_hf_config(path: str, n_merges: int) -> HyperParameters:
    """Map HF BioGptConfig keys onto HyperParameters."""
    with open(path, "r") as f:
        cfg = json.load(f)
    return HyperParameters(
        n_vocab=cfg["vocab_size"],
        n_merges=n_merges,
        n_layer=cfg["num_hidden_layers"],
        n_head=cfg["num_attention_heads"],
        n_positions=cfg["max_position_embeddings"],
        d_ff=cfg["intermediate_size"],
        d_model=cfg["hidden_size"],
    )


def main():
    parser = argparse.ArgumentParser(
        description="Convert a BioGPT PyTorch checkpoint to a model file",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    parser.add_argument("--checkpoint", type=str, required=True, help="pytorch_model.bin / .pt")
    parser.add_argument("--config", type=str, required=True, help="HF config.json")
    parser.add_argument("--vocab", type=str, required=True, help="vocab.json")
    parser.add_argument("--merges", type=str, default=None, help="merges.txt")
    parser.add_argument("--output", type=str, default="ggml_weights/ggml-model.bin",
                        help="Output model file")
    parser.add_argument("--ftype", type=str, default="f32", choices=["f32", "f16"],
                        help="Storage type for 2-D weights")
    parser.add_argument("-v", "--verbose", type=int, default=0, help="Verbosity level")
    args = parser.parse_args()

    logger = RunLogger(verbosity=args.verbose)
    logger.log_info(f"loading checkpoint: {args.checkpoint}")
    checkpoint = torch.load(args.checkpoint, map_location="cpu", weights_only=False)
    state_dict = checkpoint.get("model_state_dict", checkpoint)

    tokens, merges = load_vocab_json(args.vocab, args.merges)
    hparams = hparams_from_hf_config(args.config, len(merges))

    os.makedirs(os.path.dirname(args.output) or ".", exist_ok=True)
    try:
        convert_state_dict(
            state_dict, hparams, tokens, merges, args.output,
            ftype=GGMLType.from_name(args.ftype), logger=logger,
        )
    except BioGPTError as e:
        logger.log_error(str(e))
        sys.exit(1)
    print("Done.")


if __name__ == "__main__":
    main()
