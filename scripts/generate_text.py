"""
Text generation CLI.

USAGE:
    # Prompt given as token ids
    python scripts/generate_text.py --model ggml_weights/ggml-model.bin \
        --prompt-ids "2 1526 21 15 17"

    # Prompt given as vocabulary tokens (already BPE-split, space separated)
    python scripts/generate_text.py --model ggml_weights/ggml-model-q4_0.bin \
        --prompt-tokens "COVID-19</w> is</w>"

    # Adjust generation parameters
    python scripts/generate_text.py --model ggml_weights/ggml-model.bin \
        --prompt-ids "2" --temperature 0.5 --top-k 20 --n-predict 100

    # Reuse a saved parameter bundle
    python scripts/generate_text.py --config run.json --prompt-ids "2"

WHAT THIS SCRIPT DOES:
    1. Builds an InferenceConfig from the command line (or a JSON file)
    2. Loads the model file (and any shards next to it)
    3. Feeds the prompt through the decode engine and samples a continuation
    4. Prints the continuation and the timing report

Tokenization is not part of this package; ids must come from an external
BioGPT tokenizer, or prompts must be given as exact vocabulary entries.
"""

import os
import sys
import argparse

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from biogpt_rt.config import InferenceConfig
from biogpt_rt.decode import KVCacheDecodeEngine
from biogpt_rt.errors import BioGPTError
from biogpt_rt.generate import generate
from biogpt_rt.model import load_model
from biogpt_rt.utils import RunLogger, Timer, resolve_seed, set_seed, tqdm_progress


def parse_prompt(args: argparse.Namespace, vocab) -> list:
    if args.prompt_ids:
        return [int(tok) for tok in args.prompt_ids.split()]
    ids = []
    for token in args.prompt_tokens.split():
        if token not in vocab.token_to_id:
            raise SystemExit(f"error: '{token}' is not in the vocabulary")
        ids.append(vocab.id_of(token))
    return ids


def build_config(args: argparse.Namespace) -> InferenceConfig:
    if args.config:
        config = InferenceConfig.load(args.config)
    else:
        config = InferenceConfig(
            model=args.model,
            seed=args.seed,
            n_threads=args.threads,
            n_predict=args.n_predict,
            top_k=args.top_k,
            top_p=args.top_p,
            temperature=args.temperature,
            n_batch=args.batch_size,
            eos_id=None if args.no_eos else args.eos_id,
            verbosity=args.verbose,
            scratch_mb=args.scratch_mb,
        )
    config.validate()
    return config


def main():
    parser = argparse.ArgumentParser(
        description="Generate token ids with a BioGPT model file",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )

    parser.add_argument(
        "-m", "--model", type=str, default=InferenceConfig.model,
        help="Path to model file (shards <model>.1, <model>.2, ... are picked up)"
    )
    parser.add_argument(
        "--config", type=str, default=None,
        help="JSON InferenceConfig to use instead of the flags below"
    )
    prompt = parser.add_mutually_exclusive_group(required=True)
    prompt.add_argument(
        "--prompt-ids", type=str, default=None,
        help="Space separated token ids"
    )
    prompt.add_argument(
        "--prompt-tokens", type=str, default=None,
        help="Space separated vocabulary tokens"
    )
    parser.add_argument("-s", "--seed", type=int, default=-1, help="RNG seed (-1 = time)")
    parser.add_argument("-t", "--threads", type=int, default=InferenceConfig().n_threads,
                        help="Threads used during evaluation")
    parser.add_argument("-n", "--n-predict", type=int, default=200,
                        help="Number of tokens to predict")
    parser.add_argument("--top-k", type=int, default=40, help="Top-k sampling")
    parser.add_argument("--top-p", type=float, default=0.9, help="Top-p (nucleus) sampling")
    parser.add_argument("--temperature", type=float, default=0.9, help="Sampling temperature (> 0)")
    parser.add_argument("-b", "--batch-size", type=int, default=8,
                        help="Prompt tokens per evaluation call")
    parser.add_argument("--eos-id", type=int, default=2, help="End-of-text token id")
    parser.add_argument("--no-eos", action="store_true", help="Do not stop at the end-of-text id")
    parser.add_argument("--scratch-mb", type=int, default=16, help="Initial scratch arena size")
    parser.add_argument("-v", "--verbose", type=int, default=0, help="Verbosity level")
    parser.add_argument("--log-dir", type=str, default=None, help="Also write a log file here")
    parser.add_argument("--save-config", type=str, default=None,
                        help="Write the effective InferenceConfig as JSON")

    args = parser.parse_args()
    config = build_config(args)
    if args.save_config:
        config.save(args.save_config)

    logger = RunLogger(log_dir=args.log_dir, prefix="generate", verbosity=config.verbosity)
    seed = resolve_seed(config.seed)
    logger.log_info(f"seed = {seed}")
    rng = set_seed(seed)

    try:
        with Timer("load") as load_timer, tqdm_progress("Loading") as progress:
            model = load_model(config.model, progress_callback=progress, logger=logger)

        prompt_ids = parse_prompt(args, model.vocab)
        logger.log_info(f"prompt: {len(prompt_ids)} tokens")

        engine = KVCacheDecodeEngine(
            model,
            n_threads=config.n_threads,
            scratch_bytes=config.scratch_mb * 1024 * 1024,
            logger=logger,
        )
        result = generate(
            engine,
            prompt_ids,
            n_predict=config.n_predict,
            n_batch=config.n_batch,
            top_k=config.top_k,
            top_p=config.top_p,
            temperature=config.temperature,
            rng=rng,
            eos_id=config.eos_id,
            load_ms=load_timer.elapsed_ms,
        )
    except (BioGPTError, ValueError) as e:
        logger.log_error(str(e))
        logger.close()
        sys.exit(1)

    print(f"\nids: {' '.join(str(i) for i in prompt_ids + result.tokens)}")
    print(f"\n{model.vocab.decode(prompt_ids + result.tokens)}")
    print(f"\n{result.stats_string()}")
    logger.close()


if __name__ == "__main__":
    main()
