"""
biogpt-rt: local inference runtime for quantizable BioGPT-style language models.

This package loads pretrained transformer weights from a compact binary model
file (optionally sharded, optionally block-quantized), binds them to the fixed
BioGPT decoder architecture, and runs autoregressive decoding against a
persistent key/value cache.

Key modules:
  - config:     Format constants, hyperparameters and the inference parameter bundle
  - errors:     Exception taxonomy for load / quantize / decode failures
  - ggml_types: Closed set of element types (F32, F16, Q4_0 ... Q8_0)
  - quants:     Block quantization and dequantization kernels
  - catalog:    Tensor descriptors and the name → descriptor catalog
  - reader:     Binary model file reader (header, vocab, merges, tensor records)
  - writer:     Binary model file writer (aligned tensor records)
  - model:      Bound model weights, weight arena and the materializer
  - engine:     Tensor engine (thread control, dense kernels, scratch arena)
  - decode:     KV-cache decode engine (one forward pass per call)
  - generate:   Top-k / top-p sampling and the generation loop
  - quantize:   Precision conversion of whole model files
  - convert:    PyTorch / HF checkpoint → model file converter
  - utils:      Seeding, timing, logging and progress helpers
"""

__version__ = "0.1.0"
