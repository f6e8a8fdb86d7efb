"""\
================================================================================
[Engram Injection Demo]

A mock host model (token embedding -> N blocks -> LM head) that drives the
Engram context the way a real runtime would: once per layer, ask
`is_layer_active` and, if so, `apply` the n-gram injection before the block's
own attention/FFN. Attention and FFN are identity stubs.
================================================================================

Usage examples:
  python3 engram_demo.py --dtype fp32
  python3 engram_demo.py --dtype bf16 --layer-ids 1,15 --num-layers 30 --hidden-size 1024
  python3 engram_demo.py --tokenizer deepseek-ai/DeepSeek-V3 --text "Only Alexander the Great could tame the horse Bucephalus." --offline

Set ENGRAM_TIMELINE=1 (and ENGRAM_TIMELINE_VERBOSE=1) for per-stage timeline logs.
"""

from __future__ import annotations

## built-in
import argparse
import os
import sys
from contextlib import contextmanager
from typing import List, Optional

## third-party
import torch
import torch.nn as nn

from engram_config import BackBoneConfig, EngramConfig
from engram_context import EngramContext, apply, create_context, destroy_context, is_layer_active
from engram_timeline import tlog
from engram_tokenizer import load_tokenizer


@contextmanager
def _suppress_stdout():
    """Temporarily suppress stdout (useful for warmup)."""
    old_stdout = sys.stdout
    try:
        with open(os.devnull, "w") as devnull:
            sys.stdout = devnull
            yield
    finally:
        sys.stdout = old_stdout


def _parse_layer_ids(raw: str) -> List[int]:
    return [int(part) for part in raw.split(",") if part.strip()]


def _make_random_input_ids(*, vocab_size: int, batch_size: int, seq_len: int, seed: int) -> torch.Tensor:
    if batch_size <= 0:
        raise ValueError(f"batch_size must be > 0, got {batch_size}")
    if seq_len <= 0:
        raise ValueError(f"seq_len must be > 0, got {seq_len}")

    g = torch.Generator(device="cpu")
    g.manual_seed(int(seed))
    return torch.randint(
        low=0,
        high=int(vocab_size),
        size=(int(batch_size), int(seq_len)),
        dtype=torch.long,
        generator=g,
    )


class TransformerBlock(nn.Module):
    def __init__(self, layer_id: int):
        super().__init__()
        self.layer_id = int(layer_id)
        self.attn = lambda x: x
        self.moe = lambda x: x

    def forward(self, hidden_states: torch.Tensor) -> torch.Tensor:
        hidden_states = self.attn(hidden_states) + hidden_states
        hidden_states = self.moe(hidden_states) + hidden_states
        return hidden_states


class DemoLLM(nn.Module):
    """Host model stand-in; the Engram context is owned by the caller, not the model."""

    def __init__(self, backbone: BackBoneConfig, vocab_size: int):
        super().__init__()
        self.tok_emb = nn.Embedding(vocab_size, backbone.hidden_size)
        self.blocks = nn.ModuleList([TransformerBlock(layer_id) for layer_id in range(backbone.num_layers)])
        self.lm_head = nn.Linear(backbone.hidden_size, vocab_size)

    def forward(self, input_ids: torch.Tensor, engram: Optional[EngramContext] = None) -> torch.Tensor:
        tlog(f"model.forward.begin shape={tuple(input_ids.shape)}")
        hidden_states = self.tok_emb(input_ids)  # [B,L,D]
        for blk in self.blocks:
            if engram is not None and is_layer_active(engram, blk.layer_id):
                tlog("block.engram.enter", layer_id=blk.layer_id)
                hidden_states = apply(engram, hidden_states, input_ids, blk.layer_id)
                tlog("block.engram.exit", layer_id=blk.layer_id)
            hidden_states = blk(hidden_states)
        logits = self.lm_head(hidden_states)
        tlog(f"model.forward.done logits_shape={tuple(logits.shape)}")
        return logits


def _parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    p = argparse.ArgumentParser()
    p.add_argument("--dtype", choices=["fp32", "bf16", "fp16"], default="fp32")
    p.add_argument("--hidden-size", type=int, default=256)
    p.add_argument("--num-layers", type=int, default=4)
    p.add_argument("--vocab-size", type=int, default=32000, help="Backbone vocab (synthetic input only).")
    p.add_argument("--layer-ids", type=_parse_layer_ids, default=[0, 1])
    p.add_argument("--max-ngram-size", type=int, default=3)
    p.add_argument("--n-embed-per-ngram", type=int, default=128)
    p.add_argument("--n-head-per-ngram", type=int, default=4)
    p.add_argument("--kernel-size", type=int, default=3)
    p.add_argument("--pad-id", type=int, default=0)
    p.add_argument("--seed", type=int, default=42)
    p.add_argument("--tokenizer", default=None, help="HF tokenizer name or path; enables vocabulary compression.")
    p.add_argument("--text", default="Only Alexander the Great could tame the horse Bucephalus.")
    p.add_argument("--batch-size", type=int, default=1)
    p.add_argument("--seq-len", type=int, default=32, help="Synthetic sequence length when --tokenizer is unset.")
    p.add_argument(
        "--warmup",
        type=int,
        default=1,
        help="Number of silent warmup forwards before the measured run.",
    )
    p.add_argument(
        "--runs",
        type=int,
        default=1,
        help="Number of measured forward passes to execute (with prints).",
    )
    p.add_argument(
        "--offline",
        action=argparse.BooleanOptionalAction,
        default=False,
        help="Avoid network calls to Hugging Face Hub (requires cached files).",
    )
    return p.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> int:
    args = _parse_args(argv)

    if args.offline:
        os.environ["TRANSFORMERS_OFFLINE"] = "1"
        os.environ["HF_HUB_OFFLINE"] = "1"

    if args.dtype == "fp32":
        dtype = torch.float32
    elif args.dtype == "bf16":
        dtype = torch.bfloat16
    elif args.dtype == "fp16":
        dtype = torch.float16
        if not torch.cuda.is_available():
            print("[warn] fp16 on CPU may be slower/unsupported for some ops.")
    else:
        raise ValueError(f"Unsupported dtype: {args.dtype}")

    engram_cfg = EngramConfig(
        max_ngram_size=args.max_ngram_size,
        n_embed_per_ngram=args.n_embed_per_ngram,
        n_head_per_ngram=args.n_head_per_ngram,
        layer_ids=tuple(args.layer_ids),
        pad_id=args.pad_id,
        seed=args.seed,
        kernel_size=args.kernel_size,
    )
    backbone = BackBoneConfig(hidden_size=args.hidden_size, num_layers=args.num_layers)

    tokenizer = None
    if args.tokenizer is not None:
        tokenizer = load_tokenizer(args.tokenizer)
        input_ids = tokenizer(args.text, return_tensors="pt").input_ids
        if args.batch_size > 1:
            input_ids = input_ids.repeat(int(args.batch_size), 1)
        vocab_size = len(tokenizer)
    else:
        vocab_size = args.vocab_size
        input_ids = _make_random_input_ids(
            vocab_size=vocab_size, batch_size=args.batch_size, seq_len=args.seq_len, seed=args.seed
        )

    engram = create_context(engram_cfg, backbone, tokenizer=tokenizer).to(dtype=dtype)
    engram.eval()
    model = DemoLLM(backbone, vocab_size=vocab_size).to(dtype=dtype)
    model.eval()
    print(f"[Engram]: {engram.extra_repr()}")

    def _forward_once() -> torch.Tensor:
        with torch.no_grad():
            return model(input_ids, engram=engram)

    warmup_n = max(0, int(args.warmup))
    if warmup_n > 0:
        with _suppress_stdout():
            for _ in range(warmup_n):
                _ = _forward_once()

    output = None
    for _ in range(max(1, int(args.runs))):
        output = _forward_once()
    assert output is not None

    destroy_context(engram)

    print("✅ Forward Complete!")
    print(f"dtype={dtype} offline={args.offline}")
    print(f"{input_ids.shape=}\n{output.shape=}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
