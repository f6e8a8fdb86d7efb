"""Benchmark the Engram injection step-by-step latency.

Usage examples:
    python benchmark_engram_forward.py --runs 5
    python benchmark_engram_forward.py --runs 20 --warmup 5 --seq-len 2048 --hidden-size 1024

Notes:
- The n-gram hashing is implemented with NumPy and runs on CPU.
- This benchmark is CPU-only.
"""

from __future__ import annotations

import argparse
import time
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Dict, List, Optional

import torch

from engram_config import BackBoneConfig, EngramConfig
from engram_context import EngramContext, create_context, destroy_context


_BENCH_START = time.perf_counter()


def _now_ts() -> str:
    return time.strftime("%Y-%m-%d %H:%M:%S", time.localtime())


def log(msg: str) -> None:
    dt_s = time.perf_counter() - _BENCH_START
    print(f"[{_now_ts()} +{dt_s:8.2f}s] {msg}", flush=True)


def _progress_every(total: int) -> int:
    if total <= 10:
        return 1
    return max(1, total // 10)


@dataclass
class BenchResult:
    output: torch.Tensor
    times_ms: Dict[str, float]


class StepTimer:
    def __init__(self):
        self.times_ms: Dict[str, float] = {}

    @contextmanager
    def measure(self, name: str):
        start_ns = time.perf_counter_ns()
        yield
        elapsed_ms = (time.perf_counter_ns() - start_ns) / 1e6

        self.times_ms[name] = self.times_ms.get(name, 0.0) + elapsed_ms


ORDERED_KEYS = [
    "hash (cpu)",
    "torch.from_numpy",
    "feature_table lookup + concat",
    "gate:scores",
    "gate:value+out_proj",
    "short_conv",
    "add",
]


@torch.no_grad()
def engram_forward_profile(
    ctx: EngramContext,
    hidden_states: torch.Tensor,
    input_ids: torch.Tensor,
    layer_id: int,
) -> BenchResult:
    """Run the same stages as `apply` with a timing breakdown.

    input_ids must be on CPU because the hashing uses NumPy.
    """
    timer = StepTimer()
    table = ctx.feature_table
    gate = ctx.gates[str(layer_id)]
    short_conv = ctx.short_convs[str(layer_id)]

    # 1) Hashing (CPU / NumPy)
    with timer.measure("hash (cpu)"):
        hashes = ctx.hasher.hash(input_ids.numpy())

    # 2) NumPy -> Torch
    with timer.measure("torch.from_numpy"):
        hash_t = {order: torch.from_numpy(h) for order, h in hashes.items()}

    # 3) Embedding lookup per order + concat
    with timer.measure("feature_table lookup + concat"):
        features = torch.cat(
            [table.embedding(hash_t[order] + table.offsets[order - 1]) for order in sorted(hash_t)],
            dim=-1,
        ).to(dtype=hidden_states.dtype)

    # 4) Gate
    with timer.measure("gate:scores"):
        gates = gate.scores(hidden_states, features)

    with timer.measure("gate:value+out_proj"):
        value = gate.value_proj(features).view(*hidden_states.shape[:-1], gate.num_heads, gate.head_dim)
        gated = gate.out_proj((gates * value).flatten(start_dim=-2))

    # 5) ShortConv and residual add
    with timer.measure("short_conv"):
        refined = short_conv(gated)

    with timer.measure("add"):
        out = hidden_states + refined

    return BenchResult(output=out, times_ms=timer.times_ms)


def _avg_times(results: Dict[str, float], runs: int) -> Dict[str, float]:
    return {k: v / max(1, runs) for k, v in results.items()}


def main(argv: Optional[List[str]] = None) -> int:
    p = argparse.ArgumentParser()
    p.add_argument("--dtype", choices=["fp32", "bf16", "fp16"], default="fp32")
    p.add_argument("--hidden-size", type=int, default=1024)
    p.add_argument("--layer-id", type=int, default=1)
    p.add_argument("--max-ngram-size", type=int, default=3)
    p.add_argument("--n-embed-per-ngram", type=int, default=512)
    p.add_argument("--n-head-per-ngram", type=int, default=8)
    p.add_argument("--kernel-size", type=int, default=3)
    p.add_argument("--buckets", type=int, default=129280, help="Bucket-count hint per n-gram order.")
    p.add_argument("--vocab-size", type=int, default=129280)
    p.add_argument("--batch-size", type=int, default=1)
    p.add_argument("--seq-len", type=int, default=1024)
    p.add_argument("--seed", type=int, default=0)
    p.add_argument("--warmup", type=int, default=1)
    p.add_argument("--runs", type=int, default=5)
    args = p.parse_args(argv)

    log(
        "stage=begin "
        f"dtype={args.dtype} layer_id={args.layer_id} "
        f"batch_size={args.batch_size} seq_len={args.seq_len} warmup={args.warmup} runs={args.runs}"
    )

    if args.dtype == "fp32":
        dtype = torch.float32
    elif args.dtype == "bf16":
        dtype = torch.bfloat16
    elif args.dtype == "fp16":
        dtype = torch.float16
    else:
        raise ValueError(f"Unsupported dtype: {args.dtype}")

    log("stage=build_context_begin")
    cfg = EngramConfig(
        max_ngram_size=args.max_ngram_size,
        n_embed_per_ngram=args.n_embed_per_ngram,
        n_head_per_ngram=args.n_head_per_ngram,
        layer_ids=(args.layer_id,),
        seed=args.seed,
        kernel_size=args.kernel_size,
        engram_vocab_size=(args.buckets,) * args.max_ngram_size,
    )
    ctx = create_context(cfg, BackBoneConfig(hidden_size=args.hidden_size)).to(dtype=dtype)
    ctx.eval()
    log(f"stage=build_context_done buckets={ctx.hasher.bucket_counts}")

    g = torch.Generator(device="cpu")
    g.manual_seed(int(args.seed))
    B, T = int(args.batch_size), int(args.seq_len)
    input_ids = torch.randint(0, int(args.vocab_size), (B, T), dtype=torch.long, generator=g)
    hidden_states = torch.randn(B, T, args.hidden_size, generator=g).to(dtype=dtype)
    log(f"stage=prepare_inputs_done input_ids.shape={tuple(input_ids.shape)}")

    warmup_n = max(0, int(args.warmup))
    for i in range(warmup_n):
        if (i == 0) or (i == warmup_n - 1) or ((i + 1) % _progress_every(warmup_n) == 0):
            log(f"stage=warmup.step i={i+1}/{warmup_n}")
        _ = engram_forward_profile(ctx, hidden_states, input_ids, args.layer_id)

    runs_n = max(1, int(args.runs))
    agg: Dict[str, float] = {}
    last_out: Optional[torch.Tensor] = None
    for i in range(runs_n):
        if (i == 0) or (i == runs_n - 1) or ((i + 1) % _progress_every(runs_n) == 0):
            log(f"stage=runs.step i={i+1}/{runs_n}")
        r = engram_forward_profile(ctx, hidden_states, input_ids, args.layer_id)
        last_out = r.output
        for k, v in r.times_ms.items():
            agg[k] = agg.get(k, 0.0) + v

    avg = _avg_times(agg, runs=runs_n)
    log("stage=runs.done")

    total = sum(avg.values())
    print("=== Engram apply step timing (avg ms) ===")
    for k in ORDERED_KEYS:
        if k in avg:
            print(f"{k:32s} {avg[k]:10.3f} ms")
    print(f"{'TOTAL':32s} {total:10.3f} ms")
    if last_out is not None:
        print(f"output.shape={tuple(last_out.shape)} device={last_out.device} dtype={last_out.dtype}")

    destroy_context(ctx)
    log("stage=done")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
