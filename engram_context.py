"""Per-session Engram state and the four entry points the host model calls.

    ctx = create_context(EngramConfig(layer_ids=(0, 1)), BackBoneConfig(hidden_size=1024))
    for layer_id, block in enumerate(blocks):
        if is_layer_active(ctx, layer_id):
            hidden_states = apply(ctx, hidden_states, input_ids, layer_id)
        hidden_states = block(hidden_states)
    destroy_context(ctx)
"""

from __future__ import annotations

import time
from typing import Optional

import numpy as np
import torch
import torch.nn as nn

from engram_config import BackBoneConfig, EngramConfig, human_format
from engram_embedding import NgramFeatureTable
from engram_errors import ConfigError, ShapeMismatch, UseAfterDestroy
from engram_gate import ContextGate
from engram_hashing import NgramHasher
from engram_short_conv import ShortConv
from engram_timeline import StageClock, _format_bytes, timeline_verbose, tlog
from engram_tokenizer import CompressedTokenizer


class EngramContext(nn.Module):
    """Owns the n-gram tables plus one gate and one short conv per participating layer.

    Every parameter is drawn from `config.seed` at construction, so two contexts
    built from equal configs are bit-identical. Learned weights can be installed
    afterwards with `load_state_dict`; inference never writes to them.
    """

    def __init__(
        self,
        config: EngramConfig,
        backbone: BackBoneConfig,
        *,
        compressed_tokenizer: Optional[CompressedTokenizer] = None,
    ):
        config.validate(num_layers=backbone.num_layers)
        backbone.validate(config)
        if compressed_tokenizer is not None and config.pad_id >= compressed_tokenizer.host_vocab_size:
            raise ConfigError(
                f"pad_id {config.pad_id} is outside the tokenizer vocabulary "
                f"({compressed_tokenizer.host_vocab_size} ids)"
            )
        super().__init__()

        self.config = config
        self.backbone = backbone
        self.layers = frozenset(config.layer_ids)
        self.compressed_tokenizer = compressed_tokenizer

        self.hasher = NgramHasher(
            max_ngram_size=config.max_ngram_size,
            bucket_hints=config.bucket_hints,
            pad_id=config.pad_id,
            seed=config.seed,
            compressed_tokenizer=compressed_tokenizer,
        )

        with torch.random.fork_rng(devices=[]):
            torch.manual_seed(config.seed)
            self.feature_table = NgramFeatureTable(self.hasher, config.n_embed_per_ngram)
            self.gates = nn.ModuleDict(
                {
                    str(layer_id): ContextGate(
                        hidden_size=backbone.hidden_size,
                        engram_hidden_size=config.engram_hidden_size,
                        num_heads=config.n_head_per_ngram,
                    )
                    for layer_id in config.layer_ids
                }
            )
            self.short_convs = nn.ModuleDict(
                {
                    str(layer_id): ShortConv(hidden_size=backbone.hidden_size, kernel_size=config.kernel_size)
                    for layer_id in config.layer_ids
                }
            )

        self._destroyed = False

    @property
    def destroyed(self) -> bool:
        return self._destroyed

    def extra_repr(self) -> str:
        return (
            f"layers={sorted(self.layers)}, max_ngram_size={self.config.max_ngram_size}, "
            f"buckets={self.hasher.bucket_counts}, seed={self.config.seed}"
        )

    def _check_alive(self) -> None:
        # only enforced with assertions on; under `python -O` this is undefined behaviour
        if __debug__ and self._destroyed:
            raise UseAfterDestroy("EngramContext used after destroy_context()")

    def _check_shapes(self, hidden_states: torch.Tensor, token_ids) -> None:
        h_shape = tuple(hidden_states.shape)
        ids_shape = tuple(token_ids.shape) if hasattr(token_ids, "shape") else np.shape(token_ids)
        if len(h_shape) not in (2, 3) or ids_shape != h_shape[:-1]:
            raise ShapeMismatch(
                f"hidden_states {h_shape} and token_ids {ids_shape} disagree; "
                f"expected [T, D] with [T] or [B, T, D] with [B, T]"
            )
        if h_shape[-1] != self.backbone.hidden_size:
            raise ShapeMismatch(f"hidden_states width {h_shape[-1]} != hidden_size {self.backbone.hidden_size}")

    def is_layer_active(self, layer_id: int) -> bool:
        self._check_alive()
        return layer_id in self.layers

    @torch.no_grad()
    def forward(self, hidden_states: torch.Tensor, token_ids, layer_id: int) -> torch.Tensor:
        """hidden_states: [T, D] or [B, T, D]; token_ids: [T] or [B, T] on any device."""
        self._check_alive()
        if layer_id not in self.layers:
            return hidden_states
        self._check_shapes(hidden_states, token_ids)
        if hidden_states.shape[-2] == 0:
            return hidden_states

        key = str(layer_id)
        clock = StageClock()

        # stages run in the parameter dtype; the residual add is in the host dtype
        param_dtype = self.feature_table.embedding.weight.dtype
        with clock.stage("features"):
            features = self.feature_table(token_ids).to(device=hidden_states.device)
        with clock.stage("gate"):
            gated = self.gates[key](hidden_states.to(dtype=param_dtype), features)
        with clock.stage("conv"):
            refined = self.short_convs[key](gated)
        output = hidden_states + refined.to(dtype=hidden_states.dtype)

        if timeline_verbose():
            tlog(f"apply.done {clock.summary()} out={tuple(output.shape)}", layer_id=layer_id)
        return output

    def destroy(self) -> None:
        if self._destroyed:
            return
        for name in list(self._modules):
            delattr(self, name)
        self.hasher = None
        self.compressed_tokenizer = None
        self._destroyed = True


def create_context(
    config: EngramConfig,
    backbone: BackBoneConfig,
    *,
    tokenizer=None,
) -> EngramContext:
    """Validate the configs and allocate every table, gate and kernel.

    `tokenizer` (a loaded tokenizer object) overrides `config.tokenizer_name_or_path`
    as the vocabulary used for id compression. Raises ConfigError without
    constructing anything when a config is invalid.
    """
    config.validate(num_layers=backbone.num_layers)
    backbone.validate(config)

    t0 = time.perf_counter_ns()
    compressed_tokenizer = None
    source = tokenizer if tokenizer is not None else config.tokenizer_name_or_path
    if source is not None:
        compressed_tokenizer = CompressedTokenizer(source)
        tlog(f"context.tokenizer vocab={compressed_tokenizer.host_vocab_size} compressed={len(compressed_tokenizer)}")

    ctx = EngramContext(config, backbone, compressed_tokenizer=compressed_tokenizer)

    n_params = sum(p.numel() for p in ctx.parameters())
    n_bytes = sum(p.numel() * p.element_size() for p in ctx.parameters())
    tlog(
        f"context.create layers={sorted(ctx.layers)} buckets={ctx.hasher.bucket_counts} "
        f"E={config.n_embed_per_ngram} params={human_format(n_params)} bytes={_format_bytes(n_bytes)} "
        f"took={(time.perf_counter_ns() - t0) / 1e6:.3f}ms"
    )
    return ctx


def destroy_context(ctx: Optional[EngramContext]) -> None:
    if ctx is None:
        return
    ctx.destroy()
    tlog("context.destroy")


def apply(ctx: EngramContext, hidden_states: torch.Tensor, token_ids, layer_id: int) -> torch.Tensor:
    """Return hidden_states + ShortConv(Gate(hidden_states, NgramFeatures(token_ids))) for active layers.

    Inactive layers get `hidden_states` back unchanged (the same tensor object).
    Raises ShapeMismatch when token_ids does not line up with hidden_states.
    """
    return ctx(hidden_states, token_ids, layer_id)


def is_layer_active(ctx: EngramContext, layer_id: int) -> bool:
    return ctx.is_layer_active(layer_id)
