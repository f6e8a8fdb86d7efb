from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Optional, Tuple

from engram_errors import ConfigError


DEFAULT_BUCKETS_PER_NGRAM = 8191
# torch.manual_seed takes a signed 64-bit value
MAX_SEED = 2**63


def _env_flag(name: str, default: str = "0") -> bool:
    return os.environ.get(name, default) in {"1", "true", "True", "yes", "YES"}


def human_format(num):
    magnitude = 0
    num = float(num)
    while abs(num) >= 1000:
        magnitude += 1
        num /= 1000.0
    return "{}{}".format("{:f}".format(num).rstrip("0").rstrip("."), ["", "K", "M", "B", "T"][magnitude])


@dataclass(frozen=True)
class EngramConfig:
    max_ngram_size: int = 3
    n_embed_per_ngram: int = 128
    n_head_per_ngram: int = 4
    layer_ids: Tuple[int, ...] = field(default_factory=lambda: (0, 1))
    pad_id: int = 0
    seed: int = 0
    kernel_size: int = 3
    # per n-gram order (1..max_ngram_size); each is rounded up to a distinct prime
    engram_vocab_size: Optional[Tuple[int, ...]] = None
    tokenizer_name_or_path: Optional[str] = None

    def __post_init__(self):
        # accept lists from callers, keep the frozen value hashable
        object.__setattr__(self, "layer_ids", tuple(self.layer_ids))
        if self.engram_vocab_size is not None:
            object.__setattr__(self, "engram_vocab_size", tuple(self.engram_vocab_size))

    @property
    def bucket_hints(self) -> Tuple[int, ...]:
        if self.engram_vocab_size is None:
            return (DEFAULT_BUCKETS_PER_NGRAM,) * self.max_ngram_size
        return self.engram_vocab_size

    @property
    def engram_hidden_size(self) -> int:
        return self.max_ngram_size * self.n_embed_per_ngram

    def validate(self, num_layers: Optional[int] = None) -> "EngramConfig":
        """Check every invariant and return self, or raise ConfigError."""
        for name in ("max_ngram_size", "n_embed_per_ngram", "n_head_per_ngram", "kernel_size"):
            value = getattr(self, name)
            if isinstance(value, bool) or not isinstance(value, int) or value < 1:
                raise ConfigError(f"{name} must be a positive int, got {value!r}")
        if self.kernel_size > self.max_ngram_size:
            raise ConfigError(
                f"kernel_size ({self.kernel_size}) must be <= max_ngram_size ({self.max_ngram_size})"
            )
        if not self.layer_ids:
            raise ConfigError("layer_ids must not be empty")
        if len(set(self.layer_ids)) != len(self.layer_ids):
            raise ConfigError(f"layer_ids must be unique, got {list(self.layer_ids)}")
        for layer_id in self.layer_ids:
            if isinstance(layer_id, bool) or not isinstance(layer_id, int) or layer_id < 0:
                raise ConfigError(f"layer ids must be non-negative ints, got {layer_id!r}")
            if num_layers is not None and layer_id >= num_layers:
                raise ConfigError(f"layer_id {layer_id} out of range for a {num_layers}-layer model")
        if isinstance(self.pad_id, bool) or not isinstance(self.pad_id, int) or self.pad_id < 0:
            raise ConfigError(f"pad_id must be a non-negative int, got {self.pad_id!r}")
        if isinstance(self.seed, bool) or not isinstance(self.seed, int) or not 0 <= self.seed < MAX_SEED:
            raise ConfigError(f"seed must be an int in [0, 2**63), got {self.seed!r}")
        if self.engram_vocab_size is not None:
            if len(self.engram_vocab_size) != self.max_ngram_size:
                raise ConfigError(
                    f"engram_vocab_size length must be max_ngram_size "
                    f"({self.max_ngram_size}), got {len(self.engram_vocab_size)}"
                )
            if any(int(n) < 1 for n in self.engram_vocab_size):
                raise ConfigError(f"engram_vocab_size entries must be >= 1, got {list(self.engram_vocab_size)}")
        return self


@dataclass(frozen=True)
class BackBoneConfig:
    hidden_size: int = 1024
    num_layers: Optional[int] = None

    def validate(self, engram_cfg: EngramConfig) -> "BackBoneConfig":
        if isinstance(self.hidden_size, bool) or not isinstance(self.hidden_size, int) or self.hidden_size < 1:
            raise ConfigError(f"hidden_size must be a positive int, got {self.hidden_size!r}")
        if self.hidden_size % engram_cfg.n_head_per_ngram != 0:
            raise ConfigError(
                f"hidden_size({self.hidden_size}) must be divisible by "
                f"n_head_per_ngram({engram_cfg.n_head_per_ngram})"
            )
        if self.num_layers is not None and self.num_layers < 1:
            raise ConfigError(f"num_layers must be >= 1, got {self.num_layers}")
        return self
