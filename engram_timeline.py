"""Timeline logging for context creation and `apply`.

Lines look like `[+   12.345 ms][MainThread][layer=1] apply.done gate=0.210ms ...`.

    ENGRAM_TIMELINE=1             turn it on
    ENGRAM_TIMELINE_LAYERS=1,15   only these layers (unset / "all" / "*": every layer)
    ENGRAM_TIMELINE_VERBOSE=1     per-stage timings inside `apply`
"""

from __future__ import annotations

import os
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Dict, FrozenSet, Optional

from engram_config import _env_flag


def _parse_layer_filter(raw: str) -> Optional[FrozenSet[int]]:
    raw = (raw or "").strip()
    if not raw or raw.lower() in {"all", "*"}:
        return None
    return frozenset(int(part) for part in raw.split(",") if part.strip())


@dataclass(frozen=True)
class TimelineSettings:
    enabled: bool = False
    verbose: bool = False
    layers: Optional[FrozenSet[int]] = None

    @classmethod
    def from_env(cls) -> "TimelineSettings":
        return cls(
            enabled=_env_flag("ENGRAM_TIMELINE", "0"),
            verbose=_env_flag("ENGRAM_TIMELINE_VERBOSE", "0"),
            layers=_parse_layer_filter(os.environ.get("ENGRAM_TIMELINE_LAYERS", "")),
        )

    def wants(self, layer_id: Optional[int]) -> bool:
        if not self.enabled:
            return False
        return layer_id is None or self.layers is None or int(layer_id) in self.layers


_SETTINGS = TimelineSettings.from_env()
_START_NS = time.perf_counter_ns()


def timeline_verbose() -> bool:
    return _SETTINGS.enabled and _SETTINGS.verbose


def tlog(msg: str, *, layer_id: Optional[int] = None) -> None:
    if not _SETTINGS.wants(layer_id):
        return
    dt_ms = (time.perf_counter_ns() - _START_NS) / 1e6
    layer = f"[layer={int(layer_id)}]" if layer_id is not None else ""
    print(f"[+{dt_ms:10.3f} ms][{threading.current_thread().name}]{layer} {msg}", flush=True)


class StageClock:
    """Accumulates wall time per named stage of one `apply` call."""

    def __init__(self):
        self.ms: Dict[str, float] = {}
        self._start_ns = time.perf_counter_ns()

    @contextmanager
    def stage(self, name: str):
        t0 = time.perf_counter_ns()
        try:
            yield
        finally:
            self.ms[name] = self.ms.get(name, 0.0) + (time.perf_counter_ns() - t0) / 1e6

    def summary(self) -> str:
        parts = [f"{name}={ms:.3f}ms" for name, ms in self.ms.items()]
        parts.append(f"tot={(time.perf_counter_ns() - self._start_ns) / 1e6:.3f}ms")
        return " ".join(parts)


def _format_bytes(n_bytes: int) -> str:
    n = float(n_bytes)
    for unit in ("B", "KiB", "MiB", "GiB"):
        if n < 1024.0:
            return f"{int(n)}{unit}" if unit == "B" else f"{n:.2f}{unit}"
        n /= 1024.0
    return f"{n:.2f}TiB"
