from __future__ import annotations

import math
from typing import Optional

import torch
import torch.nn as nn


class ContextGate(nn.Module):
    """Position-wise multi-head gate of n-gram values by the hidden state.

    Each head scores <q, k> / sqrt(head_dim) and squashes it through a sigmoid,
    so gates are independent in [0, 1] rather than a distribution over positions.
    Position i only ever sees hidden_states[i] and ngram_features[i].
    """

    def __init__(self, hidden_size: int, engram_hidden_size: int, num_heads: int, norm_eps: float = 1e-5):
        super().__init__()
        if hidden_size % num_heads != 0:
            raise ValueError(f"hidden_size({hidden_size}) must be divisible by num_heads({num_heads})")
        self.hidden_size = hidden_size
        self.num_heads = num_heads
        self.head_dim = hidden_size // num_heads

        self.query_norm = nn.RMSNorm(hidden_size, eps=norm_eps)
        self.query_proj = nn.Linear(hidden_size, hidden_size, bias=False)
        self.key_proj = nn.Linear(engram_hidden_size, hidden_size)
        self.key_norm = nn.RMSNorm(hidden_size, eps=norm_eps)
        self.value_proj = nn.Linear(engram_hidden_size, hidden_size)
        self.out_proj = nn.Linear(hidden_size, hidden_size, bias=False)

    def scores(self, hidden_states: torch.Tensor, ngram_features: torch.Tensor) -> torch.Tensor:
        """[.., T, D], [.., T, K*E] -> gate values [.., T, H, 1]."""
        heads = (*hidden_states.shape[:-1], self.num_heads, self.head_dim)
        query = self.query_proj(self.query_norm(hidden_states)).view(heads)
        key = self.key_norm(self.key_proj(ngram_features)).view(heads)

        gate = (query * key).sum(dim=-1) / math.sqrt(self.head_dim)
        # sign-preserving sqrt of the score
        gate = gate.abs().clamp_min(1e-6).sqrt() * gate.sign()
        return gate.sigmoid().unsqueeze(-1)

    def forward(self, hidden_states: torch.Tensor, ngram_features: Optional[torch.Tensor]) -> torch.Tensor:
        if ngram_features is None or hidden_states is None:
            return hidden_states
        if ngram_features.numel() == 0 or hidden_states.numel() == 0:
            return hidden_states

        if ngram_features.dtype != hidden_states.dtype:
            ngram_features = ngram_features.to(dtype=hidden_states.dtype)

        gates = self.scores(hidden_states, ngram_features)
        value = self.value_proj(ngram_features).view(*hidden_states.shape[:-1], self.num_heads, self.head_dim)
        gated = (gates * value).flatten(start_dim=-2)
        return self.out_proj(gated)
