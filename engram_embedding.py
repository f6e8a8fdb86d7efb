from __future__ import annotations

from typing import List

import numpy as np
import torch
import torch.nn as nn

from engram_hashing import NgramHasher


class NgramFeatureTable(nn.Module):
    """One bucket table per n-gram order, stored as one big table with per-order offsets.

    Row `offsets[o-1] + b` is the embedding of bucket b of order o.
    """

    def __init__(self, hasher: NgramHasher, n_embed_per_ngram: int):
        super().__init__()
        self.hasher = hasher
        self.max_ngram_size = hasher.max_ngram_size
        self.embedding_dim = int(n_embed_per_ngram)

        list_of_N: List[int] = list(hasher.bucket_counts)
        offsets = [0]
        for n in list_of_N[:-1]:
            offsets.append(offsets[-1] + int(n))
        self.register_buffer("offsets", torch.tensor(offsets, dtype=torch.long))

        self.total_N = int(sum(list_of_N))
        self.embedding = nn.Embedding(num_embeddings=self.total_N, embedding_dim=self.embedding_dim)

    def lookup(self, order: int, bucket_index: int) -> torch.Tensor:
        """E-wide row of one bucket. This is a view into the table; do not write to it."""
        order = self.hasher.check_order(order)
        bucket_count = self.hasher.bucket_counts[order - 1]
        if not 0 <= int(bucket_index) < bucket_count:
            raise IndexError(f"bucket {bucket_index} out of range for order {order} ({bucket_count} buckets)")
        return self.embedding.weight[int(self.offsets[order - 1]) + int(bucket_index)]

    def _embed(self, hash_ids: np.ndarray, order: int) -> torch.Tensor:
        idx = torch.from_numpy(hash_ids).to(self.offsets.device)
        return self.embedding(idx + self.offsets[order - 1])

    def build_features(self, input_ids, order: int) -> torch.Tensor:
        """[.., T] ids -> [.., T, E] features for a single order."""
        hash_ids = self.hasher.hash_sequence(self.hasher.compress(_to_numpy(input_ids)), order)
        return self._embed(hash_ids, order)

    def forward(self, input_ids) -> torch.Tensor:
        """[.., T] ids -> [.., T, max_ngram_size * E], orders 1..K concatenated in order."""
        hashes = self.hasher.hash(_to_numpy(input_ids))
        return torch.cat([self._embed(hashes[order], order) for order in sorted(hashes)], dim=-1)


def _to_numpy(input_ids) -> np.ndarray:
    # hashing runs on CPU
    if torch.is_tensor(input_ids):
        return input_ids.detach().cpu().numpy()
    return np.asarray(input_ids, dtype=np.int64)
