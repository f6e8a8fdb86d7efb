"""Deterministic suffix n-gram hashing.

For every position i and order o the n-gram is tokens[i-o+1..i], with pad_id
standing in for positions before the start of the sequence. Each order owns a
prime bucket count (distinct across orders) plus a salt and odd multiplier drawn
from the seed, so the bucket index is a pure function of (tokens, order, seed).
"""

from __future__ import annotations

from typing import Dict, List, Optional, Sequence

import numpy as np
from sympy import isprime

from engram_tokenizer import CompressedTokenizer


PRIME_1 = 10007
# largest prime below 2**64
MIX_PRIME = np.uint64(0xFFFFFFFFFFFFFFC5)
_ONE = np.uint64(1)
_SHIFT = np.uint64(31)


def find_next_prime(start: int, seen_primes: set[int]) -> int:
    candidate = start + 1
    while True:
        if isprime(candidate) and candidate not in seen_primes:
            return int(candidate)
        candidate += 1


class NgramHasher:
    """Rolling polynomial hash of suffix n-grams, orders 1..max_ngram_size."""

    def __init__(
        self,
        max_ngram_size: int,
        bucket_hints: Sequence[int],
        pad_id: int,
        seed: int,
        compressed_tokenizer: Optional[CompressedTokenizer] = None,
    ):
        self.max_ngram_size = int(max_ngram_size)
        self.seed = int(seed)
        self.compressed_tokenizer = compressed_tokenizer

        if len(bucket_hints) != self.max_ngram_size:
            raise ValueError(
                f"bucket_hints length must be max_ngram_size ({self.max_ngram_size}), got {len(bucket_hints)}"
            )

        self.pad_id = int(pad_id)
        if self.compressed_tokenizer is not None:
            self.pad_id = int(self.compressed_tokenizer.lookup_table[self.pad_id])

        self.salts: List[np.uint64] = []
        self.multipliers: List[np.uint64] = []
        for order in range(1, self.max_ngram_size + 1):
            g = np.random.default_rng(self.seed + PRIME_1 * order)
            salt, r = g.integers(low=0, high=2**63, size=(2,), dtype=np.uint64)
            self.salts.append(np.uint64(salt))
            self.multipliers.append(np.uint64(r) * np.uint64(2) + _ONE)

        self.bucket_counts = self._calculate_bucket_counts(bucket_hints)

    def _calculate_bucket_counts(self, bucket_hints: Sequence[int]) -> List[int]:
        seen_primes: set[int] = set()
        bucket_counts: List[int] = []
        for hint in bucket_hints:
            found_prime = find_next_prime(int(hint) - 1, seen_primes)
            seen_primes.add(found_prime)
            bucket_counts.append(found_prime)
        return bucket_counts

    def check_order(self, order) -> int:
        if isinstance(order, bool) or not isinstance(order, (int, np.integer)):
            raise ValueError(f"n-gram order must be an int, got {order!r}")
        if not 1 <= order <= self.max_ngram_size:
            raise ValueError(f"n-gram order must be in [1, {self.max_ngram_size}], got {order}")
        return int(order)

    def _mix(self, columns: List[np.ndarray], order: int) -> np.ndarray:
        """columns: `order` uint64 arrays of equal shape, oldest token first."""
        base = self.multipliers[order - 1]
        with np.errstate(over="ignore"):
            h = np.full(columns[0].shape, self.salts[order - 1], dtype=np.uint64)
            for col in columns:
                h = h * base + (col + _ONE)
            h ^= h >> _SHIFT
            h *= MIX_PRIME
            h ^= h >> _SHIFT
        return (h % np.uint64(self.bucket_counts[order - 1])).astype(np.int64)

    def compress(self, input_ids) -> np.ndarray:
        if self.compressed_tokenizer is None:
            return np.asarray(input_ids, dtype=np.int64)
        return self.compressed_tokenizer(input_ids)

    def hash_ngram(self, tokens: Sequence[int], order: int) -> int:
        """Bucket of one explicit n-gram (oldest token first); len(tokens) must equal order."""
        order = self.check_order(order)
        if len(tokens) != order:
            raise ValueError(f"expected {order} tokens for an order-{order} n-gram, got {len(tokens)}")
        columns = [np.asarray([t], dtype=np.int64).astype(np.uint64) for t in tokens]
        return int(self._mix(columns, order)[0])

    def hash_sequence(self, input_ids, order: int) -> np.ndarray:
        """[T] or [B, T] ids -> same-shaped bucket indices for the n-gram ending at each position."""
        order = self.check_order(order)
        x = np.asarray(input_ids, dtype=np.int64)
        squeeze = x.ndim == 1
        if squeeze:
            x = x[None, :]
        if x.ndim != 2:
            raise ValueError(f"input_ids must be [T] or [B, T], got shape {tuple(x.shape)}")
        B, T = x.shape

        def shift_k(k: int) -> np.ndarray:
            if k == 0:
                return x
            return np.pad(
                x,
                ((0, 0), (k, 0)),
                mode="constant",
                constant_values=self.pad_id,
            )[:, :T]

        columns = [shift_k(k).astype(np.uint64) for k in reversed(range(order))]
        out = self._mix(columns, order)
        return out[0] if squeeze else out

    def hash(self, input_ids) -> Dict[int, np.ndarray]:
        input_ids = self.compress(input_ids)
        return {order: self.hash_sequence(input_ids, order) for order in range(1, self.max_ngram_size + 1)}
