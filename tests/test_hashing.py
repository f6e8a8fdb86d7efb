"""Tests for the suffix n-gram hash engine."""

import numpy as np
import pytest
from sympy import isprime

from engram_hashing import NgramHasher, find_next_prime


def _hasher(seed, hints=(97, 101, 103), pad_id=0):
    return NgramHasher(max_ngram_size=len(hints), bucket_hints=hints, pad_id=pad_id, seed=seed)


class TestBucketCounts:
    def test_find_next_prime_skips_seen(self):
        assert find_next_prime(96, set()) == 97
        assert find_next_prime(96, {97}) == 101
        assert find_next_prime(0, set()) == 2

    def test_bucket_counts_are_distinct_primes(self):
        h = _hasher(0, hints=(100, 100, 100))
        assert len(set(h.bucket_counts)) == 3
        assert all(isprime(n) for n in h.bucket_counts)
        assert all(n >= 100 for n in h.bucket_counts)

    def test_hint_length_must_match_order(self):
        with pytest.raises(ValueError):
            NgramHasher(max_ngram_size=3, bucket_hints=(97, 101), pad_id=0, seed=0)


class TestHashDeterminism:
    def test_same_seed_same_buckets(self):
        ids = np.array([5, 12, 5, 12, 9, 1000, 77])
        a, b = _hasher(7), _hasher(7)
        for order in (1, 2, 3):
            np.testing.assert_array_equal(a.hash_sequence(ids, order), b.hash_sequence(ids, order))
        assert a.hash_ngram([5, 12], 2) == b.hash_ngram([5, 12], 2)

    def test_repeated_calls_are_stable(self, hasher):
        ids = np.arange(50) * 13
        first = hasher.hash(ids)
        second = hasher.hash(ids)
        for order in first:
            np.testing.assert_array_equal(first[order], second[order])

    def test_buckets_in_range(self, hasher):
        rng = np.random.default_rng(0)
        ids = rng.integers(0, 1_000_000, size=(4, 256))
        for order, out in hasher.hash(ids).items():
            assert out.dtype == np.int64
            assert out.shape == ids.shape
            assert out.min() >= 0
            assert out.max() < hasher.bucket_counts[order - 1]


class TestWindowing:
    def test_sequence_matches_explicit_ngrams(self, hasher):
        ids = [5, 12, 5, 12, 9]
        pad = hasher.pad_id
        padded = [pad, pad] + ids
        for order in (1, 2, 3):
            buckets = hasher.hash_sequence(ids, order)
            for i in range(len(ids)):
                window = padded[i + 3 - order : i + 3]
                assert buckets[i] == hasher.hash_ngram(window, order)

    def test_repeated_ngram_gets_same_bucket(self, hasher):
        buckets = hasher.hash_sequence([5, 12, 5, 12, 9], 2)
        # (5, 12) appears at positions 1 and 3
        assert buckets[1] == buckets[3]

    def test_batch_matches_rows(self, hasher):
        ids = np.array([[1, 2, 3, 4], [4, 3, 2, 1]])
        batched = hasher.hash_sequence(ids, 3)
        for b in range(2):
            np.testing.assert_array_equal(batched[b], hasher.hash_sequence(ids[b], 3))

    def test_prefix_causality(self, hasher):
        a = np.array([9, 8, 7, 6, 5, 4, 3])
        b = a.copy()
        b[4:] = [100, 200, 300]
        for order in (1, 2, 3):
            np.testing.assert_array_equal(hasher.hash_sequence(a, order)[:4], hasher.hash_sequence(b, order)[:4])

    def test_empty_sequence(self, hasher):
        assert hasher.hash_sequence(np.zeros((2, 0), dtype=np.int64), 3).shape == (2, 0)


class TestInvalidOrder:
    @pytest.mark.parametrize("order", [0, -1, 4, True, 1.5])
    def test_rejects_bad_order(self, hasher, order):
        with pytest.raises(ValueError):
            hasher.hash_sequence([1, 2, 3], order)

    def test_ngram_length_must_equal_order(self, hasher):
        with pytest.raises(ValueError):
            hasher.hash_ngram([1, 2], 3)

    def test_rejects_3d_input(self, hasher):
        with pytest.raises(ValueError):
            hasher.hash_sequence(np.zeros((1, 2, 3), dtype=np.int64), 1)


class TestDistribution:
    def test_seed_changes_assignments(self):
        ngrams = [(i, i * 7 + 3) for i in range(200)]
        a, b = _hasher(1, hints=(8191, 8191, 8191)), _hasher(2, hints=(8191, 8191, 8191))
        differ = [a.hash_ngram(g, 2) != b.hash_ngram(g, 2) for g in ngrams]
        assert np.mean(differ) > 0.9

    def test_structured_ngrams_spread_over_buckets(self, hasher):
        # consecutive-token bigrams are the classic failure case of additive hashes
        start = np.arange(20_000)
        n_buckets = hasher.bucket_counts[1]
        seq = np.stack([start, start + 1], axis=1)
        buckets = hasher.hash_sequence(seq, 2)[:, 1]
        counts = np.bincount(buckets, minlength=n_buckets)
        expected = len(start) / n_buckets
        assert counts.min() > 0.5 * expected
        assert counts.max() < 2.0 * expected

    def test_random_ngrams_spread_over_buckets(self, hasher):
        rng = np.random.default_rng(123)
        ids = rng.integers(0, 50_000, size=30_000)
        buckets = hasher.hash_sequence(ids, 3)
        n_buckets = hasher.bucket_counts[2]
        counts = np.bincount(buckets, minlength=n_buckets)
        expected = len(ids) / n_buckets
        assert counts.max() < 2.0 * expected
