import numpy as np
import pytest
import torch

from engram_config import BackBoneConfig, EngramConfig
from engram_context import apply, create_context
from engram_errors import ConfigError
from engram_tokenizer import CompressedTokenizer


class _DummyTokenizer:
    """Minimal tokenizer-like object with a fixed vocab (no HF download)."""

    VOCAB = ["A", "a", "é", "e", " ", "\n", "<pad>", "b"]

    def __len__(self) -> int:
        return len(self.VOCAB)

    def decode(self, ids, skip_special_tokens: bool = False):
        return "".join(self.VOCAB[i] for i in ids)

    def convert_ids_to_tokens(self, tid: int):
        return self.VOCAB[tid]


class TestCompressedTokenizer:
    def test_normalized_duplicates_collapse(self):
        ct = CompressedTokenizer(_DummyTokenizer())
        assert len(ct) == 5
        assert ct.lookup_table.tolist() == [0, 0, 1, 1, 2, 2, 3, 4]
        assert ct.host_vocab_size == 8
        assert ct.canonical_keys[4] == "b"

    def test_negative_ids_pass_through(self):
        ct = CompressedTokenizer(_DummyTokenizer())
        np.testing.assert_array_equal(ct([[-1, 1, 3, 7]]), [[-1, 0, 1, 4]])

    def test_context_hashes_compressed_ids(self):
        cfg = EngramConfig(
            max_ngram_size=2,
            n_embed_per_ngram=8,
            n_head_per_ngram=2,
            layer_ids=(0,),
            pad_id=6,
            seed=3,
            kernel_size=2,
            engram_vocab_size=(31, 37),
        )
        ctx = create_context(cfg, BackBoneConfig(hidden_size=8), tokenizer=_DummyTokenizer())
        assert ctx.hasher.pad_id == 3

        hidden = torch.randn(4, 8)
        upper = apply(ctx, hidden, torch.tensor([0, 2, 7, 4]), 0)  # "A é b ' '"
        lower = apply(ctx, hidden, torch.tensor([1, 3, 7, 5]), 0)  # "a e b '\n'"
        assert torch.equal(upper, lower)

    def test_pad_id_outside_vocab_rejected(self):
        cfg = EngramConfig(
            max_ngram_size=2,
            n_embed_per_ngram=8,
            n_head_per_ngram=2,
            layer_ids=(0,),
            pad_id=100,
            engram_vocab_size=(31, 37),
        )
        with pytest.raises(ConfigError, match="pad_id"):
            create_context(cfg, BackBoneConfig(hidden_size=8), tokenizer=_DummyTokenizer())
