import pytest
import torch

from engram_config import BackBoneConfig, EngramConfig
from engram_context import create_context, destroy_context
from engram_hashing import NgramHasher


HIDDEN_SIZE = 32


@pytest.fixture
def small_config():
    return EngramConfig(
        max_ngram_size=3,
        n_embed_per_ngram=16,
        n_head_per_ngram=4,
        layer_ids=(0, 1),
        pad_id=0,
        seed=42,
        kernel_size=3,
        engram_vocab_size=(97, 101, 103),
    )


@pytest.fixture
def backbone():
    return BackBoneConfig(hidden_size=HIDDEN_SIZE, num_layers=8)


@pytest.fixture
def hasher(small_config):
    return NgramHasher(
        max_ngram_size=small_config.max_ngram_size,
        bucket_hints=small_config.bucket_hints,
        pad_id=small_config.pad_id,
        seed=small_config.seed,
    )


@pytest.fixture
def ctx(small_config, backbone):
    context = create_context(small_config, backbone)
    yield context
    destroy_context(context)


@pytest.fixture
def hidden_states():
    torch.manual_seed(0)
    return torch.randn(12, HIDDEN_SIZE)


@pytest.fixture
def token_ids():
    return torch.tensor([5, 12, 5, 12, 9, 3, 3, 7, 1, 0, 42, 5])
