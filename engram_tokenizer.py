"""Vocabulary compression ahead of n-gram hashing.

Host tokenizers carry many ids that differ only in case, accents or whitespace
("The", "the", " the"). Hashing them separately spreads one n-gram over several
buckets, so ids are first mapped to a canonical id per normalized surface form.
"""

from __future__ import annotations

import os
from typing import Dict, List, Union

import numpy as np
from tokenizers import Regex, normalizers
from transformers import AutoTokenizer


_SPACE_PLACEHOLDER = "\uE000"
_UNDECODABLE = "\ufffd"


def _hf_offline() -> bool:
    return any(os.environ.get(name) in {"1", "true", "True"} for name in ("TRANSFORMERS_OFFLINE", "HF_HUB_OFFLINE"))


def load_tokenizer(tokenizer_name_or_path: str):
    """AutoTokenizer, retried against the local cache when the hub is unreachable."""
    offline = _hf_offline()
    try:
        return AutoTokenizer.from_pretrained(tokenizer_name_or_path, trust_remote_code=True, local_files_only=offline)
    except OSError:
        if offline:
            raise
        return AutoTokenizer.from_pretrained(tokenizer_name_or_path, trust_remote_code=True, local_files_only=True)


def build_surface_normalizer() -> normalizers.Normalizer:
    # a token that is only whitespace keeps a single space instead of being stripped to ""
    return normalizers.Sequence(
        [
            normalizers.NFKC(),
            normalizers.NFD(),
            normalizers.StripAccents(),
            normalizers.Lowercase(),
            normalizers.Replace(Regex(r"[ \t\r\n]+"), " "),
            normalizers.Replace(Regex(r"^ $"), _SPACE_PLACEHOLDER),
            normalizers.Strip(),
            normalizers.Replace(_SPACE_PLACEHOLDER, " "),
        ]
    )


class CompressedTokenizer:
    """Surjective map host_token_id -> canonical id.

    `tokenizer` is a name/path for `AutoTokenizer` or any object with `__len__`,
    `decode(ids, skip_special_tokens=...)` and `convert_ids_to_tokens(tid)`.
    """

    def __init__(self, tokenizer: Union[str, os.PathLike, object]):
        if isinstance(tokenizer, (str, os.PathLike)):
            tokenizer = load_tokenizer(os.fspath(tokenizer))
        self.tokenizer = tokenizer
        self.normalizer = build_surface_normalizer()

        keys = [self._surface_key(tid) for tid in range(len(tokenizer))]
        self.lookup_table, self.canonical_keys = self._assign_ids(keys)

    def __len__(self) -> int:
        return len(self.canonical_keys)

    @property
    def host_vocab_size(self) -> int:
        return int(self.lookup_table.shape[0])

    def _surface_key(self, tid: int) -> str:
        text = self.tokenizer.decode([tid], skip_special_tokens=False)
        if _UNDECODABLE in text:
            # partial byte sequences: the raw token string is the only stable key
            return self.tokenizer.convert_ids_to_tokens(tid)
        return self.normalizer.normalize_str(text) or text

    @staticmethod
    def _assign_ids(keys: List[str]):
        key_to_id: Dict[str, int] = {}
        ids = [key_to_id.setdefault(key, len(key_to_id)) for key in keys]
        return np.asarray(ids, dtype=np.int64), list(key_to_id)

    def __call__(self, input_ids) -> np.ndarray:
        """Canonical ids, same shape; negative ids (masks, ignore labels) pass through."""
        arr = np.asarray(input_ids, dtype=np.int64)
        return np.where(arr >= 0, self.lookup_table[np.clip(arr, 0, None)], arr)
