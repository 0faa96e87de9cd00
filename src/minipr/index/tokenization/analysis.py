from __future__ import annotations

import re
import unicodedata
from abc import ABC, abstractmethod
from collections import Counter
from dataclasses import dataclass
from typing import Any

_THOUSANDS_SEP = re.compile(r"(?<=\d),(?=\d)")
_STEM_SUFFIXES = ("ing", "edly", "ed", "ly", "es", "s")


def _as_bool(value: Any, default: bool) -> bool:
    if value is None:
        return default
    if isinstance(value, str):
        return value.strip().lower() in {"1", "true", "yes", "y", "on"}
    return bool(value)


@dataclass(frozen=True)
class TokenizerConfig:
    lowercase: bool = True
    ascii_fold: bool = True
    min_len: int = 2
    remove_stopwords: bool = True
    stemming: bool = True
    number_normalize: bool = True

    @classmethod
    def from_config(cls, cfg) -> "TokenizerConfig":
        """Reads the `TOKENIZER` section; absent keys keep their defaults."""
        section = getattr(cfg, "TOKENIZER", None)

        def read(key: str):
            return getattr(section, key, None) if section is not None else None

        defaults = cls()
        min_len = read("MIN_LEN")
        return cls(
            lowercase=_as_bool(read("LOWERCASE"), defaults.lowercase),
            ascii_fold=_as_bool(read("ASCII_FOLD"), defaults.ascii_fold),
            min_len=int(min_len) if min_len is not None else defaults.min_len,
            remove_stopwords=_as_bool(read("REMOVE_STOPWORDS"), defaults.remove_stopwords),
            stemming=_as_bool(read("STEM"), defaults.stemming),
            number_normalize=_as_bool(read("NUMBER_NORMALIZE"), defaults.number_normalize),
        )


def fold_ascii(term: str) -> str:
    return unicodedata.normalize("NFKD", term).encode("ascii", "ignore").decode("ascii")


def strip_possessive(term: str) -> str:
    return term[:-2] if term.endswith("'s") else term


def join_thousands(term: str) -> str:
    """"1,000" -> "1000"; terms without digits are returned as is."""
    if "," in term and any(c.isdigit() for c in term):
        return _THOUSANDS_SEP.sub("", term)
    return term


def simple_stem(term: str) -> str:
    """Strips the first matching suffix from terms longer than three characters."""
    if len(term) <= 3:
        return term
    for suffix in _STEM_SUFFIXES:
        if term.endswith(suffix):
            return term[: -len(suffix)]
    return term


class TokenizerAbstract(ABC):
    """Text to terms. Index building and text similarity must share one instance."""

    @abstractmethod
    def tokenize(self, text: str) -> list[str]:
        pass

    def term_counts(self, text: str) -> Counter:
        return Counter(self.tokenize(text))
