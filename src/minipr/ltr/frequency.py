from __future__ import annotations

import logging
import math
from typing import Protocol

from minipr.errors import DataConsistencyError

logger = logging.getLogger(__name__)


class CorpusStatistics(Protocol):
    def num_docs(self) -> int: ...

    def doc_freq(self, term: str) -> int: ...


class CorpusFrequencyService:
    """
    Read-through IDF lookups against the corpus statistics.

    The cache is append-only and shared by every generator of a run. Two
    threads computing the same term concurrently store the same value, so no
    lock is taken around the lookup.
    """

    def __init__(self, stats: CorpusStatistics):
        self.stats = stats
        self._idfs: dict[str, float] = {}
        self._num_docs: int | None = None

    def num_docs(self) -> int:
        if self._num_docs is None:
            try:
                n = int(self.stats.num_docs())
            except Exception as e:
                raise DataConsistencyError(f"Corpus statistics unavailable: {e}") from e
            if n <= 0:
                raise DataConsistencyError("Corpus statistics report an empty corpus")
            self._num_docs = n
        return self._num_docs

    def idf(self, term: str) -> float:
        """ln(N / df), with df taken as 1 for unseen terms."""
        cached = self._idfs.get(term)
        if cached is not None:
            return cached
        try:
            df = int(self.stats.doc_freq(term))
        except Exception as e:
            raise DataConsistencyError(f"Failed to compute idf for {term!r}: {e}") from e
        if df <= 0:
            df = 1
        value = math.log(self.num_docs() / df)
        self._idfs[term] = value
        return value

    def cache_size(self) -> int:
        return len(self._idfs)
