"""
In-memory inverted index over corpus text.

Built once at process start from the corpus store and shared read-only by
the baseline ranker (postings) and the corpus frequency service (document
frequencies).
"""

from __future__ import annotations

import logging
from typing import Iterable

from tqdm import tqdm

from minipr.index.tokenization import TokenizerAbstract
from minipr.storage.corpus import ContentType, CorpusStore

logger = logging.getLogger(__name__)


class InvertedIndex:
    def __init__(self, tokenizer: TokenizerAbstract):
        self.tokenizer = tokenizer
        # term -> {doc_id: tf}
        self.postings: dict[str, dict[str, int]] = {}
        self.doc_lengths: dict[str, int] = {}
        self._total_len = 0

    @classmethod
    def from_corpus(
        cls, store: CorpusStore, content_type: ContentType, tokenizer: TokenizerAbstract
    ) -> "InvertedIndex":
        index = cls(tokenizer)
        index.add_documents(tqdm(store.iter_texts(content_type), desc=f"Indexing {content_type.value}s"))
        logger.info(f"Indexed {index.num_docs()} {content_type.value} documents, {len(index.postings)} terms")
        return index

    def add_documents(self, docs: Iterable[tuple[str, str]]) -> None:
        for doc_id, text in docs:
            if doc_id in self.doc_lengths:
                raise ValueError(f"Document {doc_id} indexed twice")
            counts = self.tokenizer.term_counts(text)
            length = sum(counts.values())
            self.doc_lengths[doc_id] = length
            self._total_len += length
            for term, tf in counts.items():
                self.postings.setdefault(term, {})[doc_id] = tf

    def num_docs(self) -> int:
        return len(self.doc_lengths)

    def avg_doc_len(self) -> float:
        n = self.num_docs()
        return self._total_len / n if n else 0.0

    def doc_freq(self, term: str) -> int:
        return len(self.postings.get(term, ()))

    def posting(self, term: str) -> dict[str, int]:
        return self.postings.get(term, {})
