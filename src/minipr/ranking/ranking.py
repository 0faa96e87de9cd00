import abc
from typing import List

import numpy

from minipr.index.inverted_index import InvertedIndex
from minipr.ranking.utils import Candidate, Query, RankingRegistry


class Ranking(abc.ABC):
    """Baseline ranker: returns the top-k candidates for a query, best first."""

    name = "ranking"

    def __init__(self, index: InvertedIndex):
        self.index = index

    def __call__(self, query: Query, k: int) -> List[Candidate]:
        return self.rank(query, k)

    @abc.abstractmethod
    def _compute_score(self, term: str) -> dict[str, float]:
        pass

    def rank(self, query: Query, k: int) -> List[Candidate]:
        '''
        Scores every document matching at least one query term and returns the
        best `k`, ordered by descending score (ties by document id).
        '''
        if k <= 0:
            return []
        ranked_results: dict[str, float] = dict()
        for term in self.index.tokenizer.tokenize(query.text):
            for doc_id, score in self._compute_score(term).items():
                ranked_results[doc_id] = ranked_results.get(doc_id, 0.0) + score
        ordered = sorted(ranked_results.items(), key=lambda item: (-item[1], item[0]))[:k]
        return [
            Candidate(query_id=query.id, doc_id=doc_id, rank=i, score=float(score))
            for i, (doc_id, score) in enumerate(ordered)
        ]


class TFIDFRanking(Ranking):

    name = "tfidf"

    def _compute_score(self, term: str) -> dict[str, float]:
        posting = self.index.posting(term)
        result = dict()
        idf = numpy.log(self.index.num_docs() / (len(posting) + 1))
        for doc_id, tf in posting.items():
            result[doc_id] = numpy.log(1 + tf) * idf
        return result


class BM25Ranking(Ranking):

    name = "bm25"

    def __init__(self, index: InvertedIndex, cfg=None):
        super().__init__(index)
        bm25 = getattr(cfg, "BM25", None) if cfg is not None else None
        k1 = getattr(bm25, "K1", None)
        b = getattr(bm25, "B", None)
        self.k1 = float(k1) if k1 is not None else 1.2
        self.b = float(b) if b is not None else 0.75
        self.avg_doc_len = index.avg_doc_len() or 1.0

    def _compute_score(self, term: str) -> dict[str, float]:
        posting = self.index.posting(term)
        num_docs = self.index.num_docs()
        result = dict()
        idf = numpy.log((num_docs - len(posting) + 0.5) / (len(posting) + 0.5) + 1)
        for doc_id, tf in posting.items():
            doc_len = self.index.doc_lengths[doc_id]
            denom = tf + self.k1 * (1 - self.b + self.b * (doc_len / self.avg_doc_len))
            result[doc_id] = idf * ((tf * (self.k1 + 1)) / denom)
        return result


RankingRegistry.register(TFIDFRanking.name, TFIDFRanking)
RankingRegistry.register(BM25Ranking.name, BM25Ranking)


def build_ranker(name: str, index: InvertedIndex, cfg=None) -> Ranking:
    ranker_class = RankingRegistry.get_ranker(name)
    if ranker_class is BM25Ranking:
        return ranker_class(index, cfg)
    return ranker_class(index)
