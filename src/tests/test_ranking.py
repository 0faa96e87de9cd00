import math
import unittest
from unittest.mock import MagicMock

from minipr.errors import DataConsistencyError
from minipr.index.inverted_index import InvertedIndex
from minipr.index.tokenization import TokenizerConfig
from minipr.index.tokenization.simple_tokenizer import SimpleTokenizer
from minipr.ltr.frequency import CorpusFrequencyService
from minipr.ranking.ranking import BM25Ranking, TFIDFRanking, build_ranker
from minipr.ranking.utils import Query
from minipr.storage.corpus import ContentType, InMemoryCorpusStore


def make_index():
    store = InMemoryCorpusStore()
    store.add_paragraph("p1", "Graph ranking with PageRank")
    store.add_paragraph("p2", "PageRank scores for graph nodes and graph edges")
    store.add_paragraph("p3", "Cooking pasta recipes")
    store.add_paragraph("p4", "Linked pages")
    tokenizer = SimpleTokenizer(TokenizerConfig(stemming=False))
    return InvertedIndex.from_corpus(store, ContentType.PASSAGE, tokenizer)


class TestSimpleTokenizer(unittest.TestCase):
    def test_default_normalization(self):
        tokenizer = SimpleTokenizer()
        self.assertEqual(tokenizer.tokenize("Obama's speeches"), ["obama", "speech"])
        self.assertEqual(tokenizer.tokenize("1,000 random walks"), ["1000", "random", "walk"])
        self.assertEqual(tokenizer.tokenize(""), [])

    def test_term_counts(self):
        tokenizer = SimpleTokenizer(TokenizerConfig(stemming=False))
        counts = tokenizer.term_counts("graph nodes and graph edges")
        self.assertEqual(counts, {"graph": 2, "nodes": 1, "edges": 1})


class TestInvertedIndex(unittest.TestCase):
    def test_statistics(self):
        index = make_index()
        self.assertEqual(index.num_docs(), 4)
        self.assertEqual(index.doc_freq("graph"), 2)
        self.assertEqual(index.posting("graph"), {"p1": 1, "p2": 2})
        self.assertEqual(index.doc_freq("unseen"), 0)
        with self.assertRaises(ValueError):
            index.add_documents([("p1", "again")])


class TestBaselineRankers(unittest.TestCase):
    def test_bm25_orders_by_score(self):
        index = make_index()
        ranker = build_ranker("bm25", index)
        self.assertIsInstance(ranker, BM25Ranking)

        ranked = ranker(Query("q1", "graph pagerank"), k=10)

        self.assertEqual({c.doc_id for c in ranked}, {"p1", "p2"})
        self.assertEqual([c.rank for c in ranked], [0, 1])
        self.assertGreaterEqual(ranked[0].score, ranked[1].score)
        self.assertTrue(all(c.query_id == "q1" for c in ranked))

    def test_depth_cut(self):
        ranker = build_ranker("tfidf", make_index())
        self.assertIsInstance(ranker, TFIDFRanking)
        self.assertEqual(len(ranker.rank(Query("q1", "graph pasta pagerank"), k=1)), 1)
        self.assertEqual(ranker.rank(Query("q1", "graph"), k=0), [])

    def test_unknown_ranker(self):
        with self.assertRaises(ValueError):
            build_ranker("sdm", make_index())


class TestCorpusFrequencyService(unittest.TestCase):
    def test_idf(self):
        frequency = CorpusFrequencyService(make_index())
        self.assertAlmostEqual(frequency.idf("graph"), math.log(4 / 2))
        self.assertAlmostEqual(frequency.idf("pasta"), math.log(4))
        # Unseen terms count as df = 1.
        self.assertAlmostEqual(frequency.idf("zebra"), math.log(4))
        self.assertEqual(frequency.cache_size(), 3)

    def test_cache_is_read_through(self):
        stats = MagicMock()
        stats.num_docs.return_value = 10
        stats.doc_freq.return_value = 5
        frequency = CorpusFrequencyService(stats)
        frequency.idf("graph")
        frequency.idf("graph")
        self.assertEqual(stats.doc_freq.call_count, 1)
        self.assertEqual(stats.num_docs.call_count, 1)

    def test_statistics_unavailable_is_fatal(self):
        stats = MagicMock()
        stats.num_docs.side_effect = OSError("database locked")
        with self.assertRaises(DataConsistencyError):
            CorpusFrequencyService(stats).idf("graph")

        empty = MagicMock()
        empty.num_docs.return_value = 0
        empty.doc_freq.return_value = 0
        with self.assertRaises(DataConsistencyError):
            CorpusFrequencyService(empty).idf("graph")


if __name__ == "__main__":
    unittest.main()
