import tempfile
import unittest
from pathlib import Path
from unittest.mock import patch

from omegaconf import OmegaConf

from minipr.errors import ConfigurationError, DataConsistencyError, ExternalToolError, MiniPageRankError
from minipr.ltr.pipeline import MiniPageRankMethod, run_many
from minipr.ltr.process import ProcessResult
from minipr.ltr.rerank import read_run_file
from minipr.storage.corpus import ContentType, InMemoryCorpusStore

TRAIN_QRELS = """\
enwiki:Graph 0 p1 1
enwiki:Graph 0 p2 1
enwiki:Pasta 0 p4 1
"""

# Test fold metric per k; k=20 wins the sweep.
FOLD_METRICS = {10: 0.3, 20: 0.55}


def make_store():
    store = InMemoryCorpusStore()
    store.add_paragraph("p1", "Graph ranking with PageRank", page_outlinks=["A", "B"])
    store.add_paragraph("p2", "PageRank scores for graph nodes", page_outlinks=["B"])
    store.add_paragraph("p3", "Random walks on a graph", page_outlinks=["A"])
    store.add_paragraph("p4", "Cooking pasta recipes", page_outlinks=["C"])
    store.add_paragraph("p5", "Fresh pasta with tomato sauce", page_outlinks=["C"])
    store.add_paragraph("p6", "Lakes and rivers of Europe")
    store.add_page("A", "Graph")
    store.add_page("B", "PageRank")
    store.add_page("C", "Pasta")
    return store


def fake_ranklib(calls, weights="1:0.5 2:0.2 3:0.2 4:0.1"):
    """Stands in for `java -jar RankLib.jar -train ...`: writes fold models and prints fold lines."""

    def run(cmd, *, on_stdout_line=None, **kwargs):
        calls.append(list(cmd))
        model_dir = Path(cmd[cmd.index("-kcvmd") + 1])
        model_name = cmd[cmd.index("-kcvmn") + 1]
        k = int(model_name.split("_")[-2])
        metric = FOLD_METRICS.get(k, 0.1)
        for fold in (1, 2):
            (model_dir / f"f{fold}.{model_name}").write_text(
                f"## Coordinate Ascent\n## Restart = 2\n{weights}\n", encoding="utf-8"
            )
        lines = [
            "Training data:\t" + cmd[cmd.index("-train") + 1],
            f"Fold 1   |   0.4000   |  {metric - 0.1:.4f}  ",
            f"Fold 2   |   0.4000   |  {metric:.4f}  ",
        ]
        for line in lines:
            on_stdout_line(line)
        return ProcessResult(list(cmd), 0, stdout_tail=lines)

    return run


class TestMiniPageRankPipeline(unittest.TestCase):
    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        root = Path(self.tmp.name)
        self.root = root
        data = root / "data"
        data.mkdir()
        (data / "train.qrels").write_text(TRAIN_QRELS, encoding="utf-8")
        (data / "train_queries.tsv").write_text(
            "enwiki:Graph\tgraph pagerank\nenwiki:Pasta\tpasta recipes\n", encoding="utf-8"
        )
        (data / "test_queries.tsv").write_text(
            "enwiki:Walks\trandom graph walks\nenwiki:Sauce\ttomato pasta\n", encoding="utf-8"
        )
        self.cfg = OmegaConf.create({
            "LOG_PATH": str(root / "logs" / "minipr.log"),
            "CORPUS": {"DB_PATH": str(root / "unused.sqlite"), "CONTENT_TYPE": "passage", "QUERY_TYPE": "article"},
            "TOKENIZER": {
                "MIN_LEN": 2,
                "LOWERCASE": True,
                "ASCII_FOLD": True,
                "REMOVE_STOPWORDS": True,
                "STEM": False,
                "NUMBER_NORMALIZE": True,
            },
            "BM25": {"K1": 1.2, "B": 0.75},
            "MINI_PAGE_RANK": {
                "OPTIMAL_K": "(0, 20, 10)",
                "GENERATORS": ["hypergraph_rank", "text_salience_rank", "text_uniqueness_rank"],
                "WORKERS": 2,
                "STRICT": True,
                "BASELINE": "bm25",
                "PAGERANK": {"DAMPING": 0.85, "TOLERANCE": 1.0e-6, "MAX_ITERATIONS": 200},
            },
            "RANK_LIB": {
                "EXECUTABLE": "RankLib.jar",
                "JAVA": "java",
                "LEARNING_METHOD": "COORDINATE_ASCENT",
                "METRIC": "MAP",
                "FOLDS": 2,
                "NORMALIZE": False,
                "TIMEOUT_SECONDS": 60,
                "TRAINING_DATA_DIR": str(root / "ranklib" / "training_data"),
                "MODEL_DIR": str(root / "ranklib" / "models"),
                "QREL_DIR": str(root / "updated_qrels"),
            },
            "TREC_EVAL": {"EXECUTABLE": "", "OPTIONS": "", "TIMEOUT_SECONDS": 60},
            "DATA": {
                "TRAIN_QUERIES": str(data / "train_queries.tsv"),
                "TEST_QUERIES": str(data / "test_queries.tsv"),
                "TRAIN_QRELS": str(data / "train.qrels"),
                "TEST_QRELS": "",
            },
            "OUTPUT": {
                "RESULTS_DIR": str(root / "results"),
                "RUN_TAG": "team2",
                "RERANK_DEPTH": 1000,
                "START_RANK": 1,
            },
        })

    def tearDown(self):
        self.tmp.cleanup()

    def method(self):
        return MiniPageRankMethod.from_config(self.cfg, ContentType.PASSAGE, store=make_store())

    def test_sweep_train_and_rerank(self):
        calls = []
        method = self.method()
        self.assertIsNone(method.evaluator)
        with patch("minipr.ltr.ranklib.run_process", side_effect=fake_ranklib(calls)):
            result = method.run()

        self.assertEqual(result.method_name, "mini_page_rank_bm25")
        self.assertEqual(result.optimal_k, 20)
        self.assertEqual(result.best_fold.fold, 2)
        self.assertAlmostEqual(result.best_fold.metric, 0.55)
        self.assertEqual(result.best_fold.model.number_of_features(), 4)
        self.assertEqual([(t.k, t.fold) for t in result.selection.trace], [(10, 2), (20, 2)])
        # Two sweep trainings plus the final one at the optimal k.
        self.assertEqual(len(calls), 3)
        self.assertIn("mini_pr_passage_article_20_model", calls[-1])

        trace = self.root / "results" / "mini_page_rank_k_maps_min0_max20_step10article_passage.csv"
        self.assertEqual(trace.read_text(encoding="utf-8").splitlines(), ["k, fold, MAP", "10, 2, 0.3", "20, 2, 0.55"])

        numerical = self.root / "updated_qrels" / "train-numerical.qrels"
        self.assertEqual(numerical.read_text(encoding="utf-8").splitlines()[0], "1 0 p1 1")

        train_file = self.root / "ranklib" / "training_data" / "mini_pr_passage_article_20_train"
        first = train_file.read_text(encoding="utf-8").splitlines()[0]
        self.assertTrue(first.startswith("1 qid:1 1:"))
        self.assertTrue(first.endswith("# p1 enwiki:Graph") or first.endswith("# p2 enwiki:Graph"))

        self.assertEqual(result.run_path.name, "mini_page_rank_bm25_passage_rankings.run")
        runs = read_run_file(result.run_path)
        self.assertEqual(set(runs), {"enwiki:Walks", "enwiki:Sauce"})
        self.assertIn("p3", runs["enwiki:Walks"])
        lines = result.run_path.read_text(encoding="utf-8").splitlines()
        self.assertTrue(lines[0].split()[3] == "1")
        self.assertTrue(all(line.endswith(" team2 mini_page_rank_bm25") for line in lines))
        for scores in runs.values():
            values = list(scores.values())
            self.assertEqual(values, sorted(values, reverse=True))

        log = Path(self.cfg.LOG_PATH).read_text(encoding="utf-8")
        self.assertIn("k=10 fold=2 metric=0.3", log)
        self.assertIn("finished: k=20", log)

    def test_fixed_k_skips_sweep(self):
        self.cfg.MINI_PAGE_RANK.OPTIMAL_K = 10
        calls = []
        with patch("minipr.ltr.ranklib.run_process", side_effect=fake_ranklib(calls)):
            result = self.method().run()
        self.assertEqual(result.optimal_k, 10)
        self.assertIsNone(result.selection)
        self.assertEqual(len(calls), 1)

    def test_tool_failure_is_reported_per_method(self):
        failing = self.method()
        with patch("minipr.ltr.ranklib.run_process", side_effect=ExternalToolError("java: not found")):
            results, failures = run_many([failing])

        self.assertEqual(results, {})
        self.assertEqual(list(failures), ["mini_page_rank_bm25_passage"])
        error = failures["mini_page_rank_bm25_passage"]
        self.assertIsInstance(error, MiniPageRankError)
        self.assertIsInstance(error.__cause__, ExternalToolError)
        self.assertIn("failed: ExternalToolError", Path(self.cfg.LOG_PATH).read_text(encoding="utf-8"))

    def test_inverted_k_range(self):
        self.cfg.MINI_PAGE_RANK.OPTIMAL_K = "(30, 10, 10)"
        with patch("minipr.ltr.ranklib.run_process") as run:
            with self.assertRaises(MiniPageRankError):
                self.method().run()
        run.assert_not_called()

    def test_missing_train_qrels(self):
        self.cfg.DATA.TRAIN_QRELS = ""
        with self.assertRaises(MiniPageRankError):
            self.method().run()

    def test_missing_data_file_does_not_stop_sibling_runs(self):
        broken_cfg = OmegaConf.create(OmegaConf.to_container(self.cfg))
        broken_cfg.DATA.TRAIN_QUERIES = str(self.root / "data" / "missing_queries.tsv")
        broken_cfg.MINI_PAGE_RANK.BASELINE = "tfidf"
        broken = MiniPageRankMethod.from_config(broken_cfg, ContentType.PASSAGE, store=make_store())
        self.cfg.MINI_PAGE_RANK.OPTIMAL_K = 10

        with patch("minipr.ltr.ranklib.run_process", side_effect=fake_ranklib([])):
            results, failures = run_many([broken, self.method()])

        self.assertEqual(list(failures), ["mini_page_rank_tfidf_passage"])
        self.assertIsInstance(failures["mini_page_rank_tfidf_passage"].__cause__, ConfigurationError)
        self.assertIn("missing_queries.tsv", str(failures["mini_page_rank_tfidf_passage"]))
        self.assertEqual(list(results), ["mini_page_rank_bm25_passage"])
        self.assertTrue(results["mini_page_rank_bm25_passage"].run_path.exists())

    def test_data_consistency_failure_is_logged(self):
        self.cfg.MINI_PAGE_RANK.OPTIMAL_K = 10
        # Three weights for four features.
        with patch("minipr.ltr.ranklib.run_process", side_effect=fake_ranklib([], weights="1:0.5 2:0.2 3:0.2")):
            with self.assertRaises(MiniPageRankError) as ctx:
                self.method().run()
        self.assertIsInstance(ctx.exception.__cause__, DataConsistencyError)
        self.assertIn("failed: DataConsistencyError", Path(self.cfg.LOG_PATH).read_text(encoding="utf-8"))


if __name__ == "__main__":
    unittest.main()
