"""
End-to-end mini page rank method.

1. Pick k: sweep the configured range on the training queries, or use the fixed k.
2. Build training features at the optimal k and train RankLib; keep the best fold's model.
3. Build test features at the optimal k, score them with the model and write the run file.
4. Evaluate the run file with trec_eval when test qrels and an evaluator are available.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, Optional

from minipr.errors import ConfigurationError, MiniPageRankError
from minipr.index.inverted_index import InvertedIndex
from minipr.index.tokenization import TokenizerAbstract, get_tokenizer
from minipr.ltr.features import FeatureMatrixBuilder, QueryFeatureSet
from minipr.ltr.frequency import CorpusFrequencyService
from minipr.ltr.generators import PageRankSettings, build_generators, validate_generator_names
from minipr.ltr.k_selector import KRange, KSelection, parse_optimal_k, select_optimal_k, trace_file_name
from minipr.ltr.qrels import (
    GroundTruth,
    QueryType,
    assign_numeric_ids,
    load_queries,
    numerical_qrel_path,
    write_numerical_qrels,
)
from minipr.ltr.ranklib import FoldResult, RankLibTrainer, model_file_name
from minipr.ltr.rerank import RankedResult, rerank, write_run_file
from minipr.ltr.trec_eval import EvalData, TrecEval
from minipr.ranking.ranking import build_ranker
from minipr.storage.corpus import ContentType, CorpusStore, SQLiteCorpusStore
from minipr.utils.logger import write_message_to_log_file

logger = logging.getLogger(__name__)


@dataclass
class MethodResult:
    method_name: str
    content_type: ContentType
    optimal_k: int
    best_fold: FoldResult
    run_path: Path
    selection: Optional[KSelection] = None
    evaluation: Optional[EvalData] = None


class MiniPageRankMethod:
    def __init__(
        self,
        cfg,
        *,
        ranker,
        store: CorpusStore,
        frequency: CorpusFrequencyService,
        tokenizer: TokenizerAbstract,
        trainer: RankLibTrainer,
        evaluator: Optional[TrecEval] = None,
        content_type: Optional[ContentType] = None,
        query_type: Optional[QueryType] = None,
        baseline_name: str = "bm25",
    ):
        self.cfg = cfg
        self.ranker = ranker
        self.store = store
        self.frequency = frequency
        self.tokenizer = tokenizer
        self.trainer = trainer
        self.evaluator = evaluator
        self.content_type = ContentType(content_type or cfg.CORPUS.CONTENT_TYPE)
        self.query_type = QueryType(query_type or cfg.CORPUS.QUERY_TYPE)
        self.baseline_name = baseline_name
        mpr = cfg.MINI_PAGE_RANK
        self.generator_names = validate_generator_names(list(mpr.GENERATORS))
        self.pagerank = PageRankSettings.from_config(cfg)
        self.workers = int(mpr.get("WORKERS", 0))
        self.strict = bool(mpr.get("STRICT", True))

    @classmethod
    def from_config(
        cls,
        cfg,
        content_type: Optional[ContentType] = None,
        store: Optional[CorpusStore] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> "MiniPageRankMethod":
        """Opens the corpus store, indexes it and wires the baseline ranker, trainer and evaluator."""
        content_type = ContentType(content_type or cfg.CORPUS.CONTENT_TYPE)
        store = store or SQLiteCorpusStore.from_config(cfg)
        tokenizer = get_tokenizer(cfg)
        index = InvertedIndex.from_corpus(store, content_type, tokenizer)
        baseline_name = cfg.MINI_PAGE_RANK.get("BASELINE", "bm25")
        evaluator = TrecEval.from_config(cfg, cancel_event) if cfg.TREC_EVAL.get("EXECUTABLE") else None
        return cls(
            cfg,
            ranker=build_ranker(baseline_name, index, cfg),
            store=store,
            frequency=CorpusFrequencyService(index),
            tokenizer=tokenizer,
            trainer=RankLibTrainer.from_config(cfg, cancel_event),
            evaluator=evaluator,
            content_type=content_type,
            baseline_name=baseline_name,
        )

    @property
    def name(self) -> str:
        return f"mini_page_rank_{self.baseline_name}"

    def _new_generators(self):
        return build_generators(
            self.generator_names, frequency=self.frequency, tokenizer=self.tokenizer, pagerank=self.pagerank
        )

    def feature_builder(self, ground_truth: GroundTruth) -> FeatureMatrixBuilder:
        return FeatureMatrixBuilder(
            self.ranker,
            self.store,
            ground_truth,
            self._new_generators,
            content_type=self.content_type,
            query_type=self.query_type,
            workers=self.workers,
            strict=self.strict,
        )

    def _load_split(self, queries_path: str, qrels_path: Optional[str]):
        for path in (queries_path, qrels_path):
            if path and not Path(path).is_file():
                raise ConfigurationError(f"Data file not found: {path}")
        try:
            queries = load_queries(queries_path)
            ground_truth = GroundTruth()
            qrels = {}
            if qrels_path:
                qrels = ground_truth.load(self.query_type, self.content_type, qrels_path)
        except OSError as e:
            raise ConfigurationError(f"Failed to read {queries_path} / {qrels_path}: {e}") from e
        return queries, ground_truth, qrels

    def train_with_k(
        self,
        builder: FeatureMatrixBuilder,
        queries: dict[str, str],
        numeric_ids: dict[str, int],
        k: int,
        qrel_path: Path,
    ) -> FoldResult:
        feature_sets = builder.build(queries, k, numeric_ids, desc=f"Train features (k={k})")
        file_name = model_file_name(self.content_type.value, self.query_type.value, k)
        return self.trainer.train_feature_sets(feature_sets.values(), qrel_path, file_name)

    def rerank_queries(
        self, feature_sets: Iterable[QueryFeatureSet], best_fold: FoldResult
    ) -> list[RankedResult]:
        out = self.cfg.OUTPUT
        results: list[RankedResult] = []
        for feature_set in feature_sets:
            results.extend(
                rerank(
                    feature_set,
                    best_fold.model,
                    depth=int(out.RERANK_DEPTH),
                    start_rank=int(out.START_RANK),
                )
            )
        return results

    def _run(self) -> MethodResult:
        cfg = self.cfg
        k_setting = parse_optimal_k(cfg.MINI_PAGE_RANK.OPTIMAL_K)
        if not cfg.DATA.get("TRAIN_QRELS"):
            raise ConfigurationError("DATA.TRAIN_QRELS is required to train a model")

        train_queries, train_truth, train_qrels = self._load_split(cfg.DATA.TRAIN_QUERIES, cfg.DATA.TRAIN_QRELS)
        qrel_path = write_numerical_qrels(
            train_qrels, numerical_qrel_path(cfg.DATA.TRAIN_QRELS, cfg.RANK_LIB.QREL_DIR)
        )
        train_ids = assign_numeric_ids(train_queries, train_qrels)
        train_builder = self.feature_builder(train_truth)
        results_dir = Path(cfg.OUTPUT.RESULTS_DIR)

        selection = None
        if isinstance(k_setting, KRange):
            trace_path = results_dir / trace_file_name(k_setting, self.query_type.value, self.content_type.value)

            def log_trial(trial):
                write_message_to_log_file(
                    f"{self.name} [{self.content_type.value}] k={trial.k} fold={trial.fold} metric={trial.metric}", cfg
                )

            selection = select_optimal_k(
                k_setting,
                lambda k: self.train_with_k(train_builder, train_queries, train_ids, k, qrel_path),
                trace_path=trace_path,
                on_trial=log_trial,
            )
            optimal_k = selection.optimal_k
        else:
            optimal_k = k_setting

        logger.info(f"Building model using train queries with a k value of {optimal_k}")
        best_fold = self.train_with_k(train_builder, train_queries, train_ids, optimal_k, qrel_path)

        test_queries, test_truth, test_qrels = self._load_split(cfg.DATA.TEST_QUERIES, cfg.DATA.get("TEST_QRELS"))
        test_ids = assign_numeric_ids(test_queries, test_qrels)
        logger.info(f"Ranking test queries using a k value of {optimal_k}")
        test_features = self.feature_builder(test_truth).build(
            test_queries, optimal_k, test_ids, desc=f"Test features (k={optimal_k})"
        )
        ranked = self.rerank_queries(test_features.values(), best_fold)
        run_path = write_run_file(
            ranked,
            results_dir / f"{self.name}_{self.content_type.value}_rankings.run",
            cfg.OUTPUT.RUN_TAG,
            self.name,
        )

        evaluation = None
        if self.evaluator is not None and cfg.DATA.get("TEST_QRELS"):
            evaluation = self.evaluator.evaluate(cfg.DATA.TEST_QRELS, run_path)
            logger.info(f"{self.name} [{self.content_type.value}] test MAP={evaluation.measures.get('map')}")

        return MethodResult(
            method_name=self.name,
            content_type=self.content_type,
            optimal_k=optimal_k,
            best_fold=best_fold,
            run_path=run_path,
            selection=selection,
            evaluation=evaluation,
        )

    def run(self) -> MethodResult:
        """Runs the whole method; any failure of this run surfaces as one MiniPageRankError."""
        try:
            result = self._run()
        except (MiniPageRankError, OSError) as e:
            message = f"{self.name} [{self.content_type.value}] failed: {type(e).__name__}: {e}"
            logger.error(message)
            write_message_to_log_file(message, self.cfg)
            raise MiniPageRankError(message) from e
        write_message_to_log_file(
            f"{self.name} [{self.content_type.value}] finished: k={result.optimal_k} "
            f"fold={result.best_fold.fold} metric={result.best_fold.metric} run={result.run_path}",
            self.cfg,
        )
        return result


def run_many(methods: Iterable[MiniPageRankMethod]) -> tuple[dict[str, MethodResult], dict[str, MiniPageRankError]]:
    """
    Runs independent methods one after another. A failed method does not stop
    its siblings; failures are returned next to the results, keyed the same way.
    """
    results: dict[str, MethodResult] = {}
    failures: dict[str, MiniPageRankError] = {}
    for method in methods:
        key = f"{method.name}_{method.content_type.value}"
        try:
            results[key] = method.run()
        except MiniPageRankError as e:
            failures[key] = e
    if failures:
        logger.error(f"{len(failures)} of {len(results) + len(failures)} method runs failed: {sorted(failures)}")
    return results, failures
