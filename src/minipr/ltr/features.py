"""
Feature matrix construction for one candidate depth k.

For every query the baseline ranker produces the top-k candidates. Feature 1 is
the baseline score, features 2..1+G are the PageRank scores of the configured
graph generators in configuration order. A candidate that a generator does not
score gets 0.0 at that index, so every record of a batch has length 1+G.

Queries are processed by a thread pool; a failing query is reported after the
batch and never aborts its siblings.
"""

from __future__ import annotations

import logging
import os
import traceback
from dataclasses import dataclass, field
from multiprocessing.pool import ThreadPool
from typing import Callable, Optional, Sequence

import numpy as np
import tqdm

from minipr.errors import DataConsistencyError, FeatureBatchError
from minipr.ltr.generators import GraphFeatureGenerator
from minipr.ltr.qrels import GroundTruth, QueryType
from minipr.ranking.utils import Candidate, Query
from minipr.storage.corpus import ContentType, CorpusStore

logger = logging.getLogger(__name__)

BASELINE_FEATURE = 1


@dataclass
class FeatureRecord:
    """Feature vector of one (query, candidate) pair. `features[0]` is feature index 1."""

    features: list[float]
    label: int = 0

    @classmethod
    def empty(cls, num_features: int, label: int = 0) -> "FeatureRecord":
        return cls([0.0] * num_features, label)

    def set(self, index: int, value: float) -> None:
        if not 1 <= index <= len(self.features):
            raise DataConsistencyError(f"Feature index {index} outside 1..{len(self.features)}")
        self.features[index - 1] = float(value)

    def get(self, index: int) -> float:
        return self.features[index - 1]


@dataclass
class QueryFeatureSet:
    query_id: str
    numeric_id: int
    query_text: str = ""
    # Insertion order is the baseline rank order.
    records: dict[str, FeatureRecord] = field(default_factory=dict)

    def matrix(self) -> np.ndarray:
        if not self.records:
            return np.zeros((0, 0), dtype=np.float64)
        return np.array([r.features for r in self.records.values()], dtype=np.float64)

    def labels(self) -> np.ndarray:
        return np.array([r.label for r in self.records.values()], dtype=np.int32)

    def __len__(self) -> int:
        return len(self.records)


class FeatureMatrixBuilder:
    def __init__(
        self,
        ranker,
        store: CorpusStore,
        ground_truth: GroundTruth,
        generator_factory: Callable[[], Sequence[GraphFeatureGenerator]],
        *,
        content_type: ContentType = ContentType.PASSAGE,
        query_type: QueryType = QueryType.ARTICLE,
        workers: int = 1,
        strict: bool = True,
        show_progress: bool = True,
    ):
        """
        Args:
            ranker: baseline ranker, called as `ranker.rank(Query, k)`.
            store: corpus store used to fetch the enriched candidates in one batch per query.
            generator_factory: returns fresh generator instances; called once per query so no graph
                state is shared between concurrently processed queries.
            workers: thread count, 0 picks one from the cpu count, 1 runs in the calling thread.
            strict: raise FeatureBatchError after the batch when any query failed.
        """
        self.ranker = ranker
        self.store = store
        self.ground_truth = ground_truth
        self.generator_factory = generator_factory
        self.content_type = ContentType(content_type)
        self.query_type = QueryType(query_type)
        self.workers = workers if workers > 0 else max(1, (os.cpu_count() or 4) - 2)
        self.strict = strict
        self.show_progress = show_progress
        self.generator_names = [g.name for g in generator_factory()]
        self.num_features = 1 + len(self.generator_names)

    def feature_names(self) -> list[str]:
        return ["baseline_score", *self.generator_names]

    def build_query(self, query: Query, numeric_id: int, k: int) -> tuple[QueryFeatureSet, int]:
        """Returns the feature set of one query and the number of defaulted lookups."""
        misses = 0
        candidates: list[Candidate] = []
        seen = set()
        for cand in self.ranker.rank(query, k):
            if cand.doc_id in seen:
                continue
            seen.add(cand.doc_id)
            candidates.append(cand)

        feature_set = QueryFeatureSet(query.id, numeric_id, query.text)
        for cand in candidates:
            relevance = self.ground_truth.get_relevance(self.query_type, self.content_type, query.id, cand.doc_id)
            record = FeatureRecord.empty(self.num_features, label=1 if relevance > 0 else 0)
            record.set(BASELINE_FEATURE, cand.score)
            feature_set.records[cand.doc_id] = record
        if not candidates:
            return feature_set, misses

        enriched = self.store.fetch(self.content_type, list(feature_set.records))
        if len(enriched) < len(candidates):
            logger.debug(f"Query {query.id}: {len(candidates) - len(enriched)} candidates not in the corpus store")

        generators = list(self.generator_factory())
        if [g.name for g in generators] != self.generator_names:
            raise DataConsistencyError(f"Generator order changed: {[g.name for g in generators]}")

        for offset, generator in enumerate(generators):
            index = BASELINE_FEATURE + 1 + offset
            if self.content_type == ContentType.PASSAGE:
                generator.initialize_passage_graph(candidates, enriched)
            else:
                generator.initialize_entity_graph(candidates, enriched)
            scores = generator.generate_scores()
            for doc_id, record in feature_set.records.items():
                score = scores.get(doc_id)
                if score is None:
                    misses += 1
                    continue
                record.set(index, score)

        for doc_id, record in feature_set.records.items():
            if len(record.features) != self.num_features:
                raise DataConsistencyError(
                    f"Query {query.id}, {doc_id}: {len(record.features)} features, expected {self.num_features}"
                )
        return feature_set, misses

    def _process_query(self, item: tuple[Query, int, int]):
        query, numeric_id, k = item
        try:
            return self.build_query(query, numeric_id, k)
        except Exception as e:
            return {"query_id": query.id, "error": f"{type(e).__name__}: {e}", "trace": traceback.format_exc()}

    def build(
        self,
        queries: dict[str, str],
        k: int,
        numeric_ids: dict[str, int],
        desc: Optional[str] = None,
    ) -> dict[str, QueryFeatureSet]:
        """
        Builds the feature sets of all queries at depth k.

        The result is ordered like `queries`, regardless of completion order.
        """
        missing = [qid for qid in queries if qid not in numeric_ids]
        if missing:
            raise DataConsistencyError(f"No numeric id for queries: {missing[:5]}")

        work_items = [(Query(qid, text), numeric_ids[qid], k) for qid, text in queries.items()]
        results: dict[str, QueryFeatureSet] = {}
        failures: list[tuple[str, str]] = []
        misses = 0

        def handle_result(result):
            nonlocal misses
            if isinstance(result, dict) and "error" in result:
                failures.append((result["query_id"], result["error"]))
                logger.debug(result["trace"])
                return
            feature_set, query_misses = result
            misses += query_misses
            results[feature_set.query_id] = feature_set

        desc = desc or f"Building features (k={k})"
        if self.workers == 1 or len(work_items) <= 1:
            for item in tqdm.tqdm(work_items, desc=desc, disable=not self.show_progress):
                handle_result(self._process_query(item))
        else:
            with ThreadPool(processes=self.workers) as pool:
                results_iter = pool.imap_unordered(self._process_query, work_items, chunksize=1)
                pbar = tqdm.tqdm(results_iter, total=len(work_items), desc=desc, disable=not self.show_progress)
                for result in pbar:
                    handle_result(result)
                pool.close()
                pool.join()
            # Each worker opened its own store connection; the workers are gone now.
            self.store.release_idle_connections()

        if misses:
            logger.info(f"k={k}: {misses} candidate features defaulted to 0.0 (no generator score)")
        if failures:
            logger.error(f"k={k}: {len(failures)} of {len(work_items)} queries failed")
            for query_id, message in failures[:10]:
                logger.error(f"  query {query_id}: {message}")
            if self.strict:
                raise FeatureBatchError(f"{len(failures)} queries failed while building features at k={k}", failures)

        return {qid: results[qid] for qid in queries if qid in results}
