"""
Re-ranking with a trained linear model, and run file I/O.

Run file line:
    <query id> Q0 <doc id> <rank> <score> <run tag> <method name>
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable

from minipr.errors import DataConsistencyError
from minipr.ltr.features import QueryFeatureSet
from minipr.ltr.ranklib import TrainedModel

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RankedResult:
    query_id: str
    doc_id: str
    rank: int
    score: float


def rerank(
    feature_set: QueryFeatureSet,
    model: TrainedModel,
    *,
    depth: int = 1000,
    start_rank: int = 1,
) -> list[RankedResult]:
    """
    Scores every candidate with `model`, sorts by descending score and numbers
    ranks from `start_rank`. Equal scores keep the baseline order.
    """
    scored = [
        (model.linear_combination(record.features), baseline_rank, doc_id)
        for baseline_rank, (doc_id, record) in enumerate(feature_set.records.items())
    ]
    scored.sort(key=lambda item: (-item[0], item[1]))
    return [
        RankedResult(feature_set.query_id, doc_id, start_rank + i, score)
        for i, (score, _, doc_id) in enumerate(scored[: max(depth, 0)])
    ]


def format_run_line(result: RankedResult, run_tag: str, method_name: str) -> str:
    return f"{result.query_id} Q0 {result.doc_id} {result.rank} {result.score} {run_tag} {method_name}"


def write_run_file(results: Iterable[RankedResult], path: str | Path, run_tag: str, method_name: str) -> Path:
    out = Path(path)
    out.parent.mkdir(parents=True, exist_ok=True)
    count = 0
    with out.open("w", encoding="utf-8") as f:
        for result in results:
            f.write(format_run_line(result, run_tag, method_name) + "\n")
            count += 1
    logger.info(f"Wrote {count} ranked results to {out}")
    return out


def read_run_file(path: str | Path) -> dict[str, dict[str, float]]:
    """query id -> {doc id: score}, in file order."""
    runs: dict[str, dict[str, float]] = {}
    p = Path(path)
    with p.open("r", encoding="utf-8") as f:
        for line_no, line in enumerate(f, start=1):
            parts = line.split()
            if not parts:
                continue
            if len(parts) < 5:
                raise DataConsistencyError(f"{p}:{line_no}: expected at least 5 columns, got {len(parts)}")
            try:
                score = float(parts[4])
            except ValueError as e:
                raise DataConsistencyError(f"{p}:{line_no}: bad score {parts[4]!r}") from e
            runs.setdefault(parts[0], {})[parts[2]] = score
    return runs


def sort_scores(scores: dict[str, dict[str, float]], depth: int) -> dict[str, dict[str, float]]:
    """Sorts each query's documents by descending score (stable) and keeps the top `depth`."""
    out: dict[str, dict[str, float]] = {}
    for query_id, docs in scores.items():
        ordered = sorted(docs.items(), key=lambda item: -item[1])[: max(depth, 0)]
        out[query_id] = dict(ordered)
    return out
