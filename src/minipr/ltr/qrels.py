"""
Ground truth (qrels) and query files.

RankLib only accepts numeric query ids, so every qrel file is parsed into a
mapping of original query id -> QrelInfo carrying a 1-based numeric id in
order of first appearance plus the per-document relevance.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Iterable

from minipr.errors import DataConsistencyError
from minipr.storage.corpus import ContentType

logger = logging.getLogger(__name__)


class QueryType(str, Enum):
    ARTICLE = "article"
    HIERARCHICAL = "hierarchical"


@dataclass
class QrelInfo:
    numerical_id: int
    ground_truth: dict[str, int] = field(default_factory=dict)


def read_qrels(path: str | Path) -> dict[str, QrelInfo]:
    """Parses `<queryId> 0 <docId> <relevance>` lines."""
    qrels: dict[str, QrelInfo] = {}
    p = Path(path)
    with p.open("r", encoding="utf-8") as f:
        for line_no, line in enumerate(f, start=1):
            parts = line.split()
            if not parts:
                continue
            if len(parts) < 4:
                raise DataConsistencyError(f"{p}:{line_no}: expected 4 columns, got {len(parts)}")
            query_id, _, doc_id, rel = parts[:4]
            try:
                relevance = int(rel)
            except ValueError as e:
                raise DataConsistencyError(f"{p}:{line_no}: bad relevance {rel!r}") from e
            info = qrels.get(query_id)
            if info is None:
                info = qrels[query_id] = QrelInfo(len(qrels) + 1)
            info.ground_truth[doc_id] = relevance
    return qrels


def numerical_qrel_path(qrel_path: str | Path, out_dir: str | Path = "updated_qrels") -> Path:
    name = Path(qrel_path).name
    if name.endswith(".qrels"):
        name = name[: -len(".qrels")]
    return Path(out_dir) / f"{name}-numerical.qrels"


def write_numerical_qrels(qrels: dict[str, QrelInfo], out_path: str | Path) -> Path:
    """Writes the numeric-id qrel file plus a `<file>.map` with `<queryId> -> <n>` lines."""
    out = Path(out_path)
    out.parent.mkdir(parents=True, exist_ok=True)
    with out.open("w", encoding="utf-8") as f:
        for info in qrels.values():
            for doc_id, relevance in info.ground_truth.items():
                f.write(f"{info.numerical_id} 0 {doc_id} {relevance}\n")
    with open(f"{out}.map", "w", encoding="utf-8") as f:
        for query_id, info in qrels.items():
            f.write(f"{query_id} -> {info.numerical_id}\n")
    logger.info(f"Wrote numerical qrels for {len(qrels)} queries to {out}")
    return out


def assign_numeric_ids(query_ids: Iterable[str], qrels: dict[str, QrelInfo]) -> dict[str, int]:
    """
    Numeric id per query: the qrel id when judged, otherwise the next free id
    after the last qrel id, in query order.
    """
    next_id = max((info.numerical_id for info in qrels.values()), default=0) + 1
    out: dict[str, int] = {}
    for query_id in query_ids:
        info = qrels.get(query_id)
        if info is not None:
            out[query_id] = info.numerical_id
        else:
            out[query_id] = next_id
            next_id += 1
    return out


def load_queries(path: str | Path) -> dict[str, str]:
    """Reads `<queryId>\\t<text>` lines, preserving file order."""
    queries: dict[str, str] = {}
    p = Path(path)
    with p.open("r", encoding="utf-8") as f:
        for line in f:
            line = line.rstrip("\n")
            if not line.strip():
                continue
            parts = line.split("\t", 1)
            if len(parts) != 2:
                logger.warning(f"Skipping malformed query line in {p}: {line!r}")
                continue
            queries[parts[0].strip()] = parts[1].strip()
    return queries


class GroundTruth:
    """Qrels keyed by (query type, content type)."""

    def __init__(self):
        self._qrels: dict[tuple[QueryType, ContentType], dict[str, QrelInfo]] = {}

    def add(self, query_type: QueryType, content_type: ContentType, qrels: dict[str, QrelInfo]) -> None:
        self._qrels[(QueryType(query_type), ContentType(content_type))] = qrels

    def load(self, query_type: QueryType, content_type: ContentType, path: str | Path) -> dict[str, QrelInfo]:
        qrels = read_qrels(path)
        self.add(query_type, content_type, qrels)
        logger.info(f"Loaded {len(qrels)} judged queries for {query_type}/{content_type} from {path}")
        return qrels

    def qrels_for(self, query_type: QueryType, content_type: ContentType) -> dict[str, QrelInfo]:
        return self._qrels.get((QueryType(query_type), ContentType(content_type)), {})

    def get_relevance(self, query_type: QueryType, content_type: ContentType, query_id: str, doc_id: str) -> int:
        info = self.qrels_for(query_type, content_type).get(query_id)
        if info is None:
            return 0
        return info.ground_truth.get(doc_id, 0)
