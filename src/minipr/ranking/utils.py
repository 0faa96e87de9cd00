from __future__ import annotations

from dataclasses import dataclass
from typing import Callable


@dataclass(frozen=True)
class Query:
    id: str
    text: str


@dataclass(frozen=True)
class Candidate:
    """One entry of a baseline ranking: `rank` is 0-based position, `score` the baseline score."""

    query_id: str
    doc_id: str
    rank: int
    score: float


class RankingRegistry:
    _registry: dict[str, Callable] = {}

    @classmethod
    def register(cls, name: str, ranker_class: Callable):
        cls._registry[name] = ranker_class

    @classmethod
    def get_ranker(cls, name: str):
        ranker_class = cls._registry.get(name)
        if ranker_class is None:
            raise ValueError(f"Ranker '{name}' not found in registry.")
        return ranker_class
