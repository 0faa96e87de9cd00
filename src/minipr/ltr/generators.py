"""
Graph feature generators.

Each generator builds a small graph over the candidates of one query and
scores them with PageRank. The score map covers only ids that are part of
the baseline ranking; callers fill missing ids with 0.0.

Variants:
- hypergraph_rank: undirected link graph (paragraph -> page outlinks for
  passages; paragraph inlinks, page inlinks and page outlinks for entities).
- text_salience_rank: directed graph, edge weight is the tf-idf cosine
  similarity between two candidate texts.
- text_uniqueness_rank: the salience graph with every weight passed through
  1 / (sim + 1), via the generic WeightTransformed wrapper.
"""

from __future__ import annotations

import logging
import math
from abc import ABC, abstractmethod
from collections import Counter
from dataclasses import dataclass
from typing import Callable, Iterable, Sequence

import networkx as nx

from minipr.errors import ConfigurationError, DataConsistencyError
from minipr.index.tokenization import TokenizerAbstract
from minipr.ltr.frequency import CorpusFrequencyService
from minipr.ranking.utils import Candidate
from minipr.storage.corpus import Link, Page, Paragraph

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PageRankSettings:
    damping: float = 0.85
    tolerance: float = 1e-4
    max_iterations: int = 100

    @classmethod
    def from_config(cls, cfg) -> "PageRankSettings":
        pr = getattr(cfg.MINI_PAGE_RANK, "PAGERANK", None)
        if pr is None:
            return cls()
        return cls(
            damping=float(getattr(pr, "DAMPING", 0.85)),
            tolerance=float(getattr(pr, "TOLERANCE", 1e-4)),
            max_iterations=int(getattr(pr, "MAX_ITERATIONS", 100)),
        )


class GraphFeatureGenerator(ABC):
    """Capability set shared by all graph features."""

    @property
    @abstractmethod
    def name(self) -> str:
        pass

    @abstractmethod
    def initialize_passage_graph(self, baseline: Sequence[Candidate], paragraphs: Sequence[Paragraph]) -> None:
        pass

    @abstractmethod
    def initialize_entity_graph(self, baseline: Sequence[Candidate], pages: Sequence[Page]) -> None:
        pass

    @abstractmethod
    def generate_scores(self) -> dict[str, float]:
        pass


class PageRankGraphGenerator(GraphFeatureGenerator):
    """Holds the per-query graph and runs PageRank over it."""

    directed = False

    def __init__(self, pagerank: PageRankSettings | None = None):
        self.pagerank = pagerank or PageRankSettings()
        self.graph: nx.Graph = self._new_graph()
        self.rank_results: list[str] = []

    def _new_graph(self) -> nx.Graph:
        return nx.DiGraph() if self.directed else nx.Graph()

    def _reset(self, baseline: Sequence[Candidate]) -> None:
        # A fresh graph per query: nothing from a previous candidate set survives.
        self.graph = self._new_graph()
        self.rank_results = [c.doc_id for c in baseline]

    def generate_scores(self) -> dict[str, float]:
        if not self.rank_results or self.graph.number_of_nodes() == 0:
            return {}
        try:
            scores = nx.pagerank(
                self.graph,
                alpha=self.pagerank.damping,
                tol=self.pagerank.tolerance,
                max_iter=self.pagerank.max_iterations,
                weight="weight",
            )
        except nx.PowerIterationFailedConvergence as e:
            raise DataConsistencyError(f"{self.name}: PageRank did not converge: {e}") from e
        return {doc_id: float(scores[doc_id]) for doc_id in self.rank_results if doc_id in scores}


class HypergraphLinkGenerator(PageRankGraphGenerator):
    """Undirected graph over the candidates and the items they link to."""

    directed = False

    @property
    def name(self) -> str:
        return "hypergraph_rank"

    def _add_links(self, links: Iterable[Link]) -> None:
        for link in links:
            if link.source == link.target:
                continue
            self.graph.add_edge(link.source, link.target)

    def initialize_passage_graph(self, baseline: Sequence[Candidate], paragraphs: Sequence[Paragraph]) -> None:
        self._reset(baseline)
        # Candidates without links stay as isolated vertices.
        self.graph.add_nodes_from(self.rank_results)
        for paragraph in paragraphs:
            self.graph.add_node(paragraph.id)
            self._add_links(paragraph.page_outlinks)

    def initialize_entity_graph(self, baseline: Sequence[Candidate], pages: Sequence[Page]) -> None:
        self._reset(baseline)
        # Not every page is contained in the corpus store.
        self.graph.add_nodes_from(self.rank_results)
        for page in pages:
            self.graph.add_node(page.id)
            self._add_links(page.links())


class TextSalienceGenerator(PageRankGraphGenerator):
    """Directed graph where an edge a -> b carries the tf-idf cosine similarity of a and b."""

    directed = True

    def __init__(
        self,
        frequency: CorpusFrequencyService,
        tokenizer: TokenizerAbstract,
        pagerank: PageRankSettings | None = None,
    ):
        super().__init__(pagerank)
        self.frequency = frequency
        self.tokenizer = tokenizer

    @property
    def name(self) -> str:
        return "text_salience_rank"

    def _term_vector(self, text: str) -> tuple[Counter, float]:
        tf = self.tokenizer.term_counts(text)
        norm = math.sqrt(sum((count * self.frequency.idf(term)) ** 2 for term, count in tf.items()))
        return tf, norm

    def similarity(self, a: tuple[Counter, float], b: tuple[Counter, float]) -> float:
        tf_a, norm_a = a
        tf_b, norm_b = b
        if norm_a == 0.0 or norm_b == 0.0:
            return 0.0
        if len(tf_b) < len(tf_a):
            tf_a, tf_b = tf_b, tf_a
        numerator = 0.0
        for term, count in tf_a.items():
            other = tf_b.get(term)
            if other:
                numerator += count * other * self.frequency.idf(term) ** 2
        return numerator / (norm_a * norm_b)

    def _build(self, items: Sequence[tuple[str, str]]) -> None:
        vectors = {}
        for item_id, text in items:
            if text is None:
                raise DataConsistencyError(f"{self.name}: item {item_id} has no text")
            vectors[item_id] = self._term_vector(text)
        self.graph.add_nodes_from(vectors)
        for src, vec_src in vectors.items():
            for dst, vec_dst in vectors.items():
                if src == dst:
                    continue
                sim = self.similarity(vec_src, vec_dst)
                # Dissimilar items are not connected.
                if sim > 0.0:
                    self.graph.add_edge(src, dst, weight=sim)

    def initialize_passage_graph(self, baseline: Sequence[Candidate], paragraphs: Sequence[Paragraph]) -> None:
        self._reset(baseline)
        self._build([(p.id, p.text) for p in paragraphs])

    def initialize_entity_graph(self, baseline: Sequence[Candidate], pages: Sequence[Page]) -> None:
        self._reset(baseline)
        self._build([(p.id, p.name) for p in pages])


class WeightTransformed(GraphFeatureGenerator):
    """
    Wraps any generator and rewrites every edge weight of its graph after
    initialization. Edges without a weight count as 1.0.
    """

    def __init__(self, base: PageRankGraphGenerator, transform: Callable[[float], float], name: str):
        self.base = base
        self.transform = transform
        self._name = name

    @property
    def name(self) -> str:
        return self._name

    @property
    def graph(self) -> nx.Graph:
        return self.base.graph

    def _apply(self) -> None:
        for _, _, data in self.base.graph.edges(data=True):
            data["weight"] = self.transform(data.get("weight", 1.0))

    def initialize_passage_graph(self, baseline: Sequence[Candidate], paragraphs: Sequence[Paragraph]) -> None:
        self.base.initialize_passage_graph(baseline, paragraphs)
        self._apply()

    def initialize_entity_graph(self, baseline: Sequence[Candidate], pages: Sequence[Page]) -> None:
        self.base.initialize_entity_graph(baseline, pages)
        self._apply()

    def generate_scores(self) -> dict[str, float]:
        return self.base.generate_scores()


def uniqueness(similarity: float) -> float:
    return 1.0 / (similarity + 1.0)


def _hypergraph(frequency, tokenizer, pagerank):
    return HypergraphLinkGenerator(pagerank)


def _text_salience(frequency, tokenizer, pagerank):
    return TextSalienceGenerator(frequency, tokenizer, pagerank)


def _text_uniqueness(frequency, tokenizer, pagerank):
    return WeightTransformed(
        TextSalienceGenerator(frequency, tokenizer, pagerank), uniqueness, name="text_uniqueness_rank"
    )


GENERATORS: dict[str, Callable[..., GraphFeatureGenerator]] = {
    "hypergraph_rank": _hypergraph,
    "text_salience_rank": _text_salience,
    "text_uniqueness_rank": _text_uniqueness,
}


def validate_generator_names(names: Sequence[str]) -> list[str]:
    names = list(names)
    if not names:
        raise ConfigurationError("At least one graph feature generator must be configured")
    unknown = [n for n in names if n not in GENERATORS]
    if unknown:
        raise ConfigurationError(f"Unknown graph feature generator(s): {unknown}. Known: {sorted(GENERATORS)}")
    if len(set(names)) != len(names):
        raise ConfigurationError(f"Graph feature generators listed more than once: {names}")
    return names


def build_generators(
    names: Sequence[str],
    *,
    frequency: CorpusFrequencyService,
    tokenizer: TokenizerAbstract,
    pagerank: PageRankSettings | None = None,
) -> list[GraphFeatureGenerator]:
    """Fresh generator instances, in configuration order."""
    return [GENERATORS[n](frequency, tokenizer, pagerank) for n in validate_generator_names(names)]
