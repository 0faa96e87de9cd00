"""
Graph-feature learning-to-rank (mini page rank).

This package sits on top of the lexical retrieval code:
- Baseline retrieval (BM25) lives under `minipr.ranking`, the corpus under `minipr.storage`.
- LTR builds per-query graphs over the baseline candidates, turns their PageRank scores
  into feature vectors, trains a linear model with RankLib and re-ranks test queries.
"""
