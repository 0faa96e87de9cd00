"""
Candidate depth (k) selection.

`OPTIMAL_K` is either a single k or a range string "(min, max, step)". A range
is swept sequentially; each k is trained with cross-validation and the k with
the strictly best fold metric wins, so ties keep the earliest k.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Iterator, Optional

import tqdm

from minipr.errors import ConfigurationError
from minipr.ltr.ranklib import FoldResult

logger = logging.getLogger(__name__)

DEFAULT_K = 100
RANGE_PATTERN = re.compile(r"^\s*\(?\s*(-?\d+)\s*,\s*(-?\d+)\s*,\s*(-?\d+)\s*\)?\s*$")


@dataclass(frozen=True)
class KRange:
    min: int
    max: int
    step: int

    def __post_init__(self):
        if self.min > self.max:
            raise ConfigurationError(f"k range minimum {self.min} is greater than its maximum {self.max}")

    def values(self) -> Iterator[int]:
        """Starts at `step` instead of 0; a first k below `step` is followed by `step`."""
        k = self.min
        if k <= 0:
            logger.info(f"Range minimum is {self.min}, using {self.step} as the starting k value.")
            k = self.step
        while k <= self.max:
            yield k
            k = self.step if k < self.step else k + self.step


DEFAULT_RANGE = KRange(0, 1000, 100)


def parse_optimal_k(value) -> int | KRange:
    """
    Parses the `OPTIMAL_K` setting.

    A single k <= 0 falls back to DEFAULT_K. A range with step <= 0, max <= 0
    or an unreadable format falls back to DEFAULT_RANGE. min > max is rejected.
    """
    if isinstance(value, bool):
        raise ConfigurationError(f"Invalid OPTIMAL_K value {value!r}")
    if isinstance(value, int) or (isinstance(value, str) and value.strip().lstrip("-").isdigit()):
        k = int(value)
        if k <= 0:
            logger.error(f"optimal k value must be greater than 0, got {k}. Defaulting to {DEFAULT_K}")
            return DEFAULT_K
        return k

    m = RANGE_PATTERN.match(str(value))
    if m:
        lo, hi, step = (int(g) for g in m.groups())
        if step <= 0:
            logger.warning(f"Range step value must be greater than 0, got {step}.")
        elif hi <= 0:
            logger.warning(f"Max value in range must be greater than 0, got {hi}.")
        else:
            return KRange(lo, hi, step)
    else:
        logger.warning(f"Invalid range format {value!r} for OPTIMAL_K, should be: (min, max, step)")
    logger.warning(f"Using default range {DEFAULT_RANGE.min, DEFAULT_RANGE.max, DEFAULT_RANGE.step} for k.")
    return DEFAULT_RANGE


@dataclass(frozen=True)
class KTrial:
    k: int
    fold: int
    metric: float


@dataclass
class KSelection:
    optimal_k: int
    best_metric: float
    trace: list[KTrial] = field(default_factory=list)


def trace_file_name(k_range: KRange, query_type: str, content_type: str) -> str:
    return (
        f"mini_page_rank_k_maps_min{k_range.min}_max{k_range.max}_step{k_range.step}"
        f"{query_type}_{content_type}.csv"
    )


def select_optimal_k(
    k_range: KRange,
    evaluate: Callable[[int], FoldResult],
    trace_path: Optional[str | Path] = None,
    on_trial: Optional[Callable[[KTrial], None]] = None,
) -> KSelection:
    """
    Sweeps `k_range`, calling `evaluate(k)` for each k in order.

    Every trial is appended to the trace file (header `k, fold, MAP`) and
    flushed immediately. Errors raised by `evaluate` propagate.
    """
    ks = list(k_range.values())
    if not ks:
        raise ConfigurationError(f"k range {k_range} contains no values")

    trace_file = None
    if trace_path is not None:
        trace_path = Path(trace_path)
        trace_path.parent.mkdir(parents=True, exist_ok=True)
        trace_file = trace_path.open("w", encoding="utf-8")
        trace_file.write("k, fold, MAP\n")
        trace_file.flush()

    selection: Optional[KSelection] = None
    trace: list[KTrial] = []
    try:
        pbar = tqdm.tqdm(ks, desc="Finding optimal k")
        for k in pbar:
            pbar.set_postfix(k=k)
            result = evaluate(k)
            trial = KTrial(k, result.fold, result.metric)
            trace.append(trial)
            if selection is None or trial.metric > selection.best_metric:
                selection = KSelection(k, trial.metric)
            if trace_file is not None:
                trace_file.write(f"{trial.k}, {trial.fold}, {trial.metric}\n")
                trace_file.flush()
            if on_trial is not None:
                on_trial(trial)
    finally:
        if trace_file is not None:
            trace_file.close()

    selection.trace = trace
    logger.info(f"Optimal k={selection.optimal_k} with best fold metric {selection.best_metric}")
    return selection
