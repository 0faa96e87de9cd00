"""
RankLib adapter: feature file writer, k-fold training and model parsing.

Feature file line:
    <label> qid:<numeric id> 1:<v1> ... N:<vN> # <doc id> <query id>

Training runs `java -jar RankLib.jar -train ... -kcv <folds>` and scans stdout
for `Fold <n> | <train metric> | <test metric>` lines. The fold with the best
test metric wins and its model `<model dir>/f<fold>.<model name>` is parsed
into a TrainedModel.
"""

from __future__ import annotations

import logging
import re
import threading
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Iterable, Optional, Sequence

from minipr.errors import ConfigurationError, DataConsistencyError, ExternalToolError
from minipr.ltr.features import QueryFeatureSet
from minipr.ltr.process import ProcessResult, run_process

logger = logging.getLogger(__name__)

FOLD_PATTERN = re.compile(r"^Fold (\d+)\s*\|\s*(\d+\.\d+)\s*\|\s*(\d+\.\d+)")
WEIGHT_PATTERN = re.compile(r"^(\d+):(-?\d+\.\d+(?:[eE][-+]?\d+)?)$")
WEIGHT_LINE_PATTERN = re.compile(r"\d+:-?\d+\.\d+")
COMMENT_PATTERN = re.compile(r"^##\s")
METRIC_PATTERN = re.compile(r"^(MAP|(NDCG|DCG|P|RR|ERR)@\d+)$")

# RankLib writes some models with a feature 0 entry; it is kept apart from feature 1.
ZERO_INDEX_KEY = 10


class LearningMethod(Enum):
    """RankLib `-ranker` ids."""

    MART = 0
    RANK_NET = 1
    RANK_BOOST = 2
    ADA_RANK = 3
    COORDINATE_ASCENT = 4
    LAMBDA_MART = 5
    LIST_NET = 6
    RANDOM_FORESTS = 7

    @classmethod
    def parse(cls, value) -> "LearningMethod":
        if isinstance(value, cls):
            return value
        try:
            return cls[str(value).strip().upper()]
        except KeyError as e:
            raise ConfigurationError(f"Unknown learning method {value!r}. Known: {[m.name for m in cls]}") from e


class Metric(str, Enum):
    MAP = "MAP"
    NDCG_K = "NDCG@k"
    DCG_K = "DCG@k"
    P_K = "P@k"
    RR_K = "RR@k"
    ERR_K = "ERR@k"

    def at(self, k: int) -> str:
        if self is Metric.MAP:
            return self.value
        return self.value.replace("@k", f"@{int(k)}")


def parse_metric(value) -> str:
    """Accepts `MAP` or `<NDCG|DCG|P|RR|ERR>@<k>`."""
    if isinstance(value, Metric):
        if value is not Metric.MAP:
            raise ConfigurationError(f"Metric {value.value} needs a cutoff, e.g. {value.at(10)}")
        return value.value
    metric = str(value).strip()
    if not METRIC_PATTERN.match(metric):
        raise ConfigurationError(f"Unsupported training metric {value!r}")
    return metric


def feature_file_line(label: int, numeric_id: int, features: Sequence[float], doc_id: str, query_id: str) -> str:
    pairs = " ".join(f"{i}:{float(v)!r}" for i, v in enumerate(features, start=1))
    return f"{int(label)} qid:{numeric_id} {pairs} # {doc_id} {query_id}"


def write_feature_file(feature_sets: Iterable[QueryFeatureSet], path: str | Path) -> Path:
    """One line per (query, candidate), candidates in baseline rank order."""
    out = Path(path)
    out.parent.mkdir(parents=True, exist_ok=True)
    lines = 0
    num_features = None
    with out.open("w", encoding="utf-8") as f:
        for feature_set in feature_sets:
            for doc_id, record in feature_set.records.items():
                if num_features is None:
                    num_features = len(record.features)
                elif len(record.features) != num_features:
                    raise DataConsistencyError(
                        f"Query {feature_set.query_id}, {doc_id}: {len(record.features)} features, expected {num_features}"
                    )
                f.write(feature_file_line(record.label, feature_set.numeric_id, record.features, doc_id, feature_set.query_id))
                f.write("\n")
                lines += 1
    logger.info(f"Wrote {lines} feature lines to {out}")
    return out


class TrainedModel:
    """Sparse linear model: feature index -> weight."""

    def __init__(self, weights: Optional[dict[int, float]] = None, source: Optional[str] = None):
        self.weights: dict[int, float] = dict(weights or {})
        self.source = source

    @classmethod
    def from_lines(cls, lines: Iterable[str], source: Optional[str] = None) -> "TrainedModel":
        weights: dict[int, float] = {}
        for line in lines:
            line = line.strip()
            if not line or COMMENT_PATTERN.match(line):
                continue
            if not WEIGHT_LINE_PATTERN.search(line):
                continue
            for token in line.split():
                m = WEIGHT_PATTERN.match(token)
                if m is None:
                    raise ExternalToolError(f"Failed to parse feature weight {token!r} in {source or 'model'}")
                index = int(m.group(1))
                if index == 0:
                    index = ZERO_INDEX_KEY
                weights[index] = float(m.group(2))
        return cls(weights, source)

    @classmethod
    def from_file(cls, path: str | Path) -> "TrainedModel":
        p = Path(path)
        if not p.exists():
            raise ExternalToolError(f"Trained model not found: {p}")
        with p.open("r", encoding="utf-8") as f:
            return cls.from_lines(f, source=str(p))

    def number_of_features(self) -> int:
        return len(self.weights)

    def linear_combination(self, features: Sequence[float]) -> float:
        if len(features) != len(self.weights):
            raise DataConsistencyError(
                f"Linear combination needs {len(self.weights)} features, got {len(features)}"
            )
        total = 0.0
        for i, value in enumerate(features):
            weight = self.weights.get(i + 1)
            if weight is None:
                logger.error(f"Model weights are missing feature {i + 1}")
                continue
            total += float(value) * weight
        return total

    def __repr__(self) -> str:
        return f"TrainedModel({self.weights})"


@dataclass
class FoldResult:
    fold: int
    metric: float
    model: TrainedModel
    model_path: Path


class BestFoldTracker:
    """
    Follows RankLib's stdout line by line and keeps only the best fold so far.
    The highest test metric wins; ties keep the earlier fold. Lines mentioning
    `Error` are logged and otherwise ignored.
    """

    def __init__(self):
        self.fold: Optional[int] = None
        self.metric = 0.0
        self.folds_seen = 0

    def feed(self, line: str) -> None:
        if "Error" in line:
            logger.error(f"Encountered error while training: {line}")
            return
        m = FOLD_PATTERN.match(line.strip())
        if m is None:
            return
        self.folds_seen += 1
        test_metric = float(m.group(3))
        if self.fold is None or test_metric > self.metric:
            self.fold = int(m.group(1))
            self.metric = test_metric

    def best(self) -> tuple[int, float]:
        if self.fold is None:
            raise ExternalToolError("RankLib output contained no fold results")
        return self.fold, self.metric


def parse_best_fold(lines: Iterable[str]) -> tuple[int, float]:
    tracker = BestFoldTracker()
    for line in lines:
        tracker.feed(line)
    return tracker.best()


def model_file_name(content_type: str, query_type: str, k: int) -> str:
    return f"mini_pr_{content_type}_{query_type}_{k}"


class RankLibTrainer:
    def __init__(
        self,
        executable: str | Path,
        *,
        java: str = "java",
        learning_method: LearningMethod | str = LearningMethod.COORDINATE_ASCENT,
        metric: str = "MAP",
        folds: int = 5,
        normalize: bool = False,
        timeout: Optional[float] = None,
        training_dir: str | Path = "ranklib/training_data",
        model_dir: str | Path = "ranklib/models",
        cancel_event: Optional[threading.Event] = None,
    ):
        if int(folds) < 2:
            raise ConfigurationError(f"Cross-validation needs at least 2 folds, got {folds}")
        self.executable = Path(executable)
        self.java = java
        self.learning_method = LearningMethod.parse(learning_method)
        self.metric = parse_metric(metric)
        self.folds = int(folds)
        self.normalize = bool(normalize)
        self.timeout = float(timeout) if timeout else None
        self.training_dir = Path(training_dir)
        self.model_dir = Path(model_dir)
        self.cancel_event = cancel_event or threading.Event()

    @classmethod
    def from_config(cls, cfg, cancel_event: Optional[threading.Event] = None) -> "RankLibTrainer":
        rl = cfg.RANK_LIB
        return cls(
            rl.EXECUTABLE,
            java=rl.JAVA,
            learning_method=rl.LEARNING_METHOD,
            metric=rl.METRIC,
            folds=rl.FOLDS,
            normalize=rl.NORMALIZE,
            timeout=rl.TIMEOUT_SECONDS,
            training_dir=rl.TRAINING_DATA_DIR,
            model_dir=rl.MODEL_DIR,
            cancel_event=cancel_event,
        )

    def cancel(self) -> None:
        self.cancel_event.set()

    def _base_command(self) -> list[str]:
        return [self.java, "-jar", str(self.executable)]

    def train_command(self, train_path: Path, qrel_path: Path, model_name: str) -> list[str]:
        cmd = self._base_command() + [
            "-train", str(train_path),
            "-ranker", str(self.learning_method.value),
            "-qrel", str(Path(qrel_path).resolve()),
            "-metric2t", self.metric,
            "-kcv", str(self.folds),
            "-kcvmd", str(self.model_dir),
            "-kcvmn", model_name,
        ]
        if self.normalize:
            cmd += ["-norm", "sum"]
        return cmd

    def model_path(self, fold: int, model_name: str) -> Path:
        return self.model_dir / f"f{fold}.{model_name}"

    def train(self, train_path: str | Path, qrel_path: str | Path, model_name: str) -> FoldResult:
        """Runs k-fold cross-validation and returns the best fold with its parsed model."""
        self.model_dir.mkdir(parents=True, exist_ok=True)
        cmd = self.train_command(Path(train_path), Path(qrel_path), model_name)
        tracker = BestFoldTracker()
        result = run_process(cmd, timeout=self.timeout, cancel_event=self.cancel_event, on_stdout_line=tracker.feed)
        if result.stderr_tail:
            logger.warning(f"RankLib stderr: {result.stderr[-500:]}")
        try:
            fold, metric = tracker.best()
        except ExternalToolError as e:
            raise ExternalToolError(str(e), command=cmd, returncode=result.returncode, stderr=result.stderr) from e
        path = self.model_path(fold, model_name)
        model = TrainedModel.from_file(path)
        logger.info(f"Best fold {fold} ({self.metric}={metric}) for {model_name}: {model.number_of_features()} weights")
        return FoldResult(fold, metric, model, path)

    def train_feature_sets(
        self, feature_sets: Iterable[QueryFeatureSet], qrel_path: str | Path, file_name: str
    ) -> FoldResult:
        train_path = write_feature_file(feature_sets, self.training_dir / f"{file_name}_train")
        return self.train(train_path, qrel_path, f"{file_name}_model")

    def rank_command(self, model_name: str, test_path: Path, output_path: Path) -> list[str]:
        cmd = self._base_command() + [
            "-load", str(self.model_dir / model_name),
            "-rank", str(test_path),
            "-indri", str(output_path),
        ]
        if self.normalize:
            cmd += ["-norm", "sum"]
        return cmd

    def rank_using_model(self, model_name: str, test_path: str | Path, output_path: str | Path) -> ProcessResult:
        """Scores a feature file with a saved model; RankLib writes an indri-style run to `output_path`."""
        Path(output_path).parent.mkdir(parents=True, exist_ok=True)
        cmd = self.rank_command(model_name, Path(test_path), Path(output_path))
        return run_process(cmd, timeout=self.timeout, cancel_event=self.cancel_event)
