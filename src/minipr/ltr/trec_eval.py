"""
trec_eval adapter.

Output lines are `<measure> <scope> <value>`. Measure names differ between
trec_eval 8.1 and 9.x (gm_ap vs gm_map, R-prec vs Rprec, P5 vs P_5, ...);
EvalData hides the difference.
"""

from __future__ import annotations

import logging
import re
import shlex
import threading
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Iterable, Optional

from minipr.errors import ExternalToolError
from minipr.ltr.process import run_process

logger = logging.getLogger(__name__)

VERSION_PATTERN = re.compile(r"\D*((\d+\.\d+)(\.\d+)?)")
PRECISION_CUTOFFS = (5, 10, 15, 20, 30, 100, 200, 500, 1000)
COUNT_MEASURES = ("num_q", "num_ret", "num_rel", "num_rel_ret")


class TrecEvalVersion(Enum):
    V8_1 = "8.1"
    V9 = "9.0"


class EvalType(Enum):
    MAP = "map"
    GM_MAP = "gm_map"
    RPREC = "Rprec"
    BPREF = "bpref"
    RECIP_RANK = "recip_rank"


_V8_NAMES = {EvalType.GM_MAP: "gm_ap", EvalType.RPREC: "R-prec"}


@dataclass
class EvalData:
    version: TrecEvalVersion = TrecEvalVersion.V9
    run_id: Optional[str] = None
    counts: dict[str, int] = field(default_factory=dict)
    measures: dict[str, float] = field(default_factory=dict)

    @classmethod
    def parse(cls, lines: Iterable[str], version: TrecEvalVersion = TrecEvalVersion.V9) -> "EvalData":
        data = cls(version)
        for line in lines:
            parts = line.split()
            if not parts:
                continue
            if len(parts) != 3:
                logger.error(f"Unexpected trec_eval line: {line!r}")
                continue
            name, _, value = parts
            if name == "runid":
                data.run_id = value
                continue
            try:
                if name in COUNT_MEASURES:
                    data.counts[name] = int(value)
                else:
                    data.measures[name] = float(value)
            except ValueError:
                logger.error(f"Failed to parse evaluation: {line!r}")
        return data

    def _lookup(self, name: str) -> float:
        value = self.measures.get(name)
        if value is None:
            logger.error(f"Measure {name} did not exist in the trec_eval output")
            return 0.0
        return value

    def get_measure(self, eval_type: EvalType) -> float:
        name = eval_type.value
        if self.version == TrecEvalVersion.V8_1:
            name = _V8_NAMES.get(eval_type, name)
        return self._lookup(name)

    def get_iprec_at_recall(self, recall: float) -> float:
        if not 0.0 <= recall <= 1.0:
            raise ValueError("Recall level must be within 0.0 and 1.0")
        if round(recall * 100) % 10 != 0:
            raise ValueError("Recall level must be a multiple of 0.1")
        prefix = "ircl_prn." if self.version == TrecEvalVersion.V8_1 else "iprec_at_recall_"
        return self._lookup(f"{prefix}{recall:.2f}")

    def get_precision_at(self, k: int) -> float:
        if k not in PRECISION_CUTOFFS:
            raise ValueError(f"Precision cutoff must be one of {PRECISION_CUTOFFS}")
        prefix = "P" if self.version == TrecEvalVersion.V8_1 else "P_"
        return self._lookup(f"{prefix}{k}")

    @property
    def num_queries(self) -> Optional[int]:
        return self.counts.get("num_q")


class TrecEval:
    def __init__(
        self,
        executable: str = "trec_eval",
        options: str = "",
        timeout: Optional[float] = None,
        cancel_event: Optional[threading.Event] = None,
    ):
        self.executable = executable
        self.options = shlex.split(options or "")
        self.timeout = float(timeout) if timeout else None
        self.cancel_event = cancel_event

    @classmethod
    def from_config(cls, cfg, cancel_event: Optional[threading.Event] = None) -> "TrecEval":
        te = cfg.TREC_EVAL
        return cls(te.EXECUTABLE, te.OPTIONS, te.TIMEOUT_SECONDS, cancel_event)

    def _run(self, args: list[str]) -> list[str]:
        lines: list[str] = []
        cmd = [self.executable, *args]
        result = run_process(
            cmd, timeout=self.timeout, cancel_event=self.cancel_event, on_stdout_line=lines.append
        )
        if result.stderr_tail:
            for err in result.stderr_tail:
                logger.error(err)
            raise ExternalToolError(
                "Unable to run trec_eval, see log for details", command=cmd, returncode=result.returncode,
                stderr=result.stderr,
            )
        return lines

    def version(self) -> TrecEvalVersion:
        """Reads `trec_eval -v`; unknown versions are treated as 9.x."""
        try:
            result = run_process([self.executable, "-v"], timeout=self.timeout, check=False)
        except ExternalToolError as e:
            logger.error(f"Failed to execute {self.executable}: {e}")
            return TrecEvalVersion.V9
        output = (result.stderr_tail or result.stdout_tail or [""])[0]
        m = VERSION_PATTERN.match(output)
        if m:
            logger.info(f"Using trec_eval version {m.group(1)}")
            if m.group(2) == "8.1":
                return TrecEvalVersion.V8_1
            if m.group(2).startswith("9."):
                return TrecEvalVersion.V9
        logger.error(f"trec_eval version not supported: {output!r}. Defaulting to 9.0 support.")
        return TrecEvalVersion.V9

    def evaluate(self, qrel_path: str | Path, run_path: str | Path, version: Optional[TrecEvalVersion] = None) -> EvalData:
        version = version or self.version()
        lines = self._run([*self.options, str(qrel_path), str(run_path)])
        return EvalData.parse(lines, version)

    def evaluate_per_query(
        self, qrel_path: str | Path, run_path: str | Path, version: Optional[TrecEvalVersion] = None
    ) -> dict[str, EvalData]:
        """`-q` output grouped by query id; the `all` scope holds the summary."""
        version = version or self.version()
        lines = self._run(["-q", *self.options, str(qrel_path), str(run_path)])
        grouped: dict[str, list[str]] = {}
        for line in lines:
            parts = line.split()
            if len(parts) < 2:
                continue
            grouped.setdefault(parts[1], []).append(line)
        return {qid: EvalData.parse(group, version) for qid, group in grouped.items()}
