from __future__ import annotations

from typing import Optional, Sequence


class MiniPageRankError(Exception):
    """Base class for failures surfaced by the mini page rank pipeline."""


class ConfigurationError(MiniPageRankError):
    """A required setting is missing or invalid."""


class ExternalToolError(MiniPageRankError):
    """An external tool (RankLib, trec_eval) failed to launch or produced unusable output."""

    def __init__(
        self,
        message: str,
        *,
        command: Optional[Sequence[str]] = None,
        returncode: Optional[int] = None,
        stderr: str = "",
    ):
        super().__init__(message)
        self.command = list(command) if command is not None else None
        self.returncode = returncode
        self.stderr = stderr


class DataConsistencyError(MiniPageRankError):
    """The corpus, graph or feature view is inconsistent (e.g. a feature length mismatch)."""


class FeatureBatchError(DataConsistencyError):
    """One or more queries of a feature batch failed; siblings were still processed."""

    def __init__(self, message: str, failures: Sequence[tuple[str, str]]):
        super().__init__(message)
        self.failures = list(failures)
