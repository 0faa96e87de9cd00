from __future__ import annotations

import argparse
import logging
import sys

from minipr.errors import MiniPageRankError
from minipr.ltr.pipeline import MiniPageRankMethod, run_many
from minipr.storage.corpus import ContentType, SQLiteCorpusStore
from minipr.utils.config_wrapper import Config

logger = logging.getLogger(__name__)


def main(argv: list[str] | None = None) -> int:
    ap = argparse.ArgumentParser(description="Train and apply the mini page rank re-ranker.")
    ap.add_argument(
        "--content-type",
        choices=[c.value for c in ContentType],
        action="append",
        default=None,
        help="Content type to rank; repeat to run several (default: CORPUS.CONTENT_TYPE).",
    )
    ap.add_argument("--optimal-k", type=str, default=None, help="Single k or '(min, max, step)'.")
    ap.add_argument("--workers", type=int, default=None, help="Query worker threads (0 = auto, 1 = sequential).")
    ap.add_argument("--log-level", type=str, default="INFO")
    ap.add_argument("overrides", nargs="*", help="Config overrides as KEY=VALUE, e.g. RANK_LIB.FOLDS=3")
    args = ap.parse_args(argv)

    logging.basicConfig(
        level=getattr(logging, args.log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    overrides = list(args.overrides)
    if args.optimal_k is not None:
        overrides.append(f"MINI_PAGE_RANK.OPTIMAL_K='{args.optimal_k}'")
    if args.workers is not None:
        overrides.append(f"MINI_PAGE_RANK.WORKERS={args.workers}")
    cfg = Config(load=True, overrides=overrides)

    content_types = [ContentType(c) for c in (args.content_type or [cfg.CORPUS.CONTENT_TYPE])]
    store = SQLiteCorpusStore.from_config(cfg)
    try:
        methods = [MiniPageRankMethod.from_config(cfg, content_type=c, store=store) for c in content_types]
        results, failures = run_many(methods)
    except MiniPageRankError as e:
        logger.error(str(e))
        return 1
    finally:
        store.close()

    for key, result in results.items():
        summary = f"{key}: k={result.optimal_k} fold={result.best_fold.fold} metric={result.best_fold.metric}"
        if result.evaluation is not None:
            summary += f" test map={result.evaluation.measures.get('map')}"
        print(f"{summary} -> {result.run_path}")
    for key, error in failures.items():
        print(f"{key}: FAILED ({error})", file=sys.stderr)
    return 1 if failures else 0


if __name__ == "__main__":
    sys.exit(main())
