from __future__ import annotations

import argparse

from minipr.ltr.qrels import numerical_qrel_path, read_qrels, write_numerical_qrels


def main(argv: list[str] | None = None) -> None:
    ap = argparse.ArgumentParser(description="Rewrite a qrel file with numeric query ids for RankLib.")
    ap.add_argument("qrels", type=str, help="Path to qrels file (qid 0 docid rel).")
    ap.add_argument("--out-dir", type=str, default="updated_qrels", help="Directory for the numerical qrels and map.")
    args = ap.parse_args(argv)

    qrels = read_qrels(args.qrels)
    out = write_numerical_qrels(qrels, numerical_qrel_path(args.qrels, args.out_dir))
    print(f"Wrote {out} and {out}.map (queries={len(qrels)})")


if __name__ == "__main__":
    main()
