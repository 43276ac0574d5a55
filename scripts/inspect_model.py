#!/usr/bin/env python3
# -*- coding: utf-8 -*-

"""
Inspect a saved graphinfer model.

Prints:
- weight / label counts and the label frequency head
- the strongest pairwise and factor weights
- feature index sizes after a rebuild with the given config

Example:
  python scripts/inspect_model.py --model experiments/run1/model.json --top 30
  python scripts/inspect_model.py --config configs/infer.yaml --model model.json
"""

from __future__ import annotations

import argparse
import json
import logging
from typing import Any, Dict

from graphinfer import FactorFeature, GraphInference, PairwiseFeature, load_config


def _build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(description="Inspect a saved graphinfer model.")
    p.add_argument("--config", type=str, default=None, help="YAML/JSON InferenceConfig overrides")
    p.add_argument("--model", type=str, required=True)
    p.add_argument("--top", type=int, default=20)
    p.add_argument("--out_summary", type=str, default=None, help="Optional JSON summary path")
    p.add_argument("--verbose", action="store_true")
    return p


def main() -> None:
    args = _build_parser().parse_args()
    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.INFO, format="%(levelname)s %(name)s: %(message)s")

    print("[1/3] Loading config + model...")
    cfg = load_config(args.config)
    gi = GraphInference(cfg)
    gi.load_model(args.model)
    n_pair = sum(1 for _ in gi.store.pairwise_items())
    n_fac = sum(1 for _ in gi.store.factor_items())
    print(f"  weights={len(gi.store)} pairwise={n_pair} factors={n_fac} labels={len(gi.label_frequency)}")

    print("[2/3] Strongest weights...")
    for key, w in gi.dump_weights()[: int(args.top)]:
        if isinstance(key, PairwiseFeature):
            desc = f"pair a={key.a} b={key.b} type={key.type}"
        elif isinstance(key, FactorFeature):
            desc = f"factor labels={list(key.labels)}"
        else:
            desc = repr(key)
        print(f"  {w:+.6f}  {desc}")

    freq = sorted(gi.label_frequency.items(), key=lambda kv: (-kv[1], kv[0]))
    print("  most frequent labels: " + ", ".join(f"{lab}:{cnt}" for lab, cnt in freq[: int(args.top)]))

    print("[3/3] Feature index...")
    print(f"  top_k={gi.index.top_k} indexed_entries={len(gi.index)} version={gi.index.version}")

    if args.out_summary:
        summary: Dict[str, Any] = {
            "model": args.model,
            "config": cfg.to_dict(),
            "num_weights": len(gi.store),
            "num_pairwise": n_pair,
            "num_factors": n_fac,
            "num_labels": len(gi.label_frequency),
        }
        with open(args.out_summary, "w", encoding="utf-8") as f:
            json.dump(summary, f, ensure_ascii=False, indent=2)
            f.write("\n")
        print(f"  summary -> {args.out_summary}")


if __name__ == "__main__":
    main()
