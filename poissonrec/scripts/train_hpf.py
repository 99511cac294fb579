#!/usr/bin/env python3
"""Train Hierarchical Poisson Factorization on a ratings CSV."""
from __future__ import annotations

import argparse
import json
from pathlib import Path
import sys

ROOT = Path(__file__).resolve().parents[2]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from poissonrec.src import pipeline
from poissonrec.src.notebook_utils import _read_simple_yaml


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("--data_path", required=True, help="CSV with user_id,item_id,rating columns")
    parser.add_argument("--config", default=str(Path(__file__).resolve().parents[1] / "configs" / "base.yaml"))
    parser.add_argument("--k", type=int, default=None, help="Latent dimensionality (overrides config)")
    parser.add_argument("--max_iterations", type=int, default=None)
    parser.add_argument("--threshold", type=float, default=None)
    parser.add_argument("--backend", default=None, choices=["numpy", "torch"])
    parser.add_argument("--prefer_gpu", action="store_true")
    parser.add_argument("--count_likelihood", action="store_true", help="Use the Poisson validation likelihood")
    parser.add_argument("--limit", type=int, default=None, help="Read at most this many ratings")
    parser.add_argument("--out", default=None, help="Optional path for the JSON summary")
    args = parser.parse_args(argv)

    config = _read_simple_yaml(args.config)
    hpf_cfg = dict(config.get("hpf", {}))
    train_cfg = dict(config.get("train", {}))
    stopping_cfg = dict(config.get("stopping", {}))
    split_cfg = config.get("split", {})

    if args.k is not None:
        hpf_cfg["k"] = args.k
    if args.max_iterations is not None:
        stopping_cfg["max_iterations"] = args.max_iterations
    if args.threshold is not None:
        stopping_cfg["threshold"] = args.threshold
    if args.count_likelihood:
        train_cfg["prob_prediction"] = False
    backend = args.backend or str(train_cfg.pop("backend", "numpy"))
    train_cfg.pop("backend", None)

    results = pipeline.train_hpf_from_csv(
        args.data_path,
        limit=args.limit,
        hpf_cfg=hpf_cfg,
        train_cfg=train_cfg,
        stopping_cfg=stopping_cfg,
        validation_frac=float(split_cfg.get("validation_frac", 0.1)),
        split_seed=int(split_cfg.get("seed", 42)),
        backend=backend,
        prefer_gpu=args.prefer_gpu,
    )

    payload = {
        "model": "hpf",
        "backend": backend,
        "metrics": results["metrics"],
        "config": {
            "hpf": hpf_cfg,
            "train": train_cfg,
            "stopping": stopping_cfg,
            "split": split_cfg,
        },
    }
    if args.out:
        pipeline.data_io.save_json(payload, args.out)
    print(json.dumps(payload))


if __name__ == "__main__":
    main()
