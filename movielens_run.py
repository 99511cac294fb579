from pathlib import Path

import pandas as pd

from poissonrec.src import data_io, pipeline
from poissonrec.src.notebook_utils import build_rating_frame, _read_simple_yaml

SMALL_PATH = Path("poissonrec/data/movielens_latest_small.csv")
if not SMALL_PATH.exists():
    print("Downloading MovieLens small dataset...")
    SMALL_PATH.parent.mkdir(parents=True, exist_ok=True)
    df = build_rating_frame(dataset="small")
    df.to_csv(SMALL_PATH, index=False)
    print(f"Saved small dataset to {SMALL_PATH}")
else:
    print("Small dataset already downloaded.")
    df = pd.read_csv(SMALL_PATH, dtype={"user_id": str, "item_id": str})

config = _read_simple_yaml("poissonrec/configs/base.yaml")
train_cfg = dict(config.get("train", {}))
backend = str(train_cfg.pop("backend", "numpy"))

results = pipeline.train_and_evaluate_hpf(
    data_io.ratings_from_frame(df),
    hpf_cfg=config.get("hpf", {}),
    train_cfg=train_cfg,
    stopping_cfg=config.get("stopping", {}),
    validation_frac=float(config.get("split", {}).get("validation_frac", 0.1)),
    split_seed=int(config.get("split", {}).get("seed", 42)),
    backend=backend,
    prefer_gpu=True,
)

import json
print(json.dumps(results["metrics"], indent=2))
