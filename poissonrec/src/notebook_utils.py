"""Helpers for running HPF training inside notebooks.

This module packages the lightweight YAML reader and MovieLens fetcher so
that notebook users do not need to depend on the terminal entrypoints.
"""
from __future__ import annotations

import ast
import io
import re
import zipfile
from pathlib import Path
from typing import Any, Dict

import pandas as pd
import requests

MOVIELENS_SMALL_URL = "https://files.grouplens.org/datasets/movielens/ml-latest-small.zip"
MOVIELENS_MEDIUM_URL = "https://files.grouplens.org/datasets/movielens/ml-latest.zip"


def _http_get(url: str, *, timeout: int) -> requests.Response:
    response = requests.get(url, timeout=timeout)
    response.raise_for_status()
    return response


def _read_simple_yaml(path: str | Path) -> Dict[str, Dict[str, Any]]:
    """Parse the minimal YAML subset used by the project configs."""
    content = Path(path).read_text(encoding="utf-8").splitlines()
    config: Dict[str, Dict[str, Any]] = {}
    current = None
    for line in content:
        stripped = line.strip()
        if not stripped or stripped.startswith("#"):
            continue
        stripped = re.split(r"\s#", stripped, maxsplit=1)[0].rstrip()
        if stripped.endswith(":"):
            current = stripped[:-1]
            config[current] = {}
        elif ":" in stripped and current is not None:
            key, value = stripped.split(":", 1)
            key = key.strip()
            value = value.strip()
            if value in {"true", "false"}:
                value = value.capitalize()
            elif value in {"null", "~"}:
                value = "None"
            try:
                parsed = ast.literal_eval(value)
            except (ValueError, SyntaxError):
                parsed = value
            config[current][key] = parsed
    return config


def build_rating_frame(dataset: str = "small", limit: int | None = None) -> pd.DataFrame:
    """Download a MovieLens dataset and return its ratings as a frame.

    Args:
        dataset: One of ``{"small", "medium"}``. ``small`` maps to ``ml-latest-small``
            (100k ratings), ``medium`` to ``ml-latest``.
        limit: Optional cap on the number of rows for quick smoke tests.

    The frame has ``user_id``, ``item_id`` and ``rating`` columns.
    """
    dataset = dataset.lower()
    if dataset not in {"small", "medium"}:
        raise ValueError("dataset must be either 'small' or 'medium'")

    url = MOVIELENS_SMALL_URL if dataset == "small" else MOVIELENS_MEDIUM_URL
    archive_prefix = "ml-latest-small" if dataset == "small" else "ml-latest"

    response = _http_get(url, timeout=120 if dataset == "medium" else 60)
    with zipfile.ZipFile(io.BytesIO(response.content)) as archive:
        with archive.open(f"{archive_prefix}/ratings.csv") as fh:
            ratings = pd.read_csv(fh, nrows=limit)

    frame = ratings.rename(columns={"userId": "user_id", "movieId": "item_id"})
    frame["user_id"] = frame["user_id"].astype(str)
    frame["item_id"] = frame["item_id"].astype(str)
    frame["rating"] = frame["rating"].astype(float)
    return frame[["user_id", "item_id", "rating"]]
