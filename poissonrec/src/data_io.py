"""Utilities for reading and writing rating data."""
from __future__ import annotations

import csv
import json
from pathlib import Path
from typing import Any, Dict, Iterable, List

import pandas as pd

REQUIRED_COLUMNS = ["user_id", "item_id", "rating"]


class DataFormatError(ValueError):
    """Raised when the input data does not match the expected schema."""


def _ensure_required_columns(columns: Iterable[str]) -> None:
    present = set(columns)
    missing = [col for col in REQUIRED_COLUMNS if col not in present]
    if missing:
        raise DataFormatError(f"Missing required columns: {missing}")


def _parse_rating(value: Any, line: int) -> float:
    try:
        rating = float(value)
    except (TypeError, ValueError):
        raise DataFormatError(f"Row {line}: rating {value!r} is not a number.") from None
    if rating != rating:
        raise DataFormatError(f"Row {line}: rating is NaN.")
    return rating


def load_ratings(path: str | Path, limit: int | None = None) -> List[Dict[str, Any]]:
    """Load rating records from a CSV file.

    Parameters
    ----------
    path:
        Location of the input file. It must carry ``user_id``, ``item_id`` and
        ``rating`` columns; other columns are ignored. Identifiers are kept as
        strings.
    limit:
        Optional cap on the number of rows read.
    """
    path = Path(path)
    if path.suffix.lower() != ".csv":
        raise NotImplementedError(
            f"Unsupported extension '{path.suffix}'. Only CSV is supported."
        )

    if limit is not None and limit <= 0:
        raise ValueError("limit must be positive when provided.")

    rows: List[Dict[str, Any]] = []
    with path.open("r", newline="", encoding="utf-8") as fh:
        reader = csv.DictReader(fh)
        _ensure_required_columns(reader.fieldnames or [])
        for line, row in enumerate(reader, start=2):
            rows.append(
                {
                    "user_id": row["user_id"],
                    "item_id": row["item_id"],
                    "rating": _parse_rating(row["rating"], line),
                }
            )
            if limit is not None and len(rows) >= limit:
                break
    print(f"Loaded {len(rows)} ratings from {path}.")
    if rows:
        n_users = len({row["user_id"] for row in rows})
        n_items = len({row["item_id"] for row in rows})
        print(f"Dataset contains {n_users} unique users and {n_items} unique items.")
    return rows


def ratings_from_frame(frame: pd.DataFrame) -> List[Dict[str, Any]]:
    """Convert a ``user_id``/``item_id``/``rating`` frame into rating rows."""
    _ensure_required_columns(frame.columns)
    subset = frame[REQUIRED_COLUMNS]
    if subset["rating"].isna().any():
        raise DataFormatError("Frame contains missing ratings.")
    return [
        {"user_id": user_id, "item_id": item_id, "rating": float(rating)}
        for user_id, item_id, rating in subset.itertuples(index=False, name=None)
    ]


def save_json(data: Any, path: str | Path) -> None:
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("w", encoding="utf-8") as fh:
        json.dump(data, fh, indent=2)
