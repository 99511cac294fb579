"""End-to-end routines for HPF training runs."""
from __future__ import annotations

from pathlib import Path
from typing import Any, Dict, Sequence

from . import data_io
from .models.hpf import HPFConfig, PFHyperParameters, train_hpf
from .split import random_split
from .stopping import IterationCountStoppingCondition, StoppingCondition, ThresholdStoppingCondition


def _coerce_bool(value: Any, default: bool) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        lowered = value.strip().lower()
        if not lowered:
            return default
        if lowered in {"true", "1", "yes", "on"}:
            return True
        if lowered in {"false", "0", "no", "off"}:
            return False
    return bool(value)


def _coerce_int(value: Any, default: int) -> int:
    if value is None:
        return default
    if isinstance(value, str):
        lowered = value.strip().lower()
        if not lowered or lowered in {"none", "null"}:
            return default
    return int(value)


def _coerce_float(value: Any, default: float) -> float:
    if value is None:
        return default
    if isinstance(value, str):
        lowered = value.strip().lower()
        if not lowered or lowered in {"none", "null"}:
            return default
    return float(value)


def _coerce_optional_int(value: Any) -> int | None:
    if value is None:
        return None
    if isinstance(value, str):
        lowered = value.strip().lower()
        if not lowered or lowered in {"none", "null"}:
            return None
    return int(value)


def hyper_parameters_from_config(cfg: Dict[str, Any] | None) -> PFHyperParameters:
    cfg = cfg or {}
    defaults = PFHyperParameters()
    return PFHyperParameters(
        a=_coerce_float(cfg.get("a"), defaults.a),
        a_prime=_coerce_float(cfg.get("a_prime"), defaults.a_prime),
        b_prime=_coerce_float(cfg.get("b_prime"), defaults.b_prime),
        c=_coerce_float(cfg.get("c"), defaults.c),
        c_prime=_coerce_float(cfg.get("c_prime"), defaults.c_prime),
        d_prime=_coerce_float(cfg.get("d_prime"), defaults.d_prime),
        feature_count=_coerce_int(cfg.get("k"), defaults.feature_count),
    )


def train_config_from_config(cfg: Dict[str, Any] | None) -> HPFConfig:
    cfg = cfg or {}
    defaults = HPFConfig()
    return HPFConfig(
        iteration_frequency=_coerce_int(cfg.get("iteration_frequency"), defaults.iteration_frequency),
        seed=_coerce_int(cfg.get("seed"), defaults.seed),
        max_offset_shape=_coerce_float(cfg.get("max_offset_shape"), defaults.max_offset_shape),
        max_offset_rate=_coerce_float(cfg.get("max_offset_rate"), defaults.max_offset_rate),
        prob_prediction=_coerce_bool(cfg.get("prob_prediction"), defaults.prob_prediction),
        verbose=_coerce_bool(cfg.get("verbose"), defaults.verbose),
    )


def stopping_from_config(cfg: Dict[str, Any] | None) -> StoppingCondition:
    """Threshold-based stopping unless only an iteration count is configured."""
    cfg = cfg or {}
    max_iterations = _coerce_optional_int(cfg.get("max_iterations"))
    threshold = cfg.get("threshold")
    if threshold is None and max_iterations is not None:
        return IterationCountStoppingCondition(max_iterations)
    return ThresholdStoppingCondition(
        _coerce_float(threshold, 1e-4),
        min_iterations=_coerce_int(cfg.get("min_iterations"), 0),
        max_iterations=max_iterations if max_iterations is not None else 100,
    )


def train_and_evaluate_hpf(
    rows: Sequence[dict],
    *,
    hpf_cfg: Dict[str, Any] | None = None,
    train_cfg: Dict[str, Any] | None = None,
    stopping_cfg: Dict[str, Any] | None = None,
    validation_frac: float = 0.1,
    split_seed: int = 42,
    backend: str = "numpy",
    prefer_gpu: bool = False,
) -> Dict[str, Any]:
    """Split ``rows``, fit HPF and summarize the convergence trace."""
    split = random_split(rows, validation_frac=validation_frac, seed=split_seed)
    print(
        f"Split {len(rows)} ratings into {len(split.train)} train / "
        f"{len(split.validation)} validation ({split.user_count} users, {split.item_count} items)."
    )
    hyper = hyper_parameters_from_config(hpf_cfg)
    config = train_config_from_config(train_cfg)
    stopping = stopping_from_config(stopping_cfg)

    model, trainer = train_hpf(split, hyper, config, stopping, backend=backend, prefer_gpu=prefer_gpu)

    final_pll = trainer.history[-1][1] if trainer.history else None
    final_change = trainer.history[-1][2] if trainer.history else None
    return {
        "model": model,
        "metrics": {
            "iterations": trainer.iteration_count,
            "avg_pll": final_pll,
            "change": final_change,
            "history": [
                {"iteration": iteration, "avg_pll": pll, "change": change}
                for iteration, pll, change in trainer.history
            ],
            "users": split.user_count,
            "items": split.item_count,
            "features": model.feature_count,
        },
    }


def train_hpf_from_csv(
    data_path: str | Path,
    *,
    limit: int | None = None,
    **kwargs: Any,
) -> Dict[str, Any]:
    rows = data_io.load_ratings(data_path, limit=limit)
    return train_and_evaluate_hpf(rows, **kwargs)
