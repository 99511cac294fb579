import json
from pathlib import Path

import pandas as pd
import pytest

from poissonrec.scripts import train_hpf as train_script
from poissonrec.src import pipeline
from poissonrec.src.models.hpf import HPFConfigError
from poissonrec.src.notebook_utils import _read_simple_yaml
from poissonrec.src.stopping import IterationCountStoppingCondition, ThresholdStoppingCondition

BASE_CONFIG = Path(__file__).resolve().parents[1] / "poissonrec" / "configs" / "base.yaml"


def _rows():
    ratings = [
        ("u1", "m1", 4), ("u1", "m2", 1), ("u1", "m3", 2),
        ("u2", "m1", 5), ("u2", "m4", 3), ("u3", "m2", 2),
        ("u3", "m3", 1), ("u3", "m4", 4), ("u4", "m1", 1),
        ("u4", "m3", 3), ("u5", "m2", 2), ("u5", "m4", 1),
    ]
    return [{"user_id": u, "item_id": i, "rating": float(r)} for u, i, r in ratings]


def test_read_simple_yaml(tmp_path):
    path = tmp_path / "cfg.yaml"
    path.write_text(
        "# comment\nhpf:\n  k: 4\n  a: 0.5  # shape\ntrain:\n  prob_prediction: false\n  backend: numpy\n"
        "stopping:\n  max_iterations: null\n",
        encoding="utf-8",
    )
    config = _read_simple_yaml(path)
    assert config == {
        "hpf": {"k": 4, "a": 0.5},
        "train": {"prob_prediction": False, "backend": "numpy"},
        "stopping": {"max_iterations": None},
    }


def test_read_simple_yaml_keeps_hash_inside_values(tmp_path):
    path = tmp_path / "cfg.yaml"
    path.write_text(
        "data:\n  name: \"ml#small\"\n  url: https://example.org/ratings#v2  # mirror\n    # indented note\n",
        encoding="utf-8",
    )
    assert _read_simple_yaml(path) == {
        "data": {"name": "ml#small", "url": "https://example.org/ratings#v2"},
    }


def test_base_config_builds_valid_objects():
    config = _read_simple_yaml(BASE_CONFIG)
    hyper = pipeline.hyper_parameters_from_config(config["hpf"])
    hyper.validate()
    assert hyper.feature_count == 10
    train_cfg = pipeline.train_config_from_config(config["train"])
    assert train_cfg.prob_prediction is True
    stopping = pipeline.stopping_from_config(config["stopping"])
    assert isinstance(stopping, ThresholdStoppingCondition)
    assert stopping.max_iterations == 200


def test_stopping_from_config_variants():
    assert isinstance(pipeline.stopping_from_config({"max_iterations": 5}), IterationCountStoppingCondition)
    default = pipeline.stopping_from_config(None)
    assert isinstance(default, ThresholdStoppingCondition)
    assert default.max_iterations == 100
    custom = pipeline.stopping_from_config({"threshold": "0.01", "min_iterations": "3", "max_iterations": "null"})
    assert custom.threshold == 0.01
    assert custom.min_iterations == 3
    assert custom.max_iterations == 100


def test_coercion_helpers():
    assert pipeline._coerce_bool("yes", False) is True
    assert pipeline._coerce_bool("", True) is True
    assert pipeline._coerce_int(" none ", 7) == 7
    assert pipeline._coerce_float("2.5", 0.0) == 2.5
    assert pipeline._coerce_optional_int("") is None


def test_train_and_evaluate_hpf():
    results = pipeline.train_and_evaluate_hpf(
        _rows(),
        hpf_cfg={"k": 2},
        train_cfg={"iteration_frequency": 2, "seed": 3},
        stopping_cfg={"max_iterations": 6},
        validation_frac=0.25,
        split_seed=1,
    )
    metrics = results["metrics"]
    assert metrics["iterations"] == 6
    assert [entry["iteration"] for entry in metrics["history"]] == [2, 4, 6]
    assert metrics["users"] == 5
    assert metrics["items"] == 4
    assert metrics["features"] == 2
    model = results["model"]
    assert model.user_vector("u3").shape == (2,)


def test_train_and_evaluate_rejects_bad_priors():
    with pytest.raises(HPFConfigError):
        pipeline.train_and_evaluate_hpf(_rows(), hpf_cfg={"a": 0}, stopping_cfg={"max_iterations": 1})


def test_script_prints_json_summary(tmp_path, capsys):
    data_path = tmp_path / "ratings.csv"
    pd.DataFrame(_rows()).to_csv(data_path, index=False)
    out_path = tmp_path / "summary.json"
    train_script.main(
        [
            "--data_path", str(data_path),
            "--config", str(BASE_CONFIG),
            "--k", "2",
            "--max_iterations", "20",
            "--count_likelihood",
            "--out", str(out_path),
        ]
    )
    payload = json.loads(capsys.readouterr().out.strip().splitlines()[-1])
    assert payload["model"] == "hpf"
    assert payload["backend"] == "numpy"
    assert payload["config"]["train"]["prob_prediction"] is False
    assert payload["metrics"]["features"] == 2
    assert payload["metrics"]["iterations"] <= 20
    assert json.loads(out_path.read_text(encoding="utf-8")) == payload
