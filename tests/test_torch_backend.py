import numpy as np
import pytest

torch = pytest.importorskip("torch")

from poissonrec.src.models.hpf import HPFConfig, PFHyperParameters, log_normalize, train_hpf
from poissonrec.src.split import RatingSplit
from poissonrec.src.stopping import IterationCountStoppingCondition
from poissonrec.src.torch_backend import TorchHPFTrainer, log_normalize_rows

TRIPLES = [(0, 0, 3.0), (0, 1, 1.0), (1, 0, 2.0), (2, 1, 4.0), (1, 2, 0.0), (2, 2, 1.0)]


def _split():
    return RatingSplit.from_triples(TRIPLES, TRIPLES[:4])


def test_log_normalize_rows_matches_numpy():
    rows = np.array([[0.0, 1.0, -2.0], [900.0, -900.0, 899.0], [5.0, 5.0, 5.0]])
    out = log_normalize_rows(torch.as_tensor(rows, dtype=torch.float64)).numpy()
    np.testing.assert_allclose(out, log_normalize(rows), rtol=1e-12)


def test_log_normalize_rows_single_column():
    out = log_normalize_rows(torch.tensor([[4.0], [-4.0]], dtype=torch.float64))
    assert out.tolist() == [[1.0], [1.0]]


@pytest.mark.parametrize("prob_prediction", [True, False])
def test_torch_backend_matches_numpy(prob_prediction):
    hyper = PFHyperParameters(feature_count=3)
    config = HPFConfig(seed=11, iteration_frequency=2, prob_prediction=prob_prediction)
    numpy_model, numpy_trainer = train_hpf(_split(), hyper, config, IterationCountStoppingCondition(6))
    torch_model, torch_trainer = train_hpf(
        _split(), hyper, config, IterationCountStoppingCondition(6), backend="torch", prefer_gpu=False
    )

    np.testing.assert_allclose(torch_model.user_features, numpy_model.user_features, rtol=1e-9)
    np.testing.assert_allclose(torch_model.item_features, numpy_model.item_features, rtol=1e-9)
    assert [entry[0] for entry in torch_trainer.history] == [2, 4, 6]
    np.testing.assert_allclose(
        [entry[1] for entry in torch_trainer.history],
        [entry[1] for entry in numpy_trainer.history],
        rtol=1e-9,
    )


def test_torch_state_lives_on_cpu_when_gpu_not_preferred():
    trainer = TorchHPFTrainer(
        _split(), PFHyperParameters(feature_count=2), HPFConfig(), IterationCountStoppingCondition(1), prefer_gpu=False
    )
    trainer.fit()
    assert trainer.device.type == "cpu"
    assert trainer.state.gamma_shp.dtype == torch.float64
    assert torch.all(trainer.state.kappa_shp == PFHyperParameters(feature_count=2).kappa_shape)
