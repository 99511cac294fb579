"""PyTorch-backed HPF training with optional GPU acceleration.

The variational parameters are drawn by the numpy initializer so both
backends start from the same stream, then moved to float64 tensors on the
selected device. Phase-1 accumulation uses ``index_add_``, which is
order-deterministic on CPU but not on CUDA.
"""
from __future__ import annotations

from typing import Tuple

import numpy as np
import torch

from .models.hpf import (
    _CHECKED_PARAMETERS,
    HPFConfig,
    HPFTrainer,
    NumericalInstabilityError,
    PFHyperParameters,
    VariationalState,
)
from .split import RatingSplit
from .stopping import StoppingCondition


def _torch_device(prefer_gpu: bool = True) -> torch.device:
    if prefer_gpu and torch.cuda.is_available():
        return torch.device("cuda")
    return torch.device("cpu")


def log_normalize_rows(log_weights: torch.Tensor) -> torch.Tensor:
    size = log_weights.shape[-1]
    if size == 1:
        return torch.ones_like(log_weights)
    logsum = log_weights[:, 0].clone()
    for col in range(1, size):
        current = log_weights[:, col]
        high = torch.maximum(logsum, current)
        low = torch.minimum(logsum, current)
        logsum = high + torch.log1p(torch.exp(low - high))
    return torch.exp(log_weights - logsum[:, None])


class TorchHPFTrainer(HPFTrainer):
    log_tag = "[hpf:torch]"

    def __init__(
        self,
        split: RatingSplit,
        hyper: PFHyperParameters,
        config: HPFConfig,
        stopping: StoppingCondition,
        prefer_gpu: bool = True,
    ) -> None:
        super().__init__(split, hyper, config, stopping)
        self.device = _torch_device(prefer_gpu)
        self._train_t = self._to_tensors(self._train)
        self._validation_t = self._to_tensors(self._validation)

    def _to_tensors(self, arrays: Tuple[np.ndarray, np.ndarray, np.ndarray]) -> Tuple[torch.Tensor, ...]:
        users, items, values = arrays
        return (
            torch.as_tensor(users, dtype=torch.long, device=self.device),
            torch.as_tensor(items, dtype=torch.long, device=self.device),
            torch.as_tensor(values, dtype=torch.float64, device=self.device),
        )

    def initialize(self) -> VariationalState:
        state = super().initialize()
        for name, value in vars(state).items():
            setattr(state, name, torch.as_tensor(value, dtype=torch.float64, device=self.device).clone())
        self._log(f"training on {self.device}")
        return state

    def _check_state(self, state: VariationalState, phase: str) -> None:
        if isinstance(state.gamma_rte, np.ndarray):
            super()._check_state(state, phase)
            return
        for name in _CHECKED_PARAMETERS:
            values = getattr(state, name)
            if not bool(torch.isfinite(values).all()) or bool((values <= 0).any()):
                raise NumericalInstabilityError(f"{name} left the positive reals after {phase}.")

    def update_phi(self, state: VariationalState) -> None:
        users, items, values = self._train_t
        observed = values > 0
        users, items, values = users[observed], items[observed], values[observed]
        if users.numel() == 0:
            return
        log_weights = (
            torch.special.digamma(state.gamma_shp[users])
            - torch.log(state.gamma_rte[users])
            + torch.special.digamma(state.lambda_shp[items])
            - torch.log(state.lambda_rte[items])
        )
        phi = log_normalize_rows(log_weights)
        scale = torch.where(values > 1, values, torch.ones_like(values))
        phi = phi * scale[:, None]
        state.gamma_shp_next.index_add_(0, users, phi)
        state.lambda_shp_next.index_add_(0, items, phi)

    def update_users(self, state: VariationalState) -> None:
        item_sum = (state.lambda_shp / state.lambda_rte).sum(dim=0)
        state.gamma_shp, state.gamma_shp_next = state.gamma_shp_next, state.gamma_shp
        state.gamma_shp_next.fill_(self.hyper.a)
        state.gamma_rte.copy_(item_sum[None, :] + (state.kappa_shp / state.kappa_rte)[:, None])
        state.kappa_rte.copy_(
            self.hyper.a_prime / self.hyper.b_prime + (state.gamma_shp / state.gamma_rte).sum(dim=1)
        )

    def update_items(self, state: VariationalState) -> None:
        user_sum = (state.gamma_shp / state.gamma_rte).sum(dim=0)
        state.lambda_shp, state.lambda_shp_next = state.lambda_shp_next, state.lambda_shp
        state.lambda_shp_next.fill_(self.hyper.c)
        state.lambda_rte.copy_(user_sum[None, :] + (state.tau_shp / state.tau_rte)[:, None])
        state.tau_rte.copy_(
            self.hyper.c_prime / self.hyper.d_prime + (state.lambda_shp / state.lambda_rte).sum(dim=1)
        )

    def fix_activity_shapes(self, state: VariationalState) -> None:
        state.kappa_shp.fill_(self.hyper.kappa_shape)
        state.tau_shp.fill_(self.hyper.tau_shape)

    def average_log_likelihood(self, state: VariationalState) -> float:
        users, items, values = self._validation_t
        e_theta = state.gamma_shp[users] / state.gamma_rte[users]
        e_beta = state.lambda_shp[items] / state.lambda_rte[items]
        rates = (e_theta * e_beta).sum(dim=1)
        if self.config.prob_prediction:
            pll = torch.where(values == 0, -rates, torch.log(-torch.expm1(-rates)))
        else:
            pll = values * torch.log(rates) - rates - torch.lgamma(values + 1)
        return float(pll.mean().item())

    def posterior_means(self, state: VariationalState) -> Tuple[np.ndarray, np.ndarray]:
        e_theta = (state.gamma_shp / state.gamma_rte).detach().cpu().numpy()
        e_beta = (state.lambda_shp / state.lambda_rte).detach().cpu().numpy()
        return e_theta, e_beta


__all__ = ["TorchHPFTrainer", "log_normalize_rows"]
