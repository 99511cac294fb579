"""Hierarchical Poisson Factorization fitted with mean-field variational inference.

The trainer follows "Scalable Recommendation with Poisson Factorization"
(Gopalan, Hofman and Blei). Every iteration runs three strictly ordered
phases over dense numpy buffers:

1. the per-rating phi update, accumulating into ``gamma_shp_next`` and
   ``lambda_shp_next``;
2. the closed-form update of every user's shape/rate and activity rate;
3. the same update for items, using the freshly updated user parameters.

Every ``iteration_frequency`` iterations the average predictive
log-likelihood of the validation split is computed and its relative change is
handed to the stopping condition.
"""
from __future__ import annotations

import sys
from dataclasses import dataclass
from typing import Any, List, Sequence, Tuple

import numpy as np
from scipy.special import digamma, gammaln

from ..split import KeyIndex, RatingEntry, RatingSplit
from ..stopping import StoppingCondition


_CHECKED_PARAMETERS = (
    "gamma_rte",
    "kappa_rte",
    "lambda_rte",
    "tau_rte",
    "gamma_shp",
    "kappa_shp",
    "lambda_shp",
    "tau_shp",
)


def _is_integer(value: Any) -> bool:
    return isinstance(value, (int, np.integer)) and not isinstance(value, bool)


class HPFConfigError(ValueError):
    """Raised when the hyperparameters, configuration or split cannot be trained on."""


class NumericalInstabilityError(RuntimeError):
    """Raised when a variational parameter leaves its valid domain."""


@dataclass(frozen=True)
class PFHyperParameters:
    a: float = 0.3
    a_prime: float = 0.3
    b_prime: float = 1.0
    c: float = 0.3
    c_prime: float = 0.3
    d_prime: float = 1.0
    feature_count: int = 10

    def validate(self) -> None:
        priors = {
            "a": self.a,
            "a_prime": self.a_prime,
            "b_prime": self.b_prime,
            "c": self.c,
            "c_prime": self.c_prime,
            "d_prime": self.d_prime,
        }
        for name, value in priors.items():
            if not value > 0:
                raise HPFConfigError(f"{name} must be positive, got {value!r}")
        if not _is_integer(self.feature_count):
            raise HPFConfigError("feature_count must be an integer.")
        if self.feature_count < 1:
            raise HPFConfigError(f"feature_count must be >= 1, got {self.feature_count}")

    @property
    def kappa_shape(self) -> float:
        return self.a_prime + self.feature_count * self.a

    @property
    def tau_shape(self) -> float:
        return self.c_prime + self.feature_count * self.c


@dataclass
class HPFConfig:
    iteration_frequency: int = 10
    seed: int = 0
    max_offset_shape: float = 0.1
    max_offset_rate: float = 0.1
    prob_prediction: bool = True
    verbose: bool = False

    def validate(self) -> None:
        if not _is_integer(self.iteration_frequency) or self.iteration_frequency < 1:
            raise HPFConfigError("iteration_frequency must be a positive integer.")
        if not _is_integer(self.seed):
            raise HPFConfigError(f"seed must be an integer, got {self.seed!r}")
        if self.max_offset_shape < 0 or self.max_offset_rate < 0:
            raise HPFConfigError("Random offsets must be non-negative.")


@dataclass
class VariationalState:
    """Current variational parameters plus the shape accumulators of the next iteration.

    Arrays are numpy for the default trainer and torch tensors for the torch
    backend; the layout is identical.
    """

    gamma_shp: Any
    gamma_rte: Any
    kappa_shp: Any
    kappa_rte: Any
    lambda_shp: Any
    lambda_rte: Any
    tau_shp: Any
    tau_rte: Any
    gamma_shp_next: Any
    lambda_shp_next: Any


@dataclass(frozen=True, eq=False)
class HPFModel:
    user_features: np.ndarray
    item_features: np.ndarray
    user_index: KeyIndex
    item_index: KeyIndex

    @property
    def feature_count(self) -> int:
        return int(self.user_features.shape[1])

    def user_vector(self, user_id: Any) -> np.ndarray:
        return self.user_features[self.user_index.index_of(user_id)]

    def item_vector(self, item_id: Any) -> np.ndarray:
        return self.item_features[self.item_index.index_of(item_id)]


def log_normalize(log_weights: Any) -> np.ndarray:
    """Turn unnormalized log-weights into probabilities along the last axis.

    Accepts a single vector or a 2-D array of row vectors. The log of the sum
    of exponentials is accumulated left to right with the pairwise recurrence
    ``L = max + log(1 + exp(min - max))`` so large magnitudes never overflow.
    A single feature always normalizes to exactly 1.0.
    """
    values = np.asarray(log_weights, dtype=np.float64)
    single = values.ndim == 1
    rows = np.atleast_2d(values)
    size = rows.shape[-1]
    if size == 1:
        normalized = np.ones_like(rows)
    else:
        logsum = rows[:, 0].copy()
        for col in range(1, size):
            current = rows[:, col]
            high = np.maximum(logsum, current)
            low = np.minimum(logsum, current)
            logsum = high + np.log1p(np.exp(low - high))
        normalized = np.exp(rows - logsum[:, None])
    return normalized[0] if single else normalized


def _triples_to_arrays(entries: Sequence[RatingEntry]) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
    users = np.fromiter((entry.user for entry in entries), dtype=np.int64, count=len(entries))
    items = np.fromiter((entry.item for entry in entries), dtype=np.int64, count=len(entries))
    values = np.fromiter((entry.value for entry in entries), dtype=np.float64, count=len(entries))
    return users, items, values


def initialize_state(
    hyper: PFHyperParameters,
    user_count: int,
    item_count: int,
    seed: int,
    max_offset_shape: float,
    max_offset_rate: float,
) -> VariationalState:
    """Draw the starting variational parameters from one seeded stream.

    For every user, in index order, the stream yields a shape and then a rate
    draw for each feature followed by one activity shape draw; items repeat
    the pattern afterwards. Activity rates are the deterministic
    ``prior + K``. Negative seeds are folded into the unsigned 64-bit range.
    """
    k = hyper.feature_count
    rng = np.random.default_rng(int(seed) % 2**64)

    user_draws = rng.random(user_count * (2 * k + 1)).reshape(user_count, 2 * k + 1)
    item_draws = rng.random(item_count * (2 * k + 1)).reshape(item_count, 2 * k + 1)

    gamma_shp = hyper.a + max_offset_shape * user_draws[:, 0 : 2 * k : 2]
    gamma_rte = hyper.a_prime + max_offset_rate * user_draws[:, 1 : 2 * k : 2]
    kappa_shp = hyper.a_prime + max_offset_shape * user_draws[:, 2 * k]
    kappa_rte = np.full(user_count, hyper.a_prime + k, dtype=np.float64)

    lambda_shp = hyper.c + max_offset_shape * item_draws[:, 0 : 2 * k : 2]
    lambda_rte = hyper.c_prime + max_offset_rate * item_draws[:, 1 : 2 * k : 2]
    tau_shp = hyper.c_prime + max_offset_shape * item_draws[:, 2 * k]
    tau_rte = np.full(item_count, hyper.c_prime + k, dtype=np.float64)

    return VariationalState(
        gamma_shp=np.ascontiguousarray(gamma_shp),
        gamma_rte=np.ascontiguousarray(gamma_rte),
        kappa_shp=np.ascontiguousarray(kappa_shp),
        kappa_rte=kappa_rte,
        lambda_shp=np.ascontiguousarray(lambda_shp),
        lambda_rte=np.ascontiguousarray(lambda_rte),
        tau_shp=np.ascontiguousarray(tau_shp),
        tau_rte=tau_rte,
        gamma_shp_next=np.full((user_count, k), hyper.a, dtype=np.float64),
        lambda_shp_next=np.full((item_count, k), hyper.c, dtype=np.float64),
    )


class HPFTrainer:
    """Fits an :class:`HPFModel` on a :class:`RatingSplit`."""

    log_tag = "[hpf]"

    def __init__(
        self,
        split: RatingSplit,
        hyper: PFHyperParameters,
        config: HPFConfig,
        stopping: StoppingCondition,
    ) -> None:
        hyper.validate()
        config.validate()
        split.validate()
        if not split.train:
            raise HPFConfigError("The training split is empty.")
        if not split.validation:
            raise HPFConfigError(
                "The validation split is empty; the average predictive log-likelihood is undefined."
            )
        self.split = split
        self.hyper = hyper
        self.config = config
        self.stopping = stopping
        self.state: VariationalState | None = None
        self.history: List[Tuple[int, float, float]] = []
        self.iteration_count = 0

        self._train = _triples_to_arrays(split.train)
        self._validation = _triples_to_arrays(split.validation)

    def _log(self, message: str) -> None:
        if self.config.verbose:
            print(f"{self.log_tag} {message}")

    # State management

    def initialize(self) -> VariationalState:
        state = initialize_state(
            self.hyper,
            self.split.user_count,
            self.split.item_count,
            self.config.seed,
            self.config.max_offset_shape,
            self.config.max_offset_rate,
        )
        self._check_state(state, "initialization")
        return state

    def _check_state(self, state: VariationalState, phase: str) -> None:
        for name in _CHECKED_PARAMETERS:
            values = getattr(state, name)
            if not np.all(np.isfinite(values)) or np.any(values <= 0):
                raise NumericalInstabilityError(f"{name} left the positive reals after {phase}.")

    # Update phases

    def update_phi(self, state: VariationalState) -> None:
        users, items, values = self._train
        observed = values > 0
        users, items, values = users[observed], items[observed], values[observed]
        if users.size == 0:
            return
        log_weights = (
            digamma(state.gamma_shp[users])
            - np.log(state.gamma_rte[users])
            + digamma(state.lambda_shp[items])
            - np.log(state.lambda_rte[items])
        )
        phi = log_normalize(log_weights)
        scale = np.where(values > 1, values, 1.0)
        phi *= scale[:, None]
        np.add.at(state.gamma_shp_next, users, phi)
        np.add.at(state.lambda_shp_next, items, phi)

    def update_users(self, state: VariationalState) -> None:
        item_sum = (state.lambda_shp / state.lambda_rte).sum(axis=0)
        state.gamma_shp, state.gamma_shp_next = state.gamma_shp_next, state.gamma_shp
        state.gamma_shp_next.fill(self.hyper.a)
        state.gamma_rte[:] = item_sum[None, :] + (state.kappa_shp / state.kappa_rte)[:, None]
        state.kappa_rte[:] = self.hyper.a_prime / self.hyper.b_prime + (
            state.gamma_shp / state.gamma_rte
        ).sum(axis=1)

    def update_items(self, state: VariationalState) -> None:
        user_sum = (state.gamma_shp / state.gamma_rte).sum(axis=0)
        state.lambda_shp, state.lambda_shp_next = state.lambda_shp_next, state.lambda_shp
        state.lambda_shp_next.fill(self.hyper.c)
        state.lambda_rte[:] = user_sum[None, :] + (state.tau_shp / state.tau_rte)[:, None]
        state.tau_rte[:] = self.hyper.c_prime / self.hyper.d_prime + (
            state.lambda_shp / state.lambda_rte
        ).sum(axis=1)

    def fix_activity_shapes(self, state: VariationalState) -> None:
        state.kappa_shp.fill(self.hyper.kappa_shape)
        state.tau_shp.fill(self.hyper.tau_shape)

    # Convergence

    def average_log_likelihood(self, state: VariationalState) -> float:
        users, items, values = self._validation
        e_theta = state.gamma_shp[users] / state.gamma_rte[users]
        e_beta = state.lambda_shp[items] / state.lambda_rte[items]
        rates = np.einsum("ij,ij->i", e_theta, e_beta)
        if self.config.prob_prediction:
            with np.errstate(divide="ignore"):
                log_hit = np.log(-np.expm1(-rates))
            pll = np.where(values == 0, -rates, log_hit)
        else:
            pll = values * np.log(rates) - rates - gammaln(values + 1)
        return float(pll.mean())

    def posterior_means(self, state: VariationalState) -> Tuple[np.ndarray, np.ndarray]:
        return state.gamma_shp / state.gamma_rte, state.lambda_shp / state.lambda_rte

    def _record_evaluation(self, iteration: int, current: float, previous: float) -> float:
        if not np.isfinite(current):
            raise NumericalInstabilityError(
                f"Average predictive log-likelihood is not finite at iteration {iteration}."
            )
        if previous == 0.0:
            change = abs(current - previous)
        else:
            change = abs((current - previous) / previous)
        self.history.append((iteration, current, change))
        self._log(f"iteration {iteration}: avg_pll={current:.6f} change={change:.6g}")
        return change

    def fit(self) -> HPFModel:
        state = self.initialize()
        self.state = state
        self.history = []
        self._log(
            f"initialized {self.split.user_count} users, {self.split.item_count} items, "
            f"K={self.hyper.feature_count}"
        )

        controller = self.stopping.new_loop()
        previous = sys.float_info.max
        change = 1.0
        while controller.keep_training(change):
            iteration = controller.iteration_count
            self.update_phi(state)
            self.update_users(state)
            self.update_items(state)
            self._check_state(state, f"iteration {iteration}")

            if iteration == 1:
                self.fix_activity_shapes(state)

            if iteration % self.config.iteration_frequency == 0:
                current = self.average_log_likelihood(state)
                change = self._record_evaluation(iteration, current, previous)
                previous = current
            self.iteration_count = iteration

        user_features, item_features = self.posterior_means(state)
        self._log(f"finished after {self.iteration_count} iterations")
        return HPFModel(
            user_features=np.asarray(user_features, dtype=np.float64),
            item_features=np.asarray(item_features, dtype=np.float64),
            user_index=self.split.user_index,
            item_index=self.split.item_index,
        )


def train_hpf(
    split: RatingSplit,
    hyper: PFHyperParameters,
    config: HPFConfig,
    stopping: StoppingCondition,
    backend: str = "numpy",
    prefer_gpu: bool = False,
) -> Tuple[HPFModel, HPFTrainer]:
    if backend == "numpy":
        trainer = HPFTrainer(split, hyper, config, stopping)
    elif backend == "torch":
        from ..torch_backend import TorchHPFTrainer

        trainer = TorchHPFTrainer(split, hyper, config, stopping, prefer_gpu=prefer_gpu)
    else:
        raise HPFConfigError(f"Unknown backend '{backend}'; expected 'numpy' or 'torch'.")
    model = trainer.fit()
    return model, trainer


__all__ = [
    "HPFConfig",
    "HPFConfigError",
    "HPFModel",
    "HPFTrainer",
    "NumericalInstabilityError",
    "PFHyperParameters",
    "VariationalState",
    "initialize_state",
    "log_normalize",
    "train_hpf",
]
