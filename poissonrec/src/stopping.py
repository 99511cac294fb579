"""Stopping conditions for iterative training loops.

A :class:`StoppingCondition` hands out a fresh :class:`TrainingLoopController`
per training run. The trainer calls ``keep_training(change)`` before every
iteration; when it returns True the controller has advanced
``iteration_count`` to the number of the iteration about to run.
"""
from __future__ import annotations

from typing import Callable


class TrainingLoopController:
    def __init__(self, condition: "StoppingCondition") -> None:
        self._condition = condition
        self.iteration_count = 0

    def keep_training(self, change: float) -> bool:
        if self._condition.should_stop(self.iteration_count, change):
            return False
        self.iteration_count += 1
        return True


class StoppingCondition:
    def should_stop(self, iteration_count: int, change: float) -> bool:
        raise NotImplementedError

    def new_loop(self) -> TrainingLoopController:
        return TrainingLoopController(self)


class IterationCountStoppingCondition(StoppingCondition):
    """Runs exactly ``iterations`` iterations regardless of the change."""

    def __init__(self, iterations: int) -> None:
        if iterations < 0:
            raise ValueError("iterations must be non-negative")
        self.iterations = iterations

    def should_stop(self, iteration_count: int, change: float) -> bool:
        return iteration_count >= self.iterations


class ThresholdStoppingCondition(StoppingCondition):
    """Stops once the relative change drops to ``threshold`` or below.

    ``min_iterations`` iterations always run; ``max_iterations`` caps the loop
    when the threshold is never reached.
    """

    def __init__(
        self,
        threshold: float,
        min_iterations: int = 0,
        max_iterations: int | None = None,
    ) -> None:
        if threshold < 0:
            raise ValueError("threshold must be non-negative")
        if min_iterations < 0:
            raise ValueError("min_iterations must be non-negative")
        if max_iterations is not None and max_iterations < min_iterations:
            raise ValueError("max_iterations must be >= min_iterations")
        self.threshold = threshold
        self.min_iterations = min_iterations
        self.max_iterations = max_iterations

    def should_stop(self, iteration_count: int, change: float) -> bool:
        if self.max_iterations is not None and iteration_count >= self.max_iterations:
            return True
        return iteration_count >= self.min_iterations and abs(change) <= self.threshold


class FunctionStoppingCondition(StoppingCondition):
    """Wraps a ``fn(iteration_count, change) -> bool`` that returns True to stop."""

    def __init__(self, fn: Callable[[int, float], bool]) -> None:
        if not callable(fn):
            raise ValueError("fn must be callable")
        self.fn = fn

    def should_stop(self, iteration_count: int, change: float) -> bool:
        return bool(self.fn(iteration_count, change))


__all__ = [
    "FunctionStoppingCondition",
    "IterationCountStoppingCondition",
    "StoppingCondition",
    "ThresholdStoppingCondition",
    "TrainingLoopController",
]
