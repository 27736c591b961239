"""Factor graph with explicit state/factor commands and window freezing.

States live in a :class:`Trajectory`; factors reference them by
``(name, timestamp)``. A solve builds a GTSAM problem whose variables are the
free states only. Factors touching frozen states capture their means as
constants, so frozen states never move and contribute no gradient.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from functools import partial
from typing import Callable, List, Optional, Sequence, Tuple

import gtsam
import numpy as np

from constants.parameters import SolverConfig
from utilities.measurements import Measurement
from window_fgo import utils
from window_fgo.errors import UnknownStateError
from window_fgo.state_store import StateId, StateVariable, Trajectory

ErrorFunction = Callable[[Sequence[np.ndarray]], np.ndarray]


class FactorKind(Enum):
    PRIOR = 1
    GNSS_POSITION = 2
    PSEUDORANGE = 3
    IMU_PREINTEGRATION = 4
    IMU_BIAS_RANDOM_WALK = 5
    ODOMETRY = 6
    CLOCK_DRIFT = 7


@dataclass
class Factor:
    """One residual block over a fixed list of states.

    ``error_fn`` receives the means of ``state_ids`` (in that order) and
    returns the unwhitened residual; ``noise`` whitens it.
    """

    kind: FactorKind
    state_ids: Tuple[StateId, ...]
    error_fn: ErrorFunction
    noise: gtsam.noiseModel.Base
    measurement: Optional[Measurement] = None

    def error(self, means: Sequence[np.ndarray]) -> np.ndarray:
        return np.atleast_1d(np.asarray(self.error_fn(means), dtype=float))


@dataclass
class StateSpec:
    """A state a sensor model wants to exist, with its initial guess."""

    name: str
    timestamp: float
    mean: np.ndarray


@dataclass
class ModelUpdate:
    """New states and factors proposed by a sensor model."""

    states: List[StateSpec] = field(default_factory=list)
    factors: List[Factor] = field(default_factory=list)

    def extend(self, other: "ModelUpdate") -> None:
        self.states.extend(other.states)
        self.factors.extend(other.factors)

    def __bool__(self) -> bool:
        return bool(self.states or self.factors)


@dataclass
class SolveReport:
    full: bool
    iterations: int = 0
    initial_error: float = float("nan")
    final_error: float = float("nan")
    converged: bool = True
    duration_s: float = 0.0
    num_free: int = 0
    num_frozen: int = 0
    num_factors: int = 0
    message: Optional[str] = None


def _custom_error(
    factor: Factor,
    free_slots: Tuple[int, ...],
    const_means: Tuple[Optional[np.ndarray], ...],
    this: gtsam.CustomFactor,
    values: gtsam.Values,
    jacobians: Optional[List[np.ndarray]],
) -> np.ndarray:
    """GTSAM callback: evaluate ``factor`` with frozen means held fixed."""

    means = list(const_means)
    for slot, key in zip(free_slots, this.keys()):
        means[slot] = values.atVector(key)

    residual = factor.error(means)

    if jacobians is not None:
        for idx, slot in enumerate(free_slots):
            J = utils.numerical_jacobian(factor.error, means, slot)
            if jacobians[idx].size == 0:
                jacobians[idx] = J
            else:
                jacobians[idx][:] = J

    return residual


class FactorGraph:
    """The live estimation problem, exclusively owned by the estimator."""

    def __init__(self, logger: Optional[logging.Logger] = None) -> None:
        self.logger = logger or logging.getLogger(__name__)
        self.states = Trajectory()
        self.factors: List[Factor] = []

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    def add_state(
        self, name: str, timestamp: float, mean: np.ndarray
    ) -> StateVariable:
        return self.states.create(name, timestamp, mean)

    def add_factor(self, factor: Factor) -> None:
        for name, timestamp in factor.state_ids:
            if not self.states.exists(name, timestamp):
                raise UnknownStateError(
                    f"{factor.kind.name} factor references missing state "
                    f"'{name}' at t={timestamp:.6f}"
                )
        self.factors.append(factor)

    def apply(self, update: ModelUpdate) -> None:
        """Insert the states of ``update`` that do not exist yet, then its factors.

        Two motion models may propose the same state; the first proposal
        provides the initial guess.
        """
        for spec in update.states:
            if not self.states.exists(spec.name, spec.timestamp):
                self.add_state(spec.name, spec.timestamp, spec.mean)
        for factor in update.factors:
            self.add_factor(factor)

    def freeze(self, window_length: float, reference_time: float) -> int:
        """Mark every state older than ``reference_time - window_length`` constant."""
        frozen = self.states.set_constant_before(reference_time - window_length)
        if frozen:
            self.logger.debug(
                "Froze %d states before t=%.3f", frozen, reference_time - window_length
            )
        return frozen

    def solve(self, solver_config: SolverConfig, *, full: bool) -> SolveReport:
        """Optimize the free states in place.

        A bounded solve caps the Levenberg-Marquardt iterations at
        ``bounded_iterations``. Solver failures are reported, not raised; the
        previous estimate is kept in that case.
        """

        start = time.perf_counter()
        free_states = self.states.free_states()
        report = SolveReport(
            full=full,
            num_free=len(free_states),
            num_frozen=len(self.states) - len(free_states),
        )

        graph, values = self._build_problem(free_states)
        report.num_factors = graph.size()
        if not free_states or graph.size() == 0:
            report.duration_s = time.perf_counter() - start
            return report

        max_iterations = (
            solver_config.max_iterations if full else solver_config.bounded_iterations
        )
        params = gtsam.LevenbergMarquardtParams()
        params.setMaxIterations(max_iterations)
        params.setRelativeErrorTol(solver_config.relative_error_tol)
        params.setAbsoluteErrorTol(solver_config.absolute_error_tol)

        try:
            report.initial_error = graph.error(values)
            optimizer = gtsam.LevenbergMarquardtOptimizer(graph, values, params)
            estimate = optimizer.optimize()
            report.iterations = int(optimizer.iterations())
            report.final_error = graph.error(estimate)
        except RuntimeError as exc:
            report.converged = False
            report.message = str(exc)
            report.duration_s = time.perf_counter() - start
            self.logger.warning("Solve failed, keeping previous estimate: %s", exc)
            return report

        report.converged = report.iterations < max_iterations
        for state in free_states:
            state.mean = np.array(estimate.atVector(state.key), dtype=float)

        if full and solver_config.estimate_covariance:
            self._update_covariances(graph, estimate, free_states)

        report.duration_s = time.perf_counter() - start
        if full and not report.converged:
            self.logger.warning(
                "Full solve stopped after %d iterations without converging "
                "(error %.6g -> %.6g)",
                report.iterations,
                report.initial_error,
                report.final_error,
            )
        return report

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _build_problem(
        self, free_states: Sequence[StateVariable]
    ) -> Tuple[gtsam.NonlinearFactorGraph, gtsam.Values]:
        graph = gtsam.NonlinearFactorGraph()
        values = gtsam.Values()
        for state in free_states:
            values.insert(state.key, np.asarray(state.mean, dtype=float))

        for factor in self.factors:
            custom = self._to_custom_factor(factor)
            if custom is not None:
                graph.push_back(custom)
        if self.logger.isEnabledFor(logging.DEBUG):
            self.logger.debug(
                "Solving %d factors over free states %s",
                graph.size(),
                ", ".join(utils.format_key(state.key) for state in free_states),
            )
        return graph, values

    def _to_custom_factor(self, factor: Factor) -> Optional[gtsam.CustomFactor]:
        free_slots: List[int] = []
        keys: List[int] = []
        const_means: List[Optional[np.ndarray]] = []
        for slot, (name, timestamp) in enumerate(factor.state_ids):
            state = self.states.get(name, timestamp)
            if state.constant:
                const_means.append(state.mean)
            else:
                free_slots.append(slot)
                keys.append(state.key)
                const_means.append(None)

        if not keys:
            return None

        return gtsam.CustomFactor(
            factor.noise,
            gtsam.KeyVector(keys),
            partial(_custom_error, factor, tuple(free_slots), tuple(const_means)),
        )

    def _update_covariances(
        self,
        graph: gtsam.NonlinearFactorGraph,
        estimate: gtsam.Values,
        free_states: Sequence[StateVariable],
    ) -> None:
        try:
            marginals = gtsam.Marginals(graph, estimate)
            for state in free_states:
                state.covariance = np.asarray(
                    marginals.marginalCovariance(state.key), dtype=float
                )
        except (RuntimeError, IndexError) as exc:
            self.logger.warning("Marginal covariance unavailable: %s", exc)
            for state in free_states:
                state.covariance = np.full((state.dim, state.dim), np.nan)

    def factor_count(self, kind: Optional[FactorKind] = None) -> int:
        if kind is None:
            return len(self.factors)
        return sum(1 for factor in self.factors if factor.kind == kind)
