"""Contract between the estimation loop and the sensor model providers.

Providers read the factor graph and the measurement source and return a
:class:`ModelUpdate`; they never mutate the graph themselves.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Protocol, runtime_checkable

import gtsam
import numpy as np

from constants.parameters import RobustLoss
from utilities.frame_converter import TangentPlaneConverter
from utilities.measurements import SensorDataSet
from window_fgo.factor_graph import FactorGraph, ModelUpdate

_MIN_SIGMA = 1e-6


@dataclass(frozen=True)
class StepContext:
    """Time interval handled by one estimation step."""

    t_old: float
    t_now: float
    t_first: float
    converter: TangentPlaneConverter

    @property
    def is_first(self) -> bool:
        return self.t_now == self.t_first

    @property
    def dt(self) -> float:
        return self.t_now - self.t_old


@runtime_checkable
class MotionModel(Protocol):
    def predict(
        self, graph: FactorGraph, data: SensorDataSet, step: StepContext
    ) -> ModelUpdate:
        ...


@runtime_checkable
class MeasurementModel(Protocol):
    def measure(
        self, graph: FactorGraph, data: SensorDataSet, step: StepContext
    ) -> ModelUpdate:
        ...


def robust_noise(
    base: gtsam.noiseModel.Base,
    robust_loss: RobustLoss,
    parameter: float,
) -> gtsam.noiseModel.Base:
    """Wrap ``base`` in the configured M-estimator."""

    if robust_loss == RobustLoss.HUBER:
        return gtsam.noiseModel.Robust.Create(
            gtsam.noiseModel.mEstimator.Huber.Create(parameter), base
        )
    if robust_loss == RobustLoss.CAUCHY:
        return gtsam.noiseModel.Robust.Create(
            gtsam.noiseModel.mEstimator.Cauchy.Create(parameter), base
        )
    return base


def gaussian_noise(
    covariance: np.ndarray,
    robust_loss: RobustLoss = RobustLoss.NONE,
    parameter: float = 1.345,
) -> gtsam.noiseModel.Base:
    cov = np.atleast_2d(np.asarray(covariance, dtype=float))
    return robust_noise(
        gtsam.noiseModel.Gaussian.Covariance(cov), robust_loss, parameter
    )


def diagonal_noise(
    sigmas: np.ndarray,
    robust_loss: RobustLoss = RobustLoss.NONE,
    parameter: float = 1.345,
) -> gtsam.noiseModel.Base:
    sig = np.maximum(np.atleast_1d(np.asarray(sigmas, dtype=float)), _MIN_SIGMA)
    return robust_noise(gtsam.noiseModel.Diagonal.Sigmas(sig), robust_loss, parameter)


def latest_mean(
    graph: FactorGraph, name: str, before: float, default: Optional[np.ndarray]
) -> Optional[np.ndarray]:
    state = graph.states.latest(name, before=before)
    if state is None:
        return None if default is None else np.array(default, dtype=float)
    return state.mean.copy()
