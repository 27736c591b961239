"""One-off position prior attached on the first estimation step."""

from __future__ import annotations

from functools import partial
from typing import Sequence

import gtsam
import numpy as np

from constants.parameters import PriorConfig
from sensor_models.base import StepContext
from utilities.measurements import SensorDataSet, SensorKind
from window_fgo.errors import UnknownStateError
from window_fgo.factor_graph import Factor, FactorGraph, FactorKind, ModelUpdate
from window_fgo.utils import POSITION


def prior_error(point: np.ndarray, means: Sequence[np.ndarray]) -> np.ndarray:
    return means[0] - point


class PositionPriorModel:
    """Pins the first position, with the up coordinate replaced by ``height``."""

    kind = SensorKind.PRIOR

    def __init__(self, config: PriorConfig) -> None:
        self.config = config

    def measure(
        self, graph: FactorGraph, data: SensorDataSet, step: StepContext
    ) -> ModelUpdate:
        update = ModelUpdate()
        if not step.is_first:
            return update

        state = graph.states.find(POSITION, step.t_now)
        if state is None:
            raise UnknownStateError(
                f"Position prior needs a position state at t={step.t_now:.6f}"
            )

        point = state.mean.copy()
        point[2] = self.config.height
        sigmas = 1.0 / np.asarray(self.config.sqrt_information, dtype=float)
        update.factors.append(
            Factor(
                kind=FactorKind.PRIOR,
                state_ids=(state.state_id,),
                error_fn=partial(prior_error, point),
                noise=gtsam.noiseModel.Diagonal.Sigmas(sigmas),
            )
        )
        return update
