"""GNSS measurement models: ECEF position fixes and pseudoranges."""

from __future__ import annotations

from functools import partial
from typing import Sequence

import numpy as np

from constants.parameters import GnssConfig
from sensor_models.base import (
    StepContext,
    diagonal_noise,
    gaussian_noise,
    latest_mean,
)
from sensor_models.wls_solver import satellite_position
from utilities.measurements import SensorDataSet, SensorKind
from window_fgo.factor_graph import Factor, FactorGraph, FactorKind, ModelUpdate, StateSpec
from window_fgo.utils import CLOCK_ERROR, POSITION


def position_fix_error(
    fix_local: np.ndarray, means: Sequence[np.ndarray]
) -> np.ndarray:
    """Residual ``x - z`` of a position fix expressed in the local frame."""
    return means[0] - fix_local


def pseudorange_error(
    sat_pos_local: np.ndarray,
    pseudorange_m: float,
    means: Sequence[np.ndarray],
) -> np.ndarray:
    """Residual ``|sat - x| + c - rho``; ranges are frame invariant."""
    position, clock = means
    predicted = np.linalg.norm(sat_pos_local - position) + clock[0]
    return np.array([predicted - pseudorange_m])


def clock_drift_error(means: Sequence[np.ndarray]) -> np.ndarray:
    return means[1] - means[0]


class GnssPositionModel:
    """Attach ECEF position fixes as unary factors on the local position."""

    kind = SensorKind.GNSS_POSITION

    def __init__(self, config: GnssConfig) -> None:
        self.config = config

    def measure(
        self, graph: FactorGraph, data: SensorDataSet, step: StepContext
    ) -> ModelUpdate:
        update = ModelUpdate()
        converter = step.converter
        for meas in data.at(self.kind, step.t_now):
            fix_local = converter.global_to_local(meas.mean)
            cov_local = converter.covariance_to_local(meas.covariance)
            update.states.append(StateSpec(POSITION, step.t_now, fix_local))
            update.factors.append(
                Factor(
                    kind=FactorKind.GNSS_POSITION,
                    state_ids=((POSITION, step.t_now),),
                    error_fn=partial(position_fix_error, fix_local),
                    noise=gaussian_noise(
                        cov_local,
                        self.config.robust_loss,
                        self.config.robust_parameter,
                    ),
                    measurement=meas,
                )
            )
        return update


class PseudorangeModel:
    """Attach one range factor per satellite plus a receiver clock random walk."""

    kind = SensorKind.PSEUDORANGE

    def __init__(self, config: GnssConfig) -> None:
        self.config = config

    def measure(
        self, graph: FactorGraph, data: SensorDataSet, step: StepContext
    ) -> ModelUpdate:
        update = ModelUpdate()
        measurements = data.at(self.kind, step.t_now)
        if not measurements:
            return update

        converter = step.converter
        t_now = step.t_now
        sat_local = [
            converter.global_to_local(satellite_position(meas)) for meas in measurements
        ]

        if not graph.states.exists(POSITION, t_now):
            position_guess = latest_mean(graph, POSITION, t_now, np.zeros(3))
            update.states.append(StateSpec(POSITION, t_now, position_guess))
        else:
            position_guess = graph.states.get(POSITION, t_now).mean

        if not graph.states.exists(CLOCK_ERROR, t_now):
            prev_clock = graph.states.latest(CLOCK_ERROR, before=t_now)
            if prev_clock is not None:
                clock_guess = prev_clock.mean.copy()
            else:
                # median range offset of the current epoch
                offsets = [
                    float(meas.mean[0]) - np.linalg.norm(sat - position_guess)
                    for meas, sat in zip(measurements, sat_local)
                ]
                clock_guess = np.array([np.median(offsets)])
            update.states.append(StateSpec(CLOCK_ERROR, t_now, clock_guess))

            if prev_clock is not None:
                dt = t_now - prev_clock.timestamp
                update.factors.append(
                    Factor(
                        kind=FactorKind.CLOCK_DRIFT,
                        state_ids=(prev_clock.state_id, (CLOCK_ERROR, t_now)),
                        error_fn=clock_drift_error,
                        noise=diagonal_noise(
                            np.array([self.config.clock_drift_std * np.sqrt(dt)])
                        ),
                    )
                )

        for meas, sat in zip(measurements, sat_local):
            update.factors.append(
                Factor(
                    kind=FactorKind.PSEUDORANGE,
                    state_ids=((POSITION, t_now), (CLOCK_ERROR, t_now)),
                    error_fn=partial(pseudorange_error, sat, float(meas.mean[0])),
                    noise=gaussian_noise(
                        meas.covariance[:1, :1],
                        self.config.robust_loss,
                        self.config.robust_parameter,
                    ),
                    measurement=meas,
                )
            )
        return update
