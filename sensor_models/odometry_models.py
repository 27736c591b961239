"""Wheel/visual odometry as a between-factor on position and heading."""

from __future__ import annotations

import logging
from functools import partial
from typing import Optional, Sequence

import numpy as np

from constants.common_utils import wrap_angle, yaw_rotation
from constants.parameters import OdometryConfig
from sensor_models.base import StepContext, diagonal_noise
from utilities.measurements import Measurement, SensorDataSet, SensorKind
from utilities.resampling import average_measurement
from window_fgo.errors import UnknownStateError
from window_fgo.factor_graph import Factor, FactorGraph, FactorKind, ModelUpdate, StateSpec
from window_fgo.utils import ORIENTATION, POSITION


def predict_pose(
    position: np.ndarray, yaw: float, twist: np.ndarray, duration: float
) -> np.ndarray:
    """Dead-reckon ``(x, y, z, yaw)`` with a constant body-frame twist.

    ``twist`` is ``[vx, vy, vz, wx, wy, wz]``; translation is rotated with the
    mid-interval heading.
    """
    yaw_rate = twist[5]
    mid_yaw = yaw + 0.5 * yaw_rate * duration
    moved = position + yaw_rotation(mid_yaw) @ twist[:3] * duration
    return np.concatenate((moved, [yaw + yaw_rate * duration]))


def odometry_error(
    twist: np.ndarray, duration: float, means: Sequence[np.ndarray]
) -> np.ndarray:
    p0, o0, p1, o1 = means
    pred = predict_pose(p0, float(o0[0]), twist, duration)
    return np.concatenate((p1 - pred[:3], [float(wrap_angle(o1[0] - pred[3]))]))


class OdometryModel:
    """Propagates position and heading using the twist measured over a step."""

    kind = SensorKind.ODOMETRY

    def __init__(
        self, config: OdometryConfig, logger: Optional[logging.Logger] = None
    ) -> None:
        self.config = config
        self.logger = logger or logging.getLogger(__name__)

    def select_twist(
        self, data: SensorDataSet, t_old: float, t_now: float
    ) -> Optional[Measurement]:
        """Average of the twists in ``(t_old, t_now]``, else the last one known."""
        within = data.between(self.kind, t_old, t_now)
        if within:
            return average_measurement(within)
        held = data.latest_before(self.kind, t_old)
        if held is not None:
            return held
        if data.has(self.kind):
            return data.get(self.kind)[0]
        return None

    def predict(
        self, graph: FactorGraph, data: SensorDataSet, step: StepContext
    ) -> ModelUpdate:
        update = ModelUpdate()
        meas = self.select_twist(data, step.t_old, step.t_now)
        if meas is None:
            self.logger.debug("No odometry for step t=%.3f", step.t_now)
            return update

        prev_position = graph.states.latest(POSITION, before=step.t_old)
        prev_yaw = graph.states.latest(ORIENTATION, before=step.t_old)
        if prev_position is None or prev_yaw is None:
            raise UnknownStateError(
                f"Odometry needs position and orientation at t={step.t_old:.6f}"
            )

        duration = step.t_now - step.t_old
        twist = meas.mean
        guess = predict_pose(
            prev_position.mean, float(prev_yaw.mean[0]), twist, duration
        )
        update.states.append(StateSpec(POSITION, step.t_now, guess[:3]))
        yaw_guess = np.array([float(wrap_angle(guess[3]))])
        update.states.append(StateSpec(ORIENTATION, step.t_now, yaw_guess))

        std = meas.std
        sigmas = np.concatenate((std[:3], [std[5]])) * duration
        update.factors.append(
            Factor(
                kind=FactorKind.ODOMETRY,
                state_ids=(
                    prev_position.state_id,
                    prev_yaw.state_id,
                    (POSITION, step.t_now),
                    (ORIENTATION, step.t_now),
                ),
                error_fn=partial(odometry_error, twist.copy(), duration),
                noise=diagonal_noise(sigmas),
                measurement=meas,
            )
        )
        return update
