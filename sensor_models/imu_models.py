"""Planar strapdown IMU propagation between two estimation steps.

The navigation frame is the local ENU plane. Orientation is reduced to the
heading angle; roll and pitch are assumed small, so the specific force is
rotated by yaw only and gravity is removed along the up axis.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from functools import partial
from typing import List, Optional, Sequence, Tuple

import numpy as np

from constants.common_utils import wrap_angle
from constants.parameters import ImuConfig
from sensor_models.base import StepContext, diagonal_noise
from utilities.measurements import Measurement, SensorDataSet, SensorKind
from window_fgo.errors import UnknownStateError
from window_fgo.factor_graph import Factor, FactorGraph, FactorKind, ModelUpdate, StateSpec
from window_fgo.state_store import StateVariable
from window_fgo.utils import IMU_BIAS, ORIENTATION, POSITION, VELOCITY


@dataclass
class ImuSegment:
    """IMU samples covering one step, each held over its ``dt``."""

    acc: np.ndarray  # (N, 3) m/s^2
    gyro: np.ndarray  # (N, 3) rad/s
    dt: np.ndarray  # (N,) s
    duration: float

    @property
    def covered(self) -> float:
        return float(np.sum(self.dt))


def collect_imu_segment(
    data: SensorDataSet, t_start: float, t_end: float
) -> ImuSegment:
    """Gather the samples in ``(t_start, t_end]``.

    Each sample is integrated over the interval since the previous one and
    the last sample is held up to ``t_end``. Without samples in the interval
    the last sample at or before ``t_start`` is held over all of it.
    """

    acc: List[np.ndarray] = []
    gyro: List[np.ndarray] = []
    dts: List[float] = []

    last_time = t_start
    last_sample: Optional[Measurement] = data.latest_before(SensorKind.IMU, t_start)
    for sample in data.between(SensorKind.IMU, t_start, t_end):
        dt = sample.timestamp - last_time
        if dt > 0:
            acc.append(sample.mean[:3])
            gyro.append(sample.mean[3:6])
            dts.append(dt)
            last_time = sample.timestamp
        last_sample = sample

    if last_time < t_end and last_sample is not None:
        acc.append(last_sample.mean[:3])
        gyro.append(last_sample.mean[3:6])
        dts.append(t_end - last_time)

    if not dts:
        return ImuSegment(
            np.zeros((0, 3)), np.zeros((0, 3)), np.zeros(0), t_end - t_start
        )
    return ImuSegment(
        np.vstack(acc), np.vstack(gyro), np.asarray(dts, dtype=float), t_end - t_start
    )


def integrate_segment(
    segment: ImuSegment,
    gravity: float,
    position: np.ndarray,
    velocity: np.ndarray,
    yaw: float,
    bias: np.ndarray,
) -> Tuple[np.ndarray, np.ndarray, float]:
    """Propagate position, velocity and yaw over ``segment``."""

    dt = segment.dt
    if dt.size:
        rate = segment.gyro[:, 2] - bias[5]
        yaw_steps = rate * dt
        yaws = yaw + np.concatenate(([0.0], np.cumsum(yaw_steps)[:-1]))

        force = segment.acc - bias[:3]
        cos_y = np.cos(yaws)
        sin_y = np.sin(yaws)
        acc_nav = np.column_stack(
            (
                cos_y * force[:, 0] - sin_y * force[:, 1],
                sin_y * force[:, 0] + cos_y * force[:, 1],
                force[:, 2] - gravity,
            )
        )

        dv = acc_nav * dt[:, None]
        v_start = velocity + np.vstack((np.zeros(3), np.cumsum(dv, axis=0)[:-1]))
        position = position + np.sum(
            v_start * dt[:, None] + 0.5 * acc_nav * dt[:, None] ** 2, axis=0
        )
        velocity = velocity + np.sum(dv, axis=0)
        yaw = yaw + float(np.sum(yaw_steps))

    remainder = segment.duration - segment.covered
    if remainder > 0:
        # no IMU data: constant velocity
        position = position + velocity * remainder
    return position, velocity, yaw


def imu_preintegration_error(
    segment: ImuSegment, gravity: float, means: Sequence[np.ndarray]
) -> np.ndarray:
    p0, v0, o0, b0, p1, v1, o1 = means
    p_pred, v_pred, yaw_pred = integrate_segment(
        segment, gravity, p0, v0, float(o0[0]), b0
    )
    return np.concatenate(
        (p1 - p_pred, v1 - v_pred, [float(wrap_angle(o1[0] - yaw_pred))])
    )


def bias_random_walk_error(means: Sequence[np.ndarray]) -> np.ndarray:
    return means[1] - means[0]


class ImuModel:
    """Adds position, velocity, heading and bias states at each new step."""

    kind = SensorKind.IMU

    def __init__(
        self,
        config: ImuConfig,
        gravity: float,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.config = config
        self.gravity = gravity
        self.logger = logger or logging.getLogger(__name__)

    def predict(
        self, graph: FactorGraph, data: SensorDataSet, step: StepContext
    ) -> ModelUpdate:
        update = ModelUpdate()
        prev = {
            name: self._previous_state(graph, name, step.t_old)
            for name in (POSITION, VELOCITY, ORIENTATION, IMU_BIAS)
        }
        duration = step.t_now - step.t_old
        segment = collect_imu_segment(data, step.t_old, step.t_now)
        if segment.covered < duration:
            self.logger.debug(
                "IMU covers %.3f of %.3f s before t=%.3f",
                segment.covered,
                duration,
                step.t_now,
            )

        bias = prev[IMU_BIAS].mean
        p_guess, v_guess, yaw = integrate_segment(
            segment,
            self.gravity,
            prev[POSITION].mean,
            prev[VELOCITY].mean,
            float(prev[ORIENTATION].mean[0]),
            bias,
        )
        yaw_guess = np.array([float(wrap_angle(yaw))])
        update.states.extend(
            [
                StateSpec(POSITION, step.t_now, p_guess),
                StateSpec(VELOCITY, step.t_now, v_guess),
                StateSpec(ORIENTATION, step.t_now, yaw_guess),
                StateSpec(IMU_BIAS, step.t_now, bias.copy()),
            ]
        )

        cfg = self.config
        sqrt_t = np.sqrt(duration)
        preint_sigmas = np.concatenate(
            (
                np.full(3, cfg.acc_noise_std * duration * sqrt_t),
                np.full(3, cfg.acc_noise_std * sqrt_t),
                [cfg.gyro_noise_std * sqrt_t],
            )
        )
        update.factors.append(
            Factor(
                kind=FactorKind.IMU_PREINTEGRATION,
                state_ids=(
                    prev[POSITION].state_id,
                    prev[VELOCITY].state_id,
                    prev[ORIENTATION].state_id,
                    prev[IMU_BIAS].state_id,
                    (POSITION, step.t_now),
                    (VELOCITY, step.t_now),
                    (ORIENTATION, step.t_now),
                ),
                error_fn=partial(imu_preintegration_error, segment, self.gravity),
                noise=diagonal_noise(preint_sigmas),
            )
        )

        bias_sigmas = np.concatenate(
            (np.full(3, cfg.acc_bias_std), np.full(3, cfg.gyro_bias_std))
        ) * sqrt_t
        update.factors.append(
            Factor(
                kind=FactorKind.IMU_BIAS_RANDOM_WALK,
                state_ids=(prev[IMU_BIAS].state_id, (IMU_BIAS, step.t_now)),
                error_fn=bias_random_walk_error,
                noise=diagonal_noise(bias_sigmas),
            )
        )
        return update

    @staticmethod
    def _previous_state(
        graph: FactorGraph, name: str, t_old: float
    ) -> StateVariable:
        state = graph.states.latest(name, before=t_old)
        if state is None:
            raise UnknownStateError(
                f"IMU prediction needs a '{name}' state at or before t={t_old:.6f}"
            )
        return state
