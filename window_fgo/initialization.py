"""Seeding of the factor graph before the first estimation step."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from functools import partial
from itertools import groupby
from typing import List, Optional, Tuple

import numpy as np

from constants.common_utils import computeGravityConst
from constants.parameters import (
    INITIAL_FREEZE_WINDOW_S,
    STANDARD_GRAVITY,
    EstimatorConfig,
)
from sensor_models.base import diagonal_noise
from sensor_models.prior_models import prior_error
from sensor_models.wls_solver import MIN_NUM_SATELLITES, solve_wls_position
from utilities.frame_converter import TangentPlaneConverter
from utilities.measurements import SensorDataSet, SensorKind
from window_fgo.errors import DataError
from window_fgo.factor_graph import Factor, FactorGraph, FactorKind
from window_fgo.utils import CLOCK_ERROR, IMU_BIAS, ORIENTATION, POSITION, VELOCITY


@dataclass
class InitResult:
    anchor_ecef: Optional[np.ndarray]
    gravity: float
    imu_bias: Optional[np.ndarray] = None


def _add_prior(
    graph: FactorGraph,
    name: str,
    timestamp: float,
    mean: np.ndarray,
    sigmas: np.ndarray,
) -> None:
    state = graph.add_state(name, timestamp, mean)
    graph.add_factor(
        Factor(
            kind=FactorKind.PRIOR,
            state_ids=(state.state_id,),
            error_fn=partial(prior_error, state.mean.copy()),
            noise=diagonal_noise(sigmas),
        )
    )


def _average_position_fixes(
    data: SensorDataSet, t_start: float, t_end: float
) -> Optional[np.ndarray]:
    fixes = data.within(SensorKind.GNSS_POSITION, t_start, t_end)
    if not fixes:
        return None
    return np.mean([fix.mean for fix in fixes], axis=0)


def _average_wls_solutions(
    data: SensorDataSet,
    t_start: float,
    t_end: float,
    logger: logging.Logger,
) -> Optional[Tuple[np.ndarray, float]]:
    ranges = data.within(SensorKind.PSEUDORANGE, t_start, t_end)
    if not ranges:
        return None

    positions: List[np.ndarray] = []
    clocks: List[float] = []
    for epoch, group in groupby(ranges, key=lambda meas: meas.timestamp):
        epoch_ranges = list(group)
        if len(epoch_ranges) < MIN_NUM_SATELLITES:
            logger.warning(
                "Skipping epoch t=%.3f for initialization: %d of %d satellites",
                epoch,
                len(epoch_ranges),
                MIN_NUM_SATELLITES,
            )
            continue
        ecef, clock = solve_wls_position(epoch_ranges)
        positions.append(ecef)
        clocks.append(clock)

    if not positions:
        raise DataError(
            "No pseudorange epoch in the initialization window can be solved"
        )
    return np.mean(positions, axis=0), float(np.mean(clocks))


def initialize_graph(
    graph: FactorGraph,
    data: SensorDataSet,
    config: EstimatorConfig,
    converter: TangentPlaneConverter,
    t_initial: float,
    logger: Optional[logging.Logger] = None,
) -> InitResult:
    """Add the initial states and priors and anchor the local frame.

    GNSS seeds the frame anchor and the first position. IMU data seeds the
    biases, a resting velocity and zero heading; odometry alone only fixes the
    heading. Without a GNSS anchor the position starts at the origin with a
    fallback prior.
    """

    logger = logger or logging.getLogger(__name__)
    anchor_ecef: Optional[np.ndarray] = None

    if config.gnss.active:
        t_end = t_initial + config.gnss.init_window_s
        if config.gnss.kind == SensorKind.PSEUDORANGE:
            solution = _average_wls_solutions(data, t_initial, t_end, logger)
            if solution is not None:
                anchor_ecef, clock = solution
                graph.add_state(CLOCK_ERROR, t_initial, np.array([clock]))
        else:
            anchor_ecef = _average_position_fixes(data, t_initial, t_end)

        if anchor_ecef is None:
            logger.warning(
                "No %s data within %.3f s of t=%.3f, local frame stays unanchored",
                config.gnss.kind.name,
                config.gnss.init_window_s,
                t_initial,
            )
        else:
            converter.initialize(anchor_ecef)
            graph.add_state(POSITION, t_initial, np.zeros(3))

    if config.imu.gravity is not None:
        gravity = float(config.imu.gravity)
    elif converter.is_initialized:
        gravity = float(computeGravityConst(converter.anchor_lla_rad[0]))
    else:
        gravity = STANDARD_GRAVITY

    imu_bias: Optional[np.ndarray] = None
    if config.imu.active:
        imu_bias = _initial_imu_bias(data, config, t_initial, gravity, logger)
        imu = config.imu
        _add_prior(
            graph,
            IMU_BIAS,
            t_initial,
            imu_bias,
            np.concatenate(
                (np.full(3, imu.init_acc_bias_std), np.full(3, imu.init_gyro_bias_std))
            ),
        )
        _add_prior(
            graph, VELOCITY, t_initial, np.zeros(3), np.full(3, imu.init_velocity_std)
        )
        _add_prior(
            graph,
            ORIENTATION,
            t_initial,
            np.zeros(1),
            np.array([imu.init_orientation_std]),
        )
    elif config.odometry.active:
        _add_prior(
            graph,
            ORIENTATION,
            t_initial,
            np.zeros(1),
            np.array([config.odometry.init_orientation_std]),
        )

    if anchor_ecef is None:
        _add_prior(
            graph,
            POSITION,
            t_initial,
            np.zeros(3),
            np.full(3, config.initial_position_std),
        )
        graph.freeze(INITIAL_FREEZE_WINDOW_S, t_initial)

    logger.info(
        "Initialized %d states at t=%.3f (anchor=%s, gravity=%.5f)",
        len(graph.states),
        t_initial,
        "none" if anchor_ecef is None else np.array2string(anchor_ecef, precision=3),
        gravity,
    )
    return InitResult(anchor_ecef=anchor_ecef, gravity=gravity, imu_bias=imu_bias)


def _initial_imu_bias(
    data: SensorDataSet,
    config: EstimatorConfig,
    t_initial: float,
    gravity: float,
    logger: logging.Logger,
) -> np.ndarray:
    """Stationary calibration: mean specific force minus gravity, mean rate."""

    samples = data.within(
        SensorKind.IMU, t_initial, t_initial + config.imu.init_window_s
    )
    if not samples:
        logger.warning("No IMU data for bias initialization, assuming zero bias")
        return np.zeros(6)

    means = np.vstack([sample.mean[:6] for sample in samples])
    acc_bias = means[:, :3].mean(axis=0) - np.array([0.0, 0.0, gravity])
    gyro_bias = means[:, 3:6].mean(axis=0)
    logger.info(
        "IMU bias from %d samples: acc=%s gyro=%s",
        len(samples),
        np.array2string(acc_bias, precision=5),
        np.array2string(gyro_bias, precision=6),
    )
    return np.concatenate((acc_bias, gyro_bias))
