from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional

import numpy as np

from utilities.measurements import GNSS_KINDS, SensorKind


class RobustLoss(Enum):
    NONE = 1
    HUBER = 2
    CAUCHY = 3


GNSS_INIT_WINDOW_S = 0.1  # GNSS fixes averaged for the anchor
IMU_INIT_WINDOW_S = 2.0  # Stationary IMU data used for bias calibration
FULL_SOLVE_PERIOD = 60.0  # Force a full solve when crossing this period
FORCED_SOLVE_SLACK = 1.1  # Tolerance factor on the step length for the period test
FALLBACK_POSITION_STD_M = 1.0  # Prior on the origin when nothing anchors the position
INITIAL_FREEZE_WINDOW_S = 1.0
STANDARD_GRAVITY = 9.80665


@dataclass
class GnssConfig:
    active: bool = False
    kind: SensorKind = SensorKind.GNSS_POSITION
    init_window_s: float = GNSS_INIT_WINDOW_S
    robust_loss: RobustLoss = RobustLoss.NONE
    robust_parameter: float = 1.345  # Huber k / Cauchy c in units of sigma
    clock_drift_std: float = 10.0  # Receiver clock random walk in m/sqrt(s)


@dataclass
class ImuConfig:
    active: bool = False
    acc_noise_std: float = 0.05  # m/s^2/sqrt(Hz)
    gyro_noise_std: float = np.deg2rad(0.1)  # rad/s/sqrt(Hz)
    acc_bias_std: float = 1e-3  # random walk, m/s^2/sqrt(s)
    gyro_bias_std: float = 1e-5  # random walk, rad/s/sqrt(s)
    # None: derived from the anchor latitude, or standard gravity without anchor
    gravity: Optional[float] = None
    init_window_s: float = IMU_INIT_WINDOW_S
    init_velocity_std: float = 0.1  # m/s, vehicle assumed stationary at start
    init_orientation_std: float = 2 * np.pi  # rad, heading unknown
    init_acc_bias_std: float = 0.1  # m/s^2
    init_gyro_bias_std: float = 1e-2  # rad/s


@dataclass
class OdometryConfig:
    active: bool = False
    init_orientation_std: float = 1e-2  # rad, heading defines the frame


@dataclass
class PriorConfig:
    active: bool = False
    height: float = 0.0  # Up coordinate substituted into the first position (m)
    sqrt_information: np.ndarray = field(
        default_factory=lambda: np.array([0.1, 0.1, 1.0])
    )  # 1/m, east north up


@dataclass
class SolverConfig:
    max_iterations: int = 100
    bounded_iterations: int = 5
    relative_error_tol: float = 1e-6
    absolute_error_tol: float = 1e-8
    full_solve_period: float = FULL_SOLVE_PERIOD
    window_length: Optional[float] = None  # None keeps every state free (smoother)
    estimate_covariance: bool = False


@dataclass
class EstimatorConfig:
    gnss: GnssConfig = field(default_factory=GnssConfig)
    imu: ImuConfig = field(default_factory=ImuConfig)
    odometry: OdometryConfig = field(default_factory=OdometryConfig)
    prior: PriorConfig = field(default_factory=PriorConfig)
    solver: SolverConfig = field(default_factory=SolverConfig)
    prediction_tick: float = 1.0  # Step length when no GNSS stream defines steps
    initial_position_std: float = FALLBACK_POSITION_STD_M

    def active_kinds(self) -> List[SensorKind]:
        kinds: List[SensorKind] = []
        if self.gnss.active:
            kinds.append(self.gnss.kind)
        if self.imu.active:
            kinds.append(SensorKind.IMU)
        if self.odometry.active:
            kinds.append(SensorKind.ODOMETRY)
        if self.prior.active:
            kinds.append(SensorKind.PRIOR)
        return kinds

    def step_kinds(self) -> List[SensorKind]:
        """Sensor kinds whose timestamps define the estimation steps."""
        return [kind for kind in self.active_kinds() if kind in GNSS_KINDS]

    def validate(self) -> None:
        if self.gnss.kind not in GNSS_KINDS:
            raise ValueError(f"{self.gnss.kind.name} is not a GNSS measurement kind")
        if not any(
            (self.gnss.active, self.imu.active, self.odometry.active)
        ):
            raise ValueError("At least one of GNSS, IMU or odometry must be active")
        if self.prediction_tick <= 0.0:
            raise ValueError("prediction_tick must be positive")
        if self.gnss.init_window_s < 0.0 or self.imu.init_window_s < 0.0:
            raise ValueError("Initialization windows must not be negative")
        if self.solver.window_length is not None and self.solver.window_length <= 0.0:
            raise ValueError("window_length must be positive")
        if self.solver.max_iterations < 1 or self.solver.bounded_iterations < 1:
            raise ValueError("Solver iteration limits must be at least 1")
        if self.solver.full_solve_period <= 0.0:
            raise ValueError("full_solve_period must be positive")
        if np.asarray(self.prior.sqrt_information).shape != (3,):
            raise ValueError("Prior sqrt_information must have three entries")
        if np.any(np.asarray(self.prior.sqrt_information) <= 0.0):
            raise ValueError("Prior sqrt_information must be positive")
