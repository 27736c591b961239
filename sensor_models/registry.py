"""Maps every sensor kind to the provider that models it."""

from __future__ import annotations

import logging
from typing import Callable, Dict, Optional, Union

from constants.parameters import EstimatorConfig
from sensor_models.base import MeasurementModel, MotionModel
from sensor_models.gnss_models import GnssPositionModel, PseudorangeModel
from sensor_models.imu_models import ImuModel
from sensor_models.odometry_models import OdometryModel
from sensor_models.prior_models import PositionPriorModel
from utilities.measurements import SensorKind

SensorModel = Union[MotionModel, MeasurementModel]
ModelFactory = Callable[[EstimatorConfig, float, logging.Logger], SensorModel]

MODEL_FACTORIES: Dict[SensorKind, ModelFactory] = {
    SensorKind.GNSS_POSITION: lambda cfg, gravity, logger: GnssPositionModel(cfg.gnss),
    SensorKind.PSEUDORANGE: lambda cfg, gravity, logger: PseudorangeModel(cfg.gnss),
    SensorKind.IMU: lambda cfg, gravity, logger: ImuModel(cfg.imu, gravity, logger),
    SensorKind.ODOMETRY: lambda cfg, gravity, logger: OdometryModel(cfg.odometry, logger),
    SensorKind.PRIOR: lambda cfg, gravity, logger: PositionPriorModel(cfg.prior),
}

_missing = set(SensorKind) - set(MODEL_FACTORIES)
if _missing:
    raise RuntimeError(
        "No sensor model for " + ", ".join(sorted(kind.name for kind in _missing))
    )


def build_model_registry(
    config: EstimatorConfig,
    gravity: float,
    logger: Optional[logging.Logger] = None,
) -> Dict[SensorKind, SensorModel]:
    """Instantiate the providers of the active sensor kinds."""
    logger = logger or logging.getLogger(__name__)
    return {
        kind: MODEL_FACTORIES[kind](config, gravity, logger)
        for kind in config.active_kinds()
    }
