"""Down-sampling of high-rate measurement streams by information fusion."""

from __future__ import annotations

import logging
from typing import List, Optional, Sequence

import numpy as np

from utilities.measurements import Measurement, SensorDataSet, SensorKind
from window_fgo.errors import DataError


def average_measurement(measurements: Sequence[Measurement]) -> Measurement:
    """Fuse a window of measurements into one.

    Timestamp and mean are plain arithmetic averages, the covariance is the
    inverse of the summed information matrices. Metadata is taken from the
    last member. A single measurement is returned unchanged.
    """

    if not measurements:
        raise DataError("There is no measurement to average")

    if len(measurements) == 1:
        return measurements[0]

    count = len(measurements)
    time_sum = 0.0
    mean_sum = np.zeros_like(measurements[0].mean)
    info_sum = np.zeros_like(measurements[0].covariance)
    for meas in measurements:
        time_sum += meas.timestamp
        mean_sum += meas.mean
        info_sum += np.linalg.inv(meas.covariance)

    last = measurements[-1]
    return Measurement(
        kind=last.kind,
        timestamp=time_sum / count,
        mean=mean_sum / count,
        covariance=np.linalg.inv(info_sum),
        metadata=dict(last.metadata),
    )


def sample_measurements_down(
    measurements: Sequence[Measurement],
    sample_time: float,
) -> List[Measurement]:
    """Aggregate a time-ordered stream into buckets of ``sample_time`` length.

    The first bucket starts at the first timestamp and every later bucket
    boundary is a fixed multiple of ``sample_time`` past it. A bucket is closed
    as soon as a measurement at or beyond its end is consumed; that
    measurement opens the next bucket.
    """

    if not measurements:
        raise DataError("There is no measurement to resample")
    if sample_time <= 0.0:
        raise ValueError("sample_time must be positive")

    output: List[Measurement] = []
    time_next = measurements[0].timestamp + sample_time

    window: List[Measurement] = []
    for meas in measurements:
        if window and meas.timestamp >= time_next:
            output.append(average_measurement(window))
            window = []
            time_next += sample_time
        window.append(meas)

    output.append(average_measurement(window))
    return output


def resample_data_set(
    data: SensorDataSet,
    kind: SensorKind,
    sample_time: float,
    logger: Optional[logging.Logger] = None,
) -> SensorDataSet:
    """Replace the ``kind`` stream of ``data`` with its down-sampled version."""

    logger = logger or logging.getLogger(__name__)
    original = data.get(kind)
    resampled = sample_measurements_down(original, sample_time)
    data.set_stream(kind, resampled)
    logger.info(
        "Resampled %s from %d to %d measurements (bucket %.3f s)",
        kind.name,
        len(original),
        len(resampled),
        sample_time,
    )
    return data
