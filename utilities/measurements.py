"""Measurement containers shared by the resampler, the sensor models and I/O."""

from __future__ import annotations

import bisect
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterable, Iterator, List, Optional

import numpy as np

from window_fgo.errors import DataError


class SensorKind(Enum):
    GNSS_POSITION = 1
    PSEUDORANGE = 2
    IMU = 3
    ODOMETRY = 4
    PRIOR = 5

    @property
    def token(self) -> str:
        """Lower-case name used in data files."""
        return self.name.lower()

    @classmethod
    def from_token(cls, token: str) -> "SensorKind":
        try:
            return cls[token.strip().upper()]
        except KeyError:
            raise DataError(f"Unknown sensor kind '{token}'") from None


GNSS_KINDS = (SensorKind.GNSS_POSITION, SensorKind.PSEUDORANGE)
MOTION_KINDS = (SensorKind.IMU, SensorKind.ODOMETRY)


@dataclass
class Measurement:
    """A single time-stamped measurement with its uncertainty.

    ``covariance`` is always stored as a square matrix matching ``mean``.
    ``metadata`` carries auxiliary values that are not averaged, e.g. the
    satellite position of a pseudorange.
    """

    kind: SensorKind
    timestamp: float
    mean: np.ndarray
    covariance: np.ndarray
    metadata: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        self.timestamp = float(self.timestamp)
        self.mean = np.atleast_1d(np.asarray(self.mean, dtype=float))
        cov = np.asarray(self.covariance, dtype=float)
        if cov.ndim < 2:
            # scalar or diagonal given
            cov = np.diag(np.broadcast_to(np.atleast_1d(cov), self.mean.shape))
        if cov.shape != (self.mean.size, self.mean.size):
            raise ValueError(
                f"Covariance shape {cov.shape} does not match mean of size {self.mean.size}"
            )
        self.covariance = cov

    @property
    def dim(self) -> int:
        return self.mean.size

    @property
    def information(self) -> np.ndarray:
        return np.linalg.inv(self.covariance)

    @property
    def std(self) -> np.ndarray:
        return np.sqrt(np.diag(self.covariance))

    def copy(self) -> "Measurement":
        return Measurement(
            kind=self.kind,
            timestamp=self.timestamp,
            mean=self.mean.copy(),
            covariance=self.covariance.copy(),
            metadata=dict(self.metadata),
        )


class SensorDataSet:
    """Time-ordered measurement streams, one per sensor kind."""

    _TIME_TOL = 1e-9

    def __init__(self, measurements: Optional[Iterable[Measurement]] = None) -> None:
        self._streams: Dict[SensorKind, List[Measurement]] = {}
        self._times: Dict[SensorKind, List[float]] = {}
        if measurements is not None:
            for measurement in measurements:
                self.add(measurement)

    def add(self, measurement: Measurement) -> None:
        stream = self._streams.setdefault(measurement.kind, [])
        times = self._times.setdefault(measurement.kind, [])
        idx = bisect.bisect_right(times, measurement.timestamp)
        stream.insert(idx, measurement)
        times.insert(idx, measurement.timestamp)

    def set_stream(self, kind: SensorKind, measurements: Iterable[Measurement]) -> None:
        """Replace the stream of ``kind`` (e.g. with a resampled version)."""
        self._streams.pop(kind, None)
        self._times.pop(kind, None)
        for measurement in measurements:
            if measurement.kind != kind:
                raise ValueError(
                    f"Measurement of kind {measurement.kind.name} in {kind.name} stream"
                )
            self.add(measurement)

    def kinds(self) -> List[SensorKind]:
        return [kind for kind, stream in self._streams.items() if stream]

    def has(self, kind: SensorKind) -> bool:
        return bool(self._streams.get(kind))

    def is_empty(self) -> bool:
        return not self.kinds()

    def count(self, kind: Optional[SensorKind] = None) -> int:
        if kind is None:
            return sum(len(stream) for stream in self._streams.values())
        return len(self._streams.get(kind, []))

    def get(self, kind: SensorKind) -> List[Measurement]:
        return list(self._streams.get(kind, []))

    def __iter__(self) -> Iterator[Measurement]:
        for stream in self._streams.values():
            yield from stream

    def earliest(self, kind: SensorKind) -> float:
        times = self._times.get(kind)
        if not times:
            raise DataError(f"No {kind.name} measurements available")
        return times[0]

    def latest(self, kind: SensorKind) -> float:
        times = self._times.get(kind)
        if not times:
            raise DataError(f"No {kind.name} measurements available")
        return times[-1]

    def between(
        self, kind: SensorKind, t_start: float, t_end: float
    ) -> List[Measurement]:
        """Measurements with ``t_start < timestamp <= t_end``."""
        times = self._times.get(kind, [])
        lo = bisect.bisect_right(times, t_start + self._TIME_TOL)
        hi = bisect.bisect_right(times, t_end + self._TIME_TOL)
        return self._streams[kind][lo:hi] if hi > lo else []

    def within(
        self, kind: SensorKind, t_start: float, t_end: float
    ) -> List[Measurement]:
        """Measurements with ``t_start <= timestamp <= t_end``."""
        times = self._times.get(kind, [])
        lo = bisect.bisect_left(times, t_start - self._TIME_TOL)
        hi = bisect.bisect_right(times, t_end + self._TIME_TOL)
        return self._streams[kind][lo:hi] if hi > lo else []

    def at(self, kind: SensorKind, timestamp: float) -> List[Measurement]:
        return self.within(kind, timestamp, timestamp)

    def latest_before(
        self, kind: SensorKind, timestamp: float
    ) -> Optional[Measurement]:
        """Last measurement with ``timestamp`` at or before the given time."""
        times = self._times.get(kind, [])
        idx = bisect.bisect_right(times, timestamp + self._TIME_TOL)
        if idx == 0:
            return None
        return self._streams[kind][idx - 1]

    def next_timestamp(self, kind: SensorKind, timestamp: float) -> Optional[float]:
        """First timestamp strictly after ``timestamp``, if any."""
        times = self._times.get(kind, [])
        idx = bisect.bisect_right(times, timestamp + self._TIME_TOL)
        if idx >= len(times):
            return None
        return times[idx]
