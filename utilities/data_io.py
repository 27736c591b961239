"""Whitespace text formats for measurement input and estimation output."""

from __future__ import annotations

import logging
from dataclasses import asdict
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

import numpy as np
import pandas as pd

from utilities.measurements import Measurement, SensorDataSet, SensorKind
from window_fgo.errors import DataError
from window_fgo.state_store import Trajectory

_SATELLITE_KEYS = ("sat_x", "sat_y", "sat_z")


def _parse_metadata_value(value: str) -> Any:
    try:
        return float(value)
    except ValueError:
        return value


def parse_measurement_line(line: str, line_number: int = 0) -> Measurement:
    """Parse ``<kind> <t> <n> <mean x n> <cov diagonal x n> [key=value ...]``."""

    parts = line.split()
    if len(parts) < 3:
        raise DataError(f"Line {line_number}: expected kind, timestamp and size")

    kind = SensorKind.from_token(parts[0])
    try:
        timestamp = float(parts[1])
        size = int(parts[2])
    except ValueError:
        raise DataError(f"Line {line_number}: malformed timestamp or size") from None
    if size < 1:
        raise DataError(f"Line {line_number}: measurement size must be positive")

    numbers = parts[3 : 3 + 2 * size]
    if len(numbers) < 2 * size or any("=" in token for token in numbers):
        raise DataError(
            f"Line {line_number}: expected {size} mean and {size} covariance values"
        )
    try:
        values = np.array([float(token) for token in numbers])
    except ValueError:
        raise DataError(f"Line {line_number}: non-numeric mean or covariance") from None

    metadata: Dict[str, Any] = {}
    for token in parts[3 + 2 * size :]:
        key, sep, value = token.partition("=")
        if not sep or not key:
            raise DataError(f"Line {line_number}: expected key=value, got '{token}'")
        metadata[key] = _parse_metadata_value(value)

    if kind is SensorKind.PSEUDORANGE:
        missing = [key for key in _SATELLITE_KEYS if key not in metadata]
        if missing:
            raise DataError(
                f"Line {line_number}: pseudorange without {', '.join(missing)}"
            )
        if any(isinstance(metadata[key], str) for key in _SATELLITE_KEYS):
            raise DataError(f"Line {line_number}: non-numeric satellite position")

    try:
        return Measurement(
            kind=kind,
            timestamp=timestamp,
            mean=values[:size],
            covariance=np.diag(values[size:]),
            metadata=metadata,
        )
    except ValueError as exc:
        raise DataError(f"Line {line_number}: {exc}") from None


def parse_sensor_data(
    file_path: str | Path, logger: Optional[logging.Logger] = None
) -> SensorDataSet:
    """Read a measurement file into a :class:`SensorDataSet`."""

    logger = logger or logging.getLogger(__name__)
    data = SensorDataSet()
    with open(file_path, "r") as f:
        for line_number, line in enumerate(f, start=1):
            if line.startswith("#") or not line.strip():
                continue  # Skip comments and empty lines
            data.add(parse_measurement_line(line, line_number))

    logger.info(
        "Loaded %d measurements from %s (%s)",
        data.count(),
        file_path,
        ", ".join(f"{kind.token}={data.count(kind)}" for kind in data.kinds()),
    )
    return data


def trajectory_to_dataframe(trajectory: Trajectory, state_name: str) -> pd.DataFrame:
    """One row per ``state_name`` entry: timestamp, mean and std columns."""

    states = trajectory.get_all(state_name)
    rows: List[Dict[str, Any]] = []
    for state in states:
        row: Dict[str, Any] = {"timestamp": state.timestamp, "constant": state.constant}
        for idx, value in enumerate(state.mean):
            row[f"{state_name}_{idx}"] = float(value)
        if state.covariance is not None:
            for idx, value in enumerate(np.sqrt(np.diag(state.covariance))):
                row[f"{state_name}_{idx}_std"] = float(value)
        rows.append(row)
    return pd.DataFrame(rows)


def write_state_data(
    file_path: str | Path, state_name: str, trajectory: Trajectory
) -> int:
    """Write ``<state_name> <t> <mean...> [<cov diagonal...>]`` lines.

    Returns the number of written states.
    """

    output_path = Path(file_path)
    output_path.parent.mkdir(parents=True, exist_ok=True)
    states = trajectory.get_all(state_name)
    with open(output_path, "w") as f:
        for state in states:
            fields = [state_name, f"{state.timestamp:.9f}"]
            fields.extend(f"{value:.9f}" for value in state.mean)
            if state.covariance is not None:
                fields.extend(f"{value:.9e}" for value in np.diag(state.covariance))
            f.write(" ".join(fields) + "\n")
    return len(states)


def write_summaries(file_path: str | Path, summaries: Sequence[Any]) -> pd.DataFrame:
    """Write per-step solver summaries (dataclasses) as CSV."""

    output_path = Path(file_path)
    output_path.parent.mkdir(parents=True, exist_ok=True)
    frame = pd.DataFrame([asdict(summary) for summary in summaries])
    frame.to_csv(output_path, index=False)
    return frame


class FileResultSink:
    """Writes ``<output><suffix>.<state_name>.txt`` files next to ``output_path``."""

    def __init__(
        self, output_path: str | Path, logger: Optional[logging.Logger] = None
    ) -> None:
        self.output_path = Path(output_path)
        self.logger = logger or logging.getLogger(__name__)
        self.written: List[Path] = []

    def path_for(self, state_name: str, suffix: str = "") -> Path:
        stem = self.output_path.with_suffix("")
        return stem.with_name(f"{stem.name}{suffix}.{state_name}.txt")

    def write(self, trajectory: Trajectory, state_name: str, suffix: str = "") -> None:
        path = self.path_for(state_name, suffix)
        count = write_state_data(path, state_name, trajectory)
        self.written.append(path)
        self.logger.info("Wrote %d %s states to %s", count, state_name, path)
