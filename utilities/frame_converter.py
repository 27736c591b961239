"""Conversion between the global ECEF frame and a local ENU tangent plane."""

from __future__ import annotations

import logging
from typing import Optional, Tuple

import numpy as np
import pymap3d as pm

from constants.common_utils import compute_ecef_enu_rot_mat
from window_fgo.state_store import Trajectory


class TangentPlaneConverter:
    """ECEF <-> ENU mapping around an anchor that is set at most once.

    The anchor is the origin of the local frame. Until it is set the converter
    is inert; :meth:`convert_all_states_to_global` is then a no-op.
    """

    def __init__(self, logger: Optional[logging.Logger] = None) -> None:
        self.logger = logger or logging.getLogger(__name__)
        self._anchor_ecef: Optional[np.ndarray] = None
        self._anchor_lla_rad: Optional[Tuple[float, float, float]] = None
        self._ecef_to_enu: Optional[np.ndarray] = None

    @property
    def is_initialized(self) -> bool:
        return self._anchor_ecef is not None

    @property
    def anchor_ecef(self) -> Optional[np.ndarray]:
        return None if self._anchor_ecef is None else self._anchor_ecef.copy()

    @property
    def anchor_lla_rad(self) -> Optional[Tuple[float, float, float]]:
        return self._anchor_lla_rad

    def initialize(self, anchor_ecef: np.ndarray) -> None:
        if self._anchor_ecef is not None:
            raise RuntimeError("Tangent plane converter is already initialized")

        anchor = np.asarray(anchor_ecef, dtype=float).reshape(3)
        lat_rad, lon_rad, alt_m = pm.ecef2geodetic(
            anchor[0], anchor[1], anchor[2], deg=False
        )
        self._anchor_ecef = anchor
        self._anchor_lla_rad = (float(lat_rad), float(lon_rad), float(alt_m))
        self._ecef_to_enu = compute_ecef_enu_rot_mat(lat_rad, lon_rad)
        self.logger.info(
            "Local frame anchored at lat=%.8f deg lon=%.8f deg h=%.3f m",
            np.degrees(lat_rad),
            np.degrees(lon_rad),
            alt_m,
        )

    def global_to_local(self, pos_ecef_m: np.ndarray) -> np.ndarray:
        self._require_anchor()
        return self._ecef_to_enu @ (np.asarray(pos_ecef_m, dtype=float) - self._anchor_ecef)

    def local_to_global(self, pos_enu_m: np.ndarray) -> np.ndarray:
        self._require_anchor()
        return self._ecef_to_enu.T @ np.asarray(pos_enu_m, dtype=float) + self._anchor_ecef

    def covariance_to_local(self, cov_ecef: np.ndarray) -> np.ndarray:
        self._require_anchor()
        return self._ecef_to_enu @ cov_ecef @ self._ecef_to_enu.T

    def covariance_to_global(self, cov_enu: np.ndarray) -> np.ndarray:
        self._require_anchor()
        return self._ecef_to_enu.T @ cov_enu @ self._ecef_to_enu

    def convert_all_states_to_global(
        self, trajectory: Trajectory, state_name: str
    ) -> int:
        """Rewrite every ``state_name`` entry from ENU to ECEF.

        Returns the number of converted states, zero when the converter has no
        anchor.
        """

        if not self.is_initialized:
            return 0

        converted = 0
        for state in trajectory.get_all(state_name):
            state.mean = self.local_to_global(state.mean)
            if state.covariance is not None:
                state.covariance = self.covariance_to_global(state.covariance)
            converted += 1
        self.logger.debug("Converted %d %s states to ECEF", converted, state_name)
        return converted

    def _require_anchor(self) -> None:
        if self._anchor_ecef is None:
            raise RuntimeError("Tangent plane converter is not initialized")
