"""Structured logging utilities for debugging estimation steps."""

from __future__ import annotations

import logging
from typing import Optional

import numpy as np

from window_fgo.factor_graph import FactorGraph, SolveReport
from window_fgo.utils import ORIENTATION, POSITION, VELOCITY


def _fmt(value: Optional[float], fmt: str = "{:.4f}") -> str:
    return fmt.format(value) if value is not None and np.isfinite(value) else "-"


def _std(covariance: Optional[np.ndarray], size: int) -> np.ndarray:
    if covariance is None or covariance.shape[0] < size:
        return np.full(size, np.nan)
    return np.sqrt(np.diag(covariance)[:size])


def log_step_debug(
    logger: logging.Logger,
    graph: FactorGraph,
    t_now: float,
    report: SolveReport,
    progress: float,
) -> None:
    """Emit the solve summary and latest navigation state of a step."""

    if logger is None or not logger.isEnabledFor(logging.INFO):
        return

    position = graph.states.latest(POSITION, before=t_now)
    velocity = graph.states.latest(VELOCITY, before=t_now)
    heading = graph.states.latest(ORIENTATION, before=t_now)

    pos = np.full(3, np.nan) if position is None else position.mean
    pos_std = _std(None if position is None else position.covariance, 3)
    vel = np.full(3, np.nan) if velocity is None else velocity.mean
    yaw_deg = np.nan if heading is None else float(np.degrees(heading.mean[0]))

    logger.info(
        "Step t=%.3f (%5.1f%%) %s solve: iters=%d err=%s->%s converged=%s "
        "free=%d frozen=%d factors=%d | pos=[%.3f %.3f %.3f] m (std=[%s %s %s]) "
        "vel=[%.3f %.3f %.3f] m/s yaw=%s deg",
        t_now,
        100.0 * progress,
        "full" if report.full else "bounded",
        report.iterations,
        _fmt(report.initial_error, "{:.4g}"),
        _fmt(report.final_error, "{:.4g}"),
        report.converged,
        report.num_free,
        report.num_frozen,
        report.num_factors,
        pos[0],
        pos[1],
        pos[2],
        _fmt(pos_std[0]),
        _fmt(pos_std[1]),
        _fmt(pos_std[2]),
        vel[0],
        vel[1],
        vel[2],
        _fmt(yaw_deg, "{:.2f}"),
    )
