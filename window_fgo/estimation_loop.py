"""Time-stepped sliding-window estimation driver.

Each step advances to the next GNSS epoch (or by a fixed tick without GNSS),
lets the motion models predict the new states, attaches the measurements of
that epoch, freezes states that left the window and re-solves. The first
step and every crossing of the full-solve period run a full solve; all other
steps run a bounded one.
"""

from __future__ import annotations

import logging
import math
import time
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Protocol, Tuple

import numpy as np
from tqdm import tqdm

from constants.parameters import FORCED_SOLVE_SLACK, EstimatorConfig
from sensor_models.base import StepContext
from sensor_models.registry import SensorModel, build_model_registry
from utilities.frame_converter import TangentPlaneConverter
from utilities.measurements import MOTION_KINDS, SensorDataSet, SensorKind
from window_fgo.errors import DataError
from window_fgo.factor_graph import FactorGraph, SolveReport
from window_fgo.initialization import initialize_graph
from window_fgo.logger_utils import log_step_debug
from window_fgo.state_store import Trajectory
from window_fgo.utils import POSITION


class ResultSink(Protocol):
    def write(self, trajectory: Trajectory, state_name: str, suffix: str = "") -> None:
        ...


class CancelEvent(Protocol):
    def is_set(self) -> bool:
        ...


@dataclass
class IterationSummary:
    timestamp: float
    total_duration_s: float
    solver_duration_s: float
    iterations: int
    initial_error: float
    final_error: float
    converged: bool
    full_solve: bool
    num_free: int
    num_frozen: int
    num_factors: int
    progress: float
    final_solve_duration_s: float = 0.0


@dataclass
class EstimationResult:
    trajectory: Trajectory
    summaries: List[IterationSummary] = field(default_factory=list)
    local_positions: Optional[Trajectory] = None
    anchor_ecef: Optional[np.ndarray] = None
    cancelled: bool = False


class SlidingWindowEstimator:
    """Runs the estimation loop over a :class:`SensorDataSet`."""

    def __init__(
        self,
        config: EstimatorConfig,
        logger: Optional[logging.Logger] = None,
        show_progress: bool = False,
    ) -> None:
        self.config = config
        self.logger = logger or logging.getLogger(__name__)
        self.show_progress = show_progress

    def run(
        self,
        data: SensorDataSet,
        *,
        result_sink: Optional[ResultSink] = None,
        cancel_event: Optional[CancelEvent] = None,
    ) -> EstimationResult:
        """Estimate the trajectory described by ``data``.

        Raises:
            DataError: if the data set is empty or no active sensor provides
                a first and last timestamp.
        """

        config = self.config
        config.validate()
        if data.is_empty():
            raise DataError("Measurement source is empty")

        step_kinds, t_first, t_last = self._time_span(data)
        tick_mode = not any(kind in config.step_kinds() for kind in step_kinds)
        self.logger.info(
            "Estimating from t=%.3f to t=%.3f, steps from %s",
            t_first,
            t_last,
            "fixed %.3f s tick" % config.prediction_tick
            if tick_mode
            else ", ".join(kind.name for kind in step_kinds),
        )

        graph = FactorGraph(self.logger)
        converter = TangentPlaneConverter(self.logger)
        init = initialize_graph(graph, data, config, converter, t_first, self.logger)
        models = build_model_registry(config, init.gravity, self.logger)

        result = EstimationResult(trajectory=Trajectory(), anchor_ecef=init.anchor_ecef)
        span = t_last - t_first
        t_old = t_first - 1.0
        t_now = t_first

        progress_bar = None
        if self.show_progress:
            progress_bar = tqdm(total=max(span, 0.0), desc="Window FGO", unit="s")

        try:
            while True:
                summary = self._step(
                    graph, data, models, converter, t_old, t_now, t_first, t_last
                )
                result.summaries.append(summary)
                result.trajectory.update_from(graph.states)
                if progress_bar is not None:
                    progress_bar.update(t_now - max(t_old, t_first))

                if tick_mode:
                    t_next: Optional[float] = t_now + config.prediction_tick
                else:
                    t_next = self._next_timestamp(data, step_kinds, t_now)
                if t_next is None or t_next > t_last:
                    break

                if cancel_event is not None and cancel_event.is_set():
                    self.logger.warning("Estimation cancelled after t=%.3f", t_now)
                    result.cancelled = True
                    break
                t_old, t_now = t_now, t_next
        finally:
            if progress_bar is not None:
                progress_bar.close()

        if not result.cancelled:
            start = time.perf_counter()
            report = graph.solve(config.solver, full=True)
            last_step = result.summaries[-1]
            final = self._summarize(graph, t_now, report, start, last_step.progress)
            final.final_solve_duration_s = final.total_duration_s
            final.total_duration_s += last_step.total_duration_s
            result.summaries[-1] = final
            result.trajectory.update_from(graph.states)
            self.logger.info(
                "Final solve: %d iterations, error %.6g -> %.6g",
                report.iterations,
                report.initial_error,
                report.final_error,
            )

        if converter.is_initialized:
            result.local_positions = result.trajectory.subset(POSITION)
            if result_sink is not None:
                result_sink.write(result.local_positions, POSITION, suffix="_local")
            converter.convert_all_states_to_global(result.trajectory, POSITION)

        return result

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _step(
        self,
        graph: FactorGraph,
        data: SensorDataSet,
        models: Dict[SensorKind, SensorModel],
        converter: TangentPlaneConverter,
        t_old: float,
        t_now: float,
        t_first: float,
        t_last: float,
    ) -> IterationSummary:
        start = time.perf_counter()
        config = self.config
        step = StepContext(t_old=t_old, t_now=t_now, t_first=t_first, converter=converter)

        if not step.is_first:
            for kind in MOTION_KINDS:
                model = models.get(kind)
                if model is not None:
                    graph.apply(model.predict(graph, data, step))

        for kind in (config.gnss.kind, SensorKind.PRIOR):
            model = models.get(kind)
            if model is not None:
                graph.apply(model.measure(graph, data, step))

        if step.is_first:
            graph.solve(config.solver, full=True)

        if config.solver.window_length is not None:
            graph.freeze(config.solver.window_length, t_now)

        full = self._full_solve_due(t_old, t_now)
        report = graph.solve(config.solver, full=full)

        span = t_last - t_first
        progress = 1.0 if span <= 0 else (t_now - t_first) / span
        summary = self._summarize(graph, t_now, report, start, progress)
        log_step_debug(self.logger, graph, t_now, report, progress)
        return summary

    def _full_solve_due(self, t_old: float, t_now: float) -> bool:
        period = self.config.solver.full_solve_period
        return math.fmod(t_now, period) < (t_now - t_old) * FORCED_SOLVE_SLACK

    @staticmethod
    def _summarize(
        graph: FactorGraph,
        t_now: float,
        report: SolveReport,
        start: float,
        progress: float,
    ) -> IterationSummary:
        return IterationSummary(
            timestamp=t_now,
            total_duration_s=time.perf_counter() - start,
            solver_duration_s=report.duration_s,
            iterations=report.iterations,
            initial_error=report.initial_error,
            final_error=report.final_error,
            converged=report.converged,
            full_solve=report.full,
            num_free=report.num_free,
            num_frozen=report.num_frozen,
            num_factors=report.num_factors,
            progress=progress,
        )

    def _time_span(
        self, data: SensorDataSet
    ) -> Tuple[List[SensorKind], float, float]:
        """Kinds defining the steps and their first and last timestamps."""

        kinds = [kind for kind in self.config.step_kinds() if data.has(kind)]
        if not kinds:
            kinds = [
                kind
                for kind in self.config.active_kinds()
                if kind != SensorKind.PRIOR and data.has(kind)
            ]
        if not kinds:
            raise DataError(
                "Cannot determine the first and last timestamp: "
                "no active sensor has measurements"
            )
        t_first = min(data.earliest(kind) for kind in kinds)
        t_last = max(data.latest(kind) for kind in kinds)
        return kinds, t_first, t_last

    @staticmethod
    def _next_timestamp(
        data: SensorDataSet, kinds: List[SensorKind], t_now: float
    ) -> Optional[float]:
        candidates = [data.next_timestamp(kind, t_now) for kind in kinds]
        candidates = [t for t in candidates if t is not None]
        return min(candidates) if candidates else None
