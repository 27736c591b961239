"""Plotting helpers for estimated trajectories and solver timing."""

from __future__ import annotations

from pathlib import Path
from typing import Sequence

import plotly.graph_objects as go
from plotly.subplots import make_subplots

from window_fgo.state_store import Trajectory
from window_fgo.utils import POSITION


def _split_by_mask(values: Sequence[float], mask: Sequence[bool]) -> tuple[list, list]:
    """Two copies of ``values`` with None where the mask is False / True."""
    selected = [v if m else None for v, m in zip(values, mask)]
    others = [None if m else v for v, m in zip(values, mask)]
    return selected, others


def plot_trajectory(
    trajectory: Trajectory,
    state_name: str = POSITION,
    *,
    output_html: str | Path = "plotting/trajectory.html",
) -> Path:
    """Plot the estimated trajectory in the local east/north plane.

    States that left the sliding window (frozen) are drawn separately from
    the ones that were still free at the end of the run.
    """

    states = trajectory.get_all(state_name)
    if not states:
        raise ValueError(f"Trajectory holds no '{state_name}' states")

    output_path = Path(output_html)
    output_path.parent.mkdir(parents=True, exist_ok=True)

    east = [float(state.mean[0]) for state in states]
    north = [float(state.mean[1]) for state in states]
    hover_text = [f"t={state.timestamp:.3f}" for state in states]
    frozen = [state.constant for state in states]

    frozen_x, free_x = _split_by_mask(east, frozen)
    frozen_y, free_y = _split_by_mask(north, frozen)

    fig = go.Figure()
    fig.add_trace(
        go.Scatter(
            x=frozen_x,
            y=frozen_y,
            mode="markers+lines",
            name="Estimated (frozen)",
            marker=dict(color="#9467bd", size=6),
            line=dict(color="#9467bd"),
            text=hover_text,
            connectgaps=False,
            hovertemplate="East: %{x:.3f} m<br>North: %{y:.3f} m<extra>%{text}</extra>",
        )
    )
    fig.add_trace(
        go.Scatter(
            x=free_x,
            y=free_y,
            mode="markers+lines",
            name="Estimated (window)",
            marker=dict(color="#1f77b4", size=6),
            line=dict(color="#1f77b4"),
            text=hover_text,
            connectgaps=False,
            hovertemplate="East: %{x:.3f} m<br>North: %{y:.3f} m<extra>%{text}</extra>",
        )
    )

    fig.update_layout(
        title="Estimated Trajectory",
        xaxis_title="East (m)",
        yaxis_title="North (m)",
        template="plotly_white",
        legend=dict(orientation="h", yanchor="bottom", y=1.02, xanchor="right", x=1),
        width=900,
        height=800,
        margin=dict(l=60, r=40, t=80, b=60),
    )
    fig.update_yaxes(scaleanchor="x", scaleratio=1)

    fig.write_html(output_path)
    return output_path


def plot_solver_timing(
    summaries: Sequence,
    *,
    output_html: str | Path = "plotting/solver_timing.html",
) -> Path:
    """Create a 2x1 Plotly figure of solver duration and iterations per step."""

    if not summaries:
        raise ValueError("summaries must not be empty")

    output_path = Path(output_html)
    output_path.parent.mkdir(parents=True, exist_ok=True)

    ts = [summary.timestamp for summary in summaries]
    full_mask = [summary.full_solve for summary in summaries]
    durations_ms = [1e3 * summary.solver_duration_s for summary in summaries]
    iterations = [summary.iterations for summary in summaries]
    full_durations, bounded_durations = _split_by_mask(durations_ms, full_mask)

    fig = make_subplots(
        rows=2,
        cols=1,
        subplot_titles=("Solver Duration", "Solver Iterations"),
        shared_xaxes=True,
    )
    fig.add_trace(
        go.Scatter(
            x=ts,
            y=bounded_durations,
            mode="markers",
            name="Bounded solve",
            marker=dict(color="#1f77b4", size=6),
        ),
        row=1,
        col=1,
    )
    fig.add_trace(
        go.Scatter(
            x=ts,
            y=full_durations,
            mode="markers",
            name="Full solve",
            marker=dict(color="#d62728", size=8, symbol="diamond"),
        ),
        row=1,
        col=1,
    )
    fig.add_trace(
        go.Scatter(
            x=ts, y=iterations, name="Iterations", line=dict(color="#2ca02c")
        ),
        row=2,
        col=1,
    )

    fig.update_xaxes(matches="x")
    fig.update_layout(
        height=800,
        width=1200,
        template="plotly_white",
        legend=dict(orientation="h", yanchor="bottom", y=1.02, xanchor="right", x=1),
        margin=dict(l=50, r=30, t=80, b=50),
        title="Solver Timing vs Time",
    )
    fig.update_yaxes(title_text="Duration (ms)", row=1, col=1)
    fig.update_yaxes(title_text="Iterations", row=2, col=1)
    fig.update_xaxes(title_text="Time (s)", row=2, col=1)

    fig.write_html(output_path)
    return output_path
