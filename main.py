import argparse
import logging
import sys
from pathlib import Path
from typing import List, Optional, Tuple

import numpy as np

import constants.parameters as params
from plotting.trajectory_plots import plot_solver_timing, plot_trajectory
from utilities.data_io import FileResultSink, parse_sensor_data, write_summaries
from utilities.measurements import SensorKind
from utilities.resampling import resample_data_set
from window_fgo.errors import DataError
from window_fgo.estimation_loop import SlidingWindowEstimator
from window_fgo.utils import CLOCK_ERROR, IMU_BIAS, ORIENTATION, POSITION, VELOCITY

LOG_PATH = Path("logs/estimator_debug.log")

_GNSS_CHOICES = {
    "none": None,
    "position": SensorKind.GNSS_POSITION,
    "pseudorange": SensorKind.PSEUDORANGE,
}


def _configure_logging(verbose: bool) -> None:
    LOG_PATH.parent.mkdir(parents=True, exist_ok=True)
    handlers: List[logging.Handler] = [logging.FileHandler(LOG_PATH, mode="w")]
    if verbose:
        handlers.append(logging.StreamHandler())
    logging.basicConfig(
        level=logging.DEBUG,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        handlers=handlers,
    )


def _parse_resample(value: str) -> Tuple[SensorKind, float]:
    kind_token, sep, seconds = value.partition("=")
    if not sep:
        raise argparse.ArgumentTypeError("expected KIND=SECONDS")
    try:
        kind = SensorKind.from_token(kind_token)
        sample_time = float(seconds)
    except (DataError, ValueError) as exc:
        raise argparse.ArgumentTypeError(str(exc)) from None
    if sample_time <= 0.0:
        raise argparse.ArgumentTypeError("resampling period must be positive")
    return kind, sample_time


def build_arg_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Sliding-window factor graph estimator for GNSS, IMU and odometry"
    )
    parser.add_argument("--input", required=True, help="measurement file")
    parser.add_argument(
        "--output", default="output/trajectory", help="output path prefix"
    )
    parser.add_argument("--gnss", choices=sorted(_GNSS_CHOICES), default="position")
    parser.add_argument("--imu", action="store_true", help="use IMU measurements")
    parser.add_argument("--odometry", action="store_true", help="use odometry")
    parser.add_argument(
        "--prior",
        nargs=4,
        type=float,
        metavar=("HEIGHT", "SX", "SY", "SZ"),
        help="first position prior: height and square-root information",
    )
    parser.add_argument(
        "--window", type=float, help="sliding window length in seconds"
    )
    parser.add_argument(
        "--resample",
        type=_parse_resample,
        action="append",
        default=[],
        metavar="KIND=SECONDS",
        help="down-sample a measurement stream before estimation",
    )
    parser.add_argument("--plot", action="store_true", help="write HTML plots")
    parser.add_argument("--progress", action="store_true", help="show progress bar")
    parser.add_argument("--verbose", action="store_true", help="log to console")
    return parser


def build_config(args: argparse.Namespace) -> params.EstimatorConfig:
    config = params.EstimatorConfig()
    gnss_kind = _GNSS_CHOICES[args.gnss]
    if gnss_kind is not None:
        config.gnss.active = True
        config.gnss.kind = gnss_kind
    config.imu.active = args.imu
    config.odometry.active = args.odometry
    if args.prior is not None:
        config.prior.active = True
        config.prior.height = args.prior[0]
        config.prior.sqrt_information = np.asarray(args.prior[1:], dtype=float)
    config.solver.window_length = args.window
    return config


def main(argv: Optional[List[str]] = None) -> int:
    args = build_arg_parser().parse_args(argv)
    _configure_logging(args.verbose)
    logger = logging.getLogger("window_fgo")

    config = build_config(args)
    try:
        config.validate()
    except ValueError as exc:
        logger.error("Invalid configuration: %s", exc)
        print(f"Invalid configuration: {exc}", file=sys.stderr)
        return 2

    try:
        data = parse_sensor_data(args.input, logger)
        for kind, sample_time in args.resample:
            if data.has(kind):
                resample_data_set(data, kind, sample_time, logger)
            else:
                logger.warning("No %s data to resample", kind.name)

        sink = FileResultSink(args.output, logger)
        estimator = SlidingWindowEstimator(
            config, logger=logger, show_progress=args.progress
        )
        result = estimator.run(data, result_sink=sink)
    except DataError as exc:
        logger.error("Estimation aborted: %s", exc)
        print(f"Estimation aborted: {exc}", file=sys.stderr)
        return 1

    for state_name in (POSITION, ORIENTATION, VELOCITY, IMU_BIAS, CLOCK_ERROR):
        if result.trajectory.count(state_name):
            sink.write(result.trajectory, state_name)
    summary_path = sink.path_for("summary").with_suffix(".csv")
    write_summaries(summary_path, result.summaries)

    final = result.summaries[-1]
    print(f"Processed {len(result.summaries)} steps.")
    print(
        f"Final solve: {final.iterations} iterations, "
        f"error {final.initial_error:.6g} -> {final.final_error:.6g}"
    )
    print(f"Saved results with prefix {args.output}")

    if args.plot:
        local = (
            result.local_positions
            if result.local_positions is not None
            else result.trajectory
        )
        trajectory_plot = plot_trajectory(
            local, output_html=f"{args.output}_trajectory.html"
        )
        timing_plot = plot_solver_timing(
            result.summaries, output_html=f"{args.output}_solver_timing.html"
        )
        print(f"Saved trajectory plot to {trajectory_plot}")
        print(f"Saved solver timing plot to {timing_plot}")

    return 0


if __name__ == "__main__":
    sys.exit(main())
