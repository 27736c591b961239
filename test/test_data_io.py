import os
import sys
import tempfile
import unittest
from pathlib import Path

import numpy as np
import pandas as pd

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

from utilities.data_io import (
    FileResultSink,
    parse_measurement_line,
    parse_sensor_data,
    trajectory_to_dataframe,
    write_state_data,
    write_summaries,
)
from utilities.measurements import SensorKind
from window_fgo.errors import DataError
from window_fgo.estimation_loop import IterationSummary
from window_fgo.state_store import Trajectory
from window_fgo.utils import POSITION

SAMPLE_FILE = """\
# kind t n mean... cov...
gnss_position 0.0 3 -742000.0 -5462000.0 3198000.0 0.01 0.01 0.04

pseudorange 0.0 1 2.1e7 25.0 sat_x=1.0e7 sat_y=-1.5e7 sat_z=1.8e7 sat_id=G05
imu 0.01 6 0.1 0.0 9.8 0.0 0.0 0.01 1e-4 1e-4 1e-4 1e-6 1e-6 1e-6
"""


class TestParseSensorData(unittest.TestCase):
    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.path = Path(self.tmp.name) / "input.txt"

    def tearDown(self):
        self.tmp.cleanup()

    def test_parse_sample_file(self):
        self.path.write_text(SAMPLE_FILE)
        data = parse_sensor_data(self.path)

        self.assertEqual(data.count(), 3)
        fix = data.get(SensorKind.GNSS_POSITION)[0]
        np.testing.assert_allclose(fix.covariance, np.diag([0.01, 0.01, 0.04]))

        pseudorange = data.get(SensorKind.PSEUDORANGE)[0]
        self.assertEqual(pseudorange.metadata["sat_id"], "G05")
        self.assertEqual(pseudorange.metadata["sat_z"], 1.8e7)

        imu = data.get(SensorKind.IMU)[0]
        self.assertEqual(imu.dim, 6)
        self.assertAlmostEqual(imu.timestamp, 0.01)

    def test_unknown_kind_reports_line(self):
        self.path.write_text("# header\nlidar 0.0 1 1.0 1.0\n")
        with self.assertRaises(DataError) as ctx:
            parse_sensor_data(self.path)
        self.assertIn("lidar", str(ctx.exception))

    def test_short_line_reports_line_number(self):
        self.path.write_text("# header\n\ngnss_position 0.0 3 1.0 2.0 3.0 0.1\n")
        with self.assertRaises(DataError) as ctx:
            parse_sensor_data(self.path)
        self.assertIn("Line 3", str(ctx.exception))

    def test_pseudorange_requires_satellite_position(self):
        self.path.write_text(
            "# header\n"
            "pseudorange 0.0 1 2.0e7 1.0 sat_x=1.0e7 sat_y=2.0e7 sat_id=G01\n"
        )
        with self.assertRaises(DataError) as ctx:
            parse_sensor_data(self.path)
        self.assertIn("Line 2", str(ctx.exception))
        self.assertIn("sat_z", str(ctx.exception))

        with self.assertRaises(DataError):
            parse_measurement_line(
                "pseudorange 0.0 1 2.0e7 1.0 sat_x=a sat_y=0.0 sat_z=0.0", 1
            )

    def test_malformed_values(self):
        for line in (
            "imu zero 1 1.0 1.0",
            "imu 0.0 0 ",
            "imu 0.0 1 x 1.0",
            "imu 0.0 1 1.0 1.0 flag",
            "imu 0.0",
        ):
            with self.assertRaises(DataError):
                parse_measurement_line(line, 1)


class TestWriters(unittest.TestCase):
    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.root = Path(self.tmp.name)
        self.trajectory = Trajectory()
        self.trajectory.create(POSITION, 0.0, np.array([1.0, 2.0, 3.0]))
        state = self.trajectory.create(POSITION, 1.0, np.array([4.0, 5.0, 6.0]))
        state.covariance = np.diag([0.25, 0.25, 1.0])

    def tearDown(self):
        self.tmp.cleanup()

    def test_write_state_data(self):
        path = self.root / "out" / "positions.txt"
        count = write_state_data(path, POSITION, self.trajectory)

        self.assertEqual(count, 2)
        lines = path.read_text().splitlines()
        self.assertEqual(len(lines), 2)
        first = lines[0].split()
        self.assertEqual(first[0], POSITION)
        self.assertEqual(len(first), 5)
        second = lines[1].split()
        self.assertEqual(len(second), 8)
        self.assertAlmostEqual(float(second[-1]), 1.0)

    def test_trajectory_to_dataframe(self):
        frame = trajectory_to_dataframe(self.trajectory, POSITION)
        self.assertEqual(list(frame["timestamp"]), [0.0, 1.0])
        self.assertAlmostEqual(frame.loc[1, "position_0_std"], 0.5)
        self.assertTrue(pd.isna(frame.loc[0, "position_0_std"]))

    def test_file_result_sink_paths(self):
        sink = FileResultSink(self.root / "run" / "trajectory")
        sink.write(self.trajectory, POSITION, suffix="_local")
        sink.write(self.trajectory, POSITION)

        self.assertEqual(
            [p.name for p in sink.written],
            ["trajectory_local.position.txt", "trajectory.position.txt"],
        )
        for path in sink.written:
            self.assertTrue(path.exists())

    def test_write_summaries(self):
        summaries = [
            IterationSummary(
                timestamp=float(t),
                total_duration_s=0.01,
                solver_duration_s=0.005,
                iterations=3,
                initial_error=1.0,
                final_error=0.1,
                converged=True,
                full_solve=t == 0,
                num_free=2,
                num_frozen=0,
                num_factors=4,
                progress=t / 2.0,
            )
            for t in range(3)
        ]
        path = self.root / "summary.csv"
        write_summaries(path, summaries)

        frame = pd.read_csv(path)
        self.assertEqual(len(frame), 3)
        self.assertEqual(list(frame["full_solve"]), [True, False, False])
        self.assertIn("solver_duration_s", frame.columns)


if __name__ == "__main__":
    unittest.main()
