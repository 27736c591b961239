import os
import sys
import unittest

import numpy as np

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

from constants.parameters import (
    EstimatorConfig,
    GnssConfig,
    ImuConfig,
    OdometryConfig,
    PriorConfig,
    RobustLoss,
)
from sensor_models.base import MeasurementModel, MotionModel, StepContext, gaussian_noise
from sensor_models.gnss_models import GnssPositionModel, PseudorangeModel
from sensor_models.imu_models import ImuModel, collect_imu_segment, integrate_segment
from sensor_models.odometry_models import OdometryModel
from sensor_models.prior_models import PositionPriorModel
from sensor_models.registry import MODEL_FACTORIES, build_model_registry
from sensor_models.wls_solver import satellite_position, solve_wls_position
from synthetic_data import (
    ANCHOR_ECEF,
    enu_to_ecef,
    imu_sample,
    odometry_twist,
    position_fix,
    pseudoranges,
)
from utilities.frame_converter import TangentPlaneConverter
from utilities.measurements import SensorDataSet, SensorKind
from window_fgo.errors import DataError, UnknownStateError
from window_fgo.factor_graph import FactorGraph, FactorKind
from window_fgo.utils import CLOCK_ERROR, IMU_BIAS, ORIENTATION, POSITION, VELOCITY

GRAVITY = 9.8


def _converter():
    converter = TangentPlaneConverter()
    converter.initialize(ANCHOR_ECEF)
    return converter


def _factor_residual(graph, update, factor):
    """Evaluate ``factor`` at the means of the graph plus the update's guesses."""
    guesses = {(spec.name, spec.timestamp): spec.mean for spec in update.states}
    means = []
    for state_id in factor.state_ids:
        if state_id in guesses:
            means.append(guesses[state_id])
        else:
            means.append(graph.states.get(*state_id).mean)
    return factor.error(means)


class TestGnssPositionModel(unittest.TestCase):
    def test_fix_becomes_local_unary_factor(self):
        data = SensorDataSet([position_fix(1.0, [3.0, -4.0, 1.0])])
        step = StepContext(0.0, 1.0, 0.0, _converter())
        graph = FactorGraph()

        update = GnssPositionModel(GnssConfig(active=True)).measure(graph, data, step)

        self.assertEqual(len(update.states), 1)
        np.testing.assert_allclose(update.states[0].mean, [3.0, -4.0, 1.0], atol=1e-6)
        self.assertEqual(len(update.factors), 1)
        factor = update.factors[0]
        self.assertEqual(factor.kind, FactorKind.GNSS_POSITION)
        np.testing.assert_allclose(
            factor.error([np.array([3.0, -4.0, 2.0])]), [0.0, 0.0, 1.0], atol=1e-6
        )

    def test_no_fix_at_step(self):
        data = SensorDataSet([position_fix(1.0, [0.0, 0.0, 0.0])])
        step = StepContext(1.0, 2.0, 0.0, _converter())
        update = GnssPositionModel(GnssConfig()).measure(FactorGraph(), data, step)
        self.assertFalse(update)

    def test_robust_noise_model(self):
        noise = gaussian_noise(np.eye(3), RobustLoss.HUBER, 1.345)
        self.assertIn("Robust", type(noise).__name__)
        self.assertNotIn("Robust", type(gaussian_noise(np.eye(3))).__name__)


class TestPseudorangeModel(unittest.TestCase):
    def setUp(self):
        self.converter = _converter()
        self.receiver = enu_to_ecef([5.0, 2.0, -1.0])
        self.clock = 30.0
        self.data = SensorDataSet(
            pseudoranges(0.0, self.receiver, self.clock)
            + pseudoranges(1.0, self.receiver, self.clock)
        )
        self.model = PseudorangeModel(GnssConfig(active=True, kind=SensorKind.PSEUDORANGE))

    def test_first_epoch_seeds_clock_from_ranges(self):
        graph = FactorGraph()
        graph.add_state(POSITION, 0.0, np.array([5.0, 2.0, -1.0]))
        step = StepContext(-1.0, 0.0, 0.0, self.converter)

        update = self.model.measure(graph, self.data, step)

        self.assertEqual([spec.name for spec in update.states], [CLOCK_ERROR])
        self.assertAlmostEqual(update.states[0].mean[0], self.clock, places=3)
        self.assertEqual(len(update.factors), 6)
        graph.apply(update)
        for factor in update.factors:
            np.testing.assert_allclose(
                _factor_residual(graph, update, factor), [0.0], atol=1e-3
            )

    def test_later_epoch_adds_clock_random_walk(self):
        graph = FactorGraph()
        graph.add_state(POSITION, 0.0, np.array([5.0, 2.0, -1.0]))
        graph.add_state(CLOCK_ERROR, 0.0, np.array([self.clock]))
        step = StepContext(0.0, 1.0, 0.0, self.converter)

        update = self.model.measure(graph, self.data, step)

        names = sorted(spec.name for spec in update.states)
        self.assertEqual(names, [CLOCK_ERROR, POSITION])
        kinds = [factor.kind for factor in update.factors]
        self.assertEqual(kinds.count(FactorKind.CLOCK_DRIFT), 1)
        self.assertEqual(kinds.count(FactorKind.PSEUDORANGE), 6)
        graph.apply(update)


class TestWlsSolver(unittest.TestCase):
    def test_recovers_position_and_clock(self):
        receiver = enu_to_ecef([12.0, -7.0, 3.0])
        ranges = pseudoranges(0.0, receiver, 250.0)

        ecef, clock = solve_wls_position(ranges)

        np.testing.assert_allclose(ecef, receiver, atol=1e-3)
        self.assertAlmostEqual(clock, 250.0, places=3)

    def test_too_few_satellites(self):
        with self.assertRaises(DataError):
            solve_wls_position(pseudoranges(0.0, ANCHOR_ECEF, 0.0, count=3))

    def test_satellite_position_from_metadata(self):
        meas = pseudoranges(0.0, ANCHOR_ECEF, 0.0)[0]
        sat = satellite_position(meas)
        meas.metadata = {"sat_pos_ecef_m": list(sat)}
        np.testing.assert_array_equal(satellite_position(meas), sat)
        meas.metadata = {}
        with self.assertRaises(DataError):
            satellite_position(meas)
        meas.metadata = {"sat_x": "north", "sat_y": 0.0, "sat_z": 0.0}
        with self.assertRaises(DataError):
            satellite_position(meas)

    def test_degenerate_geometry_is_data_error(self):
        ranges = pseudoranges(0.0, ANCHOR_ECEF, 0.0)
        with self.assertRaises(DataError):
            solve_wls_position(ranges, initial_ecef=satellite_position(ranges[0]))


class TestImuModel(unittest.TestCase):
    def _graph(self, yaw=0.0, velocity=(0.0, 0.0, 0.0)):
        graph = FactorGraph()
        graph.add_state(POSITION, 0.0, np.zeros(3))
        graph.add_state(VELOCITY, 0.0, np.asarray(velocity, dtype=float))
        graph.add_state(ORIENTATION, 0.0, np.array([yaw]))
        graph.add_state(IMU_BIAS, 0.0, np.zeros(6))
        return graph

    def _data(self, acc, gyro, t_end=1.0, rate_hz=10):
        times = np.arange(0.0, t_end + 1e-9, 1.0 / rate_hz)
        return SensorDataSet([imu_sample(t, acc, gyro) for t in times])

    def test_segment_covers_step(self):
        data = self._data([0.0, 0.0, GRAVITY], [0.0, 0.0, 0.0])
        segment = collect_imu_segment(data, 0.0, 1.0)
        self.assertEqual(len(segment.dt), 10)
        self.assertAlmostEqual(segment.covered, 1.0)

    def test_hold_last_sample_without_data(self):
        data = self._data([1.0, 0.0, GRAVITY], [0.0, 0.0, 0.0], t_end=0.0)
        segment = collect_imu_segment(data, 0.0, 2.0)
        self.assertEqual(len(segment.dt), 1)
        self.assertAlmostEqual(segment.dt[0], 2.0)

    def test_stationary_prediction(self):
        graph = self._graph()
        data = self._data([0.0, 0.0, GRAVITY], [0.0, 0.0, 0.0])
        model = ImuModel(ImuConfig(active=True), GRAVITY)

        update = model.predict(graph, data, StepContext(0.0, 1.0, 0.0, _converter()))

        guesses = {spec.name: spec.mean for spec in update.states}
        self.assertEqual(set(guesses), {POSITION, VELOCITY, ORIENTATION, IMU_BIAS})
        np.testing.assert_allclose(guesses[POSITION], np.zeros(3), atol=1e-12)
        np.testing.assert_allclose(guesses[VELOCITY], np.zeros(3), atol=1e-12)
        kinds = sorted(factor.kind.name for factor in update.factors)
        self.assertEqual(kinds, ["IMU_BIAS_RANDOM_WALK", "IMU_PREINTEGRATION"])
        for factor in update.factors:
            np.testing.assert_allclose(
                _factor_residual(graph, update, factor), 0.0, atol=1e-12
            )

    def test_forward_acceleration_is_rotated_by_heading(self):
        graph = self._graph(yaw=np.pi / 2)
        data = self._data([1.0, 0.0, GRAVITY], [0.0, 0.0, 0.0])
        model = ImuModel(ImuConfig(active=True), GRAVITY)

        update = model.predict(graph, data, StepContext(0.0, 1.0, 0.0, _converter()))

        guesses = {spec.name: spec.mean for spec in update.states}
        np.testing.assert_allclose(guesses[VELOCITY], [0.0, 1.0, 0.0], atol=1e-9)
        np.testing.assert_allclose(guesses[POSITION], [0.0, 0.5, 0.0], atol=1e-9)

    def test_yaw_rate_integration_and_bias(self):
        segment = collect_imu_segment(
            self._data([0.0, 0.0, GRAVITY], [0.0, 0.0, 0.2]), 0.0, 1.0
        )
        bias = np.array([0.0, 0.0, 0.0, 0.0, 0.0, 0.05])
        _, _, yaw = integrate_segment(
            segment, GRAVITY, np.zeros(3), np.zeros(3), 0.0, bias
        )
        self.assertAlmostEqual(yaw, 0.15)

    def test_constant_velocity_without_imu_data(self):
        graph = self._graph(velocity=(2.0, 0.0, 0.0))
        model = ImuModel(ImuConfig(active=True), GRAVITY)
        update = model.predict(
            graph, SensorDataSet(), StepContext(0.0, 1.5, 0.0, _converter())
        )
        guesses = {spec.name: spec.mean for spec in update.states}
        np.testing.assert_allclose(guesses[POSITION], [3.0, 0.0, 0.0])

    def test_missing_previous_state_raises(self):
        graph = FactorGraph()
        graph.add_state(POSITION, 0.0, np.zeros(3))
        model = ImuModel(ImuConfig(active=True), GRAVITY)
        with self.assertRaises(UnknownStateError):
            model.predict(graph, SensorDataSet(), StepContext(0.0, 1.0, 0.0, _converter()))


class TestOdometryModel(unittest.TestCase):
    def _graph(self, yaw):
        graph = FactorGraph()
        graph.add_state(POSITION, 0.0, np.zeros(3))
        graph.add_state(ORIENTATION, 0.0, np.array([yaw]))
        return graph

    def test_twist_is_rotated_by_heading(self):
        data = SensorDataSet(
            [odometry_twist(0.5, [1.0, 0.0, 0.0]), odometry_twist(1.0, [1.0, 0.0, 0.0])]
        )
        graph = self._graph(np.pi / 2)
        model = OdometryModel(OdometryConfig(active=True))

        update = model.predict(graph, data, StepContext(0.0, 1.0, 0.0, _converter()))

        guesses = {spec.name: spec.mean for spec in update.states}
        np.testing.assert_allclose(guesses[POSITION], [0.0, 1.0, 0.0], atol=1e-12)
        self.assertEqual(len(update.factors), 1)
        factor = update.factors[0]
        self.assertEqual(factor.kind, FactorKind.ODOMETRY)
        # two averaged twists halve the covariance
        self.assertAlmostEqual(factor.measurement.covariance[0, 0], 0.005)
        np.testing.assert_allclose(
            _factor_residual(graph, update, factor), np.zeros(4), atol=1e-12
        )

    def test_turning_motion(self):
        data = SensorDataSet([odometry_twist(1.0, [1.0, 0.0, 0.0], yaw_rate=0.4)])
        model = OdometryModel(OdometryConfig(active=True))
        update = model.predict(
            self._graph(0.0), data, StepContext(0.0, 1.0, 0.0, _converter())
        )
        guesses = {spec.name: spec.mean for spec in update.states}
        self.assertAlmostEqual(guesses[ORIENTATION][0], 0.4)
        np.testing.assert_allclose(
            guesses[POSITION], [np.cos(0.2), np.sin(0.2), 0.0], atol=1e-12
        )

    def test_holds_previous_twist(self):
        data = SensorDataSet([odometry_twist(0.0, [2.0, 0.0, 0.0])])
        model = OdometryModel(OdometryConfig(active=True))
        held = model.select_twist(data, 1.0, 2.0)
        self.assertEqual(held.timestamp, 0.0)
        self.assertIsNone(model.select_twist(SensorDataSet(), 0.0, 1.0))


class TestPositionPriorModel(unittest.TestCase):
    def setUp(self):
        self.graph = FactorGraph()
        self.graph.add_state(POSITION, 0.0, np.array([1.0, 2.0, 3.0]))
        self.model = PositionPriorModel(PriorConfig(active=True, height=5.0))

    def test_prior_only_on_first_step(self):
        step = StepContext(0.0, 1.0, 0.0, TangentPlaneConverter())
        self.assertFalse(self.model.measure(self.graph, SensorDataSet(), step))

    def test_height_replaces_up_coordinate(self):
        step = StepContext(-1.0, 0.0, 0.0, TangentPlaneConverter())
        update = self.model.measure(self.graph, SensorDataSet(), step)
        self.assertEqual(len(update.factors), 1)
        factor = update.factors[0]
        self.assertEqual(factor.kind, FactorKind.PRIOR)
        np.testing.assert_allclose(
            factor.error([np.array([1.0, 2.0, 3.0])]), [0.0, 0.0, -2.0]
        )

    def test_missing_position_raises(self):
        step = StepContext(4.0, 5.0, 5.0, TangentPlaneConverter())
        with self.assertRaises(UnknownStateError):
            self.model.measure(self.graph, SensorDataSet(), step)


class TestRegistry(unittest.TestCase):
    def test_every_kind_has_a_model(self):
        self.assertEqual(set(MODEL_FACTORIES), set(SensorKind))

    def test_registry_holds_active_kinds(self):
        config = EstimatorConfig()
        config.gnss.active = True
        config.gnss.kind = SensorKind.PSEUDORANGE
        config.odometry.active = True
        registry = build_model_registry(config, GRAVITY)

        self.assertEqual(set(registry), {SensorKind.PSEUDORANGE, SensorKind.ODOMETRY})
        self.assertIsInstance(registry[SensorKind.PSEUDORANGE], PseudorangeModel)
        self.assertIsInstance(registry[SensorKind.ODOMETRY], OdometryModel)

    def test_providers_follow_their_protocols(self):
        for kind, factory in MODEL_FACTORIES.items():
            model = factory(EstimatorConfig(), GRAVITY, None)
            if kind in (SensorKind.IMU, SensorKind.ODOMETRY):
                self.assertIsInstance(model, MotionModel)
            else:
                self.assertIsInstance(model, MeasurementModel)


if __name__ == "__main__":
    unittest.main()
