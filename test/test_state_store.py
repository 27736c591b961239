import os
import sys
import unittest

import numpy as np

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

from window_fgo.errors import DuplicateStateError, UnknownStateError
from window_fgo.state_store import Trajectory
from window_fgo.utils import CLOCK_ERROR, POSITION, format_key


class TestTrajectory(unittest.TestCase):
    def setUp(self):
        self.trajectory = Trajectory()
        for t in (2.0, 0.0, 1.0):
            self.trajectory.create(POSITION, t, np.full(3, t))
        self.trajectory.create(CLOCK_ERROR, 1.0, np.array([5.0]))

    def test_states_are_time_ordered_per_name(self):
        self.assertEqual(self.trajectory.timestamps(POSITION), [0.0, 1.0, 2.0])
        self.assertEqual(self.trajectory.count(POSITION), 3)
        self.assertEqual(len(self.trajectory), 4)
        self.assertEqual(sorted(self.trajectory.names()), [CLOCK_ERROR, POSITION])

    def test_keys_are_unique_symbols(self):
        keys = [state.key for state in self.trajectory]
        self.assertEqual(len(set(keys)), len(keys))
        self.assertTrue(
            format_key(self.trajectory.get(CLOCK_ERROR, 1.0).key).startswith("c")
        )

    def test_duplicate_state_raises(self):
        with self.assertRaises(DuplicateStateError):
            self.trajectory.create(POSITION, 1.0, np.zeros(3))

    def test_unknown_state_raises(self):
        with self.assertRaises(UnknownStateError):
            self.trajectory.get(POSITION, 7.0)
        self.assertIsNone(self.trajectory.find(POSITION, 7.0))

    def test_latest(self):
        self.assertEqual(self.trajectory.latest(POSITION).timestamp, 2.0)
        self.assertEqual(self.trajectory.latest(POSITION, before=1.5).timestamp, 1.0)
        self.assertEqual(self.trajectory.latest(POSITION, before=1.0).timestamp, 1.0)
        self.assertIsNone(self.trajectory.latest(POSITION, before=-0.5))
        self.assertIsNone(self.trajectory.latest("velocity"))

    def test_freezing_is_monotonic(self):
        self.assertEqual(self.trajectory.set_constant_before(1.5), 3)
        frozen = {state.state_id for state in self.trajectory.frozen_states()}

        # an earlier reference time never releases states
        self.assertEqual(self.trajectory.set_constant_before(0.5), 0)
        self.assertEqual(
            {state.state_id for state in self.trajectory.frozen_states()}, frozen
        )

        self.assertEqual(self.trajectory.set_constant_before(10.0), 1)
        self.assertEqual(self.trajectory.free_states(), [])

    def test_update_from_copies_means(self):
        output = Trajectory()
        output.update_from(self.trajectory)
        self.assertEqual(len(output), 4)

        self.trajectory.get(POSITION, 2.0).mean = np.array([9.0, 9.0, 9.0])
        output.update_from(self.trajectory)
        np.testing.assert_array_equal(output.get(POSITION, 2.0).mean, [9.0, 9.0, 9.0])

        # entries are copies, not shared
        self.trajectory.get(POSITION, 2.0).mean[0] = -1.0
        self.assertEqual(output.get(POSITION, 2.0).mean[0], 9.0)

    def test_update_from_skips_states_frozen_in_both(self):
        self.trajectory.set_constant_before(0.5)
        output = Trajectory()
        output.update_from(self.trajectory)
        self.assertTrue(output.get(POSITION, 0.0).constant)

        output.get(POSITION, 0.0).mean = np.array([4.0, 4.0, 4.0])
        output.update_from(self.trajectory)
        np.testing.assert_array_equal(output.get(POSITION, 0.0).mean, [4.0, 4.0, 4.0])

    def test_subset_is_a_deep_copy(self):
        subset = self.trajectory.subset(POSITION)
        self.assertEqual(subset.names(), [POSITION])
        subset.get(POSITION, 0.0).mean[0] = 42.0
        self.assertEqual(self.trajectory.get(POSITION, 0.0).mean[0], 0.0)


if __name__ == "__main__":
    unittest.main()
