''' Script to check the alignment quantities of single tracks.
'''
import unittest

import numpy as np

from track_alignment import alignment_engine
from track_alignment.alignment_error import TrackEvaluationError
from track_alignment.event_data import SourceLink, Trajectory
from track_alignment.telescope.telescope import Telescope
from track_alignment.tools import geometry_utils


def create_telescope(n_duts=4):
    telescope = Telescope()
    for dut_id in range(n_duts):
        telescope.add_dut(dut_type="FEI4", dut_id=dut_id, translation_x=0.0, translation_y=0.0, translation_z=dut_id * 100000.0, rotation_alpha=0.0, rotation_beta=0.0, rotation_gamma=0.0)
    return telescope


def create_trajectory(surfaces, measured, random_state):
    ''' Trajectory with smoothed states and a random global covariance.

    Parameters
    ----------
    surfaces : list
        Surface of each state.
    measured : list of bool
        States with a measurement.
    '''
    trajectory = Trajectory()
    for index, (surface, has_measurement) in enumerate(zip(surfaces, measured)):
        source_link = None
        if has_measurement:
            sigma = np.array([10.0 + index, 20.0 + 2 * index])
            source_link = SourceLink(surface=surface, values=random_state.normal(0.0, 100.0, size=2), covariance=np.diag(np.square(sigma)))
        state = trajectory.add_state(surface=surface, source_link=source_link)
        state.smoothed = np.array([random_state.normal(0.0, 100.0), random_state.normal(0.0, 100.0), random_state.normal(0.0, 0.001), random_state.normal(0.0, 0.001), 1.0 / 120000., 0.0])
    n = 6 * len(trajectory)
    A = random_state.normal(size=(n, n))
    global_covariance = np.dot(A, A.T) + n * np.eye(n)
    state_row_offsets = {state.index: 6 * state.index for state in trajectory}
    for state in trajectory:
        offset = state_row_offsets[state.index]
        state.smoothed_covariance = global_covariance[offset:offset + 6, offset:offset + 6]
    return trajectory, global_covariance, state_row_offsets


class TestAlignmentEngine(unittest.TestCase):

    @classmethod
    def setUpClass(cls):
        cls.telescope = create_telescope()

    def setUp(self):
        self.random_state = np.random.RandomState(42)

    def test_dimensions(self):
        duts = [self.telescope[dut_id] for dut_id in range(4)]
        # Second state has no measurement
        trajectory, global_covariance, state_row_offsets = create_trajectory(
            surfaces=[duts[0], duts[1], duts[1], duts[2], duts[3]],
            measured=[True, False, True, True, True],
            random_state=self.random_state)
        idxed_align_surfaces = {duts[1]: 0, duts[2]: 1}
        state = alignment_engine.track_alignment_state(trajectory, global_covariance, state_row_offsets, idxed_align_surfaces)
        self.assertEqual(state.measurement_dim, 8)
        self.assertEqual(state.track_parameters_dim, 24)
        self.assertEqual(state.alignment_dof, 12)
        self.assertEqual(state.measurement_covariance.shape, (8, 8))
        self.assertEqual(state.projection_matrix.shape, (8, 24))
        self.assertEqual(state.track_parameters_covariance.shape, (24, 24))
        self.assertEqual(state.alignment_to_residual_derivative.shape, (8, 12))
        self.assertEqual(state.alignment_to_chi2_derivative.shape, (12,))
        self.assertEqual(state.alignment_to_chi2_second_derivative.shape, (12, 12))
        # Local indices ascend along the track
        self.assertEqual(state.aligned_surfaces, {duts[1]: (0, 0), duts[2]: (1, 1)})

    def test_duplicate_surface(self):  # Two measurements on one alignable surface count once
        duts = [self.telescope[dut_id] for dut_id in range(4)]
        trajectory, global_covariance, state_row_offsets = create_trajectory(
            surfaces=[duts[0], duts[1], duts[1], duts[2]],
            measured=[True, True, True, True],
            random_state=self.random_state)
        state = alignment_engine.track_alignment_state(trajectory, global_covariance, state_row_offsets, {duts[1]: 3})
        self.assertEqual(state.measurement_dim, 8)
        self.assertEqual(state.alignment_dof, 6)
        self.assertEqual(state.aligned_surfaces, {duts[1]: (3, 0)})
        # Both measurements on the surface depend on its translation in x
        self.assertAlmostEqual(state.alignment_to_residual_derivative[2, 0], 1.0)
        self.assertAlmostEqual(state.alignment_to_residual_derivative[4, 0], 1.0)
        self.assertAlmostEqual(state.alignment_to_residual_derivative[0, 0], 0.0)
        self.assertAlmostEqual(state.alignment_to_residual_derivative[6, 0], 0.0)

    def test_no_alignable_surface(self):
        duts = [self.telescope[dut_id] for dut_id in range(4)]
        trajectory, global_covariance, state_row_offsets = create_trajectory(
            surfaces=duts[:2],
            measured=[True, True],
            random_state=self.random_state)
        state = alignment_engine.track_alignment_state(trajectory, global_covariance, state_row_offsets, {duts[3]: 0})
        self.assertEqual(state.alignment_dof, 0)
        self.assertEqual(state.aligned_surfaces, {})
        self.assertIsNone(state.alignment_to_chi2_derivative)
        self.assertIsNone(state.measurement_covariance)

    def test_block_order(self):  # First block belongs to the first state along the track
        duts = [self.telescope[dut_id] for dut_id in range(4)]
        trajectory, global_covariance, state_row_offsets = create_trajectory(
            surfaces=duts,
            measured=[True] * 4,
            random_state=self.random_state)
        state = alignment_engine.track_alignment_state(trajectory, global_covariance, state_row_offsets, {duts[0]: 0, duts[3]: 1})
        for k, track_state in enumerate(trajectory):
            self.assertTrue(np.allclose(state.measurement_covariance[2 * k:2 * k + 2, 2 * k:2 * k + 2], track_state.calibrated_covariance))
            self.assertTrue(np.allclose(state.residual[2 * k:2 * k + 2], track_state.calibrated - track_state.smoothed[:2]))
            self.assertTrue(np.allclose(state.projection_matrix[2 * k:2 * k + 2, 6 * k:6 * k + 6], track_state.projector))
        self.assertTrue(np.allclose(state.track_parameters_covariance, global_covariance))
        # Translation x of the last DUT only changes the last residual
        self.assertTrue(np.allclose(state.alignment_to_residual_derivative[:, 6], [0, 0, 0, 0, 0, 0, 1, 0]))
        self.assertTrue(np.allclose(state.alignment_to_residual_derivative[:, 0], [1, 0, 0, 0, 0, 0, 0, 0]))

    def test_chi2_and_derivatives(self):
        duts = [self.telescope[dut_id] for dut_id in range(4)]
        trajectory, global_covariance, state_row_offsets = create_trajectory(
            surfaces=duts,
            measured=[True] * 4,
            random_state=self.random_state)
        state = alignment_engine.track_alignment_state(trajectory, global_covariance, state_row_offsets, {duts[1]: 0, duts[2]: 1})
        V_inv = np.linalg.inv(state.measurement_covariance)
        self.assertAlmostEqual(state.chi2, np.dot(state.residual, np.dot(V_inv, state.residual)))
        self.assertGreaterEqual(state.chi2, 0.0)
        residual_covariance = state.measurement_covariance - np.linalg.multi_dot([state.projection_matrix, state.track_parameters_covariance, state.projection_matrix.T])
        self.assertTrue(np.allclose(state.residual_covariance, residual_covariance))
        weight = np.linalg.multi_dot([V_inv, residual_covariance, V_inv])
        D = state.alignment_to_residual_derivative
        self.assertTrue(np.allclose(state.alignment_to_chi2_derivative, 2 * np.linalg.multi_dot([D.T, weight, state.residual])))
        self.assertTrue(np.allclose(state.alignment_to_chi2_second_derivative, 2 * np.linalg.multi_dot([D.T, weight, D])))
        self.assertTrue(np.allclose(state.alignment_to_chi2_second_derivative, state.alignment_to_chi2_second_derivative.T))

    def test_align_mask(self):  # Fixed placement parameters have zero derivative
        duts = [self.telescope[dut_id] for dut_id in range(4)]
        trajectory, global_covariance, state_row_offsets = create_trajectory(
            surfaces=duts,
            measured=[True] * 4,
            random_state=self.random_state)
        align_mask = np.array([True, True, False, False, False, True])
        state = alignment_engine.track_alignment_state(trajectory, global_covariance, state_row_offsets, {duts[1]: 0, duts[2]: 1}, align_mask=align_mask)
        for local_index in range(2):
            block = state.alignment_to_residual_derivative[:, 6 * local_index:6 * local_index + 6]
            self.assertTrue(np.all(block[:, ~align_mask] == 0.0))
            self.assertTrue(np.any(block[:, align_mask] != 0.0))
            self.assertTrue(np.all(state.alignment_to_chi2_derivative[6 * local_index:6 * local_index + 6][~align_mask] == 0.0))

    def test_shared_strategy_derivative(self):  # Masking must not write into the array returned by a strategy
        duts = [self.telescope[dut_id] for dut_id in range(4)]
        trajectory, global_covariance, state_row_offsets = create_trajectory(
            surfaces=duts,
            measured=[True] * 4,
            random_state=self.random_state)
        shared_derivative = np.ones(shape=(6, 6))

        def cached_derivative(surface, parameters):
            return shared_derivative

        align_mask = np.array([True, False, False, False, False, False])
        state = alignment_engine.track_alignment_state(trajectory, global_covariance, state_row_offsets, {duts[1]: 0}, align_mask=align_mask, derivative_strategies={"plane": cached_derivative})
        self.assertTrue(np.all(shared_derivative == 1.0))
        self.assertTrue(np.all(state.alignment_to_residual_derivative[:, 1:] == 0.0))
        self.assertTrue(np.allclose(state.alignment_to_residual_derivative[2:4, 0], [-1.0, -1.0]))

    def test_evaluation_errors(self):
        duts = [self.telescope[dut_id] for dut_id in range(4)]
        trajectory, global_covariance, state_row_offsets = create_trajectory(
            surfaces=duts,
            measured=[True] * 4,
            random_state=self.random_state)
        # Measurement covariance not positive definite
        source_link = trajectory[2].source_link
        trajectory[2].source_link = SourceLink(surface=source_link.surface, values=source_link.values, covariance=np.zeros(shape=(2, 2)))
        with self.assertRaises(TrackEvaluationError):
            alignment_engine.track_alignment_state(trajectory, global_covariance, state_row_offsets, {duts[1]: 0})
        # Not finite measurement covariance
        trajectory[2].source_link = SourceLink(surface=source_link.surface, values=source_link.values, covariance=np.full(shape=(2, 2), fill_value=np.nan))
        with self.assertRaises(TrackEvaluationError):
            alignment_engine.track_alignment_state(trajectory, global_covariance, state_row_offsets, {duts[1]: 0})
        trajectory[2].source_link = source_link
        # State without global covariance entry
        state_row_offsets = dict(state_row_offsets)
        del state_row_offsets[3]
        with self.assertRaises(TrackEvaluationError):
            alignment_engine.track_alignment_state(trajectory, global_covariance, state_row_offsets, {duts[1]: 0})
        # Not finite derivative
        with self.assertRaises(TrackEvaluationError):
            alignment_engine.track_alignment_state(trajectory, global_covariance, dict(zip(range(4), range(0, 24, 6))), {duts[1]: 0}, derivative_strategies={"plane": lambda surface, parameters: np.full(shape=(6, 6), fill_value=np.inf)})

    def test_unknown_surface_kind(self):  # Surfaces without derivative strategy get a zero derivative
        duts = [self.telescope[dut_id] for dut_id in range(4)]
        trajectory, global_covariance, state_row_offsets = create_trajectory(
            surfaces=duts,
            measured=[True] * 4,
            random_state=self.random_state)
        state = alignment_engine.track_alignment_state(trajectory, global_covariance, state_row_offsets, {duts[1]: 0}, derivative_strategies={})
        self.assertEqual(state.alignment_dof, 6)
        self.assertTrue(np.all(state.alignment_to_residual_derivative == 0.0))
        self.assertTrue(np.all(state.alignment_to_chi2_derivative == 0.0))
        self.assertGreater(state.chi2, 0.0)

    def test_plane_derivative(self):  # Compares the plane derivative with moving the plane under a fixed global line
        telescope = Telescope()
        placement = np.array([100.0, -200.0, 5000.0, 0.1, -0.2, 0.3])
        dut = telescope.add_dut(dut_type="FEI4", dut_id=0, translation_x=placement[0], translation_y=placement[1], translation_z=placement[2], rotation_alpha=placement[3], rotation_beta=placement[4], rotation_gamma=placement[5])
        parameters = np.array([1500.0, -700.0, 0.02, -0.01, 1.0 / 120000., 0.0])
        R = dut.rotation_matrix
        line_point = dut.center + np.dot(R, [parameters[0], parameters[1], 0.0])
        line_direction = np.dot(R, [parameters[2], parameters[3], 1.0])

        def bound_parameters(placement):
            rotation_matrix = geometry_utils.rotation_matrix(*placement[3:])
            normal = rotation_matrix[:, 2]
            s = np.dot(placement[:3] - line_point, normal) / np.dot(line_direction, normal)
            local_position = np.dot(rotation_matrix.T, line_point + s * line_direction - placement[:3])
            local_direction = np.dot(rotation_matrix.T, line_direction)
            return np.array([local_position[0], local_position[1], local_direction[0] / local_direction[2], local_direction[1] / local_direction[2]])

        self.assertTrue(np.allclose(bound_parameters(placement), parameters[:4]))
        derivative = alignment_engine.plane_alignment_to_bound_derivative(dut, parameters)
        self.assertEqual(derivative.shape, (6, 6))
        steps = [1e-3, 1e-3, 1e-3, 1e-7, 1e-7, 1e-7]
        for k in range(6):
            placement_up, placement_down = placement.copy(), placement.copy()
            placement_up[k] += steps[k]
            placement_down[k] -= steps[k]
            numerical = (bound_parameters(placement_up) - bound_parameters(placement_down)) / (2 * steps[k])
            self.assertTrue(np.allclose(numerical, derivative[:4, k], rtol=1e-5, atol=1e-4))
        # Charge over momentum and time do not depend on the placement
        self.assertTrue(np.all(derivative[4:] == 0.0))

    def test_derivative_lookup(self):
        dut = self.telescope[0]
        parameters = np.zeros(6)
        self.assertTrue(np.allclose(alignment_engine.alignment_to_bound_derivative(dut, parameters), alignment_engine.plane_alignment_to_bound_derivative(dut, parameters)))
        # Untilted plane, track through the center: translation x shifts loc0 by -1
        derivative = alignment_engine.alignment_to_bound_derivative(dut, parameters)
        self.assertAlmostEqual(derivative[0, 0], -1.0)
        self.assertAlmostEqual(derivative[1, 1], -1.0)
        self.assertAlmostEqual(derivative[0, 2], 0.0)

        def constant_derivative(surface, parameters):
            return np.ones((6, 6))

        self.assertTrue(np.all(alignment_engine.alignment_to_bound_derivative(dut, parameters, {"plane": constant_derivative}) == 1.0))


if __name__ == '__main__':
    import logging
    logging.basicConfig(level=logging.INFO, format="%(asctime)s - %(name)s - [%(levelname)-8s] (%(threadName)-10s) %(message)s")
    suite = unittest.TestLoader().loadTestsFromTestCase(TestAlignmentEngine)
    unittest.TextTestRunner(verbosity=2).run(suite)
