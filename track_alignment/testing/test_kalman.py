''' Script to check the straight line Kalman filter and smoother.
'''
import unittest

import numpy as np

from track_alignment.alignment_error import FitError
from track_alignment.event_data import BOUND_PARAMETERS_SIZE, TrackParameters
from track_alignment.telescope.telescope import Telescope
from track_alignment.tools import kalman
from track_alignment.tools.simulate_data import SimulateData


def create_telescope(n_duts=6, distance=200000.0, rotations=None, material_budget=0.0):
    telescope = Telescope()
    for dut_id in range(n_duts):
        alpha, beta, gamma = (0.0, 0.0, 0.0) if rotations is None else rotations[dut_id]
        telescope.add_dut(dut_type="Mimosa26", dut_id=dut_id, translation_x=0.0, translation_y=0.0, translation_z=dut_id * distance, rotation_alpha=alpha, rotation_beta=beta, rotation_gamma=gamma, material_budget=material_budget)
    return telescope


class TestKalman(unittest.TestCase):

    @classmethod
    def setUpClass(cls):
        cls.telescope = create_telescope()
        simulate_data = SimulateData(telescope=cls.telescope, random_seed=1)
        cls.source_links_collection, cls.start_parameters_collection = simulate_data.create_tracks(n_tracks=20)

    def test_transport_jacobian(self):  # Compares the analytic transport jacobian with finite differences
        telescope = create_telescope(n_duts=2, rotations=[(0.1, -0.05, 0.3), (-0.2, 0.15, -0.4)])
        surface, target_surface = telescope[0], telescope[1]
        parameters = np.array([1000.0, -500.0, 0.002, -0.001, 1.0 / 120000., 0.0])
        _, J = kalman._transport(parameters, surface, target_surface)
        steps = [1e-2, 1e-2, 1e-7, 1e-7, 1e-7, 1e-3]
        for k in range(BOUND_PARAMETERS_SIZE):
            parameters_up, parameters_down = parameters.copy(), parameters.copy()
            parameters_up[k] += steps[k]
            parameters_down[k] -= steps[k]
            transported_up, _ = kalman._transport(parameters_up, surface, target_surface)
            transported_down, _ = kalman._transport(parameters_down, surface, target_surface)
            numerical = (transported_up - transported_down) / (2 * steps[k])
            self.assertTrue(np.allclose(numerical, J[:, k], rtol=1e-5, atol=1e-4))

    def test_transport_same_orientation(self):  # Straight line between parallel planes
        telescope = create_telescope(n_duts=2, distance=1000.0)
        parameters = np.array([10.0, 20.0, 0.01, -0.02, 0.0, 0.0])
        transported, J = kalman._transport(parameters, telescope[0], telescope[1])
        self.assertTrue(np.allclose(transported, [20.0, 0.0, 0.01, -0.02, 0.0, 0.0]))
        self.assertAlmostEqual(J[0, 2], 1000.0)
        self.assertAlmostEqual(J[1, 3], 1000.0)
        self.assertAlmostEqual(J[0, 0], 1.0)

    def test_fit(self):
        fitter = kalman.KalmanFitter()
        for source_links, start_parameters in zip(self.source_links_collection, self.start_parameters_collection):
            trajectory = fitter.fit(source_links, start_parameters)
            self.assertEqual(len(trajectory), 6)
            self.assertEqual(trajectory.ndf, 8)
            self.assertGreaterEqual(trajectory.chi2, 0.0)
            for state in trajectory:
                self.assertTrue(state.has_smoothed)
                self.assertTrue(np.all(np.isfinite(state.smoothed)))
                # Smoothed position close to the measurement (resolution 30 / 50 um)
                self.assertTrue(np.all(np.abs(state.smoothed[:2] - state.calibrated) < 5 * np.array([30.0, 50.0])))
                # Smoothed position error is smaller than the measurement error
                self.assertTrue(np.all(np.diag(state.smoothed_covariance)[:2] < np.array([30.0**2, 50.0**2])))
            # Last state: smoothed equals filtered
            self.assertTrue(np.allclose(trajectory[-1].smoothed, trajectory[-1].filtered))

    def test_fit_unsorted_measurements(self):  # Measurements are sorted along the beam axis
        fitter = kalman.KalmanFitter()
        source_links = self.source_links_collection[0]
        trajectory = fitter.fit(list(reversed(source_links)), self.start_parameters_collection[0])
        self.assertEqual([state.surface for state in trajectory], [source_link.surface for source_link in source_links])

    def test_fit_multiple_scattering(self):
        telescope = create_telescope(material_budget=0.001)
        simulate_data = SimulateData(telescope=telescope, random_seed=2)
        simulate_data.multiple_scattering = True
        simulate_data.beam_momentum = 5000.0
        source_links_collection, start_parameters_collection = simulate_data.create_tracks(n_tracks=5)
        fitter = kalman.KalmanFitter()
        fit_options = kalman.KalmanFitterOptions(momentum=5000.0)
        for source_links, start_parameters in zip(source_links_collection, start_parameters_collection):
            trajectory_scattering = fitter.fit(source_links, start_parameters, fit_options)
            trajectory = fitter.fit(source_links, start_parameters)
            # Scattering adds process noise to the prediction
            self.assertGreater(trajectory_scattering[-1].predicted_covariance[2, 2], trajectory[-1].predicted_covariance[2, 2])

    def test_fit_errors(self):
        fitter = kalman.KalmanFitter()
        with self.assertRaises(FitError):
            fitter.fit([], self.start_parameters_collection[0])
        # Singular start covariance and measurement covariance
        source_links = self.source_links_collection[0]
        for source_link in source_links:
            source_link.covariance = np.zeros((2, 2))
        try:
            start_parameters = TrackParameters(surface=None, parameters=self.start_parameters_collection[0].parameters, covariance=np.zeros((6, 6)))
            with self.assertRaises(FitError):
                fitter.fit(source_links, start_parameters)
        finally:
            for source_link in source_links:
                source_link.covariance = np.diag([30.0**2, 50.0**2])

    def test_global_covariance(self):
        fitter = kalman.KalmanFitter()
        trajectory = fitter.fit(self.source_links_collection[0], self.start_parameters_collection[0])
        covariance, state_row_offsets = kalman.global_track_parameters_covariance(trajectory)
        self.assertEqual(covariance.shape, (36, 36))
        self.assertTrue(np.allclose(covariance, covariance.T))
        for state in trajectory:
            offset = state_row_offsets[state.index]
            self.assertEqual(offset, state.index * BOUND_PARAMETERS_SIZE)
            self.assertTrue(np.allclose(covariance[offset:offset + 6, offset:offset + 6], state.smoothed_covariance))
        # Position covariances of the 4 track parameters are positive semi definite
        position_indices = np.concatenate([np.arange(offset, offset + 4) for offset in state_row_offsets.values()])
        eigenvalues = np.linalg.eigvalsh(covariance[np.ix_(position_indices, position_indices)])
        self.assertTrue(np.all(eigenvalues > -1e-6 * np.max(eigenvalues)))
        # Neighbouring planes of a straight track are strongly correlated
        correlation = covariance[0, 6] / np.sqrt(covariance[0, 0] * covariance[6, 6])
        self.assertGreater(correlation, 0.0)


if __name__ == '__main__':
    import logging
    logging.basicConfig(level=logging.INFO, format="%(asctime)s - %(name)s - [%(levelname)-8s] (%(threadName)-10s) %(message)s")
    suite = unittest.TestLoader().loadTestsFromTestCase(TestKalman)
    unittest.TextTestRunner(verbosity=2).run(suite)
