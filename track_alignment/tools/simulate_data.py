''' Simulation of straight tracks through a telescope.

The tracks are intersected with the true DUT placements, the hits are
smeared with the DUT resolution and attached to the DUTs of a nominal
(possibly misaligned) telescope, which is the geometry seen by the fit.
'''
import logging

import numpy as np

from track_alignment.event_data import BOUND_PARAMETERS_SIZE, SourceLink, TrackParameters


class SimulateData(object):
    ''' Track simulator.

    Parameters
    ----------
    telescope : Telescope
        True DUT placements.
    random_seed : int
        Seed of the random number generator.
    '''

    def __init__(self, telescope, random_seed=0):
        self.telescope = telescope
        self.random_seed = random_seed
        self.reset()

    def set_random_seed(self, value):
        self.random_seed = value
        # Set the random number seed to be able to rerun with same results
        self.random_state = np.random.RandomState(self.random_seed)

    def set_std_settings(self):
        # Beam settings
        # Average beam position in x, y at z = 0 in um
        self.beam_position = (0, 0)
        self.beam_position_sigma = (2000, 2000)  # in x, y at z = 0 in um
        # Average beam angle from the beam axis in theta at z = 0 in mRad
        self.beam_angle = 0
        # Deviation from the average beam angle in theta at z = 0 in mRad
        self.beam_angle_sigma = 1
        # The range of directions of the beam (phi in spherical coordinates) at z = 0 in Rad
        self.beam_direction = (0, 2. * np.pi)
        self.beam_momentum = 120000  # Beam momentum in MeV
        # Multiple scattering in the DUT material
        self.multiple_scattering = False
        # Hit resolution in x / y in um for each DUT ID
        self.hit_resolution = {dut_id: (30.0, 50.0) for dut_id in self.telescope.dut_ids}

    def reset(self):
        ''' Reset to init configuration '''
        self.set_random_seed(self.random_seed)
        self.set_std_settings()

    def _create_tracks(self, n_tracks):
        ''' Creates tracks with gaussian distributed angles at gaussian distributed positions at z=0.

        Returns
        -------
        Track positions at z = 0 and unit direction vectors, both with shape (n_tracks, 3).
        '''
        logging.debug('Create %d tracks at x/y = (%d/%d +- %d/%d) um and theta = (%d +- %d) mRad', n_tracks, self.beam_position[0], self.beam_position[1], self.beam_position_sigma[0], self.beam_position_sigma[1], self.beam_angle, self.beam_angle_sigma)
        if self.beam_angle / 1000. > np.pi / 2 or self.beam_angle / 1000. < 0:
            raise ValueError('beam_angle has to be between [0..pi/2] Rad')

        track_positions = np.zeros(shape=(n_tracks, 3), dtype=np.float64)
        for dimension in range(2):
            if self.beam_position_sigma[dimension] != 0:
                track_positions[:, dimension] = self.random_state.normal(self.beam_position[dimension], self.beam_position_sigma[dimension], n_tracks)
            else:
                track_positions[:, dimension] = self.beam_position[dimension]

        if self.beam_angle_sigma != 0:
            track_angles_theta = np.abs(self.random_state.normal(self.beam_angle / 1000., self.beam_angle_sigma / 1000., size=n_tracks))
        else:
            track_angles_theta = np.repeat(self.beam_angle / 1000., repeats=n_tracks)
        if self.beam_direction[0] != self.beam_direction[1]:
            track_angles_phi = self.random_state.uniform(self.beam_direction[0], self.beam_direction[1], size=n_tracks)
        else:
            track_angles_phi = np.repeat(self.beam_direction[0], repeats=n_tracks)

        track_directions = np.column_stack((
            np.sin(track_angles_theta) * np.cos(track_angles_phi),
            np.sin(track_angles_theta) * np.sin(track_angles_phi),
            np.cos(track_angles_theta)))
        return track_positions, track_directions

    def _scattering_angle_sigma(self, material_budget, charge_number=1):
        ''' Width of the projected scattering angle (Highland formula). '''
        if material_budget == 0:
            return 0
        return 13.6 / self.beam_momentum * charge_number * np.sqrt(material_budget) * (1 + 0.038 * np.log(material_budget))

    def _create_hits_from_tracks(self, track_positions, track_directions):
        ''' Intersects the tracks with the true DUT planes in z order.

        Returns
        -------
        Dict DUT ID -> (global intersections, track directions at the DUT).
        '''
        hits = {}
        actual_positions = track_positions
        actual_directions = track_directions.copy()
        for dut_id in self.telescope.z_sorted_dut_ids:
            dut = self.telescope[dut_id]
            intersections = dut.line_intersections(actual_positions, actual_directions)
            hits[dut_id] = (intersections, actual_directions.copy())
            if self.multiple_scattering and dut.material_budget > 0:
                theta_0 = self._scattering_angle_sigma(material_budget=dut.material_budget)
                actual_directions = actual_directions + self.random_state.normal(0, theta_0, size=actual_directions.shape) * np.array([1.0, 1.0, 0.0])
                actual_directions /= np.linalg.norm(actual_directions, axis=1)[:, np.newaxis]
            actual_positions = intersections
        return hits

    def create_tracks(self, n_tracks, nominal_telescope=None):
        ''' Simulates tracks and returns the input of the track fit.

        Parameters
        ----------
        n_tracks : int
            Number of tracks.
        nominal_telescope : Telescope
            Geometry the measurements are attached to. Must contain the same
            DUT IDs. If None, the true telescope is used.

        Returns
        -------
        List of source link lists and list of start parameters (on the first DUT).
        '''
        if nominal_telescope is None:
            nominal_telescope = self.telescope
        logging.info('Simulate %d tracks with %d DUTs', n_tracks, len(self.telescope))

        track_positions, track_directions = self._create_tracks(n_tracks)
        hits = self._create_hits_from_tracks(track_positions, track_directions)

        measurements = {}
        for dut_id, (intersections, _) in hits.items():
            local_x, local_y, _ = self.telescope[dut_id].global_to_local_position(intersections[:, 0], intersections[:, 1], intersections[:, 2])
            sigma_x, sigma_y = self.hit_resolution[dut_id]
            measurements[dut_id] = np.column_stack((
                local_x + self.random_state.normal(0, sigma_x, size=n_tracks),
                local_y + self.random_state.normal(0, sigma_y, size=n_tracks)))

        first_dut_id = nominal_telescope.z_sorted_dut_ids[0]
        first_dut = nominal_telescope[first_dut_id]
        local_directions = np.dot(hits[first_dut_id][1], first_dut.rotation_matrix)
        slope_sigma = max(self.beam_angle_sigma, 1.0) / 1000.
        sigma_x, sigma_y = self.hit_resolution[first_dut_id]

        source_links_collection = []
        start_parameters_collection = []
        for track_index in range(n_tracks):
            if not np.all(np.isfinite(measurements[first_dut_id][track_index])):
                continue
            source_links = []
            for dut_id in nominal_telescope.z_sorted_dut_ids:
                if not np.all(np.isfinite(measurements[dut_id][track_index])):
                    continue
                sigma = self.hit_resolution[dut_id]
                source_links.append(SourceLink(
                    surface=nominal_telescope[dut_id],
                    values=measurements[dut_id][track_index],
                    covariance=np.diag(np.square(sigma))))
            parameters = np.zeros(BOUND_PARAMETERS_SIZE, dtype=np.float64)
            parameters[:2] = measurements[first_dut_id][track_index]
            parameters[2:4] = local_directions[track_index, :2] / local_directions[track_index, 2]
            parameters[4] = 1.0 / self.beam_momentum
            covariance = np.diag([(10 * sigma_x)**2, (10 * sigma_y)**2, (10 * slope_sigma)**2, (10 * slope_sigma)**2, 1.0, 1.0])
            source_links_collection.append(source_links)
            start_parameters_collection.append(TrackParameters(surface=first_dut, parameters=parameters, covariance=covariance))
        return source_links_collection, start_parameters_collection
