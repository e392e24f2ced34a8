''' Straight line Kalman filter and smoother for single tracks.

The track is described by bound parameters on each DUT plane (see
track_alignment.event_data). Without magnetic field the transport between
planes is a straight line, charge over momentum and time are carried along.
'''
import logging

import numpy as np
from numpy import linalg

from track_alignment.alignment_error import FitError
from track_alignment.event_data import BOUND_PARAMETERS_SIZE, LOC_0, LOC_1, SLOPE_0, SLOPE_1, Trajectory


class KalmanFitterOptions(object):
    ''' Configuration of the track fit.

    Parameters
    ----------
    momentum : float
        Particle momentum in MeV. If None, multiple scattering is neglected.
    beta : float
        Particle velocity in units of c.
    geometry_context : object
        Passed on to the transform updater during alignment.
    '''

    def __init__(self, momentum=None, beta=1.0, geometry_context=None):
        self.momentum = None if momentum is None else float(momentum)
        self.beta = float(beta)
        self.geometry_context = geometry_context


def _scattering_angle_sigma(material_budget, momentum, beta, charge_number=1):
    ''' Highland formula for the width of the projected scattering angle.

    Parameters
    ----------
    material_budget : number
        total distance / total radiation length
    '''
    if material_budget <= 0 or momentum is None:
        return 0.0
    return (13.6 / momentum / beta) * charge_number * np.sqrt(material_budget) * (1. + 0.038 * np.log(material_budget))


def _calculate_scatter_gain_matrix(parameters):
    """ Change of the bound parameters due to two scattering angles.

    Reference: Wolin and Ho (NIM A329 (1993) 493-500)
    """
    n_trk = np.array([parameters[SLOPE_0], parameters[SLOPE_1], 1.0])
    n_trk /= np.sqrt(np.dot(n_trk, n_trk))
    v_trk = np.cross(n_trk, np.array([1.0, 0.0, 0.0]))
    v_trk /= np.sqrt(np.dot(v_trk, v_trk))
    u_trk = np.cross(v_trk, n_trk)
    u_trk /= np.sqrt(np.dot(u_trk, u_trk))

    # Direction cosines
    a1, b1, g1 = u_trk
    a2, b2, g2 = v_trk
    a3, b3, g3 = n_trk

    # Scattering angles only change the slopes
    G = np.zeros(shape=(BOUND_PARAMETERS_SIZE, 2), dtype=np.float64)
    G[SLOPE_0, 0] = (a1 * g3 - a3 * g1) / (g3 * g3)  # Eq (10)
    G[SLOPE_0, 1] = (a2 * g3 - a3 * g2) / (g3 * g3)  # Eq (11)
    G[SLOPE_1, 0] = (b1 * g3 - b3 * g1) / (g3 * g3)  # Eq (12)
    G[SLOPE_1, 1] = (b2 * g3 - b3 * g2) / (g3 * g3)  # Eq (13)
    return G


def _transport(parameters, surface, target_surface):
    ''' Straight line transport of bound parameters to another plane.

    Reference: V. Karimaki "Straight Line Fit for Pixel and Strip Detectors with Arbitrary Plane Orientations", CMS Note. (http://cds.cern.ch/record/687146/files/note99_041.pdf)

    Returns
    -------
    Transported parameters and the transport jacobian.
    '''
    # Coordinate trafo from local system of plane k to local system of plane k+1
    R = np.dot(target_surface.rotation_matrix.T, surface.rotation_matrix)
    O = np.dot(surface.rotation_matrix.T, target_surface.center - surface.center)

    x_point = np.array([parameters[LOC_0], parameters[LOC_1], 0.0])
    direc = np.array([parameters[SLOPE_0], parameters[SLOPE_1], 1.0])

    f_point = np.dot(R, x_point - O)
    f_dir = np.dot(R, direc)
    if f_dir[2] == 0.0:
        raise FitError('Track does not intersect %s' % target_surface.name)

    # Step length
    s = -f_point[2] / f_dir[2]
    slope_u = f_dir[0] / f_dir[2]
    slope_v = f_dir[1] / f_dir[2]

    transported = np.array(parameters, dtype=np.float64)
    transported[LOC_0] = f_point[0] + s * f_dir[0]
    transported[LOC_1] = f_point[1] + s * f_dir[1]
    transported[SLOPE_0] = slope_u
    transported[SLOPE_1] = slope_v

    J = np.eye(BOUND_PARAMETERS_SIZE, dtype=np.float64)
    J[LOC_0, LOC_0] = R[0, 0] - R[2, 0] * slope_u
    J[LOC_0, LOC_1] = R[0, 1] - R[2, 1] * slope_u
    J[LOC_1, LOC_0] = R[1, 0] - R[2, 0] * slope_v
    J[LOC_1, LOC_1] = R[1, 1] - R[2, 1] * slope_v
    J[LOC_0, SLOPE_0] = s * J[LOC_0, LOC_0]
    J[LOC_0, SLOPE_1] = s * J[LOC_0, LOC_1]
    J[LOC_1, SLOPE_0] = s * J[LOC_1, LOC_0]
    J[LOC_1, SLOPE_1] = s * J[LOC_1, LOC_1]
    J[SLOPE_0, SLOPE_0] = J[LOC_0, LOC_0] / f_dir[2]
    J[SLOPE_0, SLOPE_1] = J[LOC_0, LOC_1] / f_dir[2]
    J[SLOPE_1, SLOPE_0] = J[LOC_1, LOC_0] / f_dir[2]
    J[SLOPE_1, SLOPE_1] = J[LOC_1, LOC_1] / f_dir[2]
    return transported, J


def _filter_predict(parameters, covariance, surface, target_surface, momentum, beta):
    ''' Predicts the state on the target plane including multiple scattering on the current plane.
    '''
    predicted, J = _transport(parameters, surface, target_surface)
    predicted_covariance = np.linalg.multi_dot([J, covariance, J.T])

    # Path length in the plane scales the material budget
    path_length = np.sqrt(1.0 + parameters[SLOPE_0]**2 + parameters[SLOPE_1]**2)
    theta = _scattering_angle_sigma(surface.material_budget * path_length, momentum, beta)
    if theta > 0.0:
        general_scatter_gain_matrix = np.dot(J, _calculate_scatter_gain_matrix(parameters))
        predicted_covariance += theta**2 * np.dot(general_scatter_gain_matrix, general_scatter_gain_matrix.T)
    return predicted, predicted_covariance, J


def _filter_correct(projector, observation_covariance, predicted_state, predicted_state_covariance, observation):
    ''' Gain matrix update of the predicted state with one measurement.

    Returns
    -------
    filtered_state, filtered_state_covariance, chi2
    '''
    predicted_observation_covariance = np.linalg.multi_dot([projector, predicted_state_covariance, projector.T]) + observation_covariance
    kalman_gain = np.linalg.multi_dot([predicted_state_covariance, projector.T, linalg.inv(predicted_observation_covariance)])

    filtered_state = predicted_state + np.dot(kalman_gain, observation - np.dot(projector, predicted_state))
    filtered_state_covariance = predicted_state_covariance - np.linalg.multi_dot([kalman_gain, projector, predicted_state_covariance])
    filtered_state_covariance = 0.5 * (filtered_state_covariance + filtered_state_covariance.T)

    filtered_residual = observation - np.dot(projector, filtered_state)
    filtered_residual_covariance = observation_covariance - np.linalg.multi_dot([projector, filtered_state_covariance, projector.T])
    chi2 = np.dot(filtered_residual, np.dot(linalg.inv(filtered_residual_covariance), filtered_residual))
    return filtered_state, filtered_state_covariance, chi2


def _smooth_update(filtered_state, filtered_state_covariance, next_jacobian, next_predicted_state, next_predicted_state_covariance, next_smoothed_state, next_smoothed_state_covariance):
    ''' Rauch-Tung-Striebel smoothing step.

    Returns
    -------
    smoothed_state, smoothed_state_covariance, kalman_smoothing_gain
    '''
    kalman_smoothing_gain = np.linalg.multi_dot([filtered_state_covariance, next_jacobian.T, linalg.inv(next_predicted_state_covariance)])
    smoothed_state = filtered_state + np.dot(kalman_smoothing_gain, next_smoothed_state - next_predicted_state)
    smoothed_state_covariance = filtered_state_covariance + np.linalg.multi_dot([kalman_smoothing_gain, next_smoothed_state_covariance - next_predicted_state_covariance, kalman_smoothing_gain.T])
    smoothed_state_covariance = 0.5 * (smoothed_state_covariance + smoothed_state_covariance.T)
    return smoothed_state, smoothed_state_covariance, kalman_smoothing_gain


class KalmanFitter(object):
    ''' Fits straight tracks through the measurements of one track candidate.
    '''

    def fit(self, source_links, start_parameters, fit_options=None):
        ''' Filter and smooth one track.

        Parameters
        ----------
        source_links : iterable of SourceLink
            Measurements of the track. They are sorted along the beam axis.
        start_parameters : TrackParameters
            Initial parameters with covariance. If the surface is None, the
            parameters are defined on the first measurement plane.
        fit_options : KalmanFitterOptions

        Returns
        -------
        Trajectory with predicted, filtered and smoothed states.
        '''
        if fit_options is None:
            fit_options = KalmanFitterOptions()
        source_links = sorted(source_links, key=lambda source_link: source_link.surface.translation_z)
        if not source_links:
            raise FitError('No measurements given')

        surface = start_parameters.surface if start_parameters.surface is not None else source_links[0].surface
        parameters = start_parameters.parameters
        covariance = start_parameters.covariance

        trajectory = Trajectory()
        try:
            for source_link in source_links:
                state = trajectory.add_state(surface=source_link.surface, source_link=source_link)
                if source_link.surface is surface:
                    predicted, predicted_covariance, J = parameters, covariance, np.eye(BOUND_PARAMETERS_SIZE)
                else:
                    predicted, predicted_covariance, J = _filter_predict(
                        parameters=parameters,
                        covariance=covariance,
                        surface=surface,
                        target_surface=source_link.surface,
                        momentum=fit_options.momentum,
                        beta=fit_options.beta)
                state.predicted = predicted
                state.predicted_covariance = predicted_covariance
                state.jacobian = J
                state.filtered, state.filtered_covariance, state.chi2 = _filter_correct(
                    projector=state.projector,
                    observation_covariance=state.calibrated_covariance,
                    predicted_state=predicted,
                    predicted_state_covariance=predicted_covariance,
                    observation=state.calibrated)
                parameters, covariance, surface = state.filtered, state.filtered_covariance, state.surface

            # Smoothing, starting from the last filtered state
            last_state = trajectory[-1]
            last_state.smoothed = last_state.filtered
            last_state.smoothed_covariance = last_state.filtered_covariance
            for index in range(len(trajectory) - 2, -1, -1):
                state, next_state = trajectory[index], trajectory[index + 1]
                state.smoothed, state.smoothed_covariance, state.smoothing_gain = _smooth_update(
                    filtered_state=state.filtered,
                    filtered_state_covariance=state.filtered_covariance,
                    next_jacobian=next_state.jacobian,
                    next_predicted_state=next_state.predicted,
                    next_predicted_state_covariance=next_state.predicted_covariance,
                    next_smoothed_state=next_state.smoothed,
                    next_smoothed_state_covariance=next_state.smoothed_covariance)
        except linalg.LinAlgError as e:
            raise FitError('Matrix inversion failed: %s' % e)

        for state in trajectory:
            if not (np.all(np.isfinite(state.smoothed)) and np.all(np.isfinite(state.smoothed_covariance))):
                raise FitError('Fit result of state %d is not finite' % state.index)
        logging.debug('Fitted track with %d states, chi2 = %.3f', len(trajectory), trajectory.chi2)
        return trajectory


def global_track_parameters_covariance(trajectory):
    ''' Covariance of the smoothed parameters of all states of a trajectory.

    The correlation between states i < j follows from the smoothing gains:
    Cov(x_i, x_j) = A_i * Cov(x_i+1, x_j).

    Parameters
    ----------
    trajectory : Trajectory
        Fitted and smoothed trajectory.

    Returns
    -------
    Covariance matrix with shape (6 * n_states, 6 * n_states) and a dict
    that maps the state index to its row/column offset.
    '''
    states = [state for state in trajectory if state.has_smoothed]
    n_states = len(states)
    covariance = np.zeros(shape=(n_states * BOUND_PARAMETERS_SIZE, n_states * BOUND_PARAMETERS_SIZE), dtype=np.float64)
    state_row_offsets = {state.index: i * BOUND_PARAMETERS_SIZE for i, state in enumerate(states)}

    for j, state_j in enumerate(states):
        offset_j = state_row_offsets[state_j.index]
        block = state_j.smoothed_covariance
        covariance[offset_j:offset_j + BOUND_PARAMETERS_SIZE, offset_j:offset_j + BOUND_PARAMETERS_SIZE] = block
        for i in range(j - 1, -1, -1):
            state_i = states[i]
            if state_i.smoothing_gain is None:
                raise ValueError('State %d has no smoothing gain' % state_i.index)
            block = np.dot(state_i.smoothing_gain, block)
            offset_i = state_row_offsets[state_i.index]
            covariance[offset_i:offset_i + BOUND_PARAMETERS_SIZE, offset_j:offset_j + BOUND_PARAMETERS_SIZE] = block
            covariance[offset_j:offset_j + BOUND_PARAMETERS_SIZE, offset_i:offset_i + BOUND_PARAMETERS_SIZE] = block.T
    return covariance, state_row_offsets
