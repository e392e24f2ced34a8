''' Alignment information of single tracks.

For each fitted track the chi2 of its measurements and the first and second
derivatives of the chi2 with respect to the placement parameters of the
alignable DUTs are calculated. The placement parameters of one DUT are the
global center (x, y, z) and the Euler angles (alpha, beta, gamma) of its
local-to-global rotation.
'''
import logging

import numpy as np
from scipy.linalg import cho_factor, cho_solve

from track_alignment.alignment_error import TrackEvaluationError
from track_alignment.event_data import ALIGNMENT_PARAMETERS_SIZE, BOUND_PARAMETERS_SIZE, LOC_0, LOC_1, SLOPE_0, SLOPE_1
from track_alignment.tools import geometry_utils


class TrackAlignmentState(object):
    ''' Alignment quantities of one track.

    The trajectory is visited backwards and the blocks are filled in reverse
    visiting order: the state visited last (the first measurement on the
    track) occupies the first block.
    '''

    def __init__(self):
        self.measurement_covariance = None
        self.track_parameters_covariance = None
        self.projection_matrix = None
        self.residual = None
        self.residual_covariance = None
        self.chi2 = 0.0
        self.alignment_to_residual_derivative = None
        self.alignment_to_chi2_derivative = None
        self.alignment_to_chi2_second_derivative = None
        # surface -> (global index, local index)
        self.aligned_surfaces = {}
        self.measurement_dim = 0
        self.track_parameters_dim = 0
        self.alignment_dof = 0


def plane_alignment_to_bound_derivative(surface, parameters):
    ''' Derivative of the bound parameters predicted on a plane with respect to its placement.

    The global track is kept fixed. A shift dc of the plane center changes the
    local intercept by -R^T dc, a rotation by an Euler angle increment rotates
    the local frame around the local axis omega, changing local positions l and
    directions d by -omega x l and -omega x d. The intercept is then moved back
    onto the plane along the track. Reference: V. Karimaki et al.,
    "Sensor alignment by tracks", CMS CR 2003/022.

    Parameters
    ----------
    surface : Dut
        The plane the parameters are defined on.
    parameters : array
        Bound track parameters on the plane.

    Returns
    -------
    Array with shape (6, 6): rows are bound parameters, columns are the
    placement parameters (center x, y, z, rotation x, y, z).
    '''
    slope_u, slope_v = parameters[SLOPE_0], parameters[SLOPE_1]
    local_position = np.array([parameters[LOC_0], parameters[LOC_1], 0.0])
    local_direction = np.array([slope_u, slope_v, 1.0])
    R = surface.transform[:3, :3]
    alpha, beta, _ = geometry_utils.euler_angles(R)
    rotation_axes = geometry_utils.euler_angle_rotation_axes(alpha=alpha, beta=beta)

    # Change of local position and direction for each placement parameter
    d_position = np.zeros(shape=(3, ALIGNMENT_PARAMETERS_SIZE), dtype=np.float64)
    d_direction = np.zeros(shape=(3, ALIGNMENT_PARAMETERS_SIZE), dtype=np.float64)
    d_position[:, :3] = -R.T
    for k in range(3):
        d_position[:, 3 + k] = -np.cross(rotation_axes[k], local_position)
        d_direction[:, 3 + k] = -np.cross(rotation_axes[k], local_direction)

    derivative = np.zeros(shape=(BOUND_PARAMETERS_SIZE, ALIGNMENT_PARAMETERS_SIZE), dtype=np.float64)
    derivative[LOC_0] = d_position[0] - slope_u * d_position[2]
    derivative[LOC_1] = d_position[1] - slope_v * d_position[2]
    derivative[SLOPE_0] = d_direction[0] - slope_u * d_direction[2]
    derivative[SLOPE_1] = d_direction[1] - slope_v * d_direction[2]
    return derivative


# Surface kind -> derivative of the bound parameters with respect to the surface placement
alignment_to_bound_derivatives = {
    "plane": plane_alignment_to_bound_derivative
}


def alignment_to_bound_derivative(surface, parameters, derivative_strategies=None):
    ''' Looks up the derivative strategy of the surface kind and evaluates it.

    Unknown surface kinds get a zero derivative.
    '''
    if derivative_strategies is None:
        derivative_strategies = alignment_to_bound_derivatives
    surface_kind = getattr(surface, "surface_kind", None)
    strategy = derivative_strategies.get(surface_kind)
    if strategy is None:
        logging.warning('No alignment derivative for surface kind %s, using zero derivative', surface_kind)
        return np.zeros(shape=(BOUND_PARAMETERS_SIZE, ALIGNMENT_PARAMETERS_SIZE), dtype=np.float64)
    return strategy(surface, parameters)


def track_alignment_state(trajectory, global_track_params_cov, state_row_offsets, idxed_align_surfaces, align_mask=None, derivative_strategies=None):
    ''' Calculates the alignment quantities of one fitted track.

    Parameters
    ----------
    trajectory : Trajectory
        Fitted and smoothed track.
    global_track_params_cov : array
        Covariance of the smoothed parameters of all states.
    state_row_offsets : dict
        State index -> row/column offset in global_track_params_cov.
    idxed_align_surfaces : dict
        Alignable surface -> global index.
    align_mask : array of bool
        Free placement parameters (6 entries). Masked parameters get a zero derivative.
    derivative_strategies : dict
        Surface kind -> derivative function, see alignment_to_bound_derivatives.

    Returns
    -------
    TrackAlignmentState. If the track has no measurement on an alignable
    surface, alignment_dof is 0 and no matrix is filled.

    Raises
    ------
    TrackEvaluationError
        If the measurement covariance cannot be inverted, a state has no entry
        in the global covariance or the chi2 derivatives are not finite.
    '''
    alignment_state = TrackAlignmentState()

    # Measurement states in backward order and the distinct alignable surfaces
    measurement_states = []
    alignable_surfaces = []
    for state in trajectory.visit_backwards():
        if not state.has_measurement:
            continue
        measurement_states.append(state)
        alignment_state.measurement_dim += state.calibrated_size
        if state.surface in idxed_align_surfaces and state.surface not in alignable_surfaces:
            alignable_surfaces.append(state.surface)

    if not alignable_surfaces:
        return alignment_state

    # Local surface index follows the track direction
    n_alignable_surfaces = len(alignable_surfaces)
    for i, surface in enumerate(alignable_surfaces):
        alignment_state.aligned_surfaces[surface] = (idxed_align_surfaces[surface], n_alignable_surfaces - 1 - i)

    measurement_dim = alignment_state.measurement_dim
    track_parameters_dim = BOUND_PARAMETERS_SIZE * len(measurement_states)
    alignment_dof = ALIGNMENT_PARAMETERS_SIZE * n_alignable_surfaces
    alignment_state.track_parameters_dim = track_parameters_dim
    alignment_state.alignment_dof = alignment_dof

    if align_mask is None:
        align_mask = np.ones(ALIGNMENT_PARAMETERS_SIZE, dtype=np.bool_)
    align_mask = np.asarray(align_mask, dtype=np.bool_)

    measurement_covariance = np.zeros(shape=(measurement_dim, measurement_dim), dtype=np.float64)
    projection_matrix = np.zeros(shape=(measurement_dim, track_parameters_dim), dtype=np.float64)
    residual = np.zeros(shape=measurement_dim, dtype=np.float64)
    alignment_to_residual_derivative = np.zeros(shape=(measurement_dim, alignment_dof), dtype=np.float64)
    track_parameters_covariance = np.zeros(shape=(track_parameters_dim, track_parameters_dim), dtype=np.float64)

    missing_offsets = [state.index for state in measurement_states if state.index not in state_row_offsets]
    if missing_offsets:
        raise TrackEvaluationError("No track parameter covariance for states %s" % missing_offsets)

    # Fill the blocks in reverse traversal order, the state visited last goes first
    measurement_states.reverse()
    i_measurement = 0
    for k, state in enumerate(measurement_states):
        size = state.calibrated_size
        i_params = k * BOUND_PARAMETERS_SIZE
        projector = state.projector
        measurement_covariance[i_measurement:i_measurement + size, i_measurement:i_measurement + size] = state.calibrated_covariance
        projection_matrix[i_measurement:i_measurement + size, i_params:i_params + BOUND_PARAMETERS_SIZE] = projector
        residual[i_measurement:i_measurement + size] = state.calibrated - np.dot(projector, state.parameters)

        if state.surface in alignment_state.aligned_surfaces:
            local_index = alignment_state.aligned_surfaces[state.surface][1]
            bound_derivative = np.array(alignment_to_bound_derivative(state.surface, state.parameters, derivative_strategies), dtype=np.float64)
            bound_derivative[:, ~align_mask] = 0.0
            i_dof = local_index * ALIGNMENT_PARAMETERS_SIZE
            alignment_to_residual_derivative[i_measurement:i_measurement + size, i_dof:i_dof + ALIGNMENT_PARAMETERS_SIZE] = -np.dot(projector, bound_derivative)

        # Correlations with all measurement states (including itself)
        row_offset = state_row_offsets[state.index]
        for k_col, state_col in enumerate(measurement_states):
            col_offset = state_row_offsets[state_col.index]
            i_col = k_col * BOUND_PARAMETERS_SIZE
            track_parameters_covariance[i_params:i_params + BOUND_PARAMETERS_SIZE, i_col:i_col + BOUND_PARAMETERS_SIZE] = global_track_params_cov[row_offset:row_offset + BOUND_PARAMETERS_SIZE, col_offset:col_offset + BOUND_PARAMETERS_SIZE]
        i_measurement += size

    residual_covariance = measurement_covariance - np.linalg.multi_dot([projection_matrix, track_parameters_covariance, projection_matrix.T])

    try:
        measurement_covariance_inverse = cho_solve(cho_factor(measurement_covariance), np.eye(measurement_dim))
    except (np.linalg.LinAlgError, ValueError) as e:  # ValueError for non-finite entries
        raise TrackEvaluationError("Measurement covariance cannot be inverted: %s" % e)
    chi2 = np.dot(residual, np.dot(measurement_covariance_inverse, residual))

    weight = np.linalg.multi_dot([measurement_covariance_inverse, residual_covariance, measurement_covariance_inverse])
    alignment_state.alignment_to_chi2_derivative = 2.0 * np.linalg.multi_dot([alignment_to_residual_derivative.T, weight, residual])
    alignment_state.alignment_to_chi2_second_derivative = 2.0 * np.linalg.multi_dot([alignment_to_residual_derivative.T, weight, alignment_to_residual_derivative])
    if not (np.isfinite(chi2) and np.all(np.isfinite(alignment_state.alignment_to_chi2_derivative)) and np.all(np.isfinite(alignment_state.alignment_to_chi2_second_derivative))):
        raise TrackEvaluationError("Chi2 or its derivatives are not finite")

    alignment_state.measurement_covariance = measurement_covariance
    alignment_state.track_parameters_covariance = track_parameters_covariance
    alignment_state.projection_matrix = projection_matrix
    alignment_state.residual = residual
    alignment_state.residual_covariance = residual_covariance
    alignment_state.alignment_to_residual_derivative = alignment_to_residual_derivative
    alignment_state.chi2 = float(chi2)
    return alignment_state
