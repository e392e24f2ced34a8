''' Event data exchanged between the track fit and the alignment.

Bound track parameters are defined on a plane: local intercept (loc0, loc1),
local slopes (slope0 = du/dw, slope1 = dv/dw), charge over momentum and time.
'''
import numpy as np

# Bound track parameter indices
LOC_0, LOC_1, SLOPE_0, SLOPE_1, QOP, TIME = range(6)
BOUND_PARAMETERS_SIZE = 6

# Alignment parameter indices of one surface
CENTER_0, CENTER_1, CENTER_2, ROTATION_0, ROTATION_1, ROTATION_2 = range(6)
ALIGNMENT_PARAMETERS_SIZE = 6
alignment_parameter_names = ["center_x", "center_y", "center_z", "rotation_x", "rotation_y", "rotation_z"]


class SourceLink(object):
    ''' Calibrated 2D pixel measurement on a detector plane.
    '''

    def __init__(self, surface, values, covariance, dim=2):
        if dim != 2:
            raise ValueError("Only 2D pixel measurements are supported, got dimension %d." % dim)
        self.surface = surface
        self.values = values
        self.covariance = covariance

    @property
    def values(self):
        return self._values

    @values.setter
    def values(self, values):
        values = np.array(values, dtype=np.float64).reshape(-1)
        if values.shape != (2,):
            raise ValueError("Measurement values must have shape (2,).")
        self._values = values

    @property
    def covariance(self):
        return self._covariance

    @covariance.setter
    def covariance(self, covariance):
        covariance = np.array(covariance, dtype=np.float64)
        if covariance.shape != (2, 2):
            raise ValueError("Measurement covariance must have shape (2, 2).")
        self._covariance = covariance

    @property
    def dim(self):
        return self._values.shape[0]

    @property
    def projector(self):
        ''' Projects the bound parameters onto the measured local position. '''
        projector = np.zeros(shape=(2, BOUND_PARAMETERS_SIZE), dtype=np.float64)
        projector[0, LOC_0] = 1.0
        projector[1, LOC_1] = 1.0
        return projector


class TrackParameters(object):
    ''' Bound track parameters with covariance on a reference surface.
    '''

    def __init__(self, surface, parameters, covariance):
        self.surface = surface
        self.parameters = np.array(parameters, dtype=np.float64).reshape(-1)
        self.covariance = np.array(covariance, dtype=np.float64)
        if self.parameters.shape != (BOUND_PARAMETERS_SIZE,):
            raise ValueError("Track parameters must have shape (%d,)." % BOUND_PARAMETERS_SIZE)
        if self.covariance.shape != (BOUND_PARAMETERS_SIZE, BOUND_PARAMETERS_SIZE):
            raise ValueError("Track parameter covariance must have shape (%d, %d)." % (BOUND_PARAMETERS_SIZE, BOUND_PARAMETERS_SIZE))


class TrackState(object):
    ''' One state of a fitted trajectory.

    All parameter vectors have BOUND_PARAMETERS_SIZE entries and are given in
    the local frame of the state's surface. The jacobian transports the
    parameters from the previous state to this one, the smoothing gain links
    the smoothed estimate of this state to the next one.
    '''

    def __init__(self, index, surface, source_link=None):
        self.index = index
        self.surface = surface
        self.source_link = source_link
        self.predicted = None
        self.predicted_covariance = None
        self.filtered = None
        self.filtered_covariance = None
        self.smoothed = None
        self.smoothed_covariance = None
        self.jacobian = None
        self.smoothing_gain = None
        self.chi2 = 0.0

    @property
    def has_measurement(self):
        return self.source_link is not None

    @property
    def calibrated(self):
        return self.source_link.values

    @property
    def calibrated_covariance(self):
        return self.source_link.covariance

    @property
    def calibrated_size(self):
        return self.source_link.dim

    @property
    def projector(self):
        return self.source_link.projector

    @property
    def has_smoothed(self):
        return self.smoothed is not None

    @property
    def parameters(self):
        ''' Best estimate: smoothed if available, else filtered. '''
        return self.smoothed if self.smoothed is not None else self.filtered

    @property
    def covariance(self):
        return self.smoothed_covariance if self.smoothed_covariance is not None else self.filtered_covariance


class Trajectory(object):
    ''' Ordered sequence of track states along the track direction.
    '''

    def __init__(self, states=None):
        self.states = [] if states is None else list(states)

    def __len__(self):
        return len(self.states)

    def __getitem__(self, key):
        return self.states[key]

    def __iter__(self):
        return iter(self.states)

    def add_state(self, surface, source_link=None):
        state = TrackState(index=len(self.states), surface=surface, source_link=source_link)
        self.states.append(state)
        return state

    def visit_backwards(self):
        ''' Yield the states from the last (tip) to the first. '''
        for state in reversed(self.states):
            yield state

    @property
    def measurement_states(self):
        return [state for state in self.states if state.has_measurement]

    @property
    def chi2(self):
        return sum(state.chi2 for state in self.states)

    @property
    def ndf(self):
        return sum(state.calibrated_size for state in self.measurement_states) - 4
