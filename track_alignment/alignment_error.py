''' Errors raised by the alignment.
'''


class AlignmentError(RuntimeError):
    pass


class FitError(AlignmentError):
    ''' The track fit of a single track failed. '''
    pass


class TrackEvaluationError(AlignmentError):
    ''' The alignment quantities of a single fitted track cannot be calculated. '''
    pass


class NoAlignmentDofOnTrackError(AlignmentError):
    ''' The track has no measurement on any alignable surface. '''
    pass


class SingularSystemError(AlignmentError):
    ''' The alignment normal equations cannot be solved. '''
    pass


class AlignmentParametersUpdateError(AlignmentError):
    ''' A new placement was rejected by the transform updater. '''
    pass


class ConvergenceError(AlignmentError):
    ''' Maximum number of iterations reached without convergence. '''
    pass
