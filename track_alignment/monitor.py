''' Observation hooks fired by the alignment at its decision points.
'''
import logging
from collections import Counter

FIT_FAILURE = 'fit_failure'
NO_DOF_TRACK = 'no_dof_track'
SINGULAR_SYSTEM = 'singular_system'
UPDATE_FAILURE = 'update_failure'
ITERATION = 'iteration'
CONVERGED = 'converged'
NOT_CONVERGED = 'not_converged'


class AlignmentMonitor(object):
    ''' Counts events and keeps their payload.

    Subclass and override fire() to forward events elsewhere.
    '''

    def __init__(self):
        self.counters = Counter()
        self.events = []

    def fire(self, event, **kwargs):
        self.counters[event] += 1
        self.events.append((event, kwargs))

    def reset(self):
        self.counters.clear()
        del self.events[:]


class LoggingMonitor(AlignmentMonitor):
    ''' Monitor that also writes every event to the log.
    '''

    def fire(self, event, **kwargs):
        super(LoggingMonitor, self).fire(event, **kwargs)
        if event == FIT_FAILURE:
            logging.warning('Fit of track %d failed: %s', kwargs['track_index'], kwargs['error'])
        elif event == NO_DOF_TRACK:
            logging.debug('Track %d has no measurement on an alignable DUT', kwargs['track_index'])
        elif event == SINGULAR_SYSTEM:
            logging.warning('Alignment normal equations are singular in iteration %d, applying best effort solution (fix global modes with the DOF mask or more fixed DUTs)', kwargs['iteration'])
        elif event == UPDATE_FAILURE:
            logging.error('Update of alignment parameters of %s failed', kwargs['surface_name'])
        elif event == ITERATION:
            logging.info('Iteration %d: %d tracks, average chi2/ndf = %.5f, delta chi2 = %.5f', kwargs['iteration'], kwargs['n_tracks'], kwargs['average_chi2_ndf'], kwargs['delta_chi2'])
        elif event == CONVERGED:
            logging.info('Alignment converged in iteration %d (%s)', kwargs['iteration'], kwargs['criterion'])
        elif event == NOT_CONVERGED:
            logging.warning('Alignment did not converge after %d iterations', kwargs['max_iterations'])
