''' Track based alignment of DUT placements.

The alignment iterates: fit all tracks with the current geometry, build the
chi2 derivatives of every track, sum them into the normal equations, solve
for a placement correction and commit the new placements through the
transform updater. It stops when the average chi2/ndf drops below a cutoff,
when the average chi2/ndf does not change anymore or after a maximum number
of iterations.
'''
import logging
from collections import deque
from enum import Enum
from multiprocessing.pool import ThreadPool

import numpy as np
from tqdm import tqdm

from track_alignment.alignment_engine import track_alignment_state
from track_alignment.alignment_error import AlignmentError, AlignmentParametersUpdateError, ConvergenceError, FitError, NoAlignmentDofOnTrackError, SingularSystemError, TrackEvaluationError
from track_alignment.event_data import ALIGNMENT_PARAMETERS_SIZE, alignment_parameter_names
from track_alignment.monitor import CONVERGED, FIT_FAILURE, ITERATION, NO_DOF_TRACK, NOT_CONVERGED, SINGULAR_SYSTEM, UPDATE_FAILURE, LoggingMonitor
from track_alignment.normal_equations import NormalEquations, solve_normal_equations
from track_alignment.telescope.telescope import open_configuration
from track_alignment.tools import geometry_utils
from track_alignment.tools.kalman import global_track_parameters_covariance

singular_policies = ("warn", "raise")


def _to_align_mask(value):
    ''' Six free/fixed flags from a sequence or a string of "0"/"1" in parameter order. '''
    if isinstance(value, str):
        if len(value) != ALIGNMENT_PARAMETERS_SIZE or set(value) - set("01"):
            raise ValueError("Alignment mask string must have %d characters of 0 and 1." % ALIGNMENT_PARAMETERS_SIZE)
        value = [character == "1" for character in value]
    align_mask = np.array(value, dtype=np.bool_).reshape(-1)
    if align_mask.shape != (ALIGNMENT_PARAMETERS_SIZE,):
        raise ValueError("Alignment mask must have %d entries." % ALIGNMENT_PARAMETERS_SIZE)
    return align_mask


class AlignmentOptions(object):
    ''' Configuration of one alignment run. Read-only after creation.

    Parameters
    ----------
    fit_options : object
        Passed to the fitter. Its attribute geometry_context (if any) is
        passed to the transform updater.
    aligned_transform_updater : callable
        updater(surface, context, transform) -> bool, commits a new placement.
    aligned_detector_elements : list
        The alignable DUTs. Their position in the list is their global index.
    chi2_ndf_cutoff : float
        Converged if the average chi2/ndf is below or equal to this value.
    delta_chi2_ndf_cutoff : tuple
        (window, epsilon): converged if the average chi2/ndf changed by at
        most epsilon over the last window iterations.
    max_iterations : int
        Maximum number of iterations.
    iteration_state : dict
        Iteration -> six free/fixed flags (center x, y, z, rotation x, y, z).
        Iterations not listed have all parameters free.
    singular_policy : str
        "warn": a singular system is logged and the best-effort correction is
        applied. "raise": a singular system aborts the alignment.
    '''

    def __init__(self, fit_options, aligned_transform_updater, aligned_detector_elements, chi2_ndf_cutoff=0.05, delta_chi2_ndf_cutoff=(10, 0.00001), max_iterations=5, iteration_state=None, singular_policy="warn"):
        if not callable(aligned_transform_updater):
            raise ValueError("Parameter \"aligned_transform_updater\" must be callable.")
        aligned_detector_elements = list(aligned_detector_elements)
        if len(set(id(element) for element in aligned_detector_elements)) != len(aligned_detector_elements):
            raise ValueError("Parameter \"aligned_detector_elements\" contains duplicates.")
        window, epsilon = delta_chi2_ndf_cutoff
        if int(window) < 1:
            raise ValueError("Window of parameter \"delta_chi2_ndf_cutoff\" must be at least 1.")
        if float(epsilon) < 0.0:
            raise ValueError("Epsilon of parameter \"delta_chi2_ndf_cutoff\" must not be negative.")
        if int(max_iterations) < 1:
            raise ValueError("Parameter \"max_iterations\" must be at least 1.")
        if singular_policy not in singular_policies:
            raise ValueError("Parameter \"singular_policy\" must be one of %s." % ", ".join(singular_policies))
        self._fit_options = fit_options
        self._aligned_transform_updater = aligned_transform_updater
        self._aligned_detector_elements = tuple(aligned_detector_elements)
        self._chi2_ndf_cutoff = float(chi2_ndf_cutoff)
        self._delta_chi2_ndf_cutoff = (int(window), float(epsilon))
        self._max_iterations = int(max_iterations)
        self._iteration_state = {} if iteration_state is None else {int(iteration): _to_align_mask(mask) for iteration, mask in iteration_state.items()}
        self._singular_policy = singular_policy

    @classmethod
    def from_configuration(cls, configuration, fit_options, aligned_transform_updater, aligned_detector_elements):
        ''' Creates the options from the ALIGNMENT section of a configuration.

        Parameters
        ----------
        configuration : str or dict
            YAML file name, YAML string or dict.
        '''
        configuration = open_configuration(configuration)
        alignment_configuration = configuration.get("ALIGNMENT") or {}
        kwargs = {key: alignment_configuration[key] for key in ("chi2_ndf_cutoff", "max_iterations", "iteration_state", "singular_policy") if key in alignment_configuration}
        if "delta_chi2_ndf_cutoff" in alignment_configuration:
            kwargs["delta_chi2_ndf_cutoff"] = tuple(alignment_configuration["delta_chi2_ndf_cutoff"])
        return cls(fit_options=fit_options, aligned_transform_updater=aligned_transform_updater, aligned_detector_elements=aligned_detector_elements, **kwargs)

    @property
    def fit_options(self):
        return self._fit_options

    @property
    def aligned_transform_updater(self):
        return self._aligned_transform_updater

    @property
    def aligned_detector_elements(self):
        return self._aligned_detector_elements

    @property
    def chi2_ndf_cutoff(self):
        return self._chi2_ndf_cutoff

    @property
    def delta_chi2_ndf_cutoff(self):
        return self._delta_chi2_ndf_cutoff

    @property
    def max_iterations(self):
        return self._max_iterations

    @property
    def iteration_state(self):
        return dict(self._iteration_state)

    @property
    def singular_policy(self):
        return self._singular_policy

    def align_mask(self, iteration):
        ''' Free parameters in the given iteration. '''
        if iteration in self._iteration_state:
            return self._iteration_state[iteration].copy()
        return np.ones(ALIGNMENT_PARAMETERS_SIZE, dtype=np.bool_)


class AlignmentStatus(Enum):
    RUNNING = "running"
    CONVERGED = "converged"
    NOT_CONVERGED = "not converged"


class AlignmentResult(object):
    ''' Result of an alignment run, updated in every iteration.
    '''

    def __init__(self):
        self.delta_alignment_parameters = None
        # DUT -> 4x4 transformation matrix, filled when the run has terminated
        self.aligned_parameters = {}
        self.alignment_covariance = None
        self.average_chi2_ndf = np.inf
        self.delta_chi2 = np.inf
        self.chi2 = 0.0
        self.measurement_dim = 0
        self.alignment_dof = 0
        self.n_tracks = 0
        self.n_failed_tracks = 0
        self.singular_system = False
        self.iteration = -1
        self.n_iterations = 0
        self.chi2_ndf_history = []
        self.status = AlignmentStatus.RUNNING

    @property
    def converged(self):
        return self.status == AlignmentStatus.CONVERGED

    def raise_for_status(self):
        ''' Raises ConvergenceError if the alignment did not converge. '''
        if self.status == AlignmentStatus.NOT_CONVERGED:
            raise ConvergenceError("Alignment did not converge within %d iterations." % self.n_iterations)


class Alignment(object):
    ''' Iterative track based alignment.

    Parameters
    ----------
    fitter : object
        Track fit service with fit(source_links, start_parameters, fit_options)
        returning a Trajectory or raising FitError.
    global_covariance : callable
        trajectory -> (covariance, state index -> offset).
    derivative_strategies : dict
        Surface kind -> derivative function, default see alignment_engine.
    monitor : AlignmentMonitor
        Receives the alignment events. Default: LoggingMonitor.
    n_threads : int
        Number of threads for the track evaluation. 1 evaluates in the calling thread.
    progress_bar : bool
        Show a progress bar over the tracks.
    '''

    def __init__(self, fitter, global_covariance=global_track_parameters_covariance, derivative_strategies=None, monitor=None, n_threads=1, progress_bar=True):
        self.fitter = fitter
        self.global_covariance = global_covariance
        self.derivative_strategies = derivative_strategies
        self.monitor = LoggingMonitor() if monitor is None else monitor
        if int(n_threads) < 1:
            raise ValueError("Parameter \"n_threads\" must be at least 1.")
        self.n_threads = int(n_threads)
        self.progress_bar = progress_bar

    def evaluate_track_alignment_state(self, source_links, start_parameters, fit_options, idxed_align_surfaces, align_mask=None):
        ''' Fits one track and calculates its alignment state.

        Raises
        ------
        FitError
            The track fit failed.
        NoAlignmentDofOnTrackError
            The track has no measurement on an alignable DUT.
        '''
        trajectory = self.fitter.fit(source_links, start_parameters, fit_options)
        global_track_params_cov, state_row_offsets = self.global_covariance(trajectory)
        alignment_state = track_alignment_state(
            trajectory=trajectory,
            global_track_params_cov=global_track_params_cov,
            state_row_offsets=state_row_offsets,
            idxed_align_surfaces=idxed_align_surfaces,
            align_mask=align_mask,
            derivative_strategies=self.derivative_strategies)
        if alignment_state.alignment_dof == 0:
            raise NoAlignmentDofOnTrackError("No alignment degree of freedom on track.")
        return alignment_state

    def _evaluate_track(self, track_index, source_links, start_parameters, fit_options, idxed_align_surfaces, align_mask):
        # Returns (track index, alignment state or None, error or None)
        try:
            return track_index, self.evaluate_track_alignment_state(source_links, start_parameters, fit_options, idxed_align_surfaces, align_mask), None
        except (FitError, TrackEvaluationError, NoAlignmentDofOnTrackError) as e:
            return track_index, None, e

    def _evaluate_tracks(self, source_links_collection, start_parameters_collection, fit_options, idxed_align_surfaces, align_mask):
        ''' Yields (track index, alignment state, error) in track order. '''
        n_tracks = len(source_links_collection)
        pbar = tqdm(total=n_tracks, ncols=80, disable=not self.progress_bar)
        try:
            if self.n_threads == 1:
                for track_index in range(n_tracks):
                    yield self._evaluate_track(track_index, source_links_collection[track_index], start_parameters_collection[track_index], fit_options, idxed_align_surfaces, align_mask)
                    pbar.update(1)
            else:
                pool = ThreadPool(self.n_threads)
                try:
                    results = [pool.apply_async(self._evaluate_track, args=(track_index, source_links_collection[track_index], start_parameters_collection[track_index], fit_options, idxed_align_surfaces, align_mask)) for track_index in range(n_tracks)]
                    for result in results:
                        yield result.get()
                        pbar.update(1)
                finally:
                    pool.close()
                    pool.join()
        finally:
            pbar.close()

    def update_alignment_parameters(self, source_links_collection, start_parameters_collection, fit_options, aligned_detector_elements, aligned_transform_updater, alignment_result, align_mask=None, iteration=0, singular_policy="warn"):
        ''' One alignment iteration: evaluate all tracks, solve and commit the new placements.

        Parameters
        ----------
        source_links_collection : list
            Source links of each track.
        start_parameters_collection : list
            Start parameters of each track.
        fit_options : object
            Passed to the fitter.
        aligned_detector_elements : list
            Alignable DUTs, the list position is the global index.
        aligned_transform_updater : callable
            updater(surface, context, transform) -> bool.
        alignment_result : AlignmentResult
            Updated in place.
        align_mask : array of bool
            Free placement parameters.
        '''
        if align_mask is None:
            align_mask = np.ones(ALIGNMENT_PARAMETERS_SIZE, dtype=np.bool_)
        idxed_align_surfaces = {element: index for index, element in enumerate(aligned_detector_elements)}
        normal_equations = NormalEquations(n_alignable=len(aligned_detector_elements))

        n_failed_tracks = 0
        for track_index, alignment_state, error in self._evaluate_tracks(source_links_collection, start_parameters_collection, fit_options, idxed_align_surfaces, align_mask):
            if isinstance(error, (FitError, TrackEvaluationError)):
                n_failed_tracks += 1
                self.monitor.fire(FIT_FAILURE, track_index=track_index, error=error)
            elif isinstance(error, NoAlignmentDofOnTrackError):
                self.monitor.fire(NO_DOF_TRACK, track_index=track_index)
            else:
                normal_equations.add_track(alignment_state)

        if normal_equations.n_tracks == 0:
            raise AlignmentError("No track contributed to the alignment.")

        alignment_result.chi2 = normal_equations.chi2
        alignment_result.measurement_dim = normal_equations.measurement_dim
        alignment_result.n_tracks = normal_equations.n_tracks
        alignment_result.n_failed_tracks = n_failed_tracks
        alignment_result.average_chi2_ndf = normal_equations.average_chi2_ndf
        alignment_result.alignment_dof = normal_equations.alignment_dof

        free_dofs = np.tile(align_mask, len(aligned_detector_elements))
        delta, covariance, delta_chi2, singular = solve_normal_equations(
            gradient=normal_equations.gradient,
            hessian=normal_equations.hessian,
            free_dofs=free_dofs)
        alignment_result.delta_alignment_parameters = delta
        alignment_result.alignment_covariance = covariance
        alignment_result.delta_chi2 = delta_chi2
        if singular:
            alignment_result.singular_system = True
            self.monitor.fire(SINGULAR_SYSTEM, iteration=iteration)
            if singular_policy == "raise":
                raise SingularSystemError("Alignment normal equations are singular in iteration %d." % iteration)
            # Best effort: drop the parameters without a finite solution
            delta = np.where(np.isfinite(delta), delta, 0.0)
            alignment_result.delta_alignment_parameters = delta

        context = getattr(fit_options, "geometry_context", None)
        new_transforms = []
        for index, element in enumerate(aligned_detector_elements):
            element_delta = delta[index * ALIGNMENT_PARAMETERS_SIZE:(index + 1) * ALIGNMENT_PARAMETERS_SIZE]
            new_transforms.append(self._updated_transform(element.transform, element_delta))

        committed = []
        for element, transform in zip(aligned_detector_elements, new_transforms):
            old_transform = element.transform
            surface_name = getattr(element, "name", str(element))
            try:
                updated = aligned_transform_updater(element, context, transform)
            except Exception:
                self.monitor.fire(UPDATE_FAILURE, surface_name=surface_name, iteration=iteration)
                self._restore_transforms(committed, aligned_transform_updater, context, iteration)
                raise
            if not updated:
                self.monitor.fire(UPDATE_FAILURE, surface_name=surface_name, iteration=iteration)
                self._restore_transforms(committed, aligned_transform_updater, context, iteration)
                raise AlignmentParametersUpdateError("Update of alignment parameters of %s failed." % surface_name)
            committed.append((element, old_transform))
        return alignment_result

    def _restore_transforms(self, committed, aligned_transform_updater, context, iteration):
        ''' Restores the placements committed in this iteration, last committed first.

        A rejected restore is reported and the remaining elements are still restored.
        '''
        for element, transform in reversed(committed):
            surface_name = getattr(element, "name", str(element))
            try:
                restored = aligned_transform_updater(element, context, transform)
            except Exception as e:
                logging.error('Restoring placement of %s raised: %s', surface_name, e)
                restored = False
            if not restored:
                logging.error('Restoring placement of %s failed, placement is left modified', surface_name)
                self.monitor.fire(UPDATE_FAILURE, surface_name=surface_name, iteration=iteration)

    @staticmethod
    def _updated_transform(transform, delta):
        ''' Applies a placement correction to a 4x4 transformation matrix.

        The center is shifted by delta[0:3], the Z-Y-X Euler angles of the
        rotation are incremented by delta[3:6].
        '''
        x, y, z, alpha, beta, gamma = geometry_utils.transformation_matrix_to_parameters(transform)
        return geometry_utils.local_to_global_transformation_matrix(
            x=x + delta[0],
            y=y + delta[1],
            z=z + delta[2],
            alpha=alpha + delta[3],
            beta=beta + delta[4],
            gamma=gamma + delta[5])

    def align(self, source_links_collection, start_parameters_collection, alignment_options):
        ''' Iterative alignment of the DUTs in alignment_options.

        Parameters
        ----------
        source_links_collection : list
            Source links of each track.
        start_parameters_collection : list
            Start parameters of each track, same length as source_links_collection.
        alignment_options : AlignmentOptions

        Returns
        -------
        AlignmentResult with status CONVERGED or NOT_CONVERGED.

        Raises
        ------
        SingularSystemError
            If the normal equations are singular and the policy is "raise".
        AlignmentParametersUpdateError
            If a new placement was rejected.
        AlignmentError
            If no track contributed in an iteration.
        '''
        if len(source_links_collection) != len(start_parameters_collection):
            raise ValueError("Number of source link collections (%d) and start parameters (%d) differ." % (len(source_links_collection), len(start_parameters_collection)))
        aligned_detector_elements = alignment_options.aligned_detector_elements
        window, epsilon = alignment_options.delta_chi2_ndf_cutoff
        recent_chi2_ndf = deque()
        alignment_result = AlignmentResult()

        logging.info('=== Alignment of %d DUTs with %d tracks ===', len(aligned_detector_elements), len(source_links_collection))
        for iteration in range(alignment_options.max_iterations):
            align_mask = alignment_options.align_mask(iteration)
            logging.info('= Alignment iteration %d, free parameters: %s =', iteration, ", ".join(name for name, free in zip(alignment_parameter_names, align_mask) if free) or 'none')
            self.update_alignment_parameters(
                source_links_collection=source_links_collection,
                start_parameters_collection=start_parameters_collection,
                fit_options=alignment_options.fit_options,
                aligned_detector_elements=aligned_detector_elements,
                aligned_transform_updater=alignment_options.aligned_transform_updater,
                alignment_result=alignment_result,
                align_mask=align_mask,
                iteration=iteration,
                singular_policy=alignment_options.singular_policy)
            alignment_result.iteration = iteration
            alignment_result.n_iterations = iteration + 1
            alignment_result.chi2_ndf_history.append(alignment_result.average_chi2_ndf)
            self.monitor.fire(ITERATION, iteration=iteration, n_tracks=alignment_result.n_tracks, average_chi2_ndf=alignment_result.average_chi2_ndf, delta_chi2=alignment_result.delta_chi2)

            if alignment_result.average_chi2_ndf <= alignment_options.chi2_ndf_cutoff:
                alignment_result.status = AlignmentStatus.CONVERGED
                self.monitor.fire(CONVERGED, iteration=iteration, criterion='chi2/ndf cutoff')
                break
            if len(recent_chi2_ndf) >= window:
                if abs(recent_chi2_ndf[0] - alignment_result.average_chi2_ndf) <= epsilon:
                    alignment_result.status = AlignmentStatus.CONVERGED
                    self.monitor.fire(CONVERGED, iteration=iteration, criterion='chi2/ndf plateau')
                    break
                recent_chi2_ndf.popleft()
            recent_chi2_ndf.append(alignment_result.average_chi2_ndf)
        else:
            alignment_result.status = AlignmentStatus.NOT_CONVERGED
            self.monitor.fire(NOT_CONVERGED, max_iterations=alignment_options.max_iterations)

        for element in aligned_detector_elements:
            transform = element.transform
            alignment_result.aligned_parameters[element] = transform
            x, y, z, alpha, beta, gamma = geometry_utils.transformation_matrix_to_parameters(transform)
            logging.info('%s: translation = (%.3f, %.3f, %.3f) um, rotation = (%.6f, %.6f, %.6f) rad', getattr(element, "name", str(element)), x, y, z, alpha, beta, gamma)
        return alignment_result
