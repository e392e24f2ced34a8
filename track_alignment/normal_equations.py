''' Global alignment normal equations.

The chi2 derivatives of all tracks are summed into one gradient vector and
one Hessian matrix indexed by (global surface index * 6 + parameter), and
the linearized system H * delta = -g is solved for the parameter correction.
'''
import numpy as np
from numba import njit

from track_alignment.event_data import ALIGNMENT_PARAMETERS_SIZE


@njit(cache=True)
def _scatter_add(gradient, hessian, track_gradient, track_hessian, global_indices, local_indices):
    ''' Adds the 6-blocks of one track to the global system.
    '''
    n_dof = ALIGNMENT_PARAMETERS_SIZE
    for i in range(global_indices.shape[0]):
        row_global = global_indices[i] * n_dof
        row_local = local_indices[i] * n_dof
        for k in range(n_dof):
            gradient[row_global + k] += track_gradient[row_local + k]
        for j in range(global_indices.shape[0]):
            col_global = global_indices[j] * n_dof
            col_local = local_indices[j] * n_dof
            for k in range(n_dof):
                for l in range(n_dof):
                    hessian[row_global + k, col_global + l] += track_hessian[row_local + k, col_local + l]


@njit(cache=True)
def _full_pivot_lu(A):
    ''' LU decomposition with complete pivoting: P * A * Q = L * U.

    Returns
    -------
    lu : array
        Unit lower triangle L (below the diagonal) and U (upper triangle).
    row_permutation, column_permutation : array
        Row k of P * A is row row_permutation[k] of A, same for columns.
    max_pivot : float
        Largest absolute pivot.
    '''
    n = A.shape[0]
    lu = A.copy()
    row_permutation = np.arange(n)
    column_permutation = np.arange(n)
    max_pivot = 0.0
    for k in range(n):
        biggest = 0.0
        pivot_row = k
        pivot_column = k
        for i in range(k, n):
            for j in range(k, n):
                if abs(lu[i, j]) > biggest:
                    biggest = abs(lu[i, j])
                    pivot_row = i
                    pivot_column = j
        if biggest == 0.0:
            break
        if biggest > max_pivot:
            max_pivot = biggest
        if pivot_row != k:
            for j in range(n):
                tmp = lu[k, j]
                lu[k, j] = lu[pivot_row, j]
                lu[pivot_row, j] = tmp
            tmp_index = row_permutation[k]
            row_permutation[k] = row_permutation[pivot_row]
            row_permutation[pivot_row] = tmp_index
        if pivot_column != k:
            for i in range(n):
                tmp = lu[i, k]
                lu[i, k] = lu[i, pivot_column]
                lu[i, pivot_column] = tmp
            tmp_index = column_permutation[k]
            column_permutation[k] = column_permutation[pivot_column]
            column_permutation[pivot_column] = tmp_index
        for i in range(k + 1, n):
            lu[i, k] /= lu[k, k]
            for j in range(k + 1, n):
                lu[i, j] -= lu[i, k] * lu[k, j]

    return lu, row_permutation, column_permutation, max_pivot


@njit(cache=True)
def _full_pivot_lu_solve(lu, row_permutation, column_permutation, rank, b):
    ''' Solves A * x = b with the decomposition of _full_pivot_lu.

    Unknowns beyond the rank are set to zero.
    '''
    n = lu.shape[0]
    c = np.empty(n)
    for i in range(n):
        c[i] = b[row_permutation[i]]
    # L has unit diagonal
    for i in range(n):
        for j in range(min(i, rank)):
            c[i] -= lu[i, j] * c[j]
    y = np.zeros(n)
    for i in range(rank - 1, -1, -1):
        s = c[i]
        for j in range(i + 1, rank):
            s -= lu[i, j] * y[j]
        y[i] = s / lu[i, i]
    x = np.zeros(n)
    for i in range(n):
        x[column_permutation[i]] = y[i]
    return x


class NormalEquations(object):
    ''' Sum of the chi2 derivatives of all tracks.

    Parameters
    ----------
    n_alignable : int
        Number of alignable surfaces.
    '''

    def __init__(self, n_alignable):
        self.n_alignable = n_alignable
        self.alignment_dof = ALIGNMENT_PARAMETERS_SIZE * n_alignable
        self.gradient = np.zeros(shape=self.alignment_dof, dtype=np.float64)
        self.hessian = np.zeros(shape=(self.alignment_dof, self.alignment_dof), dtype=np.float64)
        self.chi2 = 0.0
        self.measurement_dim = 0
        self.sum_chi2_ndf = 0.0
        self.n_tracks = 0

    def add_track(self, track_alignment_state):
        ''' Adds one track. Tracks without alignment DOF are ignored.

        Returns
        -------
        True if the track was added.
        '''
        if track_alignment_state.alignment_dof == 0:
            return False
        global_indices = np.empty(len(track_alignment_state.aligned_surfaces), dtype=np.int64)
        local_indices = np.empty(len(track_alignment_state.aligned_surfaces), dtype=np.int64)
        for i, (global_index, local_index) in enumerate(track_alignment_state.aligned_surfaces.values()):
            if global_index >= self.n_alignable:
                raise ValueError("Global surface index %d out of range." % global_index)
            global_indices[i] = global_index
            local_indices[i] = local_index
        _scatter_add(
            self.gradient,
            self.hessian,
            np.ascontiguousarray(track_alignment_state.alignment_to_chi2_derivative, dtype=np.float64),
            np.ascontiguousarray(track_alignment_state.alignment_to_chi2_second_derivative, dtype=np.float64),
            global_indices,
            local_indices)
        self.chi2 += track_alignment_state.chi2
        self.measurement_dim += track_alignment_state.measurement_dim
        self.sum_chi2_ndf += track_alignment_state.chi2 / track_alignment_state.measurement_dim
        self.n_tracks += 1
        return True

    @property
    def average_chi2_ndf(self):
        if self.n_tracks == 0:
            return np.nan
        return self.sum_chi2_ndf / self.n_tracks


def solve_normal_equations(gradient, hessian, free_dofs=None):
    ''' Solves H * delta = -g with a full pivot LU decomposition.

    Parameters
    ----------
    gradient : array
        Chi2 gradient g.
    hessian : array
        Chi2 Hessian H.
    free_dofs : array of bool
        Parameters that are solved for. Fixed parameters get a zero
        correction and zero covariance. If None, all are free.

    Returns
    -------
    delta : array
        Parameter correction.
    covariance : array
        Parameter covariance 2 * H^-1 (nan if H is singular).
    delta_chi2 : float
        Expected chi2 change 0.5 * g^T * delta.
    singular : bool
        True if H is not finite, rank deficient or the solution is not finite.
    '''
    gradient = np.asarray(gradient, dtype=np.float64)
    hessian = np.asarray(hessian, dtype=np.float64)
    n = gradient.shape[0]
    if hessian.shape != (n, n):
        raise ValueError("Hessian with shape %s does not match gradient with shape %s." % (hessian.shape, gradient.shape))
    if free_dofs is None:
        free_dofs = np.ones(n, dtype=np.bool_)
    free_dofs = np.asarray(free_dofs, dtype=np.bool_)

    delta = np.zeros(n, dtype=np.float64)
    covariance = np.zeros(shape=(n, n), dtype=np.float64)
    n_free = int(np.count_nonzero(free_dofs))
    if n_free == 0:
        return delta, covariance, 0.0, False

    free_gradient = np.ascontiguousarray(gradient[free_dofs])
    free_hessian = np.ascontiguousarray(hessian[np.ix_(free_dofs, free_dofs)])
    if not (np.all(np.isfinite(free_gradient)) and np.all(np.isfinite(free_hessian))):
        delta[free_dofs] = np.nan
        covariance[np.ix_(free_dofs, free_dofs)] = np.nan
        return delta, covariance, np.nan, True

    lu, row_permutation, column_permutation, max_pivot = _full_pivot_lu(free_hessian)
    # Pivots below eps * n * max|pivot| count as zero
    threshold = np.finfo(np.float64).eps * n_free * max_pivot
    rank = int(np.count_nonzero(np.abs(np.diag(lu)) > threshold))
    free_delta = _full_pivot_lu_solve(lu, row_permutation, column_permutation, rank, -free_gradient)
    singular = rank < n_free or not np.all(np.isfinite(free_delta))

    if singular:
        free_covariance = np.full((n_free, n_free), np.nan)
    else:
        free_covariance = np.empty((n_free, n_free))
        identity = np.eye(n_free)
        for i in range(n_free):
            free_covariance[:, i] = _full_pivot_lu_solve(lu, row_permutation, column_permutation, rank, identity[i])
        free_covariance *= 2.0
        singular = not np.all(np.isfinite(free_covariance))

    delta[free_dofs] = free_delta
    covariance[np.ix_(free_dofs, free_dofs)] = free_covariance
    delta_chi2 = 0.5 * np.dot(gradient, delta)
    return delta, covariance, float(delta_chi2), bool(singular)
