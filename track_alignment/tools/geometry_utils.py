''' Helper functions for the rigid placement of detector planes.

A placement is described by a translation (x, y, z) of the plane center and
three rotation angles (alpha, beta, gamma) around the global x, y and z axes.
The local-to-global rotation is R = Rz(gamma) * Ry(beta) * Rx(alpha).
'''
import logging

import numpy as np


def get_line_intersections_with_plane(line_origins, line_directions, position_plane, normal_plane):
    ''' Calculates the intersection of n lines with one plane.

    If there is no intersection point (line is parallel to plane or the line is
    in the plane) the intersection point is set to nan.

    Parameters
    ----------
    line_origins : array
        A point (x, y and z) on the line for each of the n lines.
    line_directions : array
        The direction vector of the line for n lines.
    position_plane : array
        A point (x, y and z) on the plane.
    normal_plane : array
        The normal vector (x, y and z) of the plane.

    Returns
    -------
    Array with shape (n, 3) with the intersection point.
    '''
    line_origins = np.atleast_2d(line_origins)
    line_directions = np.atleast_2d(line_directions)
    offsets = position_plane[np.newaxis, :] - line_origins

    norm_dot_off = np.dot(normal_plane, offsets.T)
    norm_dot_dir = np.atleast_1d(np.dot(normal_plane, line_directions.T))

    t = np.full_like(norm_dot_off, fill_value=np.nan, dtype=np.float64)
    if np.any(norm_dot_dir == 0):
        logging.warning('Some line plane intersection could not be calculated')
    sel = norm_dot_dir != 0
    t[sel] = norm_dot_off[sel] / norm_dot_dir[sel]

    return line_origins + line_directions * t[:, np.newaxis]


def rotation_matrix_x(alpha):
    ''' Rotation around the x axis by alpha (radians), right-handed.
    '''
    return np.array([[1, 0, 0],
                     [0, np.cos(alpha), -np.sin(alpha)],
                     [0, np.sin(alpha), np.cos(alpha)]],
                    dtype=np.float64)


def rotation_matrix_y(beta):
    ''' Rotation around the y axis by beta (radians), right-handed.
    '''
    return np.array([[np.cos(beta), 0, np.sin(beta)],
                     [0, 1, 0],
                     [-np.sin(beta), 0, np.cos(beta)]],
                    dtype=np.float64)


def rotation_matrix_z(gamma):
    ''' Rotation around the z axis by gamma (radians), right-handed.
    '''
    return np.array([[np.cos(gamma), -np.sin(gamma), 0],
                     [np.sin(gamma), np.cos(gamma), 0],
                     [0, 0, 1]],
                    dtype=np.float64)


def rotation_matrix(alpha, beta, gamma):
    ''' Local-to-global rotation matrix of a plane.

    Note
    ----
    The matrix represents a rotation around the x axis, then the y axis,
    and then the z axis: R = Rz(gamma) * Ry(beta) * Rx(alpha). The columns
    of R are the local u, v and w (normal) axes in the global system.

    Parameters
    ----------
    alpha : float
        Angle in radians for rotation around x.
    beta : float
        Angle in radians for rotation around y.
    gamma : float
        Angle in radians for rotation around z.

    Returns
    -------
    Array with shape (3, 3).
    '''
    return np.linalg.multi_dot([rotation_matrix_z(gamma=gamma), rotation_matrix_y(beta=beta), rotation_matrix_x(alpha=alpha)])


def is_rotation_matrix(R):
    ''' True if R is a proper (det = +1) orthogonal 3x3 matrix.
    '''
    R = np.asarray(R, dtype=np.float64)
    if R.shape != (3, 3) or not np.all(np.isfinite(R)):
        return False
    norm = np.linalg.norm(np.identity(3, dtype=R.dtype) - np.dot(R.T, R))
    return bool(np.isclose(0.0, norm) and np.isclose(np.linalg.det(R), 1.0))


def euler_angles(R):
    ''' Calculates the Z-Y-X Euler angles from rotation matrix R.

    Note
    ----
    Inverse of rotation_matrix(): R = Rz(gamma) * Ry(beta) * Rx(alpha).
    In cases of beta = pi/2 and -pi/2, gamma and alpha are linked (gimbal lock).
    In this case, gamma is set to zero. Otherwise the solution with the
    smaller absolute angles is chosen.

    Parameters
    ----------
    R : array
        Rotation matrix.

    Returns
    -------
    Euler angles alpha, beta and gamma.
    '''
    if not is_rotation_matrix(R):
        raise ValueError("%s is not a rotation matrix" % str(R))

    if R[2, 0] <= -1.0:
        gamma = 0.0  # gimbal lock
        alpha = np.arctan2(R[0, 1], R[0, 2])
        beta = np.pi / 2
    elif R[2, 0] >= 1.0:
        gamma = 0.0  # gimbal lock
        alpha = np.arctan2(-R[0, 1], -R[0, 2])
        beta = -np.pi / 2
    else:
        beta_1 = -np.arcsin(R[2, 0])
        beta_2 = np.pi - beta_1
        alpha_1 = np.arctan2(R[2, 1] / np.cos(beta_1), R[2, 2] / np.cos(beta_1))
        alpha_2 = np.arctan2(R[2, 1] / np.cos(beta_2), R[2, 2] / np.cos(beta_2))
        gamma_1 = np.arctan2(R[1, 0] / np.cos(beta_1), R[0, 0] / np.cos(beta_1))
        gamma_2 = np.arctan2(R[1, 0] / np.cos(beta_2), R[0, 0] / np.cos(beta_2))
        if np.sum(np.abs([alpha_1, beta_1, gamma_1])) <= np.sum(np.abs([alpha_2, beta_2, gamma_2])):
            alpha, beta, gamma = alpha_1, beta_1, gamma_1
        else:
            alpha, beta, gamma = alpha_2, beta_2, gamma_2
    return float(alpha), float(beta), float(gamma)


def euler_angle_rotation_axes(alpha, beta):
    ''' Local rotation axes of infinitesimal Euler angle increments.

    For R = Rz(gamma) * Ry(beta) * Rx(alpha) the derivative of R with respect
    to each angle is R * [omega]x, with omega given in the local frame of the
    rotated plane. Gamma does not enter the axes.

    Parameters
    ----------
    alpha : float
        Rotation around x in radians.
    beta : float
        Rotation around y in radians.

    Returns
    -------
    Array with shape (3, 3), row k is the local axis for angle k (alpha, beta, gamma).
    '''
    rx = rotation_matrix_x(alpha)
    ry = rotation_matrix_y(beta)
    omega_alpha = np.array([1.0, 0.0, 0.0])
    omega_beta = np.dot(rx.T, np.array([0.0, 1.0, 0.0]))
    omega_gamma = np.dot(np.dot(ry, rx).T, np.array([0.0, 0.0, 1.0]))
    return np.vstack((omega_alpha, omega_beta, omega_gamma))


def translation_matrix(x, y, z):
    ''' 4x4 homogeneous translation by (x, y, z).
    '''
    translation_matrix = np.eye(4, 4, 0, dtype=np.float64)
    translation_matrix[:3, 3] = np.array([x, y, z], dtype=np.float64)
    return translation_matrix


def global_to_local_transformation_matrix(x, y, z, alpha, beta, gamma):
    ''' Transformation matrix from the global into the local plane system.

    Translation by (-x, -y, -z) followed by the rotation R(alpha, beta, gamma).T.
    Inverse of local_to_global_transformation_matrix().

    Returns
    -------
    Array with shape (4, 4).
    '''
    R = np.eye(4, 4, 0, dtype=np.float64)
    R[:3, :3] = rotation_matrix(alpha=alpha, beta=beta, gamma=gamma).T
    return np.dot(R, translation_matrix(x=-x, y=-y, z=-z))


def local_to_global_transformation_matrix(x, y, z, alpha, beta, gamma):
    ''' Rigid transform of a plane: translate(x, y, z) o R(alpha, beta, gamma).

    Parameters
    ----------
    x, y, z : float
        Position of the plane center.
    alpha, beta, gamma : float
        Euler angles in radians around x, y and z.

    Returns
    -------
    Array with shape (4, 4).
    '''
    R = np.eye(4, 4, 0, dtype=np.float64)
    R[:3, :3] = rotation_matrix(alpha=alpha, beta=beta, gamma=gamma)
    return np.dot(translation_matrix(x=x, y=y, z=z), R)


def is_rigid_transformation_matrix(transformation_matrix):
    ''' True if the 4x4 matrix is a rotation plus translation.
    '''
    transformation_matrix = np.asarray(transformation_matrix, dtype=np.float64)
    if transformation_matrix.shape != (4, 4) or not np.all(np.isfinite(transformation_matrix)):
        return False
    if not np.allclose(transformation_matrix[3], [0.0, 0.0, 0.0, 1.0]):
        return False
    return is_rotation_matrix(transformation_matrix[:3, :3])


def transformation_matrix_to_parameters(transformation_matrix):
    ''' Splits a rigid transform into center and Z-Y-X Euler angles.

    Returns
    -------
    Tuple (x, y, z, alpha, beta, gamma).
    '''
    if not is_rigid_transformation_matrix(transformation_matrix):
        raise ValueError("%s is not a rigid transformation matrix" % str(transformation_matrix))
    x, y, z = transformation_matrix[:3, 3]
    alpha, beta, gamma = euler_angles(transformation_matrix[:3, :3])
    return float(x), float(y), float(z), alpha, beta, gamma


def apply_transformation_matrix(x, y, z, transformation_matrix):
    ''' Takes arrays for x, y, z and applies a transformation matrix (4 x 4).

    Returns
    -------
    Transformed coordinates x, y and z.
    '''
    pos = np.column_stack((x, y, z, np.ones_like(x, dtype=np.float64))).T
    pos_transformed = np.dot(transformation_matrix, pos).T[:, :-1]
    return pos_transformed[:, 0], pos_transformed[:, 1], pos_transformed[:, 2]
