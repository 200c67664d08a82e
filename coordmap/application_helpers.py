"""
Affine kernel: homogeneous point sets, 4x4 matrices and the rigid/affine
parameter vectors written by SPM-style coregistration.
"""

import numpy as np

from coordmap.errors import ShapeError, FormatError

# Voxel (1,1,1) in MATLAB terms is (0,0,0) here: ONE_BASED maps zero-based
# voxels onto one-based voxels.
ONE_BASED = np.array([[1, 0, 0, 1],
                      [0, 1, 0, 1],
                      [0, 0, 1, 1],
                      [0, 0, 0, 1]], dtype=np.float64)

# tx ty tz, rx ry rz, zx zy zz, shx shy shz
PARAM_DEFAULTS = np.array([0, 0, 0, 0, 0, 0, 1, 1, 1, 0, 0, 0], np.float64)


def homogenise(points):
    """
    Return a 4xN float copy of a 3xN or 4xN point array (a row of ones is
    appended to 3xN input).
    """

    points = np.asarray(points, dtype=np.float64)
    if points.ndim != 2 or points.shape[0] not in (3,4):
        raise ShapeError("Coord array must have 3 or 4 rows: [x;y;z] or "
                         "[x;y;z;1], got shape %s" % (points.shape,))

    if points.shape[0] == 3:
        return np.vstack((points, np.ones((1, points.shape[1]))))
    return points.copy()


def apply_affine(matrix, points):
    """Left-multiply homogeneous 4xN points by a 4x4 matrix"""

    matrix = np.asarray(matrix, np.float64)
    if matrix.shape != (4,4):
        raise FormatError("Matrix needs to be a 4x4 array, got shape %s"
                          % (matrix.shape,))
    return matrix @ homogenise(points)


def aff_solve(matrix, points):
    """
    Apply the inverse of a 4x4 matrix to homogeneous 4xN points, by linear
    solve rather than explicit inversion.
    """

    matrix = np.asarray(matrix, np.float64)
    if matrix.shape != (4,4):
        raise FormatError("Matrix needs to be a 4x4 array, got shape %s"
                          % (matrix.shape,))
    return np.linalg.solve(matrix, homogenise(points))


def aff_trans(matrix, points):
    """Affine transform a 3D set of points (Nx3 or 3xN, returned likewise)"""

    if not matrix.shape == (4,4):
        raise ValueError("Matrix needs to be a 4x4 array")

    if points.shape[1] == 3:
        transpose = True
        points = points.T
    else:
        transpose = False

    p = np.ones((4, points.shape[1]))
    p[:3,:] = points
    t = matrix @ p

    if transpose:
        return t[:3,:].T
    else:
        return t[:3,:]


def spm_matrix(params):
    """
    Affine matrix from a parameter vector of between 6 and 12 elements:
    translations (x,y,z), rotations about x,y,z (radians), zooms and shears.
    Missing trailing elements take their identity value. The matrix is
    composed as T @ R @ Z @ S, with R = Rx @ Ry @ Rz.

    Args:
        params: array-like of 6 to 12 numbers

    Returns:
        4x4 np.array
    """

    params = np.asarray(params, np.float64).ravel()
    if not (6 <= params.size <= 12):
        raise FormatError("Coreg parameter vector must have between 6 and 12 "
                          "elements, got %d" % params.size)

    p = PARAM_DEFAULTS.copy()
    p[:params.size] = params

    T = np.eye(4)
    T[:3,3] = p[0:3]

    c, s = np.cos(p[3]), np.sin(p[3])
    R1 = np.array([[1, 0, 0, 0], [0, c, s, 0], [0, -s, c, 0], [0, 0, 0, 1]])
    c, s = np.cos(p[4]), np.sin(p[4])
    R2 = np.array([[c, 0, s, 0], [0, 1, 0, 0], [-s, 0, c, 0], [0, 0, 0, 1]])
    c, s = np.cos(p[5]), np.sin(p[5])
    R3 = np.array([[c, s, 0, 0], [-s, c, 0, 0], [0, 0, 1, 0], [0, 0, 0, 1]])

    Z = np.diag([p[6], p[7], p[8], 1])
    S = np.array([[1, p[9], p[10], 0],
                  [0, 1, p[11], 0],
                  [0, 0, 1, 0],
                  [0, 0, 0, 1]])

    return T @ R1 @ R2 @ R3 @ Z @ S


def spm_imatrix(matrix):
    """
    Recover the 12 parameters of spm_matrix() from an affine matrix.

    Args:
        matrix: 4x4 affine

    Returns:
        np.array of 12 parameters
    """

    matrix = np.asarray(matrix, np.float64)
    if matrix.shape != (4,4):
        raise FormatError("Matrix needs to be a 4x4 array")

    R = matrix[:3,:3]
    C = np.linalg.cholesky(R.T @ R).T
    P = np.concatenate((matrix[:3,3], np.zeros(3), np.diag(C), np.zeros(3)))
    if np.linalg.det(R) < 0:
        P[6] = -P[6]

    C = C / np.diag(C)[:,None]
    P[9:12] = C[(0,0,1), (1,2,2)]
    R0 = spm_matrix(np.concatenate((np.zeros(6), P[6:12])))[:3,:3]
    R1 = R @ np.linalg.inv(R0)

    rang = lambda x: min(max(x, -1), 1)
    P[4] = np.arcsin(rang(R1[0,2]))
    if (np.abs(P[4]) - np.pi/2) ** 2 < 1e-9:
        P[3] = 0
        P[5] = np.arctan2(-rang(R1[1,0]), rang(-R1[2,0] / R1[0,2]))
    else:
        c = np.cos(P[4])
        P[3] = np.arctan2(rang(R1[1,2] / c), rang(R1[2,2] / c))
        P[5] = np.arctan2(rang(R1[0,1] / c), rang(R1[0,0] / c))

    return P


def rebase_vox2world(matrix):
    """
    Convert a one-based vox2world (as stored by MATLAB tools) into one
    taking zero-based voxel coordinates.
    """

    return np.asarray(matrix, np.float64) @ ONE_BASED
