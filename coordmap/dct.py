"""
Discrete cosine basis warps, as stored in legacy SPM *_sn.mat normalisation
files. The displacement field is never materialised: the separable basis is
evaluated only at the requested points.
"""

import numpy as np


def dct_matrix(N, K, n=None):
    """
    Orthonormal DCT-II basis functions.

    Args:
        N (int): length of the signal (ie, voxels along this axis)
        K (int): number of basis functions
        n (array-like): zero-based positions at which to evaluate the basis,
            default is all of 0 .. N-1

    Returns:
        np.array sized (len(n), K)
    """

    if n is None:
        n = np.arange(N)
    n = np.asarray(n, np.float64).ravel()

    C = np.zeros((n.size, K))
    C[:,0] = 1 / np.sqrt(N)
    k = np.arange(1, K)
    C[:,1:] = np.sqrt(2 / N) * np.cos(np.pi * (2 * n[:,None] + 1)
                                      * k[None,:] / (2 * N))
    return C


def dct_displacements(coeffs, dims, points):
    """
    Evaluate a DCT warp at a set of points.

    Args:
        coeffs (np.ndarray): coefficients sized (bx, by, bz, 3), the last
            dimension being the x,y,z displacement channels
        dims (array-like): voxel dimensions of the template on which the
            basis is defined
        points (np.ndarray): 3xN or 4xN zero-based voxel coordinates

    Returns:
        np.array sized 3xN, displacement (in voxels) at each point
    """

    coeffs = np.asarray(coeffs, np.float64)
    if coeffs.ndim != 4 or coeffs.shape[3] != 3:
        raise ValueError("DCT coefficients should be sized (bx,by,bz,3), "
                         "got %s" % (coeffs.shape,))

    bx, by, bz = coeffs.shape[:3]
    basX = dct_matrix(dims[0], bx, points[0,:])
    basY = dct_matrix(dims[1], by, points[1,:])
    basZ = dct_matrix(dims[2], bz, points[2,:])

    # Contract one axis at a time: z first, leaving (bx, by, N), then y,
    # leaving (bx, N), then x.
    disp = np.empty((3, points.shape[1]))
    for c in range(3):
        t = coeffs[...,c].reshape(bx * by, bz) @ basZ.T
        t = np.einsum('ijn,nj->in', t.reshape(bx, by, -1), basY)
        disp[c,:] = np.einsum('in,ni->n', t, basX)

    return disp
