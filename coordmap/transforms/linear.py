from textwrap import dedent

import numpy as np

from coordmap import application_helpers as apply
from coordmap import mat_io
from coordmap.errors import FormatError
from coordmap.transforms.transform import Transform, src_world


class Affine(Transform):
    """
    Affine (4x4) transformation from source world to destination world
    coordinates. Points are first taken into world coordinates with the
    source vox2world, so the identity matrix maps voxels onto source mm.

    Args:
        src2dest (np.ndarray): 4x4 matrix
    """

    def __init__(self, src2dest):

        src2dest = np.asarray(src2dest, np.float64)
        if src2dest.shape != (4,4):
            raise FormatError("Affine transform must be a 4x4 matrix, got "
                              "shape %s" % (src2dest.shape,))
        self.src2dest = src2dest

    @classmethod
    def from_file(cls, path):
        """Load the sole variable of a .mat file as a 4x4 matrix"""

        mat = mat_io.sole_variable(path)
        if mat.shape != (4,4):
            raise FormatError("Expected a 4x4 matrix in %s, got shape %s"
                              % (path, mat.shape))
        return cls(mat)

    @classmethod
    def identity(cls):
        return Affine(np.eye(4))

    def __repr__(self):

        formatter = "{:8.3f}".format
        with np.printoptions(precision=3, formatter={'all': formatter}):
            text = (f"""\
                Affine with properties:
                src2dest:      {self.src2dest[0,:]}
                               {self.src2dest[1,:]}
                               {self.src2dest[2,:]}
                               {self.src2dest[3,:]}""")
        return dedent(text)

    def apply(self, points, src):
        return apply.apply_affine(self.src2dest, src_world(points, src))


class CoregParameters(Transform):
    """
    Rigid or affine transformation given as the parameter vector returned by
    a coregistration of the destination onto the source (spm_coreg(dest, src)
    ordering). The parameters encode dest world -> src world, so the inverse
    is applied to the points.

    Args:
        params (array-like): 6 to 12 parameters, see spm_matrix()
    """

    def __init__(self, params):

        params = np.asarray(params, np.float64)
        if params.ndim > 1 and min(params.shape) != 1:
            raise FormatError("Coreg parameters must be a vector, got shape %s"
                              % (params.shape,))
        self.params = params.ravel()
        self.matrix = apply.spm_matrix(self.params)

    @classmethod
    def from_file(cls, path):
        """Load the sole variable of a .mat file as a parameter vector"""
        return cls(mat_io.sole_variable(path))

    def __repr__(self):
        with np.printoptions(precision=4):
            return "CoregParameters: %s" % self.params

    def apply(self, points, src):
        return apply.aff_solve(self.matrix, src_world(points, src))


class SPMAffine(Transform):
    """
    Voxel to world affine produced by SPM coregistration, stored as
    'spmaffine' within a *_spm.mat file. If the file also stores the
    vox2world of the fixed image ('fixed'), that is used as the destination
    space. Both are re-based from MATLAB's one-based voxels on load.

    Args:
        vox2dest (np.ndarray): 4x4, zero-based source voxels -> dest world
        dest_vox2world (np.ndarray): optional 4x4, zero-based
    """

    def __init__(self, vox2dest, dest_vox2world=None):

        vox2dest = np.asarray(vox2dest, np.float64)
        if vox2dest.shape != (4,4):
            raise FormatError("SPM affine must be a 4x4 matrix")
        self.vox2dest = vox2dest
        self.dest_vox2world = dest_vox2world

    @classmethod
    def from_file(cls, path):
        contents = mat_io.loadmat(path)
        spmaffine = np.asarray(mat_io.variable(contents, 'spmaffine', path),
                               np.float64)
        if spmaffine.shape != (4,4):
            raise FormatError("'spmaffine' in %s is not 4x4" % path)

        fixed = contents.get('fixed')
        if fixed is not None:
            fixed = apply.rebase_vox2world(fixed)
        return cls(apply.rebase_vox2world(spmaffine), fixed)

    def __repr__(self):
        return "SPMAffine:\n%s" % self.vox2dest

    def apply(self, points, src):
        return apply.apply_affine(self.vox2dest, points)
