import os.path as op
from textwrap import dedent

import nibabel
from nibabel.spatialimages import SpatialImage
import numpy as np
from scipy.ndimage import map_coordinates

from coordmap import application_helpers as apply
from coordmap import mat_io
from coordmap.dct import dct_displacements
from coordmap.errors import FormatError, NotFoundError
from coordmap.transforms.transform import Transform


class DeformationField(Transform):
    """
    Dense deformation field, addressed by source voxel index, holding the
    destination world coordinate of each voxel in three channels (eg, SPM
    y_*.nii files). Points are sampled by trilinear interpolation; points
    outside the field take the value of the nearest edge voxel.

    Args:
        field (np.ndarray/str/nibabel image): array sized (X,Y,Z,3) or
            (X,Y,Z,1,3), or an image holding one
    """

    def __init__(self, field):

        if isinstance(field, str):
            if not op.exists(field):
                raise NotFoundError("Deformation field not found: %s" % field)
            field = nibabel.load(field)
        if isinstance(field, SpatialImage):
            field = field.get_fdata(dtype=np.float64)

        field = np.asarray(field, np.float64)
        if field.ndim == 5 and field.shape[3] == 1:
            field = field[:,:,:,0,:]
        if field.ndim != 4 or field.shape[3] != 3:
            raise FormatError("Deformation field should be sized (X,Y,Z,3) "
                              "or (X,Y,Z,1,3), got %s" % (field.shape,))
        self.field = field

    def __repr__(self):
        text = f"""\
                DeformationField with properties:
                size:          {self.field.shape[:3]}
                """
        return dedent(text)

    def sample(self, points):
        """
        Sample the field at fractional voxel coordinates.

        Args:
            points (np.ndarray): 3xN or 4xN voxel coordinates

        Returns:
            (np.ndarray) 3xN world coordinates, or 4xN if the input was 4xN
                (the fourth row is copied from the input)
        """

        rows = np.shape(points)[0]
        points = apply.homogenise(points)

        ijk = points[:3,:]
        out = np.stack([ map_coordinates(self.field[...,c], ijk, order=1,
                                         mode='nearest')
                         for c in range(3) ], axis=0)

        if rows == 4:
            out = np.vstack((out, points[3:4,:]))
        return out

    def apply(self, points, src):
        return self.sample(apply.homogenise(points))


class DCTWarp(Transform):
    """
    Legacy SPM normalisation (*_sn.mat): a low-frequency DCT displacement in
    source voxels, followed by an affine into destination world coordinates.
    Matrices are held in zero-based voxel terms.

    Args:
        coeffs (np.ndarray): (bx,by,bz,3) DCT coefficients, or empty for a
            purely affine normalisation
        dims (array-like): template dimensions over which the basis is defined
        warp_affine (np.ndarray): 4x4, displaced source voxels -> dest voxels
        dest_affine (np.ndarray): 4x4, dest voxels -> dest world
    """

    def __init__(self, coeffs, dims, warp_affine, dest_affine):

        coeffs = np.asarray(coeffs, np.float64)
        if coeffs.size and (coeffs.ndim != 4 or coeffs.shape[3] != 3):
            raise FormatError("DCT coefficients should be sized (bx,by,bz,3), "
                              "got %s" % (coeffs.shape,))

        self.coeffs = coeffs
        self.dims = np.asarray(dims, np.int64).ravel()[:3]
        self.warp_affine = np.asarray(warp_affine, np.float64)
        self.dest_affine = np.asarray(dest_affine, np.float64)
        for m in (self.warp_affine, self.dest_affine):
            if m.shape != (4,4):
                raise FormatError("DCT warp affines must be 4x4")

    @classmethod
    def from_file(cls, path):
        """
        Load from an SPM *_sn.mat file (variables Tr, Affine, VG, VF). The
        one-based MATLAB matrices are re-based so that
        dest_affine @ warp_affine == VF.mat @ Affine @ ONE_BASED.
        """

        contents = mat_io.loadmat(path)
        Tr = np.asarray(mat_io.variable(contents, 'Tr', path), np.float64)
        Affine = np.asarray(mat_io.variable(contents, 'Affine', path),
                            np.float64)

        try:
            VG = mat_io.struct(mat_io.variable(contents, 'VG', path))
            VF = mat_io.struct(mat_io.variable(contents, 'VF', path))
            dims = np.asarray(VG.dim).ravel()[:3]
            vf_mat = np.asarray(VF.mat, np.float64)
        except AttributeError as e:
            raise FormatError("Malformed VG/VF structs in %s: %s" % (path, e))

        if (Affine.shape != (4,4)) or (vf_mat.shape != (4,4)):
            raise FormatError("Affine and VF.mat in %s must be 4x4" % path)

        warp_affine = np.linalg.inv(apply.ONE_BASED) @ Affine @ apply.ONE_BASED
        dest_affine = apply.rebase_vox2world(vf_mat)
        return cls(Tr, dims, warp_affine, dest_affine)

    @property
    def dest_vox2world(self):
        return self.dest_affine

    @property
    def has_warp(self):
        return bool(self.coeffs.size)

    def __repr__(self):
        text = f"""\
                DCTWarp with properties:
                basis size:    {self.coeffs.shape[:3] if self.has_warp else 'none (affine only)'}
                template dims: {self.dims}
                """
        return dedent(text)

    def displace(self, points):
        """Add the DCT displacement to 4xN voxel coordinates"""

        points = apply.homogenise(points)
        if self.has_warp:
            points[:3,:] += dct_displacements(self.coeffs, self.dims, points)
        return points

    def apply(self, points, src):
        return (self.dest_affine @ self.warp_affine) @ self.displace(points)
