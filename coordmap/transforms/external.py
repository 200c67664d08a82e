"""
Transforms applied by external engines. These adapt points from the
column-major, RAS world convention used throughout into whatever each
engine expects, and back again.
"""

import os.path as op
from textwrap import dedent

import numpy as np

from coordmap import wrappers
from coordmap.image_space import ImageSpace
from coordmap.transforms.transform import Transform, src_world, rehomogenise


def _dest_space(dest, what):
    if dest is None:
        raise ValueError("%s requires a destination space" % what)
    if not isinstance(dest, ImageSpace):
        dest = ImageSpace(dest)
    return dest


class AntsTransform(Transform):
    """
    ANTs (ITK) transform: a linear .mat, a displacement field, a composite
    .h5, or the composite transforms of a normalisation directory. ITK points
    are LPS, so x and y are negated on the way in and out.

    Args:
        directory: directory holding the transform(s)
        use_inverse (bool): passed to antsApplyTransformsToPoints
        transform: path to the transform file, or None to use the
            normalisation composites found in directory
    """

    def __init__(self, directory, use_inverse, transform=None):
        self.directory = directory
        self.use_inverse = bool(use_inverse)
        self.transform = transform

    @property
    def is_linear(self):
        return (self.transform is not None) and self.transform.endswith('.mat')

    def __repr__(self):
        text = f"""\
                AntsTransform with properties:
                directory:     {self.directory}
                transform:     {self.transform or '(normalisation composite)'}
                use inverse:   {self.use_inverse}
                """
        return dedent(text)

    def apply(self, points, src):

        lps = src_world(points, src)[:3,:]
        lps[:2,:] *= -1

        out = wrappers.ants_apply_transforms_to_points(self.directory,
                    lps.T, self.use_inverse, self.transform).T

        out = np.array(out, np.float64)
        out[:2,:] *= -1
        return rehomogenise(out)


class FslLinear(Transform):
    """
    FLIRT matrix, in FSL scaled-mm terms between src and dest. Applied as
    img2imgcoord -mm does, so the destination space must be known.

    Args:
        transform: path to FLIRT matrix (text file)
        dest: destination space
    """

    def __init__(self, transform, dest):
        self.transform = transform
        self.dest = _dest_space(dest, "FLIRT transform %s" % transform)

    def __repr__(self):
        return "FslLinear: %s" % self.transform

    def apply(self, points, src):
        mm = src_world(points, src)[:3,:]
        out = wrappers.fsl_img2imgcoord(mm.T, src, self.dest,
                                        self.transform, 'l')
        return rehomogenise(np.asarray(out).T)


class FslNonLinear(Transform):
    """
    FNIRT warp (coefficients or field) from registering src onto dest.

    Args:
        transform: path to the warp
        dest: destination space
    """

    def __init__(self, transform, dest):
        self.transform = transform
        self.dest = _dest_space(dest, "FNIRT warp %s" % transform)

    def __repr__(self):
        return "FslNonLinear: %s" % self.transform

    def apply(self, points, src):
        mm = src_world(points, src)[:3,:]
        out = wrappers.fsl_img2imgcoord(mm.T, src, self.dest,
                                        self.transform, 'n')
        return rehomogenise(np.asarray(out).T)


class FslNormalization(Transform):
    """
    FNIRT normalisation stored in a subject directory.

    Args:
        directory: subject directory
        inverse_map (bool): False for subject -> template, True for the
            reverse
        dest: optional destination space
    """

    def __init__(self, directory, inverse_map, dest=None):
        self.directory = directory
        self.inverse_map = bool(inverse_map)
        if (dest is not None) and not isinstance(dest, ImageSpace):
            dest = ImageSpace(dest)
        self.dest = dest

    def __repr__(self):
        text = f"""\
                FslNormalization with properties:
                directory:     {op.abspath(self.directory)}
                inverse map:   {self.inverse_map}
                """
        return dedent(text)

    def apply(self, points, src):
        mm = src_world(points, src)[:3,:]
        out = wrappers.fsl_apply_normalization_to_points(self.directory,
                    mm.T, self.inverse_map, self.dest)
        return rehomogenise(np.asarray(out).T)
