import numpy as np

from coordmap.image_space import ImageSpace
from coordmap import application_helpers as apply


class Transform(object):
    """
    Base object for all transformations of points. This should never actually
    be instantiated but is instead used to provide common functions.

    Every transform takes zero-based voxel coordinates in the source space and
    returns world (mm) coordinates in the destination space.

    Attributes:
        dest_vox2world: vox2world of the destination space, if the artifact
            itself records one (else None)
    """

    dest_vox2world = None

    @property
    def is_linear(self):
        from coordmap.transforms.linear import Affine, CoregParameters, SPMAffine
        from coordmap.transforms.external import FslLinear
        return (type(self) in [Affine, CoregParameters, SPMAffine, FslLinear])

    @property
    def is_nonlinear(self):
        return not self.is_linear

    def __repr__(self):
        raise NotImplementedError()

    def apply(self, points, src):
        """
        Map source voxel coordinates into destination world coordinates.

        Args:
            points (np.ndarray): 3xN or 4xN voxel coordinates in src
            src (ImageSpace): the space in which points are defined

        Returns:
            (np.ndarray) 4xN world coordinates in the destination space
        """
        raise NotImplementedError()

    def __call__(self, points, src):
        if not isinstance(src, ImageSpace):
            src = ImageSpace(src)
        return self.apply(apply.homogenise(points), src)


def src_world(points, src):
    """Source voxel coordinates into source world coordinates, 4xN"""
    return src.vox2world @ apply.homogenise(points)


def rehomogenise(points):
    """3xN world coordinates back to 4xN"""
    return np.vstack((points[:3,:], np.ones((1, points.shape[1]))))
