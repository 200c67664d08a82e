"""
map_coords: move points between the voxel and world coordinates of images,
through any of the supported transforms.
"""

from collections import namedtuple

import numpy as np

from coordmap import application_helpers as apply
from coordmap import classifier
from coordmap.image_space import ImageSpace

# world: 3xN world (mm) coordinates in the destination space
# voxel: 3xN voxel coordinates in the destination space, or None when no
#     destination affine is available
MappedCoords = namedtuple('MappedCoords', ['world', 'voxel'])


def map_coords(points, src, transform=None, dest=None, method=None,
               use_inverse=None):
    """
    Map voxel coordinates in src to world (and optionally voxel)
    coordinates in dest.

    To map voxels of src to world coordinates of src:
        mm = map_coords(vox, src).world
    To map world coordinates of src back to voxels:
        vox = map_coords(mm, src, None, src).voxel
    To map voxels of src to world coordinates of dest through a transform:
        mm = map_coords(vox, src, transform).world
    and, with dest given, the voxels in dest:
        mm, vox = map_coords(vox, src, transform, dest)

    Args:
        points (array-like): 3xN or 4xN coordinates, normally voxels in src
            (world coordinates when transform is None and dest is given)
        src: image defining the space of points: path, nibabel or FSL
            image, ImageSpace or 4x4 vox2world
        transform: None, a 4x4 world -> world matrix, a coreg parameter
            vector, or a path to a transform artifact, see classifier.classify
        dest: image defining the destination space (optional)
        method (str): transform method hint (AFFINE, COREG, SPM, ANTS, FSL,
            FLIRT, FNIRT), case insensitive, last token significant
        use_inverse (bool): inversion flag for ANTs fields given explicitly,
            default True

    Returns:
        MappedCoords(world, voxel), both 3xN; voxel is None if the
            destination space is unknown
    """

    points = apply.homogenise(points)
    if not isinstance(src, ImageSpace):
        src = ImageSpace(src)
    if (dest is not None) and not isinstance(dest, ImageSpace):
        dest = ImageSpace(dest)

    if transform is None or (isinstance(transform, (list, np.ndarray))
                             and not np.size(transform)):
        if dest is None:
            world = src.vox2world @ points
            return MappedCoords(world[:3,:], None)

        # Points are world coordinates: look up their voxels
        voxel = apply.aff_solve(dest.vox2world, points)
        return MappedCoords(points[:3,:], voxel[:3,:])

    descriptor = classifier.classify(transform, method, use_inverse)
    xform = classifier.resolve(descriptor, src, dest)
    world = xform.apply(points, src)

    if dest is not None:
        dest_vox2world = dest.vox2world
    else:
        dest_vox2world = xform.dest_vox2world

    voxel = None
    if dest_vox2world is not None:
        voxel = apply.aff_solve(dest_vox2world, world)[:3,:]

    return MappedCoords(world[:3,:], voxel)
