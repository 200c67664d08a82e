"""
ImageSpace: voxel grid of an image, inc dimensions, voxel size, vox2world
matrix and inverse. Used to move points between voxel and world coordinates,
and to express FSL scaled-mm coordinates for FLIRT/FNIRT transforms.
"""

import os.path as op
import textwrap

import nibabel
import numpy as np
from nibabel import Nifti1Image, MGHImage
from fsl.data.image import Image as FSLImage


class ImageSpace(object):
    """
    Voxel grid of an image, ignoring actual image data.

    Args:
        img: path to image, nibabel Nifti/MGH or FSL Image object, or a
            4x4 vox2world array (in which case size is unknown)

    Attributes:
        size: array of voxel counts in each dimension (None if unknown)
        vox_size: array of voxel size in each dimension
        vox2world: 4x4 affine to transform voxel coords -> world
        world2vox: inverse of above
    """

    def __init__(self, img):

        if isinstance(img, np.ndarray):
            if img.shape != (4,4):
                raise ValueError("A space given as an array must be a 4x4 "
                                 "vox2world matrix, got shape %s" % (img.shape,))
            self.file_name = None
            self.size = None
            self.vox2world = img.astype(np.float64)
            self.header = None
            return

        if isinstance(img, str):
            fname = img
            img = nibabel.load(img)
        else:
            if not isinstance(img, (Nifti1Image, MGHImage, FSLImage)):
                raise ValueError("Cannot interpret %r as an image space" % img)
            if type(img) is FSLImage:
                img = img.nibImage
            fname = img.get_filename()

        self.file_name = fname
        self.size = np.array(img.shape[:3], np.int16)
        self.vox2world = img.affine.astype(np.float64)
        self.header = img.header


    @classmethod
    def manual(cls, vox2world, size=None):
        """Manual constructor"""

        spc = cls.__new__(cls)
        spc.vox2world = np.asarray(vox2world, np.float64)
        spc.size = None if size is None else np.array(size, np.int16)
        spc.file_name = None
        spc.header = None
        return spc


    @classmethod
    def create_axis_aligned(cls, bbox_corner, size, vox_size):
        """
        Create an ImageSpace from bounding box location and voxel size.
        Note that the voxels will be axis-aligned (no rotation).

        Args:
            bbox_corner: 3-vector, location of the furthest corner of the
                bounding box, at which the corner of voxel 0 0 0 will lie.
            size: 3-vector, number of voxels in each spatial dimension
            vox_size: 3-vector, size of voxel in each dimension

        Returns
            ImageSpace object
        """

        bbox_corner = np.array(bbox_corner)
        vox2world = np.identity(4)
        vox2world[(0,1,2),(0,1,2)] = vox_size
        orig = bbox_corner + (np.array((3 * [0.5])) @ vox2world[0:3,0:3])
        vox2world[0:3,3] = orig
        return cls.manual(vox2world, size)


    @property
    def base_name(self):
        """File name without directory or .nii/.nii.gz extension"""

        if not self.file_name:
            return None
        name = op.basename(self.file_name)
        for ext in ('.nii.gz', '.nii', '.mgz', '.mgh'):
            if name.endswith(ext):
                return name[:-len(ext)]
        return op.splitext(name)[0]


    @property
    def vox_size(self):
        """Voxel size of image"""
        return np.linalg.norm(self.vox2world[:3,:3], ord=2, axis=0)


    @property
    def world2vox(self):
        """World coordinates to voxels"""
        return np.linalg.inv(self.vox2world)


    @property
    def vox2FSL(self):
        """
        Transformation between voxels and FSL coordinates (scaled mm). FLIRT
        matrices are given in (src FSL) -> (ref FSL) terms.
        See: https://fsl.fmrib.ox.ac.uk/fsl/fslwiki/FLIRT/FAQ
        """

        if self.size is None or len(self.size) < 3:
            raise RuntimeError("Volume has less than 3 dimensions, "
                    "cannot resolve space")

        det = np.linalg.det(self.vox2world[0:3, 0:3])
        vox2FSL = np.zeros((4,4))
        vox2FSL[range(3), range(3)] = self.vox_size

        # Check the xyzt field to find the spatial units.
        multi = 1
        if (self.header is not None) and ('xyzt_units' in self.header):
            xyzt = str(self.header['xyzt_units'])
            if xyzt == '01':
                multi = 1000
            elif xyzt == '10':
                multi = 1
            elif xyzt == '11':
                multi = 1e-3

        if det > 0:
            vox2FSL[0,0] = -self.vox_size[0]
            vox2FSL[0,3] = (self.size[0] - 1) * self.vox_size[0]

        vox2FSL *= multi
        vox2FSL[3,3] = 1
        return vox2FSL


    @property
    def FSL2vox(self):
        """Transformation from FSL scaled coordinates to voxels"""
        return np.linalg.inv(self.vox2FSL)


    @property
    def world2FSL(self):
        """Transformation from world coordinates to FSL scaled"""
        return self.vox2FSL @ self.world2vox


    @property
    def FSL2world(self):
        """Transformation from FSL scaled coordinates to world"""
        return self.vox2world @ self.FSL2vox


    def make_nifti(self, data=None):
        """
        Construct nibabel Nifti for this voxel grid with data. If no data is
        given an empty volume is used.
        """

        if self.size is None:
            raise RuntimeError("Size of this space is unknown")

        if data is None:
            data = np.zeros(self.size, np.float32)

        if not np.all(data.shape[0:3] == self.size):
            if data.size == np.prod(self.size):
                data = data.reshape(self.size)
            elif not(data.size % np.prod(self.size)):
                data = data.reshape((*self.size, -1))
            else:
                raise RuntimeError("Data size does not match image size")

        if data.dtype == bool:
            data = data.astype(np.int8)

        nii = nibabel.nifti1.Nifti1Image(data, self.vox2world)
        return nii


    def save_image(self, data, path):
        """Save 3D or 4D data array at path using this image's voxel grid"""

        if not (path.endswith('.nii') or path.endswith('.nii.gz')):
            path += '.nii.gz'
        nii = self.make_nifti(data)
        nibabel.save(nii, path)
        return path


    def to_fsl_image(self):
        """FSL Image for this space (the file itself, if there is one)"""

        if self.file_name is not None:
            return FSLImage(self.file_name)
        return FSLImage(self.make_nifti())


    def __repr__(self):
        formatter = "{:8.3f}".format
        with np.printoptions(precision=3, formatter={'all': formatter}):
            text = (f"""\
                ImageSpace with properties:
                size:          {self.size},
                voxel size:    {self.vox_size},
                vox2world:     {self.vox2world[0,:]}
                               {self.vox2world[1,:]}
                               {self.vox2world[2,:]}
                               {self.vox2world[3,:]}""")

        if self.file_name:
            text += f"""
                loaded from: {self.file_name}"""
        else:
            text += f"""
                loaded from: (no direct file counterpart)"""
        return textwrap.dedent(text)
