from coordmap._version import __version__
from coordmap.image_space import ImageSpace
from coordmap.mapping import map_coords, MappedCoords
from coordmap.classifier import TransformMethod, TransformDescriptor, classify, resolve
from coordmap.transforms import (Transform, Affine, CoregParameters, SPMAffine,
                                 DeformationField, DCTWarp, AntsTransform,
                                 FslLinear, FslNonLinear, FslNormalization)
from coordmap.application_helpers import spm_matrix, spm_imatrix
from coordmap.errors import (CoordMapError, ShapeError, FormatError,
                             UnsupportedMethodError, NotFoundError,
                             UnsupportedFormatError, MissingMethodError,
                             EngineCallError)
