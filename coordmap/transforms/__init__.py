from .transform import Transform
from .linear import Affine, CoregParameters, SPMAffine
from .nonlinear import DeformationField, DCTWarp
from .external import AntsTransform, FslLinear, FslNonLinear, FslNormalization
