"""
Deciding how a transform should be applied. The transform argument (an array
or a path) and an optional method hint are parsed once into a
TransformDescriptor; resolve() then loads the artifact into the matching
Transform object. None of the file formats involved describe themselves, so
the decision rests on file naming conventions and sibling files.
"""

import enum
import glob
import os
import os.path as op
import re
import warnings
from collections import namedtuple

import numpy as np

from coordmap import mat_io
from coordmap import normalization
from coordmap import wrappers
from coordmap.errors import (FormatError, MissingMethodError, NotFoundError,
                             UnsupportedFormatError, UnsupportedMethodError)
from coordmap.image_space import ImageSpace
from coordmap.transforms import (Affine, CoregParameters, SPMAffine, DCTWarp,
                                 DeformationField, AntsTransform, FslLinear,
                                 FslNonLinear, FslNormalization)


class TransformMethod(enum.Enum):
    AFFINE = 'affine'
    COREG = 'coreg'
    SPM_AFFINE = 'spm_affine'
    ANTS_LINEAR = 'ants_linear'
    FSL_LINEAR = 'fsl_linear'
    LEGACY_DCT = 'legacy_dct'
    MODERN_DEFORMATION = 'modern_deformation'
    ANTS_NONLINEAR = 'ants_nonlinear'
    FSL_NONLINEAR = 'fsl_nonlinear'
    FALLBACK_JIT_COREG = 'fallback_jit_coreg'


# method: TransformMethod
# path: artifact to load (None for in-memory or normalisation directories)
# use_inverse: inversion flag for ANTs; for an FSL normalisation, whether
#     to map template -> subject
# directory: directory holding the artifact(s)
# matrix: in-memory matrix or parameter vector
TransformDescriptor = namedtuple('TransformDescriptor',
    ['method', 'path', 'use_inverse', 'directory', 'matrix'],
    defaults=[None, False, None, None])

# Method hints accepted for generic .mat files and for field files
MAT_METHODS = {
    'AFFINE': TransformMethod.AFFINE,
    'COREG': TransformMethod.COREG,
    'SPM': TransformMethod.SPM_AFFINE,
    'ANTS': TransformMethod.ANTS_LINEAR,
    'FSL': TransformMethod.FSL_LINEAR,
    'FLIRT': TransformMethod.FSL_LINEAR,
    'BBR': TransformMethod.FSL_LINEAR,
    'FALLBACK': TransformMethod.FALLBACK_JIT_COREG,
}

FIELD_METHODS = {
    'ANTS': TransformMethod.ANTS_NONLINEAR,
    'FSL': TransformMethod.FSL_NONLINEAR,
    'FNIRT': TransformMethod.FSL_NONLINEAR,
    'SPM': TransformMethod.MODERN_DEFORMATION,
}

LEGACY_DCT = re.compile(r'sn\.mat$')
MAT_FILE = re.compile(r'\.mat$')
NORM_POINTER = re.compile(r'^y_ea_.*normparams\.nii$')
NORM_INVERSE_POINTER = 'y_ea_inv_normparams.nii'
SPM_DEFORMATION = re.compile(r'^i?y_.*\.nii$')
FIELD_FILE = re.compile(r'\.(nii|nii\.gz|h5)$')

SPM_SUFFIX = '_spm.mat'
ANTS_SUFFIX = re.compile(r'_ants\d*\.mat$')
FLIRT_SUFFIX = re.compile(r'_flirt\d*\.mat$')


def normalise_method(method):
    """
    Upper-cased last whitespace-separated token of a method hint, so that
    compound labels such as 'FSL FLIRT' or 'Advanced Normalization Tools
    (ANTs) ANTS' reduce to a single keyword. None for no hint.
    """

    if method is None:
        return None
    tokens = str(method).split()
    if not tokens:
        return None
    return tokens[-1].upper()


def _directory(path):
    return op.dirname(path) or '.'


def _matches(pattern_base, suffix_glob):
    """Files named pattern_base + suffix_glob, sorted by name"""
    return sorted(glob.glob(glob.escape(pattern_base) + suffix_glob))


def match_spm_affine(path):
    """XX2XX.mat or XX2XX_spm.mat -> XX2XX_spm.mat"""

    if not path.endswith(SPM_SUFFIX):
        path = path[:-4] + SPM_SUFFIX
    return path


def match_ants_linear(path):
    """
    Find the ANTs linear transform for a (possibly fuzzy) path, which may be
    given as XX2YY_antsN.mat, XX2YY_ants.mat or XX2YY.mat.

    If XX2YY.mat itself exists, or a XX2YY_ants*.mat file does, it is used
    with inversion (the registration ran from XX onto YY, and ANTs transforms
    points the opposite way to images). Failing that, YY2XX_ants*.mat is used
    without inversion. Where several files match, the last by name is taken.

    Returns:
        (path, use_inverse)
    """

    directory = _directory(path)
    m = ANTS_SUFFIX.search(path)
    base = path[:m.start()] if m else path[:-4]

    if op.isfile(base + '.mat'):
        return base + '.mat', True

    matches = _matches(base, '_ants*.mat')
    if matches:
        return matches[-1], True

    parts = op.basename(base).split('2')
    if len(parts) >= 2:
        reverse = op.join(directory, parts[1] + '2' + parts[0])
        matches = _matches(reverse, '_ants*.mat')
        if matches:
            return matches[-1], False

    raise NotFoundError("No ANTs transform found for %s (looked for %s.mat, "
                        "%s_ants*.mat and the reverse direction)"
                        % (path, base, base))


def match_flirt_linear(path):
    """
    Find the FLIRT matrix for a path given as XX2YY_flirtN.mat,
    XX2YY_flirt.mat or XX2YY.mat; the last XX2YY_flirt*.mat by name is used.
    """

    m = FLIRT_SUFFIX.search(path)
    base = path[:m.start()] if m else path[:-4]
    matches = _matches(base, '_flirt*.mat')
    if not matches:
        raise NotFoundError("No FLIRT matrix found for %s (looked for "
                            "%s_flirt*.mat)" % (path, base))
    return matches[-1]


def classify(transform, method=None, use_inverse=None):
    """
    Decide which transform method applies.

    Args:
        transform: 4x4 matrix, coreg parameter vector, or path to a
            transform artifact
        method (str): method hint, case insensitive, last token significant.
            Required for generic .mat files (else the just-in-time fallback
            is used) and for .nii/.nii.gz/.h5 files.
        use_inverse (bool): only for ANTs displacement fields/composites
            given explicitly, default True

    Returns:
        TransformDescriptor
    """

    if isinstance(transform, os.PathLike):
        transform = os.fspath(transform)

    if not isinstance(transform, str):
        try:
            mat = np.asarray(transform, np.float64)
        except (TypeError, ValueError):
            raise FormatError("Improper or unsupported transform: %r"
                              % (transform,))

        if mat.shape == (4,4):
            return TransformDescriptor(TransformMethod.AFFINE, matrix=mat)
        elif (mat.ndim == 1) or (mat.ndim == 2 and mat.shape[0] == 1):
            return TransformDescriptor(TransformMethod.COREG, matrix=mat.ravel())
        else:
            raise FormatError("Improper or unsupported transform of shape %s"
                              % (mat.shape,))

    path = transform
    name = op.basename(path)
    directory = _directory(path)
    token = normalise_method(method)

    if LEGACY_DCT.search(name):
        return TransformDescriptor(TransformMethod.LEGACY_DCT, path,
                                   directory=directory)

    elif MAT_FILE.search(name):
        if token is None:
            token = 'FALLBACK'
        if token not in MAT_METHODS:
            raise UnsupportedMethodError("Unsupported transformation type %r "
                                         "for %s" % (token, path))

        kind = MAT_METHODS[token]
        if kind is TransformMethod.SPM_AFFINE:
            path = match_spm_affine(path)
        elif kind is TransformMethod.ANTS_LINEAR:
            path, use_inverse = match_ants_linear(path)
        elif kind is TransformMethod.FSL_LINEAR:
            path = match_flirt_linear(path)
        return TransformDescriptor(kind, path, bool(use_inverse),
                                   directory=directory)

    elif NORM_POINTER.search(name):
        inverse_pointer = (name == NORM_INVERSE_POINTER)
        engine = normalization.detect_normalization_engine(directory)

        if engine == normalization.ANTS:
            return TransformDescriptor(TransformMethod.ANTS_NONLINEAR, None,
                                       inverse_pointer, directory)
        elif engine == normalization.FSL:
            # The inverse pointer maps subject -> template, which for FNIRT
            # is not an inverse mapping
            return TransformDescriptor(TransformMethod.FSL_NONLINEAR, None,
                                       not inverse_pointer, directory)
        else:
            return TransformDescriptor(TransformMethod.MODERN_DEFORMATION,
                                       path, directory=directory)

    elif SPM_DEFORMATION.search(name):
        return TransformDescriptor(TransformMethod.MODERN_DEFORMATION, path,
                                   directory=directory)

    elif FIELD_FILE.search(name):
        if token is None:
            raise MissingMethodError("Please specify the transformation type "
                                     "for %s" % path)
        if token not in FIELD_METHODS:
            raise UnsupportedMethodError("Unsupported transformation type %r "
                                         "for %s" % (token, path))

        kind = FIELD_METHODS[token]
        if kind is TransformMethod.ANTS_NONLINEAR:
            use_inverse = True if use_inverse is None else bool(use_inverse)
        return TransformDescriptor(kind, path, bool(use_inverse), directory)

    else:
        raise UnsupportedFormatError(path)


def resolve(descriptor, src, dest=None):
    """
    Load the artifact named by a descriptor into a Transform.

    Args:
        descriptor (TransformDescriptor): from classify()
        src (ImageSpace): source space of the points
        dest (ImageSpace): destination space, if known (required for FSL
            transforms and the just-in-time fallback)

    Returns:
        Transform
    """

    kind = descriptor.method
    path = descriptor.path

    if kind is TransformMethod.AFFINE:
        if descriptor.matrix is not None:
            return Affine(descriptor.matrix)
        return Affine.from_file(path)

    elif kind is TransformMethod.COREG:
        if descriptor.matrix is not None:
            return CoregParameters(descriptor.matrix)
        return CoregParameters.from_file(path)

    elif kind is TransformMethod.SPM_AFFINE:
        return SPMAffine.from_file(path)

    elif kind in (TransformMethod.ANTS_LINEAR, TransformMethod.ANTS_NONLINEAR):
        return AntsTransform(descriptor.directory, descriptor.use_inverse, path)

    elif kind is TransformMethod.FSL_LINEAR:
        return FslLinear(path, dest)

    elif kind is TransformMethod.FSL_NONLINEAR:
        if path is None:
            return FslNormalization(descriptor.directory,
                                    descriptor.use_inverse, dest)
        return FslNonLinear(path, dest)

    elif kind is TransformMethod.LEGACY_DCT:
        return DCTWarp.from_file(path)

    elif kind is TransformMethod.MODERN_DEFORMATION:
        return DeformationField(path)

    elif kind is TransformMethod.FALLBACK_JIT_COREG:
        return fallback_coregistration(src, dest)

    else:
        raise NotImplementedError("Cannot resolve %s" % kind)


def fallback_path(src, dest):
    """Where the just-in-time coregistration of src onto dest is kept"""

    directory = _directory(src.file_name)
    return op.join(directory, '%s2%s.mat' % (src.base_name, dest.base_name))


def fallback_coregistration(src, dest):
    """
    Rigid coregistration of src onto dest, computed on first use and saved
    as <src>2<dest>.mat (variable 'x') beside src for reuse.

    Returns:
        CoregParameters
    """

    if dest is None:
        raise ValueError("No transformation method given, and no destination "
                         "image to coregister onto")
    if not isinstance(src, ImageSpace):
        src = ImageSpace(src)
    if not isinstance(dest, ImageSpace):
        dest = ImageSpace(dest)
    if (src.file_name is None) or (dest.file_name is None):
        raise ValueError("Just-in-time coregistration needs source and "
                         "destination images on disk")

    path = fallback_path(src, dest)
    if op.isfile(path):
        return CoregParameters.from_file(path)

    # Reported against the caller of map_coords()
    warnings.warn("Transformation method not found, falling back to rigid "
                  "coregistration of %s onto %s (saved as %s)"
                  % (src.file_name, dest.file_name, path), stacklevel=4)
    params = wrappers.compute_rigid_registration(dest, src)
    mat_io.savemat_atomic(path, {'x': params[None,:]})
    return CoregParameters(params)
