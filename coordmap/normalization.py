"""
Locating the artifacts of a subject normalisation. A normalisation directory
records which engine produced it in ea_normmethod_applied.mat, and each engine
leaves its own forward/inverse files behind under fixed names.
"""

import os
import os.path as op

import numpy as np

from coordmap import mat_io
from coordmap.errors import NotFoundError

ANTS = 'ANTS'
FSL = 'FSL'
SPM = 'SPM'

NORM_METHOD_FILE = 'ea_normmethod_applied.mat'
NORM_METHOD_VAR = 'norm_method_applied'

ANTS_FORWARD = 'glanatComposite.h5'
ANTS_INVERSE = 'glanatInverseComposite.h5'
FSL_FORWARD = 'glanatWarpCoef'
FSL_INVERSE = 'glanatInverseWarpCoef'
ANAT = 'glanat'

TEMPLATE_ENV = 'COORDMAP_TEMPLATE'
FSL_TEMPLATE = op.join('data', 'standard', 'MNI152_T1_1mm.nii.gz')


def _strings(value):
    """Flatten a loaded MATLAB char/cell array into a list of str"""

    if isinstance(value, str):
        return [ value ]
    if isinstance(value, np.ndarray):
        if value.dtype.kind == 'U':
            return [ str(v) for v in value.ravel() ]
        out = []
        for v in value.ravel():
            out += _strings(v)
        return out
    return []


def detect_normalization_engine(directory):
    """
    Which engine produced the normalisation stored in directory.

    Args:
        directory: subject directory

    Returns:
        ANTS, FSL or SPM. SPM is returned when no record exists, as the
            deformation field itself is then expected to be present.
    """

    path = op.join(directory, NORM_METHOD_FILE)
    if not op.isfile(path):
        return SPM

    applied = _strings(mat_io.loadmat(path).get(NORM_METHOD_VAR, []))
    if not applied:
        return SPM

    name = applied[-1].lower()
    if 'ants' in name:
        return ANTS
    elif ('fsl' in name) or ('fnirt' in name):
        return FSL
    else:
        return SPM


def find_image(directory, stem):
    """Path of stem.nii.gz or stem.nii within directory"""

    for ext in ('.nii.gz', '.nii'):
        path = op.join(directory, stem + ext)
        if op.isfile(path):
            return path
    raise NotFoundError("Did not find %s.nii(.gz) in %s" % (stem, directory))


def ants_composite(directory, inverse):
    """ANTs composite transform of a normalisation"""

    name = ANTS_INVERSE if inverse else ANTS_FORWARD
    path = op.join(directory, name)
    if not op.isfile(path):
        raise NotFoundError("ANTs transform not found: %s" % path)
    return path


def fsl_warp(directory, inverse):
    """FNIRT warp of a normalisation"""
    return find_image(directory, FSL_INVERSE if inverse else FSL_FORWARD)


def template_path():
    """
    Template used as the destination of a normalisation when none is given:
    $COORDMAP_TEMPLATE, else the 1mm MNI152 brain shipped with FSL.
    """

    path = os.environ.get(TEMPLATE_ENV)
    if not path and os.environ.get('FSLDIR'):
        path = op.join(os.environ['FSLDIR'], FSL_TEMPLATE)
    if not path:
        raise NotFoundError("No template available: set %s or FSLDIR"
                            % TEMPLATE_ENV)
    if not op.isfile(path):
        raise NotFoundError("Template not found: %s" % path)
    return path
