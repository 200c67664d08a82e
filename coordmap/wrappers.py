"""
Calls out to external registration engines. Each function here takes and
returns points as Nx3 arrays of mm coordinates, in the convention of the
engine concerned (LPS for ANTs, RAS world for FSL). Failures are raised as
EngineCallError.
"""

import os
import os.path as op
import subprocess
import tempfile

import numpy as np
from fsl.wrappers.flirt import flirt as flirt_cmd
from fsl.wrappers.fnirt import invwarp as invwarp_cmd
from fsl.transform.fnirt import readFnirt
from fsl.utils.run import FSLNotPresent

from coordmap import normalization
from coordmap.application_helpers import aff_trans, spm_imatrix
from coordmap.errors import EngineCallError, FormatError, NotFoundError
from coordmap.image_space import ImageSpace

ANTS_ENV = 'ANTSPATH'


def ants_command(name):
    """Full path to an ANTs binary, via $ANTSPATH if set"""

    antspath = os.environ.get(ANTS_ENV)
    if antspath:
        return op.join(antspath, name)
    return name


def _run(cmd):
    try:
        subprocess.run(cmd, check=True, stdout=subprocess.PIPE,
                       stderr=subprocess.PIPE)
    except OSError as e:
        raise EngineCallError("Could not run %s: %s" % (cmd[0], e)) from e
    except subprocess.CalledProcessError as e:
        err = e.stderr.decode(errors='replace').strip() if e.stderr else ''
        raise EngineCallError("%s failed with exit code %d: %s"
                              % (' '.join(cmd), e.returncode, err)) from e


def _fsl(func, *args, **kwargs):
    try:
        return func(*args, **kwargs)
    except (FSLNotPresent, RuntimeError, OSError,
            subprocess.CalledProcessError) as e:
        raise EngineCallError("FSL %s failed: %s" % (func.__name__, e)) from e


def _space(spc):
    if not isinstance(spc, ImageSpace):
        spc = ImageSpace(spc)
    return spc


def ants_apply_transforms_to_points(directory, points, use_inverse,
                                    transform=None):
    """
    antsApplyTransformsToPoints wrapper.

    Args:
        directory: directory holding the transform (used to find a
            normalisation's composite transforms when transform is None)
        points: Nx3 LPS mm coordinates
        use_inverse (bool): invert the transform. With transform=None this
            selects the inverse composite of the normalisation instead.
        transform: path to an ANTs transform (.mat, .nii(.gz), .h5)

    Returns:
        Nx3 LPS mm coordinates
    """

    points = np.atleast_2d(np.asarray(points, np.float64))
    if transform is None:
        tspec = normalization.ants_composite(directory, use_inverse)
    else:
        if not op.isfile(transform):
            raise NotFoundError("ANTs transform not found: %s" % transform)
        tspec = '[%s,%d]' % (transform, int(bool(use_inverse)))

    with tempfile.TemporaryDirectory() as d:
        inp = op.join(d, 'points.csv')
        out = op.join(d, 'points_out.csv')
        data = np.zeros((points.shape[0], 4))
        data[:,:3] = points
        np.savetxt(inp, data, delimiter=',', header='x,y,z,t', comments='')

        cmd = [ ants_command('antsApplyTransformsToPoints'), '-d', '3',
                '-i', inp, '-o', out, '-t', tspec ]
        _run(cmd)
        try:
            result = np.loadtxt(out, delimiter=',', skiprows=1, ndmin=2)
        except (OSError, ValueError) as e:
            raise EngineCallError("%s gave no readable output at %s: %s"
                                  % (' '.join(cmd), out, e)) from e

    if result.shape[0] != points.shape[0] or result.shape[1] < 3:
        raise EngineCallError("%s returned %d points for %d inputs"
                              % (cmd[0], result.shape[0], points.shape[0]))
    return result[:,:3]


def fsl_apply_warp_to_points(points, warp, field_src, field_ref):
    """
    Evaluate a FNIRT warp (coefficients or field) at points.

    Args:
        points: Nx3 world coordinates in field_ref
        warp: path to the warp, which is defined over field_ref and gives
            positions in field_src
        field_src (ImageSpace): space the warp maps into
        field_ref (ImageSpace): space the warp is defined over

    Returns:
        Nx3 world coordinates in field_src
    """

    field_src = _space(field_src)
    field_ref = _space(field_ref)
    try:
        field = readFnirt(warp, field_src.to_fsl_image(),
                          field_ref.to_fsl_image())
    except ValueError as e:
        raise FormatError("Could not read FNIRT warp %s: %s" % (warp, e))

    return field.transform(np.atleast_2d(points), from_='world', to='world')


def fsl_img2imgcoord(points, src, dest, transform, mode):
    """
    Map world coordinates from src to dest, as FSL's img2imgcoord -mm.

    Args:
        points: Nx3 world coordinates in src
        src: source space
        dest: destination space
        transform: FLIRT matrix (mode 'l'), or the FNIRT warp from
            registering src onto dest (mode 'n')
        mode: 'l' for linear, 'n' for non-linear

    Returns:
        Nx3 world coordinates in dest
    """

    src = _space(src)
    dest = _space(dest)
    points = np.atleast_2d(np.asarray(points, np.float64))

    if mode == 'l':
        if not op.isfile(transform):
            raise NotFoundError("FLIRT matrix not found: %s" % transform)
        try:
            flirt = np.loadtxt(transform)
        except ValueError as e:
            raise FormatError("Could not read FLIRT matrix %s: %s"
                              % (transform, e))
        if flirt.shape != (4,4):
            raise FormatError("FLIRT matrix %s is not 4x4" % transform)

        src2dest = dest.FSL2world @ flirt @ src.world2FSL
        return aff_trans(src2dest, points)

    elif mode == 'n':
        if not op.isfile(transform):
            raise NotFoundError("FNIRT warp not found: %s" % transform)

        # The warp is defined over dest and points into src, so invert it
        # to get a field over src pointing into dest
        with tempfile.TemporaryDirectory() as d:
            inv = op.join(d, 'invwarp.nii.gz')
            _fsl(invwarp_cmd, transform, src.to_fsl_image(), inv)
            return fsl_apply_warp_to_points(points, inv, dest, src)

    else:
        raise ValueError("mode must be 'l' or 'n', got %r" % mode)


def fsl_apply_normalization_to_points(directory, points, inverse_map,
                                      dest=None):
    """
    Map points through a FNIRT normalisation stored in directory. Each warp
    is evaluated over the grid it was estimated on, whatever image the
    points came from.

    Args:
        directory: subject directory
        points: Nx3 world coordinates
        inverse_map (bool): False to map subject -> template (uses the
            inverse warp, defined over the subject's glanat), True for
            template -> subject (uses the forward warp, defined over the
            template)
        dest (ImageSpace): target space; by default the template for
            forward mapping and the subject's glanat for inverse mapping

    Returns:
        Nx3 world coordinates in dest
    """

    if inverse_map:
        warp = normalization.fsl_warp(directory, inverse=False)
        field_ref = normalization.template_path()
        if dest is None:
            dest = normalization.find_image(directory, normalization.ANAT)
        field_src = dest
    else:
        warp = normalization.fsl_warp(directory, inverse=True)
        field_ref = normalization.find_image(directory, normalization.ANAT)
        field_src = normalization.template_path() if dest is None else dest

    return fsl_apply_warp_to_points(points, warp, field_src, field_ref)


def compute_rigid_registration(dest, src):
    """
    Rigid (6 DoF) FLIRT registration of src onto dest, returned as the
    parameter vector of the dest world -> src world matrix (the ordering
    of spm_coreg(dest, src)).

    Args:
        dest: fixed image, path or ImageSpace loaded from file
        src: moving image, as above

    Returns:
        np.array of 12 parameters, see spm_matrix()
    """

    src = _space(src)
    dest = _space(dest)
    if (src.file_name is None) or (dest.file_name is None):
        raise ValueError("Rigid registration needs images on disk")

    with tempfile.TemporaryDirectory() as d:
        omat = op.join(d, 'omat.mat')
        _fsl(flirt_cmd, src.file_name, dest.file_name, omat=omat, dof=6)
        flirt = np.loadtxt(omat)

    src2dest = dest.FSL2world @ flirt @ src.world2FSL
    return spm_imatrix(np.linalg.inv(src2dest))
