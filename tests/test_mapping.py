import os
import os.path as op
import stat
import tempfile

import numpy as np
import pytest
import scipy.io

import coordmap as cm
from coordmap import application_helpers as apply
from coordmap import normalization
from coordmap import wrappers

V2W = np.array([[2, 0, 0, -20],
                [0, 2, 0, -30],
                [0, 0, 2, -10],
                [0, 0, 0, 1]], np.float64)
SPC = cm.ImageSpace.manual(V2W, (20, 20, 20))
DEST_V2W = np.array([[1, 0, 0, -40],
                     [0, 1.5, 0, -30],
                     [0, 0, 1, -20],
                     [0, 0, 0, 1]], np.float64)

RNG = np.random.default_rng(11)
POINTS = RNG.random((3, 6)) * 19
PARAMS = np.array([2, -3, 4, 0.05, -0.1, 0.15])


def world(points):
    return (V2W @ apply.homogenise(points))[:3,:]


def save_nifti(path, vox2world, shape=(20, 20, 20)):
    return cm.ImageSpace.manual(vox2world, shape).save_image(None, path)


class FakeAnts(object):
    """Records calls to antsApplyTransformsToPoints, shifts points by OFFSET"""

    OFFSET = np.array([1, 2, 3])

    def __init__(self):
        self.calls = []

    def __call__(self, directory, points, use_inverse, transform=None):
        self.calls.append(dict(directory=directory, points=np.array(points),
                               use_inverse=use_inverse, transform=transform))
        return np.asarray(points) + self.OFFSET


def test_ants_field_default_inverse(monkeypatch):
    fake = FakeAnts()
    monkeypatch.setattr(wrappers, 'ants_apply_transforms_to_points', fake)

    mm = cm.map_coords(POINTS, SPC, 'subj/warp.nii.gz', method='ANTS').world
    call = fake.calls[-1]
    assert call['use_inverse'] is True
    assert call['transform'] == 'subj/warp.nii.gz'
    assert call['directory'] == 'subj'

    # ANTs sees LPS points, Nx3
    lps = world(POINTS).T * [-1, -1, 1]
    assert np.allclose(call['points'], lps)
    assert np.allclose(mm, world(POINTS) + np.array([[-1], [-2], [3]]))

    cm.map_coords(POINTS, SPC, 'subj/warp.nii.gz', method='ANTS',
                  use_inverse=False)
    assert fake.calls[-1]['use_inverse'] is False


def test_ants_linear(monkeypatch):
    fake = FakeAnts()
    monkeypatch.setattr(wrappers, 'ants_apply_transforms_to_points', fake)

    with tempfile.TemporaryDirectory() as d:
        open(op.join(d, 'B2A_ants1.mat'), 'w').close()
        mm, vox = cm.map_coords(POINTS, SPC, op.join(d, 'A2B.mat'),
                                dest=DEST_V2W, method='Advanced Normalization Tools ANTs')

    call = fake.calls[-1]
    assert call['transform'] == op.join(d, 'B2A_ants1.mat')
    assert call['use_inverse'] is False
    expect = world(POINTS) + np.array([[-1], [-2], [3]])
    assert np.allclose(mm, expect)
    assert np.allclose(vox, apply.aff_solve(DEST_V2W, expect)[:3,:])


def test_ants_normalization(monkeypatch):
    fake = FakeAnts()
    monkeypatch.setattr(wrappers, 'ants_apply_transforms_to_points', fake)

    with tempfile.TemporaryDirectory() as d:
        scipy.io.savemat(op.join(d, normalization.NORM_METHOD_FILE),
            {normalization.NORM_METHOD_VAR:
                np.array(['ea_normalize_ants'], dtype=object)})
        cm.map_coords(POINTS, SPC, op.join(d, 'y_ea_inv_normparams.nii'))
        assert fake.calls[-1]['transform'] is None
        assert fake.calls[-1]['use_inverse'] is True
        assert fake.calls[-1]['directory'] == d

        cm.map_coords(POINTS, SPC, op.join(d, 'y_ea_normparams.nii'))
        assert fake.calls[-1]['use_inverse'] is False


def test_fsl_normalization(monkeypatch):
    calls = []

    def fake(directory, points, inverse_map, dest=None):
        calls.append((directory, inverse_map, dest))
        return np.asarray(points) - 1

    monkeypatch.setattr(wrappers, 'fsl_apply_normalization_to_points', fake)

    with tempfile.TemporaryDirectory() as d:
        scipy.io.savemat(op.join(d, normalization.NORM_METHOD_FILE),
            {normalization.NORM_METHOD_VAR:
                np.array(['ea_normalize_fnirt'], dtype=object)})

        mm = cm.map_coords(POINTS, SPC, op.join(d, 'y_ea_inv_normparams.nii'))
        assert calls[-1] == (d, False, None)
        assert np.allclose(mm.world, world(POINTS) - 1)
        assert mm.voxel is None

        cm.map_coords(POINTS, SPC, op.join(d, 'y_ea_normparams.nii'))
        assert calls[-1][1] is True


def test_flirt_identity():
    with tempfile.TemporaryDirectory() as d:
        np.savetxt(op.join(d, 'A2B_flirt.mat'), np.eye(4))
        mm, vox = cm.map_coords(POINTS, SPC, op.join(d, 'A2B.mat'), SPC,
                                method='FSL FLIRT')
        assert np.allclose(mm, world(POINTS))
        assert np.allclose(vox, POINTS)


def test_flirt_needs_dest():
    with tempfile.TemporaryDirectory() as d:
        np.savetxt(op.join(d, 'A2B_flirt.mat'), np.eye(4))
        with pytest.raises(ValueError):
            cm.map_coords(POINTS, SPC, op.join(d, 'A2B.mat'), method='FLIRT')


def test_spm_affine_file():
    S = np.array([[1.2, 0.1, 0, -50],
                  [0, 0.9, 0, -60],
                  [0.05, 0, 1.1, -40],
                  [0, 0, 0, 1]])

    with tempfile.TemporaryDirectory() as d:
        scipy.io.savemat(op.join(d, 'A2B_spm.mat'), {'spmaffine': S, 'fixed': S})
        mm, vox = cm.map_coords(POINTS, SPC, op.join(d, 'A2B.mat'), method='SPM')

        # spmaffine works on one-based voxels
        expect = S @ apply.homogenise(POINTS + 1)
        assert np.allclose(mm, expect[:3,:])
        assert np.allclose(vox, POINTS)

        scipy.io.savemat(op.join(d, 'C2D_spm.mat'), {'spmaffine': S})
        out = cm.map_coords(POINTS, SPC, op.join(d, 'C2D_spm.mat'), method='spm')
        assert np.allclose(out.world, mm)
        assert out.voxel is None


def test_affine_and_coreg_files():
    M = np.array([[1, 0, 0, 5],
                  [0, 0, -1, 2],
                  [0, 1, 0, -7],
                  [0, 0, 0, 1]], np.float64)

    with tempfile.TemporaryDirectory() as d:
        path = op.join(d, 'A2B.mat')
        scipy.io.savemat(path, {'M': M})
        mm = cm.map_coords(POINTS, SPC, path, method='affine').world
        assert np.allclose(mm, (M @ V2W @ apply.homogenise(POINTS))[:3,:])

        scipy.io.savemat(path, {'x': PARAMS[None,:]})
        mm = cm.map_coords(POINTS, SPC, path, method='coreg').world
        expect = np.linalg.solve(apply.spm_matrix(PARAMS),
                                 V2W @ apply.homogenise(POINTS))
        assert np.allclose(mm, expect[:3,:])

        scipy.io.savemat(path, {'x': PARAMS[None,:], 'y': M})
        with pytest.raises(cm.FormatError):
            cm.map_coords(POINTS, SPC, path, method='COREG')

        with pytest.raises(cm.NotFoundError):
            cm.map_coords(POINTS, SPC, op.join(d, 'missing.mat'),
                          method='AFFINE')


def test_fallback_coregistration(monkeypatch):
    calls = []

    def fake(dest, src):
        calls.append((dest.file_name, src.file_name))
        return PARAMS.copy()

    monkeypatch.setattr(wrappers, 'compute_rigid_registration', fake)

    with tempfile.TemporaryDirectory() as d:
        src = save_nifti(op.join(d, 'anat.nii'), V2W)
        dest = save_nifti(op.join(d, 'ref.nii.gz'), DEST_V2W)
        cached = op.join(d, 'anat2ref.mat')

        with pytest.warns(UserWarning) as record:
            mm, vox = cm.map_coords(POINTS, src, op.join(d, 'anat2ref.mat'),
                                    dest)
        assert calls == [ (dest, src) ]
        assert op.isfile(cached)
        assert record[0].filename == __file__

        umask = os.umask(0)
        os.umask(umask)
        assert stat.S_IMODE(os.stat(cached).st_mode) == 0o666 & ~umask

        expect = np.linalg.solve(apply.spm_matrix(PARAMS),
                                 V2W @ apply.homogenise(POINTS))
        assert np.allclose(mm, expect[:3,:])
        assert np.allclose(vox, apply.aff_solve(DEST_V2W, expect)[:3,:])

        # Second use reads the saved parameters
        mm2, _ = cm.map_coords(POINTS, src, op.join(d, 'anat2ref.mat'), dest,
                               method='fallback')
        assert len(calls) == 1
        assert np.allclose(mm2, mm)
        assert np.allclose(scipy.io.loadmat(cached)['x'], PARAMS[None,:])


def test_fallback_needs_dest():
    with pytest.raises(ValueError):
        cm.map_coords(POINTS, SPC, 'A2B.mat')


def test_transform_objects_are_callable():
    xform = cm.resolve(cm.classify(np.eye(4)), SPC)
    assert xform.is_linear
    assert np.allclose(xform(POINTS, V2W)[:3,:], world(POINTS))

    field = cm.DeformationField(np.zeros((4, 4, 4, 3)))
    assert field.is_nonlinear


def test_engine_failure(monkeypatch):
    with tempfile.TemporaryDirectory() as d:
        transform = op.join(d, 'warp.nii.gz')
        open(transform, 'w').close()
        monkeypatch.setenv(wrappers.ANTS_ENV, op.join(d, 'not_installed'))
        with pytest.raises(cm.EngineCallError):
            wrappers.ants_apply_transforms_to_points(d, np.zeros((1,3)),
                                                     True, transform)

        with pytest.raises(cm.NotFoundError):
            wrappers.ants_apply_transforms_to_points(d, np.zeros((1,3)),
                                                     True, None)


class FakeFnirt(object):
    """Stands in for readFnirt, recording which grids the warp is read on"""

    OFFSET = np.array([1, 2, 3])

    def __init__(self):
        self.calls = []

    def __call__(self, fname, src, ref):
        self.calls.append(dict(warp=op.basename(fname),
                               src=op.basename(src.dataSource),
                               ref=op.basename(ref.dataSource)))
        return self

    def transform(self, points, from_, to):
        assert (from_, to) == ('world', 'world')
        self.calls[-1]['points'] = np.array(points)
        return np.asarray(points) + self.OFFSET


def test_fsl_normalization_grids(monkeypatch):
    fnirt = FakeFnirt()
    monkeypatch.setattr(wrappers, 'readFnirt', fnirt)

    with tempfile.TemporaryDirectory() as d:
        scipy.io.savemat(op.join(d, normalization.NORM_METHOD_FILE),
            {normalization.NORM_METHOD_VAR:
                np.array(['ea_normalize_fnirt'], dtype=object)})
        for name in ('glanat.nii', 'glanatWarpCoef.nii',
                     'glanatInverseWarpCoef.nii'):
            save_nifti(op.join(d, name), DEST_V2W)
        monkeypatch.setenv(normalization.TEMPLATE_ENV,
                           save_nifti(op.join(d, 'mni.nii'), DEST_V2W))
        ct = save_nifti(op.join(d, 'postop_ct.nii'), V2W)
        other = save_nifti(op.join(d, 'other.nii'), DEST_V2W)

        # Subject -> template: inverse warp, read over glanat whatever the
        # source image
        mm = cm.map_coords(POINTS, ct, op.join(d, 'y_ea_inv_normparams.nii'))
        call = fnirt.calls[-1]
        assert (call['warp'], call['ref'], call['src']) == \
            ('glanatInverseWarpCoef.nii', 'glanat.nii', 'mni.nii')
        assert np.allclose(call['points'], world(POINTS).T)
        assert np.allclose(mm.world, world(POINTS) + FakeFnirt.OFFSET[:,None])

        mm, vox = cm.map_coords(POINTS, ct,
                                op.join(d, 'y_ea_inv_normparams.nii'), other)
        call = fnirt.calls[-1]
        assert (call['ref'], call['src']) == ('glanat.nii', 'other.nii')
        assert np.allclose(vox, apply.aff_solve(DEST_V2W, mm)[:3,:])

        # Template -> subject: forward warp, read over the template
        cm.map_coords(POINTS, ct, op.join(d, 'y_ea_normparams.nii'))
        call = fnirt.calls[-1]
        assert (call['warp'], call['ref'], call['src']) == \
            ('glanatWarpCoef.nii', 'mni.nii', 'glanat.nii')


def test_fnirt_warp(monkeypatch):
    fnirt = FakeFnirt()
    monkeypatch.setattr(wrappers, 'readFnirt', fnirt)
    inverted = []

    def invwarp(warp, ref, out):
        inverted.append((warp, op.basename(ref.dataSource), op.basename(out)))

    monkeypatch.setattr(wrappers, 'invwarp_cmd', invwarp)

    with tempfile.TemporaryDirectory() as d:
        src = save_nifti(op.join(d, 'anat.nii'), V2W)
        dest = save_nifti(op.join(d, 'ref.nii.gz'), DEST_V2W)
        warp = save_nifti(op.join(d, 'anat2ref_warp.nii.gz'), DEST_V2W)

        mm, vox = cm.map_coords(POINTS, src, warp, dest, method='FSL FNIRT')

    assert inverted == [ (warp, 'anat.nii', 'invwarp.nii.gz') ]
    call = fnirt.calls[-1]
    assert (call['warp'], call['src'], call['ref']) == \
        ('invwarp.nii.gz', 'ref.nii.gz', 'anat.nii')
    assert np.allclose(call['points'], world(POINTS).T)

    expect = world(POINTS) + FakeFnirt.OFFSET[:,None]
    assert np.allclose(mm, expect)
    assert np.allclose(vox, apply.aff_solve(DEST_V2W, expect)[:3,:])


# Copies its input points to its output, keeping what it was given
ECHO_ANTS = """#!/bin/sh
# antsApplyTransformsToPoints -d 3 -i <in> -o <out> -t <transform>
here=$(dirname "$0")
cp "$4" "$here/points_in.csv"
echo "$8" > "$here/transform.txt"
cp "$4" "$6"
"""

SILENT_ANTS = """#!/bin/sh
exit 0
"""


def install_ants(directory, script):
    os.makedirs(directory)
    path = op.join(directory, 'antsApplyTransformsToPoints')
    with open(path, 'w') as f:
        f.write(script)
    os.chmod(path, 0o755)


def test_ants_points_csv(monkeypatch):
    with tempfile.TemporaryDirectory() as d:
        bindir = op.join(d, 'bin')
        install_ants(bindir, ECHO_ANTS)
        monkeypatch.setenv(wrappers.ANTS_ENV, bindir)
        transform = op.join(d, 'warp.nii.gz')
        open(transform, 'w').close()

        mm = cm.map_coords(POINTS, SPC, transform, method='ANTS').world
        assert np.allclose(mm, world(POINTS))

        with open(op.join(bindir, 'points_in.csv')) as f:
            assert f.readline().strip() == 'x,y,z,t'
        sent = np.loadtxt(op.join(bindir, 'points_in.csv'), delimiter=',',
                          skiprows=1, ndmin=2)
        assert sent.shape == (POINTS.shape[1], 4)
        assert np.allclose(sent[:,:3], world(POINTS).T * [-1, -1, 1])
        assert np.array_equal(sent[:,3], np.zeros(POINTS.shape[1]))

        with open(op.join(bindir, 'transform.txt')) as f:
            assert f.read().strip() == '[%s,1]' % transform

        cm.map_coords(POINTS, SPC, transform, method='ANTS', use_inverse=False)
        with open(op.join(bindir, 'transform.txt')) as f:
            assert f.read().strip() == '[%s,0]' % transform


def test_ants_without_output(monkeypatch):
    with tempfile.TemporaryDirectory() as d:
        bindir = op.join(d, 'bin')
        install_ants(bindir, SILENT_ANTS)
        monkeypatch.setenv(wrappers.ANTS_ENV, bindir)
        transform = op.join(d, 'warp.nii.gz')
        open(transform, 'w').close()

        with pytest.raises(cm.EngineCallError) as e:
            wrappers.ants_apply_transforms_to_points(d, np.zeros((2,3)),
                                                     True, transform)
        assert 'points_out.csv' in str(e.value)
