"""
Reading and writing the MATLAB .mat files in which SPM, ANTs and Lead-DBS
store their transforms.
"""

import os
import os.path as op
import tempfile

import numpy as np
import scipy.io

from coordmap.errors import FormatError, NotFoundError


def loadmat(path):
    """
    Load a .mat file with structs as attribute objects, unsqueezed.
    Private entries (__header__ etc) are dropped.
    """

    if not op.isfile(path):
        raise NotFoundError("Transform file not found: %s" % path)

    try:
        contents = scipy.io.loadmat(path, struct_as_record=False,
                                    squeeze_me=False)
    except (ValueError, TypeError, NotImplementedError) as e:
        raise FormatError("Could not read %s as a .mat file: %s" % (path, e))

    return { k: v for k, v in contents.items() if not k.startswith('__') }


def sole_variable(path):
    """The single variable stored in a .mat file, as a float array"""

    contents = loadmat(path)
    if len(contents) != 1:
        raise FormatError("Expected exactly one variable in %s, found %s"
                          % (path, sorted(contents.keys())))
    value = next(iter(contents.values()))
    try:
        return np.asarray(value, np.float64)
    except (TypeError, ValueError):
        raise FormatError("Variable in %s is not numeric" % path)


def variable(contents, name, path):
    """Fetch a named variable from loaded contents"""

    if name not in contents:
        raise FormatError("Variable '%s' not found in %s" % (name, path))
    return contents[name]


def struct(value):
    """First element of a MATLAB struct array"""

    if isinstance(value, np.ndarray):
        if not value.size:
            raise FormatError("Empty struct array")
        return value.flat[0]
    return value


def savemat_atomic(path, mdict):
    """
    Write a .mat file via a temporary file in the same directory, then
    rename it into place. The file gets the permissions a plain open()
    would give it under the current umask. Concurrent writers of the same
    content leave a complete, readable file behind whichever finishes last.
    """

    directory = op.dirname(op.abspath(path))
    fd, tmp = tempfile.mkstemp(suffix='.mat', dir=directory)
    try:
        with os.fdopen(fd, 'wb') as f:
            scipy.io.savemat(f, mdict)
        umask = os.umask(0)
        os.umask(umask)
        os.chmod(tmp, 0o666 & ~umask)
        os.replace(tmp, path)
    except BaseException:
        if op.exists(tmp):
            os.remove(tmp)
        raise
