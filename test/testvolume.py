# testvolume.py - part of mvspim

import numpy as np
import pytest

from mvspim import funcs
from mvspim.volume import Volume


def test_integer_scaling():
    vol = Volume(np.array([[0, 65535]], np.uint16))
    assert vol.dtype == np.float32
    assert np.allclose(vol, [[0, 1]])
    vol = Volume(np.array([[0, 255]], np.uint8))
    assert np.allclose(vol, [[0, 1]])


def test_downsampled():
    vol = Volume(np.arange(4 * 4 * 5, dtype=np.float32).reshape(4, 4, 5))
    ds = vol.downsampled([2, 2, 1])
    assert isinstance(ds, Volume)
    assert ds.shape == (4, 2, 2)
    assert ds[0, 0, 0] == pytest.approx(np.mean([0, 1, 5, 6]))


def test_normalized():
    vol = Volume(np.array([[2., 4., 6.]]))
    assert np.allclose(vol.normalized(), [[0, .5, 1]])
    assert np.allclose(vol.normalized(4, 6), [[-1, 0, 1]])
    assert np.allclose(Volume(np.ones((2, 2))).normalized(), 0)


def test_roi():
    vol = Volume(np.arange(60, dtype=np.float32).reshape(3, 4, 5))
    sub = vol.roi([1, 1, 0], [3, 2, 1])
    assert sub.shape == (2, 2, 3)
    assert sub[0, 0, 0] == vol[0, 1, 1]
    with pytest.raises(ValueError):
        vol.roi([0, 0, 0], [5, 0, 0])


def test_save_and_load(tmp_path):
    rng = np.random.default_rng(2)
    vol = Volume(rng.random((3, 8, 9)))
    path = str(tmp_path / "stack.tif")
    vol.save(path)
    back = Volume.load(path)
    assert back.shape == vol.shape
    assert np.allclose(back, vol, atol=1 / 65535)


def test_load_missing(tmp_path):
    with pytest.raises(FileNotFoundError):
        Volume.load(str(tmp_path / "nothing.tif"))


def test_gridshape():
    assert funcs.gridShape([0, 0, 0], [10, 4, 0], 2) == (6, 3, 1)


def test_boxcorners():
    corners = funcs.boxCorners([0, 0], [1, 2])
    assert len(corners) == 4
    assert {tuple(c) for c in corners} == {(0, 0), (0, 2), (1, 0), (1, 2)}


def test_affinevolume_step():
    vol = np.zeros((1, 1, 11), np.float32)
    vol[0, 0, :] = np.arange(11)
    res = funcs.affineVolume(funcs.identityAffine(3), vol,
                             [0, 0, 0], [10, 0, 0], [2, 1, 1])
    assert res.shape == (1, 1, 6)
    assert np.allclose(res[0, 0], [0, 2, 4, 6, 8, 10])


def test_blendingweights():
    wei = funcs.blendingWeights((1, 1, 21), border=2, blendrange=4)
    w = wei[0, 0]
    assert w[0] == 0 and w[1] == 0
    assert w[2] == pytest.approx(0)
    assert w[4] == pytest.approx(0.5)
    assert w[10] == pytest.approx(1)
    assert np.allclose(w, w[::-1])
