# testdetection.py - part of mvspim

import numpy as np
import pytest

from mvspim.detection import (DetectionParameters, dogsigmas,
                              differenceofgaussian, localextrema,
                              quadraticpeaks, downsamplingcorrection,
                              detect, detect_interest_points)
from mvspim.spimdata import SpimData, ViewSetup, ViewId

BLOBS = np.array([[10.3, 12.0, 15.6],
                  [22.0, 20.4, 8.2],
                  [8.7, 25.5, 24.0]])


def blobimage(shape=(32, 32, 32), sigma=2., centers=BLOBS):
    z, y, x = np.meshgrid(*[np.arange(n) for n in shape], indexing="ij")
    img = np.zeros(shape, np.float32)
    for cx, cy, cz in centers:
        img += np.exp(-((x - cx)**2 + (y - cy)**2 + (z - cz)**2)
                      / (2 * sigma**2))
    return img


def nearest(locs, target):
    d = np.linalg.norm(locs - target, axis=1)
    return d.min()


def test_parameters():
    with pytest.raises(ValueError):
        DetectionParameters(sigma=0.4)
    with pytest.raises(ValueError):
        DetectionParameters(localization="gaussian")
    with pytest.raises(ValueError):
        DetectionParameters(downsample_z=0)


def test_dogsigmas():
    s1, s2 = dogsigmas(1.8)
    assert s1 == pytest.approx(np.sqrt(1.8**2 - 0.25))
    assert s2 == pytest.approx(np.sqrt((1.8 * 2**0.25)**2 - 0.25))


def test_dog_sign():
    dog = differenceofgaussian(blobimage())
    x, y, z = np.round(BLOBS[0]).astype(int)
    assert dog[z, y, x] > 0
    dark = differenceofgaussian(1 - blobimage())
    assert dark[z, y, x] < 0


def test_localextrema():
    dog = np.zeros((5, 5, 5))
    dog[2, 3, 1] = 1
    dog[1, 1, 3] = -1
    dog[0, 0, 0] = 5
    assert localextrema(dog, 0.5).tolist() == [[1, 3, 2]]
    both = localextrema(dog, 0.5, findmin=True)
    assert sorted(both.tolist()) == [[1, 3, 2], [3, 1, 1]]
    assert len(localextrema(dog, 2.)) == 0


def test_quadraticpeaks():
    z, y, x = np.meshgrid(*[np.arange(9)] * 3, indexing="ij")
    dog = 1 - ((x - 4.3)**2 + (y - 3.8)**2 + (z - 4.1)**2) / 20
    locs, vals = quadraticpeaks(dog, np.array([[4., 4, 4]]), 0.5)
    assert np.allclose(locs, [[4.3, 3.8, 4.1]])
    assert vals[0] == pytest.approx(1)


def test_quadraticpeaks_moves():
    z, y, x = np.meshgrid(*[np.arange(9)] * 3, indexing="ij")
    dog = 1 - ((x - 5.2)**2 + (y - 4)**2 + (z - 4)**2) / 20
    locs, vals = quadraticpeaks(dog, np.array([[3., 4, 4]]), 0.5)
    assert np.allclose(locs, [[5.2, 4, 4]])
    locs, vals = quadraticpeaks(dog, np.array([[3., 4, 4]]), 2.)
    assert len(locs) == 0


def test_quadraticpeaks_keeps_last_fit():
    z, y, x = np.meshgrid(np.arange(5), np.arange(5), np.arange(30),
                          indexing="ij")
    dog = 1 - (x - 25)**2 / 1000 - (y - 2)**2 - (z - 2)**2
    locs, vals = quadraticpeaks(dog, np.array([[2., 2, 2]]), 0.5)
    assert np.allclose(locs, [[25, 2, 2]])
    assert vals[0] == pytest.approx(1)


def test_quadraticpeaks_half_pixel():
    dog = differenceofgaussian(blobimage(centers=[[16., 15.5, 16.]]))
    peaks = localextrema(dog, 0.008)
    locs, vals = quadraticpeaks(dog, peaks, 0.008)
    assert len(locs) == 1
    assert np.allclose(locs[0], [16, 15.5, 16], atol=0.05)


def test_downsamplingcorrection():
    locs = np.array([[0., 0, 0], [1, 2, 3]])
    assert np.allclose(downsamplingcorrection(locs, [2, 2, 1]),
                       [[0.5, 0.5, 0], [2.5, 4.5, 3]])


def test_detect():
    locs, vals = detect(blobimage())
    assert len(locs) == len(BLOBS)
    for b in BLOBS:
        assert nearest(locs, b) < 0.25
    assert np.all(vals > 0.008)


def test_detect_no_localization():
    params = DetectionParameters(localization="none")
    locs, vals = detect(blobimage(), params)
    assert len(locs) == len(BLOBS)
    assert np.all(locs == np.round(locs))
    for b in BLOBS:
        assert nearest(locs, b) < 1


def test_detect_downsampled():
    params = DetectionParameters(downsample_xy=2)
    locs, vals = detect(blobimage(sigma=3.), params)
    assert len(locs) == len(BLOBS)
    for b in BLOBS:
        assert nearest(locs, b) < 1


def test_detect_dark_blobs():
    params = DetectionParameters(find_min=True, find_max=False)
    locs, vals = detect(1 - blobimage(), params)
    assert len(locs) == len(BLOBS)
    for b in BLOBS:
        assert nearest(locs, b) < 0.25
    assert np.all(vals < -0.008)


def test_detect_intensity_range():
    img = blobimage()
    raw = np.round(img * 1000 + 100).astype(np.uint16)
    params = DetectionParameters(min_intensity=100 / 65535,
                                 max_intensity=1100 / 65535)
    locs, vals = detect(raw, params)
    ref, refvals = detect(img, DetectionParameters(min_intensity=0,
                                                   max_intensity=1))
    assert len(locs) == len(ref) == len(BLOBS)
    assert np.allclose(locs, ref, atol=0.05)
    assert np.allclose(vals, refvals, atol=2e-3)
    params = DetectionParameters(min_intensity=100, max_intensity=1100)
    locs, vals = detect(raw, params)
    assert len(locs) == 0


def test_detect_interest_points():
    img = blobimage()
    setups = [ViewSetup(s, (32, 32, 32)) for s in range(2)]
    sd = SpimData(setups, [0], loader=lambda view: img)
    params = DetectionParameters(keep_intensity=True)
    counts = detect_interest_points(sd, sd.views(), "beads", params,
                                    num_threads=2)
    assert counts == {ViewId(0, 0): 3, ViewId(0, 1): 3}
    ips = sd.interestpoints[ViewId(0, 1)]["beads"]
    assert ips.intensities is not None and len(ips.intensities) == 3
    assert ips.ids.tolist() == [0, 1, 2]
    assert "sigma=1.8" in ips.parameters
