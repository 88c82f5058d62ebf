# testthinout.py - part of mvspim

import numpy as np

from mvspim.spimdata import SpimData, ViewSetup, ViewId, InterestPoints
from mvspim.thinout import ThinOutParameters, nearestdistances, thin_out


def scene(voxel_size=(1., 1., 1.)):
    setups = [ViewSetup(0, (50, 50, 50), voxel_size),
              ViewSetup(1, (50, 50, 50))]
    sd = SpimData(setups, [0])
    locs = np.array([[0, 0, 0], [1, 0, 0], [10, 0, 0], [30, 0, 0],
                     [30, 0, 2]], float)
    sd.setinterestpoints(ViewId(0, 0), "beads",
                         InterestPoints(locs, intensities=np.arange(5.)))
    return sd


def test_nearestdistances():
    locs = np.array([[0, 0, 0], [3, 4, 0], [0, 0, 1]], float)
    assert np.allclose(nearestdistances(locs), [1, 5, 1])
    assert nearestdistances(locs[:1]).tolist() == [np.inf]


def test_keep_range():
    sd = scene()
    params = ThinOutParameters(min_distance=2.5, max_distance=100)
    kept = thin_out(sd, sd.views(), params)
    assert kept == {ViewId(0, 0): 1}
    ips = sd.interestpoints[ViewId(0, 0)]["beads-thinned"]
    assert ips.locations.tolist() == [[10, 0, 0]]
    assert ips.intensities.tolist() == [2.]
    assert ips.ids.tolist() == [0]
    assert "kept range" in ips.parameters
    assert len(sd.interestpoints[ViewId(0, 0)]["beads"]) == 5


def test_remove_range():
    sd = scene()
    params = ThinOutParameters(newlabel="sparse", max_distance=1.5,
                               keep_range=False)
    thin_out(sd, [ViewId(0, 0)], params)
    ips = sd.interestpoints[ViewId(0, 0)]["sparse"]
    assert len(ips) == 3
    assert "removed range" in ips.parameters


def test_calibrated_distances():
    sd = scene(voxel_size=(2., 2., 2.))
    params = ThinOutParameters(min_distance=3., max_distance=100)
    thin_out(sd, [ViewId(0, 0)], params)
    ips = sd.interestpoints[ViewId(0, 0)]["beads-thinned"]
    assert len(ips) == 3
