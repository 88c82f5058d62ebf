# testconstellation.py - part of mvspim

import numpy as np
import pytest

from mvspim.affine import Affine
from mvspim.constellation import (Group, AllToAll, AllToAllRange,
                                  IndividualTimepoints, ReferenceTimepoint,
                                  BoundingBoxOverlap, createsetup,
                                  detectsubsets, groupsforallviews)
from mvspim.grouping import (InterestPointGrouping, merge_all,
                             merge_min_distance, groupinterestpoints,
                             splitgroupresults)
from mvspim.pairwise import PairwiseResult
from mvspim.points import InterestPoint, PointMatch
from mvspim.spimdata import SpimData, ViewSetup, ViewId


def views(timepoints, setups):
    return [ViewId(t, s) for t in timepoints for s in setups]


def test_group_basics():
    g = Group([ViewId(0, 2), ViewId(0, 1)])
    assert list(g) == [ViewId(0, 1), ViewId(0, 2)]
    assert g == Group([ViewId(0, 1), ViewId(0, 2)])
    assert g.first() == ViewId(0, 1)
    h = Group([ViewId(0, 2), ViewId(0, 3)])
    assert Group.overlaps(g, h)
    assert Group.containsboth(ViewId(0, 1), ViewId(0, 2), [g, h])
    assert not Group.containsboth(ViewId(0, 1), ViewId(0, 3), [g, h])
    assert Group.memberof(ViewId(0, 2), [g, h]) == [g, h]
    merged = Group.mergeoverlapping([g, h, Group([ViewId(1, 0)])])
    assert len(merged) == 2
    assert Group(views([0], [1, 2, 3])) in merged


def test_alltoall():
    setup = AllToAll(views([0], [0, 1, 2]))
    subsets = setup.run()
    assert len(subsets) == 1
    assert len(subsets[0].pairs) == 3
    assert subsets[0].fixedviews == set()
    assert len(setup.pairs) == 3


def test_fixing_removes_pairs():
    setup = AllToAll(views([0], [0, 1, 2]))
    subsets = setup.run(fixedviews=[ViewId(0, 0), ViewId(0, 1)])
    assert subsets[0].fixedviews == {ViewId(0, 0), ViewId(0, 1)}
    assert (ViewId(0, 0), ViewId(0, 1)) not in subsets[0].pairs
    assert len(subsets[0].pairs) == 2


def test_groups_remove_redundant_pairs():
    vv = views([0], [0, 1, 2])
    setup = AllToAll(vv, [Group(vv[:2])])
    removed = setup.definepairs()
    assert setup.pairs == [(vv[0], vv[2]), (vv[1], vv[2])]
    assert removed == []


def test_range():
    vv = views([0, 1, 2], [0])
    setup = AllToAllRange(vv, range=1)
    setup.run()
    assert setup.pairs == [(vv[0], vv[1]), (vv[1], vv[2])]


def test_individual_timepoints():
    vv = views([0, 1], [0, 1])
    setup = IndividualTimepoints(vv)
    subsets = setup.run()
    assert len(subsets) == 2
    for s in subsets:
        assert len({v.timepoint for v in s.views}) == 1


def test_reference_timepoint():
    vv = views([0, 1, 2], [0, 1])
    setup = ReferenceTimepoint(vv, reference=1)
    subsets = setup.run()
    assert len(subsets) == 2
    for s in subsets:
        assert s.fixedviews == {ViewId(1, 0), ViewId(1, 1)}
        assert all(p[0].timepoint == 1 or p[1].timepoint == 1
                   for p in s.pairs)
    tps = sorted({v.timepoint for s in subsets for v in s.views
                  if v.timepoint != 1})
    assert tps == [0, 2]


def test_createsetup():
    vv = views([0, 1], [0])
    assert isinstance(createsetup("all-to-all-range", vv, range=2),
                      AllToAllRange)
    assert createsetup("reference-timepoint", vv, reference=1).reference == 1
    with pytest.raises(ValueError):
        createsetup("random", vv)


def test_detectsubsets_isolated_and_grouped():
    a, b, c, d = views([0], [0, 1, 2, 3])
    subsets = detectsubsets([a, b, c, d], [(a, b)], set())
    assert sorted(len(s.views) for s in subsets) == [1, 1, 2]
    subsets = detectsubsets([a, b, c, d], [(a, b)], {Group([b, c])})
    assert sorted(len(s.views) for s in subsets) == [1, 3]


def test_groupedpairs():
    a, b, c = views([0], [0, 1, 2])
    setup = AllToAll([a, b, c], [Group([a, b])])
    subsets = setup.run()
    assert len(subsets) == 1
    gp = subsets[0].groupedpairs()
    assert gp == [(Group([a, b]), Group([c]))]


def test_groupsforallviews():
    a, b, c = views([0], [0, 1, 2])
    full = groupsforallviews([a, b, c], [Group([a, b])])
    assert full == [Group([a, b]), Group([c])]


@pytest.fixture
def threeviews():
    setups = [ViewSetup(s, (100, 100, 50)) for s in range(3)]
    sd = SpimData(setups, [0])
    sd.registrations[ViewId(0, 1)].preconcatenate(
        Affine.translator([80, 0, 0]))
    sd.registrations[ViewId(0, 2)].preconcatenate(
        Affine.translator([500, 0, 0]))
    return sd


def test_boundingboxoverlap(threeviews):
    ovl = BoundingBoxOverlap(threeviews)
    a, b, c = threeviews.views()
    assert ovl.overlaps(a, b)
    assert not ovl.overlaps(a, c)
    bmin, bmax = ovl.overlapinterval(a, b)
    assert np.allclose(bmin, [80, 0, 0])
    assert np.allclose(bmax, [99, 99, 49])
    assert ovl.overlapinterval(a, c) is None


def test_setup_with_overlap(threeviews):
    setup = AllToAll(threeviews.views())
    subsets = setup.run(BoundingBoxOverlap(threeviews))
    assert setup.pairs == [(ViewId(0, 0), ViewId(0, 1))]
    assert len(subsets) == 2


def pts(view, locs, start=0):
    return [InterestPoint(start + k, np.array(l, float), view)
            for k, l in enumerate(locs)]


def test_merge_all():
    a, b = views([0], [0, 1])
    merged = merge_all({b: pts(b, [[1, 1, 1]]), a: pts(a, [[0, 0, 0]])})
    assert [p.view for p in merged] == [a, b]


def test_merge_min_distance():
    a, b = views([0], [0, 1])
    points = {a: pts(a, [[0, 0, 0], [10, 0, 0]]),
              b: pts(b, [[1, 0, 0], [30, 0, 0]])}
    merged = merge_min_distance(points, 2.5)
    assert len(merged) == 3
    near = [p for p in merged if p.l[0] < 5]
    assert len(near) == 1
    again = merge_min_distance(points, 2.5)
    assert [(p.view, p.id) for p in again] == [(p.view, p.id) for p in merged]


def test_groupinterestpoints():
    a, b, c = views([0], [0, 1, 2])
    g = Group([a, b])
    points = {a: {"beads": pts(a, [[0, 0, 0]])},
              b: {"beads": pts(b, [[50, 0, 0]]),
                  "nuclei": pts(b, [[5, 5, 5]])},
              c: {"beads": pts(c, [[9, 9, 9]])}}
    out = groupinterestpoints([g, Group([c])], points,
                              InterestPointGrouping("all"))
    assert set(out[g]) == {"beads", "nuclei"}
    assert len(out[g]["beads"]) == 2
    with pytest.raises(ValueError):
        InterestPointGrouping("some")


def test_splitgroupresults():
    a, b, c = views([0], [0, 1, 2])
    pa = pts(a, [[0, 0, 0]])[0]
    pb = pts(b, [[1, 0, 0]])[0]
    pc = pts(c, [[2, 0, 0], [3, 0, 0]])
    res = PairwiseResult(candidates=[PointMatch(pa, pc[0]),
                                     PointMatch(pb, pc[1])],
                         inliers=[PointMatch(pa, pc[0]),
                                  PointMatch(pb, pc[1])],
                         error=0.5, labela="beads", labelb="beads")
    split = splitgroupresults([((Group([a, b]), Group([c])), res)])
    pairs = sorted(pair for pair, r in split)
    assert pairs == [(a, c), (b, c)]
    for pair, r in split:
        assert len(r.inliers) == 1
        assert r.error == 0.5
