# testglobalopt.py - part of mvspim

import numpy as np
import pytest

from mvspim.affine import Affine
from mvspim.constellation import Group
from mvspim.globalopt import (ConvergenceStrategy,
                              IterativeConvergenceStrategy,
                              InterestPointMatchCreator,
                              MetadataWeakLinkCreator, MaxErrorLinkRemoval,
                              GlobalOptimizationParameters, global_opt,
                              global_opt_iterative, global_opt_two_round,
                              register_views)
from mvspim.models import TranslationModel, RigidModel, RansacParameters
from mvspim.pairwise import PairwiseResult, RGLDMPairwise
from mvspim.points import InterestPoint, PointMatch
from mvspim.spimdata import SpimData, ViewSetup, ViewId, InterestPoints
from mvspim.tiles import (Tile, TileConfiguration, ErrorStatistic,
                          identifyconnectedgraphs)


def link(va, vb, p, shift, start=0):
    """Matches saying that view b must move by `shift` relative to a"""
    p = np.asarray(p, float)
    q = p - np.asarray(shift, float)
    return [PointMatch(InterestPoint(start + k, p[k], va),
                       InterestPoint(start + k, q[k], vb))
            for k in range(len(p))]


def result(matches):
    return PairwiseResult(candidates=matches, inliers=matches, error=0.)


@pytest.fixture
def cloud():
    rng = np.random.default_rng(21)
    return rng.uniform(0, 100, (10, 3))


def test_tile_connections(cloud):
    a = Tile(TranslationModel())
    b = Tile(TranslationModel())
    a.addmatches(b, link(None, None, cloud, [1, 0, 0]))
    a.connect(b)
    assert a.connectedtiles() == [b]
    assert b.connectedtiles() == [a]
    assert a.nummatches() == 10
    assert b.nummatches() == 0
    assert a.distance() == pytest.approx(1)
    a.disconnect(b)
    assert a.connectedtiles() == [] and b.connectedtiles() == []


def test_fitmodel_damping(cloud):
    a = Tile(TranslationModel())
    b = Tile(TranslationModel())
    a.addmatches(b, link(None, None, cloud, [4, 0, 0]))
    a.fitmodel(0.5)
    assert np.allclose(a.model.afm.translation(), [-2, 0, 0])
    a.fitmodel(0.5)
    assert np.allclose(a.model.afm.translation(), [-3, 0, 0])
    a.fitmodel()
    assert np.allclose(a.model.afm.translation(), [-4, 0, 0])


def test_errorstatistic():
    es = ErrorStatistic(5)
    assert es.wideslope(2) == np.inf
    for v in [10, 8, 6, 4, 2, 0]:
        es.add(v)
    assert len(es.values) == 5
    assert es.wideslope(2) == pytest.approx(-2)
    assert es.min == 0 and es.max == 10
    assert es.mean() == pytest.approx(4)


def test_identifyconnectedgraphs():
    tiles = [Tile(TranslationModel()) for k in range(5)]
    tiles[0].connect(tiles[1])
    tiles[1].connect(tiles[2])
    tiles[3].connect(tiles[4])
    graphs = identifyconnectedgraphs(tiles)
    assert [len(g) for g in graphs] == [3, 2]
    assert graphs[0][0] is tiles[0]


def test_prealign_and_optimize(cloud):
    a = Tile(TranslationModel())
    b = Tile(TranslationModel())
    c = Tile(TranslationModel())
    a.addmatches(b, link(None, None, cloud, [5, 0, 0]))
    b.addmatches(a, link(None, None, cloud, [-5, 0, 0]))
    a.connect(b)
    tc = TileConfiguration()
    tc.fixtile(a)
    tc.addtiles([b, c])
    unaligned = tc.prealign()
    assert unaligned == [c]
    assert np.allclose(b.model.afm.translation(), [5, 0, 0])
    its = tc.optimize(0.01, 50, 10)
    assert its <= 50
    assert tc.error == pytest.approx(0, abs=1e-6)


def test_solvetranslations_needs_translations(cloud):
    a = Tile(RigidModel())
    b = Tile(RigidModel())
    a.addmatches(b, link(None, None, cloud, [1, 1, 1]))
    a.connect(b)
    tc = TileConfiguration()
    tc.addtiles([a, b])
    with pytest.raises(ValueError):
        tc.solvetranslations()


def test_solvetranslations_floating(cloud):
    a = Tile(TranslationModel())
    b = Tile(TranslationModel())
    a.addmatches(b, link(None, None, cloud, [4, 0, 0]))
    b.addmatches(a, link(None, None, cloud, [-4, 0, 0]))
    a.connect(b)
    tc = TileConfiguration()
    tc.addtiles([a, b])
    tc.solvetranslations()
    ta = a.model.afm.translation()
    tb = b.model.afm.translation()
    assert np.allclose(ta + tb, 0)
    assert np.allclose(tb - ta, [4, 0, 0])


def views(n):
    return [ViewId(0, s) for s in range(n)]


def test_assignweights(cloud):
    v = [ViewId(0, s) for s in range(6)]
    results = [((v[0], v[2]), result(link(v[0], v[2], cloud[:6], [0, 0, 0]))),
               ((v[1], v[2]), result(link(v[1], v[2], cloud[6:8], [0, 0, 0]))),
               ((v[4], v[3]), result(link(v[4], v[3], cloud[:4], [0, 0, 0]))),
               ((v[5], v[3]), result([]))]
    groups = [Group([v[0], v[1]]), Group([v[4], v[5]])]
    pmc = InterestPointMatchCreator(results)
    tiles = {w: Tile(TranslationModel()) for w in v}
    tiles[v[1]] = tiles[v[0]]
    tiles[v[5]] = tiles[v[4]]
    pmc.assignweights(tiles, groups, [])
    # v1 has a quarter of its group's inliers, v0 three quarters
    assert pmc.weights == pytest.approx([1, 3, 1, 1])
    pmc.assignpointmatches(tiles, groups, [])
    p, q, w = tiles[v[2]].links[tiles[v[0]]]
    assert sorted(w.tolist()) == [1.] * 6 + [3.] * 2
    assert tiles[v[3]].nummatches() == 4


def test_global_opt(cloud):
    v0, v1, v2 = views(3)
    results = [((v0, v1), result(link(v0, v1, cloud, [3, 0, 0]))),
               ((v1, v2), result(link(v1, v2, cloud, [0, -2, 0]))),
               ((v0, v2), result(link(v0, v2, cloud, [3, -2, 0])))]
    models = global_opt(TranslationModel(), InterestPointMatchCreator(results),
                        ConvergenceStrategy(10.), [v0])
    assert np.allclose(models[v0].toaffine(), Affine())
    assert np.allclose(models[v1].toaffine().translation(), [3, 0, 0])
    assert np.allclose(models[v2].toaffine().translation(), [3, -2, 0])


def test_global_opt_groups(cloud):
    v0, v1, v2 = views(3)
    results = [((v0, v2), result(link(v0, v2, cloud, [0, 0, 6])))]
    models = global_opt(TranslationModel(), InterestPointMatchCreator(results),
                        ConvergenceStrategy(10.), [v0], [Group([v1, v2])])
    assert models[v1] is models[v2]
    assert np.allclose(models[v1].toaffine().translation(), [0, 0, 6])


def test_global_opt_nothing_connected():
    assert global_opt(TranslationModel(), InterestPointMatchCreator([]),
                      ConvergenceStrategy(10.)) is None


def test_iterative_link_removal(cloud):
    v0, v1, v2, v3 = views(4)
    results = [((va, vb), result(link(va, vb, cloud, [0, 0, 0])))
               for va, vb in [(v0, v1), (v0, v2), (v0, v3), (v1, v2),
                              (v2, v3)]]
    results.append(((v1, v3), result(link(v1, v3, cloud, [30, 0, 0]))))
    removed = []
    models = global_opt_iterative(TranslationModel(),
                                  InterestPointMatchCreator(results),
                                  IterativeConvergenceStrategy(),
                                  MaxErrorLinkRemoval(), [v0],
                                  removedpairs=removed)
    assert len(removed) == 1
    assert {removed[0][0], removed[0][1]} == {Group([v1]), Group([v3])}
    for v in (v1, v2, v3):
        assert np.allclose(models[v].toaffine(), Affine(), atol=1e-6)


def test_iterative_convergence():
    tc = TileConfiguration()
    tc.error = 1.
    tc.maxerror = 2.
    assert IterativeConvergenceStrategy().isconverged(tc)
    tc.maxerror = 3.
    assert not IterativeConvergenceStrategy().isconverged(tc)
    tc.error = tc.maxerror = 4.
    assert not IterativeConvergenceStrategy().isconverged(tc)


@pytest.fixture
def strip():
    setups = [ViewSetup(s, (100, 100, 100)) for s in range(4)]
    sd = SpimData(setups, [0])
    for s in range(4):
        sd.registrations[ViewId(0, s)].preconcatenate(
            Affine.translator([80 * s, 0, 0]), "metadata")
    return sd


def test_two_round(cloud, strip):
    v0, v1, v2, v3 = strip.views()
    results = [((v0, v1), result(link(v0, v1, cloud, [2, 0, 0]))),
               ((v2, v3), result(link(v2, v3, cloud, [3, 0, 0])))]
    final = global_opt_two_round(TranslationModel(),
                                 InterestPointMatchCreator(results),
                                 IterativeConvergenceStrategy(), None,
                                 MetadataWeakLinkCreator.factory(strip),
                                 fixedviews=[v0])
    assert np.allclose(final[v0], Affine(), atol=1e-6)
    assert np.allclose(final[v1].translation(), [2, 0, 0], atol=1e-6)
    assert np.allclose(final[v2].translation(), [2, 0, 0], atol=1e-4)
    assert np.allclose(final[v3].translation(), [5, 0, 0], atol=1e-4)


def test_two_round_all_connected(cloud, strip):
    v0, v1 = strip.views()[:2]
    results = [((v0, v1), result(link(v0, v1, cloud, [2, 0, 0])))]
    final = GlobalOptimizationParameters.preset(3).run(
        TranslationModel(), InterestPointMatchCreator(results), [v0],
        spimdata=strip)
    assert set(final) == {v0, v1}
    assert np.allclose(final[v1].translation(), [2, 0, 0])


def test_presets():
    assert GlobalOptimizationParameters.preset(0).method == "one-round"
    relaxed = GlobalOptimizationParameters.preset(5)
    assert relaxed.method == "two-round-iterative"
    assert relaxed.relative_threshold == 5.
    assert relaxed.absolute_threshold == 7.
    assert GlobalOptimizationParameters().method == "two-round-iterative"
    with pytest.raises(ValueError):
        GlobalOptimizationParameters.preset(6)
    with pytest.raises(ValueError):
        GlobalOptimizationParameters("three-round")
    with pytest.raises(ValueError):
        GlobalOptimizationParameters.preset(4).run(
            TranslationModel(), InterestPointMatchCreator([]))


def test_register_views():
    rng = np.random.default_rng(22)
    beads = rng.uniform(0, 200, (60, 3))
    shifts = [[0, 0, 0], [6, -3, 1], [-4, 2, 5]]
    setups = [ViewSetup(s, (200, 200, 200)) for s in range(3)]
    sd = SpimData(setups, [0])
    for v, shift in zip(sd.views(), shifts):
        sd.setinterestpoints(v, "beads", InterestPoints(beads - shift))
    matcher = RGLDMPairwise(TranslationModel(),
                            RansacParameters(num_iterations=500))
    transforms = register_views(
        sd, matcher=matcher, model=TranslationModel(),
        globalopt=GlobalOptimizationParameters.preset(0))
    assert set(transforms) == set(sd.views())
    for v, shift in zip(sd.views(), shifts):
        assert np.allclose(transforms[v].translation(), shift, atol=1e-6)
        world = sd.model(v) * sd.interestpoints[v]["beads"].locations
        assert np.allclose(world, beads, atol=1e-6)
        assert sd.interestpoints[v]["beads"].correspondences
        assert sd.registrations[v].transforms[0][0] == "Registration"
