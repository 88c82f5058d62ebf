# testmodels.py - part of mvspim

import numpy as np
import pytest

from mvspim.affine import Affine
from mvspim.errors import NotEnoughDataPointsError, IllDefinedDataPointsError
from mvspim.models import (TranslationModel, RigidModel, SimilarityModel,
                           AffineModel, InterpolatedModel, createmodel,
                           RansacParameters, compute_ransac)
from mvspim.points import InterestPoint, PointMatch


def makematches(p, q):
    return [PointMatch(InterestPoint(k, a), InterestPoint(k, b))
            for k, (a, b) in enumerate(zip(p, q))]


@pytest.fixture
def cloud():
    rng = np.random.default_rng(5)
    return rng.uniform(0, 100, (40, 3))


def test_translation(cloud):
    q = cloud + [3, -2, 7]
    mdl = TranslationModel().fit(cloud, q)
    assert np.allclose(mdl.afm.translation(), [3, -2, 7])


def test_rigid(cloud):
    afm = Affine.rotator(0.4, [1, 0, 1]).shifted([10, 0, -5])
    mdl = RigidModel().fit(cloud, afm * cloud)
    assert np.allclose(mdl.afm, afm)


def test_rigid_2d():
    rng = np.random.default_rng(6)
    p = rng.uniform(0, 50, (10, 2))
    afm = Affine.rotator(-0.3, center=[20, 20])
    mdl = RigidModel(2).fit(p, afm * p)
    assert np.allclose(mdl.afm, afm)


def test_similarity(cloud):
    afm = (Affine.rotator(-0.2, [0, 1, 0]) @ Affine.scaler(1.5)).shifted([1, 2, 3])
    mdl = SimilarityModel().fit(cloud, afm * cloud)
    assert np.allclose(mdl.afm, afm)


def test_affine(cloud):
    afm = Affine([[1.1, 0.1, 0, 4], [0, 0.9, 0.2, -3], [0.05, 0, 1.2, 1]])
    mdl = AffineModel().fit(cloud, afm * cloud)
    assert np.allclose(mdl.afm, afm)


def test_weighted_translation():
    p = np.zeros((2, 3))
    q = np.array([[0, 0, 0], [4, 0, 0]], float)
    mdl = TranslationModel().fit(p, q, [3, 1])
    assert np.allclose(mdl.afm.translation(), [1, 0, 0])


def test_not_enough_points():
    with pytest.raises(NotEnoughDataPointsError):
        AffineModel().fit(np.zeros((3, 3)), np.zeros((3, 3)))
    with pytest.raises(NotEnoughDataPointsError):
        RigidModel().fit(np.zeros((2, 3)), np.zeros((2, 3)))


def test_ill_defined():
    p = np.array([[0, 0, 0], [1, 1, 1], [2, 2, 2], [3, 3, 3]], float)
    with pytest.raises(IllDefinedDataPointsError):
        AffineModel().fit(p, p)
    with pytest.raises(IllDefinedDataPointsError):
        RigidModel().fit(p[:3], p[:3])


def test_interpolated(cloud):
    afm = Affine([[1.2, 0, 0, 0], [0, 1, 0, 0], [0, 0, 1, 0]])
    mdl = InterpolatedModel(AffineModel(), RigidModel(), 0.5)
    mdl.fit(cloud, afm * cloud)
    assert np.allclose(mdl.afm, 0.5 * mdl.a.afm + 0.5 * mdl.b.afm)
    assert mdl.minmatches == 4
    cp = mdl.copy()
    cp.afm[0, 0] = 5
    assert mdl.afm[0, 0] != 5


def test_createmodel():
    assert isinstance(createmodel("rigid", 2), RigidModel)
    mdl = createmodel("affine", 3, "rigid", 0.1)
    assert isinstance(mdl, InterpolatedModel)
    assert mdl.lam == 0.1
    with pytest.raises(ValueError):
        createmodel("projective")


def test_set_and_cost(cloud):
    q = cloud + 1
    mdl = TranslationModel().fitmatches(makematches(cloud, q))
    assert mdl.cost == pytest.approx(0, abs=1e-9)
    other = TranslationModel()
    other.set(mdl)
    assert np.allclose(other.afm, mdl.afm)
    assert other.cost == mdl.cost


def test_ransac_rejects_outliers(cloud):
    rng = np.random.default_rng(7)
    afm = Affine.rotator(0.1, [0, 0, 1]).shifted([5, 5, 5])
    q = afm * cloud + rng.normal(0, 0.1, cloud.shape)
    q[:8] += rng.uniform(30, 60, (8, 3))
    matches = makematches(cloud, q)
    mdl = RigidModel()
    inliers = mdl.ransac(matches, 1000, 2., 0.1)
    ids = {m.a.id for m in inliers}
    assert ids == set(range(8, 40))
    assert np.allclose(mdl.afm, afm, atol=0.1)


def test_filter_keeps_exact_matches(cloud):
    matches = makematches(cloud, cloud + 2)
    inliers = TranslationModel().filter(matches)
    assert len(inliers) == len(matches)


def test_compute_ransac(cloud):
    rng = np.random.default_rng(8)
    q = cloud + [1, 2, 3] + rng.normal(0, 0.05, cloud.shape)
    q[:5] -= 40
    inliers, error, msg = compute_ransac(makematches(cloud, q),
                                         TranslationModel(),
                                         RansacParameters(num_iterations=200))
    assert len(inliers) >= 30
    assert all(m.a.id >= 5 for m in inliers)
    assert error < 0.5
    assert "inliers" in msg


def test_compute_ransac_too_few(cloud):
    inliers, error, msg = compute_ransac(makematches(cloud[:5], cloud[:5]),
                                         AffineModel())
    assert inliers == []
    assert np.isnan(error)
    assert "Not enough" in msg


def test_ransac_presets():
    assert RansacParameters.preset("Fast").num_iterations == 1000
    assert RansacParameters.preset("Ridiculous").num_iterations == 10000000
    with pytest.raises(ValueError):
        RansacParameters.preset("Sloppy")
