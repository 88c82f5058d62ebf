# models.py - part of mvspim

## Copyright (C) 2025  mvspim developers
##
## This program is free software: you can redistribute it and/or
## modify it under the terms of the GNU General Public License as
## published by the Free Software Foundation, either version 3 of the
## License, or (at your option) any later version.
##
## This program is distributed in the hope that it will be useful, but
## WITHOUT ANY WARRANTY; without even the implied warranty of
## MERCHANTABILITY or FITNESS FOR A PARTICULAR PURPOSE.  See the GNU
## General Public License for more details.
##
## You should have received a copy of the GNU General Public License
## along with this program.  If not, see <https://www.gnu.org/licenses/>.

"""Transformation models and RANSAC

A model is an affine transformation of a restricted family that can be
fitted to weighted pairs of points. All models keep their current
estimate as an `Affine` in `model.afm`, so they can be composed and
applied like any other affine transformation.

`fit(p, q, w)` finds the transformation *T* minimizing
Σ *w*ᵢ |*T* *p*ᵢ − *q*ᵢ|², where *p* and *q* are *N*×*n* arrays.
"""

import logging
from dataclasses import dataclass
import numpy as np
from typing import Optional, Tuple, List, Dict
import numpy.typing
ArrayLike = numpy.typing.ArrayLike

from .affine import Affine
from .points import PointMatch, matcharrays
from .errors import NotEnoughDataPointsError, IllDefinedDataPointsError

logger = logging.getLogger(__name__)

RANSAC_SEED = 69997
FILTER_TOLERANCE = 1e-9


class Model:
    """Base class for transformation models

    Subclasses implement `_estimate` and set `minmatches`.
    """
    name = "model"

    def __init__(self, ndim: int = 3):
        self.ndim = ndim
        self.afm = Affine.identity(ndim)
        self.cost = np.inf

    def __repr__(self):
        return f"{type(self).__name__}({self.ndim}D, cost={self.cost:.4g})"

    @property
    def minmatches(self) -> int:
        """Minimum number of matches needed to fit the model"""
        raise NotImplementedError

    def _prepare(self, p: ArrayLike, q: ArrayLike,
                 w: Optional[ArrayLike]) -> Tuple[np.ndarray, np.ndarray,
                                                  np.ndarray]:
        p = np.asarray(p, float).reshape(-1, self.ndim)
        q = np.asarray(q, float).reshape(-1, self.ndim)
        if len(p) != len(q):
            raise ValueError("Point sets must have equal length")
        if w is None:
            w = np.ones(len(p))
        w = np.asarray(w, float)
        if len(p) < self.minmatches:
            raise NotEnoughDataPointsError(
                f"{len(p)} data points are not enough to estimate a "
                f"{self.name} model, at least {self.minmatches} needed")
        if np.sum(w) <= 0:
            raise IllDefinedDataPointsError("Total weight must be positive")
        return p, q, w

    def _estimate(self, p: np.ndarray, q: np.ndarray,
                  w: np.ndarray) -> Affine:
        raise NotImplementedError

    def fit(self, p: ArrayLike, q: ArrayLike,
            w: Optional[ArrayLike] = None) -> "Model":
        """Weighted least-squares fit mapping points `p` onto points `q`

        Raises NotEnoughDataPointsError if fewer than `minmatches`
        pairs are given, and IllDefinedDataPointsError if the pairs do
        not determine the model.
        """
        p, q, w = self._prepare(p, q, w)
        self.afm = self._estimate(p, q, w)
        return self

    def apply(self, pts: ArrayLike) -> np.ndarray:
        return self.afm * np.asarray(pts, float)

    def residuals(self, p: ArrayLike, q: ArrayLike) -> np.ndarray:
        """Distances between transformed `p` and `q`"""
        if len(p) == 0:
            return np.zeros(0)
        return np.linalg.norm(self.apply(p) - np.asarray(q, float), axis=-1)

    def copy(self) -> "Model":
        mdl = type(self).__new__(type(self))
        mdl.__dict__.update(self.__dict__)
        mdl.afm = self.afm.copy()
        return mdl

    def set(self, other: "Model") -> None:
        """Take over the transformation and cost of another model"""
        self.afm = other.toaffine().copy()
        self.cost = other.cost

    def toaffine(self) -> Affine:
        return Affine(self.afm)

    def fitmatches(self, matches: List[PointMatch]) -> "Model":
        """Fit to a list of PointMatches and update the cost

        The cost is the weighted mean residual of the matches.
        """
        p, q, w = matcharrays(matches)
        self.fit(p, q, w)
        self.cost = float(np.sum(w * self.residuals(p, q)) / np.sum(w))
        return self

    def _testinliers(self, p, q, epsilon):
        return np.flatnonzero(self.residuals(p, q) < epsilon)

    def ransac(self, candidates: List[PointMatch], iterations: int,
               epsilon: float, min_inlier_ratio: float,
               min_num_inliers: Optional[int] = None,
               seed: int = RANSAC_SEED) -> List[PointMatch]:
        """Random sample consensus

        Arguments:
            candidates: putative matches
            iterations: number of random samples to try
            epsilon: maximal residual of an inlier
            min_inlier_ratio: minimal fraction of inliers among candidates
            min_num_inliers: minimal absolute number of inliers, defaults
                to `minmatches`
            seed: seed for the random number generator

        Returns:
            the inliers of the best model, empty if none was found

        Each iteration fits the model to `minmatches` randomly drawn
        candidates and collects the candidates within `epsilon`. The
        model is then refitted to those inliers until their number
        stops increasing. The model with most inliers (lowest cost among
        equals) wins, and `self` is set to it.

        Raises NotEnoughDataPointsError if there are fewer candidates
        than `minmatches`.
        """
        N = len(candidates)
        if min_num_inliers is None:
            min_num_inliers = self.minmatches
        if N < self.minmatches:
            raise NotEnoughDataPointsError(
                f"{N} candidates are not enough to estimate a "
                f"{self.name} model, at least {self.minmatches} needed")
        p, q, w = matcharrays(candidates)
        rng = np.random.default_rng(seed)
        best: Optional[Affine] = None
        bestinliers = np.zeros(0, int)
        bestcost = np.inf
        trial = self.copy()
        for it in range(iterations):
            sample = rng.choice(N, self.minmatches, replace=False)
            try:
                trial.fit(p[sample], q[sample], w[sample])
            except (NotEnoughDataPointsError, IllDefinedDataPointsError):
                continue
            inliers = trial._testinliers(p, q, epsilon)
            numinliers = 0
            while len(inliers) > numinliers and len(inliers) >= self.minmatches:
                numinliers = len(inliers)
                try:
                    trial.fit(p[inliers], q[inliers], w[inliers])
                except IllDefinedDataPointsError:
                    break
                inliers = trial._testinliers(p, q, epsilon)
            if len(inliers) < min_num_inliers:
                continue
            if len(inliers) / N <= min_inlier_ratio:
                continue
            res = trial.residuals(p[inliers], q[inliers])
            cost = float(np.sum(w[inliers] * res) / np.sum(w[inliers]))
            if (len(inliers) > len(bestinliers)
                or (len(inliers) == len(bestinliers) and cost < bestcost)):
                best = trial.afm.copy()
                bestinliers = inliers
                bestcost = cost
                if len(inliers) == N:
                    break
        if best is None:
            return []
        self.afm = best
        self.cost = bestcost
        return [candidates[i] for i in bestinliers]

    def filter(self, candidates: List[PointMatch], max_trust: float = 4.,
               min_num_inliers: Optional[int] = None) -> List[PointMatch]:
        """Robust iterative filter

        Repeatedly fits the model to the remaining matches and drops
        those whose residual exceeds `max_trust` times the median
        residual, until nothing changes.

        Returns the remaining matches, or an empty list if fewer than
        `min_num_inliers` (default: `minmatches`) remain.
        """
        if min_num_inliers is None:
            min_num_inliers = self.minmatches
        inliers = list(candidates)
        while True:
            num = len(inliers)
            if num < self.minmatches:
                break
            p, q, w = matcharrays(inliers)
            self.fit(p, q, w)
            res = self.residuals(p, q)
            median = np.median(res)
            self.cost = float(np.mean(res))
            limit = max(max_trust * median, FILTER_TOLERANCE)
            inliers = [m for m, r in zip(inliers, res) if r <= limit]
            if len(inliers) >= num:
                break
        if len(inliers) < min_num_inliers:
            return []
        return inliers

    def filterransac(self, candidates: List[PointMatch], iterations: int,
                     epsilon: float, min_inlier_ratio: float,
                     min_num_inliers: Optional[int] = None,
                     max_trust: float = 4.) -> List[PointMatch]:
        """RANSAC followed by the robust filter"""
        inliers = self.ransac(candidates, iterations, epsilon,
                              min_inlier_ratio, min_num_inliers)
        if len(inliers) == 0:
            return []
        return self.filter(inliers, max_trust, min_num_inliers)


class TranslationModel(Model):
    name = "translation"

    @property
    def minmatches(self) -> int:
        return 1

    def _estimate(self, p, q, w):
        d = np.sum(w[:, None] * (q - p), 0) / np.sum(w)
        return Affine.translator(d)


def _weightedcenters(p, q, w):
    W = np.sum(w)
    pc = np.sum(w[:, None] * p, 0) / W
    qc = np.sum(w[:, None] * q, 0) / W
    return pc, qc


def _kabsch(p, q, w):
    """Optimal rotation of centered points and associated SVD products"""
    ndim = p.shape[1]
    H = (p * w[:, None]).T @ q
    U, S, Vt = np.linalg.svd(H)
    D = np.ones(ndim)
    if np.linalg.det(Vt.T @ U.T) < 0:
        D[-1] = -1
    R = Vt.T @ np.diag(D) @ U.T
    return R, S, D


def _checkspread(p, w, minrank):
    """Raise if the centered points span fewer than `minrank` dimensions"""
    sv = np.linalg.svd(p * np.sqrt(w[:, None]), compute_uv=False)
    tol = max(1e-9 * sv[0], 1e-12) if len(sv) else 1e-12
    if np.sum(sv > tol) < minrank:
        raise IllDefinedDataPointsError(
            "Data points are degenerate (collinear or coincident)")


class RigidModel(Model):
    name = "rigid"

    @property
    def minmatches(self) -> int:
        return 2 if self.ndim == 2 else 3

    def _estimate(self, p, q, w):
        pc, qc = _weightedcenters(p, q, w)
        p0 = p - pc
        _checkspread(p0, w, self.ndim - 1)
        R, S, D = _kabsch(p0, q - qc, w)
        t = qc - R @ pc
        return Affine(np.hstack((R, t.reshape(-1, 1))))


class SimilarityModel(Model):
    name = "similarity"

    @property
    def minmatches(self) -> int:
        return 2 if self.ndim == 2 else 3

    def _estimate(self, p, q, w):
        pc, qc = _weightedcenters(p, q, w)
        p0 = p - pc
        _checkspread(p0, w, self.ndim - 1)
        R, S, D = _kabsch(p0, q - qc, w)
        var = np.sum(w * np.sum(p0**2, 1))
        s = np.sum(S * D) / var
        t = qc - s * R @ pc
        return Affine(np.hstack((s*R, t.reshape(-1, 1))))


class AffineModel(Model):
    name = "affine"

    @property
    def minmatches(self) -> int:
        return self.ndim + 1

    def _estimate(self, p, q, w):
        sw = np.sqrt(w)[:, None]
        X = np.hstack((p, np.ones((len(p), 1)))) * sw
        Y = q * sw
        M, res, rank, sv = np.linalg.lstsq(X, Y, rcond=None)
        if rank < self.ndim + 1:
            raise IllDefinedDataPointsError(
                "Data points do not determine an affine transformation")
        return Affine(M.T)


class InterpolatedModel(Model):
    """A model regularized towards another

    The fitted transformation is (1−λ) *A* + λ *B*, where *A* and *B* are
    the transformations of models `a` and `b` fitted to the same data.
    For instance, `InterpolatedModel(AffineModel(), RigidModel(), 0.1)`
    is an affine model regularized to rigid.
    """
    name = "interpolated"

    def __init__(self, a: Model, b: Model, lam: float = 0.1):
        if a.ndim != b.ndim:
            raise ValueError("Models must have equal dimensionality")
        super().__init__(a.ndim)
        self.a = a
        self.b = b
        self.lam = lam

    def __repr__(self):
        return (f"InterpolatedModel({type(self.a).__name__}, "
                f"{type(self.b).__name__}, {self.lam})")

    @property
    def minmatches(self) -> int:
        return max(self.a.minmatches, self.b.minmatches)

    def copy(self) -> "InterpolatedModel":
        mdl = InterpolatedModel(self.a.copy(), self.b.copy(), self.lam)
        mdl.afm = self.afm.copy()
        mdl.cost = self.cost
        return mdl

    def _estimate(self, p, q, w):
        self.a.fit(p, q, w)
        self.b.fit(p, q, w)
        return Affine((1 - self.lam) * self.a.afm + self.lam * self.b.afm)


MODELS: Dict[str, type] = {
    "translation": TranslationModel,
    "rigid": RigidModel,
    "similarity": SimilarityModel,
    "affine": AffineModel,
}


def createmodel(name: str, ndim: int = 3,
                regularize: Optional[str] = None,
                lam: float = 0.1) -> Model:
    """Construct a model by name

    Arguments:
        name: one of "translation", "rigid", "similarity", "affine"
        ndim: dimensionality
        regularize: optional name of a model to regularize towards
        lam: regularization weight λ

    Returns:
        a new model, interpolated if `regularize` is given
    """
    try:
        mdl = MODELS[name](ndim)
        if regularize is None:
            return mdl
        return InterpolatedModel(mdl, MODELS[regularize](ndim), lam)
    except KeyError as e:
        raise ValueError(f"Unknown model {e.args[0]!r}") from None


RANSAC_ITERATION_PRESETS: Dict[str, int] = {
    "Fast": 1000,
    "Normal": 10000,
    "Thorough": 100000,
    "Very thorough": 1000000,
    "Ridiculous": 10000000,
}


@dataclass(frozen=True)
class RansacParameters:
    """Parameters for RANSAC-based outlier removal

    max_epsilon: maximal residual of an inlier, in world units
    min_inlier_ratio: minimal fraction of inliers among candidates
    min_inlier_factor: the minimal number of inliers is this times the
        minimal number of matches of the model
    num_iterations: number of RANSAC iterations
    """
    max_epsilon: float = 5.
    min_inlier_ratio: float = 0.1
    min_inlier_factor: float = 3.
    num_iterations: int = 10000

    @staticmethod
    def preset(name: str, **kwargs) -> "RansacParameters":
        """Parameters with the number of iterations of a named preset"""
        if name not in RANSAC_ITERATION_PRESETS:
            raise ValueError(f"Unknown RANSAC preset {name!r}")
        return RansacParameters(num_iterations=RANSAC_ITERATION_PRESETS[name],
                                **kwargs)


def compute_ransac(candidates: List[PointMatch], model: Model,
                   params: RansacParameters = RansacParameters()
                   ) -> Tuple[List[PointMatch], float, str]:
    """Remove outliers from correspondence candidates

    Arguments:
        candidates: putative matches
        model: the model to fit; it is modified in place
        params: RANSAC parameters

    Returns:
        (inliers, error, message), where `error` is the average residual
        of the inliers, or NaN if no acceptable model was found
    """
    N = len(candidates)
    minnum = max(model.minmatches,
                 int(round(model.minmatches * params.min_inlier_factor)))
    if N < minnum:
        return ([], np.nan,
                f"Not enough correspondences found {N}, "
                f"should be at least {minnum}")
    try:
        inliers = model.filterransac(candidates, params.num_iterations,
                                     params.max_epsilon,
                                     params.min_inlier_ratio)
    except (NotEnoughDataPointsError, IllDefinedDataPointsError) as e:
        return [], np.nan, str(e)

    found = len(inliers) > 0
    if found and len(inliers) >= minnum:
        ratio = len(inliers) / N
        return (inliers, model.cost,
                f"Remaining inliers after RANSAC: {len(inliers)} of {N} "
                f"({ratio:.0%}) with average error {model.cost:.4g}")
    elif found:
        return ([], np.nan,
                f"Model found but not enough remaining inliers "
                f"({len(inliers)}/{minnum}) after RANSAC of {N}")
    else:
        return [], np.nan, f"NO Model found after RANSAC of {N}"
