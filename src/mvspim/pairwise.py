# pairwise.py - part of mvspim

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

"""Correspondence search between the interest points of two views

Each matcher takes two lists of InterestPoints in world coordinates
and returns a `PairwiseResult` holding the candidate matches, the
inliers that survived outlier removal, and the average residual of the
inliers (NaN if matching failed). Failures never raise; they are
reported in the result message.
"""

import logging
from dataclasses import dataclass, field
from concurrent.futures import ThreadPoolExecutor
import numpy as np
import scipy.spatial
import scipy.spatial.distance
from typing import Optional, Tuple, List, Dict, Any, Hashable

from . import descriptors
from .affine import Affine
from .models import Model, RansacParameters, compute_ransac, createmodel
from .points import InterestPoint, PointMatch, locations, matcharrays
from .errors import MvSpimError

logger = logging.getLogger(__name__)


@dataclass
class PairwiseResult:
    """Outcome of matching two point lists

    `error` is the average residual of the inliers, or NaN if no
    acceptable transformation was found. `transform` is the fitted
    transformation from A to B, if any. Matchers that produce synthetic
    matches set `store_correspondences` to False.
    """
    candidates: List[PointMatch] = field(default_factory=list)
    inliers: List[PointMatch] = field(default_factory=list)
    error: float = np.nan
    message: str = ""
    description: str = ""
    labela: Optional[str] = None
    labelb: Optional[str] = None
    store_correspondences: bool = True
    transform: Optional[Affine] = None

    @property
    def success(self) -> bool:
        return len(self.inliers) > 0 and not np.isnan(self.error)

    def fail(self, message: str) -> "PairwiseResult":
        self.inliers = []
        self.error = np.nan
        self.transform = None
        self.message = message
        return self

    def __str__(self):
        return f"{self.description}: {self.message}"


class PairwiseMatcher:
    """Base class for matchers

    Subclasses implement `match(pointsa, pointsb)`.
    """
    def match(self, pointsa: List[InterestPoint],
              pointsb: List[InterestPoint]) -> PairwiseResult:
        raise NotImplementedError


class DescriptorPairwise(PairwiseMatcher):
    """Descriptor-based candidate search followed by RANSAC

    Subclasses implement `candidates(pointsa, pointsb)` and set
    `minpoints`, the number of points each list needs.
    """
    def __init__(self, model: Optional[Model] = None,
                 ransac: Optional[RansacParameters] = None):
        self.model = createmodel("affine", 3) if model is None else model
        self.ransac = RansacParameters() if ransac is None else ransac

    @property
    def minpoints(self) -> int:
        raise NotImplementedError

    def candidates(self, pointsa: List[InterestPoint],
                   pointsb: List[InterestPoint]) -> List[PointMatch]:
        raise NotImplementedError

    def match(self, pointsa: List[InterestPoint],
              pointsb: List[InterestPoint]) -> PairwiseResult:
        result = PairwiseResult()
        N = self.minpoints
        if len(pointsa) < N or len(pointsb) < N:
            return result.fail(
                f"Not enough detections to match ({N} required per list, "
                f"|listA|={len(pointsa)}, |listB|={len(pointsb)})")
        try:
            result.candidates = self.candidates(pointsa, pointsb)
        except MvSpimError as e:
            return result.fail(f"{type(self).__name__} failed: {e}")
        model = self.model.copy()
        inliers, error, msg = compute_ransac(result.candidates, model,
                                             self.ransac)
        result.inliers = inliers
        result.error = error
        result.message = msg
        if inliers:
            result.transform = model.toaffine()
        return result


class RGLDMPairwise(DescriptorPairwise):
    """Redundant geometric local descriptor matching

    Arguments:
        model: the transformation model for RANSAC
        ransac: RANSAC parameters
        num_neighbors: neighbours per descriptor
        redundancy: extra neighbours to draw subsets from
        ratio_of_distance: how much better the best descriptor match must
            be than the second best
        difference_threshold: maximal descriptor distance of a match
        search_radius: if given, only points within this distance in
            world space are compared

    Descriptors are translation invariant only, so views must already
    be roughly aligned in rotation.
    """
    def __init__(self, model: Optional[Model] = None,
                 ransac: Optional[RansacParameters] = None,
                 num_neighbors: int = 3, redundancy: int = 1,
                 ratio_of_distance: float = 3.,
                 difference_threshold: float = np.inf,
                 search_radius: Optional[float] = None):
        super().__init__(model, ransac)
        self.num_neighbors = num_neighbors
        self.redundancy = redundancy
        self.ratio_of_distance = ratio_of_distance
        self.difference_threshold = difference_threshold
        self.search_radius = search_radius

    @property
    def minpoints(self) -> int:
        return self.num_neighbors + self.redundancy + 1

    def candidates(self, pointsa, pointsb):
        la = locations(pointsa)
        lb = locations(pointsb)
        da = descriptors.simpledescriptors(la, self.num_neighbors,
                                           self.redundancy)
        db = descriptors.simpledescriptors(lb, self.num_neighbors,
                                           self.redundancy)
        dist = descriptors.simpledistances(da, db)
        if self.search_radius is not None:
            far = scipy.spatial.distance.cdist(la, lb) > self.search_radius
            dist[far] = np.inf
        pairs = descriptors.bestmatches(dist, self.ratio_of_distance,
                                        self.difference_threshold)
        return [PointMatch(pointsa[i], pointsb[j]) for i, j in pairs]


class GeometricHashingPairwise(DescriptorPairwise):
    """Geometric hashing with local coordinate system descriptors

    Descriptors are invariant to rotation and translation, so views
    may be arbitrarily oriented.
    """
    def __init__(self, model: Optional[Model] = None,
                 ransac: Optional[RansacParameters] = None,
                 redundancy: int = 1, ratio_of_distance: float = 10.,
                 difference_threshold: float = 50.):
        super().__init__(model, ransac)
        self.redundancy = redundancy
        self.ratio_of_distance = ratio_of_distance
        self.difference_threshold = difference_threshold

    @property
    def minpoints(self) -> int:
        return self.model.ndim + self.redundancy + 1

    def candidates(self, pointsa, pointsb):
        la = locations(pointsa)
        va, ba = descriptors.lcsdescriptors(la, self.redundancy)
        vb, bb = descriptors.lcsdescriptors(locations(pointsb),
                                            self.redundancy)
        pairs = descriptors.lookupmatches(va, ba, vb, bb,
                                          self.ratio_of_distance,
                                          self.difference_threshold,
                                          la.shape[1])
        return [PointMatch(pointsa[i], pointsb[j]) for i, j in pairs]


class FRGLDMPairwise(DescriptorPairwise):
    """Fast redundant geometric local descriptor matching

    Uses translation-invariant descriptors with k-d tree lookup and
    only the ratio test.
    """
    def __init__(self, model: Optional[Model] = None,
                 ransac: Optional[RansacParameters] = None,
                 redundancy: int = 1, ratio_of_distance: float = 10.):
        super().__init__(model, ransac)
        self.redundancy = redundancy
        self.ratio_of_distance = ratio_of_distance

    @property
    def minpoints(self) -> int:
        return 3 + self.redundancy + 1

    def candidates(self, pointsa, pointsb):
        la = locations(pointsa)
        va, ba = descriptors.tidescriptors(la, self.redundancy)
        vb, bb = descriptors.tidescriptors(locations(pointsb),
                                           self.redundancy)
        pairs = descriptors.lookupmatches(va, ba, vb, bb,
                                          self.ratio_of_distance,
                                          None, la.shape[1])
        return [PointMatch(pointsa[i], pointsb[j]) for i, j in pairs]


class IterativeClosestPointPairwise(PairwiseMatcher):
    """Iterative closest point matching

    Arguments:
        model: the transformation model
        max_distance: maximal distance of corresponding points
        max_iterations: maximal number of ICP iterations
        min_num_points: minimal number of matches for success
        ransac: if given, RANSAC parameters to filter matches in each
            iteration (only `max_epsilon`, `min_inlier_ratio` and
            `num_iterations` are used)

    Each iteration pairs every point of B with the nearest point of A
    (transformed by the current model) within `max_distance`, and
    refits the model. Iteration stops when the number of matches and
    the average error no longer change.
    """
    def __init__(self, model: Optional[Model] = None,
                 max_distance: float = 5., max_iterations: int = 100,
                 min_num_points: int = 12,
                 ransac: Optional[RansacParameters] = None):
        self.model = createmodel("affine", 3) if model is None else model
        self.max_distance = max_distance
        self.max_iterations = max_iterations
        self.min_num_points = min_num_points
        self.ransac = ransac

    def _iteration(self, model, la, lb, pointsa, pointsb):
        tree = scipy.spatial.cKDTree(model.apply(la))
        d, idx = tree.query(lb, distance_upper_bound=self.max_distance)
        ok = np.flatnonzero(np.isfinite(d))
        matches = [PointMatch(pointsa[idx[k]], pointsb[k]) for k in ok]
        if self.ransac is not None:
            matches = model.ransac(matches, self.ransac.num_iterations,
                                   self.ransac.max_epsilon,
                                   self.ransac.min_inlier_ratio)
        model.fitmatches(matches)
        p, q, w = matcharrays(matches)
        res = model.residuals(p, q)
        return matches, float(np.mean(res)), float(np.max(res))

    def match(self, pointsa, pointsb):
        result = PairwiseResult()
        model = self.model.copy()
        if len(pointsa) < model.minmatches or len(pointsb) < model.minmatches:
            return result.fail("Not enough detections to match")
        la = locations(pointsa)
        lb = locations(pointsb)
        lastnum = 0
        lasterror = 0.
        matches: List[PointMatch] = []
        it = 0
        while True:
            try:
                matches, avgerror, maxerror = self._iteration(model, la, lb,
                                                              pointsa,
                                                              pointsb)
            except MvSpimError as e:
                return result.fail(f"ICP failed with "
                                   f"{type(e).__name__}: {e}")
            logger.debug("ICP %d: %d matches, avg error %.4g, max error %.4g",
                         it, len(matches), avgerror, maxerror)
            converged = (lastnum == len(matches) and lasterror == avgerror)
            lastnum = len(matches)
            lasterror = avgerror
            it += 1
            if converged or it >= self.max_iterations:
                break
        if len(matches) < self.min_num_points:
            return result.fail(
                f"Not enough corresponding points found (only "
                f"{len(matches)}/{self.min_num_points}).")
        result.candidates = list(matches)
        result.inliers = list(matches)
        result.error = lasterror
        result.transform = model.toaffine()
        result.message = (f"Found {len(matches)} matches, avg error "
                          f"{lasterror:.4g} after {it} iterations "
                          f"(minNumMatches={self.min_num_points})")
        return result


class CenterOfMassPairwise(PairwiseMatcher):
    """Match the centers of two point clouds

    Produces a single synthetic match between the mean (or median)
    locations of the two lists. The match only supports a translation
    and is not stored as a correspondence.
    """
    def __init__(self, center: str = "mean"):
        if center not in ("mean", "median"):
            raise ValueError("Center must be 'mean' or 'median'")
        self.center = center

    def _center(self, locs):
        if self.center == "mean":
            return np.mean(locs, 0)
        return np.median(locs, 0)

    def match(self, pointsa, pointsb):
        result = PairwiseResult(store_correspondences=False)
        if len(pointsa) < 1 or len(pointsb) < 1:
            return result.fail(
                f"Not enough detections to match (1 required per list, "
                f"|listA|={len(pointsa)}, |listB|={len(pointsb)})")
        ca = self._center(locations(pointsa))
        cb = self._center(locations(pointsb))
        mtch = PointMatch(InterestPoint(0, ca, pointsa[0].view),
                          InterestPoint(0, cb, pointsb[0].view))
        result.candidates = [mtch]
        result.inliers = [mtch]
        result.error = 0.
        result.transform = Affine.translator(cb - ca)
        result.message = (f"Center of Mass, Center A: {np.round(ca, 3)}, "
                          f"Center B: {np.round(cb, 3)}")
        return result


MATCHERS: Dict[str, type] = {
    "rgldm": RGLDMPairwise,
    "geometric-hashing": GeometricHashingPairwise,
    "frgldm": FRGLDMPairwise,
    "icp": IterativeClosestPointPairwise,
    "center-of-mass": CenterOfMassPairwise,
}


def creatematcher(method: str, model: Optional[Model] = None,
                  ransac: Optional[RansacParameters] = None,
                  **params: Any) -> PairwiseMatcher:
    """Construct a matcher by name

    Extra keyword arguments are passed on to the matcher's constructor.
    """
    if method not in MATCHERS:
        raise ValueError(f"Unknown matching method {method!r}")
    cls = MATCHERS[method]
    if cls is CenterOfMassPairwise:
        return cls(**params)
    return cls(model=model, ransac=ransac, **params)


def _describe(a: Hashable, b: Hashable, labela: str, labelb: str) -> str:
    if hasattr(a, "timepoint") and hasattr(b, "timepoint"):
        return (f"[TP={a.timepoint} ViewId={a.setup} Label={labela} >>> "
                f"TP={b.timepoint} ViewId={b.setup} Label={labelb}]")
    return f"[{a} Label={labela} >>> {b} Label={labelb}]"


def compute_pairs(pairs: List[Tuple[Hashable, Hashable]],
                  interestpoints: Dict[Hashable,
                                       Dict[str, List[InterestPoint]]],
                  matcher: PairwiseMatcher,
                  match_across_labels: bool = False,
                  num_threads: Optional[int] = None
                  ) -> List[Tuple[Tuple[Hashable, Hashable], PairwiseResult]]:
    """Run a matcher on many pairs in parallel

    Arguments:
        pairs: (a, b) keys into `interestpoints`, e.g., ViewIds or Groups
        interestpoints: for each key, the world-space points per label
        matcher: the matcher to use
        match_across_labels: if true, every label of A is compared to
            every label of B, otherwise only equal labels are compared
        num_threads: size of the thread pool

    Returns:
        a list of ((a, b), result), one for each pair and label
        combination, in the order of `pairs`
    """
    tasks = []
    for a, b in pairs:
        for labela in interestpoints[a]:
            for labelb in interestpoints[b]:
                if match_across_labels or labela == labelb:
                    tasks.append((a, b, labela, labelb))

    def work(task):
        a, b, labela, labelb = task
        res = matcher.match(interestpoints[a][labela],
                            interestpoints[b][labelb])
        res.labela = labela
        res.labelb = labelb
        res.description = _describe(a, b, labela, labelb)
        logger.info("%s", res)
        return (a, b), res

    with ThreadPoolExecutor(max_workers=num_threads) as executor:
        return list(executor.map(work, tasks))


def store_correspondences(results: List[Tuple[Tuple[Hashable, Hashable],
                                              PairwiseResult]],
                          spimdata) -> int:
    """Store inliers as correspondences of the interest points

    Each inlier is recorded in both directions. Views are taken from
    the points themselves. Results with `store_correspondences` off are
    skipped.

    Returns the number of matches stored.
    """
    count = 0
    for pair, res in results:
        if not res.store_correspondences:
            continue
        for m in res.inliers:
            va = m.a.view
            vb = m.b.view
            spimdata.interestpoints[va][res.labela].addcorrespondence(
                m.a.id, vb, res.labelb, m.b.id)
            spimdata.interestpoints[vb][res.labelb].addcorrespondence(
                m.b.id, va, res.labela, m.a.id)
            count += 1
    return count
