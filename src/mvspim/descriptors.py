# descriptors.py - part of mvspim

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

"""Local geometric descriptors of point clouds

A descriptor summarizes the constellation of a point's nearest
neighbours so that corresponding points in two views can be found
without knowing the transformation between them. Three kinds are
provided:

* simple descriptors: relative vectors to the nearest neighbours
  (translation invariant), compared across all neighbour subsets;
* local coordinate system descriptors: three neighbours expressed in
  an orthonormal frame built from them (rotation and translation
  invariant);
* translation-invariant local coordinate descriptors: three relative
  vectors, concatenated.

All functions take N×n arrays of point locations and return indices
into them.
"""

import logging
import itertools
import numpy as np
import scipy.spatial
from typing import Optional, Tuple, List
import numpy.typing
ArrayLike = numpy.typing.ArrayLike

from .errors import NoSuitablePointsError

logger = logging.getLogger(__name__)


def subsets(total: int, size: int) -> np.ndarray:
    """All subsets of neighbours to use for descriptors

    Returns a C×size array of 1-based neighbour indices, where index 0
    would be the basis point itself. Within each subset, the indices
    are in increasing order, i.e., sorted by distance.
    """
    return np.array(list(itertools.combinations(range(1, total + 1), size)),
                    int).reshape(-1, size)


def nearestneighbors(locs: np.ndarray, k: int) -> np.ndarray:
    """Indices of the `k` nearest neighbours of each point

    Returns an N×(k+1) array. Column 0 is the point itself.
    """
    if len(locs) < k + 1:
        raise NoSuitablePointsError(
            f"Need at least {k + 1} points, got {len(locs)}")
    tree = scipy.spatial.cKDTree(locs)
    _, idx = tree.query(locs, k + 1)
    return idx.reshape(len(locs), k + 1)


def simpledescriptors(locs: ArrayLike, numneighbors: int = 3,
                      redundancy: int = 1) -> np.ndarray:
    """Relative-vector descriptors for every point and neighbour subset

    Arguments:
        locs: N×n array of point locations
        numneighbors: number of neighbours in each descriptor
        redundancy: number of extra neighbours to choose subsets from

    Returns:
        N×C×numneighbors×n array, where C is the number of subsets
    """
    locs = np.asarray(locs, float)
    nn = nearestneighbors(locs, numneighbors + redundancy)
    rel = locs[nn] - locs[:, None, :]
    subs = subsets(numneighbors + redundancy, numneighbors)
    return rel[:, subs, :]


def simpledistances(desca: np.ndarray, descb: np.ndarray,
                    chunk: int = 256) -> np.ndarray:
    """Distances between all pairs of simple descriptors

    The distance between two descriptors is the minimum, over all pairs
    of neighbour subsets, of the summed squared differences of the
    relative vectors.

    Returns an NA×NB array.
    """
    NA, C = desca.shape[:2]
    NB = descb.shape[0]
    a = desca.reshape(NA, C, -1)
    b = descb.reshape(NB * C, -1)
    bb = np.sum(b**2, 1)
    out = np.empty((NA, NB))
    for k0 in range(0, NA, chunk):
        ach = a[k0:k0 + chunk].reshape(-1, b.shape[1])
        aa = np.sum(ach**2, 1)
        d = aa[:, None] + bb[None, :] - 2 * ach @ b.T
        d = d.reshape(-1, C, NB, C).min(axis=(1, 3))
        out[k0:k0 + chunk] = np.maximum(d, 0)
    return out


def bestmatches(dist: np.ndarray, ratio: float,
                threshold: float = np.inf) -> List[Tuple[int, int]]:
    """Brute-force nearest-descriptor matching

    For each row of `dist`, the best column is accepted if its distance
    is below `threshold` and `ratio` times better than the second best.
    Ties go to the lowest column index.
    """
    pairs = []
    if dist.shape[1] == 0:
        return pairs
    for i, row in enumerate(dist):
        j = int(np.argmin(row))
        best = row[j]
        if len(row) > 1:
            second = np.min(np.delete(row, j))
        else:
            second = np.inf
        if best < threshold and best * ratio < second:
            pairs.append((i, j))
    return pairs


def localcoordinates(a: np.ndarray, b: np.ndarray,
                     c: Optional[np.ndarray] = None) -> np.ndarray:
    """Coordinates of neighbour vectors in the frame they define

    Arguments:
        a, b, c: vectors from the basis point to three neighbours
            (2D takes only `a` and `b`)

    Returns:
        [|a|, b·x, b·y, c·x, c·y, c·z] in 3D or [|a|, b·x, b·y] in 2D,
        where x points along `a`, z along a×b, and y completes the frame

    Raises NoSuitablePointsError if no frame can be built, e.g., when
    points coincide or are collinear.
    """
    la = np.linalg.norm(a)
    if la == 0:
        raise NoSuitablePointsError("Neighbour coincides with basis point")
    x = a / la
    if len(a) == 2:
        y = np.array([-x[1], x[0]])
        if abs(np.dot(b, y)) < 1e-12 * max(la, 1):
            raise NoSuitablePointsError("Neighbours are collinear")
        return np.array([la, np.dot(b, x), np.dot(b, y)])
    z = np.cross(a, b)
    lz = np.linalg.norm(z)
    if lz < 1e-12 * max(la * np.linalg.norm(b), 1):
        raise NoSuitablePointsError("Neighbours are collinear")
    z /= lz
    y = np.cross(z, x)
    return np.array([la, np.dot(b, x), np.dot(b, y),
                     np.dot(c, x), np.dot(c, y), np.dot(c, z)])


def lcsdescriptors(locs: ArrayLike,
                   redundancy: int = 1) -> Tuple[np.ndarray, np.ndarray]:
    """Local coordinate system descriptors

    Each point gets one descriptor per subset of 3 (2 in 2D) of its
    nearest 3 + `redundancy` (2 + `redundancy`) neighbours. Subsets
    from which no frame can be built are skipped.

    Returns:
        (values, basis) where `values` is an M×d array and `basis` gives
        the index of the basis point of each descriptor
    """
    locs = np.asarray(locs, float)
    ndim = locs.shape[1]
    numneighbors = ndim
    nn = nearestneighbors(locs, numneighbors + redundancy)
    subs = subsets(numneighbors + redundancy, numneighbors)
    values = []
    basis = []
    for i in range(len(locs)):
        for sub in subs:
            vecs = locs[nn[i, sub]] - locs[i]
            try:
                values.append(localcoordinates(*vecs))
            except NoSuitablePointsError:
                continue
            basis.append(i)
    dim = 6 if ndim == 3 else 3
    return np.array(values, float).reshape(-1, dim), np.array(basis, int)


def tidescriptors(locs: ArrayLike,
                  redundancy: int = 1) -> Tuple[np.ndarray, np.ndarray]:
    """Translation-invariant local coordinate descriptors

    Each point gets one descriptor per subset of 3 of its nearest
    3 + `redundancy` neighbours: the three relative vectors concatenated.

    Returns:
        (values, basis) as for `lcsdescriptors`
    """
    locs = np.asarray(locs, float)
    nn = nearestneighbors(locs, 3 + redundancy)
    subs = subsets(3 + redundancy, 3)
    rel = locs[nn] - locs[:, None, :]
    values = rel[:, subs, :].reshape(len(locs) * len(subs), -1)
    basis = np.repeat(np.arange(len(locs)), len(subs))
    return values, basis


def lookupmatches(valuesa: np.ndarray, basisa: np.ndarray,
                  valuesb: np.ndarray, basisb: np.ndarray,
                  ratio: float, threshold: Optional[float] = None,
                  ndim: int = 3) -> List[Tuple[int, int]]:
    """Match descriptors by k-d tree lookup of the two nearest

    The descriptor distance is the squared difference divided by the
    number of spatial dimensions `ndim`. A match is accepted if the best
    distance is `ratio` times better than (or equal to) the second
    best, and, if `threshold` is given, below `threshold`.

    Returns the sorted unique (basis a, basis b) index pairs.
    """
    if len(valuesa) == 0 or len(valuesb) < 2:
        return []
    tree = scipy.spatial.cKDTree(valuesb)
    d, idx = tree.query(valuesa, 2)
    d = d**2 / ndim
    pairs = set()
    for i in range(len(valuesa)):
        best, second = d[i]
        if threshold is not None and not best < threshold:
            continue
        if best * ratio <= second:
            pairs.add((int(basisa[i]), int(basisb[idx[i, 0]])))
    return sorted(pairs)
