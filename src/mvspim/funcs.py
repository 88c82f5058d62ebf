# funcs.py - part of mvspim

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

"""Low-level numerical helpers

These functions work on plain numpy arrays. The classes in `affine` and
`volume` wrap them.

Conventions used throughout mvspim:

* Volumes are indexed [z, y, x] (or [y, x] in 2D), as numpy and cv2
  store them.
* Points are given in (x, y, z) order. A set of *N* points is an
  *N*×*n* array, one point per row.
* An affine transformation in *n* dimensions is an *n*×(*n*+1) matrix
  [A | b] that maps *x* to *A* *x* + *b*.
"""

import logging
import itertools
import numpy as np
import cv2
import scipy.ndimage
from typing import Optional, Tuple, List
import numpy.typing
ArrayLike = numpy.typing.ArrayLike

logger = logging.getLogger(__name__)


def identityAffine(ndim: int = 3) -> np.ndarray:
    return np.hstack((np.eye(ndim), np.zeros((ndim, 1))))


def applyAffine(afm: ArrayLike, pts: ArrayLike) -> np.ndarray:
    """Apply an affine transformation to one point or to N×n points"""
    afm = np.asarray(afm, float)
    pts = np.asarray(pts, float)
    A = afm[:, :-1]
    b = afm[:, -1]
    if pts.ndim == 1:
        return A @ pts + b
    return pts @ A.T + b


def composeAffine(afm1: ArrayLike, afm2: ArrayLike) -> np.ndarray:
    """Composition afm1 ∘ afm2, which applies afm1 after afm2"""
    afm1 = np.asarray(afm1, float)
    afm2 = np.asarray(afm2, float)
    A1 = afm1[:, :-1]
    A2 = afm2[:, :-1]
    A = A1 @ A2
    b = A1 @ afm2[:, -1] + afm1[:, -1]
    return np.hstack((A, b.reshape(-1, 1)))


def invertAffine(afm: ArrayLike) -> np.ndarray:
    afm = np.asarray(afm, float)
    A = np.linalg.inv(afm[:, :-1])
    b = -A @ afm[:, -1]
    return np.hstack((A, b.reshape(-1, 1)))


def boxCorners(bmin: ArrayLike, bmax: ArrayLike) -> np.ndarray:
    """All 2ⁿ corners of an axis-aligned box, as a 2ⁿ×n array"""
    bmin = np.asarray(bmin, float)
    bmax = np.asarray(bmax, float)
    return np.array([np.where(sel, bmax, bmin)
                     for sel in itertools.product([False, True],
                                                  repeat=len(bmin))])


def estimateBounds(afm: ArrayLike, bmin: ArrayLike,
                   bmax: ArrayLike) -> Tuple[np.ndarray, np.ndarray]:
    """Bounding box of an axis-aligned box after affine transformation"""
    pts = applyAffine(afm, boxCorners(bmin, bmax))
    return pts.min(0), pts.max(0)


def gridShape(bmin: ArrayLike, bmax: ArrayLike, step: ArrayLike) -> Tuple:
    """Number of samples along each axis of a box, in (x, y, z) order"""
    bmin = np.asarray(bmin, float)
    bmax = np.asarray(bmax, float)
    step = np.broadcast_to(np.asarray(step, float), bmin.shape)
    return tuple(int(k) for k in np.floor((bmax - bmin) / step + 1e-9) + 1)


def affineVolume(afm: ArrayLike, vol: ArrayLike,
                 bmin: ArrayLike, bmax: ArrayLike,
                 step: ArrayLike = 1, order: int = 1) -> np.ndarray:
    """Resample a volume into a box of model space

    Arguments:
        afm: the transformation from model space to voxel space of `vol`
        vol: the volume, indexed [z, y, x]
        bmin, bmax: corners of the box in model space, in (x, y, z) order
        step: sampling distance in model space, scalar or per axis
        order: spline interpolation order

    Returns:
        the resampled volume, indexed [z, y, x]

    Voxels that map outside `vol` become zero.
    """
    afm = np.asarray(afm, float)
    ndim = afm.shape[0]
    bmin = np.asarray(bmin, float)
    step = np.broadcast_to(np.asarray(step, float), (ndim,))
    shape = gridShape(bmin, bmax, step)[::-1]
    A = afm[:, :-1]
    b = afm[:, -1]
    P = np.eye(ndim)[::-1]
    matrix = P @ A @ np.diag(step) @ P
    offset = P @ (A @ bmin + b)
    return scipy.ndimage.affine_transform(np.asarray(vol, np.float32),
                                          matrix, offset,
                                          output_shape=shape,
                                          order=order, mode="constant",
                                          cval=0.0)


def blendingWeights(shape: Tuple, border: ArrayLike = 0,
                    blendrange: ArrayLike = 40) -> np.ndarray:
    """Cosine blending weights for a volume of given shape

    Arguments:
        shape: the shape of the volume, indexed [z, y, x]
        border: number of pixels of zero weight at each edge, per axis
            in (x, y, z) order, or scalar
        blendrange: width of the cosine ramp, per axis or scalar

    Returns:
        an array of the given shape

    For each axis, the distance *d* to the nearest edge gives weight 0
    inside the border, ½ − ½ cos(π (*d* − border)/range) inside the
    ramp, and 1 beyond. The weights of all axes are multiplied. Axes of
    length 1 do not contribute.
    """
    ndim = len(shape)
    border = np.broadcast_to(np.asarray(border, float), (ndim,))[::-1]
    blendrange = np.broadcast_to(np.asarray(blendrange, float), (ndim,))[::-1]
    wei = np.ones(shape, np.float32)
    for ax in range(ndim):
        N = shape[ax]
        if N == 1:
            continue
        ll = np.arange(N, dtype=float)
        d = np.minimum(ll, N - 1 - ll)
        w = np.ones(N)
        w[d < border[ax]] = 0
        ramp = (d >= border[ax]) & (d < border[ax] + blendrange[ax])
        if blendrange[ax] > 0:
            w[ramp] = 0.5 - 0.5*np.cos(np.pi * (d[ramp] - border[ax])
                                       / blendrange[ax])
        bshape = [1] * ndim
        bshape[ax] = N
        wei *= w.reshape(bshape).astype(np.float32)
    return wei


def blockMean(vol: ArrayLike, factors: ArrayLike) -> np.ndarray:
    """Downsample by averaging blocks

    `factors` is given per axis in (x, y, z) order. The volume is trimmed
    so that each dimension is a multiple of the corresponding factor.
    """
    vol = np.asarray(vol)
    ndim = vol.ndim
    factors = [int(f) for f in
               np.broadcast_to(np.asarray(factors), (ndim,))[::-1]]
    newshape = []
    slices = []
    for N, f in zip(vol.shape, factors):
        N1 = N // f
        newshape += [N1, f]
        slices.append(slice(0, N1*f))
    return (vol[tuple(slices)]
            .reshape(newshape)
            .mean(tuple(range(1, 2*ndim, 2))))


def roi(vol: ArrayLike, bmin: ArrayLike, bmax: ArrayLike) -> np.ndarray:
    """Extract a box from a volume

    Corners are integer (x, y, z) voxel positions; `bmax` is inclusive.
    The box must fit inside the volume.
    """
    vol = np.asarray(vol)
    bmin = [int(x) for x in bmin][::-1]
    bmax = [int(x) for x in bmax][::-1]
    for a, b, N in zip(bmin, bmax, vol.shape):
        if a < 0 or b >= N or b < a:
            raise ValueError("ROI must fit inside the volume")
    return vol[tuple(slice(a, b + 1) for a, b in zip(bmin, bmax))]


def loadVolume(path: str) -> np.ndarray:
    """Load a 2D image or a multi-page TIFF stack

    Returns a [y, x] or [z, y, x] array in the file's native dtype.
    """
    ok, pages = cv2.imreadmulti(path, flags=(cv2.IMREAD_ANYDEPTH
                                             + cv2.IMREAD_GRAYSCALE))
    if not ok or len(pages) == 0:
        raise FileNotFoundError(path)
    if len(pages) == 1:
        return np.asarray(pages[0])
    return np.stack(pages)


def saveVolume(vol: np.ndarray, path: str) -> None:
    """Save a 2D image or a [z, y, x] stack as (multi-page) image file"""
    if vol.ndim == 2:
        ok = cv2.imwrite(path, vol)
    elif vol.ndim == 3:
        ok = cv2.imwritemulti(path, [np.ascontiguousarray(page)
                                     for page in vol])
    else:
        raise ValueError("Only 2D images and 3D stacks can be saved")
    if not ok:
        raise OSError(f"Could not write {path}")
    logger.debug("Saved %s volume to %s", vol.shape, path)
