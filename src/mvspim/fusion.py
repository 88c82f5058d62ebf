# fusion.py - part of mvspim

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

"""Fusion of registered views into a single volume

Each view is resampled into a common box of world space using its
registration. Where views overlap, their intensities are combined by
one of several methods:

    avg - plain average
    avg-blend - average weighted by cosine blending weights that fade
                out toward each view's edges (the default)
    max - maximum intensity
    first - the first view that covers a voxel wins
    lowest-view-id - the view with the lowest ViewId wins
    highest-view-id - the view with the highest ViewId wins

Voxels covered by no view are zero.
"""

import logging
import numpy as np
from dataclasses import dataclass
from typing import Optional, Tuple, List
import numpy.typing
ArrayLike = numpy.typing.ArrayLike

from . import funcs
from .spimdata import SpimData, ViewId
from .volume import Volume

logger = logging.getLogger(__name__)

FUSION_METHODS = ("avg", "avg-blend", "max", "first", "lowest-view-id",
                  "highest-view-id")


@dataclass(frozen=True)
class FusionParameters:
    """How to fuse

    method: one of FUSION_METHODS
    downsampling: sampling distance in world units
    blending_border: pixels of zero weight at each view's edges
    blending_range: width of the cosine ramp, in pixels
    interpolation: spline order for resampling (0 or 1)
    """
    method: str = "avg-blend"
    downsampling: float = 1.
    blending_border: float = 0.
    blending_range: float = 40.
    interpolation: int = 1

    def __post_init__(self):
        if self.method not in FUSION_METHODS:
            raise ValueError(f"Unknown fusion method {self.method!r}")
        if self.downsampling <= 0:
            raise ValueError("Downsampling must be positive")


def maximal_bounding_box(spimdata: SpimData, views: List[ViewId]
                         ) -> Tuple[np.ndarray, np.ndarray]:
    """Union of the world-space bounding boxes of the views"""
    if len(views) == 0:
        raise ValueError("Need at least one view")
    boxes = [spimdata.boundingbox(v) for v in views]
    return (np.min([b[0] for b in boxes], 0),
            np.max([b[1] for b in boxes], 0))


def coverage(afm: ArrayLike, shape: Tuple, bmin: ArrayLike,
             bmax: ArrayLike, step: ArrayLike = 1) -> np.ndarray:
    """Which samples of a world-space box fall inside a volume

    Arguments:
        afm: the transformation from world space to voxel space
        shape: shape of the volume, indexed [z, y, x]
        bmin, bmax, step: the sampling box, as for `funcs.affineVolume`

    Returns:
        a boolean array of the resampled shape, indexed [z, y, x]
    """
    afm = np.asarray(afm, float)
    ndim = afm.shape[0]
    bmin = np.asarray(bmin, float)
    step = np.broadcast_to(np.asarray(step, float), (ndim,))
    gshape = funcs.gridShape(bmin, bmax, step)
    axes = [bmin[d] + step[d] * np.arange(gshape[d]) for d in range(ndim)]
    mask = np.ones(gshape[::-1], bool)
    size = np.array(shape[::-1], float)
    for i in range(ndim):
        # voxel coordinate i as a sum of per-axis contributions
        v = afm[i, -1]
        for d in range(ndim):
            bshape = [1] * ndim
            bshape[ndim - 1 - d] = gshape[d]
            v = v + (afm[i, d] * axes[d]).reshape(bshape)
        mask &= (v >= -1e-6) & (v <= size[i] - 1 + 1e-6)
    return mask


def transformview(spimdata: SpimData, view: ViewId,
                  bmin: ArrayLike, bmax: ArrayLike,
                  params: FusionParameters = FusionParameters()
                  ) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
    """Resample one view into a world-space box

    Returns:
        (image, weights, mask), all indexed [z, y, x]: the resampled
        intensities, the resampled blending weights, and the coverage
    """
    vol = spimdata.loadvolume(view)
    inv = spimdata.model(view).inverse()
    step = params.downsampling
    img = funcs.affineVolume(inv, vol, bmin, bmax, step, params.interpolation)
    wei = funcs.blendingWeights(vol.shape, params.blending_border,
                                params.blending_range)
    wei = funcs.affineVolume(inv, wei, bmin, bmax, step, 1)
    mask = coverage(inv, vol.shape, bmin, bmax, step)
    img[~mask] = 0
    wei[~mask] = 0
    return img, wei, mask


def fuse(spimdata: SpimData, views: List[ViewId],
         bbox: Optional[Tuple[ArrayLike, ArrayLike]] = None,
         downsampling: Optional[float] = None,
         method: Optional[str] = None,
         params: FusionParameters = FusionParameters()) -> Volume:
    """Fuse views into one volume

    Arguments:
        spimdata: the scene, with an image loader
        views: the views to fuse
        bbox: (bmin, bmax) world-space box, by default the maximal
            bounding box of the views
        downsampling: overrides `params.downsampling`
        method: overrides `params.method`
        params: fusion parameters

    Returns:
        the fused Volume, indexed [z, y, x], covering the box with the
        chosen sampling distance
    """
    if downsampling is not None or method is not None:
        params = FusionParameters(
            method=params.method if method is None else method,
            downsampling=(params.downsampling if downsampling is None
                          else downsampling),
            blending_border=params.blending_border,
            blending_range=params.blending_range,
            interpolation=params.interpolation)
    if bbox is None:
        bbox = maximal_bounding_box(spimdata, views)
    bmin, bmax = (np.asarray(b, float) for b in bbox)
    order = list(views)
    if params.method == "lowest-view-id":
        order = sorted(views)
    elif params.method == "highest-view-id":
        order = sorted(views, reverse=True)

    shape = funcs.gridShape(bmin, bmax,
                            np.full(len(bmin), params.downsampling))[::-1]
    out = np.zeros(shape, np.float32)
    wsum = np.zeros(shape, np.float32)
    filled = np.zeros(shape, bool)
    logger.info("Fusing %d views into %s box using %s", len(order),
                "×".join(str(n) for n in shape[::-1]), params.method)
    for view in order:
        img, wei, mask = transformview(spimdata, view, bmin, bmax, params)
        if params.method == "avg":
            out += img
            wsum += mask
        elif params.method == "avg-blend":
            out += img * wei
            wsum += wei
        elif params.method == "max":
            out = np.where(mask & (~filled | (img > out)), img, out)
            filled |= mask
        else:
            take = mask & ~filled
            out[take] = img[take]
            filled |= mask
        logger.debug("Fused %s", view)
    if params.method in ("avg", "avg-blend"):
        good = wsum > 0
        out[good] /= wsum[good]
        out[~good] = 0
    return Volume(out)


def transformedviews(spimdata: SpimData, views: List[ViewId],
                     bbox: Optional[Tuple[ArrayLike, ArrayLike]] = None,
                     params: FusionParameters = FusionParameters()
                     ) -> Tuple[List[np.ndarray], List[np.ndarray],
                                Tuple[np.ndarray, np.ndarray]]:
    """All views resampled into a common box

    Returns (images, weights, (bmin, bmax)); the weights are the
    blending weights, as used for multi-view deconvolution.
    """
    if bbox is None:
        bbox = maximal_bounding_box(spimdata, views)
    bmin, bmax = (np.asarray(b, float) for b in bbox)
    images = []
    weights = []
    for view in views:
        img, wei, mask = transformview(spimdata, view, bmin, bmax, params)
        images.append(img)
        weights.append(wei)
    return images, weights, (bmin, bmax)
