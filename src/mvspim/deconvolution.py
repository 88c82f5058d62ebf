# deconvolution.py - part of mvspim

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

"""Multi-view Richardson-Lucy deconvolution

All views must already be resampled into one common box (see
`fusion.transformedviews`). Each view comes with a weight image and a
point spread function (PSF) in that box's coordinates. The estimate
`psi` is updated view by view:

    psi ← psi + w · (psi · (img / (psi ⊛ K)) ⊛ K* − psi)

where K is the view's PSF and K* its flipped ("compound") kernel.
"""

import logging
import numpy as np
import scipy.ndimage
import scipy.signal
from dataclasses import dataclass
from typing import Optional, Tuple, List
import numpy.typing
ArrayLike = numpy.typing.ArrayLike

from .errors import NoSuitablePointsError
from .fusion import FusionParameters, transformedviews
from .points import locations
from .spimdata import SpimData, ViewId
from .volume import Volume

logger = logging.getLogger(__name__)

MIN_VALUE = 0.0001
TIKHONOV_LAMBDA = 0.0006
PSF_TYPES = ("independent", "efficient-bayesian")


@dataclass(frozen=True)
class DeconvolutionParameters:
    """Parameters for multi-view deconvolution

    iterations: number of full passes over all views
    tikhonov_lambda: regularization weight, 0 to disable
    psf_type: "independent" uses each view's flipped PSF;
        "efficient-bayesian" also convolves with the flipped PSFs of
        all other views, which converges faster
    min_value: lowest value allowed in the estimate
    """
    iterations: int = 10
    tikhonov_lambda: float = TIKHONOV_LAMBDA
    psf_type: str = "independent"
    min_value: float = MIN_VALUE

    def __post_init__(self):
        if self.psf_type not in PSF_TYPES:
            raise ValueError(f"Unknown PSF type {self.psf_type!r}")


def oddkernel(psf: ArrayLike) -> np.ndarray:
    """PSF padded to odd size along each axis and normalized to sum 1"""
    psf = np.asarray(psf, float)
    pad = [(0, 1 - n % 2) for n in psf.shape]
    psf = np.pad(psf, pad)
    total = psf.sum()
    if total <= 0:
        raise ValueError("PSF must have positive sum")
    return psf / total


def flipped(kernel: np.ndarray) -> np.ndarray:
    return kernel[tuple(slice(None, None, -1) for _ in kernel.shape)]


def convolve(img: np.ndarray, kernel: np.ndarray,
             mode: str = "reflect", cval: float = 0.) -> np.ndarray:
    """Convolution with an odd-sized kernel, keeping the image's shape

    The image is extended by `mode` ("reflect" or "constant" with
    `cval`) so that the borders are handled without wrap-around.
    """
    half = [(n // 2, n // 2) for n in kernel.shape]
    if mode == "constant":
        ext = np.pad(img, half, mode="constant", constant_values=cval)
    else:
        ext = np.pad(img, half, mode=mode)
    return scipy.signal.fftconvolve(ext, kernel, mode="valid")


def tikhonov(value: np.ndarray, lam: float) -> np.ndarray:
    return (np.sqrt(1 + 2*lam*value) - 1) / lam


class MultiViewDeconvolution:
    """Sequential multi-view Richardson-Lucy deconvolution

    Arguments:
        images: the views, resampled into one box, all of one shape
        weights: per-view weight images of the same shape; clipped to
            [0, 1]
        psfs: per-view PSFs; normalized to sum 1
        params: deconvolution parameters

    After construction, `psi` holds the initial estimate: the weighted
    average of the images, at least `min_value`. Each call to `iterate`
    performs one pass over all views. The sum and maximum of the change
    of each pass are recorded in `changes`.
    """
    def __init__(self, images: List[ArrayLike], weights: List[ArrayLike],
                 psfs: List[ArrayLike],
                 params: DeconvolutionParameters = DeconvolutionParameters()):
        if not (len(images) == len(weights) == len(psfs)) or not images:
            raise ValueError("Need one weight and one PSF per image")
        self.params = params
        self.images = [np.asarray(img, np.float64) for img in images]
        shape = self.images[0].shape
        for img in self.images:
            if img.shape != shape:
                raise ValueError("All images must have the same shape")
        self.weights = [np.clip(np.asarray(w, np.float64), 0, 1)
                        for w in weights]
        for w in self.weights:
            if w.shape != shape:
                raise ValueError("Weights must match the images' shape")
        self.kernels = [oddkernel(p) for p in psfs]
        self.kernels2 = self._compoundkernels()
        self.maxintensity = max(float(img.max()) for img in self.images)
        if self.maxintensity <= 0:
            self.maxintensity = 1.
        self.psi = self._initialpsi()
        self.changes: List[Tuple[float, float]] = []

    def _compoundkernels(self) -> List[np.ndarray]:
        flips = [flipped(k) for k in self.kernels]
        if self.params.psf_type == "independent":
            return flips
        compound = []
        for v in range(len(flips)):
            k = flips[v]
            for w in range(len(flips)):
                if w != v:
                    k = scipy.signal.fftconvolve(k, flips[w], mode="full")
            compound.append(oddkernel(np.maximum(k, 0)))
        return compound

    def _initialpsi(self) -> np.ndarray:
        num = np.zeros(self.images[0].shape)
        den = np.zeros(self.images[0].shape)
        for img, w in zip(self.images, self.weights):
            num += img * w
            den += w
        psi = np.zeros_like(num)
        good = den > 0
        psi[good] = num[good] / den[good]
        if not np.all(good):
            psi[~good] = np.mean(self.images, 0)[~good]
        return np.maximum(psi, self.params.min_value)

    def _update(self, v: int) -> Tuple[float, float]:
        img = self.images[v]
        blurred = convolve(self.psi, self.kernels[v], "reflect")
        quotient = np.ones_like(img)
        ok = (img > 0) & (blurred > 0)
        quotient[ok] = img[ok] / blurred[ok]
        integral = convolve(quotient, self.kernels2[v], "constant", 1.)
        value = self.psi * integral
        lam = self.params.tikhonov_lambda
        adjusted = np.full_like(value, self.params.min_value)
        pos = value > 0
        if lam > 0:
            adjusted[pos] = tikhonov(value[pos] / self.maxintensity,
                                     lam) * self.maxintensity
        else:
            adjusted[pos] = value[pos]
        adjusted[np.isnan(adjusted)] = self.params.min_value
        nxt = np.maximum(self.params.min_value, adjusted)
        new = self.psi + (nxt - self.psi) * self.weights[v]
        change = new - self.psi
        self.psi = new
        return float(np.sum(change)), float(np.max(np.abs(change)))

    def iterate(self) -> Tuple[float, float]:
        """One pass over all views

        Returns the summed change of psi and the maximal change of any
        voxel.
        """
        total = 0.
        largest = 0.
        for v in range(len(self.images)):
            s, m = self._update(v)
            total += s
            largest = max(largest, m)
        self.changes.append((total, largest))
        logger.info("Iteration %d: sum change %.6g, max change %.6g",
                    len(self.changes), total, largest)
        return total, largest

    def run(self, iterations: Optional[int] = None) -> Volume:
        """Run the given number of iterations (default from params)"""
        if iterations is None:
            iterations = self.params.iterations
        for it in range(iterations):
            self.iterate()
        return Volume(self.psi.astype(np.float32))


def extract_psf(vol: ArrayLike, points: ArrayLike,
                size: ArrayLike) -> np.ndarray:
    """Average bead image around interest points

    Arguments:
        vol: the image, indexed [z, y, x]
        points: N×n array of (x, y, z) bead positions in voxels
        size: odd PSF size per axis, in (x, y, z) order, or scalar

    Returns:
        the PSF, indexed [z, y, x], with its minimum subtracted and
        normalized to sum 1

    Each bead is sampled with linear interpolation around its subpixel
    position. Beads whose patch does not fit inside the volume are
    skipped; NoSuitablePointsError is raised if none fit.
    """
    vol = np.asarray(vol, np.float64)
    points = np.asarray(points, float).reshape(-1, vol.ndim)
    size = np.broadcast_to(np.asarray(size, int), (vol.ndim,))
    if np.any(size % 2 == 0):
        raise ValueError("PSF size must be odd")
    half = size // 2
    offsets = np.meshgrid(*[np.arange(-h, h + 1) for h in half[::-1]],
                          indexing="ij")
    limits = np.array(vol.shape[::-1]) - 1
    acc = np.zeros(tuple(size[::-1]))
    count = 0
    for p in points:
        if np.any(p - half < 0) or np.any(p + half > limits):
            continue
        coords = [offsets[k] + p[::-1][k] for k in range(vol.ndim)]
        acc += scipy.ndimage.map_coordinates(vol, coords, order=1)
        count += 1
    if count == 0:
        raise NoSuitablePointsError("No bead fits inside the volume")
    logger.info("Extracted PSF from %d of %d beads", count, len(points))
    acc /= count
    acc -= acc.min()
    total = acc.sum()
    if total <= 0:
        raise NoSuitablePointsError("Extracted PSF is flat")
    return acc / total


def deconvolve(spimdata: SpimData, views: List[ViewId], label: str,
               psfsize: ArrayLike = 19,
               bbox: Optional[Tuple[ArrayLike, ArrayLike]] = None,
               fusion: FusionParameters = FusionParameters(),
               params: DeconvolutionParameters = DeconvolutionParameters()
               ) -> Volume:
    """Deconvolve registered views, with PSFs extracted from beads

    The views are resampled into the box (by default the maximal
    bounding box) and each view's PSF is averaged from its interest
    points labeled `label`, in the resampled image.
    """
    images, weights, (bmin, bmax) = transformedviews(spimdata, views, bbox,
                                                     fusion)
    psfs = []
    for view, img in zip(views, images):
        locs = locations(spimdata.worldpoints(view, label))
        psfs.append(extract_psf(img, (locs - bmin) / fusion.downsampling,
                                psfsize))
    mvd = MultiViewDeconvolution(images, weights, psfs, params)
    return mvd.run()
