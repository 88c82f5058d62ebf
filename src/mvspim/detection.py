# detection.py - part of mvspim

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

"""Difference-of-Gaussian interest point detection

Interest points are blob-like structures, typically fluorescent beads
or nuclei, found as local extrema of the difference of two Gaussian
blurs of the image. Detections can be refined to subpixel precision by
fitting a quadratic around each extremum.
"""

import logging
import numpy as np
import scipy.ndimage
import scipy.spatial
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Optional, Tuple, List, Dict
import numpy.typing
ArrayLike = numpy.typing.ArrayLike

from .spimdata import SpimData, ViewId, InterestPoints
from .volume import Volume

logger = logging.getLogger(__name__)

IMAGE_SIGMA = 0.5
STEPS_PER_OCTAVE = 4
MAX_MOVES = 10
MAXIMA_TOLERANCE = 0.01
DUPLICATE_DISTANCE = 0.1


@dataclass(frozen=True)
class DetectionParameters:
    """Parameters for DoG detection

    sigma: the smaller of the two Gaussians, in pixels
    threshold: minimal absolute value of the normalized DoG at a peak
    find_min: detect dark blobs (minima of the DoG)
    find_max: detect bright blobs (maxima of the DoG)
    downsample_xy, downsample_z: block-mean downsampling factors
        applied before detection
    localization: "none" or "quadratic"
    keep_intensity: store the DoG value of each detection
    min_intensity, max_intensity: intensities mapped to 0 and 1 before
        detection (default: the image's minimum and maximum). These are
        in Volume units: integer images are first divided by the largest
        value of their type, so a raw 16-bit value r is given as r/65535.
    """
    sigma: float = 1.8
    threshold: float = 0.008
    find_min: bool = False
    find_max: bool = True
    downsample_xy: int = 1
    downsample_z: int = 1
    localization: str = "quadratic"
    keep_intensity: bool = False
    min_intensity: Optional[float] = None
    max_intensity: Optional[float] = None

    def __post_init__(self):
        if self.localization not in ("none", "quadratic"):
            raise ValueError(f"Unknown localization {self.localization!r}")
        if self.sigma <= IMAGE_SIGMA:
            raise ValueError(f"Sigma must exceed {IMAGE_SIGMA}")
        if self.downsample_xy < 1 or self.downsample_z < 1:
            raise ValueError("Downsampling factors must be at least 1")


def dogsigmas(sigma: float) -> Tuple[float, float]:
    """The two Gaussian widths, corrected for the image's own blur

    The larger sigma is 2^(1/4) times the smaller one. Both are reduced
    by the implicit sigma of 0.5 pixel that any sampled image has.
    """
    sigma2 = sigma * 2**(1 / STEPS_PER_OCTAVE)
    return (np.sqrt(sigma**2 - IMAGE_SIGMA**2),
            np.sqrt(sigma2**2 - IMAGE_SIGMA**2))


def differenceofgaussian(vol: ArrayLike, sigma: float = 1.8,
                         anisotropy: Optional[ArrayLike] = None
                         ) -> np.ndarray:
    """Normalized difference of Gaussians

    Arguments:
        vol: the image, indexed [z, y, x]
        sigma: the smaller Gaussian, in pixels of the first axis
        anisotropy: optional per-axis (x, y, z) factors by which to
            divide sigma, e.g., the z-step relative to the pixel size

    Returns:
        (G_small − G_large) / (k − 1), where k is the ratio of the
        sigmas, so that bright blobs give positive peaks
    """
    vol = np.asarray(vol, np.float32)
    s1, s2 = dogsigmas(sigma)
    if anisotropy is None:
        anisotropy = np.ones(vol.ndim)
    anisotropy = np.asarray(anisotropy, float)[::-1]
    g1 = scipy.ndimage.gaussian_filter(vol, s1 / anisotropy, mode="reflect")
    g2 = scipy.ndimage.gaussian_filter(vol, s2 / anisotropy, mode="reflect")
    k = 2**(1 / STEPS_PER_OCTAVE)
    return (g1 - g2) / (k - 1)


def localextrema(dog: np.ndarray, threshold: float,
                 findmin: bool = False, findmax: bool = True) -> np.ndarray:
    """Integer positions of local extrema of a DoG image

    An extremum is a pixel that is at least as large (small) as all its
    3^n neighbours, with an absolute value of at least `threshold`.
    Pixels on the image border are never reported.

    Returns an N×n array of (x, y, z) positions.
    """
    inner = np.zeros(dog.shape, bool)
    inner[tuple(slice(1, -1) for _ in dog.shape)] = True
    peaks = np.zeros(dog.shape, bool)
    if findmax:
        mx = scipy.ndimage.maximum_filter(dog, size=3, mode="nearest")
        peaks |= (dog == mx) & (dog >= threshold)
    if findmin:
        mn = scipy.ndimage.minimum_filter(dog, size=3, mode="nearest")
        peaks |= (dog == mn) & (dog <= -threshold)
    idx = np.argwhere(peaks & inner)
    return idx[:, ::-1].astype(float)


def _derivatives(dog, pos):
    # Central differences at integer position `pos` (array order)
    ndim = dog.ndim
    v = dog[tuple(pos)]
    g = np.zeros(ndim)
    H = np.zeros((ndim, ndim))
    for i in range(ndim):
        e = np.zeros(ndim, int)
        e[i] = 1
        vp = dog[tuple(pos + e)]
        vm = dog[tuple(pos - e)]
        g[i] = (vp - vm) / 2
        H[i, i] = vp - 2*v + vm
        for j in range(i + 1, ndim):
            f = np.zeros(ndim, int)
            f[j] = 1
            H[i, j] = H[j, i] = (dog[tuple(pos + e + f)]
                                 - dog[tuple(pos + e - f)]
                                 - dog[tuple(pos - e + f)]
                                 + dog[tuple(pos - e - f)]) / 4
    return v, g, H


def quadraticpeaks(dog: np.ndarray, peaks: np.ndarray,
                   threshold: float) -> Tuple[np.ndarray, np.ndarray]:
    """Subpixel localization by quadratic fitting

    For each peak, a quadratic is fitted to the 3^n neighbourhood by
    finite differences and its extremum is found by a Newton step. If
    the extremum lies more than half a pixel away, the peak moves one
    pixel in that direction and the fit is repeated, at most 10 times.
    A move is only made if the DoG at the new pixel is larger in
    absolute value by more than MAXIMA_TOLERANCE, and never onto the
    border. When the peak stops moving, for whatever reason, the last
    fit is kept. Peaks whose interpolated value falls below `threshold`
    are dropped, as are peaks that refine to the location of an
    earlier one.

    Arguments:
        dog: the DoG image
        peaks: N×n array of integer (x, y, z) positions

    Returns:
        (locations, values) where `locations` is an M×n array of
        subpixel (x, y, z) positions
    """
    shape = np.array(dog.shape)
    ndim = dog.ndim
    locs = []
    vals = []
    for peak in peaks:
        pos = np.round(peak[::-1]).astype(int)
        moves = 0
        while True:
            v, g, H = _derivatives(dog, pos)
            try:
                off = -np.linalg.solve(H, g)
            except np.linalg.LinAlgError:
                off = np.zeros(ndim)
                break
            step = np.where(np.abs(off) > 0.5, np.sign(off), 0).astype(int)
            newpos = np.clip(pos + step, 1, shape - 2)
            if moves == MAX_MOVES or np.all(newpos == pos):
                break
            if abs(dog[tuple(newpos)]) <= abs(v) + MAXIMA_TOLERANCE:
                break
            pos = newpos
            moves += 1
        value = v + 0.5 * np.dot(g, off)
        if abs(value) >= threshold:
            locs.append((pos + off)[::-1])
            vals.append(value)
    locs = np.array(locs, float).reshape(-1, ndim)
    vals = np.array(vals, float)
    if len(locs) > 1:
        tree = scipy.spatial.cKDTree(locs)
        dup = np.zeros(len(locs), bool)
        for i, j in sorted(tree.query_pairs(DUPLICATE_DISTANCE)):
            if not dup[i]:
                dup[j] = True
        locs = locs[~dup]
        vals = vals[~dup]
    return locs, vals


def downsamplingcorrection(locs: np.ndarray,
                           factors: ArrayLike) -> np.ndarray:
    """Map positions in a block-mean downsampled image back to full size

    A pixel at x in an image downsampled by f covers full-resolution
    pixels f·x … f·x + f − 1, so its center lies at f·x + (f − 1)/2.
    """
    factors = np.asarray(factors, float)
    return locs * factors + (factors - 1) / 2


def detect(vol: ArrayLike, params: DetectionParameters = DetectionParameters(),
           anisotropy: Optional[ArrayLike] = None
           ) -> Tuple[np.ndarray, np.ndarray]:
    """Detect interest points in a volume

    Arguments:
        vol: the image, indexed [z, y, x]
        params: detection parameters
        anisotropy: optional per-axis (x, y, z) sigma divisors, see
            `differenceofgaussian`

    Returns:
        (locations, values) with `locations` an N×n array of (x, y, z)
        full-resolution pixel positions and `values` the DoG values
    """
    vol = Volume(vol)
    vol = vol.normalized(params.min_intensity, params.max_intensity)
    if vol.ndim == 2:
        factors = np.array([params.downsample_xy, params.downsample_xy])
    else:
        factors = np.array([params.downsample_xy, params.downsample_xy,
                            params.downsample_z] + [1] * (vol.ndim - 3))
    if np.any(factors > 1):
        vol = vol.downsampled(factors)
        if anisotropy is None:
            anisotropy = np.ones(len(factors))
        anisotropy = np.asarray(anisotropy, float) * factors
        anisotropy = anisotropy / anisotropy.min()
    dog = differenceofgaussian(vol, params.sigma, anisotropy)
    peaks = localextrema(dog, params.threshold, params.find_min,
                         params.find_max)
    if params.localization == "quadratic":
        locs, vals = quadraticpeaks(dog, peaks, params.threshold)
    else:
        locs = peaks
        vals = dog[tuple(peaks[:, ::-1].astype(int).T)] if len(peaks) \
            else np.zeros(0)
    if np.any(factors > 1):
        locs = downsamplingcorrection(locs, factors)
    logger.debug("Found %d peaks, %d after localization", len(peaks),
                 len(locs))
    return locs, vals


def detect_interest_points(spimdata: SpimData, views: List[ViewId],
                           label: str = "beads",
                           params: DetectionParameters = DetectionParameters(),
                           num_threads: Optional[int] = None
                           ) -> Dict[ViewId, int]:
    """Detect interest points in views and store them under `label`

    Each view's image is loaded through the SpimData's loader. Sigma is
    corrected for anisotropic voxel sizes.

    Returns the number of detections per view.
    """
    def work(view):
        vol = spimdata.loadvolume(view)
        vs = np.asarray(spimdata.setup(view).voxel_size, float)[:vol.ndim]
        anisotropy = vs / vs.min()
        locs, vals = detect(vol, params, anisotropy)
        ips = InterestPoints(locs,
                             intensities=vals if params.keep_intensity
                             else None,
                             parameters=f"DoG sigma={params.sigma} "
                             f"threshold={params.threshold}")
        spimdata.setinterestpoints(view, label, ips)
        logger.info("%s: detected %d interest points", view, len(ips))
        return view, len(ips)

    with ThreadPoolExecutor(max_workers=num_threads) as executor:
        return dict(executor.map(work, views))
