# thinout.py - part of mvspim

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

"""Thinning of interest points by nearest-neighbour distance"""

import logging
import numpy as np
import scipy.spatial
from dataclasses import dataclass
from typing import List, Dict

from .spimdata import SpimData, ViewId, InterestPoints

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ThinOutParameters:
    """Which points to keep

    label: the interest points to thin out
    newlabel: label under which to store the result
    min_distance, max_distance: range of nearest-neighbour distances,
        in calibrated units
    keep_range: keep the points inside the range if true, otherwise
        remove them
    """
    label: str = "beads"
    newlabel: str = "beads-thinned"
    min_distance: float = 0.
    max_distance: float = np.inf
    keep_range: bool = True


def nearestdistances(locs: np.ndarray) -> np.ndarray:
    """Distance from each point to its nearest neighbour

    Returns infinity for every point if there is only one.
    """
    if len(locs) < 2:
        return np.full(len(locs), np.inf)
    tree = scipy.spatial.cKDTree(locs)
    d, _ = tree.query(locs, 2)
    return d[:, 1]


def thin_out(spimdata: SpimData, views: List[ViewId],
             params: ThinOutParameters) -> Dict[ViewId, int]:
    """Thin out interest points and store them under a new label

    Distances are measured after scaling by the views' voxel sizes.
    The new points get fresh ids and no correspondences. Views that do
    not have the label are skipped.

    Returns the number of points kept per view.
    """
    kept = {}
    for view in views:
        ips = spimdata.interestpoints[view].get(params.label)
        if ips is None:
            continue
        ndim = ips.locations.shape[1]
        vs = np.asarray(spimdata.setup(view).voxel_size, float)[:ndim]
        d = nearestdistances(ips.locations * vs)
        inside = (d >= params.min_distance) & (d <= params.max_distance)
        keep = inside if params.keep_range else ~inside
        if params.keep_range:
            desc = (f"thinned-out '{params.label}', kept range from "
                    f"{params.min_distance} to {params.max_distance}")
        else:
            desc = (f"thinned-out '{params.label}', removed range from "
                    f"{params.min_distance} to {params.max_distance}")
        intensities = None if ips.intensities is None \
            else ips.intensities[keep]
        newips = InterestPoints(ips.locations[keep], intensities=intensities,
                                parameters=desc)
        spimdata.setinterestpoints(view, params.newlabel, newips)
        kept[view] = len(newips)
        logger.info("%s: detections %d >>> %d", view, len(ips), len(newips))
    return kept
