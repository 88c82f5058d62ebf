# grouping.py - part of mvspim

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

"""Interest points of grouped views

When views are grouped, the group is matched as a whole: the world
coordinates of all its views' interest points are pooled. Each pooled
point remembers its view, so that matches between groups can later be
split back into matches between views.
"""

import logging
import numpy as np
import scipy.spatial
from typing import Optional, Tuple, List, Dict, Hashable

from .constellation import Group
from .pairwise import PairwiseResult
from .points import InterestPoint, locations
from .spimdata import ViewId

logger = logging.getLogger(__name__)

GROUPING_SEED = 234


def merge_all(points: Dict[ViewId, List[InterestPoint]]) -> List[InterestPoint]:
    """Pool the points of all views, in view order"""
    merged = []
    for view in sorted(points):
        merged += [p if p.view is not None else p._replace(view=view)
                   for p in points[view]]
    return merged


def merge_min_distance(points: Dict[ViewId, List[InterestPoint]],
                       radius: float = 2.5,
                       seed: int = GROUPING_SEED) -> List[InterestPoint]:
    """Pool the points of all views, dropping near-duplicates

    The pooled points are shuffled pseudo-randomly so that no view is
    favored. Then each point that is still present suppresses all
    points of other views within `radius`.
    """
    merged = merge_all(points)
    if len(merged) <= 1:
        return merged
    order = np.random.default_rng(seed).permutation(len(merged))
    merged = [merged[i] for i in order]
    tree = scipy.spatial.cKDTree(locations(merged))
    alive = np.ones(len(merged), bool)
    for i, p in enumerate(merged):
        if not alive[i]:
            continue
        for j in tree.query_ball_point(p.l, radius):
            if j != i and merged[j].view != p.view:
                alive[j] = False
    return [p for p, ok in zip(merged, alive) if ok]


class InterestPointGrouping:
    """Pools the interest points of the views in a group

    Arguments:
        method: "all" or "min-distance"
        radius: suppression radius for "min-distance"
    """
    def __init__(self, method: str = "min-distance", radius: float = 2.5):
        if method not in ("all", "min-distance"):
            raise ValueError(f"Unknown grouping method {method!r}")
        self.method = method
        self.radius = radius

    def group(self, group: Group,
              points: Dict[ViewId, List[InterestPoint]]) -> List[InterestPoint]:
        topool = {}
        for view in group:
            if view not in points:
                raise KeyError(f"No interest points available for {view}")
            topool[view] = points[view]
        before = sum(len(p) for p in topool.values())
        if self.method == "all":
            merged = merge_all(topool)
        else:
            merged = merge_min_distance(topool, self.radius)
        logger.debug("Grouped %s: %d of %d points remain", group,
                     len(merged), before)
        return merged


def groupinterestpoints(groups: List[Group],
                        points: Dict[ViewId, Dict[str, List[InterestPoint]]],
                        grouping: Optional[InterestPointGrouping] = None
                        ) -> Dict[Group, Dict[str, List[InterestPoint]]]:
    """Pooled interest points per group and label

    Labels are pooled separately; a label is present for a group if any
    of its views has it.
    """
    if grouping is None:
        grouping = InterestPointGrouping()
    out = {}
    for group in groups:
        labels = []
        for view in group:
            for label in points[view]:
                if label not in labels:
                    labels.append(label)
        out[group] = {}
        for label in labels:
            perview = {v: points[v].get(label, []) for v in group}
            out[group][label] = grouping.group(group, perview)
    return out


def splitgroupresults(results: List[Tuple[Tuple[Hashable, Hashable],
                                          PairwiseResult]]
                      ) -> List[Tuple[Tuple[ViewId, ViewId], PairwiseResult]]:
    """Split matches between groups into matches between views

    Each match knows the views of its points. Matches are collected per
    view pair and label pair; each new result inherits the error and
    labels of the group result it came from.
    """
    split: Dict[Tuple, Tuple[Tuple[ViewId, ViewId], PairwiseResult]] = {}

    def resultfor(m, res):
        key = (m.a.view, m.b.view, res.labela, res.labelb)
        if key not in split:
            pwr = PairwiseResult(error=res.error, message=res.message,
                                 description=res.description,
                                 labela=res.labela, labelb=res.labelb,
                                 store_correspondences=
                                 res.store_correspondences)
            split[key] = ((m.a.view, m.b.view), pwr)
        return split[key][1]

    for pair, res in results:
        for m in res.inliers:
            resultfor(m, res).inliers.append(m)
        for m in res.candidates:
            resultfor(m, res).candidates.append(m)
    return list(split.values())
