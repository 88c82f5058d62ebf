# points.py - part of mvspim

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


import numpy as np
from typing import List, Tuple
from collections import namedtuple

InterestPoint = namedtuple("InterestPoint", ("id", "l", "view"),
                           defaults=(None,))
"""An InterestPoint is a located feature in one view.

    id: integer identifying the point within its view and label
    l: (x, y, z) coordinates, usually in world space
    view: the ViewId the point came from, if known
"""

PointMatch = namedtuple("PointMatch", ("a", "b", "weight"),
                        defaults=(1.,))
"""A PointMatch represents a pair of interest points in two different
views that should occupy the same location in world space.

    a, b: InterestPoints
    weight: weighting factor for this connection
"""


def locations(points: List[InterestPoint]) -> np.ndarray:
    """Coordinates of a list of interest points as an N×n array"""
    if len(points) == 0:
        return np.zeros((0, 3))
    return np.array([p.l for p in points], float)


def matcharrays(matches: List[PointMatch]) -> Tuple[np.ndarray, np.ndarray,
                                                    np.ndarray]:
    """Split a list of matches into (p, q, w) arrays

    `p` and `q` are N×n arrays of the coordinates of the first and second
    points, `w` is the vector of weights.
    """
    if len(matches) == 0:
        return np.zeros((0, 3)), np.zeros((0, 3)), np.zeros(0)
    p = np.array([m.a.l for m in matches], float)
    q = np.array([m.b.l for m in matches], float)
    w = np.array([m.weight for m in matches], float)
    return p, q, w


def flipped(matches: List[PointMatch]) -> List[PointMatch]:
    """Swap the roles of the two points of each match"""
    return [PointMatch(m.b, m.a, m.weight) for m in matches]
