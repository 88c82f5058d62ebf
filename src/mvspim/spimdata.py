# spimdata.py - part of mvspim

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

"""In-memory description of a multi-view acquisition

A `SpimData` object knows which views exist, how large they are, how
each is registered to world space, and which interest points have been
found in each. Image data are only touched through an optional loader
callable.
"""

import logging
from dataclasses import dataclass, field
import numpy as np
from collections import namedtuple
from typing import Optional, Tuple, List, Dict, Callable, Any, Iterable
import numpy.typing
ArrayLike = numpy.typing.ArrayLike

from .affine import Affine
from .volume import Volume
from .points import InterestPoint

logger = logging.getLogger(__name__)

ViewId = namedtuple("ViewId", ("timepoint", "setup"))
"""A ViewId identifies one acquired stack: a setup at a timepoint.

ViewIds sort by timepoint first, then by setup.
"""

CorrespondingInterestPoints = namedtuple(
    "CorrespondingInterestPoints",
    ("id", "other_view", "other_label", "other_id"))
"""A correspondence from point `id` of one view to point `other_id` of
the interest points labeled `other_label` in `other_view`."""


@dataclass
class ViewSetup:
    """Static properties of one setup

    `size` is the number of voxels along (x, y, z). `voxel_size` gives
    the calibration in the same order. `attributes` holds things like
    angle, channel, illumination and tile.
    """
    id: int
    size: Tuple[int, ...]
    voxel_size: Tuple[float, ...] = (1., 1., 1.)
    attributes: Dict[str, Any] = field(default_factory=dict)

    @property
    def ndim(self) -> int:
        return len(self.size)


class ViewRegistration:
    """Registration of one view to world space

    The registration is an ordered list of named affine transformations.
    The first one in the list is applied last, so that

        model = transforms[0] @ transforms[1] @ ...

    New registration steps are prepended using `preconcatenate`.
    """
    def __init__(self, ndim: int = 3,
                 transforms: Optional[List[Tuple[str, Affine]]] = None):
        self.ndim = ndim
        self.transforms: List[Tuple[str, Affine]] = []
        if transforms is not None:
            for name, afm in transforms:
                self.transforms.append((name, Affine(afm)))

    def model(self) -> Affine:
        """The composed transformation from voxel space to world space"""
        afm = Affine.identity(self.ndim)
        for name, t in self.transforms:
            afm @= t
        return afm

    def preconcatenate(self, afm: Affine, name: str = "") -> None:
        """Apply a transformation after all existing ones"""
        self.transforms.insert(0, (name, Affine(afm)))

    def concatenate(self, afm: Affine, name: str = "") -> None:
        """Apply a transformation before all existing ones"""
        self.transforms.append((name, Affine(afm)))

    def __repr__(self):
        names = ", ".join(repr(name) for name, t in self.transforms)
        return f"ViewRegistration([{names}])"


class InterestPoints:
    """The interest points of one label in one view

    `locations` is an N×n array of (x, y, z) voxel coordinates and `ids`
    the corresponding integer ids. Correspondences to points in other
    views are kept in `correspondences`. `parameters` describes how the
    points were obtained.
    """
    def __init__(self, locations: ArrayLike,
                 ids: Optional[ArrayLike] = None,
                 intensities: Optional[ArrayLike] = None,
                 parameters: str = ""):
        self.locations = np.asarray(locations, float)
        if self.locations.ndim != 2:
            ndim = self.locations.shape[-1] if self.locations.ndim else 3
            self.locations = self.locations.reshape(-1, ndim)
        if ids is None:
            ids = np.arange(len(self.locations))
        self.ids = np.asarray(ids, int)
        if len(self.ids) != len(self.locations):
            raise ValueError("Need one id per location")
        self.intensities = (None if intensities is None
                            else np.asarray(intensities, float))
        self.correspondences: List[CorrespondingInterestPoints] = []
        self.parameters = parameters

    def __len__(self):
        return len(self.ids)

    def points(self, afm: Optional[Affine] = None,
               view: Optional[ViewId] = None) -> List[InterestPoint]:
        """The interest points, optionally transformed by `afm`"""
        locs = self.locations if afm is None else afm * self.locations
        return [InterestPoint(int(i), l, view)
                for i, l in zip(self.ids, locs)]

    def addcorrespondence(self, id: int, other_view: ViewId,
                          other_label: str, other_id: int) -> None:
        self.correspondences.append(
            CorrespondingInterestPoints(int(id), other_view,
                                        other_label, int(other_id)))

    def clearcorrespondences(self, other_views: Optional[Iterable] = None,
                             other_label: Optional[str] = None) -> None:
        """Drop stored correspondences

        Without arguments, all are dropped. Otherwise only those to the
        given views and (if given) label.
        """
        if other_views is None and other_label is None:
            self.correspondences = []
            return
        views = None if other_views is None else set(other_views)
        def keep(c):
            if views is not None and c.other_view not in views:
                return True
            if other_label is not None and c.other_label != other_label:
                return True
            return False
        self.correspondences = [c for c in self.correspondences if keep(c)]


class SpimData:
    """Scene description: setups, timepoints, registrations, and points

    Arguments:
        setups: the ViewSetups, in any order
        timepoints: the timepoint ids
        loader: optional callable mapping a ViewId to a Volume
        missing: optional ViewIds that were not acquired

    Every combination of timepoint and setup is a view unless it is
    marked missing. Each view starts with the identity registration.
    """
    def __init__(self, setups: List[ViewSetup], timepoints: List[int],
                 loader: Optional[Callable[[ViewId], Volume]] = None,
                 missing: Optional[Iterable[ViewId]] = None):
        self.setups: Dict[int, ViewSetup] = {s.id: s for s in setups}
        self.timepoints: List[int] = sorted(timepoints)
        self.loader = loader
        self.missing: set = set() if missing is None else set(missing)
        self.registrations: Dict[ViewId, ViewRegistration] = {}
        self.interestpoints: Dict[ViewId, Dict[str, InterestPoints]] = {}
        for view in self.views():
            ndim = self.setups[view.setup].ndim
            self.registrations[view] = ViewRegistration(ndim)
            self.interestpoints[view] = {}

    def views(self) -> List[ViewId]:
        """All present views, sorted"""
        return [ViewId(t, s) for t in self.timepoints
                for s in sorted(self.setups)
                if ViewId(t, s) not in self.missing]

    def setup(self, view: ViewId) -> ViewSetup:
        return self.setups[view.setup]

    def viewdescription(self, view: ViewId) -> Dict[str, Any]:
        """Timepoint, setup, and the setup's attributes of a view"""
        desc = {"timepoint": view.timepoint, "setup": view.setup}
        desc.update(self.setups[view.setup].attributes)
        return desc

    def model(self, view: ViewId) -> Affine:
        return self.registrations[view].model()

    def boundingbox(self, view: ViewId,
                    afm: Optional[Affine] = None) -> Tuple[np.ndarray,
                                                           np.ndarray]:
        """World-space bounding box of a view

        The voxel box [0, size−1] is transformed by the view's current
        model, or by `afm` if given.
        """
        if afm is None:
            afm = self.model(view)
        size = np.asarray(self.setups[view.setup].size, float)
        return afm.estimatebounds(np.zeros(len(size)), size - 1)

    def worldpoints(self, view: ViewId, label: str) -> List[InterestPoint]:
        """Interest points of a view transformed to world space"""
        ips = self.interestpoints[view].get(label)
        if ips is None:
            return []
        return ips.points(self.model(view), view)

    def labels(self, view: ViewId) -> List[str]:
        return list(self.interestpoints[view].keys())

    def setinterestpoints(self, view: ViewId, label: str,
                          ips: InterestPoints) -> None:
        self.interestpoints[view][label] = ips

    def loadvolume(self, view: ViewId) -> Volume:
        if self.loader is None:
            raise ValueError("No image loader configured")
        return Volume(self.loader(view))
