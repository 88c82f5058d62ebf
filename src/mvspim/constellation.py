# constellation.py - part of mvspim

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

"""Which pairs of views to compare

A pairwise setup decides which views get matched to which, splits the
views into independent subsets that can be optimized separately, and
marks views that stay fixed. Views can be grouped; views in one group
move together and are never compared to each other.

Typical use:

    setup = AllToAll(views, groups)
    setup.definepairs()
    setup.removenonoverlappingpairs(BoundingBoxOverlap(spimdata))
    setup.reorderpairs()
    setup.detectsubsets()
    setup.sortsubsets()
    setup.fixviewsinallsubsets(setup.defaultfixedviews())

or simply `setup.run(overlap)`.
"""

import logging
import numpy as np
from typing import Optional, Tuple, List, Dict, Set, Iterable, Hashable

from .spimdata import SpimData, ViewId

logger = logging.getLogger(__name__)

Pair = Tuple[Hashable, Hashable]


class Group:
    """An immutable set of views that move together

    Groups compare equal if they contain the same views. Iteration is
    in sorted order.
    """
    def __init__(self, views: Iterable[Hashable] = ()):
        self.views = frozenset(views)

    def __iter__(self):
        return iter(sorted(self.views))

    def __len__(self):
        return len(self.views)

    def __contains__(self, view):
        return view in self.views

    def __eq__(self, other):
        return isinstance(other, Group) and self.views == other.views

    def __hash__(self):
        return hash(self.views)

    def __lt__(self, other):
        return sorted(self.views) < sorted(other.views)

    def __repr__(self):
        return "Group(" + ", ".join(str(v) for v in self) + ")"

    def first(self) -> Hashable:
        return min(self.views)

    @staticmethod
    def overlaps(group1: "Group", group2: "Group") -> bool:
        """True if the groups share at least one view"""
        return not group1.views.isdisjoint(group2.views)

    @staticmethod
    def containsboth(a: Hashable, b: Hashable,
                     groups: Iterable["Group"]) -> bool:
        """True if any single group contains both views"""
        return any(a in g and b in g for g in groups)

    @staticmethod
    def memberof(view: Hashable, groups: Iterable["Group"]) -> List["Group"]:
        """All groups that contain the view"""
        return [g for g in groups if view in g]

    @staticmethod
    def mergeoverlapping(groups: Iterable["Group"]) -> List["Group"]:
        """Merge groups that share views until all are disjoint"""
        merged: List[set] = []
        for g in groups:
            views = set(g.views)
            keep = []
            for m in merged:
                if m.isdisjoint(views):
                    keep.append(m)
                else:
                    views |= m
            keep.append(views)
            merged = keep
        return sorted(Group(m) for m in merged)


def groupsforallviews(views: Iterable[Hashable],
                      groups: Iterable[Group]) -> List[Group]:
    """The given groups plus a singleton group for each ungrouped view"""
    groups = list(groups)
    full = list(groups)
    for v in sorted(views):
        if not any(v in g for g in groups):
            full.append(Group([v]))
    return full


class Subset:
    """A set of views that is connected by pairs or groups

    Subsets can be optimized independently of each other.
    """
    def __init__(self, views: Set[Hashable], pairs: List[Pair],
                 groups: Set[Group]):
        self.views = set(views)
        self.pairs = list(pairs)
        self.groups = set(groups)
        self.fixedviews: Set[Hashable] = set()

    def __repr__(self):
        return (f"Subset({len(self.views)} views, {len(self.pairs)} pairs, "
                f"{len(self.groups)} groups, fixed={sorted(self.fixedviews)})")

    def fixviews(self, fixedviews: Iterable[Hashable]) -> List[Pair]:
        """Mark views as fixed and drop pairs that need no comparison

        Pairs between two fixed views are dropped. If more than one
        group contains a fixed view, pairs between such groups are
        dropped as well.

        Returns the removed pairs.
        """
        self.fixedviews |= {v for v in fixedviews if v in self.views}
        removed = [p for p in self.pairs
                   if p[0] in self.fixedviews and p[1] in self.fixedviews]
        self.pairs = [p for p in self.pairs if p not in removed]

        fixedgroups = [g for g in self.groups
                       if not g.views.isdisjoint(self.fixedviews)]
        if len(fixedgroups) > 1:
            def bothfixed(p):
                return (any(p[0] in g for g in fixedgroups)
                        and any(p[1] in g for g in fixedgroups))
            removed += [p for p in self.pairs if bothfixed(p)]
            self.pairs = [p for p in self.pairs if not bothfixed(p)]
        return removed

    def groupedpairs(self) -> List[Tuple[Group, Group]]:
        """Pairs of groups to compare

        Every view not in a group gets its own group. Each pair of views
        gives rise to comparisons between all groups containing either
        view. Each pair of groups occurs only once.
        """
        groups = groupsforallviews(self.views, self.groups)
        seen = set()
        result = []
        for a, b in self.pairs:
            for i, ga in enumerate(groups):
                if a not in ga:
                    continue
                for j, gb in enumerate(groups):
                    if b in gb and (i, j) not in seen and (j, i) not in seen:
                        seen.add((i, j))
                        result.append((ga, gb))
        return result


def detectsubsets(views: List[Hashable], pairs: List[Pair],
                  groups: Set[Group]) -> List[Subset]:
    """Split views into subsets connected by pairs or groups

    Views that take part in no pair get a subset of their own, unless a
    group links them to other views.
    """
    vsets: List[set] = []
    psets: List[list] = []

    def setid(v):
        for j, s in enumerate(vsets):
            if v in s:
                return j
        return -1

    def merge(indices):
        indices = sorted(set(indices))
        if len(indices) <= 1:
            return
        vs = set()
        ps = []
        for i in indices:
            vs |= vsets[i]
            ps += psets[i]
        for i in reversed(indices):
            del vsets[i]
            del psets[i]
        vsets.append(vs)
        psets.append(ps)

    for pair in pairs:
        a, b = pair
        i1 = setid(a)
        i2 = setid(b)
        if i1 == -1 and i2 == -1:
            vsets.append({a, b})
            psets.append([pair])
        elif i1 == -1:
            vsets[i2].add(a)
            psets[i2].append(pair)
        elif i2 == -1:
            vsets[i1].add(b)
            psets[i1].append(pair)
        elif i1 == i2:
            psets[i1].append(pair)
        else:
            psets[i1].append(pair)
            merge([i1, i2])

    for v in views:
        if setid(v) == -1:
            vsets.append({v})
            psets.append([])

    for group in groups:
        merge([j for j, s in enumerate(vsets) if not s.isdisjoint(group.views)])

    subsets = []
    for vs, ps in zip(vsets, psets):
        assoc = {g for g in groups if not g.views.isdisjoint(vs)}
        subsets.append(Subset(vs, ps, assoc))
    return subsets


class PairwiseSetup:
    """Base class for strategies that choose which views to compare

    Arguments:
        views: the views to register
        groups: optional groups of views that move together

    Subclasses implement `_allpairs` and may override
    `defaultfixedviews`.
    """
    def __init__(self, views: List[Hashable],
                 groups: Optional[Iterable[Group]] = None):
        self.views = sorted(views)
        if groups is None:
            groups = []
        present = set(self.views)
        self.groups: Set[Group] = set()
        for g in groups:
            g = Group(v for v in g if v in present)
            if len(g):
                self.groups.add(g)
        self.pairs: List[Pair] = []
        self.subsets: List[Subset] = []

    def _inrange(self, a: Hashable, b: Hashable) -> bool:
        return True

    def _allpairs(self) -> List[Pair]:
        pairs = []
        for ia, a in enumerate(self.views[:-1]):
            for b in self.views[ia + 1:]:
                if (not Group.containsboth(a, b, self.groups)
                    and self._inrange(a, b)):
                    pairs.append((a, b))
        return pairs

    def definepairs(self) -> List[Pair]:
        """Define all pairs and drop redundant ones

        A pair is redundant if both views are in one group, or if they
        are in overlapping groups.

        Returns the removed pairs.
        """
        self.pairs = self._allpairs()
        removed = []
        keep = []
        for a, b in self.pairs:
            redundant = Group.containsboth(a, b, self.groups)
            if not redundant:
                redundant = any(Group.overlaps(ga, gb)
                                for ga in Group.memberof(a, self.groups)
                                for gb in Group.memberof(b, self.groups))
            if redundant:
                removed.append((a, b))
            else:
                keep.append((a, b))
        self.pairs = keep
        return removed

    def removenonoverlappingpairs(self, overlap: "BoundingBoxOverlap"
                                  ) -> List[Pair]:
        """Drop pairs whose views do not overlap; returns the removed pairs"""
        removed = [p for p in self.pairs if not overlap.overlaps(*p)]
        self.pairs = [p for p in self.pairs if overlap.overlaps(*p)]
        if removed:
            logger.info("Removed %d pairs that do not overlap", len(removed))
        return removed

    def reorderpairs(self) -> None:
        """Make sure the smaller view comes first in every pair"""
        self.pairs = [(a, b) if a <= b else (b, a) for a, b in self.pairs]

    def detectsubsets(self) -> None:
        self.subsets = detectsubsets(self.views, self.pairs, self.groups)

    def sortsubsets(self) -> None:
        """Sort pairs within subsets, and subsets by their first pair

        Subsets without pairs come first.
        """
        for s in self.subsets:
            s.pairs.sort(key=lambda p: p[0])
        self.subsets.sort(key=lambda s: (len(s.pairs) > 0,
                                         s.pairs[0][0] if s.pairs else ()))

    def defaultfixedviews(self) -> List[Hashable]:
        return []

    def fixviewsinallsubsets(self, fixedviews: Iterable[Hashable]
                             ) -> List[Pair]:
        fixedviews = list(fixedviews)
        removed = []
        for s in self.subsets:
            removed += s.fixviews(fixedviews)
        return removed

    def run(self, overlap: Optional["BoundingBoxOverlap"] = None,
            fixedviews: Optional[Iterable[Hashable]] = None) -> List[Subset]:
        """Run all steps of the setup

        Uses the default fixed views unless `fixedviews` is given.
        """
        self.definepairs()
        if overlap is not None:
            self.removenonoverlappingpairs(overlap)
        self.reorderpairs()
        self.detectsubsets()
        self.sortsubsets()
        if fixedviews is None:
            fixedviews = self.defaultfixedviews()
        self.fixviewsinallsubsets(fixedviews)
        logger.info("%s: %d pairs in %d subsets", type(self).__name__,
                    len(self.pairs), len(self.subsets))
        return self.subsets


class AllToAll(PairwiseSetup):
    """Compare all views with each other"""
    pass


class AllToAllRange(PairwiseSetup):
    """Compare views whose timepoints are at most `range` apart"""
    def __init__(self, views: List[ViewId],
                 groups: Optional[Iterable[Group]] = None,
                 range: int = 1):
        super().__init__(views, groups)
        self.range = range

    def _inrange(self, a, b):
        return abs(a.timepoint - b.timepoint) <= self.range


class IndividualTimepoints(PairwiseSetup):
    """Only compare views within the same timepoint"""
    def _inrange(self, a, b):
        return a.timepoint == b.timepoint


class ReferenceTimepoint(PairwiseSetup):
    """Compare all timepoints to a fixed reference timepoint

    The views of the reference timepoint are fixed by default. Unless
    groups or pairs span timepoints, each timepoint forms its own
    subsets together with the reference views.
    """
    def __init__(self, views: List[ViewId],
                 groups: Optional[Iterable[Group]] = None,
                 reference: int = 0):
        super().__init__(views, groups)
        self.reference = reference

    def _inrange(self, a, b):
        return a.timepoint == self.reference or b.timepoint == self.reference

    def defaultfixedviews(self) -> List[ViewId]:
        return [v for v in self.views if v.timepoint == self.reference]

    def _groupsspantimepoints(self) -> bool:
        return any(len({v.timepoint for v in g}) > 1 for g in self.groups)

    def _pairsspantimepoints(self) -> bool:
        ref = self.reference
        return any(a.timepoint != b.timepoint
                   and a.timepoint != ref and b.timepoint != ref
                   for a, b in self.pairs)

    def detectsubsets(self) -> None:
        if self._groupsspantimepoints() or self._pairsspantimepoints():
            super().detectsubsets()
            return
        self.subsets = []
        ref = self.reference
        for tp in sorted({v.timepoint for v in self.views}):
            if tp == ref:
                continue
            views = [v for v in self.views if v.timepoint in (tp, ref)]
            pairs = [p for p in self.pairs
                     if p[0].timepoint == tp or p[1].timepoint == tp]
            groups = {g for g in self.groups if g.first().timepoint == tp}
            self.subsets += detectsubsets(views, pairs, groups)


SETUPS: Dict[str, type] = {
    "all-to-all": AllToAll,
    "all-to-all-range": AllToAllRange,
    "individual-timepoints": IndividualTimepoints,
    "reference-timepoint": ReferenceTimepoint,
}


def createsetup(method: str, views: List[ViewId],
                groups: Optional[Iterable[Group]] = None,
                **params) -> PairwiseSetup:
    """Construct a pairwise setup strategy by name

    Extra keyword arguments (`range`, `reference`) are passed on to the
    strategy's constructor.
    """
    if method not in SETUPS:
        raise ValueError(f"Unknown pairwise setup {method!r}")
    return SETUPS[method](views, groups, **params)


class BoundingBoxOverlap:
    """Overlap test based on transformed view bounding boxes

    The boxes are rounded outward to integers with a margin of one
    pixel for the yes/no test. `overlapinterval` uses the exact boxes.
    """
    def __init__(self, spimdata: SpimData):
        self.spimdata = spimdata

    def _intbox(self, view):
        bmin, bmax = self.spimdata.boundingbox(view)
        return np.round(bmin) - 1, np.round(bmax) + 1

    def overlaps(self, view1: ViewId, view2: ViewId) -> bool:
        min1, max1 = self._intbox(view1)
        min2, max2 = self._intbox(view2)
        for d in range(len(min1)):
            if ((min1[d] < min2[d] and max1[d] < min2[d])
                or (min1[d] > max2[d] and max1[d] > max2[d])):
                return False
        return True

    def overlapinterval(self, view1: ViewId, view2: ViewId
                        ) -> Optional[Tuple[np.ndarray, np.ndarray]]:
        """Intersection of the two real-valued boxes, or None"""
        if not self.overlaps(view1, view2):
            return None
        min1, max1 = self.spimdata.boundingbox(view1)
        min2, max2 = self.spimdata.boundingbox(view2)
        bmin = np.maximum(min1, min2)
        bmax = np.minimum(max1, max2)
        if np.any(bmax <= bmin):
            return None
        return bmin, bmax
