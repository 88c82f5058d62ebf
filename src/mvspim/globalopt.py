# globalopt.py - part of mvspim

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

"""Global optimization of view registrations

Pairwise matching yields correspondences between pairs of views. Global
optimization finds one transformation per view (or per group of views)
that best satisfies all of them at once. Three strategies are offered:

* `global_opt`: a single optimization of all tiles;
* `global_opt_iterative`: repeat the optimization, removing the worst
  link each time, until the errors are consistent;
* `global_opt_two_round`: as the iterative version, and then align the
  components that remain unconnected using "weak links" derived from
  the metadata.

The resulting transformations map the current world space of each view
to its new world space. `register_views` runs the whole process on a
SpimData and updates its registrations.
"""

import logging
import functools
import numpy as np
from dataclasses import dataclass
from typing import Optional, Tuple, List, Dict, Iterable, Callable

from .affine import Affine
from .constellation import (Group, BoundingBoxOverlap, createsetup,
                            groupsforallviews)
from .grouping import (InterestPointGrouping, groupinterestpoints,
                       splitgroupresults)
from .models import Model, RigidModel, TranslationModel, createmodel
from .pairwise import (PairwiseMatcher, PairwiseResult, CenterOfMassPairwise,
                       compute_pairs, store_correspondences, creatematcher)
from .points import InterestPoint, PointMatch, flipped
from .spimdata import SpimData, ViewId
from .tiles import Tile, TileConfiguration, identifyconnectedgraphs
from . import funcs

logger = logging.getLogger(__name__)

PairResults = List[Tuple[Tuple[ViewId, ViewId], PairwiseResult]]


@dataclass(frozen=True)
class ConvergenceStrategy:
    """When to stop optimizing

    max_error: mean error below which the optimization may stop
    max_iterations: hard limit on the number of iterations
    max_plateau_width: number of iterations over which the error must
        have stopped improving
    """
    max_error: float
    max_iterations: int = 10000
    max_plateau_width: int = 200


@dataclass(frozen=True)
class IterativeConvergenceStrategy(ConvergenceStrategy):
    """Convergence criterion for iterative link removal

    An optimization is consistent unless the maximal tile error exceeds
    `relative_threshold` times the average (and 0.95 px), or the average
    exceeds `absolute_threshold`.
    """
    max_error: float = np.inf
    relative_threshold: float = 2.5
    absolute_threshold: float = 3.5

    def isconverged(self, tc: TileConfiguration) -> bool:
        avg = tc.error
        mx = tc.maxerror
        if (avg * self.relative_threshold < mx and mx > 0.95) \
           or avg > self.absolute_threshold:
            return False
        return True


def findgroup(tile: Tile, tilemap: Dict[ViewId, Tile]) -> Group:
    """The views that share a tile"""
    return Group(v for v, t in tilemap.items() if t is tile)


class MaxErrorLinkRemoval:
    """Removes the link that carries the worst point match

    Tiles with only one connection are never disconnected, so that no
    tile gets isolated.
    """
    def removelink(self, tc: TileConfiguration,
                   tilemap: Dict[ViewId, Tile]) -> Optional[Tuple[Group,
                                                                  Group]]:
        worst = -np.inf
        tile1 = None
        tile2 = None
        for tile in tc.tiles:
            if len(tile.connectedtiles()) <= 1:
                continue
            dist, other = tile.worstmatch()
            if other is not None and dist > worst:
                worst = dist
                tile1 = tile
                tile2 = other
        if tile1 is None:
            logger.warning("Cannot remove any more links without "
                           "disconnecting components")
            return None
        tile1.disconnect(tile2)
        groupa = findgroup(tile1, tilemap)
        groupb = findgroup(tile2, tilemap)
        logger.info("Removed link from %s to %s (%.3f px)",
                    groupa, groupb, worst)
        return groupa, groupb


class PointMatchCreator:
    """Base class for objects that connect tiles with point matches"""
    def allviews(self) -> set:
        raise NotImplementedError

    def assignweights(self, tilemap: Dict[ViewId, Tile],
                      groups: List[Group],
                      fixedviews: Iterable[ViewId]) -> None:
        pass

    def assignpointmatches(self, tilemap: Dict[ViewId, Tile],
                           groups: List[Group],
                           fixedviews: Iterable[ViewId]) -> None:
        raise NotImplementedError


def addpointmatches(matches: List[PointMatch], tilea: Tile,
                    tileb: Tile) -> None:
    """Connect two tiles by matches, in both directions"""
    if len(matches) == 0 or tilea is tileb:
        return
    tilea.addmatches(tileb, matches)
    tileb.addmatches(tilea, flipped(matches))
    tilea.connect(tileb)


class InterestPointMatchCreator(PointMatchCreator):
    """Strong links from pairwise matching results

    Arguments:
        results: list of ((view a, view b), PairwiseResult)

    Within a group, views with fewer correspondences than the best
    view of the group get a higher weight, so that a group is not
    dominated by its best-matched view.
    """
    def __init__(self, results: PairResults):
        self.results = results
        self.weights = [1.] * len(results)

    def allviews(self) -> set:
        views = set()
        for (va, vb), res in self.results:
            views.add(va)
            views.add(vb)
        return views

    def assignweights(self, tilemap, groups, fixedviews):
        groupcount = {g: 0 for g in groups}
        viewcount = {v: 0 for v in tilemap}
        viewgroup = {}
        for (va, vb), res in self.results:
            n = len(res.inliers)
            viewcount[va] = viewcount.get(va, 0) + n
            viewcount[vb] = viewcount.get(vb, 0) + n
            for g in groups:
                if va in g:
                    groupcount[g] += n
                    viewgroup[va] = g
                if vb in g:
                    groupcount[g] += n
                    viewgroup[vb] = g

        ratio = {}
        maxratio = {}
        for v in tilemap:
            g = viewgroup.get(v)
            if g is None or groupcount[g] == 0:
                ratio[v] = 1.
                continue
            ratio[v] = viewcount[v] / groupcount[g]
            maxratio[g] = max(maxratio.get(g, -1), ratio[v])

        for v in sorted(tilemap):
            g = viewgroup.get(v)
            mx = maxratio.get(g, 1.) if g is not None else 1.
            if ratio[v] > 0:
                ratio[v] = mx / ratio[v]
            else:
                # No inliers, so none of its links carries a match to weight
                ratio[v] = 1.
            logger.debug("Weight of %s: %g", v, ratio[v])

        self.weights = [max(ratio.get(va, 1.), ratio.get(vb, 1.))
                        for (va, vb), res in self.results]

    def assignpointmatches(self, tilemap, groups, fixedviews):
        for ((va, vb), res), w in zip(self.results, self.weights):
            if va not in tilemap or vb not in tilemap:
                continue
            matches = [m._replace(weight=m.weight * w) for m in res.inliers]
            addpointmatches(matches, tilemap[va], tilemap[vb])


class MetadataWeakLinkCreator(PointMatchCreator):
    """Weak links between views whose metadata boxes overlap

    Arguments:
        models: transformation of each view from the first round
        spimdata: source of the views' metadata registrations and sizes
        overlap: overlap test, by default on the views' bounding boxes

    For each pair of views on different tiles whose bounding boxes
    overlap, the corners of the overlap box are matched, mapped through
    each view's first-round model.
    """
    def __init__(self, models: Dict[ViewId, Affine], spimdata: SpimData,
                 overlap: Optional[BoundingBoxOverlap] = None):
        self.models = models
        self.spimdata = spimdata
        self.overlap = BoundingBoxOverlap(spimdata) if overlap is None \
            else overlap

    def allviews(self) -> set:
        return set(self.models)

    def assignpointmatches(self, tilemap, groups, fixedviews):
        views = sorted(v for v in self.models if v in tilemap)
        for ia, va in enumerate(views):
            for vb in views[ia + 1:]:
                if tilemap[va] is tilemap[vb]:
                    continue
                box = self.overlap.overlapinterval(va, vb)
                if box is None:
                    continue
                corners = funcs.boxCorners(*box)
                pa = self.models[va] * corners
                pb = self.models[vb] * corners
                matches = [PointMatch(InterestPoint(k, pa[k], va),
                                      InterestPoint(k, pb[k], vb))
                           for k in range(len(corners))]
                addpointmatches(matches, tilemap[va], tilemap[vb])
                logger.debug("Weak link between %s and %s", va, vb)

    @staticmethod
    def factory(spimdata: SpimData,
                overlap: Optional[BoundingBoxOverlap] = None
                ) -> Callable[[Dict[ViewId, Affine]], "MetadataWeakLinkCreator"]:
        return functools.partial(MetadataWeakLinkCreator, spimdata=spimdata,
                                 overlap=overlap)


def _initglobalopt(model: Model, pmc: PointMatchCreator,
                   fixedviews: Iterable[ViewId],
                   groups: Iterable[Group]
                   ) -> Tuple[Dict[ViewId, Tile], List[Group]]:
    groups = Group.mergeoverlapping(groups)
    views = set(pmc.allviews())
    for g in groups:
        views |= g.views
    tilemap: Dict[ViewId, Tile] = {}
    for v in sorted(views):
        if v in tilemap:
            continue
        grp = Group.memberof(v, groups)
        tile = Tile(model.copy())
        if grp:
            for w in grp[0]:
                tilemap[w] = tile
        else:
            tilemap[v] = tile
    fixedviews = list(fixedviews)
    pmc.assignweights(tilemap, groups, fixedviews)
    pmc.assignpointmatches(tilemap, groups, fixedviews)
    return tilemap, groups


def _addandfixtiles(tilemap: Dict[ViewId, Tile],
                    fixedviews: Iterable[ViewId]) -> TileConfiguration:
    tc = TileConfiguration()
    fixedviews = set(fixedviews)
    for v in sorted(tilemap):
        tile = tilemap[v]
        if v in fixedviews:
            tc.fixtile(tile)
            logger.debug("Fixing %s", v)
        elif tile.connectedtiles():
            tc.addtile(tile)
    return tc


def _seed(tc: TileConfiguration, model: Model) -> None:
    unaligned = tc.prealign()
    if unaligned:
        logger.info("Pre-aligned all tiles but %d", len(unaligned))
    else:
        logger.info("Pre-aligned all tiles")
    if isinstance(model, TranslationModel):
        tc.solvetranslations()


def _logerrors(tc: TileConfiguration) -> None:
    logger.info("Global optimization of %d tiles", len(tc.tiles))
    logger.info("   Avg Error: %.4f px", tc.error)
    logger.info("   Min Error: %.4f px", tc.minerror)
    logger.info("   Max Error: %.4f px", tc.maxerror)


def _optimize(tc: TileConfiguration, cs: ConvergenceStrategy) -> None:
    tc.optimize(cs.max_error, cs.max_iterations, cs.max_plateau_width, 1.)
    _logerrors(tc)


def computetiles(model: Model, pmc: PointMatchCreator,
                 cs: ConvergenceStrategy,
                 fixedviews: Iterable[ViewId] = (),
                 groups: Iterable[Group] = ()
                 ) -> Optional[Dict[ViewId, Tile]]:
    """One round of global optimization, returning the tiles

    Returns None if there are no tiles to optimize.
    """
    fixedviews = list(fixedviews)
    tilemap, groups = _initglobalopt(model, pmc, fixedviews, groups)
    tc = _addandfixtiles(tilemap, fixedviews)
    if not tc.tiles:
        logger.warning("No tiles connected, nothing to optimize")
        return None
    _seed(tc, model)
    _optimize(tc, cs)
    return tilemap


def _tomodels(tilemap: Dict[ViewId, Tile]) -> Dict[ViewId, Model]:
    return {v: tilemap[v].model for v in sorted(tilemap)}


def _logmodels(models: Dict[ViewId, Model]) -> None:
    for v, mdl in models.items():
        afm = mdl.toaffine()
        if isinstance(mdl, RigidModel):
            axis, angle = afm.rotationaxis()
            logger.info("%s: %s, axis %s, angle %.4f", v,
                        np.round(afm, 4).tolist(), axis, angle)
        else:
            logger.info("%s: %s, scaling %s", v, np.round(afm, 4).tolist(),
                        np.round(afm.scaling(), 4).tolist())


def global_opt(model: Model, pmc: PointMatchCreator,
               cs: ConvergenceStrategy,
               fixedviews: Iterable[ViewId] = (),
               groups: Iterable[Group] = ()
               ) -> Optional[Dict[ViewId, Model]]:
    """One round of global optimization

    Arguments:
        model: prototype of the model to fit per tile
        pmc: creates the point matches between tiles
        cs: the convergence strategy
        fixedviews: views whose tiles do not move
        groups: groups of views that share a tile

    Returns:
        the fitted model of each view, or None if no tiles are connected
    """
    tilemap = computetiles(model, pmc, cs, fixedviews, groups)
    if tilemap is None:
        return None
    models = _tomodels(tilemap)
    _logmodels(models)
    return models


def computetilesiterative(model: Model, pmc: PointMatchCreator,
                          ics: IterativeConvergenceStrategy,
                          lms: MaxErrorLinkRemoval,
                          fixedviews: Iterable[ViewId] = (),
                          groups: Iterable[Group] = (),
                          removedpairs: Optional[List[Tuple[Group, Group]]]
                          = None) -> Optional[Dict[ViewId, Tile]]:
    """Iterative global optimization, returning the tiles

    See `global_opt_iterative`.
    """
    fixedviews = list(fixedviews)
    tilemap, groups = _initglobalopt(model, pmc, fixedviews, groups)
    tc = _addandfixtiles(tilemap, fixedviews)
    if not tc.tiles:
        logger.warning("No tiles connected, nothing to optimize")
        return None
    while True:
        _seed(tc, model)
        _optimize(tc, ics)
        if ics.isconverged(tc):
            break
        removed = lms.removelink(tc, tilemap)
        if removed is None:
            break
        if removedpairs is not None:
            removedpairs.append(removed)
    return tilemap


def global_opt_iterative(model: Model, pmc: PointMatchCreator,
                         ics: IterativeConvergenceStrategy,
                         lms: Optional[MaxErrorLinkRemoval] = None,
                         fixedviews: Iterable[ViewId] = (),
                         groups: Iterable[Group] = (),
                         removedpairs: Optional[List[Tuple[Group, Group]]]
                         = None) -> Optional[Dict[ViewId, Model]]:
    """Global optimization with iterative removal of bad links

    After each optimization, if the errors are inconsistent according
    to `ics`, the worst link is removed (by `lms`) and the optimization
    is repeated, until the errors are consistent or no link can be
    removed. Removed links are appended to `removedpairs`, if given.

    Returns the fitted model of each view, or None if no tiles are
    connected.
    """
    if lms is None:
        lms = MaxErrorLinkRemoval()
    tilemap = computetilesiterative(model, pmc, ics, lms, fixedviews,
                                    groups, removedpairs)
    if tilemap is None:
        return None
    models = _tomodels(tilemap)
    _logmodels(models)
    return models


def global_opt_two_round(model: Model, pmc: PointMatchCreator,
                         ics: IterativeConvergenceStrategy,
                         lms: Optional[MaxErrorLinkRemoval],
                         wlf: Callable[[Dict[ViewId, Affine]],
                                       PointMatchCreator],
                         csweak: Optional[ConvergenceStrategy] = None,
                         fixedviews: Iterable[ViewId] = (),
                         groups: Iterable[Group] = (),
                         removedpairs: Optional[List[Tuple[Group, Group]]]
                         = None) -> Optional[Dict[ViewId, Affine]]:
    """Two-round global optimization

    The first round is `global_opt_iterative` on the strong links. If
    that leaves more than one connected set of tiles, each set becomes
    a group, and a second round aligns the groups using weak links
    created by `wlf` from the first-round models.

    Arguments:
        wlf: creates the weak-link PointMatchCreator from a dict of
            first-round transformations, e.g.,
            `MetadataWeakLinkCreator.factory(spimdata)`
        csweak: convergence strategy of the second round (by default
            ConvergenceStrategy(inf))

    Returns:
        the combined transformation of each view, or None if no tiles
        are connected
    """
    if lms is None:
        lms = MaxErrorLinkRemoval()
    if csweak is None:
        csweak = ConvergenceStrategy(np.inf)
    fixedviews = list(fixedviews)
    tiles1 = computetilesiterative(model, pmc, ics, lms, fixedviews,
                                   groups, removedpairs)
    if tiles1 is None:
        return None
    models1 = {v: t.model.toaffine() for v, t in sorted(tiles1.items())}

    alltiles = []
    for v in sorted(tiles1):
        if tiles1[v] not in alltiles:
            alltiles.append(tiles1[v])
    sets = identifyconnectedgraphs(alltiles)
    if len(sets) == 1:
        logger.info("All views are connected after the first round")
        return models1

    groupsnew = []
    for connected in sets:
        group = Group(v for v, t in tiles1.items()
                      if any(t is c for c in connected))
        groupsnew.append(group)
        logger.info("Connected set: %s", group)

    tiles2 = computetiles(model, wlf(models1), csweak, fixedviews,
                          groupsnew)
    if tiles2 is None:
        return models1
    final = {}
    for v in models1:
        if v in tiles2:
            final[v] = tiles2[v].model.toaffine() @ models1[v]
        else:
            final[v] = models1[v]
    return final


@dataclass(frozen=True)
class GlobalOptimizationParameters:
    """Choice of global optimization strategy

    method: "one-round", "one-round-iterative", "two-round", or
        "two-round-iterative"
    relative_threshold: maximal ratio of the worst to the average tile
        error before links are removed
    absolute_threshold: maximal average tile error before links are
        removed
    max_error: error below which a simple one-round optimization may
        stop
    """
    method: str = "two-round-iterative"
    relative_threshold: float = 2.5
    absolute_threshold: float = 3.5
    max_error: float = 10.

    METHODS = ("one-round", "one-round-iterative", "two-round",
               "two-round-iterative")

    def __post_init__(self):
        if self.method not in GlobalOptimizationParameters.METHODS:
            raise ValueError(f"Unknown global optimization {self.method!r}")

    @staticmethod
    def preset(index: int = 4) -> "GlobalOptimizationParameters":
        """One of the standard strategies

        0: one round, no link removal
        1: one round, strict link removal (2.5× / 3.5 px)
        2: one round, relaxed link removal (5.0× / 7.0 px)
        3: two rounds, no link removal
        4: two rounds, strict link removal (the default)
        5: two rounds, relaxed link removal
        """
        rel = 2.5
        abs_ = 3.5
        presets = {
            0: ("one-round", np.inf, np.inf),
            1: ("one-round-iterative", rel, abs_),
            2: ("one-round-iterative", 2 * rel, 2 * abs_),
            3: ("two-round", np.inf, np.inf),
            4: ("two-round-iterative", rel, abs_),
            5: ("two-round-iterative", 2 * rel, 2 * abs_),
        }
        if index not in presets:
            raise ValueError(f"Unknown global optimization preset {index}")
        method, rel, abs_ = presets[index]
        return GlobalOptimizationParameters(method, rel, abs_)

    def run(self, model: Model, pmc: PointMatchCreator,
            fixedviews: Iterable[ViewId] = (),
            groups: Iterable[Group] = (),
            spimdata: Optional[SpimData] = None
            ) -> Optional[Dict[ViewId, Affine]]:
        """Run the chosen strategy

        Two-round strategies need `spimdata` for the weak links.

        Returns the transformation of each view, or None if no tiles
        are connected.
        """
        if self.method == "one-round":
            models = global_opt(model, pmc, ConvergenceStrategy(self.max_error),
                                fixedviews, groups)
        elif self.method == "one-round-iterative":
            models = global_opt_iterative(
                model, pmc, self.convergence(), MaxErrorLinkRemoval(),
                fixedviews, groups)
        else:
            if spimdata is None:
                raise ValueError("Two-round optimization needs a SpimData")
            return global_opt_two_round(
                model, pmc, self.convergence(), MaxErrorLinkRemoval(),
                MetadataWeakLinkCreator.factory(spimdata),
                ConvergenceStrategy(np.inf), fixedviews, groups)
        if models is None:
            return None
        return {v: m.toaffine() for v, m in models.items()}

    def convergence(self) -> IterativeConvergenceStrategy:
        return IterativeConvergenceStrategy(
            relative_threshold=self.relative_threshold,
            absolute_threshold=self.absolute_threshold)


def register_views(spimdata: SpimData,
                   views: Optional[List[ViewId]] = None,
                   matcher: Optional[PairwiseMatcher] = None,
                   model: Optional[Model] = None,
                   setup: str = "all-to-all",
                   setupparams: Optional[Dict] = None,
                   groups: Optional[Iterable[Iterable[ViewId]]] = None,
                   fixedviews: Optional[Iterable[ViewId]] = None,
                   globalopt: Optional[GlobalOptimizationParameters] = None,
                   labels: Optional[List[str]] = None,
                   grouping: Optional[InterestPointGrouping] = None,
                   match_across_labels: bool = False,
                   num_threads: Optional[int] = None,
                   name: str = "Registration") -> Dict[ViewId, Affine]:
    """Register views by their interest points

    Arguments:
        spimdata: the scene, with interest points detected
        views: views to register (default: all)
        matcher: pairwise matcher (default: geometric hashing with an
            affine model)
        model: model for global optimization (default: the matcher's)
        setup: name of the pairwise setup strategy
        setupparams: extra arguments for the setup, e.g., `range` or
            `reference`
        groups: views that move together
        fixedviews: views that stay put; by default the setup's default
            fixed views plus the first view of each subset
        globalopt: global optimization strategy (default: preset 4)
        labels: interest point labels to use (default: all)
        grouping: how to pool the points of grouped views
        match_across_labels: compare different labels with each other
        num_threads: threads for pairwise matching
        name: name of the transformation stored in the registrations

    Returns:
        the transformation pre-concatenated to each registered view

    Each subset of connected views is matched and optimized
    separately. Correspondences between views of a subset are
    replaced by the new inliers.
    """
    if views is None:
        views = spimdata.views()
    if matcher is None:
        matcher = creatematcher("geometric-hashing")
    if model is None:
        if isinstance(matcher, CenterOfMassPairwise):
            model = TranslationModel(3)
        else:
            model = getattr(matcher, "model", None) or createmodel("affine", 3)
    if globalopt is None:
        globalopt = GlobalOptimizationParameters.preset(4)
    groups = [Group(g) for g in groups] if groups is not None else []

    pws = createsetup(setup, views, groups, **(setupparams or {}))
    subsets = pws.run(BoundingBoxOverlap(spimdata),
                      None if fixedviews is None else list(fixedviews))

    transforms: Dict[ViewId, Affine] = {}
    for subset in subsets:
        if not subset.pairs:
            logger.info("Skipping %s: no pairs to compare", subset)
            continue
        if not subset.fixedviews:
            first = min(subset.views)
            removed = subset.fixviews([first])
            logger.info("Fixing %s, removed %d pairs", first, len(removed))
        points = {}
        for v in sorted(subset.views):
            vlabels = [l for l in spimdata.labels(v)
                       if labels is None or l in labels]
            points[v] = {l: spimdata.worldpoints(v, l) for l in vlabels}
            for l in vlabels:
                spimdata.interestpoints[v][l].clearcorrespondences(
                    subset.views)

        if subset.groups:
            allgroups = groupsforallviews(subset.views, subset.groups)
            grouped = groupinterestpoints(allgroups, points, grouping)
            results = compute_pairs(subset.groupedpairs(), grouped, matcher,
                                    match_across_labels, num_threads)
            results = splitgroupresults(results)
        else:
            results = compute_pairs(subset.pairs, points, matcher,
                                    match_across_labels, num_threads)
        count = store_correspondences(results, spimdata)
        logger.info("Stored %d correspondences", count)

        pmc = InterestPointMatchCreator(results)
        models = globalopt.run(model, pmc, subset.fixedviews,
                               subset.groups, spimdata)
        if models is None:
            logger.warning("Global optimization failed for %s", subset)
            continue
        for v, afm in models.items():
            if v not in subset.views:
                continue
            spimdata.registrations[v].preconcatenate(afm, name)
            transforms[v] = afm
    return transforms
