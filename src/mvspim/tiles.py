# tiles.py - part of mvspim

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

"""Tiles and their joint optimization

A Tile is the unit of global optimization: one view, or one group of
views that move together. Tiles are connected by point matches. The
first point of each match lives in the tile's local space, the second
in the local space of the connected tile. Optimization moves the
tiles' models so that both points land on the same location in world
space.
"""

import logging
from collections import deque
import numpy as np
from typing import Optional, Tuple, List, Dict
import numpy.typing
ArrayLike = numpy.typing.ArrayLike

from .affine import Affine
from .models import Model, TranslationModel
from .points import PointMatch, matcharrays

logger = logging.getLogger(__name__)


class Tile:
    """A rigid body in the optimization, carrying a model

    Matches are kept per connected tile as (p, q, w) arrays, where `p`
    are local points of this tile, `q` the matching local points of
    the other tile, and `w` the weights.
    """
    def __init__(self, model: Model):
        self.model = model
        self.links: Dict["Tile", Tuple[np.ndarray, np.ndarray,
                                        np.ndarray]] = {}
        self.dist = 0.

    def __repr__(self):
        return (f"Tile({self.model!r}, {len(self.links)} connections, "
                f"{self.nummatches()} matches)")

    def _empty(self):
        n = self.model.ndim
        return np.zeros((0, n)), np.zeros((0, n)), np.zeros(0)

    def connect(self, other: "Tile") -> None:
        """Connect two tiles in both directions"""
        self.links.setdefault(other, self._empty())
        other.links.setdefault(self, other._empty())

    def disconnect(self, other: "Tile") -> None:
        """Remove the connection and all matches, in both directions"""
        self.links.pop(other, None)
        other.links.pop(self, None)

    def addmatches(self, other: "Tile", matches: List[PointMatch]) -> None:
        """Add matches from this tile to `other`

        This does not add the reverse matches to `other`. Use `connect`
        to make the connection mutual.
        """
        if len(matches) == 0:
            return
        p, q, w = matcharrays(matches)
        p0, q0, w0 = self.links.get(other, self._empty())
        self.links[other] = (np.concatenate((p0, p)),
                             np.concatenate((q0, q)),
                             np.concatenate((w0, w)))

    def connectedtiles(self) -> List["Tile"]:
        return list(self.links)

    def nummatches(self) -> int:
        return sum(len(w) for p, q, w in self.links.values())

    def apply(self, pts: ArrayLike) -> np.ndarray:
        """Map local points to world space"""
        return self.model.apply(pts)

    def targets(self) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
        """All local points with the world positions they should reach

        Returns (p, t, w) where `t` are the second points of the matches
        mapped through the connected tiles' current models.
        """
        pp = []
        tt = []
        ww = []
        for other, (p, q, w) in self.links.items():
            pp.append(p)
            tt.append(other.model.apply(q) if len(q) else q)
            ww.append(w)
        if not pp:
            return self._empty()
        return np.concatenate(pp), np.concatenate(tt), np.concatenate(ww)

    def fitmodel(self, damp: float = 1.) -> None:
        """Fit the model to the current world positions of the matches

        With `damp` < 1, the model moves only part of the way from its
        old to its newly fitted transformation.

        Raises NotEnoughDataPointsError or IllDefinedDataPointsError if
        the matches do not determine the model.
        """
        p, t, w = self.targets()
        old = self.model.afm.copy()
        self.model.fit(p, t, w)
        if damp != 1:
            self.model.afm = Affine(old + damp * (self.model.afm - old))

    def matchdistances(self, other: "Tile") -> np.ndarray:
        """World-space distances of the matches to `other`"""
        p, q, w = self.links[other]
        if len(p) == 0:
            return np.zeros(0)
        return np.linalg.norm(self.model.apply(p) - other.model.apply(q),
                              axis=-1)

    def distance(self) -> float:
        """Weighted mean world-space distance of all matches"""
        p, t, w = self.targets()
        if len(p) == 0 or np.sum(w) <= 0:
            return 0.
        d = np.linalg.norm(self.model.apply(p) - t, axis=-1)
        return float(np.sum(w * d) / np.sum(w))

    def updatecost(self) -> None:
        self.dist = self.distance()
        self.model.cost = self.dist

    def worstmatch(self) -> Tuple[float, Optional["Tile"]]:
        """The largest match distance and the tile it connects to"""
        worst = -np.inf
        worsttile = None
        for other in self.links:
            d = self.matchdistances(other)
            if len(d) and d.max() > worst:
                worst = float(d.max())
                worsttile = other
        return worst, worsttile


class ErrorStatistic:
    """Running record of the optimization error

    Keeps the last `capacity` values to estimate how fast the error
    still changes.
    """
    def __init__(self, capacity: int):
        self.values = deque(maxlen=capacity)
        self.min = np.inf
        self.max = -np.inf

    def add(self, value: float) -> None:
        self.values.append(value)
        self.min = min(self.min, value)
        self.max = max(self.max, value)

    def mean(self) -> float:
        return float(np.mean(self.values)) if self.values else np.nan

    def wideslope(self, width: int) -> float:
        """Average change per iteration over the last `width` iterations

        Returns infinity if fewer than `width` + 1 values are known.
        """
        if width < 1 or len(self.values) <= width:
            return np.inf
        return (self.values[-1] - self.values[-1 - width]) / width


def identifyconnectedgraphs(tiles: List[Tile]) -> List[List[Tile]]:
    """Split tiles into connected components

    Components are returned in the order of their first tile in
    `tiles`; within a component, tiles are in breadth-first order.
    """
    seen = set()
    graphs = []
    for tile in tiles:
        if tile in seen:
            continue
        seen.add(tile)
        graph = [tile]
        queue = deque([tile])
        while queue:
            for other in queue.popleft().connectedtiles():
                if other not in seen:
                    seen.add(other)
                    graph.append(other)
                    queue.append(other)
        graphs.append(graph)
    return graphs


class TileConfiguration:
    """A set of tiles, some of them fixed, to be optimized jointly"""
    def __init__(self):
        self.tiles: List[Tile] = []
        self.fixedtiles: List[Tile] = []
        self.error = np.inf
        self.minerror = np.inf
        self.maxerror = 0.

    def addtile(self, tile: Tile) -> None:
        if tile not in self.tiles:
            self.tiles.append(tile)

    def addtiles(self, tiles: List[Tile]) -> None:
        for tile in tiles:
            self.addtile(tile)

    def fixtile(self, tile: Tile) -> None:
        self.addtile(tile)
        if tile not in self.fixedtiles:
            self.fixedtiles.append(tile)

    def isfixed(self, tile: Tile) -> bool:
        return tile in self.fixedtiles

    def computeerror(self) -> None:
        """Update the mean, minimum and maximum tile distances"""
        if not self.tiles:
            self.error = self.minerror = self.maxerror = 0.
            return
        dists = []
        for tile in self.tiles:
            tile.updatecost()
            dists.append(tile.dist)
        self.error = float(np.mean(dists))
        self.minerror = float(np.min(dists))
        self.maxerror = float(np.max(dists))

    def prealign(self) -> List[Tile]:
        """Breadth-first initial alignment

        Starting from the fixed tiles (or the first tile, if none is
        fixed), each reachable tile is fitted to the matches it has with
        tiles aligned before it.

        Returns the tiles that could not be reached.
        """
        if not self.tiles:
            return []
        aligned = list(self.fixedtiles) if self.fixedtiles else [self.tiles[0]]
        done = set(aligned)
        queue = deque(aligned)
        while queue:
            tile = queue.popleft()
            for other in tile.connectedtiles():
                if other in done or other not in self.tiles:
                    continue
                p = []
                t = []
                w = []
                for nb, (pp, qq, ww) in other.links.items():
                    if nb in done and len(pp):
                        p.append(pp)
                        t.append(nb.model.apply(qq))
                        w.append(ww)
                if p:
                    other.model.fit(np.concatenate(p), np.concatenate(t),
                                    np.concatenate(w))
                done.add(other)
                queue.append(other)
        unaligned = [t for t in self.tiles if t not in done]
        self.computeerror()
        return unaligned

    def optimize(self, max_allowed_error: float, max_iterations: int,
                 max_plateau_width: int, damp: float = 1.) -> int:
        """Iteratively fit all non-fixed tiles to their neighbours

        Arguments:
            max_allowed_error: the mean error below which to stop
            max_iterations: hard limit on the number of sweeps
            max_plateau_width: number of sweeps over which the error
                must have stopped changing
            damp: damping factor for each tile's update

        Returns:
            the number of sweeps performed

        The optimization stops when the mean error is below
        `max_allowed_error` and has changed by no more than 0.0001 per
        sweep over the last `max_plateau_width` sweeps (and over the
        last halves of that window), or when `max_iterations` is reached.
        """
        observer = ErrorStatistic(max_plateau_width + 1)
        it = 0
        proceed = it < max_iterations
        while proceed:
            for tile in self.tiles:
                if self.isfixed(tile) or not tile.links:
                    continue
                tile.fitmodel(damp)
            self.computeerror()
            observer.add(self.error)
            if it > max_plateau_width:
                proceed = self.error > max_allowed_error
                d = max_plateau_width
                while not proceed and d >= 1:
                    proceed = abs(observer.wideslope(d)) > 0.0001
                    d //= 2
            it += 1
            proceed = proceed and it < max_iterations
        logger.debug("Optimization stopped after %d iterations, error %g",
                     it, self.error)
        return it

    def solvetranslations(self) -> None:
        """Closed-form placement of tiles that only translate

        A match connecting local points p and q of tiles t and u, with
        weight w, contributes E = w ((X_t + p) - (X_u + q))² to the
        total error. Fixed tiles keep their models. In each connected
        component that has no fixed tile, Lagrange multipliers force
        the mean of the translations to zero.

        Raises ValueError if any non-fixed tile has another model than
        a translation.
        """
        free = [t for t in self.tiles if not self.isfixed(t)]
        if not free:
            self.computeerror()
            return
        for tile in free:
            if not isinstance(tile.model, TranslationModel):
                raise ValueError("Closed-form placement needs translation "
                                 "models")
        index = {tile: k for k, tile in enumerate(free)}
        floating = [g for g in identifyconnectedgraphs(free)
                    if not any(nb in self.fixedtiles
                               for t in g for nb in t.links)]
        F = len(free)
        L = len(floating)
        ndim = free[0].model.ndim
        X = np.zeros((F, ndim))
        for dim in range(ndim):
            A = np.zeros((F + L, F + L))
            b = np.zeros(F + L)
            for tile in free:
                t = index[tile]
                for other, (p, q, w) in tile.links.items():
                    if len(w) == 0:
                        continue
                    A[t, t] += np.sum(w)
                    if other in index:
                        A[t, index[other]] -= np.sum(w)
                        b[t] += np.sum(w * (q[:, dim] - p[:, dim]))
                    else:
                        qw = other.model.apply(q)
                        b[t] += np.sum(w * (qw[:, dim] - p[:, dim]))
            for c, graph in enumerate(floating):
                for tile in graph:
                    if tile not in index:
                        continue
                    A[index[tile], F + c] = 1
                    A[F + c, index[tile]] = 1
            X[:, dim] = np.linalg.solve(A, b)[:F]
        for tile in free:
            tile.model.afm = Affine.translator(X[index[tile]])
        self.computeerror()
