# affine.py - part of mvspim

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


from . import funcs
import numpy as np
from .volume import Volume
from typing import Optional, Tuple
import numpy.typing
ArrayLike = numpy.typing.ArrayLike
import scipy.spatial.transform


class Affine(np.ndarray):
    """Affine transformation in n dimensions

    An Affine is an *n*×(*n*+1) matrix [*A* | *b*] representing the map
    *x* → *A* *x* + *b*. Points are in (x, y, z) order.

    The constructor builds a 3D unity transformation if given no
    arguments, or uses the optional array for source data. Use
    `Affine.identity(n)` for unity in other dimensions.
    """
    def __new__(cls, arr: Optional[ArrayLike] = None):
        if arr is None:
            obj = funcs.identityAffine(3).view(cls)
        else:
            obj = np.array(arr, float).view(cls)
            if obj.ndim != 2 or obj.shape[1] != obj.shape[0] + 1:
                raise ValueError("Affine must be an n×(n+1) matrix")
        return obj

    def __array_finalize__(self, obj):
        return

    def __repr__(self):
        if len(self.shape)==2:
            lst = []
            for row in self:
                lin = " ".join(f"{x:8.4f}" for x in row[:-1])
                lst.append(f"[{lin} | {row[-1]:8.4f}]")
            return "\n".join(lst)
        elif len(self.shape)==0:
            return self.view(type=np.ndarray).flatten()[0].__repr__()
        else:
            return self.view(type=np.ndarray).__repr__()

    def __str__(self):
        return self.__repr__()

    @property
    def ndim_space(self) -> int:
        """Dimensionality of the space the transformation acts on"""
        return self.shape[0]

    @staticmethod
    def identity(ndim: int = 3) -> "Affine":
        return Affine(funcs.identityAffine(ndim))

    def linear(self) -> np.ndarray:
        """The linear part *A* as a plain array"""
        return self[:, :-1].view(type=np.ndarray)

    def apply(self, vol: Volume,
              bmin: Optional[ArrayLike] = None,
              bmax: Optional[ArrayLike] = None,
              step: ArrayLike = 1) -> Volume:
        """Apply an affine transformation to a volume

        Arguments:
            vol: a volume to transform
            bmin, bmax: optional box of model space, (x, y, z) corners
            step: sampling distance in model space

        Returns:
            the transformed volume

        `res = afm.apply(vol)` returns a volume the same size as `vol`
        looking up voxels in the original using the transformation.

        `res = afm.apply(vol, bmin, bmax)` returns the given box of
        model space, inclusive of both corners.

        Note that `afm` must map from voxel space to model space, not
        the other way around.
        """
        if bmin is None:
            bmin = np.zeros(vol.ndim)
        if bmax is None:
            bmax = np.array(vol.shape[::-1], float) - 1
        return Volume(funcs.affineVolume(self.inverse(), vol, bmin, bmax, step))

    def __imatmul__(self, afm: "Affine") -> "Affine":
        """Compose two affine transformations in place

        `afm1 @= afm2` incorporates `afm2` into `afm1`, such that
        `afm1` becomes *afm*₁ ∘ *afm*₂, which applies *afm*₁ after *afm*₂.
        """
        self[:] = funcs.composeAffine(self, afm)[:]
        return self

    def __matmul__(self, afm: "Affine") -> "Affine":
        """Compose two affine transformations

        `(afm1 @ afm2)` returns *afm*₁ ∘ *afm*₂, which applies *afm*₁
        after *afm*₂.
        """
        return Affine(funcs.composeAffine(self, afm))

    def __mul__(self, xyz: ArrayLike) -> np.ndarray:
        """Apply affine transformation to a point or several points

        `afm * pt`, where `pt` is an *n*-vector, returns the point after
        applying the transformation.

        `afm * pts`, where `pts` is an *N*×*n* array, applies the
        transformation to multiple points at once.
        """
        return funcs.applyAffine(self, xyz)

    def shift(self, dxyz: ArrayLike) -> "Affine":
        '''Add a translation to an affine transformation in place

        Arguments:
            dxyz: shift to be applied

        Returns:
            self

        `afm.shift(dx)` composes the transformation *x* → *x* + *dx* after
        the affine transformation *afm*.'''
        self[:, -1] += np.asarray(dxyz, float)
        return self

    def shifted(self, dxyz: ArrayLike) -> "Affine":
        """Add a translation to an affine transformation

        Returns the new affine transformation and leaves the original
        unchanged.
        """
        out = self.copy()
        return out.shift(dxyz)

    def invert(self) -> "Affine":
        """Invert affine transformation in place"""
        self[:] = funcs.invertAffine(self)[:]
        return self

    def inverse(self) -> "Affine":
        """Inverse of an affine transformation

        afm.INVERSE() returns an affine transformation that is the inverse of
        the given transformation.
        """
        out = Affine(self.copy())
        out.invert()
        return out

    def magnification(self) -> float:
        """Approximate isotropic scaling factor

        We calculate this as the *n*-th root of the absolute determinant
        of the linear part of the transformation.

        The value is exact if the transformation is pure scaling combined
        with rotation and translation.
        """
        n = self.shape[0]
        return float(np.abs(np.linalg.det(self.linear())) ** (1/n))

    def scaling(self) -> np.ndarray:
        """Per-axis scale factors

        These are the lengths of the columns of the linear part, i.e.,
        the lengths of the images of the unit vectors.
        """
        return np.linalg.norm(self.linear(), axis=0)

    def rotationaxis(self) -> Tuple[Optional[np.ndarray], float]:
        """Rotation axis and angle

        Returns:
            (axis, angle) with the axis a unit 3-vector and the angle in
            radians. In 2D, the axis is None.

        Scaling is divided out first. For transformations that are not
        rigid up to scale, the nearest rotation is used.
        """
        A = self.linear() / self.magnification()
        if self.shape[0] == 2:
            return None, float(np.arctan2(A[1,0] - A[0,1], A[0,0] + A[1,1]))
        if self.shape[0] != 3:
            raise ValueError("Rotation axis is only defined in 2D and 3D")
        rotvec = scipy.spatial.transform.Rotation.from_matrix(A).as_rotvec()
        phi = float(np.linalg.norm(rotvec))
        if phi == 0:
            return np.array([0., 0., 1.]), 0.
        return rotvec / phi, phi

    def translation(self) -> np.ndarray:
        """Translational part of the transformation

        The value is always exact.
        """
        return self[:, -1].view(type=np.ndarray)

    def centerofrotation(self) -> np.ndarray:
        """Approximate center of rotation and scaling

        Any affine transformation *T*: *x* → *A* *x* + *b*
        can be written as *T*: *x* → *A* (*x* − *c*) + *c*.
        This function calculates that *c*.

        Note that the calculation is numerically unstable near *A* = 𝟙.
        """
        n = self.shape[0]
        return np.linalg.solve(self.linear() - np.eye(n), -self.translation())

    def estimatebounds(self, bmin: ArrayLike,
                       bmax: ArrayLike) -> Tuple[np.ndarray, np.ndarray]:
        """Bounding box of a transformed box

        Arguments:
            bmin, bmax: corners of an axis-aligned box

        Returns:
            (min, max) corners of the axis-aligned box containing the
            transformed box
        """
        return funcs.estimateBounds(self, bmin, bmax)

    @staticmethod
    def translator(dxyz: ArrayLike) -> "Affine":
        """An affine transformation that represents a translation"""
        dxyz = np.asarray(dxyz, float)
        afm = Affine.identity(len(dxyz))
        afm[:, -1] = dxyz
        return afm

    @staticmethod
    def rotator(phi: float, axis: Optional[ArrayLike] = None,
                center: Optional[ArrayLike] = None) -> "Affine":
        """An affine transformation that represents a rotation

        Arguments:
            phi: the rotation in radians
            axis: the rotation axis as a 3-vector, or None for a 2D
                rotation
            center: the point around which to rotate

        Returns:
            the constructed affine transformation

        If `center` is not given, the rotation is around the origin.
        """
        if axis is None:
            c = np.cos(phi)
            s = np.sin(phi)
            rot = Affine([[c, -s, 0], [s, c, 0]])
        else:
            axis = np.asarray(axis, float)
            rotvec = phi * axis / np.linalg.norm(axis)
            R = scipy.spatial.transform.Rotation.from_rotvec(rotvec).as_matrix()
            rot = Affine(np.hstack((R, np.zeros((3, 1)))))
        if center is None:
            return rot
        center = np.asarray(center, float)
        return (Affine.translator(center)
                @ rot
                @ Affine.translator(-center))

    @staticmethod
    def scaler(s: ArrayLike, ndim: int = 3,
               center: Optional[ArrayLike] = None) -> "Affine":
        """An affine transformation that represents a linear scaling

        Arguments:
            s: the scale factor, scalar or per axis
            ndim: dimensionality, only used if `s` is scalar
            center: the point around which to scale

        Returns:
            the constructed affine transformation

        If `center` is not given, the scaling is around the origin.
        """
        s = np.asarray(s, float)
        if s.ndim > 0:
            ndim = len(s)
        s = np.broadcast_to(s, (ndim,))
        if center is None:
            center = np.zeros(ndim)
        center = np.asarray(center, float)
        return Affine(np.hstack((np.diag(s), (center*(1-s)).reshape(-1, 1))))
