# volume.py - part of mvspim

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
from typing import Optional
import numpy.typing
ArrayLike = numpy.typing.ArrayLike


class Volume(np.ndarray):
    """A representation of an image volume as an N-D array

    Volumes can be constructed in several ways:

    * from numpy arrays using

          vol = Volume(array)

    * loaded from a TIFF stack (or any single image cv2 can read) using

          vol = Volume.load(filename)

      or simply `Volume(filename)`.

    Our native data format is np.float32. For convenience, np.uint8,
    np.uint16 and np.uint32 are also accepted. The intensity of such
    volumes is scaled by a factor of 255, 65535, or 2³²−1, respectively.

    Volumes are indexed [z, y, x]. Coordinates passed to methods are
    in (x, y, z) order.

    A Volume is just a numpy array with the following additional methods:

        downsampled - Block-mean downsampled copy
        normalized - Min/max stretched copy
        roi - Extract a box
        save - Save to a file
    """

    @staticmethod
    def load(path: str) -> "Volume":
        return Volume(funcs.loadVolume(path))

    def __new__(cls, data: ArrayLike):
        if type(data)==str:
            data = funcs.loadVolume(data)
        obj = np.asarray(data).view(cls)
        if obj.dtype == np.uint8:
            scl = 255
        elif obj.dtype == np.uint16:
            scl = 65535
        elif obj.dtype == np.uint32:
            scl = 2**32 - 1
        else:
            scl = 1
        if obj.dtype != np.float32:
            obj = obj.astype(np.float32)
        if scl != 1:
            obj /= scl
        return obj

    def __array_finalize__(self, obj):
        return

    def __repr__(self):
        if len(self.shape) >= 2:
            dims = "×".join(str(n) for n in self.shape[::-1])
            return (f"Volume {dims} (x×y×z)  "
                    f"min {self.min():.3f}  max {self.max():.3f}  "
                    f"mean {self.mean():.3f}")
        elif len(self.shape)==0:
            return self.view(np.ndarray).flatten()[0].__repr__()
        else:
            return self.view(np.ndarray).__repr__()

    def __str__(self):
        return self.__repr__()

    def downsampled(self, factors: ArrayLike = 2) -> "Volume":
        '''Block-mean downsampled copy

        vol.downsampled(fac) returns a version of the volume scaled down
        by the given integer factor. FAC may be a scalar or given per
        axis in (x, y, z) order.
        Before scaling, the volume is trimmed so that each dimension is
        a multiple of the factor. Voxels in the output are the average
        of all underlying voxels in the input.'''
        return Volume(funcs.blockMean(self.view(np.ndarray), factors))

    def normalized(self, vmin: Optional[float] = None,
                   vmax: Optional[float] = None) -> "Volume":
        """Min/max stretched copy

        Maps `vmin` to 0 and `vmax` to 1. These default to the minimum
        and maximum of the volume. A constant volume becomes all zero.
        """
        if vmin is None:
            vmin = float(self.min())
        if vmax is None:
            vmax = float(self.max())
        out = self - np.float32(vmin)
        if vmax > vmin:
            out *= np.float32(1 / (vmax - vmin))
        else:
            out[:] = 0
        return out

    def roi(self, bmin: ArrayLike, bmax: ArrayLike) -> "Volume":
        '''Extract a box from a volume

        win = vol.roi(bmin, bmax) extracts the voxels between the
        (x, y, z) corners BMIN and BMAX, inclusive. The box must fit
        inside the volume.'''
        return Volume(funcs.roi(self, bmin, bmax))

    def save(self, path: str, bits: int = 16) -> None:
        '''Save a volume to a file

        The volume is clipped to [0, 1] and saved with 8 or 16 bits per
        voxel. 3D volumes become multi-page TIFF stacks.'''
        img = np.clip(self.view(np.ndarray), 0, 1)
        if bits == 8:
            img = (img * 255.99).astype(np.uint8)
        elif bits == 16:
            img = (img * 65535.99).astype(np.uint16)
        else:
            raise ValueError("Bits must be 8 or 16")
        funcs.saveVolume(img, path)
