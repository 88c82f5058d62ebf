# __init__.py - part of mvspim

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

"""mvspim - Multi-view reconstruction of light-sheet microscopy data

Registration of many 3D views of a specimen by matching interest
points (typically fluorescent beads), global optimization of the
per-view transformations, and fusion or multi-view deconvolution of
the registered views.

Acknowledgments
---------------

The algorithms follow the multi-view reconstruction plugins for Fiji
by Stephan Preibisch and colleagues, described in:

    Preibisch S, Saalfeld S, Schindelin J, Tomancak P. 2010. Software
    for bead-based registration of selective plane illumination
    microscopy data. Nature Methods 7, 418–419.
    https://doi.org/10.1038/nmeth0610-418.

    Preibisch S, Amat F, Stamataki E, Sarov M, Singer RH, Myers E,
    Tomancak P. 2014. Efficient Bayesian-based multiview
    deconvolution. Nature Methods 11, 645–648.
    https://doi.org/10.1038/nmeth.2929.

The global optimization of tile configurations derives from the
“mpicbg” library by Stephan Saalfeld.
"""

from .affine import Affine
from .volume import Volume
from .points import InterestPoint, PointMatch
from .spimdata import SpimData, ViewId, ViewSetup, InterestPoints
from .models import (TranslationModel, RigidModel, SimilarityModel,
                     AffineModel, InterpolatedModel, RansacParameters)
from .detection import DetectionParameters, detect_interest_points
from .thinout import ThinOutParameters, thin_out
from .pairwise import creatematcher, compute_pairs
from .globalopt import (GlobalOptimizationParameters, global_opt,
                        global_opt_iterative, global_opt_two_round,
                        register_views)
from .fusion import FusionParameters, fuse, maximal_bounding_box
from .deconvolution import (DeconvolutionParameters, MultiViewDeconvolution,
                            extract_psf)
from .config import PipelineConfig, load_config
from .pipeline import run_pipeline
