# pipeline.py - part of mvspim

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

"""The reconstruction pipeline: load, detect, register, fuse

Each step works on a SpimData built from a PipelineConfig, so that the
steps can also be run one at a time.
"""

import logging
import os
import numpy as np
from typing import Optional, Dict, Callable

from .affine import Affine
from .config import PipelineConfig, save_registrations, load_registrations
from .deconvolution import deconvolve
from .detection import detect_interest_points
from .errors import ConfigurationError
from .fusion import fuse
from .globalopt import register_views
from .models import createmodel
from .pairwise import creatematcher
from .spimdata import SpimData, ViewSetup, ViewId
from .thinout import thin_out
from .volume import Volume

logger = logging.getLogger(__name__)


def build_spimdata(config: PipelineConfig,
                   loader: Optional[Callable[[str], Volume]] = None
                   ) -> SpimData:
    """Scene description for the views of a configuration

    Each image is read once to learn its size. Later reads go through
    the SpimData's loader, which reads the file again. Each view's
    registration starts with its calibration (the voxel size) followed
    by its metadata transform, if any.
    """
    if loader is None:
        loader = Volume.load
    files: Dict[ViewId, str] = {}
    setups: Dict[int, ViewSetup] = {}
    for vc in config.views:
        vol = loader(vc.file)
        size = tuple(vol.shape[::-1])
        voxel_size = tuple(vc.voxel_size[:len(size)])
        setup = ViewSetup(vc.setup, size, voxel_size, dict(vc.attributes))
        if vc.setup in setups:
            known = setups[vc.setup]
            if known.size != setup.size \
               or known.voxel_size != setup.voxel_size:
                raise ConfigurationError(
                    f"Setup {vc.setup} has inconsistent sizes")
        else:
            setups[vc.setup] = setup
        files[vc.view] = vc.file
        logger.debug("%s: %s, size %s", vc.view, vc.file, size)

    timepoints = sorted({v.timepoint for v in files})
    missing = [ViewId(t, s) for t in timepoints for s in setups
               if ViewId(t, s) not in files]
    spimdata = SpimData(list(setups.values()), timepoints,
                        lambda view: loader(files[view]), missing)
    for vc in config.views:
        reg = spimdata.registrations[vc.view]
        ndim = reg.ndim
        reg.preconcatenate(Affine.scaler(vc.voxel_size[:ndim]), "calibration")
        if vc.transform is not None:
            reg.preconcatenate(Affine(vc.transform), "metadata")
    logger.info("Loaded %d views in %d timepoints", len(files),
                len(timepoints))
    return spimdata


def detect(config: PipelineConfig, spimdata: SpimData) -> Dict[ViewId, int]:
    """Detect (and optionally thin out) interest points in all views"""
    views = spimdata.views()
    counts = detect_interest_points(spimdata, views, config.label,
                                    config.detection)
    if config.thinout is not None:
        counts = thin_out(spimdata, views, config.thinout)
    return counts


def register(config: PipelineConfig,
             spimdata: SpimData) -> Dict[ViewId, Affine]:
    """Register all views by their interest points"""
    rc = config.registration
    ndim = spimdata.registrations[spimdata.views()[0]].ndim
    model = createmodel(rc.model, ndim, rc.regularize, rc.lam)
    try:
        if rc.matcher == "center-of-mass":
            matcher = creatematcher(rc.matcher, **rc.matcher_params)
        else:
            matcher = creatematcher(rc.matcher, model.copy(), rc.ransac,
                                    **rc.matcher_params)
    except (TypeError, ValueError) as e:
        raise ConfigurationError(f"In 'registration': {e}") from e
    return register_views(spimdata, spimdata.views(), matcher, model,
                          setup=rc.setup, setupparams=rc.setup_params,
                          groups=rc.groups or None,
                          fixedviews=rc.fixed_views,
                          globalopt=rc.global_optimization,
                          labels=[config.registrationlabel],
                          num_threads=rc.num_threads)


def reconstruct(config: PipelineConfig, spimdata: SpimData) -> Volume:
    """Fuse, or deconvolve if configured, all views"""
    views = spimdata.views()
    if config.deconvolution is not None:
        return deconvolve(spimdata, views, config.registrationlabel,
                          config.psf_size, fusion=config.fusion,
                          params=config.deconvolution)
    return fuse(spimdata, views, params=config.fusion)


def run_pipeline(config: PipelineConfig, register_only: bool = False,
                 loader: Optional[Callable[[str], Volume]] = None
                 ) -> SpimData:
    """Run the complete pipeline

    Arguments:
        config: the pipeline configuration
        register_only: stop after registration
        loader: optional function to read an image file

    Returns:
        the SpimData, with interest points and registrations

    If `config.registrations` names an existing file and
    `register_only` is false, the registrations are read from that
    file and registration is skipped (detection too, unless the beads
    are needed for deconvolution). Otherwise the registrations are
    computed and, if `config.registrations` is set, written to it.
    Unless `register_only` is set, the result is saved to
    `config.output`.
    """
    spimdata = build_spimdata(config, loader)
    if config.registrations is not None and not register_only \
       and os.path.exists(config.registrations):
        load_registrations(spimdata, config.registrations)
        if config.deconvolution is not None:
            detect(config, spimdata)
    else:
        counts = detect(config, spimdata)
        logger.info("Detected %d interest points in total",
                    int(np.sum(list(counts.values()))))
        register(config, spimdata)
        if config.registrations is not None:
            save_registrations(spimdata, config.registrations)
    if register_only:
        return spimdata
    vol = reconstruct(config, spimdata)
    if config.output is None:
        logger.warning("No output file configured; result not saved")
    else:
        vol.save(config.output)
        logger.info("Saved %s", config.output)
    return spimdata
