# config.py - part of mvspim

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

"""Pipeline configuration from YAML files

A configuration file looks like this:

    views:
      - file: angle0.tif
        setup: 0
        voxel_size: [0.73, 0.73, 2.0]
        attributes: {angle: 0}
      - file: angle90.tif
        setup: 1
        voxel_size: [0.73, 0.73, 2.0]
        transform: [[0, 0, 1, 0], [0, 1, 0, 0], [-1, 0, 0, 400]]
    label: beads
    detection: {sigma: 1.8, threshold: 0.008}
    registration:
      matcher: geometric-hashing
      model: affine
      regularize: rigid
      lambda: 0.1
      ransac: {max_epsilon: 5}
      global_optimization: {preset: 4}
    fusion: {method: avg-blend, downsampling: 2}
    output: fused.tif

Relative file names are relative to the directory of the configuration
file. Every section is optional except `views`. Unknown keys raise
ConfigurationError.
"""

import dataclasses
import inspect
import logging
import os
import yaml
from dataclasses import dataclass, field
from typing import Optional, Tuple, List, Dict, Any

from .constellation import SETUPS
from .deconvolution import DeconvolutionParameters
from .detection import DetectionParameters
from .errors import ConfigurationError
from .fusion import FusionParameters
from .globalopt import GlobalOptimizationParameters
from .models import MODELS, RansacParameters
from .pairwise import MATCHERS
from .spimdata import SpimData, ViewId, ViewRegistration
from .thinout import ThinOutParameters

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ViewConfig:
    """One view: an image file and its metadata

    transform: optional n×(n+1) matrix that maps calibrated voxel
        coordinates to world space, e.g., from the stage position and
        rotation angle
    """
    file: str
    setup: int
    timepoint: int = 0
    voxel_size: Tuple[float, ...] = (1., 1., 1.)
    transform: Optional[Tuple[Tuple[float, ...], ...]] = None
    attributes: Dict[str, Any] = field(default_factory=dict)

    @property
    def view(self) -> ViewId:
        return ViewId(self.timepoint, self.setup)


def _checkparams(params: Any, cls: type, what: str,
                 reserved: Tuple[str, ...]) -> None:
    # Extra constructor arguments must be accepted by `cls`
    if not isinstance(params, dict):
        raise ValueError(f"{what} parameters must be a mapping")
    accepted = set(inspect.signature(cls.__init__).parameters) \
        - {"self"} - set(reserved)
    unknown = [key for key in params if key not in accepted]
    if unknown:
        raise ValueError(f"Unknown {what} parameter(s) "
                         f"{', '.join(map(repr, unknown))}; "
                         f"expected some of {sorted(accepted)}")


@dataclass(frozen=True)
class RegistrationConfig:
    """How to register the views

    matcher: name of the pairwise matcher, see `pairwise.MATCHERS`
    matcher_params: extra arguments for the matcher
    model: name of the transformation model
    regularize: optional name of a model to regularize towards
    lam: regularization weight (key `lambda` in YAML)
    ransac: RANSAC parameters
    setup: name of the pairwise setup, see `constellation.SETUPS`
    setup_params: extra arguments for the setup
    groups: lists of (timepoint, setup) pairs that move together
    fixed_views: (timepoint, setup) pairs that stay put
    global_optimization: the global optimization strategy
    num_threads: threads for pairwise matching
    """
    matcher: str = "geometric-hashing"
    matcher_params: Dict[str, Any] = field(default_factory=dict)
    model: str = "affine"
    regularize: Optional[str] = None
    lam: float = 0.1
    ransac: RansacParameters = RansacParameters()
    setup: str = "all-to-all"
    setup_params: Dict[str, Any] = field(default_factory=dict)
    groups: Tuple[Tuple[ViewId, ...], ...] = ()
    fixed_views: Optional[Tuple[ViewId, ...]] = None
    global_optimization: GlobalOptimizationParameters \
        = GlobalOptimizationParameters()
    num_threads: Optional[int] = None

    def __post_init__(self):
        if self.matcher not in MATCHERS:
            raise ValueError(f"Unknown matcher {self.matcher!r}")
        if self.model not in MODELS:
            raise ValueError(f"Unknown model {self.model!r}")
        if self.regularize is not None and self.regularize not in MODELS:
            raise ValueError(f"Unknown model {self.regularize!r}")
        if self.setup not in SETUPS:
            raise ValueError(f"Unknown pairwise setup {self.setup!r}")
        _checkparams(self.matcher_params, MATCHERS[self.matcher], "matcher",
                     ("model", "ransac"))
        _checkparams(self.setup_params, SETUPS[self.setup], "setup",
                     ("views", "groups"))


@dataclass(frozen=True)
class PipelineConfig:
    """Everything needed to run the pipeline

    views: the input views
    label: interest point label used for detection and registration
    detection: DoG detection parameters
    thinout: optional thinning; registration then uses its new label
    registration: registration settings
    fusion: fusion settings
    deconvolution: optional deconvolution settings; if given, the
        output is deconvolved rather than fused
    psf_size: size of extracted PSFs, in voxels of the output
    registrations: optional YAML file for the registrations; `register`
        writes it and `fuse` reads it if it exists
    output: output image file
    """
    views: Tuple[ViewConfig, ...]
    label: str = "beads"
    detection: DetectionParameters = DetectionParameters()
    thinout: Optional[ThinOutParameters] = None
    registration: RegistrationConfig = RegistrationConfig()
    fusion: FusionParameters = FusionParameters()
    deconvolution: Optional[DeconvolutionParameters] = None
    psf_size: int = 19
    registrations: Optional[str] = None
    output: Optional[str] = None

    def __post_init__(self):
        if not self.views:
            raise ValueError("At least one view is needed")
        ids = [v.view for v in self.views]
        if len(set(ids)) != len(ids):
            raise ValueError("Duplicate (timepoint, setup) among views")

    @property
    def registrationlabel(self) -> str:
        return self.label if self.thinout is None else self.thinout.newlabel


def _construct(cls: type, data: Any, section: str,
               renames: Dict[str, str] = {}):
    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise ConfigurationError(f"Section '{section}' must be a mapping")
    names = {f.name for f in dataclasses.fields(cls)}
    kwargs = {}
    for key, value in data.items():
        name = renames.get(key, key)
        if name not in names:
            raise ConfigurationError(f"Unknown key '{key}' in '{section}'")
        kwargs[name] = value
    try:
        return cls(**kwargs)
    except (TypeError, ValueError) as e:
        raise ConfigurationError(f"In '{section}': {e}") from e


def _viewid(data: Any, section: str) -> ViewId:
    try:
        t, s = data
        return ViewId(int(t), int(s))
    except (TypeError, ValueError):
        raise ConfigurationError(
            f"In '{section}': expected [timepoint, setup], got {data!r}"
        ) from None


def _views(data: Any, basedir: str) -> Tuple[ViewConfig, ...]:
    if not isinstance(data, list) or not data:
        raise ConfigurationError("'views' must be a non-empty list")
    views = []
    for k, item in enumerate(data):
        vc = _construct(ViewConfig, item, f"views[{k}]")
        file = vc.file if os.path.isabs(vc.file) \
            else os.path.join(basedir, vc.file)
        transform = None if vc.transform is None \
            else tuple(tuple(float(x) for x in row) for row in vc.transform)
        views.append(dataclasses.replace(
            vc, file=file, voxel_size=tuple(float(x) for x in vc.voxel_size),
            transform=transform))
    return tuple(views)


def _globalopt(data: Any) -> GlobalOptimizationParameters:
    if data is None:
        return GlobalOptimizationParameters()
    if not isinstance(data, dict):
        raise ConfigurationError("'global_optimization' must be a mapping")
    if "preset" in data:
        if len(data) > 1:
            raise ConfigurationError(
                "'preset' cannot be combined with other keys in "
                "'global_optimization'")
        try:
            return GlobalOptimizationParameters.preset(int(data["preset"]))
        except ValueError as e:
            raise ConfigurationError(str(e)) from e
    return _construct(GlobalOptimizationParameters, data,
                      "global_optimization")


def _ransac(data: Any) -> RansacParameters:
    if isinstance(data, dict) and "preset" in data:
        data = dict(data)
        name = data.pop("preset")
        try:
            return RansacParameters.preset(name, **data)
        except (TypeError, ValueError) as e:
            raise ConfigurationError(f"In 'ransac': {e}") from e
    return _construct(RansacParameters, data, "ransac")


def _registration(data: Any) -> RegistrationConfig:
    if data is None:
        return RegistrationConfig()
    if not isinstance(data, dict):
        raise ConfigurationError("'registration' must be a mapping")
    data = dict(data)
    ransac = _ransac(data.pop("ransac", None))
    globalopt = _globalopt(data.pop("global_optimization", None))
    groups = tuple(tuple(_viewid(v, "groups") for v in g)
                   for g in data.pop("groups", None) or ())
    fixed = data.pop("fixed_views", None)
    if fixed is not None:
        fixed = tuple(_viewid(v, "fixed_views") for v in fixed)
    reg = _construct(RegistrationConfig, data, "registration",
                     {"lambda": "lam"})
    return dataclasses.replace(reg, ransac=ransac, groups=groups,
                               fixed_views=fixed,
                               global_optimization=globalopt)


def parse_config(data: Dict[str, Any], basedir: str = ".") -> PipelineConfig:
    """Build a PipelineConfig from a parsed YAML document

    Raises ConfigurationError on unknown keys or invalid values.
    """
    if not isinstance(data, dict):
        raise ConfigurationError("Configuration must be a mapping")
    data = dict(data)
    if "views" not in data:
        raise ConfigurationError("Configuration needs 'views'")
    views = _views(data.pop("views"), basedir)
    detection = _construct(DetectionParameters, data.pop("detection", None),
                           "detection")
    thinout = data.pop("thinout", None)
    if thinout is not None:
        thinout = _construct(ThinOutParameters, thinout, "thinout")
    registration = _registration(data.pop("registration", None))
    fusion = _construct(FusionParameters, data.pop("fusion", None), "fusion")
    decon = data.pop("deconvolution", None)
    if decon is not None:
        decon = _construct(DeconvolutionParameters, decon, "deconvolution")
    for key in ("registrations", "output"):
        if data.get(key) is not None and not os.path.isabs(data[key]):
            data[key] = os.path.join(basedir, data[key])
    data.update(views=views, detection=detection, thinout=thinout,
                registration=registration, fusion=fusion,
                deconvolution=decon)
    cfg = _construct(PipelineConfig, data, "configuration")
    if thinout is not None and thinout.label != cfg.label:
        raise ConfigurationError(
            f"Thinning reads '{thinout.label}' but detection writes "
            f"'{cfg.label}'")
    return cfg


def load_config(path: str) -> PipelineConfig:
    """Read a PipelineConfig from a YAML file"""
    logger.info("Loading configuration from %s", path)
    with open(path, "r", encoding="utf-8") as f:
        try:
            data = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Cannot parse {path}: {e}") from e
    return parse_config(data, os.path.dirname(os.path.abspath(path)))


def save_registrations(spimdata: SpimData, path: str) -> None:
    """Write the registrations of all views to a YAML file

    Each view is stored as a list of named n×(n+1) matrices, in the
    order of `ViewRegistration.transforms`.
    """
    doc = []
    for view in spimdata.views():
        reg = spimdata.registrations[view]
        doc.append({
            "timepoint": int(view.timepoint),
            "setup": int(view.setup),
            "transforms": [{"name": name,
                            "affine": [[float(x) for x in row]
                                       for row in afm]}
                           for name, afm in reg.transforms]})
    with open(path, "w", encoding="utf-8") as f:
        yaml.safe_dump(doc, f, default_flow_style=None, sort_keys=False)
    logger.info("Saved registrations of %d views to %s", len(doc), path)


def load_registrations(spimdata: SpimData, path: str) -> None:
    """Replace the registrations of views by those stored in a YAML file

    Views in the file that are not part of the SpimData are ignored.
    """
    with open(path, "r", encoding="utf-8") as f:
        try:
            doc = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Cannot parse {path}: {e}") from e
    if not isinstance(doc, list):
        raise ConfigurationError(f"{path} must contain a list of views")
    count = 0
    for item in doc:
        try:
            view = ViewId(int(item["timepoint"]), int(item["setup"]))
            transforms = [(t["name"], t["affine"])
                          for t in item["transforms"]]
        except (KeyError, TypeError, ValueError) as e:
            raise ConfigurationError(f"Bad registration in {path}: {e}") \
                from e
        if view not in spimdata.registrations:
            continue
        ndim = spimdata.registrations[view].ndim
        try:
            spimdata.registrations[view] = ViewRegistration(ndim, transforms)
        except ValueError as e:
            raise ConfigurationError(f"Bad registration in {path}: {e}") \
                from e
        count += 1
    logger.info("Loaded registrations of %d views from %s", count, path)
