# testpipeline.py - part of mvspim

import numpy as np
import pytest
import yaml

from mvspim.affine import Affine
from mvspim.cli import main, makeparser
from mvspim.config import parse_config, load_config
from mvspim.errors import ConfigurationError
from mvspim.pipeline import build_spimdata, run_pipeline
from mvspim.spimdata import ViewId
from mvspim.volume import Volume

SHAPE = (40, 44, 48)
BEADS = np.array([[10, 12, 14], [30, 11, 20], [20, 30, 12], [36, 33, 28],
                  [12, 32, 30], [25, 20, 29], [34, 22, 10], [16, 18, 24]],
                 float)
SHIFT = np.array([-3., 2., 1.])


def beadvolume(centers, shape=SHAPE, sigma=2.):
    z, y, x = np.meshgrid(*[np.arange(n) for n in shape], indexing="ij")
    img = np.zeros(shape, np.float32)
    for cx, cy, cz in centers:
        img += np.exp(-((x - cx)**2 + (y - cy)**2 + (z - cz)**2)
                      / (2 * sigma**2))
    return Volume(np.clip(img, 0, 1))


@pytest.fixture
def project(tmp_path):
    beadvolume(BEADS).save(str(tmp_path / "view0.tif"))
    beadvolume(BEADS - SHIFT).save(str(tmp_path / "view1.tif"))
    config = {
        "views": [{"file": "view0.tif", "setup": 0},
                  {"file": "view1.tif", "setup": 1}],
        "registration": {"matcher": "center-of-mass", "model": "translation",
                         "global_optimization": {"preset": 0}},
        "fusion": {"method": "avg"},
        "registrations": "registrations.yaml",
        "output": "fused.tif",
    }
    path = tmp_path / "mvspim.yaml"
    path.write_text(yaml.safe_dump(config))
    return path


def test_build_spimdata():
    vols = {"a.tif": np.zeros((5, 6, 7)), "b.tif": np.zeros((5, 6, 7)),
            "c.tif": np.zeros((5, 6, 7))}
    cfg = parse_config({"views": [
        {"file": "a.tif", "setup": 0, "voxel_size": [0.5, 0.5, 2]},
        {"file": "b.tif", "setup": 1, "voxel_size": [0.5, 0.5, 2],
         "transform": [[0, 0, 1, 0], [0, 1, 0, 0], [-1, 0, 0, 10]]},
        {"file": "c.tif", "setup": 0, "timepoint": 1,
         "voxel_size": [0.5, 0.5, 2]}]}, "")
    sd = build_spimdata(cfg, loader=lambda path: vols[path])
    assert sd.views() == [ViewId(0, 0), ViewId(0, 1), ViewId(1, 0)]
    assert sd.missing == {ViewId(1, 1)}
    assert sd.setup(ViewId(0, 0)).size == (7, 6, 5)
    reg = sd.registrations[ViewId(0, 1)]
    assert [name for name, t in reg.transforms] == ["metadata",
                                                    "calibration"]
    assert np.allclose(sd.model(ViewId(0, 1)) * [0, 0, 1], [2, 0, 10])
    assert np.allclose(sd.model(ViewId(0, 0)) * [2, 2, 2], [1, 1, 4])
    assert sd.loadvolume(ViewId(1, 0)).shape == (5, 6, 7)


def test_build_spimdata_inconsistent():
    vols = {"a.tif": np.zeros((5, 6, 7)), "c.tif": np.zeros((5, 6, 8))}
    cfg = parse_config({"views": [
        {"file": "a.tif", "setup": 0},
        {"file": "c.tif", "setup": 0, "timepoint": 1}]}, "")
    with pytest.raises(ConfigurationError):
        build_spimdata(cfg, loader=lambda path: vols[path])


def test_run_pipeline(project):
    cfg = load_config(str(project))
    sd = run_pipeline(cfg, register_only=True)
    assert len(sd.interestpoints[ViewId(0, 0)]["beads"]) == len(BEADS)
    afm = sd.model(ViewId(0, 1))
    assert np.allclose(afm.translation(), SHIFT, atol=0.2)
    assert np.allclose(afm.linear(), np.eye(3))
    assert np.allclose(sd.model(ViewId(0, 0)), Affine(), atol=1e-6)
    with open(cfg.registrations) as f:
        regs = yaml.safe_load(f)
    assert [r["setup"] for r in regs] == [0, 1]
    assert regs[1]["transforms"][0]["name"] == "Registration"
    assert not (project.parent / "fused.tif").exists()

    sd = run_pipeline(cfg)
    assert sd.interestpoints[ViewId(0, 0)] == {}
    assert np.allclose(sd.model(ViewId(0, 1)).translation(), SHIFT,
                       atol=0.2)
    fused = Volume.load(cfg.output)
    assert fused.ndim == 3
    assert np.all(np.abs(np.array(fused.shape) - (41, 46, 51)) <= 1)


def test_parser():
    args = makeparser().parse_args(["-vv", "fuse", "c.yaml", "-o", "x.tif"])
    assert args.verbose == 2
    assert args.command == "fuse"
    assert args.output == "x.tif"
    with pytest.raises(SystemExit):
        makeparser().parse_args([])


def test_cli(project):
    assert main(["register", str(project)]) == 0
    assert (project.parent / "registrations.yaml").exists()
    out = project.parent / "other.tif"
    assert main(["fuse", str(project), "-o", str(out)]) == 0
    assert out.exists()
    assert not (project.parent / "fused.tif").exists()


def test_cli_errors(tmp_path):
    assert main(["fuse", str(tmp_path / "missing.yaml")]) == 1
    bad = tmp_path / "bad.yaml"
    bad.write_text(yaml.safe_dump({"views": [{"file": "a.tif", "setup": 0}],
                                   "fusion": {"method": "median"}}))
    assert main(["register", str(bad)]) == 1
    nofile = tmp_path / "nofile.yaml"
    nofile.write_text(yaml.safe_dump({"views": [{"file": "a.tif",
                                                 "setup": 0}]}))
    assert main(["register", str(nofile)]) == 1


def test_cli_bad_matcher_value(project):
    with open(project) as f:
        config = yaml.safe_load(f)
    config["registration"]["matcher_params"] = {"center": "mode"}
    project.write_text(yaml.safe_dump(config))
    with pytest.raises(ConfigurationError):
        run_pipeline(load_config(str(project)), register_only=True)
    assert main(["register", str(project)]) == 1


def test_cli_no_beads_for_psf(project):
    with open(project) as f:
        config = yaml.safe_load(f)
    assert main(["register", str(project)]) == 0
    config["detection"] = {"threshold": 10.}
    config["deconvolution"] = {"iterations": 1}
    project.write_text(yaml.safe_dump(config))
    assert main(["fuse", str(project)]) == 1
    assert not (project.parent / "fused.tif").exists()
