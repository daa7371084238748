from __future__ import annotations

import logging
from pathlib import Path

import numpy as np
import nibabel as nb
import pytest

from ukfpy.core import runner
from ukfpy.tests.phantoms import tensor_volume


@pytest.fixture(autouse=True)
def _restore_logging():
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield
    for h in list(root.handlers):
        if h not in handlers:
            root.removeHandler(h)
            h.close()
    root.setLevel(level)


def _write_phantom(tmp_path: Path) -> Path:
    shape = (10, 5, 5)
    dwi, bvals, bvecs = tensor_volume(shape)
    affine = np.eye(4)
    nb.save(nb.Nifti1Image(dwi.astype(np.float32), affine), str(tmp_path / "dwi.nii.gz"))
    np.savetxt(tmp_path / "dwi.bval", bvals[None, :], fmt="%g")
    np.savetxt(tmp_path / "dwi.bvec", bvecs.T, fmt="%.8f")
    nb.save(nb.Nifti1Image(np.ones(shape, dtype=np.uint8), affine), str(tmp_path / "mask.nii.gz"))

    seeds = np.zeros(shape, dtype=np.uint8)
    seeds[4, 2, 2] = 3
    nb.save(nb.Nifti1Image(seeds, affine), str(tmp_path / "seeds.nii.gz"))

    cfg = tmp_path / "run.ini"
    cfg.write_text(
        "[INPUT]\n"
        "dwi_file = dwi.nii.gz\n"
        "bval_file = dwi.bval\n"
        "bvec_file = dwi.bvec\n"
        "mask_file = mask.nii.gz\n"
        "seeds_file = seeds.nii.gz\n"
        "labels = 3\n"
        "[OUTPUT]\n"
        f"save_dir = {tmp_path / 'out'}\n"
        "run_tag = phantom\n"
        "[TRACKING]\n"
        "step_length = 0.5\n"
        "record_length = 0.5\n"
        "rtop1_min_stop = 0\n"
        "[DEVICE]\n"
        "num_threads = 2\n",
        encoding="utf-8",
    )
    return cfg


def test_run_tracks_seed_in_both_directions(tmp_path: Path) -> None:
    cfg = _write_phantom(tmp_path)
    status = runner.run({"cfg_path": str(cfg), "output_mode": "quiet"})
    assert status == 0

    results = list((tmp_path / "out").glob("*_phantom_UKF_Results"))
    assert len(results) == 1
    assert (results[0] / "config_final.ini").exists()
    assert (results[0] / "log").exists()

    trk = nb.streamlines.load(str(results[0] / "fibers.trk"))
    assert len(trk.streamlines) >= 2
    ends = [s[-1][0] for s in trk.streamlines]
    assert min(ends) < 3.0 and max(ends) > 6.0


def test_run_returns_failure_for_missing_inputs(tmp_path: Path) -> None:
    cfg = tmp_path / "broken.ini"
    cfg.write_text("[INPUT]\ndwi_file = nowhere.nii.gz\nbval_file = b\nbvec_file = v\n", encoding="utf-8")
    assert runner.run({"cfg_path": str(cfg)}) == 1


def test_run_returns_failure_without_seed_voxels(tmp_path: Path) -> None:
    cfg = _write_phantom(tmp_path)
    text = cfg.read_text(encoding="utf-8").replace("labels = 3", "labels = 7")
    cfg.write_text(text, encoding="utf-8")
    assert runner.run({"cfg_path": str(cfg), "output_mode": "quiet"}) == 1
    assert not list((tmp_path / "out").glob("*/fibers.trk"))


def test_run_reports_bound_errors_as_failure(tmp_path: Path, monkeypatch, caplog) -> None:
    from ukfpy.core import tractography
    from ukfpy.core.validation import BoundsError

    class _MismatchedBounds:
        def __init__(self, cfg):
            raise BoundsError("Lower and upper bounds differ in size: 3 vs 2")

    monkeypatch.setattr(tractography, "UKFTractography", _MismatchedBounds)
    cfg = tmp_path / "any.ini"
    cfg.write_text("[INPUT]\ndwi_file = dwi.nii.gz\n", encoding="utf-8")
    with caplog.at_level(logging.ERROR):
        assert runner.run({"cfg_path": str(cfg)}) == 1
    assert any("BoundsError" in r.getMessage() for r in caplog.records)
