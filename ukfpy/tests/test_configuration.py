from __future__ import annotations

import configparser
from pathlib import Path

import pytest

from ukfpy.core.configuration import configuration
from ukfpy.core.validation import ConfigurationError


def _inputs(tmp_path: Path) -> dict:
    dwi = tmp_path / "dwi.nii.gz"
    bval = tmp_path / "dwi.bval"
    bvec = tmp_path / "dwi.bvec"
    dwi.write_bytes(b"dummy")
    bval.write_text("0 1000\n", encoding="utf-8")
    bvec.write_text("0 1\n0 0\n0 0\n", encoding="utf-8")
    return {"dwi_file": str(dwi), "bval_file": str(bval), "bvec_file": str(bvec)}


def _cfg(tmp_path: Path, **sections) -> configparser.ConfigParser:
    cfg = configparser.ConfigParser()
    cfg["INPUT"] = _inputs(tmp_path)
    for name, values in sections.items():
        if name == "INPUT":
            cfg["INPUT"].update(values)
        else:
            cfg[name] = values
    return cfg


def test_defaults_without_optional_sections(tmp_path: Path) -> None:
    c = configuration(_cfg(tmp_path))
    assert c.mask_path == "auto"
    assert c.seeds_path is None
    assert c.labels == [1]
    assert c.step_length == 0.3
    assert c.max_ukf_iterations == 5
    assert isinstance(c.max_ukf_iterations, int)
    assert c.output_file == "fibers.trk"
    assert c.save_dir == str(tmp_path)
    assert c.record_nmse is True and c.record_state is False
    assert c.output_mode == "standard"
    assert c.num_threads >= 1


def test_shipped_template_values_round_trip(tmp_path: Path) -> None:
    from ukfpy.configs.paths import get_configs_dir

    cfg = configparser.ConfigParser()
    cfg.read(get_configs_dir() / "UKF_Template.ini")
    cfg["INPUT"].update(_inputs(tmp_path))
    cfg["INPUT"]["mask_file"] = "auto"
    c = configuration(cfg)
    assert c.FILTER_ARGS == {"qm": 0.001, "ql": 10.0, "qw": 0.0015, "qwiso": 0.0015, "rs": 0.015, "kappa": 0.01}
    assert c.TRACKING_ARGS["rtop1_min_stop"] == 600.0
    assert c.TRACKING_ARGS["record_cov"] is False


def test_none_like_mask_means_signal_mask(tmp_path: Path) -> None:
    for v in ["", "n/a", "NA", "none", r"n\a"]:
        c = configuration(_cfg(tmp_path, INPUT={"mask_file": v}))
        assert c.mask_path == ""


def test_missing_required_input_raises(tmp_path: Path) -> None:
    cfg = _cfg(tmp_path)
    cfg.remove_option("INPUT", "bvec_file")
    with pytest.raises(ConfigurationError, match="bvec_file"):
        configuration(cfg)


def test_missing_seeds_file_raises(tmp_path: Path) -> None:
    with pytest.raises(ConfigurationError, match="seeds_file"):
        configuration(_cfg(tmp_path, INPUT={"seeds_file": str(tmp_path / "nope.nii.gz")}))


@pytest.mark.parametrize(
    "section,key,value",
    [
        ("TRACKING", "step_length", "-1"),
        ("TRACKING", "fw_thresh", "1.5"),
        ("TRACKING", "max_ukf_iterations", "2.5"),
        ("FILTER", "rs", "abc"),
        ("INPUT", "sigma_signal", "-0.5"),
    ],
)
def test_invalid_numeric_values_raise(tmp_path: Path, section: str, key: str, value: str) -> None:
    cfg = _cfg(tmp_path)
    if not cfg.has_section(section):
        cfg.add_section(section)
    cfg.set(section, key, value)
    with pytest.raises(ConfigurationError):
        configuration(cfg)


def test_record_length_shorter_than_step_raises(tmp_path: Path) -> None:
    with pytest.raises(ConfigurationError, match="record_length"):
        configuration(_cfg(tmp_path, TRACKING={"step_length": "0.5", "record_length": "0.2"}))


def test_output_file_must_be_trk(tmp_path: Path) -> None:
    with pytest.raises(ConfigurationError, match="trk"):
        configuration(_cfg(tmp_path, OUTPUT={"output_file": "fibers.vtk"}))


def test_record_flags_must_be_boolean(tmp_path: Path) -> None:
    with pytest.raises(ConfigurationError, match="record_rtop"):
        configuration(_cfg(tmp_path, OUTPUT={"record_rtop": "maybe"}))


def test_labels_parsing(tmp_path: Path) -> None:
    c = configuration(_cfg(tmp_path, INPUT={"labels": "2, 5;7"}))
    assert c.labels == [2, 5, 7]
    with pytest.raises(ConfigurationError):
        configuration(_cfg(tmp_path, INPUT={"labels": "left"}))


def test_num_threads(tmp_path: Path) -> None:
    assert configuration(_cfg(tmp_path, DEVICE={"num_threads": "3"})).num_threads == 3
    with pytest.raises(ConfigurationError):
        configuration(_cfg(tmp_path, DEVICE={"num_threads": "0"}))
    with pytest.raises(ConfigurationError):
        configuration(_cfg(tmp_path, DEVICE={"num_threads": "many"}))


def test_output_mode(tmp_path: Path) -> None:
    c = configuration(_cfg(tmp_path, DEBUG={"output_mode": "v"}))
    assert c.output_mode == "verbose"
    assert c.verbose_flag is True
    with pytest.raises(ConfigurationError):
        configuration(_cfg(tmp_path, DEBUG={"output_mode": "loud"}))


def test_inputs_resolve_relative_to_config(tmp_path: Path, monkeypatch) -> None:
    data = tmp_path / "data"
    data.mkdir()
    _inputs(data)
    cfg_file = tmp_path / "run.ini"
    cfg_file.write_text("", encoding="utf-8")

    elsewhere = tmp_path / "elsewhere"
    elsewhere.mkdir()
    monkeypatch.chdir(elsewhere)

    cfg = configparser.ConfigParser()
    cfg["INPUT"] = {"dwi_file": "data/dwi.nii.gz", "bval_file": "data/dwi.bval", "bvec_file": "data/dwi.bvec"}
    cfg["DEBUG"] = {"cfg_source": str(cfg_file)}
    c = configuration(cfg)
    assert Path(c.dwi_path) == (data / "dwi.nii.gz").resolve()
