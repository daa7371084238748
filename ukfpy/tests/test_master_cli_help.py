from __future__ import annotations

import sys

import pytest

from ukfpy import master_cli


def test_master_cli_prints_help_when_no_args(monkeypatch, capsys) -> None:
    monkeypatch.setattr(sys, "argv", ["UKFpy"])
    master_cli.main()
    out = capsys.readouterr().out
    assert "UKFpy command line interface" in out
    assert "run" in out


def test_master_cli_help_flag(monkeypatch, capsys) -> None:
    monkeypatch.setattr(sys, "argv", ["UKFpy", "--help"])
    with pytest.raises(SystemExit) as e:
        master_cli.main()
    assert e.value.code == 0
    out = capsys.readouterr().out
    assert "UKFpy command line interface" in out


def test_run_requires_cfg_path(monkeypatch) -> None:
    monkeypatch.setattr(sys, "argv", ["UKFpy", "run"])
    with pytest.raises(SystemExit) as e:
        master_cli.main()
    assert e.value.code == 2
