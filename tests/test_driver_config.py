"""
Configuration resolution: defaults, JSON solver overrides and environment paths.
"""

import json

import pytest

from driver_config import DEFAULT_CFG, load_config


def test_defaults(tmp_path):
    cfg = load_config(tmp_path)
    assert cfg.workdir == tmp_path.resolve()
    assert cfg.grid_file == tmp_path.resolve() / "grid.txt"
    assert cfg.layout == tmp_path.resolve() / "electrodes"
    assert cfg.cache_dir == tmp_path.resolve() / "gen.cache"
    assert cfg.output_dir == tmp_path.resolve()
    assert cfg.solver == DEFAULT_CFG
    assert cfg.sources == ()
    assert cfg.field_path(12).name == "field12.txt"


def test_defaults_follow_cwd(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    assert load_config().grid_file == tmp_path.resolve() / "grid.txt"


def test_environment_paths(tmp_path, monkeypatch):
    monkeypatch.setenv("BEM_GRID_FILE", "grids/fine.txt")
    monkeypatch.setenv("BEM_CACHE_DIR", str(tmp_path / "elsewhere"))
    monkeypatch.setenv("BEM_OUTPUT_DIR", "out")
    cfg = load_config(tmp_path)
    assert cfg.grid_file == tmp_path.resolve() / "grids" / "fine.txt"
    assert cfg.cache_dir == tmp_path / "elsewhere"
    assert cfg.field_path(3) == tmp_path.resolve() / "out" / "field3.txt"


def test_solver_config_file(tmp_path):
    (tmp_path / "solver_config.json").write_text(json.dumps({"tolerance": 1e-8, "refine_levels": 2}))
    cfg = load_config(tmp_path, overrides={"refine_levels": 1})
    assert cfg.tolerance == 1e-8
    assert cfg.refine_levels == 1
    assert cfg.reference_point == (0.0, 0.0, 0.0)
    assert len(cfg.sources) == 1


def test_solver_config_from_environment(tmp_path, monkeypatch):
    path = tmp_path / "custom.json"
    path.write_text(json.dumps({"reference_point": [1, 2, 3]}))
    monkeypatch.setenv("BEM_SOLVER_CONFIG", str(path))
    assert load_config(tmp_path).reference_point == (1.0, 2.0, 3.0)


@pytest.mark.parametrize("content", ["{not json", "[1, 2, 3]"])
def test_bad_solver_config_is_ignored(tmp_path, capsys, content):
    (tmp_path / "solver_config.json").write_text(content)
    cfg = load_config(tmp_path)
    assert cfg.solver == DEFAULT_CFG
    assert "[config] Warning" in capsys.readouterr().out


def test_missing_solver_config_from_environment(tmp_path, monkeypatch, capsys):
    monkeypatch.setenv("BEM_SOLVER_CONFIG", str(tmp_path / "nope.json"))
    assert load_config(tmp_path).solver == DEFAULT_CFG
    assert "does not exist" in capsys.readouterr().out
