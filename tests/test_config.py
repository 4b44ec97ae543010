"""Tests for YAML configuration loading."""

from pathlib import Path

import pytest

from recsys.config import RecsysConfig, config_from_dict, config_to_dict, load_config

REPO_CONFIG = Path(__file__).resolve().parent.parent / 'config' / 'recsys.yaml'


def test_missing_file_gives_defaults(tmp_path):
    cfg = load_config(str(tmp_path / 'nope.yaml'))
    assert cfg == RecsysConfig()
    assert cfg.fusion.k_smooth == 60
    assert cfg.trust.threshold == pytest.approx(0.6)


def test_env_var_selects_file(tmp_path, monkeypatch):
    path = tmp_path / 'custom.yaml'
    path.write_text('pipeline:\n  timeout_ms: 75\n', encoding='utf-8')
    monkeypatch.setenv('RECSYS_CONFIG', str(path))
    assert load_config().pipeline.timeout_ms == 75


def test_partial_yaml_and_unknown_keys(tmp_path):
    path = tmp_path / 'recsys.yaml'
    path.write_text(
        'fusion:\n'
        '  k_smooth: 30\n'
        '  shiny_new_knob: true\n'
        'gnn:\n'
        '  layer_dims: [16, 8]\n'
        '  heads: [2, 1]\n'
        'mystery_section:\n'
        '  a: 1\n',
        encoding='utf-8'
    )
    cfg = load_config(str(path))
    assert cfg.fusion.k_smooth == 30
    assert cfg.fusion.mmr_lambda == pytest.approx(0.85)
    assert cfg.gnn.layer_dims == (16, 8)
    assert isinstance(cfg.gnn.heads, tuple)
    assert not hasattr(cfg.fusion, 'shiny_new_knob')


def test_malformed_yaml_gives_defaults(tmp_path):
    path = tmp_path / 'broken.yaml'
    path.write_text('fusion: [unclosed\n', encoding='utf-8')
    assert load_config(str(path)) == RecsysConfig()


def test_shipped_config_matches_defaults():
    assert load_config(str(REPO_CONFIG)) == RecsysConfig()


def test_round_trip_through_dict():
    cfg = RecsysConfig()
    assert config_from_dict(config_to_dict(cfg)) == cfg
    assert config_to_dict(cfg)['gnn']['fanouts'] == [25, 15, 10]
