"""Tests for StampConfig loading and validation."""

import pytest
import yaml

from stamp_detector.config import CONFIG_PATH, StampConfig, load_config


def test_defaults_match_shipped_yaml():
    assert CONFIG_PATH.exists()
    assert StampConfig.from_yaml(CONFIG_PATH) == StampConfig()


def test_sections_are_flattened(tmp_path):
    path = tmp_path / "cfg.yaml"
    path.write_text(yaml.safe_dump({
        "decision": {"threshold_hi": 0.9, "margin_min": 0.1},
        "locator": {"loc_scales": [0.5, 1.0]},
        "max_pages": 4,
    }), encoding="utf-8")
    cfg = StampConfig.from_yaml(path)
    assert cfg.threshold_hi == 0.9
    assert cfg.margin_min == 0.1
    assert cfg.loc_scales == (0.5, 1.0)
    assert cfg.max_pages == 4
    assert cfg.threshold_lo == 0.80


def test_unknown_keys_are_ignored(caplog):
    cfg = StampConfig.from_dict({"not_a_setting": 1})
    assert cfg == StampConfig()
    assert "not_a_setting" in caplog.text


def test_env_overrides():
    env = {
        "THRESHOLD_HI": "0.91",
        "ROBUST_STAMP_AUGS": "false",
        "LOC_SCALES": "0.5,1.0,1.5",
        "TIME_BUDGET_MS": "2500",
        "MAX_STAMPS": "8",
    }
    cfg = StampConfig().with_env(env)
    assert cfg.threshold_hi == 0.91
    assert cfg.robust_augmentations is False
    assert cfg.loc_scales == (0.5, 1.0, 1.5)
    assert cfg.time_budget_ms == 2500.0
    assert cfg.max_stamps == 8


def test_invalid_env_value_keeps_current():
    cfg = StampConfig().with_env({"MAX_PAGES": "many", "AUG_GRAYSCALE": "maybe"})
    assert cfg.max_pages == 12
    assert cfg.aug_grayscale is True


def test_load_config_missing_file_uses_defaults(tmp_path):
    cfg = load_config(tmp_path / "missing.yaml", environ={})
    assert cfg == StampConfig()


@pytest.mark.parametrize("overrides", [
    {"threshold_hi": 1.5},
    {"threshold_lo": 0.95, "threshold_hi": 0.9},
    {"max_pages": 0},
    {"aug_jpeg_quality": 0},
    {"loc_scales": []},
    {"time_budget_ms": -1},
])
def test_validation_rejects_bad_values(overrides):
    with pytest.raises(ValueError):
        StampConfig.from_dict(overrides)
