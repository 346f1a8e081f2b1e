from __future__ import annotations

import pytest

from apps.common.settings import load_settings

ENV_KEYS = [
    "MOD_CONFIG_PATH",
    "MOD_ANALYSIS_URL",
    "MOD_RECORD_STORE_URL",
    "MOD_RECORD_STORE_TOKEN",
    "MOD_STORAGE_ROOT",
    "MOD_JOB_ROOT",
    "MOD_CONFIDENCE_THRESHOLD",
    "MOD_STALENESS_MINUTES",
    "MOD_PROPAGATION_DELAY_S",
    "MOD_REQUEST_TIMEOUT_S",
]


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for k in ENV_KEYS:
        monkeypatch.delenv(k, raising=False)


def _write(tmp_path, text):
    p = tmp_path / "app.yaml"
    p.write_text(text, encoding="utf-8")
    return p


def test_loads_yaml_with_defaults(tmp_path):
    p = _write(tmp_path, "analysis_url: http://a/\nrecord_store_url: http://r\n")
    s = load_settings(str(p))
    assert s.analysis_url == "http://a"
    assert s.record_store_url == "http://r"
    assert s.record_store_token == ""
    assert s.confidence_threshold == 80.0
    assert s.staleness_minutes == 5.0
    assert s.storage_root.is_absolute()


def test_env_overrides_file(tmp_path, monkeypatch):
    p = _write(tmp_path, "analysis_url: http://a\nrecord_store_url: http://r\nconfidence_threshold: 70\n")
    monkeypatch.setenv("MOD_ANALYSIS_URL", "http://override")
    monkeypatch.setenv("MOD_CONFIDENCE_THRESHOLD", "90")
    monkeypatch.setenv("MOD_JOB_ROOT", str(tmp_path / "jobs"))
    s = load_settings(str(p))
    assert s.analysis_url == "http://override"
    assert s.confidence_threshold == 90.0
    assert s.job_root == (tmp_path / "jobs").resolve()


def test_config_path_from_env(tmp_path, monkeypatch):
    p = _write(tmp_path, "analysis_url: http://a\nrecord_store_url: http://r\nstaleness_minutes: 2\n")
    monkeypatch.setenv("MOD_CONFIG_PATH", str(p))
    assert load_settings().staleness_minutes == 2.0


def test_missing_required_values_are_named(tmp_path):
    p = _write(tmp_path, "record_store_token: x\n")
    with pytest.raises(ValueError) as ei:
        load_settings(str(p))
    assert "MOD_ANALYSIS_URL" in str(ei.value)
    assert "MOD_RECORD_STORE_URL" in str(ei.value)


def test_bad_numeric_value(tmp_path, monkeypatch):
    p = _write(tmp_path, "analysis_url: http://a\nrecord_store_url: http://r\n")
    monkeypatch.setenv("MOD_PROPAGATION_DELAY_S", "soon")
    with pytest.raises(ValueError, match="propagation_delay_s"):
        load_settings(str(p))
