from __future__ import annotations

import json
from pathlib import Path

import pytest

from sdkvm.core.errors import ConfigError
from sdkvm.core.settings import DEFAULT_REMOTE_URL, SdkSettings, load_settings_file


def test_defaults():
    s = SdkSettings()
    assert s.cache_root == Path.home() / ".sdkvm"
    assert s.remote_url == DEFAULT_REMOTE_URL
    assert s.reference_cache is None
    assert s.max_workers == 4


def test_from_env_coerces_types(tmp_path):
    s = SdkSettings.from_env(
        {
            "SDKVM_CACHE_ROOT": str(tmp_path / "c"),
            "SDKVM_DOWNLOAD_ATTEMPTS": "5",
            "SDKVM_LOCK_TIMEOUT": "2.5",
            "SDKVM_USE_REFERENCE_CACHE": "yes",
            "SDKVM_REFERENCE_CACHE_PATH": str(tmp_path / "ref.git"),
            "SDKVM_MAX_WORKERS": "",
        }
    )
    assert s.cache_root == tmp_path / "c"
    assert s.download_attempts == 5
    assert s.lock_timeout == pytest.approx(2.5)
    assert s.reference_cache == tmp_path / "ref.git"
    assert s.max_workers == 4  # blank values are ignored


def test_env_overrides_settings_file(tmp_path):
    f = tmp_path / "sdkvm.yaml"
    f.write_text("download_attempts: 7\ngit_timeout: 60\nremote_url: https://git.example.com/f.git\n", encoding="utf-8")

    s = SdkSettings.from_env({"SDKVM_SETTINGS_FILE": str(f), "SDKVM_DOWNLOAD_ATTEMPTS": "2"})
    assert s.download_attempts == 2
    assert s.git_timeout == pytest.approx(60.0)
    assert s.remote_url == "https://git.example.com/f.git"


def test_json_settings_file(tmp_path):
    f = tmp_path / "sdkvm.json"
    f.write_text(json.dumps({"catalog_ttl_seconds": 10, "unknown_key": 1}), encoding="utf-8")
    s = SdkSettings.from_mapping(load_settings_file(f))
    assert s.catalog_ttl_seconds == 10


def test_settings_file_errors(tmp_path):
    with pytest.raises(ConfigError):
        load_settings_file(tmp_path / "missing.yaml")

    listy = tmp_path / "list.yaml"
    listy.write_text("- 1\n- 2\n", encoding="utf-8")
    with pytest.raises(ConfigError):
        load_settings_file(listy)

    empty = tmp_path / "empty.yaml"
    empty.write_text("", encoding="utf-8")
    assert load_settings_file(empty) == {}


def test_invalid_values_rejected():
    with pytest.raises(ConfigError):
        SdkSettings.from_env({"SDKVM_DOWNLOAD_ATTEMPTS": "many"})
    with pytest.raises(ConfigError):
        SdkSettings(download_attempts=0)
    with pytest.raises(ConfigError):
        SdkSettings(max_workers=1)


def test_with_overrides_keeps_the_rest(tmp_path):
    s = SdkSettings(cache_root=tmp_path)
    t = s.with_overrides(download_backoff=0.0)
    assert t.cache_root == tmp_path
    assert t.download_backoff == 0.0
    assert s.download_backoff == 1.0
