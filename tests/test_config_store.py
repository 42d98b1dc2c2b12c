import json
from pathlib import Path

import pytest

from sdkvm.core.config.config_store import ConfigStore, ProjectConfig
from sdkvm.core.errors import ConfigError
from sdkvm.core.paths import CacheLayout
from sdkvm.core.versions.models import Fork


@pytest.fixture()
def store(tmp_path: Path) -> ConfigStore:
    return ConfigStore(CacheLayout(tmp_path / "cache"))


# ---------------------------------------------------------------------------
# project config
# ---------------------------------------------------------------------------

def test_write_project_config_writes_both_formats(store, tmp_path):
    proj = tmp_path / "app"
    cfg = ProjectConfig(flutter="3.24.0", flavors={"production": "3.22.0"})
    store.write_project_config(proj, cfg)

    assert json.loads((proj / ".fvmrc").read_text()) == {"flutter": "3.24.0", "flavors": {"production": "3.22.0"}}
    legacy = json.loads((proj / ".fvm" / "fvm_config.json").read_text())
    assert legacy == {"flutterSdkVersion": "3.24.0", "flavors": {"production": "3.22.0"}}
    assert store.read_project_config(proj) == cfg


def test_primary_config_wins_over_legacy(store, tmp_path):
    proj = tmp_path / "app"
    (proj / ".fvm").mkdir(parents=True)
    (proj / ".fvm" / "fvm_config.json").write_text(json.dumps({"flutterSdkVersion": "2.10.0"}))
    assert store.read_project_config(proj).flutter == "2.10.0"

    (proj / ".fvmrc").write_text(json.dumps({"flutter": "stable", "updateVscodeSettings": False}))
    assert store.read_project_config(proj).flutter == "stable"


def test_missing_and_invalid_project_config(store, tmp_path):
    assert store.read_project_config(tmp_path) is None
    (tmp_path / ".fvmrc").write_text("{broken")
    with pytest.raises(ConfigError):
        store.read_project_config(tmp_path)


def test_version_for_flavor():
    cfg = ProjectConfig(flutter="3.24.0", flavors={"production": "3.22.0"})
    assert cfg.version_for() == "3.24.0"
    assert cfg.version_for("production") == "3.22.0"
    with pytest.raises(ConfigError):
        cfg.version_for("staging")


def test_find_project_root_walks_up(store, tmp_path):
    proj = tmp_path / "app"
    deep = proj / "lib" / "src"
    deep.mkdir(parents=True)
    store.write_project_config(proj, ProjectConfig(flutter="3.24.0"))

    assert ConfigStore.find_project_root(deep) == proj.resolve()
    assert ConfigStore.find_project_root(tmp_path) is None


# ---------------------------------------------------------------------------
# global config
# ---------------------------------------------------------------------------

def test_global_config_defaults(store):
    cfg = store.read_global_config()
    assert cfg.global_version is None
    assert cfg.forks == []
    assert store.fork_table() == {}


def test_add_and_remove_fork(store):
    fork = store.add_fork("acme", "https://git.example.com/acme/flutter.git")
    assert fork == Fork(alias="acme", url="https://git.example.com/acme/flutter.git")
    assert store.get_fork("acme") == fork
    assert store.fork_table() == {"acme": "https://git.example.com/acme/flutter.git"}

    on_disk = json.loads(store.layout.global_config_file.read_text())
    assert on_disk["forks"] == [{"name": "acme", "url": "https://git.example.com/acme/flutter.git"}]

    assert store.remove_fork("acme") is True
    assert store.remove_fork("acme") is False
    assert store.get_fork("acme") is None


@pytest.mark.parametrize(
    "alias,url",
    [
        ("bad alias", "https://x/y.git"),
        ("../up", "https://x/y.git"),
        ("engine", "https://x/y.git"),
        ("flutter", "https://x/y.git"),
        ("acme", "https://x/y"),
    ],
)
def test_add_fork_validation(store, alias, url):
    with pytest.raises(ConfigError):
        store.add_fork(alias, url)
    assert store.list_forks() == []


def test_duplicate_fork_rejected(store):
    store.add_fork("acme", "https://x/a.git")
    with pytest.raises(ConfigError) as ei:
        store.add_fork("acme", "https://x/b.git")
    assert ei.value.details["alias"] == "acme"
    assert store.get_fork("acme").url == "https://x/a.git"


def test_global_version_round_trip(store):
    store.add_fork("acme", "https://x/a.git")
    store.set_global_version("3.24.0")
    assert store.get_global_version() == "3.24.0"
    # forks survive version changes
    assert store.get_fork("acme") is not None

    assert store.unset_global_version() is True
    assert store.get_global_version() is None
    assert store.unset_global_version() is False
