import json
import os

import pytest

from resforge import config as config_mod
from resforge.config import DEFAULTS, from_dict, load


def test_defaults_and_derived_db(tmp_path):
    cfg = from_dict({"store": {"dir": str(tmp_path / "store")}})
    assert cfg.get("build.jobs") == 1
    assert cfg.get("provision.copy_conflict") == "last-wins"
    assert cfg.get("store.db") == os.path.join(str(tmp_path / "store"), "resforge.sqlite3")
    # untouched defaults stay untouched
    assert DEFAULTS["store"]["db"] is None


def test_paths_are_expanded(monkeypatch, tmp_path):
    monkeypatch.setenv("HOME", str(tmp_path))
    cfg = from_dict({"build": {"log_dir": "~/logs"}})
    assert cfg.get("build.log_dir") == str(tmp_path / "logs")


def test_coercion():
    cfg = from_dict({"build": {"jobs": "4", "timeout": "2.5"}, "fetcher": {"retries": "5"}})
    assert cfg.get("build.jobs") == 4
    assert cfg.get("build.timeout") == 2.5
    assert cfg.get("fetcher.retries") == 5


def test_get_falls_back_for_missing_and_none():
    cfg = from_dict()
    assert cfg.get("build.timeout", 30) == 30
    assert cfg.get("no.such.key", "x") == "x"
    assert cfg.section("nothing") == {}
    section = cfg.section("build")
    section["jobs"] = 99
    assert cfg.get("build.jobs") == 1


def test_load_explicit_yaml(tmp_path):
    path = tmp_path / "forge.yaml"
    path.write_text("build:\n  jobs: 3\n  fail_fast: true\n")
    cfg = load(str(path))
    assert cfg.path == path
    assert cfg.get("build.jobs") == 3
    assert cfg.get("build.fail_fast") is True
    assert cfg.raw == {"build": {"jobs": 3, "fail_fast": True}}
    assert config_mod.get_config() is cfg


def test_load_json(tmp_path):
    path = tmp_path / "forge.json"
    path.write_text(json.dumps({"provision": {"copy_conflict": "error"}}))
    assert load(str(path)).get("provision.copy_conflict") == "error"


def test_env_override(tmp_path, monkeypatch):
    path = tmp_path / "env.yaml"
    path.write_text("build:\n  jobs: 7\n")
    monkeypatch.setenv("RESFORGE_CONFIG", str(path))
    assert load().get("build.jobs") == 7


def test_non_mapping_file(tmp_path):
    path = tmp_path / "list.yaml"
    path.write_text("- a\n- b\n")
    with pytest.raises(ValueError, match="mapping"):
        load(str(path), fatal=True)
    assert load(str(path)).get("build.jobs") == 1


def test_invalid_values_warn_or_raise():
    bad = {"build": {"backend": "vm"}, "provision": {"copy_conflict": "first-wins"}, "bogus": 1}
    cfg = from_dict(bad)
    assert cfg.get("build.backend") == "vm"
    with pytest.raises(ValueError, match="build.backend"):
        from_dict(bad, fatal=True)
    with pytest.raises(ValueError, match="Unknown top-level config key: bogus"):
        from_dict({"bogus": 1}, fatal=True)


def test_validate_config_checks_store(tmp_path):
    ok, issues = config_mod.validate_config(from_dict({"store": {"dir": str(tmp_path / "s")}}))
    assert ok, issues
    assert (tmp_path / "s").is_dir()
