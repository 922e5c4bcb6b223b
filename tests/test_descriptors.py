import pytest

from resforge.descriptors import (
    COPY,
    PATCH,
    UNPACK,
    Environment,
    parse_chroot,
    parse_env,
    parse_file_entry,
    parse_result,
    parse_source,
)
from resforge.errors import DescriptorError

SHA1 = "a" * 40


def test_file_entry_actions():
    f = parse_file_entry({"location": "h/hello-1.0.tar.gz", "unpack": "hello-1.0", "sha1": SHA1}, "up", [], "source hello")
    assert f.action == UNPACK
    assert f.target == "hello-1.0"
    assert f.server == "up"
    assert f.verified
    assert f.checksums == {"sha1": SHA1}

    p = parse_file_entry({"location": "fix.patch", "patch": 2}, "up", [], "source hello")
    assert p.action == PATCH
    assert p.patch_level == 2

    c = parse_file_entry({"location": "extra.conf", "copy": "etc/", "server": "other"}, "up", [], "source hello")
    assert c.action == COPY
    assert c.target == "etc/"
    assert c.server == "other"
    assert not c.verified


def test_patch_true_uses_patch_level():
    f = parse_file_entry({"location": "fix.patch", "patch": True, "patch-level": 0}, "up", [], "source x")
    assert f.patch_level == 0
    f = parse_file_entry({"location": "fix.patch", "patch": True}, "up", [], "source x")
    assert f.patch_level == 1


def test_file_entry_needs_exactly_one_action():
    with pytest.raises(DescriptorError, match="without unpack, copy or patch"):
        parse_file_entry({"location": "a.tar.gz"}, "up", [], "source x")
    with pytest.raises(DescriptorError, match="conflicting attributes") as exc:
        parse_file_entry({"location": "a.tar.gz", "unpack": "a", "copy": "b"}, "up", [], "source x")
    assert exc.value.kind == DescriptorError.STRUCTURAL


@pytest.mark.parametrize("entry", [
    {"location": "../escape.tar.gz", "unpack": "x"},
    {"location": "/abs.tar.gz", "unpack": "x"},
    {"location": "a.tar.gz", "unpack": "x/y"},
    {"location": "a.conf", "copy": "../etc"},
    {"location": "a.patch", "patch": "one"},
    {"location": "a.tar.gz", "unpack": "x", "sha1": "1234"},
    {"location": "a.tar.gz", "unpack": "x", "bogus": 1},
])
def test_file_entry_rejects_malformed(entry):
    with pytest.raises(DescriptorError):
        parse_file_entry(entry, "up", [], "source x")


def test_file_entry_without_server():
    with pytest.raises(DescriptorError, match="no default server"):
        parse_file_entry({"location": "a.tar.gz", "unpack": "a"}, None, [], "source x")


def test_parse_env_export_flag():
    env = parse_env({"CFLAGS": "-O2", "PREFIX": {"value": "/usr", "export": True}, "JOBS": 4}, "source x")
    assert env.get("CFLAGS").value == "-O2"
    assert not env.get("CFLAGS").export
    assert env.get("PREFIX").export
    assert env.get("JOBS").value == "4"
    assert [n for n, _ in env.iter()] == ["CFLAGS", "JOBS", "PREFIX"]


def test_environment_merge_later_wins():
    a = parse_env({"X": "1", "Y": "1"}, "a")
    b = parse_env({"Y": "2"}, "b")
    merged = a.merge(b)
    assert merged.get("X").value == "1"
    assert merged.get("Y").value == "2"
    assert a.get("Y").value == "1"
    assert merged.envid() != a.envid()
    assert Environment().envid() == Environment().envid()


def test_parse_env_rejects_bad_names():
    with pytest.raises(DescriptorError, match="invalid environment variable name"):
        parse_env({"1BAD": "x"}, "source x")


def test_parse_source_inherits_server_and_licences():
    src = parse_source("hello", {
        "server": "up",
        "licences": ["gpl2"],
        "file": [
            {"location": "h/hello/1.0/hello-1.0.tar.gz", "unpack": "hello-1.0", "sha1": SHA1},
            {"location": "h/hello/COPYING", "copy": ".", "licences": ["mit"]},
        ],
    })
    assert [f.server for f in src.files] == ["up", "up"]
    assert src.files[0].licences == ["gpl2"]
    assert src.all_licences() == ["gpl2", "mit"]
    assert [f.location for f in src.untrusted_files] == ["h/hello/COPYING"]


def test_sourceid_tracks_checksums():
    raw = {"server": "up", "file": [{"location": "a.tar.gz", "unpack": "a", "sha1": SHA1}]}
    one = parse_source("a", raw).sourceid()
    raw["file"][0]["sha1"] = "b" * 40
    assert parse_source("a", raw).sourceid() != one


def test_parse_source_requires_files():
    with pytest.raises(DescriptorError, match="non-empty list"):
        parse_source("a", {"server": "up", "file": []})


def test_parse_source_rejects_unknown_type():
    with pytest.raises(DescriptorError, match="unsupported source type"):
        parse_source("a", {"type": "git", "server": "up", "file": [{"location": "x", "copy": "."}]})


def test_parse_chroot_defaults():
    chroot = parse_chroot({
        "default_groups": ["base"],
        "groups": [
            {"name": "base", "server": "up", "files": [{"location": "base.tar.gz"}]},
            {"name": "tools", "files": [{"server": "up", "location": "tools.tar.gz", "sha1": SHA1}]},
        ],
    })
    assert chroot.groups["base"].default
    assert [g.name for g in chroot.resolve(None)] == ["base"]
    assert [g.name for g in chroot.resolve(["tools", "base"])] == ["tools", "base"]
    assert not chroot.groups["base"].files[0].verified


def test_parse_chroot_unknown_default_group():
    with pytest.raises(DescriptorError) as exc:
        parse_chroot({"default_groups": ["nope"], "groups": []})
    assert exc.value.kind == DescriptorError.REFERENTIAL


def test_parse_result_fields():
    res = parse_result("app", {"version": 1.2, "depends": ["lib"], "sources": ["app"], "env": {"A": "b"}})
    assert res.version == "1.2"
    assert res.depends == ["lib"]
    assert res.chroot == []
    assert res.env.get("A").value == "b"


def test_parse_result_self_dependency_is_a_cycle():
    with pytest.raises(DescriptorError) as exc:
        parse_result("app", {"depends": ["app"]})
    assert exc.value.kind == DescriptorError.CYCLIC
    assert exc.value.cycle == ["app", "app"]


def test_parse_result_duplicate_dependency():
    with pytest.raises(DescriptorError, match="duplicate entry"):
        parse_result("app", {"depends": ["lib", "lib"]})
