import gzip
import json
import os

import pytest

from resforge.buildsystem import BuildVariables
from resforge.db import open_db
from resforge.errors import NotFound, PackageError
from resforge.pkgtool import Packager, bundle_checksum, collect_files
from resforge.sandbox import SandboxManager
from resforge.store import ContentStore


@pytest.fixture
def sandbox(cfg):
    manager = SandboxManager(cfg.get("provision.workdir_root"))
    sb = manager.create("hello")
    sb.make_layout()
    yield sb
    manager.discard(sb)


def _fill(out):
    (out / "bin").mkdir()
    (out / "bin" / "hello").write_text("#!/bin/sh\necho hello\n")
    os.chmod(out / "bin" / "hello", 0o755)
    (out / "README").write_text("hello\n")
    os.symlink("bin/hello", out / "hi")


def test_collect_files_is_sorted_and_records_symlinks(tmp_path):
    _fill(tmp_path)
    records = collect_files(tmp_path)
    assert [r["path"] for r in records] == ["README", "bin/hello", "hi"]
    assert records[1]["executable"]
    assert records[2]["symlink"] == "bin/hello"


def test_bundle_checksum_ignores_mtime_but_not_mode(tmp_path):
    _fill(tmp_path)
    before = bundle_checksum(collect_files(tmp_path))
    os.utime(tmp_path / "README", (12345, 12345))
    assert bundle_checksum(collect_files(tmp_path)) == before
    os.chmod(tmp_path / "README", 0o755)
    assert bundle_checksum(collect_files(tmp_path)) != before


def test_package_registers_result(sandbox, tmp_path):
    _fill(sandbox.out_dir)
    log = tmp_path / "build.hello.log"
    log.write_text("+ make\n")
    store = ContentStore(tmp_path / "store", db=open_db(tmp_path / "db.sqlite3"))
    bv = BuildVariables.for_sandbox(sandbox, "demo", "r1", "f" * 64)
    sandbox.untrusted = ["up:extra.conf"]
    result = Packager(store).package(sandbox, bv, "1.0", {"lib": "2.0"}, log_path=log)
    assert result.name == "hello"
    assert result.version == "1.0"
    assert not result.empty
    assert result.untrusted == ["up:extra.conf"]
    assert result.dependencies == {"lib": "2.0"}
    assert (result.files_dir / "bin" / "hello").read_text() == "#!/bin/sh\necho hello\n"
    assert os.readlink(result.files_dir / "hi") == "bin/hello"
    meta = json.loads((result.path / "result.json").read_text())
    assert meta["checksum"] == result.checksum
    assert meta["release_id"] == "r1"
    with gzip.open(result.path / "build.log.gz", "rt") as fh:
        assert fh.read() == "+ make\n"
    assert "README" in (result.path / "checksums").read_text()

    assert store.find_by_buildid("hello", "f" * 64).checksum == result.checksum
    assert store.get_result("hello").checksum == result.checksum
    assert store.get_result("hello", "1.0").path == result.path
    with pytest.raises(NotFound):
        store.get_result("hello", "9.9")


def test_same_output_same_checksum(cfg, store, tmp_path):
    manager = SandboxManager(cfg.get("provision.workdir_root"))
    checksums = []
    for buildid in ("1" * 64, "2" * 64):
        sb = manager.create("hello")
        sb.make_layout()
        _fill(sb.out_dir)
        bv = BuildVariables.for_sandbox(sb, "demo", "r1", buildid)
        checksums.append(Packager(store).package(sb, bv, "1.0").checksum)
        manager.discard(sb)
    assert checksums[0] == checksums[1]
    assert len(store.list_results("hello")) == 2


def test_empty_output_is_flagged(sandbox, store):
    bv = BuildVariables.for_sandbox(sandbox, "demo", "r1", "e" * 64)
    result = Packager(store).package(sandbox, bv, "1.0")
    assert result.empty
    assert result.files == []


def test_missing_out_dir(sandbox, store):
    sandbox.out_dir.rmdir()
    bv = BuildVariables.for_sandbox(sandbox, "demo", "r1", "e" * 64)
    with pytest.raises(PackageError, match="output directory"):
        Packager(store).package(sandbox, bv, "1.0")
    assert store.find_by_buildid("hello", "e" * 64) is None


def test_store_without_db_scans_directories(store, tmp_path):
    with pytest.raises(NotFound):
        store.get_result("nothing")
    staged = tmp_path / "staged"
    (staged / "files").mkdir(parents=True)
    handle = store.put_result(staged, {"name": "x", "version": "1", "buildid": "a" * 64, "checksum": "c" * 64})
    assert store.get_result("x").path == handle.path
    assert store.list_results() == [handle]


def test_store_rejects_incomplete_metadata(store, tmp_path):
    with pytest.raises(PackageError, match="lacks 'checksum'"):
        store.put_result(tmp_path, {"name": "x", "version": "1", "buildid": "a"})
