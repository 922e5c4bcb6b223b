import io
import os
import tarfile
import zipfile

import pytest

from resforge import archives
from resforge.errors import ProvisionError

from conftest import tar_bytes


def _write(tmp_path, name, data):
    path = tmp_path / name
    path.write_bytes(data)
    return path


def test_extract_tar(tmp_path):
    path = _write(tmp_path, "hello-1.0.tar.gz", tar_bytes({
        "hello-1.0/README": "hi\n",
        "hello-1.0/bin/run": ("#!/bin/sh\necho hi\n", 0o755),
    }))
    dest = tmp_path / "out"
    members = archives.extract(path, dest)
    assert (dest / "hello-1.0" / "README").read_text() == "hi\n"
    assert os.access(dest / "hello-1.0" / "bin" / "run", os.X_OK)
    assert archives.top_level_names(members) == ["hello-1.0"]


def test_extract_overlays_existing_content(tmp_path):
    dest = tmp_path / "root"
    (dest / "etc").mkdir(parents=True)
    (dest / "etc" / "issue").write_text("old\n")
    (dest / "etc" / "keep").write_text("keep\n")
    path = _write(tmp_path, "layer.tar", tar_bytes({"etc/issue": "new\n"}))
    archives.extract(path, dest)
    assert (dest / "etc" / "issue").read_text() == "new\n"
    assert (dest / "etc" / "keep").read_text() == "keep\n"


def test_symlink_members(tmp_path):
    buf = io.BytesIO()
    with tarfile.open(fileobj=buf, mode="w") as tar:
        data = b"payload"
        info = tarfile.TarInfo("pkg/real")
        info.size = len(data)
        tar.addfile(info, io.BytesIO(data))
        link = tarfile.TarInfo("pkg/alias")
        link.type = tarfile.SYMTYPE
        link.linkname = "real"
        tar.addfile(link)
    path = _write(tmp_path, "pkg.tar", buf.getvalue())
    members = archives.list_members(path)
    assert [(m.name, m.type) for m in members] == [("pkg/real", archives.FILE), ("pkg/alias", archives.SYMLINK)]
    archives.extract(path, tmp_path / "out")
    assert os.readlink(tmp_path / "out" / "pkg" / "alias") == "real"


@pytest.mark.parametrize("name", ["../evil", "/etc/passwd", "a/../../evil"])
def test_escaping_members_rejected(tmp_path, name):
    buf = io.BytesIO()
    with tarfile.open(fileobj=buf, mode="w") as tar:
        info = tarfile.TarInfo(name)
        info.size = 1
        tar.addfile(info, io.BytesIO(b"x"))
    path = _write(tmp_path, "evil.tar", buf.getvalue())
    with pytest.raises(ProvisionError, match="escapes the extraction root"):
        archives.extract(path, tmp_path / "out")
    assert not (tmp_path / "evil").exists()


def test_write_through_symlink_rejected(tmp_path):
    buf = io.BytesIO()
    with tarfile.open(fileobj=buf, mode="w") as tar:
        link = tarfile.TarInfo("escape")
        link.type = tarfile.SYMTYPE
        link.linkname = str(tmp_path)
        tar.addfile(link)
        info = tarfile.TarInfo("escape/owned")
        info.size = 1
        tar.addfile(info, io.BytesIO(b"x"))
    path = _write(tmp_path, "sneaky.tar", buf.getvalue())
    with pytest.raises(ProvisionError, match="outside the extraction root"):
        archives.extract(path, tmp_path / "out")
    assert not (tmp_path / "owned").exists()


def test_zip_archives(tmp_path):
    buf = io.BytesIO()
    with zipfile.ZipFile(buf, "w") as zf:
        zf.writestr("tool-2/main.py", "print('hi')\n")
    path = _write(tmp_path, "tool-2.zip", buf.getvalue())
    archives.extract(path, tmp_path / "out")
    assert (tmp_path / "out" / "tool-2" / "main.py").read_text() == "print('hi')\n"


def test_display_name_selects_format(tmp_path):
    path = _write(tmp_path, "blob", tar_bytes({"a/b": "c"}))
    assert archives.list_members(path, "blob.tar.gz")[-1].name == "a/b"


def test_unsupported_and_corrupt(tmp_path):
    assert not archives.is_archive("notes.txt")
    path = _write(tmp_path, "broken.tar.gz", b"not a tarball")
    with pytest.raises(ProvisionError, match="cannot read archive"):
        archives.list_members(path)
    with pytest.raises(ProvisionError, match="unsupported archive type"):
        archives.list_members(_write(tmp_path, "notes.txt", b"x"))
