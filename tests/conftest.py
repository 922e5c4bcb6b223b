import hashlib
import io
import shutil
import tarfile
from pathlib import Path

import pytest
import yaml

from resforge.config import from_dict
from resforge.fetcher import Fetcher
from resforge.project import load_project
from resforge.store import ContentStore


def digests(data: bytes):
    return {"sha1": hashlib.sha1(data).hexdigest(), "sha256": hashlib.sha256(data).hexdigest()}


def tar_bytes(members):
    """members: {"dir/name": "text" | b"bytes" | ("text", mode)}; directories are implied."""
    buf = io.BytesIO()
    with tarfile.open(fileobj=buf, mode="w:gz") as tar:
        dirs = set()
        for name in sorted(members):
            parts = name.split("/")[:-1]
            for i in range(1, len(parts) + 1):
                d = "/".join(parts[:i])
                if d not in dirs:
                    dirs.add(d)
                    info = tarfile.TarInfo(d)
                    info.type = tarfile.DIRTYPE
                    info.mode = 0o755
                    tar.addfile(info)
            val = members[name]
            mode = 0o644
            if isinstance(val, tuple):
                val, mode = val
            data = val.encode("utf-8") if isinstance(val, str) else val
            info = tarfile.TarInfo(name)
            info.size = len(data)
            info.mode = mode
            tar.addfile(info, io.BytesIO(data))
    return buf.getvalue()


class ProjectBuilder:
    """Writes a throwaway project tree plus file:// servers under a tmp dir."""

    def __init__(self, base: Path):
        self.base = base
        self.root = base / "project"
        (self.root / "proj").mkdir(parents=True)
        self.servers = {}
        self.info = {"name": "demo", "release_id": "r1", "servers": {}}
        self.add_server("upstream")

    def add_server(self, name):
        d = self.base / "servers" / name
        d.mkdir(parents=True, exist_ok=True)
        self.servers[name] = d
        self.info["servers"][name] = "file://" + str(d)
        return d

    def put(self, location, data, server="upstream"):
        if isinstance(data, str):
            data = data.encode("utf-8")
        path = self.servers[server] / location
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(data)
        return digests(data)

    def put_tar(self, location, members, server="upstream"):
        return self.put(location, tar_bytes(members), server)

    def _dump(self, path: Path, data):
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(yaml.safe_dump(data, sort_keys=False), encoding="utf-8")

    def source(self, name, files, **raw):
        raw.setdefault("server", "upstream")
        raw["file"] = files
        self._dump(self.root / "src" / name / "source.yaml", raw)

    def result(self, name, script="true\n", **raw):
        self._dump(self.root / "res" / name / "result.yaml", raw)
        (self.root / "res" / name / "build-script").write_text(script, encoding="utf-8")

    def chroot(self, **raw):
        self._dump(self.root / "proj" / "chroot.yaml", raw)

    def env(self, **raw):
        self._dump(self.root / "proj" / "env.yaml", raw)

    def init(self, name, text):
        path = self.root / "proj" / "init" / name
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(text, encoding="utf-8")

    def write(self, **info):
        data = dict(self.info, **info)
        self._dump(self.root / "proj" / "project.yaml", data)

    def load(self):
        if not (self.root / "proj" / "project.yaml").exists():
            self.write()
        return load_project(str(self.root))


@pytest.fixture
def builder(tmp_path):
    return ProjectBuilder(tmp_path)


@pytest.fixture
def cfg_factory(tmp_path):
    def make(**sections):
        base = {
            "store": {"dir": str(tmp_path / "store")},
            "provision": {"workdir_root": str(tmp_path / "sandboxes"), "normalize_mtime": 0},
            "build": {"log_dir": str(tmp_path / "logs"), "backend": "direct", "shell": shutil.which("bash") or "/bin/bash"},
            "fetcher": {"backoff_base": 0, "backoff_max": 0},
        }
        for section, values in sections.items():
            base[section] = dict(base.get(section, {}), **values)
        return from_dict(base)
    return make


@pytest.fixture
def cfg(cfg_factory):
    return cfg_factory()


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def fetcher_factory(tmp_path, cfg, sleeps):
    def make(project, db=None, config=None):
        return Fetcher(project.info.servers, tmp_path / "fetch", db=db, cfg=config or cfg, sleep=sleeps.append)
    return make


@pytest.fixture
def store(tmp_path):
    return ContentStore(tmp_path / "store")
