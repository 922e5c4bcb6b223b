# resforge/pkgtool.py
"""
pkgtool.py - package a sandbox's out/ directory into an immutable Result

Features:
- Deterministic walk of out/ (sorted), per-file SHA-256, size and executable bit
- Bundle checksum over sorted (relative path, file digest, executable bit)
- `checksums` file and result.json metadata (name, version, buildid, dependencies, untrusted inputs)
- Compressed build log (build.log.gz) stored alongside, outside the bundle checksum
- Empty output is packaged but flagged (Result.empty + warning)
- Registration with the ContentStore (atomic)
"""

from __future__ import annotations

import gzip
import hashlib
import os
import shutil
import stat
import tempfile
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

from resforge.buildsystem import BuildVariables
from resforge.errors import PackageError
from resforge.logging import get_logger
from resforge.sandbox import BuildSandbox
from resforge.store import ContentHandle, ContentStore

logger = get_logger("pkgtool")

# -----------------------------
# Utilities
# -----------------------------
def _now_ts() -> int:
    return int(time.time())

def _sha256_file(path: str) -> str:
    h = hashlib.sha256()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(1024 * 1024), b""):
            h.update(chunk)
    return h.hexdigest()

def collect_files(out_dir: Path) -> List[Dict[str, Any]]:
    """Sorted file records of out_dir; symlinks are recorded by target, not followed."""
    records: List[Dict[str, Any]] = []
    for root, dirs, files in os.walk(out_dir):
        dirs.sort()
        names = sorted(files + [d for d in dirs if os.path.islink(os.path.join(root, d))])
        for f in names:
            full = os.path.join(root, f)
            rel = os.path.relpath(full, out_dir).replace(os.sep, "/")
            if os.path.islink(full):
                target = os.readlink(full)
                records.append({"path": rel, "sha256": hashlib.sha256(b"symlink:" + target.encode()).hexdigest(),
                                "size": 0, "executable": False, "symlink": target})
                continue
            mode = os.stat(full).st_mode
            records.append({"path": rel, "sha256": _sha256_file(full), "size": os.path.getsize(full),
                            "executable": bool(mode & stat.S_IXUSR)})
    records.sort(key=lambda r: r["path"])
    return records

def bundle_checksum(records: List[Dict[str, Any]]) -> str:
    h = hashlib.sha256()
    for r in sorted(records, key=lambda r: r["path"]):
        h.update(f"{r['path']}\0{r['sha256']}\0{int(r['executable'])}\n".encode("utf-8"))
    return h.hexdigest()

# -----------------------------
# Result
# -----------------------------
@dataclass
class Result:
    name: str
    version: str
    buildid: str
    checksum: str
    path: Path
    files: List[Dict[str, Any]] = field(default_factory=list)
    dependencies: Dict[str, str] = field(default_factory=dict)
    untrusted: List[str] = field(default_factory=list)
    empty: bool = False
    reused: bool = False

    @property
    def files_dir(self) -> Path:
        return self.path / "files"

    @classmethod
    def from_handle(cls, handle: ContentHandle, reused: bool = False) -> "Result":
        m = handle.meta
        return cls(name=handle.name, version=handle.version, buildid=handle.buildid, checksum=handle.checksum,
                   path=handle.path, files=list(m.get("files", [])), dependencies=dict(m.get("dependencies", {})),
                   untrusted=list(m.get("untrusted", [])), empty=handle.empty, reused=reused)

# -----------------------------
# Packager
# -----------------------------
class Packager:
    def __init__(self, store: ContentStore):
        self.store = store

    def package(self, sandbox: BuildSandbox, bv: BuildVariables, version: str,
                dependency_versions: Optional[Dict[str, str]] = None, log_path: Optional[Path] = None) -> Result:
        out_dir = sandbox.out_dir
        if not out_dir.is_dir():
            raise PackageError(f"result {bv.r}: output directory {out_dir} is missing")
        stage = Path(tempfile.mkdtemp(prefix="package-", dir=str(sandbox.workdir)))
        try:
            records = collect_files(out_dir)
            checksum = bundle_checksum(records)
            shutil.copytree(str(out_dir), str(stage / "files"), symlinks=True)
            with open(stage / "checksums", "w", encoding="utf-8") as fh:
                for r in records:
                    fh.write(f"{r['sha256']}  {r['path']}\n")
            if log_path is not None and Path(log_path).is_file():
                with open(log_path, "rb") as src, gzip.GzipFile(str(stage / "build.log.gz"), "wb", mtime=0) as dst:
                    shutil.copyfileobj(src, dst)
            meta = {
                "name": bv.r,
                "version": version,
                "buildid": bv.buildid,
                "checksum": checksum,
                "project": bv.project_name,
                "release_id": bv.release_id,
                "files": records,
                "dependencies": dict(sorted((dependency_versions or {}).items())),
                "untrusted": list(sandbox.untrusted),
                "empty": not records,
                "created_at": _now_ts(),
            }
            if not records:
                logger.warning("[%s] out/ is empty; packaging an empty result", bv.r)
            handle = self.store.put_result(stage, meta)
        except OSError as e:
            raise PackageError(f"result {bv.r}: packaging failed: {e}") from e
        finally:
            shutil.rmtree(stage, ignore_errors=True)
        logger.info("[%s] packaged %d file(s), checksum %s", bv.r, len(records), checksum[:12])
        return Result.from_handle(handle)
