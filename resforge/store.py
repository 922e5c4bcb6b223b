# resforge/store.py
"""
store.py - content store for packaged results

Layout under <store.dir>/results/<name>/<buildid>/:
  files/        packaged contents of out/
  checksums     "<sha256>  <relpath>" per file
  result.json   metadata (name, version, buildid, checksum, dependencies, ...)
  build.log.gz  compressed build log

Results are immutable: put_result copies into a temp dir and renames it into
place; the `results` table indexes them by (name, buildid) and (name, version).
"""

from __future__ import annotations

import json
import os
import shutil
import tempfile
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from resforge.db import DB
from resforge.errors import NotFound, PackageError
from resforge.logging import get_logger

logger = get_logger("store")


@dataclass
class ContentHandle:
    name: str
    version: str
    buildid: str
    checksum: str
    path: Path
    empty: bool = False
    meta: Dict[str, Any] = field(default_factory=dict)

    @property
    def files_dir(self) -> Path:
        return self.path / "files"

    def files(self) -> List[str]:
        return sorted(str(p.relative_to(self.files_dir)) for p in self.files_dir.rglob("*")
                      if p.is_file() or p.is_symlink())

    @classmethod
    def from_dir(cls, path: Path) -> "ContentHandle":
        meta = json.loads((path / "result.json").read_text(encoding="utf-8"))
        return cls(name=meta["name"], version=meta["version"], buildid=meta["buildid"],
                   checksum=meta["checksum"], path=path, empty=bool(meta.get("empty")), meta=meta)


class ContentStore:
    def __init__(self, root: Union[str, Path], db: Optional[DB] = None):
        self.root = Path(root)
        self.results_dir = self.root / "results"
        self.results_dir.mkdir(parents=True, exist_ok=True)
        self._db = db
        self._locks: Dict[str, threading.Lock] = {}
        self._guard = threading.Lock()

    def _lock_for(self, key: str) -> threading.Lock:
        with self._guard:
            return self._locks.setdefault(key, threading.Lock())

    # -------------------------
    # write
    # -------------------------
    def put_result(self, result_dir: Union[str, Path], meta: Dict[str, Any]) -> ContentHandle:
        """Store a prepared result directory (files/, checksums, result.json) atomically."""
        for k in ("name", "version", "buildid", "checksum"):
            if not meta.get(k):
                raise PackageError(f"result metadata lacks {k!r}")
        name, buildid = meta["name"], meta["buildid"]
        final = self.results_dir / name / buildid
        with self._lock_for(f"{name}/{buildid}"):
            final.parent.mkdir(parents=True, exist_ok=True)
            tmp = Path(tempfile.mkdtemp(prefix=".incoming-", dir=str(final.parent)))
            try:
                shutil.copytree(str(result_dir), str(tmp / "r"), symlinks=True)
                (tmp / "r" / "result.json").write_text(json.dumps(meta, indent=2, sort_keys=True), encoding="utf-8")
                if final.exists():
                    # same buildid rebuilt (force_rebuild): swap out the previous copy
                    old = tmp / "old"
                    os.replace(final, old)
                os.replace(tmp / "r", final)
            except OSError as e:
                raise PackageError(f"storing result {name} failed: {e}") from e
            finally:
                shutil.rmtree(tmp, ignore_errors=True)
            if self._db is not None:
                with self._db.transaction() as cur:
                    cur.execute("DELETE FROM results WHERE name = ? AND buildid = ?", (name, buildid))
                    cur.execute(
                        "INSERT INTO results (name, version, buildid, checksum, path, empty, created_at) VALUES (?, ?, ?, ?, ?, ?, ?)",
                        (name, meta["version"], buildid, meta["checksum"], str(final), int(bool(meta.get("empty"))), int(time.time())),
                    )
        logger.info("stored result %s %s (%s)", name, meta["version"], meta["checksum"][:12])
        return ContentHandle.from_dir(final)

    # -------------------------
    # read
    # -------------------------
    def _scan(self, name: str) -> List[ContentHandle]:
        d = self.results_dir / name
        if not d.is_dir():
            return []
        out = []
        for p in d.iterdir():
            if not p.name.startswith(".") and (p / "result.json").is_file():
                out.append(ContentHandle.from_dir(p))
        return sorted(out, key=lambda h: h.meta.get("created_at", 0))

    def find_by_buildid(self, name: str, buildid: str) -> Optional[ContentHandle]:
        path = self.results_dir / name / buildid
        if not (path / "result.json").is_file():
            return None
        return ContentHandle.from_dir(path)

    def get_result(self, name: str, version: Optional[str] = None) -> ContentHandle:
        """Most recently stored result of name (and version, when given)."""
        if self._db is not None:
            sql = "SELECT path FROM results WHERE name = ?"
            params: List[Any] = [name]
            if version is not None:
                sql += " AND version = ?"
                params.append(version)
            for row in self._db.fetchall(sql + " ORDER BY created_at DESC, id DESC", params):
                p = Path(row["path"])
                if (p / "result.json").is_file():
                    return ContentHandle.from_dir(p)
        else:
            for h in reversed(self._scan(name)):
                if version is None or h.version == version:
                    return h
        raise NotFound(f"no result {name}" + (f" version {version}" if version else ""))

    def list_results(self, name: Optional[str] = None) -> List[ContentHandle]:
        names = [name] if name else sorted(p.name for p in self.results_dir.iterdir() if p.is_dir())
        out: List[ContentHandle] = []
        for n in names:
            out.extend(self._scan(n))
        return out
