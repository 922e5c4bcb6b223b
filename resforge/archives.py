# resforge/archives.py
"""
archives.py - list and extract source and chroot archives

Supported: .tar, .tar.gz/.tgz, .tar.bz2/.tbz2, .tar.xz/.txz, .zip

Extraction overlays onto the destination member by member: an existing path
is replaced by the archive's entry (later archives win). Members whose names
are absolute, contain "..", or would resolve outside the destination are
rejected with ProvisionError before anything is written for that member.
"""

from __future__ import annotations

import os
import shutil
import stat
import tarfile
import zipfile
from dataclasses import dataclass
from pathlib import Path, PurePosixPath
from typing import List, Optional

from resforge.errors import ProvisionError
from resforge.logging import get_logger

logger = get_logger("archives")

_TAR_SUFFIXES = (".tar", ".tar.gz", ".tgz", ".tar.bz2", ".tbz2", ".tar.xz", ".txz")
_ZIP_SUFFIXES = (".zip",)

FILE = "file"
DIR = "dir"
SYMLINK = "symlink"
HARDLINK = "hardlink"


@dataclass(frozen=True)
class Member:
    name: str
    type: str
    mode: int = 0o644
    linkname: Optional[str] = None


def archive_kind(name: str) -> Optional[str]:
    low = name.lower()
    if low.endswith(_TAR_SUFFIXES):
        return "tar"
    if low.endswith(_ZIP_SUFFIXES):
        return "zip"
    return None

def is_archive(name: str) -> bool:
    return archive_kind(name) is not None

def _clean_name(raw: str, archive: str) -> str:
    name = raw.replace("\\", "/")
    while name.startswith("./"):
        name = name[2:]
    p = PurePosixPath(name)
    if p.is_absolute() or ".." in p.parts:
        raise ProvisionError(f"{archive}: member {raw!r} escapes the extraction root")
    return str(p) if str(p) != "." else ""

# ----------------------------
# Listing
# ----------------------------
def list_members(path: Path, display_name: Optional[str] = None) -> List[Member]:
    label = display_name or Path(path).name
    kind = archive_kind(label) or archive_kind(str(path))
    try:
        if kind == "tar":
            out = []
            with tarfile.open(str(path), "r:*") as tar:
                for m in tar.getmembers():
                    name = _clean_name(m.name, label)
                    if not name:
                        continue
                    if m.isdir():
                        out.append(Member(name, DIR, m.mode & 0o7777))
                    elif m.issym():
                        out.append(Member(name, SYMLINK, 0o777, m.linkname))
                    elif m.islnk():
                        out.append(Member(name, HARDLINK, m.mode & 0o7777, _clean_name(m.linkname, label)))
                    elif m.isfile():
                        out.append(Member(name, FILE, m.mode & 0o7777))
            return out
        if kind == "zip":
            out = []
            with zipfile.ZipFile(str(path)) as zf:
                for info in zf.infolist():
                    name = _clean_name(info.filename.rstrip("/"), label)
                    if not name:
                        continue
                    mode = (info.external_attr >> 16) & 0o7777
                    if info.is_dir():
                        out.append(Member(name, DIR, mode or 0o755))
                    else:
                        out.append(Member(name, FILE, mode or 0o644))
            return out
    except (tarfile.TarError, zipfile.BadZipFile, OSError, EOFError) as e:
        raise ProvisionError(f"{label}: cannot read archive: {e}") from e
    raise ProvisionError(f"{label}: unsupported archive type")

# ----------------------------
# Extraction
# ----------------------------
def _clear(target: Path, want_dir: bool):
    if target.is_symlink() or (target.exists() and not target.is_dir()):
        target.unlink()
    elif target.is_dir() and not want_dir:
        shutil.rmtree(target)

def _safe_target(dest: Path, name: str, label: str) -> Path:
    target = dest / name
    parent = os.path.realpath(target.parent)
    root = os.path.realpath(dest)
    if parent != root and not parent.startswith(root + os.sep):
        raise ProvisionError(f"{label}: member {name!r} resolves outside the extraction root")
    return target

def extract(path: Path, dest: Path, display_name: Optional[str] = None) -> List[Member]:
    """Extract path into dest, overlaying existing content. Returns the members written."""
    label = display_name or Path(path).name
    dest = Path(dest)
    dest.mkdir(parents=True, exist_ok=True)
    kind = archive_kind(label) or archive_kind(str(path))
    members = list_members(path, label)
    try:
        if kind == "tar":
            with tarfile.open(str(path), "r:*") as tar:
                for m in tar.getmembers():
                    name = _clean_name(m.name, label)
                    if not name or not (m.isdir() or m.issym() or m.islnk() or m.isfile()):
                        if name:
                            logger.debug("%s: skipping special member %s", label, name)
                        continue
                    target = _safe_target(dest, name, label)
                    target.parent.mkdir(parents=True, exist_ok=True)
                    _clear(target, m.isdir())
                    if m.isdir():
                        target.mkdir(exist_ok=True)
                        os.chmod(target, (m.mode & 0o7777) | stat.S_IRWXU)
                    elif m.issym():
                        os.symlink(m.linkname, target)
                    elif m.islnk():
                        os.link(_safe_target(dest, _clean_name(m.linkname, label), label), target)
                    else:
                        src = tar.extractfile(m)
                        with src, open(target, "wb") as out:
                            shutil.copyfileobj(src, out)
                        os.chmod(target, (m.mode & 0o7777) | stat.S_IRUSR | stat.S_IWUSR)
        else:
            with zipfile.ZipFile(str(path)) as zf:
                for info in zf.infolist():
                    name = _clean_name(info.filename.rstrip("/"), label)
                    if not name:
                        continue
                    target = _safe_target(dest, name, label)
                    target.parent.mkdir(parents=True, exist_ok=True)
                    _clear(target, info.is_dir())
                    mode = (info.external_attr >> 16) & 0o7777
                    if info.is_dir():
                        target.mkdir(exist_ok=True)
                        continue
                    with zf.open(info) as src, open(target, "wb") as out:
                        shutil.copyfileobj(src, out)
                    os.chmod(target, (mode or 0o644) | stat.S_IRUSR | stat.S_IWUSR)
    except (tarfile.TarError, zipfile.BadZipFile, OSError, EOFError) as e:
        raise ProvisionError(f"{label}: extraction into {dest} failed: {e}") from e
    logger.debug("extracted %s into %s (%d members)", label, dest, len(members))
    return members

def top_level_names(members: List[Member]) -> List[str]:
    seen: List[str] = []
    for m in members:
        top = m.name.split("/", 1)[0]
        if top not in seen:
            seen.append(top)
    return seen
