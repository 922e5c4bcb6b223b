# resforge/sandbox.py
"""
sandbox.py - build sandboxes and the provisioner that fills them

Features:
- BuildSandbox: one exclusively owned tree per build execution
  <workdir_root>/<result>-XXXX/chroot/             chroot base (root of the sandbox)
  <workdir_root>/<result>-XXXX/chroot/<tmpdir>/    T: build/ root/ env/ init/ script/ in/ dep/ out/
- SandboxManager: create, discard (or retain failed sandboxes), stage dependencies read-only
- Provisioner.plan(): dry run over a virtual path map (OverlayPlan), conflict detection
- Provisioner.provision(): chroot groups in order, then sources (unpack/patch/copy) in order
- Timestamp normalization so identical inputs give byte-identical trees
"""

from __future__ import annotations

import os
import shutil
import stat
import tempfile
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Union

from resforge import archives
from resforge.config import Config, from_dict
from resforge.descriptors import COPY, PATCH, UNPACK, FileEntry, SourceDescriptor
from resforge.errors import BuildCancelled, BuildFailed, ForgeError, ProvisionError
from resforge.fetcher import Fetcher, FetchedFile
from resforge.logging import get_logger
from resforge.overlay import CHROOT, LINK, Origin, OverlayPlan
from resforge.patches import PatchApplier, patch_targets
from resforge.project import ProjectGraph

logger = get_logger("sandbox")

SANDBOX_DIRS = ("build", "root", "env", "init", "script", "in", "dep", "out")

# ----------------------------
# Utilities
# ----------------------------
def _ensure_dir(path: Path):
    path.mkdir(parents=True, exist_ok=True)

def _make_writable(root: Path):
    for dirpath, dirnames, filenames in os.walk(root):
        for name in dirnames + filenames:
            p = os.path.join(dirpath, name)
            if not os.path.islink(p):
                os.chmod(p, os.stat(p).st_mode | stat.S_IWUSR | stat.S_IRUSR | (stat.S_IXUSR if name in dirnames else 0))
    if root.exists() and not root.is_symlink():
        os.chmod(root, os.stat(root).st_mode | stat.S_IRWXU)

def _make_readonly(root: Path):
    for dirpath, dirnames, filenames in os.walk(root):
        for name in filenames + dirnames:
            p = os.path.join(dirpath, name)
            if not os.path.islink(p):
                os.chmod(p, os.stat(p).st_mode & ~(stat.S_IWUSR | stat.S_IWGRP | stat.S_IWOTH))
    os.chmod(root, os.stat(root).st_mode & ~(stat.S_IWUSR | stat.S_IWGRP | stat.S_IWOTH))

def normalize_mtimes(root: Path, epoch: int):
    """Set atime/mtime of every path under root (symlinks included) to epoch."""
    for dirpath, dirnames, filenames in os.walk(root, topdown=False):
        for name in filenames + dirnames:
            os.utime(os.path.join(dirpath, name), (epoch, epoch), follow_symlinks=False)
    os.utime(root, (epoch, epoch))

def resolve_epoch(cfg: Config) -> int:
    val = cfg.get("provision.normalize_mtime")
    if val is None:
        val = os.environ.get("SOURCE_DATE_EPOCH", 0)
    try:
        return int(val)
    except (TypeError, ValueError) as e:
        raise ProvisionError(f"invalid timestamp for mtime normalization: {val!r}") from e

# ----------------------------
# BuildSandbox
# ----------------------------
@dataclass
class BuildSandbox:
    result: str
    workdir: Path
    tmpdir: str = "tmp/forge"
    untrusted: List[str] = field(default_factory=list)
    plan: Optional[OverlayPlan] = None

    @property
    def base(self) -> Path:
        """Root of the chroot; T lives below it."""
        return self.workdir / "chroot"

    @property
    def T(self) -> Path:
        return self.base / self.tmpdir

    @property
    def chroot_T(self) -> str:
        """T as seen from inside the chroot."""
        return "/" + self.tmpdir.strip("/")

    def path(self, *parts: str) -> Path:
        return self.T.joinpath(*parts)

    @property
    def build_dir(self) -> Path:
        return self.path("build")

    @property
    def out_dir(self) -> Path:
        return self.path("out")

    @property
    def dep_dir(self) -> Path:
        return self.path("dep")

    def make_layout(self):
        for d in SANDBOX_DIRS:
            _ensure_dir(self.path(d))

    def stage_dependency(self, name: str, files_dir: Path) -> Path:
        """Copy a packaged dependency into dep/<name> and make it read-only."""
        target = self.dep_dir / name
        if target.exists():
            raise ProvisionError(f"dependency {name} already staged in {self.workdir}")
        if Path(files_dir).is_dir():
            shutil.copytree(str(files_dir), str(target), symlinks=True)
        else:
            _ensure_dir(target)
        _make_readonly(target)
        return target


class SandboxManager:
    def __init__(self, workdir_root: Union[str, Path], keep_failed: bool = False, tmpdir: str = "tmp/forge"):
        self.workdir_root = Path(workdir_root)
        _ensure_dir(self.workdir_root)
        self.keep_failed = keep_failed
        self.tmpdir = tmpdir.strip("/") or "tmp/forge"
        self._lock = threading.Lock()
        self._active: Dict[str, BuildSandbox] = {}

    def create(self, result: str) -> BuildSandbox:
        workdir = Path(tempfile.mkdtemp(prefix=f"{result}-", dir=str(self.workdir_root)))
        sb = BuildSandbox(result=result, workdir=workdir, tmpdir=self.tmpdir)
        _ensure_dir(sb.base)
        with self._lock:
            self._active[str(workdir)] = sb
        logger.debug("created sandbox for %s at %s", result, workdir)
        return sb

    def discard(self, sandbox: BuildSandbox):
        with self._lock:
            self._active.pop(str(sandbox.workdir), None)
        if sandbox.workdir.exists():
            _make_writable(sandbox.workdir)
            shutil.rmtree(sandbox.workdir)
        logger.debug("discarded sandbox %s", sandbox.workdir)

    def finish(self, sandbox: BuildSandbox, failed: bool) -> Optional[Path]:
        """Discard sandbox; failed ones are kept when keep_failed is set (returns the kept path)."""
        if failed and self.keep_failed:
            with self._lock:
                self._active.pop(str(sandbox.workdir), None)
            logger.warning("keeping failed sandbox of %s at %s", sandbox.result, sandbox.workdir)
            return sandbox.workdir
        self.discard(sandbox)
        return None

    def active(self) -> List[BuildSandbox]:
        with self._lock:
            return list(self._active.values())

# ----------------------------
# Provisioner
# ----------------------------
class Provisioner:
    def __init__(self, project: ProjectGraph, fetcher: Fetcher, sandboxes: SandboxManager,
                 cfg: Optional[Config] = None):
        self.project = project
        self.fetcher = fetcher
        self.sandboxes = sandboxes
        self.cfg = cfg or from_dict()
        self.copy_conflict = self.cfg.get("provision.copy_conflict", "last-wins")
        self.patcher = PatchApplier(self.cfg.get("provision.patch_backend", "builtin"))

    # ----------------------------
    # Dry run
    # ----------------------------
    def plan(self, result: str) -> OverlayPlan:
        """Compute the sandbox composition of result without materializing it."""
        plan = OverlayPlan()
        tmp = self.sandboxes.tmpdir
        for group in self.project.chroot_groups_for(result):
            for ref in group.files:
                ff = self.fetcher.fetch_ref(ref)
                self._note_trust(plan, ff)
                origin = Origin(CHROOT, f"group {group.name}", ref.servloc)
                members = archives.list_members(ff.path, ff.basename)
                plan.add_tree("", [m.name for m in members if m.type != archives.DIR], origin)
        for src in self.project.sources_for(result):
            self._plan_source(plan, src, f"{tmp}/build")
        self._check_copy_conflicts(plan, result)
        return plan

    def _plan_source(self, plan: OverlayPlan, src: SourceDescriptor, build: str):
        for f in src.files:
            ff = self.fetcher.fetch_ref(f)
            self._note_trust(plan, ff)
            origin = Origin(f.action, f"source {src.name}", f.servloc)
            if f.action == UNPACK:
                members = archives.list_members(ff.path, ff.basename)
                if f.target not in archives.top_level_names(members):
                    raise ProvisionError(f"source {src.name}: {f.servloc} does not create directory {f.target!r}")
                plan.add_tree(build, [m.name for m in members if m.type != archives.DIR], origin)
                if f.target != src.name:
                    plan.add(f"{build}/{src.name}", Origin(LINK, f"source {src.name}", f.target))
            elif f.action == PATCH:
                plan.steps.append(origin)
                text = ff.read_bytes().decode("latin-1")
                for rel, action in patch_targets(text, f.patch_level, f.servloc):
                    full = f"{build}/{src.name}/{rel}"
                    if action == "delete":
                        plan.remove(full)
                    else:
                        plan.modify(full, origin)
            else:
                dest = self._copy_dest_rel(plan, f"{build}/{src.name}", f)
                plan.add_tree("", [dest], origin)

    @staticmethod
    def _copy_dest_rel(plan: OverlayPlan, srcdir: str, f: FileEntry) -> str:
        dest = f"{srcdir}/{f.target.strip('/')}" if f.target.strip("/") else srcdir
        prefix = dest.rstrip("/") + "/"
        if f.target.endswith("/") or dest == srcdir or any(p.startswith(prefix) for p in plan.entries):
            dest = f"{dest.rstrip('/')}/{os.path.basename(f.location)}"
        return dest

    @staticmethod
    def _note_trust(plan: OverlayPlan, ff: FetchedFile):
        if not ff.trust.trusted and ff.servloc not in plan.untrusted:
            plan.untrusted.append(ff.servloc)

    def _check_copy_conflicts(self, plan: OverlayPlan, result: str):
        for c in plan.conflicts:
            if c.copy_overlap:
                if self.copy_conflict == "error":
                    raise ProvisionError(f"result {result}: {c.path} copied by both {c.earlier} and {c.later}")
                logger.warning("result %s: %s copied by both %s and %s; the later one wins",
                               result, c.path, c.earlier, c.later)
            else:
                logger.debug("result %s: %s from %s overlays %s", result, c.path, c.later, c.earlier)

    # ----------------------------
    # Materialization
    # ----------------------------
    def provision(self, result: str, cancel_event: Optional[threading.Event] = None,
                  deadline: Optional[float] = None) -> BuildSandbox:
        """Build the sandbox of result; the partial sandbox is discarded on any failure.

        deadline is a time.monotonic() value; once it has passed, the next step raises BuildFailed(timeout=True).
        """
        plan = self.plan(result)
        sandbox = self.sandboxes.create(result)
        sandbox.plan = plan
        try:
            for group in self.project.chroot_groups_for(result):
                for ref in group.files:
                    self._check_interrupt(cancel_event, deadline, result)
                    ff = self.fetcher.fetch_ref(ref)
                    logger.info("[%s] chroot group %s: extracting %s", result, group.name, ref.servloc)
                    archives.extract(ff.path, sandbox.base, ff.basename)
            sandbox.make_layout()
            for src in self.project.sources_for(result):
                self._apply_source(sandbox, src, cancel_event, deadline)
            self._check_interrupt(cancel_event, deadline, result)
            normalize_mtimes(sandbox.base, resolve_epoch(self.cfg))
        except ForgeError:
            self.sandboxes.discard(sandbox)
            raise
        except OSError as e:
            self.sandboxes.discard(sandbox)
            raise ProvisionError(f"result {result}: provisioning failed: {e}") from e
        sandbox.untrusted = list(plan.untrusted)
        if sandbox.untrusted:
            logger.warning("[%s] sandbox contains unverified inputs: %s", result, ", ".join(sandbox.untrusted))
        return sandbox

    @staticmethod
    def _check_interrupt(cancel_event: Optional[threading.Event], deadline: Optional[float], result: str):
        if cancel_event is not None and cancel_event.is_set():
            raise BuildCancelled(f"result {result}: cancelled during provisioning")
        if deadline is not None and time.monotonic() >= deadline:
            raise BuildFailed(f"result {result}: timed out during provisioning", timeout=True)

    def _apply_source(self, sandbox: BuildSandbox, src: SourceDescriptor,
                      cancel_event: Optional[threading.Event] = None, deadline: Optional[float] = None):
        build = sandbox.build_dir
        srcdir = build / src.name
        for f in src.files:
            self._check_interrupt(cancel_event, deadline, sandbox.result)
            ff = self.fetcher.fetch_ref(f)
            if f.action == UNPACK:
                logger.info("[%s] source %s: unpacking %s", sandbox.result, src.name, f.servloc)
                archives.extract(ff.path, build, ff.basename)
                if not (build / f.target).is_dir():
                    raise ProvisionError(f"source {src.name}: {f.servloc} did not create directory {f.target!r}")
                if f.target != src.name and not os.path.lexists(srcdir):
                    os.symlink(f.target, srcdir)
            elif f.action == PATCH:
                logger.info("[%s] source %s: applying %s (-p%d)", sandbox.result, src.name, f.servloc, f.patch_level)
                self.patcher.apply(ff.path, srcdir, f.patch_level, f.servloc)
            elif f.action == COPY:
                _ensure_dir(srcdir)
                dest = srcdir / f.target.strip("/") if f.target.strip("/") else srcdir
                if f.target.endswith("/") or dest.is_dir():
                    dest = dest / ff.basename
                logger.info("[%s] source %s: copying %s to %s", sandbox.result, src.name, f.servloc,
                            dest.relative_to(build))
                _ensure_dir(dest.parent)
                if dest.is_symlink() or dest.exists():
                    dest.unlink()
                shutil.copyfile(ff.path, dest)
                os.chmod(dest, 0o644)
