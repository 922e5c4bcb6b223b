# resforge/project.py
"""
project.py - load a project tree into a validated ProjectGraph

Features:
- Locate the project root (walk up to proj/project.yaml)
- Parse project, chroot, env, licence, source and result descriptors
- Referential validation (servers, sources, chroot groups, licences, dependencies)
- Cycle detection reporting the full loop as a path of names
- Deterministic topological order (dsort) and dependency listing (dlist)
- buildid / sourceid digests used for result reuse

load_project() is pure: it reads descriptor files and never writes.
"""

from __future__ import annotations

import hashlib
import os
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional
from urllib.parse import urlparse

import yaml

from resforge.descriptors import (
    ChrootDescriptor,
    ChrootGroup,
    Environment,
    FileRef,
    ResultDescriptor,
    SourceDescriptor,
    digest_parts,
    parse_chroot,
    parse_env,
    parse_result,
    parse_source,
)
from resforge.errors import DescriptorError
from resforge.logging import get_logger

logger = get_logger("project")

PROJECT_FILE = Path("proj") / "project.yaml"

# ----------------------------
# Helpers
# ----------------------------
def _read_yaml(path: Path, entity: str) -> Any:
    try:
        with open(path, "r", encoding="utf-8") as fh:
            return yaml.safe_load(fh)
    except yaml.YAMLError as e:
        raise DescriptorError(DescriptorError.STRUCTURAL, entity, f"invalid YAML in {path}: {e}") from e
    except OSError as e:
        raise DescriptorError(DescriptorError.STRUCTURAL, entity, f"cannot read {path}: {e}") from e

def _file_sha256(path: Path) -> str:
    h = hashlib.sha256()
    with open(path, "rb") as fh:
        for chunk in iter(lambda: fh.read(65536), b""):
            h.update(chunk)
    return h.hexdigest()

def find_project_root(start: Optional[str] = None) -> Path:
    """Walk up from start (default: cwd) until a directory holding proj/project.yaml is found."""
    cur = Path(start or os.getcwd()).resolve()
    for candidate in [cur, *cur.parents]:
        if (candidate / PROJECT_FILE).is_file():
            return candidate
    raise DescriptorError(DescriptorError.STRUCTURAL, "project", f"no {PROJECT_FILE} found above {cur}")

# ----------------------------
# Project metadata
# ----------------------------
@dataclass
class ProjectInfo:
    name: str
    release_id: str
    default_results: List[str] = field(default_factory=list)
    servers: Dict[str, str] = field(default_factory=dict)


def _parse_project(root: Path, raw: Any) -> ProjectInfo:
    entity = "project"
    if not isinstance(raw, dict):
        raise DescriptorError(DescriptorError.STRUCTURAL, entity, "project.yaml must be a mapping")
    unknown = sorted(k for k in raw if k not in ("name", "release_id", "default_results", "servers"))
    if unknown:
        raise DescriptorError(DescriptorError.STRUCTURAL, entity, f"unknown key(s): {', '.join(unknown)}")
    name = raw.get("name")
    if not isinstance(name, str) or not name:
        raise DescriptorError(DescriptorError.STRUCTURAL, entity, "`name' missing")
    release_id = raw.get("release_id")
    if release_id is None or str(release_id) == "":
        raise DescriptorError(DescriptorError.STRUCTURAL, entity, "`release_id' missing")
    servers_raw = raw.get("servers") or {}
    if not isinstance(servers_raw, dict):
        raise DescriptorError(DescriptorError.STRUCTURAL, entity, "`servers' must be a mapping of name to url")
    servers: Dict[str, str] = {}
    for sname, url in servers_raw.items():
        if not isinstance(url, str) or not url:
            raise DescriptorError(DescriptorError.STRUCTURAL, entity, f"server {sname!r} has no url")
        # bare relative paths are relative to the project root
        if not urlparse(url).scheme and not os.path.isabs(url):
            url = str((root / url).resolve())
        servers[str(sname)] = url
    default_results = raw.get("default_results") or []
    if isinstance(default_results, str):
        default_results = [default_results]
    if not isinstance(default_results, list) or not all(isinstance(r, str) for r in default_results):
        raise DescriptorError(DescriptorError.STRUCTURAL, entity, "`default_results' must be a list of names")
    return ProjectInfo(name=name, release_id=str(release_id), default_results=list(default_results), servers=servers)

# ----------------------------
# ProjectGraph
# ----------------------------
class ProjectGraph:
    """Validated, immutable view of a project: descriptors plus the result DAG."""

    def __init__(self, root: Path, info: ProjectInfo, sources: Dict[str, SourceDescriptor],
                 results: Dict[str, ResultDescriptor], chroot: ChrootDescriptor,
                 global_env: Optional[Environment] = None, result_env: Optional[Dict[str, Environment]] = None,
                 init_files: Optional[List[Path]] = None, licences: Optional[List[str]] = None,
                 hooks: Optional[Dict[str, Any]] = None):
        self.root = Path(root)
        self.info = info
        self.sources = sources
        self.results = results
        self.chroot = chroot
        self.global_env = global_env or Environment()
        self.result_env = result_env or {}
        self.init_files = list(init_files or [])
        self.licences = licences
        self.hooks = hooks or {}
        self._order = list(results.keys())
        self._index = {n: i for i, n in enumerate(self._order)}
        self._buildids: Dict[str, str] = {}
        self._lock = threading.RLock()

    # ----------------------------
    # Graph queries
    # ----------------------------
    @property
    def name(self) -> str:
        return self.info.name

    @property
    def order(self) -> List[str]:
        """Result names in declaration order."""
        return list(self._order)

    def declaration_index(self, name: str) -> int:
        return self._index[name]

    def dependencies(self, name: str) -> List[str]:
        return list(self.results[name].depends)

    def dependents(self, name: str) -> List[str]:
        return [n for n in self._order if name in self.results[n].depends]

    def default_targets(self) -> List[str]:
        return list(self.info.default_results) or self.order

    def transitive_closure(self, names: Iterable[str]) -> List[str]:
        """names plus every result they depend on, in declaration order."""
        seen = set()
        stack = list(names)
        while stack:
            n = stack.pop()
            if n not in self.results:
                raise DescriptorError(DescriptorError.REFERENTIAL, f"result {n}", "no such result")
            if n in seen:
                continue
            seen.add(n)
            stack.extend(self.results[n].depends)
        return [n for n in self._order if n in seen]

    def dsort(self, names: Optional[Iterable[str]] = None) -> List[str]:
        """Topological order (dependencies first), ties broken by declaration order."""
        subset = self.transitive_closure(names) if names is not None else self.order
        members = set(subset)
        remaining = {n: len([d for d in self.results[n].depends if d in members]) for n in subset}
        ready = sorted((n for n, c in remaining.items() if c == 0), key=self._index.get)
        out: List[str] = []
        while ready:
            n = ready.pop(0)
            out.append(n)
            for dep in self.dependents(n):
                if dep in remaining:
                    remaining[dep] -= 1
                    if remaining[dep] == 0:
                        ready.append(dep)
            ready.sort(key=self._index.get)
        return out

    def dlist(self, name: str, recursive: bool = False) -> List[str]:
        """Direct dependencies of name, or all of them in topological order when recursive."""
        if name not in self.results:
            raise DescriptorError(DescriptorError.REFERENTIAL, f"result {name}", "no such result")
        if not recursive:
            return sorted(self.results[name].depends)
        return [n for n in self.dsort([name]) if n != name]

    # ----------------------------
    # Per-result views
    # ----------------------------
    def result_version(self, name: str) -> str:
        return self.results[name].version or self.info.release_id

    def sources_for(self, name: str) -> List[SourceDescriptor]:
        return [self.sources[s] for s in self.results[name].sources]

    def chroot_groups_for(self, name: str) -> List[ChrootGroup]:
        return self.chroot.resolve(self.results[name].chroot)

    def environment_for(self, name: str) -> Environment:
        """Global env, then source envs, then proj/env.yaml result env, then the result's own env."""
        env = self.global_env
        for src in self.sources_for(name):
            env = env.merge(src.env)
        env = env.merge(self.result_env.get(name, Environment()))
        return env.merge(self.results[name].env)

    def untrusted_inputs(self, name: str) -> List[str]:
        """server:location of every input of name fetched without a checksum."""
        refs: List[FileRef] = [f for g in self.chroot_groups_for(name) for f in g.files]
        refs.extend(f for s in self.sources_for(name) for f in s.files)
        return [r.servloc for r in refs if not r.verified]

    def sourceid(self, name: str) -> str:
        return self.sources[name].sourceid()

    def buildid(self, name: str) -> str:
        """Digest of everything that influences the build of name, dependencies included."""
        with self._lock:
            if name not in self._buildids:
                # dependencies first, so every lookup below is already cached
                for n in self.dsort([name]):
                    if n not in self._buildids:
                        self._buildids[n] = self._compute_buildid(n)
            return self._buildids[name]

    def _compute_buildid(self, name: str) -> str:
        res = self.results[name]
        parts: List[Any] = [self.info.name, self.info.release_id, name, self.result_version(name)]
        parts.extend(self.sourceid(s) for s in res.sources)
        parts.extend(g.groupid() for g in self.chroot_groups_for(name))
        parts.append(self.environment_for(name).envid())
        if res.build_script is not None:
            parts.append(_file_sha256(res.build_script))
        for init in self.init_files:
            parts.extend([init.name, _file_sha256(init)])
        parts.extend(f"{d}={self._buildids[d]}" for d in res.depends)
        return digest_parts(*parts)

    def server_url(self, server: str) -> str:
        return self.info.servers[server]

    def summary(self) -> Dict[str, Any]:
        return {
            "name": self.info.name,
            "release_id": self.info.release_id,
            "servers": dict(self.info.servers),
            "default_results": list(self.info.default_results),
            "chroot_groups": list(self.chroot.groups.keys()),
            "default_groups": list(self.chroot.default_groups),
            "sources": {n: [f.servloc for f in s.files] for n, s in self.sources.items()},
            "results": {n: {"version": self.result_version(n), "depends": list(r.depends),
                            "sources": list(r.sources), "chroot": [g.name for g in self.chroot_groups_for(n)]}
                        for n, r in self.results.items()},
        }

# ----------------------------
# Validation
# ----------------------------
def _find_cycle(results: Dict[str, ResultDescriptor]) -> Optional[List[str]]:
    """Return the first dependency loop found as [a, b, ..., a], or None."""
    state: Dict[str, int] = {}
    for root in results:
        if root in state:
            continue
        # explicit stack of (node, iterator over its dependencies); path mirrors the grey nodes
        state[root] = 1
        path: List[str] = [root]
        stack = [(root, iter(results[root].depends))]
        while stack:
            n, deps = stack[-1]
            d = next(deps, None)
            if d is None:
                stack.pop()
                path.pop()
                state[n] = 2
                continue
            if state.get(d) == 1:
                return path[path.index(d):] + [d]
            if d not in state:
                state[d] = 1
                path.append(d)
                stack.append((d, iter(results[d].depends)))
    return None

def _validate_refs(info: ProjectInfo, sources: Dict[str, SourceDescriptor], results: Dict[str, ResultDescriptor],
                   chroot: ChrootDescriptor, result_env: Dict[str, Environment], licences: Optional[List[str]]):
    def need_server(server: str, entity: str):
        if server not in info.servers:
            raise DescriptorError(DescriptorError.REFERENTIAL, entity, f"unknown server {server!r}")

    for gname, group in chroot.groups.items():
        for f in group.files:
            need_server(f.server, f"chroot group {gname}")
    for sname, src in sources.items():
        if src.server is not None:
            need_server(src.server, f"source {sname}")
        for f in src.files:
            need_server(f.server, f"source {sname}")
        if licences is not None:
            for lic in src.all_licences():
                if lic not in licences:
                    raise DescriptorError(DescriptorError.REFERENTIAL, f"source {sname}", f"unknown licence {lic!r}")
    for rname, res in results.items():
        entity = f"result {rname}"
        for s in res.sources:
            if s not in sources:
                raise DescriptorError(DescriptorError.REFERENTIAL, entity, f"unknown source {s!r}")
        for g in res.chroot:
            if g not in chroot.groups:
                raise DescriptorError(DescriptorError.REFERENTIAL, entity, f"unknown chroot group {g!r}")
        for d in res.depends:
            if d not in results:
                raise DescriptorError(DescriptorError.REFERENTIAL, entity, f"unknown dependency {d!r}")
    for r in info.default_results:
        if r not in results:
            raise DescriptorError(DescriptorError.REFERENTIAL, "project", f"unknown default result {r!r}")
    for r in result_env:
        if r not in results:
            raise DescriptorError(DescriptorError.REFERENTIAL, "env configuration", f"env for unknown result {r!r}")

# ----------------------------
# Loading
# ----------------------------
def _load_env(path: Path):
    raw = _read_yaml(path, "env configuration") if path.is_file() else None
    if raw is None:
        return Environment(), {}
    if not isinstance(raw, dict) or any(k not in ("env", "results") for k in raw):
        raise DescriptorError(DescriptorError.STRUCTURAL, "env configuration", "expected keys `env' and `results'")
    result_env: Dict[str, Environment] = {}
    per_result = raw.get("results") or {}
    if not isinstance(per_result, dict):
        raise DescriptorError(DescriptorError.STRUCTURAL, "env configuration", "`results' must be a mapping")
    for rname, renv in per_result.items():
        result_env[str(rname)] = parse_env(renv, f"env configuration for {rname}")
    return parse_env(raw.get("env"), "env configuration"), result_env

def _load_licences(path: Path) -> Optional[List[str]]:
    if not path.is_file():
        return None
    raw = _read_yaml(path, "licence configuration") or {}
    lic = raw.get("licences") if isinstance(raw, dict) else None
    if lic is None:
        return []
    if isinstance(lic, dict):
        return [str(k) for k in lic]
    if isinstance(lic, list):
        return [str(k) for k in lic]
    raise DescriptorError(DescriptorError.STRUCTURAL, "licence configuration", "`licences' must be a list or mapping")

def _descriptor_dirs(base: Path, filename: str) -> List[Path]:
    if not base.is_dir():
        return []
    return sorted((p for p in base.iterdir() if (p / filename).is_file()), key=lambda p: p.name)

def load_project(root: Optional[str] = None) -> ProjectGraph:
    """Parse and validate the project at root (default: located from cwd)."""
    root_path = Path(root).resolve() if root else find_project_root()
    if not (root_path / PROJECT_FILE).is_file():
        raise DescriptorError(DescriptorError.STRUCTURAL, "project", f"{root_path / PROJECT_FILE} not found")
    info = _parse_project(root_path, _read_yaml(root_path / PROJECT_FILE, "project"))

    chroot_file = root_path / "proj" / "chroot.yaml"
    chroot = parse_chroot(_read_yaml(chroot_file, "chroot configuration") if chroot_file.is_file() else None)
    global_env, result_env = _load_env(root_path / "proj" / "env.yaml")
    licences = _load_licences(root_path / "proj" / "licences.yaml")

    init_dir = root_path / "proj" / "init"
    init_files = sorted((p for p in init_dir.iterdir() if p.is_file() and not p.name.startswith(".")),
                        key=lambda p: p.name) if init_dir.is_dir() else []

    hooks_file = root_path / "proj" / "hooks.yaml"
    hooks = (_read_yaml(hooks_file, "hooks configuration") or {}) if hooks_file.is_file() else {}
    if not isinstance(hooks, dict):
        raise DescriptorError(DescriptorError.STRUCTURAL, "hooks configuration", "hooks.yaml must be a mapping")

    sources: Dict[str, SourceDescriptor] = {}
    for d in _descriptor_dirs(root_path / "src", "source.yaml"):
        sources[d.name] = parse_source(d.name, _read_yaml(d / "source.yaml", f"source {d.name}"))

    results: Dict[str, ResultDescriptor] = {}
    for d in _descriptor_dirs(root_path / "res", "result.yaml"):
        script = d / "build-script"
        if not script.is_file():
            raise DescriptorError(DescriptorError.STRUCTURAL, f"result {d.name}", "build-script missing")
        results[d.name] = parse_result(d.name, _read_yaml(d / "result.yaml", f"result {d.name}"), build_script=script)

    _validate_refs(info, sources, results, chroot, result_env, licences)
    cycle = _find_cycle(results)
    if cycle:
        raise DescriptorError(DescriptorError.CYCLIC, f"result {cycle[0]}",
                              "dependency cycle: " + " -> ".join(cycle), cycle=cycle)

    logger.debug("project %s loaded: %d sources, %d results", info.name, len(sources), len(results))
    return ProjectGraph(root_path, info, sources, results, chroot, global_env=global_env,
                        result_env=result_env, init_files=init_files, licences=licences,
                        hooks=hooks.get("hooks", hooks))
