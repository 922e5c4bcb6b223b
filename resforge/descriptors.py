# resforge/descriptors.py
"""
descriptors.py - typed descriptor model and raw-mapping parsers

Parses the YAML mappings of source, chroot and result descriptors into
dataclasses and validates their structure. Cross-descriptor references
(servers, sources, groups, dependencies) are checked by resforge.project.

Source descriptor:
  type: files            # alias: file-collection
  server: upstream       # default server for file entries
  licences: [gpl2]
  env: {CFLAGS: "-O2", PREFIX: {value: /usr, export: true}}
  file:
    - {location: h/hello/1.0/hello-1.0.tar.gz, unpack: hello-1.0, sha1: ...}
    - {location: h/hello/fix.patch, patch: 1}
    - {location: h/hello/extra.conf, copy: etc/}

Chroot descriptor:
  default_groups: [base]
  groups:
    - {name: base, server: chroot, files: [{location: base.tar.gz, sha1: ...}]}

Result descriptor:
  version: "1.0"
  sources: [hello]
  depends: [toolchain]
  chroot: [base]
  env: {...}
"""

from __future__ import annotations

import hashlib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Tuple

from resforge.errors import DescriptorError

UNPACK = "unpack"
PATCH = "patch"
COPY = "copy"
FILE_ACTIONS = (UNPACK, PATCH, COPY)

SOURCE_TYPES = ("files", "file-collection")
RESULT_TYPES = ("result",)

# ----------------------------
# Helpers
# ----------------------------
def digest_parts(*parts: Any) -> str:
    h = hashlib.sha256()
    for p in parts:
        h.update(str(p).encode("utf-8"))
        h.update(b"\0")
    return h.hexdigest()

def _check_keys(raw: Any, allowed: Tuple[str, ...], entity: str) -> Dict[str, Any]:
    if not isinstance(raw, dict):
        raise DescriptorError(DescriptorError.STRUCTURAL, entity, "descriptor must be a mapping")
    unknown = sorted(str(k) for k in raw.keys() if k not in allowed)
    if unknown:
        raise DescriptorError(DescriptorError.STRUCTURAL, entity, f"unknown key(s): {', '.join(unknown)}")
    return raw

def _string_list(val: Any, entity: str, what: str) -> List[str]:
    if val is None:
        return []
    if isinstance(val, str):
        val = [val]
    if not isinstance(val, list) or not all(isinstance(v, str) and v for v in val):
        raise DescriptorError(DescriptorError.STRUCTURAL, entity, f"`{what}' must be a list of non-empty strings")
    seen = set()
    out = []
    for v in val:
        if v in seen:
            raise DescriptorError(DescriptorError.STRUCTURAL, entity, f"duplicate entry {v!r} in `{what}'")
        seen.add(v)
        out.append(v)
    return out

def _checksum(val: Any, entity: str, what: str) -> Optional[str]:
    if val is None or val == "":
        return None
    if not isinstance(val, str):
        raise DescriptorError(DescriptorError.STRUCTURAL, entity, f"`{what}' must be a hex string")
    val = val.strip().lower()
    expected_len = {"sha1": 40, "sha256": 64}[what]
    if len(val) != expected_len or any(c not in "0123456789abcdef" for c in val):
        raise DescriptorError(DescriptorError.STRUCTURAL, entity, f"`{what}' is not a valid {what} digest: {val!r}")
    return val

# ----------------------------
# Environment
# ----------------------------
@dataclass(frozen=True)
class EnvVar:
    value: str
    export: bool = False


class Environment:
    """Ordered name -> EnvVar bindings; later merges override earlier ones."""

    def __init__(self, items: Optional[Dict[str, EnvVar]] = None):
        self._vars: Dict[str, EnvVar] = dict(items or {})

    def set(self, name: str, value: str, export: bool = False):
        self._vars[name] = EnvVar(str(value), export)

    def get(self, name: str) -> Optional[EnvVar]:
        return self._vars.get(name)

    def merge(self, other: "Environment") -> "Environment":
        merged = dict(self._vars)
        merged.update(other._vars)
        return Environment(merged)

    def iter(self) -> Iterator[Tuple[str, EnvVar]]:
        for name in sorted(self._vars):
            yield name, self._vars[name]

    def envid(self) -> str:
        return digest_parts(*[f"{k}={v.value}:{int(v.export)}" for k, v in self.iter()])

    def __len__(self):
        return len(self._vars)

    def __contains__(self, name):
        return name in self._vars

    def __eq__(self, other):
        return isinstance(other, Environment) and self._vars == other._vars

    def __repr__(self):
        return f"Environment({self._vars!r})"


def parse_env(raw: Any, entity: str) -> Environment:
    env = Environment()
    if raw is None:
        return env
    if not isinstance(raw, dict):
        raise DescriptorError(DescriptorError.STRUCTURAL, entity, "`env' must be a mapping")
    for name, val in raw.items():
        if not isinstance(name, str) or not name.isidentifier():
            raise DescriptorError(DescriptorError.STRUCTURAL, entity, f"invalid environment variable name {name!r}")
        if isinstance(val, dict):
            _check_keys(val, ("value", "export"), f"{entity} env {name}")
            if "value" not in val:
                raise DescriptorError(DescriptorError.STRUCTURAL, entity, f"env {name}: `value' missing")
            env.set(name, "" if val["value"] is None else str(val["value"]), bool(val.get("export", False)))
        elif isinstance(val, (str, int, float)) and not isinstance(val, bool):
            env.set(name, str(val))
        else:
            raise DescriptorError(DescriptorError.STRUCTURAL, entity, f"env {name}: value must be a string or {{value, export}}")
    return env

# ----------------------------
# File references
# ----------------------------
@dataclass
class FileRef:
    server: str
    location: str
    sha1: Optional[str] = None
    sha256: Optional[str] = None

    @property
    def servloc(self) -> str:
        return f"{self.server}:{self.location}"

    @property
    def checksums(self) -> Dict[str, str]:
        out = {}
        if self.sha256:
            out["sha256"] = self.sha256
        if self.sha1:
            out["sha1"] = self.sha1
        return out

    @property
    def verified(self) -> bool:
        return bool(self.sha1 or self.sha256)

    def fileid(self) -> str:
        """Content address when a checksum exists, else server+location identity."""
        if self.sha256:
            return "sha256:" + self.sha256
        if self.sha1:
            return "sha1:" + self.sha1
        return "loc:" + digest_parts(self.server, self.location)


@dataclass
class FileEntry(FileRef):
    action: str = UNPACK
    target: str = ""
    licences: List[str] = field(default_factory=list)

    @property
    def patch_level(self) -> int:
        return int(self.target) if self.action == PATCH else 0

    def fileid(self) -> str:
        return digest_parts(super().fileid(), self.action, self.target)


def _parse_ref_fields(f: Dict[str, Any], default_server: Optional[str], entity: str) -> Tuple[str, str, Optional[str], Optional[str]]:
    server = f.get("server") or default_server
    if not server or not isinstance(server, str):
        raise DescriptorError(DescriptorError.STRUCTURAL, entity, "file entry has no server and no default server is set")
    location = f.get("location")
    if not location or not isinstance(location, str):
        raise DescriptorError(DescriptorError.STRUCTURAL, entity, "file entry without `location'")
    if location.startswith("/") or ".." in Path(location).parts:
        raise DescriptorError(DescriptorError.STRUCTURAL, entity, f"location must be relative to the server root: {location!r}")
    return server, location, _checksum(f.get("sha1"), entity, "sha1"), _checksum(f.get("sha256"), entity, "sha256")


def parse_file_entry(f: Any, default_server: Optional[str], default_licences: List[str], entity: str) -> FileEntry:
    _check_keys(f, ("server", "location", "unpack", "patch", "patch-level", "copy", "sha1", "sha256", "licences"), entity)
    server, location, sha1, sha256 = _parse_ref_fields(f, default_server, entity)
    where = f"{entity} file {server}:{location}"

    present = [a for a in FILE_ACTIONS if f.get(a) is not None and f.get(a) is not False]
    if not present:
        raise DescriptorError(DescriptorError.STRUCTURAL, where, "file entry without unpack, copy or patch attribute")
    if len(present) > 1:
        raise DescriptorError(DescriptorError.STRUCTURAL, where, f"file entry with conflicting attributes: {', '.join(present)}")
    action = present[0]
    val = f[action]

    if action == PATCH:
        level = f.get("patch-level") if val is True else val
        if level is None:
            level = 1
        if isinstance(level, bool) or not str(level).isdigit():
            raise DescriptorError(DescriptorError.STRUCTURAL, where, f"patch level must be a non-negative integer, got {level!r}")
        target = str(int(str(level)))
    else:
        if f.get("patch-level") is not None:
            raise DescriptorError(DescriptorError.STRUCTURAL, where, "`patch-level' is only valid on patch entries")
        if not isinstance(val, str) or not val:
            raise DescriptorError(DescriptorError.STRUCTURAL, where, f"`{action}' must be a non-empty string")
        if val.startswith("/") or ".." in Path(val).parts:
            raise DescriptorError(DescriptorError.STRUCTURAL, where, f"`{action}' must stay inside the source directory: {val!r}")
        if action == UNPACK and "/" in val.strip("/"):
            raise DescriptorError(DescriptorError.STRUCTURAL, where, "`unpack' names a single top-level directory")
        target = val.strip("/") if action == UNPACK else val

    licences = _string_list(f.get("licences"), where, "licences") if "licences" in f else list(default_licences)
    return FileEntry(server=server, location=location, sha1=sha1, sha256=sha256,
                     action=action, target=target, licences=licences)

# ----------------------------
# Sources
# ----------------------------
@dataclass
class SourceDescriptor:
    name: str
    type: str
    server: Optional[str]
    licences: List[str]
    env: Environment
    files: List[FileEntry]

    def sourceid(self) -> str:
        return digest_parts(self.name, "files", self.env.envid(), *sorted(self.all_licences()),
                       *[f.fileid() for f in self.files])

    def all_licences(self) -> List[str]:
        seen: List[str] = []
        for lic in self.licences + [l for f in self.files for l in f.licences]:
            if lic not in seen:
                seen.append(lic)
        return seen

    @property
    def untrusted_files(self) -> List[FileEntry]:
        return [f for f in self.files if not f.verified]


def parse_source(name: str, raw: Any) -> SourceDescriptor:
    entity = f"source {name}"
    _check_keys(raw, ("name", "type", "env", "file", "licences", "server"), entity)
    if raw.get("name") not in (None, name):
        raise DescriptorError(DescriptorError.STRUCTURAL, entity, f"name {raw.get('name')!r} does not match directory name")
    stype = raw.get("type", "files")
    if stype not in SOURCE_TYPES:
        raise DescriptorError(DescriptorError.STRUCTURAL, entity, f"unsupported source type {stype!r}")
    server = raw.get("server")
    if server is not None and (not isinstance(server, str) or not server):
        raise DescriptorError(DescriptorError.STRUCTURAL, entity, "`server' must be a non-empty string")
    licences = _string_list(raw.get("licences"), entity, "licences")
    env = parse_env(raw.get("env"), entity)
    files_raw = raw.get("file")
    if not isinstance(files_raw, list) or not files_raw:
        raise DescriptorError(DescriptorError.STRUCTURAL, entity, "`file' must be a non-empty list")
    files = [parse_file_entry(f, server, licences, entity) for f in files_raw]
    return SourceDescriptor(name=name, type="files", server=server, licences=licences, env=env, files=files)

# ----------------------------
# Chroot
# ----------------------------
@dataclass
class ChrootGroup:
    name: str
    files: List[FileRef]
    server: Optional[str] = None
    default: bool = False

    def groupid(self) -> str:
        return digest_parts(self.name, *[f.fileid() for f in self.files])


@dataclass
class ChrootDescriptor:
    default_groups: List[str] = field(default_factory=list)
    groups: Dict[str, ChrootGroup] = field(default_factory=dict)

    def resolve(self, requested: Optional[List[str]]) -> List[ChrootGroup]:
        """Groups for a build: explicit list in declared order, or the default set."""
        names = list(requested) if requested else list(self.default_groups)
        return [self.groups[n] for n in names]


def parse_chroot(raw: Any) -> ChrootDescriptor:
    entity = "chroot configuration"
    if raw is None:
        return ChrootDescriptor()
    _check_keys(raw, ("default_groups", "groups"), entity)
    groups_raw = raw.get("groups") or []
    if not isinstance(groups_raw, list):
        raise DescriptorError(DescriptorError.STRUCTURAL, entity, "`groups' must be a list")
    groups: Dict[str, ChrootGroup] = {}
    for g in groups_raw:
        _check_keys(g, ("name", "server", "files"), entity)
        gname = g.get("name")
        if not isinstance(gname, str) or not gname:
            raise DescriptorError(DescriptorError.STRUCTURAL, entity, "chroot group without `name'")
        gentity = f"chroot group {gname}"
        if gname in groups:
            raise DescriptorError(DescriptorError.STRUCTURAL, gentity, "duplicate chroot group name")
        files_raw = g.get("files") or []
        if not isinstance(files_raw, list):
            raise DescriptorError(DescriptorError.STRUCTURAL, gentity, "`files' must be a list")
        files = []
        for f in files_raw:
            _check_keys(f, ("server", "location", "sha1", "sha256"), gentity)
            server, location, sha1, sha256 = _parse_ref_fields(f, g.get("server"), gentity)
            files.append(FileRef(server=server, location=location, sha1=sha1, sha256=sha256))
        groups[gname] = ChrootGroup(name=gname, files=files, server=g.get("server"))
    default_groups = _string_list(raw.get("default_groups"), entity, "default_groups")
    for name in default_groups:
        if name not in groups:
            raise DescriptorError(DescriptorError.REFERENTIAL, entity, f"default group {name!r} is not defined")
        groups[name].default = True
    return ChrootDescriptor(default_groups=default_groups, groups=groups)

# ----------------------------
# Results
# ----------------------------
@dataclass
class ResultDescriptor:
    name: str
    version: Optional[str]
    depends: List[str]
    sources: List[str]
    chroot: List[str]
    env: Environment
    build_script: Optional[Path] = None
    type: str = "result"


def parse_result(name: str, raw: Any, build_script: Optional[Path] = None) -> ResultDescriptor:
    entity = f"result {name}"
    _check_keys(raw, ("name", "type", "version", "depends", "sources", "chroot", "env"), entity)
    if raw.get("name") not in (None, name):
        raise DescriptorError(DescriptorError.STRUCTURAL, entity, f"name {raw.get('name')!r} does not match directory name")
    rtype = raw.get("type", "result")
    if rtype not in RESULT_TYPES:
        raise DescriptorError(DescriptorError.STRUCTURAL, entity, f"unsupported result type {rtype!r}")
    version = raw.get("version")
    if version is not None:
        if isinstance(version, bool) or not isinstance(version, (str, int, float)) or str(version) == "":
            raise DescriptorError(DescriptorError.STRUCTURAL, entity, "`version' must be a non-empty string")
        version = str(version)
    depends = _string_list(raw.get("depends"), entity, "depends")
    if name in depends:
        raise DescriptorError(DescriptorError.CYCLIC, entity, "result depends on itself", cycle=[name, name])
    return ResultDescriptor(
        name=name,
        version=version,
        depends=depends,
        sources=_string_list(raw.get("sources"), entity, "sources"),
        chroot=_string_list(raw.get("chroot"), entity, "chroot"),
        env=parse_env(raw.get("env"), entity),
        build_script=build_script,
        type=rtype,
    )
