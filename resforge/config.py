# resforge/config.py
# -*- coding: utf-8 -*-
"""
resforge central configuration loader

Features:
- Read YAML/JSON config from multiple locations (explicit, env override, cwd, user, system)
- Merge with authoritative DEFAULTS, normalize/coerce types (paths, numbers)
- Validate structure and types, warn or error (fatal optional)
- Typed access via Config dataclass (dot-path get())
- Process-wide get_config() for the CLI; library code receives a Config explicitly
"""

from __future__ import annotations

import os
import json
import logging
import threading
from pathlib import Path
from copy import deepcopy
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, List, Tuple

import yaml

logger = logging.getLogger("resforge.config")

# ----------------------------
# DEFAULT configuration (authoritative base)
# ----------------------------
DEFAULTS: Dict[str, Any] = {
    "logging": {
        "level": "INFO",
        "file": None,
        "file_level": "DEBUG",
        "color": True,
        "max_size": "10M",
        "backups": 5,
        "jsonl": {"enabled": False, "path": "~/.resforge/transparency.jsonl"},
        "module_levels": {},
    },
    "store": {
        "dir": "~/.resforge/store",
        "db": None,  # defaults to <store.dir>/resforge.sqlite3
    },
    "fetcher": {
        "retries": 3,
        "backoff_base": 0.5,
        "backoff_max": 8.0,
        "timeout": 60,
        "refetch_unverified": False,
    },
    "provision": {
        "workdir_root": "~/.resforge/sandboxes",
        "patch_backend": "builtin",  # builtin | tool
        "copy_conflict": "last-wins",  # last-wins | error
        "normalize_mtime": None,  # None -> SOURCE_DATE_EPOCH or 0
        "tmpdir": "tmp/forge",  # per-build root, relative to the chroot base
    },
    "build": {
        "jobs": 1,
        "timeout": None,
        "fail_fast": False,
        "force_rebuild": False,
        "keep_failed_sandboxes": False,
        "backend": "direct",  # direct | chroot | unshare
        "shell": "/bin/bash",
        "path": "/usr/local/sbin:/usr/local/bin:/usr/sbin:/usr/bin:/sbin:/bin",
        "log_dir": "~/.resforge/logs",
        "diagnostic_lines": 50,
    },
    "hooks": {
        "stop_on_failure": True,
        "timeout": 300,
        "events": {},
    },
}

# ----------------------------
# Dataclass to hold config
# ----------------------------
@dataclass
class Config:
    raw: Dict[str, Any] = field(default_factory=dict)     # values loaded from file (if any)
    merged: Dict[str, Any] = field(default_factory=dict)  # merged with DEFAULTS
    path: Optional[Path] = None

    def get(self, path: str, default: Any = None) -> Any:
        """Dot-separated getter for merged config."""
        parts = path.split(".") if path else []
        cur: Any = self.merged
        for p in parts:
            if isinstance(cur, dict) and p in cur:
                cur = cur[p]
            else:
                return default
        return default if cur is None else cur

    def section(self, name: str) -> Dict[str, Any]:
        val = self.merged.get(name)
        return deepcopy(val) if isinstance(val, dict) else {}

    def as_dict(self) -> Dict[str, Any]:
        return deepcopy(self.merged)

# ----------------------------
# Module state
# ----------------------------
_CONFIG: Optional[Config] = None
_CONFIG_LOCK = threading.RLock()

# ----------------------------
# Utilities
# ----------------------------
def _expand_path(val: Optional[str]) -> Optional[str]:
    if val is None:
        return None
    return os.path.abspath(os.path.expanduser(os.path.expandvars(str(val))))

def _deep_merge(a: Dict[str, Any], b: Dict[str, Any]) -> Dict[str, Any]:
    res = deepcopy(a)
    for k, v in b.items():
        if k in res and isinstance(res[k], dict) and isinstance(v, dict):
            res[k] = _deep_merge(res[k], v)
        else:
            res[k] = deepcopy(v)
    return res

def _find_candidates(explicit: Optional[str] = None) -> List[Path]:
    candidates: List[Path] = []
    env = os.environ.get("RESFORGE_CONFIG")
    if explicit:
        candidates.append(Path(explicit))
    if env:
        candidates.append(Path(env))
    candidates.extend([
        Path.cwd() / "resforge.yaml",
        Path.cwd() / "resforge.yml",
        Path.cwd() / "resforge.json",
        Path.home() / ".config" / "resforge" / "config.yaml",
        Path("/etc") / "resforge" / "config.yaml",
    ])
    return candidates

def _load_file(path: Path) -> Dict[str, Any]:
    txt = path.read_text(encoding="utf-8")
    if path.suffix.lower() == ".json":
        data = json.loads(txt)
    else:
        data = yaml.safe_load(txt)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValueError(f"config: {path} must contain a mapping at top level")
    return data

def _normalize_and_coerce(cfg: Dict[str, Any]) -> Dict[str, Any]:
    """Normalize path fields and coerce basic types."""
    out = deepcopy(cfg)
    path_keys = [
        ("store", "dir"),
        ("store", "db"),
        ("provision", "workdir_root"),
        ("build", "log_dir"),
        ("logging", "file"),
    ]
    for section, key in path_keys:
        ref = out.get(section)
        if isinstance(ref, dict) and isinstance(ref.get(key), str) and ref[key]:
            ref[key] = _expand_path(ref[key])
    if not out["store"].get("db"):
        out["store"]["db"] = os.path.join(out["store"]["dir"], "resforge.sqlite3")

    build = out.get("build", {})
    build["jobs"] = int(build.get("jobs") or 1)
    if build.get("timeout") is not None:
        build["timeout"] = float(build["timeout"])
    build["diagnostic_lines"] = int(build.get("diagnostic_lines") or 50)

    fetcher = out.get("fetcher", {})
    fetcher["retries"] = int(fetcher.get("retries", 3))
    fetcher["backoff_base"] = float(fetcher.get("backoff_base", 0.5))
    fetcher["backoff_max"] = float(fetcher.get("backoff_max", 8.0))
    fetcher["timeout"] = float(fetcher.get("timeout", 60))
    return out

def _validate_structure(cfg: Dict[str, Any]) -> Tuple[bool, List[str]]:
    """Return (ok, issues_list). Non-fatal warnings unless load() is called with fatal=True."""
    warnings: List[str] = []
    for k in cfg.keys():
        if k not in DEFAULTS:
            warnings.append(f"Unknown top-level config key: {k}")
    if cfg["build"]["jobs"] < 1:
        warnings.append("build.jobs must be integer >= 1")
    if cfg["build"].get("backend") not in ("direct", "chroot", "unshare"):
        warnings.append("build.backend must be one of direct, chroot, unshare")
    if cfg["provision"].get("patch_backend") not in ("builtin", "tool"):
        warnings.append("provision.patch_backend must be builtin or tool")
    if cfg["provision"].get("copy_conflict") not in ("last-wins", "error"):
        warnings.append("provision.copy_conflict must be last-wins or error")
    if cfg["fetcher"]["retries"] < 0:
        warnings.append("fetcher.retries must be >= 0")
    if not isinstance(cfg["hooks"].get("events"), dict):
        warnings.append("hooks.events should be a mapping")
    return (len(warnings) == 0, warnings)

# ----------------------------
# Loading
# ----------------------------
def _find_path(explicit: Optional[str] = None) -> Optional[Path]:
    for p in _find_candidates(explicit):
        if p and p.exists():
            return p
    return None

def from_dict(overrides: Optional[Dict[str, Any]] = None, fatal: bool = False) -> Config:
    """Build a Config from an in-memory override mapping (no file lookup)."""
    raw = overrides or {}
    normalized = _normalize_and_coerce(_deep_merge(DEFAULTS, raw))
    ok, issues = _validate_structure(normalized)
    if not ok:
        msg = f"config: validation issues: {issues}"
        if fatal:
            raise ValueError(msg)
        logger.warning(msg)
    return Config(raw=deepcopy(raw), merged=normalized)

def load(explicit_path: Optional[str] = None, fatal: bool = False) -> Config:
    """
    Load and merge config. If fatal=True then structural validation failures raise.
    Returns Config object and installs it as the process-wide config.
    """
    global _CONFIG
    with _CONFIG_LOCK:
        cfg_path = _find_path(explicit_path)
        raw: Dict[str, Any] = {}
        if cfg_path:
            try:
                raw = _load_file(cfg_path)
            except (OSError, ValueError, yaml.YAMLError) as e:
                if fatal:
                    raise
                logger.warning("config: file found but could not be parsed: %s (%s)", cfg_path, e)
        cfg_obj = from_dict(raw, fatal=fatal)
        cfg_obj.path = cfg_path
        _CONFIG = cfg_obj
        logger.debug("config: loaded merged config (from=%s)", str(cfg_path) if cfg_path else "<defaults>")
        return cfg_obj

def get_config() -> Config:
    global _CONFIG
    with _CONFIG_LOCK:
        if _CONFIG is None:
            _CONFIG = load()
        return _CONFIG

def validate_config(cfg: Optional[Config] = None) -> Tuple[bool, List[str]]:
    cfg = cfg or get_config()
    ok, issues = _validate_structure(cfg.merged)
    store_dir = Path(cfg.get("store.dir"))
    try:
        store_dir.mkdir(parents=True, exist_ok=True)
        if not os.access(store_dir, os.W_OK):
            issues.append(f"store.dir {store_dir} not writable")
    except OSError:
        issues.append(f"store.dir {store_dir} not creatable")
    return (len(issues) == 0, issues)
