# resforge/patches.py
"""
patches.py - apply unified diffs to materialized source trees

Features:
- Builtin backend: pure-Python unified diff parser/applier
  (exact context, offset search, no fuzz, all-or-nothing per patch file)
- Tool backend: `patch --dry-run` then `patch` (GNU patch, fuzz disabled)
- Patch level (-pN) stripping of path components
- patch_targets() lists the paths a patch touches, for dry-run overlay planning

Any hunk that does not apply raises ProvisionError; with the builtin backend
nothing is written for that patch file.
"""

from __future__ import annotations

import os
import re
import subprocess
from dataclasses import dataclass, field
from pathlib import Path, PurePosixPath
from typing import Dict, List, Optional, Tuple

from resforge.errors import ProvisionError
from resforge.logging import get_logger

logger = get_logger("patches")

_HUNK_RE = re.compile(r"^@@ -(\d+)(?:,(\d+))? \+(\d+)(?:,(\d+))? @@")
DEV_NULL = "/dev/null"

# -------------------------
# Parsed structures
# -------------------------
@dataclass
class Hunk:
    old_start: int
    old_len: int
    new_start: int
    new_len: int
    lines: List[Tuple[str, str]] = field(default_factory=list)  # (" " | "-" | "+", text incl. newline)

    def old_lines(self) -> List[str]:
        return [t for tag, t in self.lines if tag in (" ", "-")]

    def new_lines(self) -> List[str]:
        return [t for tag, t in self.lines if tag in (" ", "+")]


@dataclass
class FilePatch:
    old_path: str
    new_path: str
    hunks: List[Hunk] = field(default_factory=list)

    @property
    def creates(self) -> bool:
        return self.old_path == DEV_NULL

    @property
    def deletes(self) -> bool:
        return self.new_path == DEV_NULL


def _header_path(line: str) -> str:
    # "--- a/foo.c\t2020-01-01 ..." -> "a/foo.c"
    raw = line[4:].rstrip("\n").rstrip("\r")
    raw = raw.split("\t", 1)[0]
    if raw.startswith('"') and raw.endswith('"'):
        raw = raw[1:-1]
    return raw.strip()

def parse_patch(text: str, label: str = "patch") -> List[FilePatch]:
    """Parse unified diff text (decoded as latin-1 so bytes round-trip)."""
    lines = text.splitlines(keepends=True)
    files: List[FilePatch] = []
    i = 0
    while i < len(lines):
        line = lines[i]
        if line.startswith("--- ") and i + 1 < len(lines) and lines[i + 1].startswith("+++ "):
            fp = FilePatch(_header_path(line), _header_path(lines[i + 1]))
            files.append(fp)
            i += 2
            continue
        m = _HUNK_RE.match(line)
        if m:
            if not files:
                raise ProvisionError(f"{label}: hunk before any file header at line {i + 1}")
            old_len = int(m.group(2)) if m.group(2) is not None else 1
            new_len = int(m.group(4)) if m.group(4) is not None else 1
            hunk = Hunk(int(m.group(1)), old_len, int(m.group(3)), new_len)
            i += 1
            seen_old = seen_new = 0
            while i < len(lines) and (seen_old < old_len or seen_new < new_len):
                body = lines[i]
                tag = body[:1]
                if body.startswith("\\"):
                    _strip_last_newline(hunk)
                    i += 1
                    continue
                if tag in ("\n", "\r") or body == "":
                    # context line whose leading space was stripped
                    tag, text_ = " ", body
                elif tag in (" ", "-", "+"):
                    text_ = body[1:]
                else:
                    raise ProvisionError(f"{label}: malformed hunk line {i + 1}: {body.rstrip()!r}")
                hunk.lines.append((tag, text_))
                if tag in (" ", "-"):
                    seen_old += 1
                if tag in (" ", "+"):
                    seen_new += 1
                i += 1
            if seen_old != old_len or seen_new != new_len:
                raise ProvisionError(f"{label}: truncated hunk at line {i}")
            # "\ No newline at end of file" refers to the line just before it
            while i < len(lines) and lines[i].startswith("\\"):
                _strip_last_newline(hunk)
                i += 1
            files[-1].hunks.append(hunk)
            continue
        i += 1
    if not files:
        raise ProvisionError(f"{label}: no file headers found; not a unified diff")
    return files

def _strip_last_newline(hunk: Hunk):
    if not hunk.lines:
        return
    tag, text = hunk.lines[-1]
    if text.endswith("\n"):
        hunk.lines[-1] = (tag, text[:-1])


def strip_path(path: str, level: int) -> Optional[str]:
    if path == DEV_NULL:
        return None
    parts = PurePosixPath(path).parts
    if len(parts) <= level:
        return None
    stripped = PurePosixPath(*parts[level:])
    if stripped.is_absolute() or ".." in stripped.parts:
        return None
    return str(stripped)

def _resolve_target(fp: FilePatch, root: Path, level: int, label: str) -> Tuple[str, bool]:
    """Pick the file a FilePatch applies to; returns (relpath, exists)."""
    old = strip_path(fp.old_path, level)
    new = strip_path(fp.new_path, level)
    for cand in (old, new):
        if cand and (root / cand).is_file():
            return cand, True
    if fp.creates and new:
        return new, False
    raise ProvisionError(f"{label}: cannot find file to patch ({fp.old_path} / {fp.new_path}, -p{level})")

def patch_targets(text: str, level: int, label: str = "patch") -> List[Tuple[str, str]]:
    """[(relpath, "create" | "modify" | "delete")] without touching the filesystem."""
    out = []
    for fp in parse_patch(text, label):
        if fp.creates:
            out.append((strip_path(fp.new_path, level) or fp.new_path, "create"))
        elif fp.deletes:
            out.append((strip_path(fp.old_path, level) or fp.old_path, "delete"))
        else:
            out.append((strip_path(fp.new_path, level) or strip_path(fp.old_path, level) or fp.new_path, "modify"))
    return out

# -------------------------
# Builtin application
# -------------------------
def _find(haystack: List[str], needle: List[str], expected: int, floor: int) -> Optional[int]:
    """Exact match of needle at expected, else nearest offset (never before floor)."""
    n = len(needle)
    limit = len(haystack) - n
    if limit < floor:
        return None
    expected = min(max(expected, floor), limit)
    for delta in range(0, max(expected - floor, limit - expected) + 1):
        for pos in ((expected - delta, expected + delta) if delta else (expected,)):
            if floor <= pos <= limit and haystack[pos:pos + n] == needle:
                return pos
    return None

def apply_hunks(original: List[str], hunks: List[Hunk], label: str) -> List[str]:
    result: List[str] = []
    cursor = 0
    offset = 0
    for n, h in enumerate(hunks, 1):
        old = h.old_lines()
        expected = (h.old_start - 1 if h.old_len else h.old_start) + offset
        pos = _find(original, old, expected, cursor)
        if pos is None:
            raise ProvisionError(f"{label}: hunk #{n} (at line {h.old_start}) does not apply")
        if pos != expected:
            logger.debug("%s: hunk #%d applied with offset %d", label, n, pos - expected)
        offset = pos - (h.old_start - 1 if h.old_len else h.old_start)
        result.extend(original[cursor:pos])
        result.extend(h.new_lines())
        cursor = pos + len(old)
    result.extend(original[cursor:])
    return result

def _read_lines(path: Path) -> List[str]:
    return path.read_bytes().decode("latin-1").splitlines(keepends=True)

def apply_builtin(patch_text: str, root: Path, level: int, label: str = "patch") -> List[str]:
    """Apply all file patches or none; returns the touched relative paths."""
    staged: Dict[str, Optional[str]] = {}
    for fp in parse_patch(patch_text, label):
        rel, exists = _resolve_target(fp, root, level, label)
        if rel in staged:
            current = (staged[rel] or "").splitlines(keepends=True)
        else:
            current = _read_lines(root / rel) if exists else []
        if fp.creates and exists and rel not in staged:
            raise ProvisionError(f"{label}: {rel} already exists but the patch creates it")
        new_lines = apply_hunks(current, fp.hunks, f"{label}: {rel}")
        staged[rel] = None if fp.deletes else "".join(new_lines)
        if fp.deletes and new_lines:
            raise ProvisionError(f"{label}: {rel} is not empty after applying a deletion")
    for rel, content in staged.items():
        target = root / rel
        if content is None:
            if target.exists():
                target.unlink()
            continue
        target.parent.mkdir(parents=True, exist_ok=True)
        mode = target.stat().st_mode if target.exists() else None
        target.write_bytes(content.encode("latin-1"))
        if mode is not None:
            os.chmod(target, mode & 0o7777)
    return sorted(staged)

# -------------------------
# Tool application
# -------------------------
def _apply_patch_command(patch_path: Path, source_dir: Path, level: int, dry_run: bool = False) -> Tuple[bool, str]:
    cmd = ["patch", "--batch", "--forward", "--fuzz=0", f"-p{level}", "-d", str(source_dir), "-i", str(patch_path)]
    if dry_run:
        cmd.insert(1, "--dry-run")
    try:
        proc = subprocess.run(cmd, stdout=subprocess.PIPE, stderr=subprocess.PIPE, text=True)
    except FileNotFoundError as e:
        raise ProvisionError(f"patch tool not available: {e}") from e
    return proc.returncode == 0, (proc.stdout + proc.stderr).strip()

# -------------------------
# PatchApplier
# -------------------------
class PatchApplier:
    def __init__(self, backend: str = "builtin"):
        if backend not in ("builtin", "tool"):
            raise ValueError(f"unknown patch backend {backend!r}")
        self.backend = backend

    def apply(self, patch_file: Path, target_dir: Path, level: int, label: Optional[str] = None) -> None:
        label = label or Path(patch_file).name
        if not Path(target_dir).is_dir():
            raise ProvisionError(f"{label}: patch target {target_dir} is not a directory")
        if self.backend == "builtin":
            text = Path(patch_file).read_bytes().decode("latin-1")
            touched = apply_builtin(text, Path(target_dir), level, label)
            logger.info("applied %s (-p%d): %d file(s)", label, level, len(touched))
            return
        ok, out = _apply_patch_command(Path(patch_file), Path(target_dir), level, dry_run=True)
        if not ok:
            raise ProvisionError(f"{label}: patch does not apply cleanly:\n{out}")
        ok, out = _apply_patch_command(Path(patch_file), Path(target_dir), level)
        if not ok:
            raise ProvisionError(f"{label}: applying patch failed:\n{out}")
        logger.info("applied %s (-p%d) with patch tool", label, level)
