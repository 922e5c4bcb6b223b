# resforge/overlay.py
"""
overlay.py - ordered virtual path map for sandbox composition

An OverlayPlan records, in apply order, which step claims each path of the
sandbox (chroot archive, source unpack, copy, patch). Adding a path already
claimed by an earlier step records a Conflict; the later step wins. Nothing
here touches the filesystem, so the plan doubles as a dry run of
provisioning.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional

from resforge.logging import get_logger

logger = get_logger("overlay")

CHROOT = "chroot"
UNPACK = "unpack"
COPY = "copy"
PATCH = "patch"
LINK = "link"


@dataclass(frozen=True)
class Origin:
    kind: str
    owner: str      # "group base" / "source hello"
    servloc: str    # server:location the bytes came from

    def __str__(self):
        return f"{self.kind} {self.servloc} ({self.owner})"


@dataclass(frozen=True)
class Conflict:
    path: str
    earlier: Origin
    later: Origin

    @property
    def copy_overlap(self) -> bool:
        return self.earlier.kind == COPY and self.later.kind == COPY

    def to_dict(self):
        return {"path": self.path, "earlier": str(self.earlier), "later": str(self.later)}


@dataclass
class OverlayPlan:
    entries: Dict[str, Origin] = field(default_factory=dict)
    conflicts: List[Conflict] = field(default_factory=list)
    steps: List[Origin] = field(default_factory=list)
    untrusted: List[str] = field(default_factory=list)

    def add(self, path: str, origin: Origin) -> Optional[Conflict]:
        """Claim path for origin; returns the Conflict when path was already claimed."""
        path = path.strip("/")
        prev = self.entries.get(path)
        conflict = None
        if prev is not None and prev != origin:
            conflict = Conflict(path, prev, origin)
            self.conflicts.append(conflict)
        # re-insert so iteration order reflects the last writer
        self.entries.pop(path, None)
        self.entries[path] = origin
        return conflict

    def add_tree(self, prefix: str, paths: Iterable[str], origin: Origin) -> List[Conflict]:
        self.steps.append(origin)
        base = prefix.strip("/")
        found = []
        for p in paths:
            c = self.add(f"{base}/{p}" if base else p, origin)
            if c is not None:
                found.append(c)
        return found

    def modify(self, path: str, origin: Origin):
        """A patch rewrites path in place; not a conflict."""
        path = path.strip("/")
        self.entries.pop(path, None)
        self.entries[path] = origin

    def remove(self, path: str):
        self.entries.pop(path.strip("/"), None)

    def origin_of(self, path: str) -> Optional[Origin]:
        return self.entries.get(path.strip("/"))

    def paths(self) -> List[str]:
        return sorted(self.entries)

    def copy_conflicts(self) -> List[Conflict]:
        return [c for c in self.conflicts if c.copy_overlap]

    def to_dict(self):
        return {
            "paths": {p: str(o) for p, o in sorted(self.entries.items())},
            "conflicts": [c.to_dict() for c in self.conflicts],
            "untrusted": list(self.untrusted),
        }
