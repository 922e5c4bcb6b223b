# resforge/errors.py
"""
errors.py - exception taxonomy for resforge

Every node-local failure raised by the provisioner, executor or packager is a
ForgeError subclass carrying enough context (entity, stage, diagnostics) for
the scheduler to report it without inspecting tracebacks.
"""

from __future__ import annotations

from typing import List, Optional


class ForgeError(Exception):
    """Base class for all resforge errors."""

    kind = "error"

    def to_dict(self):
        return {"kind": self.kind, "message": str(self)}


# ----------------------------
# Descriptor errors
# ----------------------------
class DescriptorError(ForgeError):
    """Malformed, referential or cyclic project definition.

    kind is one of "structural", "referential", "cyclic". entity names the
    offending descriptor (e.g. "source hello" or "result app"). For cyclic
    errors, cycle holds the loop as a list of result names whose first and
    last element are the same.
    """

    STRUCTURAL = "structural"
    REFERENTIAL = "referential"
    CYCLIC = "cyclic"

    def __init__(self, kind: str, entity: str, message: str, cycle: Optional[List[str]] = None):
        self.kind = kind
        self.entity = entity
        self.cycle = list(cycle) if cycle else []
        super().__init__(f"{entity}: {message}")

    def to_dict(self):
        d = super().to_dict()
        d["entity"] = self.entity
        if self.cycle:
            d["cycle"] = list(self.cycle)
        return d


# ----------------------------
# Fetch errors
# ----------------------------
class TransientTransportError(ForgeError):
    """Network-level failure worth retrying (timeouts, resets, HTTP 5xx)."""

    kind = "transient"


class FetchError(ForgeError):
    kind = "fetch"

    def __init__(self, message: str, server: Optional[str] = None, location: Optional[str] = None,
                 exhausted: bool = False, attempts: int = 0):
        self.server = server
        self.location = location
        self.exhausted = exhausted
        self.attempts = attempts
        super().__init__(message)

    def to_dict(self):
        d = super().to_dict()
        d.update({"server": self.server, "location": self.location,
                  "exhausted": self.exhausted, "attempts": self.attempts})
        return d


class ChecksumMismatch(FetchError):
    kind = "checksum-mismatch"

    def __init__(self, server: str, location: str, algorithm: str, expected: str, actual: str):
        self.algorithm = algorithm
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"checksum mismatch for {server}:{location} ({algorithm}): expected {expected}, got {actual}",
            server=server, location=location)

    def to_dict(self):
        d = super().to_dict()
        d.update({"algorithm": self.algorithm, "expected": self.expected, "actual": self.actual})
        return d


class NotFound(ForgeError):
    kind = "not-found"


# ----------------------------
# Node pipeline errors
# ----------------------------
class ProvisionError(ForgeError):
    kind = "provision"


class BuildFailed(ForgeError):
    kind = "build"

    def __init__(self, message: str, exit_code: Optional[int] = None, timeout: bool = False,
                 output: str = "", log_path: Optional[str] = None):
        self.exit_code = exit_code
        self.timeout = timeout
        self.output = output
        self.log_path = log_path
        super().__init__(message)

    def to_dict(self):
        d = super().to_dict()
        d.update({"exit_code": self.exit_code, "timeout": self.timeout, "log_path": self.log_path})
        return d


class BuildCancelled(ForgeError):
    kind = "cancelled"


class PackageError(ForgeError):
    kind = "package"
