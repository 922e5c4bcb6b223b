# resforge/buildsystem.py
# -*- coding: utf-8 -*-
"""
buildsystem.py - run a result's build script inside its sandbox

API:
  bv = BuildVariables.for_sandbox(sandbox, project_name, release_id, buildid, backend)
  status = BuildExecutor(cfg).execute(sandbox, bv, script, env=env, init_files=[...], cancel_event=ev)

Behaviour:
  - Build variables are an explicit struct written to env/builtin; project/result
    env goes to env/env (export only for values marked exportable)
  - script/build-driver sources env/builtin, env/env and init/*, changes to
    build/ and sources script/build-script; it runs under `bash -e -x`
  - script/buildrc and script/buildrc-noinit are written for interactive debugging
  - The process environment is minimal (PATH, HOME, LANG, TERM)
  - Backends: direct (host), chroot, unshare
  - Output streams to <log_dir>/build.<result>.log; the tail is kept for diagnostics
  - Nonzero exit -> BuildFailed; timeout -> process group killed, BuildFailed(timeout=True);
    cancel_event -> process group killed, BuildCancelled. Never retried.
"""

from __future__ import annotations

import os
import shlex
import shutil
import signal
import subprocess
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterable, List, Optional

from resforge.config import Config, from_dict
from resforge.descriptors import Environment
from resforge.errors import BuildCancelled, BuildFailed
from resforge.logging import BuildLog, get_logger
from resforge.sandbox import BuildSandbox

logger = get_logger("buildsystem")

BACKENDS = ("direct", "chroot", "unshare")

# ----------------------------
# Build variables
# ----------------------------
@dataclass(frozen=True)
class BuildVariables:
    T: str
    r: str
    release_id: str
    project_name: str
    buildid: str

    @classmethod
    def for_sandbox(cls, sandbox: BuildSandbox, project_name: str, release_id: str, buildid: str,
                    backend: str = "direct") -> "BuildVariables":
        t = str(sandbox.T) if backend == "direct" else sandbox.chroot_T
        return cls(T=t, r=sandbox.result, release_id=release_id, project_name=project_name, buildid=buildid)

    def as_dict(self) -> Dict[str, str]:
        return {
            "T": self.T,
            "r": self.r,
            "FORGE_TMPDIR": self.T,
            "FORGE_RESULT": self.r,
            "FORGE_RELEASE_ID": self.release_id,
            "FORGE_PROJECT_NAME": self.project_name,
            "FORGE_BUILDID": self.buildid,
        }


@dataclass
class ExitStatus:
    result: str
    exit_code: int
    duration: float
    log_path: Path
    output: str = ""

    @property
    def ok(self) -> bool:
        return self.exit_code == 0

# ----------------------------
# Sandbox script files
# ----------------------------
def _write(path: Path, text: str, mode: int = 0o644):
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text, encoding="utf-8")
    os.chmod(path, mode)

def write_builtin_env(sandbox: BuildSandbox, bv: BuildVariables) -> Path:
    lines = [f"{k}={shlex.quote(v)}" for k, v in bv.as_dict().items()]
    path = sandbox.path("env", "builtin")
    _write(path, "\n".join(lines) + "\n")
    return path

def write_env(sandbox: BuildSandbox, env: Environment) -> Path:
    lines: List[str] = []
    for name, var in env.iter():
        lines.append(f"{name}={shlex.quote(var.value)}")
        if var.export:
            lines.append(f"export {name}")
    path = sandbox.path("env", "env")
    _write(path, "\n".join(lines) + ("\n" if lines else ""))
    return path

def write_driver(sandbox: BuildSandbox, bv: BuildVariables, script: Path, init_files: Iterable[Path]) -> Path:
    """Populate init/ and script/; returns the host path of the build driver."""
    init_names = []
    for f in init_files:
        shutil.copyfile(f, sandbox.path("init", f.name))
        init_names.append(f.name)
    shutil.copyfile(script, sandbox.path("script", "build-script"))

    t = bv.T
    env_part = [f"source {shlex.quote(t + '/env/builtin')}", f"source {shlex.quote(t + '/env/env')}"]
    init_part = [f"source {shlex.quote(t + '/init/' + n)}" for n in sorted(init_names)]
    _write(sandbox.path("script", "buildrc-noinit"), "\n".join(env_part + [f"cd {shlex.quote(t + '/build')}"]) + "\n")
    _write(sandbox.path("script", "buildrc"), "\n".join(env_part + init_part + [f"cd {shlex.quote(t + '/build')}"]) + "\n")
    driver = sandbox.path("script", "build-driver")
    _write(driver, "\n".join(
        ["#!/bin/bash"] + env_part + init_part +
        [f"cd {shlex.quote(t + '/build')}", f"source {shlex.quote(t + '/script/build-script')}"]
    ) + "\n", 0o755)
    return driver

# ----------------------------
# BuildExecutor
# ----------------------------
class BuildExecutor:
    def __init__(self, cfg: Optional[Config] = None):
        cfg = cfg or from_dict()
        self.backend = cfg.get("build.backend", "direct")
        if self.backend not in BACKENDS:
            raise ValueError(f"unknown build backend {self.backend!r}")
        self.shell = cfg.get("build.shell", "/bin/bash")
        self.path = cfg.get("build.path", "/usr/local/bin:/usr/bin:/bin")
        self.timeout = cfg.get("build.timeout")
        self.log_dir = Path(cfg.get("build.log_dir", "~/.resforge/logs")).expanduser()
        self.diagnostic_lines = int(cfg.get("build.diagnostic_lines", 50))

    def command(self, sandbox: BuildSandbox, bv: BuildVariables) -> List[str]:
        driver = bv.T + "/script/build-driver"
        inner = [self.shell, "-e", "-x", driver]
        if self.backend == "chroot":
            return ["chroot", str(sandbox.base)] + inner
        if self.backend == "unshare":
            return ["unshare", "--map-root-user", f"--root={sandbox.base}"] + inner
        return inner

    def environment(self, bv: BuildVariables) -> Dict[str, str]:
        return {"PATH": self.path, "HOME": bv.T, "LANG": "C", "TERM": "dumb"}

    def log_path(self, result: str) -> Path:
        return self.log_dir / f"build.{result}.log"

    def execute(self, sandbox: BuildSandbox, bv: BuildVariables, script: Path, env: Optional[Environment] = None,
                init_files: Iterable[Path] = (), cancel_event: Optional[threading.Event] = None,
                timeout: Optional[float] = None) -> ExitStatus:
        timeout = timeout if timeout is not None else self.timeout
        log_path = self.log_path(bv.r)
        try:
            write_builtin_env(sandbox, bv)
            write_env(sandbox, env or Environment())
            write_driver(sandbox, bv, Path(script), init_files)
        except OSError as e:
            raise BuildFailed(f"result {bv.r}: cannot prepare build scripts: {e}") from e

        cmd = self.command(sandbox, bv)
        logger.info("[%s] running build script (%s backend)", bv.r, self.backend)
        logger.debug("[%s] command: %s", bv.r, " ".join(cmd))
        start = time.time()
        with BuildLog(log_path, self.diagnostic_lines) as blog:
            try:
                proc = subprocess.Popen(cmd, cwd=str(sandbox.T), env=self.environment(bv),
                                        stdin=subprocess.DEVNULL, stdout=subprocess.PIPE, stderr=subprocess.STDOUT,
                                        text=True, errors="replace", start_new_session=True)
            except OSError as e:
                raise BuildFailed(f"result {bv.r}: cannot start build: {e}", log_path=str(log_path)) from e

            reader = threading.Thread(target=self._pump, args=(proc, blog), daemon=True)
            reader.start()
            timed_out = cancelled = False
            while True:
                try:
                    proc.wait(timeout=0.1)
                    break
                except subprocess.TimeoutExpired:
                    pass
                if cancel_event is not None and cancel_event.is_set():
                    cancelled = True
                elif timeout and time.time() - start > timeout:
                    timed_out = True
                if cancelled or timed_out:
                    self._kill(proc)
                    break
            reader.join(timeout=5)
            output = blog.tail()
        duration = time.time() - start

        if cancelled:
            logger.warning("[%s] build cancelled after %.1fs", bv.r, duration)
            raise BuildCancelled(f"result {bv.r}: build cancelled")
        if timed_out:
            logger.error("[%s] build timed out after %.1fs", bv.r, duration)
            raise BuildFailed(f"result {bv.r}: build timed out after {timeout}s", timeout=True,
                              output=output, log_path=str(log_path))
        if proc.returncode != 0:
            logger.error("[%s] build script failed with exit code %s (log: %s)", bv.r, proc.returncode, log_path)
            raise BuildFailed(f"result {bv.r}: build script exited with {proc.returncode}",
                              exit_code=proc.returncode, output=output, log_path=str(log_path))
        logger.info("[%s] build finished in %.1fs", bv.r, duration)
        return ExitStatus(result=bv.r, exit_code=0, duration=duration, log_path=log_path, output=output)

    @staticmethod
    def _pump(proc: subprocess.Popen, blog: BuildLog):
        for line in proc.stdout:
            blog.write(line)
        proc.stdout.close()

    @staticmethod
    def _kill(proc: subprocess.Popen):
        """Terminate the whole process group, escalating to SIGKILL."""
        for sig, grace in ((signal.SIGTERM, 3.0), (signal.SIGKILL, 5.0)):
            try:
                os.killpg(proc.pid, sig)
            except ProcessLookupError:
                break
            try:
                proc.wait(timeout=grace)
                # leftover group members may still hold the pipe open
                os.killpg(proc.pid, signal.SIGKILL)
                break
            except subprocess.TimeoutExpired:
                continue
            except ProcessLookupError:
                break
        if proc.poll() is None:
            proc.wait()
