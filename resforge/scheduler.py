# resforge/scheduler.py
"""
scheduler.py - walk the result DAG and build every node in dependency order

Features:
- Per-node state machine:
    PENDING -> READY -> PROVISIONING -> BUILDING -> PACKAGING -> PACKAGED
    FAILED (from provisioning/building/packaging), SKIPPED_DUE_TO_DEPENDENCY, CANCELLED
- Fixed worker pool (ThreadPoolExecutor, build.jobs); ready ties broken by declaration order
- Fail-fast (cancel everything pending, signal in-flight builds) or best-effort
- Result reuse by buildid from the content store unless force_rebuild
- Node-local errors never escape run(); they become FAILED node reports
- Injectable node runner; the default is the provision -> execute -> package pipeline
- Build history persisted to the `build_history` table, hooks fired per node and per run
"""

from __future__ import annotations

import threading
import time
import uuid
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Optional

from resforge.buildsystem import BuildExecutor, BuildVariables
from resforge.config import Config, from_dict
from resforge.db import DB, add_history
from resforge.errors import BuildCancelled, BuildFailed, ForgeError, ProvisionError
from resforge.hooks import HookManager
from resforge.logging import get_logger
from resforge.pkgtool import Packager, Result
from resforge.project import ProjectGraph
from resforge.sandbox import Provisioner, SandboxManager
from resforge.store import ContentStore

logger = get_logger("scheduler")


class NodeState(str, Enum):
    PENDING = "pending"
    READY = "ready"
    PROVISIONING = "provisioning"
    BUILDING = "building"
    PACKAGING = "packaging"
    PACKAGED = "packaged"
    FAILED = "failed"
    SKIPPED_DUE_TO_DEPENDENCY = "skipped-due-to-dependency"
    CANCELLED = "cancelled"


TERMINAL = (NodeState.PACKAGED, NodeState.FAILED, NodeState.SKIPPED_DUE_TO_DEPENDENCY, NodeState.CANCELLED)
ACTIVE = (NodeState.PROVISIONING, NodeState.BUILDING, NodeState.PACKAGING)


class RunStatus(str, Enum):
    SUCCESS = "success"
    PARTIAL = "partial"
    FAILED = "failed"
    ABORTED = "aborted"

# ----------------------------
# Reports
# ----------------------------
@dataclass
class NodeReport:
    name: str
    state: NodeState = NodeState.PENDING
    stage: Optional[str] = None
    error_kind: Optional[str] = None
    error: Optional[str] = None
    diagnostics: str = ""
    log_path: Optional[str] = None
    result: Optional[Result] = None
    reused: bool = False
    untrusted: List[str] = field(default_factory=list)
    skipped_because: Optional[str] = None
    history: List[NodeState] = field(default_factory=list)
    started_at: Optional[float] = None
    finished_at: Optional[float] = None

    @property
    def empty(self) -> bool:
        return bool(self.result and self.result.empty)

    def to_dict(self) -> Dict[str, Any]:
        d = {
            "name": self.name,
            "state": self.state.value,
            "stage": self.stage,
            "error_kind": self.error_kind,
            "error": self.error,
            "reused": self.reused,
            "untrusted": list(self.untrusted),
            "empty": self.empty,
            "skipped_because": self.skipped_because,
            "log_path": self.log_path,
        }
        if self.result is not None:
            d["version"] = self.result.version
            d["checksum"] = self.result.checksum
        return d


@dataclass
class RunReport:
    run_id: str
    status: RunStatus
    order: List[str]
    nodes: Dict[str, NodeReport]
    started_at: float
    finished_at: float

    def by_state(self, state: NodeState) -> List[str]:
        return [n for n in self.order if self.nodes[n].state == state]

    @property
    def untrusted(self) -> Dict[str, List[str]]:
        return {n: list(self.nodes[n].untrusted) for n in self.order if self.nodes[n].untrusted}

    def to_dict(self) -> Dict[str, Any]:
        return {"run_id": self.run_id, "status": self.status.value,
                "duration": round(self.finished_at - self.started_at, 3),
                "nodes": [self.nodes[n].to_dict() for n in self.order]}

# ----------------------------
# Node context handed to runners
# ----------------------------
class NodeContext:
    def __init__(self, name: str, report: NodeReport, dependencies: Dict[str, Result],
                 cancel_event: threading.Event, lock: threading.RLock):
        self.name = name
        self.report = report
        self.dependencies = dependencies
        self.cancel_event = cancel_event
        self._lock = lock

    def advance(self, state: NodeState):
        with self._lock:
            self.report.state = state
            self.report.history.append(state)
        logger.debug("[%s] -> %s", self.name, state.value)

    def set_untrusted(self, inputs: Iterable[str]):
        with self._lock:
            self.report.untrusted = list(inputs)

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()


NodeRunner = Callable[[NodeContext], Result]

# ----------------------------
# Default pipeline
# ----------------------------
class BuildPipeline:
    """provision -> execute -> package for one result."""

    def __init__(self, project: ProjectGraph, provisioner: Provisioner, executor: BuildExecutor,
                 packager: Packager, hooks: Optional[HookManager] = None):
        self.project = project
        self.provisioner = provisioner
        self.executor = executor
        self.packager = packager
        self.hooks = hooks

    def __call__(self, ctx: NodeContext) -> Result:
        name = ctx.name
        project = self.project
        ctx.advance(NodeState.PROVISIONING)
        # one timeout envelope covers provisioning and the build script
        timeout = self.executor.timeout
        deadline = time.monotonic() + timeout if timeout else None
        if self.hooks is not None and not self.hooks.run("pre-build", {"result": name, "buildid": project.buildid(name)}):
            raise ProvisionError(f"result {name}: pre-build hook failed")
        sandbox = self.provisioner.provision(name, ctx.cancel_event, deadline)
        ctx.set_untrusted(sandbox.untrusted)
        sandboxes = self.provisioner.sandboxes
        failed = True
        try:
            for dep in project.dependencies(name):
                try:
                    sandbox.stage_dependency(dep, ctx.dependencies[dep].files_dir)
                except OSError as e:
                    raise ProvisionError(f"result {name}: staging dependency {dep} failed: {e}") from e
            ctx.advance(NodeState.BUILDING)
            remaining = None
            if deadline is not None:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    raise BuildFailed(f"result {name}: timed out before the build script started", timeout=True)
            bv = BuildVariables.for_sandbox(sandbox, project.name, project.info.release_id,
                                            project.buildid(name), self.executor.backend)
            status = self.executor.execute(sandbox, bv, project.results[name].build_script,
                                           env=project.environment_for(name), init_files=project.init_files,
                                           cancel_event=ctx.cancel_event, timeout=remaining)
            if ctx.cancelled:
                raise BuildCancelled(f"result {name}: cancelled before packaging")
            ctx.advance(NodeState.PACKAGING)
            deps = {d: ctx.dependencies[d].version for d in project.dependencies(name)}
            result = self.packager.package(sandbox, bv, project.result_version(name), deps, log_path=status.log_path)
            failed = False
            return result
        finally:
            sandboxes.finish(sandbox, failed)


def make_pipeline(project: ProjectGraph, fetcher, store: ContentStore, cfg: Config,
                  hooks: Optional[HookManager] = None) -> BuildPipeline:
    sandboxes = SandboxManager(cfg.get("provision.workdir_root"), keep_failed=bool(cfg.get("build.keep_failed_sandboxes")),
                               tmpdir=cfg.get("provision.tmpdir", "tmp/forge"))
    return BuildPipeline(project, Provisioner(project, fetcher, sandboxes, cfg), BuildExecutor(cfg),
                         Packager(store), hooks)

# ----------------------------
# Scheduler
# ----------------------------
class Scheduler:
    def __init__(self, project: ProjectGraph, runner: NodeRunner, store: Optional[ContentStore] = None,
                 cfg: Optional[Config] = None, hooks: Optional[HookManager] = None, db: Optional[DB] = None):
        cfg = cfg or from_dict()
        self.project = project
        self.runner = runner
        self.store = store
        self.hooks = hooks
        self.db = db
        self.jobs = max(1, int(cfg.get("build.jobs", 1)))
        self.fail_fast = bool(cfg.get("build.fail_fast", False))
        self.force_rebuild = bool(cfg.get("build.force_rebuild", False))
        self._lock = threading.RLock()
        self._cancel = threading.Event()

    def cancel(self):
        """Abort the current run: nothing new starts, in-flight builds are signalled."""
        self._cancel.set()

    # ----------------------------
    # helpers
    # ----------------------------
    def _set(self, report: NodeReport, state: NodeState):
        with self._lock:
            report.state = state
            report.history.append(state)

    def _reusable(self, name: str) -> Optional[Result]:
        if self.store is None or self.force_rebuild:
            return None
        handle = self.store.find_by_buildid(name, self.project.buildid(name))
        return Result.from_handle(handle, reused=True) if handle is not None else None

    def _skip_dependents(self, failed: str, nodes: Dict[str, NodeReport], order: List[str]):
        doomed = {failed}
        for n in order:
            if n in doomed or nodes[n].state in TERMINAL or nodes[n].state in ACTIVE:
                continue
            blocker = next((d for d in self.project.dependencies(n) if d in doomed), None)
            if blocker is not None:
                doomed.add(n)
                nodes[n].skipped_because = blocker
                self._set(nodes[n], NodeState.SKIPPED_DUE_TO_DEPENDENCY)
                logger.warning("[%s] skipped: dependency %s did not build", n, blocker)

    def _record_failure(self, report: NodeReport, exc: BaseException):
        with self._lock:
            stage = report.state.value if report.state in ACTIVE else NodeState.PROVISIONING.value
            report.stage = stage
            report.error = str(exc)
            report.error_kind = exc.kind if isinstance(exc, ForgeError) else "internal"
            if isinstance(exc, BuildFailed):
                report.diagnostics = exc.output
                report.log_path = exc.log_path
                if exc.timeout:
                    report.error_kind = "timeout"
            report.state = NodeState.CANCELLED if isinstance(exc, BuildCancelled) else NodeState.FAILED
            report.history.append(report.state)

    def _history(self, run_id: str, report: NodeReport):
        if self.db is None:
            return
        error = {"kind": report.error_kind, "message": report.error} if report.error else None
        add_history(self.db, run_id, report.name, report.state.value, report.stage, error,
                    report.started_at, report.finished_at)

    # ----------------------------
    # main loop
    # ----------------------------
    def run(self, targets: Optional[Iterable[str]] = None) -> RunReport:
        run_id = uuid.uuid4().hex[:12]
        started = time.time()
        targets = list(targets) if targets else self.project.default_targets()
        order = self.project.dsort(targets)
        nodes = {n: NodeReport(n, history=[NodeState.PENDING]) for n in order}
        results: Dict[str, Result] = {}
        running: Dict[Future, str] = {}
        started_nodes = set()
        aborted = False
        self._cancel.clear()
        logger.info("run %s: %d result(s), %d worker(s), %s", run_id, len(order), self.jobs,
                    "fail-fast" if self.fail_fast else "best-effort")

        def abort():
            nonlocal aborted
            aborted = True
            self._cancel.set()
            for n in order:
                if nodes[n].state in (NodeState.PENDING, NodeState.READY) and n not in started_nodes:
                    self._set(nodes[n], NodeState.CANCELLED)

        with ThreadPoolExecutor(max_workers=self.jobs, thread_name_prefix="resforge-build") as pool:
            while True:
                if self._cancel.is_set() and not aborted:
                    abort()
                # promote PENDING -> READY and hand out work in declaration order
                progress = True
                while progress and not aborted:
                    progress = False
                    for n in order:
                        if nodes[n].state == NodeState.PENDING and all(
                                nodes[d].state == NodeState.PACKAGED for d in self.project.dependencies(n)):
                            self._set(nodes[n], NodeState.READY)
                    ready = sorted((n for n in order if nodes[n].state == NodeState.READY and n not in started_nodes),
                                   key=self.project.declaration_index)
                    for n in ready:
                        reused = self._reusable(n)
                        if reused is not None:
                            results[n] = reused
                            nodes[n].result = reused
                            nodes[n].reused = True
                            nodes[n].untrusted = list(reused.untrusted)
                            self._set(nodes[n], NodeState.PACKAGED)
                            logger.info("[%s] up to date (buildid %s), reusing stored result", n, reused.buildid[:12])
                            self._history(run_id, nodes[n])
                            progress = True
                            continue
                        if len(running) >= self.jobs:
                            break
                        deps = {d: results[d] for d in self.project.dependencies(n)}
                        ctx = NodeContext(n, nodes[n], deps, self._cancel, self._lock)
                        nodes[n].started_at = time.time()
                        started_nodes.add(n)
                        logger.info("[%s] starting build", n)
                        running[pool.submit(self.runner, ctx)] = n
                        progress = True
                if not running:
                    break
                done, _ = wait(list(running), return_when=FIRST_COMPLETED)
                for fut in sorted(done, key=lambda f: self.project.declaration_index(running[f])):
                    n = running.pop(fut)
                    report = nodes[n]
                    report.finished_at = time.time()
                    try:
                        result = fut.result()
                    except Exception as e:  # node-local: never crash the run
                        if not isinstance(e, ForgeError):
                            logger.exception("[%s] unexpected error in build pipeline", n)
                        self._record_failure(report, e)
                        self._history(run_id, report)
                        if report.state == NodeState.FAILED:
                            logger.error("[%s] failed during %s: %s", n, report.stage, report.error)
                            if self.hooks is not None:
                                self.hooks.run("build-failed", {"result": n, "stage": report.stage,
                                                                "error_kind": report.error_kind})
                        self._skip_dependents(n, nodes, order)
                        if self.fail_fast and not aborted and report.state == NodeState.FAILED:
                            logger.warning("fail-fast: cancelling remaining builds")
                            abort()
                        continue
                    results[n] = result
                    report.result = result
                    self._set(report, NodeState.PACKAGED)
                    if result.empty:
                        logger.warning("[%s] packaged an empty result", n)
                    self._history(run_id, report)
                    if self.hooks is not None:
                        self.hooks.run("post-build", {"result": n, "version": result.version,
                                                      "checksum": result.checksum, "path": str(result.path)})

        finished = time.time()
        status = self._status(order, nodes, aborted)
        report = RunReport(run_id, status, order, nodes, started, finished)
        logger.info("run %s finished: %s (%d packaged, %d failed, %d skipped, %d cancelled)", run_id, status.value,
                    len(report.by_state(NodeState.PACKAGED)), len(report.by_state(NodeState.FAILED)),
                    len(report.by_state(NodeState.SKIPPED_DUE_TO_DEPENDENCY)), len(report.by_state(NodeState.CANCELLED)))
        if self.hooks is not None:
            self.hooks.run("run-finished", {"run_id": run_id, "status": status.value})
        return report

    @staticmethod
    def _status(order: List[str], nodes: Dict[str, NodeReport], aborted: bool) -> RunStatus:
        if aborted:
            return RunStatus.ABORTED
        packaged = sum(1 for n in order if nodes[n].state == NodeState.PACKAGED)
        if packaged == len(order):
            return RunStatus.SUCCESS
        return RunStatus.PARTIAL if packaged else RunStatus.FAILED
