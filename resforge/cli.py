#!/usr/bin/env python3
# resforge/cli.py
"""
resforge CLI - entrypoint for building a project's results

Commands:
  build [results...]     build results (default: project default_results) and their dependencies
  fetch-sources [results...]  fetch and verify every input of the results without building
  dsort                  print all results in build order
  dlist RESULT           print the dependencies of RESULT (--recursive for all of them)
  ls-project             show the project's servers, chroot groups, sources and results

Exit codes:
  0 success, 1 partial or failed run, 2 aborted (fail-fast or interrupt), 3 descriptor error
"""

from __future__ import annotations

import argparse
import json
import signal
import sys
import threading
from pathlib import Path
from typing import Any, Dict, List, Optional

from rich.console import Console
from rich.table import Table

from resforge import __version__
from resforge import config as config_mod
from resforge.db import open_db
from resforge.errors import DescriptorError, ForgeError
from resforge.fetcher import Fetcher
from resforge.hooks import HookManager
from resforge.logging import get_logger, setup_logging
from resforge.project import ProjectGraph, load_project
from resforge.scheduler import NodeState, RunReport, RunStatus, Scheduler, make_pipeline
from resforge.store import ContentStore

logger = get_logger("cli")

console = Console(stderr=False)

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_ABORTED = 2
EXIT_DESCRIPTOR = 3

STATE_STYLE = {
    NodeState.PACKAGED: "green",
    NodeState.FAILED: "bold red",
    NodeState.SKIPPED_DUE_TO_DEPENDENCY: "yellow",
    NodeState.CANCELLED: "magenta",
}

# -----------------------
# Small pretty helpers
# -----------------------
def print_ok(msg: str):
    console.print(f"[bold green]✔[/] {msg}")

def print_warn(msg: str):
    console.print(f"[bold yellow]![/] {msg}")

def print_err(msg: str):
    console.print(f"[bold red]✖[/] {msg}")

def print_info(msg: str):
    console.print(f"[cyan]{msg}[/cyan]")

# -----------------------
# Wiring
# -----------------------
def _overrides(args: argparse.Namespace) -> Dict[str, Any]:
    build: Dict[str, Any] = {}
    if getattr(args, "jobs", None):
        build["jobs"] = args.jobs
    if getattr(args, "fail_fast", False):
        build["fail_fast"] = True
    if getattr(args, "force_rebuild", False):
        build["force_rebuild"] = True
    if getattr(args, "keep_failed", False):
        build["keep_failed_sandboxes"] = True
    if getattr(args, "timeout", None):
        build["timeout"] = args.timeout
    out: Dict[str, Any] = {"build": build} if build else {}
    if args.verbose:
        out["logging"] = {"level": "DEBUG"}
    return out


def make_config(args: argparse.Namespace) -> config_mod.Config:
    base = config_mod.load(args.config)
    overrides = _overrides(args)
    if not overrides:
        return base
    merged = dict(base.raw)
    for section, values in overrides.items():
        merged[section] = dict(merged.get(section) or {}, **values)
    cfg = config_mod.from_dict(merged)
    cfg.path = base.path
    return cfg


class ForgeCLI:
    """Owns the per-invocation objects: config, project, database, fetcher and store."""

    def __init__(self, cfg: config_mod.Config, project: ProjectGraph):
        self.cfg = cfg
        self.project = project
        store_dir = Path(cfg.get("store.dir"))
        self.db = open_db(cfg.get("store.db"))
        self.fetcher = Fetcher(project.info.servers, store_dir / "fetch", db=self.db, cfg=cfg)
        self.store = ContentStore(store_dir, db=self.db)
        self.hooks = HookManager(cfg, project.hooks, cwd=str(project.root))

    def close(self):
        self.db.close()

    # --------------
    # Commands
    # --------------
    def build(self, targets: List[str]) -> RunReport:
        for t in targets:
            if t not in self.project.results:
                raise DescriptorError(DescriptorError.REFERENTIAL, f"result {t}", "no such result")
        pipeline = make_pipeline(self.project, self.fetcher, self.store, self.cfg, self.hooks)
        scheduler = Scheduler(self.project, pipeline, self.store, self.cfg, self.hooks, self.db)
        interrupted = threading.Event()

        def on_sigint(signum, frame):
            if interrupted.is_set():
                raise KeyboardInterrupt
            interrupted.set()
            print_warn("interrupt: cancelling the run (press Ctrl-C again to force)")
            scheduler.cancel()

        previous = None
        if threading.current_thread() is threading.main_thread():
            previous = signal.signal(signal.SIGINT, on_sigint)
        try:
            return scheduler.run(targets or None)
        finally:
            if previous is not None:
                signal.signal(signal.SIGINT, previous)

    def fetch_sources(self, targets: List[str]) -> Dict[str, List[str]]:
        """Fetch every input of targets and their dependencies; returns unverified inputs per result."""
        pipeline = make_pipeline(self.project, self.fetcher, self.store, self.cfg)
        untrusted: Dict[str, List[str]] = {}
        for name in self.project.dsort(targets or self.project.default_targets()):
            plan = pipeline.provisioner.plan(name)
            print_ok(f"{name}: {len(plan.entries)} path(s) resolved")
            if plan.untrusted:
                untrusted[name] = list(plan.untrusted)
        return untrusted

# -----------------------
# Rendering
# -----------------------
def render_report(report: RunReport):
    table = Table(title=f"run {report.run_id}: {report.status.value}")
    table.add_column("result")
    table.add_column("state")
    table.add_column("version")
    table.add_column("checksum")
    table.add_column("notes")
    for name in report.order:
        node = report.nodes[name]
        notes = []
        if node.reused:
            notes.append("reused")
        if node.empty:
            notes.append("empty")
        if node.untrusted:
            notes.append(f"unverified: {', '.join(node.untrusted)}")
        if node.skipped_because:
            notes.append(f"dependency {node.skipped_because} did not build")
        if node.error:
            notes.append(f"{node.stage}/{node.error_kind}: {node.error}")
        version = node.result.version if node.result else ""
        checksum = node.result.checksum[:16] if node.result else ""
        style = STATE_STYLE.get(node.state, "")
        table.add_row(name, f"[{style}]{node.state.value}[/]" if style else node.state.value,
                      version, checksum, "; ".join(notes))
    console.print(table)
    for name in report.by_state(NodeState.FAILED):
        node = report.nodes[name]
        if node.diagnostics:
            console.rule(f"{name}: last lines of build output")
            console.print(node.diagnostics, markup=False, highlight=False)
        if node.log_path:
            print_info(f"{name}: full log at {node.log_path}")


def render_project(summary: Dict[str, Any]):
    console.print(f"[bold]{summary['name']}[/] release {summary['release_id']}")
    servers = Table(title="servers")
    servers.add_column("name")
    servers.add_column("url")
    for name, url in sorted(summary["servers"].items()):
        servers.add_row(name, url)
    console.print(servers)
    results = Table(title="results")
    results.add_column("name")
    results.add_column("version")
    results.add_column("depends")
    results.add_column("sources")
    results.add_column("chroot")
    for name, r in summary["results"].items():
        marker = " *" if name in summary["default_results"] else ""
        results.add_row(name + marker, r["version"], ", ".join(r["depends"]), ", ".join(r["sources"]),
                        ", ".join(r["chroot"]))
    console.print(results)
    sources = Table(title="sources")
    sources.add_column("name")
    sources.add_column("files")
    for name, files in summary["sources"].items():
        sources.add_row(name, "\n".join(files))
    console.print(sources)
    console.print(f"chroot groups: {', '.join(summary['chroot_groups']) or '-'} "
                  f"(default: {', '.join(summary['default_groups']) or '-'})")


def exit_code_for(status: RunStatus) -> int:
    if status == RunStatus.SUCCESS:
        return EXIT_OK
    if status == RunStatus.ABORTED:
        return EXIT_ABORTED
    return EXIT_FAILED

# -----------------------
# Argparse wiring
# -----------------------
def make_parser():
    ap = argparse.ArgumentParser(prog="resforge", description="resforge reproducible build orchestrator")
    ap.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    ap.add_argument("--config", help="path to a resforge config file")
    ap.add_argument("--project", help="project root (default: located from the working directory)")
    ap.add_argument("-v", "--verbose", action="store_true", help="debug logging")
    ap.add_argument("--json", action="store_true", help="machine readable output")
    sub = ap.add_subparsers(dest="cmd")

    p_build = sub.add_parser("build", help="build results and their dependencies")
    p_build.add_argument("results", nargs="*")
    p_build.add_argument("--jobs", "-j", type=int, help="parallel builds")
    p_build.add_argument("--fail-fast", action="store_true", help="cancel everything after the first failure")
    p_build.add_argument("--force-rebuild", action="store_true", help="ignore stored results with the same buildid")
    p_build.add_argument("--keep-failed", action="store_true", help="keep sandboxes of failed builds")
    p_build.add_argument("--timeout", type=float, help="per-build timeout in seconds")

    p_fetch = sub.add_parser("fetch-sources", help="fetch and verify inputs without building")
    p_fetch.add_argument("results", nargs="*")

    sub.add_parser("dsort", help="print all results in build order")

    p_dlist = sub.add_parser("dlist", help="print the dependencies of a result")
    p_dlist.add_argument("result")
    p_dlist.add_argument("--recursive", "-r", action="store_true")

    sub.add_parser("ls-project", help="describe the project")
    return ap


def main(argv: Optional[List[str]] = None) -> int:
    argv = argv if argv is not None else sys.argv[1:]
    parser = make_parser()
    args = parser.parse_args(argv)
    if not args.cmd:
        parser.print_help()
        return EXIT_OK

    cfg = make_config(args)
    setup_logging(cfg.section("logging"))

    try:
        project = load_project(args.project)
    except DescriptorError as e:
        print_err(str(e))
        return EXIT_DESCRIPTOR

    if args.cmd == "dsort":
        order = project.dsort()
        print(json.dumps(order) if args.json else "\n".join(order))
        return EXIT_OK
    if args.cmd == "dlist":
        try:
            deps = project.dlist(args.result, recursive=args.recursive)
        except DescriptorError as e:
            print_err(str(e))
            return EXIT_DESCRIPTOR
        print(json.dumps(deps) if args.json else "\n".join(deps))
        return EXIT_OK
    if args.cmd == "ls-project":
        if args.json:
            print(json.dumps(project.summary(), indent=2))
        else:
            render_project(project.summary())
        return EXIT_OK

    cli = ForgeCLI(cfg, project)
    try:
        if args.cmd == "fetch-sources":
            untrusted = cli.fetch_sources(args.results)
            for name, inputs in untrusted.items():
                print_warn(f"{name}: unverified inputs: {', '.join(inputs)}")
            print_ok("all inputs fetched")
            return EXIT_OK
        report = cli.build(args.results)
        if args.json:
            print(json.dumps(report.to_dict(), indent=2))
        else:
            render_report(report)
        return exit_code_for(report.status)
    except DescriptorError as e:
        print_err(str(e))
        return EXIT_DESCRIPTOR
    except ForgeError as e:
        print_err(f"Command failed: {e}")
        return EXIT_FAILED
    finally:
        cli.close()


if __name__ == "__main__":
    sys.exit(main())
