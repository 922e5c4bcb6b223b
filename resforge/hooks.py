# resforge/hooks.py

import importlib
import os
import subprocess
from typing import Any, Callable, Dict, List, Optional

from resforge.config import Config, from_dict
from resforge.logging import get_logger

logger = get_logger("hooks")

EVENTS = ("pre-build", "post-build", "build-failed", "run-finished")


def hook_environment(event: str, context: Dict[str, Any]) -> Dict[str, str]:
    env = {"PATH": os.environ.get("PATH", "/usr/bin:/bin"), "FORGE_HOOK_EVENT": event}
    for key, val in (context or {}).items():
        if val is None:
            continue
        env[f"FORGE_HOOK_{str(key).upper()}"] = val if isinstance(val, str) else str(val)
    return env


class HookManager:
    def __init__(self, cfg: Optional[Config] = None, project_hooks: Optional[Dict[str, Any]] = None,
                 cwd: Optional[str] = None):
        cfg = cfg or from_dict()
        self.hooks: Dict[str, List[Dict[str, Any]]] = {}
        self.stop_on_failure = bool(cfg.get("hooks.stop_on_failure", True))
        self.timeout = cfg.get("hooks.timeout", 300)
        self.cwd = cwd
        self._load(cfg.get("hooks.events", {}) or {}, origin="config")
        self._load(project_hooks or {}, origin="project")

    # -----------------------------
    # Loading
    # -----------------------------
    def _load(self, events: Dict[str, Any], origin: str):
        for event, entries in events.items():
            if event not in EVENTS:
                logger.warning("[hooks] ignoring hooks for unknown event %r (%s)", event, origin)
                continue
            for entry in entries or []:
                if isinstance(entry, str):
                    entry = {"command": entry}
                self.register(
                    event=event,
                    name=entry.get("name") or entry.get("command") or entry.get("module"),
                    type="python" if entry.get("module") else "script",
                    command_or_module=entry.get("command") or entry.get("module"),
                    priority=int(entry.get("priority", 10)),
                    origin=origin,
                )

    # -----------------------------
    # Registration
    # -----------------------------
    def register(self, event: str, name: str, type: str, command_or_module: Any,
                 priority: int = 10, origin: str = "runtime"):
        """type is "script" (shell command), "python" (module with run(context)) or "callable"."""
        if event not in EVENTS:
            raise ValueError(f"unknown hook event {event!r}")
        self.hooks.setdefault(event, []).append({
            "name": name,
            "type": type,
            "command_or_module": command_or_module,
            "priority": priority,
            "origin": origin,
            "enabled": True,
        })
        # stable sort keeps registration order among equal priorities
        self.hooks[event].sort(key=lambda h: h["priority"])

    def register_callable(self, event: str, fn: Callable[[Dict[str, Any]], Any], name: Optional[str] = None,
                          priority: int = 10):
        self.register(event, name or getattr(fn, "__name__", "callable"), "callable", fn, priority)

    def unregister(self, event: str, name: str):
        if event in self.hooks:
            self.hooks[event] = [h for h in self.hooks[event] if h["name"] != name]

    def list(self, event: Optional[str] = None) -> List[Dict[str, Any]]:
        if event:
            return list(self.hooks.get(event, []))
        return [h for entries in self.hooks.values() for h in entries]

    # -----------------------------
    # Execution
    # -----------------------------
    def _run_one(self, hook: Dict[str, Any], event: str, context: Dict[str, Any]) -> int:
        htype = hook["type"]
        target = hook["command_or_module"]
        if htype == "script":
            proc = subprocess.run(["/bin/sh", "-c", target], cwd=self.cwd, env=hook_environment(event, context),
                                  stdout=subprocess.PIPE, stderr=subprocess.STDOUT, text=True,
                                  timeout=self.timeout)
            if proc.stdout.strip():
                logger.debug("[hooks] %s output:\n%s", hook["name"], proc.stdout.rstrip())
            return proc.returncode
        if htype == "python":
            module = importlib.import_module(target)
            rv = module.run(dict(context, event=event))
        else:
            rv = target(dict(context, event=event))
        # None/True mean success; False or a nonzero int is a failure code
        if rv is None or rv is True:
            return 0
        if rv is False:
            return 1
        return rv if isinstance(rv, int) else 0

    def run(self, event: str, context: Optional[Dict[str, Any]] = None) -> bool:
        """Run every enabled hook for event; False when one failed and stop_on_failure is set."""
        hooks = [h for h in self.hooks.get(event, []) if h["enabled"]]
        if not hooks:
            return True
        context = context or {}
        logger.debug("[hooks] running %d hook(s) for %s", len(hooks), event)
        ok = True
        for hook in hooks:
            try:
                rc = self._run_one(hook, event, context)
            except Exception:  # a raising hook counts as failed
                logger.exception("[hooks] hook %s (%s) raised", hook["name"], event)
                rc = 1
            if rc != 0:
                logger.error("[hooks] hook %s (%s) failed with code %s", hook["name"], event, rc)
                ok = False
                if self.stop_on_failure:
                    return False
        return ok
