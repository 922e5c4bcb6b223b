import sys

import pytest

from resforge.config import from_dict
from resforge.hooks import HookManager, hook_environment


def test_callables_receive_context():
    seen = []
    hooks = HookManager(from_dict())
    hooks.register_callable("post-build", lambda ctx: seen.append(ctx))
    assert hooks.run("post-build", {"result": "hello", "checksum": "abc"})
    assert seen == [{"result": "hello", "checksum": "abc", "event": "post-build"}]


def test_no_hooks_is_success():
    assert HookManager().run("pre-build", {"result": "x"})


@pytest.mark.parametrize("rv, ok", [(None, True), (True, True), (0, True), (False, False), (2, False)])
def test_callable_return_values(rv, ok):
    hooks = HookManager()
    hooks.register_callable("pre-build", lambda ctx: rv)
    assert hooks.run("pre-build") is ok


def test_priority_order_and_stop_on_failure():
    calls = []
    hooks = HookManager()
    hooks.register_callable("pre-build", lambda ctx: calls.append("late"), name="late", priority=20)
    hooks.register_callable("pre-build", lambda ctx: calls.append("early") or False, name="early", priority=1)
    assert not hooks.run("pre-build")
    assert calls == ["early"]
    assert [h["name"] for h in hooks.list("pre-build")] == ["early", "late"]


def test_keep_going_without_stop_on_failure():
    calls = []
    hooks = HookManager(from_dict({"hooks": {"stop_on_failure": False}}))
    hooks.register_callable("build-failed", lambda ctx: False, name="a")
    hooks.register_callable("build-failed", lambda ctx: calls.append("b"), name="b")
    assert not hooks.run("build-failed")
    assert calls == ["b"]


def test_unknown_event():
    with pytest.raises(ValueError, match="unknown hook event"):
        HookManager().register_callable("on-magic", lambda ctx: None)


def test_unregister():
    hooks = HookManager()
    hooks.register_callable("pre-build", lambda ctx: False, name="veto")
    hooks.unregister("pre-build", "veto")
    assert hooks.run("pre-build")


def test_hook_environment():
    env = hook_environment("post-build", {"result": "hello", "jobs": 2, "missing": None})
    assert env["FORGE_HOOK_EVENT"] == "post-build"
    assert env["FORGE_HOOK_RESULT"] == "hello"
    assert env["FORGE_HOOK_JOBS"] == "2"
    assert "FORGE_HOOK_MISSING" not in env
    assert "PATH" in env


def test_script_hooks_from_config_and_project(tmp_path):
    marker = tmp_path / "marker"
    cfg = from_dict({"hooks": {"events": {"post-build": [f'echo "$FORGE_HOOK_RESULT" >> {marker}']}}})
    project_hooks = {"post-build": [{"name": "second", "command": f"echo project >> {marker}", "priority": 20}],
                     "no-such-event": ["true"]}
    hooks = HookManager(cfg, project_hooks, cwd=str(tmp_path))
    assert [h["origin"] for h in hooks.list()] == ["config", "project"]
    assert hooks.run("post-build", {"result": "hello"})
    assert marker.read_text() == "hello\nproject\n"


def test_failing_script_hook(tmp_path):
    hooks = HookManager(from_dict({"hooks": {"events": {"pre-build": ["exit 4"]}}}), cwd=str(tmp_path))
    assert not hooks.run("pre-build")


def test_python_module_hook(tmp_path, monkeypatch):
    (tmp_path / "forge_test_hook.py").write_text(
        "SEEN = []\n\ndef run(context):\n    SEEN.append(context['result'])\n    return True\n")
    monkeypatch.syspath_prepend(str(tmp_path))
    hooks = HookManager(from_dict({"hooks": {"events": {"post-build": [{"module": "forge_test_hook"}]}}}))
    assert hooks.run("post-build", {"result": "hello"})
    assert sys.modules["forge_test_hook"].SEEN == ["hello"]


def test_missing_module_hook_fails():
    hooks = HookManager(from_dict({"hooks": {"events": {"post-build": [{"module": "no_such_forge_hook_module"}]}}}))
    assert not hooks.run("post-build")


def test_raising_callable_counts_as_failure():
    calls = []
    hooks = HookManager(from_dict({"hooks": {"stop_on_failure": False}}))
    hooks.register_callable("post-build", lambda ctx: {}["missing"], name="broken")
    hooks.register_callable("post-build", lambda ctx: calls.append(ctx["result"]), name="after")
    assert not hooks.run("post-build", {"result": "hello"})
    assert calls == ["hello"]
