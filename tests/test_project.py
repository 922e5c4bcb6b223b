import pytest

from resforge.errors import DescriptorError
from resforge.project import find_project_root


def _chain(builder, deps):
    for name, depends in deps.items():
        builder.result(name, depends=depends)


def test_load_minimal_project(builder):
    builder.put_tar("h/hello/1.0/hello-1.0.tar.gz", {"hello-1.0/README": "hi\n"})
    builder.source("hello", [{"location": "h/hello/1.0/hello-1.0.tar.gz", "unpack": "hello-1.0"}])
    builder.result("hello", sources=["hello"], version="1.0")
    project = builder.load()
    assert project.name == "demo"
    assert project.order == ["hello"]
    assert project.result_version("hello") == "1.0"
    assert [s.name for s in project.sources_for("hello")] == ["hello"]
    assert project.untrusted_inputs("hello") == ["upstream:h/hello/1.0/hello-1.0.tar.gz"]


def test_version_defaults_to_release_id(builder):
    builder.result("a")
    assert builder.load().result_version("a") == "r1"


def test_dsort_orders_dependencies_first(builder):
    _chain(builder, {"app": ["libb", "liba"], "liba": [], "libb": ["liba"], "tool": []})
    project = builder.load()
    order = project.dsort()
    assert order == ["liba", "libb", "app", "tool"]
    for name in order:
        for dep in project.dependencies(name):
            assert order.index(dep) < order.index(name)


def test_dsort_subset_pulls_in_dependencies(builder):
    _chain(builder, {"app": ["lib"], "lib": [], "other": []})
    project = builder.load()
    assert project.dsort(["app"]) == ["lib", "app"]


def test_dsort_unknown_target(builder):
    _chain(builder, {"app": []})
    with pytest.raises(DescriptorError, match="no such result"):
        builder.load().dsort(["nope"])


def test_dlist(builder):
    _chain(builder, {"app": ["libb"], "liba": [], "libb": ["liba"]})
    project = builder.load()
    assert project.dlist("app") == ["libb"]
    assert project.dlist("app", recursive=True) == ["liba", "libb"]
    assert project.dependents("liba") == ["libb"]


def test_default_targets(builder):
    _chain(builder, {"a": [], "b": []})
    builder.write(default_results=["b"])
    assert builder.load().default_targets() == ["b"]


@pytest.mark.parametrize("size", [2, 3, 5, 1100])
def test_cycle_reported_with_full_path(builder, size):
    names = [f"r{i}" for i in range(size)]
    for i, n in enumerate(names):
        builder.result(n, depends=[names[(i + 1) % size]])
    with pytest.raises(DescriptorError) as exc:
        builder.load()
    err = exc.value
    assert err.kind == DescriptorError.CYCLIC
    assert err.cycle[0] == err.cycle[-1]
    assert sorted(set(err.cycle)) == sorted(names)
    assert "dependency cycle" in str(err)


def test_unknown_source_is_referential(builder):
    builder.result("app", sources=["missing"])
    with pytest.raises(DescriptorError, match="unknown source 'missing'") as exc:
        builder.load()
    assert exc.value.kind == DescriptorError.REFERENTIAL
    assert exc.value.entity == "result app"


def test_unknown_server_is_referential(builder):
    builder.source("s", [{"server": "elsewhere", "location": "a.tar.gz", "unpack": "a"}])
    with pytest.raises(DescriptorError, match="unknown server"):
        builder.load()


def test_unknown_dependency(builder):
    builder.result("app", depends=["ghost"])
    with pytest.raises(DescriptorError, match="unknown dependency"):
        builder.load()


def test_unknown_licence(builder):
    (builder.root / "proj" / "licences.yaml").write_text("licences:\n  gpl2: {}\n", encoding="utf-8")
    builder.source("s", [{"location": "a.conf", "copy": ".", "licences": ["mit"]}])
    with pytest.raises(DescriptorError, match="unknown licence 'mit'"):
        builder.load()


def test_missing_build_script(builder):
    builder.result("app")
    (builder.root / "res" / "app" / "build-script").unlink()
    with pytest.raises(DescriptorError, match="build-script missing") as exc:
        builder.load()
    assert exc.value.kind == DescriptorError.STRUCTURAL


def test_project_yaml_missing_release(builder):
    builder.write(release_id="")
    with pytest.raises(DescriptorError, match="release_id"):
        builder.load()


def test_environment_precedence(builder):
    builder.source("s", [{"location": "a.conf", "copy": "."}], env={"A": "source", "B": "source"})
    builder.result("app", sources=["s"], env={"B": "result"})
    builder.env(env={"A": "global", "C": "global", "D": "global"}, results={"app": {"D": "project"}})
    env = builder.load().environment_for("app")
    assert env.get("A").value == "source"
    assert env.get("B").value == "result"
    assert env.get("C").value == "global"
    assert env.get("D").value == "project"


def test_buildid_covers_script_and_dependencies(builder):
    _chain(builder, {"app": ["lib"], "lib": []})
    before = builder.load()
    assert before.buildid("app") == builder.load().buildid("app")
    (builder.root / "res" / "lib" / "build-script").write_text("echo changed\n", encoding="utf-8")
    after = builder.load()
    assert after.buildid("lib") != before.buildid("lib")
    assert after.buildid("app") != before.buildid("app")


def test_buildid_covers_init_files(builder):
    builder.result("app")
    before = builder.load().buildid("app")
    builder.init("00-path", "export X=1\n")
    assert builder.load().buildid("app") != before


def test_relative_server_path_resolved_against_root(builder):
    builder.write(servers={"local": "../servers/upstream"})
    project = builder.load()
    assert project.server_url("local") == str((builder.root / "../servers/upstream").resolve())


def test_find_project_root(builder, monkeypatch):
    builder.write()
    nested = builder.root / "res" / "deep"
    nested.mkdir(parents=True)
    monkeypatch.chdir(nested)
    assert find_project_root() == builder.root.resolve()


def test_find_project_root_outside_project(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    with pytest.raises(DescriptorError, match="no proj/project.yaml found"):
        find_project_root()


def test_load_project_reads_hooks(builder):
    builder.result("app")
    (builder.root / "proj" / "hooks.yaml").write_text(
        "hooks:\n  post-build:\n    - {name: notify, command: 'true'}\n", encoding="utf-8")
    project = builder.load()
    assert project.hooks["post-build"][0]["name"] == "notify"


def test_long_dependency_chain(builder):
    names = [f"r{i:04d}" for i in range(1100)]
    for i, n in enumerate(names):
        builder.result(n, depends=[names[i - 1]] if i else [])
    project = builder.load()
    assert project.dsort([names[-1]]) == names
    assert len(project.dlist(names[-1], recursive=True)) == 1099
    assert len(project.buildid(names[-1])) == 64
    assert project.buildid(names[0]) != project.buildid(names[1])
