from resforge.overlay import CHROOT, COPY, PATCH, UNPACK, Origin, OverlayPlan

BASE = Origin(CHROOT, "group base", "up:base.tar.gz")
TOOLS = Origin(CHROOT, "group tools", "up:tools.tar.gz")
COPY_A = Origin(COPY, "source cfg", "up:a/app.conf")
COPY_B = Origin(COPY, "source cfg", "up:b/app.conf")


def test_later_layers_win():
    plan = OverlayPlan()
    plan.add_tree("", ["etc/issue", "bin/sh"], BASE)
    conflicts = plan.add_tree("", ["etc/issue"], TOOLS)
    assert plan.origin_of("etc/issue") == TOOLS
    assert plan.origin_of("bin/sh") == BASE
    assert len(conflicts) == 1
    assert not conflicts[0].copy_overlap
    assert plan.copy_conflicts() == []


def test_same_origin_is_not_a_conflict():
    plan = OverlayPlan()
    plan.add("etc/issue", BASE)
    assert plan.add("etc/issue", BASE) is None
    assert plan.conflicts == []


def test_copy_overlap_detected():
    plan = OverlayPlan()
    plan.add("build/cfg/etc/app.conf", COPY_A)
    plan.add("build/cfg/etc/app.conf", COPY_B)
    overlaps = plan.copy_conflicts()
    assert len(overlaps) == 1
    assert overlaps[0].earlier == COPY_A
    assert overlaps[0].later == COPY_B
    assert plan.origin_of("/build/cfg/etc/app.conf/") == COPY_B


def test_patches_modify_and_remove():
    plan = OverlayPlan()
    unpack = Origin(UNPACK, "source hello", "up:hello.tar.gz")
    patch = Origin(PATCH, "source hello", "up:fix.patch")
    plan.add_tree("build", ["hello/main.c", "hello/old.c"], unpack)
    plan.modify("build/hello/main.c", patch)
    plan.remove("build/hello/old.c")
    assert plan.conflicts == []
    assert plan.paths() == ["build/hello/main.c"]
    assert plan.origin_of("build/hello/main.c") == patch


def test_to_dict():
    plan = OverlayPlan()
    plan.add("a", COPY_A)
    plan.add("a", COPY_B)
    plan.untrusted.append("up:a/app.conf")
    d = plan.to_dict()
    assert d["paths"] == {"a": str(COPY_B)}
    assert d["conflicts"][0]["path"] == "a"
    assert d["untrusted"] == ["up:a/app.conf"]
