import os
import threading
import time
from pathlib import Path

import pytest

from assetflow.dsl import group
from assetflow.errors import ConfigError, TransformError, UpstreamFailure
from assetflow.executor import Executor, run
from assetflow.fingerprint import STATE_DIR, FingerprintStore
from assetflow.graph import build_graph
from assetflow.model import Status
from assetflow.transforms import TransformRegistry

from conftest import boom, write


def _styles_scripts():
    return [
        group("styles", "a.scss", dest="out", transforms=("concat:style.css",)),
        group("scripts", "b.js", dest="out", transforms=("concat:main.js",)),
    ]


def test_full_build_then_skip_then_incremental(project_dir: Path):
    graph = build_graph(_styles_scripts(), dest_root="out")

    first = run(graph, root=project_dir)
    assert first.succeeded == ["styles", "scripts"]
    assert (project_dir / "out" / "style.css").read_text() == "body { color: red; }\n"
    assert (project_dir / "out" / "main.js").exists()

    second = run(graph, root=project_dir)
    assert second.skipped == ["styles", "scripts"]

    a = project_dir / "a.scss"
    a.write_text("body { color: blue; }\n")
    third = run(graph, frozenset({a}), root=project_dir)
    assert third.status("styles") is Status.SUCCEEDED
    assert third.status("scripts") is Status.SKIPPED
    assert "blue" in (project_dir / "out" / "style.css").read_text()


def test_change_set_hit_rebuilds_even_if_content_is_unchanged(project_dir: Path):
    graph = build_graph(_styles_scripts())
    run(graph, root=project_dir)
    report = run(graph, frozenset({project_dir / "a.scss"}), root=project_dir)
    assert report.succeeded == ["styles"]
    assert report.skipped == ["scripts"]


def test_change_set_outside_every_group_skips_everything(project_dir: Path):
    graph = build_graph(_styles_scripts())
    run(graph, root=project_dir)
    stray = write(project_dir, "notes.txt", "hello")
    report = run(graph, frozenset({stray}), root=project_dir)
    assert report.skipped == ["styles", "scripts"]


def test_touch_without_content_change_is_skipped(project_dir: Path):
    graph = build_graph(_styles_scripts())
    run(graph, root=project_dir)
    a = project_dir / "a.scss"
    future = a.stat().st_mtime + 3600
    os.utime(a, (future, future))
    assert run(graph, root=project_dir).skipped == ["styles", "scripts"]


def test_content_change_with_same_mtime_is_stale(project_dir: Path):
    graph = build_graph(_styles_scripts())
    run(graph, root=project_dir)
    a = project_dir / "a.scss"
    st = a.stat()
    a.write_text("body { color: green; }\n")
    os.utime(a, ns=(st.st_atime_ns, st.st_mtime_ns))
    report = run(graph, root=project_dir)
    assert report.succeeded == ["styles"]
    assert report.skipped == ["scripts"]


def test_mtime_mode_sees_touches(project_dir: Path):
    graph = build_graph(_styles_scripts())
    ex = Executor(graph, project_dir, hash_mode="mtime")
    ex.run()
    a = project_dir / "a.scss"
    future = a.stat().st_mtime + 3600
    os.utime(a, (future, future))
    assert ex.run().succeeded == ["styles"]


def test_staleness_propagates_downstream(tmp_path: Path):
    write(tmp_path, "src/a.txt", "A")
    groups = [
        group("compile", "src/*.txt", dest="build/a"),
        group("bundle", "build/a/*.txt", dest="build/b", transforms=("concat:all.txt",)),
    ]
    graph = build_graph(groups)
    assert run(graph, root=tmp_path).succeeded == ["compile", "bundle"]
    assert (tmp_path / "build" / "b" / "all.txt").read_text() == "A\n"
    assert run(graph, root=tmp_path).skipped == ["compile", "bundle"]

    changed = write(tmp_path, "src/a.txt", "AA")
    report = run(graph, frozenset({changed}), root=tmp_path)
    assert report.succeeded == ["compile", "bundle"]
    assert (tmp_path / "build" / "b" / "all.txt").read_text() == "AA\n"


def test_plan_reports_reasons(tmp_path: Path):
    write(tmp_path, "src/a.txt", "A")
    groups = [
        group("compile", "src/*.txt", dest="build/a"),
        group("bundle", "build/a/*.txt", dest="build/b"),
    ]
    ex = Executor(build_graph(groups), tmp_path)
    assert ex.plan() == {"compile": "never built", "bundle": "never built"}
    ex.run()
    assert ex.plan() == {}
    assert ex.plan(force=True) == {"compile": "forced", "bundle": "forced"}
    hit = ex.plan(frozenset({tmp_path / "src" / "a.txt"}))
    assert hit == {"compile": "source changed", "bundle": "upstream stale"}


def test_failure_blocks_dependents_but_not_siblings(tmp_path: Path, spy):
    write(tmp_path, "src/a.txt", "A")
    write(tmp_path, "src/c.txt", "C")
    groups = [
        group("broken", "src/a.txt", dest="build/a", transforms=("boom",)),
        group("after_broken", "build/a/*", dest="build/b", transforms=("spy",)),
        group("unrelated", "src/c.txt", dest="build/c", transforms=("spy",)),
    ]
    registry = TransformRegistry(groups, factories={"boom": boom, "spy": spy})
    graph = build_graph(groups, registry=registry)
    report = Executor(graph, tmp_path, registry=registry).run()

    assert report.status("broken") is Status.FAILED
    err = report.results["broken"].error
    assert isinstance(err, TransformError)
    assert err.group == "broken"
    assert err.stage == "boom"
    assert "compiler exploded" in str(err)

    blocked = report.results["after_broken"]
    assert blocked.status is Status.FAILED
    assert isinstance(blocked.error, UpstreamFailure)
    assert blocked.upstream_failure
    assert blocked.error.upstream == "broken"

    assert report.status("unrelated") is Status.SUCCEEDED
    assert spy.calls == ["unrelated"]
    assert not report.ok
    assert (tmp_path / "build" / "c" / "c.txt").read_text() == "C"


def test_failed_task_keeps_old_fingerprint_and_retries(tmp_path: Path):
    write(tmp_path, "data/a.json", '{"ok": true}')
    graph = build_graph([group("data", "data/*.json", dest="out", transforms=("json",))])
    ex = Executor(graph, tmp_path)
    assert ex.run().succeeded == ["data"]
    good = graph.tasks["data"].fingerprint

    write(tmp_path, "data/a.json", "{broken")
    failed = ex.run()
    assert failed.failed == ["data"]
    assert graph.tasks["data"].fingerprint == good

    # still stale: nothing recorded the broken input as built
    assert ex.run().failed == ["data"]


def test_fingerprints_survive_a_fresh_process(project_dir: Path):
    run(build_graph(_styles_scripts(), dest_root="out"), root=project_dir)
    assert (project_dir / "out" / STATE_DIR / "styles.json").exists()

    fresh = build_graph(_styles_scripts(), dest_root="out")
    assert run(fresh, root=project_dir).skipped == ["styles", "scripts"]


def test_deleted_output_forces_rebuild(project_dir: Path):
    run(build_graph(_styles_scripts(), dest_root="out"), root=project_dir)
    (project_dir / "out" / "style.css").unlink()

    fresh = build_graph(_styles_scripts(), dest_root="out")
    report = run(fresh, root=project_dir)
    assert report.succeeded == ["styles"]
    assert (project_dir / "out" / "style.css").exists()


def test_hydrate_resets_tasks_without_records(project_dir: Path):
    graph = build_graph(_styles_scripts(), dest_root="out")
    run(graph, root=project_dir)
    store = FingerprintStore(project_dir / "out")
    store.forget("scripts")
    store.hydrate(graph.tasks)
    assert graph.tasks["styles"].fingerprint is not None
    assert graph.tasks["scripts"].fingerprint is None
    assert graph.tasks["scripts"].outputs == []


def test_renamed_output_removes_the_old_file(project_dir: Path):
    run(build_graph(_styles_scripts(), dest_root="out"), root=project_dir)
    renamed = [
        group("styles", "a.scss", dest="out", transforms=("concat:theme.css",)),
        group("scripts", "b.js", dest="out", transforms=("concat:main.js",)),
    ]
    report = run(build_graph(renamed, dest_root="out"), root=project_dir)
    assert report.succeeded == ["styles"]
    assert (project_dir / "out" / "theme.css").exists()
    assert not (project_dir / "out" / "style.css").exists()


def test_clean_build_removes_stale_files(project_dir: Path):
    run(build_graph(_styles_scripts(), dest_root="out"), root=project_dir)
    leftover = write(project_dir, "out/old.css", "x")

    graph = build_graph(_styles_scripts(), clean=True, dest_root="out")
    report = run(graph, root=project_dir)
    assert report.succeeded == ["clean", "styles", "scripts"]
    assert not leftover.exists()
    assert (project_dir / "out" / "style.css").exists()


def test_clean_refuses_to_delete_the_project_root(project_dir: Path):
    graph = build_graph(_styles_scripts(), clean=True, dest_root=".")
    report = run(graph, root=project_dir)
    assert report.failed == ["clean", "styles", "scripts"]
    assert report.results["clean"].error.stage == "clean"
    assert report.results["styles"].upstream_failure
    assert (project_dir / "a.scss").exists()


def test_only_builds_the_selected_groups(project_dir: Path):
    graph = build_graph(_styles_scripts())
    report = Executor(graph, project_dir).run(only=["scripts"])
    assert list(report.results) == ["scripts"]
    assert not (project_dir / "out" / "style.css").exists()


def test_only_with_unknown_group_is_config_error(project_dir: Path):
    with pytest.raises(ConfigError):
        Executor(build_graph(_styles_scripts()), project_dir).run(only=["nope"])


def test_missing_data_file_fails_the_group(tmp_path: Path):
    write(tmp_path, "index.html", "<p>@@title</p>")
    graph = build_graph([group("html", "index.html", dest="out", transforms=("include",), data="missing.json")])
    report = run(graph, root=tmp_path)
    assert report.failed == ["html"]
    assert report.results["html"].error.stage == "data"


def test_single_worker_runs_everything(project_dir: Path):
    graph = build_graph(_styles_scripts())
    report = Executor(graph, project_dir, max_workers=1).run()
    assert report.succeeded == ["styles", "scripts"]


def test_uncreatable_destination_fails_before_any_task_runs(tmp_path: Path, spy):
    write(tmp_path, "src/a.js", "a")
    write(tmp_path, "out/blocker", "a file where a directory should be")
    groups = [
        group("styles", "src/a.js", dest="out/css", transforms=("spy",)),
        group("scripts", "src/a.js", dest="out/blocker/js", transforms=("spy",)),
    ]
    registry = TransformRegistry(groups, factories={"spy": spy})
    ex = Executor(build_graph(groups, registry=registry), tmp_path, registry=registry)
    with pytest.raises(ConfigError) as exc:
        ex.run()
    assert "'scripts'" in str(exc.value)
    assert spy.calls == []
    assert not (tmp_path / "out" / "css").exists()


def test_clean_build_ignores_obstacles_it_removes(tmp_path: Path):
    write(tmp_path, "src/a.js", "a")
    write(tmp_path, "out/js", "a file where a directory should be")
    graph = build_graph([group("scripts", "src/a.js", dest="out/js")], clean=True, dest_root="out")
    report = run(graph, root=tmp_path)
    assert report.succeeded == ["clean", "scripts"]
    assert (tmp_path / "out" / "js" / "a.js").read_text() == "a"


class InFlight:
    """Transform factory tracking how many chains run at the same time."""

    def __init__(self, hold: float = 0.1):
        self.hold = hold
        self.lock = threading.Lock()
        self.now = 0
        self.peak = 0

    def __call__(self, arg):
        def run(assets, meta):
            with self.lock:
                self.now += 1
                self.peak = max(self.peak, self.now)
            time.sleep(self.hold)
            with self.lock:
                self.now -= 1
            return assets, meta

        return run


def _independent(tmp_path: Path, names, transform):
    groups = []
    for n in names:
        write(tmp_path, f"src/{n}.txt", n)
        groups.append(group(n, f"src/{n}.txt", dest=f"out/{n}", transforms=(transform,)))
    return groups


def test_independent_groups_run_at_the_same_time(tmp_path: Path):
    barrier = threading.Barrier(2, timeout=5)

    def meet(arg):
        def run(assets, meta):
            barrier.wait()
            return assets, meta

        return run

    groups = _independent(tmp_path, ["x", "y"], "meet")
    registry = TransformRegistry(groups, factories={"meet": meet})
    graph = build_graph(groups, registry=registry)
    report = Executor(graph, tmp_path, max_workers=2, registry=registry).run()
    assert report.succeeded == ["x", "y"]


@pytest.mark.parametrize("workers", [1, 2, 3])
def test_max_workers_bounds_parallel_tasks(tmp_path: Path, workers):
    counter = InFlight()
    groups = _independent(tmp_path, ["a", "b", "c", "d", "e", "f"], "hold")
    registry = TransformRegistry(groups, factories={"hold": counter})
    graph = build_graph(groups, registry=registry)
    report = Executor(graph, tmp_path, max_workers=workers, registry=registry).run()
    assert len(report.succeeded) == 6
    assert counter.peak == workers


def test_same_output_groups_never_overlap(tmp_path: Path):
    events = []
    lock = threading.Lock()

    def mark(arg):
        def run(assets, meta):
            with lock:
                events.append((meta["group"], "start"))
            time.sleep(0.1)
            with lock:
                events.append((meta["group"], "end"))
            return assets, meta

        return run

    write(tmp_path, "a.css", "a")
    write(tmp_path, "b.js", "b")
    groups = [
        group("first", "a.css", dest="out", transforms=("mark",)),
        group("second", "b.js", dest="out", transforms=("mark",)),
    ]
    registry = TransformRegistry(groups, factories={"mark": mark})
    graph = build_graph(groups, registry=registry)
    report = Executor(graph, tmp_path, max_workers=2, registry=registry).run()
    assert report.succeeded == ["first", "second"]
    assert events == [("first", "start"), ("first", "end"), ("second", "start"), ("second", "end")]
