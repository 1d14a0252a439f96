# executor.py
from __future__ import annotations

import json
import os
import shutil
import time
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Set, Tuple

from .errors import ConfigError, TransformError, UpstreamFailure
from .fingerprint import FingerprintStore, compute_fingerprint
from .graph import TaskGraph
from .log import get_logger
from .model import Asset, BuildReport, ChangeSet, RunResult, Status, Task
from .paths import PathResolver, expand, glob_base
from .transforms import TransformRegistry, apply_chain

log = get_logger("assetflow.executor")


def default_workers() -> int:
    return os.cpu_count() or 1


class Executor:
    """
    Runs the stale part of a task graph.

    - Computes staleness from the change set and task fingerprints, then
      propagates it to every downstream task.
    - Ready stale tasks run on a bounded thread pool; skipped tasks are never
      invoked.
    - A failure marks its downstream tasks failed(UpstreamFailure) without
      running them; unrelated branches keep going.
    - Fingerprints are updated only for tasks that succeeded.
    """

    def __init__(
        self,
        graph: TaskGraph,
        root: str | Path = ".",
        *,
        max_workers: Optional[int] = None,
        registry: Optional[TransformRegistry] = None,
        store: Optional[FingerprintStore] = None,
        hash_mode: str = "content",
    ):
        self.graph = graph
        self.root = Path(root).resolve()
        self.max_workers = max(1, max_workers or default_workers())
        groups = [t.group for t in graph.tasks.values() if t.group is not None]
        self.registry = registry or TransformRegistry(groups)
        self.resolver = PathResolver(self.root, groups)
        self.hash_mode = hash_mode
        if store is None and graph.dest_root:
            store = FingerprintStore(self.root / graph.dest_root)
        self.store = store
        if self.store is not None:
            self.store.hydrate(graph.tasks)

    # ------------------------------------------------------------------
    # Planning
    # ------------------------------------------------------------------

    def fingerprint(self, task: Task) -> str:
        return compute_fingerprint(task, self.root, mode=self.hash_mode)

    def changed_tasks(self, change_set: Iterable[Path | str]) -> List[str]:
        rels = [r for r in (self.resolver.relative(p) for p in change_set) if r is not None]
        return self.graph.tasks_for_paths(rels)

    def plan(
        self,
        change_set: Optional[ChangeSet] = None,
        *,
        force: bool = False,
        only: Optional[Iterable[str]] = None,
    ) -> Dict[str, str]:
        """
        Return {task_id: reason} for every stale task.

        change_set=None means a full build: every task is eligible and its
        fingerprint decides.
        """
        selected = self._selected(only)
        hits = set(self.changed_tasks(change_set)) if change_set else set()

        stale: Dict[str, str] = {}
        for task_id in self.graph.order:
            if task_id not in selected:
                continue
            task = self.graph.tasks[task_id]
            if task.is_clean:
                stale[task_id] = "clean build"
            elif force:
                stale[task_id] = "forced"
            elif task_id in hits:
                stale[task_id] = "source changed"
            elif self.fingerprint(task) != task.fingerprint:
                stale[task_id] = "fingerprint changed" if task.fingerprint else "never built"

        for task_id in self.graph.downstream(list(stale)):
            if task_id in selected:
                stale.setdefault(task_id, "upstream stale")
        return stale

    def _selected(self, only: Optional[Iterable[str]]) -> Set[str]:
        if only is None:
            return set(self.graph.tasks)
        wanted = set(only)
        unknown = sorted(wanted - set(self.graph.tasks))
        if unknown:
            raise ConfigError(
                f"Unknown asset group(s): {unknown}",
                {"known": ", ".join(self.graph.order)},
            )
        return wanted

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    def run(
        self,
        change_set: Optional[ChangeSet] = None,
        *,
        force: bool = False,
        only: Optional[Iterable[str]] = None,
    ) -> BuildReport:
        graph = self.graph
        selected = self._selected(only)
        stale = self.plan(change_set, force=force, only=selected)
        self._check_destinations(selected, stale)
        report = BuildReport(change_set=change_set)
        results: Dict[str, RunResult] = {}

        remaining: Dict[str, int] = dict(graph.indeg)
        ready: List[str] = [t for t in graph.order if remaining[t] == 0]
        blocked: Dict[str, str] = {}  # task -> failed upstream
        in_flight: Dict[Future, str] = {}

        log.info(
            "Build started: %d task(s), %d stale, %d worker(s)",
            len(selected), len(stale), self.max_workers,
        )

        def complete(task_id: str, result: Optional[RunResult]) -> None:
            if result is not None:
                results[task_id] = result
            for nxt in graph.successors(task_id):
                remaining[nxt] -= 1
                if remaining[nxt] == 0:
                    ready.append(nxt)
            ready.sort(key=graph.order.index)

        with ThreadPoolExecutor(max_workers=self.max_workers) as pool:
            while ready or in_flight:
                # schedule all currently ready, in declaration order
                while ready:
                    task_id = ready.pop(0)
                    if task_id not in selected:
                        complete(task_id, None)
                    elif task_id in blocked:
                        err = UpstreamFailure(task=task_id, upstream=blocked[task_id])
                        log.warning("%s", err)
                        complete(task_id, RunResult(task=task_id, status=Status.FAILED, error=err))
                    elif task_id not in stale:
                        log.debug("Skip (fresh): %s", task_id)
                        complete(task_id, RunResult(task=task_id, status=Status.SKIPPED))
                    else:
                        log.info("Run: %s (%s)", task_id, stale[task_id])
                        fut = pool.submit(self._run_task, graph.tasks[task_id])
                        in_flight[fut] = task_id

                if not in_flight:
                    break

                # wait for at least one completion, then loop to schedule newly-ready tasks
                done, _ = wait(list(in_flight), return_when=FIRST_COMPLETED)
                for fut in sorted(done, key=lambda f: graph.order.index(in_flight[f])):
                    task_id = in_flight.pop(fut)
                    result = self._collect(task_id, fut)
                    if result.status is Status.FAILED:
                        for child in graph.downstream([task_id]):
                            blocked.setdefault(child, task_id)
                    complete(task_id, result)

        for task_id in graph.order:
            if task_id in results:
                report.add(results[task_id])

        log.info(
            "Build finished: %d succeeded, %d skipped, %d failed",
            len(report.succeeded), len(report.skipped), len(report.failed),
        )
        return report

    def _check_destinations(self, selected: Set[str], stale: Dict[str, str]) -> None:
        """Raise ConfigError for an uncreatable destination before any task runs."""
        removed = None
        for task_id in stale:
            task = self.graph.tasks[task_id]
            if task.is_clean:
                removed = self.root / task.dest
        for task_id in self.graph.order:
            if task_id in selected and not self.graph.tasks[task_id].is_clean:
                self.resolver.check_dest(task_id, removed=removed)

    def _collect(self, task_id: str, fut: Future) -> RunResult:
        task = self.graph.tasks[task_id]
        try:
            fingerprint, outputs, duration = fut.result()
        except TransformError as e:
            log.error("Task failed group=%s stage=%s cause=%s", e.group, e.stage, e.cause)
            return RunResult(task=task_id, status=Status.FAILED, error=e)
        except Exception as e:  # noqa: BLE001
            err = TransformError(group=task_id, stage="run", cause=e)
            log.exception("Task failed group=%s stage=%s cause=%s", task_id, "run", e)
            return RunResult(task=task_id, status=Status.FAILED, error=err)

        if not task.is_clean:
            task.fingerprint = fingerprint
            task.outputs = list(outputs)
            task.last_run = time.time()
            if self.store is not None:
                self.store.save(task_id, fingerprint, outputs)
        log.info("Done: %s (%d output(s), %.2fs)", task_id, len(outputs), duration)
        return RunResult(task=task_id, status=Status.SUCCEEDED, outputs=list(outputs), duration=duration)

    def _run_task(self, task: Task) -> Tuple[str, List[str], float]:
        """Worker: returns (fingerprint, outputs, duration). Raises on failure."""
        start = time.monotonic()
        if task.is_clean:
            self._clean(task)
            return "", [], time.monotonic() - start

        group = task.group
        fingerprint = self.fingerprint(task)

        try:
            dest = self.resolver.resolve(group.name).dest_dir
        except ConfigError as e:
            raise TransformError(group=group.name, stage="resolve", cause=e) from e

        assets, sources = self._read_sources(task)
        meta = {
            "group": group.name,
            "root": self.root,
            "dest": dest,
            "sources": sources,
            "data": self._read_data(task),
        }
        _assets, meta = apply_chain(self.registry.chain_for(group.name), assets, meta)
        outputs: List[str] = list(meta.get("outputs", []))
        self._remove_orphans(task, outputs)
        return fingerprint, outputs, time.monotonic() - start

    def _read_sources(self, task: Task) -> Tuple[List[Asset], Dict[str, Path]]:
        """
        Read matched files. Each asset keeps its path relative to the literal
        base of the glob that matched it ("src/images/**/*" keeps subdirs).
        """
        assets: List[Asset] = []
        sources: Dict[str, Path] = {}
        seen: Set[Path] = set()
        for pattern in task.sources:
            base = (self.root / glob_base(pattern)).resolve()
            for p in expand(self.root, [pattern]):
                if p in seen:
                    continue
                seen.add(p)
                try:
                    rel = p.relative_to(base)
                except ValueError:
                    rel = Path(p.name)
                try:
                    data = p.read_bytes()
                except OSError as e:
                    raise TransformError(group=task.id, stage="read", cause=e) from e
                assets.append(Asset(rel, data))
                sources[rel.as_posix()] = p
        return assets, sources

    def _read_data(self, task: Task):
        data_file = task.group.data if task.group is not None else None
        if not data_file:
            return None
        path = self.root / data_file
        try:
            return json.loads(path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            raise TransformError(group=task.id, stage="data", cause=e) from e

    def _remove_orphans(self, task: Task, outputs: List[str]) -> None:
        """Delete files this task wrote last time but no longer produces."""
        keep = set(outputs)
        for old in task.outputs:
            if old not in keep:
                try:
                    Path(old).unlink()
                    log.debug("Removed stale output %s", old)
                except FileNotFoundError:
                    pass

    def _clean(self, task: Task) -> None:
        target = (self.root / task.dest).resolve()
        if target == self.root or target in self.root.parents:
            raise TransformError(
                group=task.id,
                stage="clean",
                cause=ValueError(f"refusing to delete {target}: not below the project root"),
            )
        if target.exists():
            log.info("Clean: removing %s", target)
            shutil.rmtree(target)
        for t in self.graph.tasks.values():
            t.fingerprint = None
            t.outputs = []
            t.last_run = None


def run(
    graph: TaskGraph,
    change_set: Optional[ChangeSet] = None,
    *,
    root: str | Path = ".",
    max_workers: Optional[int] = None,
    force: bool = False,
) -> BuildReport:
    """Run the graph once; change_set=None means a full build."""
    return Executor(graph, root, max_workers=max_workers).run(change_set, force=force)
