# graph.py
from __future__ import annotations

import heapq
from collections import deque
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Set, Tuple

from .errors import ConfigError, CycleError
from .model import AssetGroup, Task
from .paths import glob_base, has_magic, matches, overlaps

CLEAN_TASK = "clean"


@dataclass
class TaskGraph:
    """
    Tasks plus "must finish before" edges.

    `tasks` keeps declaration order. `adj` maps a task to the dependents that
    consume its output; staleness and failures travel along these edges.
    `after` holds ordering-only edges: tasks sharing an output directory run
    one after the other but do not affect each other's staleness.
    `indeg` counts both kinds. `order` is a topological order with
    declaration order as tie-break.
    """
    tasks: Dict[str, Task]
    adj: Dict[str, Set[str]]
    indeg: Dict[str, int]
    after: Dict[str, Set[str]] = field(default_factory=dict)
    order: List[str] = field(default_factory=list)
    dest_root: Optional[str] = None

    def __contains__(self, task_id: str) -> bool:
        return task_id in self.tasks

    def __len__(self) -> int:
        return len(self.tasks)

    def upstream(self, task_id: str) -> List[str]:
        return list(self.tasks[task_id].needs)

    def dependents(self, task_id: str) -> List[str]:
        return sorted(self.adj.get(task_id, set()), key=self._decl_index)

    def successors(self, task_id: str) -> List[str]:
        """Every task waiting on task_id, data and ordering edges alike."""
        succ = self.adj.get(task_id, set()) | self.after.get(task_id, set())
        return sorted(succ, key=self._decl_index)

    def downstream(self, task_ids: Iterable[str]) -> Set[str]:
        """Transitive data dependents of task_ids (the ids themselves excluded)."""
        seen: Set[str] = set()
        q = deque(task_ids)
        while q:
            node = q.popleft()
            for child in self.adj.get(node, set()):
                if child not in seen:
                    seen.add(child)
                    q.append(child)
        return seen

    def roots(self) -> List[str]:
        return [t for t in self.order if self.indeg[t] == 0]

    def levels(self) -> List[List[str]]:
        """Topological "levels": every task in a level can run in parallel."""
        indeg = dict(self.indeg)
        level = [n for n in self.order if indeg[n] == 0]
        out: List[List[str]] = []
        while level:
            out.append(level)
            nxt: List[str] = []
            for node in level:
                for child in self.successors(node):
                    indeg[child] -= 1
                    if indeg[child] == 0:
                        nxt.append(child)
            level = sorted(nxt, key=self._decl_index)
        return out

    def tasks_for_paths(self, rel_paths: Iterable[str]) -> List[str]:
        """Tasks whose sources or watch globs match any of the root-relative paths."""
        rels = list(rel_paths)
        hit: List[str] = []
        for task_id in self.order:
            task = self.tasks[task_id]
            globs = list(task.sources) + list(task.watch)
            if globs and any(matches(r, globs) for r in rels):
                hit.append(task_id)
        return hit

    def _decl_index(self, task_id: str) -> int:
        return list(self.tasks).index(task_id)


# ---------------------------------------------------------------------
# Edge rules
# ---------------------------------------------------------------------

def _reads_from(reader: AssetGroup, writer: AssetGroup) -> bool:
    """reader consumes files from a directory writer writes into."""
    dest = Path(writer.dest)
    for g in list(reader.sources) + list(reader.watch):
        if not has_magic(g):
            p = Path(g)
            if p == dest or dest in p.parents:
                return True
            continue
        base = glob_base(g)
        if base == dest or dest in base.parents:
            return True
        # a glob rooted above dest only reaches into it if it is deep enough
        if base in dest.parents and ("**" in g or len(Path(g).parts) > len(dest.parts)):
            return True
    return False


def _writes_recursively(group: AssetGroup) -> bool:
    return any("**" in g for g in group.sources)


def _share_output(a: AssetGroup, b: AssetGroup) -> bool:
    """
    True if a and b could write the same output path: same destination, or one
    destination nested in the other while the outer group writes subdirectories.
    """
    da, db = Path(a.dest), Path(b.dest)
    if not overlaps(da, db):
        return False
    if da == db:
        return True
    if da in db.parents:
        return _writes_recursively(a)
    if db in da.parents:
        return _writes_recursively(b)
    return False


def _reaches(edges: Dict[str, Set[str]], src: str, dst: str) -> bool:
    q = deque([src])
    seen = {src}
    while q:
        node = q.popleft()
        if node == dst:
            return True
        for child in edges[node]:
            if child not in seen:
                seen.add(child)
                q.append(child)
    return False


def topo_order(tasks: Dict[str, Task], edges: Dict[str, Set[str]], indeg: Dict[str, int]) -> List[str]:
    """
    Kahn's algorithm, ready tasks popped in declaration order.
    Raises CycleError if tasks remain with nonzero in-degree.
    """
    decl = {name: i for i, name in enumerate(tasks)}
    indeg = dict(indeg)  # copy (we mutate it)
    heap: List[Tuple[int, str]] = [(decl[n], n) for n, d in indeg.items() if d == 0]
    heapq.heapify(heap)
    ordered: List[str] = []
    while heap:
        _, node = heapq.heappop(heap)
        ordered.append(node)
        for child in edges.get(node, set()):
            indeg[child] -= 1
            if indeg[child] == 0:
                heapq.heappush(heap, (decl[child], child))

    if len(ordered) != len(indeg):
        remaining = sorted(n for n, d in indeg.items() if d > 0)
        raise CycleError(stuck=remaining)
    return ordered


def build_graph(
    groups: Iterable[AssetGroup],
    *,
    clean: bool = False,
    dest_root: Optional[str] = None,
    registry=None,
) -> TaskGraph:
    """
    Build the task graph from asset groups.

    Data edges (upstream -> dependent):
      - every group named in `needs`
      - writer -> reader, when the reader's globs point into the writer's dest
      - with clean=True, a synthetic "clean" task precedes every writer
    Ordering edges:
      - groups that could write the same output path run in sequence,
        declaration order first

    If `registry` is given every group's transform chain is resolved up
    front, so unknown transforms fail before anything runs.
    """
    groups = list(groups)
    names = [g.name for g in groups]
    if len(set(names)) != len(names):
        dupes = sorted({n for n in names if names.count(n) > 1})
        raise ConfigError(f"Duplicate asset group names found: {dupes}")
    if CLEAN_TASK in names:
        raise ConfigError(f"'{CLEAN_TASK}' is a reserved task name")
    if clean and not dest_root:
        raise ConfigError("A clean build needs a destination root")

    by_name = {g.name: g for g in groups}
    if registry is not None:
        for g in groups:
            registry.chain_for(g.name)

    tasks: Dict[str, Task] = {}
    if clean:
        tasks[CLEAN_TASK] = Task(id=CLEAN_TASK, group=None, sources=(), dest=str(dest_root))
    for g in groups:
        tasks[g.name] = Task(
            id=g.name,
            group=g,
            sources=tuple(g.sources),
            dest=g.dest,
            watch=tuple(g.watch),
        )

    adj: Dict[str, Set[str]] = {n: set() for n in tasks}
    after: Dict[str, Set[str]] = {n: set() for n in tasks}
    indeg: Dict[str, int] = {n: 0 for n in tasks}

    def linked(a: str, b: str) -> bool:
        return b in adj[a] or b in after[a]

    def add_edge(upstream: str, dependent: str, *, ordering_only: bool = False) -> None:
        if linked(upstream, dependent):
            return
        if ordering_only:
            after[upstream].add(dependent)
            tasks[dependent].after.append(upstream)
        else:
            adj[upstream].add(dependent)
            tasks[dependent].needs.append(upstream)
        indeg[dependent] += 1

    for g in groups:
        for need in g.needs:
            if need not in by_name:
                raise ConfigError(
                    f"Group '{g.name}' needs missing group '{need}'",
                    {"known": ", ".join(sorted(by_name))},
                )
            add_edge(need, g.name)

    for reader in groups:
        for writer in groups:
            if reader is not writer and _reads_from(reader, writer):
                add_edge(writer.name, reader.name)

    # same-output groups go in sequence, in whichever direction keeps the graph acyclic
    every: Dict[str, Set[str]] = {n: adj[n] | after[n] for n in tasks}
    for i, a in enumerate(groups):
        for b in groups[i + 1:]:
            if not _share_output(a, b) or linked(a.name, b.name) or linked(b.name, a.name):
                continue
            if _reaches(every, b.name, a.name):
                add_edge(b.name, a.name, ordering_only=True)
            else:
                add_edge(a.name, b.name, ordering_only=True)
            every = {n: adj[n] | after[n] for n in tasks}

    if clean:
        for g in groups:
            add_edge(CLEAN_TASK, g.name)

    edges = {n: adj[n] | after[n] for n in tasks}
    order = topo_order(tasks, edges, indeg)
    return TaskGraph(tasks=tasks, adj=adj, indeg=indeg, after=after, order=order, dest_root=dest_root)
