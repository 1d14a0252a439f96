# model.py
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Dict, FrozenSet, List, Optional, Tuple

from .errors import AssetflowError, UpstreamFailure

# A set of absolute file paths collected in one debounce window.
ChangeSet = FrozenSet[Path]


@dataclass(frozen=True)
class AssetGroup:
    """
    A logical asset group: source globs -> destination directory, processed
    by an ordered chain of transforms.

    `sources` and `watch` are globs relative to the project root; `dest` is a
    directory relative to the project root. `watch` lists extra globs that
    should trigger a rebuild (partials, includes) without being read as
    inputs of the chain.
    """
    name: str
    sources: Tuple[str, ...]
    dest: str
    transforms: Tuple[str, ...] = ("copy",)
    needs: Tuple[str, ...] = ()
    watch: Tuple[str, ...] = ()
    data: Optional[str] = None


@dataclass(frozen=True)
class Asset:
    """One file flowing through a transform chain (path relative to dest)."""
    path: Path
    data: bytes

    def text(self) -> str:
        return self.data.decode("utf-8")


@dataclass
class Task:
    """
    A node of the task graph.

    `group` is None only for the synthetic clean task. `needs` are upstream
    tasks whose output this task consumes; `after` are tasks it merely has to
    wait for.
    """
    id: str
    group: Optional[AssetGroup]
    sources: Tuple[str, ...]
    dest: str
    needs: List[str] = field(default_factory=list)
    after: List[str] = field(default_factory=list)
    watch: Tuple[str, ...] = ()
    last_run: Optional[float] = None
    fingerprint: Optional[str] = None
    outputs: List[str] = field(default_factory=list)

    @property
    def is_clean(self) -> bool:
        return self.group is None


class Status(str, Enum):
    SKIPPED = "skipped"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


@dataclass
class RunResult:
    task: str
    status: Status
    error: Optional[AssetflowError] = None
    outputs: List[str] = field(default_factory=list)
    duration: float = 0.0

    @property
    def upstream_failure(self) -> bool:
        return isinstance(self.error, UpstreamFailure)


@dataclass(frozen=True)
class ReloadMessage:
    """Notification consumed by the dev server / browser reload."""
    group: str
    status: str
    errors: Tuple[str, ...] = ()

    def to_dict(self) -> Dict[str, object]:
        return {"group": self.group, "status": self.status, "errors": list(self.errors)}


@dataclass
class BuildReport:
    """Per-task outcomes of one executor run, in graph order."""
    results: Dict[str, RunResult] = field(default_factory=dict)
    change_set: Optional[ChangeSet] = None

    def add(self, result: RunResult) -> None:
        self.results[result.task] = result

    def status(self, task_id: str) -> Status:
        return self.results[task_id].status

    def _with(self, status: Status) -> List[str]:
        return [t for t, r in self.results.items() if r.status is status]

    @property
    def succeeded(self) -> List[str]:
        return self._with(Status.SUCCEEDED)

    @property
    def skipped(self) -> List[str]:
        return self._with(Status.SKIPPED)

    @property
    def failed(self) -> List[str]:
        return self._with(Status.FAILED)

    @property
    def ok(self) -> bool:
        return not self.failed

    def to_messages(self) -> List[ReloadMessage]:
        """One reload message per task that was actually attempted."""
        messages: List[ReloadMessage] = []
        for task_id, r in self.results.items():
            if r.status is Status.SKIPPED:
                continue
            errors = (str(r.error),) if r.error is not None else ()
            messages.append(ReloadMessage(group=task_id, status=r.status.value, errors=errors))
        return messages
